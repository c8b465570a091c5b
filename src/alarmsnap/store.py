"""Persistence of captured snapshots."""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Protocol

from .config import Settings
from .devices import DeviceKey
from .errors import StoreError


class SnapshotStore(Protocol):
    def store(self, device: DeviceKey, channel: int, timestamp: datetime, data: bytes) -> str:
        ...


class DirectorySnapshotStore:
    """Writes ``<root>/<host>_<port>/chNN/<date>/<time>.jpg`` files."""

    def __init__(self, root: Path | str = ".") -> None:
        self.root = Path(root)

    def path_for(self, device: DeviceKey, channel: int, timestamp: datetime) -> Path:
        return (
            self.root
            / f"{device.host}_{device.port}"
            / f"ch{channel:02d}"
            / timestamp.strftime("%Y-%m-%d")
            / f"{timestamp.strftime('%H-%M-%S.%f')}.jpg"
        )

    def store(self, device: DeviceKey, channel: int, timestamp: datetime, data: bytes) -> str:
        path = self.path_for(device, channel, timestamp)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise StoreError(device, channel, str(exc)) from exc
        return str(path)


class SqliteSnapshotStore:
    """Keeps snapshots as BLOBs in a single SQLite database file."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        device TEXT NOT NULL,
        channel INTEGER NOT NULL,
        captured_at TEXT NOT NULL,
        data BLOB NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_snapshots_device_channel
        ON snapshots (device, channel, captured_at);
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._connect().executescript(self.SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(str(self.path), timeout=30, isolation_level=None)
            conn.execute("PRAGMA journal_mode = WAL;")
            conn.execute("PRAGMA synchronous = NORMAL;")
            self._local.conn = conn
        return conn

    def store(self, device: DeviceKey, channel: int, timestamp: datetime, data: bytes) -> str:
        try:
            cursor = self._connect().execute(
                "INSERT INTO snapshots (device, channel, captured_at, data) VALUES (?, ?, ?, ?)",
                (str(device), channel, timestamp.isoformat(), sqlite3.Binary(data)),
            )
        except sqlite3.Error as exc:
            raise StoreError(device, channel, str(exc)) from exc
        return f"{self.path}#{cursor.lastrowid}"

    def count(self, device: DeviceKey | None = None, channel: int | None = None) -> int:
        query = "SELECT COUNT(*) FROM snapshots WHERE 1 = 1"
        params: list[object] = []
        if device is not None:
            query += " AND device = ?"
            params.append(str(device))
        if channel is not None:
            query += " AND channel = ?"
            params.append(channel)
        return int(self._connect().execute(query, params).fetchone()[0])


def create_store(settings: Settings) -> SnapshotStore:
    if settings.db_path is not None:
        return SqliteSnapshotStore(settings.db_path)
    return DirectorySnapshotStore(settings.snapshot_dir)
