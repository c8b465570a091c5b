"""Configuration loading helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Iterable

import yaml

from .devices import DEFAULT_PORT, Device

CONFIG_ENV_VAR = "ALARMSNAP_CONFIG_PATH"
CONFIG_SEARCH_PATHS_ENV_VAR = "ALARMSNAP_CONFIG_SEARCH_PATHS"
DEFAULT_CONFIG_SEARCH_PATHS: tuple[Path, ...] = (
    Path("alarmsnap.yaml"),
    Path("config/alarmsnap.yaml"),
)


@dataclass(slots=True, frozen=True)
class Settings:
    devices: tuple[Device, ...] = ()
    tick_interval: float = 1.0
    connect_timeout: float = 10.0
    request_timeout: float = 10.0
    snapshot_dir: Path = field(default_factory=lambda: Path("."))
    db_path: Path | None = None

    def with_devices(self, extra: Iterable[Device]) -> Settings:
        return replace(self, devices=self.devices + tuple(extra))


def load_settings(path: Path) -> Settings:
    """Load configuration from a YAML document."""

    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Configuration root must be a mapping")
    settings_raw = raw.get("settings") or {}
    devices_raw = raw.get("devices") or []
    if not isinstance(devices_raw, list):
        raise ValueError("Field 'devices' must be a list")

    db_raw = settings_raw.get("db_path")
    return Settings(
        devices=tuple(_parse_device(entry, index) for index, entry in enumerate(devices_raw)),
        tick_interval=_positive_float(settings_raw, "tick_interval_seconds", 1.0),
        connect_timeout=_positive_float(settings_raw, "connect_timeout_seconds", 10.0),
        request_timeout=_positive_float(settings_raw, "request_timeout_seconds", 10.0),
        snapshot_dir=Path(str(settings_raw.get("snapshot_dir") or ".")).expanduser(),
        db_path=Path(str(db_raw)).expanduser() if db_raw else None,
    )


def find_config_path(
    override: str | os.PathLike[str] | None = None,
    extra_search_paths: Iterable[str | os.PathLike[str]] | None = None,
) -> Path | None:
    """Locate the configuration file, or None when nothing is configured.

    An explicit override (argument or environment variable) must exist.
    """

    candidate = override or os.getenv(CONFIG_ENV_VAR)
    if candidate:
        path = _normalize_path(candidate)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found at {path}")
        return path

    search_candidates: list[Path] = []
    env_search = os.getenv(CONFIG_SEARCH_PATHS_ENV_VAR)
    if env_search:
        for raw in env_search.split(os.pathsep):
            cleaned = raw.strip()
            if cleaned:
                search_candidates.append(Path(cleaned))
    if extra_search_paths:
        search_candidates.extend(Path(str(configured)) for configured in extra_search_paths)
    search_candidates.extend(DEFAULT_CONFIG_SEARCH_PATHS)

    for candidate_path in search_candidates:
        path = _normalize_path(candidate_path)
        if path.exists():
            return path
    return None


def _parse_device(entry: Any, index: int) -> Device:
    if not isinstance(entry, dict):
        raise ValueError(f"devices[{index}] must be a mapping")
    port = _require_int(entry, "port") if "port" in entry else DEFAULT_PORT
    if not 0 < port < 65536:
        raise ValueError(f"Field 'port' of devices[{index}] must be between 1 and 65535")
    password = entry.get("password", "")
    if password is None:
        password = ""
    return Device(
        host=_require_str(entry, "host"),
        port=port,
        username=_require_str(entry, "username") if "username" in entry else "admin",
        password=str(password),
    )


def _positive_float(source: dict[str, Any], key: str, default: float) -> float:
    value = _require_float(source, key) if key in source else default
    if value <= 0:
        raise ValueError(f"settings.{key} must be > 0")
    return value


def _require_str(source: dict[str, Any], key: str) -> str:
    value = source.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Field '{key}' must be a non-empty string")
    return value.strip()


def _require_int(source: dict[str, Any], key: str) -> int:
    value = source.get(key)
    if value is None:
        raise ValueError(f"Field '{key}' must be provided")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Field '{key}' must be an integer") from exc


def _require_float(source: dict[str, Any], key: str) -> float:
    value = source.get(key)
    if value is None:
        raise ValueError(f"Field '{key}' must be provided")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Field '{key}' must be numeric") from exc


def _normalize_path(candidate: str | os.PathLike[str]) -> Path:
    path = Path(candidate).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    return path
