from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import uvicorn

from alarmsnap import cli, service
from alarmsnap.config import CONFIG_ENV_VAR, CONFIG_SEARCH_PATHS_ENV_VAR, Settings
from alarmsnap.errors import StartupError
from alarmsnap.orchestrator import AlarmMonitor

from conftest import RecordingStore, StubFleet


@pytest.fixture(autouse=True)
def _isolated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    monkeypatch.delenv(CONFIG_SEARCH_PATHS_ENV_VAR, raising=False)
    monkeypatch.chdir(tmp_path)


def test_run_without_devices_returns_1() -> None:
    assert cli.run([]) == cli.EXIT_BAD_COMMANDLINE


def test_run_with_bad_spec_returns_1() -> None:
    assert cli.run(["admin@cam1"]) == cli.EXIT_BAD_COMMANDLINE


def test_run_with_bad_interval_returns_1() -> None:
    assert cli.run(["--interval", "0", "admin:x@cam1"]) == cli.EXIT_BAD_COMMANDLINE


def test_run_returns_2_when_a_device_fails_to_connect(monkeypatch: pytest.MonkeyPatch) -> None:
    fleet = StubFleet()
    fleet.configure("cam2", connect_error="Connection refused")
    built: list[Settings] = []

    def fake_build_monitor(settings: Settings) -> AlarmMonitor:
        built.append(settings)
        return AlarmMonitor(settings.devices, RecordingStore(), session_factory=fleet, interval=settings.tick_interval)

    monkeypatch.setattr(cli, "build_monitor", fake_build_monitor)

    code = cli.run(["admin:x@cam1", "admin:y@cam2:34568", "--interval", "0.5"])

    assert code == cli.EXIT_START_FAILED
    assert [str(device) for device in built[0].devices] == ["cam1:34567", "cam2:34568"]
    assert built[0].tick_interval == 0.5
    assert "subscribe" not in fleet.sessions["cam1"].events


def test_resolve_settings_merges_config_and_flags(tmp_path: Path) -> None:
    config_path = tmp_path / "alarmsnap.yaml"
    config_path.write_text("devices:\n  - host: cam1\n", encoding="utf-8")
    args = cli.build_parser().parse_args(["--db", "snaps.db", "admin:x@cam2"])

    settings = cli.resolve_settings(args)

    assert [device.host for device in settings.devices] == ["cam1", "cam2"]
    assert settings.db_path == Path("snaps.db")


def test_run_http_serve_calls_uvicorn(monkeypatch: pytest.MonkeyPatch) -> None:
    called = {}

    def fake_run(app, host, port, log_level):
        called["host"] = host
        called["port"] = port
        called["log_level"] = log_level
        return None

    monkeypatch.setattr(uvicorn, "run", fake_run)

    code = cli.run(["--http-serve", "--http-port", "9999", "--log-level", "DEBUG", "admin:x@cam1"])

    assert code == 0
    assert called == {"host": "127.0.0.1", "port": 9999, "log_level": "debug"}


def test_run_http_serve_returns_2_when_startup_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    fleet = StubFleet()
    fleet.configure("cam1", connect_error="Connection refused")

    def fake_build_monitor(settings: Settings) -> AlarmMonitor:
        return AlarmMonitor(settings.devices, RecordingStore(), session_factory=fleet, interval=3600)

    def fake_run(app, host, port, log_level):
        async def boot() -> None:
            async with app.router.lifespan_context(app):
                pass

        with pytest.raises(StartupError):
            asyncio.run(boot())
        raise SystemExit(3)

    monkeypatch.setattr(service, "build_monitor", fake_build_monitor)
    monkeypatch.setattr(uvicorn, "run", fake_run)

    code = cli.run(["--http-serve", "admin:x@cam1"])

    assert code == cli.EXIT_START_FAILED
