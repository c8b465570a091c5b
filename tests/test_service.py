from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from alarmsnap.devices import AlarmEvent, Device
from alarmsnap.errors import StartupError
from alarmsnap.orchestrator import AlarmMonitor
from alarmsnap.service import create_app

from conftest import RecordingStore, StubFleet

DEVICES = [Device("cam1", 34567, "admin", "x"), Device("cam2", 34567, "admin", "x")]


def _monitor(fleet: StubFleet, store: RecordingStore) -> AlarmMonitor:
    return AlarmMonitor(DEVICES, store, session_factory=fleet, interval=3600)


@pytest.fixture
def app(fleet: StubFleet, store: RecordingStore) -> Iterator[tuple[TestClient, StubFleet]]:
    application = create_app(monitor=_monitor(fleet, store))
    with TestClient(application) as client:
        yield client, fleet


def test_root_reports_service_metadata(app: tuple[TestClient, StubFleet]) -> None:
    client, _ = app
    response = client.get("/")
    data = response.json()

    assert response.status_code == 200
    assert data["service"] == "alarmsnap"
    assert data["interval"] == 3600
    assert data["devices"] == 2


def test_health_lists_devices(app: tuple[TestClient, StubFleet]) -> None:
    client, _ = app
    response = client.get("/health")
    data = response.json()

    assert response.status_code == 200
    assert data["status"] == "healthy"
    assert [entry["device"] for entry in data["devices"]] == ["cam1:34567", "cam2:34567"]
    assert all(entry["connected"] and entry["monitored"] for entry in data["devices"])


def test_alarms_lists_active_channels(app: tuple[TestClient, StubFleet]) -> None:
    client, fleet = app
    fleet.sessions["cam2"].on_event(AlarmEvent(channel=4, is_start=True, event_type="VideoMotion"))

    data = client.get("/alarms").json()

    assert data["count"] == 1
    assert data["alarms"] == [{"device": "cam2:34567", "channel": 4}]

    fleet.sessions["cam2"].on_event(AlarmEvent(channel=4, is_start=False, event_type="VideoMotion"))
    assert client.get("/alarms").json()["count"] == 0


def test_health_is_degraded_when_a_subscription_failed(fleet: StubFleet, store: RecordingStore) -> None:
    fleet.configure("cam1", subscribe_error="rejected")
    application = create_app(monitor=_monitor(fleet, store))

    with TestClient(application) as client:
        data = client.get("/health").json()

    assert data["status"] == "degraded"
    assert data["devices"][0] == {"device": "cam1:34567", "connected": True, "monitored": False}


def test_startup_failure_aborts_the_app(fleet: StubFleet, store: RecordingStore) -> None:
    fleet.configure("cam2", connect_error="Connection refused")
    application = create_app(monitor=_monitor(fleet, store))

    with pytest.raises(StartupError):
        with TestClient(application):
            pass

    assert "subscribe" not in fleet.sessions["cam1"].events


def test_config_without_devices_fails_to_start(tmp_path: Path) -> None:
    config_path = tmp_path / "alarmsnap.yaml"
    config_path.write_text("settings:\n  tick_interval_seconds: 1\n", encoding="utf-8")
    application = create_app(config_path=str(config_path))

    with pytest.raises(StartupError, match="no devices"):
        with TestClient(application):
            pass
