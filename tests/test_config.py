from __future__ import annotations

from pathlib import Path

import pytest

from alarmsnap.config import (
    CONFIG_ENV_VAR,
    CONFIG_SEARCH_PATHS_ENV_VAR,
    Settings,
    find_config_path,
    load_settings,
)
from alarmsnap.devices import Device


def _write_config(tmp_path: Path, yaml_text: str) -> Path:
    path = tmp_path / "alarmsnap.yaml"
    path.write_text(yaml_text, encoding="utf-8")
    return path


def test_load_settings_parses_devices_and_settings(tmp_path: Path) -> None:
    yaml_text = """
    settings:
      tick_interval_seconds: 0.5
      connect_timeout_seconds: 3
      request_timeout_seconds: 4
      snapshot_dir: /var/lib/alarmsnap
    devices:
      - host: cam1
        username: admin
        password: secret
      - host: cam2
        port: 34568
        password:
    """
    config_path = _write_config(tmp_path, yaml_text)

    settings = load_settings(config_path)

    assert isinstance(settings, Settings)
    assert settings.tick_interval == 0.5
    assert settings.connect_timeout == 3
    assert settings.request_timeout == 4
    assert settings.snapshot_dir == Path("/var/lib/alarmsnap")
    assert settings.db_path is None
    assert settings.devices == (
        Device(host="cam1", port=34567, username="admin", password="secret"),
        Device(host="cam2", port=34568, username="admin", password=""),
    )


def test_empty_file_gives_defaults(tmp_path: Path) -> None:
    settings = load_settings(_write_config(tmp_path, ""))

    assert settings == Settings()
    assert settings.tick_interval == 1.0


def test_load_settings_requires_device_host(tmp_path: Path) -> None:
    yaml_text = """
    devices:
      - username: admin
    """
    with pytest.raises(ValueError, match="Field 'host'"):
        load_settings(_write_config(tmp_path, yaml_text))


def test_load_settings_requires_positive_interval(tmp_path: Path) -> None:
    yaml_text = """
    settings:
      tick_interval_seconds: 0
    """
    with pytest.raises(ValueError, match="tick_interval_seconds"):
        load_settings(_write_config(tmp_path, yaml_text))


def test_load_settings_rejects_bad_port(tmp_path: Path) -> None:
    yaml_text = """
    devices:
      - host: cam1
        port: 70000
    """
    with pytest.raises(ValueError, match="between 1 and 65535"):
        load_settings(_write_config(tmp_path, yaml_text))


def test_with_devices_appends_after_configured(tmp_path: Path) -> None:
    yaml_text = """
    settings:
      db_path: snaps.db
    devices:
      - host: cam1
    """
    settings = load_settings(_write_config(tmp_path, yaml_text)).with_devices([Device("cam9")])

    assert [device.host for device in settings.devices] == ["cam1", "cam9"]
    assert settings.db_path == Path("snaps.db")


def test_find_config_path_prefers_env_var(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write_config(tmp_path, "")
    monkeypatch.setenv(CONFIG_ENV_VAR, str(path))

    assert find_config_path() == path


def test_find_config_path_explicit_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        find_config_path(tmp_path / "missing.yaml")


def test_find_config_path_without_any_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    monkeypatch.delenv(CONFIG_SEARCH_PATHS_ENV_VAR, raising=False)
    monkeypatch.chdir(tmp_path)

    assert find_config_path() is None

    _write_config(tmp_path, "")
    found = find_config_path()
    assert found is not None
    assert found.resolve() == (tmp_path / "alarmsnap.yaml").resolve()
