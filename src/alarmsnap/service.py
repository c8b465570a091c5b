"""FastAPI status endpoint wrapped around a running monitor."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Iterable

from fastapi import FastAPI, HTTPException

from .config import Settings, find_config_path, load_settings
from .errors import StartupError
from .log import SERVICE_NAME, configure_logging, log_event
from .orchestrator import AlarmMonitor, dvrip_session_factory
from .store import create_store


def build_monitor(settings: Settings) -> AlarmMonitor:
    return AlarmMonitor(
        settings.devices,
        create_store(settings),
        session_factory=dvrip_session_factory(
            connect_timeout=settings.connect_timeout,
            request_timeout=settings.request_timeout,
        ),
        interval=settings.tick_interval,
    )


def create_app(
    *,
    settings: Settings | None = None,
    monitor: AlarmMonitor | None = None,
    config_path: str | None = None,
    config_search_paths: Iterable[str | os.PathLike[str]] | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application."""

    configure_logging()

    state: dict[str, Any] = {
        "settings": settings,
        "monitor": monitor,
        "config_path": config_path,
        "config_search_paths": tuple(config_search_paths or ()),
    }

    @asynccontextmanager
    async def _lifespan(app: FastAPI):  # pragma: no cover - exercised via tests
        if state["monitor"] is None:
            if state["settings"] is None:
                state["settings"] = _load(state)
            state["monitor"] = build_monitor(state["settings"])

        active: AlarmMonitor = state["monitor"]
        try:
            await active.start()
        except StartupError as exc:
            app.state.startup_error = exc
            log_event("service.start_failed", level=logging.ERROR, reason=str(exc))
            await active.stop()
            raise
        try:
            yield
        finally:
            await active.stop()

    app = FastAPI(
        title="alarmsnap",
        description="Snapshot every alarming channel of a recorder fleet once per second.",
        version="1.0.0",
        lifespan=_lifespan,
    )

    def _require_monitor() -> AlarmMonitor:
        active = state.get("monitor")
        if active is None:
            raise HTTPException(status_code=503, detail={"message": "Monitor not running"})
        return active

    @app.get("/")
    async def root() -> dict[str, Any]:
        active = state.get("monitor")
        return {
            "service": SERVICE_NAME,
            "version": app.version,
            "config_path": state.get("config_path"),
            "interval": active.scheduler.interval if active else None,
            "devices": len(active.devices) if active else 0,
        }

    @app.get("/health")
    async def health() -> dict[str, Any]:
        status = _require_monitor().status()
        devices = status["devices"]
        healthy = bool(devices) and all(entry["connected"] and entry["monitored"] for entry in devices)
        return {
            "service": SERVICE_NAME,
            "status": "healthy" if healthy else "degraded",
            "devices": devices,
            "captures_stored": status["captures_stored"],
            "captures_failed": status["captures_failed"],
        }

    @app.get("/alarms")
    async def alarms() -> dict[str, Any]:
        status = _require_monitor().status()
        return {
            "service": SERVICE_NAME,
            "count": len(status["active_alarms"]),
            "alarms": status["active_alarms"],
        }

    return app


def _load(state: dict[str, Any]) -> Settings:
    path = find_config_path(state["config_path"], state["config_search_paths"])
    if path is None:
        log_event("config.defaults")
        return Settings()
    try:
        settings = load_settings(path)
    except Exception:
        log_event("config.load_failed", level=logging.ERROR, path=str(path))
        raise
    state["config_path"] = str(path)
    log_event("config.loaded", path=str(path), devices=len(settings.devices))
    return settings
