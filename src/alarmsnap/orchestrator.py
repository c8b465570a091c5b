"""Alarm monitoring orchestration."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Any, Callable, Iterable

from .barrier import ConnectionBarrier, close_quietly
from .devices import AlarmEvent, Device, DeviceKey, DeviceSession, SessionFactory
from .dvrip import DVRIPClient
from .errors import CaptureError, StoreError, SubscriptionError
from .log import log_event
from .scheduler import DEFAULT_INTERVAL, SnapshotScheduler
from .store import SnapshotStore
from .tracker import ActiveAlarm, AlarmStateTracker

Clock = Callable[[], datetime]


def _local_now() -> datetime:
    return datetime.now().astimezone()


class AlarmMonitor:
    """Connects every device, follows their alarms and snapshots alarming channels.

    Startup is all-or-nothing: if any device fails to connect, nothing is
    subscribed and ``start`` raises ``StartupError``. Once connected, a
    device whose alarm stream fails is dropped from monitoring while the
    others carry on.
    """

    def __init__(
        self,
        devices: Iterable[Device],
        store: SnapshotStore,
        *,
        session_factory: SessionFactory,
        interval: float = DEFAULT_INTERVAL,
        clock: Clock | None = None,
    ) -> None:
        self.devices = tuple(devices)
        self.tracker = AlarmStateTracker()
        self.scheduler = SnapshotScheduler(self.tracker, self.request_capture, interval=interval)
        self._store = store
        self._session_factory = session_factory
        self._clock = clock or _local_now
        self._sessions: dict[DeviceKey, DeviceSession] = {}
        self._monitored: set[DeviceKey] = set()
        self._captures: set[asyncio.Task[None]] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stopped = asyncio.Event()
        self.captures_stored = 0
        self.captures_failed = 0

    @property
    def connected(self) -> frozenset[DeviceKey]:
        return frozenset(self._sessions)

    @property
    def monitored(self) -> frozenset[DeviceKey]:
        return frozenset(self._monitored)

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stopped.clear()
        result = await ConnectionBarrier(self.devices, self._session_factory).wait()
        result.raise_for_failures()

        self._sessions = result.sessions
        await asyncio.gather(*(self._subscribe(key, session) for key, session in self._sessions.items()))
        self.scheduler.start()
        log_event(
            "monitor.started",
            devices=len(self._sessions),
            monitored=sorted(str(key) for key in self._monitored),
        )

    async def run_forever(self) -> None:
        try:
            await self.start()
            await self._stopped.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        await self.scheduler.stop()
        captures = list(self._captures)
        for task in captures:
            task.cancel()
        await asyncio.gather(*captures, return_exceptions=True)
        sessions, self._sessions = self._sessions, {}
        await asyncio.gather(*(close_quietly(session) for session in sessions.values()))
        self._monitored.clear()
        self._stopped.set()
        log_event("monitor.stopped", stored=self.captures_stored, failed=self.captures_failed)

    def request_stop(self) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._stopped.set)

    async def drain(self) -> None:
        """Wait for every capture issued so far to finish."""

        while self._captures:
            await asyncio.gather(*list(self._captures), return_exceptions=True)

    def handle_alarm(self, device: DeviceKey, event: AlarmEvent) -> None:
        if event.is_start:
            if self.tracker.record_alarm_start(device, event.channel):
                log_event("alarm.start", device=str(device), channel=event.channel, type=event.event_type)
                try:
                    self.request_capture(ActiveAlarm(device, event.channel))
                except CaptureError as exc:
                    self._capture_failed(exc)
        elif self.tracker.record_alarm_end(device, event.channel):
            log_event("alarm.end", device=str(device), channel=event.channel, type=event.event_type)

    def handle_stream_error(self, device: DeviceKey, error: Exception) -> None:
        self._monitored.discard(device)
        cleared = self.tracker.clear_device(device)
        log_event(
            "subscription.failed",
            level=logging.WARNING,
            device=str(device),
            reason=str(error),
            cleared=[alarm.channel for alarm in cleared],
        )

    def request_capture(self, alarm: ActiveAlarm) -> None:
        """Launch one capture of ``alarm`` without waiting for it."""

        session = self._sessions.get(alarm.device)
        if session is None or self._loop is None:
            raise CaptureError(alarm.device, alarm.channel, "device is not connected")
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._spawn_capture(session, alarm)
        else:
            self._loop.call_soon_threadsafe(self._spawn_capture, session, alarm)

    def status(self) -> dict[str, Any]:
        return {
            "devices": [
                {
                    "device": str(device.key),
                    "connected": device.key in self._sessions,
                    "monitored": device.key in self._monitored,
                }
                for device in self.devices
            ],
            "active_alarms": [
                {"device": str(alarm.device), "channel": alarm.channel}
                for alarm in sorted(self.tracker.snapshot())
            ],
            "interval": self.scheduler.interval,
            "ticks": self.scheduler.ticks,
            "captures_in_flight": len(self._captures),
            "captures_stored": self.captures_stored,
            "captures_failed": self.captures_failed,
        }

    async def _subscribe(self, device: DeviceKey, session: DeviceSession) -> None:
        # handle_stream_error may discard the device before subscribe_alarms returns.
        self._monitored.add(device)
        try:
            await session.subscribe_alarms(
                partial(self.handle_alarm, device),
                partial(self.handle_stream_error, device),
            )
        except SubscriptionError as exc:
            self._monitored.discard(device)
            log_event("subscription.failed", level=logging.WARNING, device=str(device), reason=exc.reason)
            return
        if device in self._monitored:
            log_event("subscription.started", device=str(device))

    def _spawn_capture(self, session: DeviceSession, alarm: ActiveAlarm) -> None:
        task = asyncio.get_running_loop().create_task(self._capture(session, alarm))
        self._captures.add(task)
        task.add_done_callback(self._captures.discard)

    async def _capture(self, session: DeviceSession, alarm: ActiveAlarm) -> None:
        timestamp = self._clock()
        try:
            data = await session.capture_picture(alarm.channel)
        except (RuntimeError, OSError) as exc:
            self._capture_failed(
                exc if isinstance(exc, CaptureError) else CaptureError(alarm.device, alarm.channel, str(exc))
            )
            return

        try:
            reference = await asyncio.to_thread(
                self._store.store, alarm.device, alarm.channel, timestamp, data
            )
        except (RuntimeError, OSError) as exc:
            self._capture_failed(
                exc if isinstance(exc, StoreError) else StoreError(alarm.device, alarm.channel, str(exc))
            )
            return

        self.captures_stored += 1
        log_event(
            "capture.stored",
            device=str(alarm.device),
            channel=alarm.channel,
            size=len(data),
            location=reference,
        )

    def _capture_failed(self, error: CaptureError | StoreError) -> None:
        self.captures_failed += 1
        event = "store.failed" if isinstance(error, StoreError) else "capture.failed"
        log_event(
            event,
            level=logging.WARNING,
            device=str(error.device),
            channel=error.channel,
            reason=error.reason,
        )


def dvrip_session_factory(*, connect_timeout: float, request_timeout: float) -> SessionFactory:
    def factory(device: Device) -> DeviceSession:
        return DVRIPClient(device, connect_timeout=connect_timeout, request_timeout=request_timeout)

    return factory

