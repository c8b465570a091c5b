from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Any

import pytest

from alarmsnap.devices import AlarmHandler, Device, DeviceKey, StreamErrorHandler
from alarmsnap.errors import CaptureError, DeviceConnectionError, StoreError, SubscriptionError


class StubSession:
    def __init__(
        self,
        device: Device,
        *,
        connect_error: str | None = None,
        subscribe_error: str | None = None,
        capture_error: str | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.device = device
        self.connect_error = connect_error
        self.subscribe_error = subscribe_error
        self.capture_error = capture_error
        self.gate = gate
        self.events: list[str] = []
        self.captures: list[int] = []
        self.on_event: AlarmHandler | None = None
        self.on_error: StreamErrorHandler | None = None
        self.closed = False

    async def connect_and_login(self) -> None:
        self.events.append("connect")
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.connect_error:
            self.events.append("connect-failed")
            raise DeviceConnectionError(self.device.key, self.connect_error)
        self.events.append("connected")

    async def subscribe_alarms(self, on_event: AlarmHandler, on_error: StreamErrorHandler) -> None:
        self.events.append("subscribe")
        await asyncio.sleep(0)
        if self.subscribe_error:
            raise SubscriptionError(self.device.key, self.subscribe_error)
        self.on_event = on_event
        self.on_error = on_error

    async def capture_picture(self, channel: int) -> bytes:
        self.captures.append(channel)
        await asyncio.sleep(0)
        if self.capture_error:
            raise CaptureError(self.device.key, channel, self.capture_error)
        return b"jpeg-%d" % channel

    async def close(self) -> None:
        self.closed = True


class StubFleet:
    """Session factory that hands out one StubSession per device host."""

    def __init__(self) -> None:
        self.behaviour: dict[str, dict[str, Any]] = {}
        self.sessions: dict[str, StubSession] = {}

    def configure(self, host: str, **behaviour: Any) -> None:
        self.behaviour[host] = behaviour

    def __call__(self, device: Device) -> StubSession:
        session = StubSession(device, **self.behaviour.get(device.host, {}))
        self.sessions[device.host] = session
        return session


class RecordingStore:
    def __init__(self, *, error: str | None = None) -> None:
        self.error = error
        self.items: list[tuple[DeviceKey, int, datetime, bytes]] = []
        self._lock = threading.Lock()

    def store(self, device: DeviceKey, channel: int, timestamp: datetime, data: bytes) -> str:
        if self.error:
            raise StoreError(device, channel, self.error)
        with self._lock:
            self.items.append((device, channel, timestamp, data))
            return f"memory#{len(self.items)}"


@pytest.fixture
def fleet() -> StubFleet:
    return StubFleet()


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()
