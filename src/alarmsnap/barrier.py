"""All-or-nothing connection phase over every configured device."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable

from .devices import Device, DeviceKey, DeviceSession, SessionFactory
from .errors import DeviceConnectionError, StartupError
from .log import log_event


@dataclass(slots=True)
class ConnectionOutcome:
    device: Device
    session: DeviceSession | None = None
    error: DeviceConnectionError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class BarrierResult:
    outcomes: list[ConnectionOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.outcomes) and all(outcome.ok for outcome in self.outcomes)

    @property
    def failures(self) -> list[DeviceConnectionError]:
        return [outcome.error for outcome in self.outcomes if outcome.error is not None]

    @property
    def sessions(self) -> dict[DeviceKey, DeviceSession]:
        return {
            outcome.device.key: outcome.session
            for outcome in self.outcomes
            if outcome.ok and outcome.session is not None
        }

    def raise_for_failures(self) -> None:
        if not self.ok:
            raise StartupError(self.failures)


class ConnectionBarrier:
    """Connects to every device concurrently and reports once all have answered.

    A failing device does not short-circuit the others: the barrier keeps
    waiting so the caller gets the complete list of failing devices in one
    report. Any failure makes the whole result a failure, and the sessions
    that did connect are closed again before the result is returned.

    There is no timeout here; a connect that never completes keeps the
    barrier waiting. Bounding connect time is up to the session.
    """

    def __init__(self, devices: Iterable[Device], session_factory: SessionFactory) -> None:
        self._devices = list(devices)
        self._session_factory = session_factory

    async def wait(self) -> BarrierResult:
        outcomes = await asyncio.gather(*(self._connect(device) for device in self._devices))
        result = BarrierResult(outcomes=list(outcomes))
        if not result.ok:
            await self._release(result)
        log_event(
            "connect.done",
            devices=len(result.outcomes),
            failed=[str(failure.device) for failure in result.failures],
            ok=result.ok,
        )
        return result

    async def _connect(self, device: Device) -> ConnectionOutcome:
        session = self._session_factory(device)
        log_event("connect.start", device=str(device))
        try:
            await session.connect_and_login()
        except DeviceConnectionError as exc:
            error = exc
        except Exception as exc:  # noqa: BLE001 - every device must report an outcome
            error = DeviceConnectionError(device.key, str(exc) or type(exc).__name__)
        else:
            log_event("connect.success", device=str(device))
            return ConnectionOutcome(device=device, session=session)

        log_event("connect.failed", level=logging.WARNING, device=str(device), reason=error.reason)
        await close_quietly(session)
        return ConnectionOutcome(device=device, error=error)

    async def _release(self, result: BarrierResult) -> None:
        sessions = [outcome.session for outcome in result.outcomes if outcome.session is not None]
        await asyncio.gather(*(close_quietly(session) for session in sessions))


async def close_quietly(session: DeviceSession) -> None:
    try:
        await session.close()
    except Exception as exc:  # noqa: BLE001 - cleanup must not mask the outcome
        log_event("session.close_failed", level=logging.WARNING, device=str(session.device), reason=str(exc))
