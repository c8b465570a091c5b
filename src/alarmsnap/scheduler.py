"""Fixed-interval fan-out of snapshot captures over the active alarms."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Callable

from .log import log_event
from .tracker import ActiveAlarm, AlarmStateTracker

DEFAULT_INTERVAL = 1.0

CaptureLauncher = Callable[[ActiveAlarm], None]


class SnapshotScheduler:
    """Fires ``capture`` for every active alarm once per ``interval``.

    Deadlines are absolute on the loop clock (start + k * interval), so the
    time spent inside a tick or inside captures never pushes later ticks
    back. ``capture`` must only launch the work and return; a deadline that
    is already past when the loop wakes up is skipped, not replayed.
    """

    def __init__(
        self,
        tracker: AlarmStateTracker,
        capture: CaptureLauncher,
        *,
        interval: float = DEFAULT_INTERVAL,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._tracker = tracker
        self._capture = capture
        self.interval = interval
        self.ticks = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="snapshot-scheduler")
        log_event("scheduler.started", interval=self.interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        log_event("scheduler.stopped", ticks=self.ticks)

    def tick(self) -> list[ActiveAlarm]:
        """Capture every alarm active right now; returns the alarms fanned out to."""

        self.ticks += 1
        alarms = self._tracker.snapshot()
        for alarm in alarms:
            try:
                self._capture(alarm)
            except RuntimeError as exc:
                log_event(
                    "tick.capture_not_started",
                    level=logging.WARNING,
                    device=str(alarm.device),
                    channel=alarm.channel,
                    reason=str(exc),
                )
        if alarms:
            log_event("tick.fanout", level=logging.DEBUG, tick=self.ticks, captures=len(alarms))
        return alarms

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        while True:
            deadline += self.interval
            lag = loop.time() - deadline
            if lag > 0:
                skipped = int(lag // self.interval) + 1
                deadline += skipped * self.interval
                log_event("tick.skipped", level=logging.DEBUG, skipped=skipped)
            await asyncio.sleep(deadline - loop.time())
            try:
                self.tick()
            except Exception as exc:  # noqa: BLE001 - one bad tick must not end the ticker
                log_event("tick.failed", level=logging.ERROR, tick=self.ticks, reason=repr(exc))
