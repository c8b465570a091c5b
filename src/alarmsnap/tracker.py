"""Set of (device, channel) pairs currently under alarm."""

from __future__ import annotations

import threading
from dataclasses import dataclass

from .devices import DeviceKey


@dataclass(slots=True, frozen=True, order=True)
class ActiveAlarm:
    device: DeviceKey
    channel: int

    def __str__(self) -> str:
        return f"{self.device}/ch{self.channel}"


class AlarmStateTracker:
    """Thread-safe record of which channels are alarming right now.

    Alarm streams of every device write into it and the snapshot scheduler
    reads copies out of it. Each mutation and each ``snapshot()`` holds the
    lock for exactly one set operation, so a reader never sees half of a
    change; the returned copies are iterated without the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: set[ActiveAlarm] = set()

    def record_alarm_start(self, device: DeviceKey, channel: int) -> bool:
        """Mark the pair active. Returns True if it was not active before."""

        alarm = ActiveAlarm(device, channel)
        with self._lock:
            if alarm in self._active:
                return False
            self._active.add(alarm)
            return True

    def record_alarm_end(self, device: DeviceKey, channel: int) -> bool:
        """Mark the pair idle. Returns True if it was active before."""

        alarm = ActiveAlarm(device, channel)
        with self._lock:
            if alarm not in self._active:
                return False
            self._active.discard(alarm)
            return True

    def clear_device(self, device: DeviceKey) -> list[ActiveAlarm]:
        """Drop every active alarm of one device, returning what was removed."""

        with self._lock:
            removed = [alarm for alarm in self._active if alarm.device == device]
            self._active.difference_update(removed)
        return removed

    def snapshot(self) -> list[ActiveAlarm]:
        with self._lock:
            return list(self._active)

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)

    def __contains__(self, alarm: object) -> bool:
        with self._lock:
            return alarm in self._active
