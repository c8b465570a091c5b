"""Error taxonomy shared by the monitor and its collaborators."""

from __future__ import annotations

from typing import Iterable

from .devices import DeviceKey


class AlarmSnapError(RuntimeError):
    """Base class for every failure the monitor reports."""


class DVRIPError(AlarmSnapError):
    """Raised when a recorder violates or rejects the DVRIP protocol."""


class DeviceConnectionError(AlarmSnapError):
    """A session for a device could not be established or authenticated."""

    def __init__(self, device: DeviceKey, reason: str) -> None:
        super().__init__(f"Failed to connect to {device}: {reason}")
        self.device = device
        self.reason = reason


class SubscriptionError(AlarmSnapError):
    """The alarm stream of an already connected device failed."""

    def __init__(self, device: DeviceKey, reason: str) -> None:
        super().__init__(f"Failed to monitor alarms on {device}: {reason}")
        self.device = device
        self.reason = reason


class CaptureError(AlarmSnapError):
    def __init__(self, device: DeviceKey, channel: int, reason: str) -> None:
        super().__init__(f"Failed to capture {device} channel {channel}: {reason}")
        self.device = device
        self.channel = channel
        self.reason = reason


class StoreError(AlarmSnapError):
    def __init__(self, device: DeviceKey, channel: int, reason: str) -> None:
        super().__init__(f"Failed to store snapshot of {device} channel {channel}: {reason}")
        self.device = device
        self.channel = channel
        self.reason = reason


class StartupError(AlarmSnapError):
    """Aggregate of every connection failure seen while starting up."""

    def __init__(self, failures: Iterable[DeviceConnectionError]) -> None:
        self.failures = list(failures)
        rendered = "; ".join(str(failure) for failure in self.failures) or "no devices"
        super().__init__(f"Monitoring did not start ({len(self.failures)} failed): {rendered}")
