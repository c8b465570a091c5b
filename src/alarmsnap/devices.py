"""Device abstractions used by the monitor."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

DEFAULT_PORT = 34567


@dataclass(slots=True, frozen=True, order=True)
class DeviceKey:
    """Stable identity of a monitored device, independent of its session."""

    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(slots=True, frozen=True)
class Device:
    host: str
    port: int = DEFAULT_PORT
    username: str = "admin"
    password: str = field(default="", repr=False)

    @property
    def key(self) -> DeviceKey:
        return DeviceKey(self.host, self.port)

    def __str__(self) -> str:
        return str(self.key)


@dataclass(slots=True, frozen=True)
class AlarmEvent:
    channel: int
    is_start: bool
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict, compare=False)


AlarmHandler = Callable[[AlarmEvent], None]
StreamErrorHandler = Callable[[Exception], None]


class DeviceSession(Protocol):
    """One authenticated connection to a device."""

    device: Device

    async def connect_and_login(self) -> None:
        ...

    async def subscribe_alarms(
        self,
        on_event: AlarmHandler,
        on_error: StreamErrorHandler,
    ) -> None:
        ...

    async def capture_picture(self, channel: int) -> bytes:
        ...

    async def close(self) -> None:
        ...


SessionFactory = Callable[[Device], DeviceSession]


def parse_device_spec(spec: str) -> Device:
    """Parse ``<username>:<password>@<hostname>[:<port>]`` into a Device.

    The password may itself contain ``:`` or ``@``; the last ``@`` separates
    the credentials from the address.
    """

    credentials, at, address = spec.rpartition("@")
    if not at:
        raise ValueError(f"Invalid device spec '{spec}': No '@' after password found")
    username, colon, password = credentials.partition(":")
    if not colon:
        raise ValueError(f"Invalid device spec '{spec}': No ':' after username found")
    if not username:
        raise ValueError(f"Invalid device spec '{spec}': Empty username")

    host, port = _split_address(spec, address)
    return Device(host=host, port=port, username=username, password=password)


def _split_address(spec: str, address: str) -> tuple[str, int]:
    if address.startswith("["):
        host, bracket, rest = address[1:].partition("]")
        if not bracket:
            raise ValueError(f"Invalid device spec '{spec}': Unterminated '[' in hostname")
        port_text = rest[1:] if rest.startswith(":") else None
        if rest and port_text is None:
            raise ValueError(f"Invalid device spec '{spec}': Garbage after hostname")
    else:
        host, colon, port_text = address.partition(":")
        if not colon:
            port_text = None

    if not host:
        raise ValueError(f"Invalid device spec '{spec}': Empty hostname")
    if port_text is None:
        return host, DEFAULT_PORT
    try:
        port = int(port_text)
    except ValueError as exc:
        raise ValueError(
            f"Invalid device spec '{spec}': Failed to parse port number in '{port_text}'"
        ) from exc
    if not 0 < port < 65536:
        raise ValueError(f"Invalid device spec '{spec}': Port {port} out of range")
    return host, port
