"""Async client for the NetSurveillance DVRIP protocol spoken by the recorders."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import struct
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .devices import AlarmEvent, AlarmHandler, Device, StreamErrorHandler
from .errors import CaptureError, DeviceConnectionError, DVRIPError, SubscriptionError
from .log import log_event

HEADER = struct.Struct("<BB2xIIBBHI")
HEAD_MAGIC = 0xFF
JSON_TERMINATOR = b"\n\x00"

LOGIN_REQ = 1000
LOGIN_RSP = 1001
LOGOUT_REQ = 1002
KEEPALIVE_REQ = 1006
KEEPALIVE_RSP = 1007
GUARD_REQ = 1500
GUARD_RSP = 1501
ALARM_REQ = 1504
NET_SNAP_REQ = 1560
NET_SNAP_RSP = 1561

OK_CODES = frozenset({100, 515})
DEFAULT_ALIVE_INTERVAL = 20

OpenConnection = Callable[[str, int], Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


@dataclass(slots=True, frozen=True)
class Frame:
    session_id: int
    sequence: int
    msg_id: int
    data: bytes

    def json(self) -> dict[str, Any]:
        text = self.data.rstrip(b"\x00").rstrip(b"\n").decode("utf-8", errors="replace")
        try:
            decoded = json.loads(text) if text else {}
        except json.JSONDecodeError as exc:
            raise DVRIPError(f"message {self.msg_id} is not valid JSON") from exc
        if not isinstance(decoded, dict):
            raise DVRIPError(f"message {self.msg_id} is not a JSON object")
        return decoded


def sofia_hash(password: str) -> str:
    """Password digest the recorders expect in the login request."""

    digest = hashlib.md5(password.encode("utf-8")).digest()  # noqa: S324 - protocol-mandated
    chars: list[str] = []
    for index in range(8):
        n = (digest[2 * index] + digest[2 * index + 1]) % 62
        if n > 35:
            n += 61
        elif n > 9:
            n += 55
        else:
            n += 48
        chars.append(chr(n))
    return "".join(chars)


def encode_frame(session_id: int, sequence: int, msg_id: int, payload: bytes) -> bytes:
    return HEADER.pack(HEAD_MAGIC, 0, session_id, sequence, 0, 0, msg_id, len(payload)) + payload


def encode_json(body: dict[str, Any]) -> bytes:
    return json.dumps(body).encode("utf-8") + JSON_TERMINATOR


async def read_frame(reader: asyncio.StreamReader) -> tuple[Frame, int, int]:
    """Read one packet; returns the frame plus its (total, current) packet counters."""

    header = await reader.readexactly(HEADER.size)
    head, _version, session_id, sequence, total, current, msg_id, length = HEADER.unpack(header)
    if head != HEAD_MAGIC:
        raise DVRIPError(f"bad packet head 0x{head:02x}")
    data = await reader.readexactly(length) if length else b""
    return Frame(session_id, sequence, msg_id, data), total, current


def parse_alarm(frame: Frame) -> AlarmEvent:
    body = frame.json()
    info = body.get("AlarmInfo")
    if not isinstance(info, dict):
        raise DVRIPError("alarm message without AlarmInfo")
    try:
        channel = int(info["Channel"])
    except (KeyError, TypeError, ValueError) as exc:
        raise DVRIPError("alarm message without a channel number") from exc
    status = str(info.get("Status", "")).lower()
    if status not in ("start", "stop"):
        raise DVRIPError(f"alarm message with unknown status '{info.get('Status')}'")
    return AlarmEvent(
        channel=channel,
        is_start=status == "start",
        event_type=str(info.get("Event", "")),
        payload=body,
    )


class DVRIPClient:
    """One logged-in DVRIP connection to a recorder.

    A reader task owns the socket's read side: replies are handed to the
    request waiting for them, and unsolicited alarm messages go to the
    handler registered by ``subscribe_alarms``. Requests are serialized so
    that replies can be matched by message id.
    """

    def __init__(
        self,
        device: Device,
        *,
        connect_timeout: float = 10.0,
        request_timeout: float = 10.0,
        open_connection: OpenConnection | None = None,
    ) -> None:
        self.device = device
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.alive_interval = DEFAULT_ALIVE_INTERVAL
        self._open_connection = open_connection or asyncio.open_connection
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._session_id = 0
        self._sequence = 0
        self._request_lock = asyncio.Lock()
        self._pending: dict[int, asyncio.Future[Frame]] = {}
        self._partial: dict[int, list[bytes]] = {}
        self._reader_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._on_event: AlarmHandler | None = None
        self._on_error: StreamErrorHandler | None = None
        self._closing = False

    @property
    def session_hex(self) -> str:
        return f"0x{self._session_id:08X}"

    @property
    def connected(self) -> bool:
        return self._reader_task is not None and not self._reader_task.done()

    async def connect_and_login(self) -> None:
        key = self.device.key
        try:
            self._reader, self._writer = await asyncio.wait_for(
                self._open_connection(self.device.host, self.device.port),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise DeviceConnectionError(key, f"connect timed out after {self.connect_timeout}s") from exc
        except OSError as exc:
            raise DeviceConnectionError(key, str(exc) or type(exc).__name__) from exc

        self._closing = False
        self._reader_task = asyncio.get_running_loop().create_task(
            self._read_loop(), name=f"dvrip-reader-{key}"
        )
        try:
            body = await self._request_json(
                LOGIN_REQ,
                {
                    "EncryptType": "MD5",
                    "LoginType": "DVRIP-Web",
                    "PassWord": sofia_hash(self.device.password),
                    "UserName": self.device.username,
                },
                LOGIN_RSP,
            )
        except (DVRIPError, OSError) as exc:
            await self.close()
            raise DeviceConnectionError(key, str(exc)) from exc

        ret = body.get("Ret")
        if ret not in OK_CODES:
            await self.close()
            raise DeviceConnectionError(key, f"login rejected (Ret={ret})")
        try:
            self._session_id = int(str(body.get("SessionID", "0")), 16)
        except ValueError as exc:
            await self.close()
            raise DeviceConnectionError(key, f"bad session id {body.get('SessionID')!r}") from exc
        try:
            self.alive_interval = int(body.get("AliveInterval") or DEFAULT_ALIVE_INTERVAL)
        except (TypeError, ValueError) as exc:
            await self.close()
            raise DeviceConnectionError(key, f"bad alive interval {body.get('AliveInterval')!r}") from exc
        self._keepalive_task = asyncio.get_running_loop().create_task(
            self._keepalive(), name=f"dvrip-keepalive-{key}"
        )
        log_event("dvrip.logged_in", device=str(key), session=self.session_hex)

    async def subscribe_alarms(self, on_event: AlarmHandler, on_error: StreamErrorHandler) -> None:
        key = self.device.key
        self._on_event = on_event
        self._on_error = on_error
        try:
            body = await self._request_json(
                GUARD_REQ, {"Name": "", "SessionID": self.session_hex}, GUARD_RSP
            )
        except (DVRIPError, OSError) as exc:
            self._on_event = self._on_error = None
            raise SubscriptionError(key, str(exc)) from exc
        ret = body.get("Ret")
        if ret not in OK_CODES:
            self._on_event = self._on_error = None
            raise SubscriptionError(key, f"alarm subscription rejected (Ret={ret})")

    async def capture_picture(self, channel: int) -> bytes:
        key = self.device.key
        try:
            frame = await self._request(
                NET_SNAP_REQ,
                encode_json(
                    {"Name": "OPSNAP", "OPSNAP": {"Channel": channel}, "SessionID": self.session_hex}
                ),
                NET_SNAP_RSP,
            )
        except (DVRIPError, OSError) as exc:
            raise CaptureError(key, channel, str(exc)) from exc
        if not frame.data:
            raise CaptureError(key, channel, "empty snapshot")
        if frame.data.startswith(b"{"):
            try:
                ret = frame.json().get("Ret")
            except DVRIPError:
                ret = None
            raise CaptureError(key, channel, f"snapshot rejected (Ret={ret})")
        return frame.data

    async def close(self) -> None:
        self._closing = True
        for task in (self._keepalive_task, self._reader_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._keepalive_task = self._reader_task = None
        self._fail_pending(DVRIPError("connection closed"))

        writer, self._writer = self._writer, None
        if writer is None:
            return
        if self._session_id:
            with suppress(OSError):
                writer.write(
                    self._next_frame(
                        LOGOUT_REQ, encode_json({"Name": "", "SessionID": self.session_hex})
                    )
                )
        writer.close()
        with suppress(OSError):
            await writer.wait_closed()
        self._session_id = 0

    async def _request_json(self, msg_id: int, body: dict[str, Any], reply_id: int) -> dict[str, Any]:
        frame = await self._request(msg_id, encode_json(body), reply_id)
        return frame.json()

    async def _request(self, msg_id: int, payload: bytes, reply_id: int) -> Frame:
        async with self._request_lock:
            if self._writer is None or not self.connected:
                raise DVRIPError("not connected")
            future: asyncio.Future[Frame] = asyncio.get_running_loop().create_future()
            self._pending[reply_id] = future
            try:
                self._writer.write(self._next_frame(msg_id, payload))
                await self._writer.drain()
                return await asyncio.wait_for(future, timeout=self.request_timeout)
            except asyncio.TimeoutError as exc:
                raise DVRIPError(f"no reply to message {msg_id} after {self.request_timeout}s") from exc
            finally:
                self._pending.pop(reply_id, None)

    def _next_frame(self, msg_id: int, payload: bytes) -> bytes:
        frame = encode_frame(self._session_id, self._sequence, msg_id, payload)
        self._sequence += 1
        return frame

    async def _read_loop(self) -> None:
        assert self._reader is not None
        try:
            while True:
                frame, total, current = await read_frame(self._reader)
                if total > 1:
                    chunks = self._partial.setdefault(frame.msg_id, [])
                    chunks.append(frame.data)
                    if current + 1 < total:
                        continue
                    frame = Frame(
                        frame.session_id,
                        frame.sequence,
                        frame.msg_id,
                        b"".join(self._partial.pop(frame.msg_id)),
                    )
                self._dispatch(frame)
        except asyncio.CancelledError:
            raise
        except (asyncio.IncompleteReadError, DVRIPError, OSError) as exc:
            reason = "connection closed by device" if isinstance(exc, asyncio.IncompleteReadError) else str(exc)
            self._fail_pending(DVRIPError(reason))
            if not self._closing:
                self._report_stream_error(reason)

    def _dispatch(self, frame: Frame) -> None:
        if frame.msg_id == ALARM_REQ:
            self._dispatch_alarm(frame)
            return
        future = self._pending.get(frame.msg_id)
        if future is not None and not future.done():
            future.set_result(frame)
        else:
            log_event(
                "dvrip.unexpected_message",
                level=logging.DEBUG,
                device=str(self.device.key),
                msg_id=frame.msg_id,
            )

    def _dispatch_alarm(self, frame: Frame) -> None:
        try:
            event = parse_alarm(frame)
        except DVRIPError as exc:
            log_event(
                "dvrip.bad_alarm",
                level=logging.WARNING,
                device=str(self.device.key),
                reason=str(exc),
            )
            return
        if self._on_event is not None:
            self._on_event(event)

    def _report_stream_error(self, reason: str) -> None:
        on_error, self._on_event, self._on_error = self._on_error, None, None
        if on_error is not None:
            on_error(SubscriptionError(self.device.key, reason))
        else:
            log_event(
                "dvrip.connection_lost",
                level=logging.WARNING,
                device=str(self.device.key),
                reason=reason,
            )

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)

    async def _keepalive(self) -> None:
        while True:
            await asyncio.sleep(self.alive_interval)
            try:
                await self._request_json(
                    KEEPALIVE_REQ,
                    {"Name": "KeepAlive", "SessionID": self.session_hex},
                    KEEPALIVE_RSP,
                )
            except (DVRIPError, OSError) as exc:
                log_event(
                    "dvrip.keepalive_failed",
                    level=logging.WARNING,
                    device=str(self.device.key),
                    reason=str(exc),
                )
                if not self.connected:
                    return
