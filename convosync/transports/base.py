"""
Transport contract — operation lifecycle, events, cancellation and errors.

Every operation (one send or one receive) runs as its own asyncio task and
emits exactly one ``*-started`` event and exactly one terminal event:

    send-started     -> send-progress*    -> send-completed | send-error
    receive-started  -> receive-progress* -> receive-completed | receive-error

Cancellation is a ``*-completed`` event with ``cancelled=True`` (and no
payload on the receive side). Failures never escape ``start_*``; they arrive
as the ``*-error`` event. Stopping an idle direction is a no-op.

Subclasses implement ``is_available()``, ``_send()`` and ``_receive()``.
"""

from __future__ import annotations

import abc
import asyncio
import enum
import functools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from convosync.events import EventEmitter

log = logging.getLogger(__name__)

SEND = "send"
RECEIVE = "receive"

SEND_STARTED = "send-started"
SEND_PROGRESS = "send-progress"
SEND_COMPLETED = "send-completed"
SEND_ERROR = "send-error"
RECEIVE_STARTED = "receive-started"
RECEIVE_PROGRESS = "receive-progress"
RECEIVE_COMPLETED = "receive-completed"
RECEIVE_ERROR = "receive-error"

_KINDS = {
    SEND: (SEND_STARTED, SEND_PROGRESS, SEND_COMPLETED, SEND_ERROR),
    RECEIVE: (RECEIVE_STARTED, RECEIVE_PROGRESS, RECEIVE_COMPLETED, RECEIVE_ERROR),
}


class TransportError(Exception):
    """Base class for transport failures."""


class CapabilityUnavailable(TransportError):
    """The library, device or backend this transport needs is missing."""


class PermissionDenied(TransportError):
    """Access to the camera or radio was refused."""


class TransferFailed(TransportError):
    """I/O failed while moving the payload."""


class ParseError(TransportError):
    """Received data is not a valid sync payload."""


class PayloadTooLarge(TransportError):
    """Payload does not fit the transport's limits."""


class TransferState(str, enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


@dataclass
class TransportEvent:
    """One transport event. Terminal events carry payload, error or cancelled."""

    kind: str
    direction: str
    index: int | None = None
    total: int | None = None
    payload: dict | None = None
    error: Exception | None = None
    cancelled: bool = False
    code: str | None = None

    @property
    def terminal(self) -> bool:
        return self.kind.endswith(("-completed", "-error"))


class CancelToken:
    """Cooperative cancellation flag checked at each I/O step."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def check(self) -> None:
        """Raise CancelledError if cancellation was requested."""
        if self._event.is_set():
            raise asyncio.CancelledError()

    async def sleep(self, delay: float) -> None:
        """Sleep up to ``delay`` seconds; raise CancelledError if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise asyncio.CancelledError()


class TransferHandle:
    """Caller's view of one running operation."""

    def __init__(self, transport: SyncTransport, direction: str, code: str | None = None) -> None:
        self.transport = transport
        self.direction = direction
        self.code = code
        self.state = TransferState.ACTIVE
        self.token = CancelToken()
        self.result: TransportEvent | None = None
        self._done = asyncio.Event()
        self._task: asyncio.Task | None = None

    def __repr__(self) -> str:
        return f"<TransferHandle {self.transport.name} {self.direction} {self.state.value}>"

    def done(self) -> bool:
        return self._done.is_set()

    async def wait(self, timeout: float | None = None) -> TransportEvent:
        """Wait for the terminal event and return it."""
        await asyncio.wait_for(self._done.wait(), timeout=timeout)
        assert self.result is not None
        return self.result

    async def cancel(self) -> None:
        await self.transport._stop(self.direction, self)


class SyncTransport(abc.ABC):
    """One channel able to send and receive a sync payload."""

    name = "transport"

    def __init__(self) -> None:
        self.events = EventEmitter()
        self._handles: dict[str, TransferHandle | None] = {SEND: None, RECEIVE: None}

    # -- contract -----------------------------------------------------------

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Whether this transport can run here. Never acquires a resource."""

    @abc.abstractmethod
    async def _send(self, handle: TransferHandle, payload: dict, options: dict[str, Any]) -> None:
        """Deliver ``payload``. Returning normally completes the operation."""

    @abc.abstractmethod
    async def _receive(self, handle: TransferHandle, target: str | None, options: dict[str, Any]) -> dict:
        """Receive and return one decoded payload."""

    def _operation_code(self, direction: str, target: str | None, options: dict[str, Any]) -> str | None:
        """Rendezvous code shown to the user for an operation (relay path, room id)."""
        return target

    # -- public API ---------------------------------------------------------

    def on(self, kind: str, listener: Callable[[TransportEvent], Any]) -> None:
        self.events.on(kind, listener)

    def off(self, kind: str, listener: Callable[[TransportEvent], Any]) -> None:
        self.events.off(kind, listener)

    def state(self, direction: str) -> TransferState:
        handle = self._handles.get(direction)
        return TransferState.ACTIVE if handle is not None else TransferState.IDLE

    @property
    def is_sending(self) -> bool:
        return self._handles[SEND] is not None

    @property
    def is_receiving(self) -> bool:
        return self._handles[RECEIVE] is not None

    async def start_sending(self, payload: dict, options: dict[str, Any] | None = None) -> TransferHandle:
        """Start sending ``payload``. A running send is stopped first."""
        options = dict(options or {})
        await self.stop_sending()
        handle = self._begin(SEND, self._operation_code(SEND, None, options))
        self._launch(handle, functools.partial(self._send, handle, payload, options))
        return handle

    async def start_receiving(
        self, target: str | None = None, options: dict[str, Any] | None = None
    ) -> TransferHandle:
        """Start receiving one payload. A running receive is stopped first."""
        options = dict(options or {})
        await self.stop_receiving()
        handle = self._begin(RECEIVE, self._operation_code(RECEIVE, target, options))
        self._launch(handle, functools.partial(self._receive, handle, target, options))
        return handle

    async def stop_sending(self) -> None:
        await self._stop(SEND)

    async def stop_receiving(self) -> None:
        await self._stop(RECEIVE)

    async def close(self) -> None:
        """Stop both directions and release anything held between operations."""
        await self.stop_sending()
        await self.stop_receiving()

    # -- lifecycle internals ------------------------------------------------

    def _begin(self, direction: str, code: str | None = None) -> TransferHandle:
        handle = TransferHandle(self, direction, code=code)
        self._handles[direction] = handle
        log.info("%s: %s started%s", self.name, direction, f" ({code})" if code else "")
        self.events.emit(_KINDS[direction][0], TransportEvent(_KINDS[direction][0], direction, code=code))
        return handle

    def _launch(self, handle: TransferHandle, op: Callable[[], Awaitable[Any]]) -> None:
        handle._task = asyncio.create_task(self._drive(handle, op))

    async def _drive(self, handle: TransferHandle, op: Callable[[], Awaitable[Any]]) -> None:
        direction = handle.direction
        try:
            result = await op()
        except asyncio.CancelledError:
            outcome = self._cancelled_event(handle)
        except TransportError as e:
            outcome = self._error_event(handle, e)
        except Exception as e:
            log.debug("%s: unexpected %s failure", self.name, direction, exc_info=True)
            wrapped = TransferFailed(f"{type(e).__name__}: {e}")
            wrapped.__cause__ = e
            outcome = self._error_event(handle, wrapped)
        else:
            if handle.token.cancelled:
                outcome = self._cancelled_event(handle)
            else:
                outcome = TransportEvent(
                    _KINDS[direction][2], direction,
                    payload=result if direction == RECEIVE else None,
                    code=handle.code,
                )
        self._finish(handle, outcome)

    def _cancelled_event(self, handle: TransferHandle) -> TransportEvent:
        return TransportEvent(_KINDS[handle.direction][2], handle.direction,
                              cancelled=True, code=handle.code)

    def _error_event(self, handle: TransferHandle, error: Exception) -> TransportEvent:
        return TransportEvent(_KINDS[handle.direction][3], handle.direction,
                              error=error, code=handle.code)

    def _finish(self, handle: TransferHandle, event: TransportEvent) -> None:
        """Deliver the terminal event once and return the direction to idle."""
        if handle.done():
            return
        if event.cancelled:
            handle.state = TransferState.CANCELLED
        elif event.error is not None:
            handle.state = TransferState.ERRORED
        else:
            handle.state = TransferState.COMPLETED
        handle.result = event
        handle._done.set()
        if self._handles.get(handle.direction) is handle:
            self._handles[handle.direction] = None
        if event.error is not None:
            log.warning("%s: %s failed: %s", self.name, handle.direction, event.error)
        else:
            log.info("%s: %s %s", self.name, handle.direction, handle.state.value)
        self.events.emit(event.kind, event)

    def _progress(self, handle: TransferHandle, index: int, total: int | None) -> None:
        if handle.done():
            return
        kind = _KINDS[handle.direction][1]
        self.events.emit(kind, TransportEvent(kind, handle.direction, index=index,
                                              total=total, code=handle.code))

    async def _stop(self, direction: str, handle: TransferHandle | None = None) -> None:
        current = self._handles.get(direction)
        if current is None or (handle is not None and current is not handle):
            return
        current.token.cancel()
        task = current._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})
        if not current.done():
            self._finish(current, self._cancelled_event(current))
