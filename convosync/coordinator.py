"""
Sync coordinator — runs transports on behalf of a repository.

Builds the outgoing payload from the repository (and settings), drives at
most one send and one receive at a time, and on a completed receive hands
the payload to the merge engine and applies the settings block.

Events:
    state-changed(state dict)   flags, current code or last error changed
    progress(TransportEvent)    any send/receive progress
    sync-applied(MergeReport)   a received payload was merged
    sync-error(Exception)       an operation or a merge failed
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable

from convosync.events import EventEmitter
from convosync.merge import MergeEngine, MergeReport
from convosync.payload import make_payload
from convosync.settings import SettingsStore
from convosync.store import ConversationRepository, ConversationStoreError
from convosync.transports.base import (
    RECEIVE, RECEIVE_COMPLETED, RECEIVE_ERROR, RECEIVE_PROGRESS, RECEIVE_STARTED,
    SEND, SEND_COMPLETED, SEND_ERROR, SEND_PROGRESS, SEND_STARTED,
    ParseError, SyncTransport, TransferHandle, TransportError, TransportEvent,
)

log = logging.getLogger(__name__)

_ALL_KINDS = (
    SEND_STARTED, SEND_PROGRESS, SEND_COMPLETED, SEND_ERROR,
    RECEIVE_STARTED, RECEIVE_PROGRESS, RECEIVE_COMPLETED, RECEIVE_ERROR,
)


class SyncCoordinator:
    """One device's sync session state.

    Usage:
        coordinator = SyncCoordinator(ConversationRepository(), settings_store=SettingsStore())
        handle = await coordinator.start_sending(RelayTransport())
        print("share this code:", coordinator.current_code)
    """

    def __init__(
        self,
        repository: ConversationRepository,
        merge_engine: MergeEngine | None = None,
        settings_store: SettingsStore | None = None,
    ) -> None:
        self.repository = repository
        self.merge_engine = merge_engine or MergeEngine(repository)
        self.settings_store = settings_store
        self.events = EventEmitter()

        self.is_sending = False
        self.is_receiving = False
        self.current_code: str | None = None
        self.last_error: Exception | None = None
        self.last_report: MergeReport | None = None
        self.peer_transport: Any = None

        self._active: dict[str, tuple[SyncTransport, TransferHandle | None] | None] = {SEND: None, RECEIVE: None}
        self._listeners: dict[int, tuple[SyncTransport, Callable[[TransportEvent], None]]] = {}

    def on(self, kind: str, listener: Callable[..., Any]) -> None:
        self.events.on(kind, listener)

    def off(self, kind: str, listener: Callable[..., Any]) -> None:
        self.events.off(kind, listener)

    def state(self) -> dict[str, Any]:
        return {
            "isSending": self.is_sending,
            "isReceiving": self.is_receiving,
            "currentCode": self.current_code,
            "lastError": str(self.last_error) if self.last_error else None,
        }

    def _emit_state(self) -> None:
        self.events.emit("state-changed", self.state())

    # -- payload ------------------------------------------------------------

    def build_payload(self) -> dict:
        """Serialize the whole local store (and settings) for sending."""
        settings = self.settings_store.load().to_dict() if self.settings_store else {}
        return make_payload(
            self.repository.list_branches(),
            settings,
            ideas=self.repository.list_ideas(),
            binds=self.repository.list_binds(),
            snapshots=self.repository.list_snapshots(),
        )

    def apply_payload(self, payload: dict) -> MergeReport:
        """Merge a received payload and apply its settings block."""
        report = self.merge_engine.import_payload(payload)
        settings = payload.get("settings")
        if self.settings_store is not None and isinstance(settings, dict) and settings:
            self.settings_store.apply(settings)
        self.last_report = report
        self.events.emit("sync-applied", report)
        return report

    # -- transport wiring ---------------------------------------------------

    def _attach(self, transport: SyncTransport) -> None:
        if id(transport) in self._listeners:
            return
        listener = functools.partial(self._on_transport_event, transport)
        for kind in _ALL_KINDS:
            transport.on(kind, listener)
        self._listeners[id(transport)] = (transport, listener)

    def _detach(self, transport: SyncTransport) -> None:
        entry = self._listeners.pop(id(transport), None)
        if entry is None:
            return
        for kind in _ALL_KINDS:
            transport.off(kind, entry[1])

    def _is_active(self, direction: str, transport: SyncTransport) -> bool:
        entry = self._active[direction]
        return entry is not None and entry[0] is transport

    def _on_transport_event(self, transport: SyncTransport, event: TransportEvent) -> None:
        if event.kind in (SEND_PROGRESS, RECEIVE_PROGRESS):
            self.events.emit("progress", event)
            return
        if not event.terminal:
            return

        try:
            if event.kind == RECEIVE_COMPLETED and event.payload is not None:
                if self._is_active(RECEIVE, transport) or transport is self.peer_transport:
                    self._apply_received(event.payload)
            if event.error is not None:
                self._fail(event.error)
        finally:
            if self._is_active(event.direction, transport):
                self._reset(event.direction)

    def _apply_received(self, payload: dict) -> None:
        try:
            self.apply_payload(payload)
        except (TransportError, ConversationStoreError, ValueError, OSError) as e:
            log.error("Failed to apply received payload: %s", e)
            self._fail(e)
        except Exception as e:
            log.exception("Unexpected error applying received payload")
            self._fail(ParseError(f"Received payload could not be applied: {e}"))

    def _fail(self, error: Exception) -> None:
        self.last_error = error
        self.events.emit("sync-error", error)

    def _reset(self, direction: str) -> None:
        self._active[direction] = None
        if direction == SEND:
            self.is_sending = False
        else:
            self.is_receiving = False
        self.current_code = self._peer_room()
        self._emit_state()

    def _peer_room(self) -> str | None:
        if self.peer_transport is None:
            return None
        return getattr(self.peer_transport, "room_id", None)

    # -- operations ---------------------------------------------------------

    async def _start(self, direction: str, transport: SyncTransport, start: Callable[[], Any]) -> TransferHandle:
        self._attach(transport)
        self.last_error = None
        if direction == SEND:
            self.is_sending = True
        else:
            self.is_receiving = True
        entry: tuple[SyncTransport, TransferHandle | None] = (transport, None)
        self._active[direction] = entry
        try:
            handle = await start()
        except Exception:
            if self._active[direction] is entry:
                self._reset(direction)
            raise
        # a terminal event may already have reset this direction
        if self._active[direction] is entry:
            self._active[direction] = (transport, handle)
            self.current_code = handle.code
            self._emit_state()
        return handle

    async def start_sending(self, transport: SyncTransport, options: dict[str, Any] | None = None) -> TransferHandle:
        """Send the local store over ``transport``. A running send is stopped first."""
        await self.stop_sending()
        payload = self.build_payload()
        return await self._start(SEND, transport, lambda: transport.start_sending(payload, options))

    async def start_receiving(
        self,
        transport: SyncTransport,
        target: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> TransferHandle:
        """Receive one payload over ``transport`` and merge it. A running receive is stopped first."""
        await self.stop_receiving()
        return await self._start(RECEIVE, transport, lambda: transport.start_receiving(target, options))

    async def stop_sending(self) -> None:
        entry = self._active[SEND]
        if entry is None:
            return
        await entry[0].stop_sending()
        if self._active[SEND] is entry:
            self._reset(SEND)

    async def stop_receiving(self) -> None:
        entry = self._active[RECEIVE]
        if entry is None:
            return
        await entry[0].stop_receiving()
        if self._active[RECEIVE] is entry:
            self._reset(RECEIVE)

    # -- peer session -------------------------------------------------------

    async def connect_peer(self, transport: Any, room_id: str | None = None) -> str:
        """Join a P2P room; peers exchange full snapshots as soon as channels open."""
        if self.peer_transport is not None and self.peer_transport is not transport:
            await self.disconnect_peer()
        self._attach(transport)
        transport.payload_provider = self.build_payload
        self.peer_transport = transport
        room = await transport.open_room(room_id)
        self.current_code = room
        self._emit_state()
        return room

    async def sync_now(self) -> TransferHandle:
        """Push the local store to every connected peer."""
        if self.peer_transport is None:
            raise TransportError("No peer session; call connect_peer() first")
        return await self.start_sending(self.peer_transport)

    async def disconnect_peer(self) -> None:
        transport, self.peer_transport = self.peer_transport, None
        if transport is None:
            return
        if self._is_active(SEND, transport):
            await self.stop_sending()
        if self._is_active(RECEIVE, transport):
            await self.stop_receiving()
        await transport.close()
        transport.payload_provider = None
        self._detach(transport)
        self.current_code = None
        self._emit_state()

    async def close(self) -> None:
        await self.stop_sending()
        await self.stop_receiving()
        await self.disconnect_peer()
