"""
Peer-to-peer transport — WebRTC data channels negotiated over signaling.

Flow:
    open_room(room_id)      join a room on the signaling server
    room-joined(peers)      the newcomer sends an SDP offer to every listed peer
    signal(offer)           the existing member answers
    data channel open       the local snapshot is pushed to the new peer (auto sync)

Payloads travel on the channel as ordered JSON parts:
    {"kind": "part", "seq": i, "total": n, "data": "<slice of payload JSON>"}

A payload that arrives while no receive operation is active is delivered as
an implicit receive (``receive-started`` followed by ``receive-completed``).

Requires aiortc — install with: pip install convosync[p2p]
"""

from __future__ import annotations

import abc
import asyncio
import functools
import importlib.util
import json
import logging
from typing import Any, Callable, Coroutine

from convosync import P2P_ICE_SERVERS, P2P_PART_SIZE
from convosync.models import new_id
from convosync.payload import decode_payload, encode_payload
from convosync.transports.base import (
    RECEIVE, RECEIVE_COMPLETED, CapabilityUnavailable, ParseError, SyncTransport,
    TransferFailed, TransferHandle, TransportEvent,
)
from convosync.transports.chunking import ChunkReassembler, split_text
from convosync.transports.signaling import (
    ERROR, PEER_JOINED, ROOM_JOINED, SIGNAL, SignalingClient, SignalingError,
)

log = logging.getLogger(__name__)

PART = "part"
DATA_CHANNEL_LABEL = "convosync"

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"
STATE_ERROR = "error"

PeerCallback = Callable[[], None]
MessageCallback = Callable[[str], None]


def new_room_id() -> str:
    return new_id("room")


def _import_aiortc():
    try:
        import aiortc
        return aiortc
    except ImportError:
        raise CapabilityUnavailable(
            "aiortc is required for peer-to-peer sync. "
            "Install with: pip install convosync[p2p]"
        )


# ---------------------------------------------------------------------------
# Peer links
# ---------------------------------------------------------------------------

class PeerLink(abc.ABC):
    """A connection to one remote peer carrying text messages."""

    def __init__(
        self,
        peer_id: str,
        on_open: PeerCallback,
        on_message: MessageCallback,
        on_close: PeerCallback,
    ) -> None:
        self.peer_id = peer_id
        self.on_open = on_open
        self.on_message = on_message
        self.on_close = on_close

    @property
    @abc.abstractmethod
    def is_open(self) -> bool:
        ...

    @abc.abstractmethod
    async def create_offer(self) -> dict:
        """Open a data channel and return the local offer signal."""

    @abc.abstractmethod
    async def accept_offer(self, signal: dict) -> dict:
        """Apply a remote offer and return the answer signal."""

    @abc.abstractmethod
    async def accept_answer(self, signal: dict) -> None:
        ...

    @abc.abstractmethod
    async def send(self, text: str) -> None:
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        ...


class AiortcPeerLink(PeerLink):
    """PeerLink on aiortc. ICE candidates are gathered into the SDP before it is sent."""

    def __init__(
        self,
        peer_id: str,
        on_open: PeerCallback,
        on_message: MessageCallback,
        on_close: PeerCallback,
        ice_servers: list[str] | None = None,
    ) -> None:
        super().__init__(peer_id, on_open, on_message, on_close)
        aiortc = _import_aiortc()
        self._aiortc = aiortc
        servers = [aiortc.RTCIceServer(urls=url) for url in (ice_servers or P2P_ICE_SERVERS)]
        self._pc = aiortc.RTCPeerConnection(configuration=aiortc.RTCConfiguration(iceServers=servers))
        self._channel: Any = None
        self._closed = False
        self._pc.on("datachannel", self._attach)
        self._pc.on("connectionstatechange", self._on_state_change)

    @property
    def is_open(self) -> bool:
        return self._channel is not None and self._channel.readyState == "open"

    def _attach(self, channel: Any) -> None:
        self._channel = channel
        channel.on("open", self.on_open)
        channel.on("close", self._on_channel_close)

        @channel.on("message")
        def on_message(message: str | bytes) -> None:
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            self.on_message(message)

        # channels announced by the remote side arrive already open
        if channel.readyState == "open":
            self.on_open()

    def _on_channel_close(self) -> None:
        if not self._closed:
            self._closed = True
            self.on_close()

    def _on_state_change(self) -> None:
        if self._pc.connectionState in ("failed", "closed"):
            self._on_channel_close()

    def _local_signal(self) -> dict:
        desc = self._pc.localDescription
        return {"type": desc.type, "sdp": desc.sdp}

    async def create_offer(self) -> dict:
        self._attach(self._pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True))
        await self._pc.setLocalDescription(await self._pc.createOffer())
        return self._local_signal()

    async def accept_offer(self, signal: dict) -> dict:
        await self._pc.setRemoteDescription(
            self._aiortc.RTCSessionDescription(sdp=signal["sdp"], type=signal["type"])
        )
        await self._pc.setLocalDescription(await self._pc.createAnswer())
        return self._local_signal()

    async def accept_answer(self, signal: dict) -> None:
        await self._pc.setRemoteDescription(
            self._aiortc.RTCSessionDescription(sdp=signal["sdp"], type=signal["type"])
        )

    async def send(self, text: str) -> None:
        if not self.is_open:
            raise TransferFailed(f"Data channel to {self.peer_id} is not open")
        self._channel.send(text)

    async def close(self) -> None:
        self._closed = True
        await self._pc.close()


PeerFactory = Callable[[str, PeerCallback, MessageCallback, PeerCallback], PeerLink]


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class P2PTransport(SyncTransport):
    """Sync over direct peer connections in a signaling room.

    Extra events: ``peer-connected(peer_id)``, ``peer-disconnected(peer_id)``,
    ``connection-state(state)``.

    Usage:
        p2p = P2PTransport(SignalingClient("wss://signal.example.org"))
        p2p.payload_provider = coordinator.build_payload
        room = await p2p.open_room()
        ...
        await p2p.push_now()
    """

    name = "p2p"

    def __init__(
        self,
        signaling: SignalingClient,
        ice_servers: list[str] | None = None,
        peer_factory: PeerFactory | None = None,
        auto_sync: bool = True,
        part_size: int = P2P_PART_SIZE,
    ) -> None:
        super().__init__()
        self.signaling = signaling
        self.ice_servers = list(ice_servers or P2P_ICE_SERVERS)
        self.auto_sync = auto_sync
        self.part_size = part_size
        self.payload_provider: Callable[[], dict] | None = None
        self.room_id: str | None = None
        self.connection_state = DISCONNECTED
        self.peers: dict[str, PeerLink] = {}
        self._peer_factory = peer_factory
        self._inbox: dict[str, ChunkReassembler] = {}
        self._peer_ready = asyncio.Event()
        self._receive_waiter: asyncio.Future | None = None
        self._tasks: set[asyncio.Task] = set()

        signaling.on(ROOM_JOINED, self._on_room_joined)
        signaling.on(PEER_JOINED, self._on_peer_joined)
        signaling.on(SIGNAL, self._on_signal)
        signaling.on("disconnect", self._on_signaling_disconnect)
        signaling.on(ERROR, self._on_signaling_error)

    def is_available(self) -> bool:
        if importlib.util.find_spec("websockets") is None:
            return False
        return self._peer_factory is not None or importlib.util.find_spec("aiortc") is not None

    def open_peers(self) -> list[PeerLink]:
        return [p for p in self.peers.values() if p.is_open]

    def _set_state(self, state: str) -> None:
        if state != self.connection_state:
            self.connection_state = state
            log.info("P2P connection state: %s", state)
            self.events.emit("connection-state", state)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.warning("P2P background task failed: %s", task.exception())

    # -- room lifecycle -----------------------------------------------------

    async def open_room(self, room_id: str | None = None) -> str:
        """Join (or create) a room and start negotiating with its members."""
        room_id = room_id or new_room_id()
        self._set_state(CONNECTING)
        try:
            await self.signaling.connect()
            await self.signaling.join_room(room_id)
        except SignalingError as e:
            self._set_state(STATE_ERROR)
            raise TransferFailed(str(e)) from e
        self.room_id = room_id
        log.info("Joined room %s", room_id)
        return room_id

    async def leave_room(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        for peer in list(self.peers.values()):
            await peer.close()
        self.peers.clear()
        self._inbox.clear()
        self._peer_ready.clear()
        await self.signaling.close()
        self.room_id = None
        self._set_state(DISCONNECTED)

    async def close(self) -> None:
        await super().close()
        await self.leave_room()

    # -- signaling handlers -------------------------------------------------

    def _on_room_joined(self, msg: dict) -> None:
        peers = [p for p in msg.get("peers") or [] if isinstance(p, str)]
        log.info("Room %s has %d other peer(s)", msg.get("roomId"), len(peers))
        for peer_id in peers:
            self._spawn(self._initiate(peer_id))

    def _on_peer_joined(self, msg: dict) -> None:
        log.info("Peer %s joined room %s; waiting for its offer", msg.get("peerId"), msg.get("roomId"))

    def _on_signal(self, msg: dict) -> None:
        peer_id, signal = msg.get("peerId"), msg.get("signal")
        if not isinstance(peer_id, str) or not isinstance(signal, dict):
            log.warning("Ignoring malformed signal: %r", msg)
            return
        self._spawn(self._handle_signal(peer_id, signal))

    def _on_signaling_disconnect(self) -> None:
        log.warning("Signaling dropped; %d data channel(s) stay open", len(self.open_peers()))

    def _on_signaling_error(self, error: Any) -> None:
        if isinstance(error, dict):
            log.warning("Signaling server error: %s", error.get("message"))
            return
        if not self.open_peers():
            self._set_state(STATE_ERROR)

    def _new_link(self, peer_id: str) -> PeerLink:
        old = self.peers.pop(peer_id, None)
        if old is not None:
            self._spawn(old.close())
        on_open = functools.partial(self._on_peer_open, peer_id)
        on_message = functools.partial(self._on_peer_message, peer_id)
        on_close = functools.partial(self._on_peer_close, peer_id)
        if self._peer_factory is not None:
            link = self._peer_factory(peer_id, on_open, on_message, on_close)
        else:
            link = AiortcPeerLink(peer_id, on_open, on_message, on_close, ice_servers=self.ice_servers)
        self.peers[peer_id] = link
        return link

    async def _initiate(self, peer_id: str) -> None:
        link = self._new_link(peer_id)
        offer = await link.create_offer()
        await self.signaling.send_signal(peer_id, offer)

    async def _handle_signal(self, peer_id: str, signal: dict) -> None:
        kind = signal.get("type")
        if kind == "offer":
            link = self._new_link(peer_id)
            answer = await link.accept_offer(signal)
            await self.signaling.send_signal(peer_id, answer)
        elif kind == "answer":
            link = self.peers.get(peer_id)
            if link is None:
                log.warning("Answer from unknown peer %s", peer_id)
                return
            await link.accept_answer(signal)
        else:
            log.debug("Ignoring %r signal from %s", kind, peer_id)

    # -- peer events --------------------------------------------------------

    def _on_peer_open(self, peer_id: str) -> None:
        log.info("Data channel to %s open", peer_id)
        self._peer_ready.set()
        self._set_state(CONNECTED)
        self.events.emit("peer-connected", peer_id)
        if self.auto_sync and self.payload_provider is not None:
            self._spawn(self._push_to(self.peers[peer_id], self.payload_provider()))

    def _on_peer_close(self, peer_id: str) -> None:
        if self.peers.pop(peer_id, None) is None:
            return
        self._inbox.pop(peer_id, None)
        log.info("Peer %s disconnected", peer_id)
        self.events.emit("peer-disconnected", peer_id)
        if not self.open_peers():
            self._peer_ready.clear()
            self._set_state(DISCONNECTED if self.room_id is None else CONNECTING)

    def _on_peer_message(self, peer_id: str, text: str) -> None:
        try:
            msg = json.loads(text)
        except json.JSONDecodeError:
            log.warning("Ignoring non-JSON data from %s", peer_id)
            return
        if not isinstance(msg, dict) or msg.get("kind") != PART:
            log.debug("Ignoring data channel message from %s: %r", peer_id, msg)
            return
        try:
            seq, total, data = int(msg["seq"]), int(msg["total"]), str(msg["data"])
        except (KeyError, TypeError, ValueError):
            log.warning("Ignoring malformed part from %s", peer_id)
            return

        inbox = self._inbox.setdefault(peer_id, ChunkReassembler())
        # ordered channel: seq 0 or a new total starts the next payload
        if (seq == 0 and inbox.received) or (inbox.total is not None and total != inbox.total):
            inbox.reset()
        try:
            inbox.add(seq, total, data)
        except ParseError as e:
            log.warning("Bad part from %s: %s", peer_id, e)
            return

        handle = self._handles[RECEIVE]
        if handle is not None:
            self._progress(handle, inbox.received, total)
        if inbox.complete:
            text = inbox.join_text()
            inbox.reset()
            self._deliver(peer_id, text)

    def _deliver(self, peer_id: str, text: str) -> None:
        waiter = self._receive_waiter
        try:
            payload = decode_payload(text)
        except ParseError as e:
            if waiter is not None and not waiter.done():
                waiter.set_exception(e)
            else:
                log.warning("Discarding invalid payload from %s: %s", peer_id, e)
            return
        log.info("Received payload from %s", peer_id)
        if waiter is not None and not waiter.done():
            waiter.set_result(payload)
            return
        handle = self._handles[RECEIVE]
        if handle is None:
            handle = self._begin(RECEIVE, code=self.room_id)
        self._finish(handle, TransportEvent(RECEIVE_COMPLETED, RECEIVE, payload=payload, code=handle.code))
        if handle._task is not None:
            # receive task not yet waiting; it ends without a second terminal event
            handle._task.cancel()

    # -- operations ---------------------------------------------------------

    async def _push_to(self, link: PeerLink, payload: dict, handle: TransferHandle | None = None) -> None:
        parts = split_text(encode_payload(payload), self.part_size)
        total = len(parts)
        for seq, data in enumerate(parts):
            if handle is not None:
                handle.token.check()
            await link.send(json.dumps({"kind": PART, "seq": seq, "total": total, "data": data}))
            if handle is not None:
                self._progress(handle, seq + 1, total)
        log.info("Pushed payload to %s in %d part(s)", link.peer_id, total)

    async def push_now(self) -> TransferHandle:
        """Send the current local snapshot to every connected peer."""
        if self.payload_provider is None:
            raise TransferFailed("No payload provider set")
        return await self.start_sending(self.payload_provider())

    def _operation_code(self, direction: str, target: str | None, options: dict[str, Any]) -> str | None:
        return target or self.room_id

    async def _send(self, handle: TransferHandle, payload: dict, options: dict[str, Any]) -> None:
        if self.room_id is None:
            room_id = await self.open_room(options.get("room_id"))
            handle.code = room_id
        while not self.open_peers():
            self._peer_ready.clear()
            await self._peer_ready.wait()
        for link in self.open_peers():
            await self._push_to(link, payload, handle)

    async def _receive(self, handle: TransferHandle, target: str | None, options: dict[str, Any]) -> dict:
        waiter = asyncio.get_running_loop().create_future()
        self._receive_waiter = waiter
        try:
            if target and target != self.room_id:
                if self.room_id is not None:
                    await self.leave_room()
                await self.open_room(target)
            elif self.room_id is None:
                handle.code = await self.open_room()
            return await waiter
        finally:
            if self._receive_waiter is waiter:
                self._receive_waiter = None
