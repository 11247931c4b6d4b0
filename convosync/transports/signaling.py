"""
WebSocket signaling — room membership and SDP relay for the P2P transport.

Client -> server:
    {"type": "join-room", "roomId"}
    {"type": "signal",    "roomId", "targetId", "signal"}
    {"type": "broadcast", "roomId", "data"}

Server -> client:
    {"type": "room-joined", "roomId", "peerId", "peers": [...]}
    {"type": "peer-joined", "roomId", "peerId"}
    {"type": "signal",      "roomId", "peerId", "signal"}
    {"type": "broadcast",   "roomId", "peerId", "data"}

Requires websockets — install with: pip install convosync
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from typing import Any, Awaitable, Callable

from convosync import (
    SIGNALING_BASE_DELAY, SIGNALING_DEFAULT_PORT, SIGNALING_MAX_RECONNECTS,
)
from convosync.events import EventEmitter

log = logging.getLogger(__name__)

JOIN_ROOM = "join-room"
ROOM_JOINED = "room-joined"
PEER_JOINED = "peer-joined"
SIGNAL = "signal"
BROADCAST = "broadcast"
ERROR = "error"

_INBOUND_TYPES = frozenset({ROOM_JOINED, PEER_JOINED, SIGNAL, BROADCAST, ERROR})


class SignalingError(Exception):
    """Signaling connection or protocol failure."""


def _import_websockets():
    try:
        import websockets
        return websockets
    except ImportError:
        raise ImportError(
            "websockets is required for P2P signaling. "
            "Install with: pip install convosync"
        )


def _ws_error() -> type[Exception]:
    return _import_websockets().exceptions.WebSocketException


class SignalingClient:
    """Signaling server connection with bounded reconnect.

    Events: ``connect``, ``disconnect``, ``error`` and one per inbound message
    type, each called with the decoded message dict.

    A dropped connection is retried ``max_reconnects`` times, waiting
    ``base_delay * 2**attempt`` seconds before each attempt; the current room
    is rejoined after a successful reconnect.
    """

    def __init__(
        self,
        url: str,
        max_reconnects: int = SIGNALING_MAX_RECONNECTS,
        base_delay: float = SIGNALING_BASE_DELAY,
        connect: Callable[[str], Awaitable[Any]] | None = None,
    ) -> None:
        self.url = url
        self.max_reconnects = max_reconnects
        self.base_delay = base_delay
        self.events = EventEmitter()
        self.room_id: str | None = None
        self.peer_id: str | None = None
        self._connect = connect
        self._ws: Any = None
        self._runner: asyncio.Task | None = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def on(self, kind: str, listener: Callable[..., Any]) -> None:
        self.events.on(kind, listener)

    def off(self, kind: str, listener: Callable[..., Any]) -> None:
        self.events.off(kind, listener)

    async def _open(self) -> Any:
        if self._connect is not None:
            return await self._connect(self.url)
        websockets = _import_websockets()
        return await websockets.connect(self.url)

    async def connect(self) -> None:
        """Connect and start the read loop. Raises SignalingError if unreachable."""
        if self._ws is not None:
            return
        self._closing = False
        try:
            self._ws = await self._open()
        except (OSError, asyncio.TimeoutError, _ws_error()) as e:
            raise SignalingError(f"Cannot reach signaling server {self.url}: {e}") from e
        log.info("Connected to signaling server %s", self.url)
        self.events.emit("connect")
        self._runner = asyncio.create_task(self._run())

    async def close(self) -> None:
        self._closing = True
        runner, self._runner = self._runner, None
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if runner is not None and runner is not asyncio.current_task():
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
        self.room_id = None
        self.peer_id = None

    async def join_room(self, room_id: str) -> None:
        self.room_id = room_id
        await self._send({"type": JOIN_ROOM, "roomId": room_id})

    async def send_signal(self, target_id: str, signal: dict) -> None:
        await self._send({
            "type": SIGNAL, "roomId": self.room_id,
            "targetId": target_id, "signal": signal,
        })

    async def broadcast(self, data: Any) -> None:
        await self._send({"type": BROADCAST, "roomId": self.room_id, "data": data})

    async def _send(self, msg: dict) -> None:
        if self._ws is None:
            raise SignalingError("Not connected to the signaling server")
        try:
            await self._ws.send(json.dumps(msg))
        except _ws_error() as e:
            raise SignalingError(f"Signaling send failed: {e}") from e

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            log.warning("Ignoring non-JSON signaling message")
            return
        if not isinstance(msg, dict) or msg.get("type") not in _INBOUND_TYPES:
            log.warning("Ignoring unknown signaling message: %r", msg)
            return
        if msg["type"] == ROOM_JOINED and msg.get("peerId"):
            self.peer_id = msg["peerId"]
        self.events.emit(msg["type"], msg)

    async def _read(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._dispatch(raw)
        except _ws_error() as e:
            log.debug("Signaling connection dropped: %s", e)

    async def _run(self) -> None:
        while True:
            await self._read(self._ws)
            if self._closing:
                return
            self._ws = None
            log.warning("Disconnected from signaling server %s", self.url)
            self.events.emit("disconnect")
            if not await self._reconnect():
                error = SignalingError(
                    f"Gave up on signaling server after {self.max_reconnects} attempts"
                )
                log.error("%s", error)
                self.events.emit(ERROR, error)
                return

    async def _reconnect(self) -> bool:
        for attempt in range(self.max_reconnects):
            delay = self.base_delay * (2 ** attempt)
            log.info("Reconnecting to signaling in %.1fs (attempt %d/%d)",
                     delay, attempt + 1, self.max_reconnects)
            await asyncio.sleep(delay)
            if self._closing:
                return False
            try:
                self._ws = await self._open()
            except (OSError, asyncio.TimeoutError, _ws_error()) as e:
                log.warning("Signaling reconnect failed: %s", e)
                continue
            self.events.emit("connect")
            if self.room_id:
                try:
                    await self.join_room(self.room_id)
                except SignalingError as e:
                    log.warning("Rejoining room %s failed: %s", self.room_id, e)
                    ws, self._ws = self._ws, None
                    with contextlib.suppress(OSError, _ws_error()):
                        await ws.close()
                    continue
            return True
        return False


class SignalingServer:
    """In-memory room server speaking the signaling protocol.

    Usage:
        server = SignalingServer(port=0)
        await server.start()
        print(server.url)
        ...
        await server.stop()
    """

    def __init__(self, host: str = "127.0.0.1", port: int = SIGNALING_DEFAULT_PORT) -> None:
        self.host = host
        self.port = port
        self.rooms: dict[str, list[str]] = {}
        self.clients: dict[str, Any] = {}
        self._server: Any = None

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    async def start(self) -> None:
        websockets = _import_websockets()
        self._server = await websockets.serve(self._handle, self.host, self.port)
        sockets = list(self._server.sockets or [])
        if sockets:
            self.port = sockets[0].getsockname()[1]
        log.info("Signaling server listening on %s", self.url)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        self.rooms.clear()
        self.clients.clear()

    async def _handle(self, ws: Any, *_args: Any) -> None:
        peer_id = "peer-" + os.urandom(6).hex()
        self.clients[peer_id] = ws
        log.info("Signaling client %s connected", peer_id)
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except (json.JSONDecodeError, UnicodeDecodeError):
                    await self._deliver(peer_id, {"type": ERROR, "message": "Invalid message format"})
                    continue
                if not isinstance(msg, dict):
                    await self._deliver(peer_id, {"type": ERROR, "message": "Invalid message format"})
                    continue
                await self._route(peer_id, msg)
        except _ws_error() as e:
            log.debug("Signaling client %s dropped: %s", peer_id, e)
        finally:
            self._drop(peer_id)

    def _drop(self, peer_id: str) -> None:
        self.clients.pop(peer_id, None)
        for room_id in list(self.rooms):
            members = [p for p in self.rooms[room_id] if p != peer_id]
            if members:
                self.rooms[room_id] = members
            else:
                del self.rooms[room_id]
        log.info("Signaling client %s disconnected", peer_id)

    async def _route(self, peer_id: str, msg: dict) -> None:
        kind = msg.get("type")
        room_id = msg.get("roomId")
        if kind == JOIN_ROOM and isinstance(room_id, str) and room_id:
            members = self.rooms.setdefault(room_id, [])
            if peer_id not in members:
                members.append(peer_id)
            others = [p for p in members if p != peer_id]
            await self._deliver(peer_id, {
                "type": ROOM_JOINED, "roomId": room_id, "peerId": peer_id, "peers": others,
            })
            for other in others:
                await self._deliver(other, {"type": PEER_JOINED, "roomId": room_id, "peerId": peer_id})
        elif kind == SIGNAL and msg.get("targetId"):
            delivered = await self._deliver(msg["targetId"], {
                "type": SIGNAL, "roomId": room_id, "peerId": peer_id, "signal": msg.get("signal"),
            })
            if not delivered:
                await self._deliver(peer_id, {"type": ERROR, "message": "Target peer not connected"})
        elif kind == BROADCAST:
            if room_id not in self.rooms:
                await self._deliver(peer_id, {"type": ERROR, "message": "Room not found"})
                return
            for other in self.rooms[room_id]:
                if other != peer_id:
                    await self._deliver(other, {
                        "type": BROADCAST, "roomId": room_id, "peerId": peer_id, "data": msg.get("data"),
                    })
        else:
            await self._deliver(peer_id, {"type": ERROR, "message": f"Unknown message type: {kind!r}"})

    async def _deliver(self, peer_id: str, msg: dict) -> bool:
        ws = self.clients.get(peer_id)
        if ws is None:
            return False
        try:
            await ws.send(json.dumps(msg))
        except _ws_error() as e:
            log.debug("Dropping message for %s: %s", peer_id, e)
            return False
        return True


async def serve_forever(host: str = "127.0.0.1", port: int = SIGNALING_DEFAULT_PORT) -> None:
    """Run a signaling server until cancelled."""
    server = SignalingServer(host, port)
    await server.start()
    try:
        await asyncio.Future()
    finally:
        await server.stop()
