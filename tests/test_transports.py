"""
Tests for the transport contract, chunk framing, and the QR and BLE
transports driven through fake surfaces, cameras and GATT clients.

No display, camera or radio is touched.
"""

from __future__ import annotations

import asyncio
import random

import pytest

from convosync.payload import encode_payload, make_payload
from convosync.transports import TRANSPORT_KINDS, build_transport
from convosync.transports.base import (
    RECEIVE_COMPLETED, RECEIVE_ERROR, RECEIVE_PROGRESS, RECEIVE_STARTED,
    SEND_COMPLETED, SEND_ERROR, SEND_PROGRESS, SEND_STARTED,
    CancelToken, ParseError, PayloadTooLarge, PermissionDenied, SyncTransport,
    TransferFailed, TransferState, TransportEvent,
)
from convosync.transports.ble import BLETransport, _backend_error
from convosync.transports.chunking import (
    BLE_HEADER_SIZE, ChunkReassembler, make_ble_frames, make_qr_frames,
    parse_ble_frame, parse_qr_frame, split_text,
)
from convosync.transports.qr import FrameSource, QRFrameTransport, QRSurface
from convosync.transports.relay import RelayTransport

ALL_KINDS = (
    SEND_STARTED, SEND_PROGRESS, SEND_COMPLETED, SEND_ERROR,
    RECEIVE_STARTED, RECEIVE_PROGRESS, RECEIVE_COMPLETED, RECEIVE_ERROR,
)


def _record(transport: SyncTransport) -> list[TransportEvent]:
    events: list[TransportEvent] = []
    for kind in ALL_KINDS:
        transport.on(kind, events.append)
    return events


def _kinds(events: list[TransportEvent]) -> list[str]:
    return [e.kind for e in events]


def _terminals(events: list[TransportEvent]) -> list[TransportEvent]:
    return [e for e in events if e.terminal]


def _sample_payload(words: int = 40) -> dict:
    payload = make_payload([], {"selectedModel": "demo"}, timestamp=1700000000000)
    payload["ideas"] = [{"id": f"i{n}", "name": f"idea number {n}", "createdAt": 0} for n in range(words)]
    return payload


class GatedTransport(SyncTransport):
    """Transport whose operations block on a gate and then succeed or fail."""

    name = "gated"

    def __init__(self, result: dict | None = None, error: Exception | None = None) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.result = result or {"type": "sync", "branches": []}
        self.error = error
        self.sent: list[dict] = []

    def is_available(self) -> bool:
        return True

    async def _send(self, handle, payload, options):
        self._progress(handle, 1, 2)
        await self.gate.wait()
        if self.error:
            raise self.error
        self.sent.append(payload)
        self._progress(handle, 2, 2)

    async def _receive(self, handle, target, options):
        await self.gate.wait()
        if self.error:
            raise self.error
        return self.result


# ---------------------------------------------------------------------------
# Lifecycle contract
# ---------------------------------------------------------------------------

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_send_completes(self):
        transport = GatedTransport()
        events = _record(transport)
        handle = await transport.start_sending({"type": "sync", "branches": []})
        assert transport.is_sending
        assert _kinds(events) == [SEND_STARTED]

        transport.gate.set()
        result = await handle.wait(timeout=2)

        assert result.kind == SEND_COMPLETED
        assert not result.cancelled
        assert _kinds(events) == [SEND_STARTED, SEND_PROGRESS, SEND_PROGRESS, SEND_COMPLETED]
        assert handle.state == TransferState.COMPLETED
        assert not transport.is_sending
        assert transport.state("send") == TransferState.IDLE

    @pytest.mark.asyncio
    async def test_receive_delivers_payload(self):
        transport = GatedTransport(result={"type": "sync", "branches": [], "marker": 1})
        events = _record(transport)
        handle = await transport.start_receiving("code-1")
        assert handle.code == "code-1"
        transport.gate.set()
        result = await handle.wait(timeout=2)
        assert result.kind == RECEIVE_COMPLETED
        assert result.payload["marker"] == 1
        assert _kinds(events) == [RECEIVE_STARTED, RECEIVE_COMPLETED]

    @pytest.mark.asyncio
    async def test_transport_error_becomes_error_event(self):
        transport = GatedTransport(error=TransferFailed("link dropped"))
        events = _record(transport)
        handle = await transport.start_sending({"type": "sync", "branches": []})
        transport.gate.set()
        result = await handle.wait(timeout=2)
        assert result.kind == SEND_ERROR
        assert isinstance(result.error, TransferFailed)
        assert handle.state == TransferState.ERRORED
        assert len(_terminals(events)) == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(self):
        transport = GatedTransport(error=RuntimeError("surprise"))
        handle = await transport.start_receiving()
        transport.gate.set()
        result = await handle.wait(timeout=2)
        assert result.kind == RECEIVE_ERROR
        assert isinstance(result.error, TransferFailed)
        assert isinstance(result.error.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_stop_twice_emits_one_terminal(self):
        transport = GatedTransport()
        events = _record(transport)
        handle = await transport.start_sending({"type": "sync", "branches": []})
        await asyncio.sleep(0)

        await transport.stop_sending()
        await transport.stop_sending()

        terminals = _terminals(events)
        assert len(terminals) == 1
        assert terminals[0].kind == SEND_COMPLETED
        assert terminals[0].cancelled
        assert handle.state == TransferState.CANCELLED
        assert not transport.is_sending
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_stop_before_task_runs(self):
        transport = GatedTransport()
        events = _record(transport)
        await transport.start_receiving()
        await transport.stop_receiving()
        assert _kinds(events) == [RECEIVE_STARTED, RECEIVE_COMPLETED]
        assert events[-1].cancelled
        assert events[-1].payload is None

    @pytest.mark.asyncio
    async def test_stop_idle_is_noop(self):
        transport = GatedTransport()
        events = _record(transport)
        await transport.stop_sending()
        await transport.stop_receiving()
        assert events == []

    @pytest.mark.asyncio
    async def test_restart_stops_previous(self):
        transport = GatedTransport()
        events = _record(transport)
        first = await transport.start_sending({"type": "sync", "branches": []})
        second = await transport.start_sending({"type": "sync", "branches": [], "n": 2})

        assert first.state == TransferState.CANCELLED
        assert transport.is_sending
        transport.gate.set()
        await second.wait(timeout=2)
        assert transport.sent == [{"type": "sync", "branches": [], "n": 2}]
        assert [e.cancelled for e in _terminals(events)] == [True, False]

    @pytest.mark.asyncio
    async def test_handle_cancel(self):
        transport = GatedTransport()
        handle = await transport.start_receiving()
        await handle.cancel()
        assert handle.done()
        assert (await handle.wait()).cancelled

    @pytest.mark.asyncio
    async def test_directions_are_independent(self):
        transport = GatedTransport()
        await transport.start_sending({"type": "sync", "branches": []})
        receive = await transport.start_receiving()
        await transport.stop_sending()
        assert transport.is_receiving
        transport.gate.set()
        assert (await receive.wait(timeout=2)).kind == RECEIVE_COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_token(self):
        token = CancelToken()
        token.check()
        await token.sleep(0.01)
        token.cancel()
        with pytest.raises(asyncio.CancelledError):
            token.check()
        with pytest.raises(asyncio.CancelledError):
            await token.sleep(5)


class TestBuildTransport:

    def test_known_kinds(self):
        for kind in TRANSPORT_KINDS:
            assert build_transport(kind).name == kind

    def test_config_values_used(self):
        relay = build_transport("relay", {"relay_url": "http://relay.local/"})
        assert isinstance(relay, RelayTransport)
        assert relay.relay_url == "http://relay.local"
        qr = build_transport("qr", {"qr_frames_per_second": 50})
        assert qr.frames_per_second == 10

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            build_transport("carrier-pigeon")


# ---------------------------------------------------------------------------
# Chunk framing
# ---------------------------------------------------------------------------

class TestChunking:

    def test_split_text(self):
        assert split_text("abcdefg", 3) == ["abc", "def", "g"]
        assert split_text("", 3) == [""]
        with pytest.raises(ValueError):
            split_text("abc", 0)

    def test_qr_frames_reassemble_in_any_order(self):
        text = encode_payload(_sample_payload())
        frames = make_qr_frames(text, 64)
        assert len(frames) > 3
        shuffled = frames * 2
        random.Random(7).shuffle(shuffled)

        reassembler = ChunkReassembler()
        for raw in shuffled:
            frame = parse_qr_frame(raw)
            reassembler.add(frame.index, frame.total, frame.data, frame.session)
        assert reassembler.complete
        assert reassembler.join_text() == text

    def test_qr_frame_with_colons_in_data(self):
        frames = make_qr_frames('{"url":"http://x"}', 256)
        assert parse_qr_frame(frames[0]).data == '{"url":"http://x"}'

    @pytest.mark.parametrize("raw", [
        "hello world",
        "CSQR:abc:1:1:data",
        "CSQR:abc:x:2:data",
        "CSQR:abc:0:0:data",
        "OTHER:abc:0:1:data",
    ])
    def test_qr_frame_rejects(self, raw):
        with pytest.raises(ParseError):
            parse_qr_frame(raw)

    def test_ble_frames(self):
        data = encode_payload(_sample_payload()).encode()
        frames = make_ble_frames(data, 100)
        assert all(len(f) <= 100 for f in frames)

        reassembler = ChunkReassembler()
        for raw in reversed(frames):
            index, total, length, body = parse_ble_frame(raw)
            assert length == len(data)
            reassembler.add(index, total, body, session=length)
        assert reassembler.join_bytes() == data

    def test_ble_frame_header(self):
        frame = make_ble_frames(b"xyz", 64)[0]
        assert frame[:4] == b"CSB1"
        assert len(frame) == BLE_HEADER_SIZE + 3
        assert parse_ble_frame(frame) == (0, 1, 3, b"xyz")

    def test_ble_bad_frames(self):
        with pytest.raises(ParseError, match="too short"):
            parse_ble_frame(b"CSB1")
        with pytest.raises(ParseError, match="magic"):
            parse_ble_frame(b"XXXX" + bytes(8))

    def test_ble_too_many_chunks(self):
        with pytest.raises(PayloadTooLarge):
            make_ble_frames(bytes(70000), BLE_HEADER_SIZE + 1)

    def test_reassembler_ignores_other_payload(self):
        reassembler = ChunkReassembler()
        assert reassembler.add(0, 2, "a", session="s1")
        assert not reassembler.add(1, 3, "b", session="s1")
        assert not reassembler.add(1, 2, "b", session="s2")
        assert not reassembler.add(0, 2, "dup", session="s1")
        assert reassembler.missing() == [1]
        with pytest.raises(ParseError, match="Missing"):
            reassembler.join_text()


# ---------------------------------------------------------------------------
# QR transport
# ---------------------------------------------------------------------------

class FakeSurface(QRSurface):

    def __init__(self) -> None:
        self.opened = False
        self.closed = False
        self.shown: list[tuple[int, int, str]] = []

    def open(self) -> None:
        self.opened = True

    def show(self, text, index, total):
        self.shown.append((index, total, text))

    def close(self) -> None:
        self.closed = True


class ScriptedCamera(FrameSource):
    """Returns queued 'images' (frame strings); None once exhausted."""

    def __init__(self, images: list) -> None:
        self.images = list(images)
        self.opened = False
        self.closed = False

    async def open(self) -> None:
        self.opened = True

    async def read(self):
        return self.images.pop(0) if self.images else None

    async def close(self) -> None:
        self.closed = True


def _text_decoder(image) -> list[str]:
    return [image]


class TestQRTransport:

    @pytest.mark.asyncio
    async def test_send_shows_every_frame(self):
        surface = FakeSurface()
        qr = QRFrameTransport(chunk_size=64, frames_per_second=10, cycles=1,
                              surface_factory=lambda: surface)
        events = _record(qr)
        payload = _sample_payload(5)

        handle = await qr.start_sending(payload)
        result = await handle.wait(timeout=10)

        assert result.kind == SEND_COMPLETED
        expected = qr.frames_for(payload)
        assert [text for _, _, text in surface.shown] == expected
        assert surface.opened and surface.closed
        progress = [e for e in events if e.kind == SEND_PROGRESS]
        assert progress[-1].total == len(expected)

    @pytest.mark.asyncio
    async def test_oversize_fails_before_surface(self):
        created = []

        def factory():
            created.append(1)
            return FakeSurface()

        qr = QRFrameTransport(chunk_size=16, max_frames=2, surface_factory=factory)
        handle = await qr.start_sending(_sample_payload())
        result = await handle.wait(timeout=2)

        assert result.kind == SEND_ERROR
        assert isinstance(result.error, PayloadTooLarge)
        assert created == []

    @pytest.mark.asyncio
    async def test_stop_releases_surface(self):
        surface = FakeSurface()
        qr = QRFrameTransport(chunk_size=64, frames_per_second=1, surface_factory=lambda: surface)
        events = _record(qr)
        await qr.start_sending(_sample_payload(5))
        for _ in range(50):
            if surface.shown:
                break
            await asyncio.sleep(0.01)
        await qr.stop_sending()
        assert surface.closed
        assert _terminals(events)[0].cancelled

    @pytest.mark.asyncio
    async def test_receive_any_order_with_noise(self):
        payload = _sample_payload()
        frames = make_qr_frames(encode_payload(payload), 64)
        images = ["not a sync frame"] + list(reversed(frames)) + frames[:2]
        camera = ScriptedCamera(images)
        qr = QRFrameTransport(scans_per_second=200, frame_source_factory=lambda: camera,
                              decoder=_text_decoder)
        events = _record(qr)

        handle = await qr.start_receiving()
        result = await handle.wait(timeout=10)

        assert result.kind == RECEIVE_COMPLETED
        assert result.payload == payload
        assert camera.opened and camera.closed
        progress = [(e.index, e.total) for e in events if e.kind == RECEIVE_PROGRESS]
        assert progress[-1] == (len(frames), len(frames))

    @pytest.mark.asyncio
    async def test_receive_recovers_from_corrupt_pass(self):
        payload = _sample_payload(5)
        frames = make_qr_frames(encode_payload(payload), 64)
        header = frames[0].split(":", 4)
        corrupt = [":".join(header[:4] + ["x" * len(header[4])])] + frames[1:]
        camera = ScriptedCamera(corrupt + frames)
        qr = QRFrameTransport(scans_per_second=200, frame_source_factory=lambda: camera,
                              decoder=_text_decoder)

        handle = await qr.start_receiving()
        result = await handle.wait(timeout=10)

        assert result.payload == payload

    @pytest.mark.asyncio
    async def test_receive_follows_restarted_sender(self):
        old = make_qr_frames(encode_payload(_sample_payload(5)), 64)
        payload = _sample_payload()
        frames = make_qr_frames(encode_payload(payload), 64)
        camera = ScriptedCamera([old[0]] + frames[:2] + [old[1]] + frames)
        qr = QRFrameTransport(scans_per_second=200, frame_source_factory=lambda: camera,
                              decoder=_text_decoder)

        handle = await qr.start_receiving()
        result = await handle.wait(timeout=10)

        assert result.kind == RECEIVE_COMPLETED
        assert result.payload == payload

    @pytest.mark.asyncio
    async def test_camera_denied(self):
        class DeniedCamera(ScriptedCamera):
            async def open(self):
                raise PermissionDenied("camera access denied")

        qr = QRFrameTransport(frame_source_factory=lambda: DeniedCamera([]), decoder=_text_decoder)
        handle = await qr.start_receiving()
        result = await handle.wait(timeout=2)
        assert result.kind == RECEIVE_ERROR
        assert isinstance(result.error, PermissionDenied)

    def test_capabilities_with_fakes(self):
        qr = QRFrameTransport(surface_factory=FakeSurface,
                              frame_source_factory=lambda: ScriptedCamera([]),
                              decoder=_text_decoder)
        assert qr.can_send() and qr.can_receive() and qr.is_available()


# ---------------------------------------------------------------------------
# BLE transport
# ---------------------------------------------------------------------------

class FakeGattClient:

    def __init__(self, fail_connect: Exception | None = None) -> None:
        self.fail_connect = fail_connect
        self.connected = False
        self.writes: list[bytes] = []
        self.notify_callback = None
        self.notify_stopped = False

    async def connect(self):
        if self.fail_connect:
            raise self.fail_connect
        self.connected = True

    async def disconnect(self):
        self.connected = False

    async def write_gatt_char(self, uuid, data, response=False):
        assert response is True
        self.writes.append(bytes(data))

    async def start_notify(self, uuid, callback):
        self.notify_callback = callback

    async def stop_notify(self, uuid):
        self.notify_stopped = True


class TestBLETransport:

    @pytest.mark.asyncio
    async def test_send_writes_frames(self):
        client = FakeGattClient()
        devices = []
        ble = BLETransport(chunk_size=64, write_delay=0.001,
                           client_factory=lambda device: devices.append(device) or client)
        payload = _sample_payload(5)

        handle = await ble.start_sending(payload, {"address": "AA:BB:CC:DD:EE:FF"})
        result = await handle.wait(timeout=10)

        assert result.kind == SEND_COMPLETED
        assert devices == ["AA:BB:CC:DD:EE:FF"]
        reassembler = ChunkReassembler()
        for raw in client.writes:
            index, total, length, body = parse_ble_frame(raw)
            reassembler.add(index, total, body, session=length)
        assert reassembler.join_bytes() == encode_payload(payload).encode()
        assert not client.connected

    @pytest.mark.asyncio
    async def test_receive_reassembles_notifications(self):
        client = FakeGattClient()
        ble = BLETransport(chunk_size=64, client_factory=lambda device: client)
        payload = _sample_payload(5)
        frames = make_ble_frames(encode_payload(payload).encode(), 64)

        handle = await ble.start_receiving("AA:BB")
        for _ in range(100):
            if client.notify_callback is not None:
                break
            await asyncio.sleep(0.01)
        order = list(range(len(frames)))
        random.Random(3).shuffle(order)
        client.notify_callback(None, bytearray(b"garbage"))
        for i in order + order[:2]:
            client.notify_callback(None, bytearray(frames[i]))

        result = await handle.wait(timeout=5)
        assert result.kind == RECEIVE_COMPLETED
        assert result.payload == payload
        assert client.notify_stopped
        assert not client.connected

    @pytest.mark.asyncio
    async def test_permission_refused(self):
        client = FakeGattClient(fail_connect=Exception("Bluetooth permission denied by user"))
        ble = BLETransport(client_factory=lambda device: client)
        handle = await ble.start_sending(_sample_payload(1), {"address": "AA:BB"})
        result = await handle.wait(timeout=2)
        assert result.kind == SEND_ERROR
        assert isinstance(result.error, PermissionDenied)

    @pytest.mark.asyncio
    async def test_no_device_found(self):
        async def nothing(_service_uuid):
            return None

        ble = BLETransport(client_factory=lambda device: FakeGattClient(), device_resolver=nothing)
        handle = await ble.start_receiving()
        result = await handle.wait(timeout=2)
        assert result.kind == RECEIVE_ERROR
        assert isinstance(result.error, TransferFailed)

    @pytest.mark.asyncio
    async def test_stop_while_waiting_for_notifications(self):
        client = FakeGattClient()
        ble = BLETransport(client_factory=lambda device: client)
        events = _record(ble)
        await ble.start_receiving("AA:BB")
        for _ in range(100):
            if client.notify_callback is not None:
                break
            await asyncio.sleep(0.01)
        await ble.stop_receiving()
        assert _terminals(events)[0].cancelled
        assert client.notify_stopped
        assert not client.connected

    def test_backend_error_mapping(self):
        assert isinstance(_backend_error(PermissionError("no"), "scan"), PermissionDenied)
        assert isinstance(_backend_error(Exception("Not authorized"), "scan"), PermissionDenied)
        assert isinstance(_backend_error(Exception("timeout"), "scan"), TransferFailed)
