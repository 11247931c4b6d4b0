"""
Bluetooth LE transport — GATT characteristic writes out, notifications in.

The other device runs a GATT server exposing the sync service; this side
connects as a central. Sending writes indexed frames (see chunking.py) to the
characteristic with a short delay between writes; receiving subscribes to
notifications on the same characteristic and reassembles the frames.

Requires bleak — install with: pip install convosync[ble]
"""

from __future__ import annotations

import asyncio
import importlib.util
import logging
import re
from typing import Any, Awaitable, Callable

from convosync import (
    BLE_CHARACTERISTIC_UUID, BLE_CHUNK_SIZE, BLE_SERVICE_UUID, BLE_WRITE_DELAY,
)
from convosync.payload import decode_payload, encode_payload
from convosync.transports.base import (
    CapabilityUnavailable, ParseError, PermissionDenied, SyncTransport,
    TransferFailed, TransferHandle, TransportError,
)
from convosync.transports.chunking import ChunkReassembler, make_ble_frames, parse_ble_frame

log = logging.getLogger(__name__)

DEFAULT_SCAN_TIMEOUT = 10.0

_PERMISSION_RE = re.compile(r"permission|not authori[sz]ed|access denied|unauthori[sz]ed", re.I)


def _import_bleak():
    try:
        import bleak
        return bleak
    except ImportError:
        raise CapabilityUnavailable(
            "bleak is required for Bluetooth sync. "
            "Install with: pip install convosync[ble]"
        )


def _backend_error(e: Exception, action: str) -> TransportError:
    """Map a BLE backend exception onto the transport error taxonomy."""
    if isinstance(e, PermissionError) or _PERMISSION_RE.search(str(e)):
        return PermissionDenied(f"Bluetooth {action} refused: {e}")
    return TransferFailed(f"Bluetooth {action} failed: {e}")


class BLETransport(SyncTransport):
    """Sync over a custom GATT service.

    Usage:
        ble = BLETransport()
        devices = await ble.discover_devices()
        await ble.start_sending(payload, {"address": devices[0].address})
    """

    name = "ble"

    def __init__(
        self,
        service_uuid: str = BLE_SERVICE_UUID,
        characteristic_uuid: str = BLE_CHARACTERISTIC_UUID,
        chunk_size: int = BLE_CHUNK_SIZE,
        write_delay: float = BLE_WRITE_DELAY,
        scan_timeout: float = DEFAULT_SCAN_TIMEOUT,
        client_factory: Callable[[Any], Any] | None = None,
        device_resolver: Callable[[str], Awaitable[Any]] | None = None,
    ) -> None:
        super().__init__()
        self.service_uuid = service_uuid
        self.characteristic_uuid = characteristic_uuid
        self.chunk_size = chunk_size
        self.write_delay = write_delay
        self.scan_timeout = scan_timeout
        self._client_factory = client_factory
        self._device_resolver = device_resolver

    def is_available(self) -> bool:
        return self._client_factory is not None or importlib.util.find_spec("bleak") is not None

    async def discover_devices(self, timeout: float | None = None) -> list[Any]:
        """Devices advertising the sync service."""
        bleak = _import_bleak()
        try:
            return await bleak.BleakScanner.discover(
                timeout=timeout or self.scan_timeout, service_uuids=[self.service_uuid]
            )
        except Exception as e:
            raise _backend_error(e, "scan") from e

    async def _resolve_device(self, target: str | None, options: dict[str, Any]) -> Any:
        address = target or options.get("address")
        if address:
            return address
        if self._device_resolver is not None:
            device = await self._device_resolver(self.service_uuid)
        else:
            devices = await self.discover_devices()
            device = devices[0] if devices else None
        if device is None:
            raise TransferFailed("No nearby device is advertising the sync service")
        return device

    def _make_client(self, device: Any) -> Any:
        if self._client_factory is not None:
            return self._client_factory(device)
        return _import_bleak().BleakClient(device)

    async def _connect(self, device: Any) -> Any:
        client = self._make_client(device)
        try:
            await client.connect()
        except Exception as e:
            raise _backend_error(e, "connect") from e
        log.info("Connected to BLE device %s", getattr(device, "address", device))
        return client

    async def _disconnect(self, client: Any) -> None:
        try:
            await client.disconnect()
        except Exception as e:
            log.warning("BLE disconnect failed: %s", e)

    async def _send(self, handle: TransferHandle, payload: dict, options: dict[str, Any]) -> None:
        frames = make_ble_frames(encode_payload(payload).encode("utf-8"), self.chunk_size)
        total = len(frames)
        device = await self._resolve_device(None, options)
        client = await self._connect(device)
        try:
            for index, frame in enumerate(frames):
                handle.token.check()
                try:
                    await client.write_gatt_char(self.characteristic_uuid, frame, response=True)
                except Exception as e:
                    raise _backend_error(e, "write") from e
                log.debug("Wrote BLE frame %d/%d (%d bytes)", index + 1, total, len(frame))
                self._progress(handle, index + 1, total)
                if index < total - 1:
                    await handle.token.sleep(self.write_delay)
        finally:
            await self._disconnect(client)

    async def _receive(self, handle: TransferHandle, target: str | None, options: dict[str, Any]) -> dict:
        device = await self._resolve_device(target, options)
        client = await self._connect(device)
        frames: asyncio.Queue[bytes] = asyncio.Queue()

        def on_notify(_sender: Any, data: bytearray) -> None:
            frames.put_nowait(bytes(data))

        try:
            try:
                await client.start_notify(self.characteristic_uuid, on_notify)
            except Exception as e:
                raise _backend_error(e, "subscribe") from e
            reassembler = ChunkReassembler()
            while True:
                frame = await frames.get()
                try:
                    index, total, length, body = parse_ble_frame(frame)
                except ParseError as e:
                    log.debug("Ignoring BLE frame: %s", e)
                    continue
                if reassembler.total is not None and (total, length) != (reassembler.total, reassembler.session):
                    log.info("BLE sender restarted with a new payload")
                    reassembler.reset()
                if not reassembler.add(index, total, body, session=length):
                    continue
                self._progress(handle, reassembler.received, total)
                if reassembler.complete:
                    data = reassembler.join_bytes()
                    if len(data) != length:
                        log.warning("BLE payload length %d != announced %d; waiting for resend",
                                    len(data), length)
                        reassembler.reset()
                        continue
                    return decode_payload(data)
        finally:
            try:
                await client.stop_notify(self.characteristic_uuid)
            except Exception as e:
                log.debug("BLE stop_notify failed: %s", e)
            await self._disconnect(client)
