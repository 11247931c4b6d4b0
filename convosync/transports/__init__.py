"""
Sync transports — interchangeable channels that move one payload between devices.

    qr      — animated QR frames, camera on the receiving side
    relay   — HTTP piping relay (POST / streaming GET on a shared path)
    p2p     — WebRTC data channel, negotiated over a WebSocket signaling server
    ble     — Bluetooth LE GATT characteristic writes and notifications

Optional stacks (opencv, qrcode, aiortc, bleak) are imported lazily, so
importing a transport module never fails; ``is_available()`` reports whether
it can run here.
"""

from __future__ import annotations

from typing import Any

from convosync.transports.base import SyncTransport

TRANSPORT_KINDS = ("relay", "qr", "ble", "p2p")


def build_transport(kind: str, config: dict[str, Any] | None = None, **kwargs: Any) -> SyncTransport:
    """Construct a transport of ``kind`` from config values."""
    from convosync.config import DEFAULT_CONFIG

    cfg = dict(DEFAULT_CONFIG)
    cfg.update(config or {})

    if kind == "relay":
        from convosync.transports.relay import RelayTransport
        return RelayTransport(relay_url=cfg["relay_url"], **kwargs)
    if kind == "qr":
        from convosync.transports.qr import QRFrameTransport
        return QRFrameTransport(
            chunk_size=cfg["qr_chunk_size"],
            max_frames=cfg["qr_max_frames"],
            frames_per_second=cfg["qr_frames_per_second"],
            scans_per_second=cfg["qr_scans_per_second"],
            cycles=cfg["qr_cycles"],
            camera_index=cfg["camera_index"],
            **kwargs,
        )
    if kind == "ble":
        from convosync.transports.ble import BLETransport
        return BLETransport(
            service_uuid=cfg["ble_service_uuid"],
            characteristic_uuid=cfg["ble_characteristic_uuid"],
            chunk_size=cfg["ble_chunk_size"],
            write_delay=cfg["ble_write_delay"],
            **kwargs,
        )
    if kind == "p2p":
        from convosync.transports.p2p import P2PTransport
        from convosync.transports.signaling import SignalingClient
        signaling = SignalingClient(
            cfg["signaling_url"],
            max_reconnects=cfg["signaling_max_reconnects"],
            base_delay=cfg["signaling_base_delay"],
        )
        return P2PTransport(signaling, ice_servers=cfg["ice_servers"], **kwargs)
    raise ValueError(f"Unknown transport kind: {kind!r} (expected one of {', '.join(TRANSPORT_KINDS)})")
