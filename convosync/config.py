"""
Configuration — defaults overridden by ~/.convosync/config.toml.

Example config.toml:

    relay_url = "https://ppng.io"
    signaling_url = "wss://signal.example.org"
    qr_chunk_size = 200
    ble_write_delay = 0.05
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from convosync import (
    BLE_CHARACTERISTIC_UUID, BLE_CHUNK_SIZE, BLE_SERVICE_UUID, BLE_WRITE_DELAY,
    P2P_ICE_SERVERS, QR_CHUNK_SIZE, QR_FRAMES_PER_SECOND, QR_MAX_FRAMES,
    QR_SCANS_PER_SECOND, RELAY_DEFAULT_URL, SIGNALING_BASE_DELAY,
    SIGNALING_DEFAULT_URL, SIGNALING_MAX_RECONNECTS,
)

log = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".convosync"
DEFAULT_CONFIG_PATH = CONFIG_DIR / "config.toml"

DEFAULT_CONFIG: dict[str, Any] = {
    "data_dir": str(CONFIG_DIR / "data"),
    "settings_path": str(CONFIG_DIR / "settings.json"),
    "relay_url": RELAY_DEFAULT_URL,
    "signaling_url": SIGNALING_DEFAULT_URL,
    "ice_servers": list(P2P_ICE_SERVERS),
    "qr_chunk_size": QR_CHUNK_SIZE,
    "qr_max_frames": QR_MAX_FRAMES,
    "qr_frames_per_second": QR_FRAMES_PER_SECOND,
    "qr_scans_per_second": QR_SCANS_PER_SECOND,
    "qr_cycles": 0,  # 0 = loop until stopped
    "camera_index": 0,
    "ble_service_uuid": BLE_SERVICE_UUID,
    "ble_characteristic_uuid": BLE_CHARACTERISTIC_UUID,
    "ble_chunk_size": BLE_CHUNK_SIZE,
    "ble_write_delay": BLE_WRITE_DELAY,
    "signaling_max_reconnects": SIGNALING_MAX_RECONNECTS,
    "signaling_base_delay": SIGNALING_BASE_DELAY,
}


def load_config(config_path: str | Path | None = None) -> dict[str, Any]:
    """Load config from a TOML file, falling back to defaults."""
    config = dict(DEFAULT_CONFIG)

    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    if path.is_file():
        try:
            import tomllib
        except ImportError:
            try:
                import tomli as tomllib
            except ImportError:
                log.warning("tomllib/tomli not available, using default config")
                return config

        try:
            with open(path, "rb") as f:
                file_config = tomllib.load(f)
            config.update(file_config)
        except (OSError, tomllib.TOMLDecodeError) as e:
            log.warning("Failed to load config from %s: %s", path, e)

    return config
