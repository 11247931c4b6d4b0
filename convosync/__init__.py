"""
ConvoSync — replicate a branching conversation store between devices.

Architecture:
    Store:       ~/.convosync/data/{ideas,branches,binds,snapshots}.json
    Payload:     {"type": "sync", "branches": [...], "settings": {...}, "timestamp": ms}
    Transports:  animated QR frames | HTTP piping relay | WebRTC data channel | BLE GATT
    Merge:       union branch histories by message id, last-writer-wins metadata
"""

__version__ = "0.1.0"

PAYLOAD_TYPE = "sync"
PAYLOAD_TYPE_FULL = "full-sync"  # sent by WebRTC peers of the browser client

# HTTP relay (piping-server protocol)
RELAY_DEFAULT_URL = "https://ppng.io"
RELAY_PATH_LENGTH = 10

# Signaling + WebRTC
SIGNALING_DEFAULT_URL = "ws://127.0.0.1:8765"
SIGNALING_DEFAULT_PORT = 8765
SIGNALING_MAX_RECONNECTS = 5
SIGNALING_BASE_DELAY = 1.0  # seconds, doubled per attempt
P2P_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:global.stun.twilio.com:3478",
]
P2P_PART_SIZE = 16 * 1024  # data channel message size

# Animated QR
QR_CHUNK_SIZE = 256
QR_MAX_FRAMES = 200
QR_FRAMES_PER_SECOND = 5
QR_MAX_FRAMES_PER_SECOND = 10
QR_SCANS_PER_SECOND = 8
QR_FRAME_PREFIX = "CSQR"

# Bluetooth LE
BLE_SERVICE_UUID = "00001234-0000-1000-8000-00805f9b34fb"
BLE_CHARACTERISTIC_UUID = "00001235-0000-1000-8000-00805f9b34fb"
BLE_CHUNK_SIZE = 512  # bytes per characteristic write, header included
BLE_WRITE_DELAY = 0.1  # seconds between writes
BLE_FRAME_MAGIC = b"CSB1"
