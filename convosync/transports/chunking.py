"""
Chunk framing for transports that move a payload in pieces.

QR frame text (one per rendered code):
    CSQR:<session>:<index>:<total>:<chunk>
    session = first 8 hex chars of SHA-256(payload text)

BLE frame (one per characteristic write):
    [4 bytes: "CSB1"] [2 bytes: index] [2 bytes: total] [4 bytes: payload length] [body]
    big-endian, header 12 bytes, frame at most ``chunk_size`` bytes

Chunks may arrive in any order and repeatedly; ChunkReassembler keeps one
copy per index and reports completion when indices 0..n-1 are present.
"""

from __future__ import annotations

import hashlib
import math
import struct
from dataclasses import dataclass

from convosync import BLE_FRAME_MAGIC, QR_FRAME_PREFIX
from convosync.transports.base import ParseError, PayloadTooLarge

BLE_HEADER_STRUCT = struct.Struct(">4sHHI")  # magic, index, total, payload length
BLE_HEADER_SIZE = BLE_HEADER_STRUCT.size
BLE_MAX_CHUNKS = 0xFFFF


def session_id(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:8]


def split_text(text: str, chunk_size: int) -> list[str]:
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return [text[i:i + chunk_size] for i in range(0, len(text), chunk_size)] or [""]


@dataclass(frozen=True)
class QRFrame:
    session: str
    index: int
    total: int
    data: str


def make_qr_frames(text: str, chunk_size: int) -> list[str]:
    """Split payload text into QR frame strings."""
    session = session_id(text)
    chunks = split_text(text, chunk_size)
    total = len(chunks)
    return [f"{QR_FRAME_PREFIX}:{session}:{i}:{total}:{chunk}" for i, chunk in enumerate(chunks)]


def parse_qr_frame(text: str) -> QRFrame:
    """Parse one QR frame string. Raises ParseError on anything else."""
    parts = text.split(":", 4)
    if len(parts) != 5 or parts[0] != QR_FRAME_PREFIX:
        raise ParseError(f"Not a sync frame: {text[:32]!r}")
    _, session, index, total, data = parts
    try:
        index_n, total_n = int(index), int(total)
    except ValueError:
        raise ParseError(f"Bad frame counters: {index!r}/{total!r}") from None
    if total_n <= 0 or not 0 <= index_n < total_n:
        raise ParseError(f"Frame index {index_n} out of range for total {total_n}")
    return QRFrame(session, index_n, total_n, data)


def make_ble_frames(data: bytes, chunk_size: int) -> list[bytes]:
    """Split payload bytes into indexed, length-prefixed BLE frames."""
    body_size = chunk_size - BLE_HEADER_SIZE
    if body_size <= 0:
        raise ValueError(f"chunk_size must exceed the {BLE_HEADER_SIZE}-byte header")
    total = max(1, math.ceil(len(data) / body_size))
    if total > BLE_MAX_CHUNKS:
        raise PayloadTooLarge(f"Payload needs {total} BLE chunks (max {BLE_MAX_CHUNKS})")
    frames = []
    for index in range(total):
        body = data[index * body_size:(index + 1) * body_size]
        frames.append(BLE_HEADER_STRUCT.pack(BLE_FRAME_MAGIC, index, total, len(data)) + body)
    return frames


def parse_ble_frame(frame: bytes) -> tuple[int, int, int, bytes]:
    """Return (index, total, payload length, body). Raises ParseError on a bad header."""
    if len(frame) < BLE_HEADER_SIZE:
        raise ParseError(f"BLE frame too short: {len(frame)} bytes")
    magic, index, total, length = BLE_HEADER_STRUCT.unpack(frame[:BLE_HEADER_SIZE])
    if magic != BLE_FRAME_MAGIC:
        raise ParseError(f"Bad BLE frame magic: {magic!r}")
    if total == 0 or index >= total:
        raise ParseError(f"BLE frame index {index} out of range for total {total}")
    return index, total, length, bytes(frame[BLE_HEADER_SIZE:])


class ChunkReassembler:
    """Collects chunks of one payload by index.

    The first chunk fixes the expected total and session key; chunks that
    disagree belong to another payload and are ignored. Callers that follow
    a restarted sender call ``reset()`` when the session changes.
    """

    def __init__(self) -> None:
        self.total: int | None = None
        self.session: object = None
        self._chunks: dict[int, str | bytes] = {}

    def add(self, index: int, total: int, data: str | bytes, session: object = None) -> bool:
        """Store a chunk. Returns True if it was new."""
        if total <= 0 or not 0 <= index < total:
            raise ParseError(f"Chunk index {index} out of range for total {total}")
        if self.total is None:
            self.total = total
            self.session = session
        elif total != self.total or session != self.session:
            return False
        if index in self._chunks:
            return False
        self._chunks[index] = data
        return True

    @property
    def received(self) -> int:
        return len(self._chunks)

    @property
    def complete(self) -> bool:
        return self.total is not None and len(self._chunks) == self.total

    def missing(self) -> list[int]:
        if self.total is None:
            return []
        return [i for i in range(self.total) if i not in self._chunks]

    def reset(self) -> None:
        self.total = None
        self.session = None
        self._chunks.clear()

    def join_text(self) -> str:
        if not self.complete:
            raise ParseError(f"Missing chunks: {self.missing()}")
        return "".join(str(self._chunks[i]) for i in range(self.total))

    def join_bytes(self) -> bytes:
        if not self.complete:
            raise ParseError(f"Missing chunks: {self.missing()}")
        return b"".join(bytes(self._chunks[i]) for i in range(self.total))
