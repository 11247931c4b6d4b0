"""
Animated QR transport — the sender cycles QR frames on a display, the receiver
scans them with a camera.

Requires ``qrcode`` to render and ``opencv-python`` to capture and decode.
Both are imported lazily — install with: pip install convosync[qr]

The render surface, frame source and decoder are injectable so the transfer
loop runs without a display or camera.
"""

from __future__ import annotations

import abc
import asyncio
import importlib.util
import logging
import sys
from typing import Any, Callable, TextIO

from convosync import (
    QR_CHUNK_SIZE, QR_FRAMES_PER_SECOND, QR_MAX_FRAMES, QR_MAX_FRAMES_PER_SECOND,
    QR_SCANS_PER_SECOND,
)
from convosync.payload import decode_payload, encode_payload
from convosync.transports.base import (
    CapabilityUnavailable, ParseError, PayloadTooLarge, PermissionDenied,
    SyncTransport, TransferHandle,
)
from convosync.transports.chunking import (
    ChunkReassembler, make_qr_frames, parse_qr_frame, session_id,
)

log = logging.getLogger(__name__)

_WINDOW_TITLE = "convosync"
_WINDOW_SIZE = 480


def _has_module(name: str) -> bool:
    return importlib.util.find_spec(name) is not None


def _import_qrcode():
    try:
        import qrcode
        return qrcode
    except ImportError:
        raise CapabilityUnavailable(
            "qrcode is required to render sync frames. "
            "Install with: pip install convosync[qr]"
        )


def _import_cv2():
    try:
        import cv2
        return cv2
    except ImportError:
        raise CapabilityUnavailable(
            "opencv-python is required for camera capture and QR decoding. "
            "Install with: pip install convosync[qr]"
        )


# ---------------------------------------------------------------------------
# Render surfaces
# ---------------------------------------------------------------------------

class QRSurface(abc.ABC):
    """Somewhere a QR frame can be shown."""

    def open(self) -> None:
        pass

    @abc.abstractmethod
    def show(self, text: str, index: int, total: int) -> None:
        ...

    def close(self) -> None:
        pass


class TerminalQRSurface(QRSurface):
    """Draws each frame as text blocks on a terminal."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream or sys.stdout
        self._qrcode = None

    def open(self) -> None:
        self._qrcode = _import_qrcode()

    def show(self, text: str, index: int, total: int) -> None:
        qr = self._qrcode.QRCode(
            error_correction=self._qrcode.constants.ERROR_CORRECT_M, border=2
        )
        qr.add_data(text)
        qr.make(fit=True)
        self.stream.write("\x1b[2J\x1b[H")
        qr.print_ascii(out=self.stream, invert=True)
        self.stream.write(f"frame {index + 1}/{total}\n")
        self.stream.flush()


class WindowQRSurface(QRSurface):
    """Shows frames in an OpenCV window."""

    def __init__(self, size: int = _WINDOW_SIZE, title: str = _WINDOW_TITLE) -> None:
        self.size = size
        self.title = title
        self._cv2 = None
        self._qrcode = None

    def open(self) -> None:
        self._qrcode = _import_qrcode()
        self._cv2 = _import_cv2()
        self._cv2.namedWindow(self.title)

    def show(self, text: str, index: int, total: int) -> None:
        import numpy as np

        qr = self._qrcode.QRCode(
            error_correction=self._qrcode.constants.ERROR_CORRECT_M, border=4
        )
        qr.add_data(text)
        qr.make(fit=True)
        image = qr.make_image(fill_color="black", back_color="white").get_image()
        image = image.convert("L").resize((self.size, self.size))
        self._cv2.imshow(self.title, np.array(image))
        self._cv2.setWindowTitle(self.title, f"{self.title} {index + 1}/{total}")
        self._cv2.waitKey(1)

    def close(self) -> None:
        if self._cv2 is not None:
            self._cv2.destroyWindow(self.title)
            self._cv2 = None


# ---------------------------------------------------------------------------
# Frame sources and decoding
# ---------------------------------------------------------------------------

class FrameSource(abc.ABC):
    """Yields camera images (or anything the decoder accepts)."""

    async def open(self) -> None:
        pass

    @abc.abstractmethod
    async def read(self) -> Any:
        """Return the next image, or None when nothing was captured."""

    async def close(self) -> None:
        pass


class OpenCVCamera(FrameSource):
    """cv2.VideoCapture on a device index. Blocking calls run in a worker thread."""

    def __init__(self, index: int = 0) -> None:
        self.index = index
        self._cap = None

    async def open(self) -> None:
        cv2 = _import_cv2()
        cap = await asyncio.to_thread(cv2.VideoCapture, self.index)
        if not cap.isOpened():
            cap.release()
            raise PermissionDenied(
                f"Camera {self.index} could not be opened (no device or access denied)"
            )
        self._cap = cap

    async def read(self) -> Any:
        if self._cap is None:
            return None
        ok, image = await asyncio.to_thread(self._cap.read)
        return image if ok else None

    async def close(self) -> None:
        if self._cap is not None:
            cap, self._cap = self._cap, None
            await asyncio.to_thread(cap.release)


class OpenCVQRDecoder:
    """Decodes QR codes in an image with cv2.QRCodeDetector."""

    def __init__(self) -> None:
        self._detector = _import_cv2().QRCodeDetector()

    def __call__(self, image: Any) -> list[str]:
        text, _points, _ = self._detector.detectAndDecode(image)
        return [text] if text else []


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class QRFrameTransport(SyncTransport):
    """Moves a payload as a looping sequence of QR frames.

    Usage:
        qr = QRFrameTransport(surface_factory=WindowQRSurface)
        handle = await qr.start_sending(payload)
        ...
        await qr.stop_sending()
    """

    name = "qr"

    def __init__(
        self,
        chunk_size: int = QR_CHUNK_SIZE,
        max_frames: int = QR_MAX_FRAMES,
        frames_per_second: float = QR_FRAMES_PER_SECOND,
        scans_per_second: float = QR_SCANS_PER_SECOND,
        cycles: int = 0,
        camera_index: int = 0,
        surface_factory: Callable[[], QRSurface] | None = None,
        frame_source_factory: Callable[[], FrameSource] | None = None,
        decoder: Callable[[Any], list[str]] | None = None,
    ) -> None:
        super().__init__()
        self.chunk_size = chunk_size
        self.max_frames = max_frames
        self.frames_per_second = min(max(frames_per_second, 1), QR_MAX_FRAMES_PER_SECOND)
        self.scans_per_second = max(scans_per_second, 1)
        self.cycles = cycles
        self.camera_index = camera_index
        self._surface_factory = surface_factory
        self._frame_source_factory = frame_source_factory
        self._decoder = decoder

    def can_send(self) -> bool:
        return self._surface_factory is not None or _has_module("qrcode")

    def can_receive(self) -> bool:
        if self._frame_source_factory is not None and self._decoder is not None:
            return True
        return _has_module("cv2")

    def is_available(self) -> bool:
        return self.can_send() or self.can_receive()

    def frames_for(self, payload: dict) -> list[str]:
        """Frame strings for ``payload``. Raises PayloadTooLarge past ``max_frames``."""
        frames = make_qr_frames(encode_payload(payload), self.chunk_size)
        if len(frames) > self.max_frames:
            raise PayloadTooLarge(
                f"Payload needs {len(frames)} QR frames (max {self.max_frames}); "
                "use the relay or P2P transport"
            )
        return frames

    async def _send(self, handle: TransferHandle, payload: dict, options: dict[str, Any]) -> None:
        frames = self.frames_for(payload)
        total = len(frames)
        cycles = int(options.get("cycles", self.cycles))
        interval = 1.0 / self.frames_per_second

        surface = self._surface_factory() if self._surface_factory else TerminalQRSurface()
        surface.open()
        log.info("Showing %d QR frame(s) at %.0f fps", total, self.frames_per_second)
        try:
            shown_cycles = 0
            while True:
                for index, frame in enumerate(frames):
                    handle.token.check()
                    surface.show(frame, index, total)
                    self._progress(handle, index, total)
                    await handle.token.sleep(interval)
                shown_cycles += 1
                if cycles and shown_cycles >= cycles:
                    return
        finally:
            surface.close()

    async def _receive(self, handle: TransferHandle, target: str | None, options: dict[str, Any]) -> dict:
        decoder = self._decoder or OpenCVQRDecoder()
        source = (self._frame_source_factory() if self._frame_source_factory
                  else OpenCVCamera(self.camera_index))
        reassembler = ChunkReassembler()
        interval = 1.0 / self.scans_per_second

        await source.open()
        try:
            while True:
                handle.token.check()
                image = await source.read()
                if image is not None:
                    texts = await asyncio.to_thread(decoder, image)
                    payload = self._absorb(handle, reassembler, texts)
                    if payload is not None:
                        return payload
                await handle.token.sleep(interval)
        finally:
            await source.close()

    def _absorb(self, handle: TransferHandle, reassembler: ChunkReassembler, texts: list[str]) -> dict | None:
        for text in texts:
            try:
                frame = parse_qr_frame(text)
            except ParseError as e:
                log.debug("Ignoring QR code: %s", e)
                continue
            if reassembler.total is not None and frame.session != reassembler.session:
                log.info("QR sender switched to payload %s", frame.session)
                reassembler.reset()
            if not reassembler.add(frame.index, frame.total, frame.data, frame.session):
                continue
            self._progress(handle, reassembler.received, frame.total)
            if not reassembler.complete:
                continue
            text = reassembler.join_text()
            if session_id(text) != reassembler.session:
                log.warning("QR payload failed its checksum; rescanning")
                reassembler.reset()
                continue
            return decode_payload(text)
        return None
