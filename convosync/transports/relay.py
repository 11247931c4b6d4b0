"""
HTTP relay transport — piping-server protocol over an anonymous relay.

    sender:    POST <relay>/<path>   body = payload JSON, held until a receiver reads it
    receiver:  GET  <relay>/<path>   streamed response body = payload JSON

The path is the shared code the two users exchange. Cancelling closes the
HTTP connection, so a relay holding an unread POST drops it.
"""

from __future__ import annotations

import codecs
import logging
import re
import secrets
import string
from typing import Any, Callable
from urllib.parse import urlparse

import aiohttp

from convosync import RELAY_DEFAULT_URL, RELAY_PATH_LENGTH
from convosync.payload import decode_payload, encode_payload
from convosync.transports.base import (
    ParseError, SEND, SyncTransport, TransferFailed, TransferHandle,
)

log = logging.getLogger(__name__)

_PATH_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_PATH_ALPHABET = string.ascii_lowercase + string.digits
_READ_CHUNK_SIZE = 16 * 1024
_CONNECT_TIMEOUT = 30.0


def generate_path(length: int = RELAY_PATH_LENGTH) -> str:
    """Random relay path of lowercase letters and digits."""
    return "".join(secrets.choice(_PATH_ALPHABET) for _ in range(length))


def validate_path(path: str) -> None:
    if not isinstance(path, str) or not _PATH_RE.match(path):
        raise TransferFailed(
            f"Invalid relay path {path!r}: use 1-64 letters, digits, '-' or '_'"
        )


class RelayTransport(SyncTransport):
    """Piping-server relay client.

    Usage:
        relay = RelayTransport()
        handle = await relay.start_sending(payload)
        print("code:", handle.code)        # receiver uses the same code
        await handle.wait()
    """

    name = "relay"

    def __init__(
        self,
        relay_url: str = RELAY_DEFAULT_URL,
        session_factory: Callable[[], aiohttp.ClientSession] | None = None,
        receive_timeout: float | None = None,
    ) -> None:
        super().__init__()
        self.relay_url = relay_url.rstrip("/")
        self.receive_timeout = receive_timeout
        self._session_factory = session_factory or self._default_session

    def _default_session(self) -> aiohttp.ClientSession:
        timeout = aiohttp.ClientTimeout(total=self.receive_timeout, sock_connect=_CONNECT_TIMEOUT)
        return aiohttp.ClientSession(timeout=timeout)

    def is_available(self) -> bool:
        parsed = urlparse(self.relay_url)
        return parsed.scheme in ("http", "https") and bool(parsed.netloc)

    @property
    def current_path(self) -> str | None:
        handle = self._handles[SEND]
        return handle.code if handle is not None else None

    def url_for(self, path: str) -> str:
        validate_path(path)
        return f"{self.relay_url}/{path}"

    def _operation_code(self, direction: str, target: str | None, options: dict[str, Any]) -> str | None:
        if direction == SEND:
            return options.get("path") or generate_path()
        return target or options.get("path")

    async def _send(self, handle: TransferHandle, payload: dict, options: dict[str, Any]) -> None:
        url = self.url_for(handle.code)
        body = encode_payload(payload).encode("utf-8")
        log.info("Posting %d bytes to relay path %s", len(body), handle.code)
        try:
            async with self._session_factory() as session:
                async with session.post(
                    url, data=body, headers={"Content-Type": "application/json"}
                ) as resp:
                    text = await resp.text()
                    if resp.status >= 300:
                        raise TransferFailed(f"Relay POST failed: {resp.status} {text[:200]}")
        except aiohttp.ClientError as e:
            raise TransferFailed(f"Relay request failed: {e}") from e
        self._progress(handle, len(body), len(body))

    async def _receive(self, handle: TransferHandle, target: str | None, options: dict[str, Any]) -> dict:
        if not handle.code:
            raise TransferFailed("A relay path is required to receive")
        url = self.url_for(handle.code)
        decoder = codecs.getincrementaldecoder("utf-8")()
        parts: list[str] = []
        received = 0
        try:
            async with self._session_factory() as session:
                async with session.get(url) as resp:
                    if resp.status >= 300:
                        text = await resp.text()
                        raise TransferFailed(f"Relay GET failed: {resp.status} {text[:200]}")
                    total = resp.content_length
                    async for chunk in resp.content.iter_chunked(_READ_CHUNK_SIZE):
                        handle.token.check()
                        received += len(chunk)
                        parts.append(decoder.decode(chunk))
                        self._progress(handle, received, total)
                    parts.append(decoder.decode(b"", final=True))
        except UnicodeDecodeError as e:
            raise ParseError(f"Relay body is not UTF-8: {e}") from e
        except aiohttp.ClientError as e:
            raise TransferFailed(f"Relay request failed: {e}") from e
        log.info("Received %d bytes from relay path %s", received, handle.code)
        return decode_payload("".join(parts))
