"""
Sync payload — the JSON document every transport carries.

Shape:
    {
      "type": "sync",
      "branches": [Branch, ...],
      "settings": {"temperature", "maxTokens", "isDark", "selectedModel"},
      "timestamp": <epoch ms>,
      "ideas": [...], "binds": [...], "snapshots": [...]     (optional)
    }

WebRTC peers of the browser client send ``"type": "full-sync"``; it is
accepted on input.
"""

from __future__ import annotations

import json
from typing import Any

from convosync import PAYLOAD_TYPE, PAYLOAD_TYPE_FULL
from convosync.models import Bind, Branch, Idea, Snapshot, epoch_ms
from convosync.transports.base import ParseError

VALID_TYPES = frozenset({PAYLOAD_TYPE, PAYLOAD_TYPE_FULL})
_OPTIONAL_LISTS = ("ideas", "binds", "snapshots")


def make_payload(
    branches: list[Branch],
    settings: dict[str, Any] | None = None,
    *,
    ideas: list[Idea] | None = None,
    binds: list[Bind] | None = None,
    snapshots: list[Snapshot] | None = None,
    timestamp: int | None = None,
) -> dict:
    """Build a sync payload dict from model objects."""
    payload: dict[str, Any] = {
        "type": PAYLOAD_TYPE,
        "branches": [b.to_dict() for b in branches],
        "settings": dict(settings or {}),
        "timestamp": timestamp if timestamp is not None else epoch_ms(),
    }
    if ideas is not None:
        payload["ideas"] = [i.to_dict() for i in ideas]
    if binds is not None:
        payload["binds"] = [b.to_dict() for b in binds]
    if snapshots is not None:
        payload["snapshots"] = [s.to_dict() for s in snapshots]
    return payload


def validate_payload(payload: Any) -> None:
    """Validate a decoded payload's envelope. Raises ParseError on failure.

    Records inside the lists are checked by the merge engine as it imports them.
    """
    if not isinstance(payload, dict):
        raise ParseError("Payload must be a JSON object")
    if payload.get("type") not in VALID_TYPES:
        raise ParseError(f"Unknown payload type: {payload.get('type')!r}")
    if not isinstance(payload.get("branches"), list):
        raise ParseError("Payload is missing a 'branches' list")
    for key in _OPTIONAL_LISTS:
        if key in payload and not isinstance(payload[key], list):
            raise ParseError(f"Payload field {key!r} must be a list")
    for record in payload["branches"]:
        if not isinstance(record, dict) or "id" not in record:
            raise ParseError("Every branch must be an object with an 'id'")
    settings = payload.get("settings")
    if settings is not None and not isinstance(settings, dict):
        raise ParseError("Payload field 'settings' must be an object")
    timestamp = payload.get("timestamp")
    if timestamp is not None and (isinstance(timestamp, bool) or not isinstance(timestamp, (int, float, str))):
        raise ParseError("Payload field 'timestamp' must be a number or string")


def encode_payload(payload: dict) -> str:
    """Serialize a payload to compact JSON text."""
    validate_payload(payload)
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def decode_payload(data: str | bytes) -> dict:
    """Parse and validate payload text or UTF-8 bytes."""
    try:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        payload = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"Invalid JSON payload: {e}") from e
    validate_payload(payload)
    return payload


def payload_size(payload: dict) -> int:
    """Encoded size in bytes."""
    return len(encode_payload(payload).encode("utf-8"))
