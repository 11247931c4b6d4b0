"""
Conversation data model — Idea -> Branch -> Bind, plus Snapshot.

Every entity serializes to the camelCase shape used on disk and on the wire
(``ideaId``, ``parentId``, ``createdAt`` ...) so payloads produced by the
browser client import unchanged.

Timestamps are timezone-aware UTC datetimes truncated to milliseconds and
serialized as ``2024-01-01T00:00:00.000Z``. Parsing also accepts epoch
milliseconds.
"""

from __future__ import annotations

import copy
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

ROLES = ("user", "assistant")
PART_TYPES = ("text", "image_url")

Content = Union[str, list]


def utcnow() -> datetime:
    """Current UTC time at millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def epoch_ms(dt: datetime | None = None) -> int:
    if dt is None:
        return int(time.time() * 1000)
    return int(dt.timestamp() * 1000)


def _from_epoch_ms(ms: float) -> datetime:
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise ValueError(f"Timestamp out of range: {ms!r}") from None


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string, epoch milliseconds or datetime into UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return _from_epoch_ms(value)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return _from_epoch_ms(int(text))
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Invalid timestamp: {value!r}") from None
        return parse_timestamp(dt)
    raise ValueError(f"Invalid timestamp: {value!r}")


def format_timestamp(dt: datetime) -> str:
    dt = parse_timestamp(dt)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_id(prefix: str) -> str:
    """Return ``<prefix>-<epoch ms>-<10 hex chars>``."""
    return f"{prefix}-{epoch_ms()}-{os.urandom(5).hex()}"


def _require(d: dict, key: str, kind: str) -> Any:
    if not isinstance(d, dict):
        raise ValueError(f"{kind} must be an object, got {type(d).__name__}")
    if key not in d or d[key] is None:
        raise ValueError(f"{kind} is missing required field {key!r}")
    return d[key]


def _validate_content(content: Any) -> Content:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        raise ValueError(f"Message content must be a string or a list, got {type(content).__name__}")
    for part in content:
        if not isinstance(part, dict) or part.get("type") not in PART_TYPES:
            raise ValueError(f"Invalid content part: {part!r}")
        if part["type"] == "text" and not isinstance(part.get("text"), str):
            raise ValueError("Text part requires a 'text' string")
        if part["type"] == "image_url":
            image = part.get("image_url")
            if not isinstance(image, dict) or not isinstance(image.get("url"), str):
                raise ValueError("Image part requires an 'image_url.url' string")
    return copy.deepcopy(content)


@dataclass
class Message:
    """One chat message. ``content`` is a string or a list of typed parts."""

    id: str
    role: str
    content: Content
    timestamp: datetime
    attestation: dict | None = None

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Invalid message role: {self.role!r}")
        self.content = _validate_content(self.content)

    @classmethod
    def create(cls, role: str, content: Content, attestation: dict | None = None) -> Message:
        return cls(id=new_id("msg"), role=role, content=content,
                   timestamp=utcnow(), attestation=attestation)

    @property
    def text(self) -> str:
        """Plain text of the message; image parts are skipped."""
        if isinstance(self.content, str):
            return self.content
        return " ".join(p["text"] for p in self.content if p["type"] == "text")

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "role": self.role,
            "content": copy.deepcopy(self.content),
            "timestamp": format_timestamp(self.timestamp),
        }
        if self.attestation is not None:
            d["attestation"] = copy.deepcopy(self.attestation)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Message:
        return cls(
            id=str(_require(d, "id", "Message")),
            role=_require(d, "role", "Message"),
            content=_require(d, "content", "Message"),
            timestamp=parse_timestamp(_require(d, "timestamp", "Message")),
            attestation=d.get("attestation"),
        )


@dataclass
class Idea:
    """Top-level conversation topic."""

    id: str
    name: str
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None
    pinned: bool = False

    def __post_init__(self) -> None:
        if self.updated_at is None:
            self.updated_at = self.created_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "pinned": self.pinned,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Idea:
        created = parse_timestamp(_require(d, "createdAt", "Idea"))
        updated = d.get("updatedAt")
        return cls(
            id=str(_require(d, "id", "Idea")),
            name=str(d.get("name") or ""),
            description=str(d.get("description") or ""),
            created_at=created,
            updated_at=parse_timestamp(updated) if updated is not None else created,
            pinned=bool(d.get("pinned", False)),
        )


@dataclass
class Branch:
    """A line of conversation inside an Idea, optionally forked from a parent."""

    id: str
    idea_id: str
    name: str
    parent_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None
    is_merged: bool = False
    is_linear: bool = True
    summary: str | None = None
    messages: list[Message] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.updated_at is None:
            self.updated_at = self.created_at

    def message_ids(self) -> set[str]:
        return {m.id for m in self.messages}

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "ideaId": self.idea_id,
            "parentId": self.parent_id,
            "name": self.name,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "isMerged": self.is_merged,
            "isLinear": self.is_linear,
            "messages": [m.to_dict() for m in self.messages],
        }
        if self.summary is not None:
            d["summary"] = self.summary
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Branch:
        created = parse_timestamp(_require(d, "createdAt", "Branch"))
        updated = d.get("updatedAt")
        messages = d.get("messages") or []
        if not isinstance(messages, list):
            raise ValueError("Branch messages must be a list")
        return cls(
            id=str(_require(d, "id", "Branch")),
            idea_id=str(_require(d, "ideaId", "Branch")),
            name=str(d.get("name") or ""),
            parent_id=d.get("parentId") or None,
            created_at=created,
            updated_at=parse_timestamp(updated) if updated is not None else created,
            is_merged=bool(d.get("isMerged", False)),
            is_linear=bool(d.get("isLinear", True)),
            summary=d.get("summary"),
            messages=[Message.from_dict(m) for m in messages],
        )


@dataclass
class Bind:
    """A completed exchange: one user prompt and the assistant response to it."""

    id: str
    branch_id: str
    user_prompt: Message
    ai_response: Message
    summary: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None
    is_locked: bool = False
    pinned: bool = False

    def __post_init__(self) -> None:
        if self.user_prompt.id == self.ai_response.id:
            raise ValueError(f"Bind {self.id}: prompt and response share id {self.user_prompt.id!r}")
        if self.updated_at is None:
            self.updated_at = self.created_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "branchId": self.branch_id,
            "userPrompt": self.user_prompt.to_dict(),
            "aiResponse": self.ai_response.to_dict(),
            "summary": self.summary,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "isLocked": self.is_locked,
            "pinned": self.pinned,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Bind:
        created = parse_timestamp(_require(d, "createdAt", "Bind"))
        updated = d.get("updatedAt")
        return cls(
            id=str(_require(d, "id", "Bind")),
            branch_id=str(_require(d, "branchId", "Bind")),
            user_prompt=Message.from_dict(_require(d, "userPrompt", "Bind")),
            ai_response=Message.from_dict(_require(d, "aiResponse", "Bind")),
            summary=str(d.get("summary") or ""),
            created_at=created,
            updated_at=parse_timestamp(updated) if updated is not None else created,
            is_locked=bool(d.get("isLocked", False)),
            pinned=bool(d.get("pinned", False)),
        )


@dataclass(frozen=True)
class Snapshot:
    """Immutable copy of a branch history at a point in time."""

    id: str
    branch_id: str
    messages: tuple[Message, ...]
    timestamp: datetime
    description: str | None = None

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "branchId": self.branch_id,
            "messages": [m.to_dict() for m in self.messages],
            "timestamp": format_timestamp(self.timestamp),
        }
        if self.description is not None:
            d["description"] = self.description
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Snapshot:
        messages = d.get("messages") or []
        if not isinstance(messages, list):
            raise ValueError("Snapshot messages must be a list")
        return cls(
            id=str(_require(d, "id", "Snapshot")),
            branch_id=str(_require(d, "branchId", "Snapshot")),
            messages=tuple(Message.from_dict(m) for m in messages),
            timestamp=parse_timestamp(_require(d, "timestamp", "Snapshot")),
            description=d.get("description"),
        )
