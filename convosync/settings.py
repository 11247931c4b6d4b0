"""
User settings carried in the ``settings`` block of every sync payload.

Persisted to ~/.convosync/settings.json with an atomic write.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

_DEFAULT_PATH = Path.home() / ".convosync" / "settings.json"

DEFAULT_MODEL = "phala/llama-3.3-70b-instruct"

# wire key -> (attribute, accepted types)
_WIRE_FIELDS: dict[str, tuple[str, tuple[type, ...]]] = {
    "temperature": ("temperature", (int, float)),
    "maxTokens": ("max_tokens", (int,)),
    "isDark": ("is_dark", (bool,)),
    "selectedModel": ("selected_model", (str,)),
}


@dataclass
class SyncSettings:
    temperature: float = 0.7
    max_tokens: int = 2048
    is_dark: bool = True
    selected_model: str = DEFAULT_MODEL

    def to_dict(self) -> dict:
        return {wire: getattr(self, attr) for wire, (attr, _) in _WIRE_FIELDS.items()}

    @classmethod
    def from_dict(cls, d: dict) -> SyncSettings:
        settings = cls()
        settings.update(d)
        return settings

    def update(self, d: dict) -> list[str]:
        """Apply known wire keys from ``d``. Returns the attributes changed.

        Values of the wrong type are logged and skipped.
        """
        changed = []
        for wire, (attr, types) in _WIRE_FIELDS.items():
            if wire not in d:
                continue
            value = d[wire]
            # bool is an int subclass; only isDark takes booleans
            if not isinstance(value, types) or (isinstance(value, bool) and bool not in types):
                log.warning("Ignoring setting %s with invalid value %r", wire, value)
                continue
            if getattr(self, attr) != value:
                setattr(self, attr, value)
                changed.append(attr)
        return changed


class SettingsStore:
    """JSON file holding one SyncSettings record."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path else _DEFAULT_PATH
        self._lock = threading.Lock()

    def load(self) -> SyncSettings:
        """Read settings. Returns defaults if missing or corrupt."""
        if not self.path.is_file():
            return SyncSettings()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            log.warning("Unreadable settings file %s: %s", self.path, e)
            return SyncSettings()
        if not isinstance(data, dict):
            return SyncSettings()
        return SyncSettings.from_dict(data)

    def save(self, settings: SyncSettings) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            data = json.dumps(settings.to_dict(), indent=2, sort_keys=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), suffix=".tmp", prefix=".settings_"
            )
            try:
                os.write(fd, data.encode("utf-8"))
                os.fsync(fd)
                os.close(fd)
                os.replace(tmp_path, str(self.path))
            except Exception:
                try:
                    os.close(fd)
                except OSError:
                    pass
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise

    def apply(self, remote: dict[str, Any]) -> SyncSettings:
        """Merge a payload's settings block into the stored settings."""
        settings = self.load()
        changed = settings.update(remote)
        if changed:
            self.save(settings)
            log.info("Applied synced settings: %s", ", ".join(changed))
        return settings
