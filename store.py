"""Durable session store — chat_id → thread_id bindings in one JSON file.

The file is a flat JSON object, human-inspectable, rewritten wholesale
(temp file + fsync + rename) on every change.
"""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path

log = logging.getLogger(__name__)


class CorruptStateError(Exception):
    """Raised when the session file exists but cannot be parsed."""


def _atomic_write(path: Path, data: str) -> None:
    """Write to temp file then rename — atomic on POSIX."""
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    tmp.replace(path)


class SessionStore:
    """Flat-file persistence for session bindings."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.writes = 0

    def load(self) -> dict[str, str]:
        """Read persisted bindings. Missing file → empty mapping."""
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptStateError(f"{self.path}: {e}") from e
        if not isinstance(data, dict):
            raise CorruptStateError(
                f"{self.path}: expected a JSON object, got {type(data).__name__}"
            )
        for chat_id, thread_id in data.items():
            if not isinstance(thread_id, str):
                raise CorruptStateError(
                    f"{self.path}: thread id for {chat_id!r} is not a string"
                )
        log.info("Loaded %d session bindings from %s", len(data), self.path)
        return dict(data)

    def save(self, bindings: dict[str, str]) -> bool:
        """Overwrite the session file. Returns False if the write failed.

        Failures are logged, never raised: the binding stays usable in memory
        for this process lifetime.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(self.path, json.dumps(bindings, ensure_ascii=False, indent=2))
        except OSError as e:
            log.error("Failed to save session bindings to %s: %s", self.path, e,
                      extra={"event": "store.save_failed"})
            return False
        self.writes += 1
        return True

    def quarantine(self) -> Path | None:
        """Move a corrupt session file aside so it is not overwritten."""
        target = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time())}")
        try:
            self.path.rename(target)
        except OSError as e:
            log.error("Could not move corrupt session file %s aside: %s", self.path, e)
            return None
        log.warning("Moved corrupt session file to %s", target)
        return target
