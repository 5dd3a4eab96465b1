"""Conversation transcript and its disk-backed key-value store (thread-safe, atomic)."""
from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .models import Message

logger = logging.getLogger(__name__)


# -----------------------------
# Helpers
# -----------------------------
def _safe_key(name: str) -> str:
    # Keep it readable but filesystem-safe.
    s = re.sub(r"[^\w.\-@]+", "_", name.strip() or "default")
    return s[:128]


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


# -----------------------------
# Transcript
# -----------------------------
class Transcript:
    """Ordered message list with at most one in-progress assistant draft.

    The draft lives beside the committed messages and is only ever the most
    recent entry. It is either committed whole (``finalize_draft``) or dropped
    (``discard_draft``), so a snapshot never contains partial text.
    """

    def __init__(self, messages: Optional[Iterable[Message]] = None) -> None:
        self._messages: List[Message] = list(messages or [])
        self._draft: Optional[List[str]] = None
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(self.snapshot())

    @property
    def has_draft(self) -> bool:
        with self._lock:
            return self._draft is not None

    @property
    def draft_text(self) -> str:
        with self._lock:
            return "".join(self._draft or [])

    def snapshot(self) -> List[Message]:
        with self._lock:
            return list(self._messages)

    def append(self, message: Message) -> None:
        with self._lock:
            if self._draft is not None:
                raise RuntimeError("cannot append while a draft is open")
            self._messages.append(message)

    # --------- draft lifecycle ----------
    def open_draft(self) -> None:
        with self._lock:
            if self._draft is not None:
                raise RuntimeError("a draft message is already in progress")
            self._draft = []

    def append_delta(self, delta: str) -> str:
        """Append to the draft and return the accumulated text."""
        with self._lock:
            if self._draft is None:
                raise RuntimeError("no draft message is open")
            self._draft.append(delta)
            return "".join(self._draft)

    def finalize_draft(self) -> Message:
        with self._lock:
            if self._draft is None:
                raise RuntimeError("no draft message is open")
            message = Message("assistant", "".join(self._draft))
            self._draft = None
            self._messages.append(message)
            return message

    def discard_draft(self) -> None:
        with self._lock:
            self._draft = None

    # --------- serialization ----------
    def to_wire(self) -> List[Dict[str, str]]:
        """Role/content pairs sent to the backend as context."""
        return [m.to_wire() for m in self.snapshot()]

    def to_records(self) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self.snapshot()]

    @classmethod
    def from_records(cls, records: Iterable[Dict[str, Any]]) -> "Transcript":
        return cls(Message.from_dict(r) for r in records)


# -----------------------------
# JsonFileStore
# -----------------------------
class JsonFileStore:
    """Durable key-value store holding one transcript per JSON file.

    Layout:
        data_dir/
          <key>.json            # list[{role, content, created_at}]
          <key>.corrupt.json    # previous file, if it failed to parse
    """

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def _path(self, key: str) -> Path:
        return self.root / f"{_safe_key(key)}.json"

    def load(self, key: str) -> Optional[Transcript]:
        """Return the stored transcript, or None if absent or unreadable."""
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return None
            try:
                with path.open("r", encoding="utf-8") as f:
                    records = json.load(f)
                if not isinstance(records, list):
                    raise ValueError("expected a list of messages")
                return Transcript.from_records(records)
            except (OSError, ValueError, KeyError, TypeError) as e:
                # Corruption fallback: keep a backup and start fresh.
                logger.warning("Stored transcript %s is unreadable (%s); moving it aside", path, e)
                try:
                    path.replace(path.with_suffix(".corrupt.json"))
                except OSError as move_err:
                    logger.warning("Could not move %s aside: %s", path, move_err)
                return None

    def save(self, key: str, transcript: Transcript) -> bool:
        """Persist the committed messages; returns False instead of raising."""
        path = self._path(key)
        try:
            text = json.dumps(transcript.to_records(), ensure_ascii=False, indent=2)
            with self._lock:
                _atomic_write_text(path, text)
        except (OSError, TypeError, ValueError) as e:
            logger.warning("Failed to save transcript to %s: %s", path, e)
            return False
        return True

