"""Core data types shared by the session components."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

ROLES = ("system", "user", "assistant")


def _now() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------
# Transcript entries
# -----------------------------
@dataclass(frozen=True)
class Message:
    """A single committed conversation message.

    Fields:
        role: "system" | "user" | "assistant"
        content: message text
        created_at: timezone-aware creation time (never sent to the backend)
    """
    role: str
    content: str
    created_at: datetime = field(default_factory=_now)

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"unknown role {self.role!r}")

    def to_wire(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        raw_ts = data.get("created_at")
        ts = datetime.fromisoformat(raw_ts) if raw_ts else _now()
        return cls(role=str(data["role"]), content=str(data.get("content") or ""), created_at=ts)


@dataclass
class SessionState:
    """Flags for the single active session; owned by the controller."""
    is_sending: bool = False
    is_awake: bool = False

    def reset(self) -> None:
        self.is_sending = False
        self.is_awake = False


# -----------------------------
# Wire models
# -----------------------------
class WireMessage(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    messages: List[WireMessage] = Field(default_factory=list)


class ResponseChunk(BaseModel):
    """Flat payload shape: ``{"response": "..."}``."""
    response: str

    def text(self) -> str:
        return self.response


class _Delta(BaseModel):
    content: Optional[str] = None


class _Choice(BaseModel):
    delta: _Delta = Field(default_factory=_Delta)


class ChoiceChunk(BaseModel):
    """Chat-completions payload shape: ``{"choices": [{"delta": {"content": "..."}}]}``."""
    choices: List[Any]

    def text(self) -> str:
        # Only the first choice is read; later entries may hold anything.
        if not self.choices:
            return ""
        try:
            first = _Choice.model_validate(self.choices[0])
        except ValidationError:
            return ""
        return first.delta.content or ""
