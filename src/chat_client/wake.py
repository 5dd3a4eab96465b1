"""Two-state wake-word gate for continuous speech recognition."""
from __future__ import annotations

import random
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .models import SessionState
from .speech import SpeechArbiter

DEFAULT_ACKNOWLEDGEMENTS = (
    "Yeah? I'm here 😄",
    "Fox online 🦊",
    "Hey hey, talk to me!",
    "You called?",
    "Listening… go ahead!",
)


@dataclass(frozen=True)
class GateEvent:
    """Outcome of one finalized transcript.

    kind: "wake" (text is the acknowledgement), "command" (text to submit)
    or "ignored" (no text).
    """
    kind: str
    text: str = ""


IGNORED = GateEvent("ignored")


class WakeWordGate:
    """Dormant/Awake gate deciding which utterances become commands.

    Dormant: a transcript containing the wake token wakes the gate; anything
    else is noise. Awake: the very next transcript is the command, whatever
    it says, and the gate falls back to Dormant.
    """

    def __init__(
        self,
        token: str,
        state: SessionState,
        arbiter: SpeechArbiter,
        *,
        acknowledgements: Sequence[str] = DEFAULT_ACKNOWLEDGEMENTS,
        rng: Optional[random.Random] = None,
    ) -> None:
        token = token.strip().lower()
        if not token:
            raise ValueError("wake token must not be empty")
        self.token = token
        self.state = state
        self.arbiter = arbiter
        self.acknowledgements: List[str] = list(acknowledgements) or list(DEFAULT_ACKNOWLEDGEMENTS)
        self._rng = rng or random.Random()
        self._token_re = re.compile(re.escape(token), re.IGNORECASE)

    @property
    def awake(self) -> bool:
        return self.state.is_awake

    def observe(self, transcript: str) -> GateEvent:
        """Feed one finalized transcript and return what it means."""
        # The user talking always silences the assistant.
        self.arbiter.stop()
        heard = transcript.strip()

        if not self.state.is_awake:
            if self.token in heard.lower():
                self.state.is_awake = True
                return GateEvent("wake", self._rng.choice(self.acknowledgements))
            return IGNORED

        self.state.is_awake = False
        command = " ".join(self._token_re.sub("", heard, count=1).split())
        if not command:
            return IGNORED
        return GateEvent("command", command)
