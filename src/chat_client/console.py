"""Terminal front-end: renders the session and feeds it typed lines."""
from __future__ import annotations

import asyncio
import sys
from typing import Optional, TextIO

from .controller import ConversationController, SessionObserver
from .models import Message
from .speech import QueueSpeechSource
from .wake import WakeWordGate

LABELS = {"user": "you", "assistant": "fox", "system": "system"}


def _clock(message: Message) -> str:
    return message.created_at.astimezone().strftime("%H:%M")


class ConsoleObserver(SessionObserver):
    """Prints messages as they arrive and streams the draft in place."""

    def __init__(self, out: Optional[TextIO] = None, assistant_label: str = LABELS["assistant"]) -> None:
        self.out = out or sys.stdout
        self.assistant_label = assistant_label
        self.pending = False
        self.input_enabled = True
        self._shown = 0

    def _label(self, role: str) -> str:
        return self.assistant_label if role == "assistant" else LABELS.get(role, role)

    def message_added(self, message: Message) -> None:
        self.out.write(f"[{_clock(message)}] {self._label(message.role)}: {message.content}\n")
        self.out.flush()

    def draft_opened(self) -> None:
        self._shown = 0
        self.out.write(f"{self.assistant_label}: ")
        self.out.flush()

    def draft_updated(self, text: str) -> None:
        self.out.write(text[self._shown:])
        self.out.flush()
        self._shown = len(text)

    def draft_closed(self, message: Optional[Message]) -> None:
        self.out.write("\n" if message is not None else " (no reply)\n")
        self.out.flush()

    def pending_changed(self, pending: bool) -> None:
        self.pending = pending

    def input_changed(self, enabled: bool) -> None:
        self.input_enabled = enabled

    def recognition_error(self, error: str) -> None:
        self.out.write(f"! speech recognition error: {error}\n")
        self.out.flush()


async def run_console(
    controller: ConversationController,
    *,
    gate: Optional[WakeWordGate] = None,
    prompt: str = "> ",
) -> None:
    """Read lines until EOF or /quit.

    With a ``gate`` every line stands in for a finalized speech transcript and
    goes through the wake word; otherwise lines are submitted directly.
    ``/replay`` speaks the last reply again.
    """
    loop = asyncio.get_running_loop()
    source: Optional[QueueSpeechSource] = None
    listener: Optional["asyncio.Future[None]"] = None
    if gate is not None:
        source = QueueSpeechSource()
        source.start()
        listener = asyncio.ensure_future(controller.listen(source, gate))

    try:
        while True:
            try:
                line = await loop.run_in_executor(None, input, prompt)
            except EOFError:
                break
            line = line.strip()
            if line in ("/quit", "/exit"):
                break
            if line == "/replay":
                controller.replay()
                continue
            if source is not None:
                source.push(line)
            else:
                await controller.submit(line)
    finally:
        if source is not None:
            source.close()
        if listener is not None:
            await listener
        await controller.aclose()
