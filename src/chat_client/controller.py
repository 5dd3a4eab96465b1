"""Conversation controller: single-flight streaming exchanges over one transcript."""
from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import aclosing
from typing import Any, Awaitable, Dict, List, Optional, Set

import httpx

from .config import load_config
from .decoder import iter_deltas
from .models import ChatRequest, Message, SessionState
from .speech import NullSink, SpeechArbiter, SpeechSettings, SpeechSink, SpeechSource
from .transcript import JsonFileStore, Transcript
from .wake import DEFAULT_ACKNOWLEDGEMENTS, WakeWordGate

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = "Oops… something went wrong 😅"
DEFAULT_SYSTEM_PROMPT = (
    "You are Fox 🦊.\n"
    "You speak like a friendly, witty human.\n"
    "You are playful, humorous, and warm.\n"
    "Keep replies natural and casual.\n"
    "Never say you are an AI."
)
DEFAULT_GREETING = "Hey! I'm Fox 🦊 — say my name if you need me."


# -----------------------------
# UI seam
# -----------------------------
class SessionObserver:
    """Receives everything a UI needs to render the session. Override what you use."""

    def message_added(self, message: Message) -> None:
        pass

    def draft_opened(self) -> None:
        pass

    def draft_updated(self, text: str) -> None:
        pass

    def draft_closed(self, message: Optional[Message]) -> None:
        """``message`` is the committed reply, or None if the draft was dropped."""

    def pending_changed(self, pending: bool) -> None:
        pass

    def input_changed(self, enabled: bool) -> None:
        pass

    def input_cleared(self) -> None:
        pass

    def recognition_error(self, error: str) -> None:
        pass


# -----------------------------
# Controller
# -----------------------------
class ConversationController:
    """Owns the transcript and session flags; the only writer of either.

    ``submit`` admits one exchange at a time. A second call while a reply is
    streaming returns False without touching any state.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        endpoint: str = "/api/chat",
        store: Optional[JsonFileStore] = None,
        key: str = "chatHistory",
        arbiter: Optional[SpeechArbiter] = None,
        observer: Optional[SessionObserver] = None,
        state: Optional[SessionState] = None,
        fallback_message: str = FALLBACK_MESSAGE,
        seed: Optional[List[Message]] = None,
    ) -> None:
        self.client = client
        self.endpoint = endpoint
        self.store = store
        self.key = key
        self.arbiter = arbiter or SpeechArbiter(NullSink(), enabled=False)
        self.observer = observer or SessionObserver()
        self.state = state or SessionState()
        self.state.reset()
        self.fallback_message = fallback_message
        self._guard = threading.Lock()
        self._tasks: Set["asyncio.Task[bool]"] = set()

        loaded = store.load(key) if store is not None else None
        self.transcript = loaded if loaded is not None else Transcript(seed or [])
        for m in self.transcript:
            if m.role != "system":
                self.observer.message_added(m)

    # --------- core API ----------
    async def submit(self, user_text: str) -> bool:
        """Send one user message and stream the reply. Returns False if not admitted."""
        text = (user_text or "").strip()
        with self._guard:
            if not text or self.state.is_sending:
                logger.debug("submit ignored (empty=%s, sending=%s)", not text, self.state.is_sending)
                return False
            self.state.is_sending = True

        try:
            await self._exchange(text)
        finally:
            self._teardown()
        return True

    def announce(self, text: str) -> None:
        """Show and speak a line that is not part of the conversation context."""
        self.observer.message_added(Message("assistant", text))
        self.arbiter.play(text)

    def replay(self, index: Optional[int] = None) -> bool:
        """Speak an assistant message again (the latest one by default)."""
        messages = self.transcript.snapshot()
        if index is None:
            candidates = [m for m in messages if m.role == "assistant"]
            if not candidates:
                return False
            target = candidates[-1]
        else:
            try:
                target = messages[index]
            except IndexError:
                return False
            if target.role != "assistant":
                return False
        self.arbiter.play(target.content)
        return True

    async def listen(self, source: SpeechSource, gate: WakeWordGate) -> None:
        """Consume recognition results until the source ends.

        Commands from the gate are submitted as background tasks so the user
        can keep talking (and interrupting playback) while a reply streams.
        """
        source.start()
        try:
            async for result in source.results():
                if result.error:
                    logger.warning("Speech recognition error: %s", result.error)
                    self.observer.recognition_error(result.error)
                    continue
                if not result.is_final:
                    continue
                event = gate.observe(result.transcript)
                if event.kind == "wake":
                    self.announce(event.text)
                elif event.kind == "command":
                    self._spawn(self.submit(event.text))
        finally:
            source.stop()
            if self._tasks:
                await asyncio.gather(*list(self._tasks))

    async def aclose(self) -> None:
        self.arbiter.stop()
        await self.client.aclose()

    # --------- internals ----------
    async def _exchange(self, text: str) -> None:
        obs = self.observer
        obs.input_changed(False)

        user = Message("user", text)
        self.transcript.append(user)
        obs.message_added(user)
        self._persist()
        obs.input_cleared()
        obs.pending_changed(True)

        self.transcript.open_draft()
        obs.draft_opened()
        reply: Optional[Message] = None
        try:
            await self._stream_reply()
            if self.transcript.draft_text:
                reply = self.transcript.finalize_draft()
            else:
                logger.warning("Reply stream from %s ended without any text", self.endpoint)
        except Exception:
            logger.exception("Chat request to %s failed", self.endpoint)
        finally:
            if self.transcript.has_draft:
                self.transcript.discard_draft()
            obs.draft_closed(reply)

        if reply is None:
            fallback = Message("assistant", self.fallback_message)
            self.transcript.append(fallback)
            obs.message_added(fallback)
            self._persist()
            return

        self._persist()
        self.arbiter.play(reply.content)

    async def _stream_reply(self) -> None:
        body = ChatRequest.model_validate({"messages": self.transcript.to_wire()}).model_dump()
        async with self.client.stream("POST", self.endpoint, json=body) as response:
            response.raise_for_status()
            async with aclosing(iter_deltas(response.aiter_bytes())) as deltas:
                async for delta in deltas:
                    self.observer.draft_updated(self.transcript.append_delta(delta))

    def _teardown(self) -> None:
        self.observer.pending_changed(False)
        with self._guard:
            self.state.reset()
        self.observer.input_changed(True)

    def _persist(self) -> None:
        if self.store is None:
            return
        if not self.store.save(self.key, self.transcript):
            logger.warning("Transcript not persisted; continuing in memory only")

    def _spawn(self, coro: Awaitable[bool]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


# -----------------------------
# Factories
# -----------------------------
def _seed_messages(session_cfg: Dict[str, Any]) -> List[Message]:
    seed: List[Message] = []
    system_prompt = str(session_cfg.get("system_prompt", DEFAULT_SYSTEM_PROMPT) or "").strip()
    if system_prompt:
        seed.append(Message("system", system_prompt))
    greeting = str(session_cfg.get("greeting", DEFAULT_GREETING) or "").strip()
    if greeting:
        seed.append(Message("assistant", greeting))
    return seed


def _make_client(server_cfg: Dict[str, Any]) -> httpx.AsyncClient:
    read_timeout = server_cfg.get("read_timeout")
    timeout = httpx.Timeout(
        10.0,
        connect=float(server_cfg.get("connect_timeout", 5.0)),
        read=None if read_timeout is None else float(read_timeout),
    )
    return httpx.AsyncClient(
        base_url=str(server_cfg.get("base_url", "http://127.0.0.1:8787")),
        timeout=timeout,
    )


def create_controller(
    config_path: Optional[str] = None,
    *,
    config: Optional[Dict[str, Any]] = None,
    client: Optional[httpx.AsyncClient] = None,
    store: Optional[JsonFileStore] = None,
    sink: Optional[SpeechSink] = None,
    observer: Optional[SessionObserver] = None,
) -> ConversationController:
    cfg = config if config is not None else load_config(config_path)
    server_cfg = cfg.get("server", {}) or {}
    session_cfg = cfg.get("session", {}) or {}
    speech_cfg = cfg.get("speech", {}) or {}

    settings = SpeechSettings(
        locale=str(speech_cfg.get("locale", "en-US")),
        rate=float(speech_cfg.get("rate", 1.05)),
        pitch=float(speech_cfg.get("pitch", 1.1)),
    )
    arbiter = SpeechArbiter(
        sink or NullSink(),
        settings,
        enabled=bool(speech_cfg.get("enabled", True)),
    )

    return ConversationController(
        client or _make_client(server_cfg),
        endpoint=str(server_cfg.get("endpoint", "/api/chat")),
        store=store or JsonFileStore(str(session_cfg.get("data_dir", "data"))),
        key=str(session_cfg.get("key", "chatHistory")),
        arbiter=arbiter,
        observer=observer,
        fallback_message=str(session_cfg.get("fallback_message", FALLBACK_MESSAGE)),
        seed=_seed_messages(session_cfg),
    )


def create_gate(controller: ConversationController, config: Optional[Dict[str, Any]] = None) -> WakeWordGate:
    """Wake gate sharing the controller's session flags and speech arbiter."""
    wake_cfg = (config or {}).get("wake", {}) or {}
    return WakeWordGate(
        str(wake_cfg.get("token", "fox")),
        controller.state,
        controller.arbiter,
        acknowledgements=wake_cfg.get("acknowledgements") or DEFAULT_ACKNOWLEDGEMENTS,
    )
