"""Speech capabilities: playback sink, recognition source, and the output arbiter."""
from __future__ import annotations

import asyncio
import logging
import queue
import threading
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol, Tuple, runtime_checkable

logger = logging.getLogger(__name__)


# -----------------------------
# Types
# -----------------------------
@dataclass(frozen=True)
class SpeechSettings:
    """Voice configuration, fixed per deployment."""
    locale: str = "en-US"
    rate: float = 1.05
    pitch: float = 1.1


@dataclass(frozen=True)
class Utterance:
    text: str
    locale: str
    rate: float
    pitch: float


@dataclass(frozen=True)
class RecognitionResult:
    """One event from a continuous recognizer.

    ``error`` is set (and ``transcript`` empty) when the recognizer reports a
    failure instead of speech.
    """
    transcript: str = ""
    is_final: bool = True
    error: Optional[str] = None


@runtime_checkable
class SpeechSink(Protocol):
    """Platform utterance player."""

    @property
    def speaking(self) -> bool: ...

    def speak(self, utterance: Utterance) -> None: ...

    def cancel(self) -> None: ...


@runtime_checkable
class SpeechSource(Protocol):
    """Continuous recognizer; started and stopped by its owner."""

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def results(self) -> AsyncIterator[RecognitionResult]: ...


# -----------------------------
# Arbiter
# -----------------------------
class SpeechArbiter:
    """Single-flight playback: a new utterance always preempts the current one."""

    def __init__(self, sink: SpeechSink, settings: Optional[SpeechSettings] = None, *, enabled: bool = True) -> None:
        self.sink = sink
        self.settings = settings or SpeechSettings()
        self.enabled = enabled

    def play(self, text: str) -> None:
        self.stop()
        if not self.enabled or not text.strip():
            return
        s = self.settings
        self.sink.speak(Utterance(text=text, locale=s.locale, rate=s.rate, pitch=s.pitch))

    def stop(self) -> None:
        if self.sink.speaking:
            self.sink.cancel()


class NullSink:
    """Sink that never makes a sound (speech disabled or unavailable)."""
    speaking = False

    def speak(self, utterance: Utterance) -> None:
        logger.debug("speech disabled, dropping %r", utterance.text[:40])

    def cancel(self) -> None:
        pass


# -----------------------------
# Push-fed recognition source
# -----------------------------
class QueueSpeechSource:
    """Recognition source fed by callbacks from a platform recognizer.

    A recognizer's result/error callbacks call ``push``/``push_error``; the
    consumer iterates ``results()``. Pushes are dropped while stopped.
    Callbacks may fire on any thread: once ``start`` has run inside the event
    loop, items from other threads are handed over with
    ``call_soon_threadsafe``.
    """

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Optional[RecognitionResult]]" = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.listening = False

    def start(self) -> None:
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            pass
        self.listening = True

    def stop(self) -> None:
        self.listening = False

    def push(self, transcript: str, *, final: bool = True) -> None:
        if self.listening:
            self._put(RecognitionResult(transcript=transcript, is_final=final))

    def push_error(self, error: str) -> None:
        if self.listening:
            self._put(RecognitionResult(is_final=True, error=error))

    def close(self) -> None:
        """End the result stream."""
        self.listening = False
        self._put(None)

    async def results(self) -> AsyncIterator[RecognitionResult]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    def _put(self, item: Optional[RecognitionResult]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            self._queue.put_nowait(item)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._queue.put_nowait(item)
        else:
            loop.call_soon_threadsafe(self._queue.put_nowait, item)


# -----------------------------
# pyttsx3 adapter
# -----------------------------
class Pyttsx3Sink:
    """Offline TTS through :mod:`pyttsx3` on one long-lived worker thread.

    pyttsx3 runs a single run loop per engine, so every ``runAndWait`` happens
    on the worker. ``cancel`` drops queued text and stops the current
    utterance; a generation counter keeps a finishing utterance from clearing
    the flag of the one that replaced it. pyttsx3 has no pitch control, so
    ``Utterance.pitch`` is ignored.
    """

    def __init__(self) -> None:
        # Lazy import so the core works without the voice extra.
        import pyttsx3  # type: ignore

        self.engine = pyttsx3.init()
        self._base_rate = int(self.engine.getProperty("rate") or 200)
        self._lock = threading.Lock()
        self._queue: "queue.Queue[Optional[Tuple[int, Utterance]]]" = queue.Queue()
        self._generation = 0
        self._speaking = False
        self._worker = threading.Thread(target=self._run, name="pyttsx3-sink", daemon=True)
        self._worker.start()

    @property
    def speaking(self) -> bool:
        return self._speaking

    def speak(self, utterance: Utterance) -> None:
        with self._lock:
            self._speaking = True
            self._queue.put((self._generation, utterance))

    def cancel(self) -> None:
        with self._lock:
            self._generation += 1
            self._speaking = False
            try:
                while True:
                    self._queue.get_nowait()
            except queue.Empty:
                pass
        self.engine.stop()

    def close(self) -> None:
        """Stop playback and end the worker thread."""
        self.cancel()
        self._queue.put(None)
        self._worker.join(timeout=2.0)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                return
            generation, utterance = item
            if generation != self._generation:
                continue
            try:
                self._select_voice(utterance.locale)
                self.engine.setProperty("rate", int(self._base_rate * utterance.rate))
                self.engine.say(utterance.text)
                self.engine.runAndWait()
            except RuntimeError as e:
                logger.warning("pyttsx3 playback failed: %s", e)
            finally:
                with self._lock:
                    if generation == self._generation and self._queue.empty():
                        self._speaking = False

    def _select_voice(self, locale: str) -> None:
        wanted = locale.lower().replace("-", "_")
        for voice in self.engine.getProperty("voices") or []:
            langs = [str(x).lower().replace("-", "_") for x in (getattr(voice, "languages", None) or [])]
            if any(wanted in lang for lang in langs) or wanted in str(voice.id).lower():
                self.engine.setProperty("voice", voice.id)
                return
