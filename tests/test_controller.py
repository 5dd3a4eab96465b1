from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import List

import httpx
import pytest

from chat_client.controller import FALLBACK_MESSAGE, ConversationController, SessionObserver, create_gate
from chat_client.models import Message
from chat_client.speech import QueueSpeechSource, SpeechArbiter
from chat_client.transcript import JsonFileStore


def sse(*tokens: str, done: bool = True) -> bytes:
    out = "".join(f"data: {json.dumps({'response': t})}\n\n" for t in tokens)
    if done:
        out += "data: [DONE]\n\n"
    return out.encode("utf-8")


async def trickle(body: bytes, size: int = 7):
    for i in range(0, len(body), size):
        await asyncio.sleep(0)
        yield body[i : i + size]


class Recorder(SessionObserver):
    """Observer spy recording every UI notification in order."""

    def __init__(self):
        self.events: List[tuple] = []

    def message_added(self, message):
        self.events.append(("message", message.role, message.content))

    def draft_updated(self, text):
        self.events.append(("draft", text))

    def draft_closed(self, message):
        self.events.append(("closed", message.content if message else None))

    def pending_changed(self, pending):
        self.events.append(("pending", pending))

    def input_changed(self, enabled):
        self.events.append(("input", enabled))

    def input_cleared(self):
        self.events.append(("cleared",))

    def recognition_error(self, error):
        self.events.append(("stt-error", error))

    def count(self, *event):
        return sum(1 for e in self.events if e == event)


class FakeBackend:
    """MockTransport handler replying with a scripted stream, recording requests."""

    def __init__(self, body: bytes = b"", status: int = 200, error: Exception | None = None):
        self.body = body
        self.status = status
        self.error = error
        self.requests: List[dict] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status, content=trickle(self.body))


def make_controller(data_dir: Path, backend: FakeBackend, sink, **kwargs) -> ConversationController:
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend), base_url="http://test")
    kwargs.setdefault("observer", Recorder())
    return ConversationController(
        client,
        store=JsonFileStore(str(data_dir)),
        arbiter=SpeechArbiter(sink),
        seed=[Message("system", "be nice"), Message("assistant", "hi!")],
        **kwargs,
    )


def test_successful_exchange_streams_commits_and_speaks(tmp_data_dir: Path, sink):
    backend = FakeBackend(sse("Hel", "lo ", "there"))
    ctl = make_controller(tmp_data_dir, backend, sink)
    obs = ctl.observer
    before = len(ctl.transcript)

    assert asyncio.run(ctl.submit("  hello  ")) is True

    assert len(ctl.transcript) == before + 2
    user, reply = ctl.transcript.snapshot()[-2:]
    assert (user.role, user.content) == ("user", "hello")
    assert (reply.role, reply.content) == ("assistant", "Hello there")

    # incremental, in arrival order
    assert [e[1] for e in obs.events if e[0] == "draft"] == ["Hel", "Hello ", "Hello there"]
    assert sink.spoken == ["Hello there"]

    # the whole transcript (roles/contents only) is sent as context
    assert backend.requests == [{"messages": [
        {"role": "system", "content": "be nice"},
        {"role": "assistant", "content": "hi!"},
        {"role": "user", "content": "hello"},
    ]}]

    stored = JsonFileStore(str(tmp_data_dir)).load("chatHistory")
    assert stored.snapshot() == ctl.transcript.snapshot()
    assert not ctl.state.is_sending
    assert not ctl.transcript.has_draft


def test_ui_lifecycle_order(tmp_data_dir: Path, sink):
    ctl = make_controller(tmp_data_dir, FakeBackend(sse("ok")), sink)
    obs = ctl.observer
    obs.events.clear()
    asyncio.run(ctl.submit("hi"))
    assert obs.events == [
        ("input", False),
        ("message", "user", "hi"),
        ("cleared",),
        ("pending", True),
        ("draft", "ok"),
        ("closed", "ok"),
        ("pending", False),
        ("input", True),
    ]


def test_second_submit_while_sending_is_ignored(tmp_data_dir: Path, sink):
    backend = FakeBackend(sse("one", "two", "three"))
    ctl = make_controller(tmp_data_dir, backend, sink)
    before = len(ctl.transcript)

    async def both():
        return await asyncio.gather(ctl.submit("first"), ctl.submit("second"))

    assert asyncio.run(both()) == [True, False]
    assert len(backend.requests) == 1
    users = [m.content for m in ctl.transcript if m.role == "user"]
    assert users == ["first"]
    assert len(ctl.transcript) == before + 2


def test_blank_submit_is_a_no_op(tmp_data_dir: Path, sink):
    backend = FakeBackend(sse("x"))
    ctl = make_controller(tmp_data_dir, backend, sink)
    before = ctl.transcript.snapshot()
    assert asyncio.run(ctl.submit("   ")) is False
    assert backend.requests == []
    assert ctl.transcript.snapshot() == before


def _assert_fallback(ctl: ConversationController, before: int, sink):
    assert len(ctl.transcript) == before + 2
    user, reply = ctl.transcript.snapshot()[-2:]
    assert user.role == "user"
    assert (reply.role, reply.content) == ("assistant", FALLBACK_MESSAGE)
    assert not ctl.transcript.has_draft
    assert not ctl.state.is_sending
    assert sink.spoken == []
    obs = ctl.observer
    assert obs.count("pending", False) == 1
    assert obs.count("input", True) == 1


def test_transport_failure_yields_fallback(tmp_data_dir: Path, sink):
    backend = FakeBackend(error=httpx.ConnectError("refused"))
    ctl = make_controller(tmp_data_dir, backend, sink)
    before = len(ctl.transcript)
    assert asyncio.run(ctl.submit("hello")) is True
    _assert_fallback(ctl, before, sink)

    # the failure is part of the stored history
    stored = JsonFileStore(str(tmp_data_dir)).load("chatHistory")
    assert stored.snapshot()[-1].content == FALLBACK_MESSAGE


def test_http_error_status_yields_fallback(tmp_data_dir: Path, sink):
    ctl = make_controller(tmp_data_dir, FakeBackend(sse("should not show"), status=500), sink)
    before = len(ctl.transcript)
    asyncio.run(ctl.submit("hello"))
    _assert_fallback(ctl, before, sink)


def test_empty_stream_yields_fallback(tmp_data_dir: Path, sink):
    ctl = make_controller(tmp_data_dir, FakeBackend(b": ping\n\ndata: [DONE]\n\n"), sink)
    before = len(ctl.transcript)
    asyncio.run(ctl.submit("hello"))
    _assert_fallback(ctl, before, sink)


def test_malformed_frame_does_not_abort_reply(tmp_data_dir: Path, sink):
    body = b'data: {"response": "a"}\n\ndata: {oops\n\ndata: {"choices": [{"delta": {"content": "b"}}]}\n\n'
    ctl = make_controller(tmp_data_dir, FakeBackend(body), sink)
    asyncio.run(ctl.submit("hello"))
    assert ctl.transcript.snapshot()[-1].content == "ab"


def test_session_can_continue_after_failure(tmp_data_dir: Path, sink):
    backend = FakeBackend(error=httpx.ReadError("reset"))
    ctl = make_controller(tmp_data_dir, backend, sink)
    asyncio.run(ctl.submit("first"))
    backend.error = None
    backend.body = sse("recovered")
    assert asyncio.run(ctl.submit("second")) is True
    assert ctl.transcript.snapshot()[-1].content == "recovered"


def test_transcript_survives_a_fresh_controller(tmp_data_dir: Path, sink):
    ctl = make_controller(tmp_data_dir, FakeBackend(sse("pong")), sink)
    asyncio.run(ctl.submit("ping"))

    fresh = make_controller(tmp_data_dir, FakeBackend(), sink)
    assert fresh.transcript.snapshot() == ctl.transcript.snapshot()
    # stored history (minus the system prompt) is rendered on startup
    assert [e for e in fresh.observer.events if e[0] == "message"] == [
        ("message", "assistant", "hi!"),
        ("message", "user", "ping"),
        ("message", "assistant", "pong"),
    ]


def test_save_failure_is_not_fatal(tmp_data_dir: Path, sink):
    class BrokenStore(JsonFileStore):
        def save(self, key, transcript):
            return False

    client = httpx.AsyncClient(transport=httpx.MockTransport(FakeBackend(sse("fine"))), base_url="http://test")
    ctl = ConversationController(client, store=BrokenStore(str(tmp_data_dir)), arbiter=SpeechArbiter(sink))
    assert asyncio.run(ctl.submit("hello")) is True
    assert [m.content for m in ctl.transcript] == ["hello", "fine"]
    assert sink.spoken == ["fine"]


def test_replay_speaks_last_assistant_message(tmp_data_dir: Path, sink):
    ctl = make_controller(tmp_data_dir, FakeBackend(), sink)
    assert ctl.replay() is True
    assert sink.spoken == ["hi!"]
    assert ctl.replay(0) is False  # system message
    assert ctl.replay(99) is False


def test_voice_gate_drives_submissions(tmp_data_dir: Path, sink):
    backend = FakeBackend(sse("at", " 5pm"))
    ctl = make_controller(tmp_data_dir, backend, sink)
    gate = create_gate(ctl, {"wake": {"token": "fox", "acknowledgements": ["You called?"]}})
    source = QueueSpeechSource()
    source.start()
    source.push("hey fox what time is it")
    source.push("fox", final=False)
    source.push_error("network")
    source.push("remind me to call fox")
    source.close()

    asyncio.run(ctl.listen(source, gate))

    obs = ctl.observer
    assert ("message", "assistant", "You called?") in obs.events
    assert ("stt-error", "network") in obs.events
    # the acknowledgement is shown and spoken but not part of the context
    assert all(m.content != "You called?" for m in ctl.transcript)
    assert backend.requests[0]["messages"][-1] == {"role": "user", "content": "remind me to call"}
    assert sink.spoken == ["You called?", "at 5pm"]
    assert not gate.awake
    assert not source.listening


def test_cancelled_submit_discards_draft_and_tears_down(tmp_data_dir: Path, sink):
    async def stalls_after_first_frame():
        yield b'data: {"response": "partial"}\n\n'
        await asyncio.Event().wait()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=stalls_after_first_frame())

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
    obs = Recorder()
    ctl = ConversationController(client, store=JsonFileStore(str(tmp_data_dir)), arbiter=SpeechArbiter(sink), observer=obs)
    before = len(ctl.transcript)

    async def cancel_mid_stream():
        task = asyncio.ensure_future(ctl.submit("hello"))
        while ctl.transcript.draft_text != "partial":
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(cancel_mid_stream())

    assert len(ctl.transcript) == before + 1
    assert ctl.transcript.snapshot()[-1].role == "user"
    assert not ctl.transcript.has_draft
    assert not ctl.state.is_sending
    assert obs.count("closed", None) == 1
    assert obs.count("pending", False) == 1
    assert obs.count("input", True) == 1
    assert sink.spoken == []
    # nothing partial reached the store
    stored = JsonFileStore(str(tmp_data_dir)).load("chatHistory")
    assert [m.content for m in stored] == ["hello"]
