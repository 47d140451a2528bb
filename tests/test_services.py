import logging

import pytest

from chatstream.services.openai_client import MOCK_REPLY, MockStream, OpenAIClient
from chatstream.services.session_store import SessionStore
from chatstream.utils.logger import setup_logger
from chatstream.utils.retry import retry_with_backoff
from chatstream.utils.scheduler import SimulatedClock


def test_session_store_expires_after_ttl():
    clock = SimulatedClock()
    store = SessionStore(ttl_seconds=60, clock=clock)
    store.append_turn("s1", "hi", "hello")
    assert len(store.get("s1")) == 2

    clock.advance(61)
    assert store.get("s1") == []
    assert "s1" not in store.store


def test_session_store_keeps_recent_rounds():
    store = SessionStore(max_rounds=2)
    for i in range(5):
        store.append_turn("s1", f"q{i}", f"a{i}")
    messages = store.get("s1")
    assert len(messages) == 4
    assert messages[0]["content"][0]["text"] == "q3"
    assert messages[-1]["content"][0]["text"] == "a4"


def test_session_store_skips_empty_reply():
    store = SessionStore()
    store.append_turn("s1", "hi", "")
    assert [m["role"] for m in store.get("s1")] == ["user"]


def test_retry_recovers_after_transient_failures():
    attempts = []
    delays = []

    @retry_with_backoff(exceptions=(ConnectionError,), max_attempts=3, sleep=delays.append)
    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("reset")
        return "ok"

    assert flaky() == "ok"
    assert len(attempts) == 3
    assert len(delays) == 2
    assert delays[1] >= 0.4


def test_retry_gives_up_and_reraises():
    @retry_with_backoff(exceptions=(ConnectionError,), max_attempts=2, sleep=lambda _: None)
    def always_fails():
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        always_fails()


def test_retry_ignores_other_exceptions():
    calls = []

    @retry_with_backoff(exceptions=(ConnectionError,), sleep=lambda _: None)
    def bad_input():
        calls.append(1)
        raise ValueError("bad")

    with pytest.raises(ValueError):
        bad_input()
    assert len(calls) == 1


def test_mock_stream_chunks_reply(monkeypatch):
    monkeypatch.setenv("USE_MOCK", "1")
    stream = OpenAIClient(api_key="unused").stream_response([], 0.7)
    assert isinstance(stream, MockStream)
    deltas = [e.data["delta"] for e in stream if e.type == "content.delta"]
    assert "".join(deltas) == MOCK_REPLY
    assert max(len(d) for d in deltas) == 4


def test_setup_logger_records_init_event(monkeypatch, caplog):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    caplog.set_level(logging.DEBUG, logger="chat-stream-init-check")
    logger = setup_logger("chat-stream-init-check")
    assert logger.level == logging.DEBUG
    assert '"log_level": "DEBUG"' in caplog.text
    assert setup_logger("chat-stream-init-check") is logger
