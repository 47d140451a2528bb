import asyncio

import pytest
from pydantic import ValidationError

from chatstream.types import SegmenterConfig
from chatstream.utils.scheduler import AsyncioScheduler, PolledScheduler, SimulatedClock
from chatstream.utils.segmenter import StreamSegmenter


def test_polled_scheduler_fires_in_due_order(clock, scheduler):
    fired = []
    scheduler.call_later(0.3, lambda: fired.append("late"))
    scheduler.call_later(0.1, lambda: fired.append("early"))
    scheduler.call_later(5.0, lambda: fired.append("never"))

    clock.advance(0.5)
    assert scheduler.run_due() == 2
    assert fired == ["early", "late"]
    assert scheduler.pending == 1


def test_polled_scheduler_skips_cancelled(clock, scheduler):
    fired = []
    timer = scheduler.call_later(0.1, lambda: fired.append(1))
    timer.cancel()
    clock.advance(1.0)
    assert scheduler.run_due() == 0
    assert fired == []
    assert scheduler.pending == 0


def test_polled_scheduler_runs_timers_armed_by_callbacks(clock, scheduler):
    fired = []

    def first():
        fired.append("first")
        scheduler.call_later(0, lambda: fired.append("second"))

    scheduler.call_later(0.1, first)
    clock.advance(0.1)
    assert scheduler.run_due() == 2
    assert fired == ["first", "second"]


def test_simulated_clock_cannot_go_backwards():
    clock = SimulatedClock(10.0)
    with pytest.raises(ValueError):
        clock.advance(-1)
    assert clock() == 10.0


def test_polled_scheduler_defaults_to_monotonic_clock():
    scheduler = PolledScheduler()
    assert scheduler.now() <= scheduler.now()


def test_asyncio_scheduler_drives_segmenter():
    """
    使用真实事件循环定时器：延迟发送在 partialDelayMs 后触发。
    """

    async def scenario():
        emitted = []
        seg = StreamSegmenter(
            sink=emitted.append,
            config=SegmenterConfig(partialDelayMs=10),
            scheduler=AsyncioScheduler(),
        )
        seg.ingest("Hello")
        seg.ingest(" world.")
        assert emitted == []
        await asyncio.sleep(0.1)
        return emitted

    emitted = asyncio.run(scenario())
    assert [(s.content, s.isPartial) for s in emitted] == [("Hello world.", False)]


def test_asyncio_scheduler_destroy_cancels_timer():
    async def scenario():
        emitted = []
        seg = StreamSegmenter(
            sink=emitted.append,
            config=SegmenterConfig(partialDelayMs=10),
            scheduler=AsyncioScheduler(),
        )
        seg.ingest("bye")
        seg.destroy()
        await asyncio.sleep(0.05)
        return emitted

    emitted = asyncio.run(scenario())
    assert [s.content for s in emitted] == ["bye"]


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("SEGMENT_MIN_BUFFER_CHARS", "10")
    monkeypatch.setenv("SEGMENT_PARTIAL_DELAY_MS", "250")
    config = SegmenterConfig.from_env(partialDelayMs=None, maxWaitMs=4000)
    assert config.minBufferChars == 10
    assert config.partialDelayMs == 250
    assert config.maxWaitMs == 4000
    assert config.codeFenceDelayMs == 1500


def test_config_rejects_bad_env(monkeypatch):
    monkeypatch.setenv("SEGMENT_MAX_WAIT_MS", "soon")
    with pytest.raises(ValidationError):
        SegmenterConfig.from_env()


def test_config_is_frozen():
    config = SegmenterConfig()
    with pytest.raises(ValidationError):
        config.minBufferChars = 1


def test_config_rejects_negative_delay():
    with pytest.raises(ValidationError):
        SegmenterConfig(partialDelayMs=-1)


def test_polled_scheduler_reports_next_deadline(clock, scheduler):
    assert scheduler.seconds_until_due() is None
    scheduler.call_later(0.5, lambda: None)
    early = scheduler.call_later(0.2, lambda: None)
    assert scheduler.seconds_until_due() == pytest.approx(0.2)

    early.cancel()
    clock.advance(1.0)
    assert scheduler.seconds_until_due() == 0.0
