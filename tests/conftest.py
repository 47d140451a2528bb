import os
import sys

import pytest


def pytest_sessionstart(session):
    """
    在测试会话开始时，将项目根目录加入 sys.path。

    这样未安装时测试模块也可以使用 `from chatstream.main import app` 进行导入。
    """
    root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if root not in sys.path:
        sys.path.insert(0, root)


@pytest.fixture
def clock():
    from chatstream.utils.scheduler import SimulatedClock

    return SimulatedClock()


@pytest.fixture
def scheduler(clock):
    from chatstream.utils.scheduler import PolledScheduler

    return PolledScheduler(clock)


@pytest.fixture
def make_segmenter(scheduler):
    """
    构造使用模拟时钟的分段器，返回 (segmenter, emitted)。

    emitted 为已发送 Segment 的列表；可传入 SegmenterConfig 字段覆盖默认配置。
    """
    from chatstream.types import SegmenterConfig
    from chatstream.utils.segmenter import StreamSegmenter

    def _make(sink=None, on_error=None, **overrides):
        emitted = []
        segmenter = StreamSegmenter(
            sink=sink or emitted.append,
            config=SegmenterConfig(**overrides),
            scheduler=scheduler,
            on_error=on_error,
            name="test",
        )
        return segmenter, emitted

    return _make


@pytest.fixture
def advance(clock, scheduler):
    """推进模拟时间（秒）并触发到期的定时器。"""

    def _advance(seconds: float) -> int:
        clock.advance(seconds)
        return scheduler.run_due()

    return _advance
