import asyncio
import time
from typing import Callable, List, Optional


class SimulatedClock:
    """
    可手动推进的单调时钟（秒），用于确定性测试。
    """

    def __init__(self, start: float = 0.0):
        self._now = start

    def __call__(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("clock cannot go backwards")
        self._now += seconds


class PolledTimer:
    """PolledScheduler 的一次性定时器句柄。"""

    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class PolledScheduler:
    """
    轮询式定时器调度：到期的定时器只在 run_due() 中触发。

    适用场景：
        - 同步生成器（如 SSE 输出）中没有事件循环，每收到一个上游事件后调用 run_due()；
        - 测试中配合 SimulatedClock 模拟时间流逝，无需真实 sleep。

    输入：
        clock: 返回单调时间（秒）的可调用对象，默认 time.monotonic
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.monotonic
        self._timers: List[PolledTimer] = []

    def now(self) -> float:
        return self._clock()

    def call_later(self, delay: float, callback: Callable[[], None]) -> PolledTimer:
        timer = PolledTimer(self.now() + max(delay, 0.0), callback)
        self._timers.append(timer)
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for t in self._timers if not t.cancelled)

    def seconds_until_due(self) -> Optional[float]:
        """距最早一个未取消定时器到期的秒数（已到期为 0），没有定时器时返回 None。"""
        whens = [t.when for t in self._timers if not t.cancelled]
        if not whens:
            return None
        return max(min(whens) - self.now(), 0.0)

    def run_due(self) -> int:
        """
        触发所有已到期且未取消的定时器，按到期时间顺序执行。

        输出：
            int：本次触发的回调数量。

        关键逻辑：
            - 回调中新建的定时器若同样已到期，会在本次调用中继续触发；
            - 已取消的定时器在扫描时一并清理。
        """
        fired = 0
        while True:
            now = self.now()
            self._timers = [t for t in self._timers if not t.cancelled]
            due = [t for t in self._timers if t.when <= now]
            if not due:
                return fired
            timer = min(due, key=lambda t: t.when)
            self._timers.remove(timer)
            timer.callback()
            fired += 1


class AsyncioScheduler:
    """
    基于 asyncio 事件循环的调度：时钟为 loop.time()，定时器为 loop.call_later()。
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()

    def now(self) -> float:
        return self._loop.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self._loop.call_later(max(delay, 0.0), callback)
