import logging
import re
from typing import Any, Callable, List, Optional

from chatstream.exceptions import EmitFailed, InvalidFragment, SegmenterClosed
from chatstream.types import Segment, SegmenterConfig
from chatstream.utils.logger import LOGGER_NAME, log_json
from chatstream.utils.scheduler import PolledScheduler


logger = logging.getLogger(LOGGER_NAME)

FENCE = "```"
# 句末标点或代码块结束视为内容完整
_TERMINAL_ENDINGS = (".", "!", "?", "。", "！", "？", FENCE)

_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
# 占位符分隔符取自私有区，且必须不出现在原文中
_PLACEHOLDER_RANGES = ((0xE000, 0xF900), (0xF0000, 0xFFFFE), (0x100000, 0x10FFFE))
_LIST_LINE_RE = re.compile(r"^[ \t]*(?:\d+\.|[-*])[ \t]+\S", re.M)

_EXCESS_NEWLINES_RE = re.compile(r"\n{4,}")
_NUMBERED_GAP_RE = re.compile(r"^(\d+\.[ \t]+[^\n]+)\n{2,}(?=\d+\.)", re.M)
_BULLET_GAP_RE = re.compile(r"^([-*][ \t]+[^\n]+)\n{2,}(?=[-*][ \t])", re.M)
_BEFORE_HEADING_RE = re.compile(r"\n{3,}(?=#{1,6}[ \t])")
_AFTER_HEADING_RE = re.compile(r"^(#{1,6}[ \t][^\n]*)\n{3,}", re.M)
_FENCE_OPEN_GAP_RE = re.compile(r"^(```[^\n]*)\n{2,}")
_FENCE_CLOSE_GAP_RE = re.compile(r"\n{2,}(```)$")


def fix_formatting(content: str) -> str:
    """
    规范化一段待发送文本，只调整空白，不改动其他字符。

    关键逻辑：
        - 先把代码块（非贪婪匹配）替换为占位符，后续规则不会触及代码内容；
        - 代码外：4 个以上换行压缩为 3 个；相邻列表项之间的空行压缩为单个换行；
          标题前后多余空行统一为一个空行；
        - 代码内：开头 fence 之后、结尾 fence 之前的空行压缩为单个换行；
        - 还原代码块并去除首尾空白。
    多次调用结果与一次调用相同（幂等）。
    """
    blocks: List[str] = []
    mark = _placeholder_mark(content)

    def _protect(m: re.Match) -> str:
        blocks.append(m.group(0))
        return f"{mark}{len(blocks) - 1}{mark}"

    text = _CODE_BLOCK_RE.sub(_protect, content.strip())

    text = _EXCESS_NEWLINES_RE.sub("\n\n\n", text)
    text = _NUMBERED_GAP_RE.sub(r"\1\n", text)
    text = _BULLET_GAP_RE.sub(r"\1\n", text)
    text = _BEFORE_HEADING_RE.sub("\n\n", text)
    text = _AFTER_HEADING_RE.sub(r"\1\n\n", text)
    if not blocks:
        return text.strip()

    def _restore(m: re.Match) -> str:
        block = blocks[int(m.group(1))]
        block = _FENCE_OPEN_GAP_RE.sub(r"\1\n", block)
        return _FENCE_CLOSE_GAP_RE.sub(r"\n\1", block)

    placeholder_re = re.compile(f"{re.escape(mark)}(\\d+){re.escape(mark)}")
    return placeholder_re.sub(_restore, text).strip()


def _placeholder_mark(content: str) -> str:
    """返回一个不出现在 content 中的私有区字符，作为代码块占位符的分隔符。"""
    for start, end in _PLACEHOLDER_RANGES:
        for code in range(start, end):
            ch = chr(code)
            if ch not in content:
                return ch
    raise ValueError("no free placeholder character for content")


def is_complete(content: str) -> bool:
    """
    判断内容是否看起来完整（用于 isPartial 标注，与发送时机的判断相互独立）。

    以句末标点或 ``` 结尾即完整；否则仅当包含成对的代码块标记时视为完整。
    """
    trimmed = content.strip()
    if trimmed.endswith(_TERMINAL_ENDINGS):
        return True
    fences = trimmed.count(FENCE)
    return fences > 0 and fences % 2 == 0


class StreamSegmenter:
    """
    流式分段器：缓冲模型逐步输出的文本片段，在"足够完整"时整段发送给下游。

    输入/输出：
        - ingest(fragment)：追加片段，并决定立即发送、延迟发送或继续缓冲；
        - flush() / force_flush()：发送当前缓冲（若非空），之后缓冲区必为空；
        - destroy()：最终发送并关闭实例，此后 ingest() 抛出 SegmenterClosed。

    参数：
        sink: 接收 Segment 的回调，同步调用且不等待（fire-and-forget）
        config: SegmenterConfig，默认使用内置默认值
        scheduler: 提供 now()（秒）与 call_later(delay, cb) 的调度器，默认 PolledScheduler
        on_error: 定时器触发的发送失败时的回调（接收 EmitFailed），可选
        name: 日志中的实例标识（如 requestId），可选

    关键逻辑：
        - 代码块奇偶性每次都由完整缓冲重新计算，片段切断 ``` 标记也能正确识别；
        - 代码块未闭合时绝不立即发送，闭合的那一刻立即发送；
        - 任意时刻最多只有一个待触发的定时器，重新调度前先取消旧的；
        - 普通延迟发送不会晚于首个未发送字符到达后的 maxWaitMs。
    """

    def __init__(
        self,
        sink: Callable[[Segment], Any],
        config: Optional[SegmenterConfig] = None,
        scheduler=None,
        on_error: Optional[Callable[[EmitFailed], Any]] = None,
        name: Optional[str] = None,
    ):
        self.config = config or SegmenterConfig()
        self.name = name
        self._sink = sink
        self._scheduler = scheduler or PolledScheduler()
        self._on_error = on_error
        self._buffer = ""
        self._timer = None
        self._closed = False
        self._last_emit_at = self._scheduler.now()
        self._pending_since: Optional[float] = None

    @property
    def buffer(self) -> str:
        return self._buffer

    @property
    def fence_count(self) -> int:
        return self._buffer.count(FENCE)

    @property
    def in_fence(self) -> bool:
        return self.fence_count % 2 == 1

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def ingest(self, fragment: str) -> None:
        """
        追加一个片段并执行发送决策。

        异常：
            InvalidFragment：fragment 不是 str（缓冲区不变）
            SegmenterClosed：实例已 destroy
            EmitFailed：本次触发的立即发送失败（缓冲区已清空）
        """
        if not isinstance(fragment, str):
            raise InvalidFragment(f"fragment must be str, got {type(fragment).__name__}")
        if self._closed:
            raise SegmenterClosed("segmenter has been destroyed")
        if not fragment:
            return

        was_in_fence = self.in_fence
        if not self._buffer:
            self._pending_since = self._scheduler.now()
        self._buffer += fragment

        if was_in_fence and not self.in_fence:
            # 代码块刚好闭合
            self.flush()
        elif self.in_fence:
            self.schedule_flush(self.config.codeFenceDelayMs)
        elif self.should_emit_now():
            self.flush()
        else:
            self.schedule_flush(self._deferred_delay_ms())

    def should_emit_now(self) -> bool:
        """当前缓冲是否应立即发送（只读判断，不修改状态）。"""
        buffer = self._buffer
        if len(buffer) < self.config.minBufferChars:
            return False
        if self.in_fence:
            return False
        # 匹配对象去掉行尾空格与制表符，保留换行以便识别空行结尾
        tail = buffer.rstrip(" \t")
        for pattern in self.config.completionPatterns:
            if pattern.search(tail):
                return True
        # 列表项只有在换行到达后才算完整
        if buffer.endswith("\n") and _LIST_LINE_RE.search(buffer):
            return True
        if buffer and self._elapsed_ms(self._last_emit_at) > self.config.maxWaitMs:
            return True
        return False

    def schedule_flush(self, delay_ms: Optional[float] = None) -> None:
        """
        取消已有定时器并重新安排一次延迟发送。

        调度失败只影响这一次延迟发送：记录告警，依赖下一次 ingest 或 force_flush()。
        """
        self._cancel_timer()
        delay = self.config.partialDelayMs if delay_ms is None else delay_ms
        try:
            self._timer = self._scheduler.call_later(delay / 1000.0, self._on_timer)
        except Exception as e:
            self._timer = None
            log_json(logger, logging.WARNING, "segment.timer.failed", segmenter=self.name, delayMs=delay, error=str(e))

    def flush(self) -> Optional[Segment]:
        """
        发送当前缓冲并清空。

        输出：
            已发送的 Segment；缓冲为空或规范化后为空时返回 None。

        关键逻辑：
            - isPartial 由 is_complete() 独立计算，超时触发的发送可能标注为不完整；
            - 无论发送成功与否，缓冲区都会被清空（失败的内容视为丢失，不重试）；
            - sink 抛出的异常包装为 EmitFailed 向上抛出。
        """
        self._cancel_timer()
        if not self._buffer:
            return None
        try:
            content = fix_formatting(self._buffer)
            if not content:
                return None
            segment = Segment(content=content, isPartial=not is_complete(content))
            try:
                self._sink(segment)
            except Exception as e:
                log_json(
                    logger,
                    logging.WARNING,
                    "segment.emit.failed",
                    segmenter=self.name,
                    len=len(content),
                    error=str(e),
                )
                raise EmitFailed("segment sink failed", segment=segment) from e
            self._last_emit_at = self._scheduler.now()
            log_json(
                logger,
                logging.DEBUG,
                "segment.emit",
                segmenter=self.name,
                len=len(content),
                isPartial=segment.isPartial,
            )
            return segment
        finally:
            self._buffer = ""
            self._pending_since = None

    def force_flush(self) -> Optional[Segment]:
        """取消定时器并无条件发送；缓冲为空时什么都不做。"""
        self._cancel_timer()
        if not self._buffer:
            return None
        return self.flush()

    def destroy(self) -> Optional[Segment]:
        """最终发送并关闭实例，重复调用无副作用。"""
        if self._closed:
            return None
        try:
            return self.force_flush()
        finally:
            self._cancel_timer()
            self._closed = True

    def _on_timer(self) -> None:
        self._timer = None
        # 定时器到期前缓冲可能已被立即发送清空
        if not self._buffer:
            return
        try:
            self.flush()
        except EmitFailed as e:
            if self._on_error is not None:
                self._on_error(e)

    def _deferred_delay_ms(self) -> float:
        delay = float(self.config.partialDelayMs)
        if self._pending_since is not None:
            remaining = self.config.maxWaitMs - self._elapsed_ms(self._pending_since)
            delay = min(delay, max(remaining, 0.0))
        return delay

    def _elapsed_ms(self, since: float) -> float:
        return (self._scheduler.now() - since) * 1000.0

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
