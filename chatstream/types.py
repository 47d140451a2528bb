import os
import re
from typing import Any, Dict, List, Optional, Pattern, Tuple

from pydantic import BaseModel, ConfigDict, Field


# 默认完成模式：按顺序检查，首个命中即返回；各模式互相独立，仅锚定不同结尾
DEFAULT_COMPLETION_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"[.。]\s*$"),  # 句号
    re.compile(r"[?？]\s*$"),  # 问号
    re.compile(r"[!！]\s*$"),  # 感叹号
    re.compile(r"```\s*$"),  # 代码块结束
    re.compile(r"[:：]\s*$"),  # 冒号
    re.compile(r"\n\n$"),  # 空行（段落结束）
)

# 环境变量 -> 配置字段
_ENV_FIELDS = {
    "SEGMENT_PARTIAL_DELAY_MS": "partialDelayMs",
    "SEGMENT_MAX_WAIT_MS": "maxWaitMs",
    "SEGMENT_MIN_BUFFER_CHARS": "minBufferChars",
    "SEGMENT_CODE_FENCE_DELAY_MS": "codeFenceDelayMs",
}


class Segment(BaseModel):
    """
    一次发送给下游的文本分段（不可变）。

    字段说明：
        content: 规范化后的文本，永不为空
        isPartial: 内容是否看起来不完整（供前端渲染参考）
    """

    model_config = ConfigDict(frozen=True)

    content: str = Field(min_length=1)
    isPartial: bool = False


class SegmenterConfig(BaseModel):
    """
    StreamSegmenter 配置，构造后不可修改。

    字段说明：
        partialDelayMs: 普通文本的延迟发送时间（毫秒），默认 500
        maxWaitMs: 最长缓冲时间（毫秒），超过后强制发送，默认 2000
        minBufferChars: 立即发送所需的最少字符数，默认 50
        codeFenceDelayMs: 处于代码块内时的延迟发送时间（毫秒），默认 1500
        completionPatterns: 完成模式列表（字符串会被编译为正则），匹配对象为去掉尾部空格与制表符的缓冲
    """

    model_config = ConfigDict(frozen=True)

    partialDelayMs: int = Field(default=500, ge=0)
    maxWaitMs: int = Field(default=2000, ge=0)
    minBufferChars: int = Field(default=50, ge=0)
    codeFenceDelayMs: int = Field(default=1500, ge=0)
    completionPatterns: Tuple[Pattern[str], ...] = Field(default=DEFAULT_COMPLETION_PATTERNS)

    @classmethod
    def from_env(cls, **overrides: Any) -> "SegmenterConfig":
        """
        从进程环境变量读取配置，未设置的项使用默认值。

        输入：
            overrides: 显式覆盖项（优先级高于环境变量，值为 None 的项忽略）

        关键逻辑：
            - 读取 SEGMENT_PARTIAL_DELAY_MS、SEGMENT_MAX_WAIT_MS、
              SEGMENT_MIN_BUFFER_CHARS、SEGMENT_CODE_FENCE_DELAY_MS；
            - 非法数值由 pydantic 校验并抛出 ValidationError。
        """
        values: Dict[str, Any] = {}
        for env_name, field_name in _ENV_FIELDS.items():
            raw = os.environ.get(env_name)
            if raw is not None and raw.strip():
                values[field_name] = raw.strip()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class ChatStreamBody(BaseModel):
    """
    POST /chat/stream 与 WS /chat/ws 请求体模型。

    字段说明：
        model: 模型名称（为空时使用 OPENAI_MODEL 或服务默认值）
        input: 用户输入文本（必填）
        sessionId: 会话ID（选填，用于内存上下文）
        system: 覆盖系统提示词（选填）
        systemPromptName: 系统提示词模板名（选填）
        temperature: 采样温度（选填，默认 0.7）
        messages: 自定义历史（选填，优先于 sessionId）
        minBufferChars / partialDelayMs / maxWaitMs / codeFenceDelayMs:
            本次请求的分段参数覆盖（选填）
    """

    model: Optional[str] = None
    input: str
    sessionId: Optional[str] = None
    system: Optional[str] = None
    systemPromptName: Optional[str] = None
    temperature: Optional[float] = 0.7
    messages: Optional[List[Dict[str, Any]]] = None
    minBufferChars: Optional[int] = Field(default=None, ge=0)
    partialDelayMs: Optional[int] = Field(default=None, ge=0)
    maxWaitMs: Optional[int] = Field(default=None, ge=0)
    codeFenceDelayMs: Optional[int] = Field(default=None, ge=0)

    def segmenter_overrides(self) -> Dict[str, Any]:
        return {
            "minBufferChars": self.minBufferChars,
            "partialDelayMs": self.partialDelayMs,
            "maxWaitMs": self.maxWaitMs,
            "codeFenceDelayMs": self.codeFenceDelayMs,
        }
