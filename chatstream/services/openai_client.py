import os
from typing import Any, Dict, Iterable, List, Optional

from chatstream.utils.retry import retry_with_backoff


DEFAULT_MODEL = "gpt-4o-mini"

MOCK_REPLY = (
    "Here is a short example:\n\n"
    "1. Install the package.\n\n\n"
    "2. Run the script below.\n\n"
    "```python\n\n"
    "print('hello from the mock stream')\n"
    "```\n\n"
    "That is all you need."
)


class MockEvent:
    """
    模拟的流式事件对象，兼容 event.type 与 event.data 访问。
    """

    def __init__(self, event_type: str, data: Dict[str, Any]):
        self.type = event_type
        self.data = data


class MockStream:
    """
    模拟的事件流，便于在无 API Key 环境下本地验证分段输出。

    说明：
        - 按 chunk_size 个字符切分回复文本，模拟模型逐 token 输出（``` 标记可能被切断）。
    """

    def __init__(self, reply_text: str, chunk_size: int = 4):
        self.reply_text = reply_text
        self.chunk_size = chunk_size

    def __iter__(self):
        return self.events()

    def events(self) -> Iterable[MockEvent]:
        yield MockEvent("response.created", {"id": "mock-001"})
        yield MockEvent("message.start", {})
        for i in range(0, len(self.reply_text), self.chunk_size):
            yield MockEvent("content.delta", {"delta": self.reply_text[i : i + self.chunk_size]})
        yield MockEvent("message.stop", {})
        yield MockEvent("response.usage", self._usage())
        yield MockEvent("response.completed", {})

    def _usage(self) -> Dict[str, int]:
        return {"input_tokens": 0, "output_tokens": len(self.reply_text), "total_tokens": len(self.reply_text)}

    def get_final_response(self) -> Dict[str, Any]:
        return {"usage": self._usage(), "output_text": self.reply_text}


def _to_chat_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # Responses 风格 [{type:text, text:...}] -> Chat Completions 纯文本
    chat_msgs: List[Dict[str, Any]] = []
    for m in messages:
        content = m.get("content")
        text = ""
        if isinstance(content, list):
            for c in content:
                if isinstance(c, dict) and c.get("type") == "text":
                    text += c.get("text", "")
        elif isinstance(content, str):
            text = content
        chat_msgs.append({"role": m.get("role"), "content": text})
    return chat_msgs


class OpenAIClient:
    """
    OpenAI 客户端封装，负责发起流式对话请求。

    环境变量：
        OPENAI_API_KEY: 访问密钥（缺失时使用模拟流）
        OPENAI_MODEL: 默认模型名，默认 gpt-4o-mini
        USE_MOCK: 为 '1' 时使用模拟流（每次请求时重新读取，便于测试统一控制）
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        self.default_model = os.environ.get("OPENAI_MODEL", DEFAULT_MODEL)

    @property
    def use_mock(self) -> bool:
        return os.environ.get("USE_MOCK", "0") == "1" or not self.api_key

    @retry_with_backoff()
    def _stream_impl(self, input_messages: List[Dict[str, Any]], temperature: float, model: str):
        if self.use_mock:
            return MockStream(MOCK_REPLY)
        from openai import OpenAI

        client = OpenAI(api_key=self.api_key)
        return ChatCompletionsStreamAdapter(
            client.chat.completions.create(
                model=model,
                messages=_to_chat_messages(input_messages),
                temperature=temperature,
                stream=True,
            )
        )

    def stream_response(
        self,
        input_messages: List[Dict[str, Any]],
        temperature: float = 0.7,
        model: Optional[str] = None,
    ):
        """
        发起流式请求。

        输入：
            input_messages: 消息数组（系统、历史与当前用户消息）
            temperature: 采样温度，默认 0.7
            model: 模型名，为空时使用 OPENAI_MODEL

        输出：
            事件流对象，迭代得到 content.delta 等事件。
        """
        return self._stream_impl(input_messages, temperature, model or self.default_model)


class ChatCompletionsStreamAdapter:
    """
    将 OpenAI Chat Completions 的流式响应适配为统一事件。

    事件序：
        response.created -> message.start -> 多个 content.delta -> message.stop
        -> response.usage -> response.completed
    """

    def __init__(self, generator):
        self._gen = generator
        self._buffer: List[str] = []

    def __iter__(self):
        return self.events()

    def events(self) -> Iterable[MockEvent]:
        yield MockEvent("response.created", {"id": "chatcmpl-stream"})
        yield MockEvent("message.start", {})
        for chunk in self._gen:
            if not chunk.choices:
                continue
            delta_text = getattr(chunk.choices[0].delta, "content", None)
            if delta_text:
                self._buffer.append(delta_text)
                yield MockEvent("content.delta", {"delta": delta_text})
        yield MockEvent("message.stop", {})
        yield MockEvent("response.usage", self._usage())
        yield MockEvent("response.completed", {})

    def _usage(self) -> Dict[str, int]:
        # Chat Completions 流式默认不返回 usage，这里按输出字符数近似
        text = "".join(self._buffer)
        return {"input_tokens": 0, "output_tokens": len(text), "total_tokens": len(text)}

    def get_final_response(self) -> Dict[str, Any]:
        return {"usage": self._usage(), "output_text": "".join(self._buffer)}
