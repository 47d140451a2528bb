import time
from typing import Any, Callable, Dict, List, Optional


def text_message(role: str, text: str) -> Dict[str, Any]:
    """构造 role + 富文本 content 格式的消息。"""
    return {"role": role, "content": [{"type": "text", "text": text}]}


class SessionStore:
    """
    内存会话存储，支持 TTL 与窗口限制。

    说明：
        - sessionId -> {messages: List[dict], ts: float}；
        - 每条消息为 role + content 结构，content 为 [{"type": "text", "text": ...}]。

    参数：
        ttl_seconds: 会话存活时间，默认 7200 秒
        max_rounds: 保留的最近轮数（user+assistant 为一轮），默认 10
        clock: 时间函数，默认 time.monotonic
    """

    def __init__(self, ttl_seconds: int = 7200, max_rounds: int = 10, clock: Optional[Callable[[], float]] = None):
        self.ttl_seconds = ttl_seconds
        self.max_rounds = max_rounds
        self._clock = clock or time.monotonic
        self.store: Dict[str, Dict[str, Any]] = {}

    def _trim(self, messages: List[dict]) -> List[dict]:
        limit = self.max_rounds * 2
        return messages[-limit:] if len(messages) > limit else messages

    def get(self, session_id: str) -> List[dict]:
        data = self.store.get(session_id)
        if not data:
            return []
        if (self._clock() - data["ts"]) > self.ttl_seconds:
            del self.store[session_id]
            return []
        return list(data["messages"])

    def set(self, session_id: str, messages: List[dict]) -> None:
        self.store[session_id] = {"messages": self._trim(list(messages)), "ts": self._clock()}

    def append(self, session_id: str, message: dict) -> None:
        self.set(session_id, self.get(session_id) + [message])

    def append_turn(self, session_id: str, user_text: str, assistant_text: str) -> None:
        """
        追加一轮完整对话。助手回复为空（如上游出错）时只记录用户输入。
        """
        messages = self.get(session_id) + [text_message("user", user_text)]
        if assistant_text:
            messages.append(text_message("assistant", assistant_text))
        self.set(session_id, messages)
