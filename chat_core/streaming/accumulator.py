"""消息增量累加器。

每个进行中的 assistant 消息对应一个 MessageAccumulator：
从 payload 的 choices[0].delta.content 取出增量，拼到累计内容上，
并以 DeltaEvent 的形式交给调用方（由调用方写入 ConversationStore）。
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class DeltaEvent:
    message_id: str
    delta: str
    content: str
    first: bool


def extract_delta(payload: Any) -> Optional[str]:
    """取出 choices[0].delta.content；形状不符或为空时返回 None。"""

    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, dict):
        return None
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if not isinstance(content, str) or not content:
        return None
    return content


class MessageAccumulator:
    def __init__(self, message_id: str, initial: str = ""):
        self.message_id = message_id
        self._content = initial
        self._received = 0

    @property
    def content(self) -> str:
        return self._content

    @property
    def received(self) -> int:
        """已收到的非空增量数量。"""

        return self._received

    def consume(self, payload: Any) -> Optional[DeltaEvent]:
        delta = extract_delta(payload)
        if delta is None:
            return None
        self._received += 1
        self._content += delta
        return DeltaEvent(
            message_id=self.message_id,
            delta=delta,
            content=self._content,
            first=self._received == 1,
        )
