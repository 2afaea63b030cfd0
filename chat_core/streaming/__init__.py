"""流式响应摄取管线。

TransportReader（字节块 → 完整行）→ FrameParser（行 → JSON payload）
→ MessageAccumulator（payload → 累计内容）。
"""

from chat_core.streaming.accumulator import DeltaEvent, MessageAccumulator, extract_delta
from chat_core.streaming.cancel import CancelToken
from chat_core.streaming.frames import FrameEvent, FrameParser, PendingFrame
from chat_core.streaming.reader import TransportReader

__all__ = [
    "CancelToken",
    "DeltaEvent",
    "FrameEvent",
    "FrameParser",
    "MessageAccumulator",
    "PendingFrame",
    "TransportReader",
    "extract_delta",
]
