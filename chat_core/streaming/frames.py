"""SSE 帧解析器。

逐行解释 TransportReader 输出的文本行：

- 空行、以 ":" 开头的注释/保活行：丢弃。
- 不以 "data:" 开头的行（未知帧类型）：丢弃，保证向前兼容。
- "data: [DONE]"：流结束，之后不再产出任何 payload。
- 其它 data 行：解析 JSON，成功则产出 payload 事件。

JSON 解析失败不算错误，而是进入 PendingFrame（“等待补全的帧”）状态：
后续行以换行拼接到这段文本上再尝试解析，用来容忍厂商把一个 JSON
拆成多行发送的情况。PendingFrame 有字节上限，超过即丢弃，防止损坏的
流无限缓存。流结束时再尝试一次，仍失败则丢弃并记 WARNING 日志，
只计入 dropped_frames，不向用户报错。

注意：处于 PendingFrame 状态时，以 ":" 开头的续行仍按注释行丢弃，
不会拼接进待补全的帧；如果厂商拆行恰好在 ":" 之前断开，这一帧
最终会因无法解析而被丢弃。
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from chat_core.infrastructure.logging.logger import log_event

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
DEFAULT_MAX_PENDING_BYTES = 64 * 1024


@dataclass
class FrameEvent:
    kind: Literal["payload", "done"]
    payload: Any = None


@dataclass
class PendingFrame:
    """解析失败、等待后续行补全的帧内容。"""

    text: str
    lines: int = 1

    @property
    def size(self) -> int:
        return len(self.text.encode("utf-8"))

    def extend(self, more: str) -> "PendingFrame":
        return PendingFrame(text=f"{self.text}\n{more}", lines=self.lines + 1)


class FrameParser:
    def __init__(
        self,
        max_pending_bytes: int = DEFAULT_MAX_PENDING_BYTES,
        log_ctx: Optional[Dict[str, Any]] = None,
    ):
        self._max_pending_bytes = max_pending_bytes
        self._log_ctx = dict(log_ctx or {})
        self._pending: Optional[PendingFrame] = None
        self.done = False
        self.dropped_frames = 0

    @property
    def pending(self) -> Optional[PendingFrame]:
        return self._pending

    def feed(self, line: str) -> List[FrameEvent]:
        if self.done:
            return []
        if not line.strip() or line.startswith(":"):
            return []
        if line.startswith(DATA_PREFIX):
            return self._on_data(line[len(DATA_PREFIX):].strip())
        if self._pending is not None:
            # 裸续行：只可能是上一条 JSON 的后半段
            return self._on_continuation(line)
        return []

    def finish(self) -> List[FrameEvent]:
        """流结束时的最后一次尝试。"""

        if self._pending is None or self.done:
            return []
        pending, self._pending = self._pending, None
        parsed = _try_parse(pending.text)
        if parsed is not _INVALID:
            return [FrameEvent(kind="payload", payload=parsed)]
        self._drop(pending, "stream ended with incomplete frame")
        return []

    def _on_data(self, data: str) -> List[FrameEvent]:
        if self._pending is None:
            if data == DONE_SENTINEL:
                return self._finish_stream()
            parsed = _try_parse(data)
            if parsed is _INVALID:
                self._hold(PendingFrame(text=data))
                return []
            return [FrameEvent(kind="payload", payload=parsed)]

        if data == DONE_SENTINEL:
            pending, self._pending = self._pending, None
            self._drop(pending, "terminal sentinel before frame completed")
            return self._finish_stream()

        combined = self._pending.extend(data)
        parsed = _try_parse(combined.text)
        if parsed is not _INVALID:
            self._pending = None
            return [FrameEvent(kind="payload", payload=parsed)]

        parsed = _try_parse(data)
        if parsed is not _INVALID:
            # 新的完整帧到达，旧的残片再也补不全了
            pending, self._pending = self._pending, None
            self._drop(pending, "superseded by a complete frame")
            return [FrameEvent(kind="payload", payload=parsed)]

        self._hold(combined)
        return []

    def _on_continuation(self, line: str) -> List[FrameEvent]:
        combined = self._pending.extend(line)
        parsed = _try_parse(combined.text)
        if parsed is not _INVALID:
            self._pending = None
            return [FrameEvent(kind="payload", payload=parsed)]
        self._hold(combined)
        return []

    def _finish_stream(self) -> List[FrameEvent]:
        self.done = True
        return [FrameEvent(kind="done")]

    def _hold(self, pending: PendingFrame) -> None:
        if pending.size > self._max_pending_bytes:
            self._pending = None
            self._drop(pending, "pending frame exceeded size limit")
            return
        self._pending = pending

    def _drop(self, pending: PendingFrame, reason: str) -> None:
        self.dropped_frames += 1
        log_event(
            logging.WARNING,
            "Dropped incomplete stream frame",
            self._log_ctx,
            reason=reason,
            pending_bytes=pending.size,
            pending_lines=pending.lines,
        )


_INVALID = object()


def _try_parse(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return _INVALID
