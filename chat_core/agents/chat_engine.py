"""对话引擎核心模块。

负责一次“发送 / 重新生成”的完整流程：
写入用户消息与 assistant 占位消息 → 构造请求 → 读取流式响应 →
逐块经 TransportReader / FrameParser / MessageAccumulator 解析 →
通过 ConversationStore 的唯一写入口更新占位消息。

同一会话同一时刻只允许一个进行中的流（in-flight 令牌），第二次发送
直接以 StreamInFlightError 拒绝，不会写入任何消息。
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import Message
from chat_core.domain.exceptions import (
    BusinessError,
    NoUserMessageError,
    StreamInFlightError,
    UnknownMessageError,
)
from chat_core.domain.models import TERMINAL_STATUSES, Attachment, ChatRequest, MessageStatus, can_transition
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.base import ChatStreamClient
from chat_core.providers.request_builder import build_request, history_through
from chat_core.store.conversation_store import ConversationStore
from chat_core.streaming import CancelToken, FrameParser, MessageAccumulator, TransportReader

ERROR_PREFIX = "Sorry, I encountered an error: "

Notifier = Callable[[BusinessError], None]


@dataclass
class SendOutcome:
    """一次发送/重新生成的结果。

    错误不会抛给调用方，而是记录在 error 中（同时写入失败的那条消息）。
    """

    conversation_id: str
    user_message_id: str
    assistant_message_id: str
    request: Optional[ChatRequest] = None
    content: str = ""
    status: MessageStatus = "sending"
    error: Optional[BusinessError] = None
    cancelled: bool = False
    dropped_frames: int = 0


class ChatEngine:
    def __init__(
        self,
        store: ConversationStore,
        client: ChatStreamClient,
        *,
        cfg=settings,
        notifier: Optional[Notifier] = None,
    ):
        self._store = store
        self._client = client
        self._settings = cfg
        self._notifier = notifier
        self._in_flight: Dict[str, CancelToken] = {}
        self._in_flight_lock = threading.Lock()

    # ---- 对外操作 ----

    def send_message(
        self,
        content: str,
        attachments: Optional[Sequence[Attachment]] = None,
        *,
        conversation_id: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> Optional[SendOutcome]:
        """发送一条用户消息并流式接收回答。

        Args:
            content: 用户输入的文本。
            attachments: 附件；为 None 时取 store 中的待发送附件。
            conversation_id: 目标会话；默认当前会话，没有则新建。
            cancel_token: 外部取消令牌（可选）。

        Returns:
            SendOutcome；文本与附件都为空时返回 None。

        Raises:
            StreamInFlightError: 目标会话已有进行中的流。
        """

        pending = self._store.pending_attachments if attachments is None else tuple(attachments)
        if not content.strip() and not pending:
            return None

        target = conversation_id or self._store.current_conversation_id or self._store.create_conversation()
        token = self._reserve(target, cancel_token)
        try:
            if attachments is None:
                pending = self._store.take_pending_attachments()
            user_id = self._store.add_message(
                "user",
                content,
                attachments=list(pending) or None,
                status="sending",
                conversation_id=target,
            )
            history = history_through(self._store.get_messages(target), user_id)
            assistant_id = self._add_placeholder(target)
            return self._stream_reply(target, user_id, assistant_id, history, token)
        finally:
            self._release(target)

    def regenerate_last_message(
        self,
        conversation_id: Optional[str] = None,
        *,
        cancel_token: Optional[CancelToken] = None,
    ) -> SendOutcome:
        """重新生成最后一条回答。

        找到最近的一条用户消息；若会话最后一条是 assistant 消息则删除它，
        然后把截至该用户消息的历史重新提交，并像普通发送一样新建占位消息。
        """

        target = conversation_id or self._store.current_conversation_id
        if target is None:
            raise NoUserMessageError(code="NO_USER_MESSAGE", message="No conversation to regenerate")
        self._store.get_conversation(target)
        token = self._reserve(target, cancel_token)
        try:
            messages = self._store.get_messages(target)
            user_msg = _last_user_message(messages)
            if user_msg is None:
                raise NoUserMessageError(
                    code="NO_USER_MESSAGE",
                    message="No user message to regenerate from",
                    conversation_id=target,
                )
            if messages[-1].role == "assistant":
                self._store.delete_message(messages[-1].id)
            history = history_through(self._store.get_messages(target), user_msg.id)
            assistant_id = self._add_placeholder(target)
            return self._stream_reply(target, user_msg.id, assistant_id, history, token)
        finally:
            self._release(target)

    def cancel(self, conversation_id: str) -> bool:
        with self._in_flight_lock:
            token = self._in_flight.get(conversation_id)
        if token is None:
            return False
        token.cancel()
        return True

    def is_streaming(self, conversation_id: str) -> bool:
        with self._in_flight_lock:
            return conversation_id in self._in_flight

    # ---- 流式处理 ----

    def _stream_reply(
        self,
        conversation_id: str,
        user_id: str,
        assistant_id: str,
        history: List[Message],
        token: CancelToken,
    ) -> SendOutcome:
        start_time = time.time()
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "conversation_id": conversation_id,
            "assistant_message_id": assistant_id,
        }
        req = build_request(history, self._settings.attachment_text_limit)
        outcome = SendOutcome(
            conversation_id=conversation_id,
            user_message_id=user_id,
            assistant_message_id=assistant_id,
            request=req,
        )
        reader = TransportReader()
        parser = FrameParser(max_pending_bytes=self._settings.max_pending_frame_bytes, log_ctx=log_ctx)
        acc = MessageAccumulator(assistant_id)

        self._store.set_loading(True, conversation_id)
        self._store.set_assistant_typing(True, conversation_id)
        try:
            log_event(logging.INFO, "Calling chat endpoint", log_ctx, message_count=len(req.messages))
            with self._client.stream_chat(req) as chunks:
                self._store.set_message_status(assistant_id, "sent")
                self._advance(user_id, "sent")
                for chunk in chunks:
                    if token.cancelled:
                        break
                    self._apply_lines(reader.feed(chunk), parser, acc, conversation_id, user_id, log_ctx)
                    if parser.done:
                        break

            if token.cancelled:
                self._finish_cancelled(outcome, log_ctx)
            else:
                if not parser.done:
                    self._apply_lines(reader.finish(), parser, acc, conversation_id, user_id, log_ctx)
                    for event in parser.finish():
                        self._apply_payload(event.payload, acc, conversation_id, user_id, log_ctx)
                self._finish_ok(assistant_id, user_id, acc)
                log_event(
                    logging.INFO,
                    "Stream finished",
                    log_ctx,
                    elapsed_seconds=round(time.time() - start_time, 2),
                    deltas=acc.received,
                    dropped_frames=parser.dropped_frames,
                )
        except BusinessError as e:
            self._fail(outcome, e, log_ctx)
        except Exception as e:
            self._fail(outcome, BusinessError(code="INTERNAL_ERROR", message=str(e)), log_ctx)
            raise
        finally:
            self._store.set_loading(False, conversation_id)
            self._store.set_assistant_typing(False, conversation_id)

        outcome.dropped_frames = parser.dropped_frames
        self._fill_outcome(outcome)
        return outcome

    def _apply_lines(
        self,
        lines: Iterable[str],
        parser: FrameParser,
        acc: MessageAccumulator,
        conversation_id: str,
        user_id: str,
        log_ctx: Dict[str, Any],
    ) -> None:
        for line in lines:
            for event in parser.feed(line):
                if event.kind == "done":
                    return
                self._apply_payload(event.payload, acc, conversation_id, user_id, log_ctx)

    def _apply_payload(
        self,
        payload: Any,
        acc: MessageAccumulator,
        conversation_id: str,
        user_id: str,
        log_ctx: Dict[str, Any],
    ) -> None:
        event = acc.consume(payload)
        if event is None:
            return
        if event.first:
            self._store.set_assistant_typing(False, conversation_id)
            self._store.update_message(event.message_id, event.content, "delivered")
            self._advance(user_id, "delivered")
            log_event(logging.INFO, "First token received", log_ctx)
            return
        self._store.update_message(event.message_id, event.content)

    def _finish_ok(self, assistant_id: str, user_id: str, acc: MessageAccumulator) -> None:
        self._store.update_message(assistant_id, acc.content, "read")
        self._store.set_message_streaming(assistant_id, False)
        self._advance(user_id, "read")

    def _finish_cancelled(self, outcome: SendOutcome, log_ctx: Dict[str, Any]) -> None:
        self._store.set_message_streaming(outcome.assistant_message_id, False)
        self._store.set_message_status(outcome.assistant_message_id, "cancelled")
        outcome.cancelled = True
        log_event(logging.INFO, "Stream cancelled", log_ctx)

    def _fail(self, outcome: SendOutcome, error: BusinessError, log_ctx: Dict[str, Any]) -> None:
        outcome.error = error
        log_event(logging.ERROR, f"Chat failed: {error.message}", log_ctx, code=error.code)
        try:
            current = self._store.get_message(outcome.assistant_message_id)
            self._store.set_message_streaming(outcome.assistant_message_id, False)
            if current.status not in TERMINAL_STATUSES:
                self._store.update_message(outcome.assistant_message_id, ERROR_PREFIX + error.message, "error")
        except UnknownMessageError:
            # 会话或占位消息在流式过程中被删除，没有可标记的消息了
            log_event(logging.WARNING, "Failed message no longer exists", log_ctx)
        if self._notifier is not None:
            self._notifier(error)

    # ---- 辅助方法 ----

    def _add_placeholder(self, conversation_id: str) -> str:
        return self._store.add_message(
            "assistant",
            "",
            is_streaming=True,
            status="sending",
            conversation_id=conversation_id,
        )

    def _advance(self, message_id: str, status: MessageStatus) -> None:
        """推进用户消息的状态；已经到达或越过该状态时不动。"""

        current = self._store.get_message(message_id).status
        if current != status and can_transition(current, status):
            self._store.set_message_status(message_id, status)

    def _fill_outcome(self, outcome: SendOutcome) -> None:
        try:
            msg = self._store.get_message(outcome.assistant_message_id)
        except UnknownMessageError:
            return
        outcome.content = msg.content
        outcome.status = msg.status

    def _reserve(self, conversation_id: str, cancel_token: Optional[CancelToken]) -> CancelToken:
        with self._in_flight_lock:
            if conversation_id in self._in_flight:
                raise StreamInFlightError(
                    code="STREAM_IN_FLIGHT",
                    message="A response is still streaming for this conversation",
                    http_status=409,
                    conversation_id=conversation_id,
                )
            token = cancel_token or CancelToken()
            self._in_flight[conversation_id] = token
            return token

    def _release(self, conversation_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.pop(conversation_id, None)


def _last_user_message(messages: Sequence[Message]) -> Optional[Message]:
    for msg in reversed(messages):
        if msg.role == "user":
            return msg
    return None
