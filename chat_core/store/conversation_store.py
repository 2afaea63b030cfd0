"""会话存储服务。

ConversationStore 是所有会话与消息的唯一权威内存模型：

- 所有写操作都只能经由本类的方法完成，并在返回前同步持久化。
- 读操作返回副本（或稳定的空元组 EMPTY_MESSAGES），调用方无法篡改内部状态。
- 通过 StateStorage 的订阅通道接收外部变更，整体替换会话列表与当前会话
  （后写者胜，不做合并）。

显式生命周期：构造后调用 init() 加载持久化状态并订阅变更，用完调用 dispose()。
"""

import logging
import threading
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import DEFAULT_TITLE, Conversation, Message, StateStorage
from chat_core.domain.exceptions import UnknownConversationError, UnknownMessageError, ValidationError
from chat_core.domain.models import Attachment, MessageStatus, Role, can_transition, utcnow
from chat_core.infrastructure.logging.logger import log_event

EMPTY_MESSAGES: Tuple[Message, ...] = ()

TITLE_ELLIPSIS = "..."


class ConversationStore:
    def __init__(self, storage: Optional[StateStorage] = None, cfg=settings):
        self._storage = storage
        self._settings = cfg
        self._lock = threading.RLock()
        self._conversations: List[Conversation] = []
        self._by_id: Dict[str, Conversation] = {}
        # message id -> (所属会话, 消息)，update_message 走这里做 O(1) 定位
        self._message_index: Dict[str, Tuple[Conversation, Message]] = {}
        self._current_id: Optional[str] = None
        self._pending_attachments: List[Attachment] = []
        # 正在加载 / 等待首个 token 的会话 id；多个会话可以同时在流式中
        self._loading: Set[Optional[str]] = set()
        self._typing: Set[Optional[str]] = set()
        self._visible_count = cfg.conversations_page_size
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ---- 生命周期 ----

    def init(self) -> "ConversationStore":
        if self._storage is None:
            return self
        state = self._storage.load()
        if state:
            with self._lock:
                self._replace_state(state)
                self._recover_interrupted_streams()
        if self._unsubscribe is None:
            self._unsubscribe = self._storage.subscribe(self.apply_state)
        return self

    def dispose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def __enter__(self) -> "ConversationStore":
        return self.init()

    def __exit__(self, *exc) -> bool:
        self.dispose()
        return False

    # ---- 会话 ----

    def create_conversation(self) -> str:
        with self._lock:
            for conv in self._conversations:
                if not conv.messages:
                    self._select(conv)
                    self._persist()
                    return conv.id
            now = utcnow()
            conv = Conversation(
                id=f"c-{uuid4().hex}",
                title=DEFAULT_TITLE,
                created_at=now,
                updated_at=now,
            )
            self._conversations.insert(0, conv)
            self._by_id[conv.id] = conv
            self._select(conv)
            self._persist()
        log_event(logging.INFO, "Created conversation", conversation_id=conv.id)
        return conv.id

    def set_current_conversation(self, conversation_id: Optional[str]) -> None:
        with self._lock:
            if conversation_id is None:
                self._current_id = None
            else:
                self._select(self._require_conversation(conversation_id))
            self._persist()

    def delete_conversation(self, conversation_id: str) -> None:
        with self._lock:
            conv = self._require_conversation(conversation_id)
            self._conversations.remove(conv)
            del self._by_id[conv.id]
            for msg in conv.messages:
                self._message_index.pop(msg.id, None)
            if self._current_id == conv.id:
                if self._conversations:
                    self._select(self._conversations[0])
                else:
                    self._current_id = None
            self._persist()
        log_event(logging.INFO, "Deleted conversation", conversation_id=conversation_id)

    def set_draft(self, conversation_id: str, text: str) -> None:
        with self._lock:
            self._require_conversation(conversation_id).draft = text
            self._persist()

    def get_draft(self, conversation_id: str) -> str:
        with self._lock:
            return self._require_conversation(conversation_id).draft

    # ---- 消息 ----

    def add_message(
        self,
        role: Role,
        content: str,
        *,
        attachments: Optional[List[Attachment]] = None,
        is_streaming: bool = False,
        status: MessageStatus = "sent",
        conversation_id: Optional[str] = None,
    ) -> str:
        """追加一条消息，这是唯一的消息插入入口。"""

        with self._lock:
            if conversation_id is not None:
                conv = self._require_conversation(conversation_id)
            elif self._current_id is not None:
                conv = self._by_id[self._current_id]
            else:
                conv = self._by_id[self.create_conversation()]

            now = utcnow()
            msg = Message(
                id=f"m-{uuid4().hex}",
                role=role,
                content=content,
                timestamp=now,
                attachments=list(attachments) if attachments else None,
                is_streaming=is_streaming,
                status=status,
            )
            if not conv.messages and role == "user":
                conv.title = self._derive_title(content, conv.title)
            conv.messages.append(msg)
            conv.updated_at = now
            if conv.id != self._current_id:
                conv.unread_count += 1
            self._message_index[msg.id] = (conv, msg)
            self._persist()
            return msg.id

    def update_message(self, message_id: str, content: str, status: Optional[MessageStatus] = None) -> None:
        with self._lock:
            conv, msg = self._require_message(message_id)
            if msg.is_streaming and len(content) < len(msg.content):
                raise ValidationError(
                    code="STREAM_CONTENT_SHRANK",
                    message="streaming message content cannot shrink",
                    message_id=message_id,
                )
            if status is not None and not can_transition(msg.status, status):
                raise ValidationError(
                    code="INVALID_STATUS_TRANSITION",
                    message=f"cannot move message from {msg.status} to {status}",
                    message_id=message_id,
                )
            msg.content = content
            if status is not None:
                msg.status = status
            conv.updated_at = utcnow()
            self._persist()

    def set_message_status(self, message_id: str, status: MessageStatus) -> None:
        with self._lock:
            _, msg = self._require_message(message_id)
            self.update_message(message_id, msg.content, status)

    def set_message_streaming(self, message_id: str, is_streaming: bool) -> None:
        with self._lock:
            conv, msg = self._require_message(message_id)
            msg.is_streaming = is_streaming
            conv.updated_at = utcnow()
            self._persist()

    def delete_message(self, message_id: str) -> None:
        with self._lock:
            conv, msg = self._require_message(message_id)
            conv.messages.remove(msg)
            del self._message_index[message_id]
            self._persist()

    # ---- 待发送附件（不持久化） ----

    def add_attachment(self, attachment: Attachment) -> str:
        with self._lock:
            self._pending_attachments.append(attachment)
            return attachment.id

    def remove_attachment(self, attachment_id: str) -> None:
        with self._lock:
            self._pending_attachments = [a for a in self._pending_attachments if a.id != attachment_id]

    def clear_attachments(self) -> None:
        with self._lock:
            self._pending_attachments = []

    def take_pending_attachments(self) -> Tuple[Attachment, ...]:
        with self._lock:
            taken = tuple(self._pending_attachments)
            self._pending_attachments = []
            return taken

    @property
    def pending_attachments(self) -> Tuple[Attachment, ...]:
        return tuple(self._pending_attachments)

    # ---- 瞬时 UI 标志（不持久化） ----

    def is_loading(self, conversation_id: Optional[str] = None) -> bool:
        """不指定会话时，只要还有任何会话在加载就返回 True。"""

        with self._lock:
            if conversation_id is None:
                return bool(self._loading)
            return conversation_id in self._loading

    def set_loading(self, loading: bool, conversation_id: Optional[str] = None) -> None:
        with self._lock:
            _toggle(self._loading, conversation_id, loading)

    def is_assistant_typing(self, conversation_id: Optional[str] = None) -> bool:
        with self._lock:
            if conversation_id is None:
                return bool(self._typing)
            return conversation_id in self._typing

    def set_assistant_typing(self, typing: bool, conversation_id: Optional[str] = None) -> None:
        with self._lock:
            _toggle(self._typing, conversation_id, typing)

    # ---- 查询（只返回副本） ----

    @property
    def current_conversation_id(self) -> Optional[str]:
        return self._current_id

    def current_conversation(self) -> Optional[Conversation]:
        with self._lock:
            if self._current_id is None:
                return None
            return self._by_id[self._current_id].copy()

    def get_conversation(self, conversation_id: str) -> Conversation:
        with self._lock:
            return self._require_conversation(conversation_id).copy()

    def list_conversations(self) -> Tuple[Conversation, ...]:
        with self._lock:
            return tuple(c.copy() for c in self._conversations)

    def get_messages(self, conversation_id: Optional[str] = None) -> Tuple[Message, ...]:
        """返回消息副本；没有消息时返回同一个 EMPTY_MESSAGES 对象。"""

        with self._lock:
            target = conversation_id or self._current_id
            if target is None:
                return EMPTY_MESSAGES
            conv = self._require_conversation(target)
            if not conv.messages:
                return EMPTY_MESSAGES
            return tuple(m.copy() for m in conv.messages)

    def get_message(self, message_id: str) -> Message:
        with self._lock:
            return self._require_message(message_id)[1].copy()

    def search_conversations(self, query: str) -> Tuple[Conversation, ...]:
        """按标题或任意消息内容做大小写无关的匹配；空查询返回全部。"""

        q = query.strip().lower()
        with self._lock:
            if not q:
                return self.list_conversations()
            return tuple(
                c.copy()
                for c in self._conversations
                if q in c.title.lower() or any(q in m.content.lower() for m in c.messages)
            )

    @property
    def visible_conversations_count(self) -> int:
        return self._visible_count

    def visible_conversations(self, query: str = "") -> Tuple[Conversation, ...]:
        return self.search_conversations(query)[: self._visible_count]

    def has_more_conversations(self, query: str = "") -> bool:
        return len(self.search_conversations(query)) > self._visible_count

    def load_more_conversations(self) -> int:
        self._visible_count += self._settings.conversations_page_size
        return self._visible_count

    # ---- 持久化与同步 ----

    def to_state(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "conversations": [c.to_dict() for c in self._conversations],
                "currentConversationId": self._current_id,
            }

    def apply_state(self, state: Dict[str, Any]) -> None:
        """用外部快照整体替换会话与当前会话（不回写存储）。"""

        with self._lock:
            self._replace_state(state)
        log_event(
            logging.INFO,
            "Applied external state",
            conversations=len(self._conversations),
            current_conversation_id=self._current_id,
        )

    def sync_from_storage(self) -> bool:
        if self._storage is None:
            return False
        state = self._storage.load()
        if state is None:
            return False
        self.apply_state(state)
        return True

    # ---- 内部辅助 ----

    def _replace_state(self, state: Dict[str, Any]) -> None:
        conversations = [Conversation.from_dict(c) for c in state.get("conversations") or []]
        self._conversations = conversations
        self._by_id = {c.id: c for c in conversations}
        self._message_index = {m.id: (c, m) for c in conversations for m in c.messages}
        current = state.get("currentConversationId")
        self._current_id = current if current in self._by_id else None

    def _recover_interrupted_streams(self) -> None:
        """把中断进程遗留的 streaming 消息标记为 error。

        多个进程共享同一个状态文件：另一个实例可能正在流式写入。所在会话
        在 stream_stale_after 秒内还有更新的消息视为仍在进行，保持原样，
        由那个实例后续的写入覆盖；超过这个时间没有任何更新才判定为中断。
        """

        cutoff = utcnow() - timedelta(seconds=self._settings.stream_stale_after)
        recovered = 0
        for conv, msg in self._message_index.values():
            if msg.is_streaming and conv.updated_at <= cutoff:
                msg.is_streaming = False
                if msg.status not in ("read", "error", "cancelled"):
                    msg.status = "error"
                recovered += 1
        if recovered:
            log_event(logging.WARNING, "Recovered interrupted streaming messages", count=recovered)
            self._persist()

    def _select(self, conv: Conversation) -> None:
        self._current_id = conv.id
        conv.unread_count = 0

    def _derive_title(self, content: str, fallback: str) -> str:
        text = content.strip()
        if not text:
            return fallback
        limit = self._settings.title_max_length
        if len(text) <= limit:
            return text
        return text[:limit].strip() + TITLE_ELLIPSIS

    def _require_conversation(self, conversation_id: str) -> Conversation:
        conv = self._by_id.get(conversation_id)
        if conv is None:
            raise UnknownConversationError(conversation_id)
        return conv

    def _require_message(self, message_id: str) -> Tuple[Conversation, Message]:
        entry = self._message_index.get(message_id)
        if entry is None:
            raise UnknownMessageError(message_id)
        return entry

    def _persist(self) -> None:
        if self._storage is not None:
            self._storage.save(self.to_state())


def _toggle(ids: Set[Optional[str]], conversation_id: Optional[str], on: bool) -> None:
    if on:
        ids.add(conversation_id)
    else:
        ids.discard(conversation_id)
