"""会话与消息的领域模型，以及持久化存储协议。"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from .models import Attachment, MessageStatus, Role, from_iso, to_iso


DEFAULT_TITLE = "New Chat"


@dataclass
class Message:
    id: str
    role: Role
    content: str
    timestamp: datetime
    attachments: Optional[List[Attachment]] = None
    is_streaming: bool = False
    status: MessageStatus = "sent"

    def copy(self) -> "Message":
        # Attachment 本身不可变，浅拷贝列表即可
        attachments = list(self.attachments) if self.attachments is not None else None
        return replace(self, attachments=attachments)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": to_iso(self.timestamp),
            "isStreaming": self.is_streaming,
            "status": self.status,
        }
        if self.attachments is not None:
            data["attachments"] = [a.to_dict() for a in self.attachments]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        raw_attachments = data.get("attachments")
        return cls(
            id=data["id"],
            role=data["role"],
            content=data.get("content") or "",
            timestamp=from_iso(data["timestamp"]),
            attachments=[Attachment.from_dict(a) for a in raw_attachments] if raw_attachments is not None else None,
            is_streaming=bool(data.get("isStreaming", False)),
            status=data.get("status") or "sent",
        )


@dataclass
class Conversation:
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    messages: List[Message] = field(default_factory=list)
    unread_count: int = 0
    draft: str = ""

    def copy(self) -> "Conversation":
        return replace(self, messages=[m.copy() for m in self.messages])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
            "unreadCount": self.unread_count,
            "draft": self.draft,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            id=data["id"],
            title=data.get("title") or DEFAULT_TITLE,
            created_at=from_iso(data["createdAt"]),
            updated_at=from_iso(data.get("updatedAt") or data["createdAt"]),
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
            unread_count=int(data.get("unreadCount", 0)),
            draft=data.get("draft") or "",
        )


StateListener = Callable[[Dict[str, Any]], None]


class StateStorage(Protocol):
    """持久化状态的存储协议（单一 key，整体读写）。

    - load/save: 读写 {"conversations": [...], "currentConversationId": ...}。
    - subscribe: 注册外部变更监听，返回取消订阅函数。
    """

    def load(self) -> Optional[Dict[str, Any]]:
        ...

    def save(self, state: Dict[str, Any]) -> None:
        ...

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        ...
