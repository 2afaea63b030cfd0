"""统一的消息、附件与请求数据模型。

本模块定义了对话核心在存储、流式解析和请求构造之间共享的标准结构：

- Attachment: 由外部文件读取组件产出的附件记录（已 base64 编码）。
- MessageStatus: 单条消息的投递状态（sending → sent → delivered → read）。
- ApiMessage: 发给对话端点的单条消息（content 为字符串或多段 parts）。

持久化时统一使用 camelCase 键名，与 UI 层读写的状态记录保持一致。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4


# 消息角色（仅 user/assistant 会进入会话；system 只出现在请求里）
Role = Literal["user", "assistant"]
ApiRole = Literal["user", "assistant", "system"]
AttachmentKind = Literal["image", "file"]

MessageStatus = Literal["sending", "sent", "delivered", "read", "error", "cancelled"]

# 正常投递路径上的先后顺序；error/cancelled 是提前终止
STATUS_ORDER: List[str] = ["sending", "sent", "delivered", "read"]
TERMINAL_STATUSES = frozenset({"read", "error", "cancelled"})


def can_transition(current: str, new: str) -> bool:
    """判断消息状态能否从 current 迁移到 new（不允许回退）。"""

    if new == current:
        return True
    if current in TERMINAL_STATUSES:
        return False
    if new in ("error", "cancelled"):
        return True
    return STATUS_ORDER.index(new) > STATUS_ORDER.index(current)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def from_iso(raw: str) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


@dataclass(frozen=True)
class Attachment:
    """附件记录，创建后不可变。

    - kind: "image" 或 "file"。
    - url: 展示用的引用地址（例如 blob/data URL）。
    - base64: 可选的内联内容（外部组件已经完成编码）。
    """

    id: str
    kind: AttachmentKind
    name: str
    url: str
    base64: Optional[str] = None
    mime_type: Optional[str] = None
    size: Optional[int] = None

    @classmethod
    def create(
        cls,
        kind: AttachmentKind,
        name: str,
        url: str,
        base64: Optional[str] = None,
        mime_type: Optional[str] = None,
        size: Optional[int] = None,
    ) -> "Attachment":
        return cls(
            id=f"a-{uuid4().hex}",
            kind=kind,
            name=name,
            url=url,
            base64=base64,
            mime_type=mime_type,
            size=size,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "type": self.kind, "name": self.name, "url": self.url}
        if self.base64 is not None:
            data["base64"] = self.base64
        if self.mime_type is not None:
            data["mimeType"] = self.mime_type
        if self.size is not None:
            data["size"] = self.size
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        return cls(
            id=data["id"],
            kind=data.get("type", "file"),
            name=data.get("name") or "",
            url=data.get("url") or "",
            base64=data.get("base64"),
            mime_type=data.get("mimeType"),
            size=data.get("size"),
        )


# 发给端点的 content：纯文本，或 [{"type": "text", ...}, {"type": "image_url", ...}]
ContentPart = Dict[str, Any]
ApiContent = Union[str, List[ContentPart]]


@dataclass
class ApiMessage:
    """请求体 messages 数组中的一项。"""

    role: ApiRole
    content: ApiContent

    def to_payload(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatRequest:
    """一次完整的流式对话请求。"""

    messages: List[ApiMessage] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {"messages": [m.to_payload() for m in self.messages]}
