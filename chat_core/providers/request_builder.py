"""请求体构造：会话消息 + 附件 → 端点的 messages 数组。

- 纯文本消息直接作为字符串 content。
- 带附件的用户消息展开为多段 parts：
  文字 → {"type": "text"}；图片 → {"type": "image_url"}（data URL）；
  文本类文件解码后内联（超长截断）；二进制文件只给出不可读标注。
- 出错的 assistant 消息和空的占位消息不进入历史。
"""

import base64
import binascii
from typing import Iterable, List, Optional, Sequence

from chat_core.config.settings import settings
from chat_core.domain.conversation import Message
from chat_core.domain.models import ApiMessage, Attachment, ChatRequest, ContentPart

TRUNCATED_MARKER = "\n...[truncated]"

TEXT_MIME_TYPES = {
    "application/json",
    "application/xml",
    "application/javascript",
    "application/x-lua",
    "application/x-yaml",
    "application/yaml",
}
TEXT_EXTENSIONS = (
    ".txt", ".md", ".lua", ".luau", ".json", ".xml", ".csv",
    ".yaml", ".yml", ".py", ".js", ".ts", ".html", ".css",
)


def build_request(
    messages: Iterable[Message],
    text_limit: Optional[int] = None,
) -> ChatRequest:
    limit = text_limit or settings.attachment_text_limit
    return ChatRequest(messages=[message_to_api(m, limit) for m in messages if _include_in_history(m)])


def history_through(messages: Sequence[Message], message_id: str) -> List[Message]:
    """截取到（含）指定消息为止的历史。"""

    for idx, msg in enumerate(messages):
        if msg.id == message_id:
            return list(messages[: idx + 1])
    return list(messages)


def message_to_api(message: Message, text_limit: int) -> ApiMessage:
    if not message.attachments:
        return ApiMessage(role=message.role, content=message.content)

    parts: List[ContentPart] = []
    if message.content.strip():
        parts.append({"type": "text", "text": message.content})
    for att in message.attachments:
        parts.extend(attachment_to_parts(att, text_limit))
    if not parts:
        return ApiMessage(role=message.role, content=message.content)
    return ApiMessage(role=message.role, content=parts)


def attachment_to_parts(att: Attachment, text_limit: int) -> List[ContentPart]:
    if att.kind == "image":
        if att.base64 and att.mime_type:
            return [{"type": "image_url", "image_url": {"url": f"data:{att.mime_type};base64,{att.base64}"}}]
        return []

    if not att.base64:
        return []
    if not _is_text_like(att):
        return [{"type": "text", "text": f"[Attached file: {att.name} (binary content, not readable)]"}]
    text = _decode_text(att.base64)
    if text is None:
        return [{"type": "text", "text": f"[Attached file: {att.name} (binary content, not readable)]"}]
    if len(text) > text_limit:
        text = text[:text_limit] + TRUNCATED_MARKER
    return [{"type": "text", "text": f"[Attached file: {att.name}]\n{text}"}]


def _include_in_history(message: Message) -> bool:
    if message.role != "assistant":
        return True
    return message.status != "error" and bool(message.content.strip())


def _is_text_like(att: Attachment) -> bool:
    mime = (att.mime_type or "").lower()
    if mime.startswith("text/") or mime in TEXT_MIME_TYPES:
        return True
    return att.name.lower().endswith(TEXT_EXTENSIONS)


def _decode_text(encoded: str) -> Optional[str]:
    try:
        return base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return None
