"""对外 API 服务模块。

ChatService 在进程/会话启动时显式构造一次，持有存储、会话状态与对话引擎，
并以 init()/dispose() 管理生命周期；调用方通过注入拿到它，而不是访问全局单例。
"""

from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from chat_core.agents.chat_engine import ChatEngine, Notifier, SendOutcome
from chat_core.config.settings import settings
from chat_core.domain.models import Attachment, to_iso
from chat_core.infrastructure.storage.json_store import JsonStateStorage
from chat_core.providers import create_client
from chat_core.providers.base import ChatStreamClient
from chat_core.store.conversation_store import ConversationStore


class ChatService:
    def __init__(
        self,
        storage: JsonStateStorage,
        store: ConversationStore,
        engine: ChatEngine,
    ):
        self.storage = storage
        self.store = store
        self.engine = engine

    @classmethod
    def from_settings(
        cls,
        cfg=None,
        *,
        client: Optional[ChatStreamClient] = None,
        notifier: Optional[Notifier] = None,
        storage_root: str | Path | None = None,
    ) -> "ChatService":
        cfg = cfg or settings
        storage = JsonStateStorage(root=storage_root or cfg.storage_root, key=cfg.state_key)
        store = ConversationStore(storage=storage, cfg=cfg)
        engine = ChatEngine(store, client or create_client(cfg), cfg=cfg, notifier=notifier)
        return cls(storage, store, engine)

    # ---- 生命周期 ----

    def init(self) -> "ChatService":
        self.store.init()
        return self

    def dispose(self) -> None:
        self.store.dispose()

    def __enter__(self) -> "ChatService":
        return self.init()

    def __exit__(self, *exc) -> bool:
        self.dispose()
        return False

    # ---- 对话操作 ----

    def send(
        self,
        content: str,
        attachments: Optional[Sequence[Attachment]] = None,
        conversation_id: Optional[str] = None,
    ) -> Optional[SendOutcome]:
        return self.engine.send_message(content, attachments, conversation_id=conversation_id)

    def regenerate(self, conversation_id: Optional[str] = None) -> SendOutcome:
        return self.engine.regenerate_last_message(conversation_id)

    def cancel(self, conversation_id: str) -> bool:
        return self.engine.cancel(conversation_id)

    def poll_sync(self) -> bool:
        """检查其它进程是否改写了持久化状态；有变更时 store 会整体重载。"""

        return self.storage.poll()

    # ---- 列表视图 ----

    def list_conversations(self, query: str = "") -> list[Dict[str, Any]]:
        """列出会话（可按关键字过滤）。

        Returns:
            会话列表，每项包含 id, title, created_at, updated_at, unread_count, message_count
        """
        return [
            {
                "id": c.id,
                "title": c.title,
                "created_at": to_iso(c.created_at),
                "updated_at": to_iso(c.updated_at),
                "unread_count": c.unread_count,
                "message_count": len(c.messages),
                "is_current": c.id == self.store.current_conversation_id,
            }
            for c in self.store.search_conversations(query)
        ]

    def get_conversation_messages(self, conversation_id: str) -> list[Dict[str, Any]]:
        """获取会话的所有消息。"""
        return [
            {
                "id": m.id,
                "role": m.role,
                "content": m.content,
                "status": m.status,
                "is_streaming": m.is_streaming,
                "created_at": to_iso(m.timestamp),
                "attachments": [a.to_dict() for a in m.attachments or []],
            }
            for m in self.store.get_messages(conversation_id)
        ]
