"""Chat Core 顶层包。

该包提供流式对话客户端的核心实现，
包括配置加载、领域模型、SSE 流式解析、会话状态存储、
对话端点适配与持久化/跨进程同步等能力。
"""

from chat_core.api.service import ChatService

__all__ = ["ChatService"]
