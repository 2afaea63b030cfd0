"""对话端点集成层。

该包下的模块负责：
- 定义客户端抽象接口 (base)。
- 提供流式 HTTP 客户端实现 (chat_client)。
- 把会话消息与附件转换成请求体 (request_builder)。
"""

from chat_core.config.settings import settings
from chat_core.providers.base import ChatStreamClient
from chat_core.providers.chat_client import StreamingChatClient


def create_client(cfg=None) -> ChatStreamClient:
    """根据配置创建流式客户端实例，默认取全局配置。"""

    return StreamingChatClient(cfg or settings)
