"""对话端点客户端抽象接口。

ChatEngine 不直接依赖 httpx，而是依赖此协议：

- stream_chat(req) 返回一个上下文管理器，进入后得到原始字节块的迭代器。
- 客户端负责把 HTTP 层面的失败（网络错误、非 2xx）转换成 domain.exceptions
  中的业务异常；字节流本身的切分与解析由 streaming 管线完成。

测试里可以用一个返回固定字节块的假客户端替换真实实现。
"""

from typing import ContextManager, Iterator, Protocol

from chat_core.domain.models import ChatRequest


class ChatStreamClient(Protocol):
    name: str

    def stream_chat(self, req: ChatRequest) -> ContextManager[Iterator[bytes]]:
        ...
