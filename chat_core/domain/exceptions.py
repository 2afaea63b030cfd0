"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在引擎层或 UI 层做统一捕获与用户提示。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、message_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时、读流中断等。"""


class ApiError(BusinessError):
    """对话端点返回非 2xx（且不是 429/402）时抛出。"""


class RateLimitError(BusinessError):
    """端点限流（HTTP 429）。"""


class QuotaExceededError(BusinessError):
    """额度耗尽 / 需要付费（HTTP 402）。"""


class ValidationError(BusinessError):
    """参数、配置或状态迁移校验失败。"""


class UnknownConversationError(BusinessError):
    """引用了不存在的会话 id。"""

    def __init__(self, conversation_id: str):
        super().__init__(
            code="CONVERSATION_NOT_FOUND",
            message=f"Unknown conversation: {conversation_id}",
            http_status=404,
            conversation_id=conversation_id,
        )


class UnknownMessageError(BusinessError):
    """引用了不存在的消息 id。"""

    def __init__(self, message_id: str):
        super().__init__(
            code="MESSAGE_NOT_FOUND",
            message=f"Unknown message: {message_id}",
            http_status=404,
            message_id=message_id,
        )


class NoUserMessageError(BusinessError):
    """重新生成回答时，会话里找不到任何用户消息。"""


class StreamInFlightError(BusinessError):
    """同一会话已有进行中的流式请求，新的发送被拒绝。"""
