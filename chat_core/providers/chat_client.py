"""流式对话端点客户端。

端点是一个转发到模型厂商的代理：
- URL: settings.chat_url
- 认证: Authorization: Bearer <chat_api_key>
- 请求体: {"messages": [...]}
- 响应: text/event-stream，原始字节块交给 streaming 管线自行切分解析。

stream_chat 是一个上下文管理器：无论正常结束、异常还是取消，
退出 with 块时都会关闭 HTTP 响应与连接。
"""

from contextlib import contextmanager
from typing import Any, Iterator, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import (
    ApiError,
    BusinessError,
    NetworkError,
    QuotaExceededError,
    RateLimitError,
    ValidationError,
)
from chat_core.domain.models import ChatRequest

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please wait a moment before trying again."
QUOTA_EXCEEDED_MESSAGE = "AI credits exhausted. Please add more credits to continue."
GENERIC_FAILURE_MESSAGE = "Failed to get response"


class StreamingChatClient:
    """对话端点的流式客户端实现。"""

    name = "chat"

    def __init__(self, cfg=settings):
        self._settings = cfg

    @contextmanager
    def stream_chat(self, req: ChatRequest) -> Iterator[Iterator[bytes]]:
        api_key = getattr(self._settings, "chat_api_key", None)
        if not api_key:
            raise ValidationError(code="MISSING_API_KEY", message="CHAT_API_KEY not set")
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    self._settings.chat_url,
                    json=req.to_payload(),
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "Content-Type": "application/json",
                    },
                ) as resp:
                    if not 200 <= resp.status_code < 300:
                        resp.read()
                        raise error_from_response(resp.status_code, _json_or_none(resp))
                    yield resp.iter_bytes()
        except (httpx.RequestError, httpx.StreamError) as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)


def error_from_response(status_code: int, body: Any) -> BusinessError:
    """把非 2xx 响应映射成对应的业务异常。"""

    detail: Optional[str] = None
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        detail = body["error"]
    if status_code == 429:
        return RateLimitError(code="RATE_LIMIT", message=RATE_LIMIT_MESSAGE, http_status=429, detail=detail)
    if status_code == 402:
        return QuotaExceededError(
            code="QUOTA_EXCEEDED", message=QUOTA_EXCEEDED_MESSAGE, http_status=402, detail=detail
        )
    return ApiError(code="API_ERROR", message=detail or GENERIC_FAILURE_MESSAGE, http_status=status_code)


def _json_or_none(resp) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None
