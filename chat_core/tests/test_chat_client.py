import httpx
import pytest

from chat_core.domain.exceptions import ApiError, NetworkError, QuotaExceededError, RateLimitError, ValidationError
from chat_core.domain.models import ApiMessage, ChatRequest
from chat_core.providers.chat_client import (
    GENERIC_FAILURE_MESSAGE,
    QUOTA_EXCEEDED_MESSAGE,
    RATE_LIMIT_MESSAGE,
    StreamingChatClient,
    error_from_response,
)


class SettingsStub:
    chat_api_key = "test-key-123456"
    http_timeout = 1.0
    chat_url = "http://chat.local/functions/v1/chat"


class FakeResponse:
    def __init__(self, status_code, chunks=(), body=None):
        self.status_code = status_code
        self._chunks = list(chunks)
        self._body = body
        self.read_called = False

    def iter_bytes(self):
        for chunk in self._chunks:
            yield chunk

    def read(self):
        self.read_called = True
        return b""

    def json(self):
        if self._body is None:
            raise ValueError("no json body")
        return self._body


class StreamContext:
    def __init__(self, response, calls):
        self._response = response
        self._calls = calls

    def __enter__(self):
        return self._response

    def __exit__(self, *args):
        self._calls.append("closed")
        return False


def _install_client(monkeypatch, response, calls):
    class Client:
        def __init__(self, *a, **kw):
            calls.append(("init", kw))

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def stream(self, method, url, **kw):
            calls.append(("stream", method, url, kw))
            return StreamContext(response, calls)

    monkeypatch.setattr("httpx.Client", Client)


def _request():
    return ChatRequest(messages=[ApiMessage(role="user", content="hi")])


def test_stream_chat_yields_raw_bytes(monkeypatch):
    calls = []
    chunks = [b'data: {"choices":[{"delta":{"content":"a"}}]}\n', b"data: [DONE]\n"]
    _install_client(monkeypatch, FakeResponse(200, chunks), calls)

    client = StreamingChatClient(SettingsStub())
    with client.stream_chat(_request()) as stream:
        assert list(stream) == chunks

    _, method, url, kw = calls[1]
    assert method == "POST"
    assert url == SettingsStub.chat_url
    assert kw["json"] == {"messages": [{"role": "user", "content": "hi"}]}
    assert kw["headers"]["Authorization"] == "Bearer test-key-123456"
    assert calls[0][1]["timeout"] == 1.0
    assert calls[-1] == "closed"


def test_stream_chat_closes_response_when_consumer_stops_early(monkeypatch):
    calls = []
    _install_client(monkeypatch, FakeResponse(200, [b"data: a\n", b"data: b\n"]), calls)

    with StreamingChatClient(SettingsStub()).stream_chat(_request()) as stream:
        next(iter(stream))
    assert calls[-1] == "closed"


@pytest.mark.parametrize(
    "status, exc_type, code, message",
    [
        (429, RateLimitError, "RATE_LIMIT", RATE_LIMIT_MESSAGE),
        (402, QuotaExceededError, "QUOTA_EXCEEDED", QUOTA_EXCEEDED_MESSAGE),
    ],
)
def test_stream_chat_maps_limit_statuses(monkeypatch, status, exc_type, code, message):
    calls = []
    response = FakeResponse(status, body={"error": "upstream detail"})
    _install_client(monkeypatch, response, calls)

    with pytest.raises(exc_type) as exc:
        with StreamingChatClient(SettingsStub()).stream_chat(_request()):
            raise AssertionError("body must not be yielded")
    assert exc.value.code == code
    assert exc.value.message == message
    assert exc.value.http_status == status
    assert response.read_called
    assert calls[-1] == "closed"


def test_stream_chat_uses_error_field_for_other_statuses(monkeypatch):
    _install_client(monkeypatch, FakeResponse(500, body={"error": "model overloaded"}), [])
    with pytest.raises(ApiError) as exc:
        with StreamingChatClient(SettingsStub()).stream_chat(_request()):
            pass
    assert exc.value.code == "API_ERROR"
    assert exc.value.message == "model overloaded"
    assert exc.value.http_status == 500


def test_stream_chat_generic_message_without_json_body(monkeypatch):
    _install_client(monkeypatch, FakeResponse(503), [])
    with pytest.raises(ApiError) as exc:
        with StreamingChatClient(SettingsStub()).stream_chat(_request()):
            pass
    assert exc.value.message == GENERIC_FAILURE_MESSAGE


def test_stream_chat_requires_api_key(monkeypatch):
    class NoKey(SettingsStub):
        chat_api_key = None

    calls = []
    _install_client(monkeypatch, FakeResponse(200), calls)
    with pytest.raises(ValidationError) as exc:
        with StreamingChatClient(NoKey()).stream_chat(_request()):
            pass
    assert exc.value.code == "MISSING_API_KEY"
    assert calls == []


def test_stream_chat_wraps_transport_errors(monkeypatch):
    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def stream(self, *a, **kw):
            raise httpx.ConnectError("connection refused")

    monkeypatch.setattr("httpx.Client", Client)
    with pytest.raises(NetworkError) as exc:
        with StreamingChatClient(SettingsStub()).stream_chat(_request()):
            pass
    assert exc.value.code == "NETWORK_ERROR"
    assert "connection refused" in exc.value.message


def test_stream_chat_wraps_errors_raised_while_reading_body(monkeypatch):
    class ClosedResponse(FakeResponse):
        def iter_bytes(self):
            yield b'data: {"choices":[{"delta":{"content":"a"}}]}\n'
            raise httpx.StreamClosed()

    calls = []
    _install_client(monkeypatch, ClosedResponse(200), calls)
    received = []
    with pytest.raises(NetworkError) as exc:
        with StreamingChatClient(SettingsStub()).stream_chat(_request()) as chunks:
            for chunk in chunks:
                received.append(chunk)
    assert exc.value.code == "NETWORK_ERROR"
    assert len(received) == 1
    assert "closed" in calls


def test_error_from_response_ignores_non_string_error_field():
    err = error_from_response(400, {"error": {"nested": True}})
    assert isinstance(err, ApiError)
    assert err.message == GENERIC_FAILURE_MESSAGE
