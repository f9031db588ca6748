import json

import httpx
import pytest

from ollama_core.api.client import OllamaClient
from ollama_core.domain.exceptions import ApiError, TransportError
from ollama_core.domain.models import ChatRequest, Message
from ollama_core.providers.http_transport import HttpTransport, ResponseByteSource, build_url


class SettingsStub:
    base_url = "http://localhost:11434/"
    http_timeout = 1.0
    stream_buffer_size = 8
    default_stream = False


class FakeResponse:
    """body 可以是 bytes，也可以是按网络到达顺序排列的分块列表。"""

    def __init__(self, status_code, body, error=None):
        self.status_code = status_code
        self._pieces = [body] if isinstance(body, bytes) else list(body)
        self._body = b"".join(self._pieces)
        self._error = error
        self.closed = False

    def iter_bytes(self, chunk_size=None):
        assert chunk_size is None
        yield from self._pieces
        if self._error is not None:
            raise self._error

    def read(self):
        return self._body

    def close(self):
        self.closed = True


class StreamContext:
    def __init__(self, response):
        self._response = response

    def __enter__(self):
        return self._response

    def __exit__(self, *args):
        return False


def _fake_client(response, captured):
    class Client:
        def __init__(self, *a, **kw):
            captured["client_kwargs"] = kw

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def stream(self, method, url, json=None, headers=None, **_):
            captured.update(method=method, url=url, json=json, headers=headers)
            return StreamContext(response)

    return Client


def test_build_url_joins_with_single_slash():
    assert build_url("http://h:1", "api/chat") == "http://h:1/api/chat"
    assert build_url("http://h:1/", "/api/chat") == "http://h:1/api/chat"
    assert build_url("http://h:1", "/api/chat") == "http://h:1/api/chat"


def test_http_transport_chat_end_to_end(monkeypatch):
    body = (
        b'{"model":"phi3","message":{"role":"assistant","content":"he"},"done":false}\n'
        b'{"model":"phi3","message":{"role":"assistant","content":"y"},"done":true,"eval_count":2}\n'
    )
    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_client(FakeResponse(200, body), captured))
    client = OllamaClient(settings=SettingsStub())
    res = client.chat(ChatRequest(model="phi3", messages=[Message(content="hi")]))
    assert res.message.content == "hey"
    assert res.metrics.eval_count == 2
    assert captured["url"] == "http://localhost:11434/api/chat"
    assert captured["method"] == "POST"
    assert captured["client_kwargs"]["trust_env"] is False
    assert ("Content-Type", "application/json") in captured["headers"]


def test_custom_headers_override_defaults(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_client(FakeResponse(200, b'{"status":"success"}'), captured))
    transport = HttpTransport(SettingsStub())
    transport.set_header("accept", ["application/x-ndjson"])
    transport.set_header("X-Trace", ["a", "b"])
    with transport.open_stream("POST", "/api/pull", {"model": "m"}) as source:
        assert source.read(64) == b'{"status":"success"}'
        assert source.read(64) == b""
    headers = captured["headers"]
    assert ("Accept", "application/json") not in headers
    assert ("accept", "application/x-ndjson") in headers
    assert ("X-Trace", "a") in headers and ("X-Trace", "b") in headers


def test_error_status_raises_api_error(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_client(FakeResponse(404, b'{"error":"model not found"}'), captured))
    transport = HttpTransport(SettingsStub())
    with pytest.raises(ApiError) as ei:
        with transport.open_stream("POST", "/api/chat", {}):
            pass
    assert ei.value.http_status == 404
    assert "model not found" in ei.value.message


def test_network_error_raises_transport_error(monkeypatch):
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
    client = OllamaClient(settings=SettingsStub())
    with pytest.raises(TransportError) as ei:
        client.chat(ChatRequest(model="phi3", messages=[Message(content="hi")]))
    assert ei.value.code == "NETWORK_ERROR"


def test_response_source_returns_chunks_as_they_arrive():
    source = ResponseByteSource(FakeResponse(200, [b"ab", b"cdefghij", b"k"]))
    # size 只是上限：不足时不等待凑满，超出部分留给下一次读取
    assert source.read(4) == b"ab"
    assert source.read(4) == b"cdef"
    assert source.read(4) == b"ghij"
    assert source.read(4) == b"k"
    assert source.read(4) == b""


def test_read_error_keeps_httpx_error_type():
    source = ResponseByteSource(FakeResponse(200, [b"{"], error=httpx.ReadTimeout("timed out")))
    assert source.read(16) == b"{"
    with pytest.raises(TransportError) as ei:
        source.read(16)
    assert ei.value.code == "READ_ERROR"
    assert ei.value.extra["error_type"] == "ReadTimeout"


def test_records_are_delivered_while_body_is_still_streaming(monkeypatch):
    events = []

    def body():
        for i, text in enumerate(["a", "b", "c"]):
            events.append(f"sent{i}")
            record = {"model": "phi3", "message": {"role": "assistant", "content": text}, "done": i == 2}
            yield json.dumps(record).encode("utf-8") + b"\n"

    def handler(request):
        return httpx.Response(200, content=body())

    real_client = httpx.Client

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr("httpx.Client", client_factory)
    client = OllamaClient(settings=SettingsStub())
    res = client.chat(
        ChatRequest(model="phi3", messages=[Message(content="hi")]),
        on_record=lambda r: events.append(f"recv:{r.message.content}"),
    )
    assert res.message.content == "abc"
    assert events == ["sent0", "recv:a", "sent1", "recv:b", "sent2", "recv:c"]
