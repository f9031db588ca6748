import io
import json
from contextlib import contextmanager

import pytest

from ollama_core.api.client import OllamaClient
from ollama_core.domain.conversation import Conversation
from ollama_core.domain.exceptions import ProtocolViolation, ValidationError
from ollama_core.domain.models import (
    ChatRequest,
    CreateModelRequest,
    GenerateRequest,
    Message,
    Options,
    PullModelRequest,
    PushModelRequest,
    StreamConfig,
)


class SettingsStub:
    base_url = "http://localhost:11434"
    http_timeout = 1.0
    stream_buffer_size = 512000
    default_stream = False


def _body(*objs):
    return b"\n".join(json.dumps(o).encode("utf-8") for o in objs)


def _chat_reply(*parts):
    objs = [{"model": "phi3", "created_at": "t", "message": {"role": "assistant", "content": p}, "done": False} for p in parts]
    objs[-1]["done"] = True
    objs[-1]["eval_count"] = len(parts)
    return _body(*objs)


class FakeTransport:
    """依次返回预设的响应体，并记录每次请求。"""

    def __init__(self, *bodies):
        self._bodies = list(bodies)
        self.requests = []

    @contextmanager
    def open_stream(self, method, path, payload):
        self.requests.append((method, path, payload))
        yield io.BytesIO(self._bodies.pop(0))


def test_chat_returns_aggregate_and_stream_flag():
    transport = FakeTransport(_chat_reply("Hel", "lo"), _chat_reply("x"))
    client = OllamaClient(settings=SettingsStub(), transport=transport)
    req = ChatRequest(model="phi3", messages=[Message(content="hi")], options=Options(temperature=0.1, seed=123))
    res = client.chat(req)
    assert res.message.content == "Hello"
    method, path, payload = transport.requests[0]
    assert (method, path) == ("POST", "/api/chat")
    assert payload["stream"] is False
    assert payload["options"] == {"temperature": 0.1, "seed": 123}
    assert payload["messages"] == [{"role": "user", "content": "hi"}]

    client.chat(req, on_record=lambda r: None)
    assert transport.requests[1][2]["stream"] is True


def test_chat_history_is_prepended_in_order():
    transport = FakeTransport(_chat_reply("a1"), _chat_reply("b1"), _chat_reply("c1"))
    client = OllamaClient(settings=SettingsStub(), transport=transport)
    for text in ("A", "B", "C"):
        client.chat(ChatRequest(model="phi3", messages=[Message(content=text)]), conversation_id="conv")

    sent = transport.requests[2][2]["messages"]
    assert [(m["role"], m["content"]) for m in sent] == [
        ("user", "A"),
        ("assistant", "a1"),
        ("user", "B"),
        ("assistant", "b1"),
        ("user", "C"),
    ]
    history = client.get_chat("conv").messages
    assert [m.content for m in history] == ["A", "a1", "B", "b1", "C", "c1"]


def test_failed_chat_does_not_touch_history():
    broken = _body({"message": {"content": "partial"}, "done": False})
    transport = FakeTransport(broken)
    client = OllamaClient(settings=SettingsStub(), transport=transport)
    with pytest.raises(ProtocolViolation):
        client.chat(ChatRequest(model="phi3", messages=[Message(content="A")]), conversation_id="conv")
    assert client.get_chat("conv").messages == []


def test_chat_stream_pull_model_updates_history_on_completion():
    transport = FakeTransport(_chat_reply("Hel", "lo"))
    client = OllamaClient(settings=SettingsStub(), transport=transport)
    with client.chat_stream(ChatRequest(model="phi3", messages=[Message(content="A")]), conversation_id="c") as stream:
        parts = [r.message.content for r in stream]
        final = stream.result()
    assert parts == ["Hel", "lo"]
    assert final.message.content == "Hello"
    assert transport.requests[0][2]["stream"] is True
    assert [m.content for m in client.get_chat("c").messages] == ["A", "Hello"]


def test_preloaded_and_deleted_chats():
    transport = FakeTransport(_chat_reply("ok"))
    client = OllamaClient(settings=SettingsStub(), transport=transport)
    client.preload_chat(Conversation(id="c", messages=[Message(role="system", content="be brief")]))
    client.chat(ChatRequest(model="phi3", messages=[Message(content="hi")]), conversation_id="c")
    assert transport.requests[0][2]["messages"][0] == {"role": "system", "content": "be brief"}
    client.delete_chat("c")
    assert client.get_chat("c") is None
    client.preload_chat(Conversation(id="d"))
    client.delete_all_chats()
    assert client.get_chat("d") is None


def test_generate_callback_matches_result():
    body = _body({"response": "The ", "done": False}, {"response": "sky", "done": False}, {"response": "", "done": True, "context": [1]})
    transport = FakeTransport(body)
    client = OllamaClient(settings=SettingsStub(), transport=transport)
    seen = []
    res = client.generate(GenerateRequest(model="phi3", prompt="why"), on_record=seen.append, config=StreamConfig(buffer_size=7))
    assert "".join(r.response for r in seen) == res.response == "The sky"
    assert res.context == [1]
    assert transport.requests[0][1] == "/api/generate"


def test_generate_stream_iterates_records():
    body = _body({"response": "a", "done": False}, {"response": "b", "done": True})
    client = OllamaClient(settings=SettingsStub(), transport=FakeTransport(body))
    with client.generate_stream(GenerateRequest(model="phi3", prompt="x")) as stream:
        assert [r.response for r in stream] == ["a", "b"]
        assert stream.result().response == "ab"


def test_model_management_endpoints():
    transport = FakeTransport(
        _body({"status": "reading model"}, {"status": "success"}),
        _body({"status": "pulling manifest"}, {"error": "disk full"}),
        _body({"status": "success"}),
    )
    client = OllamaClient(settings=SettingsStub(), transport=transport)
    created = client.create_model(CreateModelRequest(model="m2", modelfile="FROM phi3"))
    pulled = client.pull_model(PullModelRequest(model="phi3", insecure=True))
    pushed = client.push_model(PushModelRequest(model="me/phi3"), config=StreamConfig(stream=True))
    assert created.status == "reading model\nsuccess\n"
    assert pulled.status == "pulling manifest\n"
    assert pulled.error == "disk full\n"
    assert pushed.status == "success\n"
    paths = [r[1] for r in transport.requests]
    assert paths == ["/api/create", "/api/pull", "/api/push"]
    assert transport.requests[0][2] == {"model": "m2", "modelfile": "FROM phi3", "stream": False}
    assert transport.requests[2][2]["stream"] is True


def test_missing_model_is_validation_error():
    client = OllamaClient(settings=SettingsStub(), transport=FakeTransport())
    with pytest.raises(ValidationError) as ei:
        client.chat(ChatRequest(model="", messages=[Message(content="hi")]))
    assert ei.value.code == "MISSING_MODEL"


def test_set_header_requires_supporting_transport():
    client = OllamaClient(settings=SettingsStub(), transport=FakeTransport())
    with pytest.raises(ValidationError):
        client.set_header("Authorization", ["Bearer x"])
