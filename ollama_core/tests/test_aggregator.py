import pytest

from ollama_core.domain.exceptions import ProtocolViolation
from ollama_core.domain.models import (
    ChatResponse,
    GenerateResponse,
    Message,
    Metrics,
    PushPullResponse,
    StatusResponse,
)
from ollama_core.stream.aggregator import AGGREGATORS, aggregate, new_aggregator


def _chat(content, done=False, **kw):
    return ChatResponse(
        model="phi3",
        created_at=kw.pop("created_at", "t0"),
        message=Message(role="assistant", content=content, images=kw.pop("images", [])),
        done=done,
        **kw,
    )


def test_chat_aggregation_concatenates_and_takes_metrics_from_terminal():
    records = [
        _chat("Hel"),
        _chat("lo ", created_at="t1"),
        _chat("world", done=True, created_at="t2", done_reason="stop", metrics=Metrics(eval_count=7), context=[1]),
    ]
    final = aggregate("chat", records)
    assert final.message.content == "Hello world"
    assert final.message.role == "assistant"
    assert final.metrics == Metrics(eval_count=7)
    assert final.created_at == "t0"
    assert final.done is True
    assert final.done_reason == "stop"
    assert final.context == [1]


def test_chat_aggregation_appends_images():
    records = [_chat("a", images=["img1"]), _chat("b", done=True, images=["img2"])]
    assert aggregate("chat", records).message.images == ["img1", "img2"]


def test_chat_non_terminal_final_fields_are_ignored():
    records = [
        _chat("a", metrics=Metrics(eval_count=99), context=[9]),
        _chat("b", done=True, metrics=Metrics(eval_count=2)),
    ]
    final = aggregate("chat", records)
    assert final.metrics.eval_count == 2
    assert final.context is None


def test_chat_non_terminal_final_fields_strict():
    agg = new_aggregator("chat", strict=True)
    with pytest.raises(ProtocolViolation):
        agg.add(_chat("a", metrics=Metrics(eval_count=1)))


def test_missing_terminal_record_is_protocol_violation():
    with pytest.raises(ProtocolViolation):
        aggregate("chat", [_chat("a"), _chat("b")])
    with pytest.raises(ProtocolViolation):
        aggregate("generate", [])


def test_record_after_terminal_is_protocol_violation():
    agg = new_aggregator("generate")
    agg.add(GenerateResponse(response="x", done=True))
    with pytest.raises(ProtocolViolation):
        agg.add(GenerateResponse(response="y"))


def test_generate_aggregation():
    records = [
        GenerateResponse(model="m", created_at="t0", response="The "),
        GenerateResponse(model="m", created_at="t1", response="sky"),
        GenerateResponse(model="m", created_at="t2", response="", done=True, context=[4, 5], metrics=Metrics(total_duration=3)),
    ]
    final = aggregate("generate", records)
    assert final.response == "The sky"
    assert final.created_at == "t0"
    assert final.context == [4, 5]
    assert final.metrics.total_duration == 3


def test_create_status_aggregation():
    records = [StatusResponse(status="reading"), StatusResponse(status="success")]
    assert aggregate("create", records).status == "reading\nsuccess\n"
    assert aggregate("create", []).status == ""


def test_pull_aggregation_keeps_status_and_error_separate():
    records = [
        PushPullResponse(status="pulling manifest"),
        PushPullResponse(status="", error="disk full"),
        PushPullResponse(status="retrying", error=""),
    ]
    final = aggregate("pull", records)
    assert final.status == "pulling manifest\nretrying\n"
    assert final.error == "disk full\n"


def test_aggregator_table_is_closed_set():
    assert set(AGGREGATORS) == {"chat", "generate", "create", "pull", "push"}
    assert new_aggregator("push").kind == "push"
    with pytest.raises(ValueError):
        new_aggregator("embeddings")
