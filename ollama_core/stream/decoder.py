"""记录解码层：单个 JSON 对象 -> 对应端点的记录 dataclass。

解码是宽容的：未知字段忽略，缺失的可选字段保持默认值；
但字段类型不符（例如 done 不是布尔值、message 不是对象）会被视为结构错误。
"""

import json
from typing import Any, Callable, Dict, List, Literal, Optional

from ollama_core.domain.exceptions import ApiError, DecodeError
from ollama_core.domain.models import (
    ChatResponse,
    GenerateResponse,
    Message,
    Metrics,
    PushPullResponse,
    StatusResponse,
)


EndpointKind = Literal["chat", "generate", "create", "pull", "push"]


def _opt_str(data: Dict[str, Any], key: str) -> Optional[str]:
    v = data.get(key)
    if v is None or isinstance(v, str):
        return v
    raise TypeError(f"field {key!r} must be a string, got {type(v).__name__}")


def _opt_int(data: Dict[str, Any], key: str) -> Optional[int]:
    v = data.get(key)
    if v is None:
        return None
    # bool 是 int 的子类，这里单独排除
    if isinstance(v, bool) or not isinstance(v, int):
        raise TypeError(f"field {key!r} must be an integer, got {type(v).__name__}")
    return v


def _opt_list(data: Dict[str, Any], key: str, item_type: type) -> Optional[List[Any]]:
    v = data.get(key)
    if v is None:
        return None
    if not isinstance(v, list) or not all(isinstance(x, item_type) and not isinstance(x, bool) for x in v):
        raise TypeError(f"field {key!r} must be a list of {item_type.__name__}")
    return list(v)


def _done(data: Dict[str, Any]) -> bool:
    v = data.get("done", False)
    if v is None:
        return False
    if not isinstance(v, bool):
        raise TypeError(f"field 'done' must be a boolean, got {type(v).__name__}")
    return v


def _metrics(data: Dict[str, Any]) -> Optional[Metrics]:
    names = Metrics.field_names()
    if not any(data.get(n) is not None for n in names):
        return None
    return Metrics(**{n: _opt_int(data, n) or 0 for n in names})


def _message(data: Dict[str, Any]) -> Optional[Message]:
    raw = data.get("message")
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise TypeError("field 'message' must be an object")
    return Message(
        role=_opt_str(raw, "role") or "assistant",
        content=_opt_str(raw, "content") or "",
        images=_opt_list(raw, "images", str) or [],
    )


def _chat(data: Dict[str, Any]) -> ChatResponse:
    return ChatResponse(
        model=_opt_str(data, "model"),
        created_at=_opt_str(data, "created_at"),
        message=_message(data),
        done=_done(data),
        done_reason=_opt_str(data, "done_reason"),
        metrics=_metrics(data),
        context=_opt_list(data, "context", int),
    )


def _generate(data: Dict[str, Any]) -> GenerateResponse:
    return GenerateResponse(
        model=_opt_str(data, "model"),
        created_at=_opt_str(data, "created_at"),
        response=_opt_str(data, "response") or "",
        done=_done(data),
        done_reason=_opt_str(data, "done_reason"),
        metrics=_metrics(data),
        context=_opt_list(data, "context", int),
    )


def _status(data: Dict[str, Any]) -> StatusResponse:
    return StatusResponse(
        status=_opt_str(data, "status") or "",
        error=_opt_str(data, "error") or "",
    )


def _push_pull(data: Dict[str, Any]) -> PushPullResponse:
    return PushPullResponse(
        status=_opt_str(data, "status") or "",
        error=_opt_str(data, "error") or "",
        digest=_opt_str(data, "digest"),
        total=_opt_int(data, "total"),
        completed=_opt_int(data, "completed"),
    )


_BUILDERS: Dict[str, Callable[[Dict[str, Any]], Any]] = {
    "chat": _chat,
    "generate": _generate,
    "create": _status,
    "pull": _push_pull,
    "push": _push_pull,
}


def _preview(raw: bytes, limit: int = 200) -> str:
    text = raw.decode("utf-8", errors="replace")
    return text if len(text) <= limit else text[:limit] + "..."


def decode_record(kind: EndpointKind, raw: bytes) -> Any:
    """把一个完整 JSON 对象解码为 kind 对应的记录。

    Raises:
        DecodeError: 不是合法 JSON、不是对象或字段类型不符。
        ApiError: chat/generate 流中出现服务端 error 对象。
    """

    try:
        builder = _BUILDERS[kind]
    except KeyError:
        raise ValueError(f"Unknown endpoint kind: {kind!r}")
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise DecodeError(f"invalid JSON record: {_preview(raw)}", raw=raw, cause=e, kind=kind) from e
    if not isinstance(data, dict):
        raise DecodeError(f"JSON record is not an object: {_preview(raw)}", raw=raw, kind=kind)
    if kind in ("chat", "generate") and data.get("error"):
        raise ApiError(code="STREAM_ERROR", message=str(data["error"]), kind=kind)
    try:
        return builder(data)
    except TypeError as e:
        raise DecodeError(f"unexpected record shape: {e}", raw=raw, cause=e, kind=kind) from e
