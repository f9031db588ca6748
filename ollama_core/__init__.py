"""Ollama Core 顶层包。

该包提供生成式模型 HTTP 服务的流式客户端核心，
包括配置加载、领域模型、JSON 流切分/解码/聚合引擎、
会话历史存储以及基于 httpx 的传输适配。
"""

from ollama_core.api.client import OllamaClient
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
from ollama_core.stream import CancelToken, RecordStream, StreamDriver

__all__ = [
    "CancelToken",
    "ChatRequest",
    "CreateModelRequest",
    "GenerateRequest",
    "Message",
    "OllamaClient",
    "Options",
    "PullModelRequest",
    "PushModelRequest",
    "RecordStream",
    "StreamConfig",
    "StreamDriver",
]
