"""对外客户端模块。

OllamaClient 把请求体交给传输层，再用流式引擎把响应体聚合成最终结果：

- chat / generate / create_model / pull_model / push_model: 回调模式，返回聚合结果。
- chat_stream / generate_stream: 拉取模式，返回 RecordStream，调用方逐条迭代。

会话历史由实例持有的 ConversationStore 管理，不使用进程级全局状态。
"""

from contextlib import ExitStack
from typing import Any, Callable, Dict, List, Optional, Tuple

from ollama_core.config.settings import settings as default_settings
from ollama_core.domain.conversation import Conversation, ConversationStore
from ollama_core.domain.exceptions import ValidationError
from ollama_core.domain.models import (
    ChatRequest,
    ChatResponse,
    CreateModelRequest,
    GenerateRequest,
    GenerateResponse,
    PullModelRequest,
    PushModelRequest,
    PushPullResponse,
    StatusResponse,
    StreamConfig,
)
from ollama_core.infrastructure.logging.logger import logger
from ollama_core.infrastructure.storage.memory_store import InMemoryConversationStore, copy_message
from ollama_core.providers.base import ByteSource, Transport
from ollama_core.providers.http_transport import HttpTransport
from ollama_core.stream.decoder import EndpointKind
from ollama_core.stream.driver import CancelToken, RecordHandler, RecordStream, StreamDriver


_PATHS: Dict[str, str] = {
    "chat": "/api/chat",
    "generate": "/api/generate",
    "create": "/api/create",
    "pull": "/api/pull",
    "push": "/api/push",
}


class OllamaClient:
    """流式端点客户端。

    Args:
        settings: 配置对象，默认使用全局 settings。
        transport: 传输协作者，默认 HttpTransport。
        store: 会话存储，默认每个客户端一个 InMemoryConversationStore。
    """

    def __init__(
        self,
        settings=None,
        transport: Optional[Transport] = None,
        store: Optional[ConversationStore] = None,
    ):
        self._settings = settings or default_settings
        self._transport = transport or HttpTransport(self._settings)
        self._store = store or InMemoryConversationStore()
        self._driver = StreamDriver()

    @property
    def store(self) -> ConversationStore:
        return self._store

    # ---- chat ----

    def chat(
        self,
        request: ChatRequest,
        conversation_id: Optional[str] = None,
        on_record: Optional[RecordHandler] = None,
        config: Optional[StreamConfig] = None,
    ) -> ChatResponse:
        """执行一次 chat 调用并返回聚合结果。

        Args:
            request: 本轮请求，messages 只包含新消息。
            conversation_id: 会话 ID（可选）。提供时会在请求前补齐历史，
                成功后把本轮新消息和助手回复追加到会话中。
            on_record: 逐条回调（可选），在读循环中同步调用。
            config: 单次调用的流式配置。

        Raises:
            各种 domain.exceptions 中定义的异常
        """
        cfg = self._config(config)
        stack = ExitStack()
        try:
            source, on_complete = self._open_chat(stack, request, conversation_id, cfg, on_record is not None)
        except BaseException:
            stack.close()
            raise
        return self._driver.drive(
            source,
            "chat",
            on_record=on_record,
            config=cfg,
            closer=stack.close,
            on_complete=on_complete,
        )

    def chat_stream(
        self,
        request: ChatRequest,
        conversation_id: Optional[str] = None,
        config: Optional[StreamConfig] = None,
        cancel: Optional[CancelToken] = None,
    ) -> RecordStream:
        """拉取模式的 chat。会话历史在流被完整读完后更新，会话锁持有到流关闭。"""

        cfg = self._config(config)
        stack = ExitStack()
        try:
            source, on_complete = self._open_chat(stack, request, conversation_id, cfg, True)
        except BaseException:
            stack.close()
            raise
        return self._driver.open(
            source,
            "chat",
            config=cfg,
            cancel=cancel,
            closer=stack.close,
            on_complete=on_complete,
        )

    def _open_chat(
        self,
        stack: ExitStack,
        request: ChatRequest,
        conversation_id: Optional[str],
        cfg: StreamConfig,
        incremental: bool,
    ) -> Tuple[ByteSource, Optional[Callable[[Any], None]]]:
        self._require_model(request.model)
        history = []
        if conversation_id is not None:
            stack.enter_context(self._store.lock(conversation_id))
            history = self._store.history(conversation_id)
        payload = request.to_payload(history=history)
        payload["stream"] = self._stream_flag(request.stream, cfg, incremental)
        logger.info(
            "client.request",
            extra={
                "extra": {
                    "kind": "chat",
                    "model": request.model,
                    "conversation_id": conversation_id,
                    "history": len(history),
                    "messages": len(payload["messages"]),
                }
            },
        )
        source = stack.enter_context(self._transport.open_stream("POST", _PATHS["chat"], payload))

        on_complete = None
        if conversation_id is not None:
            new_messages = [copy_message(m) for m in request.messages]

            def on_complete(result: ChatResponse) -> None:
                self._store.append(conversation_id, *new_messages, result.message)

        return source, on_complete

    # ---- generate ----

    def generate(
        self,
        request: GenerateRequest,
        on_record: Optional[RecordHandler] = None,
        config: Optional[StreamConfig] = None,
    ) -> GenerateResponse:
        """执行一次 generate 调用。prompt 为空时服务端只加载模型。"""

        return self._run("generate", request.model, request.to_payload(), request.stream, on_record, config)

    def generate_stream(
        self,
        request: GenerateRequest,
        config: Optional[StreamConfig] = None,
        cancel: Optional[CancelToken] = None,
    ) -> RecordStream:
        return self._open("generate", request.model, request.to_payload(), request.stream, config, cancel)

    # ---- model management ----

    def create_model(
        self,
        request: CreateModelRequest,
        on_record: Optional[RecordHandler] = None,
        config: Optional[StreamConfig] = None,
    ) -> StatusResponse:
        return self._run("create", request.model, request.to_payload(), request.stream, on_record, config)

    def pull_model(
        self,
        request: PullModelRequest,
        on_record: Optional[RecordHandler] = None,
        config: Optional[StreamConfig] = None,
    ) -> PushPullResponse:
        return self._run("pull", request.model, request.to_payload(), request.stream, on_record, config)

    def push_model(
        self,
        request: PushModelRequest,
        on_record: Optional[RecordHandler] = None,
        config: Optional[StreamConfig] = None,
    ) -> PushPullResponse:
        """推送模型到远端仓库，需要事先在仓库注册公钥。"""

        return self._run("push", request.model, request.to_payload(), request.stream, on_record, config)

    # ---- conversations ----

    def get_chat(self, conversation_id: str) -> Optional[Conversation]:
        return self._store.get(conversation_id)

    def preload_chat(self, conversation: Conversation) -> None:
        self._store.preload(conversation)

    def delete_chat(self, conversation_id: str) -> None:
        self._store.delete(conversation_id)

    def delete_all_chats(self) -> None:
        self._store.delete_all()

    def set_header(self, key: str, values: List[str]) -> None:
        """为之后的所有请求设置请求头（覆盖同名默认值）。"""

        setter = getattr(self._transport, "set_header", None)
        if setter is None:
            raise ValidationError(code="HEADERS_UNSUPPORTED", message="transport does not accept headers")
        setter(key, values)

    # ---- helpers ----

    def _run(
        self,
        kind: EndpointKind,
        model: str,
        payload: Dict[str, Any],
        stream: Optional[bool],
        on_record: Optional[RecordHandler],
        config: Optional[StreamConfig],
    ) -> Any:
        cfg = self._config(config)
        stack = ExitStack()
        try:
            source = self._enter(stack, kind, model, payload, stream, cfg, on_record is not None)
        except BaseException:
            stack.close()
            raise
        return self._driver.drive(source, kind, on_record=on_record, config=cfg, closer=stack.close)

    def _open(
        self,
        kind: EndpointKind,
        model: str,
        payload: Dict[str, Any],
        stream: Optional[bool],
        config: Optional[StreamConfig],
        cancel: Optional[CancelToken],
    ) -> RecordStream:
        cfg = self._config(config)
        stack = ExitStack()
        try:
            source = self._enter(stack, kind, model, payload, stream, cfg, True)
        except BaseException:
            stack.close()
            raise
        return self._driver.open(source, kind, config=cfg, cancel=cancel, closer=stack.close)

    def _enter(
        self,
        stack: ExitStack,
        kind: EndpointKind,
        model: str,
        payload: Dict[str, Any],
        stream: Optional[bool],
        cfg: StreamConfig,
        incremental: bool,
    ) -> ByteSource:
        self._require_model(model)
        payload["stream"] = self._stream_flag(stream, cfg, incremental)
        logger.info("client.request", extra={"extra": {"kind": kind, "model": model}})
        return stack.enter_context(self._transport.open_stream("POST", _PATHS[kind], payload))

    def _config(self, config: Optional[StreamConfig]) -> StreamConfig:
        return config or StreamConfig.from_settings(self._settings)

    def _stream_flag(self, explicit: Optional[bool], cfg: StreamConfig, incremental: bool) -> bool:
        if explicit is not None:
            return explicit
        return cfg.resolve_stream(incremental, getattr(self._settings, "default_stream", False))

    @staticmethod
    def _require_model(model: Optional[str]) -> None:
        if not model:
            raise ValidationError(code="MISSING_MODEL", message="model is required")
