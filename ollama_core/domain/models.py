"""统一的请求、记录与聚合结果数据模型。

本模块定义了客户端内部共享的标准数据结构：

- Message / Options: 对话消息与生成参数。
- *Request: 各流式端点的请求体，由 to_payload() 转成 JSON 字典。
- *Response: 流中单条记录的解码结果，同时也作为聚合后的最终结果。
- StreamConfig: 单次调用的流式配置值对象。

引擎本身不关心请求体的内容，只负责把字节流解码、聚合为这些结构。
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Literal, Optional

from ollama_core.domain.exceptions import ValidationError


# 消息角色（与服务端 message.role 字段对应）
Role = Literal["system", "user", "assistant"]

# 原实现的默认读缓冲大小
DEFAULT_BUFFER_SIZE = 512000


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class Message:
    """一条对话消息，既可用于请求，也可用于响应。

    - role: 消息角色，未显式指定时默认为 "user"。
    - content: 纯文本内容。
    - images: base64 编码的图片列表。
    """

    role: Role = "user"
    content: str = ""
    images: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.images:
            payload["images"] = list(self.images)
        return payload


@dataclass
class Options:
    """发给服务端的生成参数，未设置的字段不会出现在请求体中。"""

    num_keep: Optional[int] = None
    num_predict: Optional[int] = None  # 最多生成的 token 数
    top_k: Optional[int] = None
    top_p: Optional[float] = None
    tfs_z: Optional[float] = None
    typical_p: Optional[float] = None
    repeat_last_n: Optional[int] = None
    penalize_newline: Optional[bool] = None
    repeat_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    mirostat: Optional[int] = None
    mirostat_eta: Optional[float] = None
    mirostat_tau: Optional[float] = None
    stop: Optional[List[str]] = None
    numa: Optional[bool] = None
    num_ctx: Optional[int] = None  # 上下文窗口大小
    num_batch: Optional[int] = None
    num_gpu: Optional[int] = None
    low_vram: Optional[bool] = None
    f16_kv: Optional[bool] = None
    vocab_only: Optional[bool] = None
    num_thread: Optional[int] = None
    use_mmap: Optional[bool] = None
    use_mlock: Optional[bool] = None
    seed: Optional[int] = None
    temperature: Optional[float] = None

    def to_payload(self) -> Dict[str, Any]:
        return _drop_none(asdict(self))


@dataclass
class ChatRequest:
    """/api/chat 请求体。messages 只包含本轮新增消息，历史由会话存储补齐。"""

    model: str
    messages: List[Message] = field(default_factory=list)
    format: Optional[str] = None
    options: Optional[Options] = None
    keep_alive: Optional[str] = None
    stream: Optional[bool] = None

    def to_payload(self, history: Optional[List[Message]] = None) -> Dict[str, Any]:
        msgs = list(history or []) + list(self.messages)
        return _drop_none(
            {
                "model": self.model,
                "messages": [m.to_payload() for m in msgs],
                "format": self.format,
                "options": self.options.to_payload() if self.options else None,
                "keep_alive": self.keep_alive,
                "stream": self.stream,
            }
        )


@dataclass
class GenerateRequest:
    """/api/generate 请求体。prompt 为空时服务端只加载模型。"""

    model: str
    prompt: Optional[str] = None
    images: List[str] = field(default_factory=list)
    system: Optional[str] = None
    template: Optional[str] = None
    context: Optional[List[int]] = None
    raw: Optional[bool] = None
    format: Optional[str] = None
    options: Optional[Options] = None
    keep_alive: Optional[str] = None
    stream: Optional[bool] = None

    def to_payload(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "model": self.model,
                "prompt": self.prompt,
                "images": list(self.images) or None,
                "system": self.system,
                "template": self.template,
                "context": self.context,
                "raw": self.raw,
                "format": self.format,
                "options": self.options.to_payload() if self.options else None,
                "keep_alive": self.keep_alive,
                "stream": self.stream,
            }
        )


@dataclass
class CreateModelRequest:
    """/api/create 请求体。modelfile 由调用方原样提供。"""

    model: str
    modelfile: Optional[str] = None
    path: Optional[str] = None
    quantize: Optional[str] = None
    stream: Optional[bool] = None

    def to_payload(self) -> Dict[str, Any]:
        return _drop_none(asdict(self))


@dataclass
class PullModelRequest:
    """/api/pull 请求体。insecure 仅用于拉取自建仓库。"""

    model: str
    insecure: Optional[bool] = None
    username: Optional[str] = None
    password: Optional[str] = None
    stream: Optional[bool] = None

    def to_payload(self) -> Dict[str, Any]:
        return _drop_none(asdict(self))


@dataclass
class PushModelRequest(PullModelRequest):
    """/api/push 请求体，字段与 pull 相同。"""


@dataclass
class Metrics:
    """终止记录携带的累计统计，时长单位为纳秒。"""

    total_duration: int = 0
    load_duration: int = 0
    prompt_eval_count: int = 0
    prompt_eval_duration: int = 0
    eval_count: int = 0
    eval_duration: int = 0

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]


@dataclass
class ChatResponse:
    """chat 流中的一条记录，也是聚合后的最终结果。"""

    model: Optional[str] = None
    created_at: Optional[str] = None
    message: Optional[Message] = None
    done: bool = False
    done_reason: Optional[str] = None
    metrics: Optional[Metrics] = None
    context: Optional[List[int]] = None


@dataclass
class GenerateResponse:
    """generate 流中的一条记录，也是聚合后的最终结果。"""

    model: Optional[str] = None
    created_at: Optional[str] = None
    response: str = ""
    done: bool = False
    done_reason: Optional[str] = None
    metrics: Optional[Metrics] = None
    context: Optional[List[int]] = None


@dataclass
class StatusResponse:
    """create 等状态类端点的记录。"""

    status: str = ""
    error: str = ""


@dataclass
class PushPullResponse:
    """pull / push 端点的进度记录。"""

    status: str = ""
    error: str = ""
    digest: Optional[str] = None
    total: Optional[int] = None
    completed: Optional[int] = None


@dataclass
class StreamConfig:
    """单次调用的流式配置。

    - buffer_size: 每次从字节源读取的最大字节数。
    - stream: 是否请求服务端流式返回；None 表示有逐条消费者（回调/迭代）时
      流式，否则取 Settings.default_stream。
    - strict: 非终止记录携带终止字段时是否直接报 ProtocolViolation。
    - stop_on_handler_error: 回调失败时是否立即中止读取。
    """

    buffer_size: int = DEFAULT_BUFFER_SIZE
    stream: Optional[bool] = None
    strict: bool = False
    stop_on_handler_error: bool = False

    def __post_init__(self) -> None:
        if self.buffer_size < 1:
            raise ValidationError(
                code="INVALID_BUFFER_SIZE",
                message=f"buffer_size must be >= 1, got {self.buffer_size}",
            )

    @classmethod
    def from_settings(cls, settings) -> "StreamConfig":
        return cls(buffer_size=getattr(settings, "stream_buffer_size", DEFAULT_BUFFER_SIZE))

    def resolve_stream(self, incremental: bool, default: bool = False) -> bool:
        """决定请求体中的 stream 字段。"""

        if self.stream is not None:
            return self.stream
        return True if incremental else default
