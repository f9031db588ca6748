"""统一业务异常模型。

所有跨模块抛出的错误都继承自 BusinessError，
便于调用方统一捕获。流式引擎不做任何重试，一次调用要么返回
完整的聚合结果，要么抛出描述首个失败的异常。
"""

from typing import Any, Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "DECODE_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 path、kind 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class TransportError(BusinessError):
    """传输层错误，例如连接失败、读取中断、超时等。"""


class ApiError(BusinessError):
    """服务端返回 >=400 状态码，或在流中返回 error 对象时抛出。"""


class ValidationError(BusinessError):
    """请求参数或配置校验失败。"""


class DecodeError(BusinessError):
    """单个 JSON 对象无法解析，或结构无法映射到目标记录类型。

    raw 保存出错的原始字节，便于诊断。
    """

    def __init__(self, message: str, raw: bytes = b"", cause: Optional[BaseException] = None, **extra):
        super().__init__(code="DECODE_ERROR", message=message, **extra)
        self.raw = raw
        self.cause = cause


class ProtocolViolation(BusinessError):
    """流不符合协议：终止记录之后仍有记录，或直到流结束都没有终止记录。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="PROTOCOL_VIOLATION", message=message, **extra)


class HandlerError(BusinessError):
    """调用方提供的逐条回调抛出了异常。

    record 为触发失败的那条记录，原始异常通过 __cause__ 链接。
    """

    def __init__(self, message: str, record: Any = None, **extra):
        super().__init__(code="HANDLER_ERROR", message=message, **extra)
        self.record = record


class StreamCancelled(BusinessError):
    """流被调用方通过 CancelToken 或关闭字节源主动取消。"""

    def __init__(self, message: str = "stream cancelled", **extra):
        super().__init__(code="STREAM_CANCELLED", message=message, **extra)
