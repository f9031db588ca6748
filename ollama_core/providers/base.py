"""传输层抽象接口。

流式引擎不直接依赖具体的 HTTP 库，而是依赖这里的两个协议：

- ByteSource: 可按块读取的字节源，read() 返回空字节表示流结束。
  io.BytesIO、httpx 响应适配器都满足该协议。
- Transport: 发送请求体并把响应体以 ByteSource 的形式交给引擎。

这样可以在测试中用内存字节源替换真实网络。
"""

from typing import Any, ContextManager, Dict, Protocol


class ByteSource(Protocol):
    def read(self, size: int) -> bytes:
        ...

    def close(self) -> None:
        ...


class Transport(Protocol):
    """传输协作者。

    实现者需要提供：
    - open_stream(method, path, payload): 发送 JSON 请求体，返回一个上下文管理器，
      进入后得到响应体的 ByteSource，退出时释放连接。
    """

    def open_stream(self, method: str, path: str, payload: Dict[str, Any]) -> ContextManager[ByteSource]:
        ...
