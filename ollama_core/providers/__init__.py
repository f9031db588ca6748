"""传输层集成。

该包下的模块负责：
- 定义字节源与传输协议 (base)。
- 提供基于 httpx 的具体实现 (http_transport)。
"""

from ollama_core.providers.base import ByteSource, Transport
from ollama_core.providers.http_transport import HttpTransport, ResponseByteSource, build_url

__all__ = ["ByteSource", "HttpTransport", "ResponseByteSource", "Transport", "build_url"]
