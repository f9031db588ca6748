"""基于 httpx 的传输实现。

本模块只负责：

1. 把请求体以 JSON 形式 POST 到 {base_url}{path}。
2. 处理网络错误与 >=400 状态码。
3. 把流式响应体包装成 ByteSource 交给流式引擎。

不做重试，重试策略属于更上层。
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

import httpx

from ollama_core.domain.exceptions import ApiError, TransportError
from ollama_core.infrastructure.logging.logger import logger


def build_url(base_url: str, path: str) -> str:
    """拼接 base_url 与 path，保证中间恰好一个斜杠。"""

    url = base_url
    if not url.endswith("/") and not path.startswith("/"):
        url += "/"
    elif url.endswith("/") and path.startswith("/"):
        url = url[:-1]
    return url + path


class ResponseByteSource:
    """把 httpx 流式响应适配为 ByteSource。

    read(size) 的 size 只是上限：网络上到达一块就返回一块，
    超出 size 的部分留到下一次读取。
    """

    def __init__(self, response: httpx.Response):
        self._response = response
        self._chunks: Optional[Iterator[bytes]] = None
        self._pending = b""

    def read(self, size: int) -> bytes:
        if self._pending:
            chunk, self._pending = self._pending[:size], self._pending[size:]
            return chunk
        if self._chunks is None:
            self._chunks = self._response.iter_bytes()
        try:
            for chunk in self._chunks:
                if chunk:
                    self._pending = chunk[size:]
                    return chunk[:size]
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise TransportError(code="READ_ERROR", message=str(e), error_type=type(e).__name__)
        return b""

    def close(self) -> None:
        self._response.close()


class HttpTransport:
    """httpx 传输客户端。

    - headers: 额外请求头，同名时覆盖默认的 Content-Type / Accept。
    """

    def __init__(self, settings, headers: Optional[Dict[str, List[str]]] = None):
        # Settings 里包含 base_url、超时等配置
        self._settings = settings
        self._headers: Dict[str, List[str]] = dict(headers or {})

    def set_header(self, key: str, values: List[str]) -> None:
        self._headers[key] = list(values)

    def _build_headers(self) -> List[Tuple[str, str]]:
        merged: Dict[str, List[str]] = {
            "Content-Type": ["application/json"],
            "Accept": ["application/json"],
        }
        for key, values in self._headers.items():
            for existing in [k for k in merged if k.lower() == key.lower()]:
                del merged[existing]
            merged[key] = values
        return [(k, v) for k, values in merged.items() for v in values]

    @contextmanager
    def open_stream(self, method: str, path: str, payload: Dict[str, Any]) -> Iterator[ResponseByteSource]:
        url = build_url(self._settings.base_url, path)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                with client.stream(method, url, json=payload, headers=self._build_headers()) as resp:
                    if resp.status_code >= 400:
                        body = resp.read().decode("utf-8", errors="replace")
                        logger.warning(
                            "http.error_status",
                            extra={"extra": {"url": url, "status": resp.status_code}},
                        )
                        raise ApiError(
                            code="API_ERROR",
                            message=f"status code: {resp.status_code}, body: {body}",
                            http_status=resp.status_code,
                        )
                    yield ResponseByteSource(resp)
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise TransportError(code="NETWORK_ERROR", message=str(e), error_type=type(e).__name__)
