"""流驱动层。

RecordStream 负责读循环：按 buffer_size 从字节源读块 -> 切分 -> 解码 -> 聚合，
并以迭代器的形式逐条交出记录。只有在消费者请求下一条时才继续读取，
因此慢消费者只会拖慢读取，不会丢记录。

StreamDriver.drive() 在同一个迭代器之上实现回调模式：
每条记录同步调用一次回调，最后返回聚合结果。有无回调走的是同一条路径，
所以两种模式的聚合结果必然一致。
"""

import threading
import time
from typing import Any, Callable, Iterator, Optional

from ollama_core.domain.exceptions import (
    BusinessError,
    HandlerError,
    StreamCancelled,
    TransportError,
)
from ollama_core.domain.models import StreamConfig
from ollama_core.infrastructure.logging.logger import logger
from ollama_core.providers.base import ByteSource
from ollama_core.stream.aggregator import new_aggregator
from ollama_core.stream.decoder import EndpointKind, decode_record
from ollama_core.stream.splitter import ObjectSplitter


RecordHandler = Callable[[Any], None]


class CancelToken:
    """显式取消标记，可在其他线程中调用 cancel()。"""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class RecordStream:
    """单消费者的有序记录迭代器。

    - 迭代得到每条解码后的记录，同时折叠进聚合器。
    - result(): 读完剩余记录并返回聚合结果；流失败时重新抛出同一个异常。
    - close(): 取消并释放字节源，也可以用 with 语句自动完成。

    closer 在流结束（成功、失败或取消）时恰好调用一次，用于释放连接、会话锁等资源；
    on_complete 只在聚合成功后调用，参数为最终结果。
    """

    def __init__(
        self,
        source: ByteSource,
        kind: EndpointKind,
        config: Optional[StreamConfig] = None,
        cancel: Optional[CancelToken] = None,
        closer: Optional[Callable[[], None]] = None,
        on_complete: Optional[Callable[[Any], None]] = None,
    ):
        self._source = source
        self._kind = kind
        self._config = config or StreamConfig()
        self._cancel = cancel or CancelToken()
        self._closer = closer
        self._on_complete = on_complete
        self._splitter = ObjectSplitter()
        self._aggregator = new_aggregator(kind, strict=self._config.strict)
        self._result: Any = None
        self._error: Optional[BaseException] = None
        self._finished = False
        self._closed = False
        self._gen: Optional[Iterator[Any]] = None

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def cancel_token(self) -> CancelToken:
        return self._cancel

    def __iter__(self) -> "RecordStream":
        return self

    def __next__(self) -> Any:
        if self._gen is None:
            self._gen = self._run()
        return next(self._gen)

    def __enter__(self) -> "RecordStream":
        return self

    def __exit__(self, *exc) -> bool:
        self.close()
        return False

    def result(self) -> Any:
        """阻塞直到流结束，返回聚合结果。"""

        for _ in self:
            pass
        if self._error is not None:
            raise self._error
        if not self._finished:
            raise StreamCancelled("stream closed before completion", kind=self._kind)
        return self._result

    def close(self) -> None:
        if not self._finished:
            self._cancel.cancel()
        if self._gen is not None:
            try:
                self._gen.close()
            except ValueError:
                # 读循环正阻塞在其他线程的 read() 上：关闭字节源使其返回，
                # 资源由读线程的 finally 释放
                self._source.close()
                return
        self._release()

    def _check_cancelled(self) -> None:
        if self._cancel.cancelled:
            raise StreamCancelled(kind=self._kind, records=self._aggregator.count)

    def _read(self) -> bytes:
        try:
            return self._source.read(self._config.buffer_size)
        except TransportError as e:
            if self._cancel.cancelled:
                raise StreamCancelled(kind=self._kind) from e
            raise
        except (OSError, ValueError) as e:
            # 被关闭的字节源通常抛 ValueError（I/O operation on closed file）
            if self._cancel.cancelled:
                raise StreamCancelled(kind=self._kind) from e
            raise TransportError(code="READ_ERROR", message=str(e), kind=self._kind) from e

    def _run(self) -> Iterator[Any]:
        started = time.perf_counter()
        logger.info(
            "stream.open",
            extra={"extra": {"kind": self._kind, "buffer_size": self._config.buffer_size}},
        )
        try:
            while True:
                self._check_cancelled()
                chunk = self._read()
                if not chunk:
                    break
                for raw in self._splitter.feed(chunk):
                    record = decode_record(self._kind, raw)
                    self._aggregator.add(record)
                    yield record
                    self._check_cancelled()
            self._splitter.finish()
            self._result = self._aggregator.result()
            self._finished = True
            logger.info(
                "stream.done",
                extra={
                    "extra": {
                        "kind": self._kind,
                        "records": self._aggregator.count,
                        "dur_ms": int((time.perf_counter() - started) * 1000),
                    }
                },
            )
            if self._on_complete is not None:
                self._on_complete(self._result)
        except BusinessError as e:
            self._error = e
            logger.error(
                "stream.error",
                extra={
                    "extra": {
                        "kind": self._kind,
                        "code": e.code,
                        "error": e.message[:200],
                        "records": self._aggregator.count,
                    }
                },
            )
            raise
        finally:
            self._release()

    def _release(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._closer is not None:
            self._closer()


class StreamDriver:
    """回调模式的流驱动。"""

    def __init__(self, config: Optional[StreamConfig] = None):
        self._config = config or StreamConfig()

    def open(
        self,
        source: ByteSource,
        kind: EndpointKind,
        config: Optional[StreamConfig] = None,
        cancel: Optional[CancelToken] = None,
        closer: Optional[Callable[[], None]] = None,
        on_complete: Optional[Callable[[Any], None]] = None,
    ) -> RecordStream:
        return RecordStream(
            source,
            kind,
            config=config or self._config,
            cancel=cancel,
            closer=closer,
            on_complete=on_complete,
        )

    def drive(
        self,
        source: ByteSource,
        kind: EndpointKind,
        on_record: Optional[RecordHandler] = None,
        config: Optional[StreamConfig] = None,
        cancel: Optional[CancelToken] = None,
        closer: Optional[Callable[[], None]] = None,
        on_complete: Optional[Callable[[Any], None]] = None,
    ) -> Any:
        """驱动整条流直到结束，返回聚合结果。

        回调抛出的异常会被记录为 HandlerError：默认继续读取，读完后抛出第一个
        HandlerError；stop_on_handler_error=True 时立即中止。
        """

        cfg = config or self._config
        stream = self.open(source, kind, config=cfg, cancel=cancel, closer=closer, on_complete=on_complete)
        handler_error: Optional[HandlerError] = None
        with stream:
            try:
                for record in stream:
                    if on_record is None:
                        continue
                    try:
                        on_record(record)
                    except Exception as e:
                        err = HandlerError(f"record handler failed: {e}", record=record, kind=kind)
                        if cfg.stop_on_handler_error:
                            raise err from e
                        if handler_error is None:
                            err.__cause__ = e
                            handler_error = err
                            logger.warning(
                                "stream.handler_error",
                                extra={"extra": {"kind": kind, "error": str(e)[:200]}},
                            )
                result = stream.result()
            except BusinessError as e:
                # 先发生的回调失败优先，之后的流错误挂在 stream_error 上
                if handler_error is None or e is handler_error:
                    raise
                handler_error.extra["stream_error"] = e
                raise handler_error
        if handler_error is not None:
            raise handler_error
        return result
