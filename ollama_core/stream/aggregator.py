"""聚合层：把一条流的全部记录按端点规则合并成一个最终结果。

每个端点族对应一个 Aggregator 子类，统一登记在 AGGREGATORS 表中：

- chat: 拼接 message.content、追加 images；model/created_at/role 取首条，
  metrics/context/done_reason 只取终止记录。
- generate: 拼接 response；model/created_at 取首条，终止字段只取终止记录。
- create: 每条 status 追加一个换行。
- pull / push: 非空的 status、error 各自追加一个换行。

chat/generate 要求恰好一条 done=true 的记录且位于末尾，否则抛 ProtocolViolation。
"""

from typing import Any, Dict, List, Optional, Type

from ollama_core.domain.exceptions import ProtocolViolation
from ollama_core.domain.models import (
    ChatResponse,
    GenerateResponse,
    Message,
    PushPullResponse,
    StatusResponse,
)
from ollama_core.infrastructure.logging.logger import logger


class Aggregator:
    """聚合器基类。add() 按到达顺序折叠记录，result() 产出最终结果。"""

    kind = ""

    def __init__(self, strict: bool = False):
        self._strict = strict
        self.count = 0

    def add(self, record: Any) -> None:
        self._fold(record)
        self.count += 1

    def _fold(self, record: Any) -> None:
        raise NotImplementedError

    def result(self) -> Any:
        raise NotImplementedError


class _GenerationAggregator(Aggregator):
    """chat / generate 共用的终止记录校验。"""

    def __init__(self, strict: bool = False):
        super().__init__(strict)
        self._model: Optional[str] = None
        self._created_at: Optional[str] = None
        self._terminal: Any = None

    def _fold(self, record: Any) -> None:
        if self._terminal is not None:
            raise ProtocolViolation(
                f"{self.kind} record received after the terminal record",
                kind=self.kind,
                index=self.count,
            )
        if self.count == 0:
            self._model = record.model
            self._created_at = record.created_at
            self._first(record)
        self._merge(record)
        if record.done:
            self._terminal = record
        elif record.metrics is not None or record.context is not None or record.done_reason is not None:
            if self._strict:
                raise ProtocolViolation(
                    f"{self.kind} record {self.count} carries final-only fields before the terminal record",
                    kind=self.kind,
                    index=self.count,
                )
            logger.warning(
                "aggregator.final_fields_before_terminal",
                extra={"extra": {"kind": self.kind, "index": self.count}},
            )

    def _first(self, record: Any) -> None:
        pass

    def _merge(self, record: Any) -> None:
        raise NotImplementedError

    def _require_terminal(self) -> Any:
        if self._terminal is None:
            raise ProtocolViolation(
                f"{self.kind} stream ended without a terminal record",
                kind=self.kind,
                records=self.count,
            )
        return self._terminal


class ChatAggregator(_GenerationAggregator):
    kind = "chat"

    def __init__(self, strict: bool = False):
        super().__init__(strict)
        self._role = "assistant"
        self._content: List[str] = []
        self._images: List[str] = []

    def _first(self, record: ChatResponse) -> None:
        if record.message is not None:
            self._role = record.message.role

    def _merge(self, record: ChatResponse) -> None:
        if record.message is None:
            return
        self._content.append(record.message.content)
        self._images.extend(record.message.images)

    def result(self) -> ChatResponse:
        terminal = self._require_terminal()
        return ChatResponse(
            model=self._model,
            created_at=self._created_at,
            message=Message(role=self._role, content="".join(self._content), images=list(self._images)),
            done=True,
            done_reason=terminal.done_reason,
            metrics=terminal.metrics,
            context=terminal.context,
        )


class GenerateAggregator(_GenerationAggregator):
    kind = "generate"

    def __init__(self, strict: bool = False):
        super().__init__(strict)
        self._response: List[str] = []

    def _merge(self, record: GenerateResponse) -> None:
        self._response.append(record.response)

    def result(self) -> GenerateResponse:
        terminal = self._require_terminal()
        return GenerateResponse(
            model=self._model,
            created_at=self._created_at,
            response="".join(self._response),
            done=True,
            done_reason=terminal.done_reason,
            metrics=terminal.metrics,
            context=terminal.context,
        )


class StatusAggregator(Aggregator):
    """create 端点：没有终止标记，响应体结束即结束。"""

    kind = "create"

    def __init__(self, strict: bool = False):
        super().__init__(strict)
        self._status: List[str] = []

    def _fold(self, record: StatusResponse) -> None:
        self._status.append(record.status + "\n")

    def result(self) -> StatusResponse:
        return StatusResponse(status="".join(self._status))


class PushPullAggregator(Aggregator):
    kind = "pull"

    def __init__(self, strict: bool = False):
        super().__init__(strict)
        self._status: List[str] = []
        self._error: List[str] = []
        self._last: Optional[PushPullResponse] = None

    def _fold(self, record: PushPullResponse) -> None:
        if record.status:
            self._status.append(record.status + "\n")
        if record.error:
            self._error.append(record.error + "\n")
        self._last = record

    def result(self) -> PushPullResponse:
        last = self._last or PushPullResponse()
        return PushPullResponse(
            status="".join(self._status),
            error="".join(self._error),
            digest=last.digest,
            total=last.total,
            completed=last.completed,
        )


class PushAggregator(PushPullAggregator):
    kind = "push"


AGGREGATORS: Dict[str, Type[Aggregator]] = {
    "chat": ChatAggregator,
    "generate": GenerateAggregator,
    "create": StatusAggregator,
    "pull": PushPullAggregator,
    "push": PushAggregator,
}


def new_aggregator(kind: str, strict: bool = False) -> Aggregator:
    try:
        return AGGREGATORS[kind](strict=strict)
    except KeyError:
        raise ValueError(f"Unknown endpoint kind: {kind!r}")


def aggregate(kind: str, records: List[Any], strict: bool = False) -> Any:
    """一次性聚合已收集好的记录序列。"""

    agg = new_aggregator(kind, strict)
    for r in records:
        agg.add(r)
    return agg.result()
