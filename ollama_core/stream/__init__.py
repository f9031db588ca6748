"""流式协议引擎：切分 -> 解码 -> 聚合，以及驱动读循环的 RecordStream / StreamDriver。"""

from ollama_core.stream.aggregator import AGGREGATORS, Aggregator, aggregate, new_aggregator
from ollama_core.stream.decoder import EndpointKind, decode_record
from ollama_core.stream.driver import CancelToken, RecordStream, StreamDriver
from ollama_core.stream.splitter import ObjectSplitter, split_json_objects

__all__ = [
    "AGGREGATORS",
    "Aggregator",
    "CancelToken",
    "EndpointKind",
    "ObjectSplitter",
    "RecordStream",
    "StreamDriver",
    "aggregate",
    "decode_record",
    "new_aggregator",
    "split_json_objects",
]
