"""JSON 对象切分器。

服务端把多个 JSON 对象首尾相接地写入同一个响应体（中间可能有换行，也可能
什么都没有），一次网络读取既可能包含多个完整对象，也可能只包含某个对象的一半。

ObjectSplitter 逐字节扫描，维护：
- depth: 花括号深度，0 -> 1 时开始一个对象，回到 0 时产出该对象；
- in_string / escaped: 是否位于字符串内、上一个字节是否为转义符，
  字符串内的花括号不计入深度，转义引号不会结束字符串。

这些状态以及未完成对象的字节会在多次 feed() 之间保留，
因此跨越两次读取的对象也能被完整拼接。
"""

from typing import List

from ollama_core.domain.exceptions import DecodeError


_LBRACE = ord("{")
_RBRACE = ord("}")
_QUOTE = ord('"')
_BACKSLASH = ord("\\")


class ObjectSplitter:
    """带状态的切分器，一个实例只服务一条流。"""

    def __init__(self) -> None:
        self._pending = bytearray()
        self._depth = 0
        self._in_string = False
        self._escaped = False

    @property
    def pending(self) -> bytes:
        """尚未闭合的对象字节。"""

        return bytes(self._pending)

    def feed(self, chunk: bytes) -> List[bytes]:
        """扫描一次读取到的字节，按闭合顺序返回其中完成的对象。"""

        out: List[bytes] = []
        start = 0
        for i, b in enumerate(chunk):
            if self._depth == 0:
                # 对象之外的字节（换行、空白）直接跳过
                if b == _LBRACE:
                    self._depth = 1
                    start = i
                continue
            if self._in_string:
                if self._escaped:
                    self._escaped = False
                elif b == _BACKSLASH:
                    self._escaped = True
                elif b == _QUOTE:
                    self._in_string = False
                continue
            if b == _QUOTE:
                self._in_string = True
            elif b == _LBRACE:
                self._depth += 1
            elif b == _RBRACE:
                self._depth -= 1
                if self._depth == 0:
                    self._pending += chunk[start:i + 1]
                    out.append(bytes(self._pending))
                    self._pending = bytearray()
        if self._depth > 0:
            self._pending += chunk[start:]
        return out

    def finish(self) -> None:
        """流结束时调用；仍有未闭合对象说明响应被截断。"""

        if self._depth > 0:
            raise DecodeError(
                "truncated JSON object at end of stream",
                raw=self.pending,
            )

    def reset(self) -> None:
        self._pending = bytearray()
        self._depth = 0
        self._in_string = False
        self._escaped = False


def split_json_objects(buf: bytes) -> List[bytes]:
    """无状态地切分单个缓冲区，末尾未闭合的部分被丢弃。"""

    return ObjectSplitter().feed(buf)
