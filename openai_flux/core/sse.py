"""
Server-Sent Events 流式解码

把 HTTP 响应的字节流解析为类型化的 JSON 事件序列。

行处理规则:
    ┌──────────────────────────┬───────────────────────────────────────┐
    │ 行内容 (去除首尾空格/制表符) │ 处理                                  │
    ├──────────────────────────┼───────────────────────────────────────┤
    │ 空行                      │ 跳过                                  │
    │ ": heartbeat"            │ 注释/心跳，跳过                        │
    │ "data: [DONE]"           │ 正常结束，不再产出事件                  │
    │ "data: {...}"            │ 解码为事件并产出，失败抛 DecodingError   │
    │ "event: ..." / "id: ..." │ 识别但忽略                            │
    └──────────────────────────┴───────────────────────────────────────┘

字节源 (同一接口的两种实现，由 Configuration.streaming_mode 选择):
    IncrementalByteSource  逐块读取 response.content.iter_any()，真正的增量流
    BufferedByteSource     先读完整响应体再一次性回放。
                           行为等价，但延迟不等价: 首个事件要等整个响应结束
                           才能拿到，调用方不能依赖增量性。

序列是惰性、有限、不可重启的: 遇到 [DONE] 或字节源关闭后结束，
再次迭代不会产出任何事件，需要重新发请求。
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

import aiohttp

from ..models.errors import (
    APIConnectionError,
    APITimeoutError,
    BufferOverflowError,
    DecodingError,
)
from ..models.wire import decode_json

# 单行数据上限 (字节)
MAX_LINE_BYTES = 10 * 1024 * 1024

DATA_PREFIX = b"data: "
DONE_SENTINEL = b"[DONE]"


class ByteSource(ABC):
    """字节源接口: 异步产出响应体字节块"""

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[bytes]:
        ...


class IncrementalByteSource(ByteSource):
    """增量字节源，收到一块就交给解码器一块"""

    def __init__(self, response: aiohttp.ClientResponse):
        self.response = response

    async def __aiter__(self) -> AsyncIterator[bytes]:
        async for chunk in self.response.content.iter_any():
            if chunk:
                yield chunk


class BufferedByteSource(ByteSource):
    """
    缓冲字节源

    读完整个响应体后作为单个块回放。读到的字节数与 Content-Length
    不一致时抛出 DecodingError (截断的流不会被静默当作完整流处理)。
    """

    def __init__(self, response: aiohttp.ClientResponse):
        self.response = response

    async def __aiter__(self) -> AsyncIterator[bytes]:
        body = await self.response.read()

        # 压缩传输时 Content-Length 指压缩后长度，无法与解压后的字节比对
        encoding = self.response.headers.get("Content-Encoding", "identity").lower()
        expected = self.response.headers.get("Content-Length")
        if expected is not None and encoding == "identity":
            try:
                expected_len = int(expected)
            except ValueError:
                expected_len = None
            if expected_len is not None and expected_len != len(body):
                raise DecodingError(
                    f"流响应长度不一致: Content-Length={expected_len}, 实际读取 {len(body)} 字节"
                )

        if body:
            yield body


class EventStreamDecoder:
    """
    SSE 事件解码器

    Args:
        source: 任意异步字节块迭代器
        event_type: 事件目标类型 (Pydantic 模型等)，None 表示返回 dict
        max_line_bytes: 单行上限，超出抛 BufferOverflowError
    """

    def __init__(
        self,
        source: AsyncIterator[bytes] | ByteSource,
        event_type: Any = None,
        max_line_bytes: int = MAX_LINE_BYTES,
    ):
        self.source = source
        self.event_type = event_type
        self.max_line_bytes = max_line_bytes
        self._events = self._iter_events()

    def __aiter__(self) -> "EventStreamDecoder":
        return self

    async def __anext__(self) -> Any:
        return await self._events.__anext__()

    async def aclose(self) -> None:
        await self._events.aclose()

    def _check_line_length(self, length: int) -> None:
        if length > self.max_line_bytes:
            raise BufferOverflowError(
                f"SSE 单行超过缓冲上限 ({length} > {self.max_line_bytes} 字节)"
            )

    async def _iter_events(self) -> AsyncIterator[Any]:
        buffer = bytearray()

        async for chunk in self.source:
            buffer.extend(chunk)
            while True:
                newline = buffer.find(b"\n")
                if newline < 0:
                    self._check_line_length(len(buffer))
                    break
                self._check_line_length(newline)
                line = bytes(buffer[:newline])
                del buffer[: newline + 1]

                payload = self._extract_payload(line)
                if payload is None:
                    continue
                if payload == DONE_SENTINEL:
                    return
                yield decode_json(payload, self.event_type)

        # 字节源关闭时处理最后一行 (无结尾换行)
        payload = self._extract_payload(bytes(buffer))
        if payload is not None and payload != DONE_SENTINEL:
            yield decode_json(payload, self.event_type)

    @staticmethod
    def _extract_payload(line: bytes) -> bytes | None:
        line = line.strip(b" \t\r")
        if not line or line.startswith(b":"):
            return None
        if not line.startswith(DATA_PREFIX):
            return None
        return line[len(DATA_PREFIX):].strip(b" \t")


class EventStream:
    """
    流式响应句柄

    包装解码器和底层 HTTP 响应。迭代结束 (正常、出错) 或调用 aclose()
    后释放连接。推荐用法:

        async with await transport.post_stream("chat/completions", body=params) as stream:
            async for event in stream:
                ...
    """

    def __init__(
        self,
        response: aiohttp.ClientResponse,
        decoder: EventStreamDecoder,
    ):
        self.response = response
        self.decoder = decoder
        self._closed = False
        self._event_count = 0
        self._logger = logging.getLogger("openai_flux.sse")

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> Any:
        if self._closed:
            raise StopAsyncIteration
        try:
            event = await self.decoder.__anext__()
        except StopAsyncIteration:
            self._logger.debug(f"事件流结束，共 {self._event_count} 个事件")
            await self._release(clean=True)
            raise
        except asyncio.TimeoutError as e:
            await self._release(clean=False)
            raise APITimeoutError("读取事件流超时") from e
        except aiohttp.ClientError as e:
            await self._release(clean=False)
            raise APIConnectionError(f"事件流连接中断: {e}") from e
        except BaseException:
            await self._release(clean=False)
            raise
        self._event_count += 1
        return event

    async def _release(self, clean: bool) -> None:
        if self._closed:
            return
        self._closed = True
        if clean:
            self.response.release()
        else:
            # 未读完的连接不能放回连接池
            self.response.close()

    async def aclose(self) -> None:
        """提前结束: 关闭解码器并断开底层连接"""
        if self._closed:
            return
        await self.decoder.aclose()
        await self._release(clean=False)

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
