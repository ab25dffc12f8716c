"""
Responses WebSocket 会话

在一条持久连接 (/responses) 上执行多轮交换，每轮只发送增量输入，
适合多次工具调用往返的智能体流程。

交换 (exchange):
    一次 response.create 请求 + 其后的事件流，遇到终止事件结束:
        response.completed / response.failed / response.incomplete
    或 error 帧 (以 APIError 结束)。

轮次约束:
    ┌─────────────────────────────────────────────────────────────────┐
    │  create_exchange() ── in_flight? ── 是 → ExchangeInFlightError   │
    │        │                                                         │
    │        否 → in_flight = True → 发送 response.create → 返回事件流 │
    │                                                                  │
    │  事件流结束 (终止事件 / error 帧 / 连接关闭) → in_flight = False  │
    │  提前放弃 (aclose / break / 任务取消) → 后台排空任务读掉剩余帧，  │
    │        直到终止事件、error 帧或连接关闭，再清除 in_flight         │
    └─────────────────────────────────────────────────────────────────┘
    排空保证被放弃的交换留下的尾帧不会被下一次交换误读。

会话时限:
    服务端以 error 帧 (code = websocket_connection_limit_reached) 通知连接
    达到最长时限 (约 60 分钟)。此时抛出 SessionExpiredError，连接不再可用，
    调用方需要重新 connect()。库不会自动重连。

使用示例:
    session = ResponsesSession(configuration)
    await session.connect()

    async with await session.create_exchange({"model": "gpt-4o", "input": "hi"}) as stream:
        async for event in stream:
            if event["type"] == "response.output_text.delta":
                print(event["delta"], end="")

    await session.close()
"""

import asyncio
import logging
import weakref
from collections.abc import AsyncIterator
from typing import Any

from pydantic import BaseModel

from ..config.settings import Configuration
from ..core.request import RequestBuilder
from ..models.errors import (
    APIConnectionError,
    APIError,
    DecodingError,
    ExchangeInFlightError,
    OpenAIFluxError,
    SessionExpiredError,
    error_from_status,
)
from ..models.wire import to_wire, validate_payload
from .connection import ConnectionState, WebSocketConnection

TERMINAL_EVENT_TYPES = frozenset({
    "response.completed",
    "response.failed",
    "response.incomplete",
})
ERROR_EVENT_TYPE = "error"
SESSION_EXPIRED_CODE = "websocket_connection_limit_reached"


def error_from_frame(frame: dict[str, Any], default_status: int = 400) -> OpenAIFluxError:
    """
    把 error 帧转换为异常

    帧格式: {"type": "error", "status": 400, "error": {"type", "code", "message", "param"}}
    """
    error = frame.get("error")
    if not isinstance(error, dict):
        error = {}
    message = str(error.get("message") or "Unknown error")
    code = error.get("code")
    code = None if code is None else str(code)

    if code == SESSION_EXPIRED_CODE:
        return SessionExpiredError(message, code=code)

    status = frame.get("status")
    if not isinstance(status, int) or isinstance(status, bool):
        status = default_status
    err_type = error.get("type")
    param = error.get("param")
    return error_from_status(
        status,
        message,
        type=None if err_type is None else str(err_type),
        code=code,
        param=None if param is None else str(param),
    )


class ExchangeStream:
    """
    单次交换的事件流

    惰性消费；支持 async for、async with 和 aclose()。
    提前结束会触发会话的后台排空。从未迭代就被丢弃的事件流在回收时
    同样交给会话排空。
    """

    def __init__(self, session: "ResponsesSession", exchange_id: int, event_type: Any = None):
        self._session = session
        self._exchange_id = exchange_id
        self._event_type = event_type
        self._events: AsyncIterator[Any] | None = None
        self._closed = False
        # 生成器启动后由其自身的 finally 负责，未启动时靠回收钩子
        self._finalizer = weakref.finalize(
            self,
            _abandon_unconsumed,
            asyncio.get_running_loop(),
            session,
            exchange_id,
        )

    def __aiter__(self) -> "ExchangeStream":
        return self

    async def __anext__(self) -> Any:
        if self._closed:
            raise StopAsyncIteration
        if self._events is None:
            self._finalizer.detach()
            self._events = self._iter_events()
        return await self._events.__anext__()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._events is not None:
            await self._events.aclose()
        else:
            self._finalizer.detach()
            self._session._abandon_exchange(self._exchange_id)

    async def __aenter__(self) -> "ExchangeStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def _iter_events(self) -> AsyncIterator[Any]:
        session = self._session
        finished = False
        try:
            while True:
                frame = await session._receive_frame()
                if frame is None:
                    finished = True
                    session._logger.warning("交换未结束时连接已关闭")
                    return

                frame_type = frame.get("type")
                if frame_type == ERROR_EVENT_TYPE:
                    finished = True
                    raise session._on_error_frame(frame)

                event = validate_payload(frame, self._event_type)
                if frame_type in TERMINAL_EVENT_TYPES:
                    finished = True
                    session._logger.debug(f"交换结束: {frame_type}")
                    yield event
                    return
                yield event
        finally:
            if finished:
                session._finish_exchange()
            else:
                session._abandon_exchange(self._exchange_id)


def _abandon_unconsumed(
    loop: asyncio.AbstractEventLoop, session: "ResponsesSession", exchange_id: int
) -> None:
    """回收钩子: 事件流未被迭代也未关闭，回到事件循环中启动排空"""
    if loop.is_closed():
        return
    loop.call_soon_threadsafe(session._abandon_exchange, exchange_id)


class ResponsesSession:
    """
    Responses WebSocket 会话

    socket 与 in_flight 标志只归本会话所有，in_flight 的检查与置位由
    asyncio.Lock 串行化。

    Attributes:
        configuration: 客户端配置
        event_type: 事件目标类型 (Pydantic 模型等)，None 表示 dict
        heartbeat: aiohttp 内置心跳间隔 (秒)
    """

    def __init__(
        self,
        configuration: Configuration,
        event_type: Any = None,
        heartbeat: float | None = None,
    ):
        self.configuration = configuration
        self.event_type = event_type
        self.heartbeat = heartbeat

        self._builder = RequestBuilder(configuration)
        self._connection: WebSocketConnection | None = None
        self._lock = asyncio.Lock()
        self._in_flight = False
        self._expired = False
        self._drain_task: asyncio.Task | None = None
        # 每次 create_exchange 递增，过期事件流的回收钩子据此忽略
        self._exchange_id = 0

        self._logger = logging.getLogger("openai_flux.websocket")

    # ==================== 状态 ====================

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def state(self) -> ConnectionState:
        if self._connection is None:
            return ConnectionState.DISCONNECTED
        return self._connection.state

    @property
    def connection(self) -> WebSocketConnection | None:
        return self._connection

    # ==================== 生命周期 ====================

    async def connect(self) -> None:
        """
        打开连接 (已连接时直接返回)

        会话过期后调用会先关闭旧连接再重新建立。
        """
        if self._connection is not None and self._connection.connected and not self._expired:
            return
        if self._connection is not None:
            await self.close()

        token = None
        provider = self.configuration.token_provider
        if provider is not None:
            token = await provider.get_token()

        connection = WebSocketConnection(
            self._builder.websocket_url("responses"),
            headers=self._builder.session_headers(token),
            heartbeat=self.heartbeat,
            timeout=self.configuration.timeout,
        )
        await connection.connect()
        self._connection = connection
        self._expired = False
        self._in_flight = False

    async def close(self) -> None:
        """停止保活和排空任务，释放连接"""
        drain = self._drain_task
        if drain is not None and not drain.done():
            drain.cancel()
            try:
                await drain
            except asyncio.CancelledError:
                pass
        self._drain_task = None

        if self._connection is not None:
            await self._connection.close()
        self._connection = None
        self._in_flight = False

    async def __aenter__(self) -> "ResponsesSession":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def keepalive(self, interval: float) -> asyncio.Task:
        """连接期间每 interval 秒发送 ping，close() 时停止"""
        return self._require_connection().keepalive(interval)

    # ==================== 收发 ====================

    def _require_connection(self) -> WebSocketConnection:
        if self._expired:
            raise SessionExpiredError(
                "WebSocket 会话已达到最长时限，请重新 connect()", code=SESSION_EXPIRED_CODE
            )
        if self._connection is None or not self._connection.connected:
            raise APIConnectionError("WebSocket 未连接")
        return self._connection

    async def send(self, event: Any) -> None:
        """发送任意客户端事件"""
        await self._require_connection().send_json(event)

    async def receive(self, event_type: Any = None) -> Any:
        """
        读取并解码下一帧

        低层接口，与 send() 配对使用，不参与交换的 in_flight 簿记。

        Args:
            event_type: 目标类型 (Pydantic 模型等)，None 表示 dict

        Raises:
            APIConnectionError: 未连接或连接已被对端关闭
            DecodingError: 帧不是合法 JSON 或结构不符合目标类型
        """
        frame = await self._require_connection().receive_json()
        if frame is None:
            raise APIConnectionError("WebSocket 连接已关闭")
        return validate_payload(frame, event_type)

    async def _receive_frame(self) -> dict[str, Any] | None:
        if self._connection is None:
            return None
        return await self._connection.receive_json()

    # ==================== 交换 ====================

    async def create_exchange(self, params: Any) -> ExchangeStream:
        """
        发送 response.create 并返回本次交换的事件流

        Args:
            params: response.create 的参数 (字典或 Pydantic 模型)

        Raises:
            ExchangeInFlightError: 已有进行中的交换 (含尚未排空完毕的交换)
            SessionExpiredError: 会话已过期
            APIConnectionError: 未连接或发送失败
        """
        async with self._lock:
            connection = self._require_connection()
            if self._in_flight:
                raise ExchangeInFlightError("该连接上已有进行中的交换")
            self._in_flight = True
            self._exchange_id += 1
            exchange_id = self._exchange_id

        event = {"type": "response.create", **to_wire(params)}
        try:
            await connection.send_json(event)
        except BaseException:
            self._in_flight = False
            raise

        self._logger.debug(f"response.create 已发送 (model={event.get('model')})")
        return ExchangeStream(self, exchange_id, self.event_type)

    async def warmup(self, params: Any) -> str:
        """
        预热: 以 generate=false 执行一次交换，不生成输出

        Returns:
            可作为下一轮 previous_response_id 的响应 ID

        Raises:
            DecodingError: 事件中没有响应 ID
        """
        wire = to_wire(params) if params is not None else {}
        stream = await self.create_exchange({**wire, "generate": False})

        response_id = None
        async with stream:
            async for event in stream:
                found = _response_id(event)
                if found:
                    response_id = found

        if not response_id:
            raise DecodingError("预热未返回响应 ID")
        return response_id

    async def wait_idle(self) -> None:
        """等待后台排空完成"""
        drain = self._drain_task
        if drain is not None and not drain.done():
            await asyncio.shield(drain)

    # ==================== 内部状态转换 ====================

    def _on_error_frame(self, frame: dict[str, Any]) -> OpenAIFluxError:
        error = error_from_frame(frame)
        if isinstance(error, SessionExpiredError):
            self._expired = True
            self._logger.warning("WebSocket 会话已达到最长时限，需要重新连接")
        else:
            self._logger.warning(f"交换收到 error 帧: {error.message}")
        return error

    def _finish_exchange(self) -> None:
        self._in_flight = False

    def _abandon_exchange(self, exchange_id: int) -> None:
        """交换被提前放弃: 启动后台排空"""
        if not self._in_flight or exchange_id != self._exchange_id:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        if self._connection is None or not self._connection.connected:
            self._in_flight = False
            return
        self._logger.debug("交换被提前放弃，开始后台排空")
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        discarded = 0
        try:
            while True:
                try:
                    frame = await self._receive_frame()
                except DecodingError:
                    discarded += 1
                    continue
                except (APIConnectionError, APIError) as e:
                    self._logger.debug(f"排空时连接出错: {e}")
                    return

                if frame is None:
                    return
                frame_type = frame.get("type")
                if frame_type == ERROR_EVENT_TYPE:
                    self._on_error_frame(frame)
                    return
                if frame_type in TERMINAL_EVENT_TYPES:
                    return
                discarded += 1
        finally:
            self._in_flight = False
            self._logger.debug(f"排空结束，丢弃 {discarded} 个帧")


def _response_id(event: Any) -> str | None:
    if isinstance(event, BaseModel):
        event = event.model_dump()
    if not isinstance(event, dict):
        return None
    response = event.get("response")
    if isinstance(response, dict) and response.get("id"):
        return str(response["id"])
    return None
