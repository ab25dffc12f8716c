"""
WebSocket 连接封装

持有一条独占的 aiohttp WebSocket 连接，负责连接生命周期、JSON 帧收发
和保活 ping。交换语义 (一次只允许一个进行中的交换) 由上层会话实现。

状态机:
    DISCONNECTED ──connect()──> CONNECTING ──握手成功──> CONNECTED
         ^                          │                        │
         │                      握手失败                  close()
         │                          │                        v
         └──────────────────────────┴──────────────────── CLOSING

帧格式:
    每个文本帧一个 JSON 对象；二进制帧按 UTF-8 JSON 解码。
    单帧上限 10 MiB。
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any

import aiohttp

from ..models.errors import (
    APIConnectionError,
    APITimeoutError,
    DecodingError,
    error_from_status,
)
from ..models.wire import encode_json

# 单帧上限 (字节)
MAX_MESSAGE_BYTES = 10 * 1024 * 1024


class ConnectionState(Enum):
    """WebSocket 连接状态"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class WebSocketConnection:
    """
    独占的 WebSocket 连接

    同一时刻只允许一个读者 (交换流或后台排空任务)，由上层保证。

    Attributes:
        url: ws/wss 地址
        headers: 握手请求头
        heartbeat: aiohttp 内置心跳间隔 (秒)，None 表示关闭
        state: 当前连接状态
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        heartbeat: float | None = None,
        timeout: float = 60,
        session: aiohttp.ClientSession | None = None,
    ):
        self.url = url
        self.headers = dict(headers or {})
        self.heartbeat = heartbeat
        self.timeout = timeout
        self.state = ConnectionState.DISCONNECTED

        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._keepalive_task: asyncio.Task | None = None

        self._logger = logging.getLogger("openai_flux.websocket")

    @property
    def connected(self) -> bool:
        return (
            self.state == ConnectionState.CONNECTED
            and self._ws is not None
            and not self._ws.closed
        )

    async def connect(self) -> None:
        """
        打开连接 (已连接时直接返回)

        Raises:
            APIError 及其子类: 握手被服务端以非 101 状态拒绝
            APIConnectionError: 无法建立连接
            APITimeoutError: 握手超时
        """
        if self.connected:
            return

        self.state = ConnectionState.CONNECTING
        if self._session is None or self._session.closed:
            # 只限制握手的建连时间，长连接本身不设总超时
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.timeout),
            )
            self._owns_session = True

        try:
            self._ws = await self._session.ws_connect(
                self.url,
                headers=self.headers,
                heartbeat=self.heartbeat,
                max_msg_size=MAX_MESSAGE_BYTES,
                autoping=True,
            )
        except aiohttp.WSServerHandshakeError as e:
            await self._release()
            self._logger.error(f"WebSocket 握手被拒绝 | 状态码: {e.status}, 地址: {self.url}")
            raise error_from_status(e.status, e.message or "WebSocket 握手失败") from e
        except asyncio.TimeoutError as e:
            await self._release()
            raise APITimeoutError(f"WebSocket 连接超时: {self.url}") from e
        except aiohttp.ClientError as e:
            await self._release()
            raise APIConnectionError(f"WebSocket 连接失败: {e}") from e

        self.state = ConnectionState.CONNECTED
        self._logger.info(f"WebSocket 已连接: {self.url.split('?')[0]}")

    def _require_ws(self) -> aiohttp.ClientWebSocketResponse:
        if not self.connected:
            raise APIConnectionError("WebSocket 未连接")
        return self._ws

    async def send_json(self, event: Any) -> None:
        """序列化事件并作为文本帧发送"""
        ws = self._require_ws()
        text = encode_json(event).decode("utf-8")
        try:
            await ws.send_str(text)
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as e:
            raise APIConnectionError(f"WebSocket 发送失败: {e}") from e

    async def receive_json(self) -> dict[str, Any] | None:
        """
        接收下一个 JSON 帧

        Returns:
            解码后的帧；连接关闭时返回 None

        Raises:
            DecodingError: 帧内容不是合法 JSON 对象
            APIConnectionError: 连接出错
        """
        ws = self._require_ws()
        try:
            msg = await ws.receive()
        except asyncio.TimeoutError as e:
            raise APITimeoutError("WebSocket 接收超时") from e
        except aiohttp.ClientError as e:
            raise APIConnectionError(f"WebSocket 接收失败: {e}") from e

        if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
            self._logger.info(f"WebSocket 已被对端关闭 (code={ws.close_code})")
            self.state = ConnectionState.DISCONNECTED
            return None
        if msg.type == aiohttp.WSMsgType.ERROR:
            raise APIConnectionError(f"WebSocket 连接错误: {ws.exception()}")

        if msg.type == aiohttp.WSMsgType.BINARY:
            raw = msg.data
        else:
            raw = msg.data.encode("utf-8") if isinstance(msg.data, str) else msg.data

        try:
            frame = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise DecodingError(f"WebSocket 帧不是合法 JSON: {e}") from e
        if not isinstance(frame, dict):
            raise DecodingError("WebSocket 帧必须是 JSON 对象")
        return frame

    async def ping(self) -> None:
        ws = self._require_ws()
        await ws.ping()

    def keepalive(self, interval: float) -> asyncio.Task:
        """
        启动保活任务，连接期间每 interval 秒发送一次 ping

        重复调用会替换之前的保活任务；close() 时停止。
        """
        if interval <= 0:
            raise ValueError(f"keepalive 间隔必须大于 0: {interval}")
        self._require_ws()
        self._stop_keepalive()
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(interval))
        return self._keepalive_task

    async def _keepalive_loop(self, interval: float) -> None:
        while self.connected:
            await asyncio.sleep(interval)
            if not self.connected:
                break
            try:
                await self.ping()
                self._logger.debug("WebSocket 保活 ping 已发送")
            except (APIConnectionError, aiohttp.ClientError, ConnectionResetError, RuntimeError) as e:
                self._logger.warning(f"WebSocket 保活 ping 失败，停止保活: {e}")
                break

    def _stop_keepalive(self) -> None:
        if self._keepalive_task and not self._keepalive_task.done():
            self._keepalive_task.cancel()
        self._keepalive_task = None

    async def _release(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        if self._owns_session:
            self._session = None
        self._ws = None
        self.state = ConnectionState.DISCONNECTED

    async def close(self) -> None:
        """停止保活，关闭连接并释放会话"""
        if self.state == ConnectionState.DISCONNECTED and self._ws is None:
            await self._release()
            return

        self.state = ConnectionState.CLOSING
        self._stop_keepalive()
        if self._ws is not None and not self._ws.closed:
            try:
                await self._ws.close()
            except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as e:
                self._logger.debug(f"关闭 WebSocket 时出错: {e}")
        await self._release()
        self._logger.info("WebSocket 连接已关闭")
