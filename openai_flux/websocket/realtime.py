"""
Realtime 连接

低延迟双向会话 (语音到语音、文本对话、音频转写)，地址为
{websocket_base_url}/realtime?model=<model>，握手带 OpenAI-Beta: realtime=v1。

与 ResponsesSession 不同，Realtime 没有"交换"的概念: start() 返回
贯穿整个会话的事件流，客户端事件可随时发送。

客户端事件:
    session_update(session)            → session.update
    send_text(text, role)              → conversation.item.create (input_text)
    append_audio(base64_audio)         → input_audio_buffer.append
    commit_audio()                     → input_audio_buffer.commit
    clear_audio_buffer()               → input_audio_buffer.clear
    create_item(item, previous_item_id)→ conversation.item.create
    delete_item(item_id)               → conversation.item.delete
    create_response(response)          → response.create
    cancel_response()                  → response.cancel
"""

import logging
from collections.abc import AsyncIterator
from typing import Any

from ..config.settings import Configuration
from ..core.request import RequestBuilder
from ..models.errors import APIConnectionError, APIError
from ..models.wire import to_wire, validate_payload
from .connection import WebSocketConnection

REALTIME_BETA_HEADER = "realtime=v1"


class RealtimeConnection:
    """
    Realtime 会话连接

    Attributes:
        configuration: 客户端配置
        model: 模型名称
        event_type: 事件目标类型，None 表示 dict
    """

    def __init__(
        self,
        configuration: Configuration,
        model: str,
        event_type: Any = None,
        heartbeat: float | None = None,
    ):
        self.configuration = configuration
        self.model = model
        self.event_type = event_type
        self.heartbeat = heartbeat

        self._builder = RequestBuilder(configuration)
        self._connection: WebSocketConnection | None = None
        self._logger = logging.getLogger("openai_flux.realtime")

    @property
    def connected(self) -> bool:
        return self._connection is not None and self._connection.connected

    async def start(self) -> AsyncIterator[Any]:
        """
        建立连接并返回服务端事件流

        第一个事件通常是 session.created。error 帧以 APIError 结束事件流。

        Raises:
            APIConnectionError: 会话已经启动
        """
        if self._connection is not None:
            raise APIConnectionError("Realtime 会话已连接")

        token = None
        provider = self.configuration.token_provider
        if provider is not None:
            token = await provider.get_token()

        connection = WebSocketConnection(
            self._builder.websocket_url("realtime", query={"model": self.model}),
            headers=self._builder.session_headers(
                token, extra_headers={"OpenAI-Beta": REALTIME_BETA_HEADER}
            ),
            heartbeat=self.heartbeat,
            timeout=self.configuration.timeout,
        )
        self._connection = connection
        try:
            await connection.connect()
        except BaseException:
            self._connection = None
            raise

        self._logger.info(f"Realtime 会话已启动 (model={self.model})")
        return self._iter_events(connection)

    async def _iter_events(self, connection: WebSocketConnection) -> AsyncIterator[Any]:
        try:
            while True:
                frame = await connection.receive_json()
                if frame is None:
                    return
                if frame.get("type") == "error":
                    error = frame.get("error")
                    if not isinstance(error, dict):
                        error = {}
                    raise APIError(
                        str(error.get("message") or "Unknown error"),
                        status_code=0,
                        type=error.get("type"),
                        code=error.get("code"),
                        param=error.get("param"),
                    )
                yield validate_payload(frame, self.event_type)
        finally:
            await self.close()

    # ==================== 客户端事件 ====================

    async def send(self, event: Any) -> None:
        """发送任意客户端事件"""
        if not self.connected:
            raise APIConnectionError("Realtime 会话未连接")
        await self._connection.send_json(event)

    async def session_update(self, session: Any) -> None:
        await self.send({"type": "session.update", "session": to_wire(session)})

    async def send_text(self, text: str, role: str = "user") -> None:
        """发送一条文本消息到会话"""
        item = {
            "type": "message",
            "role": role,
            "content": [{"type": "input_text", "text": text}],
        }
        await self.send({"type": "conversation.item.create", "item": item})

    async def append_audio(self, base64_audio: str) -> None:
        await self.send({"type": "input_audio_buffer.append", "audio": base64_audio})

    async def commit_audio(self) -> None:
        await self.send({"type": "input_audio_buffer.commit"})

    async def clear_audio_buffer(self) -> None:
        await self.send({"type": "input_audio_buffer.clear"})

    async def create_item(self, item: Any, previous_item_id: str | None = None) -> None:
        event = {"type": "conversation.item.create", "item": to_wire(item)}
        if previous_item_id is not None:
            event["previous_item_id"] = previous_item_id
        await self.send(event)

    async def delete_item(self, item_id: str) -> None:
        await self.send({"type": "conversation.item.delete", "item_id": item_id})

    async def create_response(self, response: Any = None) -> None:
        event: dict[str, Any] = {"type": "response.create"}
        if response is not None:
            event["response"] = to_wire(response)
        await self.send(event)

    async def cancel_response(self) -> None:
        await self.send({"type": "response.cancel"})

    async def close(self) -> None:
        """关闭连接 (可重复调用)"""
        connection = self._connection
        self._connection = None
        if connection is not None:
            await connection.close()
            self._logger.info("Realtime 会话已关闭")
