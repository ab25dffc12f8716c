"""
WebSocket 模块

子模块:
    connection.py  独占 WebSocket 连接 (生命周期、JSON 帧、保活)
    responses.py   Responses 持久会话 (单交换约束、取消安全排空、预热)
    realtime.py    Realtime 会话 (语音/文本双向事件)
"""

from .connection import ConnectionState, WebSocketConnection
from .realtime import RealtimeConnection
from .responses import (
    SESSION_EXPIRED_CODE,
    TERMINAL_EVENT_TYPES,
    ExchangeStream,
    ResponsesSession,
)

__all__ = [
    "ConnectionState",
    "WebSocketConnection",
    "ResponsesSession",
    "ExchangeStream",
    "RealtimeConnection",
    "TERMINAL_EVENT_TYPES",
    "SESSION_EXPIRED_CODE",
]
