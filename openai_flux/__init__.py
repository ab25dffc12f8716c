"""
openai-flux: 生成式 AI HTTP/WebSocket API 的异步传输与流式引擎

包结构:
    config/     配置 (Configuration、YAML 加载、日志初始化)
    models/     错误类型与线上编解码
    core/       认证、请求构建、multipart、重试、SSE、传输层、分页
    websocket/  Responses 持久会话与 Realtime 连接
    client.py   客户端门面与 Azure 工厂方法
"""

from .client import OpenAIClient
from .config.settings import USER_AGENT, VERSION, Configuration
from .core.auth import (
    EntraIDTokenProvider,
    RefreshingTokenProvider,
    StaticTokenProvider,
    TokenProvider,
)
from .core.multipart import MultipartEncoder
from .core.pagination import CursorPage
from .core.transport import Transport
from .models.errors import (
    APIConnectionError,
    APIError,
    APITimeoutError,
    AuthenticationError,
    BufferOverflowError,
    ConfigError,
    ConflictError,
    DecodingError,
    ExchangeInFlightError,
    InternalServerError,
    InvalidArgumentError,
    InvalidURLError,
    NotFoundError,
    OpenAIFluxError,
    PermissionDeniedError,
    RateLimitError,
    SessionExpiredError,
    UnprocessableEntityError,
)
from .websocket import RealtimeConnection, ResponsesSession

__version__ = VERSION

__all__ = [
    "__version__",
    "USER_AGENT",
    "OpenAIClient",
    "Configuration",
    "Transport",
    "TokenProvider",
    "StaticTokenProvider",
    "RefreshingTokenProvider",
    "EntraIDTokenProvider",
    "MultipartEncoder",
    "CursorPage",
    "ResponsesSession",
    "RealtimeConnection",
    "OpenAIFluxError",
    "ConfigError",
    "InvalidArgumentError",
    "InvalidURLError",
    "APIConnectionError",
    "APITimeoutError",
    "ExchangeInFlightError",
    "SessionExpiredError",
    "APIError",
    "AuthenticationError",
    "PermissionDeniedError",
    "NotFoundError",
    "ConflictError",
    "UnprocessableEntityError",
    "RateLimitError",
    "InternalServerError",
    "DecodingError",
    "BufferOverflowError",
]
