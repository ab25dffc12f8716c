"""
核心传输模块

子模块:
    auth.py        认证令牌提供者 (静态 / 自动刷新 / Entra ID)
    request.py     请求构建与路径片段校验
    multipart.py   multipart/form-data 编码
    retry/         429/5xx 重试决策
    sse.py         SSE 事件流解码与字节源
    transport.py   带重试的 HTTP 传输层
    pagination.py  游标分页
"""

from .auth import (
    EntraIDTokenProvider,
    RefreshingTokenProvider,
    StaticTokenProvider,
    TokenProvider,
)
from .multipart import FieldPart, FilePart, MultipartEncoder
from .pagination import CursorPage, paginate
from .request import OutboundRequest, RequestBuilder, build_path, validate_path_component
from .retry import RetryAction, RetryDecision, RetryPolicy
from .sse import (
    BufferedByteSource,
    EventStream,
    EventStreamDecoder,
    IncrementalByteSource,
)
from .transport import Transport

__all__ = [
    "TokenProvider",
    "StaticTokenProvider",
    "RefreshingTokenProvider",
    "EntraIDTokenProvider",
    "OutboundRequest",
    "RequestBuilder",
    "build_path",
    "validate_path_component",
    "MultipartEncoder",
    "FieldPart",
    "FilePart",
    "RetryPolicy",
    "RetryAction",
    "RetryDecision",
    "EventStreamDecoder",
    "EventStream",
    "IncrementalByteSource",
    "BufferedByteSource",
    "Transport",
    "CursorPage",
    "paginate",
]
