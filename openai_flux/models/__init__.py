"""
数据模型与异常定义模块

模块内容:
    异常类 (errors.py):
        - OpenAIFluxError: 基础异常类
        - ConfigError / InvalidArgumentError / InvalidURLError: 本地错误
        - APIConnectionError / APITimeoutError: 连接错误
        - ExchangeInFlightError / SessionExpiredError: WebSocket 会话错误
        - APIError 及按状态码细分的子类
        - DecodingError / BufferOverflowError: 解码错误

    枚举:
        - ErrorType: 错误类型枚举 (CLIENT/CONNECTION/API/CONTENT)

    线上编解码 (wire.py):
        - encode_json / decode_json: 请求体编码与响应解码
        - to_snake_case / to_camel_case: 字段名映射
        - StopSequences / EmbeddingVector / MaxTokens: 多形态字段
"""

from .errors import (
    APIConnectionError,
    APIError,
    APITimeoutError,
    AuthenticationError,
    BufferOverflowError,
    ConfigError,
    ConflictError,
    DecodingError,
    ErrorType,
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
    error_from_status,
)
from .wire import (
    EmbeddingVector,
    MaxTokens,
    StopSequences,
    decode_json,
    encode_json,
    to_camel_case,
    to_snake_case,
)

__all__ = [
    "ErrorType",
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
    "error_from_status",
    "encode_json",
    "decode_json",
    "to_snake_case",
    "to_camel_case",
    "StopSequences",
    "EmbeddingVector",
    "MaxTokens",
]
