"""
错误类型与异常定义

本模块定义 openai-flux 的错误分类系统和自定义异常类。
所有失败都以带类型的异常抛出，调用方可以按类型分支处理
(例如 RateLimitError 时进一步退避，AuthenticationError 时重新认证)。

错误分类设计:
    ┌──────────────┬───────────────────────────────────────────────────┐
    │ 错误类型      │ 说明                                              │
    ├──────────────┼───────────────────────────────────────────────────┤
    │ CLIENT       │ 本地错误: 参数非法、URL 无效、配置错误 (从不发送)   │
    │ CONNECTION   │ 连接错误: DNS 失败、连接被拒、超时 (不重试)         │
    │ API          │ API 错误: 服务端返回非 2xx 状态码                  │
    │ CONTENT      │ 内容错误: 成功响应或流事件的 JSON 解码失败          │
    └──────────────┴───────────────────────────────────────────────────┘

异常层次结构:
    Exception
    └── OpenAIFluxError (基础异常)
        ├── ConfigError (配置错误)
        ├── InvalidArgumentError (本地参数错误，如路径片段非法)
        ├── InvalidURLError (拼接后的 URL 无法解析)
        ├── APIConnectionError (网络连接错误)
        │   ├── APITimeoutError (请求超时)
        │   ├── ExchangeInFlightError (WebSocket 连接上已有进行中的交换)
        │   └── SessionExpiredError (WebSocket 会话达到服务端最长时限)
        ├── APIError (服务端错误，携带 status_code/type/code/param)
        │   ├── AuthenticationError (401)
        │   ├── PermissionDeniedError (403)
        │   ├── NotFoundError (404)
        │   ├── ConflictError (409)
        │   ├── UnprocessableEntityError (422)
        │   ├── RateLimitError (429)
        │   └── InternalServerError (>=500)
        └── DecodingError (解码错误)
            └── BufferOverflowError (SSE 单行超出缓冲上限)

状态码映射:
    由 error_from_status() 完成，只依赖状态码，响应体仅用于提取错误信息。

使用示例:
    from openai_flux.models.errors import RateLimitError, APIError

    try:
        await transport.post("chat/completions", body=payload)
    except RateLimitError as e:
        await asyncio.sleep(30)
    except APIError as e:
        print(f"错误: {e.status_code} {e.message} ({e.code})")
"""

from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    """
    错误类型枚举

    用于对异常做粗粒度分类，每个异常类都带有对应的 error_type。
    继承自 str 使得枚举值可以直接用于字符串操作和日志输出。

    Attributes:
        CLIENT: 本地错误 (参数校验失败、配置非法)，不会产生网络请求
        CONNECTION: 连接错误 (DNS、连接被拒、超时)，传输层不会重试
        API: API 错误 (非 2xx 响应)，429/5xx 会在重试耗尽后才抛出
        CONTENT: 内容错误 (JSON 解码失败)
    """

    CLIENT = "client_error"
    CONNECTION = "connection_error"
    API = "api_error"
    CONTENT = "content_error"

    def __str__(self) -> str:
        return self.value


class OpenAIFluxError(Exception):
    """
    openai-flux 基础异常类

    所有自定义异常的基类，提供统一的错误信息格式和附加详情支持。

    Attributes:
        message: 错误消息文本
        details: 附加的错误详情字典 (可选)
    """

    error_type = ErrorType.CLIENT

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | 详情: {self.details}"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, details={self.details!r})"


class ConfigError(OpenAIFluxError):
    """
    配置错误

    当 Configuration 构造参数不满足约束时抛出。

    常见场景:
        - api_key 为空且未设置 token_provider
        - max_retries 或 retry_base_delay 为负数
        - YAML 配置文件不存在或格式错误
    """

    pass


class InvalidArgumentError(OpenAIFluxError):
    """
    本地参数错误

    在任何网络 I/O 之前抛出，从不离开进程边界。
    典型场景是资源 ID 为空或包含 '/'、'\\'、'..' (路径穿越)。
    """

    pass


class InvalidURLError(OpenAIFluxError):
    """拼接后的请求 URL 无法解析"""

    pass


class APIConnectionError(OpenAIFluxError):
    """
    网络连接错误

    DNS 失败、连接被拒、连接被重置等底层错误。
    传输层不会重试这类错误，而是立即抛给调用方，避免掩盖网络故障。
    """

    error_type = ErrorType.CONNECTION


class APITimeoutError(APIConnectionError):
    """请求超时"""

    def __init__(self, message: str = "请求超时", details: dict[str, Any] | None = None):
        super().__init__(message, details)


class ExchangeInFlightError(APIConnectionError):
    """
    WebSocket 连接忙

    同一条连接上已有一个进行中的交换 (response.create 及其事件流)，
    第二次 create_exchange 立即失败而不是交错发送帧。
    """

    pass


class SessionExpiredError(APIConnectionError):
    """
    WebSocket 会话过期

    服务端通过 error 帧通知连接达到最长时限，连接不可再用，
    调用方需要重新 connect()。库不会自动重连。

    Attributes:
        code: 服务端错误码
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        super().__init__(message, details)


class APIError(OpenAIFluxError):
    """
    API 调用错误

    服务端返回非 2xx 状态码时抛出。未映射到具体子类的状态码
    (如 400、418) 直接抛出本类。

    Attributes:
        status_code: HTTP 状态码 (WebSocket error 帧可能携带)
        type: 服务端错误类型 (如 "invalid_request_error")
        code: 服务端错误码 (如 "model_not_found")
        param: 导致错误的参数名
    """

    error_type = ErrorType.API

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        type: str | None = None,
        code: str | None = None,
        param: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.status_code = status_code
        self.type = type
        self.code = code
        self.param = param
        super().__init__(message, details)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(status_code={self.status_code!r}, "
            f"message={self.message!r}, type={self.type!r}, code={self.code!r})"
        )


class AuthenticationError(APIError):
    """认证失败 (401)，或令牌提供者无法获取令牌"""

    pass


class PermissionDeniedError(APIError):
    """权限不足 (403)"""

    pass


class NotFoundError(APIError):
    """资源不存在 (404)"""

    pass


class ConflictError(APIError):
    """资源冲突 (409)"""

    pass


class UnprocessableEntityError(APIError):
    """请求体无法处理 (422)"""

    pass


class RateLimitError(APIError):
    """
    限流 (429)

    传输层会按 Retry-After 或指数退避自动重试，
    只有重试耗尽后才会抛出本异常。
    """

    pass


class InternalServerError(APIError):
    """服务端错误 (>=500)，重试耗尽后抛出"""

    pass


class DecodingError(OpenAIFluxError):
    """
    解码错误

    成功响应的 JSON 无效、流事件的 data 载荷无法解码、
    或缓冲流读取的字节数与 Content-Length 不一致时抛出。
    """

    error_type = ErrorType.CONTENT


class BufferOverflowError(DecodingError):
    """SSE 单行数据超过缓冲上限"""

    pass


# 状态码 → 异常类映射
_STATUS_ERRORS: dict[int, type[APIError]] = {
    401: AuthenticationError,
    403: PermissionDeniedError,
    404: NotFoundError,
    409: ConflictError,
    422: UnprocessableEntityError,
    429: RateLimitError,
}


def error_class_for_status(status_code: int) -> type[APIError]:
    """
    根据状态码选择异常类

    Args:
        status_code: HTTP 状态码 (非 2xx)

    Returns:
        对应的 APIError 子类，未映射的状态码返回 APIError 本身
    """
    if status_code >= 500:
        return InternalServerError
    return _STATUS_ERRORS.get(status_code, APIError)


def error_from_status(
    status_code: int,
    message: str,
    type: str | None = None,
    code: str | None = None,
    param: str | None = None,
) -> APIError:
    """
    根据状态码构造带类型的 API 异常

    Args:
        status_code: HTTP 状态码
        message: 错误消息 (解析失败时为 "Unknown error")
        type: 服务端错误类型
        code: 服务端错误码
        param: 导致错误的参数名

    Returns:
        APIError 或其子类实例
    """
    error_cls = error_class_for_status(status_code)
    return error_cls(
        message,
        status_code=status_code,
        type=type,
        code=code,
        param=param,
    )
