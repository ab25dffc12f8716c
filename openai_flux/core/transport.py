"""
HTTP 传输层

执行已构建的请求，对临时故障做有界退避重试，把非 2xx 响应分类为
带类型的异常，并提供三种结果形态: 解码后的 JSON、原始字节、事件流。

方法清单:
    会话管理:
        _get_session() → ClientSession     - [async] 获取/创建 HTTP 会话（检测事件循环切换）
        close()                            - [async] 关闭自建的 HTTP 会话

    请求执行:
        build_request(path, ...) → OutboundRequest - [async] 解析令牌并构建请求
        fetch_json(request, response_type) → Any   - [async] 执行请求并解码 JSON
        fetch_raw(request) → bytes                 - [async] 执行请求并返回原始字节
        fetch_stream(request, event_type) → EventStream - [async] 执行请求并返回事件流
        _send(request, stream) → ClientResponse    - [async] 带重试的发送（核心方法）

    端点封装使用的原语:
        get / post / post_multipart / post_stream
        get_raw / post_raw / delete

重试策略 (RetryPolicy):
    - 429 / 5xx → 读 Retry-After (clamp 0..120) 或指数退避 (封顶 8 秒)，重发同一请求
    - 连接错误 → APIConnectionError，超时 → APITimeoutError，均不重试
    - 流式请求只在尚未收到 2xx 响应头时重试，事件开始流动后不再重试

错误分类:
    401 AuthenticationError     403 PermissionDeniedError   404 NotFoundError
    409 ConflictError           422 UnprocessableEntityError 429 RateLimitError
    >=500 InternalServerError   其他 APIError(status_code, message, type, code)
    错误信息从 {"error": {"message", "type", "param", "code"}} 尽力解析，
    解析失败时 message 为 "Unknown error"。

幂等性风险:
    重试会原样重发请求体。写操作 (例如创建微调任务) 如果服务端已经部分执行
    后才返回 5xx，重试可能导致操作被执行两次。本层不添加幂等键，
    调用方对非幂等写操作可以设置 max_retries=0。
"""

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any

import aiohttp

from ..config.settings import Configuration
from ..models.errors import (
    APIConnectionError,
    APIError,
    APITimeoutError,
    error_from_status,
)
from ..models.wire import decode_json
from .multipart import MultipartEncoder
from .request import OutboundRequest, QueryItems, RequestBuilder
from .retry import RetryAction, RetryPolicy
from .sse import BufferedByteSource, EventStream, EventStreamDecoder, IncrementalByteSource

UNKNOWN_ERROR_MESSAGE = "Unknown error"


def parse_error_envelope(body: bytes) -> tuple[str, str | None, str | None, str | None]:
    """
    尽力解析错误响应体

    Returns:
        (message, type, code, param)，解析失败时为 ("Unknown error", None, None, None)
    """
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return UNKNOWN_ERROR_MESSAGE, None, None, None

    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return UNKNOWN_ERROR_MESSAGE, None, None, None

    def _opt(key: str) -> str | None:
        value = error.get(key)
        return None if value is None else str(value)

    return _opt("message") or UNKNOWN_ERROR_MESSAGE, _opt("type"), _opt("code"), _opt("param")


class Transport:
    """
    HTTP 传输层

    同一个 Transport 可被多个协程并发使用；每次调用的重试严格串行。

    注意: 429/5xx 重试会重发完全相同的请求体，非幂等写操作在服务端已部分
    执行时可能被执行两次 (本层不生成幂等键)。

    Attributes:
        configuration: 客户端配置
        builder: 请求构建器
        retry_policy: 重试策略
    """

    def __init__(
        self,
        configuration: Configuration,
        session: aiohttp.ClientSession | None = None,
    ):
        self.configuration = configuration
        self.builder = RequestBuilder(configuration)
        self.retry_policy = RetryPolicy(
            max_retries=configuration.max_retries,
            base_delay=configuration.retry_base_delay,
        )

        # 外部传入的会话由调用方负责关闭
        self._session = session
        self._owns_session = session is None
        self._session_loop: asyncio.AbstractEventLoop | None = None

        self._logger = logging.getLogger("openai_flux.transport")

    # ==================== 会话管理 ====================

    async def _get_session(self) -> aiohttp.ClientSession:
        """获取或创建 HTTP 会话"""
        if not self._owns_session and self._session is not None:
            return self._session

        current_loop = asyncio.get_running_loop()

        # 复用旧 loop 上创建的 ClientSession 会触发 RuntimeError（如 Event loop is closed）
        if self._session and not self._session.closed:
            if self._session_loop is current_loop:
                return self._session

            self._logger.warning("检测到事件循环切换，重建 HTTP 会话")
            try:
                await self._session.close()
            except (RuntimeError, aiohttp.ClientError) as e:
                self._logger.warning(f"关闭旧会话失败（将继续重建）: {e}")
            finally:
                self._session = None
                self._session_loop = None

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.configuration.timeout),
            )
            self._session_loop = current_loop
        return self._session

    async def close(self) -> None:
        """关闭 HTTP 会话"""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            self._logger.debug("HTTP 会话已关闭")
        if self._owns_session:
            self._session = None
            self._session_loop = None

    async def __aenter__(self) -> "Transport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ==================== 请求构建 ====================

    async def build_request(
        self,
        path: str,
        method: str = "GET",
        body: Any = None,
        query: QueryItems | None = None,
        multipart: MultipartEncoder | None = None,
        extra_headers: Mapping[str, str] | None = None,
    ) -> OutboundRequest:
        """解析动态令牌 (若配置了 token_provider) 后构建请求"""
        token = None
        provider = self.configuration.token_provider
        if provider is not None:
            token = await provider.get_token()

        return self.builder.build(
            path,
            method=method,
            body=body,
            query=query,
            multipart=multipart,
            extra_headers=extra_headers,
            token=token,
        )

    # ==================== 请求执行 ====================

    def _request_timeout(self, stream: bool) -> aiohttp.ClientTimeout:
        timeout = self.configuration.timeout
        if stream:
            # 流式响应可能持续很久，只限制连接和相邻两块之间的间隔
            return aiohttp.ClientTimeout(total=None, sock_connect=timeout, sock_read=timeout)
        return aiohttp.ClientTimeout(total=timeout)

    async def _send(
        self,
        request: OutboundRequest,
        stream: bool = False,
    ) -> aiohttp.ClientResponse:
        """
        发送带重试的 HTTP 请求

        Returns:
            状态码为 2xx 的响应 (响应体尚未读取，由调用方负责释放)

        Raises:
            APIError 及其子类: 非 2xx 且不可重试或重试耗尽
            APIConnectionError: 连接失败
            APITimeoutError: 请求超时
        """
        session = await self._get_session()
        headers = dict(request.headers)
        timeout = self._request_timeout(stream)

        for attempt in range(self.retry_policy.max_attempts):
            try:
                resp = await session.request(
                    request.method,
                    request.url,
                    headers=headers,
                    data=request.body,
                    timeout=timeout,
                )
            except asyncio.TimeoutError as e:
                error = APITimeoutError(
                    f"请求超时 (>{self.configuration.timeout}s)",
                    details={"method": request.method, "url": request.url},
                )
                self._logger.error(f"[{error.error_type}] {request.method} {request.url} 请求超时")
                raise error from e
            except aiohttp.ClientError as e:
                error = APIConnectionError(
                    f"连接失败: {e}",
                    details={"method": request.method, "url": request.url},
                )
                self._logger.error(f"[{error.error_type}] {request.method} {request.url} 连接失败: {e}")
                raise error from e

            if 200 <= resp.status < 300:
                self._logger.debug(
                    f"{request.method} {request.url} → {resp.status} (第 {attempt + 1} 次尝试)"
                )
                return resp

            decision = self.retry_policy.decide(
                resp.status, attempt, resp.headers.get("Retry-After")
            )
            if decision.action == RetryAction.RETRY:
                await self._discard(resp)
                self._logger.warning(
                    f"{request.method} {request.url} 返回 {resp.status}，"
                    f"等待 {decision.delay:.2f}s 后重试 "
                    f"(第 {attempt + 1}/{self.retry_policy.max_retries} 次)"
                )
                await asyncio.sleep(decision.delay)
                continue

            raise await self._error_from_response(request, resp)

        # max_attempts >= 1，循环总会 return 或 raise
        raise APIConnectionError("重试循环异常退出")

    async def _discard(self, resp: aiohttp.ClientResponse) -> None:
        """读完并释放响应，让连接可以复用"""
        try:
            await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._logger.debug(f"丢弃重试响应体失败: {e}")
        finally:
            resp.release()

    async def _error_from_response(
        self,
        request: OutboundRequest,
        resp: aiohttp.ClientResponse,
    ) -> APIError:
        """完整读取错误响应体并构造带类型的异常"""
        try:
            body = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._logger.warning(f"读取错误响应体失败: {e}")
            body = b""
        finally:
            resp.release()

        message, err_type, code, param = parse_error_envelope(body)
        error = error_from_status(resp.status, message, type=err_type, code=code, param=param)
        self._logger.warning(
            f"[{error.error_type}] {request.method} {request.url} 失败 | 状态码: {resp.status}, "
            f"类型: {err_type}, 代码: {code}, 消息: {message[:200]}"
        )
        return error

    async def _read_body(self, request: OutboundRequest, resp: aiohttp.ClientResponse) -> bytes:
        try:
            return await resp.read()
        except asyncio.TimeoutError as e:
            raise APITimeoutError(
                f"读取响应超时 (>{self.configuration.timeout}s)",
                details={"method": request.method, "url": request.url},
            ) from e
        except aiohttp.ClientError as e:
            raise APIConnectionError(f"读取响应失败: {e}") from e
        finally:
            resp.release()

    async def fetch_json(self, request: OutboundRequest, response_type: Any = None) -> Any:
        """
        执行请求并解码 JSON 响应

        Args:
            request: 已构建的请求
            response_type: 目标类型 (Pydantic 模型等)，None 返回 dict/list

        Raises:
            DecodingError: 成功响应的 JSON 无效或结构不符
        """
        resp = await self._send(request)
        data = await self._read_body(request, resp)
        if not data.strip() and response_type is None:
            return None
        return decode_json(data, response_type)

    async def fetch_raw(self, request: OutboundRequest) -> bytes:
        """执行请求并返回原始响应字节 (文件内容、语音等)"""
        resp = await self._send(request)
        return await self._read_body(request, resp)

    async def fetch_stream(self, request: OutboundRequest, event_type: Any = None) -> EventStream:
        """
        执行请求并返回事件流

        非 2xx 响应在抛出前会被完整读取以解析错误；2xx 之后不再重试。
        """
        resp = await self._send(request, stream=True)
        if self.configuration.streaming_mode == "buffered":
            source = BufferedByteSource(resp)
        else:
            source = IncrementalByteSource(resp)
        self._logger.debug(
            f"{request.method} {request.url} 事件流已建立 (模式: {self.configuration.streaming_mode})"
        )
        return EventStream(resp, EventStreamDecoder(source, event_type))

    # ==================== 端点原语 ====================

    async def get(
        self,
        path: str,
        query: QueryItems | None = None,
        response_type: Any = None,
    ) -> Any:
        request = await self.build_request(path, "GET", query=query)
        return await self.fetch_json(request, response_type)

    async def post(
        self,
        path: str,
        body: Any = None,
        query: QueryItems | None = None,
        response_type: Any = None,
    ) -> Any:
        request = await self.build_request(path, "POST", body=body, query=query)
        return await self.fetch_json(request, response_type)

    async def post_multipart(
        self,
        path: str,
        encoder: MultipartEncoder,
        response_type: Any = None,
        query: QueryItems | None = None,
    ) -> Any:
        request = await self.build_request(path, "POST", query=query, multipart=encoder)
        return await self.fetch_json(request, response_type)

    async def post_stream(
        self,
        path: str,
        body: Any = None,
        event_type: Any = None,
        query: QueryItems | None = None,
    ) -> EventStream:
        request = await self.build_request(
            path,
            "POST",
            body=body,
            query=query,
            extra_headers={"Accept": "text/event-stream"},
        )
        return await self.fetch_stream(request, event_type)

    async def get_raw(self, path: str, query: QueryItems | None = None) -> bytes:
        request = await self.build_request(path, "GET", query=query)
        return await self.fetch_raw(request)

    async def post_raw(
        self,
        path: str,
        body: Any = None,
        query: QueryItems | None = None,
    ) -> bytes:
        request = await self.build_request(path, "POST", body=body, query=query)
        return await self.fetch_raw(request)

    async def delete(
        self,
        path: str,
        query: QueryItems | None = None,
        response_type: Any = None,
    ) -> Any:
        request = await self.build_request(path, "DELETE", query=query)
        return await self.fetch_json(request, response_type)
