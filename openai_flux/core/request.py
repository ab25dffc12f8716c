"""
请求构建器

把 (path, method, body, query, multipart) 转换为完整寻址、完整请求头的
OutboundRequest。纯函数式转换，不做任何 I/O；动态令牌由传输层解析后传入。

URL 组装:
    base_url + "/" + path        (拼接处的重复斜杠被去除)
    ?default_query...&query...   (默认参数在前，同名参数都会发送)

请求头顺序:
    ┌────┬──────────────────────────────┬──────────────────────────────┐
    │ #  │ 请求头                        │ 条件                          │
    ├────┼──────────────────────────────┼──────────────────────────────┤
    │ 1  │ User-Agent                   │ 总是                          │
    │ 2  │ Accept-Encoding              │ 总是                          │
    │ 3  │ Connection: keep-alive       │ 总是                          │
    │ 4  │ Authorization / api-key      │ 有令牌，或 api_key 非空且     │
    │    │                              │ 未配置 token_provider         │
    │ 5  │ OpenAI-Organization/Project  │ 已配置 (去除 CR/LF)           │
    │ 6  │ Content-Type                 │ 有请求体                      │
    │ 7  │ extra_headers                │ 调用方附加 (去除 CR/LF)       │
    └────┴──────────────────────────────┴──────────────────────────────┘
    同名请求头 (大小写不敏感) 后写覆盖先写，位置保持在首次出现处。

路径片段校验:
    资源 ID 为空或包含 '/'、'\\'、'..' 时抛出 InvalidArgumentError，
    请求永远不会被发出。
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode, urlsplit

from ..config.settings import USER_AGENT, Configuration
from ..models.errors import InvalidArgumentError, InvalidURLError
from ..models.wire import encode_json

if TYPE_CHECKING:
    from .multipart import MultipartEncoder

JSON_CONTENT_TYPE = "application/json"

QueryItems = Mapping[str, Any] | Iterable[tuple[str, Any]]


def strip_crlf(value: str) -> str:
    """去除 CR/LF，防止请求头注入"""
    return value.replace("\r", "").replace("\n", "")


def validate_path_component(value: str) -> str:
    """
    校验作为路径片段插入 URL 的资源 ID

    Raises:
        InvalidArgumentError: 为空或包含 '/'、'\\'、'..'
    """
    if not isinstance(value, str) or not value:
        raise InvalidArgumentError("路径片段不能为空")
    if "/" in value or "\\" in value or ".." in value:
        raise InvalidArgumentError(
            f"路径片段包含非法字符: {value!r}", details={"component": value}
        )
    return value


def build_path(*segments: str) -> str:
    """
    拼接路径，除第一个片段外逐个校验

    Example:
        >>> build_path("files", "file-abc", "content")
        'files/file-abc/content'
    """
    if not segments:
        return ""
    head, *rest = segments
    parts = [head.strip("/")]
    parts.extend(validate_path_component(s) for s in rest)
    return "/".join(p for p in parts if p)


@dataclass(frozen=True)
class OutboundRequest:
    """
    待发送的请求 (不可变)

    请求体完整缓冲为 bytes，重试时可以原样重发。

    Attributes:
        method: HTTP 方法
        url: 绝对 URL (含查询参数)
        headers: 有序请求头 (name, value) 元组，名称大小写不敏感去重
        body: 请求体字节，无请求体时为 None
    """

    method: str
    url: str
    headers: tuple[tuple[str, str], ...] = ()
    body: bytes | None = None

    def header(self, name: str) -> str | None:
        """按名称 (大小写不敏感) 读取请求头"""
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None


def _query_pairs(query: QueryItems | None) -> list[tuple[str, str]]:
    if not query:
        return []
    items = query.items() if isinstance(query, Mapping) else query
    pairs = []
    for name, value in items:
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        pairs.append((str(name), str(value)))
    return pairs


class _HeaderList:
    """有序、大小写不敏感去重的请求头列表"""

    def __init__(self):
        self._items: list[list[str]] = []

    def set(self, name: str, value: str) -> None:
        lowered = name.lower()
        for item in self._items:
            if item[0].lower() == lowered:
                item[1] = value
                return
        self._items.append([name, value])

    def freeze(self) -> tuple[tuple[str, str], ...]:
        return tuple((name, value) for name, value in self._items)


class RequestBuilder:
    """
    请求构建器

    Attributes:
        configuration: 客户端配置
    """

    def __init__(self, configuration: Configuration):
        self.configuration = configuration

    def build_url(
        self,
        path: str,
        query: QueryItems | None = None,
        base_url: str | None = None,
    ) -> str:
        """
        拼接绝对 URL

        Args:
            path: 相对路径
            query: 本次调用的查询参数 (排在默认参数之后)
            base_url: 覆盖基础地址 (WebSocket 使用 websocket_base_url)

        Raises:
            InvalidURLError: 拼接结果缺少协议或主机
        """
        base = (base_url or self.configuration.base_url).rstrip("/")
        path = path.lstrip("/")
        url = f"{base}/{path}" if path else base

        pairs = list(self.configuration.default_query) + _query_pairs(query)
        if pairs:
            url = f"{url}{'&' if '?' in url else '?'}{urlencode(pairs)}"

        try:
            parts = urlsplit(url)
        except ValueError as e:
            raise InvalidURLError(f"URL 无法解析: {url}") from e
        if not parts.scheme or not parts.netloc:
            raise InvalidURLError(f"URL 缺少协议或主机: {url}")
        return url

    def _set_identity_headers(self, headers: _HeaderList, token: str | None) -> None:
        """认证头 + 组织/项目头"""
        config = self.configuration

        # 动态令牌总是 Bearer 形式；静态密钥按 auth_header_name 发送
        if token:
            headers.set("Authorization", f"Bearer {strip_crlf(token)}")
        elif config.api_key and config.token_provider is None:
            headers.set(config.auth_header_name, config.auth_header_value(strip_crlf(config.api_key)))

        if config.organization:
            headers.set("OpenAI-Organization", strip_crlf(config.organization))
        if config.project:
            headers.set("OpenAI-Project", strip_crlf(config.project))

    def websocket_url(self, path: str, query: QueryItems | None = None) -> str:
        """WebSocket 地址 (基于 websocket_base_url，同样附带默认查询参数)"""
        return self.build_url(path, query, base_url=self.configuration.websocket_base_url)

    def session_headers(
        self,
        token: str | None = None,
        extra_headers: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        """
        WebSocket 握手请求头

        顺序: User-Agent → 认证头 → 组织/项目头 → extra_headers
        """
        headers = _HeaderList()
        headers.set("User-Agent", USER_AGENT)
        self._set_identity_headers(headers, token)
        for name, value in (extra_headers or {}).items():
            headers.set(strip_crlf(name), strip_crlf(str(value)))
        return dict(headers.freeze())

    def build(
        self,
        path: str,
        method: str = "GET",
        body: Any = None,
        query: QueryItems | None = None,
        multipart: "MultipartEncoder | None" = None,
        extra_headers: Mapping[str, str] | None = None,
        token: str | None = None,
    ) -> OutboundRequest:
        """
        构建请求

        Args:
            path: 相对 base_url 的路径 (资源 ID 应已通过 build_path 校验)
            method: HTTP 方法
            body: JSON 请求体 (Pydantic 模型、字典等)
            query: 本次调用的查询参数
            multipart: multipart 编码器，与 body 互斥
            extra_headers: 附加请求头
            token: 已解析的动态令牌 (由传输层从 token_provider 获取)

        Raises:
            InvalidArgumentError: body 与 multipart 同时提供
            InvalidURLError: URL 无法解析
        """
        if body is not None and multipart is not None:
            raise InvalidArgumentError("body 与 multipart 不能同时提供")

        url = self.build_url(path, query)

        headers = _HeaderList()
        headers.set("User-Agent", USER_AGENT)
        headers.set("Accept-Encoding", "gzip, deflate")
        headers.set("Connection", "keep-alive")
        self._set_identity_headers(headers, token)

        data: bytes | None = None
        if multipart is not None:
            content_type, data = multipart.encode()
            headers.set("Content-Type", content_type)
        elif body is not None:
            data = encode_json(body)
            headers.set("Content-Type", JSON_CONTENT_TYPE)

        for name, value in (extra_headers or {}).items():
            headers.set(strip_crlf(name), strip_crlf(str(value)))

        return OutboundRequest(
            method=method.upper(),
            url=url,
            headers=headers.freeze(),
            body=data,
        )
