"""
客户端门面

OpenAIClient 持有一个 Transport，对外暴露端点封装所需的原语
(get / post / post_multipart / post_stream 等)，并提供 Azure 的两种
接入方式和 WebSocket 会话的构造入口。

接入方式:
    ┌──────────────────┬────────────────────────────────────────┬──────────────────────┐
    │ 工厂              │ base_url                               │ 认证                  │
    ├──────────────────┼────────────────────────────────────────┼──────────────────────┤
    │ OpenAIClient(...)│ https://api.openai.com/v1              │ Authorization: Bearer│
    │ azure(...)       │ https://{resource}.{suffix}/openai/v1  │ api-key: <key>       │
    │ azure_foundry()  │ {endpoint}/openai ?api-version=...     │ Entra ID / 静态令牌   │
    └──────────────────┴────────────────────────────────────────┴──────────────────────┘

使用示例:
    async with OpenAIClient(api_key="sk-...") as client:
        models = await client.get("models")
        async with await client.post_stream("chat/completions", body=params) as stream:
            async for chunk in stream:
                ...
"""

import logging
from pathlib import Path
from typing import Any

import aiohttp

from .config.settings import (
    DEFAULT_CONFIG,
    Configuration,
    get_nested,
    init_logging,
    load_config,
    merge_config,
)
from .core.auth import EntraIDTokenProvider, StaticTokenProvider, TokenProvider
from .core.multipart import MultipartEncoder
from .core.request import QueryItems
from .core.sse import EventStream
from .core.transport import Transport
from .models.errors import InvalidArgumentError
from .websocket.realtime import RealtimeConnection
from .websocket.responses import ResponsesSession

AZURE_ENDPOINT_SUFFIX = "openai.azure.com"
AZURE_API_KEY_HEADER = "api-key"
AZURE_FOUNDRY_API_VERSION = "2025-11-15-preview"


class OpenAIClient:
    """
    API 客户端

    Attributes:
        configuration: 不可变配置，所有调用共享
        transport: HTTP 传输层
    """

    def __init__(
        self,
        configuration: Configuration | None = None,
        session: aiohttp.ClientSession | None = None,
        **kwargs: Any,
    ):
        if configuration is None:
            configuration = Configuration(**kwargs)
        elif kwargs:
            raise InvalidArgumentError("configuration 与关键字参数不能同时提供")

        self.configuration = configuration
        self.transport = Transport(configuration, session=session)

        # 工厂方法创建的令牌提供者随客户端一起关闭
        self._owned_provider: TokenProvider | None = None
        self._logger = logging.getLogger("openai_flux.client")

    # ==================== 工厂方法 ====================

    @classmethod
    def azure(
        cls,
        resource_name: str,
        api_key: str,
        endpoint_suffix: str = AZURE_ENDPOINT_SUFFIX,
        **kwargs: Any,
    ) -> "OpenAIClient":
        """
        Azure OpenAI (API Key 认证)

        Args:
            resource_name: Azure 资源名
            api_key: Azure API Key (以 api-key 头发送)
            endpoint_suffix: 终结点后缀 (如 services.ai.azure.com)
        """
        configuration = Configuration(
            api_key=api_key,
            auth_header_name=AZURE_API_KEY_HEADER,
            base_url=f"https://{resource_name}.{endpoint_suffix}/openai/v1",
            **kwargs,
        )
        return cls(configuration)

    @classmethod
    def azure_foundry(
        cls,
        endpoint: str,
        tenant_id: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        token: str | None = None,
        api_version: str = AZURE_FOUNDRY_API_VERSION,
        **kwargs: Any,
    ) -> "OpenAIClient":
        """
        Azure AI Foundry 项目终结点

        提供 token 时使用静态令牌，否则使用 tenant_id/client_id/client_secret
        走 Entra ID client credentials 流程。

        Args:
            endpoint: 项目终结点，如 https://acct.services.ai.azure.com/api/projects/proj
            api_version: 附加到每个请求的 api-version 查询参数

        Raises:
            InvalidArgumentError: 既没有 token 也没有完整的 Entra ID 凭证
        """
        provider: TokenProvider
        if token:
            provider = StaticTokenProvider(token)
        elif tenant_id and client_id and client_secret:
            provider = EntraIDTokenProvider(
                tenant_id=tenant_id,
                client_id=client_id,
                client_secret=client_secret,
            )
        else:
            raise InvalidArgumentError(
                "azure_foundry 需要 token，或 tenant_id/client_id/client_secret"
            )

        configuration = Configuration(
            api_key="",
            base_url=f"{endpoint.rstrip('/')}/openai",
            default_query=(("api-version", api_version),),
            token_provider=provider,
            **kwargs,
        )
        client = cls(configuration)
        client._owned_provider = provider
        return client

    @classmethod
    def from_config_file(
        cls,
        config_path: str | Path,
        token_provider: TokenProvider | None = None,
        configure_logging: bool = False,
    ) -> "OpenAIClient":
        """
        从 YAML 配置文件的 client 段构造客户端

        Args:
            config_path: 配置文件路径
            token_provider: 动态令牌提供者 (可选)
            configure_logging: 是否按 global.log 段初始化日志
        """
        config = merge_config(DEFAULT_CONFIG, load_config(config_path))
        if configure_logging:
            init_logging(get_nested(config, "global", "log"))
        client_section = get_nested(config, "client", default={})
        return cls(Configuration.from_dict(client_section, token_provider=token_provider))

    # ==================== WebSocket ====================

    def responses_websocket(
        self,
        event_type: Any = None,
        heartbeat: float | None = None,
    ) -> ResponsesSession:
        """创建 Responses WebSocket 会话 (需调用 connect())"""
        return ResponsesSession(self.configuration, event_type=event_type, heartbeat=heartbeat)

    def realtime(
        self,
        model: str,
        event_type: Any = None,
        heartbeat: float | None = None,
    ) -> RealtimeConnection:
        """创建 Realtime 连接 (需调用 start())"""
        return RealtimeConnection(
            self.configuration, model, event_type=event_type, heartbeat=heartbeat
        )

    # ==================== 端点原语 ====================

    async def get(self, path: str, query: QueryItems | None = None, response_type: Any = None) -> Any:
        return await self.transport.get(path, query=query, response_type=response_type)

    async def post(
        self,
        path: str,
        body: Any = None,
        query: QueryItems | None = None,
        response_type: Any = None,
    ) -> Any:
        return await self.transport.post(path, body=body, query=query, response_type=response_type)

    async def post_multipart(
        self,
        path: str,
        encoder: MultipartEncoder,
        response_type: Any = None,
    ) -> Any:
        return await self.transport.post_multipart(path, encoder, response_type=response_type)

    async def post_stream(
        self,
        path: str,
        body: Any = None,
        event_type: Any = None,
    ) -> EventStream:
        return await self.transport.post_stream(path, body=body, event_type=event_type)

    async def delete(self, path: str, response_type: Any = None) -> Any:
        return await self.transport.delete(path, response_type=response_type)

    # ==================== 生命周期 ====================

    async def close(self) -> None:
        await self.transport.close()
        if self._owned_provider is not None:
            await self._owned_provider.close()

    async def __aenter__(self) -> "OpenAIClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
