"""
认证令牌提供者

本模块实现动态认证凭证的获取与缓存，供传输层在每次请求前解析令牌。

类清单:
    TokenProvider (ABC)
        - get_token() -> str  [抽象方法]
          返回一个有效的认证令牌，失败抛出 AuthenticationError
    StaticTokenProvider
        返回固定令牌 (如从 CLI 或后端服务取得的令牌，不会自动刷新)
    RefreshingTokenProvider (ABC)
        带缓存和提前刷新的令牌提供者基类
        - _fetch_token() -> (token, expires_in)  [抽象方法]
    EntraIDTokenProvider
        Azure Entra ID OAuth 2.0 client credentials 流程

缓存与刷新:
    令牌缓存为 (token, expires_at) 二元组，now >= expires_at - refresh_margin
    时刷新 (默认提前 5 分钟)。

单飞 (single-flight):
    缓存过期时第一个调用者创建刷新任务，其余并发调用者等待同一个任务。
    N 个并发调用者只会发出一次令牌请求，成功时都拿到同一个新令牌，
    失败时都收到同一个异常 (失败不写缓存，下一次调用重新发起刷新)。

    调用者 A ──┐                 ┌── 创建刷新任务 ── 写缓存 ──> token
    调用者 B ──┼── 缓存过期? ──> ┤
    调用者 C ──┘                 └── 等待同一任务 ──────────> token / 异常

使用示例:
    provider = EntraIDTokenProvider(
        tenant_id="tenant-id",
        client_id="client-id",
        client_secret="client-secret",
    )
    token = await provider.get_token()
    await provider.close()
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod

import aiohttp

from ..models.errors import APIConnectionError, APITimeoutError, AuthenticationError

# 令牌提前刷新裕量（秒）
TOKEN_REFRESH_MARGIN = 300  # 5 分钟

ENTRA_AUTHORITY = "https://login.microsoftonline.com"
COGNITIVE_SERVICES_SCOPE = "https://cognitiveservices.azure.com/.default"


class TokenProvider(ABC):
    """
    令牌提供者抽象基类

    接口契约:
        - get_token 是异步的，可被多个请求并发调用
        - 返回值直接作为认证头的凭证 (Bearer 前缀由传输层添加)
        - 获取失败抛出 AuthenticationError
    """

    @abstractmethod
    async def get_token(self) -> str:
        """返回一个有效的认证令牌"""

    async def close(self) -> None:
        """释放提供者持有的资源 (默认无资源)"""
        return None


class StaticTokenProvider(TokenProvider):
    """
    固定令牌提供者

    令牌过期后不会自动刷新，适用于由外部系统管理令牌生命周期的场景。
    """

    def __init__(self, token: str):
        if not token:
            raise AuthenticationError("静态令牌不能为空")
        self._token = token

    async def get_token(self) -> str:
        return self._token


class RefreshingTokenProvider(TokenProvider):
    """
    带缓存和提前刷新的令牌提供者基类

    子类只需实现 _fetch_token()，缓存、过期判断和单飞刷新由本类负责。

    Attributes:
        refresh_margin: 提前刷新裕量 (秒)
    """

    def __init__(self, refresh_margin: float = TOKEN_REFRESH_MARGIN):
        self.refresh_margin = refresh_margin

        # 令牌缓存，仅由刷新任务写入
        self._token: str | None = None
        self._expires_at: float = 0  # Unix 时间戳
        # 进行中的刷新任务，所有并发调用者共享其结果或异常
        self._refresh_task: asyncio.Task | None = None

        self._logger = logging.getLogger("openai_flux.auth")

    def _cached_token(self) -> str | None:
        if self._token and time.time() < self._expires_at - self.refresh_margin:
            return self._token
        return None

    async def get_token(self) -> str:
        """
        返回缓存令牌，必要时刷新

        Raises:
            AuthenticationError: 令牌端点拒绝请求或响应无效
            APIConnectionError: 无法连接令牌端点
        """
        token = self._cached_token()
        if token:
            return token

        # 检查与创建之间没有 await，同一时刻至多一个刷新任务
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._refresh())
            self._refresh_task = task
        # 单个调用者被取消不影响其他等待者
        return await asyncio.shield(task)

    async def _refresh(self) -> str:
        self._logger.info(f"正在获取/刷新访问令牌 ({self.__class__.__name__}) ...")
        token, expires_in = await self._fetch_token()
        self._token = token
        self._expires_at = time.time() + expires_in
        self._logger.info(f"令牌获取成功，有效期 {expires_in:.0f} 秒")
        return token

    def invalidate(self) -> None:
        """丢弃缓存令牌，下次 get_token() 强制刷新"""
        self._token = None
        self._expires_at = 0

    @abstractmethod
    async def _fetch_token(self) -> tuple[str, float]:
        """
        向令牌端点请求新令牌

        Returns:
            (token, expires_in) 二元组，expires_in 为有效期秒数
        """


class EntraIDTokenProvider(RefreshingTokenProvider):
    """
    Azure Entra ID 令牌提供者

    使用 OAuth 2.0 client credentials 流程为 Azure AI Foundry / Azure OpenAI
    获取访问令牌 (有效期约 1 小时，提前 5 分钟刷新)。

    Attributes:
        tenant_id: Entra ID 租户 ID
        client_id: 应用 (客户端) ID
        scope: OAuth scope
        authority: 令牌颁发机构地址 (主权云或测试时覆盖)
    """

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        scope: str = COGNITIVE_SERVICES_SCOPE,
        authority: str = ENTRA_AUTHORITY,
        timeout: float = 30,
        session: aiohttp.ClientSession | None = None,
        refresh_margin: float = TOKEN_REFRESH_MARGIN,
    ):
        super().__init__(refresh_margin=refresh_margin)
        self.tenant_id = tenant_id
        self.client_id = client_id
        self._client_secret = client_secret
        self.scope = scope
        self.authority = authority.rstrip("/")
        self.timeout = timeout

        # 外部传入的会话由调用方负责关闭
        self._session = session
        self._owns_session = session is None

    @property
    def token_url(self) -> str:
        return f"{self.authority}/{self.tenant_id}/oauth2/v2.0/token"

    async def _get_session(self) -> aiohttp.ClientSession:
        """获取或创建 HTTP 会话"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """关闭自建的 HTTP 会话"""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _fetch_token(self) -> tuple[str, float]:
        session = await self._get_session()
        form = {
            "client_id": self.client_id,
            "client_secret": self._client_secret,
            "scope": self.scope,
            "grant_type": "client_credentials",
        }

        try:
            async with session.post(self.token_url, data=form) as resp:
                status = resp.status
                text = await resp.text()
                if not 200 <= status < 300:
                    raise AuthenticationError(
                        f"Entra ID 令牌请求失败 ({status}): {text[:500]}",
                        status_code=status,
                    )
                try:
                    body = await resp.json(content_type=None)
                except ValueError as e:
                    raise AuthenticationError(
                        f"Entra ID 令牌响应不是合法 JSON: {e}", status_code=status
                    ) from e
        except asyncio.TimeoutError as e:
            raise APITimeoutError(f"Entra ID 令牌请求超时 (>{self.timeout}s)") from e
        except aiohttp.ClientError as e:
            raise APIConnectionError(f"无法连接 Entra ID 令牌端点: {e}") from e

        if not isinstance(body, dict) or not body.get("access_token"):
            raise AuthenticationError("Entra ID 令牌响应缺少 access_token")

        try:
            expires_in = float(body.get("expires_in", 3600))
        except (TypeError, ValueError) as e:
            raise AuthenticationError(f"Entra ID 令牌响应 expires_in 无效: {e}") from e

        return body["access_token"], expires_in
