"""
配置管理模块

本模块提供 openai-flux 的核心配置功能，包括：
- Configuration: 不可变的连接参数 (凭证、基础地址、超时、重试策略、请求头名)
- YAML 配置文件加载与解析
- 默认配置定义
- 日志系统初始化
- 配置工具函数

配置文件结构 (可选，核心本身不读取环境变量，由调用方决定是否加载):
    ┌─────────────────────────────────────────────────────────────────┐
    │                        config.yaml                               │
    ├─────────────────────────────────────────────────────────────────┤
    │ global:                                                          │
    │   log:                                                           │
    │     level: info                  # 日志级别                      │
    │     format: text                 # 日志格式 (text/json)          │
    │     output: console              # 输出目标 (console/file)       │
    │                                                                  │
    │ client:                                                          │
    │   api_key: "sk-..."              # 凭证                          │
    │   auth_header_name: Authorization                                │
    │   base_url: https://api.openai.com/v1                            │
    │   timeout: 600                   # 单次 HTTP 请求超时 (秒)        │
    │   max_retries: 2                 # 429/5xx 最大重试次数           │
    │   retry_base_delay: 0.5          # 指数退避基数 (秒)              │
    │   default_query: {api-version: "2025-11-15-preview"}             │
    │   streaming_mode: incremental    # incremental | buffered        │
    └─────────────────────────────────────────────────────────────────┘

配置合并策略:
    使用深度合并 (merge_config)，用户配置覆盖默认配置。

使用示例:
    config = merge_config(DEFAULT_CONFIG, load_config("config.yaml"))
    init_logging(get_nested(config, "global", "log"))
    configuration = Configuration.from_dict(config["client"])
"""

import logging
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit, urlunsplit

import yaml

from ..models.errors import ConfigError

if TYPE_CHECKING:
    from ..core.auth import TokenProvider


VERSION = "0.1.0"
USER_AGENT = f"openai-flux/{VERSION} (python; aiohttp)"

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_AUTH_HEADER = "Authorization"
STREAMING_MODES = ("incremental", "buffered")

# 默认配置值
# 用户配置会深度合并到此默认配置上
DEFAULT_CONFIG: dict[str, Any] = {
    "global": {
        "log": {
            "level": "info",
            "format": "text",
            "output": "console",
            "file_path": "./logs/openai_flux.log",
            "date_format": "%Y-%m-%d %H:%M:%S",
        },
    },
    "client": {
        "api_key": "",
        "auth_header_name": DEFAULT_AUTH_HEADER,
        "base_url": DEFAULT_BASE_URL,
        "timeout": 600,
        "max_retries": 2,
        "retry_base_delay": 0.5,
        "default_query": {},
        "streaming_mode": "incremental",
    },
}


@dataclass(frozen=True)
class Configuration:
    """
    客户端连接配置 (不可变)

    构造后不可修改，同一客户端的所有调用共享同一个实例。

    Attributes:
        api_key: API 密钥，仅当设置了 token_provider 时可以为空
        auth_header_name: 认证头名称。"Authorization" 时发送 "Bearer <key>"，
            其他名称 (如 Azure 的 "api-key") 直接发送原始密钥
        organization: 组织 ID (OpenAI-Organization 头)
        project: 项目 ID (OpenAI-Project 头)
        base_url: API 基础地址
        timeout: 单次 HTTP 请求超时 (秒)，与 WebSocket 会话时限无关
        max_retries: 429/5xx 的最大重试次数，0 表示不重试
        retry_base_delay: 指数退避基数 (秒)
        default_query: 附加到每个请求 URL 的查询参数 (有序)
        token_provider: 动态令牌提供者 (如 Entra ID)
        streaming_mode: 流式读取方式，"incremental" 逐块读取，
            "buffered" 先读完整响应体再回放 (行为等价，延迟更高)
    """

    api_key: str = ""
    auth_header_name: str = DEFAULT_AUTH_HEADER
    organization: str | None = None
    project: str | None = None
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 600
    max_retries: int = 2
    retry_base_delay: float = 0.5
    default_query: tuple[tuple[str, str], ...] = ()
    token_provider: "TokenProvider | None" = None
    streaming_mode: str = "incremental"

    def __post_init__(self) -> None:
        if not self.api_key and self.token_provider is None:
            raise ConfigError("api_key 为空时必须设置 token_provider")
        if self.max_retries < 0:
            raise ConfigError(f"max_retries 不能为负数: {self.max_retries}")
        if self.retry_base_delay < 0:
            raise ConfigError(f"retry_base_delay 不能为负数: {self.retry_base_delay}")
        if self.timeout <= 0:
            raise ConfigError(f"timeout 必须大于 0: {self.timeout}")
        if self.streaming_mode not in STREAMING_MODES:
            raise ConfigError(
                f"streaming_mode 必须是 {STREAMING_MODES} 之一: {self.streaming_mode}"
            )
        if not self.auth_header_name:
            raise ConfigError("auth_header_name 不能为空")

        # 归一化查询参数为不可变元组
        object.__setattr__(
            self,
            "default_query",
            tuple((str(k), str(v)) for k, v in self.default_query),
        )

        scheme = urlsplit(self.base_url).scheme.lower()
        if scheme not in ("https", "wss"):
            logging.getLogger("openai_flux.config").warning(
                f"base_url 使用非加密协议 '{scheme}'，生产环境请使用 HTTPS 保护 API 密钥"
            )

    @property
    def uses_bearer(self) -> bool:
        """认证头是否为标准 Authorization: Bearer 形式"""
        return self.auth_header_name.lower() == DEFAULT_AUTH_HEADER.lower()

    @property
    def websocket_base_url(self) -> str:
        """由 base_url 推导的 WebSocket 地址 (https→wss, http→ws)"""
        parts = urlsplit(self.base_url)
        scheme = {"https": "wss", "http": "ws"}.get(parts.scheme.lower(), parts.scheme)
        return urlunsplit((scheme, parts.netloc, parts.path, parts.query, parts.fragment))

    def auth_header_value(self, credential: str) -> str:
        """按认证头类型格式化凭证"""
        return f"Bearer {credential}" if self.uses_bearer else credential

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        token_provider: "TokenProvider | None" = None,
    ) -> "Configuration":
        """
        从配置字典 (通常是 YAML 的 client 段) 构造配置

        Args:
            data: 配置字典，未知键会被忽略
            token_provider: 动态令牌提供者 (无法在 YAML 中表达，由调用方传入)

        Raises:
            ConfigError: 字段值类型或取值非法
        """
        query = data.get("default_query") or {}
        if isinstance(query, Mapping):
            query = list(query.items())

        try:
            return cls(
                api_key=str(data.get("api_key") or ""),
                auth_header_name=str(data.get("auth_header_name") or DEFAULT_AUTH_HEADER),
                organization=data.get("organization"),
                project=data.get("project"),
                base_url=str(data.get("base_url") or DEFAULT_BASE_URL),
                timeout=float(data.get("timeout", 600)),
                max_retries=int(data.get("max_retries", 2)),
                retry_base_delay=float(data.get("retry_base_delay", 0.5)),
                default_query=tuple((str(k), str(v)) for k, v in query),
                token_provider=token_provider,
                streaming_mode=str(data.get("streaming_mode") or "incremental"),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"client 配置值非法: {e}") from e


def load_config(config_path: str | Path) -> dict[str, Any]:
    """
    加载 YAML 配置文件

    从指定路径加载 YAML 格式的配置文件并解析为 Python 字典。

    Args:
        config_path: 配置文件路径 (相对或绝对路径)

    Returns:
        配置字典

    Raises:
        ConfigError: 配置文件不存在或格式错误

    Note:
        此函数只负责加载和解析，不进行与默认配置的合并。
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigError(f"配置文件不存在: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML 解析错误: {e}") from e
    except OSError as e:
        raise ConfigError(f"加载配置文件失败: {e}") from e

    if not isinstance(config, dict):
        raise ConfigError("配置文件格式错误: 根节点必须是字典")

    logging.info(f"配置文件 '{config_path}' 加载成功")
    return config


def init_logging(log_config: dict[str, Any] | None = None) -> None:
    """
    初始化日志系统

    配置 Python 标准日志库，支持控制台和文件输出，支持 text 和 json 两种格式。
    库本身只通过 logging.getLogger("openai_flux.*") 输出日志，
    是否调用本函数由应用决定。

    Args:
        log_config: 日志配置字典，包含以下可选键:
            - level: 日志级别 (debug/info/warning/error)
            - format: 日志格式 (text/json)
            - output: 输出目标 (console/file)
            - file_path: 日志文件路径 (当 output=file 时)
            - date_format: 日期格式
    """
    if log_config is None:
        log_config = {}

    level_str = str(log_config.get("level", "info")).upper()
    level = getattr(logging, level_str, logging.INFO)

    if log_config.get("format", "text") == "json":
        log_format = (
            '{"time": "%(asctime)s", "level": "%(levelname)s", '
            '"name": "%(name)s", "message": "%(message)s"}'
        )
    else:
        log_format = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"

    date_format = log_config.get("date_format", "%Y-%m-%d %H:%M:%S")
    output_type = log_config.get("output", "console")

    handlers: list[logging.Handler] = []

    if output_type == "file":
        file_path = log_config.get("file_path", "./logs/openai_flux.log")
        try:
            log_dir = os.path.dirname(file_path)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            handlers.append(logging.FileHandler(file_path, encoding="utf-8"))
        except OSError as e:
            print(f"创建日志文件失败: {e}，回退到控制台", file=sys.stderr)
            output_type = "console"

    if output_type == "console" or not handlers:
        handlers.append(logging.StreamHandler(sys.stdout))

    logging.basicConfig(
        level=level,
        format=log_format,
        datefmt=date_format,
        handlers=handlers,
        force=True,
    )

    # 降低第三方库的日志级别，减少干扰
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.info(f"日志系统初始化完成 | 级别: {level_str}, 输出: {output_type}")


def get_nested(config: dict[str, Any], *keys: str, default: Any = None) -> Any:
    """
    安全获取嵌套配置值

    Example:
        >>> config = {"a": {"b": {"c": 1}}}
        >>> get_nested(config, "a", "b", "c")
        1
        >>> get_nested(config, "a", "x", default=0)
        0
    """
    result = config
    for key in keys:
        if isinstance(result, dict):
            result = result.get(key)
        else:
            return default
        if result is None:
            return default
    return result


def merge_config(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    深度合并配置字典

    递归合并两个字典，override 中的值覆盖 base 中的同名键。

    Returns:
        合并后的配置 (新字典，不修改原始配置)
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_config(result[key], value)
        else:
            result[key] = value

    return result
