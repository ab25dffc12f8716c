"""
配置管理模块

导出清单 (均来自 settings.py):
    类:
        Configuration
            不可变的客户端连接配置 (凭证、基础地址、超时、重试策略、请求头名)
    函数:
        load_config(config_path: str | Path) -> dict[str, Any]
            加载 YAML 配置文件并解析为字典
        init_logging(log_config: dict | None) -> None
            初始化日志系统 (支持 text/json 格式, console/file 输出)
        merge_config(base: dict, override: dict) -> dict
            深度合并两个配置字典 (override 覆盖 base)
        get_nested(config: dict, *keys: str, default=None) -> Any
            安全获取嵌套字典值
    常量:
        DEFAULT_CONFIG: dict[str, Any]
            默认配置字典 (global.log 与 client 段)

使用示例:
    from openai_flux.config import Configuration, load_config, init_logging

    config = load_config("config.yaml")
    init_logging(config.get("global", {}).get("log"))
    configuration = Configuration.from_dict(config["client"])
"""

from .settings import (
    DEFAULT_CONFIG,
    Configuration,
    get_nested,
    init_logging,
    load_config,
    merge_config,
)

__all__ = [
    "Configuration",
    "load_config",
    "init_logging",
    "DEFAULT_CONFIG",
    "merge_config",
    "get_nested",
]
