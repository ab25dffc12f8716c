"""
pytest fixtures - 测试共享资源

Fixtures 是 pytest 的核心概念，用于:
1. 提供测试数据
2. 设置/清理测试环境
3. 在多个测试间共享资源

HTTP / SSE / WebSocket 行为使用 aiohttp.test_utils.TestServer 启动
真实的本地服务，而不是 mock 掉 aiohttp。
"""

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from openai_flux.config.settings import Configuration


# ==================== 配置 Fixtures ====================


@pytest.fixture
def sample_config() -> dict:
    """提供示例配置字典 (YAML 结构)"""
    return {
        "global": {
            "log": {
                "level": "debug",
                "format": "text",
                "output": "console",
            },
        },
        "client": {
            "api_key": "sk-test",
            "organization": "org-test",
            "project": "proj-test",
            "base_url": "https://api.example.com/v1",
            "timeout": 30,
            "max_retries": 3,
            "retry_base_delay": 0.1,
            "default_query": {"api-version": "2025-11-15-preview"},
            "streaming_mode": "buffered",
        },
    }


@pytest.fixture
def configuration() -> Configuration:
    """指向不可达地址的默认配置 (只用于不发请求的测试)"""
    return Configuration(api_key="sk-test", base_url="https://api.example.com/v1")


def make_configuration(base_url: str, **overrides) -> Configuration:
    """构造指向本地测试服务的配置，重试延迟为 0 以加快测试"""
    params = {
        "api_key": "sk-test",
        "base_url": base_url,
        "timeout": 5,
        "max_retries": 2,
        "retry_base_delay": 0,
    }
    params.update(overrides)
    return Configuration(**params)


# ==================== 本地服务 Fixtures ====================


@pytest_asyncio.fixture
async def serve():
    """
    启动本地 aiohttp 服务

    用法:
        server = await serve(app)
        base_url = str(server.make_url("/v1"))
    """
    servers: list[test_utils.TestServer] = []

    async def _serve(app: web.Application) -> test_utils.TestServer:
        server = test_utils.TestServer(app)
        await server.start_server()
        servers.append(server)
        return server

    yield _serve

    for server in servers:
        await server.close()
