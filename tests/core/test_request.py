"""
请求构建器测试

被测模块: openai_flux/core/request.py

测试类/函数清单:
    TestPathComponent                        路径片段校验
        test_valid_component                 验证普通资源 ID 原样返回
        test_invalid_component               验证空串、'/'、'\\'、'..' 被拒绝
        test_build_path                      验证拼接与首段去斜杠
        test_build_path_rejects_traversal    验证资源 ID 中的路径穿越被拒绝
    TestBuildURL                             URL 组装
        test_join_slashes                    验证拼接处斜杠去重
        test_default_query_first             验证默认参数在前、同名参数都保留
        test_query_value_normalization       验证 None 被省略、bool 转小写
        test_invalid_url                     验证缺少协议或主机报错
        test_websocket_url                   验证 WebSocket 地址与默认参数
    TestHeaders                              请求头
        test_header_order                    验证请求头顺序
        test_api_key_header_raw              验证非 Authorization 头发送原始密钥
        test_token_overrides_api_key         验证动态令牌总是 Bearer 形式
        test_provider_without_token          验证配置了 provider 时不发送静态密钥
        test_crlf_stripped                   验证组织/项目/附加头去除 CR/LF
        test_extra_header_overrides          验证附加头大小写不敏感覆盖
        test_session_headers                 验证握手请求头
    TestBody                                 请求体
        test_json_body                       验证 JSON 请求体与 Content-Type
        test_no_body                         验证无请求体时不发送 Content-Type
        test_multipart_body                  验证 multipart 请求体
        test_body_and_multipart_conflict     验证 body 与 multipart 互斥
        test_method_uppercased               验证方法名大写
"""

import pytest

from openai_flux.config.settings import USER_AGENT, Configuration
from openai_flux.core.auth import StaticTokenProvider
from openai_flux.core.multipart import MultipartEncoder
from openai_flux.core.request import RequestBuilder, build_path, validate_path_component
from openai_flux.models.errors import InvalidArgumentError, InvalidURLError


class TestPathComponent:
    """路径片段校验"""

    def test_valid_component(self):
        assert validate_path_component("file-abc123") == "file-abc123"

    @pytest.mark.parametrize("value", ["", "a/b", "a\\b", "..", "x..y", "../etc"])
    def test_invalid_component(self, value):
        with pytest.raises(InvalidArgumentError):
            validate_path_component(value)

    def test_build_path(self):
        assert build_path("files", "file-abc", "content") == "files/file-abc/content"
        assert build_path("/responses/") == "responses"
        assert build_path() == ""

    def test_build_path_rejects_traversal(self):
        with pytest.raises(InvalidArgumentError):
            build_path("files", "../admin")


class TestBuildURL:
    """URL 组装"""

    def test_join_slashes(self, configuration):
        builder = RequestBuilder(configuration)
        assert builder.build_url("/responses") == "https://api.example.com/v1/responses"
        assert builder.build_url("models") == "https://api.example.com/v1/models"

        trailing = RequestBuilder(
            Configuration(api_key="k", base_url="https://api.example.com/v1/")
        )
        assert trailing.build_url("/models") == "https://api.example.com/v1/models"

    def test_default_query_first(self):
        config = Configuration(
            api_key="k",
            base_url="https://res.openai.azure.com/openai",
            default_query=(("api-version", "2025-11-15-preview"),),
        )
        url = RequestBuilder(config).build_url(
            "responses", query=[("api-version", "override"), ("limit", 10)]
        )
        assert url == (
            "https://res.openai.azure.com/openai/responses"
            "?api-version=2025-11-15-preview&api-version=override&limit=10"
        )

    def test_query_value_normalization(self, configuration):
        url = RequestBuilder(configuration).build_url(
            "files", query={"after": None, "stream": True, "order": "desc"}
        )
        assert url == "https://api.example.com/v1/files?stream=true&order=desc"

    def test_invalid_url(self):
        builder = RequestBuilder(Configuration(api_key="k", base_url="not a url"))
        with pytest.raises(InvalidURLError):
            builder.build_url("models")

    def test_websocket_url(self):
        config = Configuration(
            api_key="k",
            base_url="https://api.example.com/v1",
            default_query=(("api-version", "1"),),
        )
        url = RequestBuilder(config).websocket_url("realtime", query={"model": "gpt-rt"})
        assert url == "wss://api.example.com/v1/realtime?api-version=1&model=gpt-rt"


class TestHeaders:
    """请求头"""

    def test_header_order(self):
        config = Configuration(
            api_key="sk-test",
            organization="org-1",
            project="proj-1",
            base_url="https://api.example.com/v1",
        )
        request = RequestBuilder(config).build(
            "responses", method="POST", body={"model": "m"}, extra_headers={"X-Trace": "t1"}
        )
        assert [name for name, _ in request.headers] == [
            "User-Agent",
            "Accept-Encoding",
            "Connection",
            "Authorization",
            "OpenAI-Organization",
            "OpenAI-Project",
            "Content-Type",
            "X-Trace",
        ]
        assert request.header("user-agent") == USER_AGENT
        assert request.header("authorization") == "Bearer sk-test"
        assert request.header("Connection") == "keep-alive"

    def test_api_key_header_raw(self):
        config = Configuration(
            api_key="azure-key",
            auth_header_name="api-key",
            base_url="https://res.openai.azure.com/openai/v1",
        )
        request = RequestBuilder(config).build("models")
        assert request.header("api-key") == "azure-key"
        assert request.header("Authorization") is None

    def test_token_overrides_api_key(self):
        config = Configuration(
            api_key="azure-key",
            auth_header_name="api-key",
            base_url="https://res.openai.azure.com/openai/v1",
        )
        request = RequestBuilder(config).build("models", token="entra-token")
        assert request.header("Authorization") == "Bearer entra-token"
        assert request.header("api-key") is None

    def test_provider_without_token(self):
        config = Configuration(
            api_key="sk-test",
            base_url="https://api.example.com/v1",
            token_provider=StaticTokenProvider("tok"),
        )
        request = RequestBuilder(config).build("models")
        assert request.header("Authorization") is None

    def test_crlf_stripped(self):
        config = Configuration(
            api_key="sk-test",
            organization="org\r\nX-Injected: 1",
            project="proj\n",
            base_url="https://api.example.com/v1",
        )
        request = RequestBuilder(config).build(
            "models", extra_headers={"X-Trace\r\n": "a\r\nb"}
        )
        assert request.header("OpenAI-Organization") == "orgX-Injected: 1"
        assert request.header("OpenAI-Project") == "proj"
        assert request.header("X-Trace") == "ab"
        for name, value in request.headers:
            assert "\r" not in name + value
            assert "\n" not in name + value

    def test_extra_header_overrides(self, configuration):
        request = RequestBuilder(configuration).build(
            "responses",
            method="POST",
            body={"stream": True},
            extra_headers={"accept": "text/event-stream", "content-type": "application/x"},
        )
        names = [name for name, _ in request.headers]
        assert request.header("Content-Type") == "application/x"
        assert names.count("Content-Type") == 1
        assert request.header("Accept") == "text/event-stream"

    def test_session_headers(self):
        config = Configuration(
            api_key="sk-test", project="proj-1", base_url="https://api.example.com/v1"
        )
        headers = RequestBuilder(config).session_headers(extra_headers={"OpenAI-Beta": "realtime=v1"})
        assert list(headers) == ["User-Agent", "Authorization", "OpenAI-Project", "OpenAI-Beta"]
        assert headers["Authorization"] == "Bearer sk-test"

        with_token = RequestBuilder(config).session_headers(token="tok")
        assert with_token["Authorization"] == "Bearer tok"


class TestBody:
    """请求体"""

    def test_json_body(self, configuration):
        request = RequestBuilder(configuration).build(
            "responses", method="POST", body={"model": "gpt-4o", "previousResponseId": None}
        )
        assert request.body == b'{"model":"gpt-4o"}'
        assert request.header("Content-Type") == "application/json"

    def test_no_body(self, configuration):
        request = RequestBuilder(configuration).build("models")
        assert request.body is None
        assert request.header("Content-Type") is None

    def test_multipart_body(self, configuration):
        encoder = MultipartEncoder(boundary="b1").add_field("purpose", "assistants")
        request = RequestBuilder(configuration).build(
            "files", method="POST", multipart=encoder
        )
        assert request.header("Content-Type") == "multipart/form-data; boundary=b1"
        assert request.body.startswith(b"--b1\r\n")

    def test_body_and_multipart_conflict(self, configuration):
        with pytest.raises(InvalidArgumentError):
            RequestBuilder(configuration).build(
                "files", method="POST", body={"a": 1}, multipart=MultipartEncoder()
            )

    def test_method_uppercased(self, configuration):
        assert RequestBuilder(configuration).build("files/x", method="delete").method == "DELETE"
