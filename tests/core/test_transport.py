"""
HTTP 传输层测试

被测模块: openai_flux/core/transport.py

使用 aiohttp.test_utils.TestServer 启动本地服务，覆盖真实的 HTTP 往返。

测试类/函数清单:
    TestParseErrorEnvelope                   错误响应体解析
        test_full_envelope                   验证 message/type/code/param 全部解析
        test_unknown_error                   验证无法解析时为 "Unknown error"
    TestRequestExecution                     请求执行
        test_request_headers                 验证发出的请求头与查询参数
        test_json_round_trip                 验证请求体经服务端回显后结构不变
        test_json_schema_unchanged           验证 JSON Schema 与 metadata 的键原样发送
        test_typed_response                  验证解码为 Pydantic 模型
        test_empty_body                      验证空响应体返回 None
        test_invalid_json_response           验证成功响应的非法 JSON 抛 DecodingError
        test_token_provider                  验证动态令牌以 Bearer 形式发送
        test_multipart_upload                验证 multipart 请求体被服务端正确解析
        test_raw_and_delete                  验证原始字节与 DELETE 原语
        test_external_session                验证外部会话不被关闭
    TestErrorMapping                         错误分类
        test_status_mapping                  验证状态码映射为对应异常类
        test_unknown_error_body              验证非 JSON 错误体，日志带错误类型
    TestRetry                                重试
        test_retry_then_success              验证 503 后重试成功
        test_rate_limit_exhausted            验证 429 重试耗尽后抛 RateLimitError
        test_client_error_not_retried        验证 400 不重试
        test_no_retries                      验证 max_retries=0 只尝试一次
        test_connection_refused              验证连接被拒抛 APIConnectionError 且不重试，日志带错误类型
        test_timeout                         验证超时抛 APITimeoutError
    TestStreaming                            事件流
        test_stream_events                   验证增量模式事件流
        test_stream_buffered_mode            验证缓冲模式事件流
        test_stream_error_status             验证非 2xx 流响应被完整读取并抛出
        test_stream_retry_before_headers     验证 2xx 之前的 503 会被重试
        test_stream_early_close              验证提前关闭释放连接
        test_stream_decode_error             验证事件解码失败后流关闭
    TestPagination                           分页
        test_paginate_all_pages              验证自动翻页并携带 after 参数
"""

import asyncio
import json
import logging
import socket

import aiohttp
import pytest
from aiohttp import web
from pydantic import BaseModel

from openai_flux.config.settings import USER_AGENT
from openai_flux.core.auth import StaticTokenProvider
from openai_flux.core.multipart import MultipartEncoder
from openai_flux.core.pagination import CursorPage, paginate
from openai_flux.core.transport import Transport, parse_error_envelope
from openai_flux.models.errors import (
    APIConnectionError,
    APIError,
    APITimeoutError,
    AuthenticationError,
    ConflictError,
    DecodingError,
    InternalServerError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    UnprocessableEntityError,
)
from openai_flux.models.wire import to_wire
from tests.conftest import make_configuration


class _Model(BaseModel):
    id: str
    object: str


def _unused_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _error_response(status: int, message: str = "boom", code: str | None = None) -> web.Response:
    return web.json_response(
        {"error": {"message": message, "type": "test_error", "code": code, "param": None}},
        status=status,
    )


async def _sse_response(request: web.Request, lines: list[bytes]) -> web.StreamResponse:
    response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
    await response.prepare(request)
    for line in lines:
        await response.write(line)
    await response.write_eof()
    return response


class TestParseErrorEnvelope:
    """错误响应体解析"""

    def test_full_envelope(self):
        body = json.dumps(
            {
                "error": {
                    "message": "Invalid model",
                    "type": "invalid_request_error",
                    "code": "model_not_found",
                    "param": "model",
                }
            }
        ).encode()
        assert parse_error_envelope(body) == (
            "Invalid model",
            "invalid_request_error",
            "model_not_found",
            "model",
        )

    @pytest.mark.parametrize("body", [b"", b"<html>", b"[]", b'{"error": "text"}', b"\xff\xfe"])
    def test_unknown_error(self, body):
        assert parse_error_envelope(body) == ("Unknown error", None, None, None)


class TestRequestExecution:
    """请求执行"""

    @pytest.mark.asyncio
    async def test_request_headers(self, serve):
        seen = {}

        async def handler(request: web.Request) -> web.Response:
            seen["headers"] = dict(request.headers)
            seen["query"] = list(request.query.items())
            return web.json_response({"ok": True})

        app = web.Application()
        app.router.add_get("/v1/models", handler)
        server = await serve(app)

        config = make_configuration(
            str(server.make_url("/v1")),
            organization="org-1",
            default_query=(("api-version", "2025-11-15-preview"),),
        )
        async with Transport(config) as transport:
            result = await transport.get("models", query={"limit": 5})

        assert result == {"ok": True}
        assert seen["headers"]["User-Agent"] == USER_AGENT
        assert seen["headers"]["Authorization"] == "Bearer sk-test"
        assert seen["headers"]["OpenAI-Organization"] == "org-1"
        assert seen["query"] == [("api-version", "2025-11-15-preview"), ("limit", "5")]

    @pytest.mark.asyncio
    async def test_json_round_trip(self, serve):
        async def echo(request: web.Request) -> web.Response:
            assert request.headers["Content-Type"] == "application/json"
            return web.json_response(await request.json())

        app = web.Application()
        app.router.add_post("/v1/echo", echo)
        server = await serve(app)

        body = {
            "model": "gpt-4o",
            "maxOutputTokens": 64,
            "input": [{"role": "user", "content": "你好"}],
            "metadata": {"traceId": "t-1"},
            "temperature": None,
        }
        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            result = await transport.post("echo", body=body)

        assert result == to_wire(body)
        assert "temperature" not in result
        assert result["max_output_tokens"] == 64

    @pytest.mark.asyncio
    async def test_json_schema_unchanged(self, serve):
        received = {}

        async def handler(request: web.Request) -> web.Response:
            received.update(await request.json())
            return web.json_response({"ok": True})

        app = web.Application()
        app.router.add_post("/v1/responses", handler)
        server = await serve(app)

        schema = {
            "type": "object",
            "properties": {"firstName": {"type": "string"}, "middleName": {"type": ["string", "null"]}},
            "required": ["firstName"],
            "additionalProperties": False,
        }
        body = {
            "model": "gpt-4o",
            "text": {"format": {"type": "json_schema", "name": "person", "schema": schema}},
            "metadata": {"orderId": "42"},
        }
        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            await transport.post("responses", body=body)

        assert received["text"]["format"]["schema"] == schema
        assert received["metadata"] == {"orderId": "42"}

    @pytest.mark.asyncio
    async def test_typed_response(self, serve):
        async def handler(request: web.Request) -> web.Response:
            return web.json_response({"id": "file-1", "object": "file", "extra": 1})

        app = web.Application()
        app.router.add_get("/v1/files/file-1", handler)
        server = await serve(app)

        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            result = await transport.get("files/file-1", response_type=_Model)

        assert result == _Model(id="file-1", object="file")

    @pytest.mark.asyncio
    async def test_empty_body(self, serve):
        async def handler(request: web.Request) -> web.Response:
            return web.Response(status=204)

        app = web.Application()
        app.router.add_post("/v1/noop", handler)
        server = await serve(app)

        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            assert await transport.post("noop") is None

    @pytest.mark.asyncio
    async def test_invalid_json_response(self, serve):
        async def handler(request: web.Request) -> web.Response:
            return web.Response(text="{not json", content_type="application/json")

        app = web.Application()
        app.router.add_get("/v1/models", handler)
        server = await serve(app)

        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            with pytest.raises(DecodingError):
                await transport.get("models")

    @pytest.mark.asyncio
    async def test_token_provider(self, serve):
        seen = {}

        async def handler(request: web.Request) -> web.Response:
            seen["authorization"] = request.headers.get("Authorization")
            seen["api_key"] = request.headers.get("api-key")
            return web.json_response({})

        app = web.Application()
        app.router.add_get("/openai/models", handler)
        server = await serve(app)

        config = make_configuration(
            str(server.make_url("/openai")),
            api_key="",
            auth_header_name="api-key",
            token_provider=StaticTokenProvider("entra-token"),
        )
        async with Transport(config) as transport:
            await transport.get("models")

        assert seen == {"authorization": "Bearer entra-token", "api_key": None}

    @pytest.mark.asyncio
    async def test_multipart_upload(self, serve):
        received = {}

        async def handler(request: web.Request) -> web.Response:
            form = await request.post()
            received["purpose"] = form["purpose"]
            upload = form["file"]
            received["filename"] = upload.filename
            received["content_type"] = upload.content_type
            received["data"] = upload.file.read()
            return web.json_response({"id": "file-1", "object": "file"})

        app = web.Application()
        app.router.add_post("/v1/files", handler)
        server = await serve(app)

        encoder = (
            MultipartEncoder()
            .add_field("purpose", "fine-tune")
            .add_file("file", "train.jsonl", b'{"a":1}\n', mime_type="application/jsonl")
        )
        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            result = await transport.post_multipart("files", encoder, response_type=_Model)

        assert result.id == "file-1"
        assert received == {
            "purpose": "fine-tune",
            "filename": "train.jsonl",
            "content_type": "application/jsonl",
            "data": b'{"a":1}\n',
        }

    @pytest.mark.asyncio
    async def test_raw_and_delete(self, serve):
        async def content(request: web.Request) -> web.Response:
            return web.Response(body=b"\x00\x01binary")

        async def speech(request: web.Request) -> web.Response:
            payload = await request.json()
            return web.Response(body=payload["input"].encode())

        async def remove(request: web.Request) -> web.Response:
            return web.json_response(
                {"id": request.match_info["file_id"], "object": "file", "deleted": True}
            )

        app = web.Application()
        app.router.add_get("/v1/files/{file_id}/content", content)
        app.router.add_post("/v1/audio/speech", speech)
        app.router.add_delete("/v1/files/{file_id}", remove)
        server = await serve(app)

        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            assert await transport.get_raw("files/file-1/content") == b"\x00\x01binary"
            assert await transport.post_raw("audio/speech", body={"input": "hi"}) == b"hi"
            deleted = await transport.delete("files/file-1")

        assert deleted == {"id": "file-1", "object": "file", "deleted": True}

    @pytest.mark.asyncio
    async def test_external_session(self, serve):
        async def handler(request: web.Request) -> web.Response:
            return web.json_response({"ok": True})

        app = web.Application()
        app.router.add_get("/v1/models", handler)
        server = await serve(app)

        async with aiohttp.ClientSession() as session:
            transport = Transport(make_configuration(str(server.make_url("/v1"))), session=session)
            assert await transport.get("models") == {"ok": True}
            await transport.close()
            assert not session.closed


class TestErrorMapping:
    """错误分类"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,expected",
        [
            (400, APIError),
            (401, AuthenticationError),
            (403, PermissionDeniedError),
            (404, NotFoundError),
            (409, ConflictError),
            (422, UnprocessableEntityError),
            (429, RateLimitError),
            (500, InternalServerError),
            (503, InternalServerError),
        ],
    )
    async def test_status_mapping(self, serve, status, expected):
        async def handler(request: web.Request) -> web.Response:
            return _error_response(status, message=f"status {status}", code="c1")

        app = web.Application()
        app.router.add_get("/v1/models", handler)
        server = await serve(app)

        config = make_configuration(str(server.make_url("/v1")), max_retries=0)
        async with Transport(config) as transport:
            with pytest.raises(APIError) as exc_info:
                await transport.get("models")

        error = exc_info.value
        assert type(error) is expected
        assert error.status_code == status
        assert error.message == f"status {status}"
        assert error.type == "test_error"
        assert error.code == "c1"

    @pytest.mark.asyncio
    async def test_unknown_error_body(self, serve, caplog):
        caplog.set_level(logging.WARNING, logger="openai_flux.transport")
        async def handler(request: web.Request) -> web.Response:
            return web.Response(status=418, text="I'm a teapot")

        app = web.Application()
        app.router.add_get("/v1/models", handler)
        server = await serve(app)

        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            with pytest.raises(APIError) as exc_info:
                await transport.get("models")

        assert type(exc_info.value) is APIError
        assert exc_info.value.status_code == 418
        assert exc_info.value.message == "Unknown error"
        assert "[api_error] GET" in caplog.text


class TestRetry:
    """重试"""

    @pytest.mark.asyncio
    async def test_retry_then_success(self, serve):
        calls = []

        async def handler(request: web.Request) -> web.Response:
            calls.append(await request.read())
            if len(calls) == 1:
                return _error_response(503, "overloaded")
            return web.json_response({"id": "resp-1"})

        app = web.Application()
        app.router.add_post("/v1/responses", handler)
        server = await serve(app)

        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            result = await transport.post("responses", body={"model": "m"})

        assert result == {"id": "resp-1"}
        assert len(calls) == 2
        # 重试原样重发同一请求体
        assert calls[0] == calls[1] == b'{"model":"m"}'

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted(self, serve):
        calls = 0

        async def handler(request: web.Request) -> web.Response:
            nonlocal calls
            calls += 1
            response = _error_response(429, "slow down", code="rate_limit_exceeded")
            response.headers["Retry-After"] = "0"
            return response

        app = web.Application()
        app.router.add_get("/v1/models", handler)
        server = await serve(app)

        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            with pytest.raises(RateLimitError) as exc_info:
                await transport.get("models")

        assert calls == 3
        assert exc_info.value.code == "rate_limit_exceeded"

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, serve):
        calls = 0

        async def handler(request: web.Request) -> web.Response:
            nonlocal calls
            calls += 1
            return _error_response(400, "bad request")

        app = web.Application()
        app.router.add_post("/v1/responses", handler)
        server = await serve(app)

        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            with pytest.raises(APIError):
                await transport.post("responses", body={})

        assert calls == 1

    @pytest.mark.asyncio
    async def test_no_retries(self, serve):
        calls = 0

        async def handler(request: web.Request) -> web.Response:
            nonlocal calls
            calls += 1
            return _error_response(500)

        app = web.Application()
        app.router.add_get("/v1/models", handler)
        server = await serve(app)

        config = make_configuration(str(server.make_url("/v1")), max_retries=0)
        async with Transport(config) as transport:
            with pytest.raises(InternalServerError):
                await transport.get("models")

        assert calls == 1

    @pytest.mark.asyncio
    async def test_connection_refused(self, caplog):
        caplog.set_level(logging.ERROR, logger="openai_flux.transport")
        config = make_configuration(f"http://127.0.0.1:{_unused_port()}/v1")
        async with Transport(config) as transport:
            with pytest.raises(APIConnectionError) as exc_info:
                await transport.get("models")

        assert not isinstance(exc_info.value, APITimeoutError)
        assert "[connection_error] GET" in caplog.text

    @pytest.mark.asyncio
    async def test_timeout(self, serve):
        calls = 0

        async def handler(request: web.Request) -> web.Response:
            nonlocal calls
            calls += 1
            await asyncio.sleep(1)
            return web.json_response({})

        app = web.Application()
        app.router.add_get("/v1/slow", handler)
        server = await serve(app)

        config = make_configuration(str(server.make_url("/v1")), timeout=0.2)
        async with Transport(config) as transport:
            with pytest.raises(APITimeoutError):
                await transport.get("slow")

        assert calls == 1


class TestStreaming:
    """事件流"""

    @pytest.mark.asyncio
    async def test_stream_events(self, serve):
        seen = {}

        async def handler(request: web.Request) -> web.StreamResponse:
            seen["accept"] = request.headers.get("Accept")
            return await _sse_response(
                request,
                [
                    b": keep-alive\n\n",
                    b'data: {"type":"response.output_text.delta","delta":"Hel"}\n\n',
                    b'data: {"type":"response.output_text.delta","delta":"lo"}\n\n',
                    b"data: [DONE]\n\n",
                ],
            )

        app = web.Application()
        app.router.add_post("/v1/responses", handler)
        server = await serve(app)

        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            stream = await transport.post_stream("responses", body={"stream": True})
            async with stream:
                events = [event async for event in stream]
            assert stream.closed

        assert seen["accept"] == "text/event-stream"
        assert "".join(event["delta"] for event in events) == "Hello"

    @pytest.mark.asyncio
    async def test_stream_buffered_mode(self, serve):
        async def handler(request: web.Request) -> web.Response:
            return web.Response(
                body=b'data: {"n":1}\n\ndata: {"n":2}\n\ndata: [DONE]\n\n',
                content_type="text/event-stream",
            )

        app = web.Application()
        app.router.add_post("/v1/responses", handler)
        server = await serve(app)

        config = make_configuration(str(server.make_url("/v1")), streaming_mode="buffered")
        async with Transport(config) as transport:
            stream = await transport.post_stream("responses", body={})
            events = [event async for event in stream]

        assert events == [{"n": 1}, {"n": 2}]

    @pytest.mark.asyncio
    async def test_stream_error_status(self, serve):
        async def handler(request: web.Request) -> web.Response:
            return _error_response(401, "Incorrect API key provided", code="invalid_api_key")

        app = web.Application()
        app.router.add_post("/v1/responses", handler)
        server = await serve(app)

        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            with pytest.raises(AuthenticationError) as exc_info:
                await transport.post_stream("responses", body={})

        assert exc_info.value.message == "Incorrect API key provided"
        assert exc_info.value.code == "invalid_api_key"

    @pytest.mark.asyncio
    async def test_stream_retry_before_headers(self, serve):
        calls = 0

        async def handler(request: web.Request) -> web.StreamResponse:
            nonlocal calls
            calls += 1
            if calls == 1:
                return _error_response(503)
            return await _sse_response(request, [b'data: {"ok":true}\n\n', b"data: [DONE]\n\n"])

        app = web.Application()
        app.router.add_post("/v1/responses", handler)
        server = await serve(app)

        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            stream = await transport.post_stream("responses", body={})
            events = [event async for event in stream]

        assert calls == 2
        assert events == [{"ok": True}]

    @pytest.mark.asyncio
    async def test_stream_early_close(self, serve):
        async def handler(request: web.Request) -> web.StreamResponse:
            lines = [f'data: {{"n":{i}}}\n\n'.encode() for i in range(100)]
            return await _sse_response(request, lines + [b"data: [DONE]\n\n"])

        app = web.Application()
        app.router.add_post("/v1/responses", handler)
        server = await serve(app)

        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            stream = await transport.post_stream("responses", body={})
            first = await stream.__anext__()
            await stream.aclose()

            assert first == {"n": 0}
            assert stream.closed
            assert [event async for event in stream] == []

    @pytest.mark.asyncio
    async def test_stream_decode_error(self, serve):
        async def handler(request: web.Request) -> web.StreamResponse:
            return await _sse_response(request, [b'data: {"n":1}\n\n', b"data: {oops\n\n"])

        app = web.Application()
        app.router.add_post("/v1/responses", handler)
        server = await serve(app)

        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            stream = await transport.post_stream("responses", body={})
            assert await stream.__anext__() == {"n": 1}
            with pytest.raises(DecodingError):
                await stream.__anext__()
            assert stream.closed


class TestPagination:
    """分页"""

    @pytest.mark.asyncio
    async def test_paginate_all_pages(self, serve):
        pages = {
            None: {"object": "list", "data": [{"id": "a", "object": "job"}, {"id": "b", "object": "job"}],
                   "has_more": True, "first_id": "a", "last_id": "b"},
            "b": {"object": "list", "data": [{"id": "c", "object": "job"}],
                  "has_more": None, "first_id": "c", "last_id": "c"},
        }
        seen_queries = []

        async def handler(request: web.Request) -> web.Response:
            seen_queries.append(dict(request.query))
            return web.json_response(pages[request.query.get("after")])

        app = web.Application()
        app.router.add_get("/v1/fine_tuning/jobs", handler)
        server = await serve(app)

        async with Transport(make_configuration(str(server.make_url("/v1")))) as transport:
            first = await transport.get("fine_tuning/jobs", response_type=CursorPage[_Model])
            assert first.has_more
            items = [item.id async for item in paginate(transport, "fine_tuning/jobs", _Model, {"limit": 2})]

        assert items == ["a", "b", "c"]
        assert seen_queries[1:] == [{"limit": "2"}, {"limit": "2", "after": "b"}]
