"""
线上 JSON 编解码与多形态字段

本模块负责内存对象与线上 JSON 之间的转换，使用 Pydantic 进行序列化和校验。

键名映射:
    线上字段统一为 snake_case。Pydantic 模型字段本身就是 snake_case，
    直接按字段名输出；调用方传入的字典若顶层使用 camelCase 字段名 (如从前端
    透传的 {"maxOutputTokens": 100})，编码时转换为 snake_case。字段值中的
    字典键与 None 原样保留。
    to_snake_case / to_camel_case 对常见字段名互为逆运算。

多形态字段 (一个字段多种线上形态):
    ┌────────────────┬─────────────────────────────┬──────────────────┐
    │ 类型            │ 线上形态                     │ 判别              │
    ├────────────────┼─────────────────────────────┼──────────────────┤
    │ StopSequences  │ "stop" 或 ["a", "b"]         │ str / list       │
    │ EmbeddingVector│ [0.1, 0.2] 或 base64 字符串   │ list / str       │
    │ MaxTokens      │ 1024 或 "inf"                │ int / "inf"      │
    └────────────────┴─────────────────────────────┴──────────────────┘
    每种类型都是带 kind 判别的模型，通过 model_validator / model_serializer
    在内存表示和线上形态之间转换，避免使用重载字段。

使用示例:
    body = encode_json({"model": "gpt-4o", "maxTokens": 16})
    # b'{"model":"gpt-4o","max_tokens":16}'

    page = decode_json(raw_bytes, CursorPage[FileObject])
"""

import base64
import json
import re
import struct
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import (
    BaseModel,
    TypeAdapter,
    ValidationError,
    model_serializer,
    model_validator,
)

from .errors import DecodingError

_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def to_snake_case(name: str) -> str:
    """
    camelCase → snake_case

    Example:
        >>> to_snake_case("previousResponseId")
        'previous_response_id'
        >>> to_snake_case("max_tokens")
        'max_tokens'
    """
    return _CAMEL_BOUNDARY_RE.sub("_", name).lower()


def to_camel_case(name: str) -> str:
    """
    snake_case → camelCase

    Example:
        >>> to_camel_case("previous_response_id")
        'previousResponseId'
    """
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def snake_keys(value: Any) -> Any:
    """递归将字典键转换为 snake_case"""
    if isinstance(value, Mapping):
        return {to_snake_case(str(k)): snake_keys(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [snake_keys(v) for v in value]
    return value


def camel_keys(value: Any) -> Any:
    """递归将字典键转换为 camelCase"""
    if isinstance(value, Mapping):
        return {to_camel_case(str(k)): camel_keys(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [camel_keys(v) for v in value]
    return value


def _plain(value: Any) -> Any:
    """把值中的 Pydantic 模型展开为 JSON 结构，字典键与 None 原样保留"""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True, by_alias=True)
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def to_wire(body: Any) -> Any:
    """
    将请求体转换为可 JSON 序列化的线上结构

    只有请求体顶层的字段名做 camelCase → snake_case 映射并省略 None 字段。
    字段值原样透传: metadata 的键、JSON Schema 的属性名与关键字
    (如 additionalProperties) 属于用户数据，不能改写。

    Args:
        body: Pydantic 模型、字典或 JSON 标量

    Returns:
        JSON 兼容结构
    """
    if isinstance(body, BaseModel):
        return body.model_dump(mode="json", exclude_none=True, by_alias=True)
    if isinstance(body, Mapping):
        return {to_snake_case(str(k)): _plain(v) for k, v in body.items() if v is not None}
    return _plain(body)


def encode_json(body: Any) -> bytes:
    """
    编码请求体为 JSON 字节

    Raises:
        DecodingError: 请求体包含无法序列化的值
    """
    try:
        return json.dumps(to_wire(body), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise DecodingError(f"请求体无法编码为 JSON: {e}") from e


def decode_json(data: bytes | str, response_type: Any = None) -> Any:
    """
    解码 JSON 响应

    Args:
        data: 响应体字节或文本
        response_type: 目标类型 (Pydantic 模型或任意 TypeAdapter 支持的类型)，
            None 表示返回原始 dict/list

    Returns:
        解码后的对象

    Raises:
        DecodingError: JSON 语法错误或结构不符合目标类型
    """
    try:
        if response_type is None:
            return json.loads(data)
        if isinstance(response_type, type) and issubclass(response_type, BaseModel):
            return response_type.model_validate_json(data)
        return TypeAdapter(response_type).validate_json(data)
    except json.JSONDecodeError as e:
        raise DecodingError(f"响应不是合法 JSON: {e}") from e
    except ValidationError as e:
        raise DecodingError(
            f"响应结构不符合 {getattr(response_type, '__name__', response_type)}: {e}"
        ) from e


def validate_payload(payload: Any, response_type: Any = None) -> Any:
    """将已解析的 JSON 对象校验为目标类型 (WebSocket 帧使用)"""
    if response_type is None:
        return payload
    try:
        if isinstance(response_type, type) and issubclass(response_type, BaseModel):
            return response_type.model_validate(payload)
        return TypeAdapter(response_type).validate_python(payload)
    except ValidationError as e:
        raise DecodingError(f"事件结构无效: {e}") from e


# ==================== 多形态字段 ====================


class StopSequences(BaseModel):
    """
    停止序列: 单个字符串或字符串数组

    Attributes:
        kind: "single" 或 "multiple"
        values: 停止序列列表 (single 时只有一个元素)
    """

    kind: Literal["single", "multiple"]
    values: list[str]

    @model_validator(mode="before")
    @classmethod
    def _from_wire(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"kind": "single", "values": [data]}
        if isinstance(data, (list, tuple)):
            return {"kind": "multiple", "values": list(data)}
        return data

    @model_serializer
    def _to_wire(self) -> str | list[str]:
        if self.kind == "single":
            return self.values[0]
        return self.values


class EmbeddingVector(BaseModel):
    """
    向量: 浮点数组或 base64 编码的 float32 小端字节

    Attributes:
        kind: "float" 或 "base64"
        floats: kind == "float" 时的向量
        encoded: kind == "base64" 时的原始 base64 字符串
    """

    kind: Literal["float", "base64"]
    floats: list[float] | None = None
    encoded: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _from_wire(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"kind": "base64", "encoded": data}
        if isinstance(data, (list, tuple)):
            return {"kind": "float", "floats": list(data)}
        return data

    @model_serializer
    def _to_wire(self) -> str | list[float]:
        if self.kind == "base64":
            return self.encoded or ""
        return self.floats or []

    def to_floats(self) -> list[float]:
        """返回浮点向量，base64 形态按 float32 小端解码"""
        if self.kind == "float":
            return list(self.floats or [])
        raw = base64.b64decode(self.encoded or "")
        if len(raw) % 4:
            raise DecodingError("base64 向量长度不是 4 字节的整数倍")
        return list(struct.unpack(f"<{len(raw) // 4}f", raw))


class MaxTokens(BaseModel):
    """
    最大 token 数: 整数或 "inf"

    Attributes:
        limit: 整数上限，None 表示无限 ("inf")
    """

    limit: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _from_wire(cls, data: Any) -> Any:
        if data == "inf":
            return {"limit": None}
        if isinstance(data, int) and not isinstance(data, bool):
            return {"limit": data}
        return data

    @model_serializer
    def _to_wire(self) -> int | str:
        return "inf" if self.limit is None else self.limit

    @property
    def is_infinite(self) -> bool:
        return self.limit is None
