"""
multipart/form-data 编码器

用于文件上传类接口 (音频转写、文件上传、图片编辑等)。

帧格式:
    --{boundary}\\r\\n
    Content-Disposition: form-data; name="{name}"[; filename="{filename}"]\\r\\n
    [Content-Type: {mime_type}\\r\\n]
    \\r\\n
    {data}\\r\\n
    ...
    --{boundary}--\\r\\n

清洗规则:
    name / filename 去除 CR/LF 并把 '"' 转义为 '\\"'，
    mime_type 去除 CR/LF。不可信的文件名无法注入请求头或伪造分段。

boundary 默认每个编码器随机生成，并发编码互不冲突；
相同 boundary 与相同分段顺序的编码结果完全一致。
"""

import uuid
from dataclasses import dataclass

from .request import strip_crlf

CRLF = b"\r\n"


def _quote(value: str) -> str:
    """quoted-string 转义: 先转义反斜杠再转义引号"""
    return strip_crlf(value).replace("\\", "\\\\").replace('"', '\\"')


@dataclass
class FieldPart:
    """文本字段"""
    name: str
    value: str


@dataclass
class FilePart:
    """文件字段"""
    name: str
    filename: str
    mime_type: str
    data: bytes


class MultipartEncoder:
    """
    multipart/form-data 编码器

    Attributes:
        boundary: 分隔符
        parts: 有序分段列表
    """

    def __init__(self, boundary: str | None = None):
        self.boundary = boundary or f"openai-flux-{uuid.uuid4().hex}"
        self.parts: list[FieldPart | FilePart] = []

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    def add_field(self, name: str, value: str) -> "MultipartEncoder":
        self.parts.append(FieldPart(name=name, value=str(value)))
        return self

    def add_file(
        self,
        name: str,
        filename: str,
        data: bytes,
        mime_type: str = "application/octet-stream",
    ) -> "MultipartEncoder":
        self.parts.append(FilePart(name=name, filename=filename, mime_type=mime_type, data=data))
        return self

    def encode(self) -> tuple[str, bytes]:
        """
        编码所有分段

        Returns:
            (Content-Type 头值, 请求体字节)
        """
        delimiter = f"--{self.boundary}".encode("utf-8")
        chunks: list[bytes] = []

        for part in self.parts:
            chunks.append(delimiter + CRLF)
            if isinstance(part, FilePart):
                disposition = (
                    f'Content-Disposition: form-data; name="{_quote(part.name)}"; '
                    f'filename="{_quote(part.filename)}"'
                )
                chunks.append(disposition.encode("utf-8") + CRLF)
                chunks.append(f"Content-Type: {strip_crlf(part.mime_type)}".encode("utf-8") + CRLF)
                chunks.append(CRLF)
                chunks.append(bytes(part.data))
            else:
                disposition = f'Content-Disposition: form-data; name="{_quote(part.name)}"'
                chunks.append(disposition.encode("utf-8") + CRLF)
                chunks.append(CRLF)
                chunks.append(part.value.encode("utf-8"))
            chunks.append(CRLF)

        chunks.append(delimiter + b"--" + CRLF)
        return self.content_type, b"".join(chunks)
