"""
游标分页

列表接口返回 {"object": "list", "data": [...], "has_more": bool,
"first_id": str, "last_id": str}，下一页通过 after=<last_id> 获取。

使用示例:
    first = await transport.get("fine_tuning/jobs", response_type=CursorPage[Job])

    async for job in first.auto_paginate(
        lambda after: transport.get(
            "fine_tuning/jobs", query={"after": after}, response_type=CursorPage[Job]
        )
    ):
        print(job.id)

    # 或直接:
    async for job in paginate(transport, "fine_tuning/jobs", Job, query={"limit": 20}):
        ...
"""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from pydantic import BaseModel, field_validator

if TYPE_CHECKING:
    from .transport import Transport

T = TypeVar("T")

logger = logging.getLogger("openai_flux.pagination")


class CursorPage(BaseModel, Generic[T]):
    """
    游标分页结果

    Attributes:
        data: 本页数据
        has_more: 是否还有下一页
        first_id: 本页第一条的 ID
        last_id: 本页最后一条的 ID (下一页的 after 参数)
    """

    data: list[T]
    has_more: bool = False
    first_id: str | None = None
    last_id: str | None = None

    @field_validator("has_more", mode="before")
    @classmethod
    def _none_as_false(cls, value: Any) -> Any:
        return False if value is None else value

    async def auto_paginate(
        self,
        fetch_next_page: Callable[[str], Awaitable["CursorPage[T]"]],
    ) -> AsyncIterator[T]:
        """
        从本页开始逐条产出所有页的数据

        Args:
            fetch_next_page: 以 last_id 为参数获取下一页的协程函数
        """
        page: CursorPage[T] | None = self
        page_count = 0
        while page is not None:
            page_count += 1
            for item in page.data:
                yield item

            if not page.has_more or not page.last_id:
                break
            page = await fetch_next_page(page.last_id)

        logger.debug(f"自动翻页结束，共 {page_count} 页")


async def paginate(
    transport: "Transport",
    path: str,
    item_type: Any = Any,
    query: Mapping[str, Any] | None = None,
) -> AsyncIterator[Any]:
    """
    拉取列表接口的全部数据 (自动翻页)

    Args:
        transport: 传输层
        path: 列表接口路径
        item_type: 单条数据的类型
        query: 首页查询参数，翻页时追加 after
    """
    page_type = CursorPage[item_type]
    base_query = dict(query or {})

    async def fetch_next_page(after: str) -> CursorPage:
        return await transport.get(
            path, query={**base_query, "after": after}, response_type=page_type
        )

    first = await transport.get(path, query=base_query or None, response_type=page_type)
    async for item in first.auto_paginate(fetch_next_page):
        yield item
