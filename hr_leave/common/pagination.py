"""Page/page-size pagination for list endpoints."""

from __future__ import annotations

import math
from typing import Generic, Sequence, TypeVar

from fastapi import Query
from pydantic import BaseModel
from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")


class PaginationParams:
    """Inject via ``Depends(PaginationParams)``."""

    def __init__(
        self,
        page: int = Query(default=1, ge=1, description="Page number (1-indexed)"),
        page_size: int = Query(default=50, ge=1, le=100, description="Items per page"),
    ) -> None:
        self.page = page
        self.page_size = page_size

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class PaginationMeta(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, page: int, page_size: int, total: int) -> PaginationMeta:
        total_pages = math.ceil(total / page_size) if total else 0
        return cls(
            page=page,
            page_size=page_size,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


class PaginatedResponse(BaseModel, Generic[T]):
    """``{"data": [...], "meta": {...}}``"""

    data: Sequence[T]
    meta: PaginationMeta


async def fetch_page(
    session: AsyncSession,
    query: Select,
    params: PaginationParams,
) -> tuple[Sequence, PaginationMeta]:
    """Rows of the requested page plus the total across all pages.

    ``query`` must already be ordered.
    """
    count_query = select(func.count()).select_from(query.order_by(None).subquery())
    total: int = (await session.execute(count_query)).scalar_one()
    rows = (
        await session.execute(query.offset(params.offset).limit(params.page_size))
    ).scalars().all()
    return rows, PaginationMeta.build(params.page, params.page_size, total)
