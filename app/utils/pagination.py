"""Offset pagination utilities for list endpoints."""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Query


# Pagination limits
DEFAULT_LIMIT = 50
MAX_LIMIT = 100


@dataclass(frozen=True)
class OffsetPagination:
    """Pagination parameters from query string."""
    limit: int = DEFAULT_LIMIT
    offset: int = 0

    @classmethod
    def clamp(cls, limit: int | None, offset: int | None) -> "OffsetPagination":
        """Cap limit at MAX_LIMIT, fall back to defaults for missing/invalid values."""
        resolved_limit = DEFAULT_LIMIT if not limit or limit < 1 else min(limit, MAX_LIMIT)
        resolved_offset = offset if offset and offset > 0 else 0
        return cls(limit=resolved_limit, offset=resolved_offset)


def get_offset_pagination(
    limit: Annotated[int | None, Query(ge=1, description=f"Page size (max {MAX_LIMIT})")] = None,
    offset: Annotated[int | None, Query(ge=0)] = None,
) -> OffsetPagination:
    """
    Pagination dependency.

    Usage:
        @router.get("/items")
        def list_items(pagination: OffsetPagination = Depends(get_offset_pagination)):
            ...
    """
    return OffsetPagination.clamp(limit, offset)


@dataclass(frozen=True)
class PageInfo:
    """Continuation info derived from a single total count."""
    has_more: bool
    next_offset: int | None
    total: int

    @classmethod
    def create(cls, total: int, pagination: OffsetPagination) -> "PageInfo":
        has_more = pagination.offset + pagination.limit < total
        return cls(
            has_more=has_more,
            next_offset=pagination.offset + pagination.limit if has_more else None,
            total=total,
        )

    def to_dict(self) -> dict:
        return {"hasMore": self.has_more, "nextOffset": self.next_offset, "total": self.total}
