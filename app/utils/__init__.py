"""Utility modules."""

from app.utils.pagination import (
    DEFAULT_LIMIT,
    MAX_LIMIT,
    OffsetPagination,
    PageInfo,
    get_offset_pagination,
)

__all__ = [
    "DEFAULT_LIMIT",
    "MAX_LIMIT",
    "OffsetPagination",
    "PageInfo",
    "get_offset_pagination",
]
