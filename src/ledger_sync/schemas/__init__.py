"""Wire schemas for backend payloads."""

from .fragment import (
    ItemPayload,
    extract_items,
    extract_stats,
    parse_item_fragment,
    parse_remote_stats,
)

__all__ = [
    "ItemPayload",
    "extract_items",
    "extract_stats",
    "parse_item_fragment",
    "parse_remote_stats",
]
