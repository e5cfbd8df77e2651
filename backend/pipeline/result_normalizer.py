"""
Result Normalizer
=================
Strips null and empty-string values from scraped records before they are
forwarded downstream.

- Mapping entries whose value is None or "" are dropped.
- Nested mappings are cleaned and dropped if cleaning leaves them empty.
- Sequences lose their None/"" entries and are dropped if that empties them.

Recursion stops at MAX_DEPTH; anything deeper is passed through untouched,
which also keeps cyclic input from recursing forever.
"""

from typing import Any

import structlog

logger = structlog.get_logger().bind(component="result_normalizer")

MAX_DEPTH = 32


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def _clean_sequence(items: list | tuple, depth: int, max_depth: int) -> list:
    cleaned = []
    for item in items:
        if _is_blank(item):
            continue
        if isinstance(item, dict):
            item = _clean_mapping(item, depth + 1, max_depth)
        cleaned.append(item)
    return cleaned


def _clean_mapping(data: dict, depth: int, max_depth: int) -> dict:
    if depth >= max_depth:
        logger.warning("normalize_depth_exceeded", max_depth=max_depth)
        return data

    cleaned = {}
    for key, value in data.items():
        if _is_blank(value):
            continue
        if isinstance(value, dict):
            nested = _clean_mapping(value, depth + 1, max_depth)
            if nested:
                cleaned[key] = nested
        elif isinstance(value, (list, tuple)):
            items = _clean_sequence(value, depth + 1, max_depth)
            if items:
                cleaned[key] = items
        else:
            cleaned[key] = value
    return cleaned


def normalize(value: Any, max_depth: int = MAX_DEPTH) -> Any:
    """Return a cleaned copy of `value`. Scalars are returned unchanged."""
    if isinstance(value, dict):
        return _clean_mapping(value, 0, max_depth)
    if isinstance(value, (list, tuple)):
        return _clean_sequence(value, 0, max_depth)
    return value


def normalize_records(records: list[dict], max_depth: int = MAX_DEPTH) -> list[dict]:
    """Clean each scraped record. Records are kept even if they end up empty."""
    return [
        _clean_mapping(record, 0, max_depth) if isinstance(record, dict) else record
        for record in records
    ]
