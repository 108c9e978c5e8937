from __future__ import annotations

from typing import Any, Iterable, Sequence, TypeVar

T = TypeVar("T")


def _field_id(row: Any) -> int | None:
    if isinstance(row, dict):
        return row.get("field_id", row.get("fieldId"))
    return getattr(row, "field_id", None)


def filter_masked(rows: Sequence[T], masked_field_ids: Iterable[int]) -> list[T]:
    masked = set(masked_field_ids)
    if not masked:
        return list(rows)
    return [row for row in rows if _field_id(row) not in masked]
