from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable

from salescrm.fields.errors import FieldValidationError
from salescrm.fields.types import FieldKind


@dataclass(slots=True)
class ParsedValue:
    """Normalized form of one raw input.

    `columns` is the scalar row to upsert (None for multi-value, file and
    calculation kinds). `option_ids`/`user_ids` are set for multi-value kinds only.
    """

    kind: FieldKind
    columns: dict[str, Any] | None = None
    option_ids: list[int] | None = None
    user_ids: list[int] | None = None
    has_value: bool = False


@dataclass(slots=True)
class _Invalid:
    message: str
    reason: str = "invalid_value"


_EMPTY = object()
_INTEGER_RE = re.compile(r"-?\d+", re.ASCII)
_DECIMAL_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?", re.ASCII)


def _is_empty(raw: Any) -> bool:
    if raw is None:
        return True
    if isinstance(raw, str) and raw.strip() == "":
        return True
    return isinstance(raw, list) and len(raw) == 0


def _coerce_id(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw) if raw.is_integer() else None
    if isinstance(raw, str):
        text = raw.strip()
        if _INTEGER_RE.fullmatch(text):
            return int(text)
    return None


def _parse_text(raw: Any) -> Any:
    if raw is None or raw == "":
        return _EMPTY
    return str(raw)


def _parse_number(raw: Any) -> Any:
    if _is_empty(raw):
        return _EMPTY
    if isinstance(raw, bool) or isinstance(raw, (list, dict)):
        return _Invalid("number field value is invalid")
    if isinstance(raw, str):
        raw = raw.strip()
        if not _DECIMAL_RE.fullmatch(raw):
            return _Invalid("number field value is invalid")
    try:
        number = float(raw)
    except (TypeError, ValueError):
        return _Invalid("number field value is invalid")
    if not math.isfinite(number):
        return _Invalid("number field value is invalid")
    return number


def _parse_date(raw: Any) -> Any:
    if _is_empty(raw):
        return _EMPTY
    if not isinstance(raw, str):
        return _Invalid("date field value is invalid")
    text = raw.strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return _Invalid("date field value is invalid")


def _parse_datetime(raw: Any) -> Any:
    if _is_empty(raw):
        return _EMPTY
    if not isinstance(raw, str):
        return _Invalid("datetime field value is invalid")
    try:
        parsed = datetime.fromisoformat(raw.strip())
    except ValueError:
        return _Invalid("datetime field value is invalid")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_boolean(raw: Any) -> Any:
    if _is_empty(raw):
        return _EMPTY
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, int) and raw in (0, 1):
        return bool(raw)
    if isinstance(raw, str):
        text = raw.strip().lower()
        if text in ("true", "1"):
            return True
        if text in ("false", "0"):
            return False
    return _Invalid("boolean field value is invalid")


def _parse_user(raw: Any) -> Any:
    if _is_empty(raw):
        return _EMPTY
    user_id = _coerce_id(raw)
    if user_id is None:
        return _Invalid("user field value is invalid")
    return user_id


def _parse_option(raw: Any) -> Any:
    if _is_empty(raw):
        return _EMPTY
    option_id = _coerce_id(raw)
    if option_id is None:
        return _Invalid("option field value is invalid")
    return option_id


def _parse_id_list(raw: Any) -> list[int]:
    if _is_empty(raw):
        return []
    items = raw if isinstance(raw, (list, tuple)) else [raw]
    ids: list[int] = []
    for item in items:
        coerced = _coerce_id(item)
        if coerced is not None and coerced not in ids:
            ids.append(coerced)
    return ids


_SCALAR_PARSERS: dict[FieldKind, tuple[str, Callable[[Any], Any]]] = {
    FieldKind.TEXT: ("value_text", _parse_text),
    FieldKind.NUMBER: ("value_number", _parse_number),
    FieldKind.DATE: ("value_date", _parse_date),
    FieldKind.DATETIME: ("value_datetime", _parse_datetime),
    FieldKind.BOOLEAN: ("value_boolean", _parse_boolean),
    FieldKind.USER: ("value_user_id", _parse_user),
    FieldKind.SINGLE_SELECT: ("value_option_id", _parse_option),
}


def column_for(kind: FieldKind) -> str | None:
    entry = _SCALAR_PARSERS.get(kind)
    if entry is not None:
        return entry[0]
    if kind == FieldKind.CALCULATION:
        return "value_number"
    return None


def parse_value(kind: FieldKind, raw: Any) -> ParsedValue:
    """Normalize one raw input for a field of the given kind.

    Raises FieldValidationError when a non-empty raw value does not fit the kind.
    """
    kind = FieldKind(kind)

    if kind == FieldKind.MULTI_SELECT:
        option_ids = _parse_id_list(raw)
        return ParsedValue(kind, option_ids=option_ids, has_value=bool(option_ids))
    if kind == FieldKind.USERS:
        user_ids = _parse_id_list(raw)
        return ParsedValue(kind, user_ids=user_ids, has_value=bool(user_ids))
    if kind in (FieldKind.FILE, FieldKind.CALCULATION):
        return ParsedValue(kind)

    column, parser = _SCALAR_PARSERS[kind]
    parsed = parser(raw)
    if isinstance(parsed, _Invalid):
        raise FieldValidationError(parsed.message, reason=parsed.reason)
    if parsed is _EMPTY:
        return ParsedValue(kind, columns={column: None}, has_value=False)
    return ParsedValue(kind, columns={column: parsed}, has_value=True)


def serialize_scalar(kind: FieldKind, columns: dict[str, Any] | None) -> Any:
    """Raw wire value for a stored scalar row; the inverse of parse_value."""
    column = column_for(FieldKind(kind))
    if column is None or not columns:
        return None
    value = columns.get(column)
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value
