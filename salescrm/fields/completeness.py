from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from salescrm.fields.errors import MISSING_REQUIRED_MESSAGE, FieldValidationError
from salescrm.fields.types import FieldDefinition, FieldKind, has_stored_value


@dataclass(slots=True)
class StoredFieldState:
    """What a record already holds, keyed by field id. Empty for a new record."""

    scalar_rows: Mapping[int, Mapping[str, Any]] = field(default_factory=dict)
    option_counts: Mapping[int, int] = field(default_factory=dict)
    user_counts: Mapping[int, int] = field(default_factory=dict)
    file_counts: Mapping[int, int] = field(default_factory=dict)

    def number_value(self, field_id: int) -> float | None:
        row = self.scalar_rows.get(field_id)
        if row is None:
            return None
        return row.get("value_number")


def _is_satisfied(
    definition: FieldDefinition,
    *,
    touched: bool,
    has_value: Mapping[int, bool],
    stored: StoredFieldState,
    incoming_file_counts: Mapping[int, int],
    calculated: Mapping[int, float | None],
) -> bool:
    field_id = definition.id
    if definition.kind == FieldKind.CALCULATION:
        return calculated.get(field_id) is not None
    if definition.kind == FieldKind.FILE:
        return stored.file_counts.get(field_id, 0) + incoming_file_counts.get(field_id, 0) > 0
    if touched:
        return bool(has_value.get(field_id))
    if definition.kind == FieldKind.MULTI_SELECT:
        return stored.option_counts.get(field_id, 0) > 0
    if definition.kind == FieldKind.USERS:
        return stored.user_counts.get(field_id, 0) > 0
    return has_stored_value(dict(stored.scalar_rows.get(field_id) or {}))


def find_missing_required(
    fields: Iterable[FieldDefinition],
    *,
    has_value: Mapping[int, bool],
    stored: StoredFieldState | None = None,
    incoming_file_counts: Mapping[int, int] | None = None,
    calculated: Mapping[int, float | None] | None = None,
) -> list[FieldDefinition]:
    """Required fields that would end up without a value after this write.

    A field counts as touched when it appears in `has_value`; touched fields are
    judged only by the incoming value, untouched ones by what is stored.
    """
    stored = stored or StoredFieldState()
    incoming_file_counts = incoming_file_counts or {}
    calculated = calculated or {}

    missing: list[FieldDefinition] = []
    for definition in fields:
        if not definition.required:
            continue
        satisfied = _is_satisfied(
            definition,
            touched=definition.id in has_value,
            has_value=has_value,
            stored=stored,
            incoming_file_counts=incoming_file_counts,
            calculated=calculated,
        )
        if not satisfied:
            missing.append(definition)
    return missing


def ensure_required_complete(fields: Iterable[FieldDefinition], **kwargs: Any) -> None:
    if find_missing_required(fields, **kwargs):
        raise FieldValidationError(MISSING_REQUIRED_MESSAGE, reason="required_missing")
