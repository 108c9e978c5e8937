from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class ObjectType(StrEnum):
    DEAL = "DEAL"
    LEAD = "LEAD"
    CONTACT = "CONTACT"
    COMPANY = "COMPANY"


class FieldKind(StrEnum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    DATETIME = "datetime"
    BOOLEAN = "boolean"
    SINGLE_SELECT = "single_select"
    MULTI_SELECT = "multi_select"
    USER = "user"
    USERS = "users"
    FILE = "file"
    CALCULATION = "calculation"


SELECT_KINDS = frozenset({FieldKind.SINGLE_SELECT, FieldKind.MULTI_SELECT})
NUMERIC_KINDS = frozenset({FieldKind.NUMBER, FieldKind.CALCULATION})

SCALAR_COLUMNS = (
    "value_text",
    "value_number",
    "value_date",
    "value_datetime",
    "value_boolean",
    "value_user_id",
    "value_option_id",
)


@dataclass(slots=True, frozen=True)
class FieldDefinition:
    """Detached snapshot of a custom field, safe to pass around outside a session."""

    id: int
    object_type: ObjectType
    label: str
    kind: FieldKind
    required: bool = False
    masked: bool = False
    position: int = 0
    formula: str | None = None
    workspace_id: int | None = None

    @classmethod
    def from_model(cls, model: Any) -> FieldDefinition:
        return cls(
            id=model.id,
            object_type=ObjectType(model.object_type),
            label=model.label,
            kind=FieldKind(model.kind),
            required=bool(model.required),
            masked=bool(model.masked),
            position=model.position,
            formula=model.formula,
            workspace_id=model.workspace_id,
        )


@dataclass(slots=True, frozen=True)
class FieldValueInput:
    field_id: int
    value: Any


def has_stored_value(columns: dict[str, Any] | None) -> bool:
    if not columns:
        return False
    return any(columns.get(column) is not None for column in SCALAR_COLUMNS)
