from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from salescrm.fields.codec import parse_value
from salescrm.fields.errors import (
    INVALID_FIELD_MESSAGE,
    INVALID_OPTION_MESSAGE,
    INVALID_USER_MESSAGE,
    FieldValidationError,
)
from salescrm.fields.types import FieldDefinition, FieldKind, FieldValueInput


@dataclass(slots=True)
class ParsedFieldInputs:
    value_rows: dict[int, dict[str, Any]] = field(default_factory=dict)
    option_values: dict[int, list[int]] = field(default_factory=dict)
    user_values: dict[int, list[int]] = field(default_factory=dict)
    has_value: dict[int, bool] = field(default_factory=dict)

    @property
    def touched_field_ids(self) -> set[int]:
        return set(self.has_value)


def parse_field_inputs(
    fields: Iterable[FieldDefinition],
    inputs: Sequence[FieldValueInput],
    *,
    option_map: Mapping[int, Iterable[int]],
    allowed_user_ids: Iterable[int],
) -> ParsedFieldInputs:
    """Validate a batch of raw inputs against the field definitions they target.

    `fields` must contain every field an input references. The batch is
    all-or-nothing: the first invalid input raises FieldValidationError.
    When the same field appears twice the later input wins.
    """
    by_id = {definition.id: definition for definition in fields}
    options = {field_id: set(option_ids) for field_id, option_ids in option_map.items()}
    allowed_users = set(allowed_user_ids)
    parsed = ParsedFieldInputs()

    for item in inputs:
        definition = by_id.get(item.field_id)
        if definition is None:
            raise FieldValidationError(INVALID_FIELD_MESSAGE, reason="unknown_field")

        value = parse_value(definition.kind, item.value)

        if definition.kind == FieldKind.SINGLE_SELECT and value.has_value:
            option_id = value.columns["value_option_id"]
            if option_id not in options.get(definition.id, set()):
                raise FieldValidationError(INVALID_OPTION_MESSAGE, reason="invalid_option")
        if definition.kind == FieldKind.MULTI_SELECT:
            allowed = options.get(definition.id, set())
            if any(option_id not in allowed for option_id in value.option_ids or []):
                raise FieldValidationError(INVALID_OPTION_MESSAGE, reason="invalid_option")
        if definition.kind == FieldKind.USER and value.has_value:
            if value.columns["value_user_id"] not in allowed_users:
                raise FieldValidationError(INVALID_USER_MESSAGE, reason="invalid_user")
        if definition.kind == FieldKind.USERS:
            if any(user_id not in allowed_users for user_id in value.user_ids or []):
                raise FieldValidationError(INVALID_USER_MESSAGE, reason="invalid_user")

        if value.columns is not None:
            parsed.value_rows[definition.id] = value.columns
        if value.option_ids is not None:
            parsed.option_values[definition.id] = value.option_ids
        if value.user_ids is not None:
            parsed.user_values[definition.id] = value.user_ids
        parsed.has_value[definition.id] = value.has_value

    return parsed
