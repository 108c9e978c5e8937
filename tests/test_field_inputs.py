from __future__ import annotations

import pytest

from salescrm.fields.errors import (
    INVALID_FIELD_MESSAGE,
    INVALID_OPTION_MESSAGE,
    INVALID_USER_MESSAGE,
    FieldValidationError,
)
from salescrm.fields.inputs import parse_field_inputs
from salescrm.fields.types import FieldDefinition, FieldKind, FieldValueInput, ObjectType


FIELDS = [
    FieldDefinition(id=1, object_type=ObjectType.DEAL, label="Budget", kind=FieldKind.NUMBER),
    FieldDefinition(id=2, object_type=ObjectType.DEAL, label="Tier", kind=FieldKind.SINGLE_SELECT),
    FieldDefinition(id=3, object_type=ObjectType.DEAL, label="Tags", kind=FieldKind.MULTI_SELECT),
    FieldDefinition(id=4, object_type=ObjectType.DEAL, label="Reviewer", kind=FieldKind.USER),
    FieldDefinition(id=5, object_type=ObjectType.DEAL, label="Watchers", kind=FieldKind.USERS),
]
OPTIONS = {2: {20, 21}, 3: {30, 31, 32}}
USERS = {100, 101}


def _parse(*inputs: FieldValueInput):
    return parse_field_inputs(FIELDS, list(inputs), option_map=OPTIONS, allowed_user_ids=USERS)


def test_valid_batch_splits_rows_by_storage_shape() -> None:
    parsed = _parse(
        FieldValueInput(1, "250"),
        FieldValueInput(2, 21),
        FieldValueInput(3, [30, 32]),
        FieldValueInput(4, 100),
        FieldValueInput(5, [101, 100]),
    )

    assert parsed.value_rows == {
        1: {"value_number": 250.0},
        2: {"value_option_id": 21},
        4: {"value_user_id": 100},
    }
    assert parsed.option_values == {3: [30, 32]}
    assert parsed.user_values == {5: [101, 100]}
    assert parsed.has_value == {1: True, 2: True, 3: True, 4: True, 5: True}
    assert parsed.touched_field_ids == {1, 2, 3, 4, 5}


def test_unknown_field_rejects_whole_batch() -> None:
    with pytest.raises(FieldValidationError) as exc:
        _parse(FieldValueInput(1, 5), FieldValueInput(99, "x"))
    assert exc.value.message == INVALID_FIELD_MESSAGE


def test_option_outside_allowed_set_is_rejected() -> None:
    with pytest.raises(FieldValidationError) as single:
        _parse(FieldValueInput(2, 30))
    assert single.value.message == INVALID_OPTION_MESSAGE

    with pytest.raises(FieldValidationError) as multi:
        _parse(FieldValueInput(3, [30, 21]))
    assert multi.value.message == INVALID_OPTION_MESSAGE


def test_user_outside_assignable_set_is_rejected() -> None:
    with pytest.raises(FieldValidationError) as single:
        _parse(FieldValueInput(4, 555))
    assert single.value.message == INVALID_USER_MESSAGE

    with pytest.raises(FieldValidationError):
        _parse(FieldValueInput(5, [100, 555]))


def test_clearing_values_is_touched_but_empty() -> None:
    parsed = _parse(FieldValueInput(1, None), FieldValueInput(3, []), FieldValueInput(2, ""))

    assert parsed.value_rows == {1: {"value_number": None}, 2: {"value_option_id": None}}
    assert parsed.option_values == {3: []}
    assert parsed.has_value == {1: False, 3: False, 2: False}


def test_later_duplicate_input_wins() -> None:
    parsed = _parse(FieldValueInput(1, 1), FieldValueInput(1, 2))

    assert parsed.value_rows == {1: {"value_number": 2.0}}
