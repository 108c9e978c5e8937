from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from opentelemetry import trace

from salescrm.fields import formula
from salescrm.fields.completeness import StoredFieldState, ensure_required_complete
from salescrm.fields.errors import INVALID_FILE_FIELD_MESSAGE, FieldValidationError
from salescrm.fields.inputs import parse_field_inputs
from salescrm.fields.types import FieldDefinition, FieldKind, FieldValueInput, ObjectType
from salescrm.metrics import observe_formula_warnings, observe_validation_failure

logger = logging.getLogger("salescrm.fields.engine")
tracer = trace.get_tracer("salescrm.fields")


@dataclass(slots=True)
class FieldWritePlan:
    """Everything a create/update needs to persist, computed before any write."""

    value_rows: dict[int, dict[str, Any]] = field(default_factory=dict)
    option_values: dict[int, list[int]] = field(default_factory=dict)
    user_values: dict[int, list[int]] = field(default_factory=dict)
    calculated: dict[int, float | None] = field(default_factory=dict)
    has_value: dict[int, bool] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


class FieldValueEngine:
    def prepare(
        self,
        *,
        object_type: ObjectType,
        fields: Sequence[FieldDefinition],
        inputs: Sequence[FieldValueInput],
        option_map: Mapping[int, Iterable[int]] | None = None,
        allowed_user_ids: Iterable[int] = (),
        stored: StoredFieldState | None = None,
        incoming_file_counts: Mapping[int, int] | None = None,
    ) -> FieldWritePlan:
        """Validate inputs, recompute calculations and check required fields.

        `fields` is every active field of the object type visible to the caller.
        Raises FieldValidationError without side effects when the batch is rejected.
        """
        stored = stored or StoredFieldState()
        incoming_file_counts = dict(incoming_file_counts or {})

        with tracer.start_as_current_span("custom_fields.prepare") as span:
            span.set_attribute("object_type", str(object_type))
            span.set_attribute("input_count", len(inputs))
            try:
                plan = self._prepare(
                    fields=fields,
                    inputs=inputs,
                    option_map=option_map or {},
                    allowed_user_ids=allowed_user_ids,
                    stored=stored,
                    incoming_file_counts=incoming_file_counts,
                )
            except FieldValidationError as exc:
                observe_validation_failure(str(object_type), exc.reason)
                logger.info(
                    "custom_fields.rejected",
                    extra={"object_type": str(object_type), "reason": exc.reason},
                )
                raise

            if plan.warnings:
                observe_formula_warnings(str(object_type), len(plan.warnings))
                logger.info(
                    "custom_fields.formula_warnings",
                    extra={"object_type": str(object_type), "warning_count": len(plan.warnings)},
                )
            return plan

    def _prepare(
        self,
        *,
        fields: Sequence[FieldDefinition],
        inputs: Sequence[FieldValueInput],
        option_map: Mapping[int, Iterable[int]],
        allowed_user_ids: Iterable[int],
        stored: StoredFieldState,
        incoming_file_counts: Mapping[int, int],
    ) -> FieldWritePlan:
        by_id = {definition.id: definition for definition in fields}
        for field_id, count in incoming_file_counts.items():
            definition = by_id.get(field_id)
            if count and (definition is None or definition.kind != FieldKind.FILE):
                raise FieldValidationError(INVALID_FILE_FIELD_MESSAGE, reason="unknown_file_field")

        parsed = parse_field_inputs(
            fields,
            inputs,
            option_map=option_map,
            allowed_user_ids=allowed_user_ids,
        )
        plan = FieldWritePlan(
            value_rows=dict(parsed.value_rows),
            option_values=dict(parsed.option_values),
            user_values=dict(parsed.user_values),
            has_value=dict(parsed.has_value),
        )

        numbers: dict[int, float | None] = {}
        for definition in fields:
            if definition.kind != FieldKind.NUMBER:
                continue
            if definition.id in parsed.value_rows:
                numbers[definition.id] = parsed.value_rows[definition.id].get("value_number")
            else:
                numbers[definition.id] = stored.number_value(definition.id)

        calculations = {
            definition.id: definition
            for definition in sorted(
                (definition for definition in fields if definition.kind == FieldKind.CALCULATION),
                key=lambda definition: (definition.position, definition.id),
            )
        }
        ordered, cyclic = formula.calculation_order(
            {field_id: definition.formula for field_id, definition in calculations.items()}
        )
        for field_id in [*ordered, *sorted(cyclic)]:
            definition = calculations[field_id]
            if field_id in cyclic:
                result = formula.FormulaResult(None)
            else:
                result = formula.evaluate(definition.formula, numbers)
            numbers[definition.id] = result.value
            plan.calculated[definition.id] = result.value
            plan.value_rows[definition.id] = {"value_number": result.value}
            plan.has_value[definition.id] = result.value is not None
            plan.warnings.extend(f"{definition.label}: {warning}" for warning in result.warnings)

        ensure_required_complete(
            fields,
            has_value=parsed.has_value,
            stored=stored,
            incoming_file_counts=incoming_file_counts,
            calculated=plan.calculated,
        )
        return plan


field_value_engine = FieldValueEngine()
