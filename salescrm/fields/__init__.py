from salescrm.fields.engine import FieldValueEngine, FieldWritePlan, field_value_engine
from salescrm.fields.errors import FieldValidationError
from salescrm.fields.types import FieldDefinition, FieldKind, FieldValueInput, ObjectType

__all__ = [
    "FieldDefinition",
    "FieldKind",
    "FieldValidationError",
    "FieldValueEngine",
    "FieldValueInput",
    "FieldWritePlan",
    "ObjectType",
    "field_value_engine",
]
