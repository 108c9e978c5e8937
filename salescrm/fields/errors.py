from __future__ import annotations


class FieldValidationError(Exception):
    """User-fixable problem with submitted custom-field data. The whole batch is rejected."""

    status_code = 400

    def __init__(self, message: str, *, reason: str = "invalid_value") -> None:
        self.message = message
        self.reason = reason
        super().__init__(message)


INVALID_FIELD_MESSAGE = "custom field information is invalid"
INVALID_FILE_FIELD_MESSAGE = "file field information is invalid"
INVALID_OPTION_MESSAGE = "selected option is invalid"
INVALID_USER_MESSAGE = "selected user is invalid"
MISSING_REQUIRED_MESSAGE = "required custom fields are missing"
