# context_fields/errors.py

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class FieldsError(Exception):
    """
    Base error for the field inheritance engine.

    - code: stable machine-readable identifier
    - context: scope metadata (project_id, task_id, field_name, ...)
    """

    default_code = "FIELDS_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None, context: Optional[Dict[str, Any]] = None,
                 original_error: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = dict(context or {})
        self.original_error = original_error
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "context": self.context,
            "timestamp": self.timestamp,
        }

    def __str__(self) -> str:
        return self.message


class ConfigError(FieldsError):
    default_code = "CONFIG_ERROR"


class ValidationError(FieldsError):
    """
    Per-field validation failure. The engine reports these as ValidationResult
    values; this class only exists for callers that want to raise one.
    """

    default_code = "VALIDATION_ERROR"

    def __init__(self, field_name: str, message: str, **kwargs) -> None:
        context = {"field_name": field_name, **kwargs.pop("context", {})}
        super().__init__(message, context=context, **kwargs)
        self.field_name = field_name


class UnknownFieldError(FieldsError, KeyError):
    default_code = "UNKNOWN_FIELD"

    def __init__(self, field_name: str) -> None:
        super().__init__(f"Unknown field: {field_name}", context={"field_name": field_name})
        self.field_name = field_name

    # KeyError.__str__ would quote the message
    def __str__(self) -> str:
        return self.message


class NotFoundError(FieldsError):
    default_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: str, **kwargs) -> None:
        context = {"resource": resource, "id": identifier, **kwargs.pop("context", {})}
        super().__init__(f"{resource} not found: {identifier}", context=context, **kwargs)


class StorageError(FieldsError):
    """
    I/O failure from a ContextStore / OverrideStore. The only fatal class for the
    triggering operation.
    """

    default_code = "STORAGE_ERROR"

    def __init__(self, message: str, *, project_id: Optional[str] = None, task_id: Optional[str] = None,
                 field_name: Optional[str] = None, retryable: bool = True, **kwargs) -> None:
        context = {
            "project_id": project_id,
            "task_id": task_id,
            "field_name": field_name,
            **kwargs.pop("context", {}),
        }
        super().__init__(message, context=context, **kwargs)
        self.project_id = project_id
        self.task_id = task_id
        self.field_name = field_name
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retryable"] = self.retryable
        return data
