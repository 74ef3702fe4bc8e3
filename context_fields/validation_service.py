# context_fields/validation_service.py

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from context_fields.errors import UnknownFieldError, ValidationError
from context_fields.field_registry import CanonicalFieldDefinition, FieldRegistry

logger = logging.getLogger("context_fields.validation")

# keys of a stored context row that are not canonical fields
BOOKKEEPING_KEYS = {"id", "project_id", "projectId", "user_id", "userId", "created_at", "createdAt", "updated_at", "updatedAt"}


@dataclass
class ValidationResult:
    is_valid: bool
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"is_valid": self.is_valid}
        if self.error is not None:
            out["error"] = self.error
        if self.warnings:
            out["warnings"] = list(self.warnings)
        return out

    def raise_for_error(self, field_name: str) -> None:
        if not self.is_valid:
            raise ValidationError(field_name, self.error or f"{field_name} is invalid")


@dataclass
class BatchValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"is_valid": self.is_valid, "errors": list(self.errors), "warnings": list(self.warnings)}


def _is_number(value) -> bool:
    # bool is an int subclass, a checkbox value is not a budget
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _decimal_places(value) -> int:
    exponent = Decimal(str(value)).normalize().as_tuple().exponent
    return -exponent if exponent < 0 else 0


class ValidationService:
    """
    Stateless validator of candidate values against canonical field definitions.

    Ordinary invalid input never raises: the outcome is a ValidationResult with an
    explanatory error. Asking about a field the registry does not know is a
    programmer error and raises UnknownFieldError.
    """

    def __init__(self, registry: FieldRegistry) -> None:
        self.registry = registry

    def validate(self, field_name: str, value: Any) -> ValidationResult:
        definition = self.registry.definition_of(field_name)
        if definition is None:
            raise UnknownFieldError(field_name)
        return self.validate_definition(definition, value)

    def validate_definition(self, definition: CanonicalFieldDefinition, value: Any) -> ValidationResult:
        label = definition.label
        rule = definition.validation

        if value is None or (definition.required and value == ""):
            if definition.required:
                return ValidationResult(False, f"{label} is required")
            return ValidationResult(True)

        if definition.type == "string":
            if not isinstance(value, str):
                return ValidationResult(False, f"{label} must be a string")
            if rule.min_length is not None and len(value) < rule.min_length:
                return ValidationResult(False, f"{label} must be at least {rule.min_length} characters")
            if rule.max_length is not None and len(value) > rule.max_length:
                return ValidationResult(False, f"{label} cannot exceed {rule.max_length} characters")
            if rule.pattern and not re.match(rule.pattern, value):
                return ValidationResult(False, f"{label} contains invalid characters")

        elif definition.type == "number":
            if not _is_number(value):
                return ValidationResult(False, f"{label} must be a number, got {type(value).__name__} {value!r}")
            if value != value:
                return ValidationResult(False, f"{label} must be a number, got NaN")
            if rule.min is not None and value < rule.min:
                return ValidationResult(False, f"{label} cannot be less than {rule.min}")
            if rule.max is not None and value > rule.max:
                return ValidationResult(False, f"{label} cannot exceed {rule.max}")
            if rule.max_decimals is not None and _decimal_places(value) > rule.max_decimals:
                return ValidationResult(False, f"{label} allows at most {rule.max_decimals} decimal places")

        elif definition.type == "enum":
            if value not in rule.values:
                allowed = ", ".join(str(v) for v in rule.values)
                return ValidationResult(False, f"{label} must be one of: {allowed}")

        elif definition.type == "boolean":
            if not isinstance(value, bool):
                return ValidationResult(False, f"{label} must be true or false")

        elif definition.type == "json":
            if not isinstance(value, dict):
                return ValidationResult(False, f"{label} must be a JSON object")

        return ValidationResult(True)

    def validate_partial_update(self, updates: Mapping[str, Any]) -> BatchValidation:
        if not isinstance(updates, Mapping):
            return BatchValidation(False, ["Updates must be an object"])

        errors: List[str] = []
        for field_name, value in updates.items():
            if field_name not in self.registry:
                errors.append(f"Unknown field: {field_name}")
                continue
            result = self.validate(field_name, value)
            if not result.is_valid:
                errors.append(result.error)
        return BatchValidation(not errors, errors)

    def validate_context(self, context_data: Mapping[str, Any]) -> BatchValidation:
        """
        Validates a whole project context. Unknown keys are reported as warnings,
        bookkeeping keys are skipped.
        """
        if not isinstance(context_data, Mapping):
            return BatchValidation(False, ["Context data must be an object"])

        errors: List[str] = []
        warnings: List[str] = []
        for field_name, value in context_data.items():
            if field_name.startswith("_") or field_name in BOOKKEEPING_KEYS:
                continue
            if field_name not in self.registry:
                warnings.append(f"Unknown field: {field_name}")
                continue
            result = self.validate(field_name, value)
            if not result.is_valid:
                errors.append(result.error)

        if context_data.get("primaryGoal") and not context_data.get("targetTimeline"):
            warnings.append("Primary goal is set but target timeline is not. Consider adding a timeline.")

        return BatchValidation(not errors, errors, warnings)

    def sanitize_context(self, context_data: Mapping[str, Any]) -> Dict[str, Any]:
        """Drops unknown and invalid fields; bookkeeping keys pass through."""
        sanitized: Dict[str, Any] = {}
        for field_name, value in context_data.items():
            if field_name.startswith("_") or field_name in BOOKKEEPING_KEYS:
                sanitized[field_name] = value
            elif field_name in self.registry and self.validate(field_name, value).is_valid:
                sanitized[field_name] = value
            else:
                logger.debug("sanitize_context: dropping %s", field_name)
        return sanitized

    def suggestions(self, field_name: str, value: Any) -> List[str]:
        definition = self.registry.definition_of(field_name)
        if definition is None:
            return ["Field not found"]

        rule = definition.validation
        out: List[str] = []
        if definition.type == "string":
            if not isinstance(value, str):
                out.append(f'Convert to string: "{value}"')
            elif rule.max_length is not None and len(value) > rule.max_length:
                out.append(f'Truncate to {rule.max_length} characters: "{value[:rule.max_length]}"')
            elif rule.min_length is not None and len(value) < rule.min_length:
                out.append(f"Must be at least {rule.min_length} characters")
        elif definition.type == "enum":
            out.append(f"Use one of: {', '.join(str(v) for v in rule.values)}")
        elif definition.type == "number":
            if isinstance(value, str):
                try:
                    out.append(f"Use the number {float(value)!r} instead of the text {value!r}")
                except ValueError:
                    out.append("Enter digits only")
            if rule.min is not None and rule.max is not None:
                out.append(f"Use a value between {rule.min} and {rule.max}")
        elif definition.type == "boolean":
            out.append("Use true or false")
        elif definition.type == "json":
            out.append('Use an object such as {"frontend": "React"}')

        return out or ["No suggestions available"]
