# context_fields/field_resolver.py

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from context_fields.field_registry import FieldRegistry
from context_fields.utils import preview
from context_fields.validation_service import ValidationResult, ValidationService

logger = logging.getLogger("context_fields.resolver")


class FieldSource(str, Enum):
    OVERRIDE = "override"
    INHERITED = "inherited"
    DEFAULT = "default"


@dataclass(frozen=True)
class ResolvedField:
    value: Any
    source: FieldSource

    @property
    def is_override(self) -> bool:
        return self.source is FieldSource.OVERRIDE

    @property
    def is_inherited(self) -> bool:
        return self.source is FieldSource.INHERITED

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "source": self.source.value}


UNRESOLVED = ResolvedField(None, FieldSource.DEFAULT)


class FieldResolver:
    """
    Resolves the effective value of a field from three inputs: the task's override
    map, the project's context map and the registry.

    Precedence: a non-None override wins, then the context value (only for
    inheritable fields), then the default (None). The resolver owns no I/O; the
    maps are supplied (and shared) by the caller. set_override/clear_override
    mutate the override map, and only after validation passed.
    """

    def __init__(self, registry: FieldRegistry, validation_service: ValidationService,
                 overrides: Optional[Dict[str, Any]] = None, context: Optional[Dict[str, Any]] = None) -> None:
        self.registry = registry
        self.validation_service = validation_service
        self.overrides = overrides if overrides is not None else {}
        self.context = context if context is not None else {}

    def resolve(self, field_name: str) -> ResolvedField:
        override = self.overrides.get(field_name)
        if override is not None:
            return ResolvedField(override, FieldSource.OVERRIDE)

        if self.registry.is_inheritable(field_name):
            inherited = self.context.get(field_name)
            if inherited is not None:
                return ResolvedField(inherited, FieldSource.INHERITED)

        return UNRESOLVED

    def has_override(self, field_name: str) -> bool:
        return self.overrides.get(field_name) is not None

    def inherited_value(self, field_name: str) -> Any:
        if not self.registry.is_inheritable(field_name):
            return None
        return self.context.get(field_name)

    def check(self, field_name: str, value: Any) -> ValidationResult:
        """
        Validation used before staging an override. Fields unknown to the registry
        are ad hoc: they are accepted unvalidated and flagged with a warning.
        """
        if field_name not in self.registry:
            return ValidationResult(True, warnings=[f"{field_name} is not a registered field; value was not validated"])
        return self.validation_service.validate(field_name, value)

    def set_override(self, field_name: str, value: Any) -> ValidationResult:
        result = self.check(field_name, value)
        if not result.is_valid:
            logger.warning("Override rejected for %s: %s", field_name, result.error)
            return result

        if result.warnings:
            logger.warning("Override for %s staged without validation", field_name)
        self.overrides[field_name] = value
        logger.debug("Set override for field %s: %s", field_name, preview(value))
        return result

    def clear_override(self, field_name: str) -> None:
        self.overrides.pop(field_name, None)
        logger.debug("Cleared override for field %s", field_name)

    def inheritance_chain(self, field_name: str) -> Dict[str, Any]:
        current = self.resolve(field_name)
        inherited = self.context.get(field_name)
        return {
            "field_name": field_name,
            "is_inheritable": self.registry.is_inheritable(field_name),
            "current": current.to_dict(),
            "override": {
                "has_override": self.has_override(field_name),
                "value": self.overrides.get(field_name),
            },
            "inherited": {
                "available": inherited is not None,
                "value": inherited,
            },
        }
