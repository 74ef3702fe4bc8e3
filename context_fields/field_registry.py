# context_fields/field_registry.py
"""
Canonical field registry.

The registry is the single source of truth for every field a mini-app can share
with the project context: its name, type, inheritability, validation rule and UI
hints. It is loaded once from a JSON-with-comments table and never mutated.

Each definition also carries its snake_case column name. The camelCase <->
snake_case translation goes through that explicit table (checked for duplicates
at load time) instead of string munging.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import commentjson

from context_fields.errors import ConfigError

logger = logging.getLogger("context_fields.registry")

FIELD_TYPES = ("string", "number", "enum", "boolean", "json")

DEFAULT_REGISTRY_PATH = Path(__file__).parent / "data" / "field_registry.jsonc"


@dataclass(frozen=True)
class ValidationRule:
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    max_decimals: Optional[int] = None
    values: Tuple[Any, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ValidationRule":
        data = dict(data or {})
        values = data.pop("values", None) or ()
        unknown = set(data) - {"min_length", "max_length", "pattern", "min", "max", "max_decimals"}
        if unknown:
            raise ConfigError(f"Unknown validation keys: {sorted(unknown)}")
        return cls(values=tuple(values), **data)

    def to_dict(self) -> Dict[str, Any]:
        out = {
            k: getattr(self, k)
            for k in ("min_length", "max_length", "pattern", "min", "max", "max_decimals")
            if getattr(self, k) is not None
        }
        if self.values:
            out["values"] = list(self.values)
        return out


@dataclass(frozen=True)
class UiHints:
    placeholder: Optional[str] = None
    widget: Optional[str] = None
    help: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "UiHints":
        data = data or {}
        return cls(
            placeholder=data.get("placeholder"),
            widget=data.get("widget"),
            help=data.get("help"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in (("placeholder", self.placeholder), ("widget", self.widget), ("help", self.help)) if v is not None}


@dataclass(frozen=True)
class CanonicalFieldDefinition:
    name: str
    type: str
    label: str
    column: str = ""
    description: str = ""
    category: str = "general"
    required: bool = False
    inheritable: bool = True
    validation: ValidationRule = field(default_factory=ValidationRule)
    ui: UiHints = field(default_factory=UiHints)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CanonicalFieldDefinition":
        for key in ("name", "type", "label"):
            if not data.get(key):
                raise ConfigError(f"Field definition missing '{key}': {dict(data)}")
        field_type = data["type"]
        if field_type not in FIELD_TYPES:
            raise ConfigError(f"Field '{data['name']}' has unknown type '{field_type}'")

        rule = ValidationRule.from_dict(data.get("validation"))
        if field_type == "enum" and not rule.values:
            raise ConfigError(f"Enum field '{data['name']}' declares no values")

        return cls(
            name=data["name"],
            type=field_type,
            label=data["label"],
            column=data.get("column") or data["name"],
            description=data.get("description", ""),
            category=data.get("category", "general"),
            required=bool(data.get("required", False)),
            inheritable=bool(data.get("inheritable", True)),
            validation=rule,
            ui=UiHints.from_dict(data.get("ui")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "column": self.column,
            "type": self.type,
            "label": self.label,
            "description": self.description,
            "category": self.category,
            "required": self.required,
            "inheritable": self.inheritable,
            "validation": self.validation.to_dict(),
            "ui": self.ui.to_dict(),
        }


class FieldRegistry:
    """
    Read-only catalog of canonical field definitions.

    Lookups of unknown names return None (never raise): callers treat that as
    "field not recognized".
    """

    def __init__(self, definitions: Iterable[CanonicalFieldDefinition], version: str = "0") -> None:
        self.version = str(version)
        self._by_name: Dict[str, CanonicalFieldDefinition] = {}
        self._by_column: Dict[str, str] = {}

        for definition in definitions:
            if definition.name in self._by_name:
                raise ConfigError(f"Duplicate canonical field name: {definition.name}")
            column = definition.column or definition.name
            if column in self._by_column:
                raise ConfigError(
                    f"Column '{column}' used by both '{self._by_column[column]}' and '{definition.name}'"
                )
            self._by_name[definition.name] = definition
            self._by_column[column] = definition.name

    @classmethod
    def from_dicts(cls, rows: Iterable[Mapping[str, Any]], version: str = "0") -> "FieldRegistry":
        return cls((CanonicalFieldDefinition.from_dict(r) for r in rows), version=version)

    def __contains__(self, name) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._by_name)

    def __iter__(self):
        return iter(self._by_name.values())

    def definition_of(self, name: str) -> Optional[CanonicalFieldDefinition]:
        return self._by_name.get(name)

    def names(self) -> List[str]:
        return list(self._by_name)

    def is_inheritable(self, name: str) -> bool:
        definition = self._by_name.get(name)
        return bool(definition and definition.inheritable)

    def inheritable_names(self) -> List[str]:
        return [d.name for d in self._by_name.values() if d.inheritable]

    def column_for(self, name: str) -> Optional[str]:
        definition = self._by_name.get(name)
        return definition.column if definition else None

    def canonical_for_column(self, column: str) -> Optional[str]:
        return self._by_column.get(column)

    def to_canonical(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Re-keys a dict by canonical name. Keys may already be canonical or be
        column names; unknown keys are kept as they are.
        """
        out: Dict[str, Any] = {}
        for key, value in data.items():
            if key in self._by_name:
                out[key] = value
            else:
                out[self._by_column.get(key, key)] = value
        return out

    def by_category(self) -> Dict[str, List[Dict[str, Any]]]:
        categories: Dict[str, List[Dict[str, Any]]] = {}
        for definition in self._by_name.values():
            categories.setdefault(definition.category, []).append({
                "field_name": definition.name,
                "description": definition.description,
                "inheritable": definition.inheritable,
            })
        return categories

    def defaults(self) -> Dict[str, Any]:
        # Resolution never invents values: the default of every field is None.
        return {name: None for name in self._by_name}


def load_field_registry(path: Optional[str] = None) -> FieldRegistry:
    """
    Load the canonical field table from a JSON-with-comments file.
    Fails fast if the file or the 'fields' list is missing.
    """
    cfg_path = Path(path or os.getenv("FIELD_REGISTRY_PATH") or DEFAULT_REGISTRY_PATH)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Field registry file not found at '{cfg_path}'")

    with cfg_path.open("r", encoding="utf-8") as f:
        data = commentjson.load(f)

    rows = data.get("fields") if isinstance(data, dict) else None
    if not isinstance(rows, list):
        raise ConfigError(f"Field registry '{cfg_path}' has no 'fields' list")

    registry = FieldRegistry.from_dicts(rows, version=data.get("version", "0"))
    logger.debug("Loaded %d canonical fields (version %s) from %s", len(registry), registry.version, cfg_path)
    return registry
