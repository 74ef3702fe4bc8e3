# context_fields/miniapp_catalog.py
"""
Static field-mapping tables of every mini-app.

A mapping table sends a mini-app's local field ids to canonical field names.
Within one mini-app the table is a function (several local ids may share one
canonical target); a null target marks a local field that is deliberately not
backed by the canonical schema.

Adapters receive their mapping as an explicit variant, resolved once:
PresetMapping names a table in the catalog, CustomMapping carries its own.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import yaml

from context_fields.errors import ConfigError, NotFoundError
from context_fields.field_registry import FieldRegistry

logger = logging.getLogger("context_fields.catalog")

DEFAULT_MAPPINGS_PATH = Path(__file__).parent / "data" / "miniapp_mappings.yaml"


@dataclass(frozen=True)
class MiniAppMapping:
    mini_app_id: str
    fields: Dict[str, Optional[str]] = field(default_factory=dict)
    required: Tuple[str, ...] = ()
    label: str = ""

    def has_local(self, local_id: str) -> bool:
        return local_id in self.fields

    def canonical_for(self, local_id: str) -> Optional[str]:
        return self.fields.get(local_id)

    def local_ids(self) -> List[str]:
        return list(self.fields)

    def canonical_names(self) -> List[str]:
        """Distinct canonical targets in table order."""
        return list(dict.fromkeys(c for c in self.fields.values() if c))

    def local_for(self, canonical_name: str) -> Optional[str]:
        # first declared local id wins
        for local_id, canonical in self.fields.items():
            if canonical == canonical_name:
                return local_id
        return None

    def unmapped_local_ids(self) -> List[str]:
        return [local_id for local_id, canonical in self.fields.items() if canonical is None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mini_app_id": self.mini_app_id,
            "label": self.label,
            "fields": dict(self.fields),
            "required": list(self.required),
        }


@dataclass(frozen=True)
class PresetMapping:
    name: str


@dataclass(frozen=True)
class CustomMapping:
    mini_app_id: str
    mappings: Mapping[str, Optional[str]]
    required: Sequence[str] = ()


MappingInput = Union[PresetMapping, CustomMapping]


class MiniAppCatalog:
    def __init__(self, mappings: Sequence[MiniAppMapping], version: str = "0") -> None:
        self.version = str(version)
        self._by_id: Dict[str, MiniAppMapping] = {}
        for mapping in mappings:
            if mapping.mini_app_id in self._by_id:
                raise ConfigError(f"Duplicate mini-app id: {mapping.mini_app_id}")
            self._by_id[mapping.mini_app_id] = mapping

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], registry: Optional[FieldRegistry] = None) -> "MiniAppCatalog":
        apps = data.get("mini_apps")
        if not isinstance(apps, Mapping):
            raise ConfigError("Mini-app mapping table has no 'mini_apps' section")

        mappings = []
        for mini_app_id, row in apps.items():
            row = row or {}
            fields = row.get("fields") or {}
            if not isinstance(fields, Mapping):
                raise ConfigError(f"Mini-app '{mini_app_id}': 'fields' must be a mapping")
            mappings.append(MiniAppMapping(
                mini_app_id=str(mini_app_id),
                fields={str(k): (str(v) if v is not None else None) for k, v in fields.items()},
                required=tuple(row.get("required") or ()),
                label=str(row.get("label") or mini_app_id),
            ))

        catalog = cls(mappings, version=data.get("version", "0"))
        catalog.check(registry)
        return catalog

    def check(self, registry: Optional[FieldRegistry] = None) -> None:
        """Raises ConfigError on required ids missing from a table or targets the registry does not know."""
        for mapping in self._by_id.values():
            for local_id in mapping.required:
                if not mapping.has_local(local_id):
                    raise ConfigError(
                        f"Mini-app '{mapping.mini_app_id}': required field '{local_id}' has no mapping entry"
                    )
            if registry is None:
                continue
            for local_id, canonical in mapping.fields.items():
                if canonical is not None and canonical not in registry:
                    raise ConfigError(
                        f"Mini-app '{mapping.mini_app_id}': '{local_id}' maps to unregistered field '{canonical}'"
                    )

    def __contains__(self, mini_app_id) -> bool:
        return mini_app_id in self._by_id

    def __iter__(self) -> Iterator[MiniAppMapping]:
        return iter(self._by_id.values())

    def __len__(self) -> int:
        return len(self._by_id)

    def ids(self) -> List[str]:
        return list(self._by_id)

    def get(self, mini_app_id: str) -> Optional[MiniAppMapping]:
        return self._by_id.get(mini_app_id)

    def require(self, mini_app_id: str) -> MiniAppMapping:
        mapping = self._by_id.get(mini_app_id)
        if mapping is None:
            raise NotFoundError("MiniApp", mini_app_id)
        return mapping


def resolve_mapping(mapping_input: MappingInput, catalog: Optional[MiniAppCatalog] = None) -> MiniAppMapping:
    if isinstance(mapping_input, PresetMapping):
        if catalog is None:
            raise ConfigError(f"Preset mapping '{mapping_input.name}' needs a mini-app catalog")
        return catalog.require(mapping_input.name)
    if isinstance(mapping_input, CustomMapping):
        fields = dict(mapping_input.mappings)
        missing = [r for r in mapping_input.required if r not in fields]
        if missing:
            raise ConfigError(f"Mini-app '{mapping_input.mini_app_id}': required fields without mapping: {missing}")
        return MiniAppMapping(mapping_input.mini_app_id, fields, tuple(mapping_input.required), mapping_input.mini_app_id)
    raise TypeError(f"Unsupported mapping input: {type(mapping_input).__name__}")


def load_miniapp_catalog(path: Optional[str] = None, registry: Optional[FieldRegistry] = None) -> MiniAppCatalog:
    cfg_path = Path(path or os.getenv("MINIAPP_MAPPINGS_PATH") or DEFAULT_MAPPINGS_PATH)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Mini-app mapping file not found at '{cfg_path}'")

    with cfg_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ConfigError(f"Mini-app mapping file '{cfg_path}' is not a mapping")

    catalog = MiniAppCatalog.from_dict(data, registry)
    logger.debug("Loaded %d mini-app mappings (version %s) from %s", len(catalog), catalog.version, cfg_path)
    return catalog
