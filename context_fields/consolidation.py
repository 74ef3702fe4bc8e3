# context_fields/consolidation.py
"""
Schema consolidation analysis over the static mini-app mapping tables.

Diagnostic only: works on the catalog and the registry, never on live
resolved state.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from context_fields.field_registry import FieldRegistry
from context_fields.miniapp_catalog import MiniAppCatalog

logger = logging.getLogger("context_fields.consolidation")

PRIORITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}
CRITICAL_USAGE = 5
HIGH_USAGE = 3

# local widget / form types -> canonical field type
WIDGET_TYPES = {
    "text": "string",
    "textarea": "string",
    "string": "string",
    "select": "enum",
    "radio": "enum",
    "enum": "enum",
    "number": "number",
    "currency": "number",
    "checkbox": "boolean",
    "boolean": "boolean",
    "toggle": "boolean",
    "json": "json",
}


def normalize_type(local_type: Optional[str]) -> Optional[str]:
    if local_type is None:
        return None
    return WIDGET_TYPES.get(str(local_type).lower(), str(local_type).lower())


@dataclass(frozen=True)
class FieldDescriptor:
    """A form field as a mini-app declares it."""
    id: str
    type: Optional[str] = None
    placeholder: Optional[str] = None
    label: Optional[str] = None

    @classmethod
    def coerce(cls, value: Union["FieldDescriptor", Mapping[str, Any], str]) -> "FieldDescriptor":
        if isinstance(value, FieldDescriptor):
            return value
        if isinstance(value, str):
            return cls(value)
        if isinstance(value, Mapping) and value.get("id"):
            return cls(str(value["id"]), value.get("type"), value.get("placeholder"), value.get("label"))
        raise ValueError(f"Not a field descriptor: {value!r}")


class SchemaConsolidationAnalyzer:
    def __init__(self, catalog: MiniAppCatalog, registry: FieldRegistry) -> None:
        self.catalog = catalog
        self.registry = registry

        self._dependencies: Dict[str, List[str]] = {
            mapping.mini_app_id: mapping.canonical_names() for mapping in catalog
        }

    # -----------------------
    # Lookups
    # -----------------------

    def map_local_to_canonical(self, mini_app_id: str, local_id: str) -> Optional[str]:
        mapping = self.catalog.get(mini_app_id)
        return mapping.canonical_for(local_id) if mapping else None

    def canonical_fields_used_by(self, mini_app_id: str) -> List[str]:
        return list(self._dependencies.get(mini_app_id, []))

    def mini_apps_using(self, canonical_name: str) -> List[str]:
        return [app for app, fields in self._dependencies.items() if canonical_name in fields]

    def canonical_definition(self, canonical_name: str) -> Optional[Dict[str, Any]]:
        definition = self.registry.definition_of(canonical_name)
        if definition is None:
            return None
        data = definition.to_dict()
        data["canonical_name"] = canonical_name
        data["used_by"] = self.mini_apps_using(canonical_name)
        return data

    # -----------------------
    # Per-form analysis
    # -----------------------

    def consolidate(self, mini_app_id: str, local_fields: Iterable[Any]) -> Dict[str, Any]:
        descriptors = [FieldDescriptor.coerce(f) for f in local_fields]
        consolidated: List[Dict[str, Any]] = []
        unmapped: List[str] = []

        for descriptor in descriptors:
            canonical = self.map_local_to_canonical(mini_app_id, descriptor.id)
            definition = self.registry.definition_of(canonical) if canonical else None
            if definition is None:
                unmapped.append(descriptor.id)
                continue
            entry = definition.to_dict()
            entry.update({
                "original_id": descriptor.id,
                "original_type": descriptor.type,
                "canonical_name": canonical,
                "placeholder": descriptor.placeholder or definition.ui.placeholder,
            })
            consolidated.append(entry)

        total = len(descriptors)
        rate = (len(consolidated) / total) * 100 if total else 0
        return {
            "mini_app_id": mini_app_id,
            "consolidated_fields": consolidated,
            "unmapped_fields": unmapped,
            "consolidation_rate": round(rate, 2),
            "summary": {
                "total_original_fields": total,
                "consolidated_fields": len(consolidated),
                "unmapped_fields": len(unmapped),
            },
        }

    def validate_against_schema(self, mini_app_id: str, local_fields: Iterable[Any]) -> Dict[str, Any]:
        descriptors = [FieldDescriptor.coerce(f) for f in local_fields]
        missing: List[Dict[str, Any]] = []
        mismatches: List[Dict[str, Any]] = []

        for descriptor in descriptors:
            canonical = self.map_local_to_canonical(mini_app_id, descriptor.id)
            if not canonical:
                missing.append({
                    "field_id": descriptor.id,
                    "field_type": descriptor.type,
                    "message": f'Field "{descriptor.id}" has no canonical mapping defined',
                })
                continue

            definition = self.registry.definition_of(canonical)
            local_type = normalize_type(descriptor.type)
            if definition is not None and local_type is not None and local_type != definition.type:
                mismatches.append({
                    "field_id": descriptor.id,
                    "original_type": descriptor.type,
                    "canonical_type": definition.type,
                    "message": f'Type mismatch: "{descriptor.id}" is {descriptor.type} but canonical is {definition.type}',
                })

        issues = {"missing_canonical_mappings": missing, "type_mismatches": mismatches}
        return {
            "is_valid": not missing and not mismatches,
            "issues": issues,
            "field_count": len(descriptors),
            "issue_count": len(missing) + len(mismatches),
        }

    # -----------------------
    # Catalog-wide views
    # -----------------------

    def usage_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for fields in self._dependencies.values():
            for name in fields:
                counts[name] = counts.get(name, 0) + 1
        return counts

    def impact_analysis(self) -> Dict[str, Any]:
        counts = self.usage_counts()
        most_used = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        return {
            "total_mini_apps": len(self._dependencies),
            "total_canonical_fields": len(self.registry),
            "field_usage_distribution": counts,
            "most_used_fields": [{"field": f, "mini_apps_using": n} for f, n in most_used],
        }

    def recommendations(self) -> List[Dict[str, Any]]:
        recs: List[Dict[str, Any]] = []

        for name, used_by in self.usage_counts().items():
            if used_by < HIGH_USAGE:
                continue
            recs.append({
                "type": "high-reuse",
                "field": name,
                "mini_apps_using": used_by,
                "priority": "critical" if used_by >= CRITICAL_USAGE else "high",
                "recommendation": f'Field "{name}" is used by {used_by} mini-apps. '
                                  f'Consider prioritizing it for a unified UI.',
            })

        for mapping in self.catalog:
            unmapped = mapping.unmapped_local_ids()
            if unmapped:
                recs.append({
                    "type": "unmapped-fields",
                    "mini_app_id": mapping.mini_app_id,
                    "unmapped_count": len(unmapped),
                    "unmapped_fields": unmapped,
                    "priority": "medium",
                    "recommendation": f'{len(unmapped)} field(s) in "{mapping.mini_app_id}" have no canonical '
                                      f'mapping. Consider adding mappings.',
                })

        recs.sort(key=lambda r: (
            PRIORITY_ORDER[r["priority"]],
            -r.get("mini_apps_using", r.get("unmapped_count", 0)),
            r.get("field") or r.get("mini_app_id"),
        ))
        logger.debug("Computed %d consolidation recommendations", len(recs))
        return recs

    def report(self) -> Dict[str, Any]:
        by_canonical: Dict[str, Dict[str, Any]] = {}
        for name in sorted(self.usage_counts()):
            used_by = self.mini_apps_using(name)
            by_canonical[name] = {"used_by": used_by, "mini_app_count": len(used_by)}

        total_mappings = sum(len(m.fields) for m in self.catalog)
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "summary": {
                "total_field_mappings": total_mappings,
                "unique_mini_apps": len(self._dependencies),
                "unique_canonical_fields": len(by_canonical),
            },
            "by_mini_app": {
                app: {"canonical_fields_used": list(fields), "field_count": len(fields)}
                for app, fields in self._dependencies.items()
            },
            "by_canonical_field": by_canonical,
        }

    def export_mapping(self) -> Dict[str, Any]:
        return {
            "version": self.catalog.version,
            "registry_version": self.registry.version,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "field_mappings": {m.mini_app_id: dict(m.fields) for m in self.catalog},
            "mini_app_dependencies": {app: list(fields) for app, fields in self._dependencies.items()},
            "canonical_field_definitions": {
                d.name: {"type": d.type, "label": d.label, "required": d.required, "inheritable": d.inheritable}
                for d in self.registry
            },
        }
