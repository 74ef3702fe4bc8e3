# context_fields/miniapp_adapter.py
"""
Mini-app facing adapter: the batch resolver seen through one mini-app's
local field ids.

Every call translates local id -> canonical name through the mini-app's mapping
table. A local id without a canonical target falls back to itself: such ad hoc
fields are stored as overrides but never inherit and, unless the id happens to
be a registered name, are never validated. Each fallback is logged once and
listed in `adhoc_fields`.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from context_fields.batch_resolver import BatchFieldResolver, RequiredValidation
from context_fields.field_registry import FieldRegistry
from context_fields.field_resolver import FieldSource, ResolvedField
from context_fields.miniapp_catalog import MappingInput, MiniAppCatalog, MiniAppMapping, resolve_mapping
from context_fields.utils import is_filled
from context_fields.validation_service import ValidationResult, ValidationService

logger = logging.getLogger("context_fields.adapter")


class MiniAppFieldAdapter:
    def __init__(self, mapping: MiniAppMapping, batch: BatchFieldResolver) -> None:
        self.mapping = mapping
        self.batch = batch
        self.adhoc_fields: Set[str] = set()

        self.is_validated = False
        self.validation_errors: Dict[str, str] = {}

    @classmethod
    def create(
        cls,
        mapping_input: MappingInput,
        project_id: str,
        task_id: str,
        registry: FieldRegistry,
        validation_service: Optional[ValidationService] = None,
        catalog: Optional[MiniAppCatalog] = None,
        context_store=None,
        override_store=None,
    ) -> "MiniAppFieldAdapter":
        mapping = resolve_mapping(mapping_input, catalog)
        batch = BatchFieldResolver(
            project_id,
            task_id,
            mapping.canonical_names(),
            registry,
            validation_service or ValidationService(registry),
            context_store=context_store,
            override_store=override_store,
        )
        return cls(mapping, batch)

    @property
    def mini_app_id(self) -> str:
        return self.mapping.mini_app_id

    # -----------------------
    # Name translation
    # -----------------------

    def canonical_name(self, local_id: str) -> str:
        canonical = self.mapping.canonical_for(local_id)
        if canonical:
            return canonical
        if local_id not in self.adhoc_fields:
            self.adhoc_fields.add(local_id)
            logger.warning("Mini-app %s: field '%s' has no canonical mapping, using it as an ad hoc field "
                           "(no inheritance, no validation)", self.mini_app_id, local_id)
        return local_id

    def local_id_for(self, canonical_name: str) -> str:
        return self.mapping.local_for(canonical_name) or canonical_name

    def local_ids(self) -> List[str]:
        """Every id declared in the mapping table, in table order, then ad hoc ids seen so far."""
        declared = self.mapping.local_ids()
        return declared + sorted(a for a in self.adhoc_fields if a not in declared)

    # -----------------------
    # Field access
    # -----------------------

    def get_field_details(self, local_id: str) -> ResolvedField:
        return self.batch.get(self.canonical_name(local_id))

    def get_field(self, local_id: str) -> Any:
        return self.get_field_details(local_id).value

    def get_field_source(self, local_id: str) -> FieldSource:
        return self.get_field_details(local_id).source

    def set_field(self, local_id: str, value: Any) -> ValidationResult:
        return self.batch.set_override(self.canonical_name(local_id), value)

    def set_fields(self, values: Mapping[str, Any]) -> Dict[str, ValidationResult]:
        """Partial application keyed by local id, like BatchFieldResolver.set_many."""
        results = {local_id: self.set_field(local_id, value) for local_id, value in values.items()}
        rejected = [l for l, r in results.items() if not r.is_valid]
        if rejected:
            logger.warning("Mini-app %s: rejected %s", self.mini_app_id, rejected)
        return results

    def clear_field(self, local_id: str) -> None:
        self.batch.clear_override(self.canonical_name(local_id))

    def _managed_canonicals(self) -> List[str]:
        # null-target ids are stored under their own name
        names = self.mapping.canonical_names() + self.mapping.unmapped_local_ids() + sorted(self.adhoc_fields)
        return list(dict.fromkeys(names))

    def clear_all_fields(self) -> List[str]:
        return self.batch.clear_overrides(self._managed_canonicals())

    def reset_to_inherited(self) -> List[str]:
        cleared = self.clear_all_fields()
        self.is_validated = False
        self.validation_errors = {}
        logger.debug("Reset %s to inherited values (%d overrides cleared)", self.mini_app_id, len(cleared))
        return cleared

    # -----------------------
    # Status queries
    # -----------------------

    def is_required(self, local_id: str) -> bool:
        return local_id in self.mapping.required

    def is_overridden(self, local_id: str) -> bool:
        return self.batch.resolver.has_override(self.canonical_name(local_id))

    def is_inherited(self, local_id: str) -> bool:
        return self.get_field_details(local_id).is_inherited

    def can_inherit(self, local_id: str) -> bool:
        return self.batch.registry.is_inheritable(self.canonical_name(local_id))

    def inherited_fields(self) -> Dict[str, Any]:
        return {l: self.get_field(l) for l in self.local_ids() if self.is_inherited(l)}

    def overridden_fields(self) -> Dict[str, Any]:
        return {l: self.get_field(l) for l in self.local_ids() if self.is_overridden(l)}

    # -----------------------
    # Validation
    # -----------------------

    def validate_required(self) -> RequiredValidation:
        canonical_by_local = {l: self.canonical_name(l) for l in self.mapping.required}
        outcome = self.batch.validate_required(canonical_by_local.values())

        errors = {l: outcome.errors[c] for l, c in canonical_by_local.items() if c in outcome.errors}
        self.validation_errors = errors
        self.is_validated = not errors
        return RequiredValidation(not errors, errors)

    def _filled_required(self) -> int:
        return sum(1 for l in self.mapping.required if is_filled(self.get_field(l)))

    def validation_status(self) -> Dict[str, Any]:
        return {
            "is_validated": self.is_validated,
            "is_valid": not self.validation_errors,
            "errors": dict(self.validation_errors),
            "required_fields_count": len(self.mapping.required),
            "filled_required_fields": self._filled_required(),
        }

    # -----------------------
    # Views and export
    # -----------------------

    def summary(self) -> Dict[str, Any]:
        fields: Dict[str, Dict[str, Any]] = {}
        for local_id in self.local_ids():
            r = self.get_field_details(local_id)
            fields[local_id] = {
                "canonical": self.canonical_name(local_id),
                "value": r.value,
                "source": r.source.value,
                "required": self.is_required(local_id),
                "inheritable": self.can_inherit(local_id),
                "overridden": r.is_override,
            }

        return {
            "mini_app_id": self.mini_app_id,
            "project_id": self.batch.project_id,
            "task_id": self.batch.task_id,
            "total_fields": len(fields),
            "required_fields": len(self.mapping.required),
            "overridden_fields": sum(1 for f in fields.values() if f["overridden"]),
            "inherited_fields": sum(1 for f in fields.values() if f["source"] == FieldSource.INHERITED.value),
            "filled_required_fields": self._filled_required(),
            "adhoc_fields": sorted(self.adhoc_fields),
            "fields": fields,
        }

    def export_field_data(self, include_null: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for local_id in self.local_ids():
            value = self.get_field(local_id)
            if include_null or value is not None:
                data[local_id] = value
        return data

    def initial_form_data(self, current: Optional[Mapping[str, Any]] = None,
                          use_inherited_defaults: bool = True) -> Dict[str, Any]:
        """Blank entries of `current` are filled from resolved values; non-blank ones win."""
        merged = dict(current or {})
        if not use_inherited_defaults:
            return merged
        for local_id in self.local_ids():
            if is_filled(merged.get(local_id)):
                continue
            value = self.get_field(local_id)
            if value is not None:
                merged[local_id] = value
        return merged

    def inheritance_metadata(self) -> Dict[str, Dict[str, Any]]:
        metadata: Dict[str, Dict[str, Any]] = {}
        for local_id in self.local_ids():
            r = self.get_field_details(local_id)
            if r.value is None:
                continue
            metadata[local_id] = {
                "is_inherited": r.is_inherited,
                "is_overridden": r.is_override,
                "source": r.source.value,
                "inherited_from": "project_context" if r.is_inherited else None,
            }
        return metadata

    # -----------------------
    # Lifecycle
    # -----------------------

    def subscribe(self, callback: Callable[[List[str]], None]) -> Callable[[], None]:
        """Like BatchFieldResolver.subscribe, but the callback receives local ids."""
        def translate(canonical_names: Iterable[str]) -> None:
            changed = set(canonical_names)
            local = sorted(l for l in self.local_ids() if (self.mapping.canonical_for(l) or l) in changed)
            if local:
                callback(local)

        return self.batch.subscribe(translate)

    async def load(self) -> bool:
        loaded = await self.batch.load()
        logger.debug("Initialized %s mini-app for %s/%s", self.mini_app_id, self.batch.project_id, self.batch.task_id)
        return loaded

    async def save(self, user_id: Optional[str] = None) -> Dict[str, List[str]]:
        return await self.batch.save(user_id=user_id, source_tag=self.mini_app_id)
