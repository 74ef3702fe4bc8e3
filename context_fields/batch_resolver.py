# context_fields/batch_resolver.py
"""
Batch resolution over a named set of canonical fields for one (project, task) scope.

The resolver keeps two in-memory maps (task overrides and project context) that
are filled by load() and mutated by the set/clear calls. Reads are plain function
calls over those maps; observers registered with subscribe() are told which
field names may have changed after every mutation.

Store I/O is the only async boundary. Every load() takes a sequence number: a
response that is no longer the latest is dropped, and writes staged after a
load started are never overwritten by that load's (older) rows.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from context_fields.errors import NotFoundError, StorageError
from context_fields.field_registry import FieldRegistry
from context_fields.field_resolver import UNRESOLVED, FieldResolver, ResolvedField
from context_fields.utils import is_filled
from context_fields.validation_service import ValidationResult, ValidationService

logger = logging.getLogger("context_fields.batch")

Listener = Callable[[List[str]], None]


@dataclass
class RequiredValidation:
    is_valid: bool
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"is_valid": self.is_valid, "errors": dict(self.errors)}


class BatchFieldResolver:
    def __init__(
        self,
        project_id: str,
        task_id: str,
        field_names: Iterable[str],
        registry: FieldRegistry,
        validation_service: ValidationService,
        context_store=None,
        override_store=None,
    ) -> None:
        self.project_id = project_id
        self.task_id = task_id
        self.field_names: List[str] = list(dict.fromkeys(field_names))
        self.registry = registry
        self.validation_service = validation_service
        self.context_store = context_store
        self.override_store = override_store

        self._overrides: Dict[str, Any] = {}
        self._context: Dict[str, Any] = {}
        self.resolver = FieldResolver(registry, validation_service, self._overrides, self._context)

        # names whose override changed since the last save/load
        self._dirty: Set[str] = set()
        # monotonic write clock; _touched[name] is the tick of its last local write
        self._tick = 0
        self._touched: Dict[str, int] = {}
        self._context_tick = 0
        # names whose rows are being written by save()
        self._saving: Set[str] = set()

        self._load_seq = 0
        self._listeners: List[Listener] = []

        self.is_loading = False
        self.has_loaded = False
        self.last_error: Optional[StorageError] = None

    # -----------------------
    # Observers
    # -----------------------

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, names: Iterable[str]) -> None:
        changed = sorted(set(names))
        if not changed:
            return
        for callback in list(self._listeners):
            try:
                callback(changed)
            except Exception:
                logger.exception("Field change listener failed for %s", changed)

    def _touch(self, name: str) -> None:
        self._tick += 1
        self._touched[name] = self._tick
        self._dirty.add(name)

    # -----------------------
    # Reads
    # -----------------------

    def is_managed(self, field_name: str) -> bool:
        return field_name in self.field_names

    def get(self, field_name: str) -> ResolvedField:
        return self.resolver.resolve(field_name)

    def get_all(self) -> Dict[str, ResolvedField]:
        resolved: Dict[str, ResolvedField] = {}
        for name in self.field_names:
            try:
                resolved[name] = self.resolver.resolve(name)
            except Exception:
                logger.exception("Failed to resolve field %s for %s/%s", name, self.project_id, self.task_id)
                resolved[name] = UNRESOLVED
        return resolved

    def values(self) -> Dict[str, Any]:
        return {name: r.value for name, r in self.get_all().items()}

    def overrides(self) -> Dict[str, Any]:
        return {k: v for k, v in self._overrides.items() if v is not None}

    def overridden_fields(self) -> List[str]:
        return [name for name in self.field_names if self.resolver.has_override(name)]

    def inherited_value(self, field_name: str) -> Any:
        return self.resolver.inherited_value(field_name)

    def inheritance_chain(self, field_name: str) -> Dict[str, Any]:
        return self.resolver.inheritance_chain(field_name)

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self._context)

    @property
    def dirty_fields(self) -> List[str]:
        return sorted(self._dirty)

    def validate_field(self, field_name: str, value: Any) -> ValidationResult:
        if field_name not in self.registry:
            return ValidationResult(False, f"Unknown field: {field_name}")
        return self.validation_service.validate(field_name, value)

    def validate_required(self, required: Iterable[str]) -> RequiredValidation:
        """Every missing required field is reported, not just the first one."""
        errors: Dict[str, str] = {}
        for name in required:
            if not is_filled(self.resolver.resolve(name).value):
                definition = self.registry.definition_of(name)
                label = definition.label if definition else name
                errors[name] = f"{label} is required"
        return RequiredValidation(not errors, errors)

    def summary(self, required: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        required_set = set(required) if required is not None else None
        resolved = self.get_all()

        details: Dict[str, Dict[str, Any]] = {}
        overridden = inherited = inheritable_open = 0
        for name, r in resolved.items():
            definition = self.registry.definition_of(name)
            inheritable = self.registry.is_inheritable(name)
            if required_set is not None:
                is_required = name in required_set
            else:
                is_required = bool(definition and definition.required)

            overridden += r.is_override
            inherited += r.is_inherited
            if inheritable and not r.is_override:
                inheritable_open += 1

            details[name] = {
                "value": r.value,
                "source": r.source.value,
                "required": is_required,
                "overridden": r.is_override,
                "inheritable": inheritable,
            }

        return {
            "total_fields": len(resolved),
            "overridden_count": overridden,
            "inherited_count": inherited,
            "inheritable_not_overridden_count": inheritable_open,
            "inheritable_fields": [n for n in self.field_names if self.registry.is_inheritable(n)],
            "non_inheritable_fields": [n for n in self.field_names if not self.registry.is_inheritable(n)],
            "fields": details,
        }

    # -----------------------
    # Staged mutations
    # -----------------------

    def set_override(self, field_name: str, value: Any) -> ValidationResult:
        result = self.resolver.set_override(field_name, value)
        if result.is_valid:
            self._touch(field_name)
            self._notify([field_name])
        return result

    def set_many(self, updates: Mapping[str, Any]) -> Dict[str, ValidationResult]:
        """
        Partial application: each entry is validated and applied on its own. A
        rejected entry keeps its previous override; valid entries still land.
        """
        results: Dict[str, ValidationResult] = {}
        applied: List[str] = []
        for name, value in updates.items():
            result = self.resolver.set_override(name, value)
            results[name] = result
            if result.is_valid:
                self._touch(name)
                applied.append(name)

        rejected = len(results) - len(applied)
        if rejected:
            logger.warning("set_many for %s/%s: %d of %d entries rejected",
                           self.project_id, self.task_id, rejected, len(results))
        self._notify(applied)
        return results

    def clear_override(self, field_name: str) -> None:
        had_override = field_name in self._overrides
        self.resolver.clear_override(field_name)
        if had_override:
            self._touch(field_name)
            self._notify([field_name])

    def clear_overrides(self, field_names: Iterable[str]) -> List[str]:
        cleared = []
        for name in field_names:
            if name in self._overrides:
                self.resolver.clear_override(name)
                self._touch(name)
                cleared.append(name)
        if cleared:
            logger.info("Cleared %d overrides for %s/%s", len(cleared), self.project_id, self.task_id)
        self._notify(cleared)
        return cleared

    def clear_all_overrides(self) -> List[str]:
        return self.clear_overrides(self.field_names)

    # -----------------------
    # Store I/O
    # -----------------------

    async def _fetch(self):
        context_task = (
            asyncio.to_thread(self.context_store.get_by_project_id, self.project_id)
            if self.context_store is not None else asyncio.sleep(0, result=None)
        )
        overrides_task = (
            asyncio.to_thread(self.override_store.get_all, self.project_id, self.task_id)
            if self.override_store is not None else asyncio.sleep(0, result={})
        )
        return await asyncio.gather(context_task, overrides_task)

    async def load(self) -> bool:
        """
        Loads project context and task overrides. Returns True when the result
        was applied, False when it was superseded by a newer load or when a
        storage failure was absorbed by keeping the cached state.
        """
        self._load_seq += 1
        seq = self._load_seq
        tick_at_start = self._tick
        context_tick_at_start = self._context_tick
        self.is_loading = True

        try:
            context, overrides = await self._fetch()
        except StorageError as e:
            if seq != self._load_seq:
                logger.info("Discarding failed stale load #%d for %s/%s", seq, self.project_id, self.task_id)
                return False
            self.last_error = e
            if self.has_loaded:
                logger.warning("Load failed for %s/%s, keeping last-known-good values: %s",
                               self.project_id, self.task_id, e)
                return False
            raise
        finally:
            if seq == self._load_seq:
                self.is_loading = False

        if seq != self._load_seq:
            logger.info("Discarding stale load #%d for %s/%s (latest is #%d)",
                        seq, self.project_id, self.task_id, self._load_seq)
            return False

        # a missing context row is an empty context
        if self._context_tick == context_tick_at_start:
            self._context.clear()
            self._context.update(context or {})

        loaded = dict(overrides or {})
        staged_since = {n for n, t in self._touched.items() if t > tick_at_start} | self._saving
        for name in list(self._overrides):
            if name not in staged_since and name not in loaded:
                del self._overrides[name]
        for name, value in loaded.items():
            if name not in staged_since:
                self._overrides[name] = value
        self._dirty &= staged_since

        self.has_loaded = True
        self.last_error = None
        logger.debug("Loaded %d overrides for %s/%s", len(loaded), self.project_id, self.task_id)
        self._notify(set(self.field_names) | set(loaded))
        return True

    async def save(self, user_id: Optional[str] = None, source_tag: Optional[str] = None) -> Dict[str, List[str]]:
        """Persists staged override changes; cleared overrides are deleted from the store."""
        if not self._dirty:
            return {"saved": [], "cleared": []}
        if self.override_store is None:
            logger.debug("No override store configured, %d staged changes kept in memory", len(self._dirty))
            return {"saved": [], "cleared": []}

        tick_at_start = self._tick
        names = sorted(self._dirty)
        to_set = {n: self._overrides[n] for n in names if self._overrides.get(n) is not None}
        to_clear = [n for n in names if self._overrides.get(n) is None]

        self._saving.update(names)
        try:
            await asyncio.to_thread(self.override_store.set_batch, self.project_id, self.task_id,
                                    user_id, to_set, source_tag)
            for name in to_clear:
                await asyncio.to_thread(self.override_store.clear, self.project_id, self.task_id, name)
        finally:
            self._saving.difference_update(names)

        # anything staged again while saving stays dirty; the rest is re-stamped so
        # a load that read the store before this commit cannot put older rows back
        for name in names:
            if self._touched.get(name, 0) <= tick_at_start:
                self._dirty.discard(name)
                self._tick += 1
                self._touched[name] = self._tick

        logger.info("Saved overrides for %s/%s: %d set, %d cleared",
                    self.project_id, self.task_id, len(to_set), len(to_clear))
        return {"saved": sorted(to_set), "cleared": to_clear}

    async def update_context(self, partial: Mapping[str, Any], user_id: Optional[str] = None) -> Dict[str, ValidationResult]:
        """
        Writes project-level values. Entries are validated independently (as in
        set_many); only valid ones are written. None removes a key.
        """
        results: Dict[str, ValidationResult] = {}
        valid: Dict[str, Any] = {}
        for name, value in partial.items():
            result = self.validate_field(name, value)
            results[name] = result
            if result.is_valid:
                valid[name] = value

        if not valid:
            return results

        if self.context_store is not None:
            try:
                updated = await asyncio.to_thread(self.context_store.update, self.project_id, valid)
            except NotFoundError:
                logger.info("No context for project %s yet, creating one", self.project_id)
                updated = await asyncio.to_thread(self.context_store.upsert, self.project_id, user_id, valid)
        else:
            updated = {k: v for k, v in {**self._context, **valid}.items() if v is not None}

        self._context.clear()
        self._context.update(updated)
        self._context_tick += 1
        self._notify(valid)
        return results
