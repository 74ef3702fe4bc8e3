# context_fields/field_service.py
"""
Request-scoped facade over the field engine.

A FieldService is built per request from the (process-wide, read-only) registry
and catalog plus the stores; nothing mutable is shared between requests. The
process_request dispatcher takes {"type", "project_id", "task_id", "payload"}
and answers {"status", "message", "data"}.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Mapping, Optional

from context_fields.batch_resolver import BatchFieldResolver
from context_fields.consolidation import SchemaConsolidationAnalyzer
from context_fields.errors import FieldsError, StorageError
from context_fields.field_registry import FieldRegistry
from context_fields.miniapp_adapter import MiniAppFieldAdapter
from context_fields.miniapp_catalog import (
    CustomMapping,
    MappingInput,
    MiniAppCatalog,
    PresetMapping,
)
from context_fields.prompt_context import build_prompt_context, fill_template
from context_fields.stores import ContextStore, OverrideStore
from context_fields.utils import FieldUtils
from context_fields.validation_service import ValidationService

logger = logging.getLogger("context_fields.service")


def mapping_input_from_payload(payload: Mapping[str, Any]) -> MappingInput:
    """A payload carrying 'mappings' is a custom table; otherwise 'mini_app_id' names a preset."""
    if payload.get("mappings") is not None:
        return CustomMapping(
            mini_app_id=str(payload.get("mini_app_id") or "custom"),
            mappings=dict(payload["mappings"]),
            required=tuple(payload.get("required") or ()),
        )
    mini_app_id = payload.get("mini_app_id")
    if not mini_app_id:
        raise ValueError("payload needs either 'mini_app_id' or 'mappings'")
    return PresetMapping(str(mini_app_id))


class FieldService(FieldUtils):
    def __init__(
        self,
        registry: FieldRegistry,
        catalog: MiniAppCatalog,
        context_store: Optional[ContextStore] = None,
        override_store: Optional[OverrideStore] = None,
        validation_service: Optional[ValidationService] = None,
    ) -> None:
        self.registry = registry
        self.catalog = catalog
        self.context_store = context_store
        self.override_store = override_store
        self.validation_service = validation_service or ValidationService(registry)

    # -----------------------
    # Builders
    # -----------------------

    def adapter_for(self, mapping_input: MappingInput, project_id: str, task_id: str) -> MiniAppFieldAdapter:
        return MiniAppFieldAdapter.create(
            mapping_input,
            project_id,
            task_id,
            self.registry,
            validation_service=self.validation_service,
            catalog=self.catalog,
            context_store=self.context_store,
            override_store=self.override_store,
        )

    def context_resolver(self, project_id: str, task_id: Optional[str] = None) -> BatchFieldResolver:
        return BatchFieldResolver(
            project_id,
            task_id or "",
            self.registry.names(),
            self.registry,
            self.validation_service,
            context_store=self.context_store,
            override_store=self.override_store,
        )

    def analyzer(self) -> SchemaConsolidationAnalyzer:
        return SchemaConsolidationAnalyzer(self.catalog, self.registry)

    async def _loaded_adapter(self, project_id: str, task_id: str, payload: Mapping[str, Any]) -> MiniAppFieldAdapter:
        if not project_id or not task_id:
            raise ValueError("project_id and task_id are required")
        adapter = self.adapter_for(mapping_input_from_payload(payload), project_id, task_id)
        await adapter.load()
        return adapter

    # -----------------------
    # Dispatcher
    # -----------------------

    async def process_request(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        try:
            preview = json.dumps(request, indent=2, default=str)
        except (TypeError, ValueError):
            preview = str(request)
        logger.debug("process_request request payload=\n%s", preview)

        request_type = request.get("type")
        project_id = request.get("project_id")
        task_id = request.get("task_id")
        payload = request.get("payload") or {}

        response_data: Dict[str, Any] = {
            "status": "success",
            "message": "",
            "data": None,
            "project_id": project_id,
            "task_id": task_id,
        }

        try:
            if request_type == "load_fields":
                response_data["data"] = await self.handle_load_fields(project_id, task_id, payload)
            elif request_type == "set_fields":
                response_data["data"] = await self.handle_set_fields(project_id, task_id, payload)
                rejected = response_data["data"]["rejected"]
                if rejected:
                    response_data["message"] = f"{len(rejected)} field(s) rejected: {', '.join(rejected)}"
            elif request_type == "clear_field":
                response_data["data"] = await self.handle_clear_field(project_id, task_id, payload)
            elif request_type == "reset_fields":
                response_data["data"] = await self.handle_reset_fields(project_id, task_id, payload)
                response_data["message"] = "Fields reset to inherited values."
            elif request_type == "validate_required":
                response_data["data"] = await self.handle_validate_required(project_id, task_id, payload)
            elif request_type == "export_fields":
                response_data["data"] = await self.handle_export_fields(project_id, task_id, payload)
            elif request_type == "update_context":
                response_data["data"] = await self.handle_update_context(project_id, payload)
            elif request_type == "task_ids":
                response_data["data"] = await self.handle_task_ids(project_id)
            elif request_type == "prompt_context":
                response_data["data"] = await self.handle_prompt_context(project_id, task_id, payload)
            elif request_type == "validate_form":
                response_data["data"] = self.handle_validate_form(payload)
            elif request_type == "consolidation_report":
                analyzer = self.analyzer()
                response_data["data"] = {"report": analyzer.report(), "impact": analyzer.impact_analysis()}
            elif request_type == "recommendations":
                response_data["data"] = {"recommendations": self.analyzer().recommendations()}
            else:
                self.color_print(f"Unknown request type: {request_type}", "bright_red")
                response_data["status"] = "error"
                response_data["message"] = f"Unknown request type: {request_type}"
        except StorageError as e:
            response_data["status"] = "error"
            response_data["message"] = str(e)
            response_data["retryable"] = e.retryable
            response_data["error"] = e.to_dict()
        except (FieldsError, ValueError) as e:
            logger.warning("Request %s failed: %s", request_type, e)
            response_data["status"] = "error"
            response_data["message"] = str(e)
            if isinstance(e, FieldsError):
                response_data["error"] = e.to_dict()

        return response_data

    # -----------------------
    # Handlers
    # -----------------------

    async def handle_load_fields(self, project_id, task_id, payload):
        adapter = await self._loaded_adapter(project_id, task_id, payload)
        return {
            "summary": adapter.summary(),
            "form_data": adapter.initial_form_data(payload.get("form_data"),
                                                   payload.get("use_inherited_defaults", True)),
            "metadata": adapter.inheritance_metadata(),
        }

    async def handle_set_fields(self, project_id, task_id, payload):
        adapter = await self._loaded_adapter(project_id, task_id, payload)
        results = adapter.set_fields(payload.get("values") or {})
        saved = await adapter.save(user_id=payload.get("user_id"))
        return {
            "results": {local_id: r.to_dict() for local_id, r in results.items()},
            "rejected": [local_id for local_id, r in results.items() if not r.is_valid],
            "saved": saved,
            "fields": adapter.export_field_data(),
        }

    async def handle_clear_field(self, project_id, task_id, payload):
        local_id = payload.get("field")
        if not local_id:
            raise ValueError("payload needs 'field'")
        adapter = await self._loaded_adapter(project_id, task_id, payload)
        adapter.clear_field(local_id)
        await adapter.save(user_id=payload.get("user_id"))
        return {"field": local_id, "resolved": adapter.get_field_details(local_id).to_dict()}

    async def handle_reset_fields(self, project_id, task_id, payload):
        if payload.get("mini_app_id") is None and payload.get("mappings") is None:
            # no mapping given: drop every override of the task
            if self.override_store is None:
                return {"cleared": 0}
            cleared = await asyncio.to_thread(self.override_store.clear_all, project_id, task_id)
            return {"cleared": cleared}

        adapter = await self._loaded_adapter(project_id, task_id, payload)
        cleared = adapter.reset_to_inherited()
        await adapter.save(user_id=payload.get("user_id"))
        return {"cleared": len(cleared), "fields": adapter.export_field_data()}

    async def handle_validate_required(self, project_id, task_id, payload):
        adapter = await self._loaded_adapter(project_id, task_id, payload)
        outcome = adapter.validate_required()
        return {**outcome.to_dict(), "status": adapter.validation_status()}

    async def handle_export_fields(self, project_id, task_id, payload):
        adapter = await self._loaded_adapter(project_id, task_id, payload)
        return {"fields": adapter.export_field_data(bool(payload.get("include_null", False)))}

    async def handle_update_context(self, project_id, payload):
        if not project_id:
            raise ValueError("project_id is required")
        resolver = self.context_resolver(project_id)
        results = await resolver.update_context(payload.get("values") or {}, user_id=payload.get("user_id"))
        return {
            "results": {name: r.to_dict() for name, r in results.items()},
            "rejected": [name for name, r in results.items() if not r.is_valid],
            "context": resolver.context,
        }

    async def handle_task_ids(self, project_id):
        if not project_id:
            raise ValueError("project_id is required")
        if self.override_store is None:
            return {"task_ids": []}
        task_ids = await asyncio.to_thread(self.override_store.task_ids_with_overrides, project_id)
        return {"task_ids": task_ids}

    async def handle_prompt_context(self, project_id, task_id, payload):
        adapter = await self._loaded_adapter(project_id, task_id, payload)
        context = build_prompt_context(adapter, payload.get("form_data"), bool(payload.get("include_meta")))
        data: Dict[str, Any] = {"context": context}
        if payload.get("template"):
            data["prompt"] = fill_template(payload["template"], context)
        return data

    def handle_validate_form(self, payload):
        mini_app_id = payload.get("mini_app_id")
        if not mini_app_id:
            raise ValueError("payload needs 'mini_app_id'")
        fields = payload.get("fields") or []
        analyzer = self.analyzer()
        return {
            "validation": analyzer.validate_against_schema(mini_app_id, fields),
            "consolidation": analyzer.consolidate(mini_app_id, fields),
        }
