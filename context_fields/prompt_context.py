# context_fields/prompt_context.py
"""
Builds the flat key -> value context that prompt templates are filled from.

Order of precedence, last wins: resolved field values (override > inherited >
""), the same values under the mini-app's local ids, then the form data the user
is currently editing. Derived keys (`*_formatted`, `platforms_list`) are computed
on the merged result.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

from context_fields.miniapp_adapter import MiniAppFieldAdapter
from context_fields.utils import FieldUtils, is_filled

logger = logging.getLogger("context_fields.prompt_context")

PLATFORM_LABELS = {
    "twitter": "X (Twitter)",
    "linkedin": "LinkedIn",
    "instagram": "Instagram",
    "facebook": "Facebook",
}


def _as_number(value) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def format_money(value) -> str:
    if not is_filled(value):
        return ""
    num = _as_number(value)
    if num is None:
        return str(value)
    text = f"{num:,.2f}"
    if text.endswith(".00"):
        text = text[:-3]
    return f"${text}"


def format_count(value) -> str:
    if not is_filled(value):
        return ""
    num = _as_number(value)
    if num is None:
        # enum buckets such as "2-5" pass through
        return str(value)
    return f"{num:,}"


def format_platforms(value) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(PLATFORM_LABELS.get(p, str(p)) for p in value)
    return "" if value is None else str(value)


TRANSFORMATIONS = {
    "marketingBudget": ("marketingBudget_formatted", format_money),
    "teamSize": ("teamSize_formatted", format_count),
    "platforms": ("platforms_list", format_platforms),
}


def build_prompt_context(adapter: MiniAppFieldAdapter, form_data: Optional[Mapping[str, Any]] = None,
                         include_meta: bool = False) -> Dict[str, Any]:
    context: Dict[str, Any] = {}
    meta: Dict[str, Dict[str, Any]] = {}

    for local_id in adapter.local_ids():
        canonical = adapter.canonical_name(local_id)
        resolved = adapter.get_field_details(local_id)
        value = "" if resolved.value is None else resolved.value
        context[canonical] = value
        context[local_id] = value
        meta[local_id] = meta[canonical] = {"source": resolved.source.value, "canonical": canonical}

    for key, value in (form_data or {}).items():
        if value is None:
            continue
        context[key] = value
        meta[key] = {"source": "form", "canonical": adapter.mapping.canonical_for(key)}
        canonical = adapter.mapping.canonical_for(key)
        if canonical and is_filled(value):
            context[canonical] = value

    for source_key, (result_key, transform) in TRANSFORMATIONS.items():
        if source_key in context:
            context[result_key] = transform(context[source_key])

    if include_meta:
        context["_meta"] = meta
    logger.debug("Built prompt context for %s with %d keys", adapter.mini_app_id, len(context))
    return context


def fill_template(template: str, context: Mapping[str, Any]) -> str:
    """Replaces the {key} placeholders found in context; unknown ones are left as they are."""
    values = {k: v for k, v in context.items() if isinstance(k, str) and k.isidentifier() and not k.startswith("_")}
    return FieldUtils().unsafe_string_format(template, **values)
