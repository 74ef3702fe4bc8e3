import asyncio
import logging

import pytest

from context_fields.entities import TaskFieldOverrideRecord
from context_fields.errors import ConfigError, NotFoundError
from context_fields.field_resolver import FieldSource
from context_fields.miniapp_adapter import MiniAppFieldAdapter
from context_fields.miniapp_catalog import CustomMapping, MiniAppCatalog, PresetMapping, load_miniapp_catalog


def make_adapter(mapping_input, registry, catalog, **kwargs):
    return MiniAppFieldAdapter.create(mapping_input, "p1", "t1", registry, catalog=catalog, **kwargs)


@pytest.fixture
def blog(registry, catalog):
    return make_adapter(PresetMapping("blog"), registry, catalog)


def test_required_fields_reported_by_local_id(registry, catalog):
    adapter = make_adapter(
        CustomMapping("blog", {"productName": "productName", "targetAudience": "targetAudience"},
                      required=["productName", "targetAudience"]),
        registry, catalog,
    )
    outcome = adapter.validate_required()
    assert outcome.is_valid is False
    assert set(outcome.errors) == {"productName", "targetAudience"}
    assert adapter.validation_status()["filled_required_fields"] == 0


def test_preset_errors_use_snake_case_ids(blog):
    blog.set_field("product_name", "Acme")
    outcome = blog.validate_required()
    assert outcome.errors == {"target_audience": "Target Audience is required"}
    status = blog.validation_status()
    assert status["is_validated"] is False
    assert status["required_fields_count"] == 2
    assert status["filled_required_fields"] == 1


def test_local_ids_translate_to_canonical(registry, catalog):
    adapter = make_adapter(PresetMapping("paidAds"), registry, catalog)
    assert adapter.set_field("budget", 1200).is_valid
    # both local ids share one canonical field
    assert adapter.get_field("daily_budget") == 1200
    assert adapter.batch.get("marketingBudget").value == 1200
    assert adapter.local_id_for("marketingBudget") == "budget"


def test_validation_errors_are_returned_not_raised(blog):
    result = blog.set_field("primary_goal", "take_over")
    assert result.is_valid is False
    assert blog.get_field("primary_goal") is None


def test_unmapped_local_id_falls_back_with_warning(blog, caplog):
    with caplog.at_level(logging.WARNING, logger="context_fields.adapter"):
        assert blog.set_field("tone_of_voice", "playful").is_valid
        blog.get_field("tone_of_voice")
    assert blog.get_field("tone_of_voice") == "playful"
    assert blog.adhoc_fields == {"tone_of_voice"}
    # logged once per id
    assert sum(r.name == "context_fields.adapter" and "tone_of_voice" in r.getMessage() for r in caplog.records) == 1
    assert blog.can_inherit("tone_of_voice") is False


def test_status_queries(registry, catalog, context_store):
    context_store.create("p1", "u1", {"targetAudience": "B2B founders", "productName": "Acme"})
    adapter = make_adapter(PresetMapping("blog"), registry, catalog, context_store=context_store)
    asyncio.run(adapter.load())
    adapter.set_field("product_name", "Acme Pro")

    assert adapter.is_inherited("target_audience")
    assert adapter.is_overridden("product_name")
    assert adapter.get_field_source("primary_goal") is FieldSource.DEFAULT
    assert adapter.is_required("target_audience") and not adapter.is_required("primary_goal")
    assert adapter.inherited_fields() == {"target_audience": "B2B founders"}
    assert adapter.overridden_fields() == {"product_name": "Acme Pro"}
    assert adapter.inheritance_metadata()["target_audience"] == {
        "is_inherited": True, "is_overridden": False, "source": "inherited", "inherited_from": "project_context",
    }


def test_export_and_initial_form_data(registry, catalog, context_store):
    context_store.create("p1", "u1", {"targetAudience": "B2B founders"})
    adapter = make_adapter(PresetMapping("blog"), registry, catalog, context_store=context_store)
    asyncio.run(adapter.load())
    adapter.set_field("product_name", "Acme")

    assert adapter.export_field_data() == {"product_name": "Acme", "target_audience": "B2B founders"}
    assert adapter.export_field_data(include_null=True)["primary_goal"] is None

    form = adapter.initial_form_data({"product_name": "Typed", "target_audience": "", "extra": 1})
    assert form == {"product_name": "Typed", "target_audience": "B2B founders", "extra": 1}
    assert adapter.initial_form_data({"target_audience": ""}, use_inherited_defaults=False) == {"target_audience": ""}


def test_export_then_set_reproduces_snapshot(registry, catalog, context_store):
    context_store.create("p1", "u1", {"targetAudience": "B2B founders", "primaryGoal": "1k_mrr"})
    adapter = make_adapter(PresetMapping("paidAds"), registry, catalog, context_store=context_store)
    asyncio.run(adapter.load())
    adapter.set_fields({"product_name": "Acme", "budget": 300})

    before = {l: adapter.get_field(l) for l in adapter.local_ids()}
    results = adapter.set_fields(adapter.export_field_data())
    assert all(r.is_valid for r in results.values())
    assert {l: adapter.get_field(l) for l in adapter.local_ids()} == before


def test_reset_to_inherited_clears_and_persists(registry, catalog, context_store, override_store):
    context_store.create("p1", "u1", {"targetAudience": "B2B founders"})
    override_store.set_batch("p1", "t1", "u1", {"targetAudience": "CTOs", "teamSize": "solo"})
    adapter = make_adapter(PresetMapping("blog"), registry, catalog,
                           context_store=context_store, override_store=override_store)
    asyncio.run(adapter.load())
    assert adapter.get_field("target_audience") == "CTOs"

    adapter.reset_to_inherited()
    assert adapter.get_field("target_audience") == "B2B founders"
    asyncio.run(adapter.save(user_id="u1"))
    # teamSize is not part of the blog mapping and survives
    assert override_store.get_all("p1", "t1") == {"teamSize": "solo"}


def test_save_tags_rows_with_mini_app(registry, catalog, override_store, session_factory):
    adapter = make_adapter(PresetMapping("webinar"), registry, catalog, override_store=override_store)
    adapter.set_field("webinar_goal", "audience")
    asyncio.run(adapter.save(user_id="u7"))

    session = session_factory()
    try:
        row = session.query(TaskFieldOverrideRecord).one()
        assert (row.field_name, row.source, row.user_id) == ("primaryGoal", "webinar", "u7")
    finally:
        session.close()


def test_subscribe_translates_to_local_ids(registry, catalog):
    adapter = make_adapter(PresetMapping("paidAds"), registry, catalog)
    seen = []
    adapter.subscribe(seen.append)
    adapter.set_field("daily_budget", 50)
    assert seen == [["budget", "daily_budget"]]


def test_summary_is_keyed_by_local_id(blog):
    blog.set_field("product_name", "Acme")
    summary = blog.summary()
    assert summary["mini_app_id"] == "blog"
    assert summary["total_fields"] == 4
    assert summary["required_fields"] == 2
    assert summary["filled_required_fields"] == 1
    assert summary["fields"]["product_name"]["canonical"] == "productName"


def test_mapping_variants(registry, catalog):
    with pytest.raises(NotFoundError):
        make_adapter(PresetMapping("unknownApp"), registry, catalog)
    with pytest.raises(ConfigError):
        make_adapter(CustomMapping("x", {"a": "productName"}, required=["b"]), registry, catalog)
    with pytest.raises(TypeError):
        make_adapter("blog", registry, catalog)


def test_catalog_rejects_unregistered_targets(tmp_path, registry):
    path = tmp_path / "mappings.yaml"
    path.write_text("version: '1'\nmini_apps:\n  demo:\n    fields:\n      foo: notAField\n")
    with pytest.raises(ConfigError):
        load_miniapp_catalog(str(path), registry=registry)
    with pytest.raises(FileNotFoundError):
        load_miniapp_catalog(str(tmp_path / "missing.yaml"))
    with pytest.raises(ConfigError):
        MiniAppCatalog.from_dict({"mini_apps": {"demo": {"fields": {"a": None}, "required": ["b"]}}})


def test_null_target_fields_survive_reload(registry, catalog, context_store, override_store):
    first = make_adapter(PresetMapping("communityPosts"), registry, catalog,
                         context_store=context_store, override_store=override_store)
    assert first.set_field("post_tone", "casual").is_valid
    asyncio.run(first.save(user_id="u1"))

    fresh = make_adapter(PresetMapping("communityPosts"), registry, catalog,
                         context_store=context_store, override_store=override_store)
    asyncio.run(fresh.load())
    assert fresh.local_ids() == ["audience_focus", "post_tone", "subreddit_list"]
    assert fresh.export_field_data() == {"post_tone": "casual"}
    assert fresh.overridden_fields() == {"post_tone": "casual"}

    assert fresh.reset_to_inherited() == ["post_tone"]
    asyncio.run(fresh.save(user_id="u1"))
    assert override_store.get_all("p1", "t1") == {}
