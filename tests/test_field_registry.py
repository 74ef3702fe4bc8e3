import pytest

from context_fields.errors import ConfigError
from context_fields.field_registry import FieldRegistry, load_field_registry


def test_bundled_registry_loads(registry):
    assert len(registry) == 10
    assert registry.version == "1.2"
    assert "targetAudience" in registry
    assert registry.definition_of("marketingBudget").type == "number"


def test_unknown_name_is_not_fatal(registry):
    assert registry.definition_of("doesNotExist") is None
    assert registry.is_inheritable("doesNotExist") is False
    assert registry.column_for("doesNotExist") is None


def test_tech_stack_is_not_inheritable(registry):
    assert registry.is_inheritable("techStack") is False
    assert "techStack" not in registry.inheritable_names()
    assert "targetAudience" in registry.inheritable_names()


def test_column_table_is_bidirectional(registry):
    for name in registry.names():
        assert registry.canonical_for_column(registry.column_for(name)) == name
    assert registry.column_for("targetAudience") == "target_audience"


def test_to_canonical_rekeys_columns_and_keeps_unknown(registry):
    data = {"product_name": "Acme", "targetAudience": "Devs", "legacy_flag": True}
    assert registry.to_canonical(data) == {
        "productName": "Acme",
        "targetAudience": "Devs",
        "legacy_flag": True,
    }


def test_defaults_are_all_none(registry):
    assert set(registry.defaults()) == set(registry.names())
    assert all(v is None for v in registry.defaults().values())


def test_by_category_groups_every_field(registry):
    grouped = registry.by_category()
    assert sum(len(v) for v in grouped.values()) == len(registry)


def test_duplicate_names_rejected():
    row = {"name": "a", "type": "string", "label": "A"}
    with pytest.raises(ConfigError):
        FieldRegistry.from_dicts([row, dict(row, column="other")])


def test_duplicate_columns_rejected():
    with pytest.raises(ConfigError):
        FieldRegistry.from_dicts([
            {"name": "a", "type": "string", "label": "A", "column": "col"},
            {"name": "b", "type": "string", "label": "B", "column": "col"},
        ])


@pytest.mark.parametrize("row", [
    {"name": "a", "type": "date", "label": "A"},
    {"name": "a", "type": "enum", "label": "A"},
    {"name": "a", "label": "A"},
    {"name": "a", "type": "string", "label": "A", "validation": {"maxLen": 3}},
])
def test_malformed_definitions_rejected(row):
    with pytest.raises(ConfigError):
        FieldRegistry.from_dicts([row])


def test_loader_honours_env_path(tmp_path, monkeypatch):
    path = tmp_path / "registry.jsonc"
    path.write_text("""
    {
        // a single field
        "version": "9",
        "fields": [{"name": "a", "type": "boolean", "label": "A"}]
    }
    """)
    monkeypatch.setenv("FIELD_REGISTRY_PATH", str(path))
    registry = load_field_registry()
    assert registry.version == "9"
    assert registry.names() == ["a"]


def test_loader_fails_fast(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_field_registry(str(tmp_path / "missing.jsonc"))

    path = tmp_path / "empty.jsonc"
    path.write_text('{"version": "1"}')
    with pytest.raises(ConfigError):
        load_field_registry(str(path))
