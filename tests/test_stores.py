import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from context_fields.db_helpers import create_session_factory
from context_fields.entities import TaskFieldOverrideRecord
from context_fields.errors import NotFoundError, StorageError
from context_fields.stores import ContextStore, OverrideStore


def test_missing_context_is_none(context_store):
    assert context_store.get_by_project_id("p-none") is None
    assert context_store.exists("p-none") is False


def test_create_and_update_context(context_store):
    context_store.create("p1", "u1", {"productName": "Acme", "teamSize": None})
    assert context_store.get_by_project_id("p1") == {"productName": "Acme"}

    updated = context_store.update("p1", {"targetAudience": "Devs", "productName": None})
    assert updated == {"targetAudience": "Devs"}
    assert context_store.get_by_project_id("p1") == {"targetAudience": "Devs"}


def test_update_missing_context_raises_not_found(context_store):
    with pytest.raises(NotFoundError):
        context_store.update("p-none", {"productName": "Acme"})


def test_upsert_and_delete(context_store):
    assert context_store.upsert("p2", "u1", {"productName": "A"}) == {"productName": "A"}
    assert context_store.upsert("p2", "u1", {"teamSize": "solo"}) == {"productName": "A", "teamSize": "solo"}
    assert context_store.delete("p2") is True
    assert context_store.delete("p2") is False


def test_override_upsert_keeps_one_row_per_key(override_store, session_factory):
    override_store.set("p1", "t1", "u1", "targetAudience", "Devs", "blog")
    override_store.set("p1", "t1", "u2", "targetAudience", "CTOs", "webinar")
    assert override_store.get_all("p1", "t1") == {"targetAudience": "CTOs"}

    session = session_factory()
    try:
        rows = session.query(TaskFieldOverrideRecord).all()
        assert len(rows) == 1
        assert rows[0].source == "webinar"
        assert rows[0].user_id == "u2"
    finally:
        session.close()


def test_override_values_keep_their_type(override_store):
    override_store.set_batch("p1", "t1", "u1", {
        "marketingBudget": 12.5,
        "techStack": {"frontend": "Vue"},
        "flag": False,
    })
    assert override_store.get("p1", "t1", "marketingBudget") == 12.5
    assert override_store.get("p1", "t1", "techStack") == {"frontend": "Vue"}
    assert override_store.get("p1", "t1", "flag") is False
    assert override_store.get("p1", "t1", "missing") is None


def test_null_override_deletes_row(override_store):
    override_store.set("p1", "t1", "u1", "productName", "Acme")
    override_store.set("p1", "t1", "u1", "productName", None)
    assert override_store.get_all("p1", "t1") == {}


def test_clear_and_clear_all(override_store):
    override_store.set_batch("p1", "t1", "u1", {"productName": "A", "teamSize": "solo"})
    override_store.set("p1", "t2", "u1", "productName", "B")

    assert override_store.clear("p1", "t1", "productName") is True
    assert override_store.clear("p1", "t1", "productName") is False
    assert override_store.get_all("p1", "t1") == {"teamSize": "solo"}

    assert override_store.clear_all("p1", "t1") == 1
    assert override_store.get_all("p1", "t1") == {}
    assert override_store.get_all("p1", "t2") == {"productName": "B"}


def test_task_ids_with_overrides_is_distinct(override_store):
    override_store.set_batch("p1", "t2", "u1", {"productName": "A", "teamSize": "solo"})
    override_store.set("p1", "t1", "u1", "productName", "B")
    override_store.set("p2", "t9", "u1", "productName", "C")
    assert override_store.task_ids_with_overrides("p1") == ["t1", "t2"]
    assert override_store.task_ids_with_overrides("p3") == []


def test_database_failures_become_storage_errors():
    # no tables: every statement fails at the driver
    bare = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    store = OverrideStore(create_session_factory(bare))
    with pytest.raises(StorageError) as exc:
        store.get_all("p1", "t1")
    assert exc.value.project_id == "p1"
    assert exc.value.task_id == "t1"
    assert exc.value.retryable is True
    assert isinstance(exc.value.original_error, OperationalError)
    assert exc.value.to_dict()["context"]["project_id"] == "p1"

    with pytest.raises(StorageError):
        ContextStore(create_session_factory(bare)).get_by_project_id("p1")
