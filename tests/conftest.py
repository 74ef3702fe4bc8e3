# tests/conftest.py
import pytest

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from context_fields.db_helpers import create_session_factory
from context_fields.field_registry import load_field_registry
from context_fields.miniapp_catalog import load_miniapp_catalog
from context_fields.stores import ContextStore, OverrideStore
from context_fields.validation_service import ValidationService


@pytest.fixture(scope="session")
def registry():
    return load_field_registry()


@pytest.fixture(scope="session")
def catalog(registry):
    return load_miniapp_catalog(registry=registry)


@pytest.fixture
def validation_service(registry):
    return ValidationService(registry)


@pytest.fixture
def db_engine():
    # one shared in-memory SQLite connection per test
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine, create_tables=True)


@pytest.fixture
def context_store(session_factory):
    return ContextStore(session_factory)


@pytest.fixture
def override_store(session_factory):
    return OverrideStore(session_factory)
