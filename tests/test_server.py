import pytest
from fastapi.testclient import TestClient

from context_fields.field_service import FieldService
import server
from server import create_app


@pytest.fixture
def client(registry, catalog, context_store, override_store):
    app = create_app(lambda: FieldService(registry, catalog, context_store, override_store))
    return TestClient(app)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_fields_round_trip(client):
    response = client.post("/fields", json={
        "type": "set_fields",
        "project_id": "p1",
        "task_id": "t1",
        "payload": {"mini_app_id": "outreach", "values": {"target_audience": "Agencies"}},
    })
    assert response.status_code == 200
    assert response.json()["status"] == "success"

    exported = client.post("/fields", json={
        "type": "export_fields",
        "project_id": "p1",
        "task_id": "t1",
        "payload": {"mini_app_id": "outreach"},
    }).json()
    assert exported["data"]["fields"] == {"target_audience": "Agencies"}


def test_unknown_type_is_an_error_payload(client):
    body = client.post("/fields", json={"type": "nope"}).json()
    assert body["status"] == "error"


def test_request_body_is_validated(client):
    assert client.post("/fields", json={"project_id": "p1"}).status_code == 422


def test_unexpected_failures_become_500():
    def broken_factory():
        raise RuntimeError("database misconfigured")

    client = TestClient(create_app(broken_factory))
    response = client.post("/fields", json={"type": "load_fields"})
    assert response.status_code == 500
    assert response.json()["detail"] == "database misconfigured"


def test_default_factory_binds_stores_per_request(monkeypatch, session_factory, override_store):
    monkeypatch.setattr(server, "get_session_factory", lambda: session_factory)
    client = TestClient(create_app())

    response = client.post("/fields", json={
        "type": "set_fields",
        "project_id": "p1",
        "task_id": "t1",
        "payload": {"mini_app_id": "outreach", "values": {"target_audience": "Agencies"}},
    })
    assert response.json()["status"] == "success"
    assert override_store.get_all("p1", "t1") == {"targetAudience": "Agencies"}
