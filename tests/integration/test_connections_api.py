import pytest
from fastapi.testclient import TestClient

from api.main import app
from api.state import Core
from schema.introspector.service import SchemaIntrospector


@pytest.fixture
def client(monkeypatch, registry, executor):
    core = Core(registry=registry, executor=executor, introspector=SchemaIntrospector(executor))
    monkeypatch.setattr("api.routes.get_core", lambda: core)
    return TestClient(app)


def test_connection_lifecycle(client, sqlite_db):
    response = client.post(
        "/connections",
        json={"name": "local", "driver": "sqlite", "database": str(sqlite_db), "credential_ref": "literal:pw"},
    )
    assert response.status_code == 201
    created = response.json()["connection"]
    connection_id = created["id"]
    assert created["credential_ref"] == "literal:***"

    listing = client.get("/connections").json()
    assert listing["count"] == 1
    assert listing["connections"][0]["name"] == "local"

    response = client.patch(f"/connections/{connection_id}", json={"name": "renamed"})
    assert response.status_code == 200
    assert response.json()["connection"]["name"] == "renamed"

    response = client.post(f"/connections/{connection_id}/test")
    assert response.status_code == 200
    assert response.json()["ok"] is True

    response = client.delete(f"/connections/{connection_id}")
    assert response.status_code == 204

    response = client.get(f"/connections/{connection_id}")
    assert response.status_code == 404
    assert response.json()["detail"] == {
        "kind": "NotFound",
        "message": f"Unknown connection id: {connection_id}",
        "retryable": False,
    }


def test_create_with_unknown_driver_is_rejected(client):
    response = client.post("/connections", json={"name": "x", "driver": "oracle", "host": "db", "database": "orcl"})
    assert response.status_code == 400
    body = response.json()["detail"]
    assert body["kind"] == "ValidationError"
    assert "oracle" in body["message"]


def test_patch_with_no_fields_is_rejected(client, sqlite_db):
    connection_id = client.post("/connections", json={"name": "local", "driver": "sqlite", "database": str(sqlite_db)}).json()[
        "connection"
    ]["id"]
    response = client.patch(f"/connections/{connection_id}", json={})
    assert response.status_code == 400


def test_unreachable_database_maps_to_502(client, tmp_path):
    connection_id = client.post(
        "/connections", json={"name": "gone", "driver": "sqlite", "database": str(tmp_path / "missing.db")}
    ).json()["connection"]["id"]
    response = client.post(f"/connections/{connection_id}/test")
    assert response.status_code == 502
    assert response.json()["detail"]["kind"] == "ConnectionError"
    assert response.json()["detail"]["retryable"] is True


def test_schema_endpoint(client, sqlite_db):
    connection_id = client.post("/connections", json={"name": "local", "driver": "sqlite", "database": str(sqlite_db)}).json()[
        "connection"
    ]["id"]
    response = client.get(f"/connections/{connection_id}/schema", params={"reload": "true"})
    assert response.status_code == 200
    body = response.json()
    assert body["table_count"] == 2
    assert [c["name"] for c in body["schema"]["main"]["records"]] == ["id", "country", "amount", "event_date"]


def test_health_and_version(client):
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert {"postgres", "mysql", "sqlite"} <= set(health.json()["drivers"])
    assert client.get("/version").json() == {"version": "0.1.0"}
