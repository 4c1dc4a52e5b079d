import json

import pytest

from connections.registry import ConnectionRegistry
from connections.store import FileConnectionStore
from utils.errors import InUse, NotFound, ValidationError


def _sqlite_payload(**overrides):
    payload = {"name": "local", "driver": "sqlite", "database": "/tmp/local.db"}
    payload.update(overrides)
    return payload


def test_create_rejects_unregistered_driver():
    registry = ConnectionRegistry()
    with pytest.raises(ValidationError, match="Unsupported driver: oracle"):
        registry.create({"name": "x", "driver": "oracle", "host": "db", "database": "orcl"})
    assert registry.list() == []


def test_create_requires_host_and_database_for_network_drivers():
    registry = ConnectionRegistry()
    with pytest.raises(ValidationError, match="host is required"):
        registry.create({"name": "pg", "driver": "postgres", "database": "app"})
    with pytest.raises(ValidationError, match="database is required"):
        registry.create({"name": "pg", "driver": "postgres", "host": "db"})


def test_create_normalizes_driver_aliases():
    registry = ConnectionRegistry()
    connection_id = registry.create({"name": "pg", "driver": "PostgreSQL", "host": "db", "database": "app", "port": "5433"})
    config = registry.get(connection_id)
    assert config.driver == "postgres"
    assert config.port == 5433


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"name": " "}, "name is required"),
        ({"port": 70000}, "port must be between"),
        ({"options": {"max_sessions": 0}}, "max_sessions must be a positive integer"),
        ({"credential_ref": "vault:secret"}, "credential_ref must look like"),
    ],
)
def test_create_rejects_invalid_fields(overrides, message):
    with pytest.raises(ValidationError, match=message):
        ConnectionRegistry().create(_sqlite_payload(**overrides))


def test_get_update_delete_roundtrip():
    registry = ConnectionRegistry()
    connection_id = registry.create(_sqlite_payload())

    updated = registry.update(connection_id, {"name": "renamed", "options": {"read_only": True}})
    assert updated.name == "renamed"
    assert updated.read_only is True
    assert registry.get(connection_id).name == "renamed"

    registry.delete(connection_id)
    with pytest.raises(NotFound):
        registry.get(connection_id)
    with pytest.raises(NotFound):
        registry.delete(connection_id)


def test_update_rejects_id_and_invalid_result():
    registry = ConnectionRegistry()
    connection_id = registry.create(_sqlite_payload())
    with pytest.raises(ValidationError, match="Fields cannot be updated: id"):
        registry.update(connection_id, {"id": "other"})
    with pytest.raises(ValidationError):
        registry.update(connection_id, {"driver": "postgres"})
    assert registry.get(connection_id).driver == "sqlite"


def test_update_notifies_listeners():
    registry = ConnectionRegistry()
    seen = []
    registry.add_listener(seen.append)
    connection_id = registry.create(_sqlite_payload())
    registry.update(connection_id, {"name": "again"})
    registry.delete(connection_id)
    assert seen == [connection_id, connection_id]


def test_delete_refuses_while_referenced():
    registry = ConnectionRegistry()
    connection_id = registry.create(_sqlite_payload())
    registry.acquire_reference(connection_id)
    with pytest.raises(InUse):
        registry.delete(connection_id)

    registry.release_reference(connection_id)
    assert registry.reference_count(connection_id) == 0
    registry.delete(connection_id)


def test_release_reference_is_safe_without_acquire():
    registry = ConnectionRegistry()
    registry.release_reference("missing")
    assert registry.reference_count("missing") == 0


def test_file_store_persists_across_registries(tmp_path):
    path = tmp_path / "conns" / "connections.json"
    first = ConnectionRegistry(FileConnectionStore(str(path)))
    keep_id = first.create(_sqlite_payload(name="keep", credential_ref="env:LOCAL_DB_PASSWORD"))
    drop_id = first.create(_sqlite_payload(name="drop"))
    first.delete(drop_id)

    stored = json.loads(path.read_text(encoding="utf-8"))
    assert [item["id"] for item in stored] == [keep_id]
    assert stored[0]["credential_ref"] == "env:LOCAL_DB_PASSWORD"

    second = ConnectionRegistry(FileConnectionStore(str(path)))
    assert [c.name for c in second.list()] == ["keep"]


def test_redacted_masks_literal_secrets():
    registry = ConnectionRegistry()
    connection_id = registry.create(_sqlite_payload(credential_ref="literal:hunter2"))
    redacted = registry.get(connection_id).redacted()
    assert redacted["credential_ref"] == "literal:***"
    assert "hunter2" not in json.dumps(redacted)
