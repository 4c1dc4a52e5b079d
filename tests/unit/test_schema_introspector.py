from schema.introspector.normalize import normalize_rows
from schema.introspector.service import SchemaIntrospector


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _fake_connection(registry):
    return registry.create({"name": "fake", "driver": "fake", "database": "fake.db"})


def test_tree_is_cached_until_ttl(executor, registry, fake_adapter):
    clock = FakeClock()
    introspector = SchemaIntrospector(executor, ttl_seconds=30, clock=clock)
    connection_id = _fake_connection(registry)

    tree = introspector.get_schema(connection_id)
    assert tree.to_dict() == {"public": {"users": [{"name": "id", "type": "integer"}, {"name": "email", "type": "text"}]}}
    assert introspector.get_schema(connection_id) is tree
    assert fake_adapter.schema_calls == 1

    clock.now += 31
    introspector.get_schema(connection_id)
    assert fake_adapter.schema_calls == 2


def test_reload_bypasses_cache(executor, registry, fake_adapter):
    introspector = SchemaIntrospector(executor, ttl_seconds=300)
    connection_id = _fake_connection(registry)
    introspector.get_schema(connection_id)
    fake_adapter.schema_rows.append(
        {"table_schema": "public", "table_name": "orders", "column_name": "id", "data_type": "bigint", "ordinal_position": 1}
    )
    assert introspector.get_schema(connection_id).table_count == 1
    assert introspector.get_schema(connection_id, reload=True).table_count == 2


def test_connection_update_invalidates_cache(executor, registry, fake_adapter):
    introspector = SchemaIntrospector(executor, ttl_seconds=300)
    connection_id = _fake_connection(registry)
    introspector.get_schema(connection_id)

    registry.update(connection_id, {"options": {"schema": "public"}})
    introspector.get_schema(connection_id)
    assert fake_adapter.schema_calls == 2


def test_sqlite_schema_tree(executor, registry, sqlite_db):
    introspector = SchemaIntrospector(executor)
    connection_id = registry.create({"name": "local", "driver": "sqlite", "database": str(sqlite_db)})
    tree = introspector.get_schema(connection_id)

    assert sorted(tree.tables("main")) == ["big_spenders", "records"]
    assert [(c.name, c.type) for c in tree.columns("main", "records")] == [
        ("id", "INTEGER"),
        ("country", "TEXT"),
        ("amount", "REAL"),
        ("event_date", "TEXT"),
    ]
    assert tree.column_count == 6
    assert registry.reference_count(connection_id) == 0


def test_normalize_handles_mysql_and_postgres_shapes():
    rows = [
        {"TABLE_SCHEMA": "shop", "TABLE_NAME": "orders", "COLUMN_NAME": "total", "COLUMN_TYPE": "decimal(10,2)", "ORDINAL_POSITION": 2},
        {"TABLE_SCHEMA": "shop", "TABLE_NAME": "orders", "COLUMN_NAME": "id", "COLUMN_TYPE": "int(11)", "ORDINAL_POSITION": 1},
        {"table_schema": "public", "table_name": "t", "column_name": "mood", "data_type": "USER-DEFINED", "udt_name": "mood_enum", "ordinal_position": 1},
        {"table_schema": "public", "table_name": "broken"},
    ]
    tree = normalize_rows(rows)
    assert [c.name for c in tree.columns("shop", "orders")] == ["id", "total"]
    assert tree.columns("shop", "orders")[1].type == "decimal(10,2)"
    assert tree.columns("public", "t")[0].type == "mood_enum"
    assert tree.tables("public") == ["t"]
