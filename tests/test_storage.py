import pytest
from postgrest.exceptions import APIError

from protolab.storage import JsonStore, StoreError, SupabaseStore, UniqueViolation, create_store


@pytest.fixture
def json_store(tmp_path):
    return JsonStore(str(tmp_path))


def test_insert_assigns_id_and_timestamps(json_store):
    row = json_store.insert("orders", {"status": "submitted"})
    assert row["id"]
    assert row["created_at"] == row["updated_at"]
    assert json_store.get("orders", row["id"])["status"] == "submitted"


def test_select_filters_sorts_and_limits(json_store):
    for i, status in enumerate(["a", "b", "a"]):
        json_store.insert("orders", {"n": i, "status": status, "deleted_at": None})
    json_store.insert("orders", {"n": 9, "status": "a", "deleted_at": "2025-01-01"})

    rows = json_store.select("orders", {"status": "a", "deleted_at": None}, order_by="n", descending=True)
    assert [r["n"] for r in rows] == [2, 0]
    assert len(json_store.select("orders", limit=2)) == 2


def test_update_and_delete(json_store):
    row = json_store.insert("users", {"email": "a@example.com"})
    updated = json_store.update("users", row["id"], {"name": "A"})
    assert updated["name"] == "A"
    assert json_store.update("users", "missing", {"name": "B"}) is None
    assert json_store.delete("users", row["id"]) is True
    assert json_store.delete("users", row["id"]) is False


def test_upsert_on_conflict_column(json_store):
    first = json_store.upsert("credits", {"user_id": "u1", "balance": 10.0}, on_conflict="user_id")
    second = json_store.upsert("credits", {"user_id": "u1", "balance": 25.0}, on_conflict="user_id")
    assert first["id"] == second["id"]
    assert json_store.select("credits") == [second]
    assert second["balance"] == 25.0


def test_unknown_table_is_rejected(json_store):
    with pytest.raises(StoreError):
        json_store.insert("passwords", {})


def test_data_survives_a_new_store(tmp_path):
    JsonStore(str(tmp_path)).insert("settings", {"labor_minutes": 30})
    assert JsonStore(str(tmp_path)).find_one("settings", {})["labor_minutes"] == 30


def test_insert_unique_refuses_a_taken_slot(json_store):
    row = {"date": "2030-01-07", "time": "10:00", "status": "scheduled"}
    json_store.insert_unique("appointments", row, ("date", "time", "status"))
    with pytest.raises(UniqueViolation):
        json_store.insert_unique("appointments", dict(row, email="b@example.com"), ("date", "time", "status"))
    json_store.insert_unique("appointments", dict(row, status="cancelled"), ("date", "time", "status"))
    assert len(json_store.select("appointments")) == 2



# -------------------------
# Supabase query building
# -------------------------
class FakeResult:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, log, data):
        self.log = log
        self.data = data

    def __getattr__(self, name):
        def call(*args, **kwargs):
            self.log.append((name, args, kwargs))
            return self

        return call

    def execute(self):
        return FakeResult(self.data)


class FakeClient:
    def __init__(self, data=None):
        self.log = []
        self.data = data if data is not None else []

    def table(self, name):
        self.log.append(("table", (name,), {}))
        return FakeQuery(self.log, self.data)


def test_supabase_select_translates_filters():
    client = FakeClient([{"id": "1"}])
    store = SupabaseStore("https://x.supabase.co", "key", client=client)
    rows = store.select("orders", {"user_id": "u1", "deleted_at": None}, order_by="created_at", descending=True, limit=5)
    assert rows == [{"id": "1"}]
    assert ("eq", ("user_id", "u1"), {}) in client.log
    assert ("is_", ("deleted_at", "null"), {}) in client.log
    assert ("order", ("created_at",), {"desc": True}) in client.log
    assert ("limit", (5,), {}) in client.log


def test_supabase_upsert_and_insert():
    client = FakeClient([{"id": "1", "user_id": "u1"}])
    store = SupabaseStore("https://x.supabase.co", "key", client=client)
    assert store.upsert("credits", {"user_id": "u1", "balance": 1.0}, on_conflict="user_id")["id"] == "1"
    name, args, kwargs = [c for c in client.log if c[0] == "upsert"][0]
    assert kwargs == {"on_conflict": "user_id"}
    assert args[0]["updated_at"]

    with pytest.raises(StoreError):
        SupabaseStore("u", "k", client=FakeClient([])).insert("orders", {})


def test_create_store_backends(tmp_path):
    assert isinstance(create_store({"DATA_BACKEND": "json", "DATA_DIR": str(tmp_path)}), JsonStore)
    with pytest.raises(StoreError):
        create_store({"DATA_BACKEND": "supabase"})


class DuplicateInsertClient(FakeClient):
    def table(self, name):
        query = super().table(name)

        def execute():
            raise APIError({"message": "duplicate key value", "code": "23505", "hint": None, "details": None})

        query.execute = execute
        return query


def test_supabase_insert_unique_maps_duplicate_key():
    store = SupabaseStore("u", "k", client=DuplicateInsertClient())
    with pytest.raises(UniqueViolation):
        store.insert_unique("appointments", {"date": "2030-01-07", "time": "10:00"}, ("date", "time"))
