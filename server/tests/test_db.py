"""
Tests for the in-process collaborator and the query builder.
"""

import asyncio

import pytest

from weshop.db import MemoryDatabase, Query, like_to_regex, _where
from weshop.errors import DatabaseError, NO_ROWS, UNDEFINED_TABLE, UNIQUE_VIOLATION


def run(coro):
    return asyncio.run(coro)


class TestQuery:

    def test_like_patterns(self):
        assert like_to_regex("kur%").fullmatch("Kurta")
        assert like_to_regex("k_rta").fullmatch("KURTA")
        assert not like_to_regex("kur").fullmatch("Kurta")
        assert like_to_regex("50%").fullmatch("50% off")

    def test_sql_rendering(self):
        params = []
        sql = _where(
            Query("orders").eq("user_id", "u1").eq("revoked_at", None).in_("status", ["placed", "packed"]).filters,
            params,
        )
        assert "user_id = $1" in sql
        assert "revoked_at IS NULL" in sql
        assert "status = ANY($2)" in sql
        assert params == ["u1", ["placed", "packed"]]


class TestMemoryDatabase:

    def test_insert_assigns_id_and_timestamps(self):
        database = MemoryDatabase()
        row = run(database.insert("products", {"name": "Kurta", "price": 10}))
        assert row["id"]
        assert row["created_at"] is not None
        assert row["updated_at"] is not None

    def test_rows_are_copied(self):
        database = MemoryDatabase()
        row = run(database.insert("products", {"name": "Kurta", "images": ["a"]}))
        row["images"].append("b")
        assert run(database.select_one(Query("products")))["images"] == ["a"]

    def test_filters_order_and_limit(self):
        database = MemoryDatabase()
        for name, price in [("Kurta", 300), ("Saree", 900), ("Shirt", 500)]:
            run(database.insert("products", {"name": name, "price": price, "is_active": True}))

        rows = run(database.select(Query("products").search(["name"], "s").order("price", descending=False)))
        assert [r["name"] for r in rows] == ["Shirt", "Saree"]

        newest = run(database.select(Query("products").order("created_at").limit(1)))
        assert newest[0]["name"] == "Shirt"

    def test_nulls_sort_last(self):
        database = MemoryDatabase()
        run(database.insert("products", {"name": "A", "rating": None}))
        run(database.insert("products", {"name": "B", "rating": 4}))
        rows = run(database.select(Query("products").order("rating", descending=False)))
        assert [r["name"] for r in rows] == ["B", "A"]

    def test_unique_violation(self):
        database = MemoryDatabase()
        run(database.insert("categories", {"name": "Kurtas", "slug": "kurtas"}))
        with pytest.raises(DatabaseError) as exc:
            run(database.insert("categories", {"name": "Kurtas 2", "slug": "kurtas"}))
        assert exc.value.code == UNIQUE_VIOLATION

    def test_unknown_table(self):
        with pytest.raises(DatabaseError) as exc:
            run(MemoryDatabase().select(Query("payments")))
        assert exc.value.code == UNDEFINED_TABLE

    def test_select_one_without_rows(self):
        with pytest.raises(DatabaseError) as exc:
            run(MemoryDatabase().select_one(Query("orders").eq("id", "missing")))
        assert exc.value.code == NO_ROWS

    def test_update_and_delete_return_rows(self):
        database = MemoryDatabase()
        row = run(database.insert("orders", {"order_number": "ORD-1", "status": "placed", "total": 10}))

        updated = run(database.update_by_id("orders", row["id"], {"status": "packed"}))
        assert updated["status"] == "packed"
        assert updated["updated_at"] > row["updated_at"]

        assert run(database.update(Query("orders").eq("id", "missing"), {"status": "shipped"})) == []
        assert run(database.delete_by_id("orders", row["id"])) is True
        assert run(database.delete_by_id("orders", row["id"])) is False

    def test_mutations_publish_events(self):
        database = MemoryDatabase()
        events = []
        database.subscribe("orders", events.append)

        row = run(database.insert("orders", {"order_number": "ORD-1", "status": "placed"}))
        run(database.update_by_id("orders", row["id"], {"status": "packed"}))
        run(database.delete_by_id("orders", row["id"]))

        assert [e.event_type for e in events] == ["INSERT", "UPDATE", "DELETE"]
        assert events[1].old["status"] == "placed"
        assert events[1].new["status"] == "packed"

    def test_credential_tables_stay_off_the_feed(self):
        database = MemoryDatabase()
        events = []
        database.subscribe("users", events.append)
        run(database.insert("users", {"email": "a@example.com", "password_hash": "x"}))
        assert events == []

    def test_count(self):
        database = MemoryDatabase()
        run(database.insert("user_roles", {"user_id": "u1", "role": "admin"}))
        run(database.insert("user_roles", {"user_id": "u2", "role": "user"}))
        assert run(database.count(Query("user_roles").in_("role", ["admin", "moderator"]))) == 1
