"""
Tests for the cart reducer, totals, stored-cart parsing and the cart API.
"""

import json

import pytest

from weshop.cart import Cart, CartStore, compute_totals, format_price, get_cart_store, parse_cart
from weshop.models import Product

from conftest import add_product


def _product(pid="p1", name="Kurta", price=499.0):
    return Product(id=pid, name=name, price=price, category="Kurtas")


class TestTotals:

    def test_below_threshold_pays_delivery(self):
        totals = compute_totals(500, threshold=999, fee=99)
        assert totals.delivery_fee == 99
        assert totals.total == 599
        assert totals.free_delivery is False
        assert totals.free_delivery_remaining == 499

    def test_threshold_is_free(self):
        totals = compute_totals(999, threshold=999, fee=99)
        assert totals.delivery_fee == 0
        assert totals.total == 999
        assert totals.free_delivery is True
        assert totals.free_delivery_remaining == 0

    def test_uses_settings_defaults(self):
        totals = compute_totals(1500)
        assert totals.free_delivery is True
        assert totals.total == 1500

    def test_format_price(self):
        assert format_price(1299) == "₹1299"
        assert format_price(12.5) == "₹12.50"


class TestCart:

    def test_add_new_and_existing(self):
        cart = Cart()
        assert cart.add(_product(), 1) == "Added Kurta to cart"
        assert cart.add(_product(), 2) == "Updated Kurta quantity"
        assert len(cart) == 1
        assert cart.get("p1").quantity == 3

    def test_add_rejects_zero_quantity(self):
        with pytest.raises(ValueError):
            Cart().add(_product(), 0)

    def test_remove(self):
        cart = Cart()
        cart.add(_product())
        assert cart.remove("p1") == "Removed Kurta from cart"
        assert cart.remove("p1") is None
        assert "p1" not in cart

    def test_update_quantity_below_one_removes(self):
        cart = Cart()
        cart.add(_product())
        cart.update_quantity("p1", 0)
        assert len(cart) == 0

    def test_update_quantity_sets_value(self):
        cart = Cart()
        cart.add(_product())
        assert cart.update_quantity("p1", 5) is None
        assert cart.get("p1").quantity == 5

    def test_totals(self):
        cart = Cart()
        cart.add(_product("p1", price=300), 2)
        cart.add(_product("p2", name="Dupatta", price=150), 1)
        assert cart.total_items == 3
        assert cart.subtotal == 750
        assert cart.totals().total == 750 + 99

    def test_clear(self):
        cart = Cart()
        cart.add(_product())
        assert cart.clear() == "Cart cleared"
        assert cart.items == []


class TestParseCart:

    def test_round_trip(self):
        cart = Cart()
        cart.add(_product("p1"), 2)
        cart.add(_product("p2", name="Dupatta", price=150), 1)
        assert Cart.loads(cart.dumps()).items == cart.items

    def test_drops_malformed_entries(self):
        raw = json.dumps([
            {"product": {"id": "p1", "name": "Kurta", "price": 499, "category": "Kurtas"}, "quantity": 2},
            {"product": {"name": "no id"}, "quantity": 1},
            {"product": {"id": 7, "name": "bad id", "price": 1}, "quantity": 1},
            {"product": {"id": "p3", "name": "Zero", "price": 1}, "quantity": 0},
            {"product": {"id": "p4", "name": "Text qty", "price": 1}, "quantity": "2"},
            "not an object",
        ])
        items = parse_cart(raw)
        assert [item.product.id for item in items] == ["p1"]
        assert items[0].quantity == 2

    def test_unparseable_is_empty(self):
        assert parse_cart("{not json") == []
        assert parse_cart(None) == []
        assert parse_cart('{"product": {}}') == []


class TestCartStore:

    def test_save_and_load(self):
        store = CartStore()
        cart = Cart()
        cart.add(_product(), 2)
        store.save("c1", cart)
        assert store.load("c1").get("p1").quantity == 2
        assert len(store) == 1

    def test_unusable_stored_value_is_dropped(self):
        store = CartStore()
        store._carts["c1"] = "{broken"
        assert store.load("c1").items == []
        assert len(store) == 0

    def test_sqlite_persistence(self, tmp_path):
        path = str(tmp_path / "carts.db")
        cart = Cart()
        cart.add(_product(), 3)
        CartStore(db_path=path).save("c1", cart)

        reopened = CartStore(db_path=path)
        assert reopened.load("c1").get("p1").quantity == 3

        reopened.delete("c1")
        assert len(CartStore(db_path=path)) == 0

    def test_empty_cart_is_not_stored(self):
        store = CartStore()
        store.save("c1", Cart())
        assert len(store) == 0

        cart = Cart()
        cart.add(_product())
        store.save("c1", cart)
        cart.clear()
        store.save("c1", cart)
        assert len(store) == 0

    def test_expired_carts_are_pruned(self):
        store = CartStore(ttl_seconds=60)
        cart = Cart()
        cart.add(_product())
        store.save("old", cart)
        store.save("new", cart)
        store._touched["old"] -= 120

        assert store.prune_expired() == 1
        assert len(store) == 1
        assert store.load("old").items == []
        assert store.load("new").get("p1").quantity == 1

    def test_expired_cart_loads_empty(self):
        store = CartStore(ttl_seconds=60)
        cart = Cart()
        cart.add(_product())
        store.save("c1", cart)
        store._touched["c1"] -= 120
        assert store.load("c1").items == []
        assert len(store) == 0

    def test_expired_sqlite_carts_are_dropped_on_open(self, tmp_path):
        path = str(tmp_path / "carts.db")
        cart = Cart()
        cart.add(_product())
        CartStore(db_path=path).save("c1", cart)

        assert len(CartStore(db_path=path, ttl_seconds=-1)) == 0
        assert len(CartStore(db_path=path)) == 0


class TestCartEndpoints:

    def test_empty_cart_issues_id(self, client):
        response = client.get("/cart")
        assert response.status_code == 200
        data = response.json()
        assert data["cart_id"]
        assert data["items"] == []
        assert data["totals"]["total"] == 99

    def test_add_update_remove(self, client, database):
        product = add_product(database, price=400)

        response = client.post("/cart/items", json={"product_id": product["id"], "quantity": 2})
        assert response.status_code == 200
        data = response.json()
        cart_id = data["cart_id"]
        assert data["message"] == "Added Cotton Kurta to cart"
        assert data["total_items"] == 2
        assert data["totals"]["subtotal"] == 800

        headers = {"X-Cart-Id": cart_id}
        response = client.patch(f"/cart/items/{product['id']}", json={"quantity": 3}, headers=headers)
        assert response.json()["totals"]["subtotal"] == 1200
        assert response.json()["totals"]["free_delivery"] is True

        response = client.delete(f"/cart/items/{product['id']}", headers=headers)
        assert response.json()["message"] == "Removed Cotton Kurta from cart"
        assert response.json()["items"] == []

    def test_add_unknown_product(self, client):
        response = client.post("/cart/items", json={"product_id": "missing"})
        assert response.status_code == 404
        assert response.json()["detail"] == "Product not found"

    def test_add_inactive_product(self, client, database):
        product = add_product(database, is_active=False)
        response = client.post("/cart/items", json={"product_id": product["id"]})
        assert response.status_code == 400
        assert "no longer available" in response.json()["detail"]

    def test_clear(self, client, database):
        product = add_product(database)
        cart_id = client.post("/cart/items", json={"product_id": product["id"]}).json()["cart_id"]

        response = client.delete("/cart", headers={"X-Cart-Id": cart_id})
        assert response.json()["message"] == "Cart cleared"
        assert client.get("/cart", headers={"X-Cart-Id": cart_id}).json()["items"] == []

    def test_requests_without_items_store_nothing(self, client, database):
        for _ in range(10):
            client.get("/cart")
            client.delete("/cart/items/missing")
            client.delete("/cart")
        assert len(get_cart_store()) == 0

        product = add_product(database)
        cart_id = client.post("/cart/items", json={"product_id": product["id"]}).json()["cart_id"]
        assert len(get_cart_store()) == 1
        client.delete("/cart", headers={"X-Cart-Id": cart_id})
        assert len(get_cart_store()) == 0
