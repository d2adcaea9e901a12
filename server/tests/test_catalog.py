"""
Tests for products and categories.
"""

import asyncio

import pytest

from weshop import catalog
from weshop.errors import ConflictError, NotFoundError, ValidationFailed
from weshop.models import CategoryInput, CategoryUpdate, ProductInput, ProductUpdate

from conftest import add_product


def run(coro):
    return asyncio.run(coro)


class TestSlugify:

    @pytest.mark.parametrize("name,slug", [
        ("Men's Wear", "men-s-wear"),
        ("  Sarees & Silk  ", "sarees-silk"),
        ("Kids", "kids"),
    ])
    def test_slugify(self, name, slug):
        assert catalog.slugify(name) == slug


class TestProducts:

    def test_listing_is_active_only_newest_first(self, database):
        add_product(database, name="Old Kurta")
        add_product(database, name="Hidden", is_active=False)
        add_product(database, name="New Kurta")

        names = [p.name for p in run(catalog.list_products(database=database))]
        assert names == ["New Kurta", "Old Kurta"]

    def test_category_is_case_insensitive(self, database):
        add_product(database, name="Kurta", category="Kurtas")
        add_product(database, name="Saree", category="Sarees")
        products = run(catalog.list_products(category="kurtas", database=database))
        assert [p.name for p in products] == ["Kurta"]

    def test_search_name_and_description(self, database):
        add_product(database, name="Silk Saree", description="Wedding wear")
        add_product(database, name="Kurta", description="Silk blend")
        add_product(database, name="Shirt", description="Cotton")
        names = {p.name for p in run(catalog.list_products(search="SILK", database=database))}
        assert names == {"Silk Saree", "Kurta"}

    def test_featured_and_trending(self, database):
        add_product(database, name="Featured", featured=True)
        add_product(database, name="Trending", trending=True)
        assert [p.name for p in run(catalog.list_products(featured=True, database=database))] == ["Featured"]
        assert [p.name for p in run(catalog.list_products(trending=True, database=database))] == ["Trending"]

    @pytest.mark.parametrize("sort,expected", [
        ("price-low", ["Cheap", "Mid", "Pricey"]),
        ("price-high", ["Pricey", "Mid", "Cheap"]),
        ("rating", ["Mid", "Pricey", "Cheap"]),
    ])
    def test_sorting(self, database, sort, expected):
        add_product(database, name="Mid", price=500, rating=4.8)
        add_product(database, name="Cheap", price=100, rating=None)
        add_product(database, name="Pricey", price=900, rating=3.5)
        assert [p.name for p in run(catalog.list_products(sort=sort, database=database))] == expected

    def test_unknown_sort(self, database):
        with pytest.raises(ValidationFailed):
            run(catalog.list_products(sort="cheapest", database=database))

    def test_listing_refreshes_after_change(self, database):
        add_product(database, name="First")
        assert len(run(catalog.list_products(database=database))) == 1
        add_product(database, name="Second")
        assert len(run(catalog.list_products(database=database))) == 2

    def test_create_update_delete(self, database):
        product = run(catalog.create_product(
            ProductInput(name="Dupatta", price=299, category="Dupattas", stock=5),
            database,
        ))
        updated = run(catalog.update_product(product.id, ProductUpdate(price=249), database))
        assert updated.price == 249
        assert updated.stock == 5

        assert run(catalog.delete_product(product.id, database)) is True
        with pytest.raises(NotFoundError):
            run(catalog.get_product(product.id, database))

    def test_update_missing(self, database):
        with pytest.raises(NotFoundError):
            run(catalog.update_product("missing", ProductUpdate(price=1), database))

    def test_product_invariants(self):
        with pytest.raises(ValueError):
            ProductInput(name="Bad", price=-1, category="X")
        with pytest.raises(ValueError):
            ProductInput(name="Bad", price=1, category="X", discount=120)
        with pytest.raises(ValueError):
            ProductInput(name="Bad", price=1, category="X", stock=-3)


class TestCategories:

    def test_create_generates_slug(self, database):
        category = run(catalog.create_category(CategoryInput(name="Men's Wear"), database))
        assert category.slug == "men-s-wear"

    def test_duplicate_slug(self, database):
        run(catalog.create_category(CategoryInput(name="Kurtas"), database))
        with pytest.raises(ConflictError) as exc:
            run(catalog.create_category(CategoryInput(name="KURTAS"), database))
        assert "kurtas" in exc.value.message

    def test_update_to_taken_slug(self, database):
        run(catalog.create_category(CategoryInput(name="Kurtas"), database))
        sarees = run(catalog.create_category(CategoryInput(name="Sarees"), database))
        with pytest.raises(ConflictError):
            run(catalog.update_category(sarees.id, CategoryUpdate(slug="kurtas"), database))

    def test_product_counts(self, database):
        kurtas = run(catalog.create_category(CategoryInput(name="Kurtas"), database))
        run(catalog.create_category(CategoryInput(name="Sarees"), database))
        add_product(database, name="By id", category="Other", category_id=kurtas.id)
        add_product(database, name="By name", category="kurtas")
        add_product(database, name="Inactive", category="Kurtas", is_active=False)

        counts = {c.name: c.product_count for c in run(catalog.list_categories(database=database))}
        assert counts == {"Kurtas": 2, "Sarees": 0}

    def test_delete_keeps_products(self, database):
        category = run(catalog.create_category(CategoryInput(name="Kurtas"), database))
        product = add_product(database, category_id=category.id)
        run(catalog.delete_category(category.id, database))
        assert run(catalog.get_product(product["id"], database)).id == product["id"]
        with pytest.raises(NotFoundError):
            run(catalog.delete_category(category.id, database))


class TestCatalogEndpoints:

    def test_list_and_get(self, client, database):
        product = add_product(database, name="Kurta")
        response = client.get("/products", params={"sort": "price-low"})
        assert response.status_code == 200
        assert [p["name"] for p in response.json()] == ["Kurta"]

        response = client.get(f"/products/{product['id']}")
        assert response.json()["name"] == "Kurta"

    def test_inactive_product_hidden(self, client, database):
        product = add_product(database, is_active=False)
        response = client.get(f"/products/{product['id']}")
        assert response.status_code == 404
        assert response.json()["detail"] == "Product not found"

    def test_unknown_sort(self, client):
        response = client.get("/products", params={"sort": "bogus"})
        assert response.status_code == 400

    def test_categories(self, client, database):
        run(catalog.create_category(CategoryInput(name="Sarees"), database))
        run(catalog.create_category(CategoryInput(name="Kurtas"), database))
        response = client.get("/categories")
        assert [c["name"] for c in response.json()] == ["Kurtas", "Sarees"]
