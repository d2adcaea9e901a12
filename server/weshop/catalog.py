"""
Catalog: products and categories.

Storefront listings go through the query cache; admin operations hit the
collaborator directly. The cache is invalidated by the change feed whenever
products or categories change.
"""

import logging
import re
from typing import Dict, List, Optional

from .cache import cache_for
from .db import Database, Query, get_db
from .errors import ConflictError, DatabaseError, NotFoundError, ValidationFailed, UNIQUE_VIOLATION
from .models import Category, CategoryInput, CategoryUpdate, Product, ProductInput, ProductUpdate


logger = logging.getLogger(__name__)

SORT_OPTIONS = ("newest", "price-low", "price-high", "rating")


def slugify(name: str) -> str:
    """``"Men's Wear"`` -> ``"men-s-wear"``."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def sort_products(products: List[Product], sort: str) -> List[Product]:
    if sort == "price-low":
        return sorted(products, key=lambda p: p.price)
    if sort == "price-high":
        return sorted(products, key=lambda p: p.price, reverse=True)
    if sort == "rating":
        return sorted(products, key=lambda p: p.rating or 0, reverse=True)
    # newest: collaborator already returns created_at descending
    return products


# --- Products ---


async def list_products(
    category: Optional[str] = None,
    search: Optional[str] = None,
    featured: bool = False,
    trending: bool = False,
    sort: str = "newest",
    database: Optional[Database] = None,
) -> List[Product]:
    """Active products for the storefront, newest first unless ``sort`` says otherwise."""
    if sort not in SORT_OPTIONS:
        raise ValidationFailed(f"Unknown sort option: {sort}")
    database = database or get_db()

    query = Query("products").eq("is_active", True).order("created_at")
    if category:
        query.ilike("category", category)
    if search:
        query.search(["name", "description"], search)
    if featured:
        query.eq("featured", True)
    if trending:
        query.eq("trending", True)

    key = f"products:list:{category or ''}:{search or ''}:{int(featured)}:{int(trending)}"
    rows = await cache_for(database).fetch(key, lambda: database.select(query))
    return sort_products([Product.model_validate(row) for row in rows], sort)


async def list_all_products(database: Optional[Database] = None) -> List[Product]:
    """Every product, inactive ones included (admin)."""
    database = database or get_db()
    rows = await cache_for(database).fetch(
        "products:all",
        lambda: database.select(Query("products").order("created_at")),
    )
    return [Product.model_validate(row) for row in rows]


async def get_product(product_id: str, database: Optional[Database] = None) -> Product:
    database = database or get_db()
    row = await database.maybe_one(Query("products").eq("id", product_id))
    if row is None:
        raise NotFoundError("Product not found")
    return Product.model_validate(row)


async def get_products(product_ids: List[str], database: Optional[Database] = None) -> Dict[str, Product]:
    """Products by id; missing ids are simply absent from the result."""
    if not product_ids:
        return {}
    database = database or get_db()
    rows = await database.select(Query("products").in_("id", product_ids))
    return {row["id"]: Product.model_validate(row) for row in rows}


async def create_product(data: ProductInput, database: Optional[Database] = None) -> Product:
    database = database or get_db()
    row = await database.insert("products", data.model_dump())
    logger.info(f"[catalog] Created product {row['id']} ({row['name']})")
    return Product.model_validate(row)


async def update_product(product_id: str, changes: ProductUpdate, database: Optional[Database] = None) -> Product:
    """Apply only the fields that were sent."""
    database = database or get_db()
    fields = changes.model_dump(exclude_unset=True)
    if not fields:
        return await get_product(product_id, database)
    row = await database.update_by_id("products", product_id, fields)
    if row is None:
        raise NotFoundError("Product not found")
    logger.info(f"[catalog] Updated product {product_id}: {sorted(fields)}")
    return Product.model_validate(row)


async def delete_product(product_id: str, database: Optional[Database] = None) -> bool:
    database = database or get_db()
    if not await database.delete_by_id("products", product_id):
        raise NotFoundError("Product not found")
    logger.info(f"[catalog] Deleted product {product_id}")
    return True


# --- Categories ---


def count_products(category: Dict, products: List[Dict]) -> int:
    """Products filed under a category by id, or by name for legacy rows."""
    name = (category.get("name") or "").lower()
    return sum(
        1
        for p in products
        if p.get("category_id") == category["id"] or (p.get("category") or "").lower() == name
    )


async def list_categories(with_counts: bool = True, database: Optional[Database] = None) -> List[Category]:
    database = database or get_db()
    cache = cache_for(database)
    rows = await cache.fetch("categories:all", lambda: database.select(Query("categories").order("name", descending=False)))
    if not with_counts:
        return [Category.model_validate(row) for row in rows]

    products = await cache.fetch("products:active", lambda: database.select(Query("products").eq("is_active", True)))
    return [Category.model_validate({**row, "product_count": count_products(row, products)}) for row in rows]


async def get_category(category_id: str, database: Optional[Database] = None) -> Category:
    database = database or get_db()
    row = await database.maybe_one(Query("categories").eq("id", category_id))
    if row is None:
        raise NotFoundError("Category not found")
    return Category.model_validate(row)


def _slug_taken(slug: str) -> ConflictError:
    return ConflictError(f"A category with slug '{slug}' already exists")


async def create_category(data: CategoryInput, database: Optional[Database] = None) -> Category:
    database = database or get_db()
    slug = slugify(data.slug or data.name)
    if not slug:
        raise ValidationFailed("Category slug cannot be empty")
    try:
        row = await database.insert("categories", {"name": data.name, "slug": slug, "image": data.image})
    except DatabaseError as e:
        if e.code == UNIQUE_VIOLATION:
            raise _slug_taken(slug) from e
        raise
    logger.info(f"[catalog] Created category {slug}")
    return Category.model_validate(row)


async def update_category(category_id: str, changes: CategoryUpdate, database: Optional[Database] = None) -> Category:
    database = database or get_db()
    fields = changes.model_dump(exclude_unset=True)
    if "slug" in fields:
        fields["slug"] = slugify(fields["slug"] or fields.get("name") or "")
        if not fields["slug"]:
            raise ValidationFailed("Category slug cannot be empty")
    if not fields:
        return await get_category(category_id, database)
    try:
        row = await database.update_by_id("categories", category_id, fields)
    except DatabaseError as e:
        if e.code == UNIQUE_VIOLATION:
            raise _slug_taken(fields.get("slug", "")) from e
        raise
    if row is None:
        raise NotFoundError("Category not found")
    return Category.model_validate(row)


async def delete_category(category_id: str, database: Optional[Database] = None) -> bool:
    """Delete a category. Its products are kept."""
    database = database or get_db()
    if not await database.delete_by_id("categories", category_id):
        raise NotFoundError("Category not found")
    logger.info(f"[catalog] Deleted category {category_id}")
    return True
