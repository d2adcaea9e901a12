"""Per-user wishlists."""

import logging
from typing import List, Optional

from .catalog import get_product, get_products
from .db import Database, Query, get_db
from .errors import AuthError, ConflictError, DatabaseError, UNIQUE_VIOLATION
from .models import WishlistEntry, WishlistItem


logger = logging.getLogger(__name__)


def _require_user(user_id: Optional[str], message: str = "Please login") -> str:
    if not user_id:
        raise AuthError(message)
    return user_id


async def list_wishlist(user_id: Optional[str], database: Optional[Database] = None) -> List[WishlistItem]:
    """Guests have an empty wishlist."""
    if not user_id:
        return []
    database = database or get_db()
    rows = await database.select(Query("wishlists").eq("user_id", user_id).order("created_at"))
    return [WishlistItem.model_validate(row) for row in rows]


async def list_wishlist_with_products(user_id: Optional[str], database: Optional[Database] = None) -> List[WishlistEntry]:
    """Wishlist rows joined with their products (``product`` is None for deleted products)."""
    database = database or get_db()
    items = await list_wishlist(user_id, database)
    products = await get_products([item.product_id for item in items], database)
    return [
        WishlistEntry(
            id=item.id,
            product_id=item.product_id,
            created_at=item.created_at,
            product=products.get(item.product_id),
        )
        for item in items
    ]


async def add_to_wishlist(user_id: Optional[str], product_id: str, database: Optional[Database] = None) -> WishlistItem:
    user_id = _require_user(user_id, "Please login to add to wishlist")
    database = database or get_db()
    await get_product(product_id, database)
    try:
        row = await database.insert("wishlists", {"user_id": user_id, "product_id": product_id})
    except DatabaseError as e:
        if e.code == UNIQUE_VIOLATION:
            raise ConflictError("Already in wishlist") from e
        raise
    return WishlistItem.model_validate(row)


async def remove_from_wishlist(user_id: Optional[str], product_id: str, database: Optional[Database] = None) -> bool:
    """True if a row was removed; removing an absent product is not an error."""
    user_id = _require_user(user_id)
    database = database or get_db()
    rows = await database.delete(Query("wishlists").eq("user_id", user_id).eq("product_id", product_id))
    return bool(rows)


async def is_in_wishlist(user_id: Optional[str], product_id: str, database: Optional[Database] = None) -> bool:
    if not user_id:
        return False
    database = database or get_db()
    row = await database.maybe_one(Query("wishlists").eq("user_id", user_id).eq("product_id", product_id))
    return row is not None
