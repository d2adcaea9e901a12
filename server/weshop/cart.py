"""
Shopping cart: line-item reducer, totals, and durable cart storage.

Carts are keyed by an opaque id the client keeps (the ``X-Cart-Id`` header)
and are stored as a JSON array of ``{"product": {...}, "quantity": n}``
entries, in memory with optional SQLite persistence.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import ValidationError

from .models import CartItem, CartTotals, Product
from .settings import settings


logger = logging.getLogger(__name__)


def compute_totals(
    subtotal: float,
    threshold: Optional[float] = None,
    fee: Optional[float] = None,
) -> CartTotals:
    """Delivery is free iff the subtotal reaches the threshold; otherwise a flat fee."""
    threshold = settings.free_delivery_threshold if threshold is None else threshold
    fee = settings.delivery_fee if fee is None else fee

    free = subtotal >= threshold
    delivery_fee = 0.0 if free else float(fee)
    return CartTotals(
        subtotal=round(subtotal, 2),
        delivery_fee=delivery_fee,
        total=round(subtotal + delivery_fee, 2),
        free_delivery=free,
        free_delivery_remaining=max(0.0, round(threshold - subtotal, 2)),
    )


def format_price(amount: float) -> str:
    """``₹1299`` for whole amounts, ``₹12.50`` otherwise."""
    if float(amount).is_integer():
        return f"{settings.currency_symbol}{int(amount)}"
    return f"{settings.currency_symbol}{amount:.2f}"


def parse_cart(raw: Optional[str]) -> List[CartItem]:
    """
    Parse a stored cart.

    Entries that are not objects, lack a product with a string id, or lack a
    numeric quantity of at least 1 are dropped. Unparseable input yields an
    empty cart.
    """
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("[cart] Discarding unparseable stored cart")
        return []
    if not isinstance(data, list):
        return []

    items: List[CartItem] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        product = entry.get("product")
        quantity = entry.get("quantity")
        if not isinstance(product, dict) or not isinstance(product.get("id"), str):
            continue
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)) or quantity < 1:
            continue
        try:
            items.append(CartItem(product=Product.model_validate(product), quantity=int(quantity)))
        except ValidationError:
            continue
    return items


class Cart:
    """Ordered cart lines, at most one per product id."""

    def __init__(self, items: Optional[List[CartItem]] = None):
        self._items: Dict[str, CartItem] = {}
        for item in items or []:
            existing = self._items.get(item.product.id)
            quantity = item.quantity + (existing.quantity if existing else 0)
            self._items[item.product.id] = CartItem(product=item.product, quantity=quantity)

    @classmethod
    def loads(cls, raw: Optional[str]) -> "Cart":
        return cls(parse_cart(raw))

    def dumps(self) -> str:
        return json.dumps([item.model_dump(mode="json") for item in self._items.values()])

    @property
    def items(self) -> List[CartItem]:
        return list(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._items

    def get(self, product_id: str) -> Optional[CartItem]:
        return self._items.get(product_id)

    def add(self, product: Product, quantity: int = 1) -> str:
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")
        existing = self._items.get(product.id)
        if existing is not None:
            self._items[product.id] = CartItem(product=product, quantity=existing.quantity + quantity)
            return f"Updated {product.name} quantity"
        self._items[product.id] = CartItem(product=product, quantity=quantity)
        return f"Added {product.name} to cart"

    def remove(self, product_id: str) -> Optional[str]:
        item = self._items.pop(product_id, None)
        if item is None:
            return None
        return f"Removed {item.product.name} from cart"

    def update_quantity(self, product_id: str, quantity: int) -> Optional[str]:
        """Set a line's quantity; anything below 1 removes the line."""
        if quantity < 1:
            return self.remove(product_id)
        item = self._items.get(product_id)
        if item is not None:
            self._items[product_id] = CartItem(product=item.product, quantity=quantity)
        return None

    def clear(self) -> str:
        self._items.clear()
        return "Cart cleared"

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self._items.values())

    @property
    def subtotal(self) -> float:
        return sum(item.product.price * item.quantity for item in self._items.values())

    def totals(self) -> CartTotals:
        return compute_totals(self.subtotal)


class CartStore:
    """
    In-memory cart storage with optional SQLite persistence.

    Empty carts are not stored. Carts untouched for ``ttl_seconds`` expire and
    are pruned on the next save.
    """

    def __init__(self, db_path: Optional[str] = None, ttl_seconds: Optional[float] = None):
        self._carts: Dict[str, str] = {}  # cart id -> serialized cart
        self._touched: Dict[str, float] = {}  # cart id -> epoch seconds of last save
        self.ttl_seconds = settings.cart_ttl_hours * 3600 if ttl_seconds is None else ttl_seconds
        self._lock = threading.RLock()
        self.db_path = db_path

        if db_path:
            self._init_db()
            self._load_from_db()

    def _init_db(self):
        conn = sqlite3.connect(self.db_path)
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS carts (
                    cart_id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,  -- JSON array of cart lines
                    updated_at TEXT NOT NULL
                );
            """)
            conn.commit()
        finally:
            conn.close()

    def _load_from_db(self):
        conn = sqlite3.connect(self.db_path)
        try:
            for cart_id, data, updated_at in conn.execute("SELECT cart_id, data, updated_at FROM carts"):
                self._carts[cart_id] = data
                self._touched[cart_id] = datetime.fromisoformat(updated_at).timestamp()
        finally:
            conn.close()
        self.prune_expired()
        logger.info(f"[cart] Loaded {len(self._carts)} cart(s) from {self.db_path}")

    def _persist(self, cart_id: str, data: Optional[str]):
        if not self.db_path:
            return
        conn = sqlite3.connect(self.db_path)
        try:
            if data is None:
                conn.execute("DELETE FROM carts WHERE cart_id = ?", (cart_id,))
            else:
                conn.execute(
                    "INSERT OR REPLACE INTO carts (cart_id, data, updated_at) VALUES (?, ?, ?)",
                    (cart_id, data, datetime.now(timezone.utc).isoformat()),
                )
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"[cart] Failed to persist cart {cart_id}: {e}")
        finally:
            conn.close()

    def new_cart_id(self) -> str:
        return str(uuid.uuid4())

    def _expired(self, cart_id: str, now: float) -> bool:
        touched = self._touched.get(cart_id)
        return touched is not None and now - touched > self.ttl_seconds

    def load(self, cart_id: str) -> Cart:
        with self._lock:
            if self._expired(cart_id, time.time()):
                self.delete(cart_id)
            raw = self._carts.get(cart_id)
        cart = Cart.loads(raw)
        if raw and not cart.items and raw.strip() != "[]":
            # Stored value was unusable; drop it
            self.delete(cart_id)
        return cart

    def save(self, cart_id: str, cart: Cart) -> None:
        """Store ``cart``; an empty cart removes the stored one."""
        if not cart.items:
            self.delete(cart_id)
            return
        data = cart.dumps()
        now = time.time()
        with self._lock:
            self.prune_expired(now)
            if self._carts.get(cart_id) == data:
                self._touched[cart_id] = now
                return
            self._carts[cart_id] = data
            self._touched[cart_id] = now
            self._persist(cart_id, data)

    def delete(self, cart_id: str) -> bool:
        with self._lock:
            self._touched.pop(cart_id, None)
            if self._carts.pop(cart_id, None) is None:
                return False
            self._persist(cart_id, None)
            return True

    def prune_expired(self, now: Optional[float] = None) -> int:
        """Drop carts not saved within ``ttl_seconds``. Returns how many were dropped."""
        now = time.time() if now is None else now
        with self._lock:
            expired = [cart_id for cart_id in self._carts if self._expired(cart_id, now)]
            for cart_id in expired:
                self.delete(cart_id)
        if expired:
            logger.info(f"[cart] Pruned {len(expired)} expired cart(s)")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._carts)


# Global cart store
_store: Optional[CartStore] = None


def get_cart_store() -> CartStore:
    """Get global cart store."""
    global _store
    if _store is None:
        _store = CartStore(db_path=settings.cart_db_path)
    return _store


def init_cart_store(db_path: Optional[str] = None) -> CartStore:
    """Initialize global cart store with custom settings."""
    global _store
    _store = CartStore(db_path=db_path)
    return _store
