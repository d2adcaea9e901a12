"""
Orders: checkout, customization orders, status lifecycle, price quotes, and
the admin dashboard aggregates.
"""

import logging
import threading
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .cache import cache_for
from .cart import Cart, compute_totals
from .catalog import count_products, get_products
from .db import Database, Query, get_db
from .errors import DatabaseError, NotFoundError, PermissionDenied, ValidationFailed, UNIQUE_VIOLATION
from .models import (
    AdminStats,
    CategoryCount,
    CustomerInfo,
    CustomizationOrderRequest,
    DailyRevenue,
    ItemCustomization,
    Order,
    OrderItem,
    StatusCount,
)
from .notifications import send_price_update
from .roles import STAFF_ROLES
from .settings import settings


logger = logging.getLogger(__name__)

ORDER_STATUSES = ("placed", "packed", "shipped", "delivered", "cancelled")
PENDING_STATUSES = ("placed", "packed")

DEFAULT_PRODUCT_IMAGE = "https://images.unsplash.com/photo-1521572163474-6814f0e4dbb9?w=400&h=400&fit=crop"
TO_BE_CONFIRMED = "To be confirmed"
WEEKDAY_LABELS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")

_number_lock = threading.Lock()
_last_number_ms = 0


def next_order_number(prefix: str = "ORD") -> str:
    """``ORD-<epoch ms>``; strictly increasing within this process."""
    global _last_number_ms
    with _number_lock:
        now_ms = int(time.time() * 1000)
        _last_number_ms = max(now_ms, _last_number_ms + 1)
        return f"{prefix}-{_last_number_ms}"


def status_message(order_number: str, status: str, own: bool = False) -> str:
    if own:
        return f"Your order #{order_number} status updated to {status}"
    return f"Order #{order_number} status updated to {status}"


def new_order_message(order_number: str) -> str:
    return f"New order #{order_number} received!"


async def _insert_order(database: Database, prefix: str, row: Dict[str, Any]) -> Dict[str, Any]:
    # Another process may have issued the same number; retry with a fresh one
    attempts = 3
    while True:
        attempts -= 1
        try:
            return await database.insert("orders", {**row, "order_number": next_order_number(prefix), "status": "placed"})
        except DatabaseError as e:
            if e.code != UNIQUE_VIOLATION or attempts == 0:
                raise


# --- Placement ---


async def place_order(
    cart: Cart,
    customer: CustomerInfo,
    user_id: Optional[str] = None,
    database: Optional[Database] = None,
) -> Order:
    """
    Turn a cart into an order.

    Lines are re-priced from the catalog; products that are gone or inactive
    reject the order. The caller clears the cart afterwards.
    """
    if not cart.items:
        raise ValidationFailed("Your cart is empty")
    database = database or get_db()

    products = await get_products([line.product.id for line in cart.items], database)
    items: List[OrderItem] = []
    for line in cart.items:
        product = products.get(line.product.id)
        if product is None or product.is_active is False:
            raise ValidationFailed(f"{line.product.name} is no longer available")
        items.append(
            OrderItem(
                product_id=product.id,
                product_name=product.name,
                product_image=(product.images or [""])[0],
                quantity=line.quantity,
                price=product.price,
            )
        )

    totals = compute_totals(sum(item.price * item.quantity for item in items))
    row = await _insert_order(
        database,
        "ORD",
        {
            "user_id": user_id,
            "items": [item.model_dump() for item in items],
            "total": totals.total,
            "customer_name": customer.full_name,
            "customer_phone": customer.phone,
            "customer_address": customer.address,
            "customer_city": customer.city,
            "customer_state": customer.state,
            "customer_pincode": customer.pincode,
        },
    )
    logger.info(f"[orders] Placed {row['order_number']} total={row['total']} items={len(items)}")
    return Order.model_validate(row)


async def place_customization_order(
    request: CustomizationOrderRequest,
    user_id: Optional[str] = None,
    database: Optional[Database] = None,
) -> Order:
    """Embroidery order with no price; staff quote it later."""
    database = database or get_db()
    contact = request.contact
    item = OrderItem(
        product_id=request.product_id,
        product_name=request.product_name,
        product_image=request.image or DEFAULT_PRODUCT_IMAGE,
        quantity=1,
        price=0,
        customization=ItemCustomization(image=request.image, text=request.text, quoted_price=None),
    )
    row = await _insert_order(
        database,
        "CUST",
        {
            "user_id": user_id,
            "items": [item.model_dump()],
            "total": 0,
            "customer_name": contact.name,
            "customer_phone": contact.phone,
            "customer_address": f"{contact.address}, {contact.street}",
            "customer_city": TO_BE_CONFIRMED,
            "customer_state": TO_BE_CONFIRMED,
            "customer_pincode": contact.pincode,
        },
    )
    logger.info(f"[orders] Placed customization order {row['order_number']}")
    return Order.model_validate(row)


# --- Reads ---


async def list_orders(database: Optional[Database] = None) -> List[Order]:
    """All orders, newest first (staff)."""
    database = database or get_db()
    rows = await cache_for(database).fetch(
        "orders:all",
        lambda: database.select(Query("orders").order("created_at")),
    )
    return [Order.model_validate(row) for row in rows]


async def list_user_orders(user_id: str, database: Optional[Database] = None) -> List[Order]:
    database = database or get_db()
    rows = await cache_for(database).fetch(
        f"orders:user:{user_id}",
        lambda: database.select(Query("orders").eq("user_id", user_id).order("created_at")),
    )
    return [Order.model_validate(row) for row in rows]


async def get_order(
    order_id: str,
    user_id: Optional[str] = None,
    staff: bool = False,
    database: Optional[Database] = None,
) -> Order:
    """
    One order. Staff see everything; others see their own orders and guest
    orders (orders placed without an account).
    """
    database = database or get_db()
    row = await database.maybe_one(Query("orders").eq("id", order_id))
    if row is None:
        raise NotFoundError("Order not found")
    owner = row.get("user_id")
    if not staff and owner is not None and owner != user_id:
        raise PermissionDenied("You do not have access to this order")
    return Order.model_validate(row)


# --- Staff mutations ---


async def update_order_status(order_id: str, status: str, database: Optional[Database] = None) -> Order:
    if status not in ORDER_STATUSES:
        raise ValidationFailed(f"Unknown order status: {status}")
    database = database or get_db()

    rows = await database.update(Query("orders").eq("id", order_id), {"status": status})
    if not rows:
        raise NotFoundError("Order status update failed (0 rows updated). Order not found.")
    row = rows[0]

    def patch(orders):
        return [{**o, "status": status} if o["id"] == order_id else o for o in orders]

    cache = cache_for(database)
    cache.set_data("orders:all", patch)
    if row.get("user_id"):
        cache.set_data(f"orders:user:{row['user_id']}", patch)
    cache.invalidate("orders")

    logger.info(f"[orders] {status_message(row['order_number'], status)}")
    return Order.model_validate(row)


async def quote_order_price(order_id: str, price: float, database: Optional[Database] = None) -> Order:
    """
    Set the price of a customization order and notify its owner.
    """
    if price <= 0:
        raise ValidationFailed("Quoted price must be greater than 0")
    database = database or get_db()
    row = await database.maybe_one(Query("orders").eq("id", order_id))
    if row is None:
        raise NotFoundError("Order not found")

    items = row.get("items") or []
    customized = [item for item in items if item.get("customization")]
    if not customized:
        raise ValidationFailed("Only customization orders can be quoted")
    for item in customized:
        item["customization"]["quoted_price"] = price

    old_price = float(row.get("total") or 0)
    updated = await database.update_by_id("orders", order_id, {"items": items, "total": price})
    if updated is None:
        raise NotFoundError("Order not found")

    if updated.get("user_id"):
        await send_price_update(
            user_id=updated["user_id"],
            order_id=order_id,
            product_name=customized[0]["product_name"],
            new_price=price,
            old_price=old_price,
            database=database,
        )
    else:
        logger.info(f"[orders] {updated['order_number']} is a guest order; no price notification sent")

    cache_for(database).invalidate("orders")
    return Order.model_validate(updated)


# --- Dashboard ---


def _as_date(value) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).date()


def revenue_chart(orders: List[Dict[str, Any]], today: date, days: int = 7) -> List[DailyRevenue]:
    """Revenue and order count per day for the last ``days`` days, oldest first."""
    chart = []
    for offset in range(days - 1, -1, -1):
        day = today - timedelta(days=offset)
        day_orders = [o for o in orders if _as_date(o.get("created_at")) == day]
        chart.append(
            DailyRevenue(
                name=WEEKDAY_LABELS[day.weekday()],
                date=day.isoformat(),
                revenue=sum(o["total"] for o in day_orders),
                orders=len(day_orders),
            )
        )
    return chart


def status_distribution(orders: List[Dict[str, Any]]) -> List[StatusCount]:
    """Order count per status, statuses without orders omitted."""
    counts = []
    for status in ORDER_STATUSES:
        value = sum(1 for o in orders if o.get("status") == status)
        if value > 0:
            counts.append(StatusCount(name=status.capitalize(), value=value))
    return counts


async def dashboard_stats(database: Optional[Database] = None, today: Optional[date] = None) -> AdminStats:
    database = database or get_db()
    today = today or datetime.now(timezone.utc).date()

    orders = await database.select(Query("orders").order("created_at"))
    products = await database.select(Query("products"))
    categories = await database.select(Query("categories").order("name", descending=False))
    staff = await database.count(Query("user_roles").in_("role", STAFF_ROLES))
    customizations = await database.count(Query("customization_requests"))

    return AdminStats(
        total_revenue=sum(o["total"] for o in orders),
        total_orders=len(orders),
        pending_orders=sum(1 for o in orders if o.get("status") in PENDING_STATUSES),
        completed_orders=sum(1 for o in orders if o.get("status") == "delivered"),
        total_products=len(products),
        low_stock_products=sum(1 for p in products if (p.get("stock") or 0) < settings.low_stock_threshold),
        total_categories=len(categories),
        staff_users=staff,
        customization_requests=customizations,
        revenue_chart=revenue_chart(orders, today),
        order_status=status_distribution(orders),
        category_products=[
            CategoryCount(name=c["name"], products=count_products(c, products)) for c in categories[:5]
        ],
    )
