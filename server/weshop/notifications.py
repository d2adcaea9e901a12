"""Customer notifications: targeted, global, and customization price updates."""

import logging
from typing import List, Optional, Set

from .cart import format_price
from .db import Database, Query, get_db
from .errors import DatabaseError, NotFoundError, PermissionDenied, ValidationFailed, UNIQUE_VIOLATION
from .models import Notification, NotificationCreate


logger = logging.getLogger(__name__)

PRICE_UPDATE_TITLE = "Price Update for Your Customization"


async def create_notification(data: NotificationCreate, database: Optional[Database] = None) -> Notification:
    """Store a notification for one user, or for everyone when ``is_global``."""
    if not data.is_global and not data.user_id:
        raise ValidationFailed("A notification needs a user_id unless it is global")
    database = database or get_db()
    row = await database.insert(
        "notifications",
        {
            "user_id": None if data.is_global else data.user_id,
            "title": data.title,
            "message": data.message,
            "type": data.type,
            "is_global": data.is_global,
            "read": False,
        },
    )
    logger.info(f"[notifications] Sent {data.type} notification {row['id']} (global={data.is_global})")
    return Notification.model_validate(row)


async def send_global_notification(
    title: str,
    message: str,
    type: str = "info",
    database: Optional[Database] = None,
) -> Notification:
    return await create_notification(
        NotificationCreate(title=title, message=message, type=type, is_global=True),
        database,
    )


async def send_price_update(
    user_id: str,
    order_id: str,
    product_name: str,
    new_price: float,
    old_price: float = 0,
    database: Optional[Database] = None,
) -> Notification:
    """Tell a customer the quoted price of their customization."""
    database = database or get_db()
    row = await database.insert(
        "notifications",
        {
            "user_id": user_id,
            "title": PRICE_UPDATE_TITLE,
            "message": (
                f'The price for your "{product_name}" customization has been updated '
                f"from {format_price(old_price)} to {format_price(new_price)}"
            ),
            "type": "price_update",
            "is_global": False,
            "read": False,
            "metadata": {
                "order_id": order_id,
                "old_price": old_price,
                "new_price": new_price,
                "product_name": product_name,
            },
        },
    )
    logger.info(f"[notifications] Price update for order {order_id} sent to {user_id}")
    return Notification.model_validate(row)


def _newest_first(rows: List[dict]) -> List[dict]:
    return sorted(rows, key=lambda r: r["created_at"], reverse=True)


async def _read_global_ids(database: Database, user_id: str) -> Set[str]:
    rows = await database.select(Query("notification_reads").eq("user_id", user_id))
    return {row["notification_id"] for row in rows}


async def list_user_notifications(user_id: str, database: Optional[Database] = None) -> List[Notification]:
    """
    The user's own notifications plus global ones, newest first.

    A global notification is shared by everyone, so its ``read`` flag is the
    reading user's own.
    """
    database = database or get_db()
    own = await database.select(Query("notifications").eq("user_id", user_id))
    broadcast = await database.select(Query("notifications").eq("is_global", True))
    read_ids = await _read_global_ids(database, user_id) if broadcast else set()
    for row in broadcast:
        row["read"] = row["id"] in read_ids
    rows = {row["id"]: row for row in own + broadcast}
    return [Notification.model_validate(row) for row in _newest_first(list(rows.values()))]


async def list_all_notifications(database: Optional[Database] = None) -> List[Notification]:
    database = database or get_db()
    rows = await database.select(Query("notifications").order("created_at"))
    return [Notification.model_validate(row) for row in rows]


async def mark_read(
    notification_id: str,
    user_id: Optional[str] = None,
    staff: bool = False,
    database: Optional[Database] = None,
) -> Notification:
    """
    Mark a notification read for ``user_id``.

    Only the recipient (or staff) may mark a targeted notification. Global
    notifications are marked per user and need a ``user_id``.
    """
    database = database or get_db()
    row = await database.maybe_one(Query("notifications").eq("id", notification_id))
    if row is None:
        raise NotFoundError("Notification not found")

    if row.get("is_global"):
        if not user_id:
            raise ValidationFailed("Global notifications are marked read per user")
        try:
            await database.insert("notification_reads", {"notification_id": notification_id, "user_id": user_id})
        except DatabaseError as e:
            if e.code != UNIQUE_VIOLATION:
                raise
        return Notification.model_validate({**row, "read": True})

    if not staff and row.get("user_id") != user_id:
        raise PermissionDenied("You cannot update this notification")
    updated = await database.update_by_id("notifications", notification_id, {"read": True})
    if updated is None:
        raise NotFoundError("Notification not found")
    return Notification.model_validate(updated)
