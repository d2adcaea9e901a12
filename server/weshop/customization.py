"""Embroidery customization requests and their review workflow."""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from .db import Database, Query, get_db
from .errors import NotFoundError, ValidationFailed
from .models import CustomizationRequest, CustomizationSubmit, CustomizationUpdate


logger = logging.getLogger(__name__)

CUSTOMIZATION_STATUSES = ("pending", "reviewed", "approved", "rejected")


async def submit_request(
    data: CustomizationSubmit,
    user_id: Optional[str] = None,
    database: Optional[Database] = None,
) -> CustomizationRequest:
    database = database or get_db()
    row = await database.insert(
        "customization_requests",
        {
            "product_id": data.product_id,
            "product_name": data.product_name,
            "image": data.image,
            "text": data.text,
            "contact": data.contact.model_dump(),
            "user_id": user_id,
            "status": "pending",
            "submitted_at": datetime.now(timezone.utc),
        },
    )
    logger.info(f"[customization] New request {row['id']} for {data.product_name}")
    return CustomizationRequest.model_validate(row)


async def list_requests(status: Optional[str] = None, database: Optional[Database] = None) -> List[CustomizationRequest]:
    """Requests newest first, optionally only those in ``status``."""
    if status is not None and status not in CUSTOMIZATION_STATUSES:
        raise ValidationFailed(f"Unknown customization status: {status}")
    database = database or get_db()
    query = Query("customization_requests").order("created_at")
    if status:
        query.eq("status", status)
    rows = await database.select(query)
    return [CustomizationRequest.model_validate(row) for row in rows]


async def get_request(request_id: str, database: Optional[Database] = None) -> CustomizationRequest:
    database = database or get_db()
    row = await database.maybe_one(Query("customization_requests").eq("id", request_id))
    if row is None:
        raise NotFoundError("Order not found")
    return CustomizationRequest.model_validate(row)


async def update_request(
    request_id: str,
    changes: CustomizationUpdate,
    database: Optional[Database] = None,
) -> CustomizationRequest:
    """Change status, admin notes or quoted price."""
    database = database or get_db()
    fields = changes.model_dump(exclude_unset=True)
    if not fields:
        return await get_request(request_id, database)
    row = await database.update_by_id("customization_requests", request_id, fields)
    if row is None:
        raise NotFoundError("Order not found")
    logger.info(f"[customization] Request {request_id} updated: {sorted(fields)}")
    return CustomizationRequest.model_validate(row)


async def delete_request(request_id: str, database: Optional[Database] = None) -> bool:
    database = database or get_db()
    if not await database.delete_by_id("customization_requests", request_id):
        raise NotFoundError("Order not found")
    return True
