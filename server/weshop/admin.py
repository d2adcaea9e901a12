"""
Admin API endpoints for the back-office.

All endpoints require a staff role (moderator or above). Role management
requires super_admin. Environment service keys act as super_admin.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, status

from . import accounts, catalog, customization, notifications, orders
from .auth import UserContext, require_staff, require_super_admin
from .models import (
    AdminStats, Category, CategoryInput, CategoryUpdate, CustomizationRequest,
    CustomizationUpdate, DeleteResult, GlobalNotificationCreate, Notification,
    NotificationCreate, Order, OrderPriceQuote, OrderStatusUpdate, Product,
    ProductInput, ProductUpdate, RoleAssignment, UploadResult, UserWithRole,
)
from .roles import AppRole
from .storage import get_object_storage
from pydantic import BaseModel


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_staff)])


# --- Request Models ---


class RoleChange(BaseModel):
    role: AppRole


# --- Dashboard ---


@router.get("/stats", response_model=AdminStats)
async def get_stats():
    """Revenue, order, catalog and staff counts for the dashboard."""
    return await orders.dashboard_stats()


# --- Products ---


@router.get("/products", response_model=List[Product])
async def list_products():
    return await catalog.list_all_products()


@router.post("/products", response_model=Product, status_code=status.HTTP_201_CREATED)
async def create_product(payload: ProductInput, admin: UserContext = Depends(require_staff)):
    product = await catalog.create_product(payload)
    logger.info(f"[admin] {admin.principal} created product {product.id}")
    return product


@router.patch("/products/{product_id}", response_model=Product)
async def update_product(product_id: str, payload: ProductUpdate):
    return await catalog.update_product(product_id, payload)


@router.delete("/products/{product_id}", response_model=DeleteResult)
async def delete_product(product_id: str, admin: UserContext = Depends(require_staff)):
    deleted = await catalog.delete_product(product_id)
    logger.info(f"[admin] {admin.principal} deleted product {product_id}")
    return DeleteResult(deleted=deleted)


# --- Images ---


@router.post("/images", response_model=UploadResult, status_code=status.HTTP_201_CREATED)
async def upload_image(request: Request, filename: str):
    """
    Upload one image.

    The request body is the raw file; ``filename`` only supplies the
    extension. Returns the public URL to store on a product or category.
    """
    data = await request.body()
    return UploadResult(url=get_object_storage().upload(data, filename))


@router.delete("/images", response_model=DeleteResult)
async def delete_image(url: str):
    return DeleteResult(deleted=get_object_storage().delete(url))


# --- Categories ---


@router.get("/categories", response_model=List[Category])
async def list_categories():
    return await catalog.list_categories()


@router.post("/categories", response_model=Category, status_code=status.HTTP_201_CREATED)
async def create_category(payload: CategoryInput):
    return await catalog.create_category(payload)


@router.patch("/categories/{category_id}", response_model=Category)
async def update_category(category_id: str, payload: CategoryUpdate):
    return await catalog.update_category(category_id, payload)


@router.delete("/categories/{category_id}", response_model=DeleteResult)
async def delete_category(category_id: str):
    return DeleteResult(deleted=await catalog.delete_category(category_id))


# --- Orders ---


@router.get("/orders", response_model=List[Order])
async def list_orders():
    return await orders.list_orders()


@router.patch("/orders/{order_id}/status", response_model=Order)
async def update_order_status(order_id: str, payload: OrderStatusUpdate):
    return await orders.update_order_status(order_id, payload.status)


@router.post("/orders/{order_id}/quote", response_model=Order)
async def quote_order_price(order_id: str, payload: OrderPriceQuote, admin: UserContext = Depends(require_staff)):
    """Set the price of a customization order and notify the customer."""
    order = await orders.quote_order_price(order_id, payload.price)
    logger.info(f"[admin] {admin.principal} quoted {order.order_number} at {payload.price}")
    return order


# --- Customization requests ---


@router.get("/customization-requests", response_model=List[CustomizationRequest])
async def list_customization_requests(status: Optional[str] = None):
    return await customization.list_requests(status)


@router.patch("/customization-requests/{request_id}", response_model=CustomizationRequest)
async def update_customization_request(request_id: str, payload: CustomizationUpdate):
    return await customization.update_request(request_id, payload)


@router.delete("/customization-requests/{request_id}", response_model=DeleteResult)
async def delete_customization_request(request_id: str):
    return DeleteResult(deleted=await customization.delete_request(request_id))


# --- Notifications ---


@router.get("/notifications", response_model=List[Notification])
async def list_notifications():
    return await notifications.list_all_notifications()


@router.post("/notifications", response_model=Notification, status_code=status.HTTP_201_CREATED)
async def create_notification(payload: NotificationCreate):
    return await notifications.create_notification(payload)


@router.post("/notifications/global", response_model=Notification, status_code=status.HTTP_201_CREATED)
async def send_global_notification(payload: GlobalNotificationCreate):
    return await notifications.send_global_notification(payload.title, payload.message, payload.type)


# --- Roles (super_admin only) ---


@router.get("/roles", response_model=List[UserWithRole])
async def list_roles(admin: UserContext = Depends(require_super_admin)):
    return await accounts.list_staff()


@router.post("/roles", response_model=UserWithRole)
async def assign_role(payload: RoleAssignment, admin: UserContext = Depends(require_super_admin)):
    """Give the user with this email exactly one role."""
    assigned = await accounts.set_user_role_by_email(payload.email, payload.role)
    logger.info(f"[admin] {admin.principal} set role {payload.role} for {assigned.user_id}")
    return assigned


@router.patch("/roles/{role_id}", response_model=UserWithRole)
async def update_role(role_id: str, payload: RoleChange, admin: UserContext = Depends(require_super_admin)):
    return await accounts.update_role(role_id, payload.role)


@router.delete("/roles/{role_id}", response_model=UserWithRole)
async def remove_role(role_id: str, admin: UserContext = Depends(require_super_admin)):
    """Demote to ``user``."""
    removed = await accounts.remove_role(role_id)
    logger.info(f"[admin] {admin.principal} removed staff role {role_id}")
    return removed
