"""
Storefront API endpoints.

Browsing, cart and checkout work for guests; orders placed while signed in
are attached to the account. Carts are identified by the ``X-Cart-Id`` header
the client keeps; a new id is issued in every cart response.
"""

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Request, WebSocket, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import FileResponse
from pydantic import BaseModel

from . import accounts, catalog, customization, notifications, orders, wishlist
from .auth import UserContext, get_current_user, get_optional_user, resolve_token
from .cart import Cart, get_cart_store
from .db import get_db
from .errors import AuthError, NotFoundError, ValidationFailed
from .images import responsive_image
from .models import (
    CartItemAdd, CartItemUpdate, CartResponse, Category, CheckoutRequest,
    CustomizationOrderRequest, CustomizationRequest, CustomizationSubmit,
    Notification, Order, Product, ResponsiveImage, SessionResponse,
    SignInRequest, SignUpRequest, UserInfo, WishlistEntry, WishlistItem,
)
from .rate_limit import auth_limit, limiter
from .realtime import Listener, get_hub
from .storage import get_object_storage


logger = logging.getLogger(__name__)

router = APIRouter(tags=["shop"])

CART_HEADER = "X-Cart-Id"

# Close code for websocket connections without a valid session
WS_UNAUTHORIZED = 4401


# --- Response Models ---


class SignOutResult(BaseModel):
    signed_out: bool


class WishlistStatus(BaseModel):
    product_id: str
    in_wishlist: bool


class RemovedResult(BaseModel):
    removed: bool


# --- Auth ---


@router.post("/auth/signup", response_model=UserInfo, status_code=status.HTTP_201_CREATED)
@limiter.limit(auth_limit)
async def sign_up(request: Request, payload: SignUpRequest):
    """Create an account. Sign in afterwards to get a session token."""
    return await accounts.sign_up(payload.email, payload.password, payload.full_name)


@router.post("/auth/login", response_model=SessionResponse)
@limiter.limit(auth_limit)
async def sign_in(request: Request, payload: SignInRequest):
    """
    Open a session.

    The raw ``access_token`` is returned only once in this response; send it
    back as ``Authorization: Bearer <token>``.
    """
    return await accounts.sign_in(payload.email, payload.password)


@router.post("/auth/logout", response_model=SignOutResult)
async def sign_out(user: UserContext = Depends(get_current_user)):
    if user.is_service:
        return SignOutResult(signed_out=False)
    return SignOutResult(signed_out=await accounts.sign_out(user.token))


@router.get("/auth/session", response_model=SessionResponse)
async def current_session(user: UserContext = Depends(get_current_user)):
    session = await accounts.get_session(user.token)
    if session is None:
        raise AuthError("Service keys do not have a session")
    return session


# --- Catalog ---


@router.get("/products", response_model=List[Product])
async def list_products(
    category: Optional[str] = None,
    search: Optional[str] = None,
    featured: bool = False,
    trending: bool = False,
    sort: str = "newest",
):
    return await catalog.list_products(category, search, featured, trending, sort)


@router.get("/products/{product_id}", response_model=Product)
async def get_product(product_id: str):
    product = await catalog.get_product(product_id)
    if product.is_active is False:
        raise NotFoundError("Product not found")
    return product


@router.get("/categories", response_model=List[Category])
async def list_categories():
    return await catalog.list_categories()


# --- Cart ---


def _cart_response(cart_id: str, cart: Cart, message: Optional[str] = None) -> CartResponse:
    return CartResponse(
        cart_id=cart_id,
        items=cart.items,
        total_items=cart.total_items,
        totals=cart.totals(),
        message=message,
    )


def _cart_id(cart_id: Optional[str]) -> str:
    return cart_id or get_cart_store().new_cart_id()


@router.get("/cart", response_model=CartResponse)
async def get_cart(cart_id: Optional[str] = Header(None, alias=CART_HEADER)):
    cart_id = _cart_id(cart_id)
    return _cart_response(cart_id, get_cart_store().load(cart_id))


@router.post("/cart/items", response_model=CartResponse)
async def add_cart_item(payload: CartItemAdd, cart_id: Optional[str] = Header(None, alias=CART_HEADER)):
    product = await catalog.get_product(payload.product_id)
    if product.is_active is False:
        raise ValidationFailed(f"{product.name} is no longer available")

    store = get_cart_store()
    cart_id = _cart_id(cart_id)
    cart = store.load(cart_id)
    message = cart.add(product, payload.quantity)
    store.save(cart_id, cart)
    return _cart_response(cart_id, cart, message)


@router.patch("/cart/items/{product_id}", response_model=CartResponse)
async def update_cart_item(
    product_id: str,
    payload: CartItemUpdate,
    cart_id: Optional[str] = Header(None, alias=CART_HEADER),
):
    store = get_cart_store()
    cart_id = _cart_id(cart_id)
    cart = store.load(cart_id)
    message = cart.update_quantity(product_id, payload.quantity)
    store.save(cart_id, cart)
    return _cart_response(cart_id, cart, message)


@router.delete("/cart/items/{product_id}", response_model=CartResponse)
async def remove_cart_item(product_id: str, cart_id: Optional[str] = Header(None, alias=CART_HEADER)):
    store = get_cart_store()
    cart_id = _cart_id(cart_id)
    cart = store.load(cart_id)
    message = cart.remove(product_id)
    store.save(cart_id, cart)
    return _cart_response(cart_id, cart, message)


@router.delete("/cart", response_model=CartResponse)
async def clear_cart(cart_id: Optional[str] = Header(None, alias=CART_HEADER)):
    cart_id = _cart_id(cart_id)
    get_cart_store().delete(cart_id)
    cart = Cart()
    return _cart_response(cart_id, cart, cart.clear())


# --- Orders ---


@router.post("/checkout", response_model=Order, status_code=status.HTTP_201_CREATED)
async def checkout(
    payload: CheckoutRequest,
    cart_id: Optional[str] = Header(None, alias=CART_HEADER),
    user: Optional[UserContext] = Depends(get_optional_user),
):
    """Place an order from the cart, then clear the cart."""
    store = get_cart_store()
    cart = store.load(cart_id) if cart_id else Cart()
    order = await orders.place_order(cart, payload.customer, user.user_id if user else None)
    if cart_id:
        store.delete(cart_id)
    return order


@router.get("/orders/mine", response_model=List[Order])
async def my_orders(user: UserContext = Depends(get_current_user)):
    if not user.user_id:
        return []
    return await orders.list_user_orders(user.user_id)


@router.get("/orders/{order_id}", response_model=Order)
async def get_order(order_id: str, user: Optional[UserContext] = Depends(get_optional_user)):
    return await orders.get_order(
        order_id,
        user_id=user.user_id if user else None,
        staff=bool(user and user.is_staff),
    )


@router.post("/customization-orders", response_model=Order, status_code=status.HTTP_201_CREATED)
async def place_customization_order(
    payload: CustomizationOrderRequest,
    user: Optional[UserContext] = Depends(get_optional_user),
):
    """Embroidery order; the price is quoted later by staff."""
    return await orders.place_customization_order(payload, user.user_id if user else None)


@router.post("/customization-requests", response_model=CustomizationRequest, status_code=status.HTTP_201_CREATED)
async def submit_customization_request(
    payload: CustomizationSubmit,
    user: Optional[UserContext] = Depends(get_optional_user),
):
    return await customization.submit_request(payload, user.user_id if user else None)


# --- Wishlist ---


def _user_id(user: Optional[UserContext]) -> Optional[str]:
    return user.user_id if user else None


@router.get("/wishlist", response_model=List[WishlistEntry])
async def get_wishlist(user: Optional[UserContext] = Depends(get_optional_user)):
    return await wishlist.list_wishlist_with_products(_user_id(user))


@router.post("/wishlist/{product_id}", response_model=WishlistItem, status_code=status.HTTP_201_CREATED)
async def add_to_wishlist(product_id: str, user: Optional[UserContext] = Depends(get_optional_user)):
    return await wishlist.add_to_wishlist(_user_id(user), product_id)


@router.delete("/wishlist/{product_id}", response_model=RemovedResult)
async def remove_from_wishlist(product_id: str, user: Optional[UserContext] = Depends(get_optional_user)):
    return RemovedResult(removed=await wishlist.remove_from_wishlist(_user_id(user), product_id))


@router.get("/wishlist/{product_id}", response_model=WishlistStatus)
async def wishlist_status(product_id: str, user: Optional[UserContext] = Depends(get_optional_user)):
    return WishlistStatus(
        product_id=product_id,
        in_wishlist=await wishlist.is_in_wishlist(_user_id(user), product_id),
    )


# --- Notifications ---


@router.get("/notifications", response_model=List[Notification])
async def my_notifications(user: UserContext = Depends(get_current_user)):
    if not user.user_id:
        return []
    return await notifications.list_user_notifications(user.user_id)


@router.post("/notifications/{notification_id}/read", response_model=Notification)
async def mark_notification_read(notification_id: str, user: UserContext = Depends(get_current_user)):
    return await notifications.mark_read(notification_id, user.user_id, staff=user.is_staff)


# --- Images ---


@router.get("/images/responsive", response_model=ResponsiveImage)
async def responsive(url: str, kind: str = "card"):
    try:
        return responsive_image(url, kind)
    except ValueError as e:
        raise ValidationFailed(str(e)) from None


@router.get("/storage/{bucket}/{name}")
async def serve_image(bucket: str, name: str):
    storage = get_object_storage()
    path = storage.path_for(name) if bucket == storage.bucket else None
    if path is None:
        raise NotFoundError("Image not found")
    return FileResponse(path)


# --- Realtime ---


async def _forward(websocket: WebSocket, listener: Listener) -> None:
    while True:
        message = await listener.queue.get()
        await websocket.send_json(jsonable_encoder(message))


@router.websocket("/ws/orders")
async def order_updates(websocket: WebSocket, token: Optional[str] = None):
    """
    Live order updates.

    Staff receive every order and customization change; customers receive
    changes to their own orders.
    """
    user = await resolve_token(token)
    if user is None:
        await websocket.close(code=WS_UNAUTHORIZED)
        return

    await websocket.accept()
    hub = get_hub()
    hub.attach(get_db())
    listener = hub.add_listener(user.user_id, user.is_staff)
    logger.info(f"[realtime] Listener {listener.id} connected ({user.principal}, staff={user.is_staff})")
    await websocket.send_json({"type": "subscribed", "staff": user.is_staff})

    sender = asyncio.create_task(_forward(websocket, listener))
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        hub.remove_listener(listener)
        logger.info(f"[realtime] Listener {listener.id} disconnected")
