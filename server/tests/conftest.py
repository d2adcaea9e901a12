"""
Shared fixtures.

Environment is set before the weshop package is imported so the module-level
settings instance picks it up.
"""

import asyncio
import os
import tempfile

os.environ.pop("DATABASE_URL", None)
os.environ.update({
    "WESHOP_SERVICE_KEYS_RAW": "test-service-key",
    "WESHOP_LIMITS_ENABLED": "false",
    "WESHOP_RETRY_BASE_DELAY": "0",
    "WESHOP_FETCH_RETRIES": "2",
    "WESHOP_BCRYPT_ROUNDS": "4",
    "WESHOP_STORAGE_DIR": tempfile.mkdtemp(prefix="weshop-test-"),
})

import pytest
from fastapi.testclient import TestClient

from weshop import accounts, db, limits
from weshop.cart import init_cart_store
from weshop.db import MemoryDatabase
from weshop.realtime import get_hub


SERVICE_KEY = "test-service-key"
PASSWORD = "secret123"


@pytest.fixture(autouse=True)
def database():
    """Fresh in-memory collaborator, cart store and limiter for every test."""
    database = MemoryDatabase()
    db.set_db(database)
    init_cart_store()
    limits.set_limiter(None)
    yield database
    get_hub().stop()
    db.set_db(None)


@pytest.fixture
def client():
    from weshop.main import app
    return TestClient(app)


@pytest.fixture
def service_headers():
    return {"X-API-Key": SERVICE_KEY}


def create_user(database, email, role="user", full_name="Test User"):
    """Sign up, assign ``role`` and sign in. Returns (user_id, token)."""
    async def _create():
        user = await accounts.sign_up(email, PASSWORD, full_name, database)
        if role != "user":
            await accounts.set_user_role_by_email(email, role, database)
        session = await accounts.sign_in(email, PASSWORD, database)
        return user.id, session.access_token

    return asyncio.run(_create())


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer(database):
    user_id, token = create_user(database, "customer@example.com", full_name="Asha Customer")
    return {"id": user_id, "token": token, "headers": bearer(token)}


@pytest.fixture
def staff(database):
    user_id, token = create_user(database, "staff@example.com", role="admin", full_name="Ravi Staff")
    return {"id": user_id, "token": token, "headers": bearer(token)}


def add_product(database, **overrides):
    row = {
        "name": "Cotton Kurta",
        "description": "Hand-stitched cotton kurta",
        "price": 499.0,
        "images": ["https://images.unsplash.com/photo-1?w=400&h=400&fit=crop"],
        "category": "Kurtas",
        "stock": 25,
        "featured": False,
        "trending": False,
        "is_active": True,
        "rating": 4.2,
    }
    row.update(overrides)
    return asyncio.run(database.insert("products", row))


CUSTOMER_INFO = {
    "full_name": "Asha Customer",
    "phone": "9876543210",
    "address": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
}
