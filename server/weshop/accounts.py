"""
User accounts, sessions and role assignment.

Passwords are bcrypt-hashed. Session tokens are opaque random strings with a
``ws_`` prefix; only their SHA-256 hash is stored.
"""

import asyncio
import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import bcrypt

from .db import Database, Query, get_db
from .errors import AuthError, ConflictError, DatabaseError, NotFoundError, ValidationFailed, UNIQUE_VIOLATION
from .models import SessionResponse, StaffProfile, UserInfo, UserWithRole
from .roles import STAFF_ROLES, highest_role, is_staff, role_rank
from .settings import settings


logger = logging.getLogger(__name__)

TOKEN_PREFIX = "ws_"
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_BYTES = 72  # bcrypt input limit


def hash_token(raw_token: str) -> str:
    """Hash a raw session token using SHA-256."""
    return hashlib.sha256(raw_token.encode()).hexdigest()


def generate_session_token(prefix: str = TOKEN_PREFIX) -> tuple[str, str]:
    """Returns (raw_token, token_hash)."""
    raw_token = f"{prefix}{secrets.token_urlsafe(32)}"
    return raw_token, hash_token(raw_token)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=settings.bcrypt_rounds)).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def check_password_length(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password should be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationFailed(f"Password should be at most {MAX_PASSWORD_BYTES} bytes")


def _as_datetime(value) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


async def _profile(database: Database, user_id: str) -> Optional[Dict]:
    return await database.maybe_one(Query("profiles").eq("user_id", user_id))


async def fetch_user_role(user_id: str, database: Optional[Database] = None) -> str:
    """Highest role assigned to the user; ``user`` when none is assigned."""
    database = database or get_db()
    rows = await database.select(Query("user_roles").eq("user_id", user_id))
    return highest_role(row["role"] for row in rows)


async def sign_up(email: str, password: str, full_name: str, database: Optional[Database] = None) -> UserInfo:
    """Create an account with a profile and the default ``user`` role."""
    database = database or get_db()
    email = email.strip().lower()
    check_password_length(password)

    if await database.maybe_one(Query("users").eq("email", email)):
        raise ConflictError("User already registered")
    # bcrypt is CPU-bound; keep it off the event loop
    password_hash = await asyncio.to_thread(hash_password, password)
    try:
        user = await database.insert("users", {"email": email, "password_hash": password_hash})
    except DatabaseError as e:
        if e.code == UNIQUE_VIOLATION:
            raise ConflictError("User already registered") from e
        raise

    await database.insert("profiles", {"user_id": user["id"], "email": email, "full_name": full_name})
    await database.insert("user_roles", {"user_id": user["id"], "role": "user"})
    logger.info(f"[auth] Registered user {user['id']}")
    return UserInfo(id=user["id"], email=email, full_name=full_name)


async def sign_in(email: str, password: str, database: Optional[Database] = None) -> SessionResponse:
    """Verify credentials and open a session. The raw token is only returned here."""
    database = database or get_db()
    user = await database.maybe_one(Query("users").eq("email", email.strip().lower()))
    if user is None or not await asyncio.to_thread(verify_password, password, user["password_hash"]):
        raise AuthError("Invalid login credentials")

    raw_token, token_hash = generate_session_token()
    expires_at = datetime.now(timezone.utc) + timedelta(hours=settings.session_ttl_hours)
    await database.insert(
        "sessions",
        {"user_id": user["id"], "token_hash": token_hash, "expires_at": expires_at},
    )

    role = await fetch_user_role(user["id"], database)
    profile = await _profile(database, user["id"])
    logger.info(f"[auth] Session opened for {user['id']} ({token_hash[:12]}...)")
    return SessionResponse(
        access_token=raw_token,
        user=UserInfo(id=user["id"], email=user["email"], full_name=(profile or {}).get("full_name")),
        role=role,
        is_admin=is_staff(role),
        expires_at=expires_at,
    )


async def sign_out(token: str, database: Optional[Database] = None) -> bool:
    """Revoke a session. Signing out twice is harmless."""
    database = database or get_db()
    rows = await database.update(
        Query("sessions").eq("token_hash", hash_token(token)).eq("revoked_at", None),
        {"revoked_at": datetime.now(timezone.utc)},
    )
    return bool(rows)


async def get_session(token: Optional[str], database: Optional[Database] = None) -> Optional[SessionResponse]:
    """User and role behind a token, or None for unknown, revoked or expired tokens."""
    if not token:
        return None
    database = database or get_db()
    session = await database.maybe_one(Query("sessions").eq("token_hash", hash_token(token)))
    if session is None or session.get("revoked_at") is not None:
        return None
    expires_at = _as_datetime(session["expires_at"])
    if expires_at <= datetime.now(timezone.utc):
        return None

    user = await database.maybe_one(Query("users").eq("id", session["user_id"]))
    if user is None:
        return None
    role = await fetch_user_role(user["id"], database)
    profile = await _profile(database, user["id"])
    return SessionResponse(
        user=UserInfo(id=user["id"], email=user["email"], full_name=(profile or {}).get("full_name")),
        role=role,
        is_admin=is_staff(role),
        expires_at=expires_at,
    )


def _check_role_name(role: str) -> None:
    try:
        role_rank(role)
    except ValueError as e:
        raise ValidationFailed(str(e)) from None


async def _with_profile(database: Database, row: Dict) -> UserWithRole:
    profile = await _profile(database, row["user_id"])
    return UserWithRole(
        id=row["id"],
        user_id=row["user_id"],
        role=row["role"],
        created_at=row.get("created_at"),
        profile=StaffProfile(email=profile.get("email"), full_name=profile.get("full_name")) if profile else None,
    )


async def set_user_role_by_email(email: str, role: str, database: Optional[Database] = None) -> UserWithRole:
    """
    Give the user exactly one role. Assigning ``user`` is how a staff role is
    removed.
    """
    _check_role_name(role)
    database = database or get_db()
    user = await database.maybe_one(Query("users").eq("email", email.strip().lower()))
    if user is None:
        raise NotFoundError(f"No user found with email {email}")

    await database.delete(Query("user_roles").eq("user_id", user["id"]))
    row = await database.insert("user_roles", {"user_id": user["id"], "role": role})
    logger.info(f"[auth] Role for {user['id']} set to {role}")
    return await _with_profile(database, row)


async def update_role(role_id: str, role: str, database: Optional[Database] = None) -> UserWithRole:
    _check_role_name(role)
    database = database or get_db()
    row = await database.update_by_id("user_roles", role_id, {"role": role})
    if row is None:
        raise NotFoundError("Role not found")
    logger.info(f"[auth] Role {role_id} changed to {role}")
    return await _with_profile(database, row)


async def remove_role(role_id: str, database: Optional[Database] = None) -> UserWithRole:
    """Demote a staff member back to ``user``."""
    return await update_role(role_id, "user", database)


async def list_staff(database: Optional[Database] = None) -> List[UserWithRole]:
    """Moderator, admin and super admin assignments, newest first."""
    database = database or get_db()
    rows = await database.select(Query("user_roles").in_("role", STAFF_ROLES).order("created_at"))
    return [await _with_profile(database, row) for row in rows]
