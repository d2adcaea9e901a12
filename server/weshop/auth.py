"""
WeShop Server Authentication

Token-based authentication with support for:
- Environment-based service keys (act as super_admin)
- Session tokens issued by sign-in
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader, HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from typing import Optional
from packaging import version

from .settings import settings
from .roles import check_role, role_rank
from . import accounts


# Security headers
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
client_version_header = APIKeyHeader(name="X-WeShop-Client-Version", auto_error=False)
bearer_scheme = HTTPBearer(auto_error=False)

_ROLE_LABELS = {
    "user": "Signed-in",
    "moderator": "Staff",
    "admin": "Admin",
    "super_admin": "Super admin",
}


class UserContext(BaseModel):
    """
    Authenticated principal.
    """
    token: str
    client_version: Optional[str] = None

    user_id: Optional[str] = None  # None for service principals
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: str = "user"
    is_service: bool = False  # True if authenticated via env service keys

    @property
    def is_staff(self) -> bool:
        return check_role(self.role, "moderator")

    @property
    def principal(self) -> str:
        """Stable identifier for logs and limits (never the raw token)."""
        if self.user_id:
            return f"user:{self.user_id}"
        return f"service:{accounts.hash_token(self.token)[:12]}"


def _extract_token(
    api_key: Optional[str],
    bearer: Optional[HTTPAuthorizationCredentials],
) -> Optional[str]:
    if bearer and bearer.scheme and bearer.scheme.lower() == "bearer":
        return bearer.credentials
    return api_key


async def resolve_token(raw_token: Optional[str], client_version: Optional[str] = None) -> Optional[UserContext]:
    """UserContext for a raw token, or None when it is not valid."""
    if not raw_token:
        return None

    if raw_token in settings.service_keys:
        return UserContext(token=raw_token, client_version=client_version, role="super_admin", is_service=True)

    session = await accounts.get_session(raw_token)
    if session is None:
        return None
    return UserContext(
        token=raw_token,
        client_version=client_version,
        user_id=session.user.id,
        email=session.user.email,
        full_name=session.user.full_name,
        role=session.role,
    )


async def get_current_user(
    api_key: Optional[str] = Depends(api_key_header),
    bearer: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    client_version: Optional[str] = Depends(client_version_header),
) -> UserContext:
    """
    Validate the token and return the user context.

    Authentication order:
    1. Check settings.service_keys for service keys
    2. If not found, look up the session
    """
    raw_token = _extract_token(api_key, bearer)

    if not raw_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Please sign in. Provide Authorization: Bearer <token> or X-API-Key header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    _check_client_version(client_version)
    user = await resolve_token(raw_token, client_version)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def get_optional_user(
    api_key: Optional[str] = Depends(api_key_header),
    bearer: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    client_version: Optional[str] = Depends(client_version_header),
) -> Optional[UserContext]:
    """Like get_current_user, but guests (no token) get None. A bad token is still rejected."""
    raw_token = _extract_token(api_key, bearer)
    if not raw_token:
        _check_client_version(client_version)
        return None
    return await get_current_user(api_key, bearer, client_version)


def require_role(required: str):
    """Dependency factory: 403 unless the user's role ranks at or above ``required``."""
    role_rank(required)

    async def dependency(user: UserContext = Depends(get_current_user)) -> UserContext:
        if not check_role(user.role, required):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"{_ROLE_LABELS[required]} access required.",
            )
        return user

    return dependency


require_staff = require_role("moderator")
require_super_admin = require_role("super_admin")


def _check_client_version(client_version: Optional[str]) -> None:
    """Enforce minimum client version if configured."""
    if settings.min_client_version and client_version:
        try:
            if version.parse(client_version) < version.parse(settings.min_client_version):
                raise HTTPException(
                    status_code=status.HTTP_426_UPGRADE_REQUIRED,
                    detail=f"Client version {client_version} is too old. Minimum required: {settings.min_client_version}. Please refresh the store.",
                )
        except version.InvalidVersion:
            # Invalid version string - allow through
            pass
