"""Role hierarchy used for coarse authorization checks."""

from typing import Dict, Iterable, Literal, Optional


AppRole = Literal["user", "moderator", "admin", "super_admin"]

ROLE_HIERARCHY: Dict[str, int] = {
    "user": 1,
    "moderator": 2,
    "admin": 3,
    "super_admin": 4,
}

# Roles that may open the admin console
STAFF_ROLES = ("moderator", "admin", "super_admin")


def role_rank(role: str) -> int:
    """Rank of a role name (1-4). Raises ValueError for unknown names."""
    try:
        return ROLE_HIERARCHY[role]
    except KeyError:
        raise ValueError(f"Unknown role: {role!r}") from None


def check_role(user_role: Optional[str], required: str) -> bool:
    """True iff the user has a role ranked at or above ``required``."""
    if not user_role or user_role not in ROLE_HIERARCHY:
        return False
    return role_rank(user_role) >= role_rank(required)


def highest_role(roles: Iterable[str]) -> str:
    """Highest-ranked known role in ``roles``, defaulting to ``user``."""
    best = "user"
    for role in roles:
        if role in ROLE_HIERARCHY and ROLE_HIERARCHY[role] > ROLE_HIERARCHY[best]:
            best = role
    return best


def is_staff(role: Optional[str]) -> bool:
    return check_role(role, "moderator")
