"""
Per-Principal Order Limits

In-memory limits on order placement:
- RPM (order placements per minute) per principal with sliding window
- Daily cap per principal (resets at midnight UTC)
- IP-based fallback for guests

Limits reset on deploy (in-memory only).
"""

import asyncio
import hashlib
import time
import uuid
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Literal
from dataclasses import dataclass

from .settings import settings


# Instance tracking for debugging
INSTANCE_ID = uuid.uuid4().hex[:8]
STARTUP_TIME = time.time()

# Requests that place orders and are therefore limited
LIMITED_ROUTES = {
    ("POST", "/checkout"),
    ("POST", "/customization-orders"),
    ("POST", "/customization-requests"),
}


def get_instance_id() -> str:
    """Get unique instance ID for this server process."""
    return INSTANCE_ID


def get_uptime_seconds() -> int:
    """Get server uptime in seconds."""
    return int(time.time() - STARTUP_TIME)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    reason: Optional[Literal["rpm", "daily_cap"]] = None
    retry_after: int = 5  # seconds until client should retry
    current: int = 0
    limit: int = 0
    # Extra fields for daily cap
    reset_at_utc: Optional[str] = None


def _get_today_key() -> str:
    """Get today's date key in UTC (YYYY-MM-DD)."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def _seconds_until_midnight_utc() -> int:
    """Calculate seconds until next UTC midnight."""
    now = datetime.now(timezone.utc)
    midnight = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    next_midnight = midnight + timedelta(days=1)
    return max(1, int((next_midnight - now).total_seconds()))


class RateLimiter:
    """
    Simple in-memory order limiter.

    Tracks per-principal:
    - RPM: sliding window of placement timestamps (last 60s)
    - Daily: count of successful placements per day (prunes old days)
    """

    def __init__(self, rpm_limit: Optional[int] = None, daily_cap: Optional[int] = None):
        self.rpm_limit = settings.order_rate_limit if rpm_limit is None else rpm_limit
        self.daily_cap = settings.daily_order_cap if daily_cap is None else daily_cap
        # RPM: principal_id -> list of timestamps
        self._rpm: Dict[str, list] = {}
        # Daily: "principal_id:date_key" -> count
        self._daily: Dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._last_prune_day: str = ""

    def _cleanup_rpm(self, principal_id: str, now: float) -> None:
        """Remove RPM entries older than 60 seconds."""
        if principal_id in self._rpm:
            cutoff = now - 60
            self._rpm[principal_id] = [ts for ts in self._rpm[principal_id] if ts > cutoff]

    def _prune_old_days(self, today: str) -> None:
        """Remove daily buckets older than yesterday (keep 2 days max)."""
        if self._last_prune_day == today:
            return

        yesterday = (datetime.now(timezone.utc) - timedelta(days=1)).strftime("%Y-%m-%d")
        keys_to_remove = [
            key for key in self._daily.keys()
            if not (key.endswith(today) or key.endswith(yesterday))
        ]
        for key in keys_to_remove:
            del self._daily[key]

        self._last_prune_day = today

    async def check_daily_cap(self, principal_id: str) -> RateLimitResult:
        """Check if daily cap is exceeded (doesn't increment - that happens on success)."""
        async with self._lock:
            today = _get_today_key()
            self._prune_old_days(today)

            current = self._daily.get(f"{principal_id}:{today}", 0)
            if current >= self.daily_cap:
                next_midnight = datetime.now(timezone.utc).replace(
                    hour=0, minute=0, second=0, microsecond=0
                ) + timedelta(days=1)
                return RateLimitResult(
                    allowed=False,
                    reason="daily_cap",
                    retry_after=_seconds_until_midnight_utc(),
                    current=current,
                    limit=self.daily_cap,
                    reset_at_utc=next_midnight.isoformat(),
                )

            return RateLimitResult(allowed=True, current=current, limit=self.daily_cap)

    async def increment_daily(self, principal_id: str) -> None:
        """Increment daily counter after a successful placement."""
        async with self._lock:
            daily_key = f"{principal_id}:{_get_today_key()}"
            self._daily[daily_key] = self._daily.get(daily_key, 0) + 1

    async def check_rpm(self, principal_id: str) -> RateLimitResult:
        """Check and increment RPM counter. Returns whether the request is allowed."""
        async with self._lock:
            now = time.time()
            self._cleanup_rpm(principal_id, now)
            window = self._rpm.setdefault(principal_id, [])

            current = len(window)
            if current >= self.rpm_limit:
                # Retry when the oldest entry leaves the window
                oldest = min(window) if window else now
                return RateLimitResult(
                    allowed=False,
                    reason="rpm",
                    retry_after=max(1, int(oldest + 60 - now)),
                    current=current,
                    limit=self.rpm_limit,
                )

            window.append(now)
            return RateLimitResult(allowed=True, current=current + 1, limit=self.rpm_limit)

    async def get_usage(self, principal_id: str) -> dict:
        """Current usage for a principal."""
        async with self._lock:
            self._cleanup_rpm(principal_id, time.time())
            rpm_count = len(self._rpm.get(principal_id, []))
            daily_count = self._daily.get(f"{principal_id}:{_get_today_key()}", 0)

            return {
                "rpm": {
                    "used": rpm_count,
                    "limit": self.rpm_limit,
                    "remaining": max(0, self.rpm_limit - rpm_count),
                    "window_seconds": 60,
                },
                "daily": {
                    "used": daily_count,
                    "limit": self.daily_cap,
                    "remaining": max(0, self.daily_cap - daily_count),
                    "reset_seconds": _seconds_until_midnight_utc(),
                },
            }


# --- Global Instance ---

_limiter: Optional[RateLimiter] = None


async def init_limiter() -> None:
    """Initialize the order limiter on startup."""
    global _limiter
    if settings.limits_enabled:
        _limiter = RateLimiter()
        print(f"[limits] In-memory order limiter initialized (instance={INSTANCE_ID})")
        print(f"[limits] Config: {settings.order_rate_limit} orders/min, {settings.daily_order_cap} daily cap")
    else:
        _limiter = None
        print("[limits] Order limits disabled")


async def close_limiter() -> None:
    """Cleanup on shutdown (no-op for in-memory)."""
    global _limiter
    _limiter = None


def get_limiter() -> Optional[RateLimiter]:
    """Get the global limiter instance."""
    return _limiter


def set_limiter(limiter: Optional[RateLimiter]) -> None:
    global _limiter
    _limiter = limiter


def get_limiter_type() -> str:
    """Get limiter type for health endpoint."""
    if _limiter is None:
        return "disabled"
    return "memory"


# --- Helper: Compute Principal ID ---

def get_principal_id(token: Optional[str] = None, client_ip: Optional[str] = None) -> str:
    """
    Get a stable principal ID for limiting.

    Uses the SHA-256 hash of the session token if present, otherwise the IP.
    """
    if token:
        return f"key:{hashlib.sha256(token.encode()).hexdigest()}"
    if client_ip:
        return f"ip:{client_ip}"
    return "unknown"


def hash_principal_for_logging(principal_id: str) -> str:
    """Short hash of principal_id that is safe to log."""
    return hashlib.sha256(principal_id.encode()).hexdigest()[:12]


# --- 429 Response Helpers ---

def make_rate_limit_response(
    reason: Literal["rpm", "daily_cap"],
    result: RateLimitResult,
    request_id: str,
) -> dict:
    """
    Create a standardized 429 response body.
    """
    base = {
        "detail": "Too many orders. Please try again later.",
        "error": "rate_limited",
        "reason": reason,
        "retry_after": result.retry_after,
        "request_id": request_id,
    }

    if reason == "rpm":
        base["limit"] = result.limit
        base["used"] = result.current
        base["window_seconds"] = 60
    elif reason == "daily_cap":
        base["detail"] = "Daily order limit reached. Please try again tomorrow."
        base["daily_cap"] = result.limit
        base["used_today"] = result.current
        base["reset_at_utc"] = result.reset_at_utc

    return base
