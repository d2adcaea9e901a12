import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .settings import settings
from .auth import UserContext, get_current_user
from .errors import register_exception_handlers
from .rate_limit import limiter
from .realtime import get_hub
from .admin import router as admin_router
from .shop import router as shop_router
from . import db
from . import limits


def configure_logging() -> None:
    """Root logger at settings.log_level; module loggers inherit it."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    configure_logging()

    # Startup: connect the collaborator (PostgreSQL when DATABASE_URL is set)
    try:
        database = await db.init_db()
        print(f"[startup] Database initialized ({database.backend})")
    except OSError as e:
        print(f"[startup] ERROR: Failed to connect to the database: {e}")
        raise

    # Push order changes to connected staff and customers
    hub = get_hub()
    hub.start(database)
    hub.start_polling()
    print(f"[startup] Order updates live (polling every {settings.orders_poll_interval}s)")

    await limits.init_limiter()
    print(f"[startup] Order limiter initialized ({limits.get_limiter_type()})")

    yield

    await hub.aclose()
    await limits.close_limiter()
    await db.close_db()


app = FastAPI(
    title="WeShop Storefront and Back-office API",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_exception_handlers(app)

app.include_router(shop_router)
app.include_router(admin_router)

# CORS configuration from settings
# If no origins configured, allow localhost for development
allowed_origins = settings.allowed_origins if settings.allowed_origins else [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=[
        "Content-Type", "X-API-Key", "Authorization",
        "X-Cart-Id", "X-Request-Id", "X-WeShop-Client-Version",
    ],
    expose_headers=["X-Request-Id"],
)


# --- Order Limits Middleware ---


def _get_client_ip(request: Request) -> str:
    """Extract real client IP, respecting X-Forwarded-For from trusted proxies."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def _get_or_create_request_id(request: Request) -> str:
    """Get request ID from header or generate one."""
    return request.headers.get("X-Request-Id") or str(uuid.uuid4())


def _get_token(request: Request):
    token = request.headers.get("X-API-Key")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.lower().startswith("bearer "):
            token = auth_header[7:]
    return token


class OrderLimitMiddleware(BaseHTTPMiddleware):
    """
    Enforces per-principal order limits (RPM + daily cap) on order placement.

    Guests are limited by client IP. Every response carries X-Request-Id.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = _get_or_create_request_id(request)
        start_time = time.time()

        # Stash on request for downstream logging
        request.state.request_id = request_id
        request.state.client_ip = _get_client_ip(request)

        limiter = limits.get_limiter()
        if (request.method, request.url.path) not in limits.LIMITED_ROUTES or limiter is None:
            response = await call_next(request)
            response.headers["X-Request-Id"] = request_id
            return response

        principal_id = limits.get_principal_id(
            token=_get_token(request),
            client_ip=request.state.client_ip,
        )
        principal_hash = limits.hash_principal_for_logging(principal_id)

        # 1. Check daily cap first (cheapest check)
        daily_result = await limiter.check_daily_cap(principal_id)
        if not daily_result.allowed:
            print(f"[limits] 429 daily_cap principal={principal_hash} path={request.url.path} request_id={request_id}")
            return JSONResponse(
                status_code=429,
                content=limits.make_rate_limit_response("daily_cap", daily_result, request_id),
                headers={
                    "Retry-After": str(daily_result.retry_after),
                    "X-Request-Id": request_id,
                },
            )

        # 2. Check RPM
        rpm_result = await limiter.check_rpm(principal_id)
        if not rpm_result.allowed:
            print(f"[limits] 429 rpm principal={principal_hash} path={request.url.path} request_id={request_id}")
            return JSONResponse(
                status_code=429,
                content=limits.make_rate_limit_response("rpm", rpm_result, request_id),
                headers={
                    "Retry-After": str(rpm_result.retry_after),
                    "X-Request-Id": request_id,
                },
            )

        response = await call_next(request)

        # Only successful placements count toward the daily cap
        if 200 <= response.status_code < 300:
            await limiter.increment_daily(principal_id)

        duration_ms = int((time.time() - start_time) * 1000)
        print(f"[request] principal={principal_hash} path={request.url.path} status={response.status_code} duration_ms={duration_ms} request_id={request_id}")

        response.headers["X-Request-Id"] = request_id
        return response


app.add_middleware(OrderLimitMiddleware)


# Server version for health checks
SERVER_VERSION = "1.0.0"


@app.get("/health")
def health():
    """
    Health check endpoint - no authentication required.
    Used by load balancers and orchestrators.
    """
    return {
        "status": "ok",
        "version": SERVER_VERSION,
        "timestamp": int(time.time()),
        "database": db.get_db().backend,
        "limiter": limits.get_limiter_type(),
        "listeners": get_hub().listener_count,
    }


@app.get("/limits")
async def get_limits_status(request: Request, user: UserContext = Depends(get_current_user)):
    """
    Current order limit usage for the authenticated user.
    Useful for debugging and testing limits.
    """
    limiter = limits.get_limiter()

    if not limiter:
        return {
            "enabled": False,
            "message": "Order limits are disabled",
            "instance_id": limits.get_instance_id(),
            "uptime_seconds": limits.get_uptime_seconds(),
        }

    # Same principal derivation as the middleware
    principal_id = limits.get_principal_id(token=user.token)
    return {
        "enabled": True,
        "limiter_type": limits.get_limiter_type(),
        "note": "In-memory limits reset on deploy. Limits are per-instance.",
        "instance_id": limits.get_instance_id(),
        "uptime_seconds": limits.get_uptime_seconds(),
        "config": {
            "rpm_limit": limiter.rpm_limit,
            "window_seconds": 60,
            "daily_cap": limiter.daily_cap,
        },
        "your_usage": await limiter.get_usage(principal_id),
    }


def cli():
    import uvicorn
    uvicorn.run("weshop.main:app", host="0.0.0.0", port=8000, reload=settings.debug)


if __name__ == "__main__":
    cli()
