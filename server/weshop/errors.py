"""
Domain errors and their HTTP mapping.

Every failure reaches the client as a single human-readable message in
``{"detail": ...}``; the status code is the only other signal.
"""

import logging

from fastapi import FastAPI, Request, status
from starlette.responses import JSONResponse


logger = logging.getLogger(__name__)


class WeShopError(Exception):
    """Base class for errors that carry a user-facing message."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(WeShopError):
    status_code = status.HTTP_400_BAD_REQUEST


class AuthError(WeShopError):
    status_code = status.HTTP_401_UNAUTHORIZED


class PermissionDenied(WeShopError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(WeShopError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(WeShopError):
    status_code = status.HTTP_409_CONFLICT


class DatabaseError(Exception):
    """
    Failure reported by the database/auth collaborator.

    ``code`` follows PostgreSQL SQLSTATE where one exists (``23505`` unique
    violation, ``42P01`` unknown table) and ``PGRST116`` for a single-row read
    that matched nothing.
    """

    def __init__(self, message: str, code: str = ""):
        super().__init__(message)
        self.message = message
        self.code = code

    def __repr__(self) -> str:
        return f"DatabaseError(code={self.code!r}, message={self.message!r})"


UNIQUE_VIOLATION = "23505"
NO_ROWS = "PGRST116"
UNDEFINED_TABLE = "42P01"


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors onto JSON responses."""

    @app.exception_handler(WeShopError)
    async def _weshop_error(request: Request, exc: WeShopError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(DatabaseError)
    async def _database_error(request: Request, exc: DatabaseError):
        if exc.code == NO_ROWS:
            return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": exc.message})
        logger.error(f"[db] {exc!r} path={request.url.path}")
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": exc.message})
