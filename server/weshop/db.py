"""
Database access layer: the boundary to the database/auth collaborator.

Two backends share one interface:
- MemoryDatabase keeps tables in process (local development and tests).
- PostgresDatabase uses asyncpg; its change feed is driven by LISTEN/NOTIFY
  triggers installed by SCHEMA.

Rows are plain dicts. Failures surface as DatabaseError with a message and a
SQLSTATE-style code.
"""

import copy
import json
import logging
import re
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import asyncpg

from .errors import DatabaseError, NO_ROWS, UNDEFINED_TABLE, UNIQUE_VIOLATION
from .feed import ChangeEvent, ChangeFeed
from .settings import DATABASE_URL


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableSpec:
    unique: Tuple[Tuple[str, ...], ...] = ()
    updated_at: bool = False  # Maintain an updated_at column on writes
    feed: bool = True  # Publish changes on the change feed


TABLES: Dict[str, TableSpec] = {
    "products": TableSpec(updated_at=True),
    "categories": TableSpec(unique=(("slug",),)),
    "orders": TableSpec(unique=(("order_number",),), updated_at=True),
    "wishlists": TableSpec(unique=(("user_id", "product_id"),)),
    "users": TableSpec(unique=(("email",),), feed=False),
    "sessions": TableSpec(unique=(("token_hash",),), feed=False),
    "profiles": TableSpec(unique=(("user_id",),), updated_at=True, feed=False),
    "user_roles": TableSpec(unique=(("user_id", "role"),)),
    "customization_requests": TableSpec(updated_at=True),
    "notifications": TableSpec(),
    "notification_reads": TableSpec(unique=(("notification_id", "user_id"),), feed=False),
}

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise DatabaseError(f"Invalid identifier: {name!r}", "42602")
    return name


def _table_spec(table: str) -> TableSpec:
    spec = TABLES.get(table)
    if spec is None:
        raise DatabaseError(f'relation "{table}" does not exist', UNDEFINED_TABLE)
    return spec


# --- Query builder ---


class Query:
    """
    Filter/order description for a single table.

    Builder methods return the query itself so calls can be chained:
        Query("products").eq("is_active", True).search(["name"], "shirt").order("created_at")
    """

    def __init__(self, table: str):
        self.table = table
        self.filters: List[Tuple[str, Any, Any]] = []  # (op, column or columns, value)
        self.order_by: Optional[Tuple[str, bool]] = None  # (column, descending)
        self.limit_to: Optional[int] = None

    def eq(self, column: str, value: Any) -> "Query":
        self.filters.append(("eq", column, value))
        return self

    def ilike(self, column: str, pattern: str) -> "Query":
        """Case-insensitive SQL LIKE (``%`` any run, ``_`` any character)."""
        self.filters.append(("ilike", column, pattern))
        return self

    def in_(self, column: str, values: Iterable[Any]) -> "Query":
        self.filters.append(("in", column, list(values)))
        return self

    def search(self, columns: Sequence[str], term: str) -> "Query":
        """Match rows where any of ``columns`` contains ``term`` (case-insensitive)."""
        self.filters.append(("or_ilike", tuple(columns), f"%{term}%"))
        return self

    def order(self, column: str, descending: bool = True) -> "Query":
        self.order_by = (column, descending)
        return self

    def limit(self, n: int) -> "Query":
        self.limit_to = n
        return self

    def __repr__(self) -> str:
        return f"Query({self.table!r}, filters={self.filters!r}, order={self.order_by!r}, limit={self.limit_to!r})"


def like_to_regex(pattern: str) -> "re.Pattern[str]":
    parts = []
    for ch in pattern:
        if ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)


def _ilike(value: Any, pattern: str) -> bool:
    if not isinstance(value, str):
        return False
    return like_to_regex(pattern).fullmatch(value) is not None


def _matches(row: Dict[str, Any], filters: List[Tuple[str, Any, Any]]) -> bool:
    for op, column, value in filters:
        if op == "eq":
            if row.get(column) != value:
                return False
        elif op == "ilike":
            if not _ilike(row.get(column), value):
                return False
        elif op == "in":
            if row.get(column) not in value:
                return False
        elif op == "or_ilike":
            if not any(_ilike(row.get(c), value) for c in column):
                return False
        else:
            raise DatabaseError(f"Unsupported filter operator: {op}")
    return True


def _sort_rows(rows: List[Dict[str, Any]], column: str, descending: bool) -> List[Dict[str, Any]]:
    # NULLs always sort last, matching "NULLS LAST" in the SQL backend
    present = [r for r in rows if r.get(column) is not None]
    missing = [r for r in rows if r.get(column) is None]
    present.sort(key=lambda r: r[column], reverse=descending)
    return present + missing


# --- Interface ---


class Database(ABC):
    """Query, mutation and change-feed operations offered by the collaborator."""

    backend = "abstract"

    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.feed = feed or ChangeFeed()

    @abstractmethod
    async def select(self, query: Query) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def update(self, query: Query, changes: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Apply ``changes`` to matching rows; returns the updated rows."""

    @abstractmethod
    async def delete(self, query: Query) -> List[Dict[str, Any]]:
        """Delete matching rows; returns the deleted rows."""

    async def select_one(self, query: Query) -> Dict[str, Any]:
        rows = await self.select(query.limit(1))
        if not rows:
            raise DatabaseError(f"No {query.table} row matched the request", NO_ROWS)
        return rows[0]

    async def maybe_one(self, query: Query) -> Optional[Dict[str, Any]]:
        rows = await self.select(query.limit(1))
        return rows[0] if rows else None

    async def count(self, query: Query) -> int:
        return len(await self.select(query))

    async def update_by_id(self, table: str, row_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = await self.update(Query(table).eq("id", row_id), changes)
        return rows[0] if rows else None

    async def delete_by_id(self, table: str, row_id: str) -> bool:
        rows = await self.delete(Query(table).eq("id", row_id))
        return bool(rows)

    def subscribe(self, table: str, callback: Callable[[ChangeEvent], None], **kwargs) -> Callable[[], None]:
        """Register a change-feed callback; returns the unsubscribe function."""
        return self.feed.subscribe(table, callback, **kwargs)

    async def close(self) -> None:
        return None


# --- In-process backend ---


class MemoryDatabase(Database):
    """Tables held in process. Rows are copied in and out."""

    backend = "memory"

    def __init__(self, feed: Optional[ChangeFeed] = None):
        super().__init__(feed)
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in TABLES}
        self._lock = threading.RLock()
        self._last_ts: Optional[datetime] = None

    def _now(self) -> datetime:
        # Strictly increasing so "newest first" ordering is deterministic
        now = datetime.now(timezone.utc)
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return now

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        _table_spec(table)
        return self._tables[table]

    def _check_unique(self, table: str, record: Dict[str, Any], ignore_id: Optional[str]) -> None:
        rows = self._tables[table]
        for columns in TABLES[table].unique:
            if any(record.get(c) is None for c in columns):
                continue
            for other in rows.values():
                if other["id"] == ignore_id:
                    continue
                if all(other.get(c) == record.get(c) for c in columns):
                    raise DatabaseError(
                        f'duplicate key value violates unique constraint "{table}_{"_".join(columns)}_key"',
                        UNIQUE_VIOLATION,
                    )

    def _publish(self, events: List[ChangeEvent]) -> None:
        for event in events:
            if TABLES[event.table].feed:
                self.feed.publish(event)

    async def select(self, query: Query) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [r for r in self._table(query.table).values() if _matches(r, query.filters)]
            if query.order_by:
                rows = _sort_rows(rows, *query.order_by)
            if query.limit_to is not None:
                rows = rows[: query.limit_to]
            return [copy.deepcopy(r) for r in rows]

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            data = self._table(table)
            record = copy.deepcopy(row)
            record["id"] = str(record.get("id") or uuid.uuid4())
            if record["id"] in data:
                raise DatabaseError(f'duplicate key value violates unique constraint "{table}_pkey"', UNIQUE_VIOLATION)

            now = self._now()
            record.setdefault("created_at", now)
            if TABLES[table].updated_at:
                record.setdefault("updated_at", now)

            self._check_unique(table, record, ignore_id=None)
            data[record["id"]] = record
            result = copy.deepcopy(record)

        self._publish([ChangeEvent(table, "INSERT", new=copy.deepcopy(result))])
        return result

    async def update(self, query: Query, changes: Dict[str, Any]) -> List[Dict[str, Any]]:
        changes = {k: v for k, v in changes.items() if k != "id"}
        with self._lock:
            data = self._table(query.table)
            matched = [r for r in data.values() if _matches(r, query.filters)]
            if query.limit_to is not None:
                matched = matched[: query.limit_to]
            if not matched:
                return []

            now = self._now()
            pending = []
            for old in matched:
                new = {**old, **copy.deepcopy(changes)}
                if TABLES[query.table].updated_at and "updated_at" not in changes:
                    new["updated_at"] = now
                self._check_unique(query.table, new, ignore_id=old["id"])
                pending.append((old, new))

            events = []
            for old, new in pending:
                data[old["id"]] = new
                events.append(ChangeEvent(query.table, "UPDATE", new=copy.deepcopy(new), old=copy.deepcopy(old)))
            results = [copy.deepcopy(new) for _, new in pending]

        self._publish(events)
        return results

    async def delete(self, query: Query) -> List[Dict[str, Any]]:
        with self._lock:
            data = self._table(query.table)
            matched = [r for r in data.values() if _matches(r, query.filters)]
            for row in matched:
                del data[row["id"]]
            events = [ChangeEvent(query.table, "DELETE", old=copy.deepcopy(r)) for r in matched]
            results = [copy.deepcopy(r) for r in matched]

        self._publish(events)
        return results


# --- PostgreSQL backend ---


NOTIFY_CHANNEL = "weshop_changes"

# Payloads above this are re-sent without the (large) items column;
# pg_notify rejects payloads of 8000 bytes or more.
_NOTIFY_LIMIT = 7900

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS products (
    id text PRIMARY KEY DEFAULT gen_random_uuid()::text,
    name text NOT NULL,
    description text,
    price double precision NOT NULL CHECK (price >= 0),
    original_price double precision,
    discount double precision,
    images text[] DEFAULT '{{}}',
    category text NOT NULL DEFAULT '',
    category_id text,
    rating double precision,
    reviews integer,
    stock integer DEFAULT 0 CHECK (stock >= 0),
    featured boolean DEFAULT false,
    trending boolean DEFAULT false,
    is_active boolean DEFAULT true,
    created_at timestamptz NOT NULL DEFAULT now(),
    updated_at timestamptz NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS categories (
    id text PRIMARY KEY DEFAULT gen_random_uuid()::text,
    name text NOT NULL,
    slug text NOT NULL UNIQUE,
    image text,
    created_at timestamptz NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS orders (
    id text PRIMARY KEY DEFAULT gen_random_uuid()::text,
    order_number text NOT NULL UNIQUE,
    user_id text,
    items jsonb NOT NULL DEFAULT '[]',
    total double precision NOT NULL CHECK (total >= 0),
    status text NOT NULL DEFAULT 'placed'
        CHECK (status IN ('placed', 'packed', 'shipped', 'delivered', 'cancelled')),
    customer_name text NOT NULL,
    customer_phone text NOT NULL,
    customer_address text NOT NULL,
    customer_city text NOT NULL,
    customer_state text NOT NULL,
    customer_pincode text NOT NULL,
    created_at timestamptz NOT NULL DEFAULT now(),
    updated_at timestamptz NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id);

CREATE TABLE IF NOT EXISTS wishlists (
    id text PRIMARY KEY DEFAULT gen_random_uuid()::text,
    user_id text NOT NULL,
    product_id text NOT NULL,
    created_at timestamptz NOT NULL DEFAULT now(),
    UNIQUE (user_id, product_id)
);

CREATE TABLE IF NOT EXISTS users (
    id text PRIMARY KEY DEFAULT gen_random_uuid()::text,
    email text NOT NULL UNIQUE,
    password_hash text NOT NULL,
    created_at timestamptz NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS sessions (
    id text PRIMARY KEY DEFAULT gen_random_uuid()::text,
    user_id text NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    token_hash text NOT NULL UNIQUE,
    expires_at timestamptz NOT NULL,
    revoked_at timestamptz,
    created_at timestamptz NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS profiles (
    id text PRIMARY KEY DEFAULT gen_random_uuid()::text,
    user_id text NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
    email text,
    full_name text,
    created_at timestamptz NOT NULL DEFAULT now(),
    updated_at timestamptz NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS user_roles (
    id text PRIMARY KEY DEFAULT gen_random_uuid()::text,
    user_id text NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    role text NOT NULL CHECK (role IN ('user', 'moderator', 'admin', 'super_admin')),
    created_at timestamptz NOT NULL DEFAULT now(),
    UNIQUE (user_id, role)
);

CREATE TABLE IF NOT EXISTS customization_requests (
    id text PRIMARY KEY DEFAULT gen_random_uuid()::text,
    product_id text NOT NULL,
    product_name text NOT NULL,
    image text,
    text text NOT NULL,
    contact jsonb NOT NULL,
    user_id text,
    status text NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'reviewed', 'approved', 'rejected')),
    admin_notes text,
    quoted_price double precision,
    submitted_at timestamptz NOT NULL DEFAULT now(),
    created_at timestamptz NOT NULL DEFAULT now(),
    updated_at timestamptz NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS notifications (
    id text PRIMARY KEY DEFAULT gen_random_uuid()::text,
    user_id text,
    title text NOT NULL,
    message text NOT NULL,
    type text NOT NULL DEFAULT 'info'
        CHECK (type IN ('info', 'success', 'warning', 'error', 'price_update')),
    is_global boolean NOT NULL DEFAULT false,
    read boolean NOT NULL DEFAULT false,
    metadata jsonb,
    created_at timestamptz NOT NULL DEFAULT now()
);

-- Per-user read state of global notifications
CREATE TABLE IF NOT EXISTS notification_reads (
    id text PRIMARY KEY DEFAULT gen_random_uuid()::text,
    notification_id text NOT NULL REFERENCES notifications(id) ON DELETE CASCADE,
    user_id text NOT NULL,
    created_at timestamptz NOT NULL DEFAULT now(),
    UNIQUE (notification_id, user_id)
);

CREATE OR REPLACE FUNCTION weshop_notify_change() RETURNS trigger AS $$
DECLARE
    payload text;
BEGIN
    payload := json_build_object(
        'table', TG_TABLE_NAME,
        'type', TG_OP,
        'new', CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE to_jsonb(NEW) END,
        'old', CASE WHEN TG_OP = 'INSERT' THEN NULL ELSE to_jsonb(OLD) END
    )::text;
    IF octet_length(payload) > {_NOTIFY_LIMIT} THEN
        payload := json_build_object(
            'table', TG_TABLE_NAME,
            'type', TG_OP,
            'new', CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE to_jsonb(NEW) - 'items' END,
            'old', CASE WHEN TG_OP = 'INSERT' THEN NULL ELSE to_jsonb(OLD) - 'items' END
        )::text;
    END IF;
    PERFORM pg_notify('{NOTIFY_CHANNEL}', payload);
    RETURN NULL;
END;
$$ LANGUAGE plpgsql;
""" + "\n".join(
    f"DROP TRIGGER IF EXISTS {name}_changes ON {name};\n"
    f"CREATE TRIGGER {name}_changes AFTER INSERT OR UPDATE OR DELETE ON {name} "
    f"FOR EACH ROW EXECUTE FUNCTION weshop_notify_change();"
    for name, spec in TABLES.items()
    if spec.feed
)


async def _init_connection(conn) -> None:
    """Decode json/jsonb columns into Python objects."""
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


def _where(filters: List[Tuple[str, Any, Any]], params: List[Any]) -> str:
    """Render filters as a WHERE clause, appending values to ``params``."""
    clauses = []
    for op, column, value in filters:
        if op == "or_ilike":
            params.append(value)
            idx = len(params)
            alternatives = " OR ".join(f"{_check_identifier(c)} ILIKE ${idx}" for c in column)
            clauses.append(f"({alternatives})")
            continue

        _check_identifier(column)
        if op == "eq" and value is None:
            clauses.append(f"{column} IS NULL")
            continue

        params.append(value)
        idx = len(params)
        if op == "eq":
            clauses.append(f"{column} = ${idx}")
        elif op == "ilike":
            clauses.append(f"{column} ILIKE ${idx}")
        elif op == "in":
            clauses.append(f"{column} = ANY(${idx})")
        else:
            raise DatabaseError(f"Unsupported filter operator: {op}")

    return " WHERE " + " AND ".join(clauses) if clauses else ""


class PostgresDatabase(Database):
    """asyncpg-backed collaborator with a LISTEN/NOTIFY change feed."""

    backend = "postgres"

    def __init__(self, dsn: str, feed: Optional[ChangeFeed] = None, min_size: int = 2, max_size: int = 10):
        super().__init__(feed)
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Any = None
        self._listener: Any = None

    async def connect(self) -> None:
        """Open the pool and the change-feed listener. Call during app startup."""
        self._pool = await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            init=_init_connection,
        )
        self._listener = await asyncpg.connect(self.dsn)
        await self._listener.add_listener(NOTIFY_CHANNEL, self._on_notify)

    async def close(self) -> None:
        if self._listener is not None:
            await self._listener.remove_listener(NOTIFY_CHANNEL, self._on_notify)
            await self._listener.close()
            self._listener = None
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self):
        """Get a database connection from the pool."""
        if self._pool is None:
            raise RuntimeError("Database pool not initialized. Call connect() first.")
        async with self._pool.acquire() as conn:
            yield conn

    def _on_notify(self, connection, pid, channel, payload) -> None:
        try:
            data = json.loads(payload)
        except ValueError:
            logger.warning(f"[db] Ignoring malformed change notification: {payload[:200]!r}")
            return
        table = data.get("table")
        if table not in TABLES:
            return
        self.feed.publish(
            ChangeEvent(
                table=table,
                event_type=data.get("type"),
                new=data.get("new"),
                old=data.get("old"),
            )
        )

    async def _fetch(self, sql: str, params: List[Any]) -> List[Dict[str, Any]]:
        try:
            async with self.connection() as conn:
                rows = await conn.fetch(sql, *params)
        except asyncpg.PostgresError as e:
            raise DatabaseError(str(e), getattr(e, "sqlstate", "") or "") from e
        except (OSError, asyncpg.InterfaceError) as e:
            raise DatabaseError(f"Database unavailable: {e}", "08006") from e
        return [dict(row) for row in rows]

    async def select(self, query: Query) -> List[Dict[str, Any]]:
        _table_spec(query.table)
        params: List[Any] = []
        sql = f"SELECT * FROM {query.table}" + _where(query.filters, params)
        if query.order_by:
            column, descending = query.order_by
            sql += f" ORDER BY {_check_identifier(column)} {'DESC' if descending else 'ASC'} NULLS LAST"
        if query.limit_to is not None:
            sql += f" LIMIT {int(query.limit_to)}"
        return await self._fetch(sql, params)

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        _table_spec(table)
        columns = [_check_identifier(c) for c in row]
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *"
        rows = await self._fetch(sql, list(row.values()))
        return rows[0]

    async def update(self, query: Query, changes: Dict[str, Any]) -> List[Dict[str, Any]]:
        spec = _table_spec(query.table)
        changes = {k: v for k, v in changes.items() if k != "id"}
        params: List[Any] = []
        assignments = []
        for column, value in changes.items():
            params.append(value)
            assignments.append(f"{_check_identifier(column)} = ${len(params)}")
        if spec.updated_at and "updated_at" not in changes:
            assignments.append("updated_at = NOW()")
        if not assignments:
            return await self.select(query)

        sql = f"UPDATE {query.table} SET {', '.join(assignments)}" + _where(query.filters, params) + " RETURNING *"
        return await self._fetch(sql, params)

    async def delete(self, query: Query) -> List[Dict[str, Any]]:
        _table_spec(query.table)
        params: List[Any] = []
        sql = f"DELETE FROM {query.table}" + _where(query.filters, params) + " RETURNING *"
        return await self._fetch(sql, params)


# --- Global instance ---

_db: Optional[Database] = None


async def init_db(database: Optional[Database] = None) -> Database:
    """Initialize the global collaborator. Call during app startup."""
    global _db
    if database is None:
        if DATABASE_URL:
            database = PostgresDatabase(DATABASE_URL)
            await database.connect()
        else:
            database = MemoryDatabase()
    _db = database
    logger.info(f"[db] Using {database.backend} backend")
    return database


async def close_db() -> None:
    """Close the global collaborator. Call during app shutdown."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None


def get_db() -> Database:
    """Get global collaborator instance (in-memory until init_db runs)."""
    global _db
    if _db is None:
        _db = MemoryDatabase()
    return _db


def set_db(database: Optional[Database]) -> None:
    global _db
    _db = database


async def init_schema(dsn: str = DATABASE_URL) -> None:
    """Create tables and change-feed triggers."""
    if not dsn:
        raise RuntimeError("DATABASE_URL is not set.")
    conn = await asyncpg.connect(dsn)
    try:
        await conn.execute(SCHEMA)
    finally:
        await conn.close()
