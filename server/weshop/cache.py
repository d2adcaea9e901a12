"""
Read-through query cache with request deduplication and retry.

Keys are strings namespaced by table ("products:list:...", "orders:all").
Cached data goes stale after ``stale_seconds`` or when invalidated; stale
entries are reloaded on the next fetch. At most ``max_entries`` keys are kept;
the least recently used key is evicted first. Concurrent fetches of the same key
share one load. Failed loads are retried with exponential backoff.
"""

import asyncio
import copy
import logging
import threading
import time
import weakref
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import DatabaseError
from .feed import ChangeEvent
from .settings import settings


logger = logging.getLogger(__name__)

# Tables whose cached queries are dropped whenever the table changes
INVALIDATING_TABLES = ("products", "categories", "orders", "customization_requests", "notifications")


@dataclass
class _Entry:
    data: Any
    fetched_at: float
    stale: bool = False


class QueryCache:
    """Key-value read-through cache for collaborator queries."""

    def __init__(
        self,
        stale_seconds: Optional[float] = None,
        retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        max_entries: Optional[int] = None,
    ):
        self.stale_seconds = settings.cache_stale_seconds if stale_seconds is None else stale_seconds
        self.retries = settings.fetch_retries if retries is None else retries
        self.base_delay = settings.retry_base_delay if base_delay is None else base_delay
        self.max_delay = settings.retry_max_delay if max_delay is None else max_delay
        self.max_entries = settings.cache_max_entries if max_entries is None else max_entries
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._lock = threading.RLock()
        self._inflight: Dict[str, "asyncio.Task[Any]"] = {}
        self._epoch = 0  # Bumped by every invalidation

    def _is_fresh(self, entry: _Entry, stale_seconds: float) -> bool:
        return not entry.stale and time.monotonic() - entry.fetched_at < stale_seconds

    async def fetch(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        stale_seconds: Optional[float] = None,
    ) -> Any:
        """
        Return cached data for ``key`` or load it with ``loader``.

        A load already running for the same key is joined instead of starting
        another one.
        """
        stale_seconds = self.stale_seconds if stale_seconds is None else stale_seconds
        entry = self._lookup(key)
        if entry is not None and self._is_fresh(entry, stale_seconds):
            return copy.deepcopy(entry.data)

        loop = asyncio.get_running_loop()
        task = self._inflight.get(key)
        if task is None or task.get_loop() is not loop:
            task = loop.create_task(self._load(key, loader))
            self._inflight[key] = task
            task.add_done_callback(lambda t, key=key: self._forget(key, t))

        data = await asyncio.shield(task)
        return copy.deepcopy(data)

    def _forget(self, key: str, task: "asyncio.Task[Any]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _load(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        epoch = self._epoch
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(DatabaseError),
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                data = await loader()

        # An invalidation that raced with the load leaves the result stale
        self._store(key, _Entry(data=data, fetched_at=time.monotonic(), stale=epoch != self._epoch))
        return data

    def _lookup(self, key: str) -> Optional[_Entry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
            return entry

    def _store(self, key: str, entry: _Entry) -> None:
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"[cache] Evicted {evicted!r}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Any:
        """Cached data for ``key`` regardless of freshness, or None."""
        with self._lock:
            entry = self._entries.get(key)
            return copy.deepcopy(entry.data) if entry is not None else None

    def set_data(self, key: str, updater: Callable[[Any], Any]) -> bool:
        """Patch cached data in place (optimistic update). False if ``key`` is not cached."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            entry.data = updater(copy.deepcopy(entry.data))
            return True

    def invalidate(self, prefix: str = "") -> int:
        """Mark every key starting with ``prefix`` stale. Returns how many were marked."""
        marked = 0
        with self._lock:
            self._epoch += 1
            for key, entry in self._entries.items():
                if key.startswith(prefix) and not entry.stale:
                    entry.stale = True
                    marked += 1
        if marked:
            logger.debug(f"[cache] Invalidated {marked} key(s) under {prefix!r}")
        return marked

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


_caches: "weakref.WeakKeyDictionary[Any, QueryCache]" = weakref.WeakKeyDictionary()


def cache_for(database) -> QueryCache:
    """
    Cache bound to a collaborator instance.

    The cache subscribes to the collaborator's change feed and invalidates a
    table's keys whenever that table changes.
    """
    cache = _caches.get(database)
    if cache is None:
        cache = QueryCache()

        def _on_change(event: ChangeEvent, cache: QueryCache = cache) -> None:
            cache.invalidate(event.table)

        for table in INVALIDATING_TABLES:
            database.subscribe(table, _on_change)
        _caches[database] = cache
    return cache
