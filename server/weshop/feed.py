"""
Change feed: insert/update/delete notifications per table.

Subscribers register a callback for a table (optionally one event type and one
column equality filter) and get back an unsubscribe callable. Events are
delivered in publish order; overlapping events are not merged.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Literal, Optional, Tuple


logger = logging.getLogger(__name__)

EventType = Literal["INSERT", "UPDATE", "DELETE"]


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: EventType
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None

    @property
    def row(self) -> Dict[str, Any]:
        """The most recent version of the row (old row for deletes)."""
        return self.new if self.new is not None else (self.old or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "event_type": self.event_type,
            "new": self.new,
            "old": self.old,
        }


ChangeCallback = Callable[[ChangeEvent], None]


@dataclass
class _Subscription:
    table: str
    callback: ChangeCallback
    event: str = "*"
    filter: Optional[Tuple[str, Any]] = None
    sub_id: int = field(default=0)

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table:
            return False
        if self.event != "*" and change.event_type != self.event:
            return False
        if self.filter is None:
            return True
        column, value = self.filter
        for row in (change.new, change.old):
            if row is not None and row.get(column) == value:
                return True
        return False


class ChangeFeed:
    """In-process fan-out of change events."""

    def __init__(self):
        self._subs: Dict[int, _Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        *,
        event: str = "*",
        filter: Optional[Tuple[str, Any]] = None,
    ) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        if event not in ("*", "INSERT", "UPDATE", "DELETE"):
            raise ValueError(f"Unknown event type: {event!r}")

        with self._lock:
            sub_id = next(self._ids)
            self._subs[sub_id] = _Subscription(
                table=table, callback=callback, event=event, filter=filter, sub_id=sub_id
            )

        def unsubscribe() -> None:
            with self._lock:
                self._subs.pop(sub_id, None)

        return unsubscribe

    def publish(self, change: ChangeEvent) -> int:
        """Deliver ``change`` to matching subscribers. Returns how many were called."""
        with self._lock:
            targets = [s for s in self._subs.values() if s.matches(change)]

        delivered = 0
        for sub in targets:
            try:
                sub.callback(change)
                delivered += 1
            except Exception:
                logger.exception(
                    f"[feed] subscriber {sub.sub_id} failed on {change.event_type} {change.table}"
                )
        return delivered

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)
