"""
Realtime order updates.

OrderEventHub turns change-feed events on ``orders`` and
``customization_requests`` into messages for connected listeners:
- staff listeners get every order and customization event;
- customers get events on their own orders only.

A polling loop supplements the feed: when the orders fingerprint (row count
and latest update) changes, staff listeners get a ``refresh`` message.
"""

import asyncio
import itertools
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from .db import Database, Query
from .errors import DatabaseError
from .feed import ChangeEvent
from .orders import new_order_message, status_message
from .settings import settings


logger = logging.getLogger(__name__)


class Listener:
    """One connected client. Messages are queued on the client's event loop."""

    def __init__(self, listener_id: int, user_id: Optional[str], staff: bool):
        self.id = listener_id
        self.user_id = user_id
        self.staff = staff
        self.loop = asyncio.get_running_loop()
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()

    def push(self, message: Dict[str, Any]) -> None:
        # Feed callbacks may run on another thread or loop
        self.loop.call_soon_threadsafe(self.queue.put_nowait, message)


def _status_change(event: ChangeEvent) -> Optional[str]:
    """New status when an UPDATE changed it, else None."""
    if event.event_type != "UPDATE" or event.new is None:
        return None
    old_status = (event.old or {}).get("status")
    new_status = event.new.get("status")
    return new_status if new_status != old_status else None


class OrderEventHub:
    def __init__(self):
        self._listeners: Dict[int, Listener] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()
        self._unsubscribes: List[Callable[[], None]] = []
        self._database: Optional[Database] = None
        self._fingerprint: Optional[Tuple[int, Any]] = None
        self._poll_task: Optional["asyncio.Task[None]"] = None

    # --- Wiring ---

    def start(self, database: Database) -> None:
        """Subscribe to the collaborator's change feed."""
        self.stop()
        self._database = database
        self._fingerprint = None
        self._unsubscribes = [
            database.subscribe("orders", self._on_order_change),
            database.subscribe("customization_requests", self._on_customization_change),
        ]
        logger.info("[realtime] Subscribed to order changes")

    def attach(self, database: Database) -> None:
        """Start on ``database`` unless already subscribed to it."""
        if self._database is not database:
            self.start(database)

    def stop(self) -> None:
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes = []
        self._database = None
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def aclose(self) -> None:
        """Stop, waiting for the polling loop to exit."""
        task = self._poll_task
        self.stop()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("[realtime] Order updates stopped")

    def add_listener(self, user_id: Optional[str], staff: bool) -> Listener:
        with self._lock:
            listener = Listener(next(self._ids), user_id, staff)
            self._listeners[listener.id] = listener
        return listener

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.pop(listener.id, None)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def _deliver(self, message: Dict[str, Any], *, staff: bool = False, user_id: Optional[str] = None) -> int:
        """Push to staff listeners (``staff``) or to one user's listeners (``user_id``)."""
        with self._lock:
            targets = [
                l for l in self._listeners.values()
                if (staff and l.staff) or (user_id is not None and not l.staff and l.user_id == user_id)
            ]
        delivered = 0
        for listener in targets:
            try:
                listener.push(message)
                delivered += 1
            except RuntimeError:
                # Listener's loop is gone
                self.remove_listener(listener)
        return delivered

    # --- Feed callbacks ---

    def _on_order_change(self, event: ChangeEvent) -> None:
        row = event.row
        number = row.get("order_number")
        new_status = _status_change(event)

        staff_message = None
        if event.event_type == "INSERT":
            staff_message = new_order_message(number)
        elif new_status:
            staff_message = status_message(number, new_status)
        self._deliver(
            {"type": "order", "event": event.event_type, "order": row, "message": staff_message},
            staff=True,
        )

        own_message = status_message(number, new_status, own=True) if new_status else None
        new_owner = (event.new or {}).get("user_id")
        old_owner = (event.old or {}).get("user_id")
        if new_owner is not None:
            self._deliver(
                {"type": "order", "event": event.event_type, "order": event.new, "message": own_message},
                user_id=new_owner,
            )
        if old_owner is not None and old_owner != new_owner:
            # The previous owner only sees their own copy leave
            self._deliver(
                {"type": "order", "event": "DELETE", "order": event.old, "message": None},
                user_id=old_owner,
            )

    def _on_customization_change(self, event: ChangeEvent) -> None:
        self._deliver(
            {"type": "customization", "event": event.event_type, "request": event.row, "message": None},
            staff=True,
        )

    # --- Polling fallback ---

    async def poll_once(self) -> bool:
        """Compare the orders fingerprint with the last poll. True if staff were told to refresh."""
        if self._database is None:
            return False
        rows = await self._database.select(Query("orders").order("updated_at"))
        fingerprint = (len(rows), rows[0].get("updated_at") if rows else None)
        changed = self._fingerprint is not None and fingerprint != self._fingerprint
        self._fingerprint = fingerprint
        if changed:
            self._deliver({"type": "refresh", "table": "orders"}, staff=True)
        return changed

    async def run_polling(self, interval: Optional[float] = None) -> None:
        interval = settings.orders_poll_interval if interval is None else interval
        while True:
            try:
                await self.poll_once()
            except DatabaseError as e:
                logger.warning(f"[realtime] Order poll failed: {e.message}")
            await asyncio.sleep(interval)

    def start_polling(self, interval: Optional[float] = None) -> "asyncio.Task[None]":
        if self._poll_task is not None:
            self._poll_task.cancel()
        self._poll_task = asyncio.get_running_loop().create_task(self.run_polling(interval))
        return self._poll_task


# Global hub
_hub: Optional[OrderEventHub] = None


def get_hub() -> OrderEventHub:
    global _hub
    if _hub is None:
        _hub = OrderEventHub()
    return _hub
