"""
Tests for realtime order updates.
"""

import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect

from weshop.db import MemoryDatabase
from weshop.realtime import OrderEventHub

from conftest import SERVICE_KEY


def _order(database, user_id="u1"):
    return asyncio.run(database.insert("orders", {
        "order_number": "ORD-1",
        "user_id": user_id,
        "status": "placed",
        "total": 100,
        "items": [],
    }))


def _drain(listener):
    messages = []
    while not listener.queue.empty():
        messages.append(listener.queue.get_nowait())
    return messages


class TestOrderEventHub:

    def test_routes_messages(self):
        database = MemoryDatabase()
        hub = OrderEventHub()

        async def scenario():
            hub.start(database)
            staff = hub.add_listener(None, staff=True)
            owner = hub.add_listener("u1", staff=False)
            other = hub.add_listener("u2", staff=False)

            row = await database.insert("orders", {"order_number": "ORD-7", "user_id": "u1", "status": "placed"})
            await database.update_by_id("orders", row["id"], {"status": "shipped"})
            await asyncio.sleep(0)
            return _drain(staff), _drain(owner), _drain(other)

        staff, owner, other = asyncio.run(scenario())
        hub.stop()

        assert [m["message"] for m in staff] == [
            "New order #ORD-7 received!",
            "Order #ORD-7 status updated to shipped",
        ]
        assert owner[-1]["message"] == "Your order #ORD-7 status updated to shipped"
        assert owner[0]["message"] is None
        assert other == []

    def test_customization_changes_go_to_staff(self):
        database = MemoryDatabase()
        hub = OrderEventHub()

        async def scenario():
            hub.start(database)
            staff = hub.add_listener(None, staff=True)
            customer = hub.add_listener("u1", staff=False)
            await database.insert("customization_requests", {"product_name": "Tote", "user_id": "u1"})
            await asyncio.sleep(0)
            return _drain(staff), _drain(customer)

        staff, customer = asyncio.run(scenario())
        hub.stop()
        assert staff[0]["type"] == "customization"
        assert customer == []

    def test_stop_unsubscribes(self):
        database = MemoryDatabase()
        hub = OrderEventHub()
        hub.start(database)
        hub.stop()
        assert database.feed.subscriber_count == 0

    def test_attach_is_idempotent(self):
        database = MemoryDatabase()
        hub = OrderEventHub()
        hub.attach(database)
        hub.attach(database)
        assert database.feed.subscriber_count == 2
        hub.stop()

    def test_poll_detects_changes(self):
        database = MemoryDatabase()
        hub = OrderEventHub()
        hub.start(database)

        async def scenario():
            staff = hub.add_listener(None, staff=True)
            first = await hub.poll_once()
            unchanged = await hub.poll_once()
            await database.insert("orders", {"order_number": "ORD-9", "status": "placed"})
            changed = await hub.poll_once()
            await asyncio.sleep(0)
            return first, unchanged, changed, _drain(staff)

        first, unchanged, changed, messages = asyncio.run(scenario())
        hub.stop()
        assert (first, unchanged, changed) == (False, False, True)
        assert messages[-1] == {"type": "refresh", "table": "orders"}

    def test_reassigned_order_keeps_owners_apart(self):
        database = MemoryDatabase()
        hub = OrderEventHub()

        async def scenario():
            hub.start(database)
            previous = hub.add_listener("u1", staff=False)
            current = hub.add_listener("u2", staff=False)
            row = await database.insert("orders", {"order_number": "ORD-3", "user_id": "u1", "status": "placed"})
            _drain(previous)
            await database.update_by_id("orders", row["id"], {"user_id": "u2", "shipping_address": "12 MG Road"})
            await asyncio.sleep(0)
            return _drain(previous), _drain(current)

        previous, current = asyncio.run(scenario())
        hub.stop()

        assert len(previous) == 1
        assert previous[0]["event"] == "DELETE"
        assert previous[0]["order"]["user_id"] == "u1"
        assert "shipping_address" not in previous[0]["order"]
        assert current[0]["order"]["shipping_address"] == "12 MG Road"

    def test_aclose_waits_for_polling(self):
        database = MemoryDatabase()
        hub = OrderEventHub()

        async def scenario():
            hub.start(database)
            task = hub.start_polling(interval=60)
            await asyncio.sleep(0)
            await hub.aclose()
            return task

        task = asyncio.run(scenario())
        assert task.done() and task.cancelled()
        assert database.feed.subscriber_count == 0


class TestOrderWebSocket:

    def test_staff_receives_order_events(self, client, database):
        with client.websocket_connect(f"/ws/orders?token={SERVICE_KEY}") as ws:
            assert ws.receive_json() == {"type": "subscribed", "staff": True}
            _order(database)
            message = ws.receive_json()
            assert message["type"] == "order"
            assert message["event"] == "INSERT"
            assert message["message"] == "New order #ORD-1 received!"

    def test_customer_receives_own_updates(self, client, database, customer):
        row = _order(database, user_id=customer["id"])
        with client.websocket_connect(f"/ws/orders?token={customer['token']}") as ws:
            assert ws.receive_json() == {"type": "subscribed", "staff": False}
            asyncio.run(database.update_by_id("orders", row["id"], {"status": "packed"}))
            message = ws.receive_json()
            assert message["order"]["id"] == row["id"]
            assert message["message"] == "Your order #ORD-1 status updated to packed"

    def test_invalid_token_closed(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws/orders?token=ws_bogus") as ws:
                ws.receive_json()
        assert exc.value.code == 4401
