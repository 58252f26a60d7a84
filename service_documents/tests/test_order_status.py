"""
Unit tests for the order status state machine and its stock side effect.
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_documents.app.caching.cache_manager import CacheManager
from service_documents.app.domain.orders import (
    ORDER_UPDATED_EVENT,
    STOCK_FLAG,
    OrderStatus,
    OrderStatusService,
    line_quantity,
)
from shared.errors import InvalidArgumentError, NotFoundError, UnavailableError
from shared.test_helpers import InMemoryDocumentStore, TestDataFactory


FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def product_stock(store, refid):
    for product in store.documents("utiles", "products"):
        if product["refid"] == refid:
            return product["stock"]
    raise KeyError(refid)


class FailingIncrementStore(InMemoryDocumentStore):
    """Store whose increment fails for one product."""

    def __init__(self, failing_refid):
        super().__init__()
        self.failing_refid = failing_refid
        self.increments = []

    async def increment(self, database, collection, filter, field, amount):
        self.increments.append((filter["refid"], amount))
        if filter["refid"] == self.failing_refid:
            raise UnavailableError()
        return await super().increment(database, collection, filter, field, amount)


class TestLineQuantity:
    """Test cases for line_quantity."""

    def test_numeric_and_string(self):
        assert line_quantity({"quantity": 3}) == 3
        assert line_quantity({"quantity": "2"}) == 2
        assert line_quantity({"quantity": 1.5}) == 1.5

    def test_unparsable_counts_as_zero(self):
        assert line_quantity({}) == 0
        assert line_quantity({"quantity": "many"}) == 0
        assert line_quantity({"quantity": "nan"}) == 0


class TestOrderStatusService:
    """Test cases for OrderStatusService."""

    @pytest.fixture
    def store(self):
        store = InMemoryDocumentStore()
        store.seed("utiles", "products", TestDataFactory.create_products())
        return store

    @pytest.fixture
    def cache(self):
        return CacheManager(300)

    @pytest.fixture
    def events(self):
        return MagicMock()

    @pytest.fixture
    def service(self, store, cache, events):
        return OrderStatusService(store, cache, events, now=lambda: FIXED_NOW)

    @pytest.fixture
    def order_id(self, store):
        return store.seed("utiles", "orders", [TestDataFactory.create_order()])[0]

    @pytest.mark.asyncio
    async def test_stock_taken_once_and_restored_once(self, service, store, order_id):
        """Test pending -> ready -> shipped -> cancelled moves stock 10 -> 7 -> 7 -> 10."""
        assert product_stock(store, "A") == 10

        order = await service.transition(order_id, "ready")
        assert product_stock(store, "A") == 7
        assert order[STOCK_FLAG] is True

        order = await service.transition(order_id, "shipped")
        assert product_stock(store, "A") == 7
        assert order[STOCK_FLAG] is True

        order = await service.transition(order_id, "cancelled")
        assert product_stock(store, "A") == 10
        assert order[STOCK_FLAG] is False
        assert order["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_repeated_cancel_does_not_restore_twice(self, service, store, order_id):
        await service.transition(order_id, "ready")
        await service.transition(order_id, "cancelled")
        await service.transition(order_id, "cancelled")

        assert product_stock(store, "A") == 10

    @pytest.mark.asyncio
    async def test_cancel_without_taken_stock_is_noop(self, service, store, order_id):
        order = await service.transition(order_id, "cancelled")

        assert product_stock(store, "A") == 10
        assert STOCK_FLAG not in order

    @pytest.mark.asyncio
    async def test_pending_has_no_stock_effect(self, service, store, order_id):
        await service.transition(order_id, "ready")
        order = await service.transition(order_id, "pending")

        assert product_stock(store, "A") == 7
        assert order[STOCK_FLAG] is True

    @pytest.mark.asyncio
    async def test_delivered_with_device(self, service, order_id):
        order = await service.transition(order_id, "delivered", device="tablet-3")

        assert order["status"] == "delivered"
        assert order["deliveredBy"] == "tablet-3"
        assert order["deliveredAt"] == FIXED_NOW.isoformat()
        assert order["updatedAt"] == FIXED_NOW.isoformat()

    @pytest.mark.asyncio
    async def test_delivered_without_device(self, service, order_id):
        order = await service.transition(order_id, "delivered")

        assert "deliveredBy" not in order
        assert "deliveredAt" not in order

    @pytest.mark.asyncio
    async def test_invalid_status(self, service, store, order_id):
        store.calls.clear()

        with pytest.raises(InvalidArgumentError) as exc_info:
            await service.transition(order_id, "lost")

        assert "pending, ready, shipped, delivered, cancelled" in exc_info.value.message
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_invalid_order_id(self, service, store):
        with pytest.raises(InvalidArgumentError) as exc_info:
            await service.transition("12345", "ready")

        assert exc_info.value.message == "Invalid order ID format"
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_order_not_found(self, service):
        with pytest.raises(NotFoundError) as exc_info:
            await service.transition("507f1f77bcf86cd799439011", "ready")

        assert exc_info.value.message == "Order not found"

    @pytest.mark.asyncio
    async def test_lines_without_refid_or_quantity_skipped(self, service, store):
        order_id = store.seed("utiles", "orders", [TestDataFactory.create_order(items=[
            {"refid": "A", "quantity": 2},
            {"quantity": 5},
            {"refid": "B", "quantity": 0},
            {"refid": "C", "quantity": "abc"},
        ])])[0]

        order = await service.transition(order_id, "ready")

        assert product_stock(store, "A") == 8
        assert product_stock(store, "B") == 4
        assert product_stock(store, "C") == 30
        assert order[STOCK_FLAG] is True

    @pytest.mark.asyncio
    async def test_order_without_items_keeps_flag_unset(self, service, store):
        order_id = store.seed("utiles", "orders", [TestDataFactory.create_order(items=[])])[0]

        order = await service.transition(order_id, "ready")

        assert order["status"] == "ready"
        assert STOCK_FLAG not in order

    @pytest.mark.asyncio
    async def test_unknown_product_does_not_fail(self, service, store):
        order_id = store.seed("utiles", "orders", [TestDataFactory.create_order(items=[
            {"refid": "missing", "quantity": 1},
            {"refid": "D", "quantity": 4},
        ])])[0]

        order = await service.transition(order_id, "shipped")

        assert product_stock(store, "D") == 96
        assert order[STOCK_FLAG] is True

    @pytest.mark.asyncio
    async def test_extra_fields_merged_into_update(self, service, order_id):
        order = await service.transition(order_id, "ready", extra_fields={"note": "gift wrap", "_id": "x"})

        assert order["note"] == "gift wrap"
        assert order["_id"] == order_id

    @pytest.mark.asyncio
    async def test_compensates_on_mid_loop_failure(self, cache, events):
        """Test applied increments are reversed and the flag stays unset."""
        store = FailingIncrementStore("B")
        store.seed("utiles", "products", TestDataFactory.create_products())
        order_id = store.seed("utiles", "orders", [TestDataFactory.create_order(items=[
            {"refid": "A", "quantity": 3},
            {"refid": "C", "quantity": 2},
            {"refid": "B", "quantity": 1},
        ])])[0]
        service = OrderStatusService(store, cache, events)

        with pytest.raises(UnavailableError):
            await service.transition(order_id, "ready")

        assert product_stock(store, "A") == 10
        assert product_stock(store, "C") == 30
        assert store.increments == [("A", -3), ("C", -2), ("B", -1), ("C", 2), ("A", 3)]
        order = store.documents("utiles", "orders")[0]
        assert order["status"] == "pending"
        assert STOCK_FLAG not in order
        events.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_client_supplied_flag_is_ignored(self, service, store, order_id):
        """Test a caller cannot reset the flag and make stock be taken twice."""
        await service.transition(order_id, "ready")
        order = await service.transition(order_id, "pending", extra_fields={STOCK_FLAG: False, "note": "hold"})

        assert order[STOCK_FLAG] is True
        assert order["note"] == "hold"

        await service.transition(order_id, "ready")
        assert product_stock(store, "A") == 7

    @pytest.mark.asyncio
    async def test_client_supplied_flag_not_set_without_stock_change(self, service, store, order_id):
        order = await service.transition(order_id, "pending", extra_fields={STOCK_FLAG: True})

        assert STOCK_FLAG not in order

        await service.transition(order_id, "ready")
        assert product_stock(store, "A") == 7

    @pytest.mark.asyncio
    async def test_compensates_when_order_write_fails(self, service, store, events, order_id):
        """Test stock is restored when the status write fails after the decrement."""
        store.fail("update_one")

        with pytest.raises(UnavailableError):
            await service.transition(order_id, "ready")

        assert product_stock(store, "A") == 10
        order = store.documents("utiles", "orders")[0]
        assert order["status"] == "pending"
        assert STOCK_FLAG not in order
        events.publish.assert_not_called()

        store.recover()
        order = await service.transition(order_id, "ready")

        assert product_stock(store, "A") == 7
        assert order[STOCK_FLAG] is True

    @pytest.mark.asyncio
    async def test_restore_reversed_when_order_write_fails(self, service, store, order_id):
        await service.transition(order_id, "ready")
        store.fail("update_one")

        with pytest.raises(UnavailableError):
            await service.transition(order_id, "cancelled")

        assert product_stock(store, "A") == 7
        assert store.documents("utiles", "orders")[0][STOCK_FLAG] is True

    @pytest.mark.asyncio
    async def test_publishes_order_updated(self, service, events, order_id):
        order = await service.transition(order_id, "ready")

        events.publish.assert_called_once_with(ORDER_UPDATED_EVENT, {
            "orderId": order_id,
            "status": "ready",
            "order": order,
        })

    @pytest.mark.asyncio
    async def test_invalidates_orders_and_products_cache(self, service, cache, order_id):
        cache.set("utiles/orders", 1)
        cache.set("utiles/products", 2)
        cache.set("utiles/customers", 3)

        await service.transition(order_id, "ready")

        assert cache.stats()["keys"] == ["utiles/customers"]

    @pytest.mark.asyncio
    async def test_products_cache_kept_without_stock_change(self, service, cache, order_id):
        cache.set("utiles/products", 2)

        await service.transition(order_id, "pending")

        assert cache.get("utiles/products") == 2

    @pytest.mark.asyncio
    async def test_handle_stock_on_status_change_flagged(self, service, store):
        result = await service.handle_stock_on_status_change(
            {"items": [{"refid": "A", "quantity": 1}], STOCK_FLAG: True},
            OrderStatus.DELIVERED,
        )

        assert result is None
        assert product_stock(store, "A") == 10

    @pytest.mark.asyncio
    async def test_handle_stock_on_status_change_reports_applied(self, service, store):
        result = await service.handle_stock_on_status_change(
            {"items": [{"refid": "A", "quantity": 2}, {"refid": "C", "quantity": 1}]},
            OrderStatus.READY,
        )

        assert result.flag is True
        assert [(a.refid, a.amount) for a in result.applied] == [("A", -2), ("C", -1)]
        assert product_stock(store, "A") == 8
