"""
Order status transitions and their inventory side effect.

Moving an order into ready/shipped/delivered takes its line quantities out of
product stock; cancelling puts them back. The persisted ``stockDescontado``
flag makes both directions idempotent: stock is taken at most once and
returned at most once, however many transitions are requested.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from shared.errors import InvalidArgumentError, NotFoundError
from shared.logging import get_logger
from ..caching.cache_manager import CacheManager
from .documents import IDENTITY_FIELD, namespace, utcnow
from .validation import require_object_id, sanitize_document

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..adapters.mongo_store import MongoDocumentStore
    from ..events.admin_channel import AdminEventChannel
    from shared.metrics import MetricsCollector


STOCK_FLAG = "stockDescontado"
STOCK_FIELD = "stock"
ORDER_UPDATED_EVENT = "order:updated"


class OrderStatus(str, Enum):
    """Order lifecycle states."""
    PENDING = "pending"
    READY = "ready"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


VALID_STATUSES = [status.value for status in OrderStatus]

# Statuses in which the order's stock must already be taken
STOCK_HELD_STATUSES = frozenset({OrderStatus.READY, OrderStatus.SHIPPED, OrderStatus.DELIVERED})


@dataclass
class StockAdjustment:
    """One applied per-product increment, kept so it can be reversed."""
    refid: str
    amount: float


@dataclass
class StockChange:
    """Flag value to persist with the status, plus the increments behind it."""
    flag: bool
    applied: List[StockAdjustment] = field(default_factory=list)


def line_quantity(item: Dict[str, Any]) -> float:
    """Quantity of a line item as a number; anything unparsable counts as zero."""
    try:
        quantity = float(item.get("quantity") or 0)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(quantity):
        return 0
    return int(quantity) if quantity.is_integer() else quantity


class OrderStatusService:
    """Applies order status transitions with their stock side effect."""

    def __init__(
        self,
        store: "MongoDocumentStore",
        cache: CacheManager,
        events: Optional["AdminEventChannel"] = None,
        *,
        database: str = "utiles",
        orders_collection: str = "orders",
        products_collection: str = "products",
        metrics: Optional["MetricsCollector"] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.cache = cache
        self.events = events
        self.database = database
        self.orders_collection = orders_collection
        self.products_collection = products_collection
        self.metrics = metrics
        self.logger = get_logger("documents.orders")
        self._now = now

    def is_orders_collection(self, database: str, collection: str) -> bool:
        return database == self.database and collection == self.orders_collection

    async def transition(
        self,
        order_id: str,
        status: str,
        *,
        device: Optional[str] = None,
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Move an order to ``status`` and return the updated order document.

        Raises:
            InvalidArgumentError: unknown status or malformed order id.
            NotFoundError: no order with that id.
        """
        if status not in VALID_STATUSES:
            raise InvalidArgumentError(
                f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}",
                details={"status": status, "allowed": VALID_STATUSES},
            )
        oid = require_object_id(order_id, "Invalid order ID format")
        new_status = OrderStatus(status)

        current = await self.store.find_one(self.database, self.orders_collection, {IDENTITY_FIELD: oid})
        if current is None:
            raise NotFoundError("Order not found", details={"id": order_id})

        stock_change = await self.handle_stock_on_status_change(current, new_status)
        stock_update = {STOCK_FLAG: stock_change.flag} if stock_change else None

        timestamp = self._now()
        fields: Dict[str, Any] = {}
        if extra_fields:
            fields.update(sanitize_document(extra_fields))
            fields.pop(IDENTITY_FIELD, None)
            # Only the stock protocol below may write the flag
            fields.pop(STOCK_FLAG, None)
        fields["status"] = new_status.value
        fields["updatedAt"] = timestamp
        if new_status is OrderStatus.DELIVERED and device:
            fields["deliveredBy"] = device
            fields["deliveredAt"] = timestamp
        if stock_update:
            fields.update(stock_update)

        try:
            order = await self.store.update_one(self.database, self.orders_collection, {IDENTITY_FIELD: oid}, fields)
        except Exception:
            if stock_change:
                await self._compensate(current, stock_change.applied)
            raise
        if order is None:
            if stock_change:
                await self._compensate(current, stock_change.applied)
            raise NotFoundError("Order not found", details={"id": order_id})

        self.cache.invalidate_pattern(namespace(self.database, self.orders_collection))
        if stock_update:
            self.cache.invalidate_pattern(namespace(self.database, self.products_collection))

        if self.metrics:
            self.metrics.increment_counter("order_transitions_total", status=new_status.value)

        self.logger.info(
            "Order status updated",
            order_id=order_id,
            previous_status=current.get("status"),
            status=new_status.value,
            stock_update=stock_update,
        )

        if self.events:
            self.events.publish(ORDER_UPDATED_EVENT, {
                "orderId": order_id,
                "status": new_status.value,
                "order": order,
            })

        return order

    async def handle_stock_on_status_change(
        self,
        order: Dict[str, Any],
        new_status: OrderStatus,
    ) -> Optional[StockChange]:
        """Apply the stock effect of moving ``order`` to ``new_status``.

        Returns the flag to persist with the status and the increments applied,
        or None when stock was left untouched. The caller reverses ``applied``
        if the order write then fails.
        """
        if new_status in STOCK_HELD_STATUSES:
            if order.get(STOCK_FLAG) is True:
                return None
            applied = await self._adjust_stock(order, sign=-1)
            if applied is None:
                return None
            return StockChange(flag=True, applied=applied)

        if new_status is OrderStatus.CANCELLED:
            if order.get(STOCK_FLAG) is not True:
                return None
            applied = await self._adjust_stock(order, sign=1)
            if applied is None:
                return None
            return StockChange(flag=False, applied=applied)

        return None

    async def _adjust_stock(self, order: Dict[str, Any], sign: int) -> Optional[List[StockAdjustment]]:
        """Increment each product's stock by ``sign * quantity``.

        Returns the applied increments, or None for an order without items.
        If any item fails, the increments already applied are reversed and the
        original error is raised; the order's flag is then left unchanged.
        """
        items = order.get("items") or []
        if not items:
            return None

        applied: List[StockAdjustment] = []
        try:
            for item in items:
                refid = item.get("refid") if isinstance(item, dict) else None
                quantity = line_quantity(item) if isinstance(item, dict) else 0
                if not refid or quantity <= 0:
                    continue

                amount = sign * quantity
                matched = await self.store.increment(
                    self.database,
                    self.products_collection,
                    {"refid": refid},
                    STOCK_FIELD,
                    amount,
                )
                applied.append(StockAdjustment(refid=refid, amount=amount))
                if not matched:
                    self.logger.warning("No product for order line", order_id=order.get(IDENTITY_FIELD), refid=refid)
        except Exception:
            await self._compensate(order, applied)
            raise

        if self.metrics:
            self.metrics.increment_counter("stock_adjustments_total", direction="decrement" if sign < 0 else "restore")
        return applied

    async def _compensate(self, order: Dict[str, Any], applied: List[StockAdjustment]) -> None:
        """Reverse already-applied increments, newest first."""
        if not applied:
            return
        self.logger.warning(
            "Stock adjustment failed mid-order; compensating",
            order_id=order.get(IDENTITY_FIELD),
            applied=len(applied),
        )
        for adjustment in reversed(applied):
            try:
                await self.store.increment(
                    self.database,
                    self.products_collection,
                    {"refid": adjustment.refid},
                    STOCK_FIELD,
                    -adjustment.amount,
                )
            except Exception as exc:
                # Left for manual reconciliation; the log line names what is still off
                self.logger.error(
                    "Stock compensation failed",
                    order_id=order.get(IDENTITY_FIELD),
                    refid=adjustment.refid,
                    amount=-adjustment.amount,
                    error=str(exc),
                )
