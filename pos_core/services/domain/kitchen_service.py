"""
Kitchen Domain Service.

Builds the kitchen queue from non-terminal orders and drives the kitchen's
order actions. Sorting and urgency are pure functions of the orders and the
current time. Urgency is display-only: it never changes the queue order and is
never stored.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from pos_core.models import Order, SessionContext
from pos_core.models.order import utcnow
from pos_core.realtime.types import ChangeEvent, ChangeKind
from pos_core.services.domain.order_service import OrderService
from shared.config.constants import (
    CONFIRMED_ESCALATION_MINUTES,
    KITCHEN_STATUS_PRIORITY,
    PENDING_ESCALATION_MINUTES,
    PREPARING_ESCALATION_MINUTES,
    Collections,
    OrderItemStatus,
    OrderStatus,
    Urgency,
)
from shared.config.logging import kitchen_logger as logger
from shared.utils.money import ZERO


class OrderSummary(BaseModel):
    item_count: int
    line_count: int
    subtotal: Decimal


def minutes_elapsed(since: datetime, now: datetime | None = None) -> int:
    """Whole minutes between since and now, floored."""
    now = now or utcnow()
    return max(0, int((now - since).total_seconds() // 60))


def sort_queue(orders: list[Order]) -> list[Order]:
    """Status priority first, then oldest first within a status."""
    visible = [o for o in orders if o.status in KITCHEN_STATUS_PRIORITY]
    return sorted(visible, key=lambda o: (KITCHEN_STATUS_PRIORITY[o.status], o.created_at))


def urgency(order: Order, now: datetime | None = None) -> str:
    elapsed = minutes_elapsed(order.created_at, now)
    if order.status == OrderStatus.READY:
        return Urgency.HIGH
    if order.status == OrderStatus.PREPARING and elapsed > PREPARING_ESCALATION_MINUTES:
        return Urgency.HIGH
    if order.status == OrderStatus.CONFIRMED and elapsed > CONFIRMED_ESCALATION_MINUTES:
        return Urgency.MEDIUM
    if order.status == OrderStatus.PENDING and elapsed > PENDING_ESCALATION_MINUTES:
        return Urgency.HIGH
    return Urgency.LOW


def group_by_status(orders: list[Order]) -> dict[str, list[Order]]:
    """Kitchen columns. Every kitchen status is present, possibly empty."""
    grouped: dict[str, list[Order]] = {status: [] for status in OrderStatus.KITCHEN_VISIBLE}
    for order in orders:
        if order.status in grouped:
            grouped[order.status].append(order)
    return grouped


def order_summary(order: Order) -> OrderSummary:
    return OrderSummary(
        item_count=sum(item.quantity for item in order.items),
        line_count=len(order.items),
        subtotal=sum((item.subtotal for item in order.items), ZERO),
    )


def preparation_time(order: Order, now: datetime | None = None) -> str | None:
    """
    Elapsed label since the order last changed, e.g. "12m" or "1h 5m".

    Pending orders have not started and get None.
    """
    if order.status == OrderStatus.PENDING:
        return None
    minutes = minutes_elapsed(order.updated_at or order.created_at, now)
    if minutes < 60:
        return f"{minutes}m"
    return f"{minutes // 60}h {minutes % 60}m"


class KitchenService:
    """Kitchen display operations."""

    def __init__(self, orders: OrderService):
        self._orders = orders

    async def queue(self, branch_id: str) -> list[Order]:
        orders = await self._orders.list_orders(branch_id, status=list(OrderStatus.KITCHEN_VISIBLE))
        return sort_queue(orders)

    async def start_preparation(self, ctx: SessionContext, order_id: str) -> Order:
        return await self._orders.transition(ctx, order_id, OrderStatus.PREPARING)

    async def mark_ready(self, ctx: SessionContext, order_id: str) -> Order:
        return await self._orders.transition(ctx, order_id, OrderStatus.READY)

    async def resume_auto_ready(self, branch_id: str) -> list[Order]:
        """
        Re-run the auto-ready rule for preparing orders whose items are all ready.

        Used on reconciliation: an item event whose rule run failed, or that was
        never delivered, must not leave its order stuck in preparing.
        """
        advanced = []
        for order in await self._orders.list_orders(branch_id, status=OrderStatus.PREPARING):
            if not order.all_items_ready:
                continue
            result = await self._orders.evaluate_auto_ready(order.id)
            if result is not None:
                logger.info("Order advanced to ready on reconciliation", order_id=order.id)
                advanced.append(result)
        return advanced

    async def on_item_status_changed(self, event: ChangeEvent) -> Order | None:
        """
        Run the auto-ready rule for the order of a changed item.

        Only an item that is now ready can complete an order, so other changes
        are ignored.
        """
        if event.entity_type != Collections.ORDER_ITEMS or event.change_kind != ChangeKind.UPDATE:
            return None
        if event.get("status") != OrderItemStatus.READY:
            return None

        order_id = event.get("order_id")
        if not order_id:
            return None

        order = await self._orders.evaluate_auto_ready(str(order_id))
        if order is not None:
            logger.info("Order auto-advanced to ready", order_id=order.id)
        return order
