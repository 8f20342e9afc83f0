"""
Curated user-facing notifications.

Only a fixed set of transitions notify. Every rule returns at most one
Notification per event. Silent (bulk/internal) events never notify.
"""

from typing import Callable

from pos_core.realtime.types import ChangeEvent, ChangeKind, Notification, Severity
from shared.config.constants import Collections, MovementType, OrderItemStatus, OrderStatus, PaymentStatus
from shared.utils.money import format_currency

ORDER_STATUS_MESSAGES: dict[str, str] = {
    OrderStatus.CONFIRMED: "Order confirmed",
    OrderStatus.PREPARING: "Order started preparing",
    OrderStatus.READY: "Order ready for serving",
    OrderStatus.SERVED: "Order served",
    OrderStatus.COMPLETED: "Order completed",
    OrderStatus.CANCELLED: "Order cancelled",
}

TABLE_STATUS_MESSAGES: dict[str, str] = {
    "occupied": "Table occupied",
    "available": "Table available",
    "reserved": "Table reserved",
    "cleaning": "Table cleaning",
}


def short_id(entity_id: str) -> str:
    return entity_id[-6:]


def _order(event: ChangeEvent, stock_level: int | None) -> Notification | None:
    if event.change_kind == ChangeKind.INSERT:
        if event.get("status") == OrderStatus.PENDING:
            return Notification(
                kind="order_created",
                title=f"New order #{short_id(event.entity_id)} received",
                entity_type=event.entity_type,
                entity_id=event.entity_id,
            )
        return None

    if event.change_kind == ChangeKind.UPDATE and event.field_changed("status"):
        status = event.get("status")
        message = ORDER_STATUS_MESSAGES.get(status)
        if message:
            return Notification(
                kind=f"order_{status}",
                title=f"{message} #{short_id(event.entity_id)}",
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                severity=Severity.WARNING if status == OrderStatus.CANCELLED else Severity.INFO,
            )
    return None


def _order_item(event: ChangeEvent, stock_level: int | None) -> Notification | None:
    if (
        event.change_kind == ChangeKind.UPDATE
        and event.get("status") == OrderItemStatus.READY
        and event.field_changed("status")
    ):
        return Notification(
            kind="item_ready",
            title=f"Item ready: {event.get('product_name') or 'Item'}",
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            severity=Severity.SUCCESS,
        )
    return None


def _payment(event: ChangeEvent, stock_level: int | None) -> Notification | None:
    if event.change_kind == ChangeKind.DELETE or not event.field_changed("status"):
        return None

    status = event.get("status")
    amount = format_currency(event.get("amount"))
    if status == PaymentStatus.COMPLETED:
        return Notification(
            kind="payment_completed",
            title=f"Payment received: {amount}",
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            severity=Severity.SUCCESS,
        )
    if status == PaymentStatus.FAILED:
        return Notification(
            kind="payment_failed",
            title=f"Payment failed: {amount}",
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            severity=Severity.ERROR,
        )
    return None


def _table(event: ChangeEvent, stock_level: int | None) -> Notification | None:
    if event.change_kind != ChangeKind.UPDATE or not event.field_changed("status"):
        return None
    message = TABLE_STATUS_MESSAGES.get(event.get("status"))
    if not message:
        return None
    return Notification(
        kind="table_status_changed",
        title=f"{message} #{event.get('table_no', short_id(event.entity_id))}",
        entity_type=event.entity_type,
        entity_id=event.entity_id,
    )


def _stock_movement(event: ChangeEvent, stock_level: int | None) -> Notification | None:
    if event.change_kind != ChangeKind.INSERT or event.get("type") not in MovementType.DECREASING:
        return None
    if stock_level is None or stock_level > 0:
        return None
    product = event.get("product_name") or event.get("product_id")
    return Notification(
        kind="stock_depleted",
        title=f"{product} is out of stock!",
        entity_type=Collections.PRODUCTS,
        entity_id=str(event.get("product_id")),
        severity=Severity.WARNING,
    )


NotificationRule = Callable[[ChangeEvent, int | None], Notification | None]

NOTIFICATION_RULES: dict[str, NotificationRule] = {
    Collections.ORDERS: _order,
    Collections.ORDER_ITEMS: _order_item,
    Collections.PAYMENTS: _payment,
    Collections.RESTAURANT_TABLES: _table,
    Collections.STOCK_MOVEMENTS: _stock_movement,
}


def build_notification(event: ChangeEvent, stock_level: int | None = None) -> Notification | None:
    """
    The notification for one event, if any.

    stock_level is the product's recomputed level after a stock movement. It is
    only consulted for stock_movements events.
    """
    if event.is_silent:
        return None
    rule = NOTIFICATION_RULES.get(event.entity_type)
    if rule is None:
        return None
    return rule(event, stock_level)
