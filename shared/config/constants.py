"""
Centralized constants for the order core.

Usage:
    from shared.config.constants import OrderStatus, ORDER_TRANSITIONS

    if to_status in ORDER_TRANSITIONS[order.status]:
        ...
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Final


# =============================================================================
# User Roles
# =============================================================================


class Roles:
    """User role constants."""

    OWNER: Final[str] = "owner"
    MANAGER: Final[str] = "manager"
    CASHIER: Final[str] = "cashier"
    KITCHEN: Final[str] = "kitchen"
    WAITSTAFF: Final[str] = "waitstaff"

    ALL: Final[list[str]] = [OWNER, MANAGER, CASHIER, KITCHEN, WAITSTAFF]


# Allowed "resource.action" pairs per role. The owner is unrestricted.
ROLE_PERMISSIONS: Final[dict[str, frozenset[str]]] = {
    Roles.MANAGER: frozenset({
        "products.create", "products.read", "products.update",
        "orders.create", "orders.read", "orders.update",
        "customers.create", "customers.read", "customers.update",
        "reports.read", "tables.read", "tables.update",
        "users.read", "users.update", "payments.create", "payments.read",
        "stock_movements.create", "stock_movements.read",
    }),
    Roles.CASHIER: frozenset({
        "orders.create", "orders.read", "orders.update",
        "customers.read", "customers.create",
        "payments.create", "payments.read",
        "products.read", "tables.read", "tables.update",
    }),
    Roles.KITCHEN: frozenset({
        "orders.read", "orders.update",
        "products.read",
        "stock_movements.create", "stock_movements.read",
    }),
    Roles.WAITSTAFF: frozenset({
        "orders.create", "orders.read", "orders.update",
        "tables.read", "tables.update",
        "customers.read", "customers.create",
        "payments.create", "payments.read",
        "products.read",
    }),
}


# =============================================================================
# Entity Status Constants
# =============================================================================


class OrderStatus:
    """Order status constants."""

    PENDING: Final[str] = "pending"
    CONFIRMED: Final[str] = "confirmed"
    PREPARING: Final[str] = "preparing"
    READY: Final[str] = "ready"
    SERVED: Final[str] = "served"
    COMPLETED: Final[str] = "completed"
    CANCELLED: Final[str] = "cancelled"

    ALL: Final[list[str]] = [PENDING, CONFIRMED, PREPARING, READY, SERVED, COMPLETED, CANCELLED]
    # Orders the kitchen still has to act on
    KITCHEN_VISIBLE: Final[list[str]] = [PENDING, CONFIRMED, PREPARING, READY]
    TERMINAL: Final[list[str]] = [COMPLETED, CANCELLED]


class OrderItemStatus:
    """Order item status constants. Independent of the order status."""

    PENDING: Final[str] = "pending"
    PREPARING: Final[str] = "preparing"
    READY: Final[str] = "ready"

    ALL: Final[list[str]] = [PENDING, PREPARING, READY]


class OrderType:
    """Order type constants."""

    DINE_IN: Final[str] = "dine_in"
    TAKEAWAY: Final[str] = "takeaway"
    DELIVERY: Final[str] = "delivery"

    ALL: Final[list[str]] = [DINE_IN, TAKEAWAY, DELIVERY]


class OrderPaymentStatus:
    """Aggregate payment status stored on the order."""

    UNPAID: Final[str] = "unpaid"
    PARTIAL: Final[str] = "partial"
    PAID: Final[str] = "paid"
    REFUNDED: Final[str] = "refunded"


class PaymentStatus:
    """Payment record status constants."""

    PENDING: Final[str] = "pending"
    COMPLETED: Final[str] = "completed"
    FAILED: Final[str] = "failed"

    TERMINAL: Final[list[str]] = [COMPLETED, FAILED]


class PaymentMethod:
    """Payment method constants."""

    CASH: Final[str] = "cash"
    CARD: Final[str] = "card"
    MOBILE: Final[str] = "mobile"
    CREDIT: Final[str] = "credit"
    VOUCHER: Final[str] = "voucher"

    ALL: Final[list[str]] = [CASH, CARD, MOBILE, CREDIT, VOUCHER]


class TableStatus:
    """Restaurant table status constants."""

    AVAILABLE: Final[str] = "available"
    OCCUPIED: Final[str] = "occupied"
    RESERVED: Final[str] = "reserved"
    CLEANING: Final[str] = "cleaning"

    ALL: Final[list[str]] = [AVAILABLE, OCCUPIED, RESERVED, CLEANING]


class MovementType:
    """Stock movement type constants."""

    INCREASE: Final[str] = "increase"
    DECREASE: Final[str] = "decrease"
    SALE: Final[str] = "sale"
    WASTE: Final[str] = "waste"
    TRANSFER_IN: Final[str] = "transfer_in"
    TRANSFER_OUT: Final[str] = "transfer_out"
    RETURN: Final[str] = "return"

    INCREASING: Final[frozenset[str]] = frozenset({INCREASE, TRANSFER_IN, RETURN})
    DECREASING: Final[frozenset[str]] = frozenset({DECREASE, SALE, WASTE, TRANSFER_OUT})
    ALL: Final[frozenset[str]] = INCREASING | DECREASING


class StockLevel:
    """Derived stock status labels."""

    OUT: Final[str] = "out"
    LOW: Final[str] = "low"
    NORMAL: Final[str] = "normal"


class Urgency:
    """Kitchen urgency labels. Display only, never persisted."""

    HIGH: Final[str] = "high"
    MEDIUM: Final[str] = "medium"
    LOW: Final[str] = "low"


# =============================================================================
# Status Transitions
# =============================================================================

# Valid order status transitions (from -> [allowed to states])
# Flow: pending → confirmed → preparing → ready → served → completed
ORDER_TRANSITIONS: Final[dict[str, list[str]]] = {
    OrderStatus.PENDING: [OrderStatus.CONFIRMED, OrderStatus.CANCELLED],
    OrderStatus.CONFIRMED: [OrderStatus.PREPARING, OrderStatus.CANCELLED],
    OrderStatus.PREPARING: [OrderStatus.READY, OrderStatus.CANCELLED],
    OrderStatus.READY: [OrderStatus.SERVED, OrderStatus.CANCELLED],
    OrderStatus.SERVED: [OrderStatus.COMPLETED],
    OrderStatus.COMPLETED: [],  # Terminal state
    OrderStatus.CANCELLED: [],  # Terminal state
}

# Activity log action per target status
ORDER_TRANSITION_ACTIONS: Final[dict[str, str]] = {
    OrderStatus.CONFIRMED: "order_confirmed",
    OrderStatus.PREPARING: "preparation_started",
    OrderStatus.READY: "order_ready",
    OrderStatus.SERVED: "order_served",
    OrderStatus.COMPLETED: "order_completed",
    OrderStatus.CANCELLED: "order_cancelled",
}


# =============================================================================
# Kitchen Queue
# =============================================================================

KITCHEN_STATUS_PRIORITY: Final[dict[str, int]] = {
    OrderStatus.PENDING: 1,
    OrderStatus.CONFIRMED: 2,
    OrderStatus.PREPARING: 3,
    OrderStatus.READY: 4,
}

# Minutes elapsed since creation before an order escalates
PENDING_ESCALATION_MINUTES: Final[int] = 5
CONFIRMED_ESCALATION_MINUTES: Final[int] = 10
PREPARING_ESCALATION_MINUTES: Final[int] = 20


# =============================================================================
# Payment Method Rules
# =============================================================================


@dataclass(frozen=True, slots=True)
class PaymentMethodRule:
    """Validation rule for one payment method."""

    requires_reference: bool
    allows_tips: bool
    max_amount: Decimal


PAYMENT_METHOD_RULES: Final[dict[str, PaymentMethodRule]] = {
    PaymentMethod.CASH: PaymentMethodRule(False, True, Decimal("10000")),
    PaymentMethod.CARD: PaymentMethodRule(True, True, Decimal("50000")),
    PaymentMethod.MOBILE: PaymentMethodRule(True, True, Decimal("25000")),
    PaymentMethod.CREDIT: PaymentMethodRule(True, False, Decimal("100000")),
    PaymentMethod.VOUCHER: PaymentMethodRule(True, False, Decimal("1000")),
}


# =============================================================================
# Store Collections
# =============================================================================


class Collections:
    """Collection (table) names in the transactional store."""

    PRODUCTS: Final[str] = "products"
    CATEGORIES: Final[str] = "categories"
    CUSTOMERS: Final[str] = "customers"
    ORDERS: Final[str] = "orders"
    ORDER_ITEMS: Final[str] = "order_items"
    PAYMENTS: Final[str] = "payments"
    STOCK_MOVEMENTS: Final[str] = "stock_movements"
    RESTAURANT_TABLES: Final[str] = "restaurant_tables"
    ACTIVITY_LOGS: Final[str] = "activity_logs"


class Limits:
    """Validation limits."""

    MAX_QUANTITY: Final[int] = 999
    MAX_REASON_LENGTH: Final[int] = 500
