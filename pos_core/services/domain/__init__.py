"""
Domain Services.

Each service owns the rules of one part of the order lifecycle and talks to the
outside world only through the collaborators in pos_core.ports.

Usage:
    from pos_core.services.domain import OrderService

    orders = OrderService(store, stock, tables, activity_log, locks)
    order = await orders.transition(ctx, order_id, "confirmed")
"""

from .cart_service import CartService
from .stock_service import StockService
from .table_service import TableService
from .order_service import OrderService
from .kitchen_service import KitchenService
from .payment_service import PaymentService

__all__ = [
    "CartService",
    "StockService",
    "TableService",
    "OrderService",
    "KitchenService",
    "PaymentService",
]
