"""
Domain models (pydantic).
"""

from pos_core.models.audit import AuditRecord
from pos_core.models.cart import Cart, CartItem, CartTotals, LineKey, Modifier, line_key
from pos_core.models.catalog import Product, RestaurantTable
from pos_core.models.context import SessionContext, can_access, system_context
from pos_core.models.order import Order, OrderItem
from pos_core.models.payment import Payment, PaymentBreakdown, PaymentRequest
from pos_core.models.stock import StockLevel, StockMovement

__all__ = [
    "AuditRecord",
    "Cart",
    "CartItem",
    "CartTotals",
    "LineKey",
    "Modifier",
    "line_key",
    "Product",
    "RestaurantTable",
    "SessionContext",
    "can_access",
    "system_context",
    "Order",
    "OrderItem",
    "Payment",
    "PaymentBreakdown",
    "PaymentRequest",
    "StockLevel",
    "StockMovement",
]
