"""
Order models.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from pos_core.models.cart import Modifier
from shared.config.constants import OrderItemStatus, OrderStatus
from shared.utils.money import ZERO

OrderStatusLiteral = Literal["pending", "confirmed", "preparing", "ready", "served", "completed", "cancelled"]
OrderItemStatusLiteral = Literal["pending", "preparing", "ready"]
OrderTypeLiteral = Literal["dine_in", "takeaway", "delivery"]
OrderPaymentStatusLiteral = Literal["unpaid", "partial", "paid", "refunded"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderItem(BaseModel):
    """A committed order line. Its status evolves independently of the order."""

    model_config = ConfigDict(extra="ignore")

    id: str
    order_id: str
    product_id: str
    product_name: str = ""
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    modifiers: list[Modifier] = Field(default_factory=list)
    notes: str | None = None
    status: OrderItemStatusLiteral = "pending"
    updated_at: datetime = Field(default_factory=utcnow)


class Order(BaseModel):
    """Committed order progressing through the status lifecycle."""

    model_config = ConfigDict(extra="ignore")

    id: str
    branch_id: str | None = None
    status: OrderStatusLiteral = "pending"
    order_type: OrderTypeLiteral = "dine_in"
    table_id: str | None = None
    customer_id: str | None = None
    staff_id: str | None = None
    items: list[OrderItem] = Field(default_factory=list)
    subtotal: Decimal = ZERO
    tax: Decimal = ZERO
    service_charge: Decimal = ZERO
    discount: Decimal = ZERO
    total: Decimal = ZERO
    payment_status: OrderPaymentStatusLiteral = "unpaid"
    special_requests: str | None = None
    notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in OrderStatus.TERMINAL

    @property
    def all_items_ready(self) -> bool:
        return bool(self.items) and all(item.status == OrderItemStatus.READY for item in self.items)
