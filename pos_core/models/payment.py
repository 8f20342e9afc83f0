"""
Payment models.

Amounts are signed: positive charges, negative refunds. A refund is its own
record referencing the original charge through refund_of.
"""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from pos_core.models.order import utcnow
from shared.utils.money import ZERO

PaymentStatusLiteral = Literal["pending", "completed", "failed"]


class Payment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    order_id: str
    amount: Decimal
    method: str
    status: PaymentStatusLiteral = "pending"
    tip: Decimal = ZERO
    reference_id: str | None = None
    transaction_id: str | None = None
    refund_of: str | None = None
    branch_id: str | None = None
    staff_id: str | None = None
    failure_reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_refund(self) -> bool:
        return self.amount < 0


class PaymentRequest(BaseModel):
    """A charge submitted by a terminal."""

    order_id: str
    amount: Decimal
    method: str | None
    reference_id: str | None = None
    tip: Decimal = ZERO


class PaymentBreakdown(BaseModel):
    successful: int = 0
    pending: int = 0
    failed: int = 0
    total_paid: Decimal = ZERO
    total_pending: Decimal = ZERO
    by_method: dict[str, Decimal] = Field(default_factory=dict)
