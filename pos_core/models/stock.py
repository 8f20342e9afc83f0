"""
Stock ledger models.

A StockMovement is append-only. Quantity and reason are checked by the stock
service, so an invalid movement can still be built and then rejected with a
domain error.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from pos_core.models.order import utcnow

MovementTypeLiteral = Literal["increase", "decrease", "sale", "waste", "transfer_in", "transfer_out", "return"]
StockLevelLiteral = Literal["out", "low", "normal"]


class StockMovement(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str | None = None
    product_id: str
    type: MovementTypeLiteral
    quantity: int
    reason: str = ""
    branch_id: str | None = None
    reference_id: str | None = None
    notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class StockLevel(BaseModel):
    product_id: str
    current_stock: int
    min_stock: int
    status: StockLevelLiteral
