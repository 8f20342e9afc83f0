"""
Catalog models: products and restaurant tables.
"""

from decimal import Decimal
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

TableStatusLiteral = Literal["available", "occupied", "reserved", "cleaning"]


class Product(BaseModel):
    """
    Product as read by the cart and the stock validator.

    current_stock is derived from the stock ledger. A Product handed to the cart
    carries the level known at read time.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    unit_price: Decimal = Field(ge=0, validation_alias=AliasChoices("unit_price", "price"))
    cost: Decimal = Decimal("0")
    current_stock: int = Field(default=0, validation_alias=AliasChoices("current_stock", "stock"))
    min_stock: int = 0
    barcode: str | None = None
    sku: str | None = None
    category_id: str | None = None
    branch_id: str | None = None
    is_active: bool = True


class RestaurantTable(BaseModel):
    """A table on the floor plan."""

    model_config = ConfigDict(extra="ignore")

    id: str
    table_no: str = ""
    capacity: int = 0
    status: TableStatusLiteral = "available"
    branch_id: str | None = None
    location: str | None = None
