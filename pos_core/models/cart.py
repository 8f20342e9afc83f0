"""
Cart models.

The cart is ephemeral and owned by the active session. Line subtotals and cart
totals are computed fields: they are derived from the current items on every
read and are never cached across a mutation.
"""

import json
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, computed_field

from pos_core.models.catalog import Product
from shared.utils.money import ZERO, money

LineKey = tuple[str, str]


class Modifier(BaseModel):
    """A priced option on a line, e.g. extra cheese +1.50."""

    model_config = ConfigDict(frozen=True)

    name: str
    price: Decimal = Decimal("0")


def serialize_modifiers(modifiers: list[Modifier]) -> str:
    """Order-preserving serialization used as the second half of a line key."""
    return json.dumps([[m.name, str(money(m.price))] for m in modifiers], separators=(",", ":"))


def line_key(product_id: str, modifiers: list[Modifier]) -> LineKey:
    return (product_id, serialize_modifiers(modifiers))


class CartItem(BaseModel):
    """One cart line."""

    product: Product
    quantity: int
    modifiers: list[Modifier] = Field(default_factory=list)
    notes: str | None = None

    @property
    def key(self) -> LineKey:
        return line_key(self.product.id, self.modifiers)

    @property
    def modifier_total(self) -> Decimal:
        return sum((m.price for m in self.modifiers), ZERO)

    @computed_field
    @property
    def subtotal(self) -> Decimal:
        return (self.product.unit_price + self.modifier_total) * self.quantity


class CartTotals(BaseModel):
    """Rounded totals for display."""

    subtotal: Decimal
    tax: Decimal
    service_charge: Decimal
    discount: Decimal
    total: Decimal
    item_count: int


class Cart(BaseModel):
    """Pre-commit line item collection."""

    items: list[CartItem] = Field(default_factory=list)
    customer_id: str | None = None
    discount: Decimal = Decimal("0")
    special_requests: str | None = None
    tax_rate: Decimal
    service_charge_rate: Decimal

    @computed_field
    @property
    def subtotal(self) -> Decimal:
        return sum((item.subtotal for item in self.items), ZERO)

    @computed_field
    @property
    def tax(self) -> Decimal:
        return self.subtotal * self.tax_rate

    @computed_field
    @property
    def service_charge(self) -> Decimal:
        return self.subtotal * self.service_charge_rate

    @computed_field
    @property
    def total(self) -> Decimal:
        return self.subtotal + self.tax + self.service_charge - self.discount

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self.items)

    def find(self, key: LineKey) -> CartItem | None:
        for item in self.items:
            if item.key == key:
                return item
        return None

    def summary(self) -> CartTotals:
        return CartTotals(
            subtotal=money(self.subtotal),
            tax=money(self.tax),
            service_charge=money(self.service_charge),
            discount=money(self.discount),
            total=money(self.total),
            item_count=self.total_items,
        )
