"""
Tests for the cart engine: line merging, stock checks, totals and discounts.
"""

from decimal import Decimal

import pytest

from pos_core.models import Modifier, Product, line_key
from pos_core.services.domain import CartService
from shared.utils.exceptions import (
    DiscountExceedsSubtotalError,
    DiscountNegativeError,
    InsufficientStockError,
    InvalidQuantityError,
    NotFoundError,
)


def make_product(product_id: str = "p1", price: str = "10.00", stock: int = 10) -> Product:
    return Product(id=product_id, name=f"Product {product_id}", unit_price=Decimal(price), current_stock=stock)


CHEESE = Modifier(name="Extra cheese", price=Decimal("1.50"))


class TestCartTotals:
    """Tests for computed cart totals."""

    def test_single_line_with_modifier(self, cart):
        """Price, modifier, tax and service charge add up to the expected total."""
        cart.add_item(make_product(), 2, modifiers=[CHEESE])

        totals = cart.cart.summary()

        assert totals.subtotal == Decimal("23.00")
        assert totals.tax == Decimal("1.84")
        assert totals.service_charge == Decimal("2.30")
        assert totals.discount == Decimal("0.00")
        assert totals.total == Decimal("27.14")
        assert totals.item_count == 2

    def test_totals_follow_every_mutation(self, cart):
        """Totals are recomputed from the current lines, never cached."""
        product = make_product()
        cart.add_item(product, 1)
        assert cart.cart.subtotal == Decimal("10.00")

        cart.update_quantity(line_key(product.id, []), 3)
        assert cart.cart.subtotal == Decimal("30.00")

        cart.remove_item(product.id)
        assert cart.cart.subtotal == Decimal("0")
        assert cart.cart.summary().total == Decimal("0.00")

    def test_rates_fixed_at_construction(self):
        """A cart built with explicit rates uses them."""
        cart = CartService(tax_rate=Decimal("0"), service_charge_rate=Decimal("0"))
        cart.add_item(make_product(price="4.99"), 3)

        assert cart.cart.summary().total == Decimal("14.97")

    def test_unrounded_until_presented(self, cart):
        """Full precision is kept internally, rounding happens in summary()."""
        cart.add_item(make_product(price="0.333"), 3)

        assert cart.cart.subtotal == Decimal("0.999")
        assert cart.cart.summary().subtotal == Decimal("1.00")


class TestCartLines:
    """Tests for adding, merging and removing lines."""

    def test_identical_lines_merge(self, cart):
        """Same product and same modifiers collapse into one line."""
        product = make_product()
        cart.add_item(product, 1, modifiers=[CHEESE])
        cart.add_item(product, 2, modifiers=[CHEESE])

        assert len(cart.cart.items) == 1
        assert cart.cart.items[0].quantity == 3

    def test_equal_modifier_prices_merge(self, cart):
        """Modifier prices that differ only in trailing zeros are the same line."""
        product = make_product()
        cart.add_item(product, 1, modifiers=[Modifier(name="Extra cheese", price=Decimal("1.5"))])
        cart.add_item(product, 1, modifiers=[Modifier(name="Extra cheese", price=Decimal("1.50"))])

        assert len(cart.cart.items) == 1
        assert cart.cart.items[0].quantity == 2
        assert line_key("p1", [Modifier(name="x", price=Decimal("2"))]) == line_key("p1", [Modifier(name="x", price=Decimal("2.00"))])

    def test_different_modifiers_stay_separate(self, cart):
        """A different modifier set is a different line."""
        product = make_product()
        cart.add_item(product, 1)
        cart.add_item(product, 1, modifiers=[CHEESE])

        assert len(cart.cart.items) == 2
        assert cart.total_items() == 2

    def test_merge_checks_combined_quantity(self, cart):
        """The merged quantity is checked against stock and the cart is left unchanged."""
        product = make_product(stock=3)
        cart.add_item(product, 2)

        with pytest.raises(InsufficientStockError) as exc_info:
            cart.add_item(product, 2)

        assert exc_info.value.available == 3
        assert exc_info.value.requested == 4
        assert cart.cart.items[0].quantity == 2

    @pytest.mark.parametrize("quantity", [0, -1, 1000, 1.5, True])
    def test_invalid_quantity_rejected(self, cart, quantity):
        """Non-positive, fractional, boolean or absurd quantities are rejected."""
        with pytest.raises(InvalidQuantityError):
            cart.add_item(make_product(), quantity)
        assert cart.cart.items == []

    def test_update_quantity_to_zero_removes(self, cart):
        product = make_product()
        cart.add_item(product, 2)

        result = cart.update_quantity(line_key(product.id, []), 0)

        assert result is None
        assert cart.cart.items == []

    def test_update_quantity_over_stock_rejected(self, cart):
        product = make_product(stock=5)
        cart.add_item(product, 2)

        with pytest.raises(InsufficientStockError):
            cart.update_quantity(line_key(product.id, []), 6)
        assert cart.cart.items[0].quantity == 2

    def test_remove_by_modifier_key(self, cart):
        """Only the line with the matching modifier key is removed."""
        product = make_product()
        cart.add_item(product, 1)
        line = cart.add_item(product, 1, modifiers=[CHEESE])

        cart.remove_item(product.id, line.key[1])

        assert len(cart.cart.items) == 1
        assert cart.cart.items[0].modifiers == []

    def test_remove_missing_line(self, cart):
        with pytest.raises(NotFoundError):
            cart.remove_item("nope")

    def test_clear_keeps_rates(self, cart):
        cart.add_item(make_product(), 1)
        cart.set_customer("cust-1")
        cart.clear()

        assert cart.cart.items == []
        assert cart.cart.customer_id is None
        assert cart.cart.tax_rate == Decimal("0.08")


class TestCartDiscount:
    """Tests for discount bounds."""

    def test_negative_discount_rejected(self, cart):
        cart.add_item(make_product(), 1)
        with pytest.raises(DiscountNegativeError):
            cart.apply_discount("-1")

    def test_discount_above_subtotal_rejected(self, cart):
        """The error carries the attempted amount and the limit."""
        cart.add_item(make_product(), 1)

        with pytest.raises(DiscountExceedsSubtotalError) as exc_info:
            cart.apply_discount("10.01")

        assert exc_info.value.limit == Decimal("10.00")
        assert cart.cart.discount == Decimal("0")

    def test_discount_reduces_total(self, cart):
        cart.add_item(make_product(), 1)
        cart.apply_discount("2.00")

        totals = cart.cart.summary()
        assert totals.discount == Decimal("2.00")
        assert totals.total == Decimal("9.80")

    def test_discount_clamped_when_lines_removed(self, cart):
        """Removing lines clamps the discount down to the new subtotal."""
        burger = make_product("p1", price="10.00")
        fries = make_product("p2", price="3.00")
        cart.add_item(burger, 1)
        cart.add_item(fries, 1)
        cart.apply_discount("12.00")

        cart.remove_item("p1")

        assert cart.cart.discount == Decimal("3.00")
        assert cart.cart.total >= Decimal("0")
