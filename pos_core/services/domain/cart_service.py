"""
Cart Domain Service.

Pure computation of cart lines and totals. No I/O and no dependencies: the
stock level used for validation is the one carried by the Product handed in.

Every operation validates first and mutates last. A rejected call leaves the
cart exactly as it was.
"""

from decimal import Decimal

from pos_core.models import Cart, CartItem, LineKey, Modifier, Product, line_key
from shared.config.constants import Limits
from shared.config.logging import get_logger
from shared.config.settings import settings
from shared.utils.exceptions import (
    DiscountExceedsSubtotalError,
    DiscountNegativeError,
    InsufficientStockError,
    InvalidQuantityError,
    NotFoundError,
)
from shared.utils.money import ZERO, to_decimal

logger = get_logger(__name__)


def validate_quantity(quantity: int, max_val: int = Limits.MAX_QUANTITY) -> int:
    """Reject non-positive, non-integer or absurd quantities."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0 or quantity > max_val:
        raise InvalidQuantityError(quantity)
    return quantity


class CartService:
    """
    Cart engine for one session.

    tax_rate and service_charge_rate are fixed at construction. They default to
    the configured rates but are never read from global state afterwards.
    """

    def __init__(
        self,
        tax_rate: Decimal | None = None,
        service_charge_rate: Decimal | None = None,
    ):
        self._cart = Cart(
            tax_rate=to_decimal(settings.tax_rate if tax_rate is None else tax_rate),
            service_charge_rate=to_decimal(
                settings.service_charge_rate if service_charge_rate is None else service_charge_rate
            ),
        )

    @property
    def cart(self) -> Cart:
        return self._cart

    def add_item(
        self,
        product: Product,
        quantity: int = 1,
        modifiers: list[Modifier] | None = None,
        notes: str | None = None,
    ) -> CartItem:
        """
        Add a line, merging into an identical line when one exists.

        The combined quantity is checked against stock before anything changes.
        """
        validate_quantity(quantity)
        modifiers = list(modifiers or [])
        key = line_key(product.id, modifiers)
        existing = self._cart.find(key)

        candidate = quantity + (existing.quantity if existing else 0)
        if candidate > product.current_stock:
            raise InsufficientStockError(product.id, available=product.current_stock, requested=candidate)

        if existing:
            line = existing.model_copy(update={"quantity": candidate, "product": product})
            items = [line if item.key == key else item for item in self._cart.items]
        else:
            line = CartItem(product=product, quantity=quantity, modifiers=modifiers, notes=notes)
            items = [*self._cart.items, line]

        self._replace_items(items)
        logger.debug("Cart line added", product_id=product.id, quantity=line.quantity)
        return line

    def remove_item(self, product_id: str, modifier_key: str | None = None) -> None:
        """
        Remove a line by product id and serialized modifier set.

        Without a modifier_key every line for the product is removed.
        """
        items = [
            item for item in self._cart.items
            if not (item.product.id == product_id and (modifier_key is None or item.key[1] == modifier_key))
        ]
        if len(items) == len(self._cart.items):
            raise NotFoundError("Cart line", product_id)
        self._replace_items(items)

    def update_quantity(self, key: LineKey, quantity: int) -> CartItem | None:
        """Set a line's quantity. Zero or less removes the line."""
        existing = self._cart.find(key)
        if existing is None:
            raise NotFoundError("Cart line", key[0])

        if quantity <= 0:
            self.remove_item(*key)
            return None

        validate_quantity(quantity)
        if quantity > existing.product.current_stock:
            raise InsufficientStockError(
                existing.product.id,
                available=existing.product.current_stock,
                requested=quantity,
            )

        line = existing.model_copy(update={"quantity": quantity})
        self._replace_items([line if item.key == key else item for item in self._cart.items])
        return line

    def apply_discount(self, amount: Decimal | int | str) -> None:
        amount = to_decimal(amount)
        if amount < ZERO:
            raise DiscountNegativeError(amount)
        subtotal = self._cart.subtotal
        if amount > subtotal:
            raise DiscountExceedsSubtotalError(amount, limit=subtotal)
        self._cart = self._cart.model_copy(update={"discount": amount})

    def set_customer(self, customer_id: str | None) -> None:
        self._cart = self._cart.model_copy(update={"customer_id": customer_id})

    def set_special_requests(self, requests: str | None) -> None:
        self._cart = self._cart.model_copy(update={"special_requests": requests})

    def clear(self) -> None:
        self._cart = Cart(
            tax_rate=self._cart.tax_rate,
            service_charge_rate=self._cart.service_charge_rate,
        )

    def total_items(self) -> int:
        return self._cart.total_items

    def _replace_items(self, items: list[CartItem]) -> None:
        """
        Swap in a new line list in one assignment.

        A discount larger than the new subtotal is clamped down so the
        discount never exceeds the subtotal.
        """
        updated = self._cart.model_copy(update={"items": items})
        if updated.discount > updated.subtotal:
            logger.info("Discount clamped to new subtotal", discount=updated.discount, subtotal=updated.subtotal)
            updated = updated.model_copy(update={"discount": updated.subtotal})
        self._cart = updated
