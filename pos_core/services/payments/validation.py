"""
Payment pre-submit validation.

Runs before any payment record exists. Charges are always positive; negative
records only come from refunds. Returns every violation found so the
terminal can show them all at once.
"""

from decimal import Decimal

from pos_core.models import PaymentRequest
from shared.config.constants import PAYMENT_METHOD_RULES, PaymentMethodRule
from shared.utils.money import ZERO, format_currency


def method_rule(method: str | None) -> PaymentMethodRule | None:
    return PAYMENT_METHOD_RULES.get(method or "")


def validate_payment_request(request: PaymentRequest) -> list[str]:
    errors: list[str] = []

    if not request.order_id:
        errors.append("Order ID is required")
    if request.amount <= ZERO:
        errors.append("Payment amount must be greater than 0")
    if request.tip < ZERO:
        errors.append("Tips cannot be negative")

    if not request.method:
        errors.append("Payment method is required")
        return errors

    rule = method_rule(request.method)
    if rule is None:
        errors.append(f"Unsupported payment method '{request.method}'")
        return errors

    if rule.requires_reference and not (request.reference_id or "").strip():
        errors.append(f"{request.method.capitalize()} payment requires a reference")
    if not rule.allows_tips and request.tip > ZERO:
        errors.append(f"Tips are not allowed for {request.method} payments")
    if request.amount > rule.max_amount:
        errors.append(f"Maximum {request.method} payment is {format_currency(rule.max_amount)}")

    return errors


def calculate_change(amount_paid: Decimal, amount_due: Decimal) -> Decimal:
    """Cash change owed to the customer. Never negative."""
    return max(ZERO, amount_paid - amount_due)
