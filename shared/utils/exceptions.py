"""
Centralized exceptions for consistent error handling.

Every error belongs to one category that tells the caller how to recover:

- validation: bad input, rejected before any mutation, report to the initiator
- conflict: illegal transition or stale state, refetch and retry
- resource: insufficient stock, limits exceeded, carries concrete values
- external: store/gateway/subscription failure
- forbidden / not_found

Usage:
    from shared.utils.exceptions import InsufficientStockError, InvalidTransitionError

    raise InsufficientStockError(product_id, available=3, requested=5)
    raise InvalidTransitionError("Order", "served", "cancelled", order_id=order.id)
"""

from decimal import Decimal
from typing import Any

from shared.config.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory:
    VALIDATION = "validation"
    CONFLICT = "conflict"
    RESOURCE = "resource"
    EXTERNAL = "external"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"


class AppException(Exception):
    """
    Base exception with automatic logging.

    All custom exceptions should inherit from this class
    to ensure consistent logging and reporting format.
    """

    category: str = ErrorCategory.VALIDATION

    def __init__(
        self,
        detail: str,
        log_level: str = "warning",
        **log_context: Any,
    ):
        self.detail = detail
        self.context = log_context

        log_fn = getattr(logger, log_level, logger.warning)
        log_fn(detail, category=self.category, **log_context)

        super().__init__(detail)


# =============================================================================
# Not Found / Forbidden
# =============================================================================


class NotFoundError(AppException):
    """
    Entity not found.

    Usage:
        raise NotFoundError("Order", order_id)
    """

    category = ErrorCategory.NOT_FOUND

    def __init__(self, entity: str, entity_id: int | str | None = None, **log_context: Any):
        if entity_id is not None:
            detail = f"{entity} with ID {entity_id} not found"
        else:
            detail = f"{entity} not found"

        super().__init__(detail, entity=entity, entity_id=entity_id, **log_context)


class ForbiddenError(AppException):
    """
    Authorization/permission error.

    Usage:
        raise ForbiddenError("orders.update", role="kitchen")
    """

    category = ErrorCategory.FORBIDDEN

    def __init__(self, permission: str | None = None, **log_context: Any):
        if permission:
            detail = f"Not authorized for {permission}"
        else:
            detail = "Access denied"

        super().__init__(detail, permission=permission, **log_context)


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(AppException):
    """
    Input validation error.

    Usage:
        raise ValidationError("Reason is required", field="reason")
    """

    category = ErrorCategory.VALIDATION

    def __init__(self, detail: str, **log_context: Any):
        super().__init__(detail, **log_context)


class InvalidQuantityError(ValidationError):
    """Quantity must be a positive integer."""

    def __init__(self, quantity: Any, **log_context: Any):
        self.quantity = quantity
        super().__init__(f"Quantity must be greater than 0 (got {quantity})", quantity=quantity, **log_context)


class DiscountNegativeError(ValidationError):
    """Discount cannot be negative."""

    def __init__(self, amount: Decimal, **log_context: Any):
        self.amount = amount
        super().__init__("Discount cannot be negative", amount=amount, **log_context)


class PaymentValidationError(ValidationError):
    """Payment submission violates a method rule or basic requirement."""

    def __init__(self, errors: list[str], **log_context: Any):
        self.errors = errors
        super().__init__("Invalid payment: " + "; ".join(errors), errors=errors, **log_context)


# =============================================================================
# Conflict Errors
# =============================================================================


class ConflictError(AppException):
    """
    State conflict. Recover by refetching authoritative state and retrying.

    Usage:
        raise ConflictError("Order already has a pending local change")
    """

    category = ErrorCategory.CONFLICT

    def __init__(self, detail: str, **log_context: Any):
        super().__init__(detail, **log_context)


class InvalidTransitionError(ConflictError):
    """Invalid status transition."""

    def __init__(self, entity: str, from_status: str, to_status: str, **log_context: Any):
        self.from_status = from_status
        self.to_status = to_status
        detail = f"Invalid transition from '{from_status}' to '{to_status}' for {entity}"
        super().__init__(detail, entity=entity, from_status=from_status, to_status=to_status, **log_context)


class StaleStateError(ConflictError):
    """The store moved on since the local state was read."""

    def __init__(self, entity: str, entity_id: str, expected: str, actual: str, **log_context: Any):
        self.expected = expected
        self.actual = actual
        detail = f"{entity} {entity_id} changed concurrently (expected '{expected}', found '{actual}')"
        super().__init__(detail, entity=entity, entity_id=entity_id, expected=expected, actual=actual, **log_context)


class TentativeStateConflictError(ConflictError):
    """A second unreconciled local change for the same entity."""

    def __init__(self, entity_type: str, entity_id: str, **log_context: Any):
        detail = f"{entity_type} {entity_id} already has an unreconciled local change"
        super().__init__(detail, entity_type=entity_type, entity_id=entity_id, **log_context)


# =============================================================================
# Resource Errors
# =============================================================================


class ResourceError(AppException):
    """A limit or availability check failed. Always carries concrete values."""

    category = ErrorCategory.RESOURCE

    def __init__(self, detail: str, **log_context: Any):
        super().__init__(detail, **log_context)


class InsufficientStockError(ResourceError):
    """Not enough stock for the requested quantity."""

    def __init__(self, product_id: str, available: int, requested: int, **log_context: Any):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        detail = f"Insufficient stock. Available: {available}, Requested: {requested}"
        super().__init__(detail, product_id=product_id, available=available, requested=requested, **log_context)


class DiscountExceedsSubtotalError(ResourceError):
    """Discount larger than the cart subtotal."""

    def __init__(self, amount: Decimal, limit: Decimal, **log_context: Any):
        self.amount = amount
        self.limit = limit
        super().__init__(
            f"Discount cannot exceed subtotal ({amount} > {limit})",
            amount=amount,
            limit=limit,
            **log_context,
        )


class RefundExceedsPaymentError(ResourceError):
    """Refund larger than what remains refundable on the original charge."""

    def __init__(self, payment_id: str, requested: Decimal, refundable: Decimal, **log_context: Any):
        self.requested = requested
        self.refundable = refundable
        super().__init__(
            f"Refund of {requested} exceeds refundable amount {refundable}",
            payment_id=payment_id,
            requested=requested,
            refundable=refundable,
            **log_context,
        )


# =============================================================================
# External Failures
# =============================================================================


class ExternalFailure(AppException):
    """External collaborator error (store, gateway, subscription)."""

    category = ErrorCategory.EXTERNAL

    def __init__(self, service: str, detail: str | None = None, **log_context: Any):
        self.service = service
        super().__init__(
            detail or f"Error communicating with {service}",
            log_level="error",
            service=service,
            **log_context,
        )


class StoreError(ExternalFailure):
    """The transactional store returned an error."""

    def __init__(self, operation: str, collection: str, error: Any, **log_context: Any):
        self.operation = operation
        self.collection = collection
        super().__init__(
            "store",
            f"Store {operation} on '{collection}' failed: {error}",
            operation=operation,
            collection=collection,
            **log_context,
        )


class PaymentGatewayError(ExternalFailure):
    """The payment gateway call failed or timed out. The record is already failed."""

    def __init__(self, payment_id: str, reason: str, **log_context: Any):
        self.payment_id = payment_id
        self.reason = reason
        super().__init__(
            "payment_gateway",
            f"Payment {payment_id} failed: {reason}",
            payment_id=payment_id,
            reason=reason,
            **log_context,
        )


class SubscriptionTimeoutError(ExternalFailure):
    """Subscription establishment exceeded its bounded wait."""

    def __init__(self, channel: str, timeout: float, **log_context: Any):
        self.channel = channel
        super().__init__(
            "change_stream",
            f"Subscription to {channel} not established within {timeout}s",
            channel=channel,
            timeout=timeout,
            **log_context,
        )
