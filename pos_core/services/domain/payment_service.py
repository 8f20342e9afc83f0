"""
Payment Domain Service.

Payment records move pending → completed | failed, and both end states are
final. A refund is a separate record with a negative amount and its own
lifecycle; the original charge is never rewritten.

Once a pending record exists, the gateway call runs inside settle(), which
resolves the record to exactly completed or failed on every exit path:
success, gateway error, timeout, open circuit breaker, or task cancellation.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Callable

from pos_core.models import Order, Payment, PaymentBreakdown, PaymentRequest, SessionContext
from pos_core.models.order import utcnow
from pos_core.ports import PaymentGateway, TransactionalStore, unwrap
from pos_core.services.audit import ActivityLog
from pos_core.services.domain.order_service import OrderService
from pos_core.services.payments.circuit_breaker import CircuitBreaker, gateway_breaker
from pos_core.services.payments.validation import validate_payment_request
from pos_core.services.permissions import require_access
from shared.config.constants import Collections, OrderPaymentStatus, OrderStatus, PaymentStatus
from shared.config.logging import mask_reference, payments_logger as logger
from shared.config.settings import settings
from shared.infrastructure.correlation import operation_scope
from shared.infrastructure.locks import EntityLockManager
from shared.utils.exceptions import (
    NotFoundError,
    PaymentGatewayError,
    PaymentValidationError,
    RefundExceedsPaymentError,
    ValidationError,
)
from shared.utils.money import ZERO, format_currency, to_decimal

if TYPE_CHECKING:
    from pos_core.services.peripherals import PeripheralHub


def payment_breakdown(payments: list[Payment]) -> PaymentBreakdown:
    """Counts per status, totals, and completed amount per method."""
    breakdown = PaymentBreakdown()
    for payment in payments:
        if payment.status == PaymentStatus.COMPLETED:
            breakdown.successful += 1
            breakdown.total_paid += payment.amount
            breakdown.by_method[payment.method] = breakdown.by_method.get(payment.method, ZERO) + payment.amount
        elif payment.status == PaymentStatus.PENDING:
            breakdown.pending += 1
            breakdown.total_pending += payment.amount
        else:
            breakdown.failed += 1
    return breakdown


def order_payment_status(order_total: Decimal, payments: list[Payment]) -> str:
    """Aggregate payment status of an order from its completed records."""
    completed = [p for p in payments if p.status == PaymentStatus.COMPLETED]
    charged = sum((p.amount for p in completed if not p.is_refund), ZERO)
    refunded = -sum((p.amount for p in completed if p.is_refund), ZERO)
    net = charged - refunded

    if refunded > ZERO and net <= ZERO:
        return OrderPaymentStatus.REFUNDED
    if net >= order_total and net > ZERO:
        return OrderPaymentStatus.PAID
    if net > ZERO:
        return OrderPaymentStatus.PARTIAL
    return OrderPaymentStatus.UNPAID


@dataclass
class Settlement:
    """Filled in by the code inside settle()."""

    transaction_id: str | None = None
    payment: Payment | None = None


class PaymentService:
    """
    Charges, refunds and the order's aggregate payment status.

    The gateway is guarded by a circuit breaker: while it is open, charges fail
    fast and their records end failed.
    """

    def __init__(
        self,
        store: TransactionalStore,
        orders: OrderService,
        gateway: PaymentGateway,
        activity_log: ActivityLog,
        locks: EntityLockManager,
        peripherals: "PeripheralHub | None" = None,
        breaker: CircuitBreaker | None = None,
        timeout: float | None = None,
    ):
        self._store = store
        self._orders = orders
        self._gateway = gateway
        self._activity_log = activity_log
        self._locks = locks
        self._peripherals = peripherals
        self._breaker = breaker or gateway_breaker()
        self._timeout = timeout if timeout is not None else settings.payment_timeout_seconds

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_payment(self, payment_id: str) -> Payment:
        result = await self._store.get(Collections.PAYMENTS, payment_id)
        row = unwrap(result, "get", Collections.PAYMENTS, payment_id=payment_id)
        if not row:
            raise NotFoundError("Payment", payment_id)
        return Payment.model_validate(row)

    async def list_payments(self, order_id: str) -> list[Payment]:
        result = await self._store.select(
            Collections.PAYMENTS,
            filters={"order_id": order_id},
            order_by="created_at",
        )
        rows = unwrap(result, "select", Collections.PAYMENTS, order_id=order_id)
        return [Payment.model_validate(row) for row in rows or []]

    # =========================================================================
    # Charges
    # =========================================================================

    async def process_payment(self, ctx: SessionContext, request: PaymentRequest) -> Payment:
        """
        Validate, record as pending, charge through the gateway, resolve.

        Raises:
            PaymentValidationError: a rule was violated; no record was created
            PaymentGatewayError: the charge failed; the record is failed
        """
        require_access(ctx, "payments", "create")
        errors = validate_payment_request(request)
        if errors:
            raise PaymentValidationError(errors, order_id=request.order_id, method=request.method)

        with operation_scope():
            order = await self._orders.get_order(request.order_id)
            if order.status == OrderStatus.CANCELLED:
                raise ValidationError("Cannot take payment for a cancelled order", order_id=order.id)

            payment = await self._insert_pending(
                ctx,
                order_id=order.id,
                amount=request.amount,
                method=request.method,
                tip=request.tip,
                reference_id=request.reference_id,
            )

            try:
                async with self.settle(payment) as settlement:
                    settlement.transaction_id = await self._call_gateway(lambda: self._gateway.charge(payment))
            except PaymentGatewayError:
                await self._activity_log.log_action(
                    ctx,
                    action="payment_failed",
                    resource_type="payment",
                    resource_id=payment.id,
                    order_id=order.id,
                    amount=payment.amount,
                    method=payment.method,
                )
                raise

            completed = settlement.payment
            await self._activity_log.log_action(
                ctx,
                action="payment_processed",
                resource_type="payment",
                resource_id=completed.id,
                order_id=order.id,
                amount=completed.amount,
                method=completed.method,
                tip=completed.tip,
            )
            logger.info(
                "Payment completed",
                payment_id=completed.id,
                order_id=order.id,
                amount=format_currency(completed.amount),
                method=completed.method,
                reference=mask_reference(completed.reference_id),
            )

            order = await self._after_settlement(ctx, order.id)
            if self._peripherals is not None:
                await self._peripherals.on_payment_completed(order, completed)
            return completed

    # =========================================================================
    # Refunds
    # =========================================================================

    async def refund(
        self,
        ctx: SessionContext,
        payment_id: str,
        amount: Decimal | str | int,
        reason: str | None = None,
    ) -> Payment:
        """
        Refund part or all of a completed charge as a new negative record.

        Raises:
            ValidationError: the original is not a completed charge, or amount <= 0
            RefundExceedsPaymentError: amount exceeds what remains refundable
            PaymentGatewayError: the refund failed; its record is failed
        """
        require_access(ctx, "payments", "create")
        amount = to_decimal(amount)
        if amount <= ZERO:
            raise PaymentValidationError(["Refund amount must be greater than 0"], payment_id=payment_id)

        with operation_scope():
            async with self._locks.hold(Collections.PAYMENTS, payment_id):
                original = await self.get_payment(payment_id)
                if original.is_refund or original.status != PaymentStatus.COMPLETED:
                    raise ValidationError(
                        "Only a completed charge can be refunded",
                        payment_id=payment_id,
                        status=original.status,
                    )

                refundable = original.amount - await self._refunded_amount(original)
                if amount > refundable:
                    raise RefundExceedsPaymentError(payment_id, requested=amount, refundable=refundable)

                refund = await self._insert_pending(
                    ctx,
                    order_id=original.order_id,
                    amount=-amount,
                    method=original.method,
                    reference_id=f"refund_{original.reference_id}",
                    refund_of=original.id,
                )
                async with self.settle(refund) as settlement:
                    settlement.transaction_id = await self._call_gateway(lambda: self._gateway.refund(refund, original))

            completed = settlement.payment
            await self._activity_log.log_action(
                ctx,
                action="payment_refunded",
                resource_type="payment",
                resource_id=completed.id,
                refund_of=original.id,
                amount=amount,
                reason=reason,
            )
            logger.info("Refund completed", refund_id=completed.id, refund_of=original.id, amount=format_currency(amount))
            await self._after_settlement(ctx, original.order_id)
            return completed

    async def _refunded_amount(self, original: Payment) -> Decimal:
        result = await self._store.select(
            Collections.PAYMENTS,
            filters={"refund_of": original.id, "status": PaymentStatus.COMPLETED},
        )
        rows = unwrap(result, "select", Collections.PAYMENTS, refund_of=original.id) or []
        return -sum((to_decimal(row["amount"]) for row in rows), ZERO)

    # =========================================================================
    # Settlement
    # =========================================================================

    @asynccontextmanager
    async def settle(self, payment: Payment) -> AsyncIterator[Settlement]:
        """
        Resolve a pending record on every exit path.

        Usage:
            async with payments.settle(payment) as settlement:
                settlement.transaction_id = await gateway.charge(payment)
            settlement.payment  # completed record

        A body that raises marks the record failed and raises
        PaymentGatewayError. Cancellation marks it failed and re-raises.
        """
        settlement = Settlement()
        try:
            yield settlement
        except asyncio.CancelledError:
            await asyncio.shield(self._resolve(payment, PaymentStatus.FAILED, failure_reason="cancelled"))
            raise
        except asyncio.TimeoutError:
            await self._resolve(payment, PaymentStatus.FAILED, failure_reason="timeout")
            raise PaymentGatewayError(payment.id, f"gateway timed out after {self._timeout}s") from None
        except Exception as e:
            await self._resolve(payment, PaymentStatus.FAILED, failure_reason=str(e))
            raise PaymentGatewayError(payment.id, str(e)) from e
        else:
            settlement.payment = await self._resolve(
                payment,
                PaymentStatus.COMPLETED,
                transaction_id=settlement.transaction_id,
            )

    async def _call_gateway(self, call: Callable[[], Awaitable[str]]) -> str:
        async with self._breaker.call():
            return await asyncio.wait_for(call(), timeout=self._timeout)

    async def _insert_pending(
        self,
        ctx: SessionContext,
        *,
        order_id: str,
        amount: Decimal,
        method: str,
        tip: Decimal = ZERO,
        reference_id: str | None = None,
        refund_of: str | None = None,
    ) -> Payment:
        now = utcnow().isoformat()
        result = await self._store.insert(
            Collections.PAYMENTS,
            {
                "order_id": order_id,
                "amount": str(amount),
                "method": method,
                "status": PaymentStatus.PENDING,
                "tip": str(tip),
                "reference_id": reference_id,
                "refund_of": refund_of,
                "branch_id": ctx.branch_id,
                "staff_id": ctx.actor_id,
                "created_at": now,
                "updated_at": now,
            },
        )
        row = unwrap(result, "insert", Collections.PAYMENTS, order_id=order_id)
        return Payment.model_validate(row)

    async def _resolve(
        self,
        payment: Payment,
        status: str,
        transaction_id: str | None = None,
        failure_reason: str | None = None,
    ) -> Payment:
        changes = {"status": status, "updated_at": utcnow().isoformat()}
        if transaction_id is not None:
            changes["transaction_id"] = transaction_id
        if failure_reason is not None:
            changes["failure_reason"] = failure_reason

        result = await self._store.update(Collections.PAYMENTS, payment.id, changes)
        row = unwrap(result, "update", Collections.PAYMENTS, payment_id=payment.id, status=status)
        if status == PaymentStatus.FAILED:
            logger.warning("Payment failed", payment_id=payment.id, order_id=payment.order_id, reason=failure_reason)
        return Payment.model_validate(row)

    async def _after_settlement(self, ctx: SessionContext, order_id: str) -> Order:
        """Recompute the order's payment status; complete a fully paid served order."""
        payments = await self.list_payments(order_id)
        order = await self._orders.get_order(order_id)
        status = order_payment_status(order.total, payments)
        order = await self._orders.set_payment_status(order_id, status)

        if status == OrderPaymentStatus.PAID and order.status == OrderStatus.SERVED:
            order = await self._orders.transition(ctx, order_id, OrderStatus.COMPLETED, expected_status=OrderStatus.SERVED)
        return order
