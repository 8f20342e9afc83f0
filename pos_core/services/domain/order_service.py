"""
Order Domain Service.

Owns the order status lifecycle:

    pending → confirmed → preparing → ready → served → completed
    {pending, confirmed, preparing, ready} → cancelled

Every transition is checked twice: once against the status the caller acted on,
and again against a fresh read from the store immediately before submission.
If the store moved on in between, StaleStateError is raised and nothing is
written.

Item statuses evolve independently. When an item change leaves every item of a
preparing order ready, the order moves to ready. That rule is evaluated per
item change, never by polling.
"""

import asyncio
from decimal import Decimal

from pos_core.models import Cart, Modifier, Order, OrderItem, Product, SessionContext, StockMovement, system_context
from pos_core.models.order import utcnow
from pos_core.ports import TransactionalStore, unwrap
from pos_core.services.audit import ActivityLog
from pos_core.services.domain.cart_service import validate_quantity
from pos_core.services.domain.stock_service import StockService, group_quantities
from pos_core.services.domain.table_service import TableService
from pos_core.services.permissions import require_access
from shared.config.constants import (
    ORDER_TRANSITION_ACTIONS,
    ORDER_TRANSITIONS,
    Collections,
    MovementType,
    OrderItemStatus,
    OrderStatus,
    OrderType,
    TableStatus,
)
from shared.config.logging import get_logger, orders_logger
from shared.config.settings import settings
from shared.infrastructure.correlation import operation_scope
from shared.infrastructure.locks import EntityLockManager
from shared.utils.exceptions import (
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from shared.utils.money import ZERO, money, to_decimal

logger = get_logger(__name__)


def validate_transition(order_id: str, from_status: str, to_status: str) -> None:
    """Raise InvalidTransitionError unless (from_status, to_status) is an edge."""
    if to_status not in ORDER_TRANSITIONS.get(from_status, []):
        raise InvalidTransitionError("Order", from_status, to_status, order_id=order_id)


class OrderService:
    """
    Domain service for orders and order items.

    Per-order locks serialize local work on one order. Orders never wait on each
    other, and stock adjustments only share a lock with checkouts of the same
    product.
    """

    def __init__(
        self,
        store: TransactionalStore,
        stock: StockService,
        tables: TableService,
        activity_log: ActivityLog,
        locks: EntityLockManager,
        tax_rate: Decimal | None = None,
        service_charge_rate: Decimal | None = None,
    ):
        self._store = store
        self._stock = stock
        self._tables = tables
        self._activity_log = activity_log
        self._locks = locks
        self._tax_rate = to_decimal(settings.tax_rate if tax_rate is None else tax_rate)
        self._service_charge_rate = to_decimal(
            settings.service_charge_rate if service_charge_rate is None else service_charge_rate
        )

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_order(self, order_id: str) -> Order:
        result = await self._store.get(Collections.ORDERS, order_id)
        row = unwrap(result, "get", Collections.ORDERS, order_id=order_id)
        if not row:
            raise NotFoundError("Order", order_id)
        items = await self._load_items([order_id])
        return Order.model_validate({**row, "items": items.get(order_id, [])})

    async def list_orders(self, branch_id: str, status: str | list[str] | None = None) -> list[Order]:
        """Orders of a branch, oldest first, optionally filtered by status."""
        filters: dict = {"branch_id": branch_id}
        if status is not None:
            filters["status"] = status
        result = await self._store.select(Collections.ORDERS, filters=filters, order_by="created_at")
        rows = unwrap(result, "select", Collections.ORDERS, branch_id=branch_id) or []
        if not rows:
            return []

        items = await self._load_items([str(row["id"]) for row in rows])
        return [Order.model_validate({**row, "items": items.get(str(row["id"]), [])}) for row in rows]

    async def get_item(self, item_id: str) -> OrderItem:
        result = await self._store.get(Collections.ORDER_ITEMS, item_id)
        row = unwrap(result, "get", Collections.ORDER_ITEMS, item_id=item_id)
        if not row:
            raise NotFoundError("Order item", item_id)
        return OrderItem.model_validate(row)

    async def _load_items(self, order_ids: list[str]) -> dict[str, list[dict]]:
        result = await self._store.select(
            Collections.ORDER_ITEMS,
            filters={"order_id": order_ids},
            order_by="created_at",
        )
        rows = unwrap(result, "select", Collections.ORDER_ITEMS) or []
        grouped: dict[str, list[dict]] = {}
        for row in rows:
            grouped.setdefault(str(row["order_id"]), []).append(row)
        return grouped

    # =========================================================================
    # Status transitions
    # =========================================================================

    async def transition(
        self,
        ctx: SessionContext,
        order_id: str,
        to_status: str,
        notes: str | None = None,
        expected_status: str | None = None,
    ) -> Order:
        """
        Move an order to a new status.

        expected_status is the status the caller's view showed when the action
        was taken. Without it the current store state is used.

        Raises:
            ForbiddenError: role may not update orders
            InvalidTransitionError: (from, to) is not an edge
            StaleStateError: the store moved on before submission
        """
        require_access(ctx, "orders", "update")
        async with self._locks.hold(Collections.ORDERS, order_id):
            return await self._transition_locked(ctx, order_id, to_status, notes, expected_status)

    async def cancel(self, ctx: SessionContext, order_id: str, reason: str | None = None) -> Order:
        return await self.transition(ctx, order_id, OrderStatus.CANCELLED, notes=reason)

    async def _transition_locked(
        self,
        ctx: SessionContext,
        order_id: str,
        to_status: str,
        notes: str | None,
        expected_status: str | None,
    ) -> Order:
        with operation_scope():
            if expected_status is None:
                expected_status = (await self.get_order(order_id)).status
            validate_transition(order_id, expected_status, to_status)

            # Re-read right before submission
            latest = await self.get_order(order_id)
            if latest.status != expected_status:
                raise StaleStateError("Order", order_id, expected=expected_status, actual=latest.status)

            # Once submitted the write and its audit record finish even if the
            # caller is cancelled.
            return await asyncio.shield(self._submit_transition(ctx, latest, to_status, notes))

    async def _submit_transition(
        self,
        ctx: SessionContext,
        order: Order,
        to_status: str,
        notes: str | None,
    ) -> Order:
        changes = {
            "status": to_status,
            "updated_at": utcnow().isoformat(),
            "version": order.version + 1,
        }
        if notes:
            changes["notes"] = notes

        result = await self._store.update(Collections.ORDERS, order.id, changes)
        row = unwrap(result, "update", Collections.ORDERS, order_id=order.id, to_status=to_status)

        await self._activity_log.log_transition(
            ctx,
            action=ORDER_TRANSITION_ACTIONS[to_status],
            resource_type="order",
            resource_id=order.id,
            from_status=order.status,
            to_status=to_status,
        )
        orders_logger.info(
            "Order status changed",
            order_id=order.id,
            from_status=order.status,
            to_status=to_status,
            actor_id=ctx.actor_id,
        )
        return Order.model_validate({**row, "items": [item.model_dump() for item in order.items]})

    async def set_payment_status(self, order_id: str, payment_status: str) -> Order:
        """Store the aggregate payment status. Not a lifecycle transition."""
        async with self._locks.hold(Collections.ORDERS, order_id):
            order = await self.get_order(order_id)
            if order.payment_status == payment_status:
                return order

            result = await self._store.update(
                Collections.ORDERS,
                order_id,
                {
                    "payment_status": payment_status,
                    "updated_at": utcnow().isoformat(),
                    "version": order.version + 1,
                },
            )
            unwrap(result, "update", Collections.ORDERS, order_id=order_id)
            logger.info(
                "Order payment status updated",
                order_id=order_id,
                from_status=order.payment_status,
                to_status=payment_status,
            )
            return await self.get_order(order_id)

    # =========================================================================
    # Item statuses
    # =========================================================================

    async def update_item_status(self, ctx: SessionContext, item_id: str, status: str) -> OrderItem:
        """
        Set one item's status, then evaluate the auto-ready rule for its order.
        """
        require_access(ctx, "orders", "update")
        if status not in OrderItemStatus.ALL:
            raise ValidationError(f"Invalid item status '{status}'", field="status", item_id=item_id)

        order_id = (await self.get_item(item_id)).order_id
        async with self._locks.hold(Collections.ORDERS, order_id):
            item = await self.get_item(item_id)
            order = await self.get_order(order_id)
            if order.is_terminal:
                raise InvalidTransitionError("Order item", item.status, status, order_id=order.id, item_id=item_id)

            if item.status != status:
                result = await self._store.update(
                    Collections.ORDER_ITEMS,
                    item_id,
                    {"status": status, "updated_at": utcnow().isoformat()},
                )
                unwrap(result, "update", Collections.ORDER_ITEMS, item_id=item_id)
                await self._activity_log.log_transition(
                    ctx,
                    action="order_item_status_updated",
                    resource_type="order_item",
                    resource_id=item_id,
                    from_status=item.status,
                    to_status=status,
                    order_id=item.order_id,
                )

        await self.evaluate_auto_ready(item.order_id, ctx)
        return item.model_copy(update={"status": status})

    async def evaluate_auto_ready(self, order_id: str, ctx: SessionContext | None = None) -> Order | None:
        """
        Move a preparing order to ready when all of its items are ready.

        Safe to call once per item change from any number of sources: the check
        and the transition happen under the order's lock, so the transition is
        written at most once. Returns the order when it transitioned.
        """
        async with self._locks.hold(Collections.ORDERS, order_id):
            order = await self.get_order(order_id)
            if order.status != OrderStatus.PREPARING or not order.all_items_ready:
                return None

            logger.info("All items ready, advancing order", order_id=order_id)
            return await self._transition_locked(
                ctx or system_context(order.branch_id or ""),
                order_id,
                OrderStatus.READY,
                None,
                OrderStatus.PREPARING,
            )

    # =========================================================================
    # Checkout and editing
    # =========================================================================

    async def create_order(
        self,
        ctx: SessionContext,
        cart: Cart,
        order_type: str = OrderType.DINE_IN,
        table_id: str | None = None,
        notes: str | None = None,
    ) -> Order:
        """
        Commit a cart as a pending order.

        Stock for every line is re-validated against the ledger under the
        product locks, sale movements are appended, and a dine-in table is
        marked occupied.
        """
        require_access(ctx, "orders", "create")
        if table_id is not None:
            require_access(ctx, "tables", "update")
        if not cart.items:
            raise ValidationError("Cart is empty")
        if order_type not in OrderType.ALL:
            raise ValidationError(f"Invalid order type '{order_type}'", field="order_type")

        requested = group_quantities((item.product.id, item.quantity) for item in cart.items)

        with operation_scope():
            async with self._locks.hold_many((Collections.PRODUCTS, pid) for pid in requested):
                await self._stock.check_availability(requested)

                now = utcnow().isoformat()
                result = await self._store.insert(
                    Collections.ORDERS,
                    {
                        "branch_id": ctx.branch_id,
                        "status": OrderStatus.PENDING,
                        "order_type": order_type,
                        "table_id": table_id,
                        "customer_id": cart.customer_id,
                        "staff_id": ctx.actor_id,
                        "subtotal": str(money(cart.subtotal)),
                        "tax": str(money(cart.tax)),
                        "service_charge": str(money(cart.service_charge)),
                        "discount": str(money(cart.discount)),
                        "total": str(money(cart.total)),
                        "payment_status": "unpaid",
                        "special_requests": cart.special_requests,
                        "notes": notes,
                        "created_at": now,
                        "updated_at": now,
                        "version": 0,
                    },
                )
                row = unwrap(result, "insert", Collections.ORDERS)
                order_id = str(row["id"])

                for line in cart.items:
                    await self._insert_item(
                        order_id,
                        line.product,
                        line.quantity,
                        line.modifiers,
                        line.notes,
                    )

                order = await self.get_order(order_id)
                await self._stock.record_sales(ctx, order)

            if table_id is not None and order_type == OrderType.DINE_IN:
                await self._tables.set_status(ctx, table_id, TableStatus.OCCUPIED)

            await self._activity_log.log_action(
                ctx,
                action="order_created",
                resource_type="order",
                resource_id=order_id,
                total=order.total,
                item_count=len(order.items),
                table_id=table_id,
            )
            orders_logger.info("Order created", order_id=order_id, total=order.total, items=len(order.items))
            return order

    async def add_item(
        self,
        ctx: SessionContext,
        order_id: str,
        product: Product,
        quantity: int = 1,
        modifiers: list[Modifier] | None = None,
        notes: str | None = None,
    ) -> Order:
        """Add a line to a pending order and record its sale movement."""
        require_access(ctx, "orders", "update")
        validate_quantity(quantity)

        async with self._locks.hold_many([(Collections.ORDERS, order_id), (Collections.PRODUCTS, product.id)]):
            order = await self._require_pending(order_id)

            self._stock.invalidate(product.id)
            available = await self._stock.current_stock(product.id)
            if quantity > available:
                raise InsufficientStockError(product.id, available=available, requested=quantity)

            item = await self._insert_item(order_id, product, quantity, modifiers or [], notes)
            await self._stock.record_sales(ctx, order.model_copy(update={"items": [item]}))
            order = await self._recompute_totals(order_id)

        await self._activity_log.log_action(
            ctx,
            action="order_item_added",
            resource_type="order",
            resource_id=order_id,
            product_id=product.id,
            quantity=quantity,
        )
        return order

    async def remove_item(self, ctx: SessionContext, order_id: str, item_id: str) -> Order:
        """Remove a line from a pending order and return its stock."""
        require_access(ctx, "orders", "update")

        async with self._locks.hold(Collections.ORDERS, order_id):
            order = await self._require_pending(order_id)
            item = next((i for i in order.items if i.id == item_id), None)
            if item is None:
                raise NotFoundError("Order item", item_id, order_id=order_id)
            if len(order.items) == 1:
                raise ValidationError("An order must keep at least one item", order_id=order_id)

            result = await self._store.delete(Collections.ORDER_ITEMS, item_id)
            unwrap(result, "delete", Collections.ORDER_ITEMS, item_id=item_id)

            await self._stock.adjust_stock(
                system_context(order.branch_id or ctx.branch_id),
                StockMovement(
                    product_id=item.product_id,
                    type=MovementType.RETURN,
                    quantity=item.quantity,
                    reason=f"Removed from order {order_id}",
                    branch_id=order.branch_id,
                    reference_id=order_id,
                ),
            )
            order = await self._recompute_totals(order_id)

        await self._activity_log.log_action(
            ctx,
            action="order_item_removed",
            resource_type="order",
            resource_id=order_id,
            item_id=item_id,
            product_id=item.product_id,
        )
        return order

    async def _require_pending(self, order_id: str) -> Order:
        order = await self.get_order(order_id)
        if order.status != OrderStatus.PENDING:
            raise ValidationError(
                "Items can only be changed while the order is pending",
                order_id=order_id,
                status=order.status,
            )
        return order

    async def _insert_item(
        self,
        order_id: str,
        product: Product,
        quantity: int,
        modifiers: list[Modifier],
        notes: str | None,
    ) -> OrderItem:
        modifier_total = sum((m.price for m in modifiers), ZERO)
        result = await self._store.insert(
            Collections.ORDER_ITEMS,
            {
                "order_id": order_id,
                "product_id": product.id,
                "product_name": product.name,
                "quantity": quantity,
                "unit_price": str(product.unit_price),
                "subtotal": str((product.unit_price + modifier_total) * quantity),
                "modifiers": [m.model_dump(mode="json") for m in modifiers],
                "notes": notes,
                "status": OrderItemStatus.PENDING,
                "created_at": utcnow().isoformat(),
                "updated_at": utcnow().isoformat(),
            },
        )
        row = unwrap(result, "insert", Collections.ORDER_ITEMS, order_id=order_id, product_id=product.id)
        return OrderItem.model_validate(row)

    async def _recompute_totals(self, order_id: str) -> Order:
        order = await self.get_order(order_id)
        subtotal = sum((item.subtotal for item in order.items), ZERO)
        discount = min(order.discount, subtotal)
        tax = subtotal * self._tax_rate
        service_charge = subtotal * self._service_charge_rate

        changes = {
            "subtotal": str(money(subtotal)),
            "tax": str(money(tax)),
            "service_charge": str(money(service_charge)),
            "discount": str(money(discount)),
            "total": str(money(subtotal + tax + service_charge - discount)),
            "updated_at": utcnow().isoformat(),
            "version": order.version + 1,
        }
        result = await self._store.update(Collections.ORDERS, order_id, changes)
        unwrap(result, "update", Collections.ORDERS, order_id=order_id)
        return await self.get_order(order_id)
