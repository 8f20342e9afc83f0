"""
Stock Domain Service.

Stock is an append-only ledger of StockMovement records. The current level of a
product is the signed sum of its ledger, folded in creation order. Nothing is
ever updated in place, so adjustments from different terminals cannot lose each
other's updates.

The service keeps a per-product cache of folded levels. A cached level is only
ever dropped and recomputed from the ledger, never patched with a delta.
"""

from collections import defaultdict
from typing import Iterable

from pos_core.models import Order, Product, SessionContext, StockLevel, StockMovement
from pos_core.ports import TransactionalStore, unwrap
from pos_core.services.audit import ActivityLog
from pos_core.services.permissions import require_access
from shared.config.constants import Collections, Limits, MovementType
from shared.config.constants import StockLevel as StockLevelLabel
from shared.config.logging import get_logger
from shared.infrastructure.locks import EntityLockManager
from shared.utils.exceptions import InsufficientStockError, InvalidQuantityError, NotFoundError, ValidationError

logger = get_logger(__name__)


def signed_quantity(movement: StockMovement) -> int:
    """Contribution of one movement to the level."""
    if movement.type in MovementType.INCREASING:
        return movement.quantity
    if movement.type in MovementType.DECREASING:
        return -movement.quantity
    return 0


def fold_ledger(movements: Iterable[StockMovement]) -> int:
    """Signed sum over a ledger in created_at order."""
    return sum(signed_quantity(m) for m in sorted(movements, key=lambda m: m.created_at))


def stock_status(current: int, min_stock: int) -> str:
    if current <= 0:
        return StockLevelLabel.OUT
    if current <= min_stock:
        return StockLevelLabel.LOW
    return StockLevelLabel.NORMAL


def validate_adjustment(movement: StockMovement, available: int) -> None:
    """
    Check one movement against the level it would apply to.

    Raises:
        InvalidQuantityError: quantity is not positive
        ValidationError: reason missing or too long
        InsufficientStockError: a decreasing movement would drive stock negative
    """
    if movement.quantity <= 0:
        raise InvalidQuantityError(movement.quantity, product_id=movement.product_id)
    reason = (movement.reason or "").strip()
    if not reason:
        raise ValidationError("Reason is required", field="reason", product_id=movement.product_id)
    if len(reason) > Limits.MAX_REASON_LENGTH:
        raise ValidationError("Reason is too long", field="reason", product_id=movement.product_id)
    if movement.type in MovementType.DECREASING and available - movement.quantity < 0:
        raise InsufficientStockError(movement.product_id, available=available, requested=movement.quantity)


class StockService:
    """Domain service for the stock ledger."""

    def __init__(
        self,
        store: TransactionalStore,
        activity_log: ActivityLog,
        locks: EntityLockManager,
    ):
        self._store = store
        self._activity_log = activity_log
        self._locks = locks
        self._levels: dict[str, int] = {}

    # =========================================================================
    # Reads
    # =========================================================================

    async def history(self, product_id: str) -> list[StockMovement]:
        """The product's ledger in creation order."""
        result = await self._store.select(
            Collections.STOCK_MOVEMENTS,
            filters={"product_id": product_id},
            order_by="created_at",
        )
        rows = unwrap(result, "select", Collections.STOCK_MOVEMENTS, product_id=product_id)
        movements = [StockMovement.model_validate(row) for row in rows or []]
        # Never trust the store's ordering for the fold
        return sorted(movements, key=lambda m: m.created_at)

    async def current_stock(self, product_id: str) -> int:
        cached = self._levels.get(product_id)
        if cached is not None:
            return cached
        level = fold_ledger(await self.history(product_id))
        self._levels[product_id] = level
        return level

    def invalidate(self, product_id: str | None = None) -> None:
        """Drop one cached level, or all of them."""
        if product_id is None:
            self._levels.clear()
        else:
            self._levels.pop(product_id, None)

    async def get_product(self, product_id: str) -> Product:
        result = await self._store.get(Collections.PRODUCTS, product_id)
        row = unwrap(result, "get", Collections.PRODUCTS, product_id=product_id)
        if not row:
            raise NotFoundError("Product", product_id)
        product = Product.model_validate(row)
        return product.model_copy(update={"current_stock": await self.current_stock(product_id)})

    async def stock_level(self, product: Product) -> StockLevel:
        current = await self.current_stock(product.id)
        return StockLevel(
            product_id=product.id,
            current_stock=current,
            min_stock=product.min_stock,
            status=stock_status(current, product.min_stock),
        )

    async def products_with_stock(self, branch_id: str | None = None) -> list[Product]:
        """Active products with their folded levels filled in."""
        filters = {"is_active": True}
        if branch_id is not None:
            filters["branch_id"] = branch_id
        result = await self._store.select(Collections.PRODUCTS, filters=filters, order_by="name")
        rows = unwrap(result, "select", Collections.PRODUCTS, branch_id=branch_id)

        products = []
        for row in rows or []:
            product = Product.model_validate(row)
            products.append(product.model_copy(update={"current_stock": await self.current_stock(product.id)}))
        return products

    async def find_product(self, field: str, value: str) -> Product | None:
        """Active product by barcode or sku, with its folded level."""
        result = await self._store.select(Collections.PRODUCTS, filters={field: value, "is_active": True})
        rows = unwrap(result, "select", Collections.PRODUCTS, field=field, value=value)
        if not rows:
            return None
        return await self.get_product(str(rows[0]["id"]))

    async def validate(self, movement: StockMovement) -> int:
        """Validate against a freshly folded level. Returns that level."""
        self.invalidate(movement.product_id)
        available = await self.current_stock(movement.product_id)
        validate_adjustment(movement, available)
        return available

    # =========================================================================
    # Writes
    # =========================================================================

    async def adjust_stock(self, ctx: SessionContext, movement: StockMovement) -> StockMovement:
        """
        Validate and append one movement.

        Runs under the product's lock: two local adjustments of the same product
        are validated one after the other, while other products are unaffected.
        """
        require_access(ctx, "stock_movements", "create")

        async with self._locks.hold(Collections.PRODUCTS, movement.product_id):
            before = await self.validate(movement)
            saved = await self._append(ctx, movement)

        await self._activity_log.log_action(
            ctx,
            action="stock_adjusted",
            resource_type="product",
            resource_id=movement.product_id,
            type=movement.type,
            quantity=movement.quantity,
            reason=movement.reason,
            before=before,
            after=before + signed_quantity(movement),
        )
        return saved

    async def bulk_adjust(self, ctx: SessionContext, movements: list[StockMovement]) -> list[StockMovement]:
        """
        Validate every movement, then append them all.

        Movements on the same product are validated cumulatively. If any one is
        invalid nothing is appended.
        """
        require_access(ctx, "stock_movements", "create")
        if not movements:
            return []

        product_ids = {m.product_id for m in movements}
        async with self._locks.hold_many((Collections.PRODUCTS, pid) for pid in product_ids):
            await self._validate_batch(movements)
            saved = [await self._append(ctx, m) for m in movements]

        await self._activity_log.log_action(
            ctx,
            action="bulk_stock_adjustment",
            resource_type="product",
            resource_id=",".join(sorted(product_ids)),
            count=len(movements),
        )
        return saved

    async def record_sales(self, ctx: SessionContext, order: Order) -> list[StockMovement]:
        """
        Append one 'sale' movement per order line.

        Part of checkout, so it is covered by the caller's orders.create check.
        The caller holds the product locks.
        """
        movements = [
            StockMovement(
                product_id=item.product_id,
                type=MovementType.SALE,
                quantity=item.quantity,
                reason=f"Order {order.id}",
                branch_id=order.branch_id,
                reference_id=order.id,
            )
            for item in order.items
        ]
        await self._validate_batch(movements)
        return [await self._append(ctx, m) for m in movements]

    async def check_availability(self, requested: dict[str, int]) -> None:
        """Raise InsufficientStockError for the first product short of its requested quantity."""
        for product_id, quantity in requested.items():
            self.invalidate(product_id)
            available = await self.current_stock(product_id)
            if quantity > available:
                raise InsufficientStockError(product_id, available=available, requested=quantity)

    async def _validate_batch(self, movements: list[StockMovement]) -> None:
        running: dict[str, int] = {}
        for movement in movements:
            if movement.product_id not in running:
                running[movement.product_id] = await self.validate(movement)
            else:
                validate_adjustment(movement, running[movement.product_id])
            running[movement.product_id] += signed_quantity(movement)

    async def _append(self, ctx: SessionContext, movement: StockMovement) -> StockMovement:
        record = movement.model_dump(mode="json", exclude={"id"})
        record["branch_id"] = movement.branch_id or ctx.branch_id
        record["created_by"] = ctx.actor_id

        result = await self._store.insert(Collections.STOCK_MOVEMENTS, record)
        row = unwrap(result, "insert", Collections.STOCK_MOVEMENTS, product_id=movement.product_id)
        self.invalidate(movement.product_id)

        logger.info(
            "Stock movement recorded",
            product_id=movement.product_id,
            type=movement.type,
            quantity=movement.quantity,
        )
        return StockMovement.model_validate(row)


def group_quantities(pairs: Iterable[tuple[str, int]]) -> dict[str, int]:
    """Sum requested quantities per product."""
    totals: dict[str, int] = defaultdict(int)
    for product_id, quantity in pairs:
        totals[product_id] += quantity
    return dict(totals)
