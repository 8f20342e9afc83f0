"""
Composition root for one terminal of one branch.

Wires the domain services to the injected collaborators, registers the views the
router keeps fresh, and hooks the internal change listeners:

- stock_movements → drop the cached level of the product
- order_items → kitchen auto-ready rule, swept again on every reconciliation

Usage:
    core = PosCore(store, stream, gateway, notifier, branch_id="b1")
    await core.start()
    ...
    await core.stop()
"""

from pos_core.ports import AuditSink, ChangeStream, Notifier, PaymentGateway, TransactionalStore
from pos_core.realtime.router import ChangeNotificationRouter
from pos_core.realtime.types import ChangeEvent
from pos_core.realtime.views import ViewRegistry, Views
from pos_core.services.audit import ActivityLog, StoreAuditSink
from pos_core.services.domain import (
    CartService,
    KitchenService,
    OrderService,
    PaymentService,
    StockService,
    TableService,
)
from pos_core.services.peripherals import PeripheralHub, ScanToCart
from shared.config.constants import Collections
from shared.config.logging import get_logger
from shared.config.settings import Settings, settings
from shared.infrastructure.locks import EntityLockManager

logger = get_logger(__name__)


class PosCore:
    def __init__(
        self,
        store: TransactionalStore,
        stream: ChangeStream,
        gateway: PaymentGateway,
        notifier: Notifier,
        branch_id: str,
        audit_sink: AuditSink | None = None,
        peripherals: PeripheralHub | None = None,
        config: Settings | None = None,
    ):
        self.branch_id = branch_id
        self.config = config or settings
        self.locks = EntityLockManager()
        self.activity_log = ActivityLog(audit_sink or StoreAuditSink(store))
        self.peripherals = peripherals or PeripheralHub()

        self.stock = StockService(store, self.activity_log, self.locks)
        self.tables = TableService(store, self.activity_log, self.locks)
        self.orders = OrderService(store, self.stock, self.tables, self.activity_log, self.locks)
        self.kitchen = KitchenService(self.orders)
        self.payments = PaymentService(
            store,
            self.orders,
            gateway,
            self.activity_log,
            self.locks,
            peripherals=self.peripherals,
        )

        self.views = ViewRegistry()
        self.views.register(Views.ORDER_LIST, lambda: self.orders.list_orders(branch_id))
        self.views.register(Views.KITCHEN_QUEUE, lambda: self.kitchen.queue(branch_id))
        self.views.register(Views.TABLE_GRID, lambda: self.tables.list_tables(branch_id))
        self.views.register(Views.STOCK_LEVELS, self._load_stock_levels)
        self.views.register(Views.CATALOG, lambda: self.stock.products_with_stock(branch_id))
        self.views.register(Views.PAYMENTS, self._load_payments)

        self.router = ChangeNotificationRouter(
            stream,
            self.views,
            notifier,
            branch_id,
            stock_level=self.stock.current_stock,
        )
        self.router.add_listener(Collections.STOCK_MOVEMENTS, self._on_stock_movement)
        self.router.add_listener(Collections.PRODUCTS, self._on_stock_movement)
        self.router.add_listener(Collections.ORDER_ITEMS, self.kitchen.on_item_status_changed)
        self.router.add_reconcile_hook(self.stock.invalidate)
        self.router.add_reconcile_hook(lambda: self.kitchen.resume_auto_ready(branch_id))

    def new_cart(self) -> CartService:
        return CartService()

    def scanner_bridge(self, cart: CartService) -> ScanToCart:
        return ScanToCart(self.stock, cart)

    async def start(self, device_options: dict | None = None) -> None:
        """
        Check configuration, bring up devices, subscribe and load every view.

        Raises:
            RuntimeError: configuration errors in production
        """
        config_errors = self.config.validate_production()
        for error in config_errors:
            logger.error("Configuration error", error=error, environment=self.config.environment)
        if config_errors and self.config.environment == "production":
            raise RuntimeError(f"Production configuration errors: {'; '.join(config_errors)}")

        await self.peripherals.configure(device_options)
        state = await self.router.start()
        logger.info("Order core started", branch_id=self.branch_id, connection=state.value)

    async def stop(self) -> None:
        await self.router.stop()
        await self.peripherals.dispose()
        logger.info("Order core stopped", branch_id=self.branch_id)

    async def _on_stock_movement(self, event: ChangeEvent) -> None:
        product_id = event.get("product_id") if event.entity_type == Collections.STOCK_MOVEMENTS else event.entity_id
        if product_id:
            self.stock.invalidate(str(product_id))

    async def _load_stock_levels(self):
        products = await self.stock.products_with_stock(self.branch_id)
        return [await self.stock.stock_level(product) for product in products]

    async def _load_payments(self):
        orders = await self.orders.list_orders(self.branch_id)
        return {order.id: await self.payments.list_payments(order.id) for order in orders}
