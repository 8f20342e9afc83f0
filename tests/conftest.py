"""
Pytest configuration and fixtures for the order core tests.

The store, change stream, gateway, notifier and devices are in-memory fakes
implementing the Protocols in pos_core.ports.
"""

import asyncio
import copy
import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest

from pos_core.models import AuditRecord, Product, SessionContext
from pos_core.ports import StoreResult
from pos_core.services.audit import ActivityLog
from pos_core.services.domain import (
    CartService,
    KitchenService,
    OrderService,
    PaymentService,
    StockService,
    TableService,
)
from pos_core.services.payments.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from pos_core.services.peripherals import PeripheralHub
from shared.config.constants import Collections, MovementType, Roles
from shared.infrastructure.locks import EntityLockManager

_id_counter = itertools.count(1000)

# Base for deterministic, strictly increasing created_at values
_clock_base = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
_clock = itertools.count(0)


def next_id(prefix: str = "id") -> str:
    """Generate a unique id for test records."""
    return f"{prefix}-{next(_id_counter)}"


def next_timestamp() -> str:
    return (_clock_base + timedelta(milliseconds=next(_clock))).isoformat()


# =============================================================================
# In-memory collaborators
# =============================================================================


class InMemoryStore:
    """TransactionalStore over dicts. Every answer is a deep copy."""

    def __init__(self):
        self.collections: dict[str, dict[str, dict]] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str], str] = {}
        self.update_delay: float = 0.0

    def fail_next(self, operation: str, collection: str, error: str = "connection reset") -> None:
        self._failures[(operation, collection)] = error

    def _check_failure(self, operation: str, collection: str) -> StoreResult | None:
        self.calls.append((operation, collection))
        error = self._failures.pop((operation, collection), None)
        if error is not None:
            return StoreResult(error=error)
        return None

    def rows(self, collection: str) -> list[dict]:
        return [copy.deepcopy(r) for r in self.collections.get(collection, {}).values()]

    async def insert(self, collection: str, record: dict) -> StoreResult:
        if (failure := self._check_failure("insert", collection)) is not None:
            return failure
        row = copy.deepcopy(record)
        row.setdefault("id", next_id(collection[:3]))
        row.setdefault("created_at", next_timestamp())
        self.collections.setdefault(collection, {})[str(row["id"])] = row
        return StoreResult(data=copy.deepcopy(row))

    async def update(self, collection: str, record_id: str, changes: dict) -> StoreResult:
        if (failure := self._check_failure("update", collection)) is not None:
            return failure
        if self.update_delay:
            await asyncio.sleep(self.update_delay)
        row = self.collections.get(collection, {}).get(str(record_id))
        if row is None:
            return StoreResult(error=f"{collection} {record_id} not found")
        row.update(copy.deepcopy(changes))
        return StoreResult(data=copy.deepcopy(row))

    async def get(self, collection: str, record_id: str) -> StoreResult:
        if (failure := self._check_failure("get", collection)) is not None:
            return failure
        row = self.collections.get(collection, {}).get(str(record_id))
        return StoreResult(data=copy.deepcopy(row))

    async def select(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> StoreResult:
        if (failure := self._check_failure("select", collection)) is not None:
            return failure

        def matches(row: dict) -> bool:
            for key, expected in (filters or {}).items():
                if isinstance(expected, (list, tuple, set, frozenset)):
                    if row.get(key) not in expected:
                        return False
                elif row.get(key) != expected:
                    return False
            return True

        rows = [copy.deepcopy(r) for r in self.collections.get(collection, {}).values() if matches(r)]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, str(r.get(order_by))), reverse=descending)
        return StoreResult(data=rows)

    async def delete(self, collection: str, record_id: str) -> StoreResult:
        if (failure := self._check_failure("delete", collection)) is not None:
            return failure
        row = self.collections.get(collection, {}).pop(str(record_id), None)
        return StoreResult(data=row)


class InMemoryChangeStream:
    """ChangeStream that delivers whatever the test emits."""

    def __init__(self):
        self.handlers: dict[str, tuple[str, Any]] = {}
        self.failing_tables: set[str] = set()
        self.hanging_tables: set[str] = set()
        self.subscribe_calls = 0

    async def subscribe(self, channel: str, schema: str, table: str, branch_id: str, handler) -> None:
        self.subscribe_calls += 1
        if table in self.hanging_tables:
            await asyncio.Event().wait()
        if table in self.failing_tables:
            raise ConnectionError(f"cannot subscribe to {table}")
        self.handlers[channel] = (table, handler)

    async def unsubscribe(self, channel: str) -> None:
        self.handlers.pop(channel, None)

    async def emit(self, table: str, payload: dict) -> None:
        for subscribed_table, handler in list(self.handlers.values()):
            if subscribed_table == table:
                await handler({"table": table, "schema": "public", **payload})


class RecordingAuditSink:
    def __init__(self):
        self.records: list[AuditRecord] = []

    async def append(self, record: AuditRecord) -> None:
        self.records.append(record)

    def actions(self) -> list[str]:
        return [r.action for r in self.records]


class FakeGateway:
    """PaymentGateway that succeeds unless told otherwise."""

    def __init__(self):
        self.error: Exception | None = None
        self.delay: float = 0.0
        self.charges: list[str] = []
        self.refunds: list[str] = []

    async def charge(self, payment) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.charges.append(payment.id)
        return f"txn_{payment.id}"

    async def refund(self, refund, original) -> str:
        if self.error is not None:
            raise self.error
        self.refunds.append(refund.id)
        return f"rfd_{refund.id}"


class RecordingNotifier:
    def __init__(self):
        self.notifications = []

    async def publish(self, notification) -> None:
        self.notifications.append(notification)

    def kinds(self) -> list[str]:
        return [n.kind for n in self.notifications]


class RecordingDevice:
    """Printer, drawer and scanner in one. Set fail_on to make one action raise."""

    def __init__(self, fail_on: str | None = None):
        self.fail_on = fail_on
        self.calls: list[str] = []
        self.on_scan = None

    async def _record(self, action: str) -> None:
        self.calls.append(action)
        if action == self.fail_on:
            raise OSError(f"device error during {action}")

    async def configure(self, options: dict) -> None:
        await self._record("configure")

    async def dispose(self) -> None:
        await self._record("dispose")

    async def print_receipt(self, order, payment) -> None:
        await self._record("print_receipt")

    async def open_drawer(self) -> None:
        await self._record("open_drawer")

    async def start(self, on_scan) -> None:
        self.on_scan = on_scan
        await self._record("start")

    async def stop(self) -> None:
        await self._record("stop")


# =============================================================================
# Seeding helpers
# =============================================================================


async def seed_product(
    store: InMemoryStore,
    stock: int = 10,
    price: str = "10.00",
    branch_id: str = "branch-1",
    **fields: Any,
) -> Product:
    """Insert a product and an opening 'increase' movement for its stock."""
    result = await store.insert(
        Collections.PRODUCTS,
        {
            "id": next_id("prod"),
            "name": fields.pop("name", "Burger"),
            "price": price,
            "min_stock": fields.pop("min_stock", 2),
            "branch_id": branch_id,
            "is_active": True,
            **fields,
        },
    )
    row = result.data
    if stock:
        await store.insert(
            Collections.STOCK_MOVEMENTS,
            {
                "product_id": row["id"],
                "type": MovementType.INCREASE,
                "quantity": stock,
                "reason": "Opening stock",
                "branch_id": branch_id,
            },
        )
    return Product.model_validate({**row, "current_stock": stock})


async def place_order(
    store: InMemoryStore,
    order_service: OrderService,
    ctx: SessionContext,
    lines: int = 1,
    quantity: int = 1,
    price: str = "10.00",
    **kwargs: Any,
):
    """Seed `lines` products and commit a cart with one line per product."""
    cart = CartService(tax_rate=Decimal("0.08"), service_charge_rate=Decimal("0.10"))
    for n in range(lines):
        product = await seed_product(store, stock=10, price=price, name=f"Dish {n}")
        cart.add_item(product, quantity)
    return await order_service.create_order(ctx, cart.cart, **kwargs)


async def advance(order_service: OrderService, ctx: SessionContext, order_id: str, *statuses: str):
    order = None
    for status in statuses:
        order = await order_service.transition(ctx, order_id, status)
    return order


async def seed_table(store: InMemoryStore, branch_id: str = "branch-1", status: str = "available") -> str:
    result = await store.insert(
        Collections.RESTAURANT_TABLES,
        {"id": next_id("tbl"), "table_no": "7", "capacity": 4, "status": status, "branch_id": branch_id},
    )
    return result.data["id"]


# =============================================================================
# Fixtures
# =============================================================================


def _ctx(role: str) -> SessionContext:
    return SessionContext(actor_id=f"{role}-user", role=role, branch_id="branch-1")


@pytest.fixture
def owner():
    return _ctx(Roles.OWNER)


@pytest.fixture
def cashier():
    return _ctx(Roles.CASHIER)


@pytest.fixture
def kitchen_staff():
    return _ctx(Roles.KITCHEN)


@pytest.fixture
def waitstaff():
    return _ctx(Roles.WAITSTAFF)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def activity_log(audit_sink):
    return ActivityLog(audit_sink)


@pytest.fixture
def locks():
    return EntityLockManager()


@pytest.fixture
def stock_service(store, activity_log, locks):
    return StockService(store, activity_log, locks)


@pytest.fixture
def table_service(store, activity_log, locks):
    return TableService(store, activity_log, locks)


@pytest.fixture
def order_service(store, stock_service, table_service, activity_log, locks):
    return OrderService(
        store,
        stock_service,
        table_service,
        activity_log,
        locks,
        tax_rate=Decimal("0.08"),
        service_charge_rate=Decimal("0.10"),
    )


@pytest.fixture
def kitchen_service(order_service):
    return KitchenService(order_service)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def devices():
    return RecordingDevice()


@pytest.fixture
def peripherals(devices):
    return PeripheralHub(printer=devices, drawer=devices, scanner=devices)


@pytest.fixture
def breaker():
    return CircuitBreaker(CircuitBreakerConfig(name="test_gateway", failure_threshold=3, recovery_seconds=60.0))


@pytest.fixture
def payment_service(store, order_service, gateway, activity_log, locks, peripherals, breaker):
    return PaymentService(
        store,
        order_service,
        gateway,
        activity_log,
        locks,
        peripherals=peripherals,
        breaker=breaker,
        timeout=0.5,
    )


@pytest.fixture
def cart():
    return CartService(tax_rate=Decimal("0.08"), service_charge_rate=Decimal("0.10"))


@pytest.fixture
def change_stream():
    return InMemoryChangeStream()


@pytest.fixture
def notifier():
    return RecordingNotifier()
