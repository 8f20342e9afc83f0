"""
External collaborator interfaces.

The core never talks to a database, gateway, device or UI directly. Each
collaborator is a Protocol injected at construction, so tests run against
in-memory fakes and deployments plug in their own adapters.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

from shared.utils.exceptions import StoreError

if TYPE_CHECKING:
    from pos_core.models import AuditRecord, Order, Payment
    from pos_core.realtime.types import Notification


@dataclass(frozen=True, slots=True)
class StoreResult:
    """Every store call answers {data, error}. Exactly one of them is meaningful."""

    data: Any = None
    error: Any = None

    @property
    def ok(self) -> bool:
        return self.error is None


def unwrap(result: StoreResult, operation: str, collection: str, **log_context: Any) -> Any:
    """Return result.data or raise StoreError."""
    if not result.ok:
        raise StoreError(operation, collection, result.error, **log_context)
    return result.data


class TransactionalStore(Protocol):
    """
    CRUD and filtered/ordered query per collection.

    select() filters are equality matches. A list or tuple value matches any of
    its members. get() answers data=None for a missing record; update() answers
    the updated record.
    """

    async def insert(self, collection: str, record: dict) -> StoreResult: ...

    async def update(self, collection: str, record_id: str, changes: dict) -> StoreResult: ...

    async def get(self, collection: str, record_id: str) -> StoreResult: ...

    async def select(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> StoreResult: ...

    async def delete(self, collection: str, record_id: str) -> StoreResult: ...


ChangeHandler = Callable[[dict], Awaitable[None]]


class ChangeStream(Protocol):
    """Per-branch push stream of row changes keyed by (schema, table)."""

    async def subscribe(
        self,
        channel: str,
        schema: str,
        table: str,
        branch_id: str,
        handler: ChangeHandler,
    ) -> None: ...

    async def unsubscribe(self, channel: str) -> None: ...


class AuditSink(Protocol):
    """Append-only activity log."""

    async def append(self, record: AuditRecord) -> None: ...


class PaymentGateway(Protocol):
    """Card/mobile/voucher processor. Returns the gateway transaction id."""

    async def charge(self, payment: Payment) -> str: ...

    async def refund(self, refund: Payment, original: Payment) -> str: ...


class Notifier(Protocol):
    """User-facing notification surface (toasts, kitchen chime)."""

    async def publish(self, notification: Notification) -> None: ...


# =============================================================================
# Peripheral devices
# =============================================================================


class Peripheral(Protocol):
    """Explicit lifecycle shared by every device."""

    async def configure(self, options: dict[str, Any]) -> None: ...

    async def dispose(self) -> None: ...


class ReceiptPrinter(Peripheral, Protocol):
    async def print_receipt(self, order: Order, payment: Payment) -> None: ...


class CashDrawer(Peripheral, Protocol):
    async def open_drawer(self) -> None: ...


class BarcodeScanner(Peripheral, Protocol):
    async def start(self, on_scan: Callable[[str], Awaitable[None]]) -> None: ...

    async def stop(self) -> None: ...
