"""
Read-shared view caches.

A view is a named, loader-backed snapshot (order list, kitchen queue, stock
levels, table grid...). Its data changes in exactly two ways:

- refresh(): the router's invalidation step reloads it from the store
- tentative states: a local optimistic change tagged pending-reconciliation,
  replaced when the authoritative change arrives

At most one tentative state may exist per entity.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Final

from pos_core.models.order import utcnow
from shared.config.constants import Collections
from shared.config.logging import get_logger
from shared.utils.exceptions import ExternalFailure, TentativeStateConflictError

logger = get_logger(__name__)


class Views:
    """View names."""

    ORDER_LIST: Final[str] = "order_list"
    KITCHEN_QUEUE: Final[str] = "kitchen_queue"
    TABLE_GRID: Final[str] = "table_grid"
    PAYMENTS: Final[str] = "payments"
    STOCK_LEVELS: Final[str] = "stock_levels"
    CATALOG: Final[str] = "catalog"


# Views to recompute when a collection changes
VIEW_DEPENDENCIES: Final[dict[str, frozenset[str]]] = {
    Collections.ORDERS: frozenset({Views.ORDER_LIST, Views.KITCHEN_QUEUE, Views.TABLE_GRID}),
    Collections.ORDER_ITEMS: frozenset({Views.ORDER_LIST, Views.KITCHEN_QUEUE}),
    Collections.PAYMENTS: frozenset({Views.ORDER_LIST, Views.PAYMENTS}),
    Collections.STOCK_MOVEMENTS: frozenset({Views.STOCK_LEVELS}),
    Collections.PRODUCTS: frozenset({Views.STOCK_LEVELS, Views.CATALOG}),
    Collections.RESTAURANT_TABLES: frozenset({Views.TABLE_GRID}),
}


def dependent_views(entity_type: str) -> frozenset[str]:
    return VIEW_DEPENDENCIES.get(entity_type, frozenset())


ViewLoader = Callable[[], Awaitable[Any]]
TentativeKey = tuple[str, str]


@dataclass(slots=True)
class ViewState:
    """Current snapshot of one view."""

    name: str
    loader: ViewLoader
    data: Any = None
    loaded_at: datetime | None = None
    stale: bool = True
    refresh_count: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


@dataclass(frozen=True, slots=True)
class TentativeState:
    entity_type: str
    entity_id: str
    value: Any
    created_at: datetime


class ViewRegistry:
    """Holds every view and the tentative states layered over them."""

    def __init__(self) -> None:
        self._views: dict[str, ViewState] = {}
        self._tentative: dict[TentativeKey, TentativeState] = {}

    def register(self, name: str, loader: ViewLoader) -> None:
        self._views[name] = ViewState(name=name, loader=loader)

    @property
    def names(self) -> list[str]:
        return list(self._views)

    def get(self, name: str) -> Any:
        return self._views[name].data

    def state(self, name: str) -> ViewState:
        return self._views[name]

    async def refresh(self, names: set[str] | frozenset[str] | list[str]) -> None:
        """
        Reload the named views in parallel.

        A loader failure keeps the previous snapshot, marks it stale and is
        logged. Other views still refresh.
        """
        targets = [self._views[n] for n in sorted(names) if n in self._views]
        if targets:
            await asyncio.gather(*(self._refresh_one(view) for view in targets))

    async def refresh_all(self) -> None:
        await self.refresh(self.names)

    async def _refresh_one(self, view: ViewState) -> None:
        async with view.lock:
            try:
                data = await view.loader()
            except ExternalFailure:
                view.stale = True
                logger.warning("View refresh failed, keeping previous snapshot", view=view.name, exc_info=True)
                return
            view.data = data
            view.loaded_at = utcnow()
            view.stale = False
            view.refresh_count += 1

    # =========================================================================
    # Tentative local state
    # =========================================================================

    def apply_tentative(self, entity_type: str, entity_id: str, value: Any) -> TentativeState:
        """
        Tag a local optimistic change as pending reconciliation.

        Raises:
            TentativeStateConflictError: the entity already has one
        """
        key = (entity_type, str(entity_id))
        if key in self._tentative:
            raise TentativeStateConflictError(entity_type, str(entity_id))
        state = TentativeState(entity_type, str(entity_id), value, utcnow())
        self._tentative[key] = state
        return state

    @asynccontextmanager
    async def optimistic(self, entity_type: str, entity_id: str, value: Any) -> AsyncIterator[TentativeState]:
        """
        Apply a tentative state around a submission.

        If the submission raises, the tentative state is dropped. On success it
        stays until the matching change event reconciles it.

        Usage:
            async with views.optimistic("orders", order_id, {"status": "ready"}):
                await orders.transition(ctx, order_id, "ready")
        """
        state = self.apply_tentative(entity_type, entity_id, value)
        try:
            yield state
        except BaseException:
            self.reconcile(entity_type, entity_id)
            raise

    def tentative(self, entity_type: str, entity_id: str) -> TentativeState | None:
        return self._tentative.get((entity_type, str(entity_id)))

    def reconcile(self, entity_type: str, entity_id: str) -> TentativeState | None:
        """Drop the entity's tentative state once authoritative state arrived."""
        return self._tentative.pop((entity_type, str(entity_id)), None)

    def discard_tentative(self, entity_type: str | None = None) -> int:
        """Drop every tentative state (optionally of one entity type)."""
        keys = [k for k in self._tentative if entity_type is None or k[0] == entity_type]
        for key in keys:
            del self._tentative[key]
        return len(keys)

    @property
    def tentative_count(self) -> int:
        return len(self._tentative)
