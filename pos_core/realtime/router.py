"""
Change Notification Router.

Subscribes to the store's change stream (one channel per watched collection,
per branch) and, for every delivered change:

1. drops it if (entity_type, entity_id, version) was already seen
2. runs the internal listeners for that collection (cache invalidation,
   kitchen auto-ready)
3. replaces any tentative state for the entity and recomputes every
   dependent view
4. publishes at most one curated notification

Delivery is at-least-once, so step 1 makes replays harmless. Missed events are
never replayed: after a gap the router reconciles by refetching every view.
Periodic reconciliation is a fallback on top of push invalidation.

Usage:
    router = ChangeNotificationRouter(stream, views, notifier, branch_id="b1")
    router.add_listener("order_items", kitchen.on_item_status_changed)
    await router.start()
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Iterable

from pos_core.ports import ChangeStream, Notifier
from pos_core.realtime.notifications import build_notification
from pos_core.realtime.retry import RetryConfig, calculate_delay_with_jitter, reconnect_config
from pos_core.realtime.types import ChangeEvent, ChangeKind, ConnectionState, DedupKey, Notification
from pos_core.realtime.views import VIEW_DEPENDENCIES, ViewRegistry, dependent_views
from shared.config.constants import Collections, MovementType
from shared.config.logging import realtime_logger as logger
from shared.config.settings import settings
from shared.infrastructure.correlation import operation_scope
from shared.utils.exceptions import AppException, ExternalFailure, SubscriptionTimeoutError

ChangeListener = Callable[[ChangeEvent], Awaitable[Any]]
ReconcileHook = Callable[[], Awaitable[Any] | None]
StockLevelLookup = Callable[[str], Awaitable[int]]

WATCHED_COLLECTIONS: tuple[str, ...] = tuple(VIEW_DEPENDENCIES)


class SeenVersions:
    """Bounded LRU of dedup keys. The oldest key is evicted at capacity."""

    def __init__(self, max_size: int):
        self._max_size = max_size
        self._keys: OrderedDict[DedupKey, None] = OrderedDict()

    def __contains__(self, key: DedupKey) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: DedupKey) -> bool:
        """Record a key. Returns False if it was already present."""
        if key in self._keys:
            self._keys.move_to_end(key)
            return False
        self._keys[key] = None
        if len(self._keys) > self._max_size:
            self._keys.popitem(last=False)
        return True


class ChangeNotificationRouter:
    """Routes store change events to views, listeners and the notifier."""

    def __init__(
        self,
        stream: ChangeStream,
        views: ViewRegistry,
        notifier: Notifier,
        branch_id: str,
        collections: Iterable[str] = WATCHED_COLLECTIONS,
        stock_level: StockLevelLookup | None = None,
        schema: str | None = None,
        subscription_timeout: float | None = None,
        reconciliation_interval: float | None = None,
        retry_config: RetryConfig | None = None,
    ):
        self._stream = stream
        self._views = views
        self._notifier = notifier
        self._branch_id = branch_id
        self._collections = tuple(collections)
        self._stock_level = stock_level
        self._schema = schema or settings.realtime_schema
        self._subscription_timeout = subscription_timeout or settings.subscription_timeout_seconds
        self._reconciliation_interval = reconciliation_interval or settings.reconciliation_interval_seconds
        self._retry_config = retry_config or reconnect_config()

        self._seen = SeenVersions(settings.dedup_cache_size)
        self._listeners: dict[str, list[ChangeListener]] = {}
        self._failed_listeners: OrderedDict[DedupKey, tuple[ChangeEvent, list[ChangeListener]]] = OrderedDict()
        self._reconcile_hooks: list[ReconcileHook] = []
        self._subscribed: set[str] = set()
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_task: asyncio.Task | None = None
        self._periodic_task: asyncio.Task | None = None

        self.events_processed = 0
        self.events_duplicated = 0
        self.events_invalid = 0
        self.reconciliations = 0

    # =========================================================================
    # Configuration
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def subscribed_channels(self) -> set[str]:
        return set(self._subscribed)

    def channel_name(self, table: str) -> str:
        return f"{self._schema}_{table}_{self._branch_id}"

    def add_listener(self, entity_type: str, listener: ChangeListener) -> None:
        self._listeners.setdefault(entity_type, []).append(listener)

    def add_reconcile_hook(self, hook: ReconcileHook) -> None:
        """Called on every reconciliation, before the views are refetched."""
        self._reconcile_hooks.append(hook)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> ConnectionState:
        """
        Subscribe every watched collection and start periodic reconciliation.

        A subscription that fails or exceeds its bounded wait leaves the router
        degraded and schedules a reconnect. Views keep their last snapshot.
        """
        await self._subscribe_missing()
        if len(self._subscribed) == len(self._collections):
            self._set_state(ConnectionState.CONNECTED)
        else:
            self._set_state(ConnectionState.DEGRADED)
            self._ensure_reconnect()

        await self._views.refresh_all()
        if self._periodic_task is None:
            self._periodic_task = asyncio.create_task(self._periodic_reconciliation())
        return self._state

    async def stop(self) -> None:
        for task in (self._reconnect_task, self._periodic_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reconnect_task = None
        self._periodic_task = None

        for table in self._collections:
            channel = self.channel_name(table)
            if channel in self._subscribed:
                await self._stream.unsubscribe(channel)
        self._subscribed.clear()
        self._set_state(ConnectionState.DISCONNECTED)

    async def connection_lost(self) -> None:
        """The stream dropped. Resubscribe with backoff, then reconcile."""
        self._subscribed.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        self._ensure_reconnect()

    async def connection_restored(self) -> None:
        """The stream came back on its own. Reconcile the gap."""
        self._set_state(ConnectionState.CONNECTED)
        await self.reconcile()

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        log = logger.info if state == ConnectionState.CONNECTED else logger.warning
        log("Change stream state changed", from_state=self._state.value, to_state=state.value, branch_id=self._branch_id)
        self._state = state

    async def _subscribe_one(self, table: str) -> None:
        channel = self.channel_name(table)

        async def handler(payload: dict) -> None:
            await self.handle_payload(payload)

        try:
            await asyncio.wait_for(
                self._stream.subscribe(channel, self._schema, table, self._branch_id, handler),
                timeout=self._subscription_timeout,
            )
        except asyncio.TimeoutError:
            raise SubscriptionTimeoutError(channel, self._subscription_timeout) from None
        except (ConnectionError, OSError) as e:
            raise ExternalFailure("change_stream", f"Subscription to {channel} failed: {e}", channel=channel) from e
        self._subscribed.add(channel)
        logger.debug("Subscribed to changes", channel=channel)

    async def _subscribe_missing(self) -> bool:
        """Subscribe every collection not yet subscribed. True when all are."""
        for table in self._collections:
            if self.channel_name(table) in self._subscribed:
                continue
            try:
                await self._subscribe_one(table)
            except ExternalFailure:
                logger.warning("Subscription degraded", table=table, branch_id=self._branch_id)
        return len(self._subscribed) == len(self._collections)

    def _ensure_reconnect(self) -> None:
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        for attempt in range(self._retry_config.max_attempts):
            delay = calculate_delay_with_jitter(attempt, self._retry_config)
            logger.info("Resubscribing to change stream", attempt=attempt + 1, delay=round(delay, 2))
            await asyncio.sleep(delay)

            try:
                if await self._subscribe_missing():
                    self._set_state(ConnectionState.CONNECTED)
                    await self.reconcile()
                    return
            except Exception:
                logger.exception("Resubscription attempt failed", attempt=attempt + 1, branch_id=self._branch_id)

        self._set_state(ConnectionState.DEGRADED)
        logger.error(
            "Change stream reconnect attempts exhausted, relying on periodic reconciliation",
            attempts=self._retry_config.max_attempts,
            branch_id=self._branch_id,
        )

    async def _periodic_reconciliation(self) -> None:
        while True:
            await asyncio.sleep(self._reconciliation_interval)
            try:
                await self.reconcile()
            except Exception:
                logger.exception("Periodic reconciliation failed", branch_id=self._branch_id)

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile(self) -> None:
        """
        Refetch authoritative state for every watched view.

        Tentative states are dropped: whatever the store now holds replaces them.
        Listeners that failed on an external error run again first. A failing
        hook is logged and does not stop the refetch.
        """
        with operation_scope():
            await self._retry_failed_listeners()
            for hook in self._reconcile_hooks:
                try:
                    result = hook()
                    if asyncio.iscoroutine(result):
                        await result
                except AppException:
                    logger.warning("Reconcile hook failed", hook=getattr(hook, "__qualname__", repr(hook)), exc_info=True)
            dropped = self._views.discard_tentative()
            await self._views.refresh_all()
            self.reconciliations += 1
            logger.info("Views reconciled", branch_id=self._branch_id, tentative_dropped=dropped)

    # =========================================================================
    # Event handling
    # =========================================================================

    async def handle_payload(self, payload: dict) -> Notification | None:
        """Normalize a raw stream payload and route it. Malformed payloads are dropped."""
        try:
            event = ChangeEvent.from_payload(payload, branch_id=self._branch_id)
        except ValueError as e:
            self.events_invalid += 1
            logger.warning("Dropping malformed change payload", error=str(e))
            return None
        return await self.handle_event(event)

    async def handle_event(self, event: ChangeEvent) -> Notification | None:
        """
        Route one change event. Returns the notification published, if any.

        A replay of an already-seen version has no effect, except that listeners
        which failed on an external error for that version run again.
        """
        if not self._seen.add(event.dedup_key):
            if event.dedup_key in self._failed_listeners:
                await self._retry_failed_listeners([event.dedup_key])
                return None
            self.events_duplicated += 1
            logger.debug("Duplicate change dropped", entity_type=event.entity_type, entity_id=event.entity_id, version=event.version)
            return None

        with operation_scope():
            self.events_processed += 1

            failed = await self._run_listeners(event, self._listeners.get(event.entity_type, []))
            self._remember_failed(event, failed)

            self._views.reconcile(event.entity_type, event.entity_id)
            await self._views.refresh(dependent_views(event.entity_type))

            notification = build_notification(event, await self._stock_level_after(event))
            if notification is not None:
                await self._publish(notification)
            return notification

    async def _run_listeners(self, event: ChangeEvent, listeners: list[ChangeListener]) -> list[ChangeListener]:
        """Run listeners in order. Returns those that failed on an external error."""
        failed = []
        for listener in listeners:
            try:
                await listener(event)
            except ExternalFailure:
                logger.warning(
                    "Change listener failed, kept for retry",
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    version=event.version,
                    exc_info=True,
                )
                failed.append(listener)
            except AppException:
                logger.warning(
                    "Change listener failed",
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    exc_info=True,
                )
        return failed

    def _remember_failed(self, event: ChangeEvent, failed: list[ChangeListener]) -> None:
        if not failed:
            self._failed_listeners.pop(event.dedup_key, None)
            return
        self._failed_listeners[event.dedup_key] = (event, failed)
        if len(self._failed_listeners) > settings.dedup_cache_size:
            self._failed_listeners.popitem(last=False)

    async def _retry_failed_listeners(self, keys: Iterable[DedupKey] | None = None) -> None:
        for key in list(self._failed_listeners if keys is None else keys):
            pending = self._failed_listeners.get(key)
            if pending is None:
                continue
            event, listeners = pending
            with operation_scope():
                logger.info("Retrying failed change listeners", entity_type=event.entity_type, entity_id=event.entity_id)
                self._remember_failed(event, await self._run_listeners(event, listeners))
                await self._views.refresh(dependent_views(event.entity_type))

    async def _stock_level_after(self, event: ChangeEvent) -> int | None:
        if (
            self._stock_level is None
            or event.entity_type != Collections.STOCK_MOVEMENTS
            or event.change_kind != ChangeKind.INSERT
            or event.get("type") not in MovementType.DECREASING
        ):
            return None
        try:
            return await self._stock_level(str(event.get("product_id")))
        except ExternalFailure:
            logger.warning("Stock level unavailable for notification", product_id=event.get("product_id"))
            return None

    async def _publish(self, notification: Notification) -> None:
        try:
            await self._notifier.publish(notification)
        except AppException:
            logger.warning("Notifier rejected notification", kind=notification.kind, exc_info=True)
        else:
            logger.info("Notification published", kind=notification.kind, entity_id=notification.entity_id)
