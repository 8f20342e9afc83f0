"""
Tests for the change notification router, change events, notifications and
the view registry.
"""

import asyncio

import pytest

from pos_core.realtime import ChangeEvent, ChangeKind, ChangeNotificationRouter, ConnectionState, ViewRegistry, Views
from pos_core.realtime.notifications import build_notification
from pos_core.realtime.retry import RetryConfig, calculate_delay_with_jitter
from pos_core.realtime.router import SeenVersions
from pos_core.realtime.types import Severity
from shared.config.constants import Collections
from shared.utils.exceptions import NotFoundError, StoreError, TentativeStateConflictError

FAST_RETRY = RetryConfig(initial_delay=0.01, max_delay=0.02, jitter_factor=0.0, max_attempts=3)


class CountingLoader:
    """View loader that counts its calls. Set error to make it fail."""

    def __init__(self):
        self.calls = 0
        self.error: Exception | None = None

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return {"snapshot": self.calls}


@pytest.fixture
def loaders():
    return {name: CountingLoader() for name in (Views.ORDER_LIST, Views.KITCHEN_QUEUE, Views.TABLE_GRID, Views.PAYMENTS, Views.STOCK_LEVELS)}


@pytest.fixture
def views(loaders):
    registry = ViewRegistry()
    for name, loader in loaders.items():
        registry.register(name, loader)
    return registry


@pytest.fixture
def router(change_stream, views, notifier):
    return ChangeNotificationRouter(
        change_stream,
        views,
        notifier,
        "branch-1",
        subscription_timeout=0.05,
        reconciliation_interval=60,
        retry_config=FAST_RETRY,
    )


def order_update(order_id: str = "order-123456", version: int = 1, status: str = "confirmed", old: str = "pending") -> dict:
    return {
        "eventType": "UPDATE",
        "new": {"id": order_id, "status": status, "version": version},
        "old": {"id": order_id, "status": old, "version": version - 1},
    }


class TestChangeEvent:
    """Tests for payload normalization."""

    def test_version_from_payload_then_row(self):
        explicit = ChangeEvent.from_payload({"table": "orders", "eventType": "UPDATE", "new": {"id": 1, "version": 3}, "version": 9})
        from_row = ChangeEvent.from_payload({"table": "orders", "eventType": "UPDATE", "new": {"id": 1, "version": 3}})
        from_timestamp = ChangeEvent.from_payload(
            {"table": "payments", "eventType": "INSERT", "new": {"id": "p", "updated_at": "2024-01-01T00:00:00"}}
        )

        assert explicit.version == "9"
        assert from_row.version == "3"
        assert from_row.entity_id == "1"
        assert from_row.change_kind == ChangeKind.UPDATE
        assert from_timestamp.version == "2024-01-01T00:00:00"

    def test_created_at_only_versions_inserts(self):
        """An update carrying only created_at is versioned by content, since created_at never moves."""
        row = {"id": "tbl-1", "status": "occupied", "created_at": "2024-01-01T12:00:00+00:00"}

        inserted = ChangeEvent.from_payload({"table": "restaurant_tables", "eventType": "INSERT", "new": row})
        occupied = ChangeEvent.from_payload({"table": "restaurant_tables", "eventType": "UPDATE", "new": row})
        cleaning = ChangeEvent.from_payload(
            {"table": "restaurant_tables", "eventType": "UPDATE", "new": {**row, "status": "cleaning"}}
        )

        assert inserted.version == "2024-01-01T12:00:00+00:00"
        assert occupied.version != inserted.version
        assert occupied.dedup_key != cleaning.dedup_key

    def test_unversioned_rows_hash_identically(self):
        payload = {"table": "stock_movements", "eventType": "DELETE", "old": {"id": "m1", "quantity": 2}}

        assert ChangeEvent.from_payload(payload).dedup_key == ChangeEvent.from_payload(dict(payload)).dedup_key

    @pytest.mark.parametrize(
        "payload",
        [
            "not a dict",
            {"eventType": "INSERT", "new": {"id": 1}},
            {"table": "orders", "eventType": "TRUNCATE", "new": {"id": 1}},
            {"table": "orders", "eventType": "INSERT", "new": {"status": "pending"}},
        ],
    )
    def test_malformed_payloads(self, payload):
        with pytest.raises(ValueError):
            ChangeEvent.from_payload(payload)

    def test_payload_is_copied(self):
        """Mutating the raw payload afterwards does not change the event."""
        row = {"id": "o1", "status": "pending"}
        event = ChangeEvent.from_payload({"table": "orders", "eventType": "INSERT", "new": row})
        row["status"] = "cancelled"

        assert event.get("status") == "pending"

    def test_seen_versions_bounded(self):
        seen = SeenVersions(max_size=2)
        assert seen.add(("orders", "1", "1"))
        assert not seen.add(("orders", "1", "1"))
        seen.add(("orders", "2", "1"))
        seen.add(("orders", "3", "1"))

        assert len(seen) == 2
        assert ("orders", "1", "1") not in seen
        assert ("orders", "3", "1") in seen


class TestNotifications:
    """Tests for the curated notification rules."""

    def test_new_order(self):
        event = ChangeEvent.from_payload({"table": "orders", "eventType": "INSERT", "new": {"id": "order-abcdef", "status": "pending"}})

        notification = build_notification(event)

        assert notification.kind == "order_created"
        assert notification.title == "New order #abcdef received"

    def test_cancelled_order_warns(self):
        event = ChangeEvent.from_payload({"table": "orders", **order_update(status="cancelled", old="ready")})

        notification = build_notification(event)

        assert notification.kind == "order_cancelled"
        assert notification.severity == Severity.WARNING

    def test_order_update_without_status_change(self):
        event = ChangeEvent.from_payload({"table": "orders", **order_update(status="pending", old="pending")})
        assert build_notification(event) is None

    def test_payment_outcomes(self):
        completed = ChangeEvent.from_payload(
            {"table": "payments", "eventType": "UPDATE", "new": {"id": "p1", "status": "completed", "amount": "11.80"}, "old": {"id": "p1", "status": "pending"}}
        )
        failed = ChangeEvent.from_payload(
            {"table": "payments", "eventType": "UPDATE", "new": {"id": "p2", "status": "failed", "amount": "50"}, "old": {"id": "p2", "status": "pending"}}
        )

        assert build_notification(completed).title == "Payment received: $11.80"
        assert build_notification(failed).severity == Severity.ERROR

    def test_item_ready(self):
        event = ChangeEvent.from_payload(
            {"table": "order_items", "eventType": "UPDATE", "new": {"id": "i1", "status": "ready", "product_name": "Burger"}, "old": {"id": "i1", "status": "preparing"}}
        )
        assert build_notification(event).title == "Item ready: Burger"

    def test_stock_depleted_needs_level(self):
        event = ChangeEvent.from_payload(
            {"table": "stock_movements", "eventType": "INSERT", "new": {"id": "m1", "type": "sale", "product_id": "p1", "quantity": 2}}
        )

        assert build_notification(event, stock_level=3) is None
        notification = build_notification(event, stock_level=0)
        assert notification.kind == "stock_depleted"
        assert notification.entity_type == Collections.PRODUCTS

    def test_silent_events_never_notify(self):
        event = ChangeEvent.from_payload({"table": "orders", "bulk": True, **order_update()})

        assert event.is_silent
        assert build_notification(event) is None

    def test_unwatched_collection(self):
        event = ChangeEvent.from_payload({"table": "customers", "eventType": "INSERT", "new": {"id": "c1"}})
        assert build_notification(event) is None


class TestRouterRouting:
    """Tests for dedup, view invalidation and publishing."""

    @pytest.mark.asyncio
    async def test_replayed_event_has_no_effect(self, router, change_stream, notifier, loaders):
        """Delivering the same version twice yields one notification and one refresh."""
        await router.start()
        refreshes_before = loaders[Views.ORDER_LIST].calls

        await change_stream.emit("orders", order_update())
        await change_stream.emit("orders", order_update())

        assert notifier.kinds() == ["order_confirmed"]
        assert loaders[Views.ORDER_LIST].calls == refreshes_before + 1
        assert router.events_processed == 1
        assert router.events_duplicated == 1
        await router.stop()

    @pytest.mark.asyncio
    async def test_new_version_is_processed(self, router, notifier):
        await router.handle_payload({"table": "orders", **order_update(version=1)})
        await router.handle_payload({"table": "orders", **order_update(version=2, status="preparing", old="confirmed")})

        assert notifier.kinds() == ["order_confirmed", "order_preparing"]

    @pytest.mark.asyncio
    async def test_consecutive_table_updates_both_processed(self, router, notifier, loaders):
        """Two status changes of a row without updated_at are distinct versions, not a replay."""
        created = "2024-01-01T12:00:00+00:00"
        base = {"id": "tbl-1", "table_no": "7", "created_at": created}

        await router.handle_payload(
            {
                "table": "restaurant_tables",
                "eventType": "UPDATE",
                "new": {**base, "status": "occupied"},
                "old": {**base, "status": "available"},
            }
        )
        await router.handle_payload(
            {
                "table": "restaurant_tables",
                "eventType": "UPDATE",
                "new": {**base, "status": "cleaning"},
                "old": {**base, "status": "occupied"},
            }
        )

        assert notifier.kinds() == ["table_status_changed", "table_status_changed"]
        assert router.events_processed == 2
        assert router.events_duplicated == 0
        assert loaders[Views.TABLE_GRID].calls == 2

    @pytest.mark.asyncio
    async def test_only_dependent_views_refresh(self, router, loaders):
        await router.handle_payload(
            {"table": "restaurant_tables", "eventType": "UPDATE", "new": {"id": "t1", "status": "occupied", "table_no": "7"}, "old": {"id": "t1", "status": "available"}}
        )

        assert loaders[Views.TABLE_GRID].calls == 1
        assert loaders[Views.ORDER_LIST].calls == 0
        assert loaders[Views.STOCK_LEVELS].calls == 0

    @pytest.mark.asyncio
    async def test_silent_event_refreshes_without_notifying(self, router, notifier, loaders):
        await router.handle_payload({"table": "orders", "internal": True, **order_update()})

        assert notifier.notifications == []
        assert loaders[Views.KITCHEN_QUEUE].calls == 1

    @pytest.mark.asyncio
    async def test_malformed_payload_dropped(self, router, notifier):
        assert await router.handle_payload({"table": "orders", "eventType": "UPDATE", "new": {}}) is None
        assert router.events_invalid == 1
        assert notifier.notifications == []

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_stop_routing(self, router, notifier):
        async def broken(event):
            raise NotFoundError("Order", event.entity_id)

        router.add_listener("orders", broken)

        notification = await router.handle_payload({"table": "orders", **order_update()})

        assert notification.kind == "order_confirmed"
        assert notifier.kinds() == ["order_confirmed"]

    @pytest.mark.asyncio
    async def test_redelivery_retries_listener_after_store_failure(self, router, notifier):
        """A listener that hit a store error runs again on redelivery; the notification is not repeated."""
        calls = []

        async def flaky(event):
            calls.append(event.version)
            if len(calls) == 1:
                raise StoreError("get", "orders", "connection reset")

        async def steady(event):
            calls.append("steady")

        router.add_listener("orders", steady)
        router.add_listener("orders", flaky)

        await router.handle_payload({"table": "orders", **order_update()})
        await router.handle_payload({"table": "orders", **order_update()})
        await router.handle_payload({"table": "orders", **order_update()})

        assert calls == ["steady", "1", "1"]
        assert notifier.kinds() == ["order_confirmed"]
        assert router.events_duplicated == 1

    @pytest.mark.asyncio
    async def test_reconcile_retries_failed_listener(self, router):
        calls = []

        async def flaky(event):
            calls.append(event.entity_id)
            if len(calls) == 1:
                raise StoreError("get", "orders", "connection reset")

        router.add_listener("orders", flaky)
        await router.handle_payload({"table": "orders", **order_update(order_id="o-42")})

        await router.reconcile()
        await router.reconcile()

        assert calls == ["o-42", "o-42"]

    @pytest.mark.asyncio
    async def test_stock_depleted_uses_recomputed_level(self, change_stream, views, notifier):
        async def level_after(product_id):
            return 0

        router = ChangeNotificationRouter(change_stream, views, notifier, "branch-1", stock_level=level_after)

        await router.handle_payload(
            {"table": "stock_movements", "eventType": "INSERT", "new": {"id": "m9", "type": "sale", "product_id": "p1", "quantity": 1}}
        )

        assert notifier.kinds() == ["stock_depleted"]

    @pytest.mark.asyncio
    async def test_failed_view_keeps_last_snapshot(self, router, views, loaders):
        await views.refresh_all()
        loaders[Views.ORDER_LIST].error = StoreError("select", "orders", "timeout")

        await router.handle_payload({"table": "orders", **order_update()})

        assert views.get(Views.ORDER_LIST) == {"snapshot": 1}
        assert views.state(Views.ORDER_LIST).stale
        assert views.get(Views.KITCHEN_QUEUE) == {"snapshot": 2}


class TestRouterLifecycle:
    """Tests for subscriptions, degradation and reconciliation."""

    @pytest.mark.asyncio
    async def test_start_subscribes_every_collection(self, router, change_stream, loaders):
        state = await router.start()

        assert state == ConnectionState.CONNECTED
        assert "public_orders_branch-1" in router.subscribed_channels
        assert len(router.subscribed_channels) == 6
        assert all(loader.calls == 1 for loader in loaders.values())

        await router.stop()
        assert router.state == ConnectionState.DISCONNECTED
        assert change_stream.handlers == {}

    @pytest.mark.asyncio
    async def test_hanging_subscription_degrades(self, router, change_stream):
        """A subscription that never completes times out and the router reports degraded."""
        change_stream.hanging_tables.add("payments")

        state = await router.start()

        assert state == ConnectionState.DEGRADED
        assert "public_payments_branch-1" not in router.subscribed_channels
        assert "public_orders_branch-1" in router.subscribed_channels
        await router.stop()

    @pytest.mark.asyncio
    async def test_reconnect_then_reconcile(self, router, change_stream):
        change_stream.failing_tables.add("orders")
        assert await router.start() == ConnectionState.DEGRADED

        change_stream.failing_tables.clear()
        await asyncio.sleep(0.1)

        assert router.state == ConnectionState.CONNECTED
        assert router.reconciliations == 1
        await router.stop()

    @pytest.mark.asyncio
    async def test_reconnect_attempts_exhausted(self, router, change_stream):
        change_stream.failing_tables.add("orders")
        await router.start()

        await asyncio.sleep(0.15)

        assert router.state == ConnectionState.DEGRADED
        assert router.reconciliations == 0
        await router.stop()

    @pytest.mark.asyncio
    async def test_connection_lost_and_restored(self, router, change_stream):
        await router.start()

        await router.connection_lost()
        assert router.state == ConnectionState.DISCONNECTED
        await asyncio.sleep(0.05)

        assert router.state == ConnectionState.CONNECTED
        assert router.reconciliations == 1
        await router.stop()

    @pytest.mark.asyncio
    async def test_periodic_reconciliation(self, change_stream, views, notifier):
        router = ChangeNotificationRouter(change_stream, views, notifier, "branch-1", reconciliation_interval=0.02)
        await router.start()

        await asyncio.sleep(0.07)

        assert router.reconciliations >= 2
        await router.stop()

    @pytest.mark.asyncio
    async def test_periodic_reconciliation_survives_errors(self, change_stream, views, notifier):
        """An unexpected error in one round is logged and the next round still runs."""
        router = ChangeNotificationRouter(change_stream, views, notifier, "branch-1", reconciliation_interval=0.02)
        rounds = []

        def hook():
            rounds.append(len(rounds))
            if len(rounds) == 1:
                raise RuntimeError("malformed row")

        router.add_reconcile_hook(hook)
        await router.start()

        await asyncio.sleep(0.09)

        assert len(rounds) >= 2
        assert router.reconciliations >= 1
        await router.stop()

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_stop_refetch(self, router, loaders):
        calls = []

        async def broken():
            raise StoreError("select", "products", "timeout")

        router.add_reconcile_hook(broken)
        router.add_reconcile_hook(lambda: calls.append("after"))

        await router.reconcile()

        assert calls == ["after"]
        assert loaders[Views.ORDER_LIST].calls == 1
        assert router.reconciliations == 1

    @pytest.mark.asyncio
    async def test_reconcile_drops_tentative_and_runs_hooks(self, router, views, loaders):
        calls = []
        router.add_reconcile_hook(lambda: calls.append("sync"))

        async def async_hook():
            calls.append("async")

        router.add_reconcile_hook(async_hook)
        views.apply_tentative("orders", "o1", {"status": "ready"})

        await router.reconcile()

        assert calls == ["sync", "async"]
        assert views.tentative_count == 0
        assert loaders[Views.PAYMENTS].calls == 1


class TestTentativeState:
    """Tests for optimistic local changes."""

    def test_second_tentative_change_rejected(self, views):
        views.apply_tentative("orders", "o1", {"status": "ready"})

        with pytest.raises(TentativeStateConflictError):
            views.apply_tentative("orders", "o1", {"status": "served"})
        assert views.tentative("orders", "o1").value == {"status": "ready"}

    @pytest.mark.asyncio
    async def test_authoritative_event_replaces_tentative(self, router, views):
        views.apply_tentative("orders", "order-123456", {"status": "confirmed"})

        await router.handle_payload({"table": "orders", **order_update()})

        assert views.tentative("orders", "order-123456") is None
        views.apply_tentative("orders", "order-123456", {"status": "preparing"})

    @pytest.mark.asyncio
    async def test_failed_submission_drops_tentative(self, views):
        with pytest.raises(StoreError):
            async with views.optimistic("orders", "o1", {"status": "ready"}):
                raise StoreError("update", "orders", "connection reset")

        assert views.tentative("orders", "o1") is None

    def test_discard_by_type(self, views):
        views.apply_tentative("orders", "o1", 1)
        views.apply_tentative("payments", "p1", 2)

        assert views.discard_tentative("orders") == 1
        assert views.tentative_count == 1


class TestReconnectBackoff:
    """Tests for the jittered backoff."""

    def test_delay_grows_and_caps(self):
        config = RetryConfig(initial_delay=1.0, max_delay=30.0, jitter_factor=0.0)

        assert calculate_delay_with_jitter(0, config) == 1.0
        assert calculate_delay_with_jitter(3, config) == 8.0
        assert calculate_delay_with_jitter(10, config) == 30.0

    def test_jitter_bounds(self):
        config = RetryConfig(initial_delay=4.0, max_delay=4.0, jitter_factor=0.25)
        for _ in range(50):
            assert 3.0 <= calculate_delay_with_jitter(2, config) <= 5.0

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            RetryConfig(initial_delay=0)
        with pytest.raises(ValueError):
            RetryConfig(initial_delay=5, max_delay=1)
