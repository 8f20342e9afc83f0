"""
Table Domain Service.
"""

from pos_core.models import RestaurantTable, SessionContext
from pos_core.models.order import utcnow
from pos_core.ports import TransactionalStore, unwrap
from pos_core.services.audit import ActivityLog
from pos_core.services.permissions import require_access
from shared.config.constants import Collections, TableStatus
from shared.config.logging import get_logger
from shared.infrastructure.locks import EntityLockManager
from shared.utils.exceptions import NotFoundError, ValidationError

logger = get_logger(__name__)


class TableService:
    """Floor plan table status."""

    def __init__(self, store: TransactionalStore, activity_log: ActivityLog, locks: EntityLockManager):
        self._store = store
        self._activity_log = activity_log
        self._locks = locks

    async def get_table(self, table_id: str) -> RestaurantTable:
        result = await self._store.get(Collections.RESTAURANT_TABLES, table_id)
        row = unwrap(result, "get", Collections.RESTAURANT_TABLES, table_id=table_id)
        if not row:
            raise NotFoundError("Table", table_id)
        return RestaurantTable.model_validate(row)

    async def list_tables(self, branch_id: str) -> list[RestaurantTable]:
        result = await self._store.select(
            Collections.RESTAURANT_TABLES,
            filters={"branch_id": branch_id},
            order_by="table_no",
        )
        rows = unwrap(result, "select", Collections.RESTAURANT_TABLES, branch_id=branch_id)
        return [RestaurantTable.model_validate(row) for row in rows or []]

    async def set_status(self, ctx: SessionContext, table_id: str, status: str) -> RestaurantTable:
        """
        Set a table's status.

        Setting the status a table already has is a no-op and writes no audit
        record.
        """
        require_access(ctx, "tables", "update")
        if status not in TableStatus.ALL:
            raise ValidationError(f"Invalid table status '{status}'", field="status", table_id=table_id)

        async with self._locks.hold(Collections.RESTAURANT_TABLES, table_id):
            table = await self.get_table(table_id)
            if table.status == status:
                return table

            result = await self._store.update(
                Collections.RESTAURANT_TABLES,
                table_id,
                {"status": status, "updated_at": utcnow().isoformat()},
            )
            row = unwrap(result, "update", Collections.RESTAURANT_TABLES, table_id=table_id)

        await self._activity_log.log_transition(
            ctx,
            action="table_status_changed",
            resource_type="table",
            resource_id=table_id,
            from_status=table.status,
            to_status=status,
            table_no=table.table_no,
        )
        logger.info("Table status changed", table_id=table_id, from_status=table.status, to_status=status)
        return RestaurantTable.model_validate(row)
