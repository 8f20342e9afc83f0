"""
Permission checks.

Every mutation category the core exposes calls require_access() first. The
allow-list itself lives in shared.config.constants.ROLE_PERMISSIONS.

Usage:
    require_access(ctx, "orders", "update")
"""

from pos_core.models.context import SessionContext
from shared.utils.exceptions import ForbiddenError


def require_access(ctx: SessionContext, resource: str, action: str) -> None:
    """Raise ForbiddenError unless the context's role may perform resource.action."""
    if not ctx.can_access(resource, action):
        raise ForbiddenError(
            f"{resource}.{action}",
            actor_id=ctx.actor_id,
            role=ctx.role,
            branch_id=ctx.branch_id,
        )
