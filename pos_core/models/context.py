"""
Session context passed explicitly into every core operation.

There is no ambient "current user" or "current cart": callers hand the
identity provider's {actor_id, role, branch_id} to each service call.
"""

from pydantic import BaseModel, ConfigDict

from shared.config.constants import ROLE_PERMISSIONS, Roles


class SessionContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    actor_id: str
    role: str
    branch_id: str

    def can_access(self, resource: str, action: str) -> bool:
        return can_access(self.role, resource, action)


SYSTEM_ACTOR = "system"


def can_access(role: str, resource: str, action: str) -> bool:
    """Check the role allow-list. The owner is unrestricted, unknown roles get nothing."""
    if role == Roles.OWNER:
        return True
    allowed = ROLE_PERMISSIONS.get(role)
    if allowed is None:
        return False
    return f"{resource}.{action}" in allowed


def system_context(branch_id: str) -> SessionContext:
    """Context for transitions the core performs itself (auto-ready, auto-complete)."""
    return SessionContext(actor_id=SYSTEM_ACTOR, role=Roles.OWNER, branch_id=branch_id)
