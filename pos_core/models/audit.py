"""
Activity log record sent to the audit sink.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from pos_core.models.order import utcnow


class AuditRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    actor: str
    branch: str | None
    action: str
    resource_type: str
    resource_id: str
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def from_status(self) -> str | None:
        return self.details.get("from")

    @property
    def to_status(self) -> str | None:
        return self.details.get("to")
