"""
Audit Trail Models.

Pydantic-validated representation of a single security audit entry and
the options for a human-readable data export.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from securegate.models.enums import AuditEventType, ExportCategory

__all__ = ["AuditEvent", "ExportOptions"]


class AuditEvent(BaseModel):
    """Schema-validated, immutable audit trail entry.

    ``id`` is time-ordered within a process; insertion order in the local
    sequence is the authoritative order.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    user_id: str = Field(alias="userId")
    user_email: str = Field(alias="userEmail")
    event_type: AuditEventType = Field(alias="eventType")
    resource_type: Optional[str] = Field(default=None, alias="resourceType")
    resource_id: Optional[str] = Field(default=None, alias="resourceId")
    timestamp: datetime
    ip_address: Optional[str] = Field(default=None, alias="ipAddress")
    device_info: str = Field(alias="deviceInfo")


class ExportOptions(BaseModel):
    """Which sections to include in ``AuditTrail.export_as_text``."""

    categories: frozenset[ExportCategory] = Field(
        default_factory=lambda: frozenset(ExportCategory)
    )

    def includes(self, category: ExportCategory) -> bool:
        return category in self.categories
