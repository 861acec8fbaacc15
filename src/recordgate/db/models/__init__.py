"""SQLAlchemy ORM models for RecordGate.

- base: Common metadata, type annotations and status enums
- allocations: Company/subject allocations
- requests: Disclosure requests
- grants: Per-record grants
- audit: Audit events
"""

from recordgate.db.models.allocations import Allocation
from recordgate.db.models.audit import AuditEventRecord
from recordgate.db.models.base import (
    AllocationStatus,
    AuditSeverity,
    Base,
    RequestStatus,
    Urgency,
    as_utc,
    metadata,
)
from recordgate.db.models.grants import Grant
from recordgate.db.models.requests import DisclosureRequest

__all__ = [
    "Allocation",
    "AllocationStatus",
    "AuditEventRecord",
    "AuditSeverity",
    "Base",
    "DisclosureRequest",
    "Grant",
    "RequestStatus",
    "Urgency",
    "as_utc",
    "metadata",
]
