"""Audit event model.

Rows are inserted once and never updated or deleted by the application.
"""

from __future__ import annotations

from sqlalchemy import Enum, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from recordgate.db.models.base import (
    AuditSeverity,
    Base,
    JSONType,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_values,
)


class AuditEventRecord(Base):
    """One audited action on a resource.

    before/after carry the relevant state snapshot for transitions;
    details carries free-form context such as a denial reason.
    """

    __tablename__ = "audit_events"

    event_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(50), nullable=False)

    # create, approve, reject, grant, view, access_denied, revoke, fulfil, delete
    action: Mapped[str] = mapped_column(String(50), nullable=False)

    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)

    before: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    after: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    severity: Mapped[AuditSeverity] = mapped_column(
        Enum(
            AuditSeverity,
            name="audit_severity",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=AuditSeverity.INFO,
    )

    __table_args__ = (
        Index("ix_audit_events_resource", "resource_type", "resource_id", "created_at"),
        Index("ix_audit_events_actor", "actor_id", "created_at"),
    )
