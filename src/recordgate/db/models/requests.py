"""Disclosure request model.

A request names the subject, the purpose and the requested scope
(record types and visit-date range). Reviewers turn approved requests
into per-record grants.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import date  # noqa: TC003
from typing import TYPE_CHECKING

from sqlalchemy import Date, Enum, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from recordgate.db.models.base import (
    Base,
    JSONType,
    MediumString,
    OptionalTimestampTZ,
    RequestStatus,
    TimestampTZ,
    Urgency,
    enum_values,
)

if TYPE_CHECKING:
    from recordgate.db.models.allocations import Allocation
    from recordgate.db.models.grants import Grant


class DisclosureRequest(Base):
    """Request by a company to see records of one subject.

    Status moves PENDING -> APPROVED | REJECTED on review, and
    APPROVED -> FULFILLED once a grant is used up or all grants expire.
    """

    __tablename__ = "disclosure_requests"

    # Externally visible identifier, e.g. REQ-4F2A9C01B7DE
    request_id: Mapped[str] = mapped_column(String(32), primary_key=True)

    allocation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("allocations.allocation_id", ondelete="RESTRICT"),
        nullable=False,
    )
    company_id: Mapped[MediumString]
    subject_id: Mapped[MediumString]

    purpose: Mapped[str] = mapped_column(Text, nullable=False)

    # Requested scope; None means unrestricted on that axis
    record_types: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    date_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    date_to: Mapped[date | None] = mapped_column(Date, nullable=True)

    urgency: Mapped[Urgency] = mapped_column(
        Enum(
            Urgency,
            name="request_urgency",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=Urgency.MEDIUM,
    )
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    status: Mapped[RequestStatus] = mapped_column(
        Enum(
            RequestStatus,
            name="request_status",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=RequestStatus.PENDING,
    )

    submitted_at: Mapped[TimestampTZ]
    submitted_by: Mapped[MediumString]

    reviewed_at: Mapped[OptionalTimestampTZ]
    reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    response_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Default expiry for grants issued under this request
    expiry_at: Mapped[OptionalTimestampTZ]

    allocation: Mapped[Allocation] = relationship("Allocation", back_populates="requests")
    grants: Mapped[list[Grant]] = relationship(
        "Grant",
        back_populates="request",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_disclosure_requests_company_status", "company_id", "status"),
        Index("ix_disclosure_requests_subject", "subject_id"),
        Index("ix_disclosure_requests_submitted_at", "submitted_at"),
    )
