"""Allocation model: approved linkage between a requesting company and a subject.

An allocation is the precondition for any disclosure request. Administrators
propose and decide allocations; requesting parties never change them.
"""

from __future__ import annotations

from datetime import date  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import TYPE_CHECKING

from sqlalchemy import Date, Enum, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from recordgate.db.models.base import (
    AllocationStatus,
    Base,
    MediumString,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_values,
)

if TYPE_CHECKING:
    from recordgate.db.models.requests import DisclosureRequest


class Allocation(Base):
    """Company/subject allocation under a policy reference.

    Unique per (company_id, subject_id, policy_ref). Only PENDING allocations
    may be decided; the decision is recorded with its actor and time.
    """

    __tablename__ = "allocations"

    allocation_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    company_id: Mapped[MediumString]
    subject_id: Mapped[MediumString]
    policy_ref: Mapped[str] = mapped_column(String(100), nullable=False)

    # Coverage window of the policy (informational)
    coverage_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    coverage_end: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[AllocationStatus] = mapped_column(
        Enum(
            AllocationStatus,
            name="allocation_status",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=AllocationStatus.PENDING,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[MediumString]
    decided_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    decided_at: Mapped[OptionalTimestampTZ]

    requests: Mapped[list[DisclosureRequest]] = relationship(
        "DisclosureRequest",
        back_populates="allocation",
        passive_deletes="all",
    )

    __table_args__ = (
        UniqueConstraint(
            "company_id",
            "subject_id",
            "policy_ref",
            name="uq_allocations_company_subject_policy",
        ),
        Index("ix_allocations_company_subject_status", "company_id", "subject_id", "status"),
    )
