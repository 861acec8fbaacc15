"""Grant model: per-record permission bounded by expiry and read quota."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from recordgate.db.models.base import (
    Base,
    MediumString,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
    as_utc,
)

if TYPE_CHECKING:
    from datetime import datetime

    from recordgate.db.models.requests import DisclosureRequest


class Grant(Base):
    """Permission to read one record under one disclosure request.

    A grant is live while granted_until is unset or in the future and
    access_count is below max_access_count. Revocation exhausts the quota.
    """

    __tablename__ = "grants"

    grant_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    request_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("disclosure_requests.request_id", ondelete="CASCADE"),
        nullable=False,
    )
    record_id: Mapped[MediumString]
    approved_by: Mapped[MediumString]

    # Absolute UTC expiry; NULL means no time bound
    granted_until: Mapped[OptionalTimestampTZ]

    access_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_access_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    last_accessed_at: Mapped[OptionalTimestampTZ]
    revoked_at: Mapped[OptionalTimestampTZ]

    request: Mapped[DisclosureRequest] = relationship("DisclosureRequest", back_populates="grants")

    __table_args__ = (
        UniqueConstraint("request_id", "record_id", name="uq_grants_request_record"),
        CheckConstraint("access_count <= max_access_count", name="access_within_quota"),
        CheckConstraint("max_access_count >= 1", name="quota_positive"),
        CheckConstraint("access_count >= 0", name="access_non_negative"),
        Index("ix_grants_request", "request_id"),
    )

    def is_live(self, now: datetime) -> bool:
        """Check whether the grant would still allow a read at ``now``."""
        until = as_utc(self.granted_until)
        return (until is None or now < until) and self.access_count < self.max_access_count
