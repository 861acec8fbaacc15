"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Portable column type annotations (PostgreSQL in production, SQLite in tests)
- Status enums shared by models and services
"""

import enum
import uuid
from datetime import UTC, datetime
from typing import Annotated

from sqlalchemy import JSON, DateTime, MetaData, String, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, mapped_column

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum members by value (lowercase), matching the migrations."""
    return [member.value for member in enum_cls]


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

# UUID primary key generated client-side so SQLite and PostgreSQL behave alike
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4),
]

TimestampTZ = Annotated[
    datetime,
    mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        server_default=func.now(),
    ),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

MediumString = Annotated[str, mapped_column(String(255))]


class Base(DeclarativeBase):
    """Declarative base for all RecordGate models."""

    metadata = metadata


def as_utc(value: datetime | None) -> datetime | None:
    """Return an aware UTC datetime.

    SQLite hands back naive datetimes even for timezone-aware columns;
    those are stored as UTC, so they are tagged rather than converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# =============================================================================
# Status Enums
# =============================================================================


class AllocationStatus(enum.Enum):
    """Allocation lifecycle states.

    States:
        PENDING: Proposed, awaiting an administrator decision
        APPROVED: Company may request records of the subject
        REJECTED: Terminal; a new proposal needs a different policy reference
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RequestStatus(enum.Enum):
    """Disclosure request lifecycle states.

    States:
        PENDING: Submitted, awaiting review
        APPROVED: Reviewed positively; grants may be issued
        REJECTED: Terminal; reviewer notes explain why
        FULFILLED: Terminal; a grant was used up or all grants expired
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FULFILLED = "fulfilled"


class Urgency(enum.Enum):
    """Requester-declared urgency of a disclosure request."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AuditSeverity(enum.Enum):
    """Severity attached to an audit event."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
