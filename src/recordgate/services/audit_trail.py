"""Append-only audit trail for disclosure workflow actions.

Every state transition and every sensitive read writes one audit event.
Writing is best-effort: a failed audit insert is logged and swallowed so it
never changes the outcome of the audited operation. Each insert runs in its
own SAVEPOINT, so a failure cannot poison the caller's transaction.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from recordgate.db.models import AuditEventRecord, AuditSeverity

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from recordgate.services.context import ActorContext

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 500


class AuditAction(str, enum.Enum):
    """Audited actions."""

    CREATE = "create"
    APPROVE = "approve"
    REJECT = "reject"
    DELETE = "delete"
    GRANT = "grant"
    VIEW = "view"
    ACCESS_DENIED = "access_denied"
    REVOKE = "revoke"
    FULFIL = "fulfil"


@dataclass(frozen=True, slots=True)
class AuditEvent:
    """Audit event to be recorded.

    Attributes:
        actor: Who performed the action.
        action: What was done.
        resource_type: Kind of resource (allocation, disclosure_request, grant, record).
        resource_id: Identifier of the resource.
        before: State snapshot before the action.
        after: State snapshot after the action.
        details: Additional context (denial reason, record id, ...).
        severity: INFO for normal actions, WARNING for denials.
    """

    actor: ActorContext
    action: AuditAction
    resource_type: str
    resource_id: str
    before: Mapping[str, Any] | None = None
    after: Mapping[str, Any] | None = None
    details: Mapping[str, Any] | None = None
    severity: AuditSeverity = AuditSeverity.INFO


def jsonable(value: Any) -> Any:
    """Convert a snapshot value into something the JSON column accepts."""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        return [jsonable(v) for v in value]
    return value


class AuditTrail:
    """Writer and reader for audit events.

    Example:
        trail = AuditTrail(session)
        await trail.record(
            AuditEvent(
                actor=actor,
                action=AuditAction.VIEW,
                resource_type="record",
                resource_id="REC-001",
                details={"request_id": "REQ-4F2A9C01B7DE"},
            )
        )
    """

    def __init__(self, session: AsyncSession, *, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        """Initialize the audit trail.

        Args:
            session: SQLAlchemy async session shared with the audited operation.
            page_size: Number of events a query returns when no limit is given.
        """
        self._session = session
        self._page_size = _clamp(page_size)

    async def record(self, event: AuditEvent) -> uuid.UUID | None:
        """Persist an audit event.

        Returns:
            The new event id, or None if the write failed. Never raises.
        """
        try:
            row = AuditEventRecord(
                event_id=uuid.uuid4(),
                created_at=datetime.now(UTC),
                actor_id=event.actor.actor_id,
                actor_role=event.actor.role_name,
                action=event.action.value,
                resource_type=event.resource_type,
                resource_id=str(event.resource_id),
                before=jsonable(dict(event.before)) if event.before is not None else None,
                after=jsonable(dict(event.after)) if event.after is not None else None,
                details=jsonable(dict(event.details)) if event.details is not None else None,
                severity=event.severity,
            )
            async with self._session.begin_nested():
                self._session.add(row)
                await self._session.flush()
        except Exception:
            logger.warning(
                "Failed to record audit event: action=%s, resource=%s/%s, actor=%s",
                event.action.value,
                event.resource_type,
                event.resource_id,
                event.actor.actor_id,
                exc_info=True,
            )
            return None

        return row.event_id

    async def query(
        self,
        resource_type: str,
        resource_id: str,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> Sequence[AuditEventRecord]:
        """Get events for one resource, newest first."""
        query = (
            select(AuditEventRecord)
            .where(
                AuditEventRecord.resource_type == resource_type,
                AuditEventRecord.resource_id == str(resource_id),
            )
            .order_by(AuditEventRecord.created_at.desc(), AuditEventRecord.event_id.desc())
            .limit(self._page_size if limit is None else _clamp(limit))
            .offset(max(offset, 0))
        )
        result = await self._session.execute(query)
        return result.scalars().all()

    async def query_by_actor(
        self,
        actor_id: str,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> Sequence[AuditEventRecord]:
        """Get events performed by one actor, newest first."""
        query = (
            select(AuditEventRecord)
            .where(AuditEventRecord.actor_id == actor_id)
            .order_by(AuditEventRecord.created_at.desc(), AuditEventRecord.event_id.desc())
            .limit(self._page_size if limit is None else _clamp(limit))
            .offset(max(offset, 0))
        )
        result = await self._session.execute(query)
        return result.scalars().all()


def _clamp(limit: int) -> int:
    return max(1, min(limit, MAX_PAGE_SIZE))
