"""Allocation registry.

An allocation links a requesting company to a subject under a policy
reference. Administrators propose and decide allocations; a company can only
submit disclosure requests for subjects it holds an APPROVED allocation for.

State machine:
    PENDING -> APPROVED
    PENDING -> REJECTED

The decision is a single conditional UPDATE on status = PENDING, so two
administrators deciding concurrently cannot both succeed.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from recordgate.db.models import Allocation, AllocationStatus, DisclosureRequest
from recordgate.services.audit_trail import AuditAction, AuditEvent, AuditTrail
from recordgate.services.errors import (
    ConflictError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from recordgate.services.notifications import (
    LoggingNotificationSender,
    NotificationSender,
    TemplateKind,
    notify_best_effort,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import date

    from sqlalchemy.ext.asyncio import AsyncSession

    from recordgate.services.context import ActorContext

logger = logging.getLogger(__name__)

RESOURCE_TYPE = "allocation"


def allocation_snapshot(allocation: Allocation) -> dict[str, Any]:
    """State of an allocation as recorded in audit events."""
    return {
        "company_id": allocation.company_id,
        "subject_id": allocation.subject_id,
        "policy_ref": allocation.policy_ref,
        "status": allocation.status,
        "coverage_start": allocation.coverage_start,
        "coverage_end": allocation.coverage_end,
        "notes": allocation.notes,
    }


class AllocationRegistry:
    """Service for company/subject allocations.

    Example:
        registry = AllocationRegistry(session)
        allocation = await registry.propose(
            admin,
            company_id="INS001",
            subject_id="PAT001",
            policy_ref="POL-2291",
        )
        await registry.decide(admin, allocation.allocation_id, approve=True)
        assert await registry.is_approved("INS001", "PAT001")
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        audit: AuditTrail | None = None,
        notifier: NotificationSender | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            session: SQLAlchemy async session for database operations.
            audit: Audit trail sharing the session (created if omitted).
            notifier: Notification sender (logging sender if omitted).
        """
        self._session = session
        self._audit = audit or AuditTrail(session)
        self._notifier = notifier or LoggingNotificationSender()

    async def propose(
        self,
        actor: ActorContext,
        company_id: str,
        subject_id: str,
        policy_ref: str,
        *,
        notes: str | None = None,
        coverage_start: date | None = None,
        coverage_end: date | None = None,
    ) -> Allocation:
        """Create a PENDING allocation.

        Raises:
            InvalidInputError: If an identifier is blank or the coverage window is inverted.
            ConflictError: If the (company, subject, policy) allocation already exists.
        """
        if not company_id or not subject_id or not policy_ref:
            raise InvalidInputError("company_id, subject_id and policy_ref are required")
        if coverage_start and coverage_end and coverage_end < coverage_start:
            raise InvalidInputError("Coverage end date precedes coverage start date")

        existing = await self._session.execute(
            select(Allocation.allocation_id).where(
                Allocation.company_id == company_id,
                Allocation.subject_id == subject_id,
                Allocation.policy_ref == policy_ref,
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(
                f"Allocation for company {company_id}, subject {subject_id} "
                f"and policy {policy_ref} already exists",
                company_id=company_id,
                subject_id=subject_id,
            )

        now = datetime.now(UTC)
        allocation = Allocation(
            allocation_id=uuid.uuid4(),
            company_id=company_id,
            subject_id=subject_id,
            policy_ref=policy_ref,
            coverage_start=coverage_start,
            coverage_end=coverage_end,
            status=AllocationStatus.PENDING,
            notes=notes,
            created_by=actor.actor_id,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(allocation)
                await self._session.flush()
        except IntegrityError as e:
            raise ConflictError(
                f"Allocation for company {company_id}, subject {subject_id} "
                f"and policy {policy_ref} already exists",
                company_id=company_id,
                subject_id=subject_id,
            ) from e

        logger.info(
            "Allocation proposed",
            extra={
                "allocation_id": str(allocation.allocation_id),
                "company_id": company_id,
                "subject_id": subject_id,
            },
        )

        await self._audit.record(
            AuditEvent(
                actor=actor,
                action=AuditAction.CREATE,
                resource_type=RESOURCE_TYPE,
                resource_id=str(allocation.allocation_id),
                after=allocation_snapshot(allocation),
            )
        )
        await notify_best_effort(
            self._notifier,
            company_id,
            TemplateKind.ALLOCATION_PROPOSED,
            {
                "allocation_id": str(allocation.allocation_id),
                "subject_id": subject_id,
                "policy_ref": policy_ref,
            },
        )
        return allocation

    async def decide(
        self,
        actor: ActorContext,
        allocation_id: uuid.UUID,
        *,
        approve: bool,
        notes: str | None = None,
    ) -> Allocation:
        """Approve or reject a PENDING allocation.

        Raises:
            NotFoundError: If the allocation does not exist.
            InvalidStateError: If the allocation was already decided.
        """
        now = datetime.now(UTC)
        new_status = AllocationStatus.APPROVED if approve else AllocationStatus.REJECTED

        values: dict[str, Any] = {
            "status": new_status,
            "decided_by": actor.actor_id,
            "decided_at": now,
            "updated_at": now,
        }
        if notes is not None:
            values["notes"] = notes

        result = await self._session.execute(
            update(Allocation)
            .where(
                Allocation.allocation_id == allocation_id,
                Allocation.status == AllocationStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            current = await self.get(allocation_id)
            raise InvalidStateError(RESOURCE_TYPE, allocation_id, current.status, "decide")

        allocation = await self._load(allocation_id)

        logger.info(
            "Allocation decided: allocation_id=%s, status=%s, by=%s",
            allocation_id,
            new_status.value,
            actor.actor_id,
        )

        await self._audit.record(
            AuditEvent(
                actor=actor,
                action=AuditAction.APPROVE if approve else AuditAction.REJECT,
                resource_type=RESOURCE_TYPE,
                resource_id=str(allocation_id),
                before={"status": AllocationStatus.PENDING},
                after=allocation_snapshot(allocation),
            )
        )
        await notify_best_effort(
            self._notifier,
            allocation.company_id,
            TemplateKind.ALLOCATION_DECIDED,
            {
                "allocation_id": str(allocation_id),
                "subject_id": allocation.subject_id,
                "status": new_status.value,
                "notes": notes,
            },
        )
        return allocation

    async def is_approved(self, company_id: str, subject_id: str) -> bool:
        """Check whether the company holds an APPROVED allocation for the subject."""
        return await self.find_approved(company_id, subject_id) is not None

    async def find_approved(self, company_id: str, subject_id: str) -> Allocation | None:
        """Get the most recently approved allocation for (company, subject)."""
        query = (
            select(Allocation)
            .where(
                Allocation.company_id == company_id,
                Allocation.subject_id == subject_id,
                Allocation.status == AllocationStatus.APPROVED,
            )
            .order_by(Allocation.decided_at.desc())
            .limit(1)
        )
        result = await self._session.execute(query)
        return result.scalars().first()

    async def get(self, allocation_id: uuid.UUID) -> Allocation:
        """Get an allocation by id.

        Raises:
            NotFoundError: If the allocation does not exist.
        """
        allocation = await self._session.get(Allocation, allocation_id, populate_existing=True)
        if allocation is None:
            raise NotFoundError(RESOURCE_TYPE, allocation_id)
        return allocation

    async def list_allocations(
        self,
        *,
        company_id: str | None = None,
        subject_id: str | None = None,
        status: AllocationStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Sequence[Allocation]:
        """List allocations, newest first."""
        query = select(Allocation)
        if company_id is not None:
            query = query.where(Allocation.company_id == company_id)
        if subject_id is not None:
            query = query.where(Allocation.subject_id == subject_id)
        if status is not None:
            query = query.where(Allocation.status == status)
        query = query.order_by(Allocation.created_at.desc()).limit(limit).offset(offset)
        query = query.execution_options(populate_existing=True)

        result = await self._session.execute(query)
        return result.scalars().all()

    async def remove(self, actor: ActorContext, allocation_id: uuid.UUID) -> None:
        """Delete an allocation that no disclosure request references.

        Raises:
            NotFoundError: If the allocation does not exist.
            ConflictError: If disclosure requests reference the allocation.
        """
        allocation = await self.get(allocation_id)

        result = await self._session.execute(
            select(func.count())
            .select_from(DisclosureRequest)
            .where(DisclosureRequest.allocation_id == allocation_id)
        )
        referencing = result.scalar_one()
        if referencing:
            raise ConflictError(
                f"Allocation {allocation_id} is referenced by {referencing} disclosure request(s)",
                allocation_id=str(allocation_id),
            )

        before = allocation_snapshot(allocation)
        await self._session.delete(allocation)
        await self._session.flush()

        logger.info("Allocation deleted: allocation_id=%s, by=%s", allocation_id, actor.actor_id)

        await self._audit.record(
            AuditEvent(
                actor=actor,
                action=AuditAction.DELETE,
                resource_type=RESOURCE_TYPE,
                resource_id=str(allocation_id),
                before=before,
            )
        )

    async def _load(self, allocation_id: uuid.UUID) -> Allocation:
        """Re-read an allocation after a bulk UPDATE."""
        result = await self._session.execute(
            select(Allocation)
            .where(Allocation.allocation_id == allocation_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
