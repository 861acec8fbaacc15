"""Disclosure request ledger.

Tracks the lifecycle of requests made by a company to see records of one
subject:

    PENDING -> APPROVED -> FULFILLED
    PENDING -> REJECTED

Submission requires an APPROVED allocation for (company, subject). Review and
fulfilment are single conditional UPDATEs on the expected current status; the
affected-row count decides who won when callers race.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.exc import IntegrityError

from recordgate.db.models import DisclosureRequest, Grant, RequestStatus, Urgency, as_utc
from recordgate.services.allocations import AllocationRegistry
from recordgate.services.audit_trail import AuditAction, AuditEvent, AuditTrail
from recordgate.services.context import SYSTEM_ACTOR
from recordgate.services.errors import (
    DisclosurePermissionError,
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
    from collections.abc import Mapping, Sequence
    from datetime import date

    from sqlalchemy.ext.asyncio import AsyncSession

    from recordgate.services.context import ActorContext

logger = logging.getLogger(__name__)

RESOURCE_TYPE = "disclosure_request"
REQUEST_ID_PREFIX = "REQ-"
REQUEST_ID_HEX_BYTES = 6
REQUEST_ID_ATTEMPTS = 3
DEFAULT_REVIEWER_RECIPIENT = "records-office"


@dataclass(frozen=True, slots=True)
class RequestScope:
    """Records a request asks for.

    Attributes:
        record_types: Accepted record types (None: any type).
        date_from: Earliest visit date, inclusive (None: unbounded).
        date_to: Latest visit date, inclusive (None: unbounded).
    """

    record_types: tuple[str, ...] | None = None
    date_from: date | None = None
    date_to: date | None = None


def generate_request_id() -> str:
    """Generate an externally visible request id such as REQ-4F2A9C01B7DE."""
    return REQUEST_ID_PREFIX + secrets.token_hex(REQUEST_ID_HEX_BYTES).upper()


def request_snapshot(request: DisclosureRequest) -> dict[str, Any]:
    """State of a request as recorded in audit events."""
    return {
        "company_id": request.company_id,
        "subject_id": request.subject_id,
        "status": request.status,
        "urgency": request.urgency,
        "record_types": request.record_types,
        "date_from": request.date_from,
        "date_to": request.date_to,
        "expiry_at": request.expiry_at,
        "response_notes": request.response_notes,
    }


class DisclosureRequestLedger:
    """Service for the disclosure request lifecycle.

    Example:
        ledger = DisclosureRequestLedger(session)
        request = await ledger.submit(
            insurer,
            company_id="INS001",
            subject_id="PAT001",
            purpose="Claim 7781 assessment",
            scope=RequestScope(record_types=("lab_result",)),
        )
        await ledger.review(admin, request.request_id, approve=True)
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        allocations: AllocationRegistry | None = None,
        audit: AuditTrail | None = None,
        notifier: NotificationSender | None = None,
        reviewer_recipient: str = DEFAULT_REVIEWER_RECIPIENT,
    ) -> None:
        """Initialize the ledger.

        Args:
            session: SQLAlchemy async session for database operations.
            allocations: Registry used to check the allocation precondition.
            audit: Audit trail sharing the session (created if omitted).
            notifier: Notification sender (logging sender if omitted).
            reviewer_recipient: Mailbox notified of new submissions.
        """
        self._session = session
        self._audit = audit or AuditTrail(session)
        self._notifier = notifier or LoggingNotificationSender()
        self._allocations = allocations or AllocationRegistry(
            session, audit=self._audit, notifier=self._notifier
        )
        self._reviewer_recipient = reviewer_recipient

    async def submit(
        self,
        actor: ActorContext,
        company_id: str,
        subject_id: str,
        purpose: str,
        *,
        scope: RequestScope | None = None,
        urgency: Urgency = Urgency.MEDIUM,
        details: Mapping[str, Any] | None = None,
    ) -> DisclosureRequest:
        """Submit a PENDING disclosure request.

        Raises:
            InvalidInputError: If the purpose is blank or the date range is inverted.
            DisclosurePermissionError: If the company holds no APPROVED allocation
                for the subject.
        """
        scope = scope or RequestScope()
        if not purpose or not purpose.strip():
            raise InvalidInputError("A purpose is required for a disclosure request")
        if scope.date_from and scope.date_to and scope.date_to < scope.date_from:
            raise InvalidInputError("Requested date range ends before it starts")

        allocation = await self._allocations.find_approved(company_id, subject_id)
        if allocation is None:
            logger.warning(
                "Disclosure request refused: no approved allocation",
                extra={"company_id": company_id, "subject_id": subject_id},
            )
            raise DisclosurePermissionError(
                f"Company {company_id} has no approved allocation for subject {subject_id}",
                company_id=company_id,
                subject_id=subject_id,
            )

        now = datetime.now(UTC)
        request = await self._insert(
            allocation_id=allocation.allocation_id,
            company_id=company_id,
            subject_id=subject_id,
            purpose=purpose.strip(),
            record_types=list(scope.record_types) if scope.record_types is not None else None,
            date_from=scope.date_from,
            date_to=scope.date_to,
            urgency=urgency,
            details=dict(details) if details is not None else None,
            status=RequestStatus.PENDING,
            submitted_at=now,
            submitted_by=actor.actor_id,
        )

        logger.info(
            "Disclosure request submitted",
            extra={
                "request_id": request.request_id,
                "company_id": company_id,
                "subject_id": subject_id,
                "urgency": urgency.value,
            },
        )

        await self._audit.record(
            AuditEvent(
                actor=actor,
                action=AuditAction.CREATE,
                resource_type=RESOURCE_TYPE,
                resource_id=request.request_id,
                after=request_snapshot(request),
            )
        )
        await notify_best_effort(
            self._notifier,
            self._reviewer_recipient,
            TemplateKind.REQUEST_SUBMITTED,
            {
                "request_id": request.request_id,
                "company_id": company_id,
                "subject_id": subject_id,
                "urgency": urgency.value,
            },
        )
        return request

    async def review(
        self,
        actor: ActorContext,
        request_id: str,
        *,
        approve: bool,
        notes: str | None = None,
        expiry_at: datetime | None = None,
    ) -> DisclosureRequest:
        """Approve or reject a PENDING request.

        Args:
            actor: Reviewer.
            request_id: Request to review.
            approve: True to approve, False to reject.
            notes: Reviewer notes; required when rejecting.
            expiry_at: Default expiry for grants issued under an approved request.

        Raises:
            InvalidInputError: If rejecting without notes or the expiry is in the past.
            NotFoundError: If the request does not exist.
            InvalidStateError: If the request was already reviewed.
        """
        now = datetime.now(UTC)
        if not approve and (notes is None or not notes.strip()):
            raise InvalidInputError("Rejecting a disclosure request requires notes")
        if expiry_at is not None and as_utc(expiry_at) <= now:
            raise InvalidInputError("Request expiry must be in the future")

        new_status = RequestStatus.APPROVED if approve else RequestStatus.REJECTED
        values: dict[str, Any] = {
            "status": new_status,
            "reviewed_at": now,
            "reviewed_by": actor.actor_id,
            "response_notes": notes,
        }
        if approve and expiry_at is not None:
            values["expiry_at"] = as_utc(expiry_at)

        result = await self._session.execute(
            update(DisclosureRequest)
            .where(
                DisclosureRequest.request_id == request_id,
                DisclosureRequest.status == RequestStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            current = await self.get(request_id)
            raise InvalidStateError(RESOURCE_TYPE, request_id, current.status, "review")

        request = await self._load(request_id)

        logger.info(
            "Disclosure request reviewed: request_id=%s, status=%s, by=%s",
            request_id,
            new_status.value,
            actor.actor_id,
        )

        await self._audit.record(
            AuditEvent(
                actor=actor,
                action=AuditAction.APPROVE if approve else AuditAction.REJECT,
                resource_type=RESOURCE_TYPE,
                resource_id=request_id,
                before={"status": RequestStatus.PENDING},
                after=request_snapshot(request),
            )
        )
        await notify_best_effort(
            self._notifier,
            request.company_id,
            TemplateKind.REQUEST_REVIEWED,
            {
                "request_id": request_id,
                "status": new_status.value,
                "notes": notes,
                "expiry_at": request.expiry_at.isoformat() if request.expiry_at else None,
            },
        )
        return request

    async def get(self, request_id: str) -> DisclosureRequest:
        """Get a request by id.

        Raises:
            NotFoundError: If the request does not exist.
        """
        request = await self.find(request_id)
        if request is None:
            raise NotFoundError(RESOURCE_TYPE, request_id)
        return request

    async def find(self, request_id: str) -> DisclosureRequest | None:
        """Get a request by id, or None."""
        return await self._session.get(DisclosureRequest, request_id, populate_existing=True)

    async def list_requests(
        self,
        *,
        company_id: str | None = None,
        subject_id: str | None = None,
        status: RequestStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Sequence[DisclosureRequest]:
        """List requests, newest first."""
        query = select(DisclosureRequest)
        if company_id is not None:
            query = query.where(DisclosureRequest.company_id == company_id)
        if subject_id is not None:
            query = query.where(DisclosureRequest.subject_id == subject_id)
        if status is not None:
            query = query.where(DisclosureRequest.status == status)
        query = query.order_by(DisclosureRequest.submitted_at.desc()).limit(limit).offset(offset)
        query = query.execution_options(populate_existing=True)

        result = await self._session.execute(query)
        return result.scalars().all()

    async def mark_fulfilled_if_complete(
        self,
        request_id: str,
        now: datetime | None = None,
    ) -> bool:
        """Move an APPROVED request to FULFILLED once its grants are spent.

        A request is complete when at least one unrevoked grant has used its
        whole quota, or when it has grants and every one of them has expired.

        Returns:
            True if this call performed the transition.
        """
        now = as_utc(now) if now else datetime.now(UTC)

        consumed = exists().where(
            Grant.request_id == request_id,
            Grant.revoked_at.is_(None),
            Grant.access_count >= Grant.max_access_count,
        )
        has_grants = exists().where(Grant.request_id == request_id)
        unexpired = exists().where(
            Grant.request_id == request_id,
            or_(Grant.granted_until.is_(None), Grant.granted_until > now),
        )

        result = await self._session.execute(
            update(DisclosureRequest)
            .where(
                DisclosureRequest.request_id == request_id,
                DisclosureRequest.status == RequestStatus.APPROVED,
                or_(consumed, and_(has_grants, ~unexpired)),
            )
            .values(status=RequestStatus.FULFILLED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False

        logger.info("Disclosure request fulfilled: request_id=%s", request_id)

        await self._audit.record(
            AuditEvent(
                actor=SYSTEM_ACTOR,
                action=AuditAction.FULFIL,
                resource_type=RESOURCE_TYPE,
                resource_id=request_id,
                before={"status": RequestStatus.APPROVED},
                after={"status": RequestStatus.FULFILLED},
            )
        )
        return True

    async def _insert(self, **values: Any) -> DisclosureRequest:
        """Insert a request under a fresh id, retrying on an id collision."""
        attempt = 0
        while True:
            attempt += 1
            request = DisclosureRequest(request_id=generate_request_id(), **values)
            try:
                async with self._session.begin_nested():
                    self._session.add(request)
                    await self._session.flush()
            except IntegrityError:
                if attempt >= REQUEST_ID_ATTEMPTS:
                    raise
                logger.warning("Request id collision, retrying (attempt %d)", attempt)
            else:
                return request

    async def _load(self, request_id: str) -> DisclosureRequest:
        """Re-read a request after a bulk UPDATE."""
        result = await self._session.execute(
            select(DisclosureRequest)
            .where(DisclosureRequest.request_id == request_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
