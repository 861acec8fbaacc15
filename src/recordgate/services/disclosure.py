"""Disclosure orchestration.

DisclosureService composes the allocation registry, the request ledger, the
grant store, the cipher and the audit trail into the operations exposed to
the outer surface:

1. A company submits a disclosure request for a subject it is allocated to.
2. A reviewer approves or rejects it.
3. A clinician approves individual records; each becomes a grant bounded by
   an access quota and an expiry.
4. The company reads a granted record; each read consumes one access
   atomically, is decrypted and is audited.

All components share the caller's session; the caller owns the transaction
(see Database.session_scope).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from recordgate.core.config import DisclosureSettings
from recordgate.db.models import AuditSeverity, RequestStatus, as_utc
from recordgate.services.allocations import AllocationRegistry
from recordgate.services.audit_trail import AuditAction, AuditEvent, AuditTrail
from recordgate.services.disclosure_requests import DisclosureRequestLedger, RequestScope
from recordgate.services.errors import (
    DisclosureError,
    DisclosurePermissionError,
    GrantExpiredError,
    GrantNotFoundError,
    InvalidStateError,
    NotFoundError,
    OutOfScopeError,
    QuotaExhaustedError,
    RecordsUnavailableError,
)
from recordgate.services.grants import DenyReason, GrantStore, grant_snapshot
from recordgate.services.records import (
    RECORD_TYPE_KEY,
    SUBJECT_ID_KEY,
    visit_date_of,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable, Mapping

    from sqlalchemy.ext.asyncio import AsyncSession

    from recordgate.db.models import DisclosureRequest, Grant, Urgency
    from recordgate.services.cipher import Cipher
    from recordgate.services.context import ActorContext
    from recordgate.services.notifications import NotificationSender
    from recordgate.services.records import RecordsStore

logger = logging.getLogger(__name__)

_DENIAL_ERRORS: dict[DenyReason, type[DisclosureError]] = {
    DenyReason.EXPIRED: GrantExpiredError,
    DenyReason.QUOTA_EXHAUSTED: QuotaExhaustedError,
    DenyReason.NOT_FOUND: GrantNotFoundError,
}


@dataclass(frozen=True, slots=True)
class IssueOutcome:
    """Result of approving one record.

    Attributes:
        record_id: The record that was to be granted.
        grant: The issued grant (None on failure).
        error: Why the record was not granted (None on success).
    """

    record_id: str
    grant: Grant | None = None
    error: DisclosureError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class DisclosedRecord:
    """A record released to a requesting company.

    Attributes:
        request_id: Request under which the record was read.
        record_id: The record.
        record: Record content with sensitive fields decrypted.
        access_count: Reads consumed so far, this one included.
        max_access_count: Reads allowed by the grant.
        granted_until: Grant expiry (None: no time bound).
    """

    request_id: str
    record_id: str
    record: dict[str, Any]
    access_count: int
    max_access_count: int
    granted_until: datetime | None

    @property
    def remaining_reads(self) -> int:
        return max(self.max_access_count - self.access_count, 0)


class DisclosureService:
    """Orchestrates consent-gated disclosure of records.

    Example:
        async with database.session_scope() as session:
            service = DisclosureService(session, cipher=cipher, records=records_store)
            disclosed = await service.read_disclosed_record(
                insurer, "INS001", "REQ-4F2A9C01B7DE", "REC-001"
            )
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        cipher: Cipher,
        records: RecordsStore,
        notifier: NotificationSender | None = None,
        settings: DisclosureSettings | None = None,
    ) -> None:
        """Wire the workflow components onto one session.

        Args:
            session: SQLAlchemy async session shared by all components.
            cipher: Process-wide cipher for sensitive record fields.
            records: Records store collaborator.
            notifier: Notification sender (logging sender if omitted).
            settings: Workflow defaults (environment defaults if omitted).
        """
        settings = settings or DisclosureSettings()
        self._session = session
        self._cipher = cipher
        self._records = records
        self._sensitive_fields = tuple(settings.sensitive_record_fields)

        self._audit = AuditTrail(session, page_size=settings.audit_page_size)
        self._allocations = AllocationRegistry(session, audit=self._audit, notifier=notifier)
        self._ledger = DisclosureRequestLedger(
            session,
            allocations=self._allocations,
            audit=self._audit,
            notifier=notifier,
            reviewer_recipient=settings.reviewer_recipient,
        )
        default_ttl = (
            timedelta(hours=settings.default_grant_ttl_hours)
            if settings.default_grant_ttl_hours
            else None
        )
        self._grants = GrantStore(
            session,
            default_max_access_count=settings.default_max_access_count,
            default_ttl=default_ttl,
        )

    @property
    def allocations(self) -> AllocationRegistry:
        return self._allocations

    @property
    def ledger(self) -> DisclosureRequestLedger:
        return self._ledger

    @property
    def grants(self) -> GrantStore:
        return self._grants

    @property
    def audit(self) -> AuditTrail:
        return self._audit

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def request_disclosure(
        self,
        actor: ActorContext,
        company_id: str,
        subject_id: str,
        purpose: str,
        *,
        scope: RequestScope | None = None,
        urgency: Urgency | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> DisclosureRequest:
        """Submit a disclosure request (see DisclosureRequestLedger.submit)."""
        kwargs: dict[str, Any] = {"scope": scope, "details": details}
        if urgency is not None:
            kwargs["urgency"] = urgency
        return await self._ledger.submit(actor, company_id, subject_id, purpose, **kwargs)

    async def review_disclosure(
        self,
        actor: ActorContext,
        request_id: str,
        *,
        approve: bool,
        notes: str | None = None,
        expiry_at: datetime | None = None,
    ) -> DisclosureRequest:
        """Review a disclosure request (see DisclosureRequestLedger.review)."""
        return await self._ledger.review(
            actor, request_id, approve=approve, notes=notes, expiry_at=expiry_at
        )

    # -------------------------------------------------------------------------
    # Grants
    # -------------------------------------------------------------------------

    async def approve_records(
        self,
        actor: ActorContext,
        request_id: str,
        record_ids: Iterable[str],
        *,
        ttl: timedelta | None = None,
        quota: int | None = None,
        now: datetime | None = None,
    ) -> list[IssueOutcome]:
        """Grant individual records under an APPROVED request.

        Each record is checked and issued independently; a failure for one
        record is reported in its outcome and does not undo the others.

        Raises:
            NotFoundError: If the request does not exist.
            InvalidStateError: If the request is not APPROVED.
        """
        now = as_utc(now) if now else datetime.now(UTC)
        request = await self._ledger.get(request_id)
        if request.status != RequestStatus.APPROVED:
            raise InvalidStateError(
                "disclosure_request", request_id, request.status, "approve records for"
            )

        outcomes: list[IssueOutcome] = []
        for record_id in dict.fromkeys(record_ids):
            try:
                record = await self._fetch_for_grant(record_id)
                if record is None:
                    raise NotFoundError("record", record_id)
                self._check_scope(request, record_id, record)
                grant = await self._grants.issue(
                    request_id,
                    record_id,
                    actor.actor_id,
                    ttl=ttl,
                    max_access=quota,
                    now=now,
                )
            except DisclosureError as e:
                logger.warning(
                    "Record not granted: request_id=%s, record_id=%s, reason=%s",
                    request_id,
                    record_id,
                    e.code,
                )
                outcomes.append(IssueOutcome(record_id=record_id, error=e))
                continue

            await self._audit.record(
                AuditEvent(
                    actor=actor,
                    action=AuditAction.GRANT,
                    resource_type="grant",
                    resource_id=str(grant.grant_id),
                    after=grant_snapshot(grant),
                    details={"request_id": request_id, "record_id": record_id},
                )
            )
            outcomes.append(IssueOutcome(record_id=record_id, grant=grant))

        logger.info(
            "Records approved: request_id=%s, granted=%d, failed=%d",
            request_id,
            sum(1 for o in outcomes if o.ok),
            sum(1 for o in outcomes if not o.ok),
        )
        return outcomes

    async def revoke_grant(self, actor: ActorContext, grant_id: uuid.UUID) -> Grant:
        """Revoke one grant.

        Raises:
            NotFoundError: If the grant does not exist.
        """
        before = grant_snapshot(await self._grants.get(grant_id))
        grant = await self._grants.revoke(grant_id)
        await self._audit.record(
            AuditEvent(
                actor=actor,
                action=AuditAction.REVOKE,
                resource_type="grant",
                resource_id=str(grant_id),
                before=before,
                after=grant_snapshot(grant),
            )
        )
        return grant

    async def revoke_request_grants(self, actor: ActorContext, request_id: str) -> int:
        """Revoke every grant of a request.

        Returns:
            Number of grants revoked by this call.

        Raises:
            NotFoundError: If the request does not exist.
        """
        await self._ledger.get(request_id)
        count = await self._grants.revoke_all(request_id)
        await self._audit.record(
            AuditEvent(
                actor=actor,
                action=AuditAction.REVOKE,
                resource_type="disclosure_request",
                resource_id=request_id,
                details={"revoked_grants": count},
            )
        )
        return count

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def read_disclosed_record(
        self,
        actor: ActorContext,
        company_id: str,
        request_id: str,
        record_id: str,
        *,
        now: datetime | None = None,
    ) -> DisclosedRecord:
        """Read a granted record, consuming one access.

        The request must exist, belong to the company, and the company must
        still hold an APPROVED allocation for the subject; otherwise the same
        permission error is raised whatever the cause, before any grant or
        record is looked at.

        Raises:
            DisclosurePermissionError: If the company may not read under the request.
            GrantExpiredError: If the grant has expired.
            QuotaExhaustedError: If the grant's reads are used up or it was revoked.
            GrantNotFoundError: If the record is not granted under the request.
            NotFoundError: If the granted record is gone from the records store.
        """
        now = as_utc(now) if now else datetime.now(UTC)

        request = await self._ledger.find(request_id)
        if (
            request is None
            or request.company_id != company_id
            or not await self._allocations.is_approved(company_id, request.subject_id)
        ):
            await self._audit_denial(actor, request_id, record_id, "permission")
            raise DisclosurePermissionError(
                f"Company {company_id} may not read records under request {request_id}",
                company_id=company_id,
                request_id=request_id,
            )

        result = await self._grants.check_and_consume((request_id, record_id), now=now)
        if not result.allowed:
            reason = result.reason or DenyReason.NOT_FOUND
            await self._audit_denial(actor, request_id, record_id, reason.value)
            if reason == DenyReason.EXPIRED:
                await self._ledger.mark_fulfilled_if_complete(request_id, now)
            raise _DENIAL_ERRORS[reason](request_id, record_id)

        grant = result.grant
        record = await self._records.get_record(record_id)
        if record is None:
            logger.error(
                "Granted record missing from records store: request_id=%s, record_id=%s",
                request_id,
                record_id,
            )
            raise NotFoundError("record", record_id)

        decrypted = self._cipher.decrypt_fields(record, self._sensitive_fields)

        await self._audit.record(
            AuditEvent(
                actor=actor,
                action=AuditAction.VIEW,
                resource_type="record",
                resource_id=record_id,
                details={
                    "request_id": request_id,
                    "grant_id": str(grant.grant_id),
                    "access_count": grant.access_count,
                    "max_access_count": grant.max_access_count,
                },
            )
        )
        await self._ledger.mark_fulfilled_if_complete(request_id, now)

        logger.info(
            "Record disclosed: request_id=%s, record_id=%s, company_id=%s",
            request_id,
            record_id,
            company_id,
        )

        return DisclosedRecord(
            request_id=request_id,
            record_id=record_id,
            record=decrypted,
            access_count=grant.access_count,
            max_access_count=grant.max_access_count,
            granted_until=as_utc(grant.granted_until),
        )

    def encrypt_record(self, record: Mapping[str, Any]) -> dict[str, Any]:
        """Encrypt the sensitive fields of a record before it is stored."""
        return self._cipher.encrypt_fields(record, self._sensitive_fields)

    async def _fetch_for_grant(self, record_id: str) -> Mapping[str, Any] | None:
        """Look up a record to be granted; store failures become typed errors."""
        try:
            return await self._records.get_record(record_id)
        except Exception as e:
            logger.warning(
                "Records store lookup failed: record_id=%s", record_id, exc_info=True
            )
            raise RecordsUnavailableError(record_id, type(e).__name__) from e

    def _check_scope(
        self,
        request: DisclosureRequest,
        record_id: str,
        record: Mapping[str, Any],
    ) -> None:
        """Raise OutOfScopeError unless the record falls within the request."""
        request_id = request.request_id
        if record.get(SUBJECT_ID_KEY) != request.subject_id:
            raise OutOfScopeError(request_id, record_id, "record belongs to another subject")

        record_type = record.get(RECORD_TYPE_KEY)
        if request.record_types is not None and record_type not in request.record_types:
            reason = f"record type {record_type!r} was not requested"
            raise OutOfScopeError(request_id, record_id, reason)

        if request.date_from is None and request.date_to is None:
            return
        visit_date = visit_date_of(record)
        if visit_date is None:
            raise OutOfScopeError(request_id, record_id, "record has no visit date")
        if request.date_from is not None and visit_date < request.date_from:
            raise OutOfScopeError(request_id, record_id, "visit date before requested range")
        if request.date_to is not None and visit_date > request.date_to:
            raise OutOfScopeError(request_id, record_id, "visit date after requested range")

    async def _audit_denial(
        self,
        actor: ActorContext,
        request_id: str,
        record_id: str,
        reason: str,
    ) -> None:
        logger.warning(
            "Record access denied: request_id=%s, record_id=%s, actor=%s, reason=%s",
            request_id,
            record_id,
            actor.actor_id,
            reason,
        )
        await self._audit.record(
            AuditEvent(
                actor=actor,
                action=AuditAction.ACCESS_DENIED,
                resource_type="record",
                resource_id=record_id,
                details={"request_id": request_id, "reason": reason},
                severity=AuditSeverity.WARNING,
            )
        )
