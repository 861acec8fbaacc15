"""Grant store: per-record grants and their atomic consumption.

A grant allows a bounded number of reads of one record until an optional
expiry. Consumption is a single conditional UPDATE:

    UPDATE grants SET access_count = access_count + 1
    WHERE <key>
      AND access_count < max_access_count
      AND (granted_until IS NULL OR granted_until > :now)

The affected-row count is the only authority on whether a read is allowed,
so N concurrent readers of a grant with quota Q get exactly min(N, Q)
successes. When nothing was updated the row is re-read to explain why.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from recordgate.db.models import DisclosureRequest, Grant, RequestStatus, as_utc
from recordgate.services.errors import (
    ConflictError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql.elements import ColumnElement

logger = logging.getLogger(__name__)

# A grant is addressed by its id or by (request_id, record_id)
GrantKey = uuid.UUID | tuple[str, str]


class DenyReason(str, Enum):
    """Why a consumption attempt was refused."""

    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    QUOTA_EXHAUSTED = "quota_exhausted"


@dataclass(frozen=True, slots=True)
class ConsumeResult:
    """Outcome of a consumption attempt.

    Attributes:
        allowed: True if one read was consumed.
        reason: Why the read was refused (None when allowed).
        grant: Grant state after the attempt (None if no grant exists).
    """

    allowed: bool
    reason: DenyReason | None = None
    grant: Grant | None = None


def grant_snapshot(grant: Grant) -> dict[str, Any]:
    """State of a grant as recorded in audit events."""
    return {
        "request_id": grant.request_id,
        "record_id": grant.record_id,
        "granted_until": grant.granted_until,
        "access_count": grant.access_count,
        "max_access_count": grant.max_access_count,
        "revoked_at": grant.revoked_at,
    }


class GrantStore:
    """Persistence and consumption of grants.

    Example:
        store = GrantStore(session)
        grant = await store.issue("REQ-4F2A9C01B7DE", "REC-001", "DOC001", max_access=2)
        result = await store.check_and_consume(grant.grant_id)
        if not result.allowed:
            print(result.reason)
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        default_max_access_count: int = 1,
        default_ttl: timedelta | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            session: SQLAlchemy async session for database operations.
            default_max_access_count: Quota when the issuer gives none.
            default_ttl: Lifetime when neither a TTL nor a request expiry is given.
        """
        self._session = session
        self._default_max_access_count = default_max_access_count
        self._default_ttl = default_ttl

    async def issue(
        self,
        request_id: str,
        record_id: str,
        approved_by: str,
        *,
        ttl: timedelta | None = None,
        max_access: int | None = None,
        now: datetime | None = None,
    ) -> Grant:
        """Grant access to one record under an APPROVED request.

        Without a TTL the grant expires with the request's expiry_at (or the
        configured default lifetime, or never).

        Raises:
            InvalidInputError: If the quota or TTL is not positive.
            NotFoundError: If the request does not exist.
            InvalidStateError: If the request is not APPROVED.
            ConflictError: If the record is already granted under the request.
        """
        now = as_utc(now) if now else datetime.now(UTC)
        max_access = self._default_max_access_count if max_access is None else max_access
        if max_access < 1:
            raise InvalidInputError("max_access must be at least 1", max_access=max_access)
        if ttl is not None and ttl <= timedelta(0):
            raise InvalidInputError("ttl must be positive")

        request = await self._session.get(DisclosureRequest, request_id, populate_existing=True)
        if request is None:
            raise NotFoundError("disclosure_request", request_id)
        if request.status != RequestStatus.APPROVED:
            raise InvalidStateError("disclosure_request", request_id, request.status, "grant")

        if await self.find(request_id, record_id) is not None:
            raise ConflictError(
                f"Record {record_id} is already granted under {request_id}",
                request_id=request_id,
                record_id=record_id,
            )

        if ttl is not None:
            granted_until = now + ttl
        elif request.expiry_at is not None:
            granted_until = as_utc(request.expiry_at)
        elif self._default_ttl is not None:
            granted_until = now + self._default_ttl
        else:
            granted_until = None

        grant = Grant(
            grant_id=uuid.uuid4(),
            request_id=request_id,
            record_id=record_id,
            approved_by=approved_by,
            granted_until=granted_until,
            access_count=0,
            max_access_count=max_access,
            created_at=now,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(grant)
                await self._session.flush()
        except IntegrityError as e:
            raise ConflictError(
                f"Record {record_id} is already granted under {request_id}",
                request_id=request_id,
                record_id=record_id,
            ) from e

        logger.info(
            "Grant issued",
            extra={
                "grant_id": str(grant.grant_id),
                "request_id": request_id,
                "record_id": record_id,
                "max_access_count": max_access,
            },
        )
        return grant

    async def check_and_consume(
        self,
        key: GrantKey,
        *,
        now: datetime | None = None,
    ) -> ConsumeResult:
        """Consume one read of a grant if it is live.

        Args:
            key: Grant id, or (request_id, record_id).
            now: Evaluation time (defaults to the current UTC time; naive
                values are taken as UTC).

        Returns:
            ConsumeResult; when refused, EXPIRED takes precedence over
            QUOTA_EXHAUSTED.
        """
        now = as_utc(now) if now else datetime.now(UTC)

        result = await self._session.execute(
            update(Grant)
            .where(
                self._key_clause(key),
                Grant.access_count < Grant.max_access_count,
                or_(Grant.granted_until.is_(None), Grant.granted_until > now),
            )
            .values(access_count=Grant.access_count + 1, last_accessed_at=now)
            .execution_options(synchronize_session=False)
        )
        grant = await self._reload(key)

        if result.rowcount == 1 and grant is not None:
            logger.debug(
                "Grant consumed: grant_id=%s, access_count=%d/%d",
                grant.grant_id,
                grant.access_count,
                grant.max_access_count,
            )
            return ConsumeResult(allowed=True, grant=grant)

        if grant is None:
            reason = DenyReason.NOT_FOUND
        else:
            until = as_utc(grant.granted_until)
            if until is not None and until <= now:
                reason = DenyReason.EXPIRED
            else:
                reason = DenyReason.QUOTA_EXHAUSTED

        logger.info("Grant consumption refused: key=%s, reason=%s", key, reason.value)
        return ConsumeResult(allowed=False, reason=reason, grant=grant)

    async def revoke(self, grant_id: uuid.UUID, *, now: datetime | None = None) -> Grant:
        """Revoke a grant by exhausting its quota.

        Idempotent: the first revocation time is kept.

        Raises:
            NotFoundError: If the grant does not exist.
        """
        now = as_utc(now) if now else datetime.now(UTC)
        result = await self._session.execute(
            update(Grant)
            .where(Grant.grant_id == grant_id)
            .values(
                access_count=Grant.max_access_count,
                revoked_at=func.coalesce(Grant.revoked_at, now),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("grant", grant_id)

        logger.info("Grant revoked: grant_id=%s", grant_id)
        grant = await self._reload(grant_id)
        if grant is None:
            raise NotFoundError("grant", grant_id)
        return grant

    async def revoke_all(self, request_id: str, *, now: datetime | None = None) -> int:
        """Revoke every unrevoked grant of a request.

        Returns:
            Number of grants revoked by this call.
        """
        now = as_utc(now) if now else datetime.now(UTC)
        result = await self._session.execute(
            update(Grant)
            .where(Grant.request_id == request_id, Grant.revoked_at.is_(None))
            .values(access_count=Grant.max_access_count, revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount
        if count > 0:
            logger.info("Grants revoked: request_id=%s, count=%d", request_id, count)
        return count

    async def get(self, grant_id: uuid.UUID) -> Grant:
        """Get a grant by id.

        Raises:
            NotFoundError: If the grant does not exist.
        """
        grant = await self._session.get(Grant, grant_id, populate_existing=True)
        if grant is None:
            raise NotFoundError("grant", grant_id)
        return grant

    async def find(self, request_id: str, record_id: str) -> Grant | None:
        """Get the grant for a record under a request, or None."""
        result = await self._session.execute(
            select(Grant)
            .where(Grant.request_id == request_id, Grant.record_id == record_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_request(self, request_id: str) -> Sequence[Grant]:
        """List the grants of a request, oldest first."""
        result = await self._session.execute(
            select(Grant)
            .where(Grant.request_id == request_id)
            .order_by(Grant.created_at, Grant.record_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    @staticmethod
    def _key_clause(key: GrantKey) -> ColumnElement[bool]:
        if isinstance(key, uuid.UUID):
            return Grant.grant_id == key
        request_id, record_id = key
        return (Grant.request_id == request_id) & (Grant.record_id == record_id)

    async def _reload(self, key: GrantKey) -> Grant | None:
        """Re-read a grant after a bulk UPDATE."""
        result = await self._session.execute(
            select(Grant)
            .where(self._key_clause(key))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
