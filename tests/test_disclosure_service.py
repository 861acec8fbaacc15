"""End-to-end tests for the disclosure workflow.

Tests cover:
- Allocation -> request -> review -> record approval -> read
- Uniform permission refusal before any grant or record lookup
- Scope checks when approving records
- Quota, expiry and revocation on read, with fulfilment
- Decryption of sensitive fields and audit of every read
- Commit policy of Database.session_scope on refused reads
"""

from datetime import UTC, date, datetime, timedelta

import pytest
from sqlalchemy import update

from recordgate.db.models import Allocation, AllocationStatus, RequestStatus
from recordgate.services.disclosure import DisclosureService
from recordgate.services.disclosure_requests import RequestScope
from recordgate.services.errors import (
    DisclosurePermissionError,
    GrantExpiredError,
    GrantNotFoundError,
    InvalidStateError,
    NotFoundError,
    OutOfScopeError,
    QuotaExhaustedError,
    RecordsUnavailableError,
)
from tests.factories import FlakyRecordsStore, create_approved_request, create_record


def store_record(service, records_store, **kwargs) -> dict:
    """Put an encrypted record into the records store and return the plaintext."""
    plaintext = create_record(**kwargs)
    records_store.put(service.encrypt_record(plaintext))
    return plaintext


# =============================================================================
# Happy path
# =============================================================================


class TestDisclosureFlow:
    """Full workflow from allocation to read."""

    @pytest.mark.asyncio
    async def test_read_granted_record(
        self, service, records_store, admin, doctor, insurer, session
    ):
        """A granted record is returned decrypted and the read is audited."""
        request = await create_approved_request(service, admin, insurer)
        plaintext = store_record(service, records_store, record_id="REC-001")
        assert records_store.records["REC-001"]["diagnosis"] != plaintext["diagnosis"]

        outcomes = await service.approve_records(doctor, request.request_id, ["REC-001"], quota=2)
        assert [o.ok for o in outcomes] == [True]

        disclosed = await service.read_disclosed_record(
            insurer, "INS001", request.request_id, "REC-001"
        )

        assert disclosed.record["diagnosis"] == "Type 2 diabetes mellitus"
        assert disclosed.record["vital_signs"] == {"bp": "128/84", "pulse": 72}
        assert disclosed.record["subject_id"] == "PAT001"
        assert disclosed.access_count == 1
        assert disclosed.remaining_reads == 1

        events = await service.audit.query("record", "REC-001")
        assert [e.action for e in events] == ["view"]
        assert events[0].actor_id == "INSUSER01"
        assert events[0].details["request_id"] == request.request_id

    @pytest.mark.asyncio
    async def test_quota_exhaustion_fulfils_request(
        self, service, records_store, admin, doctor, insurer
    ):
        """Using up a grant completes the request; further reads are refused."""
        request = await create_approved_request(service, admin, insurer)
        store_record(service, records_store, record_id="REC-001")
        await service.approve_records(doctor, request.request_id, ["REC-001"], quota=2)

        for _ in range(2):
            await service.read_disclosed_record(insurer, "INS001", request.request_id, "REC-001")

        assert (await service.ledger.get(request.request_id)).status == RequestStatus.FULFILLED

        with pytest.raises(QuotaExhaustedError) as exc_info:
            await service.read_disclosed_record(insurer, "INS001", request.request_id, "REC-001")
        assert exc_info.value.code == "quota_exhausted"

        events = await service.audit.query("record", "REC-001")
        assert [e.action for e in events].count("view") == 2
        assert events[0].action == "access_denied"
        assert events[0].details["reason"] == "quota_exhausted"

    @pytest.mark.asyncio
    async def test_single_read_grants_are_independent(
        self, service, records_store, admin, doctor, insurer
    ):
        """Exhausting one grant leaves the other records of the request readable."""
        request = await create_approved_request(service, admin, insurer)
        store_record(service, records_store, record_id="rec1")
        store_record(service, records_store, record_id="rec2")

        outcomes = await service.approve_records(
            doctor, request.request_id, ["rec1", "rec2"], quota=1
        )
        assert [o.ok for o in outcomes] == [True, True]
        assert [o.grant.max_access_count for o in outcomes] == [1, 1]

        first = await service.read_disclosed_record(insurer, "INS001", request.request_id, "rec1")
        assert first.remaining_reads == 0
        assert (await service.ledger.get(request.request_id)).status == RequestStatus.FULFILLED

        with pytest.raises(QuotaExhaustedError):
            await service.read_disclosed_record(insurer, "INS001", request.request_id, "rec1")

        other = await service.read_disclosed_record(insurer, "INS001", request.request_id, "rec2")
        assert other.record["diagnosis"] == "Type 2 diabetes mellitus"
        assert other.access_count == 1

    @pytest.mark.asyncio
    async def test_grant_audit_event(self, service, records_store, admin, doctor, insurer):
        """Each issued grant is audited with the approving clinician."""
        request = await create_approved_request(service, admin, insurer)
        store_record(service, records_store, record_id="REC-001")

        outcomes = await service.approve_records(doctor, request.request_id, ["REC-001"])

        grant = outcomes[0].grant
        events = await service.audit.query("grant", str(grant.grant_id))
        assert events[0].action == "grant"
        assert events[0].actor_id == "DOC001"
        assert events[0].after["max_access_count"] == 1


# =============================================================================
# Permission
# =============================================================================


class TestReadPermission:
    """Reads are refused uniformly before any grant or record lookup."""

    @pytest.mark.asyncio
    async def test_unknown_request(self, service, records_store, insurer):
        """A non-existent request gives a permission error."""
        with pytest.raises(DisclosurePermissionError):
            await service.read_disclosed_record(insurer, "INS001", "REQ-DOESNOTEXIST", "REC-001")

        assert records_store.lookups == []

    @pytest.mark.asyncio
    async def test_foreign_company(self, service, records_store, admin, doctor, insurer):
        """Another company cannot read under someone else's request."""
        request = await create_approved_request(service, admin, insurer)
        store_record(service, records_store, record_id="REC-001")
        await service.approve_records(doctor, request.request_id, ["REC-001"])
        # INS002 is allocated to the same subject but does not own the request
        other = await service.allocations.propose(admin, "INS002", "PAT001", "POL-9")
        await service.allocations.decide(admin, other.allocation_id, approve=True)
        records_store.lookups.clear()

        with pytest.raises(DisclosurePermissionError):
            await service.read_disclosed_record(insurer, "INS002", request.request_id, "REC-001")

        assert records_store.lookups == []
        grant = await service.grants.find(request.request_id, "REC-001")
        assert grant.access_count == 0

    @pytest.mark.asyncio
    async def test_allocation_no_longer_approved(
        self, service, records_store, admin, doctor, insurer, session
    ):
        """Losing the allocation stops reads under existing grants."""
        request = await create_approved_request(service, admin, insurer)
        store_record(service, records_store, record_id="REC-001")
        await service.approve_records(doctor, request.request_id, ["REC-001"])
        await session.execute(
            update(Allocation)
            .where(Allocation.allocation_id == request.allocation_id)
            .values(status=AllocationStatus.REJECTED)
        )

        with pytest.raises(DisclosurePermissionError):
            await service.read_disclosed_record(insurer, "INS001", request.request_id, "REC-001")

    @pytest.mark.asyncio
    async def test_refusals_are_indistinguishable(self, service, admin, insurer):
        """Unknown and foreign requests produce the same error code."""
        request = await create_approved_request(service, admin, insurer)

        with pytest.raises(DisclosurePermissionError) as unknown:
            await service.read_disclosed_record(insurer, "INS002", "REQ-DOESNOTEXIST", "REC-001")
        with pytest.raises(DisclosurePermissionError) as foreign:
            await service.read_disclosed_record(insurer, "INS002", request.request_id, "REC-001")

        assert unknown.value.code == foreign.value.code == "permission"
        assert type(unknown.value) is type(foreign.value)

    @pytest.mark.asyncio
    async def test_refusal_is_audited(self, service, insurer):
        """Permission refusals leave a warning-level audit event."""
        with pytest.raises(DisclosurePermissionError):
            await service.read_disclosed_record(insurer, "INS001", "REQ-DOESNOTEXIST", "REC-001")

        events = await service.audit.query("record", "REC-001")
        assert events[0].action == "access_denied"
        assert events[0].details == {"request_id": "REQ-DOESNOTEXIST", "reason": "permission"}
        assert events[0].severity.value == "warning"


# =============================================================================
# Approving records
# =============================================================================


class TestApproveRecords:
    """Scope checks and per-record outcomes."""

    @pytest.mark.asyncio
    async def test_per_record_outcomes(self, service, records_store, admin, doctor, insurer):
        """One bad record does not prevent the others from being granted."""
        request = await create_approved_request(
            service,
            admin,
            insurer,
            scope=RequestScope(
                record_types=("lab_result",),
                date_from=date(2026, 1, 1),
                date_to=date(2026, 6, 30),
            ),
        )
        store_record(service, records_store, record_id="REC-OK")
        store_record(service, records_store, record_id="REC-OTHER", subject_id="PAT999")
        store_record(service, records_store, record_id="REC-TYPE", record_type="imaging")
        store_record(service, records_store, record_id="REC-EARLY", visit_date=date(2025, 12, 31))
        store_record(service, records_store, record_id="REC-LATE", visit_date="2026-07-01")
        store_record(service, records_store, record_id="REC-NODATE", visit_date=None)

        outcomes = await service.approve_records(
            doctor,
            request.request_id,
            [
                "REC-OK",
                "REC-OTHER",
                "REC-TYPE",
                "REC-EARLY",
                "REC-LATE",
                "REC-NODATE",
                "REC-MISSING",
            ],
        )

        by_id = {o.record_id: o for o in outcomes}
        assert by_id["REC-OK"].ok
        assert by_id["REC-OK"].grant is not None
        for record_id in ("REC-OTHER", "REC-TYPE", "REC-EARLY", "REC-LATE", "REC-NODATE"):
            assert isinstance(by_id[record_id].error, OutOfScopeError), record_id
        assert isinstance(by_id["REC-MISSING"].error, NotFoundError)

        grants = await service.grants.list_for_request(request.request_id)
        assert [g.record_id for g in grants] == ["REC-OK"]

    @pytest.mark.asyncio
    async def test_records_store_failure_is_reported(
        self, session, cipher, admin, doctor, insurer
    ):
        """A store outage for one record is that record's outcome only."""
        store = FlakyRecordsStore(failing={"REC-DOWN"})
        service = DisclosureService(session, cipher=cipher, records=store)
        request = await create_approved_request(service, admin, insurer)
        store_record(service, store, record_id="REC-UP")

        outcomes = await service.approve_records(
            doctor, request.request_id, ["REC-UP", "REC-DOWN"]
        )

        by_id = {o.record_id: o for o in outcomes}
        assert by_id["REC-UP"].ok
        assert isinstance(by_id["REC-DOWN"].error, RecordsUnavailableError)
        assert by_id["REC-DOWN"].error.code == "records_unavailable"
        assert isinstance(by_id["REC-DOWN"].error.__cause__, ConnectionError)

    @pytest.mark.asyncio
    async def test_duplicate_ids_granted_once(
        self, service, records_store, admin, doctor, insurer
    ):
        """Repeated record ids in one call produce one outcome."""
        request = await create_approved_request(service, admin, insurer)
        store_record(service, records_store, record_id="REC-001")

        outcomes = await service.approve_records(
            doctor, request.request_id, ["REC-001", "REC-001"]
        )

        assert len(outcomes) == 1
        assert outcomes[0].ok

    @pytest.mark.asyncio
    async def test_already_granted_is_reported(
        self, service, records_store, admin, doctor, insurer
    ):
        """Approving a record twice reports a conflict for the second call."""
        request = await create_approved_request(service, admin, insurer)
        store_record(service, records_store, record_id="REC-001")
        await service.approve_records(doctor, request.request_id, ["REC-001"])

        outcomes = await service.approve_records(doctor, request.request_id, ["REC-001"])

        assert outcomes[0].error.code == "conflict"

    @pytest.mark.asyncio
    async def test_pending_request(self, service, admin, doctor, insurer):
        """Records cannot be approved before the request is."""
        allocation = await service.allocations.propose(admin, "INS001", "PAT001", "POL-1")
        await service.allocations.decide(admin, allocation.allocation_id, approve=True)
        request = await service.request_disclosure(insurer, "INS001", "PAT001", "Claim 7781")

        with pytest.raises(InvalidStateError):
            await service.approve_records(doctor, request.request_id, ["REC-001"])

    @pytest.mark.asyncio
    async def test_unknown_request(self, service, doctor):
        """Approving under a missing request is NotFound."""
        with pytest.raises(NotFoundError):
            await service.approve_records(doctor, "REQ-DOESNOTEXIST", ["REC-001"])


# =============================================================================
# Denials on read
# =============================================================================


class TestReadDenials:
    """Grant-level refusals."""

    @pytest.mark.asyncio
    async def test_record_not_granted(self, service, records_store, admin, doctor, insurer):
        """Reading a record outside the grants is GrantNotFound."""
        request = await create_approved_request(service, admin, insurer)
        store_record(service, records_store, record_id="REC-001")
        store_record(service, records_store, record_id="REC-002")
        await service.approve_records(doctor, request.request_id, ["REC-001"])

        with pytest.raises(GrantNotFoundError) as exc_info:
            await service.read_disclosed_record(insurer, "INS001", request.request_id, "REC-002")

        assert isinstance(exc_info.value, NotFoundError)
        assert exc_info.value.code == "grant_not_found"

    @pytest.mark.asyncio
    async def test_expired_grant_fulfils_request(
        self, service, records_store, admin, doctor, insurer
    ):
        """An expired grant is refused and, once all expired, the request completes."""
        request = await create_approved_request(service, admin, insurer)
        store_record(service, records_store, record_id="REC-001")
        now = datetime.now(UTC)
        await service.approve_records(
            doctor, request.request_id, ["REC-001"], ttl=timedelta(hours=1), now=now
        )

        with pytest.raises(GrantExpiredError):
            await service.read_disclosed_record(
                insurer,
                "INS001",
                request.request_id,
                "REC-001",
                now=now + timedelta(hours=2),
            )

        assert (await service.ledger.get(request.request_id)).status == RequestStatus.FULFILLED

    @pytest.mark.asyncio
    async def test_revoked_grant(self, service, records_store, admin, doctor, insurer):
        """A revoked grant refuses reads as exhausted."""
        request = await create_approved_request(service, admin, insurer)
        store_record(service, records_store, record_id="REC-001")
        outcomes = await service.approve_records(doctor, request.request_id, ["REC-001"], quota=3)

        await service.revoke_grant(admin, outcomes[0].grant.grant_id)

        with pytest.raises(QuotaExhaustedError):
            await service.read_disclosed_record(insurer, "INS001", request.request_id, "REC-001")
        events = await service.audit.query("grant", str(outcomes[0].grant.grant_id))
        assert events[0].action == "revoke"
        # Revocation alone does not complete the request
        assert (await service.ledger.get(request.request_id)).status == RequestStatus.APPROVED

    @pytest.mark.asyncio
    async def test_revoke_request_grants(self, service, records_store, admin, doctor, insurer):
        """All grants of a request can be revoked at once."""
        request = await create_approved_request(service, admin, insurer)
        store_record(service, records_store, record_id="REC-001")
        store_record(service, records_store, record_id="REC-002")
        await service.approve_records(doctor, request.request_id, ["REC-001", "REC-002"])

        assert await service.revoke_request_grants(admin, request.request_id) == 2

        for record_id in ("REC-001", "REC-002"):
            with pytest.raises(QuotaExhaustedError):
                await service.read_disclosed_record(
                    insurer, "INS001", request.request_id, record_id
                )

    @pytest.mark.asyncio
    async def test_record_vanished_after_grant(
        self, service, records_store, admin, doctor, insurer
    ):
        """A record missing from the store is NotFound and the read stays consumed."""
        request = await create_approved_request(service, admin, insurer)
        store_record(service, records_store, record_id="REC-001")
        await service.approve_records(doctor, request.request_id, ["REC-001"], quota=2)
        del records_store.records["REC-001"]

        with pytest.raises(NotFoundError):
            await service.read_disclosed_record(insurer, "INS001", request.request_id, "REC-001")

        grant = await service.grants.find(request.request_id, "REC-001")
        assert grant.access_count == 1


# =============================================================================
# Stored representations
# =============================================================================


class TestStoredRepresentations:
    """Records written in older formats are still served."""

    @pytest.mark.asyncio
    async def test_plaintext_record(self, service, records_store, admin, doctor, insurer):
        """Records stored before encryption are returned as stored."""
        request = await create_approved_request(service, admin, insurer)
        records_store.put(create_record(record_id="REC-001"))
        await service.approve_records(doctor, request.request_id, ["REC-001"])

        disclosed = await service.read_disclosed_record(
            insurer, "INS001", request.request_id, "REC-001"
        )

        assert disclosed.record["diagnosis"] == "Type 2 diabetes mellitus"
        assert disclosed.record["vital_signs"] == {"bp": "128/84", "pulse": 72}

    @pytest.mark.asyncio
    async def test_hex_shaped_value_round_trips(
        self, service, records_store, admin, doctor, insurer
    ):
        """A value that looks like legacy ciphertext is encrypted and read back."""
        request = await create_approved_request(service, admin, insurer)
        hex_diagnosis = "0123456789abcdef0123456789abcdef"
        stored = service.encrypt_record(create_record(record_id="REC-001", diagnosis=hex_diagnosis))
        assert stored["diagnosis"] != hex_diagnosis
        records_store.put(stored)
        await service.approve_records(doctor, request.request_id, ["REC-001"])

        disclosed = await service.read_disclosed_record(
            insurer, "INS001", request.request_id, "REC-001"
        )

        assert disclosed.record["diagnosis"] == hex_diagnosis

    @pytest.mark.asyncio
    async def test_undecryptable_field_placeholder(
        self, service, records_store, cipher, admin, doctor, insurer
    ):
        """A corrupted ciphertext is served as the placeholder."""
        request = await create_approved_request(service, admin, insurer)
        stored = service.encrypt_record(create_record(record_id="REC-001"))
        stored["symptoms"] = "00" * 32
        records_store.put(stored)
        await service.approve_records(doctor, request.request_id, ["REC-001"])

        disclosed = await service.read_disclosed_record(
            insurer, "INS001", request.request_id, "REC-001"
        )

        assert disclosed.record["symptoms"] == cipher.placeholder
        assert disclosed.record["diagnosis"] == "Type 2 diabetes mellitus"


# =============================================================================
# Transactions
# =============================================================================


class TestSessionScope:
    """Commit policy of Database.session_scope around the service."""

    @pytest.mark.asyncio
    async def test_refused_read_is_audited_durably(
        self, database, cipher, records_store, admin, doctor, insurer
    ):
        """The audit event of a refused read survives the raised error."""
        async with database.session_scope() as s:
            service = DisclosureService(s, cipher=cipher, records=records_store)
            request = await create_approved_request(service, admin, insurer)
            store_record(service, records_store, record_id="REC-001")
            await service.approve_records(doctor, request.request_id, ["REC-001"])

        for _ in range(2):
            try:
                async with database.session_scope() as s:
                    service = DisclosureService(s, cipher=cipher, records=records_store)
                    await service.read_disclosed_record(
                        insurer, "INS001", request.request_id, "REC-001"
                    )
            except QuotaExhaustedError:
                pass

        async with database.session() as s:
            service = DisclosureService(s, cipher=cipher, records=records_store)
            events = await service.audit.query("record", "REC-001")
            grant = await service.grants.find(request.request_id, "REC-001")

        assert [e.action for e in events] == ["access_denied", "view"]
        assert grant.access_count == 1

    @pytest.mark.asyncio
    async def test_store_failure_keeps_other_grants(
        self, database, cipher, admin, doctor, insurer
    ):
        """Grants issued alongside a failed record lookup are committed."""
        store = FlakyRecordsStore(failing={"rec2"})
        async with database.session_scope() as s:
            service = DisclosureService(s, cipher=cipher, records=store)
            request = await create_approved_request(service, admin, insurer)
            store_record(service, store, record_id="rec1")
            store_record(service, store, record_id="rec2")
            await service.approve_records(doctor, request.request_id, ["rec1", "rec2"])

        async with database.session() as s:
            service = DisclosureService(s, cipher=cipher, records=store)
            grants = await service.grants.list_for_request(request.request_id)

        assert [g.record_id for g in grants] == ["rec1"]
