"""RecordGate service layer.

Business logic of the disclosure workflow:
- Cipher: Field-level encryption of sensitive record attributes
- AuditTrail: Append-only, best-effort audit events
- AllocationRegistry: Company/subject allocations
- DisclosureRequestLedger: Disclosure request lifecycle
- GrantStore: Per-record grants and atomic consumption
- DisclosureService: Orchestration of the above
"""

from recordgate.services.allocations import AllocationRegistry
from recordgate.services.audit_trail import AuditAction, AuditEvent, AuditTrail
from recordgate.services.cipher import Cipher
from recordgate.services.context import SYSTEM_ACTOR, ActorContext, ActorRole
from recordgate.services.disclosure import DisclosedRecord, DisclosureService, IssueOutcome
from recordgate.services.disclosure_requests import DisclosureRequestLedger, RequestScope
from recordgate.services.errors import (
    ConflictError,
    CryptoError,
    DisclosureError,
    DisclosurePermissionError,
    GrantDeniedError,
    GrantExpiredError,
    GrantNotFoundError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    OutOfScopeError,
    QuotaExhaustedError,
    RecordsUnavailableError,
)
from recordgate.services.grants import ConsumeResult, DenyReason, GrantStore
from recordgate.services.notifications import (
    LoggingNotificationSender,
    NotificationSender,
    TemplateKind,
    notify_best_effort,
)
from recordgate.services.records import RecordsStore

__all__ = [
    "SYSTEM_ACTOR",
    "ActorContext",
    "ActorRole",
    "AllocationRegistry",
    "AuditAction",
    "AuditEvent",
    "AuditTrail",
    "Cipher",
    "ConflictError",
    "ConsumeResult",
    "CryptoError",
    "DenyReason",
    "DisclosedRecord",
    "DisclosureError",
    "DisclosurePermissionError",
    "DisclosureRequestLedger",
    "DisclosureService",
    "GrantDeniedError",
    "GrantExpiredError",
    "GrantNotFoundError",
    "GrantStore",
    "InvalidInputError",
    "InvalidStateError",
    "IssueOutcome",
    "LoggingNotificationSender",
    "NotFoundError",
    "NotificationSender",
    "OutOfScopeError",
    "QuotaExhaustedError",
    "RecordsStore",
    "RecordsUnavailableError",
    "RequestScope",
    "TemplateKind",
    "notify_best_effort",
]
