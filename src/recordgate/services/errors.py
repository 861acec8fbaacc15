"""Error taxonomy for the disclosure workflow.

Every domain error carries a stable ``code`` so callers can map it to a
response without matching on class names. GrantDeniedError subclasses are
raised when a read is refused by the grant itself (as opposed to the
caller lacking permission to ask at all).
"""

from __future__ import annotations

from typing import Any


class DisclosureError(Exception):
    """Base exception for disclosure workflow errors."""

    code = "disclosure_error"

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(message)


class DisclosurePermissionError(DisclosureError):
    """Caller may not perform the operation.

    Raised uniformly for missing, foreign or unallocated resources so the
    caller cannot tell which of them exist.
    """

    code = "permission"


class InvalidStateError(DisclosureError):
    """Entity is not in a state that allows the operation."""

    code = "invalid_state"

    def __init__(self, resource: str, resource_id: Any, current_state: Any, operation: str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.current_state = current_state
        self.operation = operation
        state = getattr(current_state, "value", current_state)
        super().__init__(
            f"Cannot {operation} {resource} {resource_id} in state {state}",
            resource=resource,
            resource_id=str(resource_id),
        )


class InvalidInputError(DisclosureError):
    """Arguments are missing or malformed."""

    code = "invalid_input"


class ConflictError(DisclosureError):
    """Operation would duplicate or orphan existing data."""

    code = "conflict"


class NotFoundError(DisclosureError):
    """Referenced entity does not exist."""

    code = "not_found"

    def __init__(self, resource: str, resource_id: Any) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(
            f"{resource.capitalize()} {resource_id} not found",
            resource=resource,
            resource_id=str(resource_id),
        )


class GrantDeniedError(DisclosureError):
    """Read refused by the grant (expired, used up or absent)."""

    code = "grant_denied"

    def __init__(self, request_id: str, record_id: str, message: str) -> None:
        self.request_id = request_id
        self.record_id = record_id
        # Explicit base call: GrantNotFoundError also inherits NotFoundError
        DisclosureError.__init__(self, message, request_id=request_id, record_id=record_id)


class GrantExpiredError(GrantDeniedError):
    """Grant exists but its validity window has passed."""

    code = "expired"

    def __init__(self, request_id: str, record_id: str) -> None:
        super().__init__(request_id, record_id, f"Access to record {record_id} has expired")


class QuotaExhaustedError(GrantDeniedError):
    """Grant exists but its read quota is used up (or it was revoked)."""

    code = "quota_exhausted"

    def __init__(self, request_id: str, record_id: str) -> None:
        super().__init__(
            request_id, record_id, f"Access quota for record {record_id} is exhausted"
        )


class GrantNotFoundError(GrantDeniedError, NotFoundError):
    """No grant exists for the record under the request."""

    code = "grant_not_found"

    def __init__(self, request_id: str, record_id: str) -> None:
        self.resource = "grant"
        self.resource_id = f"{request_id}/{record_id}"
        GrantDeniedError.__init__(
            self, request_id, record_id, f"Record {record_id} is not granted under {request_id}"
        )


class OutOfScopeError(DisclosureError):
    """Record does not fall within the scope of the request."""

    code = "out_of_scope"

    def __init__(self, request_id: str, record_id: str, reason: str) -> None:
        self.request_id = request_id
        self.record_id = record_id
        self.reason = reason
        super().__init__(
            f"Record {record_id} is outside the scope of {request_id}: {reason}",
            request_id=request_id,
            record_id=record_id,
        )


class RecordsUnavailableError(DisclosureError):
    """The records store failed to answer for a record."""

    code = "records_unavailable"

    def __init__(self, record_id: str, cause: str) -> None:
        self.record_id = record_id
        super().__init__(f"Record {record_id} could not be fetched: {cause}", record_id=record_id)


class CryptoError(DisclosureError):
    """Encryption or decryption failed.

    Used inside the cipher only; public cipher operations never raise it.
    """

    code = "crypto"
