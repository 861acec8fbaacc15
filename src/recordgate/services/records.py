"""Records store collaborator contract.

Medical records live outside this service. The disclosure workflow only
needs to fetch one record by id, check which subject it belongs to and
whether it falls within a request's scope.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Mapping

RECORD_ID_KEY = "record_id"
SUBJECT_ID_KEY = "subject_id"
RECORD_TYPE_KEY = "record_type"
VISIT_DATE_KEY = "visit_date"


@runtime_checkable
class RecordsStore(Protocol):
    """Read access to the system of record."""

    async def get_record(self, record_id: str) -> Mapping[str, Any] | None:
        """Return the stored record (sensitive fields as stored) or None."""
        ...


def visit_date_of(record: Mapping[str, Any]) -> date | None:
    """Extract the visit date of a record as a date.

    Accepts date, datetime or ISO-8601 string values; anything else is
    treated as missing.
    """
    value = record.get(VISIT_DATE_KEY)
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None
