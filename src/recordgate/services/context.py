"""Actor context supplied by the identity layer.

The identity collaborator authenticates the caller and hands each service
call an ActorContext. Services trust it and copy it into audit events.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ActorRole(str, Enum):
    """Roles known to the disclosure workflow.

    Values:
        ADMIN: Records-office administrator (allocations, reviews)
        DOCTOR: Clinician approving individual records
        INSURANCE: Requesting company user
        SYSTEM: Automated transitions (fulfilment)
    """

    ADMIN = "admin"
    DOCTOR = "doctor"
    INSURANCE = "insurance"
    SYSTEM = "system"


@dataclass(frozen=True, slots=True)
class ActorContext:
    """Authenticated caller.

    Attributes:
        actor_id: Stable identifier of the user or process.
        actor_role: Role under which the actor is acting.
    """

    actor_id: str
    actor_role: ActorRole

    @property
    def role_name(self) -> str:
        """Role as stored in audit events."""
        return self.actor_role.value


SYSTEM_ACTOR = ActorContext(actor_id="system", actor_role=ActorRole.SYSTEM)
