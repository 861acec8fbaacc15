"""Notification collaborator contract.

Workflow components announce proposals, decisions and submissions through a
NotificationSender. Delivery is fire-and-forget: a failing sender is logged
and never affects the workflow outcome.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)


class TemplateKind(str, Enum):
    """Notification templates emitted by the workflow."""

    ALLOCATION_PROPOSED = "allocation_proposed"
    ALLOCATION_DECIDED = "allocation_decided"
    REQUEST_SUBMITTED = "request_submitted"
    REQUEST_REVIEWED = "request_reviewed"


@runtime_checkable
class NotificationSender(Protocol):
    """Delivers a templated notification to a recipient (company or mailbox)."""

    async def notify(
        self,
        recipient: str,
        template_kind: TemplateKind,
        data: Mapping[str, Any],
    ) -> None: ...


class LoggingNotificationSender:
    """Default sender that only logs the notification.

    Used when no mail transport is wired in (development, tests).
    """

    async def notify(
        self,
        recipient: str,
        template_kind: TemplateKind,
        data: Mapping[str, Any],
    ) -> None:
        logger.info(
            "Notification: recipient=%s, template=%s, keys=%s",
            recipient,
            template_kind.value,
            sorted(data),
        )


async def notify_best_effort(
    sender: NotificationSender,
    recipient: str,
    template_kind: TemplateKind,
    data: Mapping[str, Any],
) -> bool:
    """Send a notification, swallowing any failure.

    Returns:
        True if the sender accepted the notification, False otherwise.
    """
    try:
        await sender.notify(recipient, template_kind, data)
    except Exception:
        logger.warning(
            "Notification failed: recipient=%s, template=%s",
            recipient,
            template_kind.value,
            exc_info=True,
        )
        return False
    return True
