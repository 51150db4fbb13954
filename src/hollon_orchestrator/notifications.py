"""
Hollon Orchestrator - Notifications
===================================
Fire-and-forget messages to assignees. A failed send never rolls back the
state change that triggered it.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

REVIEW_REQUESTED = "review_requested"
REVIEW_RESULT = "review_result"
REASSIGNMENT = "reassignment"


class Notifier(ABC):
    """Delivery channel keyed by recipient (member) id."""

    @abstractmethod
    async def notify(self, recipient_id: str, kind: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotifier(Notifier):
    """Default channel: writes each message to the log."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    async def notify(self, recipient_id: str, kind: str, payload: Dict[str, Any]) -> None:
        self.log.info(f"📨 [{kind}] -> {recipient_id}: {payload}")


async def send_notification(
    notifier: Optional[Notifier],
    recipient_id: Optional[str],
    kind: str,
    payload: Dict[str, Any],
    log: Optional[logging.Logger] = None,
) -> bool:
    """
    Send through ``notifier``, logging and swallowing any failure.

    Returns:
        True if the message was handed to the channel
    """
    log = log or logger
    if notifier is None or not recipient_id:
        return False
    try:
        await notifier.notify(recipient_id, kind, payload)
        return True
    except Exception as e:
        log.warning(f"Notification {kind} to {recipient_id} failed: {e}")
        return False
