"""
Exchange Core - Notifications.

============================================================
PURPOSE
============================================================
Interface to the (external) notification dispatcher invoked
with (user_id, message) when a pending order fills or is
cancelled by the engine, a position is liquidated, or an
alert triggers.

Delivery (chat bots, push) lives outside the core. A failed
delivery is logged and never rolls back the trading event
that caused it.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple


logger = logging.getLogger(__name__)


class NotificationDispatcher(ABC):
    """Delivers user-facing messages."""

    @abstractmethod
    async def notify(self, user_id: int, message: str) -> None:
        pass


class LoggingNotifier(NotificationDispatcher):
    """Writes notifications to the log. Keeps the last few for inspection."""

    def __init__(self, keep: int = 100):
        self._keep = keep
        self.sent: List[Tuple[int, str]] = []

    async def notify(self, user_id: int, message: str) -> None:
        logger.info(f"[notify user={user_id}] {message}")
        self.sent.append((user_id, message))
        if len(self.sent) > self._keep:
            del self.sent[: len(self.sent) - self._keep]


async def deliver(notifier: Optional[NotificationDispatcher], user_id: int, message: str) -> bool:
    """
    Send a notification, logging delivery failures.

    Returns:
        True if delivered
    """
    if notifier is None:
        return False
    try:
        await notifier.notify(user_id, message)
        return True
    except Exception as e:
        logger.error(f"Notification to user {user_id} failed: {e}", exc_info=True)
        return False
