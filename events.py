"""
Audit log and order notifications.

Both are fire-and-forget: a failure to record or deliver is logged and never
fails the request that produced the event.
"""
import logging
from typing import Callable, List, Optional

from pymongo.errors import PyMongoError

from database import now

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(self, db):
        self.db = db

    def record(self, action: str, details: str, user_id: Optional[str] = None) -> None:
        event = {"user_id": user_id, "action": action, "details": details, "created_at": now()}
        try:
            self.db["auditlog"].insert_one(event)
        except PyMongoError:
            logger.exception("Failed to write audit event %s", action)


class Notifier:
    """Fans ``notify(topic, payload)`` out to subscribed callables.

    Topics are ``admin`` for the back office and ``user:<id>`` for a customer.
    """

    def __init__(self):
        self._subscribers: List[Callable[[str, dict], None]] = []

    def subscribe(self, callback: Callable[[str, dict], None]) -> None:
        self._subscribers.append(callback)

    def notify(self, topic: str, payload: dict) -> None:
        logger.debug("notify %s %s", topic, payload.get("event"))
        for callback in list(self._subscribers):
            try:
                callback(topic, payload)
            except Exception:
                logger.exception("Notification subscriber failed for topic %s", topic)


def log_notification(topic: str, payload: dict) -> None:
    logger.info("[%s] %s order=%s", topic, payload.get("event"), payload.get("order_id"))


# push transports (websocket, email) subscribe here at deployment
notifier = Notifier()
