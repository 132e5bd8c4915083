"""
Notification fan-out.

Jobs on the notification queue target either one user (``push-user``) or
every holder of a set of roles (``notify-roles``). Delivery goes through a
Notifier; the default one writes to the log, and an email or push
implementation can be swapped in at worker startup.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

from jobqueue import NOTIFICATION_QUEUE
from schemas import NotificationData, NotifyJob

logger = logging.getLogger(__name__)

PUSH_USER = "push-user"
NOTIFY_ROLES = "notify-roles"
ORDERS_URL = "/profile/orders"


class Notifier(Protocol):
    def push_to_user(self, user_id: str, data: NotificationData) -> None:
        ...

    def notify_roles(self, roles: List[str], data: NotificationData) -> None:
        ...


class LogNotifier:
    """Console sink: every notification becomes a log record."""

    def push_to_user(self, user_id: str, data: NotificationData) -> None:
        logger.info("PUSH NOTIFICATION | to=%s | title=%s | message=%s | url=%s",
                    user_id, data.title, data.message, data.url)

    def notify_roles(self, roles: List[str], data: NotificationData) -> None:
        logger.info("STAFF NOTIFICATION | roles=[%s] | subject=%s | body=%s | url=%s",
                    ", ".join(roles), data.title, data.message, data.url)


def user_notification(user_id: str, title: str, message: str, url: str = ORDERS_URL) -> NotifyJob:
    return NotifyJob(type=PUSH_USER, recipient_id=user_id,
                     data=NotificationData(title=title, message=message, url=url))


def role_notification(roles: List[str], title: str, message: str, url: str = "") -> NotifyJob:
    return NotifyJob(type=NOTIFY_ROLES, roles=list(roles),
                     data=NotificationData(title=title, message=message, url=url))


def queue_notification(outbox, session, notification: NotifyJob) -> str:
    """Add a notification to the outbox of the surrounding transaction."""
    return outbox.add(session, NOTIFICATION_QUEUE, notification.type, notification.to_payload())


class NotificationHandler:
    def __init__(self, notifier: Optional[Notifier] = None):
        self.notifier = notifier or LogNotifier()

    def __call__(self, payload: Dict[str, Any]) -> bool:
        job = NotifyJob.model_validate(payload)
        if job.type == PUSH_USER:
            self.notifier.push_to_user(job.recipient_id or "", job.data)
        elif job.type == NOTIFY_ROLES:
            self.notifier.notify_roles(job.roles or [], job.data)
        else:
            logger.warning("Unknown notification type %r, dropping: %s", job.type, payload)
            return False
        return True

    def handlers(self) -> Dict[str, "NotificationHandler"]:
        return {PUSH_USER: self, NOTIFY_ROLES: self}
