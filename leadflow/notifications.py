from __future__ import annotations

import logging
from typing import Protocol

from leadflow.rules import NOTIFICATION_TYPES, validate_choice
from leadflow.store import EntityStore

log = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def notify(
        self, user_id: int | None, title: str, content: str, type: str,
        related_entity_id: int | None = None, related_entity_type: str | None = None,
    ) -> object: ...


class StoreNotificationSink:
    """Persists notifications as rows; delivery (bell, email) reads them from there."""

    def __init__(self, store: EntityStore):
        self.store = store

    def notify(
        self, user_id: int | None, title: str, content: str, type: str,
        related_entity_id: int | None = None, related_entity_type: str | None = None,
    ):
        validate_choice(type, NOTIFICATION_TYPES, "type")
        with self.store.transaction():
            notification = self.store.create("notification", {
                "user_id": user_id,
                "title": title,
                "content": content,
                "type": type,
                "related_entity_id": related_entity_id,
                "related_entity_type": related_entity_type,
            })
        log.debug("Notification %s (%s) for user %s", notification.id, type, user_id)
        return notification
