"""Courtesy record locks for the editing UI.

A lock tells other users that someone has a record open.  It expires on its own
and is never checked by the store; real write safety comes from ``row_version``.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from leadflow.config import Settings, get_settings
from leadflow.errors import StorageError
from leadflow.store import ENTITY_TYPES, EntityStore, Filter
from leadflow.utils import iso, utc_now

log = logging.getLogger(__name__)


class RecordLockService:
    def __init__(
        self, store: EntityStore, settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock

    def _current(self, entity_type: str, entity_id: int):
        return self.store.first("record_lock", Filter(eq={"entity_type": entity_type, "entity_id": entity_id}))

    def acquire(self, entity_type: str, entity_id: int, user_id: int, minutes: int | None = None) -> bool:
        """Take or extend the lock. Returns False while another user holds an unexpired lock."""
        if entity_type not in ENTITY_TYPES:
            log.warning("Lock requested for unknown entity type %s", entity_type)
            return False
        now = self.clock()
        expires_at = now + timedelta(minutes=minutes or self.settings.lock_minutes)
        lock = self._current(entity_type, entity_id)
        if lock is not None and lock.locked_by != user_id and lock.expires_at > now:
            return False
        try:
            with self.store.transaction():
                if lock is None:
                    self.store.create("record_lock", {
                        "entity_type": entity_type,
                        "entity_id": entity_id,
                        "locked_by": user_id,
                        "locked_at": now,
                        "expires_at": expires_at,
                    })
                else:
                    self.store.update("record_lock", lock.id, {
                        "locked_by": user_id, "locked_at": now, "expires_at": expires_at,
                    })
        except StorageError as exc:
            # lost a race for the unique (entity_type, entity_id) row
            log.info("Lock on %s %s not acquired: %s", entity_type, entity_id, exc)
            return False
        log.debug("User %s locked %s %s until %s", user_id, entity_type, entity_id, expires_at)
        return True

    def release(self, entity_type: str, entity_id: int, user_id: int) -> bool:
        lock = self._current(entity_type, entity_id)
        if lock is None or lock.locked_by != user_id:
            return False
        with self.store.transaction():
            self.store.delete("record_lock", lock.id)
        log.debug("User %s released %s %s", user_id, entity_type, entity_id)
        return True

    def check(self, entity_type: str, entity_id: int, user_id: int | None) -> dict[str, Any]:
        """Report whether someone other than *user_id* holds an unexpired lock."""
        lock = self._current(entity_type, entity_id)
        if lock is None or lock.locked_by == user_id or lock.expires_at <= self.clock():
            return {"locked": False}
        holder = self.store.get("profile", lock.locked_by)
        return {
            "locked": True,
            "locked_by": {
                "id": lock.locked_by,
                "name": holder.full_name if holder else "",
                "email": holder.email if holder else "",
            },
            "locked_at": iso(lock.locked_at),
            "expires_at": iso(lock.expires_at),
        }

    def purge_expired(self) -> int:
        expired = self.store.list("record_lock", Filter(before=("expires_at", self.clock())))
        if not expired:
            return 0
        with self.store.transaction():
            for lock in expired:
                self.store.delete("record_lock", lock.id)
        return len(expired)
