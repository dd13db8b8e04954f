"""Scheduled lead automation: follow-up tasks, inactivity reminders and auto-archive.

Each phase re-checks for its own earlier effects before writing, so running the
sweep twice (or concurrently with itself) does not duplicate tasks or reminders.
A failure on one lead is logged and the batch moves on.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from leadflow.config import Settings, get_settings
from leadflow.errors import LeadflowError
from leadflow.lifecycle import SYSTEM_ACTOR, LifecycleService
from leadflow.notifications import NotificationSink, StoreNotificationSink
from leadflow.store import EntityStore, Filter
from leadflow.utils import utc_now

log = logging.getLogger(__name__)


@dataclass
class SweepResult:
    tasks_created: int = 0
    notifications_created: int = 0
    leads_archived: int = 0
    failures: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class LeadSweep:
    def __init__(
        self,
        store: EntityStore,
        settings: Settings | None = None,
        notifier: NotificationSink | None = None,
        clock: Callable[[], datetime] = utc_now,
        lifecycle: LifecycleService | None = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.notifier = notifier or StoreNotificationSink(store)
        self.clock = clock
        self.lifecycle = lifecycle or LifecycleService(store, self.settings, self.notifier, clock)

    def run(self, replay_deferred: bool = True) -> SweepResult:
        result = SweepResult()
        now = self.clock()
        result.tasks_created = self.process_high_priority_leads(now, result)
        result.notifications_created = self.process_inactive_leads(now, result)
        result.leads_archived = self.archive_old_leads(now, result)
        if replay_deferred:
            replay = self.lifecycle.replay_deferred_writes()
            if replay.resolved or replay.failed or replay.abandoned:
                log.info("Deferred writes: %d resolved, %d failed, %d abandoned",
                         replay.resolved, replay.failed, replay.abandoned)
        log.info(
            "Sweep finished: %d task(s), %d reminder(s), %d archived, %d failure(s)",
            result.tasks_created, result.notifications_created, result.leads_archived, result.failures,
        )
        return result

    def process_high_priority_leads(self, now: datetime, result: SweepResult | None = None) -> int:
        leads = self.store.list("lead", Filter(eq={"priority": "high", "status": "active"}))
        created = 0
        for lead in leads:
            lead_id, name, owner = lead.id, lead.name, lead.assigned_to
            try:
                with self.store.transaction():
                    existing = self.store.first("task", Filter(eq={
                        "related_entity_id": lead_id,
                        "related_entity_type": "lead",
                        "status": "pending",
                    }))
                    if existing is not None:
                        continue
                    self.store.create("task", {
                        "title": f"Follow up with high priority lead: {name}",
                        "description": "This task was automatically created because the lead is marked as high priority.",
                        "assigned_to": owner,
                        "assigned_by": owner,
                        "status": "pending",
                        "priority": "high",
                        "due_date": now + timedelta(days=self.settings.high_priority_task_days),
                        "related_entity_id": lead_id,
                        "related_entity_type": "lead",
                    })
                created += 1
            except LeadflowError as exc:
                log.warning("Follow-up task for lead %s failed: %s", lead_id, exc)
                if result is not None:
                    result.failures += 1
        return created

    def process_inactive_leads(self, now: datetime, result: SweepResult | None = None) -> int:
        inactive_before = now - timedelta(days=self.settings.inactive_days)
        archive_before = now - timedelta(days=self.settings.archive_days)
        renotify_after = now - timedelta(days=self.settings.inactive_renotify_days)
        leads = [
            lead for lead in self.store.list("lead", Filter(
                eq={"status": "active"}, before=("updated_at", inactive_before),
            ))
            if lead.updated_at >= archive_before
        ]
        created = 0
        for lead in leads:
            lead_id = lead.id
            try:
                recent = self.store.first("notification", Filter(
                    eq={"related_entity_id": lead_id, "related_entity_type": "lead", "type": "lead_inactive"},
                    on_or_after=("created_at", renotify_after),
                ))
                if recent is not None:
                    continue
                days_inactive = (now - lead.updated_at).days
                self.notifier.notify(
                    user_id=lead.assigned_to,
                    title="Inactive Lead Reminder",
                    content=f'Lead "{lead.name}" has been inactive for {days_inactive} days.',
                    type="lead_inactive",
                    related_entity_id=lead_id,
                    related_entity_type="lead",
                )
                created += 1
            except LeadflowError as exc:
                self.store.rollback()
                log.warning("Inactivity reminder for lead %s failed: %s", lead_id, exc)
                if result is not None:
                    result.failures += 1
        return created

    def archive_old_leads(self, now: datetime, result: SweepResult | None = None) -> int:
        archive_before = now - timedelta(days=self.settings.archive_days)
        leads = self.store.list("lead", Filter(eq={"status": "active"}, before=("updated_at", archive_before)))
        archived = 0
        for lead in leads:
            lead_id, name, owner = lead.id, lead.name, lead.assigned_to
            try:
                outcome = self.lifecycle.archive_lead(lead_id, SYSTEM_ACTOR)
            except LeadflowError as exc:
                log.warning("Archiving lead %s failed: %s", lead_id, exc)
                if result is not None:
                    result.failures += 1
                continue
            if not outcome.changed:
                continue
            archived += 1
            try:
                self.notifier.notify(
                    user_id=owner,
                    title="Lead Archived",
                    content=f'Lead "{name}" was automatically archived due to inactivity.',
                    type="lead_archived",
                    related_entity_id=lead_id,
                    related_entity_type="lead",
                )
            except LeadflowError as exc:
                log.warning("Archive notification for lead %s failed: %s", lead_id, exc)
                if result is not None:
                    result.failures += 1
        return archived
