"""Shared business logic for the leadflow API, CLI and MCP server."""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Any

from leadflow.errors import PermissionDeniedError, ValidationError
from leadflow.lifecycle import Actor, OperationResult
from leadflow.notifications import NotificationSink, StoreNotificationSink
from leadflow.pipeline import StageBucket
from leadflow.rules import MEETING_TYPES, PRIORITIES, ROLES, TASK_STATUSES, validate_choice
from leadflow.store import EntityStore, Filter, to_dict
from leadflow.utils import as_naive_utc, iso

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

TASK_UPDATABLE_FIELDS = (
    "title", "description", "assigned_to", "status", "priority", "due_date",
    "related_entity_id", "related_entity_type",
)

MEETING_UPDATABLE_FIELDS = (
    "title", "description", "meeting_type", "start_time", "end_time", "location", "outcome", "lead_id",
)

RELATED_ENTITY_TYPES = ("lead", "meeting", "opportunity")

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def lead_summary(lead) -> dict:
    return {
        "id": lead.id, "name": lead.name, "inquiry_type": lead.inquiry_type,
        "priority": lead.priority, "source": lead.source, "status": lead.status,
        "export_quota": lead.export_quota, "plot_size": lead.plot_size,
        "email": lead.email, "phone": lead.phone, "assigned_to": lead.assigned_to,
        "created_at": iso(lead.created_at), "updated_at": iso(lead.updated_at),
        "version": lead.row_version,
    }


def lead_detail(store: EntityStore, lead) -> dict:
    base = lead_summary(lead)
    base["notes"] = lead.notes
    base["created_by"] = lead.created_by
    opp = store.first("opportunity", Filter(eq={"lead_id": lead.id}))
    base["opportunity_id"] = opp.id if opp else None
    related = Filter(eq={"related_entity_type": "lead", "related_entity_id": lead.id}, order_by="created_at")
    base["tasks"] = [task_summary(t) for t in store.list("task", related)]
    base["comments"] = [comment_summary(c) for c in store.list("comment", related)]
    base["documents"] = [document_summary(d) for d in store.list("document", related)]
    return base


def opportunity_summary(opp) -> dict:
    return {
        "id": opp.id, "lead_id": opp.lead_id,
        "lead_name": opp.lead.name if opp.lead is not None else None,
        "status": opp.status, "nda_status": opp.nda_status,
        "business_plan_status": opp.business_plan_status,
        "site_visit_scheduled": opp.site_visit_scheduled,
        "site_visit_date": iso(opp.site_visit_date),
        "created_at": iso(opp.created_at), "updated_at": iso(opp.updated_at),
        "version": opp.row_version,
    }


def opportunity_detail(store: EntityStore, opp) -> dict:
    base = opportunity_summary(opp)
    base["site_visit_notes"] = opp.site_visit_notes
    base["business_plan_notes"] = opp.business_plan_notes
    by_opp = Filter(eq={"opportunity_id": opp.id}, order_by="version")
    base["ndas"] = [nda_summary(n) for n in store.list("nda", by_opp)]
    base["business_plans"] = [business_plan_summary(p) for p in store.list("business_plan", by_opp)]
    checklist = store.first("checklist", Filter(eq={"opportunity_id": opp.id}))
    base["checklist"] = checklist_detail(store, checklist) if checklist else None
    base["approvals"] = [
        approval_summary(a)
        for a in store.list("approval", Filter(eq={"opportunity_id": opp.id}, order_by="approved_at"))
    ]
    return base


def nda_summary(nda) -> dict:
    return to_dict(nda)


def business_plan_summary(plan) -> dict:
    return to_dict(plan)


def checklist_item_summary(item) -> dict:
    data = to_dict(item)
    data["version"] = data.pop("row_version")
    return data


def checklist_detail(store: EntityStore, checklist) -> dict:
    items = store.list("checklist_item", Filter(eq={"checklist_id": checklist.id}, order_by="order_index"))
    done = sum(1 for i in items if i.status == "completed")
    return {
        "id": checklist.id, "opportunity_id": checklist.opportunity_id,
        "template_id": checklist.template_id, "name": checklist.name,
        "completed": done, "total": len(items),
        "items": [checklist_item_summary(i) for i in items],
    }


def approval_summary(approval) -> dict:
    return to_dict(approval)


def task_summary(task) -> dict:
    data = to_dict(task)
    data["version"] = data.pop("row_version")
    return data


def meeting_summary(meeting) -> dict:
    data = to_dict(meeting)
    data["version"] = data.pop("row_version")
    return data


def comment_summary(comment) -> dict:
    return to_dict(comment)


def notification_summary(notification) -> dict:
    return to_dict(notification)


def document_summary(doc) -> dict:
    data = to_dict(doc)
    data["version_history"] = data["version_history"] or []
    return data


def email_summary(email) -> dict:
    return to_dict(email)


def profile_summary(profile) -> dict:
    return {
        "id": profile.id, "email": profile.email, "full_name": profile.full_name,
        "role": profile.role, "is_active": profile.is_active,
    }


def result_payload(result: OperationResult, summarize) -> dict:
    """Serialize an orchestrator result, keeping partial-application warnings visible."""
    return {
        "changed": result.changed,
        "partial": result.partial,
        "warnings": [
            {"step": w.step, "entity_type": w.entity_type, "entity_id": w.entity_id,
             "error": w.error, "deferred_write_id": w.deferred_write_id}
            for w in result.warnings
        ],
        "data": summarize(result.entity),
    }


def pipeline_payload(pipeline_type: str, buckets: list[StageBucket]) -> list[dict]:
    summarize = lead_summary if pipeline_type == "lead" else opportunity_summary
    return [
        {"stage_id": b.stage_id, "stage_name": b.stage_name, "count": len(b.items),
         "items": [summarize(e) for e in b.items]}
        for b in buckets
    ]


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


def compute_stats(store: EntityStore) -> dict:
    leads = store.list("lead")
    opportunities = store.list("opportunity")
    return {
        "leads": len(leads),
        "opportunities": len(opportunities),
        "leads_by_status": dict(Counter(lead.status for lead in leads)),
        "leads_by_priority": dict(Counter(lead.priority for lead in leads)),
        "opportunities_by_status": dict(Counter(o.status for o in opportunities)),
        "open_tasks": store.count("task", Filter(eq={"status": ["pending", "in_progress"]})),
        "pending_deferred_writes": store.count("deferred_write", Filter(eq={"resolved_at": None, "abandoned": False})),
    }


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def pick_updates(updates: dict[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
    """Keep the non-None values of *updates* that are in *fields*."""
    return {f: updates[f] for f in fields if updates.get(f) is not None}


def _check_related(store: EntityStore, entity_type: str | None, entity_id: int | None) -> None:
    if entity_type is None and entity_id is None:
        return
    if entity_type not in RELATED_ENTITY_TYPES or entity_id is None:
        raise ValidationError(
            f"related entity must be one of {', '.join(RELATED_ENTITY_TYPES)} with an id",
            field="related_entity_type",
        )
    store.require(entity_type, entity_id)


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


def create_profile(store: EntityStore, email: str, full_name: str, role: str):
    validate_choice(role, ROLES, "role")
    email = email.strip().lower()
    if "@" not in email:
        raise ValidationError("A valid email is required", field="email")
    if store.first("profile", Filter(eq={"email": email})) is not None:
        raise ValidationError(f"A user with email {email} already exists", field="email")
    with store.transaction():
        profile = store.create("profile", {"email": email, "full_name": full_name.strip(), "role": role})
    log.info("Created %s user %s (%s)", role, profile.id, email)
    return profile


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


def _validate_task(store: EntityStore, data: dict[str, Any]) -> dict[str, Any]:
    validate_choice(data.get("status"), TASK_STATUSES, "status")
    validate_choice(data.get("priority"), PRIORITIES, "priority")
    if data.get("assigned_to") is not None:
        store.require("profile", data["assigned_to"])
    if "due_date" in data:
        data["due_date"] = as_naive_utc(data["due_date"])
    return data


def create_task(
    store: EntityStore, fields: dict[str, Any], actor: Actor, notifier: NotificationSink | None = None,
):
    """Create a task; assigning it to someone else notifies them."""
    data = pick_updates(fields, TASK_UPDATABLE_FIELDS)
    if not str(data.get("title") or "").strip():
        raise ValidationError("Task title is required", field="title")
    data.setdefault("status", "pending")
    data.setdefault("priority", "medium")
    data.setdefault("assigned_to", actor.user_id)
    _validate_task(store, data)
    _check_related(store, data.get("related_entity_type"), data.get("related_entity_id"))
    with store.transaction():
        task = store.create("task", {**data, "assigned_by": actor.user_id})
    log.info("Task %s created for user %s", task.id, task.assigned_to)
    if task.assigned_to is not None and task.assigned_to != actor.user_id:
        (notifier or StoreNotificationSink(store)).notify(
            user_id=task.assigned_to,
            title="New task assigned",
            content=f'You have been assigned the task "{task.title}".',
            type="task_assigned",
            related_entity_id=task.id,
            related_entity_type="task",
        )
    return task


def update_task(
    store: EntityStore, task_id: int, fields: dict[str, Any], actor: Actor,
    expected_version: int | None = None, notifier: NotificationSink | None = None,
):
    task = store.require("task", task_id)
    previous_assignee = task.assigned_to
    data = _validate_task(store, pick_updates(fields, TASK_UPDATABLE_FIELDS))
    if not data:
        return task
    with store.transaction():
        task = store.update("task", task_id, data, expected_version=expected_version)
    log.info("Task %s updated: %s", task_id, ", ".join(sorted(data)))
    if task.assigned_to not in (None, previous_assignee, actor.user_id):
        (notifier or StoreNotificationSink(store)).notify(
            user_id=task.assigned_to,
            title="Task reassigned to you",
            content=f'You have been assigned the task "{task.title}".',
            type="task_assigned",
            related_entity_id=task.id,
            related_entity_type="task",
        )
    return task


def list_tasks(
    store: EntityStore, assigned_to: int | None = None, status: str | None = None,
    related_entity_type: str | None = None, related_entity_id: int | None = None,
) -> list:
    eq: dict[str, Any] = {}
    if assigned_to is not None:
        eq["assigned_to"] = assigned_to
    if status:
        validate_choice(status, TASK_STATUSES, "status")
        eq["status"] = status
    if related_entity_type:
        eq["related_entity_type"] = related_entity_type
    if related_entity_id is not None:
        eq["related_entity_id"] = related_entity_id
    return store.list("task", Filter(eq=eq, order_by="due_date"))


def delete_task(store: EntityStore, task_id: int) -> None:
    with store.transaction():
        store.delete("task", task_id)
    log.info("Task %s deleted", task_id)


# ---------------------------------------------------------------------------
# Meetings
# ---------------------------------------------------------------------------


def _validate_meeting(store: EntityStore, data: dict[str, Any], current=None) -> dict[str, Any]:
    validate_choice(data.get("meeting_type"), MEETING_TYPES, "meeting_type")
    for key in ("start_time", "end_time"):
        if key in data:
            data[key] = as_naive_utc(data[key])
    start = data.get("start_time") or (current.start_time if current else None)
    end = data.get("end_time") or (current.end_time if current else None)
    if start is None or end is None:
        raise ValidationError("Meetings need a start and end time", field="start_time")
    if end <= start:
        raise ValidationError("Meeting must end after it starts", field="end_time")
    if data.get("lead_id") is not None:
        store.require("lead", data["lead_id"])
    return data


def create_meeting(store: EntityStore, fields: dict[str, Any], actor: Actor):
    data = pick_updates(fields, MEETING_UPDATABLE_FIELDS)
    if not str(data.get("title") or "").strip():
        raise ValidationError("Meeting title is required", field="title")
    data.setdefault("meeting_type", "in_person")
    _validate_meeting(store, data)
    with store.transaction():
        meeting = store.create("meeting", {**data, "created_by": actor.user_id})
    log.info("Meeting %s scheduled for %s", meeting.id, meeting.start_time)
    return meeting


def update_meeting(
    store: EntityStore, meeting_id: int, fields: dict[str, Any], expected_version: int | None = None,
):
    meeting = store.require("meeting", meeting_id)
    data = _validate_meeting(store, pick_updates(fields, MEETING_UPDATABLE_FIELDS), meeting)
    if not data:
        return meeting
    with store.transaction():
        meeting = store.update("meeting", meeting_id, data, expected_version=expected_version)
    log.info("Meeting %s updated", meeting_id)
    return meeting


def list_meetings(
    store: EntityStore, lead_id: int | None = None,
    start: datetime | None = None, end: datetime | None = None,
) -> list:
    eq = {"lead_id": lead_id} if lead_id is not None else {}
    return store.list("meeting", Filter(
        eq=eq,
        on_or_after=("start_time", as_naive_utc(start)) if start else None,
        before=("start_time", as_naive_utc(end)) if end else None,
        order_by="start_time",
    ))


def delete_meeting(store: EntityStore, meeting_id: int) -> None:
    with store.transaction():
        store.delete("meeting", meeting_id)
    log.info("Meeting %s deleted", meeting_id)


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------


def add_comment(store: EntityStore, entity_type: str, entity_id: int, content: str, actor: Actor):
    if not content or not content.strip():
        raise ValidationError("Comment cannot be empty", field="content")
    _check_related(store, entity_type, entity_id)
    with store.transaction():
        comment = store.create("comment", {
            "content": content.strip(),
            "created_by": actor.user_id,
            "related_entity_type": entity_type,
            "related_entity_id": entity_id,
        })
    return comment


def list_comments(store: EntityStore, entity_type: str, entity_id: int) -> list:
    return store.list("comment", Filter(
        eq={"related_entity_type": entity_type, "related_entity_id": entity_id}, order_by="created_at",
    ))


def delete_comment(store: EntityStore, comment_id: int, actor: Actor) -> None:
    comment = store.require("comment", comment_id)
    if comment.created_by != actor.user_id and not actor.is_senior:
        raise PermissionDeniedError("Only the author or senior management may delete a comment")
    with store.transaction():
        store.delete("comment", comment_id)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


def list_notifications(store: EntityStore, user_id: int, unread_only: bool = False) -> list:
    eq: dict[str, Any] = {"user_id": user_id}
    if unread_only:
        eq["is_read"] = False
    return store.list("notification", Filter(eq=eq, order_by="created_at", descending=True))


def mark_notification_read(store: EntityStore, notification_id: int, actor: Actor):
    notification = store.require("notification", notification_id)
    if notification.user_id != actor.user_id:
        raise PermissionDeniedError("Notifications can only be marked read by their recipient")
    if notification.is_read:
        return notification
    with store.transaction():
        return store.update("notification", notification_id, {"is_read": True})


def mark_all_notifications_read(store: EntityStore, user_id: int) -> int:
    unread = list_notifications(store, user_id, unread_only=True)
    with store.transaction():
        for n in unread:
            store.update("notification", n.id, {"is_read": True})
    return len(unread)
