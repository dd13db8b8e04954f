"""Lifecycle orchestrator for leads, opportunities, NDAs, business plans and checklists.

Every operation validates against the transition tables in ``leadflow.rules``
before it writes anything.  The primary write and its audit entry are committed
as one unit.  Mirror writes onto the parent opportunity (``nda_status``,
``business_plan_status``, assessment status) are committed separately; when one
fails, the primary write stands, the failure is queued as a ``DeferredWrite``
and reported as a ``PartialApplicationWarning`` on the result.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError

from leadflow.config import DEFAULT_CHECKLIST_TEMPLATE, Settings, get_settings
from leadflow.documents import LocalDocumentStore, default_blob_store, stored_paths
from leadflow.errors import ConflictError, PermissionDeniedError, StorageError, ValidationError
from leadflow.notifications import NotificationSink, StoreNotificationSink
from leadflow.rules import (
    BUSINESS_PLAN_STATUSES, CHECKLIST_ITEM_STATUSES, INQUIRY_TYPES, LEAD_SOURCES,
    PENDING_NDA_STATUSES, PRIORITIES, WAITING_STATUSES,
    compute_assessment_status, core_investor_data_sufficient, is_core_investor_candidate,
    is_terminal, missing_core_investor_fields, next_version, resolve_lead_creation_status,
    validate_choice, validate_transition,
)
from leadflow.store import EntityStore, Filter
from leadflow.utils import as_naive_utc, json_parse, to_json, utc_now

log = logging.getLogger(__name__)

LEAD_EDITABLE_FIELDS = frozenset({
    "name", "inquiry_type", "priority", "source", "export_quota", "plot_size",
    "email", "phone", "notes", "assigned_to",
})
CORE_GATING_FIELDS = frozenset({"priority", "inquiry_type", "export_quota", "plot_size"})
ASSESSMENT_STATUSES = ("assessment_in_progress", "assessment_completed")
NDA_VERSION_RETRIES = 3


@dataclass(frozen=True)
class Actor:
    """The user an operation runs on behalf of."""
    user_id: int | None
    role: str | None = None
    name: str = ""

    @property
    def is_senior(self) -> bool:
        return self.role == "senior_management"


SYSTEM_ACTOR = Actor(user_id=None, role="system", name="automation")


@dataclass
class PartialApplicationWarning:
    """The primary write succeeded but a secondary step did not."""
    step: str
    entity_type: str
    entity_id: int | None
    error: str
    deferred_write_id: int | None = None


@dataclass
class OperationResult:
    entity: Any
    changed: bool = True
    warnings: list[PartialApplicationWarning] = field(default_factory=list)
    related: dict[str, Any] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return bool(self.warnings)


@dataclass
class ReplayResult:
    resolved: int = 0
    failed: int = 0
    abandoned: int = 0


def actor_from_profile(profile) -> Actor:
    return Actor(user_id=profile.id, role=profile.role, name=profile.full_name or profile.email)


class LifecycleService:
    def __init__(
        self,
        store: EntityStore,
        settings: Settings | None = None,
        notifier: NotificationSink | None = None,
        clock: Callable[[], datetime] = utc_now,
        blobs: LocalDocumentStore | None = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.notifier = notifier or StoreNotificationSink(store)
        self.clock = clock
        self.blobs = blobs or default_blob_store(self.settings)

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    def _audit(self, action: str, entity_type: str, entity_id: int | None, actor: Actor, changes: dict) -> None:
        self.store.create("audit_log", {
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "performed_by": actor.user_id,
            "changes_json": to_json(changes),
        })

    def _notify(self, warnings: list[PartialApplicationWarning], **kwargs) -> None:
        try:
            self.notifier.notify(**kwargs)
        except (StorageError, ConflictError) as exc:
            log.warning("Notification %s for %s %s failed: %s", kwargs.get("type"),
                        kwargs.get("related_entity_type"), kwargs.get("related_entity_id"), exc)
            warnings.append(PartialApplicationWarning(
                "notify", kwargs.get("related_entity_type") or "notification",
                kwargs.get("related_entity_id"), str(exc),
            ))

    def _mirror_fields(self, step: str, opportunity_id: int) -> dict[str, Any]:
        """Recompute the opportunity fields that mirror child state for *step*."""
        opp = self.store.require("opportunity", opportunity_id)
        if step == "nda_status":
            latest = self.store.first("nda", Filter(
                eq={"opportunity_id": opportunity_id}, order_by="version", descending=True,
            ))
            wanted = {"nda_status": latest.status if latest else "not_issued"}
        elif step == "business_plan_status":
            latest = self.store.first("business_plan", Filter(
                eq={"opportunity_id": opportunity_id}, order_by="version", descending=True,
            ))
            wanted = {"business_plan_status": latest.status if latest else "not_requested"}
        elif step == "assessment_status":
            if opp.status not in ASSESSMENT_STATUSES:
                return {}
            wanted = {"status": compute_assessment_status(self._checklist_statuses(opportunity_id))}
        else:
            raise ValidationError(f"Unknown mirror step: {step}")
        return {k: v for k, v in wanted.items() if getattr(opp, k) != v}

    def _checklist_statuses(self, opportunity_id: int) -> list[str]:
        checklist = self.store.first("checklist", Filter(eq={"opportunity_id": opportunity_id}))
        if checklist is None:
            return []
        items = self.store.list("checklist_item", Filter(eq={"checklist_id": checklist.id}))
        return [i.status for i in items]

    def _mirror(self, step: str, opportunity_id: int, warnings: list[PartialApplicationWarning]) -> None:
        try:
            with self.store.transaction():
                fields = self._mirror_fields(step, opportunity_id)
                if fields:
                    self.store.update("opportunity", opportunity_id, fields)
            if fields:
                log.info("Opportunity %s mirrored %s", opportunity_id, fields)
        except (StorageError, ConflictError) as exc:
            log.warning("Mirror write %s on opportunity %s failed: %s", step, opportunity_id, exc)
            warnings.append(PartialApplicationWarning(
                step, "opportunity", opportunity_id, str(exc), self._defer(step, opportunity_id, exc),
            ))

    def _defer(self, step: str, opportunity_id: int, exc: Exception) -> int | None:
        try:
            with self.store.transaction():
                deferred = self.store.create("deferred_write", {
                    "step": step,
                    "entity_type": "opportunity",
                    "entity_id": opportunity_id,
                    "fields_json": to_json({"step": step}),
                    "attempts": 1,
                    "last_error": str(exc),
                })
            return deferred.id
        except (StorageError, ConflictError) as defer_exc:
            log.error("Could not queue deferred write %s for opportunity %s: %s", step, opportunity_id, defer_exc)
            return None

    def replay_deferred_writes(self, limit: int | None = None) -> ReplayResult:
        """Retry queued mirror writes, recomputing each from current state."""
        result = ReplayResult()
        pending = self.store.list("deferred_write", Filter(
            eq={"resolved_at": None, "abandoned": False}, order_by="id", limit=limit,
        ))
        for deferred in pending:
            deferred_id, step, opp_id = deferred.id, deferred.step, deferred.entity_id
            attempts = deferred.attempts + 1
            try:
                with self.store.transaction():
                    fields = self._mirror_fields(step, opp_id)
                    if fields:
                        self.store.update("opportunity", opp_id, fields)
                    self.store.update("deferred_write", deferred_id, {"resolved_at": self.clock()})
                result.resolved += 1
                log.info("Replayed deferred %s on opportunity %s", step, opp_id)
            except (StorageError, ConflictError, ValidationError) as exc:
                abandoned = attempts >= self.settings.deferred_write_max_attempts
                log.warning("Deferred write %s (attempt %d) failed: %s", deferred_id, attempts, exc)
                try:
                    with self.store.transaction():
                        self.store.update("deferred_write", deferred_id, {
                            "attempts": attempts, "last_error": str(exc), "abandoned": abandoned,
                        })
                except (StorageError, ConflictError) as book_exc:
                    log.error("Could not record replay failure for %s: %s", deferred_id, book_exc)
                if abandoned:
                    result.abandoned += 1
                else:
                    result.failed += 1
        return result

    def _check_version(self, entity_type: str, entity: Any, expected_version: int | None) -> None:
        """Reject a stale caller up front, including when the write would be a no-op."""
        if expected_version is not None and entity.row_version != expected_version:
            raise ConflictError(entity_type, entity.id, expected_version, entity.row_version)

    def _require_senior(self, actor: Actor, what: str) -> None:
        if not actor.is_senior:
            raise PermissionDeniedError(f"Only senior management may {what}", required_role="senior_management")

    # ------------------------------------------------------------------
    # Leads
    # ------------------------------------------------------------------

    def _validate_lead_fields(self, fields: dict[str, Any]) -> dict[str, Any]:
        unknown = set(fields) - LEAD_EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown or read-only lead fields: {', '.join(sorted(unknown))}")
        if "name" in fields and not str(fields["name"] or "").strip():
            raise ValidationError("Lead name is required", field="name")
        validate_choice(fields.get("inquiry_type"), INQUIRY_TYPES, "inquiry_type")
        validate_choice(fields.get("priority"), PRIORITIES, "priority")
        validate_choice(fields.get("source"), LEAD_SOURCES, "source")
        quota = fields.get("export_quota")
        if quota is not None and not 0 <= quota <= 100:
            raise ValidationError("export_quota must be a percentage between 0 and 100", field="export_quota")
        plot = fields.get("plot_size")
        if plot is not None and plot < 0:
            raise ValidationError("plot_size cannot be negative", field="plot_size")
        if fields.get("assigned_to") is not None:
            self.store.require("profile", fields["assigned_to"])
        return {k: (v.strip() if isinstance(v, str) else v) for k, v in fields.items()}

    def create_lead(self, fields: dict[str, Any], actor: Actor, status_choice: str | None = None) -> OperationResult:
        """Create a lead, gating core investor candidates that lack export quota or plot size."""
        if not str(fields.get("name") or "").strip():
            raise ValidationError("Lead name is required", field="name")
        if fields.get("inquiry_type") is None:
            raise ValidationError("inquiry_type is required", field="inquiry_type")
        data = self._validate_lead_fields(fields)
        data.setdefault("priority", "medium")
        data.setdefault("source", "direct")
        if data.get("assigned_to") is None:
            data["assigned_to"] = actor.user_id
        candidate = is_core_investor_candidate(data["priority"], data["inquiry_type"])
        sufficient = core_investor_data_sufficient(data.get("export_quota"), data.get("plot_size"))
        status = resolve_lead_creation_status(
            candidate, sufficient, status_choice,
            missing_core_investor_fields(data.get("export_quota"), data.get("plot_size")),
        )
        with self.store.transaction():
            lead = self.store.create("lead", {**data, "status": status, "created_by": actor.user_id})
            self._audit("create", "lead", lead.id, actor, {"status": [None, status], **{
                k: [None, v] for k, v in data.items()
            }})
        log.info("Lead %s created with status %s", lead.id, status)
        result = OperationResult(lead)
        if lead.priority == "high":
            self._notify_high_priority(lead, actor, result.warnings)
        return result

    def _notify_high_priority(self, lead, actor: Actor, warnings: list[PartialApplicationWarning]) -> None:
        if lead.assigned_to is None or lead.assigned_to == actor.user_id:
            return
        self._notify(
            warnings,
            user_id=lead.assigned_to,
            title="High priority lead assigned",
            content=f'Lead "{lead.name}" has been assigned to you with high priority.',
            type="lead_high_priority",
            related_entity_id=lead.id,
            related_entity_type="lead",
        )

    def update_lead(
        self, lead_id: int, fields: dict[str, Any], actor: Actor,
        expected_version: int | None = None, status_choice: str | None = None,
    ) -> OperationResult:
        """Edit lead details.

        Status moves through the transition table when ``status`` is given.  If a
        gating field changes on an active lead and the lead stops qualifying as a
        sufficiently documented core investor, the caller must pick a waiting status.
        """
        lead = self.store.require("lead", lead_id)
        self._check_version("lead", lead, expected_version)
        fields = dict(fields)
        target_status = fields.pop("status", None)
        data = self._validate_lead_fields(fields)
        changes = {k: [getattr(lead, k), v] for k, v in data.items() if getattr(lead, k) != v}

        new_status = target_status or lead.status
        if new_status == "active" and (lead.status != "active" or CORE_GATING_FIELDS & set(changes)):
            merged = {k: data.get(k, getattr(lead, k)) for k in CORE_GATING_FIELDS}
            new_status = resolve_lead_creation_status(
                is_core_investor_candidate(merged["priority"], merged["inquiry_type"]),
                core_investor_data_sufficient(merged["export_quota"], merged["plot_size"]),
                status_choice,
                missing_core_investor_fields(merged["export_quota"], merged["plot_size"]),
            )
        if new_status != lead.status:
            validate_transition("lead", lead.status, new_status)
            changes["status"] = [lead.status, new_status]
            data["status"] = new_status

        if not changes:
            return OperationResult(lead, changed=False)
        became_high = "priority" in changes and data.get("priority") == "high"
        with self.store.transaction():
            lead = self.store.update("lead", lead_id, data, expected_version=expected_version)
            self._audit("update", "lead", lead_id, actor, changes)
        log.info("Lead %s updated: %s", lead_id, ", ".join(sorted(changes)))
        result = OperationResult(lead)
        if became_high:
            self._notify_high_priority(lead, actor, result.warnings)
        return result

    def _transition_lead(
        self, lead_id: int, target: str, actor: Actor, allowed_from: tuple[str, ...],
        action: str, expected_version: int | None = None,
    ) -> OperationResult:
        lead = self.store.require("lead", lead_id)
        self._check_version("lead", lead, expected_version)
        if lead.status == target:
            return OperationResult(lead, changed=False)
        if lead.status not in allowed_from:
            raise ValidationError(
                f"Cannot {action} lead {lead_id}: status is '{lead.status}', "
                f"expected {' or '.join(allowed_from)}",
                field="status",
            )
        validate_transition("lead", lead.status, target)
        previous = lead.status
        with self.store.transaction():
            lead = self.store.update("lead", lead_id, {"status": target}, expected_version=expected_version)
            self._audit(action, "lead", lead_id, actor, {"status": [previous, target]})
        log.info("Lead %s: %s -> %s (%s)", lead_id, previous, target, action)
        return OperationResult(lead)

    def approve_lead(self, lead_id: int, actor: Actor, expected_version: int | None = None) -> OperationResult:
        return self._transition_lead(lead_id, "active", actor, ("waiting_for_approval",), "approve", expected_version)

    def reject_lead(self, lead_id: int, actor: Actor, expected_version: int | None = None) -> OperationResult:
        return self._transition_lead(lead_id, "rejected", actor, WAITING_STATUSES, "reject", expected_version)

    def archive_lead(self, lead_id: int, actor: Actor, expected_version: int | None = None) -> OperationResult:
        return self._transition_lead(lead_id, "archived", actor, ("active",), "archive", expected_version)

    def delete_lead(self, lead_id: int, actor: Actor) -> None:
        """Remove a lead and the rows that only exist for it. Leads with an opportunity are kept."""
        lead = self.store.require("lead", lead_id)
        if self.store.first("opportunity", Filter(eq={"lead_id": lead_id})) is not None:
            raise ValidationError(f"Lead {lead_id} has an opportunity; reject or archive it instead")
        related = Filter(eq={"related_entity_type": "lead", "related_entity_id": lead_id})
        paths: list[str] = []
        with self.store.transaction():
            for kind in ("task", "comment"):
                for row in self.store.list(kind, related):
                    self.store.delete(kind, row.id)
            for doc in self.store.list("document", related):
                paths.extend(stored_paths(doc))
                self.store.delete("document", doc.id)
            for lock in self.store.list("record_lock", Filter(eq={"entity_type": "lead", "entity_id": lead_id})):
                self.store.delete("record_lock", lock.id)
            for meeting in self.store.list("meeting", Filter(eq={"lead_id": lead_id})):
                self.store.update("meeting", meeting.id, {"lead_id": None})
            for email in self.store.list("inbound_email", Filter(eq={"associated_lead_id": lead_id})):
                self.store.update("inbound_email", email.id, {"associated_lead_id": None})
            self.store.delete("lead", lead_id)
            self._audit("delete", "lead", lead_id, actor, {"name": [lead.name, None]})
        self.blobs.remove(paths)
        log.info("Lead %s deleted by %s (%d file(s) removed)", lead_id, actor.user_id, len(paths))

    # ------------------------------------------------------------------
    # Conversion and checklists
    # ------------------------------------------------------------------

    def convert_lead_to_opportunity(
        self, lead_id: int, actor: Actor, template_id: int | None = None,
    ) -> OperationResult:
        lead = self.store.require("lead", lead_id)
        if lead.status not in ("waiting_for_approval", "active"):
            raise ValidationError(
                f"Lead {lead_id} cannot be converted from status '{lead.status}'", field="status",
            )
        if self.store.first("opportunity", Filter(eq={"lead_id": lead_id})) is not None:
            raise ValidationError(f"Lead {lead_id} already has an opportunity", field="lead_id")
        template = self._resolve_template(template_id)
        previous = lead.status
        if previous != "active":
            validate_transition("lead", previous, "active")
        with self.store.transaction():
            if previous != "active":
                lead = self.store.update("lead", lead_id, {"status": "active"})
                self._audit("approve", "lead", lead_id, actor, {"status": [previous, "active"]})
            opp = self.store.create("opportunity", {
                "lead_id": lead_id,
                "status": "assessment_in_progress",
                "nda_status": "not_issued",
                "business_plan_status": "not_requested",
            })
            checklist = self._spawn_checklist(opp.id, template)
            self._audit("convert", "opportunity", opp.id, actor, {
                "lead_id": [None, lead_id], "checklist_id": [None, checklist.id],
            })
        log.info("Lead %s converted to opportunity %s", lead_id, opp.id)
        return OperationResult(opp, related={"lead": lead, "checklist": checklist})

    def _resolve_template(self, template_id: int | None) -> dict[str, Any]:
        if template_id is not None:
            template = self.store.require("checklist_template", template_id)
        else:
            template = (
                self.store.first("checklist_template", Filter(eq={"is_default": True}))
                or self.store.first("checklist_template")
            )
        if template is None:
            return {**DEFAULT_CHECKLIST_TEMPLATE, "id": None}
        return {
            "id": template.id,
            "name": template.name,
            "items": [
                {"name": i.name, "description": i.description, "is_required": i.is_required,
                 "order_index": i.order_index}
                for i in template.items
            ],
        }

    def _spawn_checklist(self, opportunity_id: int, template: dict[str, Any]):
        checklist = self.store.create("checklist", {
            "opportunity_id": opportunity_id,
            "template_id": template["id"],
            "name": template["name"],
        })
        for i, item in enumerate(template["items"]):
            self.store.create("checklist_item", {
                "checklist_id": checklist.id,
                "name": item["name"],
                "description": item.get("description") or "",
                "status": "not_started",
                "order_index": item.get("order_index", i),
            })
        return checklist

    def create_checklist(self, opportunity_id: int, actor: Actor, template_id: int | None = None) -> OperationResult:
        self.store.require("opportunity", opportunity_id)
        if self.store.first("checklist", Filter(eq={"opportunity_id": opportunity_id})) is not None:
            raise ValidationError(f"Opportunity {opportunity_id} already has a checklist")
        template = self._resolve_template(template_id)
        with self.store.transaction():
            checklist = self._spawn_checklist(opportunity_id, template)
            self._audit("create", "checklist", checklist.id, actor, {"template_id": [None, template["id"]]})
        log.info("Checklist %s created for opportunity %s", checklist.id, opportunity_id)
        result = OperationResult(checklist)
        self._mirror("assessment_status", opportunity_id, result.warnings)
        return result

    def _checklist_opportunity_id(self, item) -> int:
        return self.store.require("checklist", item.checklist_id).opportunity_id

    def update_checklist_item_status(
        self, item_id: int, status: str, actor: Actor,
        notes: str | None = None, expected_version: int | None = None,
    ) -> OperationResult:
        """Write the item status, then recompute the opportunity's assessment status."""
        validate_choice(status, CHECKLIST_ITEM_STATUSES, "status")
        item = self.store.require("checklist_item", item_id)
        self._check_version("checklist_item", item, expected_version)
        if item.status == status and (notes is None or notes == item.notes):
            return OperationResult(item, changed=False)
        fields: dict[str, Any] = {}
        if item.status != status:
            validate_transition("checklist_item", item.status, status)
            fields["status"] = status
            if status == "completed":
                fields["completed_at"] = self.clock()
                fields["completed_by"] = actor.user_id
            elif item.status == "completed":
                fields["completed_at"] = None
                fields["completed_by"] = None
        if notes is not None:
            fields["notes"] = notes
        previous = item.status
        opportunity_id = self._checklist_opportunity_id(item)
        with self.store.transaction():
            item = self.store.update("checklist_item", item_id, fields, expected_version=expected_version)
            self._audit("update_status", "checklist_item", item_id, actor, {"status": [previous, status]})
        log.info("Checklist item %s: %s -> %s", item_id, previous, status)
        result = OperationResult(item)
        self._mirror("assessment_status", opportunity_id, result.warnings)
        return result

    def update_checklist_item_notes(self, item_id: int, notes: str, actor: Actor) -> OperationResult:
        item = self.store.require("checklist_item", item_id)
        if item.notes == notes:
            return OperationResult(item, changed=False)
        previous = item.notes
        with self.store.transaction():
            item = self.store.update("checklist_item", item_id, {"notes": notes})
            self._audit("update_notes", "checklist_item", item_id, actor, {"notes": [previous, notes]})
        log.info("Checklist item %s notes updated", item_id)
        return OperationResult(item)

    def assign_checklist_item(
        self, item_id: int, assigned_to: int | None, actor: Actor, due_date: datetime | None = None,
    ) -> OperationResult:
        item = self.store.require("checklist_item", item_id)
        if assigned_to is not None:
            self.store.require("profile", assigned_to)
        fields = {"assigned_to": assigned_to, "due_date": as_naive_utc(due_date)}
        changes = {k: [getattr(item, k), v] for k, v in fields.items() if getattr(item, k) != v}
        if not changes:
            return OperationResult(item, changed=False)
        with self.store.transaction():
            item = self.store.update("checklist_item", item_id, fields)
            self._audit("assign", "checklist_item", item_id, actor, changes)
        log.info("Checklist item %s assigned to %s", item_id, assigned_to)
        return OperationResult(item)

    # ------------------------------------------------------------------
    # NDAs
    # ------------------------------------------------------------------

    def issue_nda(self, opportunity_id: int, actor: Actor, document_id: int | None = None) -> OperationResult:
        opp = self.store.require("opportunity", opportunity_id)
        if is_terminal("opportunity", opp.status):
            raise ValidationError(f"Opportunity {opportunity_id} is closed ({opp.status})", field="status")
        latest = self.store.first("nda", Filter(
            eq={"opportunity_id": opportunity_id}, order_by="version", descending=True,
        ))
        if latest is not None and latest.status in PENDING_NDA_STATUSES:
            raise ValidationError(
                f"NDA v{latest.version} for opportunity {opportunity_id} is still {latest.status}",
                field="status",
            )
        if document_id is not None:
            self.store.require("document", document_id)
        for attempt in range(NDA_VERSION_RETRIES):
            try:
                with self.store.transaction():
                    versions = [n.version for n in self.store.list("nda", Filter(eq={"opportunity_id": opportunity_id}))]
                    nda = self.store.create("nda", {
                        "opportunity_id": opportunity_id,
                        "version": next_version(versions),
                        "status": "issued",
                        "document_id": document_id,
                        "issued_by": actor.user_id,
                        "issued_at": self.clock(),
                    })
                    self._audit("issue", "nda", nda.id, actor, {"status": [None, "issued"], "version": [None, nda.version]})
                break
            except StorageError as exc:
                if isinstance(exc.__cause__, IntegrityError) and attempt < NDA_VERSION_RETRIES - 1:
                    log.info("NDA version collision on opportunity %s, retrying", opportunity_id)
                    continue
                raise
        log.info("NDA %s v%s issued for opportunity %s", nda.id, nda.version, opportunity_id)
        result = OperationResult(nda)
        self._mirror("nda_status", opportunity_id, result.warnings)
        return result

    def _advance_nda(self, nda_id: int, target: str, stamp: str, actor: Actor) -> OperationResult:
        nda = self.store.require("nda", nda_id)
        if nda.status == target:
            return OperationResult(nda, changed=False)
        validate_transition("nda", nda.status, target)
        previous = nda.status
        with self.store.transaction():
            nda = self.store.update("nda", nda_id, {"status": target, stamp: self.clock()})
            self._audit("update_status", "nda", nda_id, actor, {"status": [previous, target]})
        log.info("NDA %s: %s -> %s", nda_id, previous, target)
        result = OperationResult(nda)
        self._mirror("nda_status", nda.opportunity_id, result.warnings)
        return result

    def mark_nda_signed(self, nda_id: int, actor: Actor) -> OperationResult:
        return self._advance_nda(nda_id, "signed_by_investor", "signed_at", actor)

    def mark_nda_counter_signed(self, nda_id: int, actor: Actor) -> OperationResult:
        return self._advance_nda(nda_id, "counter_signed", "countersigned_at", actor)

    def mark_nda_completed(self, nda_id: int, actor: Actor) -> OperationResult:
        return self._advance_nda(nda_id, "completed", "completed_at", actor)

    def attach_nda_document(self, nda_id: int, document_id: int, actor: Actor) -> OperationResult:
        nda = self.store.require("nda", nda_id)
        self.store.require("document", document_id)
        if nda.document_id == document_id:
            return OperationResult(nda, changed=False)
        previous = nda.document_id
        with self.store.transaction():
            nda = self.store.update("nda", nda_id, {"document_id": document_id})
            self._audit("attach_document", "nda", nda_id, actor, {"document_id": [previous, document_id]})
        log.info("NDA %s document set to %s", nda_id, document_id)
        return OperationResult(nda)

    # ------------------------------------------------------------------
    # Business plans
    # ------------------------------------------------------------------

    def _plan_versions(self, opportunity_id: int) -> list[int]:
        return [p.version for p in self.store.list("business_plan", Filter(eq={"opportunity_id": opportunity_id}))]

    def request_business_plan(self, opportunity_id: int, actor: Actor, notes: str | None = None) -> OperationResult:
        opp = self.store.require("opportunity", opportunity_id)
        if opp.business_plan_status == "requested":
            latest = self.store.first("business_plan", Filter(
                eq={"opportunity_id": opportunity_id}, order_by="version", descending=True,
            ))
            return OperationResult(latest or opp, changed=False)
        validate_transition("business_plan", opp.business_plan_status, "requested")
        with self.store.transaction():
            plan = self.store.create("business_plan", {
                "opportunity_id": opportunity_id,
                "version": next_version(self._plan_versions(opportunity_id)),
                "status": "requested",
                "notes": notes or "",
                "requested_by": actor.user_id,
                "requested_at": self.clock(),
            })
            self._audit("request", "business_plan", plan.id, actor, {"status": [None, "requested"]})
        log.info("Business plan %s requested for opportunity %s", plan.id, opportunity_id)
        result = OperationResult(plan)
        self._mirror("business_plan_status", opportunity_id, result.warnings)
        return result

    def upload_business_plan_document(
        self, opportunity_id: int, document_id: int, actor: Actor, status: str = "received",
    ) -> OperationResult:
        """Record a new plan version for an uploaded document."""
        validate_choice(status, BUSINESS_PLAN_STATUSES, "status")
        opp = self.store.require("opportunity", opportunity_id)
        self.store.require("document", document_id)
        if opp.business_plan_status not in ("requested", "updates_needed"):
            raise ValidationError(
                f"No business plan is outstanding for opportunity {opportunity_id} "
                f"(status '{opp.business_plan_status}')",
                field="business_plan_status",
            )
        validate_transition("business_plan", opp.business_plan_status, status)
        with self.store.transaction():
            plan = self.store.create("business_plan", {
                "opportunity_id": opportunity_id,
                "version": next_version(self._plan_versions(opportunity_id)),
                "status": status,
                "document_id": document_id,
                "received_at": self.clock(),
            })
            self._audit("upload", "business_plan", plan.id, actor, {
                "status": [opp.business_plan_status, status], "document_id": [None, document_id],
            })
        log.info("Business plan v%s uploaded for opportunity %s", plan.version, opportunity_id)
        result = OperationResult(plan)
        self._mirror("business_plan_status", opportunity_id, result.warnings)
        return result

    def _review_business_plan(
        self, plan_id: int, target: str, actor: Actor, feedback: str | None,
    ) -> OperationResult:
        plan = self.store.require("business_plan", plan_id)
        if plan.status == target:
            return OperationResult(plan, changed=False)
        latest = max(self._plan_versions(plan.opportunity_id))
        if plan.version != latest:
            raise ValidationError(
                f"Business plan v{plan.version} has been superseded by v{latest}", field="version",
            )
        validate_transition("business_plan", plan.status, target)
        fields: dict[str, Any] = {"status": target}
        if feedback is not None:
            fields["feedback"] = feedback
        if target == "approved":
            fields["approved_by"] = actor.user_id
            fields["approved_at"] = self.clock()
        previous = plan.status
        with self.store.transaction():
            plan = self.store.update("business_plan", plan_id, fields)
            self._audit("review", "business_plan", plan_id, actor, {"status": [previous, target]})
        log.info("Business plan %s: %s -> %s", plan_id, previous, target)
        result = OperationResult(plan)
        self._mirror("business_plan_status", plan.opportunity_id, result.warnings)
        return result

    def approve_business_plan(self, plan_id: int, actor: Actor, feedback: str | None = None) -> OperationResult:
        return self._review_business_plan(plan_id, "approved", actor, feedback)

    def reject_business_plan(self, plan_id: int, actor: Actor, feedback: str | None = None) -> OperationResult:
        return self._review_business_plan(plan_id, "rejected", actor, feedback)

    def request_business_plan_updates(self, plan_id: int, actor: Actor, feedback: str | None = None) -> OperationResult:
        return self._review_business_plan(plan_id, "updates_needed", actor, feedback)

    # ------------------------------------------------------------------
    # Opportunities and approvals
    # ------------------------------------------------------------------

    def update_opportunity_status(
        self, opportunity_id: int, status: str, actor: Actor, expected_version: int | None = None,
    ) -> OperationResult:
        opp = self.store.require("opportunity", opportunity_id)
        self._check_version("opportunity", opp, expected_version)
        if opp.status == status:
            return OperationResult(opp, changed=False)
        validate_transition("opportunity", opp.status, status)
        if status == "due_diligence_approved":
            return self.grant_final_approval(opportunity_id, actor, expected_version=expected_version)
        previous = opp.status
        with self.store.transaction():
            opp = self.store.update("opportunity", opportunity_id, {"status": status}, expected_version=expected_version)
            self._audit("update_status", "opportunity", opportunity_id, actor, {"status": [previous, status]})
        log.info("Opportunity %s: %s -> %s", opportunity_id, previous, status)
        return OperationResult(opp)

    def schedule_site_visit(
        self, opportunity_id: int, date: datetime, actor: Actor, notes: str | None = None,
    ) -> OperationResult:
        opp = self.store.require("opportunity", opportunity_id)
        if is_terminal("opportunity", opp.status):
            raise ValidationError(f"Opportunity {opportunity_id} is closed ({opp.status})", field="status")
        fields = {"site_visit_scheduled": True, "site_visit_date": as_naive_utc(date)}
        if notes is not None:
            fields["site_visit_notes"] = notes
        with self.store.transaction():
            opp = self.store.update("opportunity", opportunity_id, fields)
            self._audit("schedule_site_visit", "opportunity", opportunity_id, actor, {
                "site_visit_date": [None, fields["site_visit_date"]],
            })
        log.info("Site visit for opportunity %s scheduled at %s", opportunity_id, fields["site_visit_date"])
        return OperationResult(opp)

    def _approvals(self, opportunity_id: int, stage: str | None = None) -> list:
        eq: dict[str, Any] = {"opportunity_id": opportunity_id}
        if stage:
            eq["stage"] = stage
        return self.store.list("approval", Filter(eq=eq, order_by="approved_at"))

    def list_approvals(self, opportunity_id: int) -> list:
        self.store.require("opportunity", opportunity_id)
        return self._approvals(opportunity_id)

    def grant_due_diligence_approval(
        self, opportunity_id: int, actor: Actor, comments: str | None = None,
    ) -> OperationResult:
        opp = self.store.require("opportunity", opportunity_id)
        existing = self._approvals(opportunity_id, "due_diligence")
        if existing:
            return OperationResult(existing[0], changed=False, related={"opportunity": opp})
        if opp.status not in ("assessment_completed", "waiting_for_approval"):
            raise ValidationError(
                f"Opportunity {opportunity_id} must have a completed assessment before due diligence "
                f"approval (status '{opp.status}')",
                field="status",
            )
        previous = opp.status
        with self.store.transaction():
            approval = self.store.create("approval", {
                "opportunity_id": opportunity_id,
                "stage": "due_diligence",
                "is_final": False,
                "comments": comments or "",
                "approved_by": actor.user_id,
                "approved_at": self.clock(),
            })
            if previous == "assessment_completed":
                validate_transition("opportunity", previous, "waiting_for_approval")
                opp = self.store.update("opportunity", opportunity_id, {"status": "waiting_for_approval"})
            self._audit("approve_due_diligence", "opportunity", opportunity_id, actor, {
                "status": [previous, opp.status], "approval_id": [None, approval.id],
            })
        log.info("Due diligence approval %s granted on opportunity %s", approval.id, opportunity_id)
        return OperationResult(approval, related={"opportunity": opp})

    def grant_final_approval(
        self, opportunity_id: int, actor: Actor, comments: str | None = None,
        expected_version: int | None = None,
    ) -> OperationResult:
        """Senior management sign-off; moves the opportunity to ``due_diligence_approved``."""
        self._require_senior(actor, "grant final approval")
        opp = self.store.require("opportunity", opportunity_id)
        self._check_version("opportunity", opp, expected_version)
        final = self._approvals(opportunity_id, "final")
        if final:
            return OperationResult(final[0], changed=False, related={"opportunity": opp})
        if not self._approvals(opportunity_id, "due_diligence"):
            raise ValidationError(
                f"Opportunity {opportunity_id} needs due diligence approval before final approval",
            )
        validate_transition("opportunity", opp.status, "due_diligence_approved")
        previous = opp.status
        with self.store.transaction():
            approval = self.store.create("approval", {
                "opportunity_id": opportunity_id,
                "stage": "final",
                "is_final": True,
                "comments": comments or "",
                "approved_by": actor.user_id,
                "approved_at": self.clock(),
            })
            opp = self.store.update(
                "opportunity", opportunity_id, {"status": "due_diligence_approved"},
                expected_version=expected_version,
            )
            self._audit("approve_final", "opportunity", opportunity_id, actor, {
                "status": [previous, "due_diligence_approved"], "approval_id": [None, approval.id],
            })
        log.info("Final approval %s granted on opportunity %s", approval.id, opportunity_id)
        return OperationResult(approval, related={"opportunity": opp})

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def audit_trail(self, entity_type: str, entity_id: int) -> list[dict[str, Any]]:
        rows = self.store.list("audit_log", Filter(
            eq={"entity_type": entity_type, "entity_id": entity_id}, order_by="created_at",
        ))
        return [
            {
                "id": r.id,
                "action": r.action,
                "performed_by": r.performed_by,
                "changes": json_parse(r.changes_json),
                "created_at": r.created_at.isoformat() if r.created_at else None,
            }
            for r in rows
        ]

