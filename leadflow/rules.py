"""Status and validation rules.

Pure decision functions and the transition tables every lifecycle mutation is
checked against.  Nothing here touches the store.
"""
from __future__ import annotations

from collections.abc import Iterable

from leadflow.errors import CoreInvestorDecisionRequired, InvalidTransitionError, ValidationError

# -- enumerations -----------------------------------------------------------

INQUIRY_TYPES = ("company", "individual")
PRIORITIES = ("high", "medium", "low")
LEAD_SOURCES = ("referral", "website", "direct", "event", "outlook", "gmail", "other")
LEAD_STATUSES = ("active", "waiting_for_details", "waiting_for_approval", "rejected", "archived")
OPPORTUNITY_STATUSES = (
    "assessment_in_progress", "assessment_completed", "waiting_for_approval",
    "due_diligence_approved", "rejected",
)
NDA_STATUSES = ("not_issued", "issued", "signed_by_investor", "counter_signed", "completed")
BUSINESS_PLAN_STATUSES = ("not_requested", "requested", "received", "updates_needed", "approved", "rejected")
CHECKLIST_ITEM_STATUSES = ("not_started", "in_progress", "completed")
TASK_STATUSES = ("pending", "in_progress", "completed", "canceled")
NOTIFICATION_TYPES = (
    "lead_high_priority", "lead_inactive", "lead_archived",
    "task_assigned", "task_due_soon", "meeting_reminder",
)
ROLES = ("investor_services", "legal_services", "property_development", "senior_management")
MEETING_TYPES = ("in_person", "video", "phone")

WAITING_STATUSES = ("waiting_for_details", "waiting_for_approval")
PENDING_NDA_STATUSES = ("issued", "signed_by_investor", "counter_signed")

CORE_INVESTOR_MIN_EXPORT_QUOTA = 75.0
CORE_INVESTOR_MIN_PLOT_SIZE = 1.0

# -- transition tables ------------------------------------------------------

LEAD_TRANSITIONS: dict[str, frozenset[str]] = {
    "active": frozenset({"archived", "waiting_for_details", "waiting_for_approval"}),
    "waiting_for_details": frozenset({"waiting_for_approval", "active", "rejected"}),
    "waiting_for_approval": frozenset({"active", "rejected", "waiting_for_details"}),
    "rejected": frozenset(),
    "archived": frozenset(),
}

OPPORTUNITY_TRANSITIONS: dict[str, frozenset[str]] = {
    "assessment_in_progress": frozenset({"assessment_completed", "rejected"}),
    "assessment_completed": frozenset({"assessment_in_progress", "waiting_for_approval", "rejected"}),
    "waiting_for_approval": frozenset({"due_diligence_approved", "rejected"}),
    "due_diligence_approved": frozenset(),
    "rejected": frozenset(),
}

NDA_TRANSITIONS: dict[str, frozenset[str]] = {
    "not_issued": frozenset({"issued"}),
    "issued": frozenset({"signed_by_investor"}),
    "signed_by_investor": frozenset({"counter_signed"}),
    "counter_signed": frozenset({"completed"}),
    "completed": frozenset(),
}

BUSINESS_PLAN_TRANSITIONS: dict[str, frozenset[str]] = {
    "not_requested": frozenset({"requested"}),
    "requested": frozenset({"received"}),
    "received": frozenset({"approved", "rejected", "updates_needed"}),
    "updates_needed": frozenset({"received"}),
    "approved": frozenset(),
    "rejected": frozenset(),
}

CHECKLIST_ITEM_TRANSITIONS: dict[str, frozenset[str]] = {
    s: frozenset(CHECKLIST_ITEM_STATUSES) - {s} for s in CHECKLIST_ITEM_STATUSES
}

TRANSITION_TABLES: dict[str, dict[str, frozenset[str]]] = {
    "lead": LEAD_TRANSITIONS,
    "opportunity": OPPORTUNITY_TRANSITIONS,
    "nda": NDA_TRANSITIONS,
    "business_plan": BUSINESS_PLAN_TRANSITIONS,
    "checklist_item": CHECKLIST_ITEM_TRANSITIONS,
}


def is_terminal(kind: str, status: str) -> bool:
    return not TRANSITION_TABLES[kind].get(status)


def can_transition(kind: str, current: str, target: str) -> bool:
    return target in TRANSITION_TABLES[kind].get(current, frozenset())


def validate_transition(kind: str, current: str, target: str) -> None:
    """Raise ``InvalidTransitionError`` unless ``current -> target`` is allowed for *kind*.

    Unknown target statuses raise a plain ``ValidationError``.
    """
    table = TRANSITION_TABLES[kind]
    if target not in table:
        raise ValidationError(f"Unknown {kind} status: {target}", field="status")
    if not can_transition(kind, current, target):
        raise InvalidTransitionError(kind, current, target, table.get(current, frozenset()))


def validate_choice(value: str | None, allowed: Iterable[str], field: str) -> None:
    if value is not None and value not in allowed:
        raise ValidationError(f"Invalid {field}: {value!r}. Expected one of: {', '.join(allowed)}", field=field)


# -- core investor gating ---------------------------------------------------

def is_core_investor_candidate(priority: str | None, inquiry_type: str | None) -> bool:
    return priority == "high" and inquiry_type == "company"


def core_investor_data_sufficient(export_quota: float | None, plot_size: float | None) -> bool:
    return (
        export_quota is not None and export_quota >= CORE_INVESTOR_MIN_EXPORT_QUOTA
        and plot_size is not None and plot_size >= CORE_INVESTOR_MIN_PLOT_SIZE
    )


def missing_core_investor_fields(export_quota: float | None, plot_size: float | None) -> list[str]:
    missing = []
    if export_quota is None or export_quota < CORE_INVESTOR_MIN_EXPORT_QUOTA:
        missing.append(f"export_quota >= {CORE_INVESTOR_MIN_EXPORT_QUOTA:g}%")
    if plot_size is None or plot_size < CORE_INVESTOR_MIN_PLOT_SIZE:
        missing.append(f"plot_size >= {CORE_INVESTOR_MIN_PLOT_SIZE:g} ha")
    return missing


def resolve_lead_creation_status(
    candidate_core: bool,
    data_sufficient: bool,
    user_choice: str | None = None,
    missing: list[str] | None = None,
) -> str:
    """Decide the initial status for a new lead.

    A core investor candidate without sufficient data never becomes ``active``:
    the caller must pick one of the waiting statuses, otherwise
    ``CoreInvestorDecisionRequired`` is raised.
    """
    if not candidate_core or data_sufficient:
        return "active"
    if user_choice is None:
        raise CoreInvestorDecisionRequired(missing or [], WAITING_STATUSES)
    if user_choice not in WAITING_STATUSES:
        raise ValidationError(
            f"Core investor leads without sufficient data must start in one of "
            f"{', '.join(WAITING_STATUSES)}, not {user_choice!r}",
            field="status",
        )
    return user_choice


# -- versioning and assessment ----------------------------------------------

def next_version(existing_versions: Iterable[int]) -> int:
    versions = list(existing_versions)
    return max(versions) + 1 if versions else 1


next_nda_version = next_version


def compute_assessment_status(item_statuses: Iterable[str]) -> str:
    statuses = list(item_statuses)
    if statuses and all(s == "completed" for s in statuses):
        return "assessment_completed"
    return "assessment_in_progress"
