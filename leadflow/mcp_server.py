from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP

from leadflow import services
from leadflow.db import get_session, init_db
from leadflow.errors import CoreInvestorDecisionRequired, LeadflowError, PermissionDeniedError
from leadflow.lifecycle import Actor, LifecycleService, actor_from_profile
from leadflow.pipeline import PipelineService
from leadflow.rules import BUSINESS_PLAN_STATUSES, LEAD_STATUSES, NDA_STATUSES, OPPORTUNITY_STATUSES, ROLES
from leadflow.store import EntityStore, Filter
from leadflow.sweep import LeadSweep

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def leadflow_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Leadflow",
    instructions=(
        "Leadflow tracks real-estate investment leads through qualification, NDAs, business plans, "
        "due diligence and approval. Start with get_stats() for an overview, then get_pipeline('lead') "
        "or get_pipeline('opportunity') to browse, then get_lead(id) / get_opportunity(id) for details. "
        "Every mutating tool takes the acting user's id."
    ),
    lifespan=leadflow_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _lifecycle():
    session = get_session()
    try:
        yield LifecycleService(EntityStore(session))
    finally:
        session.close()


def _actor(store: EntityStore, user_id: int) -> Actor:
    profile = store.require("profile", user_id)
    if not profile.is_active:
        raise PermissionDeniedError(f"User {user_id} is inactive")
    return actor_from_profile(profile)


def _error(exc: LeadflowError) -> dict:
    payload = {"error": str(exc)}
    if isinstance(exc, CoreInvestorDecisionRequired):
        payload["choices"] = list(exc.choices)
        payload["missing"] = exc.missing
    return payload


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("leadflow://overview")
def leadflow_overview() -> str:
    """Overview of Leadflow: data model, lifecycle and statuses."""
    return json.dumps({
        "system": "Leadflow - investment lead and opportunity lifecycle",
        "data_model": {
            "lead": "A prospective investor. Core investors (company inquiries with high priority) "
                    "need export quota and plot size before they can become active.",
            "opportunity": "A converted lead, tracked through NDA, business plan and due diligence.",
            "nda": "Versioned NDA per opportunity; its latest status is mirrored on the opportunity.",
            "business_plan": "Versioned business plan per opportunity, reviewed by the team.",
            "checklist": "Due-diligence checklist spawned from a template when a lead is converted.",
        },
        "workflow": [
            "1. create_lead(...) - may ask for status_choice when a core investor lacks details.",
            "2. set_lead_decision(...) to approve or reject leads waiting on approval.",
            "3. convert_lead(id) - creates the opportunity and its checklist.",
            "4. issue_nda / advance_nda, then request and review business plans.",
            "5. update_checklist_item(...) until the assessment completes.",
            "6. grant_approval(stage='due_diligence'), then a senior grants stage='final'.",
        ],
        "lead_statuses": list(LEAD_STATUSES),
        "opportunity_statuses": list(OPPORTUNITY_STATUSES),
        "nda_statuses": list(NDA_STATUSES),
        "business_plan_statuses": list(BUSINESS_PLAN_STATUSES),
        "roles": list(ROLES),
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Leads
# ---------------------------------------------------------------------------


@mcp.tool()
def get_lead(lead_id: int) -> dict:
    """Get a lead with its tasks, comments and documents."""
    with _lifecycle() as svc:
        try:
            return services.lead_detail(svc.store, svc.store.require("lead", lead_id))
        except LeadflowError as exc:
            return _error(exc)


@mcp.tool()
def create_lead(
    user_id: int, name: str, inquiry_type: str,
    priority: str = "medium", source: str = "direct",
    export_quota: float | None = None, plot_size: float | None = None,
    email: str = "", phone: str = "", notes: str = "",
    status_choice: str | None = None,
) -> dict:
    """Create a lead.

    Args:
        user_id: Acting user.
        inquiry_type: individual or company.
        priority: low, medium or high.
        status_choice: waiting_for_details or waiting_for_approval. Only needed for a core investor
                       (company + high priority) missing export_quota or plot_size; the error
                       response lists the choices.
    """
    with _lifecycle() as svc:
        try:
            fields = {k: v for k, v in {
                "name": name, "inquiry_type": inquiry_type, "priority": priority, "source": source,
                "export_quota": export_quota, "plot_size": plot_size,
                "email": email, "phone": phone, "notes": notes,
            }.items() if v is not None}
            result = svc.create_lead(fields, _actor(svc.store, user_id), status_choice=status_choice)
            return services.result_payload(result, services.lead_summary)
        except LeadflowError as exc:
            return _error(exc)


@mcp.tool()
def update_lead(
    user_id: int, lead_id: int,
    name: str | None = None, priority: str | None = None, status: str | None = None,
    export_quota: float | None = None, plot_size: float | None = None,
    email: str | None = None, phone: str | None = None, notes: str | None = None,
    expected_version: int | None = None, status_choice: str | None = None,
) -> dict:
    """Update fields on a lead. Only provided (non-null) arguments are applied."""
    with _lifecycle() as svc:
        try:
            updates = {k: v for k, v in {
                "name": name, "priority": priority, "status": status,
                "export_quota": export_quota, "plot_size": plot_size,
                "email": email, "phone": phone, "notes": notes,
            }.items() if v is not None}
            result = svc.update_lead(lead_id, updates, _actor(svc.store, user_id), expected_version, status_choice)
            return services.result_payload(result, services.lead_summary)
        except LeadflowError as exc:
            return _error(exc)


@mcp.tool()
def set_lead_decision(user_id: int, lead_id: int, decision: str) -> dict:
    """Approve, reject or archive a lead. decision is one of: approve, reject, archive."""
    with _lifecycle() as svc:
        actions = {"approve": svc.approve_lead, "reject": svc.reject_lead, "archive": svc.archive_lead}
        if decision not in actions:
            return {"error": f"Unknown decision '{decision}', expected one of: {', '.join(actions)}"}
        try:
            result = actions[decision](lead_id, _actor(svc.store, user_id))
            return services.result_payload(result, services.lead_summary)
        except LeadflowError as exc:
            return _error(exc)


@mcp.tool()
def convert_lead(user_id: int, lead_id: int, template_id: int | None = None) -> dict:
    """Convert an active lead into an opportunity with a due-diligence checklist."""
    with _lifecycle() as svc:
        try:
            result = svc.convert_lead_to_opportunity(lead_id, _actor(svc.store, user_id), template_id)
            return services.result_payload(result, services.opportunity_summary)
        except LeadflowError as exc:
            return _error(exc)


# ---------------------------------------------------------------------------
# Tools: Opportunities
# ---------------------------------------------------------------------------


@mcp.tool()
def get_opportunity(opportunity_id: int) -> dict:
    """Get an opportunity with NDAs, business plans, checklist and approvals."""
    with _lifecycle() as svc:
        try:
            return services.opportunity_detail(svc.store, svc.store.require("opportunity", opportunity_id))
        except LeadflowError as exc:
            return _error(exc)


@mcp.tool()
def update_opportunity_status(user_id: int, opportunity_id: int, status: str) -> dict:
    """Move an opportunity to another status along the allowed transitions."""
    with _lifecycle() as svc:
        try:
            result = svc.update_opportunity_status(opportunity_id, status, _actor(svc.store, user_id))
            opp = result.related.get("opportunity", result.entity)
            return {**services.result_payload(result, lambda _: None), "data": services.opportunity_summary(opp)}
        except LeadflowError as exc:
            return _error(exc)


@mcp.tool()
def issue_nda(user_id: int, opportunity_id: int, document_id: int | None = None) -> dict:
    """Issue the next NDA version for an opportunity."""
    with _lifecycle() as svc:
        try:
            result = svc.issue_nda(opportunity_id, _actor(svc.store, user_id), document_id)
            return services.result_payload(result, services.nda_summary)
        except LeadflowError as exc:
            return _error(exc)


@mcp.tool()
def advance_nda(user_id: int, nda_id: int, step: str) -> dict:
    """Advance an NDA. step is one of: signed, counter_signed, completed."""
    with _lifecycle() as svc:
        steps = {
            "signed": svc.mark_nda_signed,
            "counter_signed": svc.mark_nda_counter_signed,
            "completed": svc.mark_nda_completed,
        }
        if step not in steps:
            return {"error": f"Unknown step '{step}', expected one of: {', '.join(steps)}"}
        try:
            return services.result_payload(steps[step](nda_id, _actor(svc.store, user_id)), services.nda_summary)
        except LeadflowError as exc:
            return _error(exc)


@mcp.tool()
def review_business_plan(user_id: int, plan_id: int, outcome: str, feedback: str | None = None) -> dict:
    """Review the latest business plan. outcome is one of: approved, rejected, updates_needed."""
    with _lifecycle() as svc:
        outcomes = {
            "approved": svc.approve_business_plan,
            "rejected": svc.reject_business_plan,
            "updates_needed": svc.request_business_plan_updates,
        }
        if outcome not in outcomes:
            return {"error": f"Unknown outcome '{outcome}', expected one of: {', '.join(outcomes)}"}
        try:
            result = outcomes[outcome](plan_id, _actor(svc.store, user_id), feedback)
            return services.result_payload(result, services.business_plan_summary)
        except LeadflowError as exc:
            return _error(exc)


@mcp.tool()
def update_checklist_item(user_id: int, item_id: int, status: str, notes: str | None = None) -> dict:
    """Set a due-diligence item's status (not_started, in_progress, completed)."""
    with _lifecycle() as svc:
        try:
            result = svc.update_checklist_item_status(item_id, status, _actor(svc.store, user_id), notes)
            return services.result_payload(result, services.checklist_item_summary)
        except LeadflowError as exc:
            return _error(exc)


@mcp.tool()
def grant_approval(user_id: int, opportunity_id: int, stage: str, comments: str | None = None) -> dict:
    """Grant an approval. stage is due_diligence, or final (senior management only)."""
    with _lifecycle() as svc:
        grants = {"due_diligence": svc.grant_due_diligence_approval, "final": svc.grant_final_approval}
        if stage not in grants:
            return {"error": f"Unknown stage '{stage}', expected one of: {', '.join(grants)}"}
        try:
            result = grants[stage](opportunity_id, _actor(svc.store, user_id), comments)
            return services.result_payload(result, services.approval_summary)
        except LeadflowError as exc:
            return _error(exc)


# ---------------------------------------------------------------------------
# Tools: Pipeline & Stats
# ---------------------------------------------------------------------------


@mcp.tool()
def get_pipeline(pipeline_type: str = "lead", search: str | None = None) -> list[dict] | dict:
    """Stage buckets for 'lead' or 'opportunity', optionally filtered by a name search."""
    with _lifecycle() as svc:
        try:
            buckets = PipelineService(svc.store, svc).project(pipeline_type, search)
            return services.pipeline_payload(pipeline_type, buckets)
        except LeadflowError as exc:
            return _error(exc)


@mcp.tool()
def list_open_tasks(user_id: int | None = None) -> list[dict]:
    """Pending and in-progress tasks, optionally for one user."""
    with _lifecycle() as svc:
        eq = {"status": ["pending", "in_progress"]}
        if user_id is not None:
            eq["assigned_to"] = user_id
        return [services.task_summary(t) for t in svc.store.list("task", Filter(eq=eq, order_by="due_date"))]


@mcp.tool()
def get_stats() -> dict:
    """Summary counts of leads, opportunities, open tasks and queued deferred writes."""
    with _lifecycle() as svc:
        return services.compute_stats(svc.store)


# ---------------------------------------------------------------------------
# Tools: Automation
# ---------------------------------------------------------------------------


@mcp.tool()
def run_lead_sweep() -> dict:
    """Run the lead automation sweep: follow-up tasks, inactivity reminders and auto-archiving."""
    with _lifecycle() as svc:
        return LeadSweep(svc.store, svc.settings, lifecycle=svc).run().to_dict()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Leadflow MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
