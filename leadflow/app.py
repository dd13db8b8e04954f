from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy.orm import Session

from leadflow import services
from leadflow.config import get_settings
from leadflow.db import get_session, init_db
from leadflow.documents import DocumentService, LocalDocumentStore, default_blob_store
from leadflow.email_bridge import EmailBridge
from leadflow.errors import (
    ConflictError, CoreInvestorDecisionRequired, NotFoundError, PermissionDeniedError,
    StorageError, ValidationError,
)
from leadflow.lifecycle import Actor, LifecycleService, actor_from_profile
from leadflow.locks import RecordLockService
from leadflow.pipeline import PipelineService
from leadflow.schemas import (
    ApprovalRequest, BusinessPlanRequest, BusinessPlanReview, BusinessPlanUpload, ChecklistCreate,
    ChecklistItemAssign, ChecklistItemNotes, ChecklistItemStatusUpdate, CommentCreate, ConvertLead,
    EmailConfirmLead, EmailIngest, EmailLink, LeadCreate, LeadOut, LeadUpdate, LockRequest, MeetingCreate,
    MeetingUpdate, NdaAttach, NdaIssue, OpportunityStatusUpdate, PipelineMove, ProfileCreate, ReplayOut,
    SiteVisitSchedule, StatsOut, SweepOut, TaskCreate, TaskUpdate,
)
from leadflow.store import EntityStore, Filter
from leadflow.sweep import LeadSweep

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Leadflow",
    version="0.1.0",
    description=(
        "Lead and opportunity lifecycle API for real-estate investment CRM. "
        "Tracks leads through qualification, NDAs, business plans, due diligence and approval. "
        "Every request except file downloads needs an X-User-Id header naming an active user."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Users", "description": "User profiles and roles."},
        {"name": "Leads", "description": "Create, edit and move leads through their statuses."},
        {"name": "Opportunities", "description": "Opportunity status, site visits and approvals."},
        {"name": "NDAs", "description": "Versioned NDA issue, signing and completion."},
        {"name": "Business Plans", "description": "Business plan requests, uploads and reviews."},
        {"name": "Checklists", "description": "Due-diligence checklists and their items."},
        {"name": "Pipeline", "description": "Kanban views over leads and opportunities."},
        {"name": "Work", "description": "Tasks, meetings, comments and notifications."},
        {"name": "Documents", "description": "Versioned document storage with signed download URLs."},
        {"name": "Email", "description": "Inbound email as a lead source."},
        {"name": "Locks", "description": "Courtesy edit locks."},
        {"name": "Automation", "description": "Lead automation sweep and deferred write replay."},
        {"name": "Stats", "description": "Aggregate counts."},
    ],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _error(status: int, exc: Exception, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status, content={"detail": str(exc), **extra})


@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return _error(404, exc)


@app.exception_handler(PermissionDeniedError)
async def permission_handler(request, exc: PermissionDeniedError):
    return _error(403, exc, required_role=exc.required_role)


@app.exception_handler(CoreInvestorDecisionRequired)
async def decision_required_handler(request, exc: CoreInvestorDecisionRequired):
    return _error(422, exc, field=exc.field, missing=exc.missing, choices=list(exc.choices))


@app.exception_handler(ValidationError)
async def validation_handler(request, exc: ValidationError):
    return _error(422, exc, field=exc.field)


@app.exception_handler(ConflictError)
async def conflict_handler(request, exc: ConflictError):
    return _error(409, exc, expected_version=exc.expected, actual_version=exc.actual)


@app.exception_handler(StorageError)
async def storage_handler(request, exc: StorageError):
    log.error("Storage failure: %s", exc)
    return _error(503, exc, retryable=exc.retryable)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def entity_store(session: Session = Depends(db_session)) -> EntityStore:
    return EntityStore(session)


def blob_store() -> LocalDocumentStore:
    return default_blob_store(get_settings())


def current_actor(
    x_user_id: int | None = Header(None), store: EntityStore = Depends(entity_store),
) -> Actor:
    if x_user_id is None:
        raise HTTPException(401, "X-User-Id header required")
    profile = store.get("profile", x_user_id)
    if profile is None or not profile.is_active:
        raise HTTPException(401, "Unknown or inactive user")
    return actor_from_profile(profile)


def lifecycle(store: EntityStore = Depends(entity_store)) -> LifecycleService:
    return LifecycleService(store, get_settings())


# ---------------------------------------------------------------------------
# Routes: Users
# ---------------------------------------------------------------------------


@app.get("/api/me", tags=["Users"], summary="Current user profile")
async def me(actor: Actor = Depends(current_actor), store: EntityStore = Depends(entity_store)):
    return services.profile_summary(store.require("profile", actor.user_id))


@app.get("/api/profiles", tags=["Users"], summary="List users")
async def list_profiles(actor: Actor = Depends(current_actor), store: EntityStore = Depends(entity_store)):
    return [services.profile_summary(p) for p in store.list("profile", Filter(order_by="full_name"))]


@app.post("/api/profiles", tags=["Users"], status_code=201, summary="Create a user (senior management only)")
async def create_profile(body: ProfileCreate, actor: Actor = Depends(current_actor),
                         store: EntityStore = Depends(entity_store)):
    if not actor.is_senior:
        raise PermissionDeniedError("Only senior management may create users", required_role="senior_management")
    return services.profile_summary(services.create_profile(store, body.email, body.full_name, body.role))


# ---------------------------------------------------------------------------
# Routes: Leads
# ---------------------------------------------------------------------------


@app.get("/api/leads", response_model=list[LeadOut], tags=["Leads"], summary="List leads")
async def list_leads(
    status: str | None = Query(None), priority: str | None = Query(None),
    search: str | None = Query(None, description="Case-insensitive substring of the lead name"),
    actor: Actor = Depends(current_actor), store: EntityStore = Depends(entity_store),
):
    eq = {k: v for k, v in {"status": status, "priority": priority}.items() if v}
    leads = store.list("lead", Filter(
        eq=eq, contains=("name", search) if search else None, order_by="created_at", descending=True,
    ))
    return [services.lead_summary(lead) for lead in leads]


@app.post("/api/leads", tags=["Leads"], status_code=201,
          summary="Create a lead (core investors without export quota / plot size need status_choice)")
async def create_lead(body: LeadCreate, actor: Actor = Depends(current_actor),
                      svc: LifecycleService = Depends(lifecycle)):
    fields = body.model_dump(exclude={"status_choice"}, exclude_none=True)
    result = svc.create_lead(fields, actor, status_choice=body.status_choice)
    return services.result_payload(result, services.lead_summary)


@app.get("/api/leads/{lead_id}", tags=["Leads"], summary="Lead detail with tasks, comments and documents")
async def get_lead(lead_id: int, actor: Actor = Depends(current_actor), store: EntityStore = Depends(entity_store)):
    return services.lead_detail(store, store.require("lead", lead_id))


@app.put("/api/leads/{lead_id}", tags=["Leads"], summary="Edit a lead")
async def update_lead(lead_id: int, body: LeadUpdate, actor: Actor = Depends(current_actor),
                      svc: LifecycleService = Depends(lifecycle)):
    fields = body.model_dump(exclude={"expected_version", "status_choice"}, exclude_none=True)
    result = svc.update_lead(lead_id, fields, actor, body.expected_version, body.status_choice)
    return services.result_payload(result, services.lead_summary)


@app.delete("/api/leads/{lead_id}", tags=["Leads"], summary="Delete a lead that has no opportunity")
async def delete_lead(lead_id: int, actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    svc.delete_lead(lead_id, actor)
    return {"ok": True}


@app.post("/api/leads/{lead_id}/approve", tags=["Leads"], summary="waiting_for_approval -> active")
async def approve_lead(lead_id: int, expected_version: int | None = Query(None),
                       actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    return services.result_payload(svc.approve_lead(lead_id, actor, expected_version), services.lead_summary)


@app.post("/api/leads/{lead_id}/reject", tags=["Leads"], summary="waiting_* -> rejected")
async def reject_lead(lead_id: int, expected_version: int | None = Query(None),
                      actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    return services.result_payload(svc.reject_lead(lead_id, actor, expected_version), services.lead_summary)


@app.post("/api/leads/{lead_id}/archive", tags=["Leads"], summary="active -> archived")
async def archive_lead(lead_id: int, expected_version: int | None = Query(None),
                       actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    return services.result_payload(svc.archive_lead(lead_id, actor, expected_version), services.lead_summary)


@app.post("/api/leads/{lead_id}/convert", tags=["Leads", "Opportunities"], status_code=201,
          summary="Convert a lead into an opportunity with a due-diligence checklist")
async def convert_lead(lead_id: int, body: ConvertLead | None = None, actor: Actor = Depends(current_actor),
                       svc: LifecycleService = Depends(lifecycle)):
    result = svc.convert_lead_to_opportunity(lead_id, actor, body.template_id if body else None)
    return services.result_payload(result, services.opportunity_summary)


@app.get("/api/audit/{entity_type}/{entity_id}", tags=["Leads", "Opportunities"], summary="Audit trail of an entity")
async def audit_trail(entity_type: str, entity_id: int, actor: Actor = Depends(current_actor),
                      svc: LifecycleService = Depends(lifecycle)):
    return svc.audit_trail(entity_type, entity_id)


# ---------------------------------------------------------------------------
# Routes: Opportunities
# ---------------------------------------------------------------------------


@app.get("/api/opportunities", tags=["Opportunities"], summary="List opportunities")
async def list_opportunities(status: str | None = Query(None), actor: Actor = Depends(current_actor),
                             store: EntityStore = Depends(entity_store)):
    eq = {"status": status} if status else {}
    return [services.opportunity_summary(o) for o in store.list("opportunity", Filter(
        eq=eq, order_by="created_at", descending=True,
    ))]


@app.get("/api/opportunities/{opportunity_id}", tags=["Opportunities"],
         summary="Opportunity detail with NDAs, business plans, checklist and approvals")
async def get_opportunity(opportunity_id: int, actor: Actor = Depends(current_actor),
                          store: EntityStore = Depends(entity_store)):
    return services.opportunity_detail(store, store.require("opportunity", opportunity_id))


@app.put("/api/opportunities/{opportunity_id}/status", tags=["Opportunities"], summary="Change opportunity status")
async def update_opportunity_status(opportunity_id: int, body: OpportunityStatusUpdate,
                                    actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    result = svc.update_opportunity_status(opportunity_id, body.status, actor, body.expected_version)
    opp = result.related.get("opportunity", result.entity)
    return {**services.result_payload(result, lambda _: None), "data": services.opportunity_summary(opp)}


@app.post("/api/opportunities/{opportunity_id}/site-visit", tags=["Opportunities"], summary="Schedule a site visit")
async def schedule_site_visit(opportunity_id: int, body: SiteVisitSchedule, actor: Actor = Depends(current_actor),
                              svc: LifecycleService = Depends(lifecycle)):
    result = svc.schedule_site_visit(opportunity_id, body.date, actor, body.notes)
    return services.result_payload(result, services.opportunity_summary)


@app.get("/api/opportunities/{opportunity_id}/approvals", tags=["Opportunities"], summary="List approvals")
async def list_approvals(opportunity_id: int, actor: Actor = Depends(current_actor),
                         svc: LifecycleService = Depends(lifecycle)):
    return [services.approval_summary(a) for a in svc.list_approvals(opportunity_id)]


@app.post("/api/opportunities/{opportunity_id}/approvals/due-diligence", tags=["Opportunities"],
          summary="Grant due-diligence approval")
async def grant_due_diligence(opportunity_id: int, body: ApprovalRequest | None = None,
                              actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    result = svc.grant_due_diligence_approval(opportunity_id, actor, body.comments if body else None)
    return services.result_payload(result, services.approval_summary)


@app.post("/api/opportunities/{opportunity_id}/approvals/final", tags=["Opportunities"],
          summary="Grant final approval (senior management only)")
async def grant_final(opportunity_id: int, body: ApprovalRequest | None = None,
                      actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    result = svc.grant_final_approval(opportunity_id, actor, body.comments if body else None)
    return services.result_payload(result, services.approval_summary)


# ---------------------------------------------------------------------------
# Routes: NDAs
# ---------------------------------------------------------------------------


@app.post("/api/opportunities/{opportunity_id}/ndas", tags=["NDAs"], status_code=201, summary="Issue a new NDA version")
async def issue_nda(opportunity_id: int, body: NdaIssue | None = None, actor: Actor = Depends(current_actor),
                    svc: LifecycleService = Depends(lifecycle)):
    result = svc.issue_nda(opportunity_id, actor, body.document_id if body else None)
    return services.result_payload(result, services.nda_summary)


@app.post("/api/ndas/{nda_id}/sign", tags=["NDAs"], summary="Mark NDA signed by the investor")
async def sign_nda(nda_id: int, actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    return services.result_payload(svc.mark_nda_signed(nda_id, actor), services.nda_summary)


@app.post("/api/ndas/{nda_id}/counter-sign", tags=["NDAs"], summary="Mark NDA counter-signed")
async def counter_sign_nda(nda_id: int, actor: Actor = Depends(current_actor),
                           svc: LifecycleService = Depends(lifecycle)):
    return services.result_payload(svc.mark_nda_counter_signed(nda_id, actor), services.nda_summary)


@app.post("/api/ndas/{nda_id}/complete", tags=["NDAs"], summary="Mark NDA completed")
async def complete_nda(nda_id: int, actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    return services.result_payload(svc.mark_nda_completed(nda_id, actor), services.nda_summary)


@app.put("/api/ndas/{nda_id}/document", tags=["NDAs"], summary="Attach a stored document to an NDA")
async def attach_nda_document(nda_id: int, body: NdaAttach, actor: Actor = Depends(current_actor),
                              svc: LifecycleService = Depends(lifecycle)):
    return services.result_payload(svc.attach_nda_document(nda_id, body.document_id, actor), services.nda_summary)


# ---------------------------------------------------------------------------
# Routes: Business plans
# ---------------------------------------------------------------------------


@app.post("/api/opportunities/{opportunity_id}/business-plans/request", tags=["Business Plans"],
          summary="Request a business plan from the investor")
async def request_business_plan(opportunity_id: int, body: BusinessPlanRequest | None = None,
                                actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    result = svc.request_business_plan(opportunity_id, actor, body.notes if body else None)
    return services.result_payload(result, services.business_plan_summary)


@app.post("/api/opportunities/{opportunity_id}/business-plans/upload", tags=["Business Plans"], status_code=201,
          summary="Record a received business plan document as a new version")
async def upload_business_plan(opportunity_id: int, body: BusinessPlanUpload, actor: Actor = Depends(current_actor),
                               svc: LifecycleService = Depends(lifecycle)):
    result = svc.upload_business_plan_document(opportunity_id, body.document_id, actor, body.status)
    return services.result_payload(result, services.business_plan_summary)


@app.post("/api/business-plans/{plan_id}/approve", tags=["Business Plans"], summary="Approve a business plan")
async def approve_business_plan(plan_id: int, body: BusinessPlanReview | None = None,
                                actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    result = svc.approve_business_plan(plan_id, actor, body.feedback if body else None)
    return services.result_payload(result, services.business_plan_summary)


@app.post("/api/business-plans/{plan_id}/reject", tags=["Business Plans"], summary="Reject a business plan")
async def reject_business_plan(plan_id: int, body: BusinessPlanReview | None = None,
                               actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    result = svc.reject_business_plan(plan_id, actor, body.feedback if body else None)
    return services.result_payload(result, services.business_plan_summary)


@app.post("/api/business-plans/{plan_id}/request-updates", tags=["Business Plans"],
          summary="Ask the investor for an updated business plan")
async def request_business_plan_updates(plan_id: int, body: BusinessPlanReview | None = None,
                                        actor: Actor = Depends(current_actor),
                                        svc: LifecycleService = Depends(lifecycle)):
    result = svc.request_business_plan_updates(plan_id, actor, body.feedback if body else None)
    return services.result_payload(result, services.business_plan_summary)


# ---------------------------------------------------------------------------
# Routes: Checklists
# ---------------------------------------------------------------------------


@app.get("/api/checklist-templates", tags=["Checklists"], summary="List checklist templates")
async def list_checklist_templates(actor: Actor = Depends(current_actor), store: EntityStore = Depends(entity_store)):
    return [
        {"id": t.id, "name": t.name, "description": t.description, "is_default": t.is_default,
         "items": [{"name": i.name, "description": i.description, "is_required": i.is_required,
                    "order_index": i.order_index} for i in t.items]}
        for t in store.list("checklist_template")
    ]


@app.post("/api/opportunities/{opportunity_id}/checklist", tags=["Checklists"], status_code=201,
          summary="Create the due-diligence checklist from a template")
async def create_checklist(opportunity_id: int, body: ChecklistCreate | None = None,
                           actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    result = svc.create_checklist(opportunity_id, actor, body.template_id if body else None)
    return services.result_payload(result, lambda c: services.checklist_detail(svc.store, c))


@app.put("/api/checklist-items/{item_id}/status", tags=["Checklists"],
         summary="Change an item's status and recompute the opportunity assessment")
async def update_checklist_item_status(item_id: int, body: ChecklistItemStatusUpdate,
                                       actor: Actor = Depends(current_actor),
                                       svc: LifecycleService = Depends(lifecycle)):
    result = svc.update_checklist_item_status(item_id, body.status, actor, body.notes, body.expected_version)
    return services.result_payload(result, services.checklist_item_summary)


@app.put("/api/checklist-items/{item_id}/notes", tags=["Checklists"], summary="Edit an item's notes")
async def update_checklist_item_notes(item_id: int, body: ChecklistItemNotes, actor: Actor = Depends(current_actor),
                                      svc: LifecycleService = Depends(lifecycle)):
    result = svc.update_checklist_item_notes(item_id, body.notes, actor)
    return services.result_payload(result, services.checklist_item_summary)


@app.put("/api/checklist-items/{item_id}/assign", tags=["Checklists"], summary="Assign an item and set its due date")
async def assign_checklist_item(item_id: int, body: ChecklistItemAssign, actor: Actor = Depends(current_actor),
                                svc: LifecycleService = Depends(lifecycle)):
    result = svc.assign_checklist_item(item_id, body.assigned_to, actor, body.due_date)
    return services.result_payload(result, services.checklist_item_summary)


# ---------------------------------------------------------------------------
# Routes: Pipeline
# ---------------------------------------------------------------------------


@app.get("/api/pipeline/{pipeline_type}", tags=["Pipeline"], summary="Stage buckets for leads or opportunities")
async def get_pipeline(pipeline_type: str, search: str | None = Query(None),
                       actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    buckets = PipelineService(svc.store, svc).project(pipeline_type, search)
    return services.pipeline_payload(pipeline_type, buckets)


@app.post("/api/pipeline/{pipeline_type}/move", tags=["Pipeline"], summary="Move an item to another stage")
async def move_pipeline_item(pipeline_type: str, body: PipelineMove, actor: Actor = Depends(current_actor),
                             svc: LifecycleService = Depends(lifecycle)):
    result = PipelineService(svc.store, svc).move_item(pipeline_type, body.entity_id, body.target_stage_id, actor)
    if not result.success:
        raise HTTPException(422, result.message)
    summarize = services.lead_summary if pipeline_type == "lead" else services.opportunity_summary
    return {"success": True, "message": result.message, "data": summarize(result.entity)}


# ---------------------------------------------------------------------------
# Routes: Tasks, meetings, comments, notifications
# ---------------------------------------------------------------------------


@app.get("/api/tasks", tags=["Work"], summary="List tasks")
async def list_tasks(
    assigned_to: int | None = Query(None), status: str | None = Query(None),
    related_entity_type: str | None = Query(None), related_entity_id: int | None = Query(None),
    actor: Actor = Depends(current_actor), store: EntityStore = Depends(entity_store),
):
    tasks = services.list_tasks(store, assigned_to, status, related_entity_type, related_entity_id)
    return [services.task_summary(t) for t in tasks]


@app.post("/api/tasks", tags=["Work"], status_code=201, summary="Create a task")
async def create_task(body: TaskCreate, actor: Actor = Depends(current_actor),
                      store: EntityStore = Depends(entity_store)):
    return services.task_summary(services.create_task(store, body.model_dump(), actor))


@app.put("/api/tasks/{task_id}", tags=["Work"], summary="Update a task")
async def update_task(task_id: int, body: TaskUpdate, actor: Actor = Depends(current_actor),
                      store: EntityStore = Depends(entity_store)):
    task = services.update_task(store, task_id, body.model_dump(exclude={"expected_version"}), actor,
                                body.expected_version)
    return services.task_summary(task)


@app.delete("/api/tasks/{task_id}", tags=["Work"], summary="Delete a task")
async def delete_task(task_id: int, actor: Actor = Depends(current_actor), store: EntityStore = Depends(entity_store)):
    services.delete_task(store, task_id)
    return {"ok": True}


@app.get("/api/meetings", tags=["Work"], summary="List meetings")
async def list_meetings(lead_id: int | None = Query(None), actor: Actor = Depends(current_actor),
                        store: EntityStore = Depends(entity_store)):
    return [services.meeting_summary(m) for m in services.list_meetings(store, lead_id)]


@app.post("/api/meetings", tags=["Work"], status_code=201, summary="Schedule a meeting")
async def create_meeting(body: MeetingCreate, actor: Actor = Depends(current_actor),
                         store: EntityStore = Depends(entity_store)):
    return services.meeting_summary(services.create_meeting(store, body.model_dump(), actor))


@app.put("/api/meetings/{meeting_id}", tags=["Work"], summary="Update a meeting")
async def update_meeting(meeting_id: int, body: MeetingUpdate, actor: Actor = Depends(current_actor),
                         store: EntityStore = Depends(entity_store)):
    meeting = services.update_meeting(store, meeting_id, body.model_dump(exclude={"expected_version"}),
                                      body.expected_version)
    return services.meeting_summary(meeting)


@app.delete("/api/meetings/{meeting_id}", tags=["Work"], summary="Delete a meeting")
async def delete_meeting(meeting_id: int, actor: Actor = Depends(current_actor),
                         store: EntityStore = Depends(entity_store)):
    services.delete_meeting(store, meeting_id)
    return {"ok": True}


@app.get("/api/comments/{entity_type}/{entity_id}", tags=["Work"], summary="Comments on an entity")
async def list_comments(entity_type: str, entity_id: int, actor: Actor = Depends(current_actor),
                        store: EntityStore = Depends(entity_store)):
    return [services.comment_summary(c) for c in services.list_comments(store, entity_type, entity_id)]


@app.post("/api/comments/{entity_type}/{entity_id}", tags=["Work"], status_code=201, summary="Add a comment")
async def add_comment(entity_type: str, entity_id: int, body: CommentCreate, actor: Actor = Depends(current_actor),
                      store: EntityStore = Depends(entity_store)):
    return services.comment_summary(services.add_comment(store, entity_type, entity_id, body.content, actor))


@app.delete("/api/comments/{comment_id}", tags=["Work"], summary="Delete a comment")
async def delete_comment(comment_id: int, actor: Actor = Depends(current_actor),
                         store: EntityStore = Depends(entity_store)):
    services.delete_comment(store, comment_id, actor)
    return {"ok": True}


@app.get("/api/notifications", tags=["Work"], summary="Notifications for the current user")
async def list_notifications(unread_only: bool = Query(False), actor: Actor = Depends(current_actor),
                             store: EntityStore = Depends(entity_store)):
    return [services.notification_summary(n)
            for n in services.list_notifications(store, actor.user_id, unread_only)]


@app.post("/api/notifications/read-all", tags=["Work"], summary="Mark every notification read")
async def mark_all_read(actor: Actor = Depends(current_actor), store: EntityStore = Depends(entity_store)):
    return {"updated": services.mark_all_notifications_read(store, actor.user_id)}


@app.post("/api/notifications/{notification_id}/read", tags=["Work"], summary="Mark a notification read")
async def mark_read(notification_id: int, actor: Actor = Depends(current_actor),
                    store: EntityStore = Depends(entity_store)):
    return services.notification_summary(services.mark_notification_read(store, notification_id, actor))


# ---------------------------------------------------------------------------
# Routes: Documents
# ---------------------------------------------------------------------------


@app.get("/api/documents", tags=["Documents"], summary="List documents")
async def list_documents(
    related_entity_type: str | None = Query(None), related_entity_id: int | None = Query(None),
    search: str | None = Query(None), actor: Actor = Depends(current_actor),
    store: EntityStore = Depends(entity_store), blobs: LocalDocumentStore = Depends(blob_store),
):
    docs = DocumentService(store, blobs).list(related_entity_type, related_entity_id, search)
    return [services.document_summary(d) for d in docs]


@app.post("/api/documents", tags=["Documents"], status_code=201,
          summary="Upload a document, or a new version when existing_document_id is given")
async def upload_document(
    file: UploadFile = File(...),
    related_entity_type: str = Form(...),
    related_entity_id: int = Form(...),
    existing_document_id: int | None = Form(None),
    actor: Actor = Depends(current_actor),
    store: EntityStore = Depends(entity_store),
    blobs: LocalDocumentStore = Depends(blob_store),
):
    if not file.filename:
        raise HTTPException(400, "File name is required")
    content = await file.read()
    doc = DocumentService(store, blobs).upload(
        file.filename, content, file.content_type, related_entity_type, related_entity_id, actor,
        existing_document_id,
    )
    return services.document_summary(doc)


@app.get("/api/documents/{document_id}/url", tags=["Documents"], summary="Signed, expiring download URL")
async def document_url(document_id: int, version: int | None = Query(None), ttl: int | None = Query(None, ge=1),
                       actor: Actor = Depends(current_actor), store: EntityStore = Depends(entity_store),
                       blobs: LocalDocumentStore = Depends(blob_store)):
    return {"url": DocumentService(store, blobs).signed_url(document_id, ttl, version)}


@app.delete("/api/documents/{document_id}", tags=["Documents"], summary="Delete a document and all its versions")
async def delete_document(document_id: int, actor: Actor = Depends(current_actor),
                          store: EntityStore = Depends(entity_store), blobs: LocalDocumentStore = Depends(blob_store)):
    DocumentService(store, blobs).delete(document_id)
    return {"ok": True}


@app.get("/files/{path:path}", tags=["Documents"], summary="Download via a signed URL")
async def download_file(path: str, expires: int = Query(...), signature: str = Query(...),
                        blobs: LocalDocumentStore = Depends(blob_store)):
    if not blobs.verify(path, expires, signature):
        raise HTTPException(403, "Invalid or expired link")
    target = blobs.local_path(path)
    if not target.exists():
        raise HTTPException(404, "File not found")
    return FileResponse(target)


# ---------------------------------------------------------------------------
# Routes: Email
# ---------------------------------------------------------------------------


@app.post("/api/emails", tags=["Email"], status_code=201, summary="Ingest a synced message")
async def ingest_email(body: EmailIngest, actor: Actor = Depends(current_actor),
                       svc: LifecycleService = Depends(lifecycle)):
    message = body.model_dump(exclude={"provider"})
    return services.email_summary(EmailBridge(svc.store, svc).ingest(body.provider, message))


@app.get("/api/emails", tags=["Email"], summary="List messages (all | enquiries | unread)")
async def list_emails(view: str = Query("all"), search: str | None = Query(None),
                      actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    return [services.email_summary(e) for e in EmailBridge(svc.store, svc).list_messages(view, search)]


@app.post("/api/emails/{message_id}/enquiry", tags=["Email"], summary="Mark a message as an enquiry")
async def mark_enquiry(message_id: int, actor: Actor = Depends(current_actor),
                       svc: LifecycleService = Depends(lifecycle)):
    return services.email_summary(EmailBridge(svc.store, svc).mark_as_enquiry(message_id))


@app.post("/api/emails/{message_id}/read", tags=["Email"], summary="Mark a message read")
async def mark_email_read(message_id: int, actor: Actor = Depends(current_actor),
                          svc: LifecycleService = Depends(lifecycle)):
    return services.email_summary(EmailBridge(svc.store, svc).mark_read(message_id))


@app.get("/api/emails/{message_id}/matches", tags=["Email"], summary="Existing leads that may match the sender")
async def email_matches(message_id: int, actor: Actor = Depends(current_actor),
                        svc: LifecycleService = Depends(lifecycle)):
    return [services.lead_summary(lead) for lead in EmailBridge(svc.store, svc).find_matching_leads(message_id)]


@app.post("/api/emails/{message_id}/link", tags=["Email"], summary="Link a message to an existing lead")
async def link_email(message_id: int, body: EmailLink, actor: Actor = Depends(current_actor),
                     svc: LifecycleService = Depends(lifecycle)):
    return services.email_summary(EmailBridge(svc.store, svc).link_to_lead(message_id, body.lead_id))


@app.get("/api/emails/{message_id}/draft-lead", tags=["Email"], summary="Proposed lead fields for a message")
async def draft_lead(message_id: int, actor: Actor = Depends(current_actor),
                     svc: LifecycleService = Depends(lifecycle)):
    return EmailBridge(svc.store, svc).draft_lead(message_id).to_dict()


@app.post("/api/emails/{message_id}/confirm-lead", tags=["Email", "Leads"], status_code=201,
          summary="Create the drafted lead and link the message")
async def confirm_lead(message_id: int, body: EmailConfirmLead, actor: Actor = Depends(current_actor),
                       svc: LifecycleService = Depends(lifecycle)):
    result = EmailBridge(svc.store, svc).confirm_lead(message_id, actor, body.overrides, body.status_choice)
    return services.result_payload(result, services.lead_summary)


# ---------------------------------------------------------------------------
# Routes: Locks
# ---------------------------------------------------------------------------


@app.get("/api/locks/{entity_type}/{entity_id}", tags=["Locks"], summary="Is the record locked by someone else?")
async def check_lock(entity_type: str, entity_id: int, actor: Actor = Depends(current_actor),
                     store: EntityStore = Depends(entity_store)):
    return RecordLockService(store).check(entity_type, entity_id, actor.user_id)


@app.post("/api/locks/{entity_type}/{entity_id}", tags=["Locks"], summary="Acquire or extend a lock")
async def acquire_lock(entity_type: str, entity_id: int, body: LockRequest | None = None,
                       actor: Actor = Depends(current_actor), store: EntityStore = Depends(entity_store)):
    acquired = RecordLockService(store).acquire(entity_type, entity_id, actor.user_id, body.minutes if body else None)
    return {"acquired": acquired}


@app.delete("/api/locks/{entity_type}/{entity_id}", tags=["Locks"], summary="Release a lock")
async def release_lock(entity_type: str, entity_id: int, actor: Actor = Depends(current_actor),
                       store: EntityStore = Depends(entity_store)):
    return {"released": RecordLockService(store).release(entity_type, entity_id, actor.user_id)}


# ---------------------------------------------------------------------------
# Routes: Automation & Stats
# ---------------------------------------------------------------------------


@app.post("/api/automation/sweep", response_model=SweepOut, tags=["Automation"],
          summary="Run the lead automation sweep now")
async def run_sweep(actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    return LeadSweep(svc.store, svc.settings, lifecycle=svc).run().to_dict()


@app.post("/api/automation/replay-deferred", response_model=ReplayOut, tags=["Automation"],
          summary="Retry queued mirror writes")
async def replay_deferred(actor: Actor = Depends(current_actor), svc: LifecycleService = Depends(lifecycle)):
    result = svc.replay_deferred_writes()
    return {"resolved": result.resolved, "failed": result.failed, "abandoned": result.abandoned}


@app.get("/api/stats", response_model=StatsOut, tags=["Stats"], summary="Aggregate counts")
async def get_stats(actor: Actor = Depends(current_actor), store: EntityStore = Depends(entity_store)):
    return services.compute_stats(store)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("leadflow.app:app", host="127.0.0.1", port=8002, reload=False)


if __name__ == "__main__":
    main()
