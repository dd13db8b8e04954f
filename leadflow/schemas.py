"""Pydantic request/response schemas for the leadflow API."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, field_validator


class _Versioned(BaseModel):
    expected_version: int | None = None


class LeadOut(BaseModel):
    id: int
    name: str
    inquiry_type: str
    priority: str
    source: str
    status: str
    export_quota: float | None = None
    plot_size: float | None = None
    email: str = ""
    phone: str = ""
    assigned_to: int | None = None
    created_at: str | None = None
    updated_at: str | None = None
    version: int


class LeadCreate(BaseModel):
    name: str
    inquiry_type: str
    priority: str = "medium"
    source: str = "direct"
    export_quota: float | None = None
    plot_size: float | None = None
    email: str = ""
    phone: str = ""
    notes: str = ""
    assigned_to: int | None = None
    # waiting_for_details | waiting_for_approval, required for under-documented core investors
    status_choice: str | None = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name must not be blank")
        return v


class LeadUpdate(_Versioned):
    name: str | None = None
    inquiry_type: str | None = None
    priority: str | None = None
    source: str | None = None
    status: str | None = None
    export_quota: float | None = None
    plot_size: float | None = None
    email: str | None = None
    phone: str | None = None
    notes: str | None = None
    assigned_to: int | None = None
    status_choice: str | None = None


class ConvertLead(BaseModel):
    template_id: int | None = None


class OpportunityStatusUpdate(_Versioned):
    status: str


class SiteVisitSchedule(BaseModel):
    date: datetime
    notes: str | None = None


class ApprovalRequest(BaseModel):
    comments: str | None = None


class NdaIssue(BaseModel):
    document_id: int | None = None


class NdaAttach(BaseModel):
    document_id: int


class BusinessPlanRequest(BaseModel):
    notes: str | None = None


class BusinessPlanUpload(BaseModel):
    document_id: int
    status: str = "received"


class BusinessPlanReview(BaseModel):
    feedback: str | None = None


class ChecklistCreate(BaseModel):
    template_id: int | None = None


class ChecklistItemStatusUpdate(_Versioned):
    status: str
    notes: str | None = None


class ChecklistItemNotes(BaseModel):
    notes: str


class ChecklistItemAssign(BaseModel):
    assigned_to: int | None = None
    due_date: datetime | None = None


class PipelineMove(BaseModel):
    entity_id: int
    target_stage_id: str


class TaskCreate(BaseModel):
    title: str
    description: str = ""
    assigned_to: int | None = None
    priority: str = "medium"
    status: str = "pending"
    due_date: datetime | None = None
    related_entity_id: int | None = None
    related_entity_type: str | None = None


class TaskUpdate(_Versioned):
    title: str | None = None
    description: str | None = None
    assigned_to: int | None = None
    priority: str | None = None
    status: str | None = None
    due_date: datetime | None = None


class MeetingCreate(BaseModel):
    title: str
    description: str = ""
    meeting_type: str = "in_person"
    start_time: datetime
    end_time: datetime
    location: str = ""
    lead_id: int | None = None


class MeetingUpdate(_Versioned):
    title: str | None = None
    description: str | None = None
    meeting_type: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    location: str | None = None
    outcome: str | None = None
    lead_id: int | None = None


class CommentCreate(BaseModel):
    content: str


class EmailIngest(BaseModel):
    provider: str
    external_id: str
    sender_name: str = ""
    sender_email: str
    subject: str = ""
    body: str = ""
    received_at: datetime | None = None
    has_attachments: bool = False

    @field_validator("sender_email")
    @classmethod
    def sender_email_has_at(cls, v: str) -> str:
        if "@" not in v:
            raise ValueError("sender_email must be an email address")
        return v.strip()


class EmailLink(BaseModel):
    lead_id: int


class EmailConfirmLead(BaseModel):
    overrides: dict[str, Any] = {}
    status_choice: str | None = None


class LockRequest(BaseModel):
    minutes: int | None = None


class ProfileCreate(BaseModel):
    email: str
    full_name: str = ""
    role: str


class StatsOut(BaseModel):
    leads: int
    opportunities: int
    leads_by_status: dict[str, int]
    leads_by_priority: dict[str, int]
    opportunities_by_status: dict[str, int]
    open_tasks: int
    pending_deferred_writes: int


class SweepOut(BaseModel):
    tasks_created: int
    notifications_created: int
    leads_archived: int
    failures: int


class ReplayOut(BaseModel):
    resolved: int
    failed: int
    abandoned: int
