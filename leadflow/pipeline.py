"""Kanban-style pipeline views over leads and opportunities.

Lead stages are derived from status and priority and are advisory only:
moving a lead into a stage applies a fixed field write, and deriving the stage
again afterwards is not guaranteed to land in the same column.
Opportunity stages are the opportunity status itself.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from leadflow.errors import ConflictError, ValidationError
from leadflow.lifecycle import Actor, LifecycleService
from leadflow.store import EntityStore

log = logging.getLogger(__name__)

PIPELINE_TYPES = ("lead", "opportunity")


@dataclass(frozen=True)
class Stage:
    id: str
    name: str


LEAD_STAGES = (
    Stage("new", "New"),
    Stage("contacted", "Contacted"),
    Stage("qualified", "Qualified"),
    Stage("meeting", "Meeting"),
)

OPPORTUNITY_STAGES = (
    Stage("assessment_in_progress", "Assessment In Progress"),
    Stage("assessment_completed", "Assessment Completed"),
    Stage("waiting_for_approval", "Waiting For Approval"),
    Stage("due_diligence_approved", "Due Diligence Approved"),
    Stage("rejected", "Rejected"),
)

# target stage -> lead field writes
LEAD_STAGE_MOVES: dict[str, dict[str, str]] = {
    "new": {"status": "active"},
    "contacted": {"status": "waiting_for_details"},
    "qualified": {"priority": "high"},
    "meeting": {"status": "active"},
}


@dataclass
class StageBucket:
    stage_id: str
    stage_name: str
    items: list[Any] = field(default_factory=list)


@dataclass
class MoveResult:
    success: bool
    message: str = ""
    entity: Any = None


def stages_for(pipeline_type: str) -> tuple[Stage, ...]:
    if pipeline_type == "lead":
        return LEAD_STAGES
    if pipeline_type == "opportunity":
        return OPPORTUNITY_STAGES
    raise ValidationError(f"Unknown pipeline type: {pipeline_type}", field="type")


def derive_lead_stage(lead) -> str:
    if lead.priority == "high":
        return "qualified"
    if lead.status in ("waiting_for_details", "waiting_for_approval"):
        return "contacted"
    if lead.status == "active":
        return "new"
    return LEAD_STAGES[0].id


def stage_of(pipeline_type: str, entity) -> str:
    stage_id = derive_lead_stage(entity) if pipeline_type == "lead" else entity.status
    ids = {s.id for s in stages_for(pipeline_type)}
    return stage_id if stage_id in ids else stages_for(pipeline_type)[0].id


class PipelineService:
    def __init__(self, store: EntityStore, lifecycle: LifecycleService | None = None):
        self.store = store
        self.lifecycle = lifecycle or LifecycleService(store)

    def project(self, pipeline_type: str, search_term: str | None = None) -> list[StageBucket]:
        """Group every lead or opportunity into exactly one stage bucket."""
        stages = stages_for(pipeline_type)
        buckets = {s.id: StageBucket(s.id, s.name) for s in stages}
        for entity in self.store.list(pipeline_type):
            buckets[stage_of(pipeline_type, entity)].items.append(entity)
        if search_term:
            term = search_term.strip().lower()
            for bucket in buckets.values():
                bucket.items = [e for e in bucket.items if term in _search_name(pipeline_type, e).lower()]
        return [buckets[s.id] for s in stages]

    def move_item(self, pipeline_type: str, entity_id: int, target_stage_id: str, actor: Actor) -> MoveResult:
        if target_stage_id not in {s.id for s in stages_for(pipeline_type)}:
            return MoveResult(False, f"Unknown {pipeline_type} stage: {target_stage_id}")
        try:
            if pipeline_type == "lead":
                result = self.lifecycle.update_lead(entity_id, dict(LEAD_STAGE_MOVES[target_stage_id]), actor)
                entity = result.entity
            else:
                result = self.lifecycle.update_opportunity_status(entity_id, target_stage_id, actor)
                entity = result.related.get("opportunity", result.entity)
        except (ValidationError, ConflictError) as exc:
            log.info("Move of %s %s to %s refused: %s", pipeline_type, entity_id, target_stage_id, exc)
            return MoveResult(False, str(exc))
        log.info("Moved %s %s to stage %s", pipeline_type, entity_id, target_stage_id)
        return MoveResult(True, "Item moved successfully", entity)


def _search_name(pipeline_type: str, entity) -> str:
    if pipeline_type == "lead":
        return entity.name or ""
    return entity.lead.name if entity.lead is not None else ""
