"""Tests for pipeline stage projection and moves."""
from __future__ import annotations

import pytest
from sqlalchemy.orm import sessionmaker

from leadflow.config import Settings
from leadflow.db import make_engine
from leadflow.errors import ValidationError
from leadflow.lifecycle import Actor, LifecycleService
from leadflow.models import Base
from leadflow.pipeline import LEAD_STAGES, OPPORTUNITY_STAGES, PipelineService, derive_lead_stage
from leadflow.store import EntityStore

LEADS = [
    ("Acme Farms", "high", "active"),
    ("Baltic Timber", "high", "waiting_for_approval"),
    ("Cedar Foods", "medium", "active"),
    ("Delta Exports", "low", "waiting_for_details"),
    ("Elm Retail", "medium", "waiting_for_approval"),
    ("Fir Logistics", "low", "archived"),
    ("Gum Holdings", "medium", "rejected"),
    ("Hazel Agro", "high", "archived"),
    ("Ivy Textiles", "low", "active"),
    ("Juniper Steel", "medium", "waiting_for_details"),
]


@pytest.fixture()
def store():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    yield EntityStore(session)
    session.close()
    engine.dispose()


@pytest.fixture()
def actor(store):
    with store.transaction():
        profile = store.create("profile", {"email": "pm@example.com", "full_name": "PM", "role": "property_development"})
    return Actor(profile.id, profile.role, profile.full_name)


@pytest.fixture()
def pipeline(store, tmp_path):
    settings = Settings(
        project_root=tmp_path, data_dir=tmp_path, database_url="sqlite://",
        documents_dir=tmp_path / "documents", signing_key="test-key",
    )
    return PipelineService(store, LifecycleService(store, settings))


@pytest.fixture()
def leads(store):
    with store.transaction():
        return [
            store.create("lead", {"name": n, "inquiry_type": "individual", "priority": p, "status": s})
            for n, p, s in LEADS
        ]


def _bucket(buckets, stage_id):
    return next(b for b in buckets if b.stage_id == stage_id)


class TestLeadProjection:
    def test_every_lead_in_exactly_one_bucket(self, pipeline, leads):
        buckets = pipeline.project("lead")
        assert [b.stage_id for b in buckets] == [s.id for s in LEAD_STAGES]
        placed = [lead.id for b in buckets for lead in b.items]
        assert sorted(placed) == sorted(lead.id for lead in leads)

    def test_qualified_holds_exactly_high_priority(self, pipeline, leads):
        qualified = _bucket(pipeline.project("lead"), "qualified")
        assert {lead.name for lead in qualified.items} == {n for n, p, _ in LEADS if p == "high"}

    def test_waiting_leads_are_contacted(self, pipeline, leads):
        contacted = _bucket(pipeline.project("lead"), "contacted")
        assert {lead.name for lead in contacted.items} == {
            "Delta Exports", "Elm Retail", "Juniper Steel",
        }

    def test_meeting_bucket_is_never_derived(self, pipeline, leads):
        assert _bucket(pipeline.project("lead"), "meeting").items == []

    def test_search_filters_within_buckets(self, pipeline, leads):
        buckets = pipeline.project("lead", "  TIMBER ")
        assert [lead.name for b in buckets for lead in b.items] == ["Baltic Timber"]
        assert len(buckets) == len(LEAD_STAGES)

    def test_unknown_pipeline_type(self, pipeline):
        with pytest.raises(ValidationError):
            pipeline.project("contact")


class TestLeadMoves:
    def test_move_to_qualified_sets_high_priority(self, pipeline, leads, actor):
        cedar = leads[2]
        result = pipeline.move_item("lead", cedar.id, "qualified", actor)
        assert result.success
        assert result.entity.priority == "high"
        assert derive_lead_stage(result.entity) == "qualified"

    def test_move_to_meeting_does_not_land_in_meeting(self, pipeline, leads, actor):
        cedar = leads[2]
        result = pipeline.move_item("lead", cedar.id, "meeting", actor)
        assert result.success
        assert result.entity.status == "active"
        assert derive_lead_stage(result.entity) == "new"

    def test_move_to_contacted_sets_waiting_for_details(self, pipeline, leads, actor):
        ivy = leads[8]
        result = pipeline.move_item("lead", ivy.id, "contacted", actor)
        assert result.success
        assert result.entity.status == "waiting_for_details"

    def test_illegal_move_reports_failure(self, pipeline, leads, actor):
        rejected = leads[6]
        result = pipeline.move_item("lead", rejected.id, "new", actor)
        assert not result.success
        assert "rejected" in result.message

    def test_unknown_stage_reports_failure(self, pipeline, leads, actor):
        result = pipeline.move_item("lead", leads[0].id, "closed_won", actor)
        assert not result.success
        assert "closed_won" in result.message


class TestOpportunityPipeline:
    def test_stage_is_status_and_moves_follow_transitions(self, pipeline, store, actor):
        lifecycle = pipeline.lifecycle
        lead = lifecycle.create_lead({"name": "Kale Orchards", "inquiry_type": "individual"}, actor).entity
        opp = lifecycle.convert_lead_to_opportunity(lead.id, actor).entity

        buckets = pipeline.project("opportunity", "kale")
        assert [b.stage_id for b in buckets] == [s.id for s in OPPORTUNITY_STAGES]
        assert [o.id for o in _bucket(buckets, "assessment_in_progress").items] == [opp.id]

        skipped = pipeline.move_item("opportunity", opp.id, "waiting_for_approval", actor)
        assert not skipped.success

        rejected = pipeline.move_item("opportunity", opp.id, "rejected", actor)
        assert rejected.success
        assert rejected.entity.status == "rejected"
        assert [o.id for o in _bucket(pipeline.project("opportunity"), "rejected").items] == [opp.id]

    def test_final_approval_move_needs_senior(self, pipeline, store, actor):
        lifecycle = pipeline.lifecycle
        lead = lifecycle.create_lead({"name": "Larch Mills", "inquiry_type": "individual"}, actor).entity
        opp = lifecycle.convert_lead_to_opportunity(lead.id, actor).entity
        with store.transaction():
            store.update("opportunity", opp.id, {"status": "waiting_for_approval"})
        result = pipeline.move_item("opportunity", opp.id, "due_diligence_approved", actor)
        assert not result.success
        assert "senior" in result.message.lower()
