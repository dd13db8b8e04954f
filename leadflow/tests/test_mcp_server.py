"""Tests for the MCP tools, called directly as plain functions."""
from __future__ import annotations

import json

import pytest

from leadflow import mcp_server, services
from leadflow.config import get_settings
from leadflow.db import init_db, session_scope
from leadflow.store import EntityStore


@pytest.fixture()
def user_ids(tmp_path, monkeypatch):
    monkeypatch.setenv("LEADFLOW_HOME", str(tmp_path))
    monkeypatch.delenv("LEADFLOW_DATABASE_URL", raising=False)
    get_settings.cache_clear()
    init_db(f"sqlite:///{tmp_path / 'mcp.db'}")
    with session_scope() as session:
        store = EntityStore(session)
        member = services.create_profile(store, "ivy@example.com", "Ivy", "investor_services")
        senior = services.create_profile(store, "sam@example.com", "Sam", "senior_management")
        ids = member.id, senior.id
    yield ids
    get_settings.cache_clear()


class TestLeadTools:
    def test_core_investor_flow(self, user_ids):
        member, _ = user_ids
        blocked = mcp_server.create_lead(member, "Acme Farms", "company", priority="high")
        assert "error" in blocked
        assert set(blocked["choices"]) == {"waiting_for_details", "waiting_for_approval"}

        created = mcp_server.create_lead(
            member, "Acme Farms", "company", priority="high", status_choice="waiting_for_approval",
        )
        lead_id = created["data"]["id"]
        assert created["data"]["status"] == "waiting_for_approval"

        approved = mcp_server.set_lead_decision(member, lead_id, "approve")
        assert approved["data"]["status"] == "active"

        converted = mcp_server.convert_lead(member, lead_id)
        opp_id = converted["data"]["id"]
        detail = mcp_server.get_opportunity(opp_id)
        assert detail["checklist"]["total"] > 0

        nda = mcp_server.issue_nda(member, opp_id)["data"]
        assert mcp_server.advance_nda(member, nda["id"], "signed")["data"]["status"] == "signed_by_investor"
        assert "error" in mcp_server.advance_nda(member, nda["id"], "shredded")

    def test_unknown_decision_and_user(self, user_ids):
        member, _ = user_ids
        lead_id = mcp_server.create_lead(member, "Birch Homes", "individual")["data"]["id"]
        assert "error" in mcp_server.set_lead_decision(member, lead_id, "promote")
        assert "error" in mcp_server.set_lead_decision(999, lead_id, "archive")
        assert mcp_server.get_lead(lead_id)["status"] == "active"

    def test_final_approval_requires_senior(self, user_ids):
        member, senior = user_ids
        lead_id = mcp_server.create_lead(member, "Cedar Foods", "individual")["data"]["id"]
        opp_id = mcp_server.convert_lead(member, lead_id)["data"]["id"]
        assert "error" in mcp_server.grant_approval(member, opp_id, "final")
        assert "error" in mcp_server.grant_approval(senior, opp_id, "final")


class TestOverviewAndStats:
    def test_overview_lists_statuses(self):
        overview = json.loads(mcp_server.leadflow_overview())
        assert "due_diligence_approved" in overview["opportunity_statuses"]
        assert "senior_management" in overview["roles"]

    def test_pipeline_stats_and_sweep(self, user_ids):
        member, _ = user_ids
        mcp_server.create_lead(member, "Delta Exports", "individual", priority="high")
        buckets = mcp_server.get_pipeline("lead")
        assert {b["stage_id"]: b["count"] for b in buckets}["qualified"] == 1
        assert "error" in mcp_server.get_pipeline("contacts")

        assert mcp_server.run_lead_sweep()["tasks_created"] == 1
        assert [t["title"] for t in mcp_server.list_open_tasks(member)] == [
            "Follow up with high priority lead: Delta Exports",
        ]
        assert mcp_server.get_stats()["open_tasks"] == 1
