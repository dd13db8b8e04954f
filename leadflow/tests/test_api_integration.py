"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database; every request names its user
through the X-User-Id header.
"""
from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.config import DEFAULT_CHECKLIST_TEMPLATE, get_settings
from leadflow.db import seed_checklist_templates
from leadflow.models import Base, Lead, Profile
from leadflow.utils import utc_now


@pytest.fixture()
def test_db():
    """Create a temporary SQLite in-memory database for testing.

    Uses StaticPool so all connections share the same in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with TestSession() as session:
        seed_checklist_templates(session, [DEFAULT_CHECKLIST_TEMPLATE])
    return engine, TestSession


@pytest.fixture()
def client(test_db, tmp_path, monkeypatch):
    """FastAPI TestClient using in-memory database and a throwaway project root."""
    engine, TestSession = test_db
    monkeypatch.setenv("LEADFLOW_HOME", str(tmp_path))
    monkeypatch.setenv("LEADFLOW_DATABASE_URL", "sqlite://")
    monkeypatch.delenv("LEADFLOW_DOCUMENTS_DIR", raising=False)
    get_settings.cache_clear()
    from leadflow.app import app, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c, TestSession
    app.dependency_overrides.clear()
    get_settings.cache_clear()


@pytest.fixture()
def users(client):
    """Headers for an investor services user, a legal user and a senior manager."""
    _, TestSession = client
    session = TestSession()
    people = [
        Profile(email="ivy@example.com", full_name="Ivy", role="investor_services"),
        Profile(email="leo@example.com", full_name="Leo", role="legal_services"),
        Profile(email="sam@example.com", full_name="Sam", role="senior_management"),
    ]
    session.add_all(people)
    session.commit()
    headers = [{"X-User-Id": str(p.id)} for p in people]
    session.close()
    return headers


def _create_lead(c, headers, **fields):
    payload = {"name": "Orchard Estates", "inquiry_type": "individual", **fields}
    resp = c.post("/api/leads", json=payload, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _opportunity(c, headers, name="Orchard Estates"):
    lead = _create_lead(c, headers, name=name)
    resp = c.post(f"/api/leads/{lead['id']}/convert", headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


class TestAuth:
    def test_missing_header(self, client):
        c, _ = client
        assert c.get("/api/leads").status_code == 401

    def test_unknown_user(self, client, users):
        c, _ = client
        assert c.get("/api/leads", headers={"X-User-Id": "999"}).status_code == 401

    def test_me(self, client, users):
        c, _ = client
        resp = c.get("/api/me", headers=users[0])
        assert resp.status_code == 200
        assert resp.json()["role"] == "investor_services"

    def test_only_senior_creates_users(self, client, users):
        c, _ = client
        payload = {"email": "new@example.com", "full_name": "New", "role": "legal_services"}
        denied = c.post("/api/profiles", json=payload, headers=users[0])
        assert denied.status_code == 403
        assert denied.json()["required_role"] == "senior_management"
        assert c.post("/api/profiles", json=payload, headers=users[2]).status_code == 201
        duplicate = c.post("/api/profiles", json=payload, headers=users[2])
        assert duplicate.status_code == 422
        assert duplicate.json()["field"] == "email"


class TestLeadEndpoints:
    def test_core_investor_needs_status_choice(self, client, users):
        c, TestSession = client
        payload = {"name": "Acme Farms", "inquiry_type": "company", "priority": "high"}
        resp = c.post("/api/leads", json=payload, headers=users[0])
        assert resp.status_code == 422
        body = resp.json()
        assert set(body["choices"]) == {"waiting_for_details", "waiting_for_approval"}
        assert body["field"] == "status"
        with TestSession() as session:
            assert session.query(Lead).count() == 0

        resp = c.post("/api/leads", json={**payload, "status_choice": "waiting_for_approval"}, headers=users[0])
        assert resp.status_code == 201
        assert resp.json()["data"]["status"] == "waiting_for_approval"

    def test_list_filters(self, client, users):
        c, _ = client
        _create_lead(c, users[0], name="Acme Farms", priority="low")
        _create_lead(c, users[0], name="Birch Homes")
        resp = c.get("/api/leads", params={"search": "acme"}, headers=users[0])
        assert [lead["name"] for lead in resp.json()] == ["Acme Farms"]
        resp = c.get("/api/leads", params={"priority": "medium"}, headers=users[0])
        assert [lead["name"] for lead in resp.json()] == ["Birch Homes"]

    def test_get_lead_404(self, client, users):
        c, _ = client
        assert c.get("/api/leads/9999", headers=users[0]).status_code == 404

    def test_stale_update_conflicts(self, client, users):
        c, _ = client
        lead = _create_lead(c, users[0])
        first = c.put(f"/api/leads/{lead['id']}", json={"notes": "called", "expected_version": 1}, headers=users[0])
        assert first.status_code == 200
        assert first.json()["data"]["version"] == 2
        stale = c.put(f"/api/leads/{lead['id']}", json={"notes": "emailed", "expected_version": 1}, headers=users[0])
        assert stale.status_code == 409
        assert stale.json()["expected_version"] == 1
        assert stale.json()["actual_version"] == 2

    def test_illegal_transition_is_422(self, client, users):
        c, _ = client
        lead = _create_lead(c, users[0])
        resp = c.post(f"/api/leads/{lead['id']}/reject", headers=users[0])
        assert resp.status_code == 422

    def test_detail_and_audit(self, client, users):
        c, _ = client
        lead = _create_lead(c, users[0])
        c.post(f"/api/comments/lead/{lead['id']}", json={"content": "Met at trade fair"}, headers=users[0])
        detail = c.get(f"/api/leads/{lead['id']}", headers=users[0]).json()
        assert [cm["content"] for cm in detail["comments"]] == ["Met at trade fair"]
        assert detail["opportunity_id"] is None
        audit = c.get(f"/api/audit/lead/{lead['id']}", headers=users[0]).json()
        assert [e["action"] for e in audit] == ["create"]


class TestOpportunityFlow:
    def test_nda_and_approvals(self, client, users):
        c, _ = client
        opp = _opportunity(c, users[0])
        assert opp["status"] == "assessment_in_progress"

        nda = c.post(f"/api/opportunities/{opp['id']}/ndas", headers=users[1])
        assert nda.status_code == 201
        nda = nda.json()["data"]
        assert nda["version"] == 1
        signed = c.post(f"/api/ndas/{nda['id']}/sign", headers=users[1]).json()
        assert signed["data"]["status"] == "signed_by_investor"
        assert not signed["partial"]
        skipped = c.post(f"/api/ndas/{nda['id']}/complete", headers=users[1])
        assert skipped.status_code == 422

        detail = c.get(f"/api/opportunities/{opp['id']}", headers=users[0]).json()
        assert detail["nda_status"] == "signed_by_investor"
        items = detail["checklist"]["items"]
        assert detail["checklist"]["total"] == len(DEFAULT_CHECKLIST_TEMPLATE["items"])

        for item in items:
            resp = c.put(f"/api/checklist-items/{item['id']}/status", json={"status": "completed"}, headers=users[0])
            assert resp.status_code == 200
        detail = c.get(f"/api/opportunities/{opp['id']}", headers=users[0]).json()
        assert detail["status"] == "assessment_completed"
        assert detail["checklist"]["completed"] == detail["checklist"]["total"]

        denied = c.post(f"/api/opportunities/{opp['id']}/approvals/final", headers=users[0])
        assert denied.status_code == 403
        dd = c.post(f"/api/opportunities/{opp['id']}/approvals/due-diligence",
                    json={"comments": "All clear"}, headers=users[0])
        assert dd.status_code == 200
        final = c.post(f"/api/opportunities/{opp['id']}/approvals/final", headers=users[2])
        assert final.status_code == 200
        opp_now = c.get(f"/api/opportunities/{opp['id']}", headers=users[0]).json()
        assert opp_now["status"] == "due_diligence_approved"
        assert [a["stage"] for a in opp_now["approvals"]] == ["due_diligence", "final"]

    def test_status_endpoint_returns_opportunity(self, client, users):
        c, _ = client
        opp = _opportunity(c, users[0])
        resp = c.put(f"/api/opportunities/{opp['id']}/status", json={"status": "rejected"}, headers=users[0])
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "rejected"

    def test_site_visit(self, client, users):
        c, _ = client
        opp = _opportunity(c, users[0])
        when = (utc_now() + timedelta(days=10)).replace(microsecond=0)
        resp = c.post(f"/api/opportunities/{opp['id']}/site-visit",
                      json={"date": when.isoformat(), "notes": "Bring surveyor"}, headers=users[0])
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["site_visit_scheduled"] is True
        assert data["site_visit_date"] == when.isoformat()


class TestPipelineEndpoints:
    def test_lead_pipeline_and_moves(self, client, users):
        c, _ = client
        lead = _create_lead(c, users[0], name="Cedar Foods")
        buckets = c.get("/api/pipeline/lead", headers=users[0]).json()
        assert [b["stage_id"] for b in buckets] == ["new", "contacted", "qualified", "meeting"]
        assert buckets[0]["count"] == 1

        moved = c.post("/api/pipeline/lead/move",
                       json={"entity_id": lead["id"], "target_stage_id": "qualified"}, headers=users[0])
        assert moved.status_code == 200
        assert moved.json()["data"]["priority"] == "high"

        bad = c.post("/api/pipeline/lead/move",
                     json={"entity_id": lead["id"], "target_stage_id": "closed"}, headers=users[0])
        assert bad.status_code == 422

    def test_unknown_pipeline(self, client, users):
        c, _ = client
        assert c.get("/api/pipeline/contacts", headers=users[0]).status_code == 422


class TestWorkEndpoints:
    def test_assigning_task_notifies_assignee(self, client, users):
        c, _ = client
        ivy, leo, _ = users
        lead = _create_lead(c, ivy)
        leo_id = int(leo["X-User-Id"])
        resp = c.post("/api/tasks", json={
            "title": "Send NDA draft", "assigned_to": leo_id,
            "related_entity_type": "lead", "related_entity_id": lead["id"],
        }, headers=ivy)
        assert resp.status_code == 201
        task = resp.json()
        assert task["assigned_by"] == int(ivy["X-User-Id"])

        notes = c.get("/api/notifications", params={"unread_only": True}, headers=leo).json()
        assert [(n["type"], n["related_entity_id"]) for n in notes] == [("task_assigned", task["id"])]
        assert c.post(f"/api/notifications/{notes[0]['id']}/read", headers=ivy).status_code == 403
        assert c.post("/api/notifications/read-all", headers=leo).json() == {"updated": 1}

        done = c.put(f"/api/tasks/{task['id']}", json={"status": "completed", "expected_version": 1}, headers=leo)
        assert done.status_code == 200
        assert done.json()["status"] == "completed"

    def test_meeting_must_end_after_start(self, client, users):
        c, _ = client
        start = utc_now() + timedelta(days=1)
        resp = c.post("/api/meetings", json={
            "title": "Intro call", "start_time": start.isoformat(),
            "end_time": (start - timedelta(hours=1)).isoformat(),
        }, headers=users[0])
        assert resp.status_code == 422

    def test_only_author_or_senior_deletes_comment(self, client, users):
        c, _ = client
        lead = _create_lead(c, users[0])
        comment = c.post(f"/api/comments/lead/{lead['id']}", json={"content": "Follow up"}, headers=users[0]).json()
        assert c.delete(f"/api/comments/{comment['id']}", headers=users[1]).status_code == 403
        assert c.delete(f"/api/comments/{comment['id']}", headers=users[2]).status_code == 200


class TestDocumentEndpoints:
    def test_upload_and_signed_download(self, client, users):
        c, _ = client
        lead = _create_lead(c, users[0])
        resp = c.post(
            "/api/documents",
            data={"related_entity_type": "lead", "related_entity_id": str(lead["id"])},
            files={"file": ("nda.pdf", b"%PDF-1.4 test", "application/pdf")},
            headers=users[0],
        )
        assert resp.status_code == 201, resp.text
        doc = resp.json()
        assert doc["version"] == 1

        url = c.get(f"/api/documents/{doc['id']}/url", headers=users[0]).json()["url"]
        download = c.get(url)
        assert download.status_code == 200
        assert download.content == b"%PDF-1.4 test"

        tampered = url.replace("signature=", "signature=0")
        assert c.get(tampered).status_code == 403

    def test_attach_to_unknown_entity(self, client, users):
        c, _ = client
        resp = c.post(
            "/api/documents",
            data={"related_entity_type": "lead", "related_entity_id": "404"},
            files={"file": ("a.pdf", b"x", "application/pdf")},
            headers=users[0],
        )
        assert resp.status_code == 404


class TestLockEndpoints:
    def test_lock_is_visible_to_others(self, client, users):
        c, _ = client
        ivy, leo, _ = users
        lead = _create_lead(c, ivy)
        assert c.post(f"/api/locks/lead/{lead['id']}", headers=ivy).json() == {"acquired": True}
        assert c.post(f"/api/locks/lead/{lead['id']}", headers=leo).json() == {"acquired": False}
        status = c.get(f"/api/locks/lead/{lead['id']}", headers=leo).json()
        assert status["locked"] is True
        assert status["locked_by"]["name"] == "Ivy"
        assert c.delete(f"/api/locks/lead/{lead['id']}", headers=ivy).json() == {"released": True}
        assert c.get(f"/api/locks/lead/{lead['id']}", headers=leo).json() == {"locked": False}


class TestEmailEndpoints:
    def test_ingest_draft_confirm(self, client, users):
        c, _ = client
        message = {
            "provider": "gmail", "external_id": "abc123", "sender_name": "Maria Keller",
            "sender_email": "maria@gmail.com", "subject": "Plot enquiry", "body": "Looking for land.",
        }
        created = c.post("/api/emails", json=message, headers=users[0])
        assert created.status_code == 201
        email_id = created.json()["id"]
        assert c.post("/api/emails", json=message, headers=users[0]).json()["id"] == email_id

        draft = c.get(f"/api/emails/{email_id}/draft-lead", headers=users[0]).json()
        assert draft["inquiry_type"] == "individual"
        assert draft["source"] == "gmail"

        confirmed = c.post(f"/api/emails/{email_id}/confirm-lead", json={"overrides": {"priority": "low"}},
                           headers=users[0])
        assert confirmed.status_code == 201
        lead_id = confirmed.json()["data"]["id"]
        enquiries = c.get("/api/emails", params={"view": "enquiries"}, headers=users[0]).json()
        assert [(e["id"], e["associated_lead_id"]) for e in enquiries] == [(email_id, lead_id)]


class TestAutomationEndpoints:
    def test_sweep_and_stats(self, client, users):
        c, _ = client
        _create_lead(c, users[0], name="Delta", priority="high")
        sweep = c.post("/api/automation/sweep", headers=users[0])
        assert sweep.status_code == 200
        assert sweep.json()["tasks_created"] == 1
        assert c.post("/api/automation/sweep", headers=users[0]).json()["tasks_created"] == 0

        stats = c.get("/api/stats", headers=users[0]).json()
        assert stats["leads"] == 1
        assert stats["leads_by_priority"] == {"high": 1}
        assert stats["open_tasks"] == 1
        assert stats["pending_deferred_writes"] == 0

        replay = c.post("/api/automation/replay-deferred", headers=users[0]).json()
        assert replay == {"resolved": 0, "failed": 0, "abandoned": 0}
