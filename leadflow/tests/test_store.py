"""Tests for the entity store: filters, optimistic concurrency and error translation."""
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from leadflow.db import make_engine
from leadflow.errors import ConflictError, NotFoundError, StorageError, ValidationError
from leadflow.models import Base
from leadflow.store import EntityStore, Filter, to_dict
from leadflow.utils import utc_now


@pytest.fixture()
def store():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    yield EntityStore(session)
    session.close()
    engine.dispose()


@pytest.fixture()
def leads(store):
    rows = [
        ("Acme Farms", "high", "active"),
        ("Baltic Timber", "medium", "waiting_for_details"),
        ("Cedar Foods", "low", "active"),
        ("acme logistics", "medium", "archived"),
    ]
    with store.transaction():
        return [
            store.create("lead", {"name": n, "inquiry_type": "company", "priority": p, "status": s})
            for n, p, s in rows
        ]


class TestReads:
    def test_get_missing_returns_none(self, store):
        assert store.get("lead", 999) is None

    def test_require_missing_raises(self, store):
        with pytest.raises(NotFoundError) as exc_info:
            store.require("lead", 999)
        assert exc_info.value.entity_type == "lead"

    def test_unknown_entity_type(self, store):
        with pytest.raises(ValidationError):
            store.list("invoice")

    def test_unknown_field_in_filter(self, store):
        with pytest.raises(ValidationError) as exc_info:
            store.list("lead", Filter(eq={"colour": "red"}))
        assert exc_info.value.field == "colour"


class TestFilters:
    def test_equality(self, store, leads):
        names = [lead.name for lead in store.list("lead", Filter(eq={"status": "active"}))]
        assert names == ["Acme Farms", "Cedar Foods"]

    def test_membership(self, store, leads):
        rows = store.list("lead", Filter(eq={"priority": ["high", "low"]}))
        assert {lead.name for lead in rows} == {"Acme Farms", "Cedar Foods"}

    def test_contains_is_case_insensitive(self, store, leads):
        rows = store.list("lead", Filter(contains=("name", "ACME")))
        assert {lead.name for lead in rows} == {"Acme Farms", "acme logistics"}

    def test_null_equality(self, store, leads):
        assert store.count("lead", Filter(eq={"assigned_to": None})) == 4

    def test_ordering_and_limit(self, store, leads):
        rows = store.list("lead", Filter(order_by="name", descending=True, limit=2))
        assert [lead.name for lead in rows] == ["acme logistics", "Cedar Foods"]

    def test_date_range(self, store, leads):
        now = utc_now()
        with store.transaction():
            store.update("lead", leads[0].id, {"updated_at": now - timedelta(days=40)})
        stale = store.list("lead", Filter(before=("updated_at", now - timedelta(days=30))))
        assert [lead.id for lead in stale] == [leads[0].id]
        fresh = store.count("lead", Filter(on_or_after=("updated_at", now - timedelta(days=30))))
        assert fresh == 3

    def test_first_and_count(self, store, leads):
        assert store.first("lead", Filter(eq={"status": "rejected"})) is None
        assert store.first("lead", Filter(order_by="name")).name == "Acme Farms"
        assert store.count("lead") == 4


class TestWrites:
    def test_create_sets_version(self, store):
        with store.transaction():
            lead = store.create("lead", {"name": "Delta", "inquiry_type": "individual"})
        assert lead.row_version == 1
        assert lead.status == "active"

    def test_update_bumps_version(self, store, leads):
        with store.transaction():
            lead = store.update("lead", leads[1].id, {"notes": "called"}, expected_version=1)
        assert lead.row_version == 2

    def test_stale_expected_version_conflicts(self, store, leads):
        with store.transaction():
            store.update("lead", leads[1].id, {"notes": "first"})
        with pytest.raises(ConflictError) as exc_info:
            with store.transaction():
                store.update("lead", leads[1].id, {"notes": "second"}, expected_version=1)
        assert exc_info.value.expected == 1
        assert exc_info.value.actual == 2
        assert store.require("lead", leads[1].id).notes == "first"

    def test_unversioned_entity_rejects_expected_version(self, store):
        with store.transaction():
            comment = store.create("comment", {
                "content": "hi", "related_entity_type": "lead", "related_entity_id": 1,
            })
        with pytest.raises(ValidationError):
            store.update("comment", comment.id, {"content": "edited"}, expected_version=1)

    def test_constraint_violation_becomes_storage_error(self, store):
        with pytest.raises(StorageError) as exc_info:
            with store.transaction():
                store.create("lead", {"name": None, "inquiry_type": "company"})
        assert exc_info.value.entity_type == "lead"
        assert exc_info.value.fields == ["inquiry_type", "name"]
        assert store.count("lead") == 0

    def test_unknown_column_on_create(self, store):
        with pytest.raises(ValidationError):
            store.create("lead", {"name": "X", "inquiry_type": "company", "budget": 5})

    def test_transaction_rolls_back_on_error(self, store, leads):
        with pytest.raises(ValidationError):
            with store.transaction():
                store.update("lead", leads[0].id, {"notes": "should vanish"})
                raise ValidationError("abort")
        store.session.expire_all()
        assert store.require("lead", leads[0].id).notes == ""

    def test_delete(self, store, leads):
        with store.transaction():
            store.delete("lead", leads[3].id)
        assert store.get("lead", leads[3].id) is None


class TestToDict:
    def test_json_columns_are_parsed(self, store):
        with store.transaction():
            entry = store.create("audit_log", {
                "action": "create", "entity_type": "lead", "entity_id": 1,
                "changes_json": '{"status": [null, "active"]}',
            })
        data = to_dict(entry)
        assert data["changes"] == {"status": [None, "active"]}
        assert "changes_json" not in data
        assert isinstance(data["created_at"], str)
