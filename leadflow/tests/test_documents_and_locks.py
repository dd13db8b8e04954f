"""Tests for versioned document storage and courtesy record locks."""
from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch
from urllib.parse import parse_qs, unquote, urlparse

import pytest
from sqlalchemy.orm import sessionmaker

from leadflow.config import Settings
from leadflow.db import make_engine
from leadflow.documents import (
    DocumentService, LocalDocumentStore, default_blob_store, document_path, safe_filename,
)
from leadflow.errors import StorageError, ValidationError
from leadflow.lifecycle import Actor
from leadflow.locks import RecordLockService
from leadflow.models import Base
from leadflow.store import EntityStore
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
def settings(tmp_path):
    return Settings(
        project_root=tmp_path, data_dir=tmp_path, database_url="sqlite://",
        documents_dir=tmp_path / "documents", signing_key="test-key",
    )


@pytest.fixture()
def people(store):
    with store.transaction():
        ivy = store.create("profile", {"email": "ivy@example.com", "full_name": "Ivy", "role": "investor_services"})
        leo = store.create("profile", {"email": "leo@example.com", "full_name": "Leo", "role": "legal_services"})
    return ivy, leo


@pytest.fixture()
def lead(store):
    with store.transaction():
        return store.create("lead", {"name": "Acme Farms", "inquiry_type": "company"})


def _signed_parts(url):
    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    path = unquote(parsed.path.removeprefix("/files/"))
    return path, int(query["expires"][0]), query["signature"][0]


class TestPaths:
    def test_filename_is_sanitised(self):
        assert safe_filename("../../etc/passwd") == "passwd"
        assert safe_filename("Plan (final)?.pdf") == "Plan _final_.pdf"
        with pytest.raises(ValidationError):
            safe_filename("...")

    def test_versioned_path(self):
        assert document_path("lead", 7, "nda.pdf") == "lead/7/nda.pdf"
        assert document_path("lead", 7, "nda.pdf", version=3) == "lead/7/3_nda.pdf"

    def test_traversal_rejected(self, tmp_path):
        blobs = LocalDocumentStore(tmp_path, "k")
        with pytest.raises(ValidationError):
            blobs.upload("../outside.txt", b"x")


class TestSignedUrls:
    def test_round_trip_and_tamper(self, tmp_path):
        blobs = LocalDocumentStore(tmp_path, "secret")
        blobs.upload("lead/1/a b.pdf", b"data")
        path, expires, signature = _signed_parts(blobs.get_signed_url("lead/1/a b.pdf", 60))
        assert path == "lead/1/a b.pdf"
        assert blobs.verify(path, expires, signature)
        assert not blobs.verify("lead/1/other.pdf", expires, signature)
        assert not blobs.verify(path, expires + 1, signature)
        assert not LocalDocumentStore(tmp_path, "other-key").verify(path, expires, signature)

    def test_expired_url_rejected(self, tmp_path):
        blobs = LocalDocumentStore(tmp_path, "secret")
        path, expires, signature = _signed_parts(blobs.get_signed_url("lead/1/a.pdf", -10))
        assert not blobs.verify(path, expires, signature)

    def test_generated_key_is_shared_through_data_dir(self, tmp_path, monkeypatch):
        monkeypatch.delenv("LEADFLOW_SIGNING_KEY", raising=False)
        paths = {"project_root": tmp_path, "data_dir": tmp_path / "data", "documents_dir": tmp_path / "documents"}
        first = Settings(database_url="sqlite://", **paths)
        second = Settings(database_url="sqlite://", **paths)
        assert first.signing_key
        assert second.signing_key == first.signing_key
        assert (tmp_path / "data" / "signing.key").read_text(encoding="utf-8") == first.signing_key

        url = default_blob_store(first).get_signed_url("lead/1/a.pdf", 60)
        assert default_blob_store(second).verify(*_signed_parts(url))

    def test_environment_key_takes_precedence(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LEADFLOW_SIGNING_KEY", "from-env")
        settings = Settings(project_root=tmp_path, data_dir=tmp_path / "data", database_url="sqlite://")
        assert settings.signing_key == "from-env"
        assert not (tmp_path / "data" / "signing.key").exists()


class TestDocumentService:
    def test_upload_and_new_version(self, store, settings, people, lead):
        ivy, _ = people
        docs = DocumentService(store, settings=settings)
        actor = Actor(ivy.id, ivy.role)

        doc = docs.upload("nda.pdf", b"v1", "application/pdf", "lead", lead.id, actor)
        assert doc.version == 1
        assert doc.file_path == f"lead/{lead.id}/nda.pdf"
        assert doc.uploaded_by == ivy.id
        assert docs.blobs.read(doc.file_path) == b"v1"

        doc = docs.upload("nda.pdf", b"version two", None, "lead", lead.id, actor, existing_document_id=doc.id)
        assert doc.version == 2
        assert doc.file_path == f"lead/{lead.id}/2_nda.pdf"
        assert doc.file_size == len(b"version two")
        history = docs.version_history(doc.id)
        assert [(h["version"], h["path"]) for h in history] == [(1, f"lead/{lead.id}/nda.pdf")]

        old_path, _, _ = _signed_parts(docs.signed_url(doc.id, version=1))
        assert old_path == f"lead/{lead.id}/nda.pdf"
        with pytest.raises(ValidationError):
            docs.signed_url(doc.id, version=5)

    def test_version_must_stay_on_same_entity(self, store, settings, people, lead):
        ivy, _ = people
        docs = DocumentService(store, settings=settings)
        with store.transaction():
            other = store.create("lead", {"name": "Other", "inquiry_type": "individual"})
        doc = docs.upload("a.pdf", b"1", None, "lead", lead.id, Actor(ivy.id))
        with pytest.raises(ValidationError):
            docs.upload("a.pdf", b"2", None, "lead", other.id, Actor(ivy.id), existing_document_id=doc.id)

    def test_unsupported_entity_type(self, store, settings, lead):
        docs = DocumentService(store, settings=settings)
        with pytest.raises(ValidationError):
            docs.upload("a.pdf", b"1", None, "task", 1, Actor(None))

    def test_failed_row_write_removes_blob(self, store, settings, people, lead):
        ivy, _ = people
        docs = DocumentService(store, settings=settings)
        with patch.object(store, "create", side_effect=StorageError("disk full", "document")):
            with pytest.raises(StorageError):
                docs.upload("a.pdf", b"1", None, "lead", lead.id, Actor(ivy.id))
        assert not (settings.documents_dir / "lead" / str(lead.id) / "a.pdf").exists()

    def test_delete_removes_every_version(self, store, settings, people, lead):
        ivy, _ = people
        docs = DocumentService(store, settings=settings)
        doc = docs.upload("a.pdf", b"1", None, "lead", lead.id, Actor(ivy.id))
        docs.upload("a.pdf", b"2", None, "lead", lead.id, Actor(ivy.id), existing_document_id=doc.id)
        docs.delete(doc.id)
        assert store.get("document", doc.id) is None
        assert list((settings.documents_dir / "lead" / str(lead.id)).iterdir()) == []

    def test_list_by_entity_and_search(self, store, settings, people, lead):
        ivy, _ = people
        docs = DocumentService(store, settings=settings)
        docs.upload("Business Plan.pdf", b"1", None, "lead", lead.id, Actor(ivy.id))
        docs.upload("passport.jpg", b"2", None, "lead", lead.id, Actor(ivy.id))
        assert len(docs.list("lead", lead.id)) == 2
        assert [d.name for d in docs.list(search="plan")] == ["Business Plan.pdf"]


class TestRecordLocks:
    def test_exclusive_until_expiry(self, store, settings, people, lead):
        ivy, leo = people
        now = utc_now()
        locks = RecordLockService(store, settings, clock=lambda: now)
        assert locks.acquire("lead", lead.id, ivy.id)
        assert not locks.acquire("lead", lead.id, leo.id)

        status = locks.check("lead", lead.id, leo.id)
        assert status["locked"]
        assert status["locked_by"]["name"] == "Ivy"
        assert locks.check("lead", lead.id, ivy.id) == {"locked": False}

        later = RecordLockService(store, settings, clock=lambda: now + timedelta(minutes=settings.lock_minutes + 1))
        assert later.check("lead", lead.id, leo.id) == {"locked": False}
        assert later.acquire("lead", lead.id, leo.id)
        assert later.check("lead", lead.id, ivy.id)["locked_by"]["id"] == leo.id

    def test_holder_can_extend(self, store, settings, people, lead):
        ivy, _ = people
        locks = RecordLockService(store, settings)
        assert locks.acquire("lead", lead.id, ivy.id, minutes=1)
        assert locks.acquire("lead", lead.id, ivy.id, minutes=30)
        assert store.count("record_lock") == 1

    def test_only_holder_releases(self, store, settings, people, lead):
        ivy, leo = people
        locks = RecordLockService(store, settings)
        locks.acquire("lead", lead.id, ivy.id)
        assert not locks.release("lead", lead.id, leo.id)
        assert locks.release("lead", lead.id, ivy.id)
        assert store.count("record_lock") == 0

    def test_unknown_entity_type(self, store, settings, people):
        ivy, _ = people
        assert not RecordLockService(store, settings).acquire("spaceship", 1, ivy.id)

    def test_purge_expired(self, store, settings, people, lead):
        ivy, _ = people
        now = utc_now()
        RecordLockService(store, settings, clock=lambda: now).acquire("lead", lead.id, ivy.id, minutes=5)
        assert RecordLockService(store, settings, clock=lambda: now).purge_expired() == 0
        future = RecordLockService(store, settings, clock=lambda: now + timedelta(minutes=6))
        assert future.purge_expired() == 1
        assert store.count("record_lock") == 0
