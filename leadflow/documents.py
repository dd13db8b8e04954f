"""Document storage: blob store on the local filesystem plus versioned document rows."""
from __future__ import annotations

import hashlib
import hmac
import logging
import re
import time
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING
from urllib.parse import quote, urlencode

from leadflow.config import Settings, get_settings
from leadflow.errors import LeadflowError, StorageError, ValidationError
from leadflow.store import EntityStore, Filter
from leadflow.utils import iso, json_parse, to_json, utc_now

if TYPE_CHECKING:
    from leadflow.lifecycle import Actor

log = logging.getLogger(__name__)

DOCUMENT_ENTITY_TYPES = ("lead", "meeting", "opportunity", "nda", "business_plan")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._ -]+")


def safe_filename(name: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", PurePosixPath(name.replace("\\", "/")).name).strip(" .")
    if not cleaned:
        raise ValidationError("File name is empty after sanitising", field="name")
    return cleaned


def document_path(entity_type: str, entity_id: int, filename: str, version: int = 1) -> str:
    prefix = "" if version <= 1 else f"{version}_"
    return f"{entity_type}/{entity_id}/{prefix}{filename}"


def stored_paths(doc) -> list[str]:
    """Every blob path a document row owns: the current file and all earlier versions."""
    history = json_parse(doc.version_history_json, default=[])
    return [doc.file_path] + [h["path"] for h in history if h.get("path")]


class LocalDocumentStore:
    """Blob store rooted at a directory; hands out HMAC-signed, expiring URLs."""

    def __init__(self, root: Path, signing_key: str, base_url: str = "/files"):
        self.root = Path(root)
        self.signing_key = signing_key.encode("utf-8")
        self.base_url = base_url.rstrip("/")

    def _resolve(self, path: str) -> Path:
        rel = PurePosixPath(path)
        if rel.is_absolute() or ".." in rel.parts or not rel.parts:
            raise ValidationError(f"Invalid document path: {path}", field="path")
        return self.root.joinpath(*rel.parts)

    def upload(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Failed to store {path}: {exc}", "document") from exc

    def read(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            raise ValidationError(f"No stored file at {path}", field="path") from None
        except OSError as exc:
            raise StorageError(f"Failed to read {path}: {exc}", "document") from exc

    def remove(self, paths: Iterable[str]) -> None:
        for path in paths:
            try:
                self._resolve(path).unlink(missing_ok=True)
            except OSError as exc:
                log.warning("Could not remove %s: %s", path, exc)

    def _signature(self, path: str, expires: int) -> str:
        return hmac.new(self.signing_key, f"{path}:{expires}".encode("utf-8"), hashlib.sha256).hexdigest()

    def get_signed_url(self, path: str, ttl_seconds: int) -> str:
        self._resolve(path)
        expires = int(time.time()) + ttl_seconds
        query = urlencode({"expires": expires, "signature": self._signature(path, expires)})
        return f"{self.base_url}/{quote(path)}?{query}"

    def verify(self, path: str, expires: int, signature: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._signature(path, expires), signature)

    def local_path(self, path: str) -> Path:
        return self._resolve(path)


def default_blob_store(settings: Settings | None = None) -> LocalDocumentStore:
    settings = settings or get_settings()
    return LocalDocumentStore(settings.documents_dir, settings.signing_key)


class DocumentService:
    def __init__(
        self, store: EntityStore, blobs: LocalDocumentStore | None = None,
        settings: Settings | None = None, clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.blobs = blobs or default_blob_store(self.settings)
        self.clock = clock

    def upload(
        self, name: str, data: bytes, content_type: str | None,
        related_entity_type: str, related_entity_id: int, actor: Actor,
        existing_document_id: int | None = None,
    ):
        """Store a new document, or a new version of *existing_document_id*.

        The blob goes up first; if the row write then fails the blob is removed.
        """
        if related_entity_type not in DOCUMENT_ENTITY_TYPES:
            raise ValidationError(f"Documents cannot be attached to {related_entity_type}", field="related_entity_type")
        self.store.require(related_entity_type, related_entity_id)
        filename = safe_filename(name)
        content_type = content_type or "application/octet-stream"

        if existing_document_id is None:
            path = document_path(related_entity_type, related_entity_id, filename)
            fields = {
                "name": filename,
                "file_path": path,
                "file_type": content_type,
                "file_size": len(data),
                "uploaded_by": actor.user_id,
                "related_entity_id": related_entity_id,
                "related_entity_type": related_entity_type,
                "version": 1,
                "version_history_json": "[]",
            }
        else:
            doc = self.store.require("document", existing_document_id)
            if (doc.related_entity_type, doc.related_entity_id) != (related_entity_type, related_entity_id):
                raise ValidationError(
                    f"Document {existing_document_id} belongs to {doc.related_entity_type} {doc.related_entity_id}",
                )
            version = (doc.version or 1) + 1
            path = document_path(related_entity_type, related_entity_id, filename, version)
            history = json_parse(doc.version_history_json, default=[])
            history.append({
                "version": doc.version or 1,
                "path": doc.file_path,
                "uploaded_at": iso(doc.updated_at or doc.created_at),
                "size": doc.file_size,
            })
            fields = {
                "file_path": path,
                "file_type": content_type,
                "file_size": len(data),
                "version": version,
                "version_history_json": to_json(history),
            }

        self.blobs.upload(path, data)
        try:
            with self.store.transaction():
                if existing_document_id is None:
                    doc = self.store.create("document", fields)
                else:
                    doc = self.store.update("document", existing_document_id, fields)
        except LeadflowError:
            self.blobs.remove([path])
            raise
        log.info("Document %s v%s stored at %s", doc.id, doc.version, path)
        return doc

    def list(
        self, related_entity_type: str | None = None, related_entity_id: int | None = None,
        search: str | None = None,
    ) -> list:
        eq = {}
        if related_entity_type:
            eq["related_entity_type"] = related_entity_type
        if related_entity_id is not None:
            eq["related_entity_id"] = related_entity_id
        return self.store.list("document", Filter(
            eq=eq, contains=("name", search) if search else None, order_by="created_at", descending=True,
        ))

    def version_history(self, document_id: int) -> list[dict]:
        return json_parse(self.store.require("document", document_id).version_history_json, default=[])

    def signed_url(self, document_id: int, ttl_seconds: int | None = None, version: int | None = None) -> str:
        doc = self.store.require("document", document_id)
        path = doc.file_path
        if version is not None and version != doc.version:
            match = [h for h in self.version_history(document_id) if h.get("version") == version]
            if not match:
                raise ValidationError(f"Document {document_id} has no version {version}", field="version")
            path = match[0]["path"]
        return self.blobs.get_signed_url(path, ttl_seconds or self.settings.signed_url_ttl_seconds)

    def delete(self, document_id: int) -> None:
        """Delete the row and every stored version of the file."""
        paths = stored_paths(self.store.require("document", document_id))
        with self.store.transaction():
            self.store.delete("document", document_id)
        self.blobs.remove(paths)
        log.info("Document %s deleted (%d file(s))", document_id, len(paths))
