"""Entity store: typed CRUD over the SQLAlchemy session with optimistic concurrency.

Every component receives an ``EntityStore`` explicitly; nothing reaches for a
module-level session.  Store failures are translated into the leadflow error
taxonomy here so callers never see raw SQLAlchemy exceptions.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from leadflow.errors import ConflictError, LeadflowError, NotFoundError, StorageError, ValidationError
from leadflow.models import (
    AuditLog, Base, BusinessPlan, ChecklistTemplate, Comment, DeferredWrite, Document,
    DueDiligenceChecklist, DueDiligenceChecklistItem, InboundEmail, Lead, Meeting, Nda,
    Notification, Opportunity, OpportunityApproval, Profile, RecordLock, Task,
)
from leadflow.utils import iso, json_parse

log = logging.getLogger(__name__)

ENTITY_TYPES: dict[str, type[Base]] = {
    "lead": Lead,
    "opportunity": Opportunity,
    "nda": Nda,
    "business_plan": BusinessPlan,
    "checklist": DueDiligenceChecklist,
    "checklist_item": DueDiligenceChecklistItem,
    "checklist_template": ChecklistTemplate,
    "task": Task,
    "notification": Notification,
    "meeting": Meeting,
    "comment": Comment,
    "document": Document,
    "approval": OpportunityApproval,
    "audit_log": AuditLog,
    "record_lock": RecordLock,
    "inbound_email": InboundEmail,
    "profile": Profile,
    "deferred_write": DeferredWrite,
}


@dataclass
class Filter:
    """Query predicate for ``EntityStore.list``.

    ``eq`` values may be a scalar, ``None`` or a list/tuple/set (membership).
    ``contains`` is a case-insensitive substring match on one field.
    """
    eq: dict[str, Any] = field(default_factory=dict)
    contains: tuple[str, str] | None = None
    before: tuple[str, datetime] | None = None
    on_or_after: tuple[str, datetime] | None = None
    order_by: str | None = None
    descending: bool = False
    limit: int | None = None


def model_for(entity_type: str) -> type[Base]:
    try:
        return ENTITY_TYPES[entity_type]
    except KeyError:
        raise ValidationError(f"Unknown entity type: {entity_type}", field="entity_type") from None


def to_dict(entity: Base) -> dict[str, Any]:
    """Map a row to a plain dict. Dates become ISO strings, ``*_json`` columns are parsed."""
    out: dict[str, Any] = {}
    for col in entity.__table__.columns:
        value = getattr(entity, col.key)
        if col.key.endswith("_json"):
            out[col.key.removesuffix("_json")] = json_parse(value, default=None)
        elif isinstance(value, datetime):
            out[col.key] = iso(value)
        else:
            out[col.key] = value
    return out


class EntityStore:
    def __init__(self, session: Session):
        self.session = session

    # -- reads --------------------------------------------------------------

    def get(self, entity_type: str, entity_id: int) -> Any | None:
        model = model_for(entity_type)
        try:
            return self.session.get(model, entity_id)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to read {entity_type} {entity_id}: {exc}", entity_type) from exc

    def require(self, entity_type: str, entity_id: int) -> Any:
        entity = self.get(entity_type, entity_id)
        if entity is None:
            raise NotFoundError(entity_type, entity_id)
        return entity

    def _select(self, entity_type: str, flt: Filter | None):
        model = model_for(entity_type)
        flt = flt or Filter()
        stmt = select(model)
        for name, value in flt.eq.items():
            col = self._column(model, name)
            if value is None:
                stmt = stmt.where(col.is_(None))
            elif isinstance(value, (list, tuple, set, frozenset)):
                stmt = stmt.where(col.in_(list(value)))
            else:
                stmt = stmt.where(col == value)
        if flt.contains:
            name, term = flt.contains
            stmt = stmt.where(func.lower(self._column(model, name)).contains(term.lower()))
        if flt.before:
            name, when = flt.before
            stmt = stmt.where(self._column(model, name) < when)
        if flt.on_or_after:
            name, when = flt.on_or_after
            stmt = stmt.where(self._column(model, name) >= when)
        return model, stmt, flt

    @staticmethod
    def _column(model: type[Base], name: str):
        col = getattr(model, name, None)
        if col is None or name not in model.__table__.columns:
            raise ValidationError(f"{model.__name__} has no field '{name}'", field=name)
        return col

    def list(self, entity_type: str, flt: Filter | None = None) -> list[Any]:
        model, stmt, flt = self._select(entity_type, flt)
        if flt.order_by:
            col = self._column(model, flt.order_by)
            stmt = stmt.order_by(col.desc() if flt.descending else col.asc(), model.id)
        else:
            stmt = stmt.order_by(model.id)
        if flt.limit is not None:
            stmt = stmt.limit(flt.limit)
        try:
            return list(self.session.execute(stmt).scalars())
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to list {entity_type}: {exc}", entity_type) from exc

    def first(self, entity_type: str, flt: Filter | None = None) -> Any | None:
        flt = flt or Filter()
        rows = self.list(entity_type, Filter(
            eq=flt.eq, contains=flt.contains, before=flt.before, on_or_after=flt.on_or_after,
            order_by=flt.order_by, descending=flt.descending, limit=1,
        ))
        return rows[0] if rows else None

    def count(self, entity_type: str, flt: Filter | None = None) -> int:
        _, stmt, _ = self._select(entity_type, flt)
        try:
            return self.session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to count {entity_type}: {exc}", entity_type) from exc

    # -- writes -------------------------------------------------------------

    def create(self, entity_type: str, fields: dict[str, Any]) -> Any:
        model = model_for(entity_type)
        for name in fields:
            self._column(model, name)
        entity = model(**fields)
        self.session.add(entity)
        self._flush(entity_type, None, fields)
        return entity

    def update(
        self, entity_type: str, entity_id: int, fields: dict[str, Any],
        expected_version: int | None = None,
    ) -> Any:
        entity = self.require(entity_type, entity_id)
        if expected_version is not None:
            actual = getattr(entity, "row_version", None)
            if actual is None:
                raise ValidationError(f"{entity_type} rows are not versioned", field="expected_version")
            if actual != expected_version:
                raise ConflictError(entity_type, entity_id, expected_version, actual)
        for name, value in fields.items():
            self._column(type(entity), name)
            setattr(entity, name, value)
        self._flush(entity_type, entity_id, fields)
        return entity

    def delete(self, entity_type: str, entity_id: int) -> None:
        entity = self.require(entity_type, entity_id)
        self.session.delete(entity)
        self._flush(entity_type, entity_id, {})

    def _flush(self, entity_type: str, entity_id: int | None, fields: dict[str, Any]) -> None:
        try:
            self.session.flush()
        except StaleDataError as exc:
            raise ConflictError(entity_type, entity_id) from exc
        except SQLAlchemyError as exc:
            raise StorageError(
                f"Failed to write {entity_type} {entity_id or '(new)'}: {exc}",
                entity_type, fields.keys(),
            ) from exc

    # -- units of work ------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[EntityStore]:
        """Commit everything written inside the block, or roll it all back."""
        try:
            yield self
            self.session.commit()
        except LeadflowError:
            self.session.rollback()
            raise
        except StaleDataError as exc:
            self.session.rollback()
            raise ConflictError("unknown", None) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError(f"Commit failed: {exc}") from exc
        except Exception:
            self.session.rollback()
            raise

    def rollback(self) -> None:
        self.session.rollback()

    def refresh(self, entity: Any) -> Any:
        self.session.refresh(entity)
        return entity
