from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Generator

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.models import Base, ChecklistTemplate, ChecklistTemplateItem

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal = None


def make_engine(url: str) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def init_db(url: str | None = None, templates: list[dict[str, Any]] | None = None) -> Engine:
    """Create tables, seed checklist templates and install the global session factory."""
    global _engine, _SessionLocal
    if url is None or templates is None:
        from leadflow.config import get_settings
        settings = get_settings()
        url = url or settings.database_url
        templates = templates if templates is not None else settings.load_checklist_templates()
    with _lock:
        if _engine is not None:
            _engine.dispose()
        _engine = make_engine(url)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        engine = _engine
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as session:
        seed_checklist_templates(session, templates)
    return engine


def seed_checklist_templates(session: Session, templates: list[dict[str, Any]]) -> int:
    """Insert templates whose name is not yet present. Returns the number added."""
    existing = set(session.execute(select(ChecklistTemplate.name)).scalars())
    added = 0
    for entry in templates:
        name = str(entry.get("name", "")).strip()
        if not name or name in existing:
            continue
        template = ChecklistTemplate(
            name=name,
            description=entry.get("description") or "",
            is_default=bool(entry.get("is_default", False)),
        )
        for i, item in enumerate(entry.get("items") or []):
            if isinstance(item, str):
                item = {"name": item}
            template.items.append(ChecklistTemplateItem(
                name=item["name"],
                description=item.get("description") or "",
                is_required=bool(item.get("is_required", True)),
                order_index=item.get("order_index", i),
            ))
        session.add(template)
        existing.add(name)
        added += 1
    if added:
        session.commit()
        log.info("Seeded %d checklist template(s)", added)
    return added


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a session for scripts, the CLI and the MCP server.

    Usage::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
