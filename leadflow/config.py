from __future__ import annotations

import logging
import os
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

log = logging.getLogger(__name__)

SIGNING_KEY_FILE = "signing.key"


def _resolve_project_root() -> Path:
    override = os.getenv("LEADFLOW_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name, "").strip()
    return Path(raw).expanduser().resolve() if raw else default


def load_or_create_signing_key(data_dir: Path) -> str:
    """Return the key kept in ``data_dir/signing.key``, generating it on first use."""
    path = data_dir / SIGNING_KEY_FILE
    if path.exists():
        return path.read_text(encoding="utf-8").strip()
    data_dir.mkdir(parents=True, exist_ok=True)
    key = secrets.token_urlsafe(32)
    try:
        with path.open("x", encoding="utf-8") as f:
            f.write(key)
    except FileExistsError:
        return path.read_text(encoding="utf-8").strip()
    path.chmod(0o600)
    log.warning("LEADFLOW_SIGNING_KEY is not set; generated a signing key at %s", path)
    return key


DEFAULT_CHECKLIST_TEMPLATE: dict[str, Any] = {
    "name": "Standard Due Diligence",
    "description": "Default checklist applied when a lead is converted to an opportunity.",
    "is_default": True,
    "items": [
        {"name": "Company registration documents", "description": "Certificate of incorporation and shareholder register."},
        {"name": "Audited financial statements", "description": "Last three years of audited accounts."},
        {"name": "Export quota confirmation", "description": "Evidence supporting the declared export share."},
        {"name": "Land and plot requirements", "description": "Confirm plot size, utilities and zoning needs."},
        {"name": "Environmental assessment", "description": "Environmental and social impact screening."},
        {"name": "Beneficial ownership and KYC", "description": "Identify ultimate beneficial owners and run KYC checks."},
        {"name": "Site visit report", "description": "Findings from the site visit with the investor.", "is_required": False},
    ],
}


class Settings(BaseModel):
    project_root: Path = Field(default_factory=_resolve_project_root)
    data_dir: Path = Field(default_factory=lambda: _resolve_project_root() / "data")
    database_url: str = Field(
        default_factory=lambda: os.getenv("LEADFLOW_DATABASE_URL", "").strip()
        or f"sqlite:///{_resolve_project_root() / 'data' / 'leadflow.db'}"
    )
    documents_dir: Path = Field(
        default_factory=lambda: _env_path("LEADFLOW_DOCUMENTS_DIR", _resolve_project_root() / "data" / "documents")
    )
    checklist_templates_file: Path = Field(
        default_factory=lambda: _env_path(
            "LEADFLOW_CHECKLIST_TEMPLATES", _resolve_project_root() / "config" / "checklist_templates.yaml"
        )
    )
    signing_key: str = Field(default_factory=lambda: os.getenv("LEADFLOW_SIGNING_KEY", "").strip())

    # Automation sweep
    high_priority_task_days: int = Field(default_factory=lambda: _env_int("LEADFLOW_HIGH_PRIORITY_TASK_DAYS", 3))
    inactive_days: int = Field(default_factory=lambda: _env_int("LEADFLOW_INACTIVE_DAYS", 30))
    archive_days: int = Field(default_factory=lambda: _env_int("LEADFLOW_ARCHIVE_DAYS", 90))
    inactive_renotify_days: int = Field(default_factory=lambda: _env_int("LEADFLOW_INACTIVE_RENOTIFY_DAYS", 7))
    sweep_interval_hours: int = Field(default_factory=lambda: _env_int("LEADFLOW_SWEEP_INTERVAL_HOURS", 6))

    lock_minutes: int = Field(default_factory=lambda: _env_int("LEADFLOW_LOCK_MINUTES", 15))
    signed_url_ttl_seconds: int = 3600
    deferred_write_max_attempts: int = 5

    def model_post_init(self, __context: Any) -> None:
        if not self.signing_key:
            self.signing_key = load_or_create_signing_key(self.data_dir)

    def ensure_directories(self) -> None:
        if self.database_url.startswith("sqlite:///") and ":memory:" not in self.database_url:
            Path(self.database_url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
        self.documents_dir.mkdir(parents=True, exist_ok=True)

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def load_checklist_templates(self) -> list[dict[str, Any]]:
        raw = self.load_yaml(self.checklist_templates_file)
        templates = raw.get("templates")
        if not isinstance(templates, list) or not templates:
            return [DEFAULT_CHECKLIST_TEMPLATE]
        return [t for t in templates if isinstance(t, dict) and t.get("name")]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
