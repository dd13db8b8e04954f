"""Inbound email as a lead source.

Messages are stored as ``InboundEmail`` rows.  Nothing here creates a lead on
its own: ``draft_lead`` proposes the fields and ``confirm_lead`` creates the
lead only when a user explicitly confirms it.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from leadflow.errors import ValidationError
from leadflow.lifecycle import Actor, LifecycleService, OperationResult
from leadflow.store import EntityStore, Filter
from leadflow.utils import as_naive_utc, utc_now

log = logging.getLogger(__name__)

PROVIDERS = ("outlook", "gmail")
FREE_MAIL_DOMAINS = frozenset({
    "gmail.com", "googlemail.com", "outlook.com", "hotmail.com", "live.com",
    "yahoo.com", "icloud.com", "aol.com", "proton.me", "protonmail.com",
})
NOTES_BODY_LIMIT = 2000


@dataclass
class LeadDraft:
    name: str
    email: str
    inquiry_type: str
    priority: str
    source: str
    notes: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def sender_domain(sender_email: str) -> str:
    _, _, domain = (sender_email or "").strip().lower().rpartition("@")
    return domain


def sender_first_name(sender_name: str) -> str:
    parts = (sender_name or "").strip().split()
    return parts[0].lower() if parts else ""


class EmailBridge:
    def __init__(self, store: EntityStore, lifecycle: LifecycleService | None = None):
        self.store = store
        self.lifecycle = lifecycle or LifecycleService(store)

    def ingest(self, provider: str, message: dict[str, Any]):
        """Store a synced message. Re-ingesting the same provider id returns the existing row."""
        if provider not in PROVIDERS:
            raise ValidationError(f"Unknown email provider: {provider}", field="provider")
        external_id = str(message.get("external_id") or message.get("id") or "").strip()
        if not external_id:
            raise ValidationError("Message id is required", field="external_id")
        sender_email = str(message.get("sender_email") or "").strip()
        if "@" not in sender_email:
            raise ValidationError("A valid sender email is required", field="sender_email")
        existing = self.store.first("inbound_email", Filter(eq={"provider": provider, "external_id": external_id}))
        if existing is not None:
            return existing
        received_at = message.get("received_at")
        if isinstance(received_at, str):
            received_at = datetime.fromisoformat(received_at)
        with self.store.transaction():
            email = self.store.create("inbound_email", {
                "provider": provider,
                "external_id": external_id,
                "sender_name": message.get("sender_name") or "",
                "sender_email": sender_email,
                "subject": message.get("subject") or "",
                "body": message.get("body") or "",
                "received_at": as_naive_utc(received_at) or utc_now(),
                "has_attachments": bool(message.get("has_attachments", False)),
                "read": bool(message.get("read", False)),
            })
        log.info("Ingested %s message %s from %s", provider, external_id, sender_email)
        return email

    def list_messages(self, view: str = "all", search: str | None = None) -> list:
        eq: dict[str, Any] = {}
        if view == "enquiries":
            eq["is_enquiry"] = True
        elif view == "unread":
            eq["read"] = False
        elif view != "all":
            raise ValidationError(f"Unknown view: {view}", field="view")
        rows = self.store.list("inbound_email", Filter(eq=eq, order_by="received_at", descending=True))
        if search:
            term = search.lower()
            rows = [
                r for r in rows
                if any(term in (v or "").lower() for v in (r.subject, r.sender_name, r.sender_email, r.body))
            ]
        return rows

    def _set(self, message_id: int, fields: dict[str, Any]):
        self.store.require("inbound_email", message_id)
        with self.store.transaction():
            return self.store.update("inbound_email", message_id, fields)

    def mark_as_enquiry(self, message_id: int):
        email = self._set(message_id, {"is_enquiry": True})
        log.info("Message %s marked as enquiry", message_id)
        return email

    def mark_read(self, message_id: int, read: bool = True):
        return self._set(message_id, {"read": read})

    def find_matching_leads(self, message_id: int) -> list:
        """Leads whose email contains the sender's domain, or whose name contains the sender's first name."""
        email = self.store.require("inbound_email", message_id)
        domain = sender_domain(email.sender_email)
        first_name = sender_first_name(email.sender_name)
        matches = []
        for lead in self.store.list("lead"):
            lead_email = (lead.email or "").lower()
            lead_name = (lead.name or "").lower()
            if (domain and domain in lead_email) or (first_name and first_name in lead_name):
                matches.append(lead)
        return matches

    def link_to_lead(self, message_id: int, lead_id: int):
        self.store.require("lead", lead_id)
        email = self._set(message_id, {"associated_lead_id": lead_id, "is_enquiry": True})
        log.info("Message %s linked to lead %s", message_id, lead_id)
        return email

    def draft_lead(self, message_id: int) -> LeadDraft:
        email = self.store.require("inbound_email", message_id)
        if email.associated_lead_id is not None:
            raise ValidationError(
                f"Message {message_id} is already linked to lead {email.associated_lead_id}",
                field="associated_lead_id",
            )
        domain = sender_domain(email.sender_email)
        name = (email.sender_name or "").strip() or email.sender_email.split("@")[0]
        body = (email.body or "").strip()
        if len(body) > NOTES_BODY_LIMIT:
            body = body[:NOTES_BODY_LIMIT] + "..."
        return LeadDraft(
            name=name,
            email=email.sender_email,
            inquiry_type="individual" if domain in FREE_MAIL_DOMAINS else "company",
            priority="medium",
            source=email.provider,
            notes=f"Subject: {email.subject}\n\n{body}".strip(),
        )

    def confirm_lead(
        self, message_id: int, actor: Actor,
        overrides: dict[str, Any] | None = None, status_choice: str | None = None,
    ) -> OperationResult:
        """Create the drafted lead (with user edits) and link the message to it."""
        fields = {**self.draft_lead(message_id).to_dict(), **(overrides or {})}
        result = self.lifecycle.create_lead(fields, actor, status_choice=status_choice)
        self.link_to_lead(message_id, result.entity.id)
        return result
