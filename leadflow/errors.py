"""Error taxonomy shared by the store, lifecycle operations and the API layer."""
from __future__ import annotations

from collections.abc import Iterable
from typing import Any


class LeadflowError(Exception):
    """Base class for all leadflow errors."""


class ValidationError(LeadflowError):
    """A precondition failed. Raised before any write is issued."""
    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class NotFoundError(ValidationError):
    def __init__(self, entity_type: str, entity_id: Any):
        super().__init__(f"{entity_type} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class PermissionDeniedError(ValidationError):
    def __init__(self, message: str, required_role: str | None = None):
        super().__init__(message)
        self.required_role = required_role


class InvalidTransitionError(ValidationError):
    def __init__(self, kind: str, current: str, target: str, allowed: Iterable[str]):
        allowed = sorted(allowed)
        super().__init__(
            f"{kind} cannot move from '{current}' to '{target}'. "
            f"Allowed from '{current}': {allowed or 'none (terminal)'}",
            field="status",
        )
        self.kind = kind
        self.current = current
        self.target = target
        self.allowed = allowed


class CoreInvestorDecisionRequired(ValidationError):
    """Core investor candidate without sufficient data; the caller must pick a waiting status."""
    def __init__(self, missing: list[str], choices: tuple[str, ...]):
        super().__init__(
            "Lead does not meet core investor criteria "
            f"(missing or too low: {', '.join(missing)}). Choose one of: {', '.join(choices)}",
            field="status",
        )
        self.missing = missing
        self.choices = choices


class ConflictError(LeadflowError):
    """Another writer changed the row since it was read. Refetch and retry."""
    def __init__(self, entity_type: str, entity_id: Any, expected: int | None = None, actual: int | None = None):
        detail = f" (expected version {expected}, found {actual})" if expected is not None else ""
        super().__init__(f"{entity_type} {entity_id} was modified concurrently{detail}")
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual


class StorageError(LeadflowError):
    """The store call itself failed."""
    def __init__(
        self, message: str, entity_type: str | None = None,
        fields: Iterable[str] | None = None, retryable: bool = True,
    ):
        super().__init__(message)
        self.entity_type = entity_type
        self.fields = sorted(fields or [])
        self.retryable = retryable
