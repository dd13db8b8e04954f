"""Tests for the pure status and validation rules."""
from __future__ import annotations

import itertools

import pytest

from leadflow.errors import CoreInvestorDecisionRequired, InvalidTransitionError, ValidationError
from leadflow.rules import (
    LEAD_TRANSITIONS, NDA_TRANSITIONS, WAITING_STATUSES,
    can_transition, compute_assessment_status, core_investor_data_sufficient,
    is_core_investor_candidate, is_terminal, missing_core_investor_fields, next_nda_version,
    next_version, resolve_lead_creation_status, validate_choice, validate_transition,
)


class TestCoreInvestorGate:
    def test_candidate_requires_high_priority_company(self):
        assert is_core_investor_candidate("high", "company")
        assert not is_core_investor_candidate("high", "individual")
        assert not is_core_investor_candidate("medium", "company")
        assert not is_core_investor_candidate(None, None)

    @pytest.mark.parametrize("quota,plot,expected", [
        (75, 1, True),
        (100, 12.5, True),
        (74.9, 5, False),
        (80, 0.5, False),
        (None, 2, False),
        (90, None, False),
    ])
    def test_data_sufficiency_thresholds(self, quota, plot, expected):
        assert core_investor_data_sufficient(quota, plot) is expected

    def test_missing_fields_describe_thresholds(self):
        assert missing_core_investor_fields(None, None) == ["export_quota >= 75%", "plot_size >= 1 ha"]
        assert missing_core_investor_fields(80, None) == ["plot_size >= 1 ha"]
        assert missing_core_investor_fields(80, 3) == []

    def test_under_documented_core_investor_never_resolves_active(self):
        for choice in (None, *WAITING_STATUSES, "active", "rejected"):
            try:
                status = resolve_lead_creation_status(True, False, choice)
            except ValidationError:
                continue
            assert status != "active"
            assert status in WAITING_STATUSES

    def test_missing_choice_blocks_creation(self):
        with pytest.raises(CoreInvestorDecisionRequired) as exc_info:
            resolve_lead_creation_status(True, False, None, ["plot_size >= 1 ha"])
        assert set(exc_info.value.choices) == set(WAITING_STATUSES)
        assert exc_info.value.missing == ["plot_size >= 1 ha"]

    def test_active_choice_is_rejected(self):
        with pytest.raises(ValidationError):
            resolve_lead_creation_status(True, False, "active")

    @pytest.mark.parametrize("choice", WAITING_STATUSES)
    def test_waiting_choice_is_honoured(self, choice):
        assert resolve_lead_creation_status(True, False, choice) == choice

    def test_non_core_and_documented_core_are_active(self):
        assert resolve_lead_creation_status(False, False) == "active"
        assert resolve_lead_creation_status(True, True) == "active"
        assert resolve_lead_creation_status(True, True, "waiting_for_details") == "active"


class TestAssessmentStatus:
    def test_empty_is_in_progress(self):
        assert compute_assessment_status([]) == "assessment_in_progress"

    def test_all_completed_is_completed(self):
        assert compute_assessment_status(["completed"] * 4) == "assessment_completed"

    def test_flipping_any_item_returns_to_in_progress(self):
        items = ["completed"] * 5
        for i, other in itertools.product(range(len(items)), ("not_started", "in_progress")):
            flipped = list(items)
            flipped[i] = other
            assert compute_assessment_status(flipped) == "assessment_in_progress"

    def test_recompute_is_stable(self):
        items = ["completed", "in_progress", "completed"]
        first = compute_assessment_status(items)
        assert compute_assessment_status(items) == first
        assert compute_assessment_status(iter(items)) == first


class TestVersioning:
    def test_first_version_is_one(self):
        assert next_nda_version([]) == 1

    def test_next_is_max_plus_one(self):
        assert next_version([1, 2, 3]) == 4
        assert next_version([3, 1, 2]) == 4

    def test_sequential_issuance_has_no_gaps(self):
        versions: list[int] = []
        for _ in range(6):
            versions.append(next_nda_version(versions))
        assert versions == [1, 2, 3, 4, 5, 6]


class TestTransitions:
    def test_nda_is_strictly_forward(self):
        order = ["not_issued", "issued", "signed_by_investor", "counter_signed", "completed"]
        for i, current in enumerate(order):
            for j, target in enumerate(order):
                assert can_transition("nda", current, target) is (j == i + 1)

    def test_nda_completed_from_not_issued_is_rejected(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_transition("nda", "not_issued", "completed")
        assert exc_info.value.allowed == sorted(NDA_TRANSITIONS["not_issued"])

    def test_unknown_target_status(self):
        with pytest.raises(ValidationError):
            validate_transition("lead", "active", "promoted")

    def test_terminal_statuses(self):
        assert is_terminal("lead", "rejected")
        assert is_terminal("lead", "archived")
        assert is_terminal("opportunity", "due_diligence_approved")
        assert is_terminal("business_plan", "approved")
        assert not is_terminal("business_plan", "updates_needed")

    def test_business_plan_update_loop(self):
        assert can_transition("business_plan", "received", "updates_needed")
        assert can_transition("business_plan", "updates_needed", "received")
        assert not can_transition("business_plan", "approved", "received")

    def test_opportunity_rejection_from_non_terminal_states(self):
        for status in ("assessment_in_progress", "assessment_completed", "waiting_for_approval"):
            assert can_transition("opportunity", status, "rejected")
        assert not can_transition("opportunity", "due_diligence_approved", "rejected")

    def test_archived_lead_cannot_return(self):
        assert LEAD_TRANSITIONS["archived"] == frozenset()
        with pytest.raises(InvalidTransitionError):
            validate_transition("lead", "archived", "active")

    def test_validate_choice(self):
        validate_choice(None, ("a", "b"), "field")
        validate_choice("a", ("a", "b"), "field")
        with pytest.raises(ValidationError) as exc_info:
            validate_choice("c", ("a", "b"), "field")
        assert exc_info.value.field == "field"
