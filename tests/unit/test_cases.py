from __future__ import annotations

import pytest

from caseflow.cases import (
    ALLOWED_TRANSITIONS, apply_extraction, approve_case, decide_field, open_for_review,
    reject_case, release_review, reprocess_for_masks, to_read_model, transition_case, undo_decision,
)
from caseflow.config import CASE_STATES
from caseflow.errors import AlreadyInReview, ApprovalBlocked, CaseFlowError, InvalidTransition
from caseflow.triage import evaluate


def _extracted(make_case, fields, flags=(), hard=()):
    case = make_case("processing")
    outcome = {"fields": fields, "validationFlags": list(flags) + list(hard), "hardFlags": list(hard)}
    apply_extraction(case, outcome, evaluate(fields, outcome["validationFlags"], threshold=90))
    return case


def test_every_disallowed_edge_is_rejected_and_leaves_state(make_case):
    for src in CASE_STATES:
        for dst in CASE_STATES:
            if dst in ALLOWED_TRANSITIONS[src]:
                continue
            case = make_case(src)
            history = len(case["statusHistory"])
            with pytest.raises(InvalidTransition):
                transition_case(case, dst, "tester")
            assert case["state"] == src
            assert len(case["statusHistory"]) == history


def test_transition_appends_event(make_case):
    case = make_case("queued")
    event = transition_case(case, "processing", "worker", "claimed")
    assert case["state"] == "processing"
    assert case["statusHistory"][-1] == event
    assert (event["fromState"], event["toState"], event["by"]) == ("queued", "processing", "worker")


def test_reentry_to_processing_needs_a_mask_edit(make_case):
    case = make_case("needs_review")
    with pytest.raises(InvalidTransition):
        transition_case(case, "processing", "someone")
    reprocess_for_masks(case, "reviewer-a", "MSK-1")
    assert case["state"] == "processing"


def test_extraction_routes_by_lane(make_case):
    fields = {"total": {"value": 100.0, "confidence": 95}, "invoice_number": {"value": "INV-1", "confidence": 92}}
    assert _extracted(make_case, fields)["state"] == "auto_approved"

    flagged = _extracted(make_case, fields, hard=["total_mismatch"])
    assert flagged["state"] == "needs_review"
    assert flagged["hasFlags"] is True


def test_open_is_exclusive(make_case):
    case = make_case("needs_review")
    open_for_review(case, "alice")
    with pytest.raises(AlreadyInReview):
        open_for_review(case, "bob")
    assert case["reviewer"] == "alice"


def test_open_from_wrong_state(make_case):
    with pytest.raises(InvalidTransition):
        open_for_review(make_case("queued"), "alice")


def test_release_preserves_confidence_and_retry_count(make_case):
    case = make_case("needs_review", confidence=72.5, retryCount=2)
    open_for_review(case, "alice")
    release_review(case, "alice")
    assert case["state"] == "needs_review"
    assert case["reviewer"] is None
    assert (case["confidence"], case["retryCount"]) == (72.5, 2)


def test_only_the_holder_may_act(make_case):
    case = make_case("needs_review")
    open_for_review(case, "alice")
    with pytest.raises(AlreadyInReview):
        reject_case(case, "bob", "not mine")
    with pytest.raises(AlreadyInReview):
        release_review(case, "bob")


def test_approval_blocked_until_hard_flags_resolved(make_case):
    fields = {"total": {"value": 100.0, "confidence": 30}, "invoice_number": {"value": "INV-1", "confidence": 92}}
    case = _extracted(make_case, fields, hard=["low_confidence:total"])
    before = case["confidence"]
    open_for_review(case, "alice")

    with pytest.raises(ApprovalBlocked) as exc:
        approve_case(case, "alice")
    assert exc.value.details["blockingReasons"] == ["low_confidence:total"]
    assert case["state"] == "in_review"

    decide_field(case, "alice", "total", 100.0)
    assert case["confidence"] > before
    assert case["hardFlags"] == []
    approve_case(case, "alice")
    assert case["state"] == "approved"
    assert case["approvedBy"] == "alice"


def test_undo_restores_the_blocking_flag(make_case):
    fields = {"total": {"value": 100.0, "confidence": 30}, "invoice_number": {"value": "INV-1", "confidence": 92}}
    case = _extracted(make_case, fields, hard=["low_confidence:total"])
    open_for_review(case, "alice")
    decide_field(case, "alice", "total", 100.0)
    undone = undo_decision(case, "alice")
    assert undone["field"] == "total"
    assert case["hardFlags"] == ["low_confidence:total"]
    with pytest.raises(CaseFlowError):
        undo_decision(case, "alice")


def test_reject_is_terminal(make_case):
    case = make_case("needs_review")
    open_for_review(case, "alice")
    reject_case(case, "alice", "duplicate bill")
    assert case["state"] == "rejected"
    assert case["rejectionReason"] == "duplicate bill"
    with pytest.raises(InvalidTransition):
        transition_case(case, "exported", "export")


def test_read_model(make_case):
    case = make_case("needs_review", confidence=95.0)
    view = to_read_model(case)
    assert view["confidenceTier"] == "high"
    assert view["canApprove"] is False
    view["state"] = "approved"
    assert case["state"] == "needs_review"
