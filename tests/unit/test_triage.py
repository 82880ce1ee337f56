from __future__ import annotations

from caseflow.triage import AUTO_APPROVE, REVIEW, aggregate_confidence, confidence_tier, evaluate

FIELDS = {"total": (100.00, 95), "invoice_number": ("INV-1", 92)}


def test_high_confidence_without_flags_auto_approves():
    result = evaluate(FIELDS, [], threshold=90)
    assert result["lane"] == AUTO_APPROVE
    assert result["confidence"] >= 90


def test_any_flag_forces_review_despite_high_confidence():
    result = evaluate(FIELDS, ["total_mismatch"], threshold=90)
    assert result["lane"] == REVIEW
    assert any("total_mismatch" in r for r in result["reasons"])


def test_flags_force_review_even_at_full_confidence():
    perfect = {"total": (1, 100), "invoice_number": ("A", 100)}
    assert evaluate(perfect, ["illegible_total"], threshold=0)["lane"] == REVIEW


def test_below_threshold_goes_to_review():
    result = evaluate({"total": (10, 60), "invoice_number": ("X", 70)}, [], threshold=90)
    assert result["lane"] == REVIEW
    assert result["confidence"] == 65.0


def test_aggregate_is_weighted():
    # total weighs 3, currency weighs 1
    score = aggregate_confidence({"total": {"value": 1, "confidence": 100},
                                  "currency": {"value": "USD", "confidence": 0}})
    assert score == 75.0


def test_aggregate_clamps_out_of_range_confidences():
    assert aggregate_confidence({"total": (1, 250)}) == 100.0
    assert aggregate_confidence({"total": (1, -20)}) == 0.0


def test_no_fields_scores_zero():
    assert aggregate_confidence({}) == 0.0
    assert evaluate({}, [], threshold=90)["lane"] == REVIEW


def test_threshold_defaults_to_policy():
    from caseflow.policy import update_policy

    update_policy({"auto_approve_threshold": 95})
    assert evaluate(FIELDS, [])["lane"] == REVIEW
    update_policy({"auto_approve_threshold": 80})
    assert evaluate(FIELDS, [])["lane"] == AUTO_APPROVE


def test_confidence_tiers():
    assert confidence_tier(None) == "low"
    assert confidence_tier(95) == "high"
    assert confidence_tier(75) == "medium"
    assert confidence_tier(40) == "low"


def test_mean_just_under_threshold_is_not_rounded_up():
    # weighted mean is 89.9667, which displays as 90.0
    fields = {"total": (1, 90.0), "tax": (1, 89.9)}
    result = evaluate(fields, [], threshold=90, weights={"total": 2, "tax": 1})
    assert result["lane"] == REVIEW
    assert result["confidence"] == 90.0
    assert evaluate(fields, [], threshold=89.96, weights={"total": 2, "tax": 1})["lane"] == AUTO_APPROVE
