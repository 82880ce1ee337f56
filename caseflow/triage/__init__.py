"""
CaseFlow — Confidence Triage

Routes an extraction into AUTO_APPROVE or REVIEW. Fully deterministic and pure:
no store access, no clock, no I/O.

  1. Weighted aggregate of per-field confidences (FIELD_WEIGHTS), clamped to [0, 100]
  2. Any validation flag forces REVIEW, whatever the score
  3. Aggregate >= auto-approve threshold -> AUTO_APPROVE
  4. Otherwise REVIEW

Display tiers (high / medium / low) are for the review queue only.
"""

from caseflow.config import (
    CONFIDENCE_TIERS, DEFAULT_FIELD_WEIGHT, FIELD_WEIGHTS,
    LINE_ITEM_PREFIX, LINE_ITEM_WEIGHT,
)
from caseflow.policy import get_policy

AUTO_APPROVE = "AUTO_APPROVE"
REVIEW = "REVIEW"


def field_weight(name: str, weights: dict = None) -> float:
    weights = FIELD_WEIGHTS if weights is None else weights
    if name in weights:
        return float(weights[name])
    if name.startswith(LINE_ITEM_PREFIX):
        return LINE_ITEM_WEIGHT
    return DEFAULT_FIELD_WEIGHT


def _field_confidence(entry) -> float:
    if isinstance(entry, dict):
        c = entry.get("confidence")
    elif isinstance(entry, (tuple, list)) and len(entry) == 2:
        c = entry[1]
    else:
        c = None
    try:
        return max(0.0, min(100.0, float(c)))
    except (TypeError, ValueError):
        return 0.0


def _weighted_mean(fields: dict, weights: dict = None) -> float:
    if not fields:
        return 0.0
    total_weight = 0.0
    weighted_sum = 0.0
    for name, entry in fields.items():
        w = field_weight(name, weights)
        if w <= 0:
            continue
        total_weight += w
        weighted_sum += _field_confidence(entry) * w
    if total_weight == 0:
        return 0.0
    return max(0.0, min(100.0, weighted_sum / total_weight))


def aggregate_confidence(fields: dict, weights: dict = None) -> float:
    """Weighted mean of per-field confidences in [0, 100], rounded for display.
    No fields scores 0."""
    return round(_weighted_mean(fields, weights), 1)


def confidence_tier(score) -> str:
    if score is None:
        return "low"
    if score >= CONFIDENCE_TIERS["high"]:
        return "high"
    if score >= CONFIDENCE_TIERS["medium"]:
        return "medium"
    return "low"


def evaluate(fields: dict, validation_flags: list, threshold: float = None, weights: dict = None) -> dict:
    """Decide the lane for an extraction. Returns lane, aggregate confidence and reasons."""
    if threshold is None:
        threshold = get_policy()["auto_approve_threshold"]
    # Lane is decided on the unrounded mean; 89.97 must not pass a 90 threshold
    mean = _weighted_mean(fields, weights)
    confidence = round(mean, 1)
    flags = list(validation_flags or [])

    if flags:
        lane = REVIEW
        reasons = [f"REVIEW: {len(flags)} validation flag{'s' if len(flags) != 1 else ''} "
                   f"({', '.join(flags[:5])})"]
        if mean >= threshold:
            reasons.append(f"NOTE: Confidence {confidence:.1f}% would otherwise auto-approve")
    elif mean >= threshold:
        lane = AUTO_APPROVE
        reasons = [f"APPROVED: Confidence {confidence:.1f}% >= threshold {threshold:.0f}%",
                   "APPROVED: No validation flags"]
    else:
        lane = REVIEW
        reasons = [f"REVIEW: Confidence below threshold ({mean:.2f}% < {threshold:.0f}%)"]

    return {
        "lane": lane,
        "confidence": confidence,
        "tier": confidence_tier(confidence),
        "threshold": threshold,
        "reasons": reasons,
    }
