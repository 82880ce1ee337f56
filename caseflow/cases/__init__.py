"""
CaseFlow — Case Lifecycle State Machine

Case Lifecycle:
  QUEUED → PROCESSING → AUTO_APPROVED ─────────────→ EXPORTED
               │  ↑ ↘ NEEDS_REVIEW ⇄ IN_REVIEW → APPROVED ─→ EXPORTED
               │  │         (mask edit)      ↘ REJECTED
               ↓  │
             FAILED ──(retry)──→ QUEUED

  Mask edits send NEEDS_REVIEW / IN_REVIEW / FAILED cases back to PROCESSING;
  that is the only way back into PROCESSING besides the initial claim.
  Terminal: EXPORTED, REJECTED.

Every function here operates on a live record and assumes the caller holds
the case lock (`store.locked(case_id)`). Every state change goes through
transition_case(), which appends an immutable event to statusHistory.
"""

import copy
import uuid
from datetime import datetime

from caseflow.config import (
    APPROVED, AUTO_APPROVED, CASE_STATES, EXPORTED, FAILED, IN_REVIEW,
    NEEDS_REVIEW, PROCESSING, QUEUED, REJECTED, REPROCESS_ON_MASK_STATES,
)
from caseflow.documents import (
    effective_fields, recompute_confidence, unresolved_hard_flags, validate_fields,
)
from caseflow.errors import (
    AlreadyInReview, ApprovalBlocked, CaseFlowError, InvalidTransition,
)
from caseflow.policy import get_policy
from caseflow.triage import AUTO_APPROVE, confidence_tier

# ============================================================
# CASE STATUS TRANSITIONS
# ============================================================
ALLOWED_TRANSITIONS = {
    QUEUED:        [PROCESSING],
    PROCESSING:    [FAILED, AUTO_APPROVED, NEEDS_REVIEW],
    NEEDS_REVIEW:  [IN_REVIEW, PROCESSING],
    IN_REVIEW:     [APPROVED, REJECTED, NEEDS_REVIEW, PROCESSING],
    FAILED:        [QUEUED, PROCESSING],
    AUTO_APPROVED: [EXPORTED],
    APPROVED:      [EXPORTED],
    REJECTED:      [],  # Terminal
    EXPORTED:      [],  # Terminal
}

# Edges that only a mask edit may take
MASK_UPDATE = "mask_update"
MASK_ONLY_EDGES = {(s, PROCESSING) for s in REPROCESS_ON_MASK_STATES}


def _now() -> str:
    return datetime.now().isoformat()


# ============================================================
# CASE CREATION
# ============================================================
def create_case(
    vendor_id: str = None,
    vendor_name: str = None,
    document: dict = None,
    created_by: str = "ingestion",
    profile: str = None,
    case_id: str = None,
) -> dict:
    """Create a new case in QUEUED. Returns the case record."""
    now = _now()
    cid = case_id or "CASE-" + str(uuid.uuid4())[:8].upper()
    return {
        "id": cid,
        "state": QUEUED,
        "vendorId": vendor_id,
        "vendorName": vendor_name,
        "document": dict(document or {}),
        "confidence": None,
        "fields": {},
        "validationFlags": [],
        "engineFlags": [],
        "hardFlags": [],
        "softFlags": [],
        "hasFlags": False,
        "decisions": [],
        "profile": profile or get_policy()["default_profile"],
        "retryCount": 0,
        "outstandingRetry": False,
        "retryExhausted": False,
        "reviewer": None,
        "exportRef": None,
        "exportPending": False,
        "lastError": None,
        "lastExtractionAt": None,
        "extractionAttempt": 0,
        "createdAt": now,
        "updatedAt": now,
        "createdBy": created_by,
        "approvedBy": None,
        "approvedAt": None,
        "rejectedBy": None,
        "rejectedAt": None,
        "rejectionReason": None,
        "exportedAt": None,
        "statusHistory": [
            {"id": str(uuid.uuid4())[:8], "caseId": cid, "fromState": None, "toState": QUEUED,
             "at": now, "by": created_by, "reason": "Case created"}
        ],
    }


def transition_case(case: dict, new_state: str, by: str, reason: str = "", trigger: str = None) -> dict:
    """Move a case along an allowed edge. Returns the appended event or raises
    InvalidTransition, leaving the case untouched."""
    current = case["state"]
    allowed = ALLOWED_TRANSITIONS.get(current, [])
    if new_state not in CASE_STATES or new_state not in allowed:
        raise InvalidTransition(case["id"], current, new_state, allowed)
    if (current, new_state) in MASK_ONLY_EDGES and trigger != MASK_UPDATE:
        raise InvalidTransition(case["id"], current, new_state, [s for s in allowed if s != PROCESSING])

    now = _now()
    event = {"id": str(uuid.uuid4())[:8], "caseId": case["id"], "fromState": current,
             "toState": new_state, "at": now, "by": by, "reason": reason}
    case["state"] = new_state
    case["updatedAt"] = now
    case["statusHistory"].append(event)
    return dict(event)


# ============================================================
# EXTRACTION
# ============================================================
def claim_for_processing(case: dict, by: str = "worker") -> dict:
    """QUEUED → PROCESSING."""
    event = transition_case(case, PROCESSING, by, f"Claimed for extraction (profile: {case['profile']})")
    case["lastError"] = None
    case["extractionAttempt"] = case.get("extractionAttempt", 0) + 1
    return event


def reprocess_for_masks(case: dict, by: str, mask_id: str) -> dict:
    """NEEDS_REVIEW / IN_REVIEW / FAILED → PROCESSING after a mask edit."""
    event = transition_case(case, PROCESSING, by, f"Mask set changed ({mask_id}), re-extracting",
                            trigger=MASK_UPDATE)
    case["reviewer"] = None
    case["lastError"] = None
    case["extractionAttempt"] = case.get("extractionAttempt", 0) + 1
    return event


def apply_extraction(case: dict, normalized: dict, evaluation: dict, by: str = "ocr") -> dict:
    """Store an extraction outcome and route PROCESSING → AUTO_APPROVED / NEEDS_REVIEW.
    Fields are replaced wholesale; earlier reviewer decisions no longer apply."""
    if case["state"] != PROCESSING:
        raise InvalidTransition(case["id"], case["state"],
                                AUTO_APPROVED if evaluation["lane"] == AUTO_APPROVE else NEEDS_REVIEW,
                                ALLOWED_TRANSITIONS.get(case["state"], []))
    target = AUTO_APPROVED if evaluation["lane"] == AUTO_APPROVE else NEEDS_REVIEW
    event = transition_case(case, target, by, "; ".join(evaluation.get("reasons", [])))

    case["fields"] = copy.deepcopy(normalized["fields"])
    case["engineFlags"] = list(normalized.get("engineFlags", []))
    case["hardFlags"] = list(normalized.get("hardFlags", []))
    case["softFlags"] = list(normalized.get("softFlags", []))
    case["validationFlags"] = list(normalized["validationFlags"])
    case["hasFlags"] = bool(case["validationFlags"])
    case["confidence"] = evaluation["confidence"]
    case["decisions"] = []
    case["lastExtractionAt"] = event["at"]
    return event


def fail_extraction(case: dict, error: str, by: str = "ocr") -> dict:
    """PROCESSING → FAILED. Stored fields and confidence are kept."""
    event = transition_case(case, FAILED, by, f"Extraction failed: {error}")
    case["lastError"] = error
    return event


# ============================================================
# REVIEW
# ============================================================
def open_for_review(case: dict, reviewer: str) -> dict:
    """NEEDS_REVIEW → IN_REVIEW. Exclusive: a held case raises AlreadyInReview."""
    if case["state"] == IN_REVIEW:
        raise AlreadyInReview(case["id"], case.get("reviewer"), reviewer)
    event = transition_case(case, IN_REVIEW, reviewer, "Opened for review")
    case["reviewer"] = reviewer
    return event


def require_holder(case: dict, actor: str):
    """Reviewer actions need the case IN_REVIEW and held by `actor`."""
    if case["state"] != IN_REVIEW:
        raise InvalidTransition(case["id"], case["state"], IN_REVIEW,
                                ALLOWED_TRANSITIONS.get(case["state"], []))
    if case.get("reviewer") != actor:
        raise AlreadyInReview(case["id"], case.get("reviewer"), actor)


def release_review(case: dict, reviewer: str, reason: str = "Released without decision") -> dict:
    """IN_REVIEW → NEEDS_REVIEW. Confidence, decisions and retry count are preserved."""
    require_holder(case, reviewer)
    event = transition_case(case, NEEDS_REVIEW, reviewer, reason)
    case["reviewer"] = None
    return event


def approve_case(case: dict, reviewer: str, note: str = "", policy: dict = None) -> dict:
    """IN_REVIEW → APPROVED, blocked while hard flags remain unresolved."""
    require_holder(case, reviewer)
    blocking = unresolved_hard_flags(case, policy)
    if blocking:
        raise ApprovalBlocked(case["id"], case["state"], blocking)
    event = transition_case(case, APPROVED, reviewer, note or "Approved by reviewer")
    case["reviewer"] = None
    case["approvedBy"] = reviewer
    case["approvedAt"] = event["at"]
    return event


def reject_case(case: dict, reviewer: str, reason: str = "") -> dict:
    """IN_REVIEW → REJECTED (terminal)."""
    require_holder(case, reviewer)
    event = transition_case(case, REJECTED, reviewer, reason or "Rejected by reviewer")
    case["reviewer"] = None
    case["rejectedBy"] = reviewer
    case["rejectedAt"] = event["at"]
    case["rejectionReason"] = reason or None
    return event


def _refresh_after_decision(case: dict, policy: dict = None):
    hard, soft = validate_fields(effective_fields(case), policy)
    case["hardFlags"] = hard
    case["softFlags"] = soft
    case["confidence"] = recompute_confidence(case)
    case["updatedAt"] = _now()


def decide_field(case: dict, reviewer: str, field: str, chosen_value, source: str = "manual",
                 policy: dict = None) -> dict:
    """Record a reviewer's value for one field. Decided fields count as 100% confidence."""
    require_holder(case, reviewer)
    if not field or not str(field).strip():
        raise CaseFlowError("Field name is required", {"caseId": case["id"]})
    field = str(field).strip()
    original = (case["fields"].get(field) or {}).get("value")
    decision = {
        "id": str(uuid.uuid4())[:8],
        "field": field,
        "originalValue": original,
        "chosenValue": chosen_value,
        "source": source,
        "decidedBy": reviewer,
        "decidedAt": _now(),
    }
    case["decisions"].append(decision)
    _refresh_after_decision(case, policy)
    return dict(decision)


def undo_decision(case: dict, reviewer: str, policy: dict = None) -> dict:
    """Drop the most recent field decision. Returns the removed decision."""
    require_holder(case, reviewer)
    if not case["decisions"]:
        raise CaseFlowError("No field decisions to undo", {"caseId": case["id"]})
    removed = case["decisions"].pop()
    _refresh_after_decision(case, policy)
    return removed


# ============================================================
# READ MODEL
# ============================================================
def to_read_model(case: dict) -> dict:
    """Display view of a case (state, confidence, vendor, totals, flags)."""
    view = copy.deepcopy(case)
    view["confidenceTier"] = confidence_tier(case.get("confidence"))
    view["effectiveFields"] = effective_fields(case)
    blocking = unresolved_hard_flags(case)
    view["unresolvedHardFlags"] = blocking
    view["canApprove"] = case["state"] == IN_REVIEW and not blocking
    return view
