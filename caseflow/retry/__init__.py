"""
CaseFlow — Retry Scheduler

Re-queues failed extractions with a (possibly different) extraction profile.

Rules, checked in order:
  1. Case must be FAILED with no retry already outstanding  -> else RetryNotAllowed
  2. retryCount < max_retries                                -> else RetryExhausted
     (case stays FAILED, flagged retryExhausted for manual handling)
  3. outstandingRetry = True, retryCount += 1, profile attached, FAILED -> QUEUED

outstandingRetry is cleared on the next extraction outcome, success or failure.
"""

from caseflow.cases import transition_case
from caseflow.config import (
    ESTIMATE_BASE_MS, ESTIMATE_MS_PER_100KB, ESTIMATE_PDF_EXTRA_MS,
    EXTRACTION_PROFILES, FAILED, QUEUED,
)
from caseflow.errors import RetryExhausted, RetryNotAllowed
from caseflow.log import get_logger
from caseflow.policy import get_policy

logger = get_logger(__name__)


def speed_factor(profile: str) -> float:
    """Multiplier for a profile. Profiles are an open set; unknown ones run at 1.0."""
    return float(EXTRACTION_PROFILES.get(profile, {}).get("speed_factor", 1.0))


def estimate_processing_time(document: dict, profile: str) -> int:
    """Rough wall-clock estimate in ms for one extraction of `document`."""
    document = document or {}
    size = document.get("sizeBytes") or 0
    ms = ESTIMATE_BASE_MS + ESTIMATE_MS_PER_100KB * (size // (100 * 1024))
    mime = (document.get("mimeType") or "").lower()
    name = (document.get("fileName") or "").lower()
    if mime == "application/pdf" or name.endswith(".pdf"):
        ms += ESTIMATE_PDF_EXTRA_MS
    return int(round(ms * speed_factor(profile)))


def retry_case(case: dict, profile: str = None, by: str = "system", max_retries: int = None) -> dict:
    """Schedule a retry. Caller holds the case lock."""
    if case["state"] != FAILED or case.get("outstandingRetry"):
        raise RetryNotAllowed(case["id"], case["state"], bool(case.get("outstandingRetry")))

    if max_retries is None:
        max_retries = get_policy()["max_retries"]
    if case.get("retryCount", 0) >= max_retries:
        case["retryExhausted"] = True
        logger.warning(f"[Retry] {case['id']} exhausted {case['retryCount']}/{max_retries} retries, "
                       f"needs manual intervention")
        raise RetryExhausted(case["id"], case["retryCount"], max_retries)

    profile = (profile or "").strip() or get_policy()["retry_profile"]
    case["outstandingRetry"] = True
    case["retryCount"] = case.get("retryCount", 0) + 1
    case["profile"] = profile
    transition_case(case, QUEUED, by,
                    f"Retry {case['retryCount']}/{max_retries} with profile '{profile}'")

    estimate = estimate_processing_time(case.get("document"), profile)
    logger.info(f"[Retry] {case['id']} re-queued ({case['retryCount']}/{max_retries}, {profile}, ~{estimate}ms)")
    return {
        "caseId": case["id"],
        "estimatedTimeMs": estimate,
        "profile": profile,
        "retryCount": case["retryCount"],
    }


def clear_outstanding(case: dict):
    """Called on every extraction outcome."""
    case["outstandingRetry"] = False
