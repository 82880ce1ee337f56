"""
CaseFlow — Review Queue Index

Read-only projections over the live case set. Nothing here is stored: every
query and every stats call is recomputed from case snapshots.

  build_entry()          Case -> QueueEntry
  query_queue()          filter / sort / paginate QueueEntries
  compute_queue_stats()  aggregate counts over the unfiltered set
  next_case()            lowest-confidence case waiting for a reviewer
"""

from datetime import datetime

from caseflow.config import (
    APPROVED, AUTO_APPROVED, CASE_STATES, DEFAULT_PAGE_SIZE, EXPORTED, FAILED,
    IN_REVIEW, MAX_PAGE_SIZE, NEEDS_REVIEW, PROCESSING, QUEUED, REJECTED,
)
from caseflow.documents import _n, effective_fields
from caseflow.errors import InvalidQuery
from caseflow.triage import confidence_tier

SORT_FIELDS = ("priority", "created_at", "updated_at", "confidence", "vendor_name")
SORT_ORDERS = ("asc", "desc")
ALL_STATES = "all"


def _conf(case) -> float:
    """Never-extracted cases sort as the riskiest."""
    c = case.get("confidence")
    return -1.0 if c is None else float(c)


def build_entry(case: dict) -> dict:
    """QueueEntry projection of one case."""
    fields = effective_fields(case)
    flags = list(case.get("validationFlags") or [])
    attention = sorted({f.split(":", 1)[1] for f in flags + list(case.get("softFlags") or [])
                        if ":" in f})
    return {
        "caseId": case["id"],
        "state": case["state"],
        "vendorId": case.get("vendorId"),
        "vendorName": case.get("vendorName"),
        "confidence": case.get("confidence"),
        "confidenceTier": confidence_tier(case.get("confidence")),
        "hasFlags": bool(case.get("hasFlags")),
        "flagCount": len(flags),
        "fieldsNeedingAttention": attention,
        "total": _n((fields.get("total") or {}).get("value")),
        "reviewer": case.get("reviewer"),
        "retryCount": case.get("retryCount", 0),
        "createdAt": case.get("createdAt"),
        "updatedAt": case.get("updatedAt"),
    }


# ============================================================
# FILTERS
# ============================================================
def _states_filter(state):
    if state is None:
        return {NEEDS_REVIEW}
    if isinstance(state, str):
        if state.lower() == ALL_STATES:
            return None
        state = [s for s in state.split(",") if s.strip()]
    states = {str(s).strip().lower() for s in state}
    unknown = sorted(states - set(CASE_STATES))
    if unknown:
        raise InvalidQuery("state", ",".join(unknown), f"expected one of {CASE_STATES} or '{ALL_STATES}'")
    return states


def _local_naive(dt: datetime) -> datetime:
    # createdAt is naive local time; offsets are converted to it before comparing
    if dt.tzinfo is not None:
        return dt.astimezone().replace(tzinfo=None)
    return dt


def _parse_date(parameter: str, value):
    if value is None or value == "":
        return None
    try:
        return _local_naive(datetime.fromisoformat(str(value)))
    except ValueError:
        raise InvalidQuery(parameter, value, "expected an ISO 8601 date or datetime")


def _confidence_bounds(confidence_range):
    if not confidence_range:
        return None, None
    try:
        lo, hi = confidence_range
    except (TypeError, ValueError):
        raise InvalidQuery("confidence_range", confidence_range, "expected (min, max)")
    lo = None if lo is None else float(lo)
    hi = None if hi is None else float(hi)
    if lo is not None and hi is not None and lo > hi:
        raise InvalidQuery("confidence_range", confidence_range, "min is greater than max")
    return lo, hi


def _matches(case, states, vendor, lo, hi, has_flags, created_from, created_to, reviewer) -> bool:
    if states is not None and case["state"] not in states:
        return False
    if vendor:
        needle = vendor.lower()
        hay = f"{case.get('vendorName') or ''} {case.get('vendorId') or ''}".lower()
        if needle not in hay:
            return False
    if lo is not None or hi is not None:
        c = case.get("confidence")
        if c is None:
            return False
        if lo is not None and c < lo:
            return False
        if hi is not None and c > hi:
            return False
    if has_flags is not None and bool(case.get("hasFlags")) != bool(has_flags):
        return False
    if created_from or created_to:
        created = _local_naive(datetime.fromisoformat(case["createdAt"]))
        if created_from and created < created_from:
            return False
        if created_to and created > created_to:
            return False
    if reviewer and case.get("reviewer") != reviewer:
        return False
    return True


# ============================================================
# QUERY
# ============================================================
def _sort_key(sort: str):
    if sort in ("priority", "confidence"):
        return _conf
    if sort == "created_at":
        return lambda c: c.get("createdAt") or ""
    if sort == "updated_at":
        return lambda c: c.get("updatedAt") or ""
    return lambda c: (c.get("vendorName") or "").lower()


def query_queue(
    cases: list,
    state=None,
    vendor: str = None,
    confidence_range: tuple = None,
    has_flags: bool = None,
    created_from: str = None,
    created_to: str = None,
    reviewer: str = None,
    sort: str = "priority",
    order: str = "asc",
    page: int = 1,
    per_page: int = DEFAULT_PAGE_SIZE,
) -> dict:
    """Filter, sort and paginate case snapshots into QueueEntries.

    `state` defaults to needs_review; pass "all" to disable the state filter.
    Pages are 1-based. Equal sort keys fall back to createdAt then id, ascending.
    """
    sort = (sort or "priority").lower()
    order = (order or "asc").lower()
    if sort not in SORT_FIELDS:
        raise InvalidQuery("sort", sort, f"expected one of {list(SORT_FIELDS)}")
    if order not in SORT_ORDERS:
        raise InvalidQuery("order", order, "expected 'asc' or 'desc'")
    if isinstance(page, bool) or not isinstance(page, int) or page < 1:
        raise InvalidQuery("page", page, "pages start at 1")
    if isinstance(per_page, bool) or not isinstance(per_page, int) or not 1 <= per_page <= MAX_PAGE_SIZE:
        raise InvalidQuery("per_page", per_page, f"expected 1..{MAX_PAGE_SIZE}")

    states = _states_filter(state)
    lo, hi = _confidence_bounds(confidence_range)
    c_from = _parse_date("created_from", created_from)
    c_to = _parse_date("created_to", created_to)

    matched = [c for c in cases
               if _matches(c, states, vendor, lo, hi, has_flags, c_from, c_to, reviewer)]
    matched.sort(key=lambda c: (c.get("createdAt") or "", c["id"]))
    matched.sort(key=_sort_key(sort), reverse=(order == "desc"))

    total = len(matched)
    total_pages = max(1, -(-total // per_page))
    start = (page - 1) * per_page
    return {
        "entries": [build_entry(c) for c in matched[start:start + per_page]],
        "total": total,
        "page": page,
        "perPage": per_page,
        "totalPages": total_pages,
    }


# ============================================================
# STATS
# ============================================================
def compute_queue_stats(cases: list) -> dict:
    """Aggregate counts over the unfiltered set. Always computed fresh."""
    by_state = {s: 0 for s in CASE_STATES}
    for c in cases:
        by_state[c["state"]] = by_state.get(c["state"], 0) + 1
    scored = [c["confidence"] for c in cases if c.get("confidence") is not None]
    return {
        "total": len(cases),
        "byState": by_state,
        "pending": by_state[NEEDS_REVIEW],
        "inReview": by_state[IN_REVIEW],
        "approved": by_state[APPROVED] + by_state[AUTO_APPROVED],
        "autoApproved": by_state[AUTO_APPROVED],
        "rejected": by_state[REJECTED],
        "failed": by_state[FAILED],
        "exported": by_state[EXPORTED],
        "inFlight": by_state[QUEUED] + by_state[PROCESSING],
        "casesWithFlags": sum(1 for c in cases if c.get("hasFlags")),
        "avgConfidence": round(sum(scored) / len(scored), 1) if scored else 0.0,
    }


def next_case(cases: list):
    """The needs_review case a reviewer should pick up next, or None."""
    waiting = [c for c in cases if c["state"] == NEEDS_REVIEW]
    if not waiting:
        return None
    waiting.sort(key=lambda c: (_conf(c), c.get("createdAt") or "", c["id"]))
    return build_entry(waiting[0])
