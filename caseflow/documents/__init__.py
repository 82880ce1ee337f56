"""
CaseFlow — Documents Module

Turns raw OCR engine output into the case field map, runs the post-extraction
validation rules, and recomputes confidence after reviewer field decisions.

Validation rules:
  Hard flags (block approval until a reviewer decides the field):
    - missing_required:<field>    required field absent or empty
    - low_confidence:<field>      required field below hard_flag_min_confidence
    - total_mismatch              subtotal + tax != total, or line items != subtotal
  Soft flags (advisory):
    - missing_recommended:<field>
    - low_confidence:<field>      recommended field below soft_flag_min_confidence
"""

import re

from caseflow.config import LINE_ITEM_PREFIX, RECOMMENDED_FIELDS, REQUIRED_FIELDS
from caseflow.errors import ExtractionFailure
from caseflow.policy import get_policy
from caseflow.triage import aggregate_confidence

TOTAL_MISMATCH = "total_mismatch"


def _n(val, default=None):
    """Safe numeric conversion: None/empty -> default, '$1,234.50' -> 1234.5."""
    if val is None or val == "":
        return default
    if isinstance(val, bool):
        return default
    if isinstance(val, (int, float)):
        return float(val)
    cleaned = re.sub(r"[^\d.\-]", "", str(val))
    try:
        return float(cleaned)
    except ValueError:
        return default


def _empty(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


# ============================================================
# NORMALIZATION
# ============================================================
def normalize_fields(raw_fields) -> dict:
    """Accept {name: (value, conf)} or {name: {"value", "confidence"}} and return the
    canonical {name: {"value": v, "confidence": float}} map."""
    if not isinstance(raw_fields, dict):
        raise ExtractionFailure("engine returned fields in an unexpected shape",
                                {"type": type(raw_fields).__name__})
    fields = {}
    for name, entry in raw_fields.items():
        if isinstance(entry, dict):
            value, conf = entry.get("value"), entry.get("confidence")
        elif isinstance(entry, (tuple, list)) and len(entry) == 2:
            value, conf = entry
        else:
            raise ExtractionFailure(f"field '{name}' is not a (value, confidence) pair")
        conf = _n(conf, 0.0)
        fields[str(name)] = {"value": value, "confidence": round(max(0.0, min(100.0, conf)), 1)}
    return fields


def normalize_extraction(result) -> dict:
    """Canonical extraction: {"fields": {...}, "validationFlags": [...]}."""
    if not isinstance(result, dict):
        raise ExtractionFailure("engine returned no result object")
    if result.get("error"):
        raise ExtractionFailure(str(result["error"]))
    fields = normalize_fields(result.get("fields") or {})
    flags = result.get("validationFlags")
    if flags is None:
        flags = result.get("validation_flags") or []
    if not isinstance(flags, (list, tuple)):
        raise ExtractionFailure("engine returned validationFlags that is not a list",
                                {"type": type(flags).__name__})
    return {"fields": fields, "validationFlags": [str(f) for f in flags]}


# ============================================================
# VALIDATION
# ============================================================
def _line_item_sum(fields: dict):
    amounts = [_n(e.get("value")) for name, e in fields.items()
               if name.startswith(LINE_ITEM_PREFIX) and (name.endswith("_total") or name.endswith("_amount"))]
    amounts = [a for a in amounts if a is not None]
    return sum(amounts) if amounts else None


def _differs(a: float, b: float, tolerance_pct: float) -> bool:
    return abs(a - b) / max(abs(b), 1) * 100 > tolerance_pct


def validate_fields(fields: dict, policy: dict = None) -> tuple:
    """Run validation rules. Returns (hard_flags, soft_flags)."""
    policy = policy or get_policy()
    hard_min = policy["hard_flag_min_confidence"]
    soft_min = policy["soft_flag_min_confidence"]
    tolerance = policy["total_tolerance_pct"]

    required = list(policy.get("required_fields", REQUIRED_FIELDS))
    if not policy.get("require_invoice_number", True):
        required = [f for f in required if f != "invoice_number"]

    hard, soft = [], []
    for name in required:
        entry = fields.get(name)
        if entry is None or _empty(entry.get("value")):
            hard.append(f"missing_required:{name}")
        elif entry.get("confidence", 0) < hard_min:
            hard.append(f"low_confidence:{name}")

    for name in RECOMMENDED_FIELDS:
        entry = fields.get(name)
        if entry is None or _empty(entry.get("value")):
            soft.append(f"missing_recommended:{name}")
        elif entry.get("confidence", 0) < soft_min:
            soft.append(f"low_confidence:{name}")

    total = _n((fields.get("total") or {}).get("value"))
    subtotal = _n((fields.get("subtotal") or {}).get("value"))
    tax = _n((fields.get("tax") or {}).get("value"))
    mismatch = False
    if total is not None and subtotal is not None:
        if _differs(subtotal + (tax or 0.0), total, tolerance):
            mismatch = True
    items = _line_item_sum(fields)
    if items is not None:
        base = subtotal if subtotal is not None else (total - (tax or 0.0) if total is not None else None)
        if base is not None and _differs(items, base, tolerance):
            mismatch = True
    if mismatch:
        hard.append(TOTAL_MISMATCH)

    return hard, soft


# ============================================================
# REVIEWER DECISIONS
# ============================================================
def effective_fields(case: dict) -> dict:
    """Extracted fields with reviewer decisions applied. Decided fields are human
    verified and count at 100% confidence."""
    fields = {k: dict(v) for k, v in (case.get("fields") or {}).items()}
    for d in case.get("decisions") or []:
        fields[d["field"]] = {"value": d["chosenValue"], "confidence": 100.0}
    return fields


def unresolved_hard_flags(case: dict, policy: dict = None) -> list:
    """Hard flags still standing once reviewer decisions are applied."""
    if case.get("confidence") is None:
        return []
    hard, _ = validate_fields(effective_fields(case), policy)
    return hard


def recompute_confidence(case: dict) -> float:
    """Aggregate confidence over the decided view of the fields."""
    return aggregate_confidence(effective_fields(case))
