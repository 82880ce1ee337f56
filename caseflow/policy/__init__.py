"""
CaseFlow — Policy Engine Module

Centralized routing policy state. Single source of truth for the auto-approve
threshold, retry cap, processing capacity and validation thresholds.

Architecture:
  - DEFAULT_POLICY: Immutable base policy with env var overrides
  - _active_policy: Mutable runtime state, updated via API
  - get_policy() / update_policy() / reset_policy(): Lock-guarded accessors
  - POLICY_PRESETS: Named preset configurations

Every module that needs a policy value calls get_policy().
No module stores a stale copy.
"""

import os
import copy as _copy
import threading

from caseflow.config import REQUIRED_FIELDS
from caseflow.log import get_logger

logger = get_logger(__name__)


# ============================================================
# DEFAULT POLICY — base configuration with env var overrides
# ============================================================
DEFAULT_POLICY = {
    # ── ROUTING ──
    "auto_approve_threshold": float(os.environ.get("AUTO_APPROVE_THRESHOLD", "90")),

    # ── RETRIES ──
    "max_retries": int(os.environ.get("MAX_RETRIES", "3")),
    "default_profile": os.environ.get("DEFAULT_PROFILE", "standard"),
    "retry_profile": os.environ.get("RETRY_PROFILE", "high_accuracy"),

    # ── CAPACITY ──
    "max_concurrent_processing": int(os.environ.get("MAX_CONCURRENT_PROCESSING", "4")),
    "extraction_timeout_s": float(os.environ.get("EXTRACTION_TIMEOUT_S", "60")),

    # ── MASK BOUNDS (normalized page coordinates by default) ──
    "document_width": float(os.environ.get("DOCUMENT_WIDTH", "1.0")),
    "document_height": float(os.environ.get("DOCUMENT_HEIGHT", "1.0")),

    # ── VALIDATION ──
    "hard_flag_min_confidence": float(os.environ.get("HARD_FLAG_MIN_CONFIDENCE", "50")),
    "soft_flag_min_confidence": float(os.environ.get("SOFT_FLAG_MIN_CONFIDENCE", "70")),
    "total_tolerance_pct": float(os.environ.get("TOTAL_TOLERANCE_PCT", "1")),
    "required_fields": [f.strip() for f in os.environ.get("REQUIRED_FIELDS", ",".join(REQUIRED_FIELDS)).split(",")
                        if f.strip()],
    "require_invoice_number": True,
}

# Fields holding percentages / confidence values get clamped to [0, 100]
PCT_FIELDS = {"auto_approve_threshold", "hard_flag_min_confidence",
              "soft_flag_min_confidence", "total_tolerance_pct"}
# Count fields get clamped to >= 0 (capacity to >= 1)
COUNT_FIELDS = {"max_retries", "max_concurrent_processing"}


# ============================================================
# RUNTIME STATE — mutable, updated via API
# ============================================================
_active_policy = _copy.deepcopy(DEFAULT_POLICY)
_policy_lock = threading.Lock()


def get_policy() -> dict:
    """Get a copy of the active routing policy."""
    with _policy_lock:
        return _copy.deepcopy(_active_policy)


def update_policy(updates: dict) -> dict:
    """Update specific policy fields. Unknown keys and mistyped values are ignored.
    Returns the full updated policy."""
    with _policy_lock:
        for key, value in updates.items():
            if key not in _active_policy:
                logger.warning(f"[Policy] Ignoring unknown key '{key}'")
                continue
            expected_type = type(DEFAULT_POLICY[key])
            if expected_type == bool:
                if isinstance(value, bool):
                    _active_policy[key] = value
                continue
            if expected_type == float and isinstance(value, (int, float)) and not isinstance(value, bool):
                value = float(value)
                if key in PCT_FIELDS:
                    value = max(0.0, min(100.0, value))
                elif value <= 0:
                    continue
                _active_policy[key] = value
            elif expected_type == int and isinstance(value, (int, float)) and not isinstance(value, bool):
                value = max(0, int(value))
                if key == "max_concurrent_processing":
                    value = max(1, value)
                _active_policy[key] = value
            elif expected_type == str and isinstance(value, str) and value.strip():
                _active_policy[key] = value.strip()
            elif expected_type == list and isinstance(value, list) and all(isinstance(v, str) for v in value):
                _active_policy[key] = [v.strip() for v in value if v.strip()]
        logger.info(f"[Policy] Updated: {sorted(updates)}")
        return _copy.deepcopy(_active_policy)


def reset_policy():
    """Reset policy to defaults. Used in testing."""
    with _policy_lock:
        _active_policy.clear()
        _active_policy.update(_copy.deepcopy(DEFAULT_POLICY))


# ============================================================
# POLICY PRESETS
# ============================================================
POLICY_PRESETS = {
    "enterprise_default": {
        "name": "Enterprise Default",
        "description": "Balanced auto-approval with three retries",
        "auto_approve_threshold": 90,
        "max_retries": 3,
        "retry_profile": "high_accuracy",
    },
    "strict_audit": {
        "name": "Strict Audit / Regulated Industry",
        "description": "Near-certain extractions only, every hard flag reviewed",
        "auto_approve_threshold": 97,
        "max_retries": 2,
        "retry_profile": "safe",
        "hard_flag_min_confidence": 70,
        "soft_flag_min_confidence": 85,
        "total_tolerance_pct": 0.5,
    },
    "high_volume": {
        "name": "High Volume / Shared Services",
        "description": "Lower threshold, wider capacity, fast retries",
        "auto_approve_threshold": 85,
        "max_retries": 3,
        "retry_profile": "standard",
        "max_concurrent_processing": 16,
    },
}


def apply_preset(name: str) -> dict:
    """Apply a named preset on top of the defaults. Raises KeyError for unknown presets."""
    preset = POLICY_PRESETS[name]
    reset_policy()
    return update_policy({k: v for k, v in preset.items() if k not in ("name", "description")})
