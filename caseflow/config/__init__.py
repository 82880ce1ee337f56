"""
CaseFlow — Configuration & Constants
Environment variables, feature flags, case states, field weights, extraction profiles.
"""
import os
from pathlib import Path

# ============================================================
# PATHS
# ============================================================
BASE_DIR = Path(__file__).parent.parent.parent
DATA_DIR = Path(os.environ.get("CASEFLOW_DATA_DIR", str(BASE_DIR / "data")))
UPLOAD_DIR = DATA_DIR / "uploads"
EXPORT_DIR = DATA_DIR / "exports"
DB_PATH = DATA_DIR / "db.json"
USE_REAL_API = bool(os.environ.get("ANTHROPIC_API_KEY"))

# ============================================================
# FEATURE FLAGS
# ============================================================
PERSIST_DATA = os.environ.get("CASEFLOW_PERSIST_DATA", "true").lower() == "true"
RESET_ON_START = os.environ.get("CASEFLOW_RESET_ON_START", "false").lower() == "true"
LOG_LEVEL = os.environ.get("CASEFLOW_LOG_LEVEL", "INFO")
LOG_FILE = os.environ.get("CASEFLOW_LOG_FILE")

# ============================================================
# AUTH
# ============================================================
JWT_SECRET = os.environ.get("JWT_SECRET", os.urandom(32).hex())
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = 12
AUTH_ENABLED = os.environ.get("CASEFLOW_AUTH_ENABLED", "false").lower() == "true"

ROLE_MATRIX = {
    "viewer":   {"title": "Viewer",        "level": 1},
    "reviewer": {"title": "AP Reviewer",   "level": 2},
    "admin":    {"title": "Administrator", "level": 3},
}
DEFAULT_ROLE = "reviewer"

# ============================================================
# CASE LIFECYCLE
# ============================================================
QUEUED = "queued"
PROCESSING = "processing"
NEEDS_REVIEW = "needs_review"
IN_REVIEW = "in_review"
AUTO_APPROVED = "auto_approved"
APPROVED = "approved"
REJECTED = "rejected"
FAILED = "failed"
EXPORTED = "exported"

CASE_STATES = [QUEUED, PROCESSING, NEEDS_REVIEW, IN_REVIEW, AUTO_APPROVED,
               APPROVED, REJECTED, FAILED, EXPORTED]
TERMINAL_STATES = (EXPORTED, REJECTED)

# States in which a mask edit sends the case back to extraction
REPROCESS_ON_MASK_STATES = (NEEDS_REVIEW, IN_REVIEW, FAILED)
# States in which a case-scoped mask is stored for the next extraction only
MASK_PENDING_STATES = (QUEUED, PROCESSING)

# ============================================================
# MASKS
# ============================================================
MASK_TYPES = ["logo", "watermark", "header", "footer", "custom"]

# ============================================================
# CONFIDENCE WEIGHTS & TIERS
# ============================================================
# Importance weight per extracted field. Fields starting with "line_item"
# share LINE_ITEM_WEIGHT; anything unlisted gets DEFAULT_FIELD_WEIGHT.
FIELD_WEIGHTS = {
    "total": 3.0,
    "invoice_number": 3.0,
    "vendor_name": 3.0,
    "invoice_date": 2.0,
    "subtotal": 2.0,
    "tax": 1.5,
    "due_date": 1.5,
    "po_reference": 1.0,
    "currency": 1.0,
}
LINE_ITEM_PREFIX = "line_item"
LINE_ITEM_WEIGHT = 1.0
DEFAULT_FIELD_WEIGHT = 1.0

CONFIDENCE_TIERS = {"high": 90, "medium": 70}

# Fields that must be present on every bill
REQUIRED_FIELDS = ["total", "invoice_number"]
RECOMMENDED_FIELDS = ["invoice_date", "vendor_name"]

# ============================================================
# EXTRACTION PROFILES
# ============================================================
# Open set: any identifier is accepted, these are the ones shipped with
# tuned speed factors (multiplier on the processing time estimate).
EXTRACTION_PROFILES = {
    "standard":      {"name": "Standard",      "speed_factor": 1.0, "description": "Balanced speed and accuracy"},
    "fast":          {"name": "Fast",          "speed_factor": 0.6, "description": "Single pass, no re-reads"},
    "high_accuracy": {"name": "High Accuracy", "speed_factor": 2.0, "description": "Multi-pass with re-reads on low-confidence zones"},
    "safe":          {"name": "Safe",          "speed_factor": 2.5, "description": "Conservative binarization, slowest, most tolerant of noisy scans"},
}

# Processing time estimate
ESTIMATE_BASE_MS = 5000
ESTIMATE_MS_PER_100KB = 1000
ESTIMATE_PDF_EXTRA_MS = 2000

# ============================================================
# ANTHROPIC
# ============================================================
OCR_MODEL = os.environ.get("CASEFLOW_OCR_MODEL", "claude-sonnet-4-20250514")
OCR_MAX_TOKENS = 4000

# ============================================================
# QUEUE
# ============================================================
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 200

# ============================================================
# VERSION
# ============================================================
VERSION = "1.0.0"
