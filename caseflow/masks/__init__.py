"""
CaseFlow — Mask Registry

Noise-exclusion regions (logos, watermarks, repeated headers/footers) that the
OCR engine skips. A mask belongs either to one case or, when vendor-specific,
to the vendor: vendor masks apply to every future case from that vendor.

Masks never rewrite a stored extraction; they only shape the next one. The
workflow layer decides whether a mask edit sends the case back to processing.
"""

import math
import uuid
from datetime import datetime

from caseflow.config import MASK_TYPES
from caseflow.errors import InvalidMaskType, InvalidRegion, MissingVendor
from caseflow.log import get_logger
from caseflow.policy import get_policy

logger = get_logger(__name__)

REGION_KEYS = ("x", "y", "width", "height")


def validate_region(region, bounds: tuple = None) -> dict:
    """Check geometry and return a clean {x, y, width, height} dict of floats.

    `bounds` is (document_width, document_height); defaults to the policy bounds.
    """
    if not isinstance(region, dict):
        raise InvalidRegion("region must be an object with x, y, width, height", region)
    missing = [k for k in REGION_KEYS if k not in region]
    if missing:
        raise InvalidRegion(f"missing {', '.join(missing)}", region)

    clean = {}
    for k in REGION_KEYS:
        v = region[k]
        if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
            raise InvalidRegion(f"{k} must be a finite number", region)
        clean[k] = float(v)

    if clean["x"] < 0 or clean["y"] < 0:
        raise InvalidRegion("x and y must be non-negative", region)
    if clean["width"] <= 0 or clean["height"] <= 0:
        raise InvalidRegion("width and height must be positive", region)

    if bounds is None:
        policy = get_policy()
        bounds = (policy["document_width"], policy["document_height"])
    max_w, max_h = bounds
    if clean["x"] + clean["width"] > max_w or clean["y"] + clean["height"] > max_h:
        raise InvalidRegion(f"region exceeds document bounds {max_w}x{max_h}", region)
    return clean


def build_mask(case: dict, mask_type: str, region, vendor_specific: bool = False,
               by: str = "system", bounds: tuple = None) -> dict:
    """Validate input and build a mask record for `case`. Does not store it."""
    mtype = (mask_type or "").lower().strip()
    if mtype not in MASK_TYPES:
        raise InvalidMaskType(mask_type, MASK_TYPES)
    clean = validate_region(region, bounds)

    vendor_id = case.get("vendorId") if vendor_specific else None
    if vendor_specific and not vendor_id:
        raise MissingVendor(case["id"])

    return {
        "id": "MSK-" + str(uuid.uuid4())[:8].upper(),
        "type": mtype,
        "region": clean,
        "vendorSpecific": bool(vendor_specific),
        "caseId": case["id"],
        "vendorId": vendor_id,
        "createdBy": by,
        "createdAt": datetime.now().isoformat(),
    }


def add_mask(store, case: dict, mask_type: str, region, vendor_specific: bool = False,
             by: str = "system", bounds: tuple = None) -> str:
    """Register a mask. Vendor-specific masks go to the vendor table (and so also
    reach the originating case through its vendor). Returns the mask id."""
    mask = build_mask(case, mask_type, region, vendor_specific, by, bounds)
    if mask["vendorSpecific"]:
        store.add_vendor_mask(mask["vendorId"], mask)
    else:
        store.add_case_mask(case["id"], mask)
    logger.info(f"[Masks] {mask['id']} ({mask['type']}) added to "
                f"{'vendor ' + mask['vendorId'] if mask['vendorSpecific'] else 'case ' + case['id']} by {by}")
    return mask["id"]


def remove_mask(store, mask_id: str):
    """Idempotent removal: an unknown id is a successful no-op. Returns the removed mask or None."""
    removed = store.remove_mask(mask_id)
    if removed:
        logger.info(f"[Masks] {mask_id} removed")
    return removed


def effective_masks(store, case: dict) -> list:
    """Case masks followed by the vendor's masks, each in insertion order."""
    seen = set()
    out = []
    for m in store.case_masks(case["id"]) + store.vendor_masks(case.get("vendorId")):
        if m["id"] in seen:
            continue
        seen.add(m["id"])
        out.append(m)
    return out
