"""
CaseFlow — Case Lifecycle API
FastAPI routing layer over CaseEngine. All business logic lives in the
sub-packages; this file maps HTTP to engine calls and errors to status codes.
"""
import json
import os
import uuid
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from caseflow.auth import (
    actor_name, authenticate, create_jwt, get_actor, get_current_user, register_user, require_role,
)
from caseflow.config import (
    DB_PATH, DEFAULT_PAGE_SIZE, EXPORT_DIR, EXTRACTION_PROFILES, LOG_FILE, LOG_LEVEL,
    PERSIST_DATA, RESET_ON_START, UPLOAD_DIR, USE_REAL_API, VERSION,
)
from caseflow.db import CaseStore
from caseflow.errors import (
    CaseFlowError, CaseNotFound, ExportFailure, ExportInProgress, ExtractionFailure,
    InvalidMaskType, InvalidQuery, InvalidRegion, InvalidTransition, AlreadyInReview,
    MissingVendor, RetryExhausted, RetryNotAllowed,
)
from caseflow.export import JsonFileExporter
from caseflow.extraction import ClaudeOcrEngine, MockOcrEngine
from caseflow.log import get_logger, setup_logging
from caseflow.policy import POLICY_PRESETS, apply_preset, get_policy, reset_policy, update_policy
from caseflow.workflow import CaseEngine

setup_logging(LOG_LEVEL, LOG_FILE)
logger = get_logger("server")

UPLOAD_DIR.mkdir(parents=True, exist_ok=True)

store = CaseStore(DB_PATH if PERSIST_DATA else None)
if RESET_ON_START:
    store.reset()
engine = CaseEngine(store, ClaudeOcrEngine() if USE_REAL_API else MockOcrEngine(), JsonFileExporter(EXPORT_DIR))

app = FastAPI(title="CaseFlow Case Lifecycle Engine", version=VERSION)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])

VIEWER, REVIEWER, ADMIN = 1, 2, 3
MIME_BY_EXT = {".pdf": "application/pdf", ".jpg": "image/jpeg", ".jpeg": "image/jpeg",
               ".png": "image/png", ".webp": "image/webp", ".tiff": "image/tiff"}

# ============================================================
# ERRORS
# ============================================================
ERROR_STATUS = [
    (CaseNotFound, 404),
    (InvalidTransition, 409),
    (AlreadyInReview, 409),
    (RetryNotAllowed, 409),
    (RetryExhausted, 409),
    (ExportInProgress, 409),
    (InvalidRegion, 422),
    (InvalidMaskType, 422),
    (MissingVendor, 422),
    (InvalidQuery, 422),
    (ExtractionFailure, 502),
    (ExportFailure, 502),
]


def status_for(error: CaseFlowError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(error, cls):
            return status
    return 400


@app.exception_handler(CaseFlowError)
async def caseflow_error_handler(request: Request, exc: CaseFlowError):
    status = status_for(exc)
    if status >= 500:
        logger.error(f"[API] {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=status, content=exc.to_dict())


# ============================================================
# HEALTH & AUTH
# ============================================================
@app.get("/api/health")
async def health():
    return {"status": "ok", "product": "CaseFlow", "version": VERSION,
            "ocr": "claude" if USE_REAL_API else "mock_mode", "persist": PERSIST_DATA}


@app.post("/api/auth/register")
async def register(email: str = Form(...), password: str = Form(...), name: str = Form(""),
                   role: str = Form("reviewer")):
    user = register_user(store, email, password, name, role)
    return {"user": user, "token": create_jwt(user)}


@app.post("/api/auth/login")
async def login(email: str = Form(...), password: str = Form(...)):
    user = authenticate(store, email, password)
    return {"user": user, "token": create_jwt(user)}


@app.get("/api/auth/me")
async def me(user: dict = Depends(get_current_user), actor: str = Depends(get_actor)):
    return {**user, "actor": actor}


# ============================================================
# INGESTION & PROCESSING
# ============================================================
@app.post("/api/cases")
async def ingest(file: UploadFile = File(...), vendor_id: str = Form(""), vendor_name: str = Form(""),
                 profile: str = Form(""), process: bool = Form(False),
                 user: dict = Depends(require_role(REVIEWER))):
    ct = file.content_type or "application/octet-stream"
    ext = Path(file.filename or "doc").suffix.lower()
    if ct == "application/octet-stream" and ext in MIME_BY_EXT:
        ct = MIME_BY_EXT[ext]
    safe_name = Path(file.filename or "document").name
    fid = str(uuid.uuid4())[:8].upper()
    fp = UPLOAD_DIR / f"{fid}_{safe_name}"
    body = await file.read()
    with open(fp, "wb") as f:
        f.write(body)

    document = {"uri": str(fp), "fileName": safe_name, "mimeType": ct, "sizeBytes": len(body)}
    case = engine.ingest_case(document, vendor_id=vendor_id.strip() or None,
                              vendor_name=vendor_name.strip() or None,
                              created_by=actor_name(user), profile=profile.strip() or None)
    if process:
        await engine.run_pending()
        case = engine.get_case(case["id"])
    return {"success": True, "case": case}


@app.post("/api/process")
async def process_pending(user: dict = Depends(require_role(REVIEWER))):
    processed = await engine.run_pending()
    return {"success": True, "processed": len(processed), "cases": processed}


# ============================================================
# REVIEW QUEUE
# ============================================================
@app.get("/api/queue")
async def queue(state: str = "needs_review", vendor: Optional[str] = None,
                min_confidence: Optional[float] = None, max_confidence: Optional[float] = None,
                has_flags: Optional[bool] = None, created_from: Optional[str] = None,
                created_to: Optional[str] = None, reviewer: Optional[str] = None,
                sort: str = "priority", order: str = "asc", page: int = 1,
                per_page: int = DEFAULT_PAGE_SIZE, user: dict = Depends(require_role(VIEWER))):
    confidence_range = None
    if min_confidence is not None or max_confidence is not None:
        confidence_range = (min_confidence, max_confidence)
    return engine.query_queue(state=state, vendor=vendor, confidence_range=confidence_range,
                              has_flags=has_flags, created_from=created_from, created_to=created_to,
                              reviewer=reviewer, sort=sort, order=order, page=page, per_page=per_page)


@app.get("/api/queue/stats")
async def queue_stats(user: dict = Depends(require_role(VIEWER))):
    return engine.queue_stats()


@app.get("/api/queue/next")
async def queue_next(user: dict = Depends(require_role(VIEWER))):
    return {"next": engine.next_case()}


# ============================================================
# CASES
# ============================================================
@app.get("/api/cases/{cid}")
async def get_case(cid: str, user: dict = Depends(require_role(VIEWER))):
    return engine.get_case(cid)


@app.get("/api/cases/{cid}/history")
async def case_history(cid: str, user: dict = Depends(require_role(VIEWER))):
    return {"caseId": cid, "history": engine.case_history(cid)}


@app.get("/api/cases/{cid}/activity")
async def case_activity(cid: str, user: dict = Depends(require_role(VIEWER))):
    return {"caseId": cid, "activity": engine.case_activity(cid)}


@app.post("/api/cases/{cid}/open")
async def open_case(cid: str, user: dict = Depends(require_role(REVIEWER))):
    return {"success": True, "case": engine.open_case(cid, actor_name(user))}


@app.post("/api/cases/{cid}/release")
async def release_case(cid: str, user: dict = Depends(require_role(REVIEWER))):
    return {"success": True, "case": engine.release_case(cid, actor_name(user))}


@app.post("/api/cases/{cid}/decisions")
async def decide(cid: str, field: str = Form(...), value: str = Form(...), source: str = Form("manual"),
                 user: dict = Depends(require_role(REVIEWER))):
    # Numbers and null arrive JSON encoded, anything else is taken as text
    try:
        chosen = json.loads(value)
    except json.JSONDecodeError:
        chosen = value
    return {"success": True, "case": engine.decide_field(cid, actor_name(user), field, chosen, source)}


@app.post("/api/cases/{cid}/decisions/undo")
async def undo(cid: str, user: dict = Depends(require_role(REVIEWER))):
    return {"success": True, "case": engine.undo_decision(cid, actor_name(user))}


@app.post("/api/cases/{cid}/approve")
async def approve(cid: str, note: str = Form(""), user: dict = Depends(require_role(REVIEWER))):
    return {"success": True, "case": engine.approve(cid, actor_name(user), note)}


@app.post("/api/cases/{cid}/reject")
async def reject(cid: str, reason: str = Form(""), user: dict = Depends(require_role(REVIEWER))):
    return {"success": True, "case": engine.reject(cid, actor_name(user), reason)}


@app.post("/api/cases/{cid}/retry")
async def retry(cid: str, profile: str = Form(""), user: dict = Depends(require_role(REVIEWER))):
    result = engine.retry_case(cid, profile.strip() or None, actor_name(user))
    return {"success": True, **result}


@app.post("/api/cases/{cid}/export")
async def export_case(cid: str, user: dict = Depends(require_role(REVIEWER))):
    return {"success": True, **(await engine.export_case(cid, actor_name(user)))}


# ============================================================
# MASKS
# ============================================================
@app.get("/api/cases/{cid}/masks")
async def list_masks(cid: str, user: dict = Depends(require_role(VIEWER))):
    return {"caseId": cid, "masks": engine.effective_masks(cid)}


@app.post("/api/cases/{cid}/masks")
async def add_mask(cid: str, mask_type: str = Form(..., alias="type"), x: float = Form(...), y: float = Form(...),
                   width: float = Form(...), height: float = Form(...), vendor_specific: bool = Form(False),
                   user: dict = Depends(require_role(REVIEWER))):
    region = {"x": x, "y": y, "width": width, "height": height}
    result = await engine.add_mask(cid, mask_type, region, vendor_specific, actor_name(user))
    return {"success": True, **result}


@app.delete("/api/masks/{mid}")
async def remove_mask(mid: str, user: dict = Depends(require_role(REVIEWER))):
    return {"success": True, **(await engine.remove_mask(mid, actor_name(user)))}


# ============================================================
# POLICY
# ============================================================
@app.get("/api/policy")
async def policy(user: dict = Depends(require_role(VIEWER))):
    return {"policy": get_policy(), "presets": {k: v["name"] for k, v in POLICY_PRESETS.items()},
            "profiles": EXTRACTION_PROFILES}


@app.post("/api/policy")
async def set_policy(updates: str = Form(...), user: dict = Depends(require_role(ADMIN))):
    try:
        parsed = json.loads(updates)
    except json.JSONDecodeError:
        raise HTTPException(422, "updates must be a JSON object")
    if not isinstance(parsed, dict):
        raise HTTPException(422, "updates must be a JSON object")
    return {"success": True, "policy": update_policy(parsed)}


@app.post("/api/policy/preset/{name}")
async def set_preset(name: str, user: dict = Depends(require_role(ADMIN))):
    if name not in POLICY_PRESETS:
        raise HTTPException(404, f"Unknown preset '{name}'")
    return {"success": True, "policy": apply_preset(name)}


@app.post("/api/reset")
async def reset(user: dict = Depends(require_role(ADMIN))):
    store.reset()
    reset_policy()
    for fp in UPLOAD_DIR.iterdir():
        if fp.is_file():
            fp.unlink()
    logger.info(f"[API] Store reset by {actor_name(user)}")
    return {"success": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    logger.info(f"Starting CaseFlow v{VERSION} on port {port}")
    logger.info(f"OCR engine: {'Claude' if USE_REAL_API else 'Mock Mode'}")
    uvicorn.run(app, host="0.0.0.0", port=port)
