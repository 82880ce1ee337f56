"""
CaseFlow — Case Lifecycle Engine

CaseEngine wires the pure record operations (cases, retry, export, masks) to
the shared CaseStore, the OCR engine and the exporter.

Locking discipline:
  - every read-modify-write of a case runs inside `store.locked(case_id)`
  - OCR and export calls run with no lock held
  - store-wide operations (masks, activity log, snapshots of other cases) are
    never called while a case lock is held

Processing flow:
  ingest_case() -> QUEUED
  claim_next_case() -> PROCESSING   (bounded by max_concurrent_processing)
  process_case() -> OCR (unlocked) -> AUTO_APPROVED / NEEDS_REVIEW / FAILED
  An outcome that arrives after the case left that PROCESSING attempt is
  discarded and logged.
"""
import asyncio
import copy
import threading
import uuid
from datetime import datetime

from caseflow import masks as mask_registry
from caseflow import review_queue
from caseflow.cases import (
    apply_extraction, approve_case, claim_for_processing, create_case, require_holder,
    decide_field as _decide_field, fail_extraction, open_for_review,
    reject_case, release_review, reprocess_for_masks, to_read_model,
    undo_decision as _undo_decision,
)
from caseflow.config import (
    APPROVED, AUTO_APPROVED, EXPORTED, IN_REVIEW, PROCESSING, QUEUED, REJECTED,
    REPROCESS_ON_MASK_STATES,
)
from caseflow.documents import validate_fields
from caseflow.errors import (
    AlreadyInReview, CaseNotFound, ExportFailure, ExtractionFailure, InvalidTransition, RetryExhausted,
)
from caseflow.export import abort_export, claim_export, complete_export
from caseflow.extraction import run_extraction
from caseflow.log import get_logger
from caseflow.policy import get_policy
from caseflow.retry import clear_outstanding, retry_case as _retry_case
from caseflow.triage import evaluate

logger = get_logger(__name__)

# A case-scoped mask cannot be added once the outcome is settled
MASK_LOCKED_STATES = (AUTO_APPROVED, APPROVED, REJECTED, EXPORTED)


class CaseEngine:
    """Shared case lifecycle engine. Safe to call from many threads and tasks."""

    def __init__(self, store, ocr_engine, exporter):
        self.store = store
        self.ocr_engine = ocr_engine
        self.exporter = exporter
        self._claim_lock = threading.Lock()
        if getattr(store, "path", None):
            self.recover_stranded()

    # ============================================================
    # ACTIVITY
    # ============================================================
    def _activity(self, action: str, case_id: str, by: str, **extra):
        self.store.log_activity({
            "id": str(uuid.uuid4())[:8], "action": action, "caseId": case_id,
            "by": by, "timestamp": datetime.now().isoformat(), **extra,
        })

    # ============================================================
    # RECOVERY
    # ============================================================
    def recover_stranded(self, by: str = "recovery") -> list:
        """Resolve work a previous process left in flight. PROCESSING cases fail
        as abandoned (and can be retried); unfinished export claims are dropped
        so export_case can be called again. Returns the ids touched."""
        touched = []
        for case_id in self.store.case_ids():
            try:
                with self.store.locked(case_id) as case:
                    abandoned = case["state"] == PROCESSING
                    if abandoned:
                        fail_extraction(case, "abandoned", by)
                        clear_outstanding(case)
                    export_dropped = bool(case.get("exportPending")) and not case.get("exportRef")
                    if export_dropped:
                        abort_export(case, "abandoned: export did not complete")
            except CaseNotFound:
                continue
            if abandoned:
                self._activity("extraction_failed", case_id, by, error="abandoned")
            if abandoned or export_dropped:
                touched.append(case_id)
        if touched:
            logger.warning(f"[Engine] Recovered {len(touched)} case(s) left in flight: {', '.join(touched)}")
        return touched

    # ============================================================
    # INGESTION & PROCESSING
    # ============================================================
    def ingest_case(self, document: dict, vendor_id: str = None, vendor_name: str = None,
                    created_by: str = "ingestion", profile: str = None) -> dict:
        """Create a QUEUED case for a stored document."""
        case = create_case(vendor_id=vendor_id, vendor_name=vendor_name, document=document,
                           created_by=created_by, profile=profile)
        self.store.insert_case(case)
        self._activity("case_ingested", case["id"], created_by,
                       fileName=case["document"].get("fileName"), vendorId=vendor_id)
        logger.info(f"[Engine] {case['id']} queued ({case['document'].get('fileName')}, vendor={vendor_id})")
        return to_read_model(case)

    def claim_next_case(self, by: str = "worker"):
        """Move the oldest QUEUED case to PROCESSING if capacity allows.
        Returns the case id, or None when idle or at capacity."""
        with self._claim_lock:
            cases = self.store.list_cases()
            capacity = get_policy()["max_concurrent_processing"]
            if sum(1 for c in cases if c["state"] == PROCESSING) >= capacity:
                return None
            queued = sorted((c for c in cases if c["state"] == QUEUED),
                            key=lambda c: (c["createdAt"], c["id"]))
            for candidate in queued:
                try:
                    with self.store.locked(candidate["id"]) as case:
                        if case["state"] != QUEUED:
                            continue
                        claim_for_processing(case, by)
                except CaseNotFound:
                    continue
                self._activity("case_claimed", candidate["id"], by)
                return candidate["id"]
        return None

    async def process_case(self, case_id: str, by: str = "ocr") -> dict:
        """Run one extraction for a PROCESSING case and record the outcome."""
        with self.store.locked(case_id) as case:
            if case["state"] != PROCESSING:
                raise InvalidTransition(case_id, case["state"], PROCESSING, [])
            attempt = case["extractionAttempt"]
            snapshot = copy.deepcopy(case)

        masks = mask_registry.effective_masks(self.store, snapshot)
        policy = get_policy()
        try:
            normalized = await run_extraction(self.ocr_engine, snapshot["document"], masks,
                                              snapshot["profile"], policy["extraction_timeout_s"])
        except ExtractionFailure as e:
            return self._record_failure(case_id, attempt, e, by)

        try:
            hard, soft = validate_fields(normalized["fields"], policy)
            engine_flags = normalized["validationFlags"]
            flags = engine_flags + [f for f in hard if f not in engine_flags]
            evaluation = evaluate(normalized["fields"], flags, policy["auto_approve_threshold"])
        except Exception as e:
            logger.exception(f"[Engine] Could not evaluate extraction for {case_id}")
            return self._record_failure(case_id, attempt, ExtractionFailure(f"{type(e).__name__}: {e}"), by)
        outcome = {"fields": normalized["fields"], "validationFlags": flags,
                   "engineFlags": engine_flags, "hardFlags": hard, "softFlags": soft}

        with self.store.locked(case_id) as case:
            if case["state"] != PROCESSING or case["extractionAttempt"] != attempt:
                logger.warning(f"[Engine] Discarding stale extraction for {case_id} "
                               f"(attempt {attempt}, case now {case['state']})")
                return to_read_model(case)
            apply_extraction(case, outcome, evaluation, by)
            clear_outstanding(case)
            result = to_read_model(case)
        self._activity("extraction_completed", case_id, by, lane=evaluation["lane"],
                       confidence=evaluation["confidence"], flags=flags)
        logger.info(f"[Engine] {case_id} -> {result['state']} "
                    f"(confidence {evaluation['confidence']}%, {len(flags)} flags)")
        return result

    def _record_failure(self, case_id: str, attempt: int, error: ExtractionFailure, by: str) -> dict:
        with self.store.locked(case_id) as case:
            if case["state"] != PROCESSING or case["extractionAttempt"] != attempt:
                logger.warning(f"[Engine] Discarding stale extraction failure for {case_id}: {error.message}")
                return to_read_model(case)
            fail_extraction(case, error.details.get("reason", error.message), by)
            clear_outstanding(case)
            result = to_read_model(case)
        self._activity("extraction_failed", case_id, by, error=error.message)
        logger.error(f"[Engine] {case_id} extraction failed: {error.message}")
        return result

    async def run_pending(self, by: str = "worker") -> list:
        """Process QUEUED cases in batches of at most max_concurrent_processing
        until none are left. Returns the read models of every processed case."""
        done = []
        while True:
            batch = []
            while True:
                case_id = self.claim_next_case(by)
                if case_id is None:
                    break
                batch.append(case_id)
            if not batch:
                return done
            done.extend(await asyncio.gather(*(self.process_case(cid) for cid in batch)))

    # ============================================================
    # REVIEW
    # ============================================================
    def open_case(self, case_id: str, reviewer: str) -> dict:
        with self.store.locked(case_id) as case:
            open_for_review(case, reviewer)
            result = to_read_model(case)
        self._activity("review_opened", case_id, reviewer)
        return result

    def release_case(self, case_id: str, reviewer: str) -> dict:
        with self.store.locked(case_id) as case:
            release_review(case, reviewer)
            result = to_read_model(case)
        self._activity("review_released", case_id, reviewer)
        return result

    def decide_field(self, case_id: str, reviewer: str, field: str, chosen_value,
                     source: str = "manual") -> dict:
        with self.store.locked(case_id) as case:
            decision = _decide_field(case, reviewer, field, chosen_value, source)
            result = to_read_model(case)
        self._activity("field_decided", case_id, reviewer, field=decision["field"],
                       originalValue=decision["originalValue"], chosenValue=decision["chosenValue"])
        return result

    def undo_decision(self, case_id: str, reviewer: str) -> dict:
        with self.store.locked(case_id) as case:
            removed = _undo_decision(case, reviewer)
            result = to_read_model(case)
        self._activity("decision_undone", case_id, reviewer, field=removed["field"])
        return result

    def approve(self, case_id: str, reviewer: str, note: str = "") -> dict:
        with self.store.locked(case_id) as case:
            approve_case(case, reviewer, note)
            result = to_read_model(case)
        self._activity("case_approved", case_id, reviewer, confidence=result["confidence"])
        logger.info(f"[Engine] {case_id} approved by {reviewer}")
        return result

    def reject(self, case_id: str, reviewer: str, reason: str = "") -> dict:
        with self.store.locked(case_id) as case:
            reject_case(case, reviewer, reason)
            result = to_read_model(case)
        self._activity("case_rejected", case_id, reviewer, reason=reason)
        logger.info(f"[Engine] {case_id} rejected by {reviewer}")
        return result

    # ============================================================
    # MASKS
    # ============================================================
    @staticmethod
    def _check_mask_editor(case: dict, by: str):
        """A case held in review only takes mask edits from its reviewer."""
        if case["state"] == IN_REVIEW:
            require_holder(case, by)

    async def _reextract_for_mask(self, case_id: str, by: str, mask_id: str, reextract: bool) -> bool:
        with self.store.locked(case_id) as case:
            if case["state"] not in REPROCESS_ON_MASK_STATES:
                return False
            self._check_mask_editor(case, by)
            reprocess_for_masks(case, by, mask_id)
        self._activity("mask_reprocess", case_id, by, maskId=mask_id)
        if reextract:
            await self.process_case(case_id)
        return True

    async def add_mask(self, case_id: str, mask_type: str, region, vendor_specific: bool = False,
                       by: str = "system", reextract: bool = True) -> dict:
        """Register a mask from a case. Cases waiting on review (or failed) go back
        to PROCESSING; QUEUED / PROCESSING cases pick it up on the next extraction.
        A case in review only accepts masks from the reviewer holding it."""
        case = self.store.snapshot(case_id)
        if case["state"] in MASK_LOCKED_STATES and not vendor_specific:
            raise InvalidTransition(case_id, case["state"], PROCESSING, [])
        self._check_mask_editor(case, by)
        mask_id = mask_registry.add_mask(self.store, case, mask_type, region, vendor_specific, by)
        try:
            reprocessing = await self._reextract_for_mask(case_id, by, mask_id, reextract)
        except AlreadyInReview:
            # another reviewer took the case after the check above
            mask_registry.remove_mask(self.store, mask_id)
            raise
        self._activity("mask_added", case_id, by, maskId=mask_id, vendorSpecific=bool(vendor_specific))
        return {"maskId": mask_id, "caseId": case_id, "reprocessing": reprocessing,
                "case": self.get_case(case_id)}

    async def remove_mask(self, mask_id: str, by: str = "system", reextract: bool = True) -> dict:
        """Idempotent. Removing an unknown mask succeeds and changes nothing."""
        mask = self.store.find_mask(mask_id)
        if mask and self.store.has_case(mask["caseId"]):
            self._check_mask_editor(self.store.snapshot(mask["caseId"]), by)
        removed = mask_registry.remove_mask(self.store, mask_id)
        if not removed:
            return {"maskId": mask_id, "removed": False, "reprocessing": False}
        case_id = removed["caseId"]
        reprocessing = False
        if self.store.has_case(case_id):
            try:
                reprocessing = await self._reextract_for_mask(case_id, by, mask_id, reextract)
            except AlreadyInReview:
                self._restore_mask(removed)
                raise
        self._activity("mask_removed", case_id, by, maskId=mask_id)
        return {"maskId": mask_id, "removed": True, "caseId": case_id, "reprocessing": reprocessing}

    def _restore_mask(self, mask: dict):
        if mask["vendorSpecific"]:
            self.store.add_vendor_mask(mask["vendorId"], mask)
        else:
            self.store.add_case_mask(mask["caseId"], mask)

    def effective_masks(self, case_id: str) -> list:
        return mask_registry.effective_masks(self.store, self.store.snapshot(case_id))

    # ============================================================
    # RETRY
    # ============================================================
    def retry_case(self, case_id: str, profile: str = None, by: str = "system") -> dict:
        try:
            with self.store.locked(case_id) as case:
                result = _retry_case(case, profile, by)
        except RetryExhausted as e:
            self._activity("retry_exhausted", case_id, by, retryCount=e.details["retryCount"])
            raise
        self._activity("retry_scheduled", case_id, by, profile=result["profile"],
                       retryCount=result["retryCount"])
        return result

    # ============================================================
    # EXPORT
    # ============================================================
    async def export_case(self, case_id: str, by: str = "export") -> dict:
        """Idempotent export. A second call returns the stored ref without
        reaching the exporter."""
        with self.store.locked(case_id) as case:
            existing = claim_export(case)
            if existing:
                return {"caseId": case_id, "exportRef": existing, "alreadyExported": True}
            snapshot = to_read_model(case)

        try:
            ref = await self.exporter.export(snapshot)
        except ExportFailure as e:
            with self.store.locked(case_id) as case:
                abort_export(case, e.message)
            raise
        except Exception as e:
            with self.store.locked(case_id) as case:
                abort_export(case, str(e))
            raise ExportFailure(case_id, f"{type(e).__name__}: {e}")

        with self.store.locked(case_id) as case:
            complete_export(case, ref, by)
        self._activity("case_exported", case_id, by, exportRef=ref)
        return {"caseId": case_id, "exportRef": ref, "alreadyExported": False}

    # ============================================================
    # READ SIDE
    # ============================================================
    def get_case(self, case_id: str) -> dict:
        return to_read_model(self.store.snapshot(case_id))

    def case_history(self, case_id: str) -> list:
        return self.store.snapshot(case_id)["statusHistory"]

    def case_activity(self, case_id: str) -> list:
        if not self.store.has_case(case_id):
            raise CaseNotFound(case_id)
        return self.store.activity(case_id)

    def query_queue(self, **query) -> dict:
        return review_queue.query_queue(self.store.list_cases(), **query)

    def queue_stats(self) -> dict:
        return review_queue.compute_queue_stats(self.store.list_cases())

    def next_case(self):
        return review_queue.next_case(self.store.list_cases())
