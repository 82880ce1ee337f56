"""
CaseFlow — Export Gate

Idempotent boundary between approved cases and the downstream accounting system.

  claim_export()     under the case lock: returns the existing ref, or marks the
                     case exportPending so no second caller reaches the exporter
  exporter.export()  no lock held
  complete_export()  under the case lock: store ref, APPROVED/AUTO_APPROVED -> EXPORTED
  abort_export()     under the case lock: clear the claim, state unchanged

Exporter contract: `async export(snapshot) -> export_ref`, raising ExportFailure.
"""
import asyncio
import json
import uuid
from datetime import datetime
from pathlib import Path

from caseflow.cases import transition_case
from caseflow.config import APPROVED, AUTO_APPROVED, EXPORTED
from caseflow.errors import ExportFailure, ExportInProgress, InvalidTransition
from caseflow.log import get_logger

logger = get_logger(__name__)

EXPORTABLE_STATES = (AUTO_APPROVED, APPROVED)


def _new_ref() -> str:
    return "EXP-" + str(uuid.uuid4())[:12].upper()


# ============================================================
# EXPORTERS
# ============================================================
class InMemoryExporter:
    """Keeps exported snapshots in a dict. `fail_with` makes the next calls raise."""

    def __init__(self, fail_with: str = None, delay_s: float = 0.0):
        self.exported = {}
        self.calls = 0
        self.fail_with = fail_with
        self.delay_s = delay_s

    async def export(self, snapshot: dict) -> str:
        self.calls += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.fail_with:
            raise ExportFailure(snapshot["id"], self.fail_with)
        ref = _new_ref()
        self.exported[ref] = snapshot
        return ref


class JsonFileExporter:
    """Writes one JSON file per exported case into `directory`."""

    def __init__(self, directory):
        self.directory = Path(directory)

    def _write(self, path: Path, body: dict):
        self.directory.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(body, f, indent=2, default=str)

    async def export(self, snapshot: dict) -> str:
        ref = _new_ref()
        body = {
            "exportRef": ref,
            "exportedAt": datetime.now().isoformat(),
            "caseId": snapshot["id"],
            "vendorId": snapshot.get("vendorId"),
            "vendorName": snapshot.get("vendorName"),
            "confidence": snapshot.get("confidence"),
            "fields": {k: v.get("value") for k, v in (snapshot.get("effectiveFields") or snapshot.get("fields") or {}).items()},
            "approvedBy": snapshot.get("approvedBy") or "auto",
        }
        path = self.directory / f"{ref}.json"
        try:
            await asyncio.to_thread(self._write, path, body)
        except OSError as e:
            raise ExportFailure(snapshot["id"], f"could not write {path}: {e}")
        return ref


# ============================================================
# GATE
# ============================================================
def claim_export(case: dict):
    """Returns the existing exportRef if the case was already exported, otherwise
    claims the export and returns None."""
    if case.get("exportRef"):
        return case["exportRef"]
    if case["state"] not in EXPORTABLE_STATES:
        raise InvalidTransition(case["id"], case["state"], EXPORTED, [])
    if case.get("exportPending"):
        raise ExportInProgress(case["id"])
    case["exportPending"] = True
    return None


def complete_export(case: dict, export_ref: str, by: str = "export") -> dict:
    event = transition_case(case, EXPORTED, by, f"Exported as {export_ref}")
    case["exportRef"] = export_ref
    case["exportPending"] = False
    case["exportedAt"] = event["at"]
    logger.info(f"[Export] {case['id']} exported as {export_ref}")
    return event


def abort_export(case: dict, error: str):
    case["exportPending"] = False
    case["lastError"] = error
    logger.warning(f"[Export] {case['id']} export failed: {error}")
