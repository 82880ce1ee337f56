"""
CaseFlow — Case Store
In-process shared store for cases, masks, the activity log and users, with
per-case exclusive locks and optional JSON file persistence.

Every read-modify-write of a case happens inside `store.locked(case_id)`.
The lock protects the record only; callers release it before any OCR or
export I/O.
"""
import copy
import fcntl
import json
import os
import threading
from contextlib import contextmanager
from pathlib import Path

from caseflow.errors import CaseNotFound
from caseflow.log import get_logger

logger = get_logger(__name__)

# ============================================================
# EMPTY DB SCHEMA
# ============================================================
EMPTY_DB = {
    "cases": {},          # case_id -> case record
    "case_masks": {},     # case_id -> [mask, ...] (insertion order)
    "vendor_masks": {},   # vendor_id -> [mask, ...] (insertion order)
    "activity_log": [],
    "users": [],
}


def _fresh_db():
    """Return a fresh empty database."""
    return json.loads(json.dumps(EMPTY_DB))


class CaseStore:
    """Shared mutable store. `path=None` keeps everything in memory."""

    def __init__(self, path=None):
        self.path = Path(path) if path else None
        self._data = _fresh_db()
        self._registry_lock = threading.Lock()   # guards lock creation and collection-level edits
        self._case_locks = {}
        if self.path:
            self.load()

    # ============================================================
    # LOCKING
    # ============================================================
    def _lock_for(self, case_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._case_locks.get(case_id)
            if lock is None:
                lock = threading.RLock()
                self._case_locks[case_id] = lock
            return lock

    @contextmanager
    def locked(self, case_id: str):
        """Exclusive access to the live case record. Raises CaseNotFound.
        The store is written to disk after the lock is released."""
        lock = self._lock_for(case_id)
        try:
            with lock:
                case = self._data["cases"].get(case_id)
                if case is None:
                    raise CaseNotFound(case_id)
                yield case
        finally:
            self.save()

    # ============================================================
    # CASES
    # ============================================================
    def insert_case(self, case: dict) -> dict:
        with self._registry_lock:
            if case["id"] in self._data["cases"]:
                raise ValueError(f"Duplicate case id: {case['id']}")
            self._data["cases"][case["id"]] = case
        self.save()
        return copy.deepcopy(case)

    def has_case(self, case_id: str) -> bool:
        return case_id in self._data["cases"]

    def snapshot(self, case_id: str) -> dict:
        """Deep copy of one case, taken under its lock."""
        with self._lock_for(case_id):
            case = self._data["cases"].get(case_id)
            if case is None:
                raise CaseNotFound(case_id)
            return copy.deepcopy(case)

    def list_cases(self) -> list:
        """Deep copies of every case, each read under its own lock."""
        with self._registry_lock:
            ids = list(self._data["cases"].keys())
        out = []
        for cid in ids:
            try:
                out.append(self.snapshot(cid))
            except CaseNotFound:
                continue
        return out

    def case_ids(self) -> list:
        with self._registry_lock:
            return list(self._data["cases"].keys())

    # ============================================================
    # MASKS
    # ============================================================
    def add_case_mask(self, case_id: str, mask: dict):
        with self._registry_lock:
            self._data["case_masks"].setdefault(case_id, []).append(mask)
        self.save()

    def add_vendor_mask(self, vendor_id: str, mask: dict):
        with self._registry_lock:
            self._data["vendor_masks"].setdefault(vendor_id, []).append(mask)
        self.save()

    def remove_mask(self, mask_id: str):
        """Remove a mask from whichever table holds it. Returns the mask or None."""
        removed = None
        with self._registry_lock:
            for table in ("case_masks", "vendor_masks"):
                for key, masks in self._data[table].items():
                    for i, m in enumerate(masks):
                        if m["id"] == mask_id:
                            removed = masks.pop(i)
                            break
                    if removed:
                        break
                if removed:
                    break
        if removed:
            self.save()
        return copy.deepcopy(removed) if removed else None

    def find_mask(self, mask_id: str):
        with self._registry_lock:
            for table in ("case_masks", "vendor_masks"):
                for masks in self._data[table].values():
                    for m in masks:
                        if m["id"] == mask_id:
                            return copy.deepcopy(m)
        return None

    def case_masks(self, case_id: str) -> list:
        with self._registry_lock:
            return copy.deepcopy(self._data["case_masks"].get(case_id, []))

    def vendor_masks(self, vendor_id: str) -> list:
        if not vendor_id:
            return []
        with self._registry_lock:
            return copy.deepcopy(self._data["vendor_masks"].get(vendor_id, []))

    # ============================================================
    # ACTIVITY LOG
    # ============================================================
    def log_activity(self, entry: dict):
        with self._registry_lock:
            self._data["activity_log"].append(dict(entry))

    def activity(self, case_id: str = None) -> list:
        with self._registry_lock:
            entries = self._data["activity_log"]
            if case_id:
                entries = [e for e in entries if e.get("caseId") == case_id]
            return copy.deepcopy(entries)

    # ============================================================
    # USERS
    # ============================================================
    def get_users(self) -> list:
        with self._registry_lock:
            return copy.deepcopy(self._data["users"])

    def add_user(self, user: dict):
        with self._registry_lock:
            self._data["users"].append(dict(user))
        self.save()

    # ============================================================
    # PERSISTENCE
    # ============================================================
    def _dump(self) -> str:
        cases = {cid: self.snapshot(cid) for cid in self.case_ids()}
        with self._registry_lock:
            body = {
                "cases": cases,
                "case_masks": copy.deepcopy(self._data["case_masks"]),
                "vendor_masks": copy.deepcopy(self._data["vendor_masks"]),
                "activity_log": copy.deepcopy(self._data["activity_log"]),
                "users": copy.deepcopy(self._data["users"]),
            }
        return json.dumps(body, indent=2, default=str)

    def save(self):
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock_path = self.path.with_suffix(".lock")
        tmp_path = self.path.with_suffix(".tmp")
        with open(lock_path, "a+") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                # snapshot under the file lock so saves land in order
                payload = self._dump()
                with open(tmp_path, "w") as f:
                    f.write(payload)
                os.replace(tmp_path, self.path)
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    def load(self):
        if not self.path or not self.path.exists():
            logger.info(f"[DB] Starting with empty store ({self.path or 'memory'})")
            return
        lock_path = self.path.with_suffix(".lock")
        with open(lock_path, "a+") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_SH)
            try:
                with open(self.path) as f:
                    data = json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                logger.error(f"[DB] Could not read {self.path}: {e}, starting empty")
                data = _fresh_db()
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)
        for k, v in EMPTY_DB.items():
            if k not in data:
                data[k] = type(v)()
        with self._registry_lock:
            self._data = data
        logger.info(f"[DB] Loaded {len(data['cases'])} cases from {self.path}")

    def reset(self):
        with self._registry_lock:
            self._data = _fresh_db()
            self._case_locks = {}
        self.save()
