from __future__ import annotations

import asyncio
import threading

from caseflow.errors import AlreadyInReview, ExportInProgress
from caseflow.export import InMemoryExporter
from caseflow.extraction import MockOcrEngine
from caseflow.policy import update_policy
from caseflow.workflow import CaseEngine

MISMATCH = {"fields": {"total": {"value": 100.0, "confidence": 95},
                       "invoice_number": {"value": "INV-1", "confidence": 92}},
            "validationFlags": ["total_mismatch"]}


def _run_threads(target, n):
    barrier = threading.Barrier(n)
    outcomes = []
    lock = threading.Lock()

    def worker(i):
        barrier.wait()
        try:
            result = ("ok", target(i))
        except Exception as e:
            result = ("error", e)
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return outcomes


def _review_case(store):
    engine = CaseEngine(store, MockOcrEngine(default=MISMATCH), InMemoryExporter(delay_s=0.05))
    cid = engine.ingest_case({"fileName": "bill.pdf", "mimeType": "application/pdf", "sizeBytes": 10})["id"]
    asyncio.run(engine.run_pending())
    return engine, cid


def test_concurrent_opens_exactly_one_wins(store):
    for _ in range(5):
        engine, cid = _review_case(store)
        outcomes = _run_threads(lambda i: engine.open_case(cid, f"reviewer-{i}"), 8)
        wins = [r for kind, r in outcomes if kind == "ok"]
        losses = [r for kind, r in outcomes if kind == "error"]
        assert len(wins) == 1
        assert all(isinstance(e, AlreadyInReview) for e in losses)
        assert engine.get_case(cid)["reviewer"] == wins[0]["reviewer"]


def test_concurrent_exports_reach_exporter_once(store):
    engine, cid = _review_case(store)
    engine.open_case(cid, "alice")
    engine.decide_field(cid, "alice", "total", 100.0)
    engine.approve(cid, "alice")

    outcomes = _run_threads(lambda i: asyncio.run(engine.export_case(cid)), 6)
    refs = {r["exportRef"] for kind, r in outcomes if kind == "ok"}
    errors = [r for kind, r in outcomes if kind == "error"]
    assert len(refs) == 1
    assert all(isinstance(e, ExportInProgress) for e in errors)
    assert engine.exporter.calls == 1
    assert asyncio.run(engine.export_case(cid))["exportRef"] in refs


def test_concurrent_claims_respect_capacity(store):
    update_policy({"max_concurrent_processing": 3})
    engine = CaseEngine(store, MockOcrEngine(), InMemoryExporter())
    for i in range(10):
        engine.ingest_case({"fileName": f"b{i}.pdf"})
    outcomes = _run_threads(lambda i: engine.claim_next_case(f"worker-{i}"), 10)
    claimed = [r for kind, r in outcomes if kind == "ok" and r]
    assert len(claimed) == 3
    assert len(set(claimed)) == 3


def test_concurrent_saves_keep_the_latest_state_on_disk(tmp_path, make_case):
    from caseflow.db import CaseStore

    path = tmp_path / "cases.json"
    store = CaseStore(path)
    ids = [store.insert_case(make_case("needs_review"))["id"] for _ in range(8)]

    def touch(i):
        for n in range(5):
            with store.locked(ids[i]) as case:
                case["retryCount"] = n + 1

    outcomes = _run_threads(touch, len(ids))
    assert all(kind == "ok" for kind, _ in outcomes)
    reloaded = CaseStore(path)
    assert [reloaded.snapshot(cid)["retryCount"] for cid in ids] == [5] * len(ids)
