from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

import caseflow.server as server_mod
from caseflow.db import CaseStore
from caseflow.export import InMemoryExporter
from caseflow.extraction import MockOcrEngine
from caseflow.workflow import CaseEngine

LOW = {"fields": {"total": {"value": 100.0, "confidence": 30},
                  "invoice_number": {"value": "INV-7", "confidence": 90}},
       "validationFlags": []}
ALICE = {"X-User-Name": "alice"}
BOB = {"X-User-Name": "bob"}


@pytest.fixture
def client(monkeypatch):
    store = CaseStore()
    ocr = MockOcrEngine()
    ocr.script("low.pdf", LOW)
    ocr.script("broken.pdf", RuntimeError("engine crashed"))
    engine = CaseEngine(store, ocr, InMemoryExporter())
    monkeypatch.setattr(server_mod, "store", store)
    monkeypatch.setattr(server_mod, "engine", engine)
    return TestClient(server_mod.app)


def _upload(client, name, process=True):
    r = client.post("/api/cases", headers=ALICE,
                    files={"file": (name, b"%PDF-1.4 fake", "application/pdf")},
                    data={"vendor_id": "V-1", "vendor_name": "Acme Supplies", "process": str(process).lower()})
    assert r.status_code == 200, r.text
    return r.json()["case"]


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_ingest_and_auto_approve(client):
    case = _upload(client, "clean.pdf")
    assert case["state"] == "auto_approved"
    assert case["document"]["sizeBytes"] == len(b"%PDF-1.4 fake")


def test_review_flow(client):
    cid = _upload(client, "low.pdf")["id"]

    queue = client.get("/api/queue", headers=ALICE).json()
    assert [e["caseId"] for e in queue["entries"]] == [cid]

    assert client.post(f"/api/cases/{cid}/open", headers=ALICE).status_code == 200
    r = client.post(f"/api/cases/{cid}/open", headers=BOB)
    assert r.status_code == 409
    assert r.json()["error"] == "already_in_review"

    r = client.post(f"/api/cases/{cid}/approve", headers=ALICE)
    assert r.status_code == 409
    assert r.json()["details"]["blockingReasons"] == ["low_confidence:total"]

    r = client.post(f"/api/cases/{cid}/decisions", headers=ALICE, data={"field": "total", "value": "100.0"})
    assert r.json()["case"]["effectiveFields"]["total"]["value"] == 100.0

    assert client.post(f"/api/cases/{cid}/approve", headers=ALICE).json()["case"]["state"] == "approved"
    first = client.post(f"/api/cases/{cid}/export", headers=ALICE).json()
    second = client.post(f"/api/cases/{cid}/export", headers=ALICE).json()
    assert first["exportRef"] == second["exportRef"]

    history = client.get(f"/api/cases/{cid}/history").json()["history"]
    assert history[-1]["toState"] == "exported"


def test_failed_case_retry(client):
    cid = _upload(client, "broken.pdf")["id"]
    assert client.get(f"/api/cases/{cid}").json()["state"] == "failed"

    r = client.post(f"/api/cases/{cid}/retry", headers=ALICE, data={"profile": "safe"})
    assert r.status_code == 200
    assert r.json()["estimatedTimeMs"] > 0

    r = client.post(f"/api/cases/{cid}/retry", headers=ALICE)
    assert r.status_code == 409
    assert r.json()["error"] == "retry_not_allowed"


def test_masks(client):
    cid = _upload(client, "low.pdf")["id"]
    r = client.post(f"/api/cases/{cid}/masks", headers=ALICE,
                    data={"type": "logo", "x": 0, "y": 0, "width": 0.2, "height": 0.1})
    assert r.status_code == 200
    assert r.json()["reprocessing"] is True
    masks = client.get(f"/api/cases/{cid}/masks").json()["masks"]
    assert [m["id"] for m in masks] == [r.json()["maskId"]]

    bad = client.post(f"/api/cases/{cid}/masks", headers=ALICE,
                      data={"type": "logo", "x": 0, "y": 0, "width": 0, "height": 0.1})
    assert bad.status_code == 422
    assert bad.json()["error"] == "invalid_region"

    assert client.delete("/api/masks/nonexistent-id", headers=ALICE).json()["removed"] is False


def test_queue_errors_and_stats(client):
    _upload(client, "low.pdf")
    _upload(client, "clean.pdf")
    assert client.get("/api/queue?sort=amount").status_code == 422
    assert client.get("/api/cases/CASE-NOPE").status_code == 404

    stats = client.get("/api/queue/stats").json()
    assert stats["total"] == 2
    assert stats["pending"] == 1
    assert stats["approved"] == 1
    assert client.get("/api/queue/next").json()["next"]["vendorName"] == "Acme Supplies"


def test_register_login_and_token_identity(client):
    r = client.post("/api/auth/register", data={"email": "Carol@example.com", "password": "s3cret-pass",
                                                "name": "Carol", "role": "reviewer"})
    assert r.status_code == 200
    assert "passwordHash" not in r.json()["user"]

    assert client.post("/api/auth/register", data={"email": "carol@example.com",
                                                   "password": "another-pass"}).status_code == 409
    assert client.post("/api/auth/login", data={"email": "carol@example.com",
                                                "password": "wrong-pass"}).status_code == 401

    token = client.post("/api/auth/login", data={"email": "carol@example.com",
                                                 "password": "s3cret-pass"}).json()["token"]
    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"}).json()
    assert me["actor"] == "Carol"
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer junk"}).status_code == 401


def test_viewers_cannot_act(client):
    cid = _upload(client, "low.pdf")["id"]
    r = client.post(f"/api/cases/{cid}/open", headers={"X-User-Name": "vic", "X-User-Role": "viewer"})
    assert r.status_code == 403
    assert client.get(f"/api/cases/{cid}", headers={"X-User-Role": "viewer"}).status_code == 200
