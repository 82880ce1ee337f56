from __future__ import annotations

import os
import tempfile

# Must be set before caseflow.config is imported
os.environ.setdefault("CASEFLOW_PERSIST_DATA", "false")
os.environ.setdefault("CASEFLOW_DATA_DIR", tempfile.mkdtemp(prefix="caseflow-test-"))
os.environ.pop("ANTHROPIC_API_KEY", None)

import pytest

from caseflow.cases import create_case
from caseflow.db import CaseStore
from caseflow.export import InMemoryExporter
from caseflow.extraction import MockOcrEngine
from caseflow.policy import reset_policy
from caseflow.workflow import CaseEngine

GOOD_FIELDS = {
    "total": {"value": 100.0, "confidence": 95},
    "invoice_number": {"value": "INV-1", "confidence": 92},
}


@pytest.fixture(autouse=True)
def _reset_policy():
    reset_policy()
    yield
    reset_policy()


@pytest.fixture
def store():
    return CaseStore()


@pytest.fixture
def ocr():
    return MockOcrEngine(default={"fields": GOOD_FIELDS, "validationFlags": []})


@pytest.fixture
def exporter():
    return InMemoryExporter()


@pytest.fixture
def engine(store, ocr, exporter):
    return CaseEngine(store, ocr, exporter)


def _make_case(state="queued", **overrides):
    case = create_case(vendor_id="V-1", vendor_name="Acme Supplies",
                       document={"uri": "/tmp/x.pdf", "fileName": "x.pdf",
                                 "mimeType": "application/pdf", "sizeBytes": 1024})
    case["state"] = state
    case.update(overrides)
    return case


@pytest.fixture
def make_case():
    """Factory for case records forced into a given state."""
    return _make_case
