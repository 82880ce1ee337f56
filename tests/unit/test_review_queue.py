from __future__ import annotations

import pytest

from caseflow.errors import InvalidQuery
from caseflow.review_queue import compute_queue_stats, next_case, query_queue


@pytest.fixture
def cases(make_case):
    rows = [
        make_case("needs_review", id="C-1", confidence=80.0, vendorName="Acme Supplies",
                  createdAt="2026-01-01T09:00:00", hasFlags=True, validationFlags=["low_confidence:total"]),
        make_case("needs_review", id="C-2", confidence=40.0, vendorName="Globex", vendorId="V-2",
                  createdAt="2026-01-02T09:00:00"),
        make_case("needs_review", id="C-3", confidence=65.0, vendorName="Acme Supplies",
                  createdAt="2026-01-03T09:00:00"),
        make_case("approved", id="C-4", confidence=99.0, createdAt="2026-01-04T09:00:00"),
        make_case("auto_approved", id="C-5", confidence=97.0, createdAt="2026-01-05T09:00:00"),
        make_case("rejected", id="C-6", confidence=20.0, createdAt="2026-01-06T09:00:00"),
        make_case("in_review", id="C-7", confidence=70.0, reviewer="alice",
                  createdAt="2026-01-07T09:00:00"),
    ]
    return rows


def _ids(page):
    return [e["caseId"] for e in page["entries"]]


def test_priority_asc_is_lowest_confidence_first(cases):
    page = query_queue(cases, state="needs_review", sort="priority", order="asc")
    assert _ids(page) == ["C-2", "C-3", "C-1"]
    confidences = [e["confidence"] for e in page["entries"]]
    assert confidences == sorted(confidences)


def test_state_defaults_to_needs_review(cases):
    assert query_queue(cases)["total"] == 3
    assert query_queue(cases, state="all")["total"] == 7
    assert query_queue(cases, state=["approved", "auto_approved"])["total"] == 2


def test_vendor_and_confidence_filters(cases):
    assert _ids(query_queue(cases, vendor="acme", sort="created_at")) == ["C-1", "C-3"]
    assert _ids(query_queue(cases, confidence_range=(65, 80), sort="confidence", order="desc")) == ["C-1", "C-3"]
    assert _ids(query_queue(cases, confidence_range=(None, 50))) == ["C-2"]


def test_supplementary_filters(cases):
    assert _ids(query_queue(cases, has_flags=True)) == ["C-1"]
    assert _ids(query_queue(cases, created_from="2026-01-02", created_to="2026-01-02T23:59:59")) == ["C-2"]
    assert _ids(query_queue(cases, state="all", reviewer="alice")) == ["C-7"]
    # offset-aware bounds compare against the naive local createdAt
    assert query_queue(cases, created_from="2025-12-25T00:00:00+00:00")["total"] == 3
    assert query_queue(cases, created_to="2025-12-25T00:00:00+05:30")["total"] == 0
    assert query_queue(cases, created_from="2026-02-01T00:00:00-08:00")["total"] == 0


def test_pagination(cases):
    page = query_queue(cases, state="all", sort="created_at", page=2, per_page=3)
    assert _ids(page) == ["C-4", "C-5", "C-6"]
    assert page["totalPages"] == 3
    assert query_queue(cases, state="all", page=9, per_page=3)["entries"] == []


@pytest.mark.parametrize("kwargs", [
    {"sort": "amount"}, {"order": "up"}, {"page": 0}, {"per_page": 500},
    {"state": "archived"}, {"confidence_range": (90, 10)}, {"created_from": "yesterday"},
])
def test_invalid_queries(cases, kwargs):
    with pytest.raises(InvalidQuery):
        query_queue(cases, **kwargs)


def test_entry_projection(cases):
    entry = query_queue(cases, has_flags=True)["entries"][0]
    assert entry["confidenceTier"] == "medium"
    assert entry["flagCount"] == 1
    assert entry["fieldsNeedingAttention"] == ["total"]


def test_stats_over_unfiltered_set(cases):
    stats = compute_queue_stats(cases)
    assert stats["total"] == 7
    assert stats["pending"] == 3
    assert stats["inReview"] == 1
    assert stats["approved"] == 2
    assert stats["rejected"] == 1
    assert stats["casesWithFlags"] == 1
    assert stats["avgConfidence"] == round((80 + 40 + 65 + 99 + 97 + 20 + 70) / 7, 1)


def test_stats_reflect_mutations(cases):
    cases[0]["state"] = "in_review"
    assert compute_queue_stats(cases)["pending"] == 2


def test_next_case(cases):
    assert next_case(cases)["caseId"] == "C-2"
    assert next_case([]) is None
