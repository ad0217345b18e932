"""Tests for meetbell.reconciler: merging producer reports."""

from __future__ import annotations

from datetime import timedelta

import pytest

from meetbell.models import CanonicalEvent
from meetbell.reconciler import (
    deduplicate,
    drop_scraped_duplicates,
    reconcile,
    richness_score,
    within_horizon,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def sparse(make_event):
    return make_event("Design Review", id="dom-1", source="google-dom")


@pytest.fixture
def rich(make_event):
    return make_event(
        "design review",
        id="api-1",
        source="google-api",
        meeting_link="https://meet.google.com/abc-defg-hij",
        description="Agenda: Q2 roadmap",
        attendees=[{"email": "a@example.com"}, {"email": "b@example.com"}],
    )


class TestRichness:
    def test_link_counts_double(self, make_event):
        plain = make_event("x")
        linked = make_event("x", meeting_link="https://zoom.us/j/1")
        assert richness_score(linked) - richness_score(plain) == 2

    def test_counts_attendees_and_text(self, rich):
        assert richness_score(rich) == 2 + 2 + len("Agenda: Q2 roadmap")


class TestReconcile:
    def test_richer_report_replaces_sparse_one(self, sparse, rich):
        merged = reconcile([CanonicalEvent.from_event(sparse)], [rich])
        assert len(merged) == 1
        assert merged[0].id == "api-1"
        assert merged[0].meeting_link is not None

    def test_sparse_report_never_replaces_rich_one(self, sparse, rich):
        merged = reconcile([CanonicalEvent.from_event(rich)], [sparse])
        assert [e.id for e in merged] == ["api-1"]

    def test_tie_keeps_existing(self, make_event):
        first = make_event("Standup", id="first")
        second = make_event("Standup", id="second", source="outlook-dom")
        merged = reconcile([CanonicalEvent.from_event(first)], [second])
        assert [e.id for e in merged] == ["first"]

    def test_commutative_across_arrival_order(self, sparse, rich, make_event):
        other = make_event("1:1", starts_in=timedelta(hours=2))
        a_then_b = reconcile(reconcile([], [sparse, other]), [rich])
        b_then_a = reconcile(reconcile([], [rich]), [sparse, other])
        assert {e.id for e in a_then_b} == {e.id for e in b_then_a} == {"api-1", other.id}

    def test_idempotent(self, sparse, rich):
        once = reconcile([], [sparse, rich])
        twice = reconcile(once, [sparse, rich])
        assert once == twice

    def test_distinct_meetings_kept_in_first_seen_order(self, make_event):
        a = make_event("A", starts_in=timedelta(hours=3))
        b = make_event("B", starts_in=timedelta(hours=1))
        assert [e.title for e in reconcile([], [a, b])] == ["A", "B"]

    def test_deduplicate_collapses_within_one_list(self, sparse, rich):
        assert [e.id for e in deduplicate([sparse, rich, sparse])] == ["api-1"]


class TestProducerFiltering:
    def test_scraped_reports_dropped_when_api_connected(self, sparse, rich, make_event):
        outlook_dom = make_event("Other", source="outlook-dom")
        kept = drop_scraped_duplicates([sparse, rich, outlook_dom], {"google"})
        assert [e.id for e in kept] == ["api-1", outlook_dom.id]

    def test_nothing_dropped_without_connection(self, sparse):
        assert drop_scraped_duplicates([sparse], set()) == [sparse]


class TestHorizon:
    def test_keeps_only_next_24_hours(self, make_event, clock):
        past = make_event("Past", starts_in=timedelta(minutes=-5))
        now = make_event("Now", starts_in=timedelta(0))
        soon = make_event("Soon", starts_in=timedelta(hours=2))
        edge = make_event("Edge", starts_in=timedelta(hours=24))
        late = make_event("Late", starts_in=timedelta(hours=24, minutes=1))
        kept = within_horizon([past, now, soon, edge, late], clock())
        assert [e.title for e in kept] == ["Soon", "Edge"]
