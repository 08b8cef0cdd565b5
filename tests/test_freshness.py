from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from grant_ingest.freshness import (
    FreshnessPolicy,
    amounts_differ,
    categorize,
    check_freshness,
    dates_differ,
    find_critical_changes,
)
from grant_ingest.models import Action, CategorizationResult, OpportunityRecord, Reason, StoredOpportunity

NOW = datetime(2024, 7, 1, tzinfo=timezone.utc)


def existing(**fields) -> StoredOpportunity:
    base = dict(id="db-1", source_id="grants-gov", opportunity_id="X1", title="Solar Grant 2024")
    base.update(fields)
    return StoredOpportunity(**base)


def record(**fields) -> OpportunityRecord:
    base = dict(id="X1", title="Solar Grant 2024")
    base.update(fields)
    return OpportunityRecord(**base)


def test_no_existing_record_is_new() -> None:
    result = categorize(record(), None)
    assert result.action == Action.NEW
    assert result.reason == Reason.NO_DUPLICATE_FOUND
    assert result.existing is None


def test_incoming_not_newer_is_skipped() -> None:
    for incoming in ["2024-05-01", "2024-04-30T23:59:59Z"]:
        result = categorize(record(api_updated_at=incoming, maximum_award=1), existing(api_updated_at="2024-05-01"), now=NOW)
        assert result.action == Action.SKIP
        assert result.reason == Reason.API_TIMESTAMP_NOT_NEWER


def test_newer_timestamp_with_changed_amount_is_update() -> None:
    result = categorize(
        record(api_updated_at="2024-06-01", maximum_award=500000),
        existing(api_updated_at="2024-05-01", maximum_award=400000),
        now=NOW,
    )
    assert result.action == Action.UPDATE
    assert result.reason == Reason.API_TIMESTAMP_NEWER
    assert result.changed_fields == ["maximum_award"]
    assert result.existing is not None


def test_newer_timestamp_without_changes_is_skipped() -> None:
    result = categorize(record(api_updated_at="2024-06-01"), existing(api_updated_at="2024-05-01"), now=NOW)
    assert result.action == Action.SKIP
    assert result.reason == Reason.NO_CRITICAL_CHANGES


def test_freshness_matrix() -> None:
    decision = check_freshness(record(api_updated_at="2024-06-01"), existing(), now=NOW)
    assert (decision.proceed, decision.reason) == (True, Reason.API_TIMESTAMP_NEWER)

    decision = check_freshness(record(), existing(), now=NOW)
    assert (decision.proceed, decision.reason) == (True, Reason.STALE_REVIEW_NO_TIMESTAMP)

    decision = check_freshness(record(), existing(updated_at=NOW - timedelta(days=95)), now=NOW)
    assert (decision.proceed, decision.reason) == (True, Reason.STALE_REVIEW_90_DAYS)

    decision = check_freshness(record(), existing(updated_at=NOW - timedelta(days=10)), now=NOW)
    assert (decision.proceed, decision.reason) == (False, Reason.RECENTLY_REVIEWED)


def test_stale_record_without_changes_is_skipped_not_updated() -> None:
    result = categorize(record(), existing(updated_at=NOW - timedelta(days=95)), now=NOW)
    assert result.action == Action.SKIP
    assert result.reason == Reason.NO_CRITICAL_CHANGES


def test_stale_review_window_is_configurable() -> None:
    policy = FreshnessPolicy(stale_review_days=7)
    decision = check_freshness(record(), existing(updated_at=NOW - timedelta(days=10)), policy, now=NOW)
    assert decision.reason == Reason.STALE_REVIEW_90_DAYS


def test_one_sided_null_counts_as_changed() -> None:
    changed = find_critical_changes(record(close_date="2024-09-30"), existing())
    assert changed == ["close_date"]
    assert find_critical_changes(record(), existing()) == []


def test_amount_comparison() -> None:
    assert not amounts_differ("$1,500,000", 1500000)
    assert amounts_differ(1000, 1001)
    assert not amounts_differ(1000, 1001, tolerance=0.01)
    assert not amounts_differ(None, "")


def test_dates_compare_by_day() -> None:
    assert not dates_differ("2024-06-01", "2024-06-01T15:00:00Z")
    assert dates_differ("2024-06-01", "2024-06-02")
    assert not dates_differ(None, None)


def test_categorization_invariants() -> None:
    with pytest.raises(ValueError):
        CategorizationResult(Action.UPDATE, Reason.API_TIMESTAMP_NEWER, existing=None)
    with pytest.raises(ValueError):
        CategorizationResult(Action.NEW, Reason.NO_DUPLICATE_FOUND, existing=existing())
