"""
New / update / skip decisions for fetched opportunities.

Two steps. First a freshness check on timestamps decides whether the
record is worth looking at again. If it is, the critical fields are
diffed and only a real difference produces an update.

Freshness matrix (incoming = record.api_updated_at):

    incoming + stored api_updated_at   incoming <= stored -> skip (not newer)
                                       otherwise          -> proceed (newer)
    incoming only                                         -> proceed (newer)
    no incoming, no stored updated_at                     -> proceed (stale review)
    no incoming, stored updated_at     older than N days  -> proceed (stale review)
                                       otherwise          -> skip (recently reviewed)
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Optional

from .models import (
    Action,
    CategorizationResult,
    DetectionMethod,
    OpportunityRecord,
    Reason,
    StoredOpportunity,
    parse_timestamp,
    utcnow,
)

CRITICAL_FIELDS = [
    'title',
    'minimum_award',
    'maximum_award',
    'total_funding_available',
    'close_date',
    'open_date',
]

AMOUNT_FIELDS = {'minimum_award', 'maximum_award', 'total_funding_available'}
DATE_FIELDS = {'open_date', 'close_date'}


@dataclass(frozen=True)
class FreshnessPolicy:
    """stale_review_days: re-check records with no source timestamp this often.
    amount_change_tolerance: relative amount difference ignored (0.0 = any change counts)."""
    stale_review_days: int = 90
    amount_change_tolerance: float = 0.0


DEFAULT_POLICY = FreshnessPolicy()


@dataclass(frozen=True)
class FreshnessDecision:
    proceed: bool
    reason: Reason


def check_freshness(
    record: OpportunityRecord,
    existing: StoredOpportunity,
    policy: FreshnessPolicy = DEFAULT_POLICY,
    now: Optional[datetime] = None,
) -> FreshnessDecision:
    incoming = parse_timestamp(record.api_updated_at)
    stored_api = parse_timestamp(existing.api_updated_at)

    if incoming is not None:
        if stored_api is not None and incoming <= stored_api:
            return FreshnessDecision(False, Reason.API_TIMESTAMP_NOT_NEWER)
        return FreshnessDecision(True, Reason.API_TIMESTAMP_NEWER)

    last_write = parse_timestamp(existing.updated_at)
    if last_write is None:
        return FreshnessDecision(True, Reason.STALE_REVIEW_NO_TIMESTAMP)

    now = parse_timestamp(now) or utcnow()
    if now - last_write > timedelta(days=policy.stale_review_days):
        return FreshnessDecision(True, Reason.STALE_REVIEW_90_DAYS)
    return FreshnessDecision(False, Reason.RECENTLY_REVIEWED)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def to_amount(value: Any) -> Optional[float]:
    """Numbers and numeric strings ("$1,500,000") to float; anything else None."""
    if _is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = value.strip().replace(',', '').replace('$', '')
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def amounts_differ(old: Any, new: Any, tolerance: float = 0.0) -> bool:
    old_amount = to_amount(old)
    new_amount = to_amount(new)
    if old_amount is None and new_amount is None:
        return False
    if old_amount is None or new_amount is None:
        return True
    if old_amount == new_amount:
        return False
    if tolerance <= 0:
        return True
    base = max(abs(old_amount), abs(new_amount))
    return abs(old_amount - new_amount) / base > tolerance


def dates_differ(old: Any, new: Any) -> bool:
    """Compare by calendar day; unparseable values fall back to text comparison."""
    if _is_blank(old) and _is_blank(new):
        return False
    if _is_blank(old) or _is_blank(new):
        return True
    old_date = parse_timestamp(old)
    new_date = parse_timestamp(new)
    if old_date is not None and new_date is not None:
        return old_date.date() != new_date.date()
    return str(old).strip() != str(new).strip()


def text_differs(old: Any, new: Any) -> bool:
    if _is_blank(old) and _is_blank(new):
        return False
    if _is_blank(old) or _is_blank(new):
        return True
    return ' '.join(str(old).lower().split()) != ' '.join(str(new).lower().split())


def has_field_changed(field_name: str, old: Any, new: Any, tolerance: float = 0.0) -> bool:
    if field_name in AMOUNT_FIELDS:
        return amounts_differ(old, new, tolerance)
    if field_name in DATE_FIELDS:
        return dates_differ(old, new)
    return text_differs(old, new)


def find_critical_changes(
    record: OpportunityRecord,
    existing: StoredOpportunity,
    tolerance: float = 0.0,
) -> List[str]:
    """Names of the critical fields whose values differ."""
    return [
        name for name in CRITICAL_FIELDS
        if has_field_changed(name, getattr(existing, name), getattr(record, name), tolerance)
    ]


def categorize(
    record: OpportunityRecord,
    existing: Optional[StoredOpportunity],
    policy: Optional[FreshnessPolicy] = None,
    now: Optional[datetime] = None,
    detection_method: Optional[DetectionMethod] = None,
) -> CategorizationResult:
    """Decide new / update / skip for one record against its stored match (or None)."""
    policy = policy or DEFAULT_POLICY

    if existing is None:
        return CategorizationResult(
            Action.NEW,
            Reason.NO_DUPLICATE_FOUND,
            detection_method=detection_method or DetectionMethod.NO_MATCH,
        )

    freshness = check_freshness(record, existing, policy, now)
    if not freshness.proceed:
        return CategorizationResult(Action.SKIP, freshness.reason, existing, detection_method)

    changed = find_critical_changes(record, existing, policy.amount_change_tolerance)
    if changed:
        return CategorizationResult(Action.UPDATE, freshness.reason, existing, detection_method, changed)
    return CategorizationResult(Action.SKIP, Reason.NO_CRITICAL_CHANGES, existing, detection_method)
