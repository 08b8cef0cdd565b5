"""
Early duplicate detection for a fetched batch.

Runs before any expensive enrichment: every record is matched against the
stored candidates and sorted into new, update or skip. Only new records
need enrichment; updates take the direct-update path; skips are dropped
with their reason.
"""

from __future__ import annotations
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import ValidationError
from .freshness import FreshnessPolicy, categorize
from .guard import CallGuard
from .matcher import (
    DEFAULT_SIMILARITY_THRESHOLD,
    MIN_TITLE_LENGTH,
    build_candidate_index,
    find_existing,
    validate_source_id,
)
from .models import Action, DetectionMethod, OpportunityRecord, Reason, StoredOpportunity
from .ports import OpportunityStorage

logger = logging.getLogger(__name__)

# Rough enrichment cost avoided for every record that is not new
TOKENS_PER_ENRICHMENT = 1500
COST_PER_TOKEN_USD = 0.00001


@dataclass
class UpdateCandidate:
    record: OpportunityRecord
    existing: StoredOpportunity
    reason: Reason
    changed_fields: List[str] = field(default_factory=list)
    raw_response_id: Optional[str] = None


@dataclass
class SkippedOpportunity:
    record: OpportunityRecord
    existing: Optional[StoredOpportunity]
    reason: Reason


@dataclass
class DetectionResult:
    new_opportunities: List[OpportunityRecord] = field(default_factory=list)
    to_update: List[UpdateCandidate] = field(default_factory=list)
    to_skip: List[SkippedOpportunity] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.new_opportunities) + len(self.to_update) + len(self.to_skip)

    def summary(self) -> Dict[str, Any]:
        return {
            'new': len(self.new_opportunities),
            'update': len(self.to_update),
            'skip': len(self.to_skip),
            'new_ids': [r.id for r in self.new_opportunities],
            'update_ids': [u.record.id for u in self.to_update],
            'skip_reasons': dict(Counter(s.reason.value for s in self.to_skip)),
        }


def _empty_metrics() -> Dict[str, Any]:
    return {
        'total_processed': 0,
        'new_opportunities': 0,
        'opportunities_to_update': 0,
        'opportunities_to_skip': 0,
        'database_queries': 0,
        'id_matches': 0,
        'title_matches': 0,
        'validation_failures': 0,
        'freshness_skips': 0,
        'id_lookup_failed': False,
        'title_lookup_failed': False,
        'detection_methods': {m.value: 0 for m in DetectionMethod},
        'skip_reasons': {},
        'update_reasons': {},
        'enrichment_bypassed': 0,
        'estimated_tokens_saved': 0,
        'estimated_cost_saved_usd': 0.0,
        'execution_time_ms': 0,
    }


async def detect_duplicates(
    records: List[OpportunityRecord],
    source_id: str,
    storage: OpportunityStorage,
    *,
    guard: Optional[CallGuard] = None,
    policy: Optional[FreshnessPolicy] = None,
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    min_title_length: int = MIN_TITLE_LENGTH,
    raw_response_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> DetectionResult:
    """
    Categorize a batch into new / update / skip.

    Raises ValidationError for a non-list batch or a malformed source id.
    Storage lookup failures degrade matching instead of raising.
    """
    if not isinstance(records, list):
        raise ValidationError('Opportunities must be a list', context={'type': type(records).__name__})
    source_id = validate_source_id(source_id)

    started = time.monotonic()
    result = DetectionResult(metrics=_empty_metrics())
    metrics = result.metrics

    if not records:
        logger.info(f"No opportunities to check for source {source_id}")
        return result

    index = await build_candidate_index(records, source_id, storage, guard, min_title_length)
    metrics['database_queries'] = index.queries_executed
    metrics['id_lookup_failed'] = index.id_lookup_failed
    metrics['title_lookup_failed'] = index.title_lookup_failed

    skip_reasons: Counter = Counter()
    update_reasons: Counter = Counter()

    for record in records:
        match = find_existing(record, source_id, index, similarity_threshold, min_title_length)
        metrics['detection_methods'][match.method.value] += 1
        if match.id_validation_failed:
            metrics['validation_failures'] += 1
        if match.method == DetectionMethod.ID_VALIDATION:
            metrics['id_matches'] += 1
        elif match.method == DetectionMethod.TITLE_ONLY:
            metrics['title_matches'] += 1

        decision = categorize(record, match.existing, policy, now, match.method)

        if decision.action == Action.NEW:
            result.new_opportunities.append(record)
        elif decision.action == Action.UPDATE:
            update_reasons[decision.reason.value] += 1
            result.to_update.append(UpdateCandidate(
                record=record,
                existing=decision.existing,
                reason=decision.reason,
                changed_fields=decision.changed_fields,
                raw_response_id=record.raw_response_id or raw_response_id,
            ))
        else:
            skip_reasons[decision.reason.value] += 1
            if decision.reason != Reason.NO_CRITICAL_CHANGES:
                metrics['freshness_skips'] += 1
            result.to_skip.append(SkippedOpportunity(record, decision.existing, decision.reason))

    bypassed = len(result.to_update) + len(result.to_skip)
    metrics.update({
        'total_processed': len(records),
        'new_opportunities': len(result.new_opportunities),
        'opportunities_to_update': len(result.to_update),
        'opportunities_to_skip': len(result.to_skip),
        'skip_reasons': dict(skip_reasons),
        'update_reasons': dict(update_reasons),
        'enrichment_bypassed': bypassed,
        'estimated_tokens_saved': bypassed * TOKENS_PER_ENRICHMENT,
        'estimated_cost_saved_usd': round(bypassed * TOKENS_PER_ENRICHMENT * COST_PER_TOKEN_USD, 6),
        'execution_time_ms': int((time.monotonic() - started) * 1000),
    })

    logger.info(
        f"Duplicate detection for {source_id}: {len(records)} checked -> "
        f"{len(result.new_opportunities)} new, {len(result.to_update)} update, "
        f"{len(result.to_skip)} skip ({metrics['database_queries']} queries)"
    )
    if metrics['validation_failures']:
        logger.warning(f"{metrics['validation_failures']} ID matches failed title validation (possible ID reuse)")

    return result
