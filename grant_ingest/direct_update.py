"""
Direct updates for duplicates whose critical fields changed.

Updated records skip enrichment entirely: only the changed critical fields
are written, and a field is never overwritten with an empty value.
"""

from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .detector import UpdateCandidate
from .errors import classify_error
from .freshness import AMOUNT_FIELDS, CRITICAL_FIELDS, has_field_changed, to_amount
from .guard import CallGuard, run_query
from .models import utcnow
from .ports import OpportunityStorage

logger = logging.getLogger(__name__)


@dataclass
class UpdateOutcome:
    status: str  # success | failed | skipped
    candidate: UpdateCandidate
    update_data: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DirectUpdateResult:
    successful: List[UpdateOutcome] = field(default_factory=list)
    failed: List[UpdateOutcome] = field(default_factory=list)
    skipped: List[UpdateOutcome] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)


def prepare_critical_field_update(existing, record, tolerance: float = 0.0) -> Dict[str, Any]:
    """
    Changed critical fields of record relative to existing.

    Empty incoming values are ignored so a source dropping a field never
    erases what we already have. Amount differences within tolerance are
    not written, matching the decision that selected the record.
    """
    update = {}
    for name in CRITICAL_FIELDS:
        new_value = getattr(record, name)
        if new_value is None or (isinstance(new_value, str) and not new_value.strip()):
            continue
        old_value = getattr(existing, name)
        if not has_field_changed(name, old_value, new_value, tolerance):
            continue
        if name in AMOUNT_FIELDS:
            amount = to_amount(new_value)
            update[name] = amount if amount is not None else new_value
        else:
            update[name] = new_value
        logger.debug(f"Field change: {name} = {old_value!r} -> {new_value!r}")
    return update


async def update_single_opportunity(
    candidate: UpdateCandidate,
    storage: OpportunityStorage,
    guard: Optional[CallGuard] = None,
    tolerance: float = 0.0,
) -> UpdateOutcome:
    record = candidate.record
    label = record.title or record.id
    update = prepare_critical_field_update(candidate.existing, record, tolerance)

    if not update:
        logger.info(f"No valid updates for: {label}")
        return UpdateOutcome('skipped', candidate, reason='no_valid_updates')

    update['updated_at'] = utcnow()
    if record.api_updated_at:
        update['api_updated_at'] = record.api_updated_at
    if candidate.raw_response_id:
        update['raw_response_id'] = candidate.raw_response_id

    try:
        await run_query(guard, 'update', storage.update, candidate.existing.id, update,
                        source_id=candidate.existing.source_id)
    except Exception as e:
        error = classify_error(e)
        logger.error(f"Database update failed for {label}: {error}")
        return UpdateOutcome('failed', candidate, update, reason=candidate.reason.value, error=str(error))

    logger.info(f"Updated {label}: {', '.join(k for k in update if k in CRITICAL_FIELDS)}")
    return UpdateOutcome('success', candidate, update, reason=candidate.reason.value)


async def update_duplicate_opportunities(
    candidates: List[UpdateCandidate],
    storage: OpportunityStorage,
    guard: Optional[CallGuard] = None,
    tolerance: float = 0.0,
) -> DirectUpdateResult:
    started = time.monotonic()
    result = DirectUpdateResult()

    if not candidates:
        logger.info("No updates to process")
    else:
        logger.info(f"Processing {len(candidates)} duplicate updates")

    for candidate in candidates:
        outcome = await update_single_opportunity(candidate, storage, guard, tolerance)
        if outcome.status == 'success':
            result.successful.append(outcome)
        elif outcome.status == 'failed':
            result.failed.append(outcome)
        else:
            result.skipped.append(outcome)

    result.metrics = {
        'total_processed': len(candidates),
        'successful': len(result.successful),
        'failed': len(result.failed),
        'skipped': len(result.skipped),
        'execution_time_ms': int((time.monotonic() - started) * 1000),
    }
    if candidates:
        logger.info(
            f"Direct update: {len(result.successful)} successful, "
            f"{len(result.failed)} failed, {len(result.skipped)} skipped"
        )
    return result
