"""
Reassemble one run-level stage timeline from chunk-level stage rows.

A run split into N chunk jobs writes N rows per stage. These helpers group
them by stage name, add up the counters and merge the JSON blobs so callers
see a single row per stage.
"""

from __future__ import annotations
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .models import AggregatedStage, PipelineStageRecord, StageStatus

StageRow = Union[PipelineStageRecord, Dict[str, Any]]

COUNTER_FIELDS = ('tokens_used', 'api_calls_made', 'execution_time_ms', 'input_count', 'output_count')


def _as_record(row: StageRow) -> PipelineStageRecord:
    if isinstance(row, PipelineStageRecord):
        return row
    return PipelineStageRecord.from_row(row)


def aggregate_status(statuses: Iterable[str]) -> str:
    """failed > processing > all completed > pending > unknown."""
    statuses = [s.value if isinstance(s, StageStatus) else s for s in statuses]
    if not statuses:
        return StageStatus.UNKNOWN.value
    if StageStatus.FAILED.value in statuses:
        return StageStatus.FAILED.value
    if StageStatus.PROCESSING.value in statuses:
        return StageStatus.PROCESSING.value
    if all(s == StageStatus.COMPLETED.value for s in statuses):
        return StageStatus.COMPLETED.value
    if StageStatus.PENDING.value in statuses:
        return StageStatus.PENDING.value
    return StageStatus.UNKNOWN.value


# Merge functions for result keys whose shape we know

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def merge_sum(current: Any, value: Any) -> Any:
    if not _is_number(value):
        return current
    return (current if _is_number(current) else 0) + value


def merge_count_maps(current: Any, value: Any) -> Any:
    """{'recently_reviewed': 2} + {'recently_reviewed': 1, 'x': 4} -> {'recently_reviewed': 3, 'x': 4}"""
    merged = dict(current) if isinstance(current, dict) else {}
    if isinstance(value, dict):
        for key, count in value.items():
            merged[key] = merge_sum(merged.get(key), count)
    return merged


def merge_concat(current: Any, value: Any) -> Any:
    merged = list(current) if isinstance(current, list) else []
    if isinstance(value, list):
        merged.extend(value)
    elif value is not None:
        merged.append(value)
    return merged


def merge_any(current: Any, value: Any) -> Any:
    return bool(current) or bool(value)


def merge_generic(current: Any, value: Any) -> Any:
    """Fallback by type: numbers sum, lists concatenate, dicts shallow-merge, scalars take the last value."""
    if value is None:
        return current
    if _is_number(value):
        return merge_sum(current, value)
    if isinstance(value, list):
        return merge_concat(current, value)
    if isinstance(value, dict):
        merged = dict(current) if isinstance(current, dict) else {}
        merged.update(value)
        return merged
    return value


KNOWN_RESULT_MERGERS: Dict[str, Callable[[Any, Any], Any]] = {
    'new': merge_sum,
    'update': merge_sum,
    'skip': merge_sum,
    'inserted': merge_sum,
    'successful': merge_sum,
    'failed': merge_sum,
    'skipped': merge_sum,
    'fetched': merge_sum,
    'skip_reasons': merge_count_maps,
    'update_reasons': merge_count_maps,
    'detection_methods': merge_count_maps,
    'new_ids': merge_concat,
    'update_ids': merge_concat,
    'inserted_ids': merge_concat,
    'failed_ids': merge_concat,
    'errors': merge_concat,
    'id_lookup_failed': merge_any,
    'title_lookup_failed': merge_any,
}


def merge_blobs(blobs: Iterable[Optional[Dict[str, Any]]],
                mergers: Optional[Dict[str, Callable[[Any, Any], Any]]] = None) -> Dict[str, Any]:
    mergers = KNOWN_RESULT_MERGERS if mergers is None else mergers
    merged: Dict[str, Any] = {}
    for blob in blobs:
        for key, value in (blob or {}).items():
            merge = mergers.get(key, merge_generic)
            merged[key] = merge(merged.get(key), value)
    return merged


def merge_stage_results(rows: Iterable[StageRow]) -> Dict[str, Any]:
    return merge_blobs(_as_record(r).stage_results for r in rows)


def merge_performance_metrics(rows: Iterable[StageRow]) -> Dict[str, Any]:
    return merge_blobs((_as_record(r).performance_metrics for r in rows), mergers={})


def aggregate_stages_by_name(rows: Iterable[StageRow]) -> List[AggregatedStage]:
    """One AggregatedStage per stage name, sorted by stage order."""
    groups: Dict[str, List[PipelineStageRecord]] = OrderedDict()
    for row in rows:
        record = _as_record(row)
        groups.setdefault(record.stage_name, []).append(record)

    aggregated = []
    for stage_name, records in groups.items():
        started = [r.started_at for r in records if r.started_at is not None]
        completed = [r.completed_at for r in records if r.completed_at is not None]
        stage = AggregatedStage(
            stage_name=stage_name,
            stage_order=records[0].stage_order,
            status=aggregate_status(r.status for r in records),
            started_at=min(started) if started else None,
            completed_at=max(completed) if completed else None,
            estimated_cost_usd=round(sum(r.estimated_cost_usd for r in records), 6),
            stage_results=merge_stage_results(records),
            performance_metrics=merge_performance_metrics(records),
            job_count=len(records),
            job_ids=[r.job_id for r in records if r.job_id],
        )
        for name in COUNTER_FIELDS:
            setattr(stage, name, sum(getattr(r, name) for r in records))
        aggregated.append(stage)

    return sorted(aggregated, key=lambda s: s.stage_order)


def get_job_status(rows: Iterable[StageRow]) -> str:
    return aggregate_status(_as_record(r).status for r in rows)


def filter_stages_by_job(rows: List[StageRow], job_id: Optional[str]) -> List[StageRow]:
    if not job_id:
        return list(rows)
    return [r for r in rows if _as_record(r).job_id == job_id]


def is_legacy_stages(rows: List[StageRow]) -> bool:
    """Rows written before chunking carry no job id."""
    return bool(rows) and all(not _as_record(r).job_id for r in rows)


def extract_job_list(rows: Iterable[StageRow], jobs: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
    """
    Per-job summary (chunk index, status, timing, stage count) sorted by chunk.

    jobs: optional job-queue rows ({'id', 'chunk_index', 'total_chunks',
    'status', 'created_at', 'completed_at'}) that take precedence over what
    the stage rows say.
    """
    by_job: Dict[str, List[PipelineStageRecord]] = OrderedDict()
    for row in rows:
        record = _as_record(row)
        if record.job_id:
            by_job.setdefault(record.job_id, []).append(record)

    job_rows = {job.get('id'): job for job in (jobs or [])}
    summaries = []
    for job_id, records in by_job.items():
        job = job_rows.get(job_id, {})
        first = records[0]
        started = [r.started_at for r in records if r.started_at is not None]
        completed = [r.completed_at for r in records
                     if r.status == StageStatus.COMPLETED.value and r.completed_at is not None]
        summaries.append({
            'job_id': job_id,
            'chunk_index': _first_not_none(job.get('chunk_index'), first.chunk_index, 0),
            'total_chunks': _first_not_none(job.get('total_chunks'), first.total_chunks, 1),
            'status': job.get('status') or aggregate_status(r.status for r in records),
            'created_at': job.get('created_at') or (min(started) if started else None),
            'completed_at': job.get('completed_at') or (max(completed) if completed else None),
            'stage_count': len(records),
        })

    return sorted(summaries, key=lambda s: s['chunk_index'])


def _first_not_none(*values):
    for value in values:
        if value is not None:
            return value
    return None
