from __future__ import annotations
import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .aggregation import aggregate_stages_by_name
from .checkpoint import DEFAULT_STAGE_ORDER
from .errors import classify_error, format_error_for_logging
from .models import AggregatedStage, PipelineStageRecord, StageStatus, utcnow
from .ports import RunStore

logger = logging.getLogger(__name__)

PIPELINE_VERSION = 'grant-ingest-1'

STAGE_ORDER: Dict[str, int] = {name: i + 1 for i, name in enumerate(DEFAULT_STAGE_ORDER)}


def sanitize_integer(value: Any) -> int:
    """Counters are non-negative ints; anything else becomes 0."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        return max(0, int(round(float(value))))
    except (TypeError, ValueError, OverflowError):
        return 0


def sanitize_json(value: Any) -> Dict[str, Any]:
    """Stage blobs are always objects: lists become {'items', 'count'}, scalars {'value'}."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, (list, tuple)):
        return {'items': list(value), 'count': len(value)}
    return {'value': value}


class RunRecorder:
    """
    Writes the run header and one immutable stage row per finished stage.

    A chunk job gets its own recorder with job_id/chunk_index set; every
    row it writes carries them so the aggregator can regroup the run.
    Write failures are logged, never raised.
    """

    def __init__(
        self,
        store: Optional[RunStore],
        run_id: Optional[str] = None,
        job_id: Optional[str] = None,
        chunk_index: Optional[int] = None,
        total_chunks: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.run_id = run_id or str(uuid.uuid4())
        self.job_id = job_id
        self.chunk_index = chunk_index
        self.total_chunks = total_chunks
        self._clock = clock
        self._run_started: Optional[datetime] = None
        self._stage_started: Dict[str, datetime] = {}
        self.records: List[PipelineStageRecord] = []

    async def _write(self, description: str, method: str, *args):
        if self.store is None:
            return
        try:
            await asyncio.to_thread(getattr(self.store, method), *args)
        except Exception as e:
            logger.error(f"Failed to {description} for run {self.run_id}: {classify_error(e)}")

    async def start_run(self, source_id: str, config: Optional[Dict[str, Any]] = None) -> str:
        self._run_started = self._clock()
        await self._write('create run', 'insert_run', {
            'run_id': self.run_id,
            'source_id': source_id,
            'status': StageStatus.PROCESSING.value,
            'started_at': self._run_started,
            'pipeline_version': PIPELINE_VERSION,
            'config': sanitize_json(config),
        })
        logger.info(f"Started run {self.run_id} for source {source_id}")
        return self.run_id

    def start_stage(self, stage_name: str) -> datetime:
        started = self._clock()
        self._stage_started[stage_name] = started
        return started

    async def complete_stage(
        self,
        stage_name: str,
        *,
        status: str = StageStatus.COMPLETED.value,
        stage_results: Any = None,
        performance_metrics: Any = None,
        input_count: Any = 0,
        output_count: Any = 0,
        api_calls_made: Any = 0,
        tokens_used: Any = 0,
        estimated_cost_usd: Any = 0.0,
        error_message: Optional[str] = None,
    ) -> PipelineStageRecord:
        completed = self._clock()
        started = self._stage_started.pop(stage_name, completed)
        try:
            cost = max(0.0, float(estimated_cost_usd or 0.0))
        except (TypeError, ValueError):
            cost = 0.0

        record = PipelineStageRecord(
            run_id=self.run_id,
            stage_name=stage_name,
            stage_order=STAGE_ORDER.get(stage_name, len(STAGE_ORDER) + 1),
            status=status.value if isinstance(status, StageStatus) else status,
            job_id=self.job_id,
            chunk_index=self.chunk_index,
            total_chunks=self.total_chunks,
            started_at=started,
            completed_at=completed,
            execution_time_ms=sanitize_integer((completed - started).total_seconds() * 1000),
            api_calls_made=sanitize_integer(api_calls_made),
            tokens_used=sanitize_integer(tokens_used),
            input_count=sanitize_integer(input_count),
            output_count=sanitize_integer(output_count),
            estimated_cost_usd=cost,
            stage_results=sanitize_json(stage_results),
            performance_metrics=sanitize_json(performance_metrics),
            error_message=error_message,
        )
        self.records.append(record)
        await self._write(f"record stage {stage_name}", 'insert_stage', record.to_row())
        logger.info(
            f"Stage {stage_name} {record.status}: {record.input_count} in, "
            f"{record.output_count} out, {record.execution_time_ms}ms"
        )
        return record

    async def fail_stage(self, stage_name: str, error: BaseException, **kwargs) -> PipelineStageRecord:
        classified = classify_error(error)
        results = sanitize_json(kwargs.pop('stage_results', None))
        results['error'] = format_error_for_logging(classified)
        return await self.complete_stage(
            stage_name,
            status=StageStatus.FAILED.value,
            stage_results=results,
            error_message=str(classified),
            **kwargs,
        )

    async def complete_run(self, summary: Optional[Dict[str, Any]] = None):
        completed = self._clock()
        total_ms = 0
        if self._run_started is not None:
            total_ms = sanitize_integer((completed - self._run_started).total_seconds() * 1000)
        await self._write('complete run', 'update_run', self.run_id, {
            'status': StageStatus.COMPLETED.value,
            'completed_at': completed,
            'total_execution_time_ms': total_ms,
            'summary': sanitize_json(summary),
        })
        logger.info(f"Run {self.run_id} completed in {total_ms}ms")

    async def fail_run(self, error: BaseException):
        await self._write('mark run failed', 'update_run', self.run_id, {
            'status': StageStatus.FAILED.value,
            'completed_at': self._clock(),
            'error_details': format_error_for_logging(error),
        })
        logger.error(f"Run {self.run_id} failed: {classify_error(error)}")

    async def load_stage_records(self) -> List[PipelineStageRecord]:
        if self.store is None:
            return list(self.records)
        rows = await asyncio.to_thread(self.store.find_stages, self.run_id)
        return [PipelineStageRecord.from_row(row) for row in rows]

    async def aggregated_view(self) -> List[AggregatedStage]:
        return aggregate_stages_by_name(await self.load_stage_records())
