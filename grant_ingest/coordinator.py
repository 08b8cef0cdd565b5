"""
Stage orchestration for one source run.

    data_extraction -> early_duplicate_detector -> direct_update -> enrichment -> storage

Every finished stage writes a stage row and a checkpoint. A resumed run
recomputes the read stages and skips write stages that already completed.
"""

from __future__ import annotations
import asyncio
import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from tqdm import tqdm

from .aggregation import merge_blobs
from .checkpoint import DEFAULT_STAGE_ORDER, PipelineCheckpoint
from .circuit_breaker import CircuitBreakerManager
from .config import PipelineSettings
from .detector import DetectionResult, detect_duplicates
from .direct_update import DirectUpdateResult, update_duplicate_opportunities
from .errors import classify_error
from .field_mapping import to_snake_case, validate_field_format
from .freshness import AMOUNT_FIELDS, to_amount
from .guard import CallGuard, run_query
from .location_parsing import expand_locations_to_state_codes, is_national_location
from .matcher import validate_source_id
from .models import OpportunityRecord, Reason, StageStatus, utcnow
from .ports import CheckpointStore, OpportunityStorage, RunStore, UpstreamClient
from .run_recorder import RunRecorder

logger = logging.getLogger(__name__)

WRITE_STAGES = {'direct_update', 'storage'}

EnrichmentHook = Callable[[List[OpportunityRecord], str], Awaitable[List[OpportunityRecord]]]


async def passthrough_enrichment(records: List[OpportunityRecord], source_id: str) -> List[OpportunityRecord]:
    return records


@dataclass
class ChunkJob:
    job_id: str
    run_id: str
    source_id: str
    chunk_index: int
    total_chunks: int
    payloads: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class PipelineResult:
    run_id: str
    source_id: str
    status: str = StageStatus.COMPLETED.value
    fetched: int = 0
    detection: Dict[str, Any] = field(default_factory=dict)
    updated: int = 0
    update_failures: int = 0
    inserted: int = 0
    insert_failures: int = 0
    insert_conflicts: int = 0
    skipped_stages: List[str] = field(default_factory=list)
    job_id: Optional[str] = None

    def summary(self) -> Dict[str, Any]:
        return {
            'fetched': self.fetched,
            'new': self.detection.get('new', 0),
            'update': self.detection.get('update', 0),
            'skip': self.detection.get('skip', 0),
            'skip_reasons': self.detection.get('skip_reasons', {}),
            'updated': self.updated,
            'update_failures': self.update_failures,
            'inserted': self.inserted,
            'insert_failures': self.insert_failures,
            'insert_conflicts': self.insert_conflicts,
            'skipped_stages': list(self.skipped_stages),
        }


@dataclass
class StageStats:
    stage_results: Dict[str, Any] = field(default_factory=dict)
    performance_metrics: Dict[str, Any] = field(default_factory=dict)
    input_count: int = 0
    output_count: int = 0
    api_calls_made: int = 0


@dataclass
class _RunContext:
    source_id: str
    recorder: RunRecorder
    checkpoint: PipelineCheckpoint
    completed: Set[str] = field(default_factory=set)
    raw_response_id: Optional[str] = None


def split_into_chunks(
    payloads: List[Dict[str, Any]],
    size: int,
    source_id: str,
    run_id: str,
) -> List[ChunkJob]:
    """Cut a fetched batch into chunk jobs of at most size records."""
    if size < 1:
        raise ValueError(f"Chunk size must be positive, got {size}")
    total = max(1, math.ceil(len(payloads) / size))
    return [
        ChunkJob(
            job_id=str(uuid.uuid4()),
            run_id=run_id,
            source_id=source_id,
            chunk_index=i,
            total_chunks=total,
            payloads=payloads[i * size:(i + 1) * size],
        )
        for i in range(total)
    ]


def build_storage_row(record: OpportunityRecord, source_id: str) -> Dict[str, Any]:
    """Snake_case storage row for a new opportunity, with normalized locations."""
    row = to_snake_case(record.raw) if record.raw else {}
    row.update({
        'source_id': source_id,
        'opportunity_id': record.id,
        'title': record.title,
        'description': record.description,
        'url': record.url,
        'status': record.status,
        'open_date': record.open_date,
        'close_date': record.close_date,
        'api_updated_at': record.api_updated_at,
        'agency_name': record.agency_name,
        'funding_agency': record.funding_agency,
        'eligible_locations': list(record.eligible_locations),
        'raw_response_id': record.raw_response_id,
    })
    for name in AMOUNT_FIELDS:
        value = getattr(record, name)
        amount = to_amount(value)
        row[name] = amount if amount is not None else value

    locations = [loc for loc in record.eligible_locations if isinstance(loc, str)]
    row['eligible_state_codes'] = expand_locations_to_state_codes(locations)
    row['is_national'] = bool(row.get('is_national')) or any(is_national_location(loc) for loc in locations)

    check = validate_field_format(row, 'snake_case')
    if not check['is_valid']:
        logger.warning(f"Storage row for {record.id} has non snake_case fields: {check['invalid_fields']}")
    return row


class PipelineCoordinator:
    """Runs the ingestion stages for a source, or for one chunk of it."""

    def __init__(
        self,
        storage: OpportunityStorage,
        upstream: Optional[UpstreamClient] = None,
        run_store: Optional[RunStore] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        settings: Optional[PipelineSettings] = None,
        breakers: Optional[CircuitBreakerManager] = None,
        enrichment: Optional[EnrichmentHook] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.storage = storage
        self.upstream = upstream
        self.run_store = run_store
        self.checkpoint_store = checkpoint_store
        self.settings = settings or PipelineSettings()
        self.breakers = breakers or CircuitBreakerManager(self.settings.breaker_options())
        self.guard = CallGuard(
            self.breakers,
            policy=self.settings.retry_policy(),
            timeout=self.settings.call_timeout_seconds,
            sleep=sleep,
        )
        self.enrichment = enrichment or passthrough_enrichment

    # Entry points

    async def process_source(
        self,
        source_id: str,
        run_id: Optional[str] = None,
        resume: bool = False,
        force_full_reprocessing: bool = False,
    ) -> PipelineResult:
        source_id = validate_source_id(source_id)
        recorder = RunRecorder(self.run_store, run_id=run_id)
        ctx = await self._open_context(source_id, recorder, recorder.run_id, resume)
        result = PipelineResult(run_id=recorder.run_id, source_id=source_id)

        if ctx is None:
            logger.info(f"Run {recorder.run_id} already completed all stages, nothing to resume")
            result.skipped_stages = list(DEFAULT_STAGE_ORDER)
            return result

        await recorder.start_run(source_id, self._run_config(force_full_reprocessing, resume))
        try:
            payloads = await self._extract(ctx, result)
            await self._run_record_stages(ctx, payloads, result, force_full_reprocessing)
        except Exception as e:
            await recorder.fail_run(e)
            raise classify_error(e)

        await recorder.complete_run(result.summary())
        return result

    async def process_chunk(
        self,
        job: ChunkJob,
        resume: bool = False,
        force_full_reprocessing: bool = False,
    ) -> PipelineResult:
        """Record stages for one chunk; stage rows carry the job metadata."""
        source_id = validate_source_id(job.source_id)
        recorder = RunRecorder(
            self.run_store,
            run_id=job.run_id,
            job_id=job.job_id,
            chunk_index=job.chunk_index,
            total_chunks=job.total_chunks,
        )
        checkpoint_key = f"{job.run_id}:{job.job_id}"
        ctx = await self._open_context(source_id, recorder, checkpoint_key, resume)
        result = PipelineResult(run_id=job.run_id, source_id=source_id, job_id=job.job_id, fetched=len(job.payloads))

        if ctx is None:
            result.skipped_stages = list(DEFAULT_STAGE_ORDER)
            return result

        logger.info(f"Processing chunk {job.chunk_index + 1}/{job.total_chunks} ({len(job.payloads)} records)")
        try:
            await self._run_record_stages(ctx, job.payloads, result, force_full_reprocessing)
        except Exception as e:
            await recorder.fail_run(e)
            raise classify_error(e)
        return result

    async def process_source_in_chunks(
        self,
        source_id: str,
        chunk_size: Optional[int] = None,
        run_id: Optional[str] = None,
        force_full_reprocessing: bool = False,
    ) -> List[PipelineResult]:
        """Fetch once, then run each chunk job in turn under the same run id."""
        source_id = validate_source_id(source_id)
        recorder = RunRecorder(self.run_store, run_id=run_id)
        checkpoint = PipelineCheckpoint(recorder.run_id, self.checkpoint_store, max_checkpoints=self.settings.max_checkpoints)
        ctx = _RunContext(source_id, recorder, checkpoint)
        parent = PipelineResult(run_id=recorder.run_id, source_id=source_id)

        await recorder.start_run(source_id, self._run_config(force_full_reprocessing, False))
        try:
            payloads = await self._extract(ctx, parent)
            jobs = split_into_chunks(payloads, chunk_size or self.settings.chunk_size, source_id, recorder.run_id)
            results = []
            for job in jobs:
                results.append(await self.process_chunk(job, force_full_reprocessing=force_full_reprocessing))
        except Exception as e:
            await recorder.fail_run(e)
            raise classify_error(e)

        summary = merge_blobs(r.summary() for r in results)
        summary['fetched'] = parent.fetched
        summary['chunks'] = len(jobs)
        await recorder.complete_run(summary)
        return results

    # Stage plumbing

    def _run_config(self, force_full_reprocessing: bool, resume: bool) -> Dict[str, Any]:
        return {
            'stale_review_days': self.settings.stale_review_days,
            'title_similarity_threshold': self.settings.title_similarity_threshold,
            'retry_max_attempts': self.settings.retry_max_attempts,
            'force_full_reprocessing': force_full_reprocessing,
            'resume': resume,
        }

    async def _open_context(self, source_id: str, recorder: RunRecorder, checkpoint_key: str,
                            resume: bool) -> Optional[_RunContext]:
        """Fresh context, or one primed from saved checkpoints. None when the run already finished."""
        checkpoint = PipelineCheckpoint(checkpoint_key, self.checkpoint_store, max_checkpoints=self.settings.max_checkpoints)
        ctx = _RunContext(source_id, recorder, checkpoint, raw_response_id=recorder.run_id)
        if not resume:
            return ctx

        loaded = await checkpoint.load_checkpoints()
        if loaded is None:
            logger.warning(f"Checkpoints for {checkpoint_key} unavailable, running all stages")
            return ctx

        point = checkpoint.get_resume_point()
        if point.is_complete:
            return None
        ctx.completed = set(checkpoint.get_completed_stages())
        if point.can_resume:
            logger.info(
                f"Resuming {checkpoint_key} after {point.last_completed} "
                f"({point.completed_count} stages done, next: {point.next_stage})"
            )
        return ctx

    async def _stage(self, ctx: _RunContext, name: str, fn: Callable[[], Awaitable[Any]],
                     stats: Callable[[Any], StageStats]) -> Any:
        ctx.recorder.start_stage(name)
        try:
            output = await fn()
        except Exception as e:
            error = classify_error(e)
            logger.error(f"Stage {name} failed for {ctx.source_id}: {error}")
            await ctx.recorder.fail_stage(name, error)
            raise error

        stage_stats = stats(output)
        record = await ctx.recorder.complete_stage(
            name,
            stage_results=stage_stats.stage_results,
            performance_metrics=stage_stats.performance_metrics,
            input_count=stage_stats.input_count,
            output_count=stage_stats.output_count,
            api_calls_made=stage_stats.api_calls_made,
        )
        await ctx.checkpoint.save_checkpoint(
            name,
            {
                'status': StageStatus.COMPLETED.value,
                'count': stage_stats.output_count,
                'execution_time_ms': record.execution_time_ms,
                'metrics': stage_stats.stage_results,
            },
            stage_stats.performance_metrics,
        )
        return output

    def _should_skip(self, ctx: _RunContext, name: str, result: PipelineResult) -> bool:
        if name in WRITE_STAGES and name in ctx.completed:
            logger.info(f"Skipping {name}: already completed in an earlier attempt")
            result.skipped_stages.append(name)
            return True
        return False

    # Stages

    async def _extract(self, ctx: _RunContext, result: PipelineResult) -> List[Dict[str, Any]]:
        if self.upstream is None:
            raise ValueError('No upstream client configured')

        async def fetch():
            return await self.guard.call(ctx.source_id, 'fetch', lambda: self.upstream.fetch(ctx.source_id))

        outcome = await self._stage(ctx, 'data_extraction', fetch, lambda o: StageStats(
            stage_results={'fetched': len(o.result or [])},
            performance_metrics={'attempts': o.attempts},
            output_count=len(o.result or []),
            api_calls_made=o.attempts,
        ))
        payloads = list(outcome.result or [])
        result.fetched = len(payloads)
        logger.info(f"Fetched {len(payloads)} records from {ctx.source_id}")
        return payloads

    async def _run_record_stages(self, ctx: _RunContext, payloads: List[Dict[str, Any]],
                                 result: PipelineResult, force_full_reprocessing: bool):
        records = [OpportunityRecord.from_api(p, ctx.raw_response_id) for p in payloads]

        detection = await self._stage(
            ctx, 'early_duplicate_detector',
            lambda: self._detect(ctx, records, force_full_reprocessing),
            lambda d: StageStats(
                stage_results=d.summary(),
                performance_metrics=d.metrics,
                input_count=len(records),
                output_count=len(d.new_opportunities) + len(d.to_update),
            ),
        )
        result.detection = detection.summary()

        if not self._should_skip(ctx, 'direct_update', result):
            updates = await self._stage(
                ctx, 'direct_update',
                lambda: update_duplicate_opportunities(
                    detection.to_update, self.storage, self.guard,
                    tolerance=self.settings.amount_change_tolerance,
                ),
                lambda u: StageStats(
                    stage_results={
                        'successful': len(u.successful),
                        'failed': len(u.failed),
                        'skipped': len(u.skipped),
                        'failed_ids': [o.candidate.record.id for o in u.failed],
                    },
                    performance_metrics=u.metrics,
                    input_count=len(detection.to_update),
                    output_count=len(u.successful),
                ),
            )
            self._tally_updates(updates, result)

        enriched = await self._stage(
            ctx, 'enrichment',
            lambda: self.enrichment(detection.new_opportunities, ctx.source_id),
            lambda e: StageStats(
                stage_results={'enriched': len(e)},
                input_count=len(detection.new_opportunities),
                output_count=len(e),
            ),
        )

        if not self._should_skip(ctx, 'storage', result):
            stored = await self._stage(
                ctx, 'storage',
                lambda: self._store(ctx.source_id, enriched),
                lambda s: StageStats(
                    stage_results=s,
                    input_count=len(enriched),
                    output_count=s['inserted'],
                ),
            )
            result.inserted = stored['inserted']
            result.insert_failures = stored['failed']
            result.insert_conflicts = stored['conflicts']

    async def _detect(self, ctx: _RunContext, records: List[OpportunityRecord],
                      force_full_reprocessing: bool) -> DetectionResult:
        if force_full_reprocessing:
            logger.info(f"Force full reprocessing: treating all {len(records)} records from {ctx.source_id} as new")
            return DetectionResult(
                new_opportunities=list(records),
                metrics={
                    'total_processed': len(records),
                    'new_opportunities': len(records),
                    'bypass_reason': Reason.FORCE_FULL_REPROCESSING.value,
                },
            )
        return await detect_duplicates(
            records,
            ctx.source_id,
            self.storage,
            guard=self.guard,
            policy=self.settings.freshness_policy(),
            similarity_threshold=self.settings.title_similarity_threshold,
            min_title_length=self.settings.min_title_length,
            raw_response_id=ctx.raw_response_id,
            now=utcnow(),
        )

    @staticmethod
    def _tally_updates(updates: DirectUpdateResult, result: PipelineResult):
        result.updated = len(updates.successful)
        result.update_failures = len(updates.failed)

    async def _store(self, source_id: str, records: List[OpportunityRecord]) -> Dict[str, Any]:
        inserted_ids, conflict_ids, failed_ids, errors = [], [], [], []
        for record in tqdm(records, desc=f"Storing {source_id}", disable=not self.settings.show_progress):
            try:
                row = build_storage_row(record, source_id)
                rows = await run_query(self.guard, 'insert', self.storage.insert, row, source_id=source_id)
            except Exception as e:
                error = classify_error(e)
                logger.error(f"Failed to store {record.id} ({record.title}): {error}")
                failed_ids.append(record.id)
                errors.append(error.code)
                continue

            if rows and rows[0].get('conflict'):
                logger.warning(f"Not storing {record.id} ({record.title}): id already used by a stored opportunity")
                conflict_ids.append(record.id)
            else:
                inserted_ids.append(record.id)

        logger.info(
            f"Storage for {source_id}: {len(inserted_ids)} inserted, "
            f"{len(conflict_ids)} id conflicts, {len(failed_ids)} failed"
        )
        return {
            'inserted': len(inserted_ids),
            'conflicts': len(conflict_ids),
            'failed': len(failed_ids),
            'inserted_ids': inserted_ids,
            'conflict_ids': conflict_ids,
            'failed_ids': failed_ids,
            'errors': errors,
        }
