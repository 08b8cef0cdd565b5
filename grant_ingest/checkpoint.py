"""
Stage checkpoints for crash recovery.

After each stage a small summary of its result is recorded and persisted
with the run, so a restarted run can pick up at the next incomplete stage.
Resume follows the configured stage order, never the order in which
checkpoints happened to arrive.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .errors import ErrorCategory, PipelineError, Severity, classify_error
from .models import Checkpoint, utcnow
from .ports import CheckpointStore

logger = logging.getLogger(__name__)

DEFAULT_STAGE_ORDER = [
    'data_extraction',
    'early_duplicate_detector',
    'direct_update',
    'enrichment',
    'storage',
]

MAX_SUMMARY_METRICS = 20
LIST_KEYS = ('opportunities', 'items', 'records', 'new_opportunities')


class CheckpointPersistenceError(PipelineError):
    category = ErrorCategory.DATABASE
    default_code = 'CHECKPOINT_PERSISTENCE_FAILED'
    default_retryable = False
    default_severity = Severity.CRITICAL


@dataclass
class ResumePoint:
    can_resume: bool
    next_stage: Optional[str] = None
    last_completed: Optional[str] = None
    completed_count: int = 0
    is_complete: bool = False


def summarize_result(result: Any) -> Dict[str, Any]:
    """Reduce a stage result to status, counts and timing. Payloads are never stored."""
    if not isinstance(result, dict):
        return {'status': 'completed', 'item_count': 0, 'has_data': result is not None}

    item_count = 0
    for key in LIST_KEYS:
        if isinstance(result.get(key), list):
            item_count = len(result[key])
            break
    else:
        count = result.get('count', result.get('total'))
        if isinstance(count, int):
            item_count = count

    summary = {
        'status': result.get('status', 'completed'),
        'item_count': item_count,
        'execution_time_ms': result.get('execution_time_ms'),
        'has_data': bool(result),
    }
    metrics = result.get('metrics')
    if isinstance(metrics, dict) and len(metrics) < MAX_SUMMARY_METRICS:
        summary['metrics'] = metrics
    return summary


class PipelineCheckpoint:
    """Checkpoints of one run, kept in memory and mirrored to a CheckpointStore."""

    def __init__(
        self,
        run_id: str,
        store: Optional[CheckpointStore] = None,
        stages: Optional[List[str]] = None,
        max_checkpoints: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.run_id = run_id
        self.store = store
        self.stages = list(stages or DEFAULT_STAGE_ORDER)
        self.max_checkpoints = max_checkpoints
        self._clock = clock
        self.checkpoints: Dict[str, Checkpoint] = {}

    async def save_checkpoint(self, stage: str, result: Any, metrics: Optional[Dict[str, Any]] = None) -> Checkpoint:
        """
        Record that stage finished and persist the checkpoint set.

        A retryable persistence failure is logged and the run continues with
        coarser resume granularity. A non-retryable one raises
        CheckpointPersistenceError.
        """
        timestamp = self._clock()
        previous = self.checkpoints.get(stage)
        if previous is not None and timestamp <= previous.timestamp:
            timestamp = previous.timestamp + timedelta(microseconds=1)

        checkpoint = Checkpoint(
            stage_name=stage,
            timestamp=timestamp,
            result=summarize_result(result),
            metrics=dict(metrics or {}),
            run_id=self.run_id,
        )
        self.checkpoints.pop(stage, None)
        self.checkpoints[stage] = checkpoint
        self._cleanup()
        logger.info(f"Checkpoint saved for run {self.run_id}: {stage}")

        await self._persist()
        return checkpoint

    def _cleanup(self):
        if len(self.checkpoints) <= self.max_checkpoints:
            return
        newest = sorted(self.checkpoints.values(), key=lambda c: c.timestamp, reverse=True)
        keep = {c.stage_name for c in newest[:self.max_checkpoints]}
        self.checkpoints = {name: cp for name, cp in self.checkpoints.items() if name in keep}

    def _payload(self) -> Dict[str, Any]:
        last = self.get_last_checkpoint()
        return {
            'last_stage': last.stage_name if last else None,
            'checkpoints': [cp.to_dict() for cp in self.checkpoints.values()],
            'can_resume': bool(self.checkpoints),
            'updated_at': utcnow().isoformat(),
        }

    async def _persist(self):
        if self.store is None:
            return
        try:
            await asyncio.to_thread(self.store.save_checkpoint_data, self.run_id, self._payload())
        except Exception as e:
            error = classify_error(e)
            if not error.retryable:
                logger.error(f"Critical checkpoint persistence failure for run {self.run_id}: {error}")
                raise CheckpointPersistenceError(
                    f"Critical checkpoint persistence failure: {error.message}",
                    context={'run_id': self.run_id, 'category': error.category.value},
                    cause=e,
                ) from e
            logger.warning(f"Checkpoint persistence failed for run {self.run_id}, continuing: {error}")

    async def load_checkpoints(self, run_id: Optional[str] = None) -> Optional[List[Checkpoint]]:
        """
        Load persisted checkpoints into memory.

        Returns None when the store cannot be read, in which case the run
        cannot be resumed.
        """
        run_id = run_id or self.run_id
        if self.store is None:
            return list(self.checkpoints.values())
        try:
            data = await asyncio.to_thread(self.store.load_checkpoint_data, run_id)
        except Exception as e:
            logger.error(f"Failed to load checkpoints for run {run_id}: {classify_error(e)}")
            return None

        loaded = {}
        for item in (data or {}).get('checkpoints') or []:
            checkpoint = Checkpoint.from_dict(item)
            if checkpoint is not None:
                loaded[checkpoint.stage_name] = checkpoint
        self.run_id = run_id
        self.checkpoints = loaded
        self._cleanup()
        logger.info(f"Loaded {len(loaded)} checkpoints for run {run_id}")
        return list(self.checkpoints.values())

    def get_completed_stages(self) -> List[str]:
        """Known stages with a successful checkpoint, in stage order."""
        return [
            stage for stage in self.stages
            if stage in self.checkpoints and self.checkpoints[stage].result.get('status') != 'failed'
        ]

    def get_resume_point(self) -> ResumePoint:
        completed = self.get_completed_stages()
        if not completed:
            return ResumePoint(can_resume=False)

        last_completed = max(completed, key=self.stages.index)
        position = self.stages.index(last_completed)
        if position == len(self.stages) - 1:
            return ResumePoint(
                can_resume=False,
                last_completed=last_completed,
                completed_count=len(completed),
                is_complete=True,
            )
        return ResumePoint(
            can_resume=True,
            next_stage=self.stages[position + 1],
            last_completed=last_completed,
            completed_count=len(completed),
        )

    def get_last_checkpoint(self) -> Optional[Checkpoint]:
        if not self.checkpoints:
            return None
        return max(self.checkpoints.values(), key=lambda c: c.timestamp)

    def get_checkpoint(self, stage: str) -> Optional[Checkpoint]:
        return self.checkpoints.get(stage)

    def has_checkpoint(self, stage: str) -> bool:
        return stage in self.checkpoints

    async def clear_checkpoints(self):
        self.checkpoints = {}
        await self._persist()
        logger.info(f"Cleared checkpoints for run {self.run_id}")
