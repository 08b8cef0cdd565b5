from __future__ import annotations
from dataclasses import dataclass, field, asdict
from datetime import datetime, date, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .field_mapping import to_snake_case

DATE_FORMATS = [
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%Y/%m/%d",
]


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp from storage or an upstream payload.

    Accepts datetimes, dates, ISO strings and a few common date formats,
    plus epoch seconds/milliseconds. Naive values are taken as UTC.
    Anything unparseable gives None, which callers treat as "no timestamp".
    """
    if value is None or value == '':
        return None

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if not isinstance(value, str):
        return None

    text = value.strip()
    try:
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    except ValueError:
        pass

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue

    return None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, (tuple, set)):
        return list(value)
    return [value]


class Action(str, Enum):
    NEW = 'new'
    UPDATE = 'update'
    SKIP = 'skip'


class Reason(str, Enum):
    NO_DUPLICATE_FOUND = 'no_duplicate_found'
    API_TIMESTAMP_NOT_NEWER = 'api_timestamp_not_newer'
    API_TIMESTAMP_NEWER = 'api_timestamp_newer'
    STALE_REVIEW_NO_TIMESTAMP = 'stale_review_no_timestamp'
    STALE_REVIEW_90_DAYS = 'stale_review_90_days'
    RECENTLY_REVIEWED = 'recently_reviewed'
    NO_CRITICAL_CHANGES = 'no_critical_changes'
    FORCE_FULL_REPROCESSING = 'force_full_reprocessing'


class DetectionMethod(str, Enum):
    ID_VALIDATION = 'id_validation'
    TITLE_ONLY = 'title_only'
    NO_MATCH = 'no_match'


class StageStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    SKIPPED = 'skipped'
    UNKNOWN = 'unknown'


@dataclass
class OpportunityRecord:
    """One opportunity as fetched from an upstream source (transient per run)."""
    id: Optional[str]
    title: Optional[str]
    minimum_award: Optional[float] = None
    maximum_award: Optional[float] = None
    total_funding_available: Optional[float] = None
    open_date: Optional[str] = None
    close_date: Optional[str] = None
    api_updated_at: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    status: Optional[str] = None
    agency_name: Optional[str] = None
    funding_agency: Optional[str] = None
    eligible_locations: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = None
    raw_response_id: Optional[str] = None

    def __post_init__(self):
        if self.raw is None:
            self.raw = {}
        if self.id is not None:
            self.id = str(self.id)

    @classmethod
    def from_api(cls, payload: Dict[str, Any], raw_response_id: Optional[str] = None) -> "OpportunityRecord":
        """Build from a camelCase upstream payload (snake_case keys are accepted too)."""
        row = to_snake_case(payload)
        return cls(
            id=row.get('opportunity_id'),
            title=row.get('title'),
            minimum_award=row.get('minimum_award'),
            maximum_award=row.get('maximum_award'),
            total_funding_available=row.get('total_funding_available'),
            open_date=row.get('open_date'),
            close_date=row.get('close_date'),
            api_updated_at=row.get('api_updated_at'),
            description=row.get('description'),
            url=row.get('url'),
            status=row.get('status'),
            agency_name=row.get('agency_name'),
            funding_agency=row.get('funding_agency'),
            eligible_locations=_as_list(row.get('eligible_locations')),
            raw=dict(payload),
            raw_response_id=raw_response_id,
        )


@dataclass
class StoredOpportunity:
    """A persisted opportunity keyed by (source_id, opportunity_id)."""
    id: str
    source_id: Optional[str]
    opportunity_id: Optional[str]
    title: Optional[str]
    minimum_award: Optional[float] = None
    maximum_award: Optional[float] = None
    total_funding_available: Optional[float] = None
    open_date: Optional[Any] = None
    close_date: Optional[Any] = None
    updated_at: Optional[Any] = None
    api_updated_at: Optional[Any] = None
    row: Dict[str, Any] = None

    def __post_init__(self):
        if self.row is None:
            self.row = {}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StoredOpportunity":
        row_id = row.get('id', row.get('_id'))
        opportunity_id = row.get('opportunity_id')
        return cls(
            id=str(row_id) if row_id is not None else None,
            source_id=row.get('source_id'),
            opportunity_id=str(opportunity_id) if opportunity_id is not None else None,
            title=row.get('title'),
            minimum_award=row.get('minimum_award'),
            maximum_award=row.get('maximum_award'),
            total_funding_available=row.get('total_funding_available'),
            open_date=row.get('open_date'),
            close_date=row.get('close_date'),
            updated_at=row.get('updated_at'),
            api_updated_at=row.get('api_updated_at'),
            row=dict(row),
        )


@dataclass
class CategorizationResult:
    action: Action
    reason: Reason
    existing: Optional[StoredOpportunity] = None
    detection_method: Optional[DetectionMethod] = None
    changed_fields: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.action == Action.UPDATE and self.existing is None:
            raise ValueError("update categorization requires an existing record")
        if self.action == Action.NEW and self.existing is not None:
            raise ValueError("new categorization cannot carry an existing record")


@dataclass
class QueryResult:
    """Storage call outcome: rows on success, the error otherwise."""
    data: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> List[Dict[str, Any]]:
        if self.error is not None:
            raise self.error
        return self.data or []


@dataclass
class Checkpoint:
    stage_name: str
    timestamp: datetime
    result: Dict[str, Any]
    metrics: Dict[str, Any] = field(default_factory=dict)
    run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'stage': self.stage_name,
            'timestamp': self.timestamp.isoformat(),
            'result': self.result,
            'metrics': self.metrics,
            'run_id': self.run_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["Checkpoint"]:
        timestamp = parse_timestamp(data.get('timestamp'))
        stage = data.get('stage') or data.get('stage_name')
        if not stage or timestamp is None:
            return None
        return cls(
            stage_name=stage,
            timestamp=timestamp,
            result=data.get('result') or {},
            metrics=data.get('metrics') or {},
            run_id=data.get('run_id'),
        )


@dataclass(frozen=True)
class PipelineStageRecord:
    """One written stage row. Rows are never updated after insert."""
    run_id: str
    stage_name: str
    stage_order: int
    status: str
    job_id: Optional[str] = None
    chunk_index: Optional[int] = None
    total_chunks: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    execution_time_ms: int = 0
    api_calls_made: int = 0
    tokens_used: int = 0
    input_count: int = 0
    output_count: int = 0
    estimated_cost_usd: float = 0.0
    stage_results: Dict[str, Any] = field(default_factory=dict)
    performance_metrics: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PipelineStageRecord":
        def _int(key):
            value = row.get(key)
            try:
                return int(value) if value is not None else 0
            except (TypeError, ValueError):
                return 0

        def _float(key):
            value = row.get(key)
            try:
                return float(value) if value is not None else 0.0
            except (TypeError, ValueError):
                return 0.0

        return cls(
            run_id=str(row.get('run_id')),
            stage_name=row.get('stage_name'),
            stage_order=_int('stage_order'),
            status=row.get('status') or StageStatus.UNKNOWN.value,
            job_id=row.get('job_id'),
            chunk_index=row.get('chunk_index'),
            total_chunks=row.get('total_chunks'),
            started_at=parse_timestamp(row.get('started_at')),
            completed_at=parse_timestamp(row.get('completed_at')),
            execution_time_ms=_int('execution_time_ms'),
            api_calls_made=_int('api_calls_made'),
            tokens_used=_int('tokens_used'),
            input_count=_int('input_count'),
            output_count=_int('output_count'),
            estimated_cost_usd=_float('estimated_cost_usd'),
            stage_results=row.get('stage_results') or {},
            performance_metrics=row.get('performance_metrics') or {},
            error_message=row.get('error_message'),
        )


@dataclass
class AggregatedStage:
    """Run-level view of every chunk row that shares one stage name."""
    stage_name: str
    stage_order: int
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    execution_time_ms: int = 0
    api_calls_made: int = 0
    tokens_used: int = 0
    input_count: int = 0
    output_count: int = 0
    estimated_cost_usd: float = 0.0
    stage_results: Dict[str, Any] = field(default_factory=dict)
    performance_metrics: Dict[str, Any] = field(default_factory=dict)
    job_count: int = 0
    job_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ('started_at', 'completed_at'):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data
