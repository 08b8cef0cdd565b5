"""
Identity resolution between fetched records and stored opportunities.

Sources reuse and recycle their ids, so an id hit is only trusted when the
titles agree. Titles are the fallback key. Candidates for a whole batch are
fetched up front with two queries (ids, titles), never one per record.
"""

from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import ValidationError, classify_error
from .guard import CallGuard, run_query
from .models import DetectionMethod, OpportunityRecord, StoredOpportunity
from .ports import OpportunityStorage

logger = logging.getLogger(__name__)

MIN_TITLE_LENGTH = 10
DEFAULT_SIMILARITY_THRESHOLD = 0.7
MIN_TOKEN_LENGTH = 4

_UUID_RE = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE)
_SLUG_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$')


def validate_source_id(source_id) -> str:
    """A source id must be a UUID or a short slug. Anything else aborts the run."""
    if not isinstance(source_id, str) or not source_id.strip():
        raise ValidationError('Source ID is required', code='INVALID_SOURCE_ID',
                              context={'source_id': repr(source_id)})
    source_id = source_id.strip()
    if not (_UUID_RE.match(source_id) or _SLUG_RE.match(source_id)):
        raise ValidationError(f"Malformed source ID: {source_id!r}", code='INVALID_SOURCE_ID',
                              context={'source_id': source_id})
    return source_id


def title_key(title: Optional[str]) -> Optional[str]:
    """Case and whitespace insensitive key for exact-title lookups."""
    if not title or not isinstance(title, str):
        return None
    key = ' '.join(title.lower().split())
    return key or None


def normalize_title(title: str) -> str:
    title = title.lower()
    title = re.sub(r'[^\w\s]', ' ', title)
    return re.sub(r'\s+', ' ', title).strip()


def titles_are_similar(title1: Optional[str], title2: Optional[str],
                       threshold: float = DEFAULT_SIMILARITY_THRESHOLD) -> bool:
    """
    True when two titles plausibly name the same program.

    Exact match, containment after normalization ("Solar Grant" vs
    "Solar Grant 2024"), or a Jaccard overlap of the longer words
    (more than 3 characters) of at least threshold.
    """
    if not title1 or not title2:
        return False
    if title1.strip() == title2.strip():
        return True

    norm1 = normalize_title(title1)
    norm2 = normalize_title(title2)
    if not norm1 or not norm2:
        return False
    if norm1 in norm2 or norm2 in norm1:
        return True

    words1 = {w for w in norm1.split(' ') if len(w) >= MIN_TOKEN_LENGTH}
    words2 = {w for w in norm2.split(' ') if len(w) >= MIN_TOKEN_LENGTH}
    if not words1 or not words2:
        return False

    overlap = len(words1 & words2) / len(words1 | words2)
    return overlap >= threshold


@dataclass
class CandidateIndex:
    """Stored candidates for one batch, keyed by opportunity id and by title key."""
    by_id: Dict[str, StoredOpportunity] = field(default_factory=dict)
    by_title: Dict[str, StoredOpportunity] = field(default_factory=dict)
    id_lookup_failed: bool = False
    title_lookup_failed: bool = False
    queries_executed: int = 0


@dataclass
class MatchResult:
    existing: Optional[StoredOpportunity]
    method: DetectionMethod
    id_validation_failed: bool = False


def _unique_ids(records: List[OpportunityRecord]) -> List[str]:
    seen = {}
    for record in records:
        if record.id is not None and str(record.id).strip():
            seen.setdefault(str(record.id).strip(), None)
    return list(seen)


def _unique_titles(records: List[OpportunityRecord], min_title_length: int) -> List[str]:
    seen = {}
    for record in records:
        if isinstance(record.title, str):
            title = record.title.strip()
            if len(title) >= min_title_length:
                seen.setdefault(title, None)
    return list(seen)


def _belongs_to(row: StoredOpportunity, source_id: str) -> bool:
    return row.source_id is None or row.source_id == source_id


async def build_candidate_index(
    records: List[OpportunityRecord],
    source_id: str,
    storage: OpportunityStorage,
    guard: Optional[CallGuard] = None,
    min_title_length: int = MIN_TITLE_LENGTH,
) -> CandidateIndex:
    """
    Fetch every stored candidate for the batch in at most two queries.

    A failed id query leaves matching to titles; a failed title query leaves
    unmatched records to be treated as new. Both are logged, neither raises.
    """
    index = CandidateIndex()
    ids = _unique_ids(records)
    titles = _unique_titles(records, min_title_length)

    if ids:
        index.queries_executed += 1
        try:
            rows = await run_query(guard, 'find_by_ids', storage.find_by_ids, source_id, ids,
                                   source_id=source_id)
            for row in rows:
                stored = StoredOpportunity.from_row(row)
                if stored.opportunity_id and _belongs_to(stored, source_id):
                    index.by_id.setdefault(stored.opportunity_id, stored)
        except Exception as e:
            index.id_lookup_failed = True
            error = classify_error(e)
            logger.error(f"ID lookup failed for source {source_id}, falling back to title matching: {error}")

    if titles:
        index.queries_executed += 1
        try:
            rows = await run_query(guard, 'find_by_titles', storage.find_by_titles, source_id, titles,
                                   source_id=source_id)
            for row in rows:
                stored = StoredOpportunity.from_row(row)
                key = title_key(stored.title)
                if key and _belongs_to(stored, source_id):
                    index.by_title.setdefault(key, stored)
        except Exception as e:
            index.title_lookup_failed = True
            error = classify_error(e)
            logger.error(f"Title lookup failed for source {source_id}, unmatched records will be treated as new: {error}")

    logger.info(
        f"Candidate index for {source_id}: {len(index.by_id)} by id, "
        f"{len(index.by_title)} by title ({index.queries_executed} queries)"
    )
    return index


def find_existing(
    record: OpportunityRecord,
    source_id: str,
    index: CandidateIndex,
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    min_title_length: int = MIN_TITLE_LENGTH,
) -> MatchResult:
    """Resolve a fetched record to a stored one: validated id, then exact title."""
    id_validation_failed = False

    record_id = str(record.id).strip() if record.id is not None else ''
    if record_id:
        candidate = index.by_id.get(record_id)
        if candidate is not None and _belongs_to(candidate, source_id):
            if titles_are_similar(record.title, candidate.title, threshold):
                return MatchResult(candidate, DetectionMethod.ID_VALIDATION)
            id_validation_failed = True
            logger.warning(
                f"Possible ID reuse for {record_id}: incoming title {record.title!r} "
                f"does not match stored title {candidate.title!r}"
            )

    if isinstance(record.title, str) and len(record.title.strip()) >= min_title_length:
        candidate = index.by_title.get(title_key(record.title))
        if candidate is not None and _belongs_to(candidate, source_id):
            return MatchResult(candidate, DetectionMethod.TITLE_ONLY, id_validation_failed)

    return MatchResult(None, DetectionMethod.NO_MATCH, id_validation_failed)
