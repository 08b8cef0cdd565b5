"""
MongoDB adapters for opportunities, runs, stage rows and checkpoints.

Collections:
    funding_opportunities  one document per (source_id, opportunity_id)
    pipeline_runs          run header, with checkpoint_data embedded
    pipeline_stages        one immutable document per stage (and chunk)
"""

from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    DuplicateKeyError,
    ExecutionTimeout,
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
    WTimeoutError,
)

from ..errors import DatabaseError, PipelineError, PipelineTimeoutError, classify_error
from ..matcher import title_key
from ..models import QueryResult, utcnow

logger = logging.getLogger(__name__)

OPPORTUNITIES_COLLECTION = 'funding_opportunities'
RUNS_COLLECTION = 'pipeline_runs'
STAGES_COLLECTION = 'pipeline_stages'


def convert_mongo_error(exc: PyMongoError) -> PipelineError:
    """Map driver exceptions onto the pipeline taxonomy."""
    if isinstance(exc, DuplicateKeyError):
        return DatabaseError(str(exc), code='DUPLICATE_KEY', retryable=False, cause=exc)
    if isinstance(exc, (NetworkTimeout, ExecutionTimeout, WTimeoutError, ServerSelectionTimeoutError)):
        return PipelineTimeoutError(str(exc), operation='mongodb', cause=exc)
    if isinstance(exc, (AutoReconnect, ConnectionFailure)):
        return DatabaseError(str(exc), code='CONNECTION_ERROR', retryable=True, cause=exc)
    return classify_error(exc)


def _object_id(value: Any) -> Any:
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


def _to_row(doc: Dict[str, Any]) -> Dict[str, Any]:
    row = dict(doc)
    row['id'] = str(row.pop('_id'))
    return row


class MongoOpportunityStorage:
    """Opportunity lookups and writes against funding_opportunities."""

    def __init__(self, db: Database, collection_name: str = OPPORTUNITIES_COLLECTION):
        self.collection = db[collection_name]

    def ensure_indexes(self):
        self.collection.create_index(
            [('source_id', ASCENDING), ('opportunity_id', ASCENDING)],
            unique=True,
            partialFilterExpression={'opportunity_id': {'$type': 'string'}},
            name='source_opportunity_unique',
        )
        self.collection.create_index(
            [('source_id', ASCENDING), ('title_key', ASCENDING)],
            name='source_title_key',
        )
        logger.info(f"Indexes ensured on {self.collection.name}")

    def find_by_ids(self, source_id: str, ids: List[str]) -> QueryResult:
        try:
            docs = self.collection.find({'source_id': source_id, 'opportunity_id': {'$in': list(ids)}})
            return QueryResult(data=[_to_row(doc) for doc in docs])
        except PyMongoError as e:
            return QueryResult(error=convert_mongo_error(e))

    def find_by_titles(self, source_id: str, titles: List[str]) -> QueryResult:
        keys = [k for k in (title_key(t) for t in titles) if k]
        try:
            docs = self.collection.find({'source_id': source_id, 'title_key': {'$in': keys}})
            return QueryResult(data=[_to_row(doc) for doc in docs])
        except PyMongoError as e:
            return QueryResult(error=convert_mongo_error(e))

    def insert(self, row: Dict[str, Any]) -> QueryResult:
        """
        Insert a new opportunity.

        Rows with an opportunity_id go through an insert-only upsert on
        (source_id, opportunity_id): every field sits under $setOnInsert, so
        a stored program is never overwritten. When a document with that
        key already exists (a resumed stage, or an id reused upstream for a
        different program) nothing is written and the row comes back
        flagged with conflict=True.
        """
        now = utcnow()
        doc = {k: v for k, v in row.items() if k not in ('_id', 'id', 'created_at')}
        doc['title_key'] = title_key(doc.get('title'))
        doc.setdefault('updated_at', now)
        doc['created_at'] = row.get('created_at') or now

        try:
            if doc.get('opportunity_id'):
                key = {'source_id': doc.get('source_id'), 'opportunity_id': doc['opportunity_id']}
                on_insert = {k: v for k, v in doc.items() if k not in key}
                result = self.collection.update_one(key, {'$setOnInsert': on_insert}, upsert=True)
                if result.upserted_id is None:
                    existing = self.collection.find_one(key, {'_id': 1, 'title': 1})
                    logger.warning(
                        f"Opportunity {doc['opportunity_id']} already stored for {doc.get('source_id')} "
                        f"as {existing.get('title') if existing else None!r}, left unchanged"
                    )
                    existing_id = existing['_id'] if existing else None
                    return QueryResult(data=[{'id': str(existing_id), 'conflict': True}])
                inserted_id = result.upserted_id
            else:
                inserted_id = self.collection.insert_one(doc).inserted_id
        except PyMongoError as e:
            return QueryResult(error=convert_mongo_error(e))

        return QueryResult(data=[{'id': str(inserted_id)}])

    def update(self, opportunity_id: str, fields: Dict[str, Any]) -> QueryResult:
        changes = {k: v for k, v in fields.items() if k not in ('_id', 'id')}
        if 'title' in changes:
            changes['title_key'] = title_key(changes['title'])
        try:
            result = self.collection.update_one({'_id': _object_id(opportunity_id)}, {'$set': changes})
        except PyMongoError as e:
            return QueryResult(error=convert_mongo_error(e))

        if result.matched_count == 0:
            return QueryResult(error=DatabaseError(
                f"Opportunity {opportunity_id} not found",
                code='NOT_FOUND',
                retryable=False,
            ))
        return QueryResult(data=[{'id': str(opportunity_id), **changes}])


class MongoRunStore:
    """Run headers, stage rows and checkpoint data."""

    def __init__(self, db: Database, runs_name: str = RUNS_COLLECTION, stages_name: str = STAGES_COLLECTION):
        self.runs = db[runs_name]
        self.stages = db[stages_name]

    def ensure_indexes(self):
        self.runs.create_index('run_id', unique=True)
        self.stages.create_index([('run_id', ASCENDING), ('stage_order', ASCENDING)])

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except PyMongoError as e:
            raise convert_mongo_error(e) from e

    def insert_run(self, run: Dict[str, Any]) -> None:
        self._call(
            self.runs.update_one,
            {'run_id': run['run_id']},
            {'$set': run, '$setOnInsert': {'created_at': utcnow()}},
            upsert=True,
        )

    def update_run(self, run_id: str, fields: Dict[str, Any]) -> None:
        self._call(self.runs.update_one, {'run_id': run_id}, {'$set': fields})

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self._call(self.runs.find_one, {'run_id': run_id}, {'_id': 0})

    def insert_stage(self, row: Dict[str, Any]) -> None:
        self._call(self.stages.insert_one, dict(row))

    def find_stages(self, run_id: str) -> List[Dict[str, Any]]:
        cursor = self._call(self.stages.find, {'run_id': run_id}, {'_id': 0})
        return sorted(cursor, key=lambda r: (r.get('stage_order') or 0, r.get('chunk_index') or 0))

    def save_checkpoint_data(self, run_id: str, payload: Dict[str, Any]) -> None:
        self._call(
            self.runs.update_one,
            {'run_id': run_id},
            {'$set': {'checkpoint_data': payload}},
            upsert=True,
        )

    def load_checkpoint_data(self, run_id: str) -> Optional[Dict[str, Any]]:
        doc = self._call(self.runs.find_one, {'run_id': run_id}, {'checkpoint_data': 1})
        if not doc:
            return None
        return doc.get('checkpoint_data')


def connect(mongo_uri: str, db_name: str, timeout_ms: int = 10000) -> Tuple[MongoClient, Database]:
    client = MongoClient(mongo_uri, serverSelectionTimeoutMS=timeout_ms)
    logger.info(f"Connected to MongoDB database {db_name}")
    return client, client[db_name]
