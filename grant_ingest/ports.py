"""Interfaces the pipeline core needs from its collaborators.

Storage and run-store calls are blocking (the pymongo adapters are); the
core runs them in worker threads. The upstream client is async.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Protocol

from .models import QueryResult


class OpportunityStorage(Protocol):
    """Batched lookups and single-row writes on stored opportunities."""

    def find_by_ids(self, source_id: str, ids: List[str]) -> QueryResult:
        ...

    def find_by_titles(self, source_id: str, titles: List[str]) -> QueryResult:
        ...

    def insert(self, row: Dict[str, Any]) -> QueryResult:
        """Insert a new row. Never overwrites: an existing key comes back as [{"id": ..., "conflict": True}]."""
        ...

    def update(self, opportunity_id: str, fields: Dict[str, Any]) -> QueryResult:
        ...


class RunStore(Protocol):
    """Persistence for run headers and immutable stage rows."""

    def insert_run(self, run: Dict[str, Any]) -> None:
        ...

    def update_run(self, run_id: str, fields: Dict[str, Any]) -> None:
        ...

    def insert_stage(self, row: Dict[str, Any]) -> None:
        ...

    def find_stages(self, run_id: str) -> List[Dict[str, Any]]:
        ...


class CheckpointStore(Protocol):
    """Where a run's checkpoint document lives."""

    def save_checkpoint_data(self, run_id: str, payload: Dict[str, Any]) -> None:
        ...

    def load_checkpoint_data(self, run_id: str) -> Optional[Dict[str, Any]]:
        ...


class UpstreamClient(Protocol):
    """Fetches the raw camelCase opportunity payloads for one source."""

    async def fetch(self, source_id: str) -> List[Dict[str, Any]]:
        ...
