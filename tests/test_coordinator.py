from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
import requests

from grant_ingest.config import PipelineSettings
from grant_ingest.coordinator import PipelineCoordinator, build_storage_row, split_into_chunks
from grant_ingest.errors import ApiError, ValidationError
from grant_ingest.models import Checkpoint, OpportunityRecord, QueryResult
from grant_ingest.run_recorder import RunRecorder

SOURCE = "grants-gov"


class DummyResponse:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        self.headers = {}


class FakeStorage:
    def __init__(self, rows=None) -> None:
        self.rows = list(rows or [])
        self.inserted = []
        self.updates = []

    def find_by_ids(self, source_id, ids):
        return QueryResult(data=[
            r for r in self.rows if r["source_id"] == source_id and r["opportunity_id"] in ids
        ])

    def find_by_titles(self, source_id, titles):
        keys = {t.lower() for t in titles}
        return QueryResult(data=[
            r for r in self.rows if r["source_id"] == source_id and r["title"].lower() in keys
        ])

    def insert(self, row):
        for stored in self.rows:
            if stored["source_id"] == row["source_id"] and stored["opportunity_id"] == row["opportunity_id"]:
                return QueryResult(data=[{"id": stored["id"], "conflict": True}])
        self.inserted.append(row)
        self.rows.append(dict(row, id=f"db-{row['opportunity_id']}"))
        return QueryResult(data=[{"id": f"db-{row['opportunity_id']}"}])

    def update(self, opportunity_id, fields):
        self.updates.append((opportunity_id, fields))
        return QueryResult(data=[{"id": opportunity_id}])


class FakeUpstream:
    def __init__(self, payloads=None, status: "int | None" = None) -> None:
        self.payloads = list(payloads or [])
        self.status = status
        self.calls = 0

    async def fetch(self, source_id):
        self.calls += 1
        if self.status is not None:
            raise requests.HTTPError(f"{self.status} Error", response=DummyResponse(self.status))
        return list(self.payloads)


class FakeRunStore:
    def __init__(self) -> None:
        self.runs = {}
        self.stages = []
        self.checkpoint_data = {}

    def insert_run(self, run):
        self.runs[run["run_id"]] = dict(run)

    def update_run(self, run_id, fields):
        self.runs.setdefault(run_id, {"run_id": run_id}).update(fields)

    def get_run(self, run_id):
        return self.runs.get(run_id)

    def insert_stage(self, row):
        self.stages.append(dict(row))

    def find_stages(self, run_id):
        rows = [r for r in self.stages if r["run_id"] == run_id]
        return sorted(rows, key=lambda r: (r["stage_order"], r.get("chunk_index") or 0))

    def save_checkpoint_data(self, run_id, payload):
        self.checkpoint_data[run_id] = payload

    def load_checkpoint_data(self, run_id):
        return self.checkpoint_data.get(run_id)


async def no_sleep(seconds: float) -> None:
    return None


def stored_row(opportunity_id: str, title: str, **fields) -> dict:
    row = {"id": f"db-{opportunity_id}", "source_id": SOURCE, "opportunity_id": opportunity_id, "title": title}
    row.update(fields)
    return row


PAYLOADS = [
    {"id": "X1", "title": "Solar Grant 2024", "apiUpdatedAt": "2024-06-01", "maximumAward": 500000},
    {"id": "X3", "title": "Rural Broadband Expansion", "eligibleLocations": ["California", "Oregon"]},
]


def make_coordinator(storage=None, upstream=None, run_store=None, **settings):
    run_store = run_store if run_store is not None else FakeRunStore()
    return PipelineCoordinator(
        storage if storage is not None else FakeStorage(),
        upstream=upstream,
        run_store=run_store,
        checkpoint_store=run_store,
        settings=PipelineSettings(show_progress=False, **settings),
        sleep=no_sleep,
    )


def seeded_storage() -> FakeStorage:
    return FakeStorage([stored_row("X1", "Solar Grant 2024", api_updated_at="2024-05-01", maximum_award=400000)])


def checkpoint_payload(run_id: str, stages) -> dict:
    timestamp = datetime(2024, 7, 1, tzinfo=timezone.utc)
    return {
        "last_stage": stages[-1],
        "checkpoints": [
            Checkpoint(stage, timestamp, {"status": "completed"}, run_id=run_id).to_dict() for stage in stages
        ],
        "can_resume": True,
    }


def test_full_run_updates_inserts_and_records_every_stage() -> None:
    storage = seeded_storage()
    run_store = FakeRunStore()
    coordinator = make_coordinator(storage, FakeUpstream(PAYLOADS), run_store)

    result = asyncio.run(coordinator.process_source(SOURCE, run_id="run-1"))

    assert result.fetched == 2
    assert result.updated == 1
    assert result.inserted == 1
    assert result.skipped_stages == []

    opportunity_id, fields = storage.updates[0]
    assert opportunity_id == "db-X1"
    assert fields["maximum_award"] == 500000
    assert fields["raw_response_id"] == "run-1"

    [row] = storage.inserted
    assert row["opportunity_id"] == "X3"
    assert row["eligible_state_codes"] == ["CA", "OR"]
    assert row["is_national"] is False

    names = [s["stage_name"] for s in run_store.find_stages("run-1")]
    assert names == ["data_extraction", "early_duplicate_detector", "direct_update", "enrichment", "storage"]
    assert all(s["status"] == "completed" for s in run_store.stages)
    assert run_store.runs["run-1"]["status"] == "completed"
    assert run_store.runs["run-1"]["summary"]["inserted"] == 1
    assert run_store.checkpoint_data["run-1"]["last_stage"] == "storage"


def test_resume_skips_completed_write_stages() -> None:
    storage = seeded_storage()
    run_store = FakeRunStore()
    run_store.checkpoint_data["run-2"] = checkpoint_payload(
        "run-2", ["data_extraction", "early_duplicate_detector", "direct_update"]
    )
    coordinator = make_coordinator(storage, FakeUpstream(PAYLOADS), run_store)

    result = asyncio.run(coordinator.process_source(SOURCE, run_id="run-2", resume=True))

    assert result.skipped_stages == ["direct_update"]
    assert storage.updates == []
    assert result.inserted == 1
    assert "direct_update" not in [s["stage_name"] for s in run_store.stages]


def test_resume_of_finished_run_does_nothing() -> None:
    upstream = FakeUpstream(PAYLOADS)
    run_store = FakeRunStore()
    run_store.checkpoint_data["run-3"] = checkpoint_payload(
        "run-3", ["data_extraction", "early_duplicate_detector", "direct_update", "enrichment", "storage"]
    )
    coordinator = make_coordinator(seeded_storage(), upstream, run_store)

    result = asyncio.run(coordinator.process_source(SOURCE, run_id="run-3", resume=True))

    assert upstream.calls == 0
    assert "storage" in result.skipped_stages
    assert run_store.stages == []


def test_fetch_failure_marks_stage_and_run_failed() -> None:
    run_store = FakeRunStore()
    coordinator = make_coordinator(seeded_storage(), FakeUpstream(status=404), run_store)

    with pytest.raises(ApiError):
        asyncio.run(coordinator.process_source(SOURCE, run_id="run-4"))

    [stage] = run_store.stages
    assert stage["stage_name"] == "data_extraction"
    assert stage["status"] == "failed"
    assert stage["error_message"]
    assert run_store.runs["run-4"]["status"] == "failed"


def test_malformed_source_id_aborts_before_fetch() -> None:
    upstream = FakeUpstream(PAYLOADS)
    coordinator = make_coordinator(seeded_storage(), upstream)
    with pytest.raises(ValidationError):
        asyncio.run(coordinator.process_source("not a source; drop"))
    assert upstream.calls == 0


def test_force_full_reprocessing_sends_everything_to_storage() -> None:
    storage = seeded_storage()
    run_store = FakeRunStore()
    coordinator = make_coordinator(storage, FakeUpstream(PAYLOADS), run_store)

    result = asyncio.run(coordinator.process_source(SOURCE, run_id="run-5", force_full_reprocessing=True))

    assert result.inserted == 1
    assert result.insert_conflicts == 1
    assert storage.updates == []
    assert storage.rows[0]["maximum_award"] == 400000
    detector = [s for s in run_store.stages if s["stage_name"] == "early_duplicate_detector"][0]
    assert detector["performance_metrics"]["bypass_reason"] == "force_full_reprocessing"


def test_split_into_chunks() -> None:
    payloads = [{"id": str(i)} for i in range(5)]
    jobs = split_into_chunks(payloads, 2, SOURCE, "run-6")
    assert [len(j.payloads) for j in jobs] == [2, 2, 1]
    assert [j.chunk_index for j in jobs] == [0, 1, 2]
    assert {j.total_chunks for j in jobs} == {3}
    assert len({j.job_id for j in jobs}) == 3

    [empty] = split_into_chunks([], 10, SOURCE, "run-6")
    assert empty.payloads == []

    with pytest.raises(ValueError):
        split_into_chunks(payloads, 0, SOURCE, "run-6")


def test_chunked_run_aggregates_per_stage() -> None:
    payloads = [
        {"id": "C1", "title": "Coastal Resilience Fund"},
        {"id": "C2", "title": "Urban Forestry Grants"},
        {"id": "C3", "title": "Watershed Restoration Program"},
    ]
    run_store = FakeRunStore()
    storage = FakeStorage()
    coordinator = make_coordinator(storage, FakeUpstream(payloads), run_store)

    results = asyncio.run(coordinator.process_source_in_chunks(SOURCE, chunk_size=2, run_id="run-7"))

    assert len(results) == 2
    assert sum(r.inserted for r in results) == 3
    assert len(storage.inserted) == 3

    view = asyncio.run(RunRecorder(run_store, run_id="run-7").aggregated_view())
    detector = [s for s in view if s.stage_name == "early_duplicate_detector"][0]
    assert detector.job_count == 2
    assert detector.input_count == 3
    assert detector.status == "completed"
    assert len(detector.job_ids) == 2

    run = run_store.runs["run-7"]
    assert run["status"] == "completed"
    assert run["summary"]["chunks"] == 2
    assert run["summary"]["fetched"] == 3


def test_storage_row_for_national_opportunity() -> None:
    record = OpportunityRecord.from_api(
        {"id": "N1", "title": "National Clean Energy Program", "eligibleLocations": ["Nationwide"],
         "maximumAward": "$1,500,000"},
        raw_response_id="run-8",
    )
    row = build_storage_row(record, SOURCE)
    assert row["is_national"] is True
    assert row["eligible_state_codes"] == []
    assert row["maximum_award"] == 1500000.0
    assert row["raw_response_id"] == "run-8"
    assert row["source_id"] == SOURCE


def test_reused_id_does_not_replace_the_stored_program() -> None:
    storage = seeded_storage()
    run_store = FakeRunStore()
    payloads = [{"id": "X1", "title": "Rural Broadband Wiring Program", "apiUpdatedAt": "2024-06-01"}]
    coordinator = make_coordinator(storage, FakeUpstream(payloads), run_store)

    result = asyncio.run(coordinator.process_source(SOURCE, run_id="run-9"))

    assert result.detection["new"] == 1
    assert result.inserted == 0
    assert result.insert_conflicts == 1
    assert result.summary()["insert_conflicts"] == 1
    assert [r["title"] for r in storage.rows] == ["Solar Grant 2024"]

    stage = [s for s in run_store.stages if s["stage_name"] == "storage"][0]
    assert stage["stage_results"]["conflict_ids"] == ["X1"]
    assert stage["output_count"] == 0
