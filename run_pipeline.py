#!/usr/bin/env python3
"""
Grant Ingest - run the pipeline for one or more sources
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List

from grant_ingest import PipelineCoordinator, PipelineSettings, configure_logging
from grant_ingest.adapters import HttpFetchClient, MongoOpportunityStorage, MongoRunStore, connect
from grant_ingest.errors import ConfigurationError, PipelineError
from grant_ingest.run_recorder import RunRecorder

logger = logging.getLogger(__name__)


def build_coordinator(settings: PipelineSettings, db) -> PipelineCoordinator:
    if not settings.upstream_base_url:
        raise ConfigurationError("UPSTREAM_BASE_URL is not set")

    storage = MongoOpportunityStorage(db)
    storage.ensure_indexes()
    run_store = MongoRunStore(db)
    run_store.ensure_indexes()

    upstream = HttpFetchClient(
        settings.upstream_base_url,
        page_size=settings.upstream_page_size,
        timeout=settings.call_timeout_seconds,
    )
    return PipelineCoordinator(
        storage,
        upstream=upstream,
        run_store=run_store,
        checkpoint_store=run_store,
        settings=settings,
    )


async def show_aggregated_view(run_store: MongoRunStore, run_id: str) -> int:
    stages = await RunRecorder(run_store, run_id=run_id).aggregated_view()
    if not stages:
        logger.warning(f"No stages recorded for run {run_id}")
        return 1
    print(json.dumps([s.to_dict() for s in stages], indent=2, default=str))
    return 0


async def run_sources(coordinator: PipelineCoordinator, sources: List[str], args) -> int:
    failures = 0
    for source_id in sources:
        logger.info("=" * 60)
        logger.info(f"Source: {source_id}")
        logger.info("=" * 60)
        try:
            if args.chunked:
                results = await coordinator.process_source_in_chunks(
                    source_id,
                    chunk_size=args.chunk_size,
                    run_id=args.run_id,
                    force_full_reprocessing=args.force_full,
                )
                inserted = sum(r.inserted for r in results)
                updated = sum(r.updated for r in results)
                logger.info(f"{source_id}: {len(results)} chunks, {inserted} inserted, {updated} updated")
            else:
                result = await coordinator.process_source(
                    source_id,
                    run_id=args.run_id,
                    resume=args.resume,
                    force_full_reprocessing=args.force_full,
                )
                logger.info(f"{source_id} (run {result.run_id}): {result.summary()}")
        except PipelineError as e:
            failures += 1
            logger.error(f"Pipeline failed for {source_id}: {e} - {e.recovery_suggestion}")

    unavailable = coordinator.breakers.get_unavailable_sources()
    if unavailable:
        logger.warning(f"Unavailable sources: {unavailable}")
    return 1 if failures else 0


def main():
    parser = argparse.ArgumentParser(description='Grant opportunity ingestion pipeline')
    parser.add_argument(
        '--source',
        action='append',
        dest='sources',
        help='Source id to process (repeatable). Defaults to PIPELINE_SOURCES.'
    )
    parser.add_argument('--run-id', help='Run id to use (required with --resume)')
    parser.add_argument('--resume', action='store_true', help='Resume a run from its last checkpoint')
    parser.add_argument(
        '--force-full',
        action='store_true',
        help='Skip duplicate detection and treat every record as new'
    )
    parser.add_argument('--chunked', action='store_true', help='Process the source in chunk jobs')
    parser.add_argument('--chunk-size', type=int, help='Records per chunk job (default CHUNK_SIZE)')
    parser.add_argument('--aggregated-view', metavar='RUN_ID', help='Print the per-stage view of a run and exit')
    args = parser.parse_args()

    try:
        settings = PipelineSettings.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    configure_logging(settings.log_level, settings.log_file)

    if args.resume and not args.run_id:
        parser.error('--resume requires --run-id')
    if args.resume and len(args.sources or []) > 1:
        parser.error('--resume works on a single source')

    client, db = connect(settings.mongo_uri, settings.mongo_db_name)
    try:
        if args.aggregated_view:
            return asyncio.run(show_aggregated_view(MongoRunStore(db), args.aggregated_view))

        sources = args.sources or list(settings.pipeline_sources)
        if not sources:
            logger.warning("No sources to process (use --source or PIPELINE_SOURCES)")
            return 1

        try:
            coordinator = build_coordinator(settings, db)
        except ConfigurationError as e:
            logger.error(str(e))
            return 2
        return asyncio.run(run_sources(coordinator, sources, args))
    finally:
        client.close()


if __name__ == "__main__":
    sys.exit(main())
