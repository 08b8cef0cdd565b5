#!/usr/bin/env python3
"""
Scheduler for automated grant ingestion.
Runs the pipeline for every configured source on a cron schedule.
"""

import asyncio
import logging
import sys
import time
from datetime import datetime

from croniter import croniter

from grant_ingest import PipelineSettings, configure_logging
from grant_ingest.adapters import connect
from grant_ingest.errors import ConfigurationError, PipelineError
from run_pipeline import build_coordinator

logger = logging.getLogger(__name__)


async def run_all_sources(coordinator, sources):
    """One scheduled pass over every source. A failing source does not stop the others."""
    logger.info("=" * 70)
    logger.info(f"Starting scheduled run for {len(sources)} sources")
    logger.info("=" * 70)

    completed = 0
    for source_id in sources:
        if not coordinator.breakers.is_source_available(source_id):
            logger.warning(f"Skipping {source_id}: circuit open")
            continue
        try:
            result = await coordinator.process_source(source_id)
            completed += 1
            logger.info(f"{source_id} completed: {result.summary()}")
        except PipelineError as e:
            logger.error(f"{source_id} failed: {e}")

    logger.info(f"Scheduled run finished: {completed}/{len(sources)} sources completed")
    logger.info("=" * 70)
    return completed


def main():
    """Main scheduler loop"""
    try:
        settings = PipelineSettings.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(settings.log_level, settings.log_file)

    schedule = settings.pipeline_schedule
    sources = list(settings.pipeline_sources)
    logger.info(f"Scheduler starting with cron schedule: {schedule}")
    logger.info(f"Sources: {', '.join(sources) or '(none)'}")
    logger.info(f"Run on startup: {settings.run_on_startup}")

    if not sources:
        logger.error("PIPELINE_SOURCES is empty, nothing to schedule")
        sys.exit(1)

    client, db = connect(settings.mongo_uri, settings.mongo_db_name)
    try:
        coordinator = build_coordinator(settings, db)
    except ConfigurationError as e:
        logger.error(str(e))
        client.close()
        sys.exit(1)

    # The breaker registry lives on the coordinator, so it survives between runs
    loop = asyncio.new_event_loop()
    try:
        if settings.run_on_startup:
            logger.info("Running initial ingestion on startup...")
            loop.run_until_complete(run_all_sources(coordinator, sources))

        while True:
            try:
                next_run = croniter(schedule, datetime.now()).get_next(datetime)
                sleep_seconds = (next_run - datetime.now()).total_seconds()

                logger.info(f"Next run scheduled for: {next_run.isoformat()}")
                logger.info(f"Sleeping for {sleep_seconds:.0f} seconds ({sleep_seconds/3600:.2f} hours)")

                time.sleep(max(sleep_seconds, 0))

                loop.run_until_complete(run_all_sources(coordinator, sources))

            except KeyboardInterrupt:
                logger.info("Scheduler stopped by user")
                break
            except Exception as e:
                logger.error(f"Scheduler error: {e}", exc_info=True)
                # Sleep for 5 minutes before retrying
                time.sleep(300)
    finally:
        loop.close()
        client.close()


if __name__ == "__main__":
    main()
