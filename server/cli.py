"""Command line interface: serve the HTTP API or run one operation and exit."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta
from typing import List, Optional

from config.database import close_database, get_store, initialize_database
from config.settings import Settings
from observability.logging import setup_logging
from services.shared.errors import ErrorCode, error_code

from .job_handlers import AggregatorService
from .jobs import LogEntry, OperationManager, OperationType

logger = logging.getLogger(__name__)

EXIT_CODES = {
    ErrorCode.IN_PROGRESS: 2,
    ErrorCode.NOT_FOUND: 3,
    ErrorCode.FAILED_PRECONDITION: 3,
    ErrorCode.INTERNAL: 1,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m server", description="Maalfrid aggregator")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", help="Bind address (default from HOST)")
    serve.add_argument("--port", type=int, help="Port (default from PORT)")

    detect = subparsers.add_parser("detect-languages", help="Detect languages of extracted texts")
    detect.add_argument("--all", dest="detect_all", action="store_true",
                        help="Detect every text, not only those lacking a language")

    sync = subparsers.add_parser("sync", help="Synchronize seeds and entities")
    sync.add_argument("labels", nargs="*", help="Labels every synchronized seed must carry")

    aggregate = subparsers.add_parser("aggregate", help="Aggregate a job execution or a time range")
    aggregate.add_argument("--job-execution-id", help="Job execution to aggregate")
    aggregate.add_argument("--start-time", type=datetime.fromisoformat, help="Inclusive lower bound (ISO 8601)")
    aggregate.add_argument("--end-time", type=datetime.fromisoformat, help="Exclusive upper bound (ISO 8601)")

    statistics = subparsers.add_parser("statistics", help="Generate statistics of a job execution")
    statistics.add_argument("job_execution_id", help="Job execution to generate statistics for")
    statistics.add_argument("--seed-id", help="Restrict to a single seed")

    return parser


async def run_operation(args: argparse.Namespace, service: AggregatorService) -> LogEntry:
    """Run the requested operation to completion."""
    if args.command == "detect-languages":
        return await service.detect_languages(args.detect_all, wait=True)
    if args.command == "sync":
        return await service.sync_seeds_and_entities(args.labels, wait=True)
    if args.command == "aggregate":
        if args.job_execution_id:
            return await service.generate_aggregate(args.job_execution_id, wait=True)
        return await service.generate_aggregate_range(args.start_time, args.end_time, wait=True)
    if args.command == "statistics":
        return await service.generate_statistics(args.job_execution_id, args.seed_id, wait=True)
    raise ValueError(f"Unknown command: {args.command}")


async def _run_once(args: argparse.Namespace, settings: Settings) -> int:
    await initialize_database(settings.database, [t.value for t in OperationType])
    try:
        store = await get_store()
        timeout = None
        if settings.operation_timeout_hours is not None:
            timeout = timedelta(hours=settings.operation_timeout_hours)
        manager = OperationManager(store, operation_timeout=timeout)
        service = AggregatorService(store, manager, settings.language_service)
        try:
            entry = await run_operation(args, service)
        except Exception as e:
            logger.error(f"{args.command} failed: {e}")
            return EXIT_CODES[error_code(e)]
        print(json.dumps(entry.to_dict(), indent=2, default=str))
        return 0
    finally:
        await close_database()


def serve(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn
    from .api import create_app

    uvicorn.run(
        create_app(settings),
        host=args.host or settings.server.host,
        port=args.port or settings.server.port,
        log_config=None,
    )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()

    if args.command == "serve":
        return serve(args, settings)

    setup_logging(
        level=settings.logging.level,
        service_name=settings.service_name,
        log_file=settings.logging.log_file,
        use_json=settings.logging.use_json,
    )
    return asyncio.run(_run_once(args, settings))


if __name__ == "__main__":
    sys.exit(main())
