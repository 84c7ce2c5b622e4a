"""Command line entry point for the SEO agent core."""

from __future__ import annotations

import argparse
from dataclasses import asdict
import json
import logging
import signal
import sys

from agent.runtime import build_runtime
from config import Settings, load_settings
from observability import configure_logging
from services.database import create_db_engine, init_schema, run_migrations

logger = logging.getLogger(__name__)


def _cmd_migrate(settings: Settings, args: argparse.Namespace) -> int:
    if args.create_all:
        engine = create_db_engine(settings.database)
        try:
            init_schema(engine)
        finally:
            engine.dispose()
    else:
        run_migrations(settings.database)
    return 0


def _cmd_serve(settings: Settings, args: argparse.Namespace) -> int:
    from api.app import create_app, run_app

    runtime = build_runtime(settings)
    try:
        run_app(
            create_app(runtime),
            host=args.host or settings.http.host,
            port=args.port or settings.http.port,
            log_level=settings.log_level,
        )
    finally:
        runtime.close()
    return 0


def _cmd_worker(settings: Settings, args: argparse.Namespace) -> int:
    runtime = build_runtime(settings)
    try:
        if args.once:
            worker = runtime.build_worker(f"{settings.worker.id_prefix}-once", immediate_verification=True)
            try:
                outcomes = worker.drain(max_jobs=args.max_jobs)
            finally:
                worker.close()
            print(json.dumps([asdict(outcome) for outcome in outcomes], indent=2))
            return 0

        pool = runtime.build_worker_pool()
        pool.start()

        def _stop(signum, _frame) -> None:
            logger.info("Stopping worker pool: signal=%s", signum)
            pool.stop(timeout=settings.queue.lease_seconds)

        signal.signal(signal.SIGINT, _stop)
        signal.signal(signal.SIGTERM, _stop)
        pool.wait()
    finally:
        runtime.close()
    return 0


def _cmd_sweep(settings: Settings, args: argparse.Namespace) -> int:
    runtime = build_runtime(settings)
    try:
        report = runtime.verification.sweep(
            owner=args.owner,
            site_url=args.site_url,
            force=args.force,
        )
    finally:
        runtime.close()
    print(json.dumps(report.to_dict(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with one subcommand per entry point."""
    parser = argparse.ArgumentParser(prog="seo-agent", description="SEO agent action core")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate = subparsers.add_parser("migrate", help="Apply database migrations")
    migrate.add_argument(
        "--create-all",
        action="store_true",
        help="Create tables from model metadata instead of running Alembic",
    )
    migrate.set_defaults(handler=_cmd_migrate)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.set_defaults(handler=_cmd_serve)

    worker = subparsers.add_parser("worker", help="Run queue workers")
    worker.add_argument("--once", action="store_true", help="Drain due jobs and exit")
    worker.add_argument("--max-jobs", type=int, default=None)
    worker.set_defaults(handler=_cmd_worker)

    sweep = subparsers.add_parser("sweep", help="Run one verification sweep")
    sweep.add_argument("--owner", default=None)
    sweep.add_argument("--site-url", default=None)
    sweep.add_argument("--force", action="store_true", help="Ignore next_check_at")
    sweep.set_defaults(handler=_cmd_sweep)
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    settings = load_settings()
    configure_logging(
        level="DEBUG" if args.verbose else settings.log_level,
        json_output=settings.log_json,
        service=f"seo-agent-{args.command}",
        environment=settings.environment,
    )
    return args.handler(settings, args)


if __name__ == "__main__":
    sys.exit(main())
