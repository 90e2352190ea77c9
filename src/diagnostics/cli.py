"""
CLI for the diagnostics engine.

Usage:
    python -m src.diagnostics.cli <command> [options]
"""

import argparse
import json
import logging
import os
import sys
from datetime import date

import pandas as pd
import structlog

from src.core.logger import setup_logging

from .config import DiagnosticsConfig
from .consumer import RunRequestConsumer
from .database import DiagnosticsDatabase
from .engine import DiagnosticsEngine
from .errors import DiagnosticsError
from .models import MetricSample

logger = structlog.get_logger(__name__)

# Columns of a load-samples CSV file
SAMPLE_COLUMNS = ["site_id", "source", "metric_key", "date", "value"]


def parse_arguments(argv=None):
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        description="Marketing diagnostics engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
        Examples:
        # Create tables
        python -m src.diagnostics.cli init-db

        # Load daily metric samples (columns: site_id,source,metric_key,date,value)
        python -m src.diagnostics.cli load-samples --file samples.csv

        # Run diagnostics for a site
        python -m src.diagnostics.cli run --site-id acme.com --force

        # Generate and execute a fix plan
        python -m src.diagnostics.cli plan --site-id acme.com --topic tracking
        python -m src.diagnostics.cli execute --plan-id <id> --max-items 3
        """,
    )

    # PostgreSQL settings
    parser.add_argument("--postgres-host", default=os.getenv("POSTGRES_HOST", "localhost"))
    parser.add_argument("--postgres-port", type=int, default=int(os.getenv("POSTGRES_PORT", "5432")))
    parser.add_argument("--postgres-db", default=os.getenv("POSTGRES_DB", "diagnostics_db"))
    parser.add_argument("--postgres-user", default=os.getenv("POSTGRES_USER", "diagnostics"))
    parser.add_argument(
        "--postgres-password", default=os.getenv("POSTGRES_PASSWORD", "diagnostics_password")
    )

    # Redis settings
    parser.add_argument("--redis-host", default=os.getenv("REDIS_HOST", "localhost"))
    parser.add_argument("--no-cache", action="store_true", help="Disable the Redis run cache")

    # Logging
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--json-logs", action="store_true", default=os.getenv("LOG_FORMAT") == "json")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create tables and indexes")

    load = subparsers.add_parser("load-samples", help="Upsert daily metric samples from a CSV file")
    load.add_argument("--file", required=True, help="CSV with site_id,source,metric_key,date,value")

    run = subparsers.add_parser("run", help="Run diagnostics for a site")
    run.add_argument("--site-id", required=True)
    run.add_argument("--force", action="store_true", help="Ignore today's existing run")
    run.add_argument("--run-date", type=date.fromisoformat, help="Day of the run (YYYY-MM-DD)")
    run.add_argument("--report", action="store_true", help="Print the markdown report")

    status = subparsers.add_parser("status", help="Show a run summary")
    status.add_argument("--run-id", required=True)
    status.add_argument("--report", action="store_true", help="Print the markdown report")
    status.add_argument("--refresh", action="store_true", help="Bypass the cached summary")

    tickets = subparsers.add_parser("tickets", help="List or update tickets")
    tickets.add_argument("--site-id")
    tickets.add_argument("--status", choices=["open", "in_progress", "done", "dismissed"])
    tickets.add_argument("--ticket-id", help="Ticket to update (with --set-status)")
    tickets.add_argument("--set-status", choices=["open", "in_progress", "done", "dismissed"])

    plan = subparsers.add_parser("plan", help="Generate (or fetch) the pending fix plan of a topic")
    plan.add_argument("--site-id", required=True)
    plan.add_argument("--topic", required=True)

    execute = subparsers.add_parser("execute", help="Execute or reject a fix plan")
    execute.add_argument("--plan-id", required=True)
    execute.add_argument("--max-items", type=int, default=3)
    execute.add_argument("--override-reason", help="Execute despite an active cooldown")
    execute.add_argument("--reject", metavar="REASON", help="Reject the plan instead")

    consume = subparsers.add_parser("consume", help="Consume run requests from Kafka")
    consume.add_argument(
        "--kafka-servers", default=os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    )
    consume.add_argument("--topic", default=os.getenv("KAFKA_TOPIC", "diagnostic-run-requests"))
    consume.add_argument("--duration", type=int, help="Run for N seconds then stop")

    return parser.parse_args(argv)


def build_config(args) -> DiagnosticsConfig:
    """Build configuration from arguments (environment provides the rest)"""
    overrides = {
        "postgres_host": args.postgres_host,
        "postgres_port": args.postgres_port,
        "postgres_database": args.postgres_db,
        "postgres_user": args.postgres_user,
        "postgres_password": args.postgres_password,
        "redis_host": args.redis_host,
    }
    if args.command == "consume":
        overrides["kafka_bootstrap_servers"] = args.kafka_servers
        overrides["kafka_topic"] = args.topic
    return DiagnosticsConfig.from_env(**overrides)


def _print(data):
    print(json.dumps(data, indent=2, default=str))


def read_samples(path: str) -> list[MetricSample]:
    """Daily samples from a CSV file; empty values load as missing days"""
    df = pd.read_csv(path)
    missing = set(SAMPLE_COLUMNS) - set(df.columns)
    if missing:
        raise ValueError(f"Sample file is missing columns: {sorted(missing)}")

    df["date"] = pd.to_datetime(df["date"]).dt.date
    df["value"] = pd.to_numeric(df["value"], errors="coerce")
    return [
        MetricSample(
            site_id=str(row.site_id),
            source=str(row.source),
            metric_key=str(row.metric_key),
            date=row.date,
            value=None if pd.isna(row.value) else float(row.value),
        )
        for row in df[SAMPLE_COLUMNS].itertuples(index=False)
    ]


def run_command(args, config: DiagnosticsConfig) -> int:
    if args.command == "init-db":
        db = DiagnosticsDatabase(config)
        try:
            db.ensure_schema()
        finally:
            db.close()
        return 0

    if args.command == "load-samples":
        samples = read_samples(args.file)
        db = DiagnosticsDatabase(config)
        try:
            written = db.insert_samples(samples)
        finally:
            db.close()
        _print({"file": args.file, "samples": len(samples), "written": written})
        return 0 if written == len(samples) else 1

    if args.command == "consume":
        RunRequestConsumer(config).run(duration_seconds=args.duration)
        return 0

    engine = DiagnosticsEngine.from_config(config, use_cache=not args.no_cache)
    try:
        if args.command == "run":
            summary = engine.start_run(args.site_id, force=args.force, run_date=args.run_date)
            _print(summary.to_dict())
            if args.report:
                print(engine.render_report(summary.run_id))

        elif args.command == "status":
            if args.report:
                print(engine.render_report(args.run_id))
            else:
                _print(engine.get_run_status(args.run_id, refresh=args.refresh).to_dict())

        elif args.command == "tickets":
            if args.ticket_id:
                if not args.set_status:
                    logger.error("--ticket-id requires --set-status")
                    return 2
                _print(engine.update_ticket_status(args.ticket_id, args.set_status).to_dict())
            else:
                _print([t.to_dict() for t in engine.list_tickets(args.site_id, args.status)])

        elif args.command == "plan":
            _print(engine.generate_fix_plan(args.site_id, args.topic).to_dict())

        elif args.command == "execute":
            if args.reject:
                _print(engine.reject_fix_plan(args.plan_id, args.reject).to_dict())
            else:
                result = engine.execute_fix_plan(args.plan_id, args.max_items, args.override_reason)
                _print(result.to_dict())
    finally:
        engine.close()
    return 0


def main(argv=None):
    """Main entry point"""
    args = parse_arguments(argv)

    setup_logging(level=getattr(logging, args.log_level), json_logs=args.json_logs)

    try:
        return run_command(args, build_config(args))

    except DiagnosticsError as e:
        logger.error("Command failed", command=args.command, **e.to_dict())
        _print(e.to_dict())
        return 1

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0

    except Exception as e:
        logger.error("Command failed", command=args.command, error=str(e), exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
