"""Command-line interface for the Townly backend."""

from __future__ import annotations
import argparse
import json
import logging
import sys
from datetime import timedelta
from typing import Any, Dict, Sequence

from dotenv import load_dotenv

from townly.clock import utc_now
from townly.config import Settings, check_environment
from townly.database import Database, resolve_database_path

logger = logging.getLogger("townly.main")

KNOWN_COMMANDS = {"serve", "init-db", "dispatch", "cleanup-cache", "check-env", "webhook-status"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Townly backend utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port for the API (default: 8000)")

    subparsers.add_parser("init-db", help="Initialise the Townly database")
    subparsers.add_parser(
        "dispatch",
        help="Send pending scheduled Kakao messages and due weather emails once",
    )
    subparsers.add_parser("cleanup-cache", help="Delete expired weather and air quality cache rows")
    subparsers.add_parser("check-env", help="Report missing environment variables")

    status_parser = subparsers.add_parser("webhook-status", help="Summarise recent Kakao webhook calls")
    status_parser.add_argument("--limit", type=int, default=10, help="Number of recent calls to list")

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in KNOWN_COMMANDS:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _initialise_database(settings: Settings) -> Database:
    db_path = resolve_database_path(settings.database_path)
    database = Database(db_path, secret_key=settings.secret_key)
    database.initialize()
    logger.info("Database initialised at %s", db_path)
    return database


def _print_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _serve(*, settings: Settings, database: Database, host: str, port: int) -> None:
    from townly.service import create_app
    import uvicorn

    logger.info("Starting Townly API on http://%s:%s (%s)", host, port, settings.environment)
    app = create_app(settings=settings, database=database)
    uvicorn.run(app, host=host, port=port, log_level=settings.profile.log_level.lower())


def _dispatch(settings: Settings, database: Database) -> int:
    from townly.runtime import build_runtime

    runtime = build_runtime(settings, database=database, initialize_database=False)
    try:
        now = utc_now()
        messages = runtime.messages.process_pending(now)
        emails = runtime.emails.execute_due(now)
    finally:
        runtime.close()
    _print_json({"scheduled_messages": messages, "email_schedules": emails})
    return 0 if messages["failure"] == 0 and emails["success"] == emails["processed"] else 1


def _cleanup_cache(settings: Settings, database: Database) -> None:
    from townly.runtime import build_runtime

    runtime = build_runtime(settings, database=database, initialize_database=False)
    try:
        now = utc_now()
        removed = runtime.weather.cleanup_expired(now)
        removed["air_quality_data"] = runtime.air_quality.cleanup_expired(now)
    finally:
        runtime.close()
    _print_json({"removed": removed})


def _check_env() -> int:
    report = check_environment()
    for name in report["configured"]:
        print(f"  [ok]       {name}")
    for name in report["missing_optional"]:
        print(f"  [optional] {name} is not set")
    for name in report["missing_required"]:
        print(f"  [missing]  {name} is required")
    if report["missing_required"]:
        print(f"{len(report['missing_required'])} required variable(s) missing.")
        return 1
    print("All required environment variables are set.")
    return 0


def _webhook_status(database: Database, limit: int) -> None:
    summary = database.webhook_log_summary(utc_now() - timedelta(hours=24))
    print(
        f"Last 24h: {summary['total']} webhook call(s), "
        f"{summary['successful']} succeeded, {summary['failed']} failed"
    )
    for log in database.list_webhook_logs(limit=limit):
        marker = "ok " if log.is_successful else "ERR"
        detail = f" - {log.error_message}" if log.error_message else ""
        print(
            f"  {marker} {log.timestamp.isoformat()} {log.method} {log.status_code} "
            f"{log.processing_time or '-'} {log.ip_address or 'unknown'}{detail}"
        )


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    load_dotenv()
    args = _parse_args(argv)
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.profile.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.command == "check-env":
        raise SystemExit(_check_env())

    database = _initialise_database(settings)

    if args.command == "serve":
        _serve(settings=settings, database=database, host=args.host, port=args.port)
    elif args.command == "dispatch":
        raise SystemExit(_dispatch(settings, database))
    elif args.command == "cleanup-cache":
        _cleanup_cache(settings, database)
    elif args.command == "webhook-status":
        _webhook_status(database, args.limit)
    elif args.command == "init-db":
        print("Database initialisation complete.")


if __name__ == "__main__":
    main()
