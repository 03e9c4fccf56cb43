"""
InspectOS CLI — bootstrap and operations commands.

Commands:
- inspectos init             — Create DB schema, seed the schedule config
- inspectos generate         — Run task generation for templates over a window
- inspectos run-logs         — Show recent generation runs
- inspectos schedule-config  — Show / change automatic generation settings
- inspectos logs-cleanup     — Compress and expire event log files
- inspectos serve            — Start the HTTP API (uvicorn)
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import date
from typing import Optional, Tuple

from sqlalchemy.orm import sessionmaker

logger = logging.getLogger("inspectos.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="inspectos",
        description="InspectOS — recurring inspection scheduling",
    )
    parser.add_argument("--config", default=None, help="Path to inspectos.yaml (default: auto-discover)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # inspectos init
    subparsers.add_parser("init", help="Create database tables and seed the schedule config")

    # inspectos generate
    gen_parser = subparsers.add_parser("generate", help="Generate tasks for templates over a date window")
    gen_parser.add_argument("--template", "-t", type=int, action="append", required=True,
                            dest="templates", help="Template id (repeatable)")
    gen_parser.add_argument("--assignee", "-a", type=int, action="append", dest="assignees",
                            help="Assignee user id (repeatable; default: template/area default)")
    gen_parser.add_argument("--start", type=date.fromisoformat, required=True, help="Window start (YYYY-MM-DD)")
    gen_parser.add_argument("--end", type=date.fromisoformat, required=True, help="Window end (YYYY-MM-DD)")
    gen_parser.add_argument("--user", type=int, default=None, help="User id recorded as triggered_by")

    # inspectos run-logs
    logs_parser = subparsers.add_parser("run-logs", help="List recent generation runs")
    logs_parser.add_argument("--limit", type=int, default=20, help="Number of entries (default: 20)")

    # inspectos schedule-config
    sched_parser = subparsers.add_parser("schedule-config", help="Show or update automatic generation")
    toggle = sched_parser.add_mutually_exclusive_group()
    toggle.add_argument("--enable", action="store_true", help="Enable automatic generation")
    toggle.add_argument("--disable", action="store_true", help="Disable automatic generation")
    sched_parser.add_argument("--run-time", help="Daily run time HH:MM")

    # inspectos logs-cleanup
    subparsers.add_parser("logs-cleanup", help="Compress old event log files and delete expired ones")

    # inspectos serve
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")

    args = parser.parse_args(argv)

    if args.command == "init":
        return cmd_init(args)
    elif args.command == "generate":
        return cmd_generate(args)
    elif args.command == "run-logs":
        return cmd_run_logs(args)
    elif args.command == "schedule-config":
        return cmd_schedule_config(args)
    elif args.command == "logs-cleanup":
        return cmd_logs_cleanup(args)
    elif args.command == "serve":
        return cmd_serve(args)
    else:
        parser.print_help()
        return 0


def _bootstrap(args: argparse.Namespace, create_tables: bool = False) -> Tuple[object, sessionmaker]:
    """Load config, configure logging, open the database."""
    from inspectos.db.session import init_db_from_config
    from inspectos.engine.config import load_platform_config
    from inspectos.engine.logging import init_logging_from_config

    config = load_platform_config(args.config)
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_logging_from_config(config.logging)
    factory = init_db_from_config(config.database, create_tables=create_tables)
    return config, factory


def _shutdown() -> None:
    from inspectos.db.session import close_all_sessions
    from inspectos.engine.logging import shutdown_logging

    shutdown_logging()
    close_all_sessions()


def cmd_init(args: argparse.Namespace) -> int:
    """
    Bootstrap the database:
    1. Load config from inspectos.yaml
    2. Create all tables (SQLAlchemy metadata.create_all)
    3. Seed the schedule config singleton from schedule defaults
    """
    from inspectos.engine.errors import InspectOSError
    from inspectos.engine.logging import log, log_system_event
    from inspectos.scheduling.config_store import ScheduleConfigStore

    print("=" * 60)
    print("  InspectOS Initialization")
    print("=" * 60)

    try:
        config, factory = _bootstrap(args, create_tables=True)
    except InspectOSError as e:
        print(f"[ERROR] {e.message}")
        return 1
    except Exception as e:
        print(f"[ERROR] Database initialization failed: {e}")
        return 1
    print("[OK] Database tables created")

    try:
        settings = ScheduleConfigStore(factory, defaults=config.schedule).load()
        print(f"[OK] Schedule config: enabled={settings.enabled} run_time={settings.run_time.strftime('%H:%M')}")
        log(log_system_event("initialized", details={"environment": config.environment}))
        return 0
    except Exception as e:
        print(f"[ERROR] Seeding schedule config failed: {e}")
        return 1
    finally:
        _shutdown()


def cmd_generate(args: argparse.Namespace) -> int:
    """Run generation synchronously; exit 1 if any template failed."""
    from inspectos.engine.errors import InspectOSError
    from inspectos.scheduling.generator import GenerationEngine

    try:
        config, factory = _bootstrap(args)
    except InspectOSError as e:
        print(f"[ERROR] {e.message}")
        return 1

    try:
        engine = GenerationEngine(factory, max_workers=config.schedule.max_workers)
        result = engine.generate(
            args.templates,
            args.assignees,
            args.start,
            args.end,
            triggered_by=args.user,
        )
    except InspectOSError as e:
        print(f"[ERROR] {e.message}")
        for detail in getattr(e, "validation_errors", []):
            print(f"  - {detail}")
        return 1
    finally:
        _shutdown()

    for outcome in result.outcomes:
        if outcome.status == "failed":
            print(f"[ERROR] template {outcome.template_id}: {outcome.error}")
        else:
            print(f"[OK] template {outcome.template_id}: {outcome.status} "
                  f"(created={outcome.created}, existing={outcome.existing})")
    print(f"Run log {result.run_log_id}: {result.status}, created {result.created_count} task(s)")
    return 0 if result.succeeded else 1


def cmd_run_logs(args: argparse.Namespace) -> int:
    """Print recent run logs, newest first."""
    from inspectos.engine.errors import InspectOSError
    from inspectos.scheduling.run_log import RunLogRecorder

    try:
        _, factory = _bootstrap(args)
        entries = RunLogRecorder(factory).list(limit=args.limit)
    except InspectOSError as e:
        print(f"[ERROR] {e.message}")
        return 1
    finally:
        _shutdown()

    if not entries:
        print("No generation runs recorded.")
        return 0
    for entry in entries:
        started = entry["started_at"].strftime("%Y-%m-%d %H:%M:%S") if entry["started_at"] else "—"
        print(f"#{entry['id']:<5} {started}  {entry['run_source']:<6} {entry['status']:<7} "
              f"created={entry['created_count']:<4} {entry['message'] or ''}")
    return 0


def cmd_schedule_config(args: argparse.Namespace) -> int:
    """Show the schedule config, or replace it when flags are given."""
    from inspectos.engine.errors import InspectOSError
    from inspectos.scheduling.config_store import ScheduleConfigStore

    try:
        config, factory = _bootstrap(args)
        store = ScheduleConfigStore(factory, defaults=config.schedule)
        if args.enable or args.disable or args.run_time:
            enabled = True if args.enable else (False if args.disable else None)
            settings = store.replace(enabled=enabled, run_time=args.run_time)
            print("[OK] Schedule config updated")
        else:
            settings = store.load()
    except InspectOSError as e:
        print(f"[ERROR] {e.message}")
        return 1
    finally:
        _shutdown()

    print(f"  enabled:  {settings.enabled}")
    print(f"  run_time: {settings.run_time.strftime('%H:%M')} ({config.schedule.timezone})")
    return 0


def cmd_logs_cleanup(args: argparse.Namespace) -> int:
    """Apply logging.retention and logging.compress_after_days to the event log."""
    from inspectos.engine.config import load_platform_config
    from inspectos.engine.errors import InspectOSError
    from inspectos.engine.logging import LogRetentionManager

    try:
        config = load_platform_config(args.config)
    except InspectOSError as e:
        print(f"[ERROR] {e.message}")
        return 1

    counts = LogRetentionManager.from_config(config.logging).cleanup()
    print(f"[OK] Event log cleanup: compressed={counts['compressed']} deleted={counts['deleted']}")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the HTTP API with uvicorn."""
    import uvicorn

    from inspectos.api.server import create_app

    config, factory = _bootstrap(args)
    print(f"Starting {config.name} API on http://{args.host}:{args.port}")
    try:
        uvicorn.run(create_app(factory, config), host=args.host, port=args.port)
        return 0
    except KeyboardInterrupt:
        print("\nServer stopped.")
        return 0
    finally:
        _shutdown()


if __name__ == "__main__":
    sys.exit(main())
