#!/usr/bin/env python3
"""
Operator CLI for the approval workflow engine.

Settings come from defaults, the YAML file named by --config (or
APPROVAL_CONFIG_FILE), and APPROVAL_* environment variables.  --db-url
overrides the configured database.

Usage:
    python3 scripts/approvals.py [--config FILE] [--db-url URL] <command> [options]

Examples:
    # Create tables
    python3 scripts/approvals.py init-db

    # Create or update templates from a YAML file or a directory of them
    python3 scripts/approvals.py load-templates templates/ --owner sales-team

    # One timeout scan (handle overdue steps, expire stale requests)
    python3 scripts/approvals.py scan-timeouts

    # Poll forever until Ctrl-C
    python3 scripts/approvals.py run-scheduler --interval 60

    # What is waiting on a user
    python3 scripts/approvals.py pending alice

    # Audit trail for one approval
    python3 scripts/approvals.py trail 6f1c...
"""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path
from uuid import UUID

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Approval workflow engine operations.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", type=Path, default=None, help="YAML settings file.")
    parser.add_argument("--db-url", default=None, help="Database URL (overrides settings).")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create all approval tables.")

    load = sub.add_parser("load-templates", help="Create or update workflow templates.")
    load.add_argument(
        "path",
        type=Path,
        nargs="?",
        default=None,
        help="Template file or directory (default: settings.templates_dir).",
    )
    load.add_argument("--owner", default=None, help="Owner for templates that name none.")

    sub.add_parser("scan-timeouts", help="Run one timeout scan and exit.")

    run = sub.add_parser("run-scheduler", help="Run the timeout scheduler until interrupted.")
    run.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between scans (default: settings.scan_interval_seconds).",
    )

    pending = sub.add_parser("pending", help="List approvals a user can act on now.")
    pending.add_argument("user_id")

    trail = sub.add_parser("trail", help="Print the audit trail of one approval.")
    trail.add_argument("approval_id", type=UUID)

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    # Lazy imports so we fail fast on args first
    from dataclasses import replace

    from approval_config import get_settings
    from approval_config.bridges import (
        build_approval_service,
        build_timeout_scheduler,
        install_templates,
    )
    from approval_config.loader import compute_checksum, load_templates
    from approval_kernel.db.engine import (
        create_tables,
        get_session_factory,
        init_engine_from_url,
        session_scope,
    )
    from approval_kernel.exceptions import ApprovalEngineError
    from approval_kernel.logging_config import configure_logging

    try:
        settings = get_settings(args.config)
    except (ValueError, FileNotFoundError) as e:
        print(f"ERROR: Invalid settings: {e}", file=sys.stderr)
        return 2
    if args.db_url:
        settings = replace(settings, database_url=args.db_url)

    configure_logging(level=settings.log_level_number)
    engine = init_engine_from_url(settings.database_url)

    if args.command == "init-db":
        create_tables(engine)
        print("Tables created.")
        return 0

    if args.command == "load-templates":
        path = args.path or settings.templates_dir
        if path is None:
            print("ERROR: No template path given and templates_dir is not set.", file=sys.stderr)
            return 2
        try:
            templates = load_templates(path, args.owner)
        except (ValueError, FileNotFoundError, ApprovalEngineError) as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1
        try:
            with session_scope() as session:
                result = install_templates(session, templates)
        except ApprovalEngineError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1
        print(
            f"Loaded {len(templates)} template(s): {result.created} created, "
            f"{result.updated} updated (checksum {compute_checksum(templates)[:12]})"
        )
        return 0

    if args.command == "scan-timeouts":
        scheduler = build_timeout_scheduler(get_session_factory(), settings)
        dispatched = scheduler.scan_and_dispatch()
        print(f"Dispatched {dispatched} timeout action(s).")
        return 0

    if args.command == "run-scheduler":
        if args.interval is not None:
            if args.interval <= 0:
                print("ERROR: --interval must be positive.", file=sys.stderr)
                return 2
            settings = replace(settings, scan_interval_seconds=args.interval)
        scheduler = build_timeout_scheduler(get_session_factory(), settings)
        scheduler.start()
        print(f"Scheduler running every {settings.scan_interval_seconds}s. Ctrl-C to stop.")
        try:
            while scheduler.is_running:
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        finally:
            scheduler.stop()
        return 0

    if args.command == "pending":
        with session_scope() as session:
            service = build_approval_service(session, settings)
            requests = service.list_pending_for_approver(args.user_id)
        for request in requests:
            print(
                f"{request.id}  document={request.document_id}  "
                f"step={request.current_step_order}  submitted={request.submitted_at.isoformat()}"
            )
        print(f"{len(requests)} pending.")
        return 0

    if args.command == "trail":
        try:
            with session_scope() as session:
                service = build_approval_service(session, settings)
                entries = service.get_audit_trail(args.approval_id)
        except ApprovalEngineError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1
        for entry in entries:
            details = f"  {entry.details}" if entry.details else ""
            print(f"{entry.recorded_at.isoformat()}  {entry.actor_id:<12} {entry.action}{details}")
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
