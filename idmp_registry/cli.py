"""
Command-line entrypoint for the install, validation and cleanup plans.

    python -m idmp_registry.cli install
    python -m idmp_registry.cli validate
    python -m idmp_registry.cli diagnose
    python -m idmp_registry.cli seed --reset
    python -m idmp_registry.cli cleanup --types MedicinalProduct Substance --remove-definitions

Exit status is 0 on success and 1 when a run aborts or any migrated item
failed.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any, Callable

from sqlalchemy.orm import Session

from idmp_registry.config import settings
from idmp_registry.etl.pipeline import (
    build_cleanup_pipeline,
    build_idmp_install_pipeline,
    build_seed_pipeline,
    build_validate_pipeline,
    diagnose,
    run_pipeline,
)
from idmp_registry.models.database import Base, SessionLocal, engine

logger = logging.getLogger(__name__)


def print_run(summary: dict[str, Any]) -> None:
    print(f"Pipeline {summary['pipeline']}: {summary['status']}")
    for name, task in summary["tasks"].items():
        line = f"  [{task['status']:>9}] {name}"
        if task.get("error"):
            line += f" – {task['error']}"
        print(line)
    for outcome in summary.get("migration_outcomes", []):
        detail = outcome.get("target_id") or outcome.get("reason") or ""
        print(f"  {outcome['outcome']:>8} {outcome['source_type']} {outcome.get('source_id') or ''} {detail}".rstrip())
    for warning in summary.get("warnings", []):
        print(f"  warning: {warning}")
    print(
        f"Records created: {summary.get('records_created', 0)}, "
        f"schema changes: {summary.get('schema_changes', 0)}, "
        f"item failures: {summary.get('item_failures', 0)}"
    )


def _exit_code(summary: dict[str, Any]) -> int:
    if summary["status"] != "completed" or summary.get("item_failures", 0):
        return 1
    return 0


def cmd_install(db: Session, args: argparse.Namespace) -> int:
    summary = run_pipeline(db, build_idmp_install_pipeline())
    print_run(summary)
    return _exit_code(summary)


def cmd_validate(db: Session, args: argparse.Namespace) -> int:
    summary = run_pipeline(db, build_validate_pipeline())
    print_run(summary)
    return _exit_code(summary)


def cmd_seed(db: Session, args: argparse.Namespace) -> int:
    summary = run_pipeline(db, build_seed_pipeline(reset=args.reset))
    print_run(summary)
    return _exit_code(summary)


def cmd_cleanup(db: Session, args: argparse.Namespace) -> int:
    summary = run_pipeline(db, build_cleanup_pipeline(args.types, args.remove_definitions))
    print_run(summary)
    for task in summary["tasks"].values():
        for type_name, count in task.get("result", {}).get("deleted", {}).items():
            print(f"  deleted {count} {type_name}")
    return _exit_code(summary)


def cmd_diagnose(db: Session, args: argparse.Namespace) -> int:
    report = diagnose(db)
    for entry in report["types"]:
        status = f"v{entry['version']}" if entry["registered"] else "missing"
        print(f"  {entry['name']:<24} {status:<8} {entry['instances']} instance(s)")
    for reference in report["unresolved_references"]:
        print(f"  unresolved: {reference}")
    for source_type, mark in report["checkpoints"].items():
        print(f"  checkpoint {source_type}: {mark}")
    missing = [entry for entry in report["types"] if not entry["registered"]]
    return 1 if missing or report["unresolved_references"] else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="idmp_registry", description="IDMP registry maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("install", help="Install types, migrate legacy data and validate").set_defaults(func=cmd_install)
    sub.add_parser("validate", help="Validate installed types and instances").set_defaults(func=cmd_validate)
    sub.add_parser("diagnose", help="Show registration status and instance counts").set_defaults(func=cmd_diagnose)

    seed = sub.add_parser("seed", help="Install the IDMP types and create sample substances and products")
    seed.add_argument("--reset", action="store_true", help="Delete every IDMP instance before seeding")
    seed.set_defaults(func=cmd_seed)

    cleanup = sub.add_parser("cleanup", help="Delete instances (and optionally definitions)")
    cleanup.add_argument("--types", nargs="+", default=None, help="Resource types to clean (default: all IDMP types)")
    cleanup.add_argument("--remove-definitions", action="store_true", help="Also remove the type definitions")
    cleanup.set_defaults(func=cmd_cleanup)
    return parser


def main(argv: list[str] | None = None, session_factory: Callable[[], Session] | None = None) -> int:
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s | %(name)s | %(message)s")
    args = build_parser().parse_args(argv)
    logger.info("Running %s", args.command)
    if session_factory is None:
        Base.metadata.create_all(bind=engine)
        session_factory = SessionLocal

    db = session_factory()
    try:
        return args.func(db, args)
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
