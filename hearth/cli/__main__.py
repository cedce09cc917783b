"""
Hearth CLI - inspect and drive an application's engine.

Usage:
    python -m hearth.cli --app myapp.data:engine status [--json]
    python -m hearth.cli --app myapp.data:engine plan [--json]
    python -m hearth.cli --app myapp.data:engine sync [--json]
    python -m hearth.cli --app myapp.data:engine populate [--include S]... [--exclude S]...

``--app`` names an ``Engine`` instance, or a zero-argument callable that
returns one, as ``module:attribute``.
"""

import argparse
import importlib
import json
import logging
import sys
from typing import List, Optional

from hearth.engine import Engine
from hearth.logging_config import setup_hearth_logging
from hearth.storage.schema import describe_op

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def load_engine(spec: str) -> Engine:
    """Resolve ``module:attribute`` into an Engine."""
    module_name, _, attribute = spec.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"--app must look like module:attribute, got {spec!r}")
    target = getattr(importlib.import_module(module_name), attribute)
    if not isinstance(target, Engine) and callable(target):
        target = target()
    if not isinstance(target, Engine):
        raise ValueError(f"{spec} is not a hearth Engine")
    return target


def cmd_status(args, engine: Engine) -> int:
    """Show schema, readiness, queue and checkpoint status."""
    status = engine.status()
    if args.json:
        print(json.dumps(status, indent=2, default=str))
        return 0

    print("Hearth Status")
    print("=" * 50)
    print(f"Database:        {status['database']}")
    print(f"Schema version:  {status['schema_version']}")
    print(f"Readiness:       {status['readiness']}")
    print(f"Sync state:      {status['sync_state']}")
    print(f"Stores:          {', '.join(status['stores']) or '(none)'}")
    print(f"Pending changes: {status['pending_changes']} ({status['queued_entries']} queued)")
    print(f"Checkpoint:      {status['checkpoint'] or '(never synced)'}")
    return 0


def cmd_plan(args, engine: Engine) -> int:
    """Print the migration the next start would apply."""
    ops = engine.plan()
    if args.json:
        print(json.dumps([describe_op(op) for op in ops], indent=2))
        return 0
    if not ops:
        print("✓ Schema is up to date")
        return 0
    print(f"{len(ops)} migration operations pending:")
    for op in ops:
        print(f"  - {describe_op(op)}")
    return 0


def cmd_sync(args, engine: Engine) -> int:
    result = engine.sync()
    if result is None:
        print("Sync already in progress")
        return 0
    if args.json:
        print(
            json.dumps(
                {
                    "status": result.status.value,
                    "pushed": result.pushed,
                    "pulled": result.pulled,
                    "skipped": result.skipped,
                    "checkpoint": result.checkpoint,
                    "error": result.error,
                },
                indent=2,
                default=str,
            )
        )
    elif result.success:
        print(f"✓ Sync complete: pushed {result.pushed}, pulled {result.pulled}")
    else:
        print(f"✗ Sync failed: {result.error}")
    return 0 if result.success else 1


def cmd_populate(args, engine: Engine) -> int:
    result = engine.populate(include=args.include, exclude=args.exclude)
    if args.json:
        print(json.dumps({"applied": result.applied, "error": result.error}, indent=2))
    elif result.success:
        for store_name, rows in result.applied.items():
            print(f"  {store_name}: {rows} rows")
        print("✓ Populate complete")
    else:
        print(f"✗ Populate failed: {result.error}")
    return 0 if result.success else 1


COMMANDS = {
    "status": cmd_status,
    "plan": cmd_plan,
    "sync": cmd_sync,
    "populate": cmd_populate,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hearth",
        description="Local-first data engine",
    )
    parser.add_argument("--app", required=True, help="Engine as module:attribute")
    parser.add_argument("--log-level", default=None, help="Enable file logging at this level")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_status = subparsers.add_parser("status", help="Show engine status")
    p_status.add_argument("--json", "-j", action="store_true")

    p_plan = subparsers.add_parser("plan", help="Show pending schema migration")
    p_plan.add_argument("--json", "-j", action="store_true")

    p_sync = subparsers.add_parser("sync", help="Push local changes and pull remote ones")
    p_sync.add_argument("--json", "-j", action="store_true")

    p_populate = subparsers.add_parser("populate", help="Load store snapshots from the remote")
    p_populate.add_argument("--include", "-i", action="append", help="Store to load (repeatable)")
    p_populate.add_argument("--exclude", "-x", action="append", help="Store to skip (repeatable)")
    p_populate.add_argument("--json", "-j", action="store_true")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    try:
        engine = load_engine(args.app)
    except (ValueError, ImportError, AttributeError) as e:
        logger.error(f"Cannot load engine: {e}")
        sys.exit(1)

    if args.log_level:
        setup_hearth_logging(engine.config.database_name, args.log_level)

    try:
        exit_code = COMMANDS[args.command](args, engine)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
