"""Operator-triggered maintenance for the classroom data store."""
from __future__ import annotations

import argparse
import json
import logging
from typing import Any, Dict, Optional, Sequence

from database import KeyValueStore
from services.conflicts import (
    ConflictResolutionResult,
    list_backups,
    resolve_all_conflicts,
    restore_from_backup,
)
from services.diagnostics import DiagnosticReport, run_full_diagnostic
from services.migration import MigrationResult, is_migration_needed, migrate_all_legacy_data
from services.recovery import RecoveryResult, recover_missing_data_points
from services.unified_store import UnifiedStore, get_unified_store

LOGGER = logging.getLogger(__name__)


def migrate(store: Optional[UnifiedStore] = None) -> MigrationResult:
    return migrate_all_legacy_data(store or get_unified_store())


def resolve_conflicts(store: Optional[UnifiedStore] = None) -> ConflictResolutionResult:
    return resolve_all_conflicts(store or get_unified_store())


def recover_data_points(store: Optional[UnifiedStore] = None) -> RecoveryResult:
    return recover_missing_data_points(store or get_unified_store())


def diagnose(store: Optional[UnifiedStore] = None) -> DiagnosticReport:
    return run_full_diagnostic(store or get_unified_store())


def status(store: Optional[UnifiedStore] = None) -> Dict[str, Any]:
    store = store or get_unified_store()
    payload = store.get_system_status()
    payload["migrationNeeded"] = is_migration_needed(store)
    payload["backups"] = list_backups(store.kv)
    return payload


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Maintain the classroom unified data store.")
    parser.add_argument("--db", help="Path to the storage database (default: data root)")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("migrate", help="Fill empty collections from legacy storage")
    subparsers.add_parser(
        "resolve-conflicts", help="Merge records stored in both unified and legacy storage"
    )
    subparsers.add_parser("recover", help="Re-link legacy data points to their goals")
    subparsers.add_parser("diagnose", help="Audit the store without changing it")
    subparsers.add_parser("status", help="Show totals and whether a migration is needed")
    restore = subparsers.add_parser("restore", help="Restore keys saved before conflict resolution")
    restore.add_argument("timestamp", help="Backup timestamp reported by resolve-conflicts")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry-point used by ``maintenance.py``."""

    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    with KeyValueStore(args.db) as kv:
        store = UnifiedStore(kv, auto_migrate=False)
        exit_code = 0
        if args.command == "migrate":
            payload: Any = migrate(store).to_dict()
        elif args.command == "resolve-conflicts":
            result = resolve_conflicts(store)
            payload = result.to_dict()
            exit_code = 1 if result.errors else 0
        elif args.command == "recover":
            payload = recover_data_points(store).to_dict()
        elif args.command == "diagnose":
            payload = diagnose(store).to_dict()
        elif args.command == "status":
            payload = status(store)
        else:
            restored = restore_from_backup(kv, args.timestamp)
            payload = {"restored": restored, "timestamp": args.timestamp}
            exit_code = 0 if restored else 1

    print(json.dumps(payload, indent=2, ensure_ascii=False))
    return exit_code


if __name__ == "__main__":  # pragma: no cover - CLI behavior
    raise SystemExit(main())
