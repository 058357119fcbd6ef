"""Repair identifiers that live in both the unified document and legacy storage.

Such duplicates are left behind by a migration that ran while a legacy writer
was still active.  Each conflicting record is merged field by field with the
unified copy as the base, and the legacy copy is only removed once every
conflict has converged.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from database import KeyValueStore
from services.legacy_stores import STAFF_KEYS, STUDENT_KEYS, LegacySnapshot, prune_legacy_records
from services.merge import is_converged, merge_records
from services.normalizer import Document
from services.schemas import utc_now
from services.unified_store import UNIFIED_KEY, UnifiedStore

LOGGER = logging.getLogger(__name__)

UNIFIED_BACKUP_PREFIX = "backup-unified-data-"
LEGACY_BACKUP_PREFIXES: Dict[str, str] = {
    "students": "backup-legacy-students-",
    "staff": "backup-legacy-staff-",
}
LEGACY_KEYS = {"students": STUDENT_KEYS, "staff": STAFF_KEYS}
LEGACY_ENTITY_TYPES = {"students": "student", "staff": "staff"}
CONFLICT_COLLECTIONS = ("students", "staff")


@dataclass
class ConflictResolutionResult:
    resolved_count: int = 0
    errors: List[str] = field(default_factory=list)
    removed_legacy_ids: Dict[str, List[str]] = field(default_factory=dict)
    remaining_conflicts: Dict[str, List[str]] = field(default_factory=dict)
    backup_timestamp: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.errors and not any(self.remaining_conflicts.values())

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["success"] = self.success
        return payload


def _legacy_view(collection: str, record: Mapping[str, Any]) -> Dict[str, Any]:
    """Fields of a legacy record that take part in a merge.

    A student's goal block is owned by the unified document.
    """
    if collection == "students":
        return {key: value for key, value in record.items() if key != "iepData"}
    return dict(record)


def find_conflicts(doc: Optional[Document], snapshot: LegacySnapshot) -> Dict[str, List[str]]:
    """Identifiers present both in ``doc`` and in legacy storage, per collection."""
    conflicts: Dict[str, List[str]] = {name: [] for name in CONFLICT_COLLECTIONS}
    if doc is None:
        return conflicts
    for name in CONFLICT_COLLECTIONS:
        legacy_ids = {record["id"] for record in snapshot.collection(name)}
        for record in doc.get(name) or []:
            record_id = record.get("id")
            if record_id in legacy_ids and record_id not in conflicts[name]:
                conflicts[name].append(record_id)
    return conflicts


# ----------------------------------------------------------------------
# Backups
# ----------------------------------------------------------------------


def create_backup(kv: KeyValueStore) -> str:
    """Copy the unified document and the legacy student and staff keys aside."""
    timestamp = utc_now().replace(":", "-").replace(".", "-").replace("+", "-")
    updates: Dict[str, str] = {}
    unified = kv.get_item(UNIFIED_KEY)
    if unified is not None:
        updates[f"{UNIFIED_BACKUP_PREFIX}{timestamp}"] = unified
    for name, prefix in LEGACY_BACKUP_PREFIXES.items():
        raw = {key: kv.get_item(key) for key in LEGACY_KEYS[name]}
        present = {key: value for key, value in raw.items() if value is not None}
        if present:
            updates[f"{prefix}{timestamp}"] = json.dumps(present, ensure_ascii=False)
    kv.set_many(updates)
    LOGGER.info("Backup created with timestamp %s", timestamp)
    return timestamp


def list_backups(kv: KeyValueStore) -> List[str]:
    return sorted(
        key[len(UNIFIED_BACKUP_PREFIX):] for key in kv.keys() if key.startswith(UNIFIED_BACKUP_PREFIX)
    )


def restore_from_backup(kv: KeyValueStore, timestamp: str) -> bool:
    """Put the keys saved under ``timestamp`` back.  Returns ``False`` if none exist."""
    updates: Dict[str, str] = {}
    unified = kv.get_item(f"{UNIFIED_BACKUP_PREFIX}{timestamp}")
    if unified is not None:
        updates[UNIFIED_KEY] = unified
    for prefix in LEGACY_BACKUP_PREFIXES.values():
        raw = kv.get_item(f"{prefix}{timestamp}")
        if raw is None:
            continue
        try:
            saved = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning("Backup %s%s is unreadable; skipping it", prefix, timestamp)
            continue
        if isinstance(saved, Mapping):
            updates.update({key: value for key, value in saved.items() if isinstance(value, str)})
    if not updates:
        LOGGER.warning("No backup found for timestamp %s", timestamp)
        return False
    kv.set_many(updates)
    LOGGER.info("Restored %d keys from backup %s", len(updates), timestamp)
    return True


# ----------------------------------------------------------------------
# Resolution
# ----------------------------------------------------------------------


def resolve_all_conflicts(store: UnifiedStore) -> ConflictResolutionResult:
    """Merge every conflicting identifier, then retire the redundant legacy copies."""
    result = ConflictResolutionResult()
    kv = store.kv
    with store._lock:
        snapshot = LegacySnapshot.build(kv)
        conflicts = find_conflicts(store.load(), snapshot)
        if not any(conflicts.values()):
            LOGGER.info("No identifier conflicts between unified and legacy storage")
            return result

        result.backup_timestamp = create_backup(kv)
        merged_ids: Dict[str, List[str]] = {name: [] for name in CONFLICT_COLLECTIONS}
        with store.transaction(auto_migrate=False) as doc:
            for name in CONFLICT_COLLECTIONS:
                legacy_by_id = {record["id"]: record for record in snapshot.collection(name)}
                for index, record in enumerate(doc[name]):
                    record_id = record.get("id")
                    if record_id not in conflicts[name] or record_id in merged_ids[name]:
                        continue
                    try:
                        doc[name][index] = merge_records(
                            record, _legacy_view(name, legacy_by_id[record_id])
                        )
                    except Exception as exc:
                        LOGGER.warning("Failed to merge %s %s: %s", name, record_id, exc)
                        result.errors.append(f"{name} {record_id}: {exc}")
                        continue
                    merged_ids[name].append(record_id)
                    result.resolved_count += 1
            remaining = _unconverged(doc, snapshot, conflicts)

        result.remaining_conflicts = remaining
        if any(remaining.values()):
            LOGGER.warning("Conflicts remain after merging; legacy records were kept: %s", remaining)
        else:
            for name in CONFLICT_COLLECTIONS:
                if not merged_ids[name]:
                    continue
                removed = prune_legacy_records(
                    kv, LEGACY_KEYS[name], merged_ids[name], LEGACY_ENTITY_TYPES[name]
                )
                if removed:
                    result.removed_legacy_ids[name] = removed
        LOGGER.info(
            "Resolved %d conflicts with %d errors", result.resolved_count, len(result.errors)
        )
    return result


def _unconverged(
    doc: Document, snapshot: LegacySnapshot, conflicts: Mapping[str, List[str]]
) -> Dict[str, List[str]]:
    remaining: Dict[str, List[str]] = {}
    for name in CONFLICT_COLLECTIONS:
        legacy_by_id = {record["id"]: record for record in snapshot.collection(name)}
        unified_by_id = {record.get("id"): record for record in doc[name]}
        stuck = [
            record_id
            for record_id in conflicts[name]
            if not is_converged(unified_by_id[record_id], _legacy_view(name, legacy_by_id[record_id]))
        ]
        if stuck:
            remaining[name] = stuck
    return remaining


__all__ = [
    "ConflictResolutionResult",
    "create_backup",
    "find_conflicts",
    "list_backups",
    "resolve_all_conflicts",
    "restore_from_backup",
]
