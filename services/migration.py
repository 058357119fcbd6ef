"""Populate the unified document from the pre-unification stores.

The pipeline is conservative: a collection of the unified document is only
filled when it is empty.  Once anything has been written to a collection the
legacy copy is no longer authoritative for it, which makes the pipeline safe to
run any number of times.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from services.legacy_stores import (
    STUDENT_KEYS,
    LegacySnapshot,
    UnreadableKey,
    ensure_list_of_records,
    read_json_key,
)
from services.normalizer import (
    CALENDAR_KINDS,
    Document,
    empty_document,
    iter_data_points,
    iter_goals,
    normalize_document,
    refresh_metadata,
)
from services.schemas import get_schema, utc_now
from services.unified_store import (
    UNIFIED_KEY,
    UnifiedStore,
    refresh_goal_statistics,
    serialize_document,
)

LOGGER = logging.getLogger(__name__)

PREDECESSOR_KEY = "visual-schedule-builder-unified-data"
MIGRATION_LOG_KEY = "visual-schedule-builder-migration-log"


@dataclass
class MigrationResult:
    """Summary of one migration run."""

    migrated: Dict[str, int] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    seeded_from_predecessor: bool = False
    orphaned_goals: int = 0
    orphaned_data_points: int = 0
    duplicates_merged: int = 0
    unreadable_keys: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def changed(self) -> bool:
        return self.seeded_from_predecessor or any(self.migrated.values())

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["success"] = self.success
        return payload


class MigrationPipeline:
    """Fills empty collections of a :class:`UnifiedStore` from legacy keys."""

    def __init__(self, store: UnifiedStore) -> None:
        self.store = store
        self.kv = store.kv

    def run(self) -> MigrationResult:
        result = MigrationResult()
        with self.store._lock:
            snapshot = LegacySnapshot.build(self.kv)
            result.duplicates_merged = snapshot.duplicates_merged
            result.unreadable_keys = list(snapshot.unreadable_keys)

            doc = self.store.load()
            created = doc is None
            if doc is None:
                doc = self._seed_document(result)

            self._migrate_students(doc, snapshot, result)
            self._migrate_goals(doc, snapshot, result)
            self._migrate_data_points(doc, snapshot, result)
            for name, records in (("staff", snapshot.staff), ("activities", snapshot.activities)):
                self._fill_collection(doc, name, records, _schema_for(name), result)
            self._migrate_calendar(doc, snapshot, result)
            self._migrate_settings(doc, snapshot, result)

            if created or result.changed:
                doc["metadata"]["migratedAt"] = utc_now()
                refresh_metadata(doc)
                self._persist(doc, result)
            else:
                LOGGER.debug("Unified document already populated; migration is a no-op")
        return result

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------
    def _seed_document(self, result: MigrationResult) -> Document:
        try:
            predecessor = read_json_key(self.kv, PREDECESSOR_KEY)
        except UnreadableKey:
            LOGGER.warning("Predecessor document %s is unreadable; starting empty", PREDECESSOR_KEY)
            result.unreadable_keys.append(PREDECESSOR_KEY)
            predecessor = None
        if isinstance(predecessor, Mapping):
            doc, _ = normalize_document(predecessor)
            result.seeded_from_predecessor = True
            LOGGER.info(
                "Seeded unified document from %s with %d students",
                PREDECESSOR_KEY,
                len(doc["students"]),
            )
            return doc
        return empty_document()

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------
    def _fill_collection(
        self,
        doc: Document,
        name: str,
        records: List[Dict[str, Any]],
        entity_type: str,
        result: MigrationResult,
    ) -> None:
        if doc[name]:
            result.skipped.append(name)
            return
        if not records:
            return
        schema = get_schema(entity_type)
        doc[name] = [schema.apply_defaults(record) for record in records]
        result.migrated[name] = len(records)
        LOGGER.info("Migrated %d %s from legacy storage", len(records), name)

    def _migrate_students(
        self, doc: Document, snapshot: LegacySnapshot, result: MigrationResult
    ) -> None:
        self._fill_collection(doc, "students", snapshot.students, "student", result)
        for student in doc["students"]:
            iep = student.get("iepData")
            if not isinstance(iep, dict):
                student["iepData"] = {"goals": [], "dataCollection": []}
                continue
            iep.setdefault("goals", [])
            iep.setdefault("dataCollection", [])

    def _migrate_goals(
        self, doc: Document, snapshot: LegacySnapshot, result: MigrationResult
    ) -> None:
        if any(True for _ in iter_goals(doc)):
            result.skipped.append("goals")
            return
        if not snapshot.goals:
            return
        schema = get_schema("goal")
        students = {student["id"]: student for student in doc["students"]}
        embedded = 0
        for goal in snapshot.goals:
            owner = students.get(str(goal.get("studentId")))
            if owner is None:
                LOGGER.warning("Legacy goal %s references unknown student %s", goal["id"], goal.get("studentId"))
                result.orphaned_goals += 1
                continue
            record = schema.apply_defaults({**goal, "studentId": owner["id"]})
            owner["iepData"]["goals"].append(record)
            embedded += 1
        if embedded:
            result.migrated["goals"] = embedded
            LOGGER.info("Embedded %d legacy goals into their students", embedded)

    def _migrate_data_points(
        self, doc: Document, snapshot: LegacySnapshot, result: MigrationResult
    ) -> None:
        if any(True for _ in iter_data_points(doc)):
            result.skipped.append("dataPoints")
            return
        if not snapshot.data_points:
            return
        schema = get_schema("data_point")
        students = {student["id"]: student for student in doc["students"]}
        touched: Dict[str, set] = {}
        embedded = 0
        for data_point in snapshot.data_points:
            owner = students.get(str(data_point.get("studentId")))
            goal_id = str(data_point.get("goalId"))
            goal_ids = {goal.get("id") for goal in owner["iepData"]["goals"]} if owner else set()
            if goal_id not in goal_ids:
                result.orphaned_data_points += 1
                continue
            record = schema.apply_defaults({**data_point, "studentId": owner["id"], "goalId": goal_id})
            owner["iepData"]["dataCollection"].append(record)
            touched.setdefault(owner["id"], set()).add(goal_id)
            embedded += 1
        for student_id, goal_ids in touched.items():
            for goal_id in goal_ids:
                refresh_goal_statistics(students[student_id], goal_id)
        if embedded:
            result.migrated["dataPoints"] = embedded
            LOGGER.info("Embedded %d legacy data points", embedded)
        if result.orphaned_data_points:
            LOGGER.warning(
                "%d legacy data points reference goals that do not exist; "
                "run data point recovery to re-link them",
                result.orphaned_data_points,
            )

    def _migrate_calendar(
        self, doc: Document, snapshot: LegacySnapshot, result: MigrationResult
    ) -> None:
        for kind in CALENDAR_KINDS:
            if doc["calendar"][kind]:
                result.skipped.append(kind)
                continue
            records = snapshot.calendar.get(kind) or []
            if not records:
                continue
            doc["calendar"][kind] = records
            result.migrated[kind] = len(records)
            LOGGER.info("Migrated %d %s entries", len(records), kind)

    def _migrate_settings(
        self, doc: Document, snapshot: LegacySnapshot, result: MigrationResult
    ) -> None:
        if doc["settings"]:
            result.skipped.append("settings")
            return
        if snapshot.settings:
            doc["settings"] = dict(snapshot.settings)
            result.migrated["settings"] = 1

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _persist(self, doc: Document, result: MigrationResult) -> None:
        log = get_migration_log(self.kv)
        stamp = doc["metadata"]["migratedAt"]
        summary = ", ".join(f"{count} {name}" for name, count in result.migrated.items()) or "nothing"
        log.append(f"{stamp}: migrated {summary}")
        if result.seeded_from_predecessor:
            log.append(f"{stamp}: seeded from {PREDECESSOR_KEY}")
        if result.orphaned_data_points:
            log.append(f"{stamp}: {result.orphaned_data_points} orphaned data points left in legacy storage")
        self.kv.set_many(
            {
                UNIFIED_KEY: serialize_document(doc),
                MIGRATION_LOG_KEY: json.dumps(log, ensure_ascii=False),
            }
        )
        LOGGER.info("Migration complete: %s", summary)


def _schema_for(collection: str) -> str:
    return {"staff": "staff", "activities": "activity"}[collection]


def get_migration_log(kv) -> List[str]:
    try:
        log = read_json_key(kv, MIGRATION_LOG_KEY)
    except UnreadableKey:
        LOGGER.warning("Migration log %s is unreadable; starting a new one", MIGRATION_LOG_KEY)
        return []
    return [str(line) for line in log] if isinstance(log, list) else []


def is_migration_needed(store: UnifiedStore) -> bool:
    """True when the unified document is absent or has fewer students than legacy storage."""
    doc = store.load(heal=False)
    if doc is None:
        return True
    legacy_total = 0
    for key in STUDENT_KEYS:
        try:
            legacy_total = max(legacy_total, len(ensure_list_of_records(read_json_key(store.kv, key))))
        except UnreadableKey:
            return True
    return legacy_total > len(doc["students"])


def migrate_all_legacy_data(store: UnifiedStore) -> MigrationResult:
    return MigrationPipeline(store).run()


__all__ = [
    "MIGRATION_LOG_KEY",
    "MigrationPipeline",
    "MigrationResult",
    "PREDECESSOR_KEY",
    "get_migration_log",
    "is_migration_needed",
    "migrate_all_legacy_data",
]
