"""Single source of truth for classroom data.

The unified document is stored as one JSON value.  Every mutation is a full
load, modify, save cycle performed while holding the store's mutex, so callers
sharing a :class:`UnifiedStore` never interleave partial writes.
"""

from __future__ import annotations

import contextlib
import datetime as dt
import json
import logging
import threading
import uuid
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from dateutil.parser import ParserError, parse as dateutil_parse

from database import KeyValueStore
from services.legacy_stores import CALENDAR_SCHEMAS, all_legacy_keys
from services.normalizer import (
    CALENDAR_KINDS,
    Document,
    empty_document,
    find_student,
    iter_data_points,
    iter_goals,
    normalize_document,
    refresh_metadata,
)
from services.schemas import get_schema

LOGGER = logging.getLogger(__name__)

UNIFIED_KEY = "vsb_unified_data"


class StoreError(RuntimeError):
    """Base class for errors surfaced by the classroom data services."""


class EntityNotFoundError(StoreError):
    """Raised when an operation would create a reference to a missing entity."""

    def __init__(self, entity_type: str, entity_id: Any):
        super().__init__(f"{entity_type} '{entity_id}' not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class DuplicateIdentifierError(StoreError):
    """Raised when an add operation reuses an identifier already in its collection."""

    def __init__(self, entity_type: str, entity_id: Any):
        super().__init__(f"{entity_type} '{entity_id}' already exists")
        self.entity_type = entity_type
        self.entity_id = entity_id


def serialize_document(doc: Mapping[str, Any]) -> str:
    return json.dumps(doc, ensure_ascii=False)


def new_identifier() -> str:
    return str(uuid.uuid4())


def _data_point_sort_key(data_point: Mapping[str, Any]) -> dt.datetime:
    stamp = f"{data_point.get('date') or ''} {data_point.get('time') or ''}".strip()
    try:
        parsed = dateutil_parse(stamp)
    except (ParserError, ValueError, OverflowError):
        return dt.datetime.min
    return parsed.replace(tzinfo=None)


class UnifiedStore:
    """Typed accessors over the unified classroom document."""

    def __init__(self, kv: KeyValueStore, *, auto_migrate: bool = True) -> None:
        self.kv = kv
        self.auto_migrate = auto_migrate
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def load(self, *, heal: bool = True) -> Optional[Document]:
        """Return the normalised document, or ``None`` when absent or corrupt.

        When the stored document had to be reshaped (keyed maps instead of
        sequences, an older schema version) the corrected document is written
        back before returning, unless ``heal`` is false.
        """
        raw_text = self.kv.get_item(UNIFIED_KEY)
        if raw_text is None:
            return None
        try:
            raw = json.loads(raw_text)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Unified document under %s is unreadable: %s", UNIFIED_KEY, exc)
            return None
        if not isinstance(raw, Mapping):
            LOGGER.warning("Unified document under %s is not an object; ignoring it", UNIFIED_KEY)
            return None
        doc, changed = normalize_document(raw)
        if changed and heal:
            with self._lock:
                LOGGER.info("Normalised the shape of the unified document")
                self.save(doc)
        return doc

    def save(self, doc: Mapping[str, Any]) -> None:
        self.kv.set_item(UNIFIED_KEY, serialize_document(doc))

    def _current_document(self, auto_migrate: Optional[bool]) -> Document:
        doc = self.load()
        if doc is not None:
            return doc
        if self.auto_migrate if auto_migrate is None else auto_migrate:
            from services.migration import MigrationPipeline

            MigrationPipeline(self).run()
            doc = self.load()
        return doc if doc is not None else empty_document()

    def read(self) -> Document:
        """Load the document for reading, running the migration if it is absent."""
        with self._lock:
            return self._current_document(None)

    @contextlib.contextmanager
    def transaction(self, *, auto_migrate: Optional[bool] = None) -> Iterator[Document]:
        """Load, yield for mutation, then persist with refreshed metadata.

        Nothing is written when the body raises.
        """
        with self._lock:
            doc = self._current_document(auto_migrate)
            yield doc
            refresh_metadata(doc)
            self.save(doc)

    # ------------------------------------------------------------------
    # Generic collection helpers (staff, activities)
    # ------------------------------------------------------------------
    def _get_all(self, collection: str) -> List[Dict[str, Any]]:
        return list(self.read().get(collection) or [])

    def _get(self, collection: str, entity_id: str) -> Optional[Dict[str, Any]]:
        for record in self._get_all(collection):
            if record.get("id") == entity_id:
                return record
        return None

    def _add(self, collection: str, entity_type: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        schema = get_schema(entity_type)
        record = dict(payload)
        record["id"] = str(record.get("id") or new_identifier())
        record = schema.apply_defaults(schema.validate(record))
        with self.transaction() as doc:
            if any(existing.get("id") == record["id"] for existing in doc[collection]):
                raise DuplicateIdentifierError(entity_type, record["id"])
            doc[collection].append(record)
        LOGGER.debug("Added %s %s", entity_type, record["id"])
        return record

    def _update(
        self, collection: str, entity_type: str, entity_id: str, updates: Mapping[str, Any]
    ) -> Optional[Dict[str, Any]]:
        schema = get_schema(entity_type)
        cleaned = schema.validate(updates, partial=True)
        cleaned.pop("id", None)
        with self.transaction() as doc:
            for index, record in enumerate(doc[collection]):
                if record.get("id") == entity_id:
                    doc[collection][index] = {**record, **cleaned}
                    return doc[collection][index]
        return None

    def _delete(self, collection: str, entity_id: str) -> bool:
        with self.transaction() as doc:
            remaining = [record for record in doc[collection] if record.get("id") != entity_id]
            removed = len(remaining) != len(doc[collection])
            doc[collection] = remaining
        return removed

    # ------------------------------------------------------------------
    # Students
    # ------------------------------------------------------------------
    def get_all_students(self) -> List[Dict[str, Any]]:
        return self._get_all("students")

    def get_student(self, student_id: str) -> Optional[Dict[str, Any]]:
        return self._get("students", student_id)

    def add_student(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """The goal block starts empty; goals and data points have their own operations."""
        return self._add("students", "student", _without_goal_block(payload))

    def update_student(self, student_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        return self._update("students", "student", student_id, _without_goal_block(updates))

    def deactivate_student(self, student_id: str) -> Optional[Dict[str, Any]]:
        """Students are never hard-deleted; they are marked inactive."""
        return self.update_student(student_id, {"isActive": False})

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------
    def get_student_goals(self, student_id: str) -> List[Dict[str, Any]]:
        student = self.get_student(student_id)
        if student is None:
            return []
        return list(student["iepData"]["goals"])

    def get_all_goals(self) -> List[Dict[str, Any]]:
        return [goal for _, goal in iter_goals(self.read())]

    def add_goal_to_student(self, student_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        schema = get_schema("goal")
        goal = dict(payload)
        goal["id"] = str(goal.get("id") or new_identifier())
        goal["studentId"] = student_id
        goal = schema.apply_defaults(schema.validate(goal))
        with self.transaction() as doc:
            student = find_student(doc, student_id)
            if student is None:
                raise EntityNotFoundError("student", student_id)
            if any(existing.get("id") == goal["id"] for _, existing in iter_goals(doc)):
                raise DuplicateIdentifierError("goal", goal["id"])
            student["iepData"]["goals"].append(goal)
        LOGGER.debug("Added goal %s to student %s", goal["id"], student_id)
        return goal

    def update_goal(self, goal_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        cleaned = get_schema("goal").validate(updates, partial=True)
        cleaned.pop("id", None)
        cleaned.pop("studentId", None)
        with self.transaction() as doc:
            for student in doc["students"]:
                goals = student["iepData"]["goals"]
                for index, goal in enumerate(goals):
                    if goal.get("id") == goal_id:
                        goals[index] = {**goal, **cleaned}
                        return goals[index]
        return None

    def deactivate_goal(self, goal_id: str) -> Optional[Dict[str, Any]]:
        """Goals are never hard-deleted; they are marked inactive."""
        return self.update_goal(goal_id, {"isActive": False})

    # ------------------------------------------------------------------
    # Data points
    # ------------------------------------------------------------------
    def get_student_data_points(self, student_id: str) -> List[Dict[str, Any]]:
        student = self.get_student(student_id)
        if student is None:
            return []
        return list(student["iepData"]["dataCollection"])

    def get_goal_data_points(self, goal_id: str) -> List[Dict[str, Any]]:
        """Data points recorded against ``goal_id``, newest first."""
        points = [dp for _, dp in iter_data_points(self.read()) if dp.get("goalId") == goal_id]
        return sorted(points, key=_data_point_sort_key, reverse=True)

    def get_all_data_points(self) -> List[Dict[str, Any]]:
        return [dp for _, dp in iter_data_points(self.read())]

    def add_data_point(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        schema = get_schema("data_point")
        data_point = dict(payload)
        data_point["id"] = str(data_point.get("id") or new_identifier())
        data_point = schema.apply_defaults(schema.validate(data_point))
        student_id = data_point["studentId"]
        with self.transaction() as doc:
            student = find_student(doc, student_id)
            if student is None:
                raise EntityNotFoundError("student", student_id)
            _require_owned_goal(student, data_point["goalId"])
            if any(existing.get("id") == data_point["id"] for _, existing in iter_data_points(doc)):
                raise DuplicateIdentifierError("data_point", data_point["id"])
            student["iepData"]["dataCollection"].append(data_point)
            refresh_goal_statistics(student, data_point["goalId"])
        return data_point

    def update_data_point(self, data_point_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        cleaned = get_schema("data_point").validate(updates, partial=True)
        cleaned.pop("id", None)
        cleaned.pop("studentId", None)
        with self.transaction() as doc:
            located = _locate_data_point(doc, data_point_id)
            if located is None:
                return None
            student, index = located
            collection = student["iepData"]["dataCollection"]
            previous_goal = collection[index].get("goalId")
            if "goalId" in cleaned:
                _require_owned_goal(student, cleaned["goalId"])
            collection[index] = {**collection[index], **cleaned}
            refresh_goal_statistics(student, previous_goal)
            refresh_goal_statistics(student, collection[index].get("goalId"))
            return collection[index]

    def delete_data_point(self, data_point_id: str) -> bool:
        with self.transaction() as doc:
            located = _locate_data_point(doc, data_point_id)
            if located is None:
                return False
            student, index = located
            removed = student["iepData"]["dataCollection"].pop(index)
            refresh_goal_statistics(student, removed.get("goalId"))
        return True

    # ------------------------------------------------------------------
    # Staff
    # ------------------------------------------------------------------
    def get_all_staff(self) -> List[Dict[str, Any]]:
        return self._get_all("staff")

    def get_staff(self, staff_id: str) -> Optional[Dict[str, Any]]:
        return self._get("staff", staff_id)

    def add_staff(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return self._add("staff", "staff", payload)

    def update_staff(self, staff_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        return self._update("staff", "staff", staff_id, updates)

    def delete_staff(self, staff_id: str) -> bool:
        return self._delete("staff", staff_id)

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------
    def get_all_activities(self) -> List[Dict[str, Any]]:
        return self._get_all("activities")

    def get_activity(self, activity_id: str) -> Optional[Dict[str, Any]]:
        return self._get("activities", activity_id)

    def add_activity(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return self._add("activities", "activity", payload)

    def update_activity(self, activity_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        return self._update("activities", "activity", activity_id, updates)

    def delete_activity(self, activity_id: str) -> bool:
        return self._delete("activities", activity_id)

    # ------------------------------------------------------------------
    # Calendar
    # ------------------------------------------------------------------
    def get_calendar_entries(
        self, kind: str, student_id: Optional[str] = None, date: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        _check_calendar_kind(kind)
        entries = self.read()["calendar"][kind]
        return [
            entry
            for entry in entries
            if (student_id is None or entry.get("studentId") == student_id)
            and (date is None or entry.get("date") == date)
        ]

    def add_calendar_entry(self, kind: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        _check_calendar_kind(kind)
        schema = get_schema(CALENDAR_SCHEMAS[kind])
        entry = dict(payload)
        entry["id"] = str(entry.get("id") or new_identifier())
        entry = schema.apply_defaults(schema.validate(entry))
        with self.transaction() as doc:
            if find_student(doc, entry["studentId"]) is None:
                raise EntityNotFoundError("student", entry["studentId"])
            entries = doc["calendar"][kind]
            if any(existing.get("id") == entry["id"] for existing in entries):
                raise DuplicateIdentifierError(schema.entity_type, entry["id"])
            entries.append(entry)
        return entry

    def update_calendar_entry(
        self, kind: str, entry_id: str, updates: Mapping[str, Any]
    ) -> Optional[Dict[str, Any]]:
        _check_calendar_kind(kind)
        cleaned = get_schema(CALENDAR_SCHEMAS[kind]).validate(updates, partial=True)
        cleaned.pop("id", None)
        cleaned.pop("studentId", None)
        with self.transaction() as doc:
            entries = doc["calendar"][kind]
            for index, entry in enumerate(entries):
                if entry.get("id") == entry_id:
                    entries[index] = {**entry, **cleaned}
                    return entries[index]
        return None

    def delete_calendar_entry(self, kind: str, entry_id: str) -> bool:
        _check_calendar_kind(kind)
        with self.transaction() as doc:
            entries = doc["calendar"][kind]
            remaining = [entry for entry in entries if entry.get("id") != entry_id]
            doc["calendar"][kind] = remaining
        return len(remaining) != len(entries)

    # ------------------------------------------------------------------
    # Settings & status
    # ------------------------------------------------------------------
    def get_settings(self) -> Dict[str, Any]:
        return dict(self.read().get("settings") or {})

    def update_settings(self, updates: Mapping[str, Any]) -> Dict[str, Any]:
        """Shallow merge of ``updates`` into the settings document."""
        with self.transaction() as doc:
            doc["settings"].update(updates)
            return dict(doc["settings"])

    def get_system_status(self) -> Dict[str, Any]:
        doc = self.load(heal=False)
        has_legacy = bool(all_legacy_keys(self.kv))
        if doc is None:
            return {
                "hasUnifiedData": False,
                "hasLegacyData": has_legacy,
                "totalStudents": 0,
                "totalGoals": 0,
                "totalDataPoints": 0,
            }
        return {
            "hasUnifiedData": True,
            "hasLegacyData": has_legacy,
            "totalStudents": len(doc["students"]),
            "totalGoals": sum(1 for _ in iter_goals(doc)),
            "totalDataPoints": sum(1 for _ in iter_data_points(doc)),
        }


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def _check_calendar_kind(kind: str) -> None:
    if kind not in CALENDAR_KINDS:
        raise ValueError(f"Unknown calendar collection '{kind}'")


def _without_goal_block(payload: Mapping[str, Any]) -> Dict[str, Any]:
    if "iepData" in payload:
        LOGGER.debug("Ignoring iepData in a student payload")
    return {key: value for key, value in payload.items() if key != "iepData"}


def _require_owned_goal(student: Mapping[str, Any], goal_id: Any) -> None:
    if not any(goal.get("id") == goal_id for goal in student["iepData"]["goals"]):
        raise EntityNotFoundError("goal", goal_id)


def _locate_data_point(doc: Document, data_point_id: str) -> Optional[Tuple[Dict[str, Any], int]]:
    for student in doc["students"]:
        for index, data_point in enumerate(student["iepData"]["dataCollection"]):
            if data_point.get("id") == data_point_id:
                return student, index
    return None


def refresh_goal_statistics(student: Mapping[str, Any], goal_id: Any) -> None:
    """Recompute a goal's denormalised data point count and latest date."""
    for goal in student["iepData"]["goals"]:
        if goal.get("id") != goal_id:
            continue
        dates = [
            dp.get("date")
            for dp in student["iepData"]["dataCollection"]
            if dp.get("goalId") == goal_id and dp.get("date")
        ]
        goal["dataPoints"] = sum(
            1 for dp in student["iepData"]["dataCollection"] if dp.get("goalId") == goal_id
        )
        goal["lastDataPoint"] = max(dates) if dates else None
        return


# ----------------------------------------------------------------------
# Module level singleton
# ----------------------------------------------------------------------

_store: Optional[UnifiedStore] = None
_store_lock = threading.Lock()


def get_unified_store() -> UnifiedStore:
    global _store
    with _store_lock:
        if _store is None:
            _store = UnifiedStore(KeyValueStore())
        return _store


def reset_unified_store(store: Optional[UnifiedStore] = None) -> Optional[UnifiedStore]:
    """Replace the cached store; used by the CLI and tests to point at another file."""
    global _store
    with _store_lock:
        if _store is not None and _store is not store:
            _store.kv.close()
        _store = store
        return _store


__all__ = [
    "DuplicateIdentifierError",
    "EntityNotFoundError",
    "StoreError",
    "UNIFIED_KEY",
    "UnifiedStore",
    "get_unified_store",
    "new_identifier",
    "refresh_goal_statistics",
    "reset_unified_store",
    "serialize_document",
]
