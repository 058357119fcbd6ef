"""Readers for the pre-unification, per-entity storage keys.

Before the unified document existed every screen of the classroom application
persisted its own collection under its own key.  Over time several writers
stored the same collection under different keys, some as positional arrays and
some as identifier-keyed maps, and a few keys were left half-written.  The
helpers here read those keys defensively: a key that is missing or does not
parse is an empty collection, never an error.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from database import KeyValueStore
from services.merge import merge_records
from services.schemas import get_schema, normalise_date

LOGGER = logging.getLogger(__name__)

STUDENT_KEYS: Tuple[str, ...] = ("students", "vsb_students")
STAFF_KEYS: Tuple[str, ...] = ("staff_members", "vsb_staff", "staff")
GOAL_KEYS: Tuple[str, ...] = ("iepGoals", "iep_goals")
DATA_POINT_KEYS: Tuple[str, ...] = ("iepDataPoints", "iep_data_points", "iepDataCollection")
ACTIVITY_KEYS: Tuple[str, ...] = ("activityLibrary", "custom_activities", "available_activities")
SETTINGS_KEY = "vsb_settings"
CALENDAR_SETTINGS_KEY = "calendarSettings"

CALENDAR_KEYS: Dict[str, str] = {
    "behaviorCommitments": "behaviorCommitments",
    "dailyHighlights": "dailyHighlights",
    "independentChoices": "independentChoices",
}
CALENDAR_SCHEMAS: Dict[str, str] = {
    "behaviorCommitments": "behavior_commitment",
    "dailyHighlights": "daily_highlight",
    "independentChoices": "independent_choice",
}

COLLECTION_KEYS: Dict[str, Tuple[str, ...]] = {
    "students": STUDENT_KEYS,
    "staff": STAFF_KEYS,
    "goals": GOAL_KEYS,
    "dataPoints": DATA_POINT_KEYS,
    "activities": ACTIVITY_KEYS,
}

_DATED_KEY_PATTERN = re.compile(r"^(behaviorCommitments|dailyHighlights|independentChoices)_(.+)$")


def all_legacy_keys(kv: KeyValueStore) -> List[str]:
    """Every key in ``kv`` that a legacy reader would consume."""
    static = {SETTINGS_KEY, CALENDAR_SETTINGS_KEY}
    for keys in COLLECTION_KEYS.values():
        static.update(keys)
    static.update(CALENDAR_KEYS.values())
    return [key for key in kv.keys() if key in static or _DATED_KEY_PATTERN.match(key)]


# ---------------------------------------------------------------------------
# Low level helpers
# ---------------------------------------------------------------------------


class UnreadableKey(Exception):
    """Internal signal for a key whose payload is not valid JSON."""


def read_json_key(kv: KeyValueStore, key: str) -> Any:
    """Return the decoded payload of ``key`` or ``None`` when absent.

    Raises :class:`UnreadableKey` when the stored text is not valid JSON.
    """
    raw = kv.get_item(key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise UnreadableKey(key) from exc


def ensure_list_of_records(value: Any) -> List[Dict[str, Any]]:
    """Coerce a positional array or identifier-keyed map into a list of dicts.

    Records taken from a map inherit the map key as ``id`` when they lack one.
    """
    if value in (None, ""):
        return []
    records: List[Dict[str, Any]] = []
    if isinstance(value, Mapping):
        for key, entry in value.items():
            if not isinstance(entry, Mapping):
                continue
            record = dict(entry)
            if record.get("id") in (None, ""):
                record["id"] = str(key)
            records.append(record)
    elif isinstance(value, list):
        for entry in value:
            if isinstance(entry, Mapping):
                records.append(dict(entry))
    return records


def positional_identifier(id_prefix: str, key: str, position: int) -> str:
    """Identifier of the id-less entry at ``position`` of the array under ``key``."""
    return f"{id_prefix}-{key}-{position}"


def _entry_identifier(
    entry: Mapping[str, Any], id_prefix: str, key: str, position: int, map_key: Optional[str] = None
) -> str:
    identifier = entry.get("id")
    if identifier not in (None, ""):
        return str(identifier)
    if map_key is not None:
        return str(map_key)
    return positional_identifier(id_prefix, key, position)


def identified_records(payload: Any, id_prefix: str, key: str) -> List[Dict[str, Any]]:
    """Records stored under ``key``, each carrying a string id.

    Array entries without an id are named after their position in the array,
    map entries after their map key.
    """
    if not isinstance(payload, list):
        return ensure_list_of_records(payload)
    records: List[Dict[str, Any]] = []
    for position, entry in enumerate(payload):
        if not isinstance(entry, Mapping):
            continue
        record = dict(entry)
        record["id"] = _entry_identifier(entry, id_prefix, key, position)
        records.append(record)
    return records


def dedupe_records(records: Iterable[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], int]:
    """Fold records sharing an id into their first occurrence.

    Returns the de-duplicated list and the number of records that were folded
    into an earlier occurrence.
    """
    ordered: List[Dict[str, Any]] = []
    index_by_id: Dict[str, int] = {}
    folded = 0
    for record in records:
        record = dict(record)
        record["id"] = str(record["id"])
        existing = index_by_id.get(record["id"])
        if existing is None:
            index_by_id[record["id"]] = len(ordered)
            ordered.append(record)
        else:
            ordered[existing] = merge_records(ordered[existing], record)
            folded += 1
    return ordered, folded


# ---------------------------------------------------------------------------
# Snapshot of all legacy stores
# ---------------------------------------------------------------------------


@dataclass
class LegacySnapshot:
    """Read-only view of every legacy collection, already normalised to lists."""

    students: List[Dict[str, Any]] = field(default_factory=list)
    staff: List[Dict[str, Any]] = field(default_factory=list)
    goals: List[Dict[str, Any]] = field(default_factory=list)
    data_points: List[Dict[str, Any]] = field(default_factory=list)
    activities: List[Dict[str, Any]] = field(default_factory=list)
    calendar: Dict[str, List[Dict[str, Any]]] = field(
        default_factory=lambda: {kind: [] for kind in CALENDAR_KEYS}
    )
    settings: Dict[str, Any] = field(default_factory=dict)
    present_keys: List[str] = field(default_factory=list)
    unreadable_keys: List[str] = field(default_factory=list)
    duplicates_merged: int = 0

    _students_by_id: Optional[Dict[str, Dict[str, Any]]] = field(
        init=False, default=None, repr=False
    )

    @classmethod
    def build(cls, kv: KeyValueStore) -> "LegacySnapshot":
        """Assemble a snapshot from the key-value store."""
        snapshot = cls()
        snapshot.students = snapshot._read_collection(kv, STUDENT_KEYS, "student")
        snapshot.staff = snapshot._read_collection(kv, STAFF_KEYS, "staff")
        snapshot.goals = snapshot._read_collection(kv, GOAL_KEYS, "goal")
        snapshot.data_points = snapshot._read_collection(kv, DATA_POINT_KEYS, "data_point")
        snapshot.activities = snapshot._read_collection(kv, ACTIVITY_KEYS, "activity")
        for kind in CALENDAR_KEYS:
            snapshot.calendar[kind] = snapshot._read_calendar(kv, kind)
        snapshot.settings = snapshot._read_settings(kv)
        return snapshot

    def _load(self, kv: KeyValueStore, key: str) -> Any:
        try:
            payload = read_json_key(kv, key)
        except UnreadableKey:
            LOGGER.warning("Legacy key %s does not contain valid JSON; treating as empty", key)
            self.unreadable_keys.append(key)
            return None
        if payload is not None:
            self.present_keys.append(key)
        return payload

    def _read_collection(
        self, kv: KeyValueStore, keys: Sequence[str], entity_type: str
    ) -> List[Dict[str, Any]]:
        id_prefix = get_schema(entity_type).id_prefix
        gathered: List[Dict[str, Any]] = []
        for key in keys:
            gathered.extend(identified_records(self._load(kv, key), id_prefix, key))
        records, folded = dedupe_records(gathered)
        self.duplicates_merged += folded
        if entity_type == "data_point":
            for record in records:
                record["date"] = normalise_date(record.get("date"))
        return records

    def _read_calendar(self, kv: KeyValueStore, kind: str) -> List[Dict[str, Any]]:
        gathered: List[Dict[str, Any]] = []
        gathered.extend(_flatten_student_map(self._load(kv, CALENDAR_KEYS[kind]), None))
        for key in kv.keys():
            match = _DATED_KEY_PATTERN.match(key)
            if not match or match.group(1) != kind:
                continue
            gathered.extend(_flatten_student_map(self._load(kv, key), match.group(2)))

        prefix = get_schema(CALENDAR_SCHEMAS[kind]).id_prefix
        taken: Dict[str, int] = {}
        for record in gathered:
            record["date"] = normalise_date(record.get("date"))
            if record.get("id") in (None, ""):
                base = f"{prefix}-{record.get('studentId')}-{record.get('date')}"
                count = taken.get(base, 0)
                taken[base] = count + 1
                record["id"] = base if count == 0 else f"{base}-{count + 1}"
        records, folded = dedupe_records(gathered)
        self.duplicates_merged += folded
        return records

    def _read_settings(self, kv: KeyValueStore) -> Dict[str, Any]:
        settings: Dict[str, Any] = {}
        payload = self._load(kv, SETTINGS_KEY)
        if isinstance(payload, Mapping):
            settings.update(payload)
        calendar_settings = self._load(kv, CALENDAR_SETTINGS_KEY)
        if isinstance(calendar_settings, Mapping):
            settings.setdefault("calendar", dict(calendar_settings))
        return settings

    # ------------------------------------------------------------------
    # Derived lookups
    # ------------------------------------------------------------------
    @property
    def students_by_id(self) -> Dict[str, Dict[str, Any]]:
        if self._students_by_id is None:
            self._students_by_id = {student["id"]: student for student in self.students}
        return self._students_by_id

    def collection(self, name: str) -> List[Dict[str, Any]]:
        if name in self.calendar:
            return list(self.calendar[name])
        return list(
            {
                "students": self.students,
                "staff": self.staff,
                "goals": self.goals,
                "dataPoints": self.data_points,
                "activities": self.activities,
            }.get(name, [])
        )


def _flatten_student_map(payload: Any, date: Optional[str]) -> List[Dict[str, Any]]:
    """Expand ``{studentId: record | [records]}`` into records tagged with the student."""
    if payload is None:
        return []
    if isinstance(payload, list):
        return [dict(entry) for entry in payload if isinstance(entry, Mapping) and entry.get("studentId")]
    if not isinstance(payload, Mapping):
        return []
    records: List[Dict[str, Any]] = []
    for student_id, entries in payload.items():
        if isinstance(entries, Mapping):
            entries = [entries]
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            record = dict(entry)
            record.setdefault("studentId", str(student_id))
            if date is not None:
                record.setdefault("date", date)
            records.append(record)
    return records


# ---------------------------------------------------------------------------
# Writers used by maintenance operations
# ---------------------------------------------------------------------------


def prune_legacy_records(
    kv: KeyValueStore, keys: Sequence[str], ids: Iterable[str], entity_type: str
) -> List[str]:
    """Remove records with the given ids from each legacy key, keeping its shape.

    Entries are identified the way :func:`identified_records` names them.  Id-less
    array entries that stay behind in a rewritten key are stored with their
    positional id, so removing a neighbour never renames them.  Keys that are
    absent or unreadable are left alone.  Returns the ids actually removed; all
    rewritten keys are committed in one transaction.
    """
    wanted = list(dict.fromkeys(str(identifier) for identifier in ids))
    if not wanted:
        return []
    doomed = set(wanted)
    id_prefix = get_schema(entity_type).id_prefix
    removed = set()
    updates: Dict[str, str] = {}
    for key in keys:
        try:
            payload = read_json_key(kv, key)
        except UnreadableKey:
            continue
        if isinstance(payload, list):
            kept: Any = []
            for position, entry in enumerate(payload):
                if not isinstance(entry, Mapping):
                    kept.append(entry)
                    continue
                identifier = _entry_identifier(entry, id_prefix, key, position)
                if identifier in doomed:
                    removed.add(identifier)
                elif entry.get("id") in (None, ""):
                    kept.append({**entry, "id": identifier})
                else:
                    kept.append(entry)
        elif isinstance(payload, Mapping):
            kept = {}
            for map_key, entry in payload.items():
                if isinstance(entry, Mapping):
                    identifier = _entry_identifier(entry, id_prefix, key, 0, map_key=str(map_key))
                    if identifier in doomed:
                        removed.add(identifier)
                        continue
                kept[map_key] = entry
        else:
            continue
        if len(kept) != len(payload):
            updates[key] = json.dumps(kept, ensure_ascii=False)
    kv.set_many(updates)
    return [identifier for identifier in wanted if identifier in removed]


__all__ = [
    "ACTIVITY_KEYS",
    "CALENDAR_KEYS",
    "CALENDAR_SCHEMAS",
    "COLLECTION_KEYS",
    "DATA_POINT_KEYS",
    "GOAL_KEYS",
    "LegacySnapshot",
    "STAFF_KEYS",
    "STUDENT_KEYS",
    "UnreadableKey",
    "all_legacy_keys",
    "dedupe_records",
    "ensure_list_of_records",
    "identified_records",
    "positional_identifier",
    "prune_legacy_records",
    "read_json_key",
]
