"""Shape normalisation for the unified classroom document.

The consolidated document went through three layouts:

``2.0.0``
    Students and staff stored as identifier-keyed maps, measurements under
    ``iepData.dataPoints``, activities under ``systemData``.
``2.0``
    Students as a sequence with ``iepData.dataCollection``; only goal and data
    point totals in the metadata.
``3.0``
    The current layout: every collection is a sequence and the metadata caches
    the cardinality of goals, data points, staff and activities.

Each transition has exactly one upgrade function.  After the chain runs a final
shape pass coerces any collection that still drifted back to a keyed map.
"""

from __future__ import annotations

import copy
from typing import Any, Callable, Dict, Iterator, List, Mapping, MutableMapping, Optional, Tuple

from services.legacy_stores import ensure_list_of_records
from services.schemas import normalise_date

CURRENT_VERSION = "3.0"
CALENDAR_KINDS: Tuple[str, ...] = ("behaviorCommitments", "dailyHighlights", "independentChoices")
TOP_LEVEL_COLLECTIONS: Tuple[str, ...] = ("students", "staff", "activities")

Document = Dict[str, Any]


def empty_document() -> Document:
    return {
        "students": [],
        "staff": [],
        "activities": [],
        "calendar": {kind: [] for kind in CALENDAR_KINDS},
        "settings": {},
        "metadata": {
            "version": CURRENT_VERSION,
            "migratedAt": None,
            "totalGoals": 0,
            "totalDataPoints": 0,
            "totalStaff": 0,
            "totalActivities": 0,
        },
    }


def detect_version(doc: Mapping[str, Any]) -> str:
    metadata = doc.get("metadata")
    if isinstance(metadata, Mapping) and metadata.get("version"):
        return str(metadata["version"])
    if isinstance(doc.get("students"), Mapping) or "systemData" in doc:
        return "2.0.0"
    if "calendar" in doc:
        return CURRENT_VERSION
    return "2.0"


# ---------------------------------------------------------------------------
# Version transitions
# ---------------------------------------------------------------------------


def _upgrade_from_2_0_0(doc: Document) -> Document:
    students = ensure_list_of_records(doc.get("students"))
    for student in students:
        iep = student.get("iepData")
        if isinstance(iep, MutableMapping) and "dataCollection" not in iep:
            iep["dataCollection"] = ensure_list_of_records(iep.pop("dataPoints", []))
            for data_point in iep["dataCollection"]:
                data_point["date"] = normalise_date(data_point.get("date"))
    doc["students"] = students
    doc["staff"] = ensure_list_of_records(doc.get("staff"))

    system_data = doc.pop("systemData", None) or {}
    activities = ensure_list_of_records(system_data.get("activities"))
    for custom in ensure_list_of_records(system_data.get("customActivities")):
        custom.setdefault("isCustom", True)
        activities.append(custom)
    if activities and not doc.get("activities"):
        doc["activities"] = activities

    metadata = dict(doc.get("metadata") or {})
    if "lastMigration" in metadata:
        metadata.setdefault("migratedAt", metadata.pop("lastMigration"))
    metadata.pop("dataIntegrityCheck", None)
    metadata["version"] = "2.0"
    doc["metadata"] = metadata
    return doc


def _upgrade_from_2_0(doc: Document) -> Document:
    calendar = doc.get("calendar")
    if not isinstance(calendar, MutableMapping):
        calendar = {}
    for kind in CALENDAR_KINDS:
        calendar[kind] = ensure_list_of_records(calendar.get(kind))

    students = ensure_list_of_records(doc.get("students"))
    for student in students:
        calendar_data = student.pop("calendarData", None)
        if not isinstance(calendar_data, Mapping):
            continue
        for kind in CALENDAR_KINDS:
            for entry in ensure_list_of_records(calendar_data.get(kind)):
                entry.setdefault("studentId", student.get("id"))
                entry["date"] = normalise_date(entry.get("date"))
                calendar[kind].append(entry)
    doc["students"] = students
    doc["calendar"] = calendar
    doc.setdefault("staff", [])
    doc.setdefault("activities", [])
    doc.setdefault("settings", {})

    metadata = dict(doc.get("metadata") or {})
    metadata["version"] = CURRENT_VERSION
    doc["metadata"] = metadata
    refresh_metadata(doc)
    return doc


UPGRADES: Dict[str, Tuple[str, Callable[[Document], Document]]] = {
    "2.0.0": ("2.0", _upgrade_from_2_0_0),
    "2.0": (CURRENT_VERSION, _upgrade_from_2_0),
}


# ---------------------------------------------------------------------------
# Canonical shape
# ---------------------------------------------------------------------------


def _mappings_only(value: Any) -> List[Dict[str, Any]]:
    """Sequence of the mapping entries of ``value``; nulls and scalars are dropped."""
    if isinstance(value, list):
        return [entry for entry in value if isinstance(entry, Mapping)]
    return ensure_list_of_records(value)


def _ensure_iep_block(student: MutableMapping[str, Any]) -> None:
    iep = student.get("iepData")
    if not isinstance(iep, MutableMapping):
        student["iepData"] = {"goals": [], "dataCollection": []}
        return
    iep["goals"] = _mappings_only(iep.get("goals"))
    source = iep.get("dataCollection")
    if source is None and "dataPoints" in iep:
        source = iep.pop("dataPoints")
    iep["dataCollection"] = _mappings_only(source)


def ensure_canonical_shape(doc: Document) -> Document:
    """Coerce every collection of a current-version document into a sequence."""
    for name in TOP_LEVEL_COLLECTIONS:
        doc[name] = _mappings_only(doc.get(name))

    calendar = doc.get("calendar")
    if not isinstance(calendar, MutableMapping):
        calendar = {}
        doc["calendar"] = calendar
    for kind in CALENDAR_KINDS:
        calendar[kind] = _mappings_only(calendar.get(kind))

    if not isinstance(doc.get("settings"), MutableMapping):
        doc["settings"] = {}

    for student in doc["students"]:
        _ensure_iep_block(student)

    metadata = doc.get("metadata")
    if not isinstance(metadata, MutableMapping):
        doc["metadata"] = {"version": CURRENT_VERSION, "migratedAt": None}
        refresh_metadata(doc)
    return doc


def normalize_document(raw: Mapping[str, Any]) -> Tuple[Document, bool]:
    """Upgrade ``raw`` to the current version and canonical shape.

    Returns the normalised document and whether anything had to change.  The
    input is never mutated.
    """
    doc: Document = copy.deepcopy(dict(raw))
    version = detect_version(doc)
    seen = set()
    while version in UPGRADES and version not in seen:
        seen.add(version)
        version, upgrade = UPGRADES[version]
        doc = upgrade(doc)
    ensure_canonical_shape(doc)
    return doc, doc != raw


# ---------------------------------------------------------------------------
# Traversal & metadata
# ---------------------------------------------------------------------------


def iter_goals(doc: Mapping[str, Any]) -> Iterator[Tuple[Dict[str, Any], Dict[str, Any]]]:
    """Yield ``(student, goal)`` pairs in document order."""
    for student in doc.get("students") or []:
        for goal in (student.get("iepData") or {}).get("goals") or []:
            yield student, goal


def iter_data_points(doc: Mapping[str, Any]) -> Iterator[Tuple[Dict[str, Any], Dict[str, Any]]]:
    """Yield ``(student, data_point)`` pairs in document order."""
    for student in doc.get("students") or []:
        for data_point in (student.get("iepData") or {}).get("dataCollection") or []:
            yield student, data_point


def compute_counts(doc: Mapping[str, Any]) -> Dict[str, int]:
    return {
        "totalGoals": sum(1 for _ in iter_goals(doc)),
        "totalDataPoints": sum(1 for _ in iter_data_points(doc)),
        "totalStaff": len(doc.get("staff") or []),
        "totalActivities": len(doc.get("activities") or []),
    }


def refresh_metadata(doc: Document) -> Document:
    """Bring the cached counts in ``doc['metadata']`` in line with the collections."""
    metadata = doc.setdefault("metadata", {})
    metadata.setdefault("version", CURRENT_VERSION)
    metadata.setdefault("migratedAt", None)
    metadata.update(compute_counts(doc))
    return doc


def find_student(doc: Mapping[str, Any], student_id: str) -> Optional[Dict[str, Any]]:
    for student in doc.get("students") or []:
        if student.get("id") == student_id:
            return student
    return None


__all__ = [
    "CALENDAR_KINDS",
    "CURRENT_VERSION",
    "UPGRADES",
    "compute_counts",
    "detect_version",
    "empty_document",
    "ensure_canonical_shape",
    "find_student",
    "iter_data_points",
    "iter_goals",
    "normalize_document",
    "refresh_metadata",
]
