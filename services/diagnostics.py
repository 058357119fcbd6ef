"""Read-only audit of the unified document and the legacy keys around it."""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from services.conflicts import find_conflicts
from services.legacy_stores import LegacySnapshot, ensure_list_of_records
from services.normalizer import (
    CALENDAR_KINDS,
    CURRENT_VERSION,
    TOP_LEVEL_COLLECTIONS,
    Document,
    compute_counts,
    detect_version,
    iter_data_points,
    iter_goals,
    normalize_document,
)
from services.unified_store import UNIFIED_KEY, UnifiedStore

LOGGER = logging.getLogger(__name__)

STORAGE_KEY_PATTERN = re.compile(
    r"student|unified|iep|vsb|staff|goal|activit|behavior|highlight|choice|calendar|migration|backup",
    re.IGNORECASE,
)
PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


@dataclass(frozen=True)
class Recommendation:
    priority: str
    message: str
    action: Optional[str] = None


@dataclass
class DiagnosticReport:
    """Structured outcome of :func:`run_full_diagnostic`."""

    has_unified_data: bool = False
    total_students: int = 0
    collection_counts: Dict[str, int] = field(default_factory=dict)
    duplicate_ids: Dict[str, List[str]] = field(default_factory=dict)
    structural_issues: List[str] = field(default_factory=list)
    storage_keys: List[str] = field(default_factory=list)
    cross_store_conflicts: Dict[str, List[str]] = field(default_factory=dict)
    orphaned_data_points: List[str] = field(default_factory=list)
    unlinked_legacy_data_points: int = 0
    recommendations: List[Recommendation] = field(default_factory=list)

    @property
    def is_healthy(self) -> bool:
        return not (
            self.duplicate_ids
            or self.structural_issues
            or self.orphaned_data_points
            or any(self.cross_store_conflicts.values())
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["is_healthy"] = self.is_healthy
        return payload


def _duplicates(ids: Iterable[Any]) -> List[str]:
    counts = Counter(str(identifier) for identifier in ids)
    return sorted(identifier for identifier, count in counts.items() if count > 1)


def _collections(doc: Document) -> Dict[str, List[Dict[str, Any]]]:
    collections: Dict[str, List[Dict[str, Any]]] = {
        "students": doc["students"],
        "staff": doc["staff"],
        "activities": doc["activities"],
        "goals": [goal for _, goal in iter_goals(doc)],
        "dataPoints": [dp for _, dp in iter_data_points(doc)],
    }
    for kind in CALENDAR_KINDS:
        collections[kind] = doc["calendar"][kind]
    return collections


def _raw_shape_issues(raw: Mapping[str, Any]) -> List[str]:
    issues: List[str] = []
    version = detect_version(raw)
    if version != CURRENT_VERSION:
        issues.append(f"Unified document is stored at schema version {version}")
    for name in TOP_LEVEL_COLLECTIONS:
        if isinstance(raw.get(name), Mapping):
            issues.append(f"{name} is stored as an identifier-keyed map")
    for student in ensure_list_of_records(raw.get("students")):
        iep = student.get("iepData")
        label = student.get("id") or student.get("name") or "?"
        if not isinstance(iep, Mapping):
            issues.append(f"Student {label} has no goal block")
            continue
        for key in ("goals", "dataCollection"):
            entries = iep.get(key)
            if not isinstance(entries, list):
                issues.append(f"Student {label} has a non-sequence iepData.{key}")
            elif not all(isinstance(entry, Mapping) for entry in entries):
                issues.append(f"Student {label} has non-record entries in iepData.{key}")
    return issues


def _identifier_issues(collections: Mapping[str, List[Dict[str, Any]]]) -> List[str]:
    issues: List[str] = []
    for name, records in collections.items():
        for position, record in enumerate(records):
            identifier = record.get("id")
            if not isinstance(identifier, str) or not identifier.strip():
                issues.append(f"{name}[{position}] has an empty or non-string id")
    return issues


def _metadata_issues(raw: Mapping[str, Any], doc: Document) -> List[str]:
    metadata = raw.get("metadata")
    if not isinstance(metadata, Mapping):
        return ["Metadata block is missing"]
    issues: List[str] = []
    for key, live in compute_counts(doc).items():
        cached = metadata.get(key)
        if cached != live:
            issues.append(f"metadata.{key} is {cached!r} but the live count is {live}")
    return issues


def _orphaned(doc: Document) -> List[str]:
    orphans: List[str] = []
    for student, data_point in iter_data_points(doc):
        goal_ids = {goal.get("id") for goal in student["iepData"]["goals"]}
        if data_point.get("goalId") not in goal_ids or data_point.get("studentId") != student.get("id"):
            orphans.append(str(data_point.get("id")))
    return orphans


def _recommend(report: DiagnosticReport, legacy_students: int) -> List[Recommendation]:
    recommendations: List[Recommendation] = []
    if not report.has_unified_data:
        if legacy_students:
            recommendations.append(
                Recommendation("high", "Unified data is missing; legacy data can be migrated.", "migrate")
            )
        return recommendations
    conflicts = sum(len(ids) for ids in report.cross_store_conflicts.values())
    if conflicts:
        recommendations.append(
            Recommendation(
                "high",
                f"{conflicts} identifiers exist in both unified and legacy storage.",
                "resolve_conflicts",
            )
        )
    if report.duplicate_ids:
        recommendations.append(
            Recommendation(
                "high",
                "Duplicate identifiers found in: " + ", ".join(sorted(report.duplicate_ids)),
                None,
            )
        )
    if report.orphaned_data_points:
        recommendations.append(
            Recommendation(
                "high",
                f"{len(report.orphaned_data_points)} data points reference a goal their student does not own.",
                None,
            )
        )
    if report.unlinked_legacy_data_points:
        recommendations.append(
            Recommendation(
                "medium",
                f"{report.unlinked_legacy_data_points} legacy data points are not linked to any goal.",
                "recover_data_points",
            )
        )
    if legacy_students > report.total_students:
        recommendations.append(
            Recommendation("medium", "Legacy storage holds more students than unified data.", "migrate")
        )
    if report.structural_issues:
        recommendations.append(
            Recommendation(
                "medium",
                f"{len(report.structural_issues)} structural issues; loading the store will normalise them.",
                "normalize",
            )
        )
    legacy_keys = [key for key in report.storage_keys if key != UNIFIED_KEY]
    if legacy_keys and not conflicts:
        recommendations.append(
            Recommendation(
                "low",
                f"{len(legacy_keys)} legacy or backup keys remain alongside the unified document.",
                "review_storage_keys",
            )
        )
    return sorted(recommendations, key=lambda item: PRIORITY_ORDER[item.priority])


def run_full_diagnostic(store: UnifiedStore) -> DiagnosticReport:
    """Audit ``store`` without writing anything."""
    kv = store.kv
    report = DiagnosticReport()
    report.storage_keys = [key for key in kv.keys() if STORAGE_KEY_PATTERN.search(key)]
    snapshot = LegacySnapshot.build(kv)
    legacy_students = len(snapshot.students)
    for key in snapshot.unreadable_keys:
        report.structural_issues.append(f"Legacy key {key} does not contain valid JSON")

    raw_text = kv.get_item(UNIFIED_KEY)
    raw: Any = None
    if raw_text is not None:
        try:
            raw = json.loads(raw_text)
        except json.JSONDecodeError:
            report.structural_issues.append("Unified document is not valid JSON")
    if not isinstance(raw, Mapping):
        if raw_text is not None and raw is not None:
            report.structural_issues.append("Unified document is not an object")
        report.recommendations = _recommend(report, legacy_students)
        return report

    doc, _ = normalize_document(raw)
    report.has_unified_data = True
    report.structural_issues.extend(_raw_shape_issues(raw))
    collections = _collections(doc)
    report.total_students = len(doc["students"])
    report.collection_counts = {name: len(records) for name, records in collections.items()}
    for name, records in collections.items():
        duplicates = _duplicates(record.get("id") for record in records)
        if duplicates:
            report.duplicate_ids[name] = duplicates
    report.structural_issues.extend(_identifier_issues(collections))
    report.structural_issues.extend(_metadata_issues(raw, doc))
    report.orphaned_data_points = _orphaned(doc)
    report.cross_store_conflicts = {
        name: ids for name, ids in find_conflicts(doc, snapshot).items() if ids
    }
    goal_ids = {goal.get("id") for goal in collections["goals"]}
    report.unlinked_legacy_data_points = sum(
        1 for dp in snapshot.data_points if str(dp.get("goalId")) not in goal_ids
    )
    report.recommendations = _recommend(report, legacy_students)
    LOGGER.info(
        "Diagnostic: %d students, %d structural issues, %d conflicting ids",
        report.total_students,
        len(report.structural_issues),
        sum(len(ids) for ids in report.cross_store_conflicts.values()),
    )
    return report


__all__ = ["DiagnosticReport", "Recommendation", "run_full_diagnostic"]
