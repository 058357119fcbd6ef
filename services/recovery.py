"""Re-link legacy data points whose goal was re-identified during migration.

Matching a legacy goal to a unified goal is a heuristic.  Every match is
returned in the result and logged so that an operator can review it.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from services.legacy_stores import LegacySnapshot
from services.normalizer import Document, iter_data_points, iter_goals
from services.schemas import get_schema, is_blank, normalise_date
from services.unified_store import UnifiedStore, new_identifier, refresh_goal_statistics

LOGGER = logging.getLogger(__name__)

MATCH_RULES: Tuple[str, ...] = ("description", "shortTermObjective", "studentId")


@dataclass(frozen=True)
class GoalMatch:
    """One legacy goal identifier resolved to a unified goal."""

    legacy_goal_id: str
    goal_id: str
    rule: str


@dataclass
class RecoveryResult:
    recovered: int = 0
    duplicates_skipped: int = 0
    unresolved: int = 0
    matches: List[GoalMatch] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["success"] = self.success
        return payload


def _text(value: Any) -> Optional[str]:
    if is_blank(value) or isinstance(value, (dict, list)):
        return None
    return str(value).strip()


def _match_goal(
    legacy_goal: Mapping[str, Any], goals: List[Tuple[Dict[str, Any], Dict[str, Any]]]
) -> Optional[GoalMatch]:
    legacy_id = str(legacy_goal["id"])
    for rule in MATCH_RULES:
        wanted = _text(legacy_goal.get(rule))
        if wanted is None:
            continue
        if rule == "studentId":
            # only a student with a single goal identifies it
            owned = [goal for student, goal in goals if _text(student.get("id")) == wanted]
            if len(owned) == 1:
                return GoalMatch(legacy_id, owned[0]["id"], rule)
            continue
        for _, goal in goals:
            if _text(goal.get(rule)) == wanted:
                return GoalMatch(legacy_id, goal["id"], rule)
    return None


def build_goal_mapping(doc: Document, snapshot: LegacySnapshot) -> Tuple[Dict[str, str], List[GoalMatch]]:
    """Map every legacy goal id to the unified goal it most likely became."""
    goals = list(iter_goals(doc))
    unified_ids = {goal.get("id") for _, goal in goals}
    mapping: Dict[str, str] = {goal_id: goal_id for goal_id in unified_ids if goal_id}
    matches: List[GoalMatch] = []
    for legacy_goal in snapshot.goals:
        legacy_id = str(legacy_goal["id"])
        if legacy_id in unified_ids:
            continue
        match = _match_goal(legacy_goal, goals)
        if match is None:
            LOGGER.info("No unified goal matches legacy goal %s", legacy_id)
            continue
        LOGGER.info(
            "Matched legacy goal %s to goal %s by %s", match.legacy_goal_id, match.goal_id, match.rule
        )
        mapping[legacy_id] = match.goal_id
        matches.append(match)
    return mapping, matches


def _dedupe_key(data_point: Mapping[str, Any]) -> Tuple[str, str, str]:
    return (
        str(normalise_date(data_point.get("date")) or ""),
        str(data_point.get("time") or ""),
        str(data_point.get("goalId") or ""),
    )


def recover_missing_data_points(store: UnifiedStore) -> RecoveryResult:
    """Insert legacy data points that the unified document cannot reach.

    Safe to run repeatedly: a data point is skipped when its owner already holds
    one with the same date, time and goal.
    """
    result = RecoveryResult()
    with store._lock:
        if store.load() is None:
            result.errors.append("Unified document is absent; run the migration first")
            return result
        snapshot = LegacySnapshot.build(store.kv)
        schema = get_schema("data_point")
        with store.transaction(auto_migrate=False) as doc:
            mapping, result.matches = build_goal_mapping(doc, snapshot)
            owners = {goal["id"]: student for student, goal in iter_goals(doc)}
            taken_ids = {dp.get("id") for _, dp in iter_data_points(doc)}
            seen = {_dedupe_key(dp) for _, dp in iter_data_points(doc)}
            touched: Set[Tuple[str, str]] = set()

            for legacy_point in snapshot.data_points:
                target = mapping.get(str(legacy_point.get("goalId")))
                if target is None:
                    result.unresolved += 1
                    continue
                try:
                    owner = owners[target]
                    record = schema.apply_defaults(
                        {**legacy_point, "goalId": target, "studentId": owner["id"]}
                    )
                    key = _dedupe_key(record)
                    if key in seen:
                        result.duplicates_skipped += 1
                        continue
                    if record["id"] in taken_ids:
                        record["id"] = new_identifier()
                    owner["iepData"]["dataCollection"].append(record)
                except Exception as exc:
                    LOGGER.warning("Failed to recover data point %s: %s", legacy_point.get("id"), exc)
                    result.errors.append(f"data point {legacy_point.get('id')}: {exc}")
                    continue
                seen.add(key)
                taken_ids.add(record["id"])
                touched.add((owner["id"], target))
                result.recovered += 1

            for _, goal_id in touched:
                refresh_goal_statistics(owners[goal_id], goal_id)

    LOGGER.info(
        "Recovered %d data points (%d duplicates skipped, %d unresolved)",
        result.recovered,
        result.duplicates_skipped,
        result.unresolved,
    )
    return result


__all__ = [
    "GoalMatch",
    "RecoveryResult",
    "build_goal_mapping",
    "recover_missing_data_points",
]
