import json

import pytest

from services import conflicts
from services.conflicts import (
    list_backups,
    resolve_all_conflicts,
    restore_from_backup,
)
from services.diagnostics import run_full_diagnostic
from services.merge import merge_records
from services.migration import migrate_all_legacy_data
from services.unified_store import UNIFIED_KEY


def test_conflicting_student_is_merged_and_legacy_copy_retired(store, kv, put_json, read_json):
    store.add_student({"id": "s1", "name": "Ana", "accommodations": ["Extra time"]})
    put_json(
        "students",
        [{"id": "s1", "name": "Ana", "parentEmail": "a@b.com", "accommodations": ["Extra time", "Peer buddy"]}],
    )

    result = resolve_all_conflicts(store)

    assert result.success
    assert result.resolved_count == 1
    assert result.errors == []
    assert result.removed_legacy_ids == {"students": ["s1"]}
    students = store.get_all_students()
    assert len(students) == 1
    assert students[0]["parentEmail"] == "a@b.com"
    assert students[0]["accommodations"] == ["Extra time", "Peer buddy"]
    assert read_json("students") == []

    report = run_full_diagnostic(store)
    assert report.cross_store_conflicts == {}


def test_unified_values_take_precedence(store, put_json):
    store.add_student({"id": "s1", "name": "Ana", "parentPhone": "555-0000"})
    put_json("vsb_students", {"s1": {"name": "Ana B.", "parentPhone": "555-1234", "medicalNotes": "Asthma"}})

    result = resolve_all_conflicts(store)

    student = store.get_student("s1")
    assert student["name"] == "Ana"
    assert student["parentPhone"] == "555-0000"
    assert student["medicalNotes"] == "Asthma"
    assert result.remaining_conflicts == {}


def test_legacy_goal_block_never_replaces_unified_goals(store, put_json):
    student = store.add_student({"id": "s1", "name": "Ana"})
    put_json(
        "students",
        [{"id": "s1", "name": "Ana", "iepData": {"goals": [{"id": "legacy-goal"}], "dataCollection": []}}],
    )

    resolve_all_conflicts(store)

    assert store.get_student("s1")["iepData"] == student["iepData"]


def test_staff_conflicts_are_resolved(store, put_json, read_json):
    store.add_staff({"id": "t1", "name": "Ms. K", "email": ""})
    put_json("staff_members", [{"id": "t1", "name": "Ms. K", "email": "k@school.org"}, {"id": "t2", "name": "Mr. P"}])

    result = resolve_all_conflicts(store)

    assert store.get_staff("t1")["email"] == "k@school.org"
    assert result.removed_legacy_ids == {"staff": ["t1"]}
    assert [member["id"] for member in read_json("staff_members")] == ["t2"]


def test_migrated_student_without_id_is_retired_from_legacy_storage(store, kv, put_json, read_json):
    put_json("students", [{"name": "Ana", "parentEmail": "a@b.com"}])
    migrate_all_legacy_data(store)

    first = resolve_all_conflicts(store)

    assert first.success
    assert first.removed_legacy_ids == {"students": ["student-students-0"]}
    assert read_json("students") == []
    assert run_full_diagnostic(store).cross_store_conflicts == {}

    second = resolve_all_conflicts(store)

    assert second.resolved_count == 0
    assert second.removed_legacy_ids == {}
    assert second.backup_timestamp is None
    assert len(list_backups(kv)) == 1


def test_no_conflicts_means_no_backup(store, kv, put_json):
    store.add_student({"id": "s1", "name": "Ana"})
    put_json("students", [{"id": "s2", "name": "Ben"}])

    result = resolve_all_conflicts(store)

    assert result.resolved_count == 0
    assert result.backup_timestamp is None
    assert list_backups(kv) == []


def test_merge_failure_is_isolated_and_blocks_cleanup(store, kv, put_json, monkeypatch):
    store.add_student({"id": "s1", "name": "Ana"})
    store.add_student({"id": "s2", "name": "Ben"})
    put_json(
        "students",
        [
            {"id": "s1", "name": "Ana", "parentEmail": "a@b.com"},
            {"id": "s2", "name": "Ben", "parentEmail": "b@b.com"},
        ],
    )
    legacy_before = kv.get_item("students")

    def flaky_merge(base, other):
        if base.get("id") == "s1":
            raise ValueError("cannot merge")
        return merge_records(base, other)

    monkeypatch.setattr(conflicts, "merge_records", flaky_merge)

    result = resolve_all_conflicts(store)

    assert result.resolved_count == 1
    assert len(result.errors) == 1
    assert "s1" in result.errors[0]
    assert result.remaining_conflicts == {"students": ["s1"]}
    assert result.success is False
    assert result.removed_legacy_ids == {}
    assert store.get_student("s2")["parentEmail"] == "b@b.com"
    assert "parentEmail" not in store.get_student("s1")
    assert kv.get_item("students") == legacy_before


def test_backup_and_restore(store, kv, put_json):
    store.add_student({"id": "s1", "name": "Ana"})
    put_json("students", [{"id": "s1", "name": "Ana", "parentEmail": "a@b.com"}])
    unified_before = kv.get_item(UNIFIED_KEY)
    legacy_before = kv.get_item("students")

    result = resolve_all_conflicts(store)

    assert result.backup_timestamp in list_backups(kv)
    assert kv.get_item(f"backup-unified-data-{result.backup_timestamp}") == unified_before
    saved_legacy = json.loads(kv.get_item(f"backup-legacy-students-{result.backup_timestamp}"))
    assert saved_legacy == {"students": legacy_before}

    assert restore_from_backup(kv, result.backup_timestamp) is True
    assert kv.get_item(UNIFIED_KEY) == unified_before
    assert kv.get_item("students") == legacy_before


def test_restore_unknown_timestamp(kv):
    assert restore_from_backup(kv, "1999-01-01") is False


@pytest.mark.parametrize("unified_phone, expected", [(None, "555-1234"), ("555-9999", "555-9999")])
def test_phone_precedence(store, put_json, unified_phone, expected):
    store.add_student({"id": "s1", "name": "Ana", "parentPhone": unified_phone})
    put_json("students", [{"id": "s1", "name": "Ana", "parentPhone": "555-1234"}])

    resolve_all_conflicts(store)

    assert store.get_student("s1")["parentPhone"] == expected
