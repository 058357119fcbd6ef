import json
import threading

import pytest

from services.normalizer import compute_counts
from services.schemas import RecordValidationError
from services.unified_store import (
    UNIFIED_KEY,
    DuplicateIdentifierError,
    EntityNotFoundError,
    UnifiedStore,
)


@pytest.fixture
def student_with_goal(store):
    student = store.add_student({"name": "Ana", "grade": "3"})
    goal = store.add_goal_to_student(
        student["id"],
        {"title": "Reading fluency", "description": "Read 20 words per minute", "target": 80},
    )
    return student, goal


def _assert_metadata_matches(store):
    doc = store.load()
    for key, live in compute_counts(doc).items():
        assert doc["metadata"][key] == live


def test_absent_document_reads_as_empty(store):
    assert store.load() is None
    assert store.get_all_students() == []
    assert store.get_settings() == {}


def test_round_trip_is_a_fixed_point(store, kv, student_with_goal):
    student, goal = student_with_goal
    store.add_data_point(
        {"studentId": student["id"], "goalId": goal["id"], "date": "2024-01-02", "value": 12}
    )
    before = kv.get_item(UNIFIED_KEY)

    store.save(store.load())

    assert kv.get_item(UNIFIED_KEY) == before


def test_load_heals_map_shaped_document(store, kv, put_json):
    put_json(
        UNIFIED_KEY,
        {
            "students": {"s1": {"name": "Ana", "iepData": {"goals": [], "dataCollection": []}}},
            "staff": [],
            "activities": [],
            "calendar": {"behaviorCommitments": [], "dailyHighlights": [], "independentChoices": []},
            "settings": {},
            "metadata": {"version": "3.0", "migratedAt": None},
        },
    )

    doc = store.load()

    assert doc["students"][0]["id"] == "s1"
    persisted = json.loads(kv.get_item(UNIFIED_KEY))
    assert isinstance(persisted["students"], list)


def test_load_without_healing_does_not_write(store, kv, put_json):
    put_json(UNIFIED_KEY, {"students": {"s1": {"name": "Ana"}}, "metadata": {"version": "3.0"}})
    before = kv.get_item(UNIFIED_KEY)

    doc = store.load(heal=False)

    assert doc["students"][0]["id"] == "s1"
    assert kv.get_item(UNIFIED_KEY) == before


def test_corrupt_document_is_treated_as_absent(store, kv):
    kv.set_item(UNIFIED_KEY, "{oops")

    assert store.load() is None
    assert store.get_all_students() == []


def test_corrupt_document_falls_back_to_migration(kv, put_json):
    kv.set_item(UNIFIED_KEY, "{oops")
    put_json("students", [{"id": "s1", "name": "Ana"}])
    store = UnifiedStore(kv)

    students = store.get_all_students()

    assert [student["id"] for student in students] == ["s1"]
    assert json.loads(kv.get_item(UNIFIED_KEY))["students"][0]["id"] == "s1"


def test_add_student_fills_defaults(store):
    student = store.add_student({"name": "Ana", "accommodations": "Extra time, Visual supports"})

    assert student["id"]
    assert student["isActive"] is True
    assert student["accommodations"] == ["Extra time", "Visual supports"]
    assert student["iepData"] == {"goals": [], "dataCollection": []}
    assert store.get_student(student["id"]) == student


def test_duplicate_student_id_is_rejected(store):
    store.add_student({"id": "s1", "name": "Ana"})

    with pytest.raises(DuplicateIdentifierError):
        store.add_student({"id": "s1", "name": "Another Ana"})
    assert len(store.get_all_students()) == 1


def test_students_are_deactivated_not_deleted(store):
    student = store.add_student({"name": "Ana"})

    updated = store.deactivate_student(student["id"])

    assert updated["isActive"] is False
    assert store.get_student(student["id"])["isActive"] is False
    assert not hasattr(store, "delete_student")
    assert not hasattr(store, "delete_goal")


def test_update_unknown_entities_is_a_no_op(store, kv):
    store.add_student({"name": "Ana"})
    before = kv.get_item(UNIFIED_KEY)

    assert store.update_student("missing", {"grade": "4"}) is None
    assert store.update_goal("missing", {"title": "x"}) is None
    assert store.update_data_point("missing", {"value": 3}) is None
    assert store.delete_data_point("missing") is False
    assert store.delete_staff("missing") is False
    assert store.delete_activity("missing") is False
    assert kv.get_item(UNIFIED_KEY) == before


def test_update_keeps_identifier(store):
    student = store.add_student({"name": "Ana"})

    updated = store.update_student(student["id"], {"id": "other", "parentPhone": "555-1234"})

    assert updated["id"] == student["id"]
    assert updated["parentPhone"] == "555-1234"



def test_student_payloads_never_write_the_goal_block(store):
    student = store.add_student(
        {"name": "Ana", "iepData": {"goals": [{"id": "g1"}, {"id": "g1"}], "dataCollection": []}}
    )
    assert student["iepData"] == {"goals": [], "dataCollection": []}

    store.update_student(
        student["id"],
        {"grade": "4", "iepData": {"goals": [], "dataCollection": [{"id": "d1", "goalId": "ghost"}]}},
    )

    stored = store.get_student(student["id"])
    assert stored["grade"] == "4"
    assert stored["iepData"] == {"goals": [], "dataCollection": []}
    assert store.get_all_data_points() == []


def test_null_goal_entries_do_not_break_goal_operations(store, put_json):
    put_json(
        UNIFIED_KEY,
        {
            "students": [{"id": "s1", "name": "Ana", "iepData": {"goals": [None], "dataCollection": [None]}}],
            "staff": [],
            "activities": [],
            "calendar": {"behaviorCommitments": [None], "dailyHighlights": [], "independentChoices": []},
            "settings": {},
            "metadata": {"version": "3.0", "migratedAt": None},
        },
    )

    goal = store.add_goal_to_student("s1", {"id": "g1", "title": "Reading"})

    assert store.get_student_goals("s1") == [goal]
    assert store.get_calendar_entries("behaviorCommitments") == []
    _assert_metadata_matches(store)

def test_goal_operations(store, student_with_goal):
    student, goal = student_with_goal

    assert goal["studentId"] == student["id"]
    assert goal["isActive"] is True
    assert store.get_student_goals(student["id"]) == [goal]
    assert store.get_all_goals() == [goal]
    assert store.get_student_goals("missing") == []

    store.update_goal(goal["id"], {"currentProgress": 45, "studentId": "elsewhere"})
    store.deactivate_goal(goal["id"])

    stored = store.get_student_goals(student["id"])[0]
    assert stored["currentProgress"] == 45
    assert stored["studentId"] == student["id"]
    assert stored["isActive"] is False


def test_goal_for_unknown_student_raises(store):
    with pytest.raises(EntityNotFoundError):
        store.add_goal_to_student("missing", {"title": "Reading"})


def test_data_point_for_unknown_student_raises(store, student_with_goal):
    _, goal = student_with_goal

    with pytest.raises(EntityNotFoundError) as excinfo:
        store.add_data_point({"studentId": "missing", "goalId": goal["id"], "date": "2024-01-02", "value": 1})
    assert excinfo.value.entity_type == "student"


def test_data_point_for_goal_of_another_student_raises(store, student_with_goal):
    _, goal = student_with_goal
    other = store.add_student({"name": "Ben"})

    with pytest.raises(EntityNotFoundError) as excinfo:
        store.add_data_point({"studentId": other["id"], "goalId": goal["id"], "date": "2024-01-02", "value": 1})
    assert excinfo.value.entity_type == "goal"
    assert store.get_student_data_points(other["id"]) == []


def test_data_point_validation_errors_propagate(store, student_with_goal):
    student, goal = student_with_goal

    with pytest.raises(RecordValidationError):
        store.add_data_point({"studentId": student["id"], "goalId": goal["id"], "date": "2024-01-02", "value": "high"})


def test_goal_data_points_are_newest_first(store, student_with_goal):
    student, goal = student_with_goal
    for date, time in (("2024-01-01", "10:00"), ("2024-01-03", "09:00"), ("2024-01-03", "14:30")):
        store.add_data_point(
            {"studentId": student["id"], "goalId": goal["id"], "date": date, "time": time, "value": 5}
        )

    ordered = store.get_goal_data_points(goal["id"])

    assert [(dp["date"], dp["time"]) for dp in ordered] == [
        ("2024-01-03", "14:30"),
        ("2024-01-03", "09:00"),
        ("2024-01-01", "10:00"),
    ]
    refreshed = store.get_student_goals(student["id"])[0]
    assert refreshed["dataPoints"] == 3
    assert refreshed["lastDataPoint"] == "2024-01-03"


def test_metadata_follows_every_mutation(store, student_with_goal):
    student, goal = student_with_goal
    second_goal = store.add_goal_to_student(student["id"], {"title": "Math facts", "domain": "academic"})
    _assert_metadata_matches(store)

    first = store.add_data_point({"studentId": student["id"], "goalId": goal["id"], "date": "2024-01-02", "value": 1})
    second = store.add_data_point(
        {"studentId": student["id"], "goalId": second_goal["id"], "date": "2024-01-03", "value": 2}
    )
    _assert_metadata_matches(store)

    store.update_data_point(second["id"], {"goalId": goal["id"], "value": 4})
    _assert_metadata_matches(store)
    goals = {g["id"]: g for g in store.get_student_goals(student["id"])}
    assert goals[goal["id"]]["dataPoints"] == 2
    assert goals[second_goal["id"]]["dataPoints"] == 0
    assert goals[second_goal["id"]]["lastDataPoint"] is None

    assert store.delete_data_point(first["id"]) is True
    _assert_metadata_matches(store)
    assert store.load()["metadata"]["totalDataPoints"] == 1
    assert store.load()["metadata"]["totalGoals"] == 2


def test_moving_data_point_to_foreign_goal_raises(store, student_with_goal):
    student, goal = student_with_goal
    other = store.add_student({"name": "Ben"})
    foreign = store.add_goal_to_student(other["id"], {"title": "Sharing"})
    data_point = store.add_data_point(
        {"studentId": student["id"], "goalId": goal["id"], "date": "2024-01-02", "value": 1}
    )

    with pytest.raises(EntityNotFoundError):
        store.update_data_point(data_point["id"], {"goalId": foreign["id"]})
    assert store.get_goal_data_points(goal["id"])[0]["id"] == data_point["id"]


def test_staff_crud(store):
    member = store.add_staff({"name": "Ms. K", "role": "Paraprofessional", "specialties": ["reading"]})

    assert store.get_all_staff() == [member]
    assert store.update_staff(member["id"], {"phone": "555-0101"})["phone"] == "555-0101"
    assert store.delete_staff(member["id"]) is True
    assert store.get_staff(member["id"]) is None
    assert store.load()["metadata"]["totalStaff"] == 0


def test_activity_crud(store):
    activity = store.add_activity({"name": "Morning meeting", "duration": "15", "materials": "calendar, pointer"})

    assert activity["duration"] == 15
    assert activity["materials"] == ["calendar", "pointer"]
    assert activity["isCustom"] is False
    assert store.load()["metadata"]["totalActivities"] == 1
    store.update_activity(activity["id"], {"linkedGoalIds": ["g1"]})
    assert store.get_activity(activity["id"])["linkedGoalIds"] == ["g1"]
    assert store.delete_activity(activity["id"]) is True
    assert store.get_all_activities() == []


def test_calendar_entries(store):
    ana = store.add_student({"name": "Ana"})
    ben = store.add_student({"name": "Ben"})
    store.add_calendar_entry("dailyHighlights", {"studentId": ana["id"], "date": "2024-05-01", "achievement": "Read aloud"})
    store.add_calendar_entry("dailyHighlights", {"studentId": ben["id"], "date": "2024-05-01", "achievement": "Helped a friend", "category": "social"})
    commitment = store.add_calendar_entry(
        "behaviorCommitments", {"studentId": ana["id"], "date": "May 2, 2024", "commitment": "Raise hand"}
    )

    assert len(store.get_calendar_entries("dailyHighlights", date="2024-05-01")) == 2
    assert [entry["achievement"] for entry in store.get_calendar_entries("dailyHighlights", student_id=ben["id"])] == ["Helped a friend"]
    assert commitment["date"] == "2024-05-02"
    assert commitment["status"] == "pending"

    store.update_calendar_entry("behaviorCommitments", commitment["id"], {"status": "kept"})
    assert store.get_calendar_entries("behaviorCommitments")[0]["status"] == "kept"
    assert store.delete_calendar_entry("behaviorCommitments", commitment["id"]) is True
    assert store.get_calendar_entries("behaviorCommitments") == []


def test_calendar_entry_requires_student(store):
    with pytest.raises(EntityNotFoundError):
        store.add_calendar_entry("independentChoices", {"studentId": "missing", "date": "2024-05-01"})
    with pytest.raises(ValueError):
        store.get_calendar_entries("lunchOrders")


def test_settings_merge_shallowly(store):
    store.update_settings({"theme": "dark", "calendar": {"showWeather": True}})
    store.update_settings({"sound": False, "calendar": {"showDate": True}})

    assert store.get_settings() == {"theme": "dark", "sound": False, "calendar": {"showDate": True}}


def test_failed_transaction_is_not_persisted(store):
    store.add_student({"name": "Ana"})

    with pytest.raises(RuntimeError):
        with store.transaction() as doc:
            doc["students"].append({"id": "ghost", "name": "Ghost"})
            raise RuntimeError("boom")

    assert [student["name"] for student in store.get_all_students()] == ["Ana"]


def test_concurrent_writers_do_not_lose_updates(store):
    def worker(prefix):
        for index in range(10):
            store.add_student({"name": f"{prefix}-{index}"})

    threads = [threading.Thread(target=worker, args=(f"t{n}",)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(store.get_all_students()) == 40


def test_system_status(store, put_json):
    assert store.get_system_status()["hasUnifiedData"] is False

    put_json("students", [{"id": "legacy", "name": "Old"}])
    student = store.add_student({"name": "Ana"})
    goal = store.add_goal_to_student(student["id"], {"title": "Reading"})
    store.add_data_point({"studentId": student["id"], "goalId": goal["id"], "date": "2024-01-02", "value": 3})

    assert store.get_system_status() == {
        "hasUnifiedData": True,
        "hasLegacyData": True,
        "totalStudents": 1,
        "totalGoals": 1,
        "totalDataPoints": 1,
    }
