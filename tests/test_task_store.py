from datetime import date, timedelta

import pytest

from errors import Conflict, NotFound, ValidationError
from schemas import DailyUpdateBody, TaskCreate, TaskPatch
from store import MAX_SAVE_ATTEMPTS, TaskStore

from .fakes import LosingRaceRepository


def make(store: TaskStore, owner: str = "u1", **fields):
    return store.create(TaskCreate(title=fields.pop("title", "Write report"), **fields), owner)


def test_create_applies_defaults(task_store):
    task = make(task_store)

    assert task.status == "pending"
    assert task.priority == "medium"
    assert task.progress == 0
    assert task.description == ""
    assert task.completed_at is None
    assert task.progress_history == {} and task.time_entries == {} and task.daily_updates == {}
    assert task_store.find_by_id_for_owner(task.id, "u1") == task


def test_ids_are_unique(task_store):
    ids = {make(task_store).id for _ in range(20)}
    assert len(ids) == 20


def test_create_completed_sets_completed_at_and_full_progress(task_store, clock):
    task = make(task_store, status="completed")

    assert task.completed_at == clock.now
    assert task.progress == 100


def test_find_all_by_owner_keeps_insertion_order_and_hides_other_owners(task_store):
    first = make(task_store, title="first")
    make(task_store, owner="u2", title="theirs")
    second = make(task_store, title="second")

    assert [t.id for t in task_store.find_all_by_owner("u1")] == [first.id, second.id]
    assert task_store.find_by_id_for_owner(first.id, "u2") is None


def test_update_applies_only_sent_fields(task_store, clock):
    task = make(task_store, description="keep me")
    clock.advance(minutes=5)

    patch = TaskPatch.model_validate({"title": "Renamed", "id": "hijack", "ownerId": "u2", "timeEntries": []})
    updated = task_store.update(task.id, "u1", patch)

    assert updated.id == task.id
    assert updated.owner_id == "u1"
    assert updated.title == "Renamed"
    assert updated.description == "keep me"
    assert updated.updated_at == clock.now
    assert updated.version == task.version + 1


def test_update_null_clears_due_date_but_not_title(task_store, clock):
    task = make(task_store, due_date=clock.now + timedelta(days=1), estimated_hours=3)

    updated = task_store.update(task.id, "u1", TaskPatch.model_validate({"dueDate": None, "title": None}))

    assert updated.due_date is None
    assert updated.estimated_hours == 3
    assert updated.title == "Write report"


def test_status_completed_sets_completed_at_once(task_store, clock):
    task = make(task_store, progress=30)
    completed = task_store.update(task.id, "u1", TaskPatch(status="completed"))
    assert completed.progress == 100
    assert completed.completed_at == clock.now
    stamped = completed.completed_at

    clock.advance(hours=1)
    reopened = task_store.update(task.id, "u1", TaskPatch(status="in-progress", progress=50))
    assert reopened.status == "in-progress"
    assert reopened.completed_at == stamped

    again = task_store.update(task.id, "u1", TaskPatch(status="completed"))
    assert again.completed_at == stamped
    # completedAt was already set, so progress is left alone
    assert again.progress == 50


def test_update_and_delete_of_missing_or_foreign_task_raise_not_found(task_store):
    task = make(task_store)

    with pytest.raises(NotFound):
        task_store.update(task.id, "u2", TaskPatch(title="x"))
    with pytest.raises(NotFound):
        task_store.update("missing", "u1", TaskPatch(title="x"))
    with pytest.raises(NotFound):
        task_store.delete(task.id, "u2")

    removed = task_store.delete(task.id, "u1")
    assert removed.id == task.id
    assert task_store.find_by_id_for_owner(task.id, "u1") is None
    with pytest.raises(NotFound):
        task_store.delete(task.id, "u1")


@pytest.mark.parametrize("progress", [-1, 101, 150])
def test_progress_out_of_range_is_rejected_without_change(task_store, progress):
    task = make(task_store, progress=10)

    with pytest.raises(ValidationError, match="between 0 and 100"):
        task_store.add_progress_update(task.id, "u1", progress)

    assert task_store.find_by_id_for_owner(task.id, "u1").progress == 10


def test_progress_updates_upsert_one_entry_per_day(task_store, clock):
    task = make(task_store)

    task_store.add_progress_update(task.id, "u1", 20, "started")
    task_store.add_progress_update(task.id, "u1", 35, "more")
    clock.advance(days=1)
    updated = task_store.add_progress_update(task.id, "u1", 60)

    history = updated.to_public()["progressHistory"]
    assert [(e["date"], e["progress"], e["note"]) for e in history] == [
        ("2025-06-02", 35, "more"),
        ("2025-06-03", 60, ""),
    ]
    assert updated.progress == 60
    assert updated.last_worked_on == clock.now
    assert updated.completed_at is None


def test_progress_reaching_100_sets_completed_at(task_store, clock):
    task = make(task_store)
    done = task_store.add_progress_update(task.id, "u1", 100)
    assert done.completed_at == clock.now


def test_same_day_time_entry_replaces_previous(task_store):
    task = make(task_store)

    task_store.add_time_entry(task.id, "u1", 1)
    updated = task_store.add_time_entry(task.id, "u1", 3, "deep work")

    assert len(updated.time_entries) == 1
    assert updated.total_time_spent == 3
    assert updated.time_entries[date(2025, 6, 2)].description == "deep work"


def test_time_entries_on_different_days_add_up(task_store, clock):
    task = make(task_store)

    task_store.add_time_entry(task.id, "u1", 2)
    clock.advance(days=1)
    updated = task_store.add_time_entry(task.id, "u1", 1.5)

    assert updated.total_time_spent == 3.5
    assert updated.to_public()["totalTimeSpent"] == 3.5


@pytest.mark.parametrize("hours", [0, -2, 24.5, float("nan"), float("inf")])
def test_invalid_hours_are_rejected(task_store, hours):
    task = make(task_store)
    with pytest.raises(ValidationError):
        task_store.add_time_entry(task.id, "u1", hours)
    assert task_store.find_by_id_for_owner(task.id, "u1").time_entries == {}


def test_full_day_of_hours_is_accepted(task_store):
    task = make(task_store)

    updated = task_store.add_time_entry(task.id, "u1", 24)

    assert updated.total_time_spent == 24


def test_progress_can_be_reset_to_zero(task_store):
    task = make(task_store, progress=30)

    updated = task_store.add_progress_update(task.id, "u1", 0, "starting over")

    assert updated.progress == 0
    assert updated.progress_history[date(2025, 6, 2)].progress == 0


def test_daily_update_defaults_to_task_status(task_store, clock):
    task = make(task_store, status="in-progress")

    updated = task_store.add_daily_update(task.id, "u1", DailyUpdateBody())

    entry = updated.daily_updates[clock.now.date()]
    assert entry.status == "in-progress"
    assert entry.worked_on is False
    assert entry.mood == "neutral"
    assert entry.accomplishments == [] and entry.blockers == [] and entry.next_steps == []
    assert updated.last_worked_on is None


def test_daily_update_worked_on_replaces_same_day_entry(task_store, clock):
    task = make(task_store)

    task_store.add_daily_update(task.id, "u1", DailyUpdateBody(worked_on=True, accomplishments=["a"]))
    updated = task_store.add_daily_update(
        task.id, "u1", DailyUpdateBody(worked_on=True, blockers=["b"], mood="blocked")
    )

    assert len(updated.daily_updates) == 1
    entry = updated.daily_updates[clock.now.date()]
    assert entry.accomplishments == []
    assert entry.blockers == ["b"]
    assert entry.mood == "blocked"
    assert updated.last_worked_on == clock.now


def test_stats_count_overdue_and_average(task_store, clock):
    make(task_store, progress=40, due_date=clock.now - timedelta(days=1))
    make(task_store, status="completed", due_date=clock.now - timedelta(days=1))
    make(task_store, status="in-progress", progress=20, due_date=clock.now + timedelta(days=1))
    make(task_store, owner="u2", progress=90)

    stats = task_store.get_stats("u1")

    assert stats.total == 3
    assert stats.completed == 1
    assert stats.in_progress == 1
    assert stats.pending == 1
    assert stats.overdue == 1
    assert stats.average_progress == pytest.approx((40 + 100 + 20) / 3)


def test_stats_with_no_tasks_are_zero(task_store):
    stats = task_store.get_stats("nobody")
    assert stats.total == 0
    assert stats.average_progress == 0


def test_analytics_can_be_scoped_to_one_task(task_store):
    a = make(task_store)
    b = make(task_store)
    task_store.add_time_entry(a.id, "u1", 2)
    task_store.add_time_entry(b.id, "u1", 5)

    assert task_store.get_progress_analytics("u1").total_time_spent == 7
    scoped = task_store.get_progress_analytics("u1", a.id)
    assert scoped.total_tasks == 1
    assert scoped.total_time_spent == 2
    assert task_store.get_progress_analytics("u2", a.id).total_tasks == 0


def test_lost_race_is_retried(clock):
    repo = LosingRaceRepository(losses=2)
    store = TaskStore(repo, clock=clock)
    task = make(store)

    updated = store.add_progress_update(task.id, "u1", 50)

    assert updated.progress == 50
    assert repo.replace_calls == 3
    assert store.find_by_id_for_owner(task.id, "u1").version == 1


def test_persistent_conflict_raises(clock):
    repo = LosingRaceRepository(losses=MAX_SAVE_ATTEMPTS)
    store = TaskStore(repo, clock=clock)
    task = make(store)

    with pytest.raises(Conflict):
        store.add_time_entry(task.id, "u1", 1)
    assert store.find_by_id_for_owner(task.id, "u1").time_entries == {}
