import asyncio
from datetime import timedelta

from taskflow.models import NotificationRecord, Task
from taskflow.reminders import repository
from taskflow.reminders.errors import ConcurrencyConflict

from conftest import NOW, FakeConnection


def reminders(db):
    return [(n.type, n.related_task_id) for n in db.query(NotificationRecord).order_by(NotificationRecord.type)]


def test_24h_reminder_fires_once(make_user, make_task, components, db, pool):
    make_user()
    make_task(due_at=NOW + timedelta(hours=24, minutes=5), title="Ship it")

    result = asyncio.run(components.scheduler.run_tick(NOW))

    assert result.fired == 1
    assert reminders(db) == [("due_in_24h", "t1")]
    record = db.query(NotificationRecord).one()
    assert record.message == 'Task "Ship it" is due in 24 hours'
    assert [m.channel for m in pool.messages] == ["email"]

    task = repository.reload_task(db, "t1")
    assert task.fired_kinds == {"due_in_24h"}
    assert task.due_date_status == "due_soon"

    again = asyncio.run(components.scheduler.run_tick(NOW + timedelta(minutes=15)))
    assert again.fired == 0
    assert db.query(NotificationRecord).count() == 1

    # One hour before the deadline the 1h kind fires on its own; the 24h kind stays at one
    last = asyncio.run(components.scheduler.run_tick(NOW + timedelta(hours=23, minutes=5)))
    assert last.fired == 2
    assert reminders(db) == [("due_in_1h", "t1"), ("due_in_24h", "t1"), ("due_today", "t1")]
    assert db.query(NotificationRecord).filter_by(type="due_in_24h").count() == 1
    assert repository.reload_task(db, "t1").fired_kinds == {"due_in_24h", "due_in_1h", "due_today"}


def test_overdue_task_gets_overdue_and_due_today_in_order(make_user, make_task, components, db):
    make_user()
    make_task(due_at=NOW - timedelta(minutes=30))

    result = asyncio.run(components.scheduler.run_tick(NOW))

    assert result.fired == 2
    task = repository.reload_task(db, "t1")
    assert task.fired_kinds == {"overdue", "due_today"}
    assert task.due_date_status == "overdue"
    assert task.version == 3


def test_snoozed_task_waits(make_user, make_task, components, db, clock):
    make_user()
    make_task(due_at=NOW + timedelta(hours=1), snoozed_until=NOW + timedelta(minutes=10))

    first = asyncio.run(components.scheduler.run_tick(NOW))
    assert first.fired == 0
    assert first.status_updates == 1

    later = asyncio.run(components.scheduler.run_tick(NOW + timedelta(minutes=10)))
    assert later.fired == 2
    assert {t for t, _ in reminders(db)} == {"due_in_1h", "due_today"}


def test_unassigned_task_is_claimed_without_notification(make_task, components, db):
    make_task(due_at=NOW - timedelta(hours=2), assignee_id=None)

    result = asyncio.run(components.scheduler.run_tick(NOW))

    assert result.fired == 2
    assert db.query(NotificationRecord).count() == 0
    assert repository.reload_task(db, "t1").fired_kinds == {"overdue", "due_today"}


def test_done_tasks_are_not_scanned(make_user, make_task, components, db):
    make_user()
    make_task(due_at=NOW - timedelta(hours=2), lifecycle_status="done")
    result = asyncio.run(components.scheduler.run_tick(NOW))
    assert result.scanned == 0
    assert db.query(NotificationRecord).count() == 0


def test_conflict_retries_once_then_fires(make_user, make_task, components, db, monkeypatch):
    make_user()
    make_task(due_at=NOW + timedelta(hours=24))
    real_claim = repository.claim_reminder_kind
    attempts = []

    def flaky_claim(session, task, kind, now):
        attempts.append(kind)
        if len(attempts) == 1:
            raise ConcurrencyConflict(task.id, task.version)
        return real_claim(session, task, kind, now)

    monkeypatch.setattr(repository, "claim_reminder_kind", flaky_claim)
    result = asyncio.run(components.scheduler.run_tick(NOW))

    assert attempts == ["due_in_24h", "due_in_24h"]
    assert result.conflicts == 1
    assert result.fired == 1
    assert db.query(NotificationRecord).count() == 1


def test_repeated_conflict_skips_kind_for_this_tick(make_user, make_task, components, db, monkeypatch):
    make_user()
    make_task(due_at=NOW + timedelta(hours=24))

    def always_conflict(session, task, kind, now):
        raise ConcurrencyConflict(task.id, task.version)

    monkeypatch.setattr(repository, "claim_reminder_kind", always_conflict)
    result = asyncio.run(components.scheduler.run_tick(NOW))

    assert result.conflicts == 2
    assert result.fired == 0
    assert result.failures == 0
    assert db.query(NotificationRecord).count() == 0


def test_kind_claimed_elsewhere_is_not_fired_twice(make_user, make_task, components, db, session_factory, monkeypatch):
    make_user()
    make_task(due_at=NOW + timedelta(hours=24))
    real_claim = repository.claim_reminder_kind

    def lose_race(session, task, kind, now):
        # Another scanner claims the same kind first
        other = session_factory()
        try:
            real_claim(other, repository.get_task(other, task.id), kind, now)
        finally:
            other.close()
        monkeypatch.setattr(repository, "claim_reminder_kind", real_claim)
        return real_claim(session, task, kind, now)

    monkeypatch.setattr(repository, "claim_reminder_kind", lose_race)
    result = asyncio.run(components.scheduler.run_tick(NOW))

    assert result.conflicts == 1
    assert result.fired == 0
    assert repository.reload_task(db, "t1").fired_kinds == {"due_in_24h"}


def test_failing_task_does_not_stop_the_scan(make_user, make_task, components, db, monkeypatch):
    make_user()
    make_task("bad", due_at=NOW - timedelta(days=1))
    make_task("good", due_at=NOW + timedelta(hours=24))
    real_claim = repository.claim_reminder_kind

    def explode_on_bad(session, task, kind, now):
        if task.id == "bad":
            raise RuntimeError("boom")
        return real_claim(session, task, kind, now)

    monkeypatch.setattr(repository, "claim_reminder_kind", explode_on_bad)
    result = asyncio.run(components.scheduler.run_tick(NOW))

    assert result.scanned == 2
    assert result.failures == 1
    assert reminders(db) == [("due_in_24h", "good")]


def test_tick_publishes_summary_to_connected_users(make_user, make_task, components, db):
    make_user()
    make_task("a", due_at=NOW - timedelta(days=1))
    make_task("b", due_at=NOW + timedelta(days=5))
    conn = FakeConnection()
    components.router.subscribe(conn, "user:u1")

    result = asyncio.run(components.scheduler.run_tick(NOW))

    assert result.summaries == 1
    summaries = conn.events("dueDateSummary:updated")
    assert summaries[-1]["data"] == {"overdue": 1, "dueToday": 0, "dueSoon": 0, "onTrack": 1}
    assert len(conn.events("notification:new")) == 1


def test_overlapping_tick_is_skipped(components):
    async def scenario():
        async with components.scheduler._tick_lock:
            return await components.scheduler.run_tick(NOW)

    assert asyncio.run(scenario()).skipped is True


def test_status_cache_matches_classifier_after_tick(make_user, make_task, components, db):
    make_user()
    make_task("a", due_at=NOW + timedelta(hours=2))
    make_task("b", due_at=NOW + timedelta(days=2))
    make_task("c", due_at=NOW + timedelta(days=10))
    asyncio.run(components.scheduler.run_tick(NOW))

    statuses = {t.id: t.due_date_status for t in db.query(Task).populate_existing()}
    assert statuses == {"a": "due_today", "b": "due_soon", "c": "on_track"}


def test_task_completed_during_scan_gets_no_reminder(make_user, make_task, components, db, session_factory, monkeypatch):
    make_user()
    make_task(due_at=NOW - timedelta(hours=1))
    real_find = repository.find_due_tasks

    def find_then_complete(session, limit=None):
        tasks = real_find(session, limit=limit)
        other = session_factory()
        try:
            repository.update_task(other, "t1", {"lifecycle_status": "done"})
        finally:
            other.close()
        return tasks

    monkeypatch.setattr(repository, "find_due_tasks", find_then_complete)
    result = asyncio.run(components.scheduler.run_tick(NOW))

    assert result.conflicts == 1
    assert result.fired == 0
    assert db.query(NotificationRecord).count() == 0
    task = repository.reload_task(db, "t1")
    assert task.fired_kinds == frozenset()
    assert task.due_date_status == "completed"
