import asyncio

from taskflow.models import NotificationRecord
from taskflow.realtime.events import EventRouter
from taskflow.reminders.dispatcher import NotificationDispatcher, NotificationEvent
from taskflow.reminders.preferences import PreferenceResolver

from conftest import FakeConnection, RecordingPool


def event(**overrides):
    fields = dict(
        user_id="u1",
        type="overdue",
        message='Task "Ship it" is overdue',
        related_task_id="t1",
        related_project_id="p1",
    )
    fields.update(overrides)
    return NotificationEvent(**fields)


def build(session_factory, pool):
    router = EventRouter()
    dispatcher = NotificationDispatcher(router, PreferenceResolver(session_factory), pool, session_factory)
    return router, dispatcher


def test_dispatch_persists_publishes_and_submits(make_user, session_factory, db):
    make_user()
    pool = RecordingPool()
    router, dispatcher = build(session_factory, pool)
    conn = FakeConnection()
    router.subscribe(conn, "user:u1")

    record = asyncio.run(dispatcher.dispatch(event()))

    assert record is not None
    assert db.query(NotificationRecord).count() == 1
    published = conn.events("notification:new")
    assert len(published) == 1
    assert published[0]["data"]["notification"]["id"] == record.id
    # Email only: webhook needs a URL
    assert [m.channel for m in pool.messages] == ["email"]
    message = pool.messages[0]
    assert message.to_email == "u1@example.com"
    assert message.link.endswith("/tasks/t1")
    assert message.notification_id == record.id


def test_channel_failure_does_not_affect_record_or_live_event(make_user, session_factory, db):
    make_user()
    router, dispatcher = build(session_factory, RecordingPool(fail=True))
    conn = FakeConnection()
    router.subscribe(conn, "user:u1")

    record = asyncio.run(dispatcher.dispatch(event()))

    assert record is not None
    assert db.query(NotificationRecord).count() == 1
    assert len(conn.events("notification:new")) == 1


def test_storage_failure_drops_event(make_user, session_factory, monkeypatch):
    from taskflow.reminders import repository
    from taskflow.reminders.errors import StorageError

    make_user()
    pool = RecordingPool()
    router, dispatcher = build(session_factory, pool)
    conn = FakeConnection()
    router.subscribe(conn, "user:u1")

    def broken(db, fields):
        raise StorageError("database is down")

    monkeypatch.setattr(repository, "create_notification_record", broken)
    assert asyncio.run(dispatcher.dispatch(event())) is None
    assert conn.sent == []
    assert pool.messages == []


def test_dispatch_without_subscribers_still_persists(make_user, session_factory, db):
    make_user()
    _, dispatcher = build(session_factory, RecordingPool())
    asyncio.run(dispatcher.dispatch(event(type="task_assigned", message='You were assigned "Ship it"')))
    assert db.query(NotificationRecord).filter_by(type="task_assigned").count() == 1


def test_opted_out_category_skips_channels(make_user, session_factory):
    make_user()
    pool = RecordingPool()
    router, dispatcher = build(session_factory, pool)
    dispatcher.preferences.update("u1", {"channels": {"email": {"overdue": False}}})

    asyncio.run(dispatcher.dispatch(event()))
    assert pool.messages == []


def test_send_digest_uses_external_channels_only(make_user, session_factory, db):
    user = make_user()
    pool = RecordingPool()
    router, dispatcher = build(session_factory, pool)
    conn = FakeConnection()
    router.subscribe(conn, "user:u1")

    # Digests are off by default
    assert asyncio.run(dispatcher.send_digest(user, "Daily digest", "Overdue: 1")) == 0
    dispatcher.preferences.update("u1", {"channels": {"email": {"digest": True}}})
    assert asyncio.run(dispatcher.send_digest(user, "Daily digest", "Overdue: 1")) == 1

    assert pool.messages[0].event_type == "digest"
    assert conn.sent == []
    assert db.query(NotificationRecord).count() == 0
