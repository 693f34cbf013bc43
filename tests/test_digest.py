import asyncio
from datetime import timedelta

from conftest import NOW


def opt_in(components, user_id):
    components.preferences.update(user_id, {"channels": {"email": {"digest": True}}})


def test_daily_digest_counts(make_user, make_task, components, pool):
    make_user()
    opt_in(components, "u1")
    make_task("a", due_at=NOW - timedelta(days=1))
    make_task("b", due_at=NOW + timedelta(hours=3))
    # Thursday, same ISO week
    make_task("c", due_at=NOW + timedelta(days=2))
    # Next week
    make_task("d", due_at=NOW + timedelta(days=7))

    summary = asyncio.run(components.digests.run_daily(NOW))

    assert summary == {"sent": 1, "skipped": 0, "failed": 0}
    message = pool.messages[0]
    assert message.event_type == "digest"
    assert "Overdue: 1" in message.text
    assert "Due today: 1" in message.text
    assert "Due later this week: 1" in message.text


def test_daily_digest_skips_users_with_nothing_pressing(make_user, make_task, components, pool):
    make_user()
    opt_in(components, "u1")
    make_task("c", due_at=NOW + timedelta(days=2))

    summary = asyncio.run(components.digests.run_daily(NOW))

    assert summary["sent"] == 0
    assert pool.messages == []


def test_digest_requires_opt_in(make_user, make_task, components, pool):
    make_user()
    make_task("a", due_at=NOW - timedelta(days=1))
    summary = asyncio.run(components.digests.run_daily(NOW))
    assert summary == {"sent": 0, "skipped": 1, "failed": 0}


def test_weekly_digest_reports_last_week(make_user, make_task, components, pool):
    make_user()
    opt_in(components, "u1")
    # Completed on the previous Wednesday
    make_task("done", lifecycle_status="done", updated_at=NOW - timedelta(days=6))
    make_task("late", due_at=NOW - timedelta(hours=1))

    summary = asyncio.run(components.digests.run_weekly(NOW))

    assert summary["sent"] == 1
    text = pool.messages[0].text
    assert "Tasks completed: 1" in text
    assert "Overdue tasks: 1" in text


def test_one_failing_user_does_not_block_others(make_user, make_task, components, pool, monkeypatch):
    make_user("u1")
    make_user("u2", name="Grace")
    opt_in(components, "u1")
    opt_in(components, "u2")
    make_task("a", due_at=NOW - timedelta(days=1), assignee_id="u1")
    make_task("b", due_at=NOW - timedelta(days=1), assignee_id="u2")

    real_send = components.dispatcher.send_digest

    async def flaky_send(user, subject, text, period="daily"):
        if user.id == "u1":
            raise RuntimeError("boom")
        return await real_send(user, subject, text, period)

    monkeypatch.setattr(components.dispatcher, "send_digest", flaky_send)
    summary = asyncio.run(components.digests.run_daily(NOW))

    assert summary == {"sent": 1, "skipped": 0, "failed": 1}
    assert [m.user_id for m in pool.messages] == ["u2"]
