import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from taskflow.reminders.runner import PeriodicJob, PeriodicRunner
from taskflow.reminders.schedule import CalendarSchedule, IntervalSchedule

TUESDAY_7AM = datetime(2026, 3, 10, 7, 0, tzinfo=timezone.utc)


def test_interval_schedule():
    assert IntervalSchedule(900).next_fire_after(TUESDAY_7AM) == TUESDAY_7AM + timedelta(minutes=15)
    with pytest.raises(ValueError):
        IntervalSchedule(0)


def test_daily_schedule_fires_next_0800_utc():
    daily = CalendarSchedule(hour=8)
    assert daily.next_fire_after(TUESDAY_7AM) == datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)
    at_eight = datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)
    assert daily.next_fire_after(at_eight) == datetime(2026, 3, 11, 8, 0, tzinfo=timezone.utc)


def test_weekly_schedule_fires_next_monday():
    weekly = CalendarSchedule(hour=8, weekday=0)
    assert weekly.next_fire_after(TUESDAY_7AM) == datetime(2026, 3, 16, 8, 0, tzinfo=timezone.utc)
    monday_7am = datetime(2026, 3, 9, 7, 0, tzinfo=timezone.utc)
    assert weekly.next_fire_after(monday_7am) == datetime(2026, 3, 9, 8, 0, tzinfo=timezone.utc)


def test_calendar_schedule_validates_fields():
    with pytest.raises(ValueError):
        CalendarSchedule(hour=24)
    with pytest.raises(ValueError):
        CalendarSchedule(hour=8, weekday=7)


def test_celery_mapping():
    assert IntervalSchedule(60).to_celery() == timedelta(seconds=60)
    weekly = CalendarSchedule(hour=8, weekday=0).to_celery()
    assert weekly.hour == {8}
    assert weekly.minute == {0}
    assert weekly.day_of_week == {1}


def test_runner_runs_jobs_until_stopped():
    calls = []

    async def job(now):
        calls.append(now)

    async def scenario():
        runner = PeriodicRunner([PeriodicJob("tick", IntervalSchedule(0.01), job)])
        runner.start()
        await asyncio.sleep(0.08)
        await runner.stop()
        count = len(calls)
        await asyncio.sleep(0.03)
        return count

    count = asyncio.run(scenario())
    assert count >= 2
    assert len(calls) == count


def test_failing_job_keeps_runner_alive():
    calls = []

    async def job(now):
        calls.append(now)
        raise RuntimeError("boom")

    async def scenario():
        runner = PeriodicRunner([PeriodicJob("bad", IntervalSchedule(0.01), job, run_on_start=True)])
        runner.start()
        await asyncio.sleep(0.05)
        await runner.stop()

    asyncio.run(scenario())
    assert len(calls) >= 2


def test_stop_waits_for_in_flight_run():
    state = {"started": False, "finished": False}

    async def slow_job(now):
        state["started"] = True
        await asyncio.sleep(0.05)
        state["finished"] = True

    async def scenario():
        runner = PeriodicRunner([PeriodicJob("slow", IntervalSchedule(60), slow_job, run_on_start=True)])
        runner.start()
        await asyncio.sleep(0.01)
        assert state["started"]
        await runner.stop()
        return runner.running

    assert asyncio.run(scenario()) is False
    assert state["finished"] is True
