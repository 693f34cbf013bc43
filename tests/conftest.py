from datetime import datetime, timedelta, timezone
from typing import List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import taskflow.models  # noqa: F401
from taskflow.db.base import Base
from taskflow.models import Task, User
from taskflow.reminders.components import build_reminder_components


class FixedClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeConnection:
    def __init__(self, name: str = "conn", fail: bool = False):
        self.name = name
        self.fail = fail
        self.sent: List[dict] = []

    async def send_json(self, message: dict) -> None:
        if self.fail:
            raise ConnectionError(f"{self.name} is gone")
        self.sent.append(message)

    def events(self, name: str = None) -> List[dict]:
        return [m for m in self.sent if name is None or m["event"] == name]

    def __repr__(self):
        return f"FakeConnection({self.name})"


class RecordingPool:
    """Channel pool stand-in that records submissions instead of sending."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages = []
        self.shut_down = False

    def submit(self, message):
        if self.fail:
            raise RuntimeError("pool unavailable")
        self.messages.append(message)
        return message

    def shutdown(self, wait: bool = True) -> None:
        self.shut_down = True


# Tuesday
NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def pool():
    return RecordingPool()


@pytest.fixture
def components(session_factory, pool, clock):
    return build_reminder_components(session_factory=session_factory, channel_pool=pool, clock=clock)


@pytest.fixture
def make_user(db):
    def _make(user_id="u1", name="Ada", email=None):
        user = User(id=user_id, name=name, email=email or f"{user_id}@example.com")
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def make_task(db):
    def _make(task_id="t1", due_at=None, assignee_id="u1", project_id="p1", **fields):
        task = Task(
            id=task_id,
            title=fields.pop("title", f"Task {task_id}"),
            project_id=project_id,
            assignee_id=assignee_id,
            due_at=due_at,
            **fields,
        )
        db.add(task)
        db.commit()
        db.refresh(task)
        return task
    return _make
