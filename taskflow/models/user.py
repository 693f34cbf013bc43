import uuid
from datetime import datetime, timezone as dt_timezone
from sqlalchemy import Column, String, DateTime
from taskflow.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(dt_timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
