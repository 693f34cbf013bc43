from typing import Iterator
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from taskflow.schemas.notifications import (
    DueDateSummary,
    NotificationAck,
    NotificationList,
    NotificationRead,
    PreferenceRead,
    PreferenceUpdate,
)
from .components import ReminderComponents
from .errors import StorageError
from .repository import count_unread, get_user, list_notifications, mark_all_read, mark_read
from .service import build_due_date_summary


router = APIRouter()


def get_components(request: Request) -> ReminderComponents:
    return request.app.state.reminders


def get_session(components: ReminderComponents = Depends(get_components)) -> Iterator[Session]:
    db = components.session_factory()
    try:
        yield db
    finally:
        db.close()


@router.get("/health")
def health_check(components: ReminderComponents = Depends(get_components)):
    return {
        "status": "healthy",
        "service": "reminders",
        "connections": components.router.connection_count,
        "online": len(components.presence.snapshot()),
    }


@router.get("/notifications", response_model=NotificationList)
def list_notifications_endpoint(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_session),
):
    records = list_notifications(db, user_id, limit=limit)
    return NotificationList(
        notifications=[NotificationRead.model_validate(r) for r in records],
        unread_count=count_unread(db, user_id),
    )


@router.post("/notifications/read-all", response_model=NotificationAck)
def mark_all_read_endpoint(user_id: str, db: Session = Depends(get_session)):
    updated = mark_all_read(db, user_id)
    return NotificationAck(success=True, updated=updated)


@router.post("/notifications/{notification_id}/read", response_model=NotificationAck)
def mark_read_endpoint(notification_id: str, db: Session = Depends(get_session)):
    if not mark_read(db, notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return NotificationAck(success=True, updated=1)


@router.get("/notification-preferences/{user_id}", response_model=PreferenceRead)
def get_preferences_endpoint(
    user_id: str,
    components: ReminderComponents = Depends(get_components),
    db: Session = Depends(get_session),
):
    if not get_user(db, user_id):
        raise HTTPException(status_code=404, detail="User not found")
    try:
        matrix = components.preferences.resolve(user_id)
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return PreferenceRead(**matrix.to_dict())


@router.put("/notification-preferences/{user_id}", response_model=PreferenceRead)
def update_preferences_endpoint(
    user_id: str,
    payload: PreferenceUpdate,
    components: ReminderComponents = Depends(get_components),
    db: Session = Depends(get_session),
):
    if not get_user(db, user_id):
        raise HTTPException(status_code=404, detail="User not found")
    try:
        matrix = components.preferences.update(user_id, payload.model_dump(exclude_unset=True))
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return PreferenceRead(**matrix.to_dict())


@router.get("/due-dates/summary/{user_id}", response_model=DueDateSummary)
def due_date_summary_endpoint(user_id: str, db: Session = Depends(get_session)):
    return build_due_date_summary(db, user_id)
