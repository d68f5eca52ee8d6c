from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Tuple

from shared.db import Notification


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def notification_to_dict(notification: Notification) -> dict:
    return {
        "id": notification.id,
        "organizationId": notification.organization_id,
        "userId": notification.user_id,
        "title": notification.title,
        "description": notification.description,
        "time": notification.time,
        "unread": bool(notification.unread),
        "entityType": notification.entity_type,
        "entityId": notification.entity_id,
        "createdAt": _format_dt(notification.created_at),
    }


def list_notifications(
    db,
    organization_id: str,
    user_id: str,
    *,
    unread_only: bool = False,
    limit: int = 50,
) -> Tuple[List[Notification], int]:
    base = db.query(Notification).filter(
        Notification.organization_id == organization_id,
        Notification.user_id == user_id,
    )
    unread_count = base.filter(Notification.unread.is_(True)).count()
    query = base.filter(Notification.unread.is_(True)) if unread_only else base
    rows = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()
    return rows, unread_count


def create_notification(
    db,
    *,
    organization_id: str,
    user_id: str,
    title: str,
    description: Optional[str] = None,
    time: str = "Just now",
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> Notification:
    notification = Notification(
        organization_id=organization_id,
        user_id=user_id,
        title=title,
        description=description,
        time=time,
        unread=True,
        entity_type=entity_type,
        entity_id=entity_id,
        created_at=datetime.utcnow(),
    )
    db.add(notification)
    db.flush()
    return notification


def get_notification(db, organization_id: str, user_id: str, notification_id: str) -> Optional[Notification]:
    if not notification_id:
        return None
    return (
        db.query(Notification)
        .filter(
            Notification.id == str(notification_id),
            Notification.organization_id == organization_id,
            Notification.user_id == user_id,
        )
        .one_or_none()
    )


def set_unread(db, notification: Notification, unread: bool) -> Notification:
    notification.unread = bool(unread)
    db.flush()
    return notification


def mark_all_read(db, organization_id: str, user_id: str) -> int:
    updated = (
        db.query(Notification)
        .filter(
            Notification.organization_id == organization_id,
            Notification.user_id == user_id,
            Notification.unread.is_(True),
        )
        .update({Notification.unread: False}, synchronize_session=False)
    )
    db.flush()
    return int(updated or 0)
