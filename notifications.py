"""
Notification fan-out.

Notifications are fire-and-forget side effects of workflow transitions.
Every document carries a structured `audience_role` so dashboards filter
by field, never by message text.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from bson import ObjectId
from pymongo.database import Database

from database import NOTIFICATIONS, STAFF_PROFILES
from errors import NotFoundError
from schemas import Notification
from security import get_users_by_role

logger = logging.getLogger(__name__)


def _build(user_id: str, title: str, message: str, type_: str, audience_role: str,
           application_id: Optional[str]) -> dict:
    note = Notification(
        user_id=user_id,
        title=title,
        message=message,
        type=type_,
        audience_role=audience_role,
        related_entity_id=application_id,
    ).model_dump()
    note["created_at"] = datetime.utcnow()
    return note


def notify_users(db: Database, user_ids: Iterable[str], title: str, message: str,
                 audience_role: str, type_: str = "info",
                 application_id: Optional[str] = None) -> int:
    # dict.fromkeys keeps order and drops duplicates
    recipients = list(dict.fromkeys(u for u in user_ids if u))
    if not recipients:
        return 0
    docs = [_build(u, title, message, type_, audience_role, application_id) for u in recipients]
    db[NOTIFICATIONS].insert_many(docs)
    logger.debug(f"Sent '{title}' to {len(docs)} {audience_role} recipient(s)")
    return len(docs)


def notify_user(db: Database, user_id: str, title: str, message: str, audience_role: str,
                type_: str = "info", application_id: Optional[str] = None) -> int:
    return notify_users(db, [user_id], title, message, audience_role, type_, application_id)


def notify_role(db: Database, role: str, title: str, message: str, type_: str = "info",
                application_id: Optional[str] = None, department: Optional[str] = None) -> int:
    """Bulk-notify every holder of `role`, optionally only active staff of one department"""
    user_ids = get_users_by_role(db, role)
    if department is not None:
        user_ids = active_staff_in_department(db, user_ids, department)
    return notify_users(db, user_ids, title, message, role, type_, application_id)


def active_staff_in_department(db: Database, user_ids: List[str], department: str) -> List[str]:
    oids = [ObjectId(u) for u in user_ids if ObjectId.is_valid(u)]
    if not oids:
        return []
    staff = db[STAFF_PROFILES].find(
        {"_id": {"$in": oids}, "department": department, "is_active": True}, {"_id": 1}
    )
    return [str(s["_id"]) for s in staff]


# ---------- Reading ----------
def list_notifications(db: Database, user_id: str, unread_only: bool = False) -> List[dict]:
    filt = {"user_id": user_id}
    if unread_only:
        filt["read"] = False
    return list(db[NOTIFICATIONS].find(filt).sort("created_at", -1))


def mark_read(db: Database, user_id: str, notification_id: ObjectId) -> dict:
    res = db[NOTIFICATIONS].update_one(
        {"_id": notification_id, "user_id": user_id},
        {"$set": {"read": True, "read_at": datetime.utcnow()}},
    )
    if res.matched_count == 0:
        raise NotFoundError("Notification not found")
    return db[NOTIFICATIONS].find_one({"_id": notification_id})


def mark_all_read(db: Database, user_id: str) -> int:
    res = db[NOTIFICATIONS].update_many(
        {"user_id": user_id, "read": False},
        {"$set": {"read": True, "read_at": datetime.utcnow()}},
    )
    return res.modified_count
