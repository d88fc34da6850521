"""
Class session management for trainers and admins.
"""
import logging
from datetime import datetime
from typing import Optional

from app.errors import InvalidState, NotOwner, UserNotFound
from app.services.bookings import fill_from_waitlist, get_class_session
from app.utils.audit import log_audit
from app.utils.helpers import serialize_row, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "description", "start_time", "end_time", "capacity", "location", "trainer_id")


def _ensure_trainer(cursor, trainer_id: int):
    cursor.execute("SELECT id, role FROM users WHERE id = %s AND is_active = 1", (trainer_id,))
    trainer = cursor.fetchone()
    if not trainer or trainer["role"] != "trainer":
        raise UserNotFound("Trainer not found")


def _ensure_times(start_time: datetime, end_time: datetime):
    if end_time <= start_time:
        raise InvalidState("end_time must be after start_time")


def create_class_session(
    cursor,
    trainer_id: int,
    name: str,
    start_time: datetime,
    end_time: datetime,
    capacity: int,
    description: Optional[str] = None,
    location: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    now = now or utcnow()
    start_time = to_naive_utc(start_time)
    end_time = to_naive_utc(end_time)
    _ensure_trainer(cursor, trainer_id)
    _ensure_times(start_time, end_time)
    if start_time <= now:
        raise InvalidState("Classes can only be scheduled in the future")

    cursor.execute(
        """
        INSERT INTO class_sessions
            (trainer_id, name, description, start_time, end_time, capacity,
             location, status, attendee_count, created_at, updated_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, 'scheduled', 0, %s, %s)
        """,
        (trainer_id, name, description, start_time, end_time, capacity, location, now, now),
    )
    class_id = cursor.lastrowid
    logger.info("Class #%s '%s' created for trainer #%s", class_id, name, trainer_id)
    return serialize_row(get_class_session(cursor, class_id))


def update_class_session(cursor, class_id: int, changes: dict, actor: dict, now: Optional[datetime] = None) -> dict:
    """
    Apply a partial update to a scheduled class.

    Capacity can never drop below the number of members already admitted.
    Raising it promotes waitlisted members into the new slots.
    """
    now = now or utcnow()
    session = get_class_session(cursor, class_id)

    if actor["role_name"] != "admin" and session["trainer_id"] != actor["user_id"]:
        raise NotOwner("Not authorized to update this class")
    if session["status"] != "scheduled":
        raise InvalidState(f"Class is {session['status']} and cannot be changed")

    changes = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS and v is not None}
    for field in ("start_time", "end_time"):
        if field in changes:
            changes[field] = to_naive_utc(changes[field])
    if not changes:
        return {"class": serialize_row(session), "promoted_bookings": []}

    if "trainer_id" in changes:
        if actor["role_name"] != "admin":
            raise NotOwner("Only an admin can reassign a class")
        _ensure_trainer(cursor, changes["trainer_id"])
    _ensure_times(changes.get("start_time", session["start_time"]), changes.get("end_time", session["end_time"]))

    update_fields = []
    params = []
    for field in UPDATABLE_FIELDS:
        if field in changes:
            update_fields.append(f"{field} = %s")
            params.append(changes[field])
    update_fields.append("updated_at = %s")
    params.append(now)

    where_sql = "id = %s AND status = 'scheduled'"
    params.append(class_id)
    if "capacity" in changes:
        where_sql += " AND attendee_count <= %s"
        params.append(changes["capacity"])

    cursor.execute(f"UPDATE class_sessions SET {', '.join(update_fields)} WHERE {where_sql}", params)
    if cursor.rowcount != 1:
        if "capacity" in changes:
            raise InvalidState("Capacity cannot be lower than the number of booked members")
        raise InvalidState("Class was changed by another request")

    log_audit(
        cursor, action="update_class", resource="ClassSession", resource_id=class_id,
        user_id=actor["user_id"], details=changes,
    )

    updated = get_class_session(cursor, class_id)
    promoted = []
    if updated["capacity"] > session["capacity"]:
        promoted = fill_from_waitlist(cursor, updated, now)
        updated = get_class_session(cursor, class_id)

    return {"class": serialize_row(updated), "promoted_bookings": promoted}


def list_trainer_classes(cursor, trainer_id: int, status: Optional[str] = None, upcoming_only: bool = False, now=None) -> list:
    now = now or utcnow()
    where_clauses = ["cs.trainer_id = %s"]
    params = [trainer_id]
    if status:
        where_clauses.append("cs.status = %s")
        params.append(status)
    if upcoming_only:
        where_clauses.append("cs.start_time >= %s")
        params.append(now)

    cursor.execute(
        f"""
        SELECT cs.id, cs.name, cs.description, cs.start_time, cs.end_time, cs.capacity,
               cs.attendee_count, cs.location, cs.status,
               (SELECT COUNT(*) FROM class_waitlist w WHERE w.class_id = cs.id) AS waitlist_count,
               (SELECT COUNT(*) FROM attendances a WHERE a.class_id = cs.id) AS checked_in_count
        FROM class_sessions cs
        WHERE {" AND ".join(where_clauses)}
        ORDER BY cs.start_time ASC
        """,
        params,
    )
    return [serialize_row(row) for row in cursor.fetchall()]
