"""Work order lifecycle operations.

Every mutating operation follows the same sequence: load the row, check the
relevant permission predicate against what was just loaded, apply a
conditional update that only lands if the row still matches that state, then
append an audit record. Operations return a ``Result`` instead of raising for
expected failures.
"""

import json
import logging
import secrets
import sqlite3
from datetime import datetime

from work_order_bot.core import audit
from work_order_bot.core import permissions
from work_order_bot.core.errors import (
    InvalidState,
    NotFound,
    PermissionDenied,
    ValidationError,
    as_result,
)
from work_order_bot.core.subsystems import get_subsystem, list_subsystems
from work_order_bot.core.users import get_user
from work_order_bot.db.models import (
    Actor,
    Assignment,
    AuditAction,
    Creation,
    FieldChanges,
    Priority,
    StatusChange,
    Status,
    WorkOrder,
)

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "description", "priority", "subsystem_id", "cad_link")


def _unique_id(db: sqlite3.Connection) -> str:
    """Generate a short opaque id that is not yet taken."""
    while True:
        candidate = secrets.token_hex(4)
        existing = db.execute(
            "SELECT id FROM work_orders WHERE id = ?", (candidate,)
        ).fetchone()
        if not existing:
            return candidate


# ── Reads ────────────────────────────────────────────────────────────────────


def get_work_order(db: sqlite3.Connection, work_order_id: str) -> WorkOrder | None:
    """Get a work order by id, with its subsystem attached. Removed rows are included."""
    row = db.execute(
        "SELECT * FROM work_orders WHERE id = ?", (work_order_id,)
    ).fetchone()
    if not row:
        return None
    work_order = _row_to_work_order(row)
    work_order.subsystem = get_subsystem(db, work_order.subsystem_id)
    return work_order


def list_work_orders(
    db: sqlite3.Connection,
    guild_id: str,
    status: str | None = Status.OPEN.value,
    limit: int | None = None,
    offset: int = 0,
) -> list[WorkOrder]:
    """List a guild's visible work orders, newest first. ``status=None`` lists every status."""
    query = "SELECT * FROM work_orders WHERE guild_id = ? AND is_deleted = 0"
    params: list = [guild_id]

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY created_at DESC, rowid DESC"
    if limit is not None:
        query += " LIMIT ? OFFSET ?"
        params.extend([limit, offset])

    rows = db.execute(query, params).fetchall()
    subsystems = {s.id: s for s in list_subsystems(db, guild_id)}
    work_orders = []
    for row in rows:
        work_order = _row_to_work_order(row)
        work_order.subsystem = subsystems.get(work_order.subsystem_id)
        work_orders.append(work_order)
    return work_orders


def attach_message(
    db: sqlite3.Connection,
    work_order_id: str,
    channel_id: str,
    message_id: str,
    thread_id: str | None = None,
) -> WorkOrder | None:
    """Remember where a work order's chat card was posted so it can be re-rendered."""
    db.execute(
        """UPDATE work_orders
           SET chat_channel_id = ?, chat_message_id = ?, chat_thread_id = COALESCE(?, chat_thread_id)
           WHERE id = ?""",
        (channel_id, message_id, thread_id, work_order_id),
    )
    db.commit()
    return get_work_order(db, work_order_id)


# ── Transitions ──────────────────────────────────────────────────────────────


@as_result("Failed to create work order")
def create_work_order(
    db: sqlite3.Connection,
    actor: Actor,
    title: str,
    subsystem_id,
    description: str = "",
    priority: str = Priority.MEDIUM.value,
    cad_link: str | None = None,
    notify_user_ids: list[str] | None = None,
    notify_role_ids: list[str] | None = None,
) -> WorkOrder:
    """Create a new OPEN work order owned by the actor."""
    title = _clean_title(title)
    description = _clean_description(description)
    priority = _parse_priority(priority or Priority.MEDIUM.value)
    cad_link = _clean_link(cad_link)
    notify_user_ids = _clean_mentions(notify_user_ids, "notify_user_ids")
    notify_role_ids = _clean_mentions(notify_role_ids, "notify_role_ids")
    if subsystem_id in (None, ""):
        raise ValidationError("Subsystem is required")
    subsystem = _guild_subsystem(db, actor.guild_id, subsystem_id)

    work_order_id = _unique_id(db)
    db.execute(
        """INSERT INTO work_orders
               (id, guild_id, title, description, subsystem_id, priority, created_by_user_id,
                cad_link, notify_user_ids, notify_role_ids)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            work_order_id,
            actor.guild_id,
            title,
            description,
            subsystem.id,
            priority,
            actor.user_id,
            cad_link,
            json.dumps(notify_user_ids),
            json.dumps(notify_role_ids),
        ),
    )
    db.commit()

    audit.log_action(
        db, actor.guild_id, work_order_id, actor.user_id, AuditAction.CREATE,
        Creation(title=title, subsystem_id=subsystem.id, priority=priority),
    )
    logger.info("Work order %s created by %s in guild %s", work_order_id, actor.user_id, actor.guild_id)
    return get_work_order(db, work_order_id)


@as_result("Failed to claim work order")
def claim_work_order(db: sqlite3.Connection, actor: Actor, work_order_id: str) -> WorkOrder:
    work_order = _load_active(db, work_order_id)
    _check(permissions.can_claim(actor.user_id, work_order))

    _conditional_update(
        db, work_order_id, {"claimed_by_user_id": actor.user_id},
        "status = 'OPEN' AND claimed_by_user_id IS NULL",
    )
    audit.log_action(db, work_order.guild_id, work_order_id, actor.user_id, AuditAction.CLAIM)
    logger.info("Work order %s claimed by %s", work_order_id, actor.user_id)
    return get_work_order(db, work_order_id)


@as_result("Failed to unclaim work order")
def unclaim_work_order(db: sqlite3.Connection, actor: Actor, work_order_id: str) -> WorkOrder:
    work_order = _load_active(db, work_order_id)
    _check(permissions.can_unclaim(actor.user_id, work_order, actor.is_admin))

    _conditional_update(
        db, work_order_id, {"claimed_by_user_id": None},
        "status = 'OPEN' AND claimed_by_user_id = ?", (work_order.claimed_by_user_id,),
    )
    audit.log_action(db, work_order.guild_id, work_order_id, actor.user_id, AuditAction.UNCLAIM)
    logger.info("Work order %s unclaimed by %s", work_order_id, actor.user_id)
    return get_work_order(db, work_order_id)


@as_result("Failed to finish work order")
def finish_work_order(db: sqlite3.Connection, actor: Actor, work_order_id: str) -> WorkOrder:
    work_order = _load_active(db, work_order_id)
    _check(permissions.can_finish(actor.user_id, work_order, actor.is_admin))

    _conditional_update(db, work_order_id, {"status": Status.DONE.value}, "status = 'OPEN'")
    audit.log_action(
        db, work_order.guild_id, work_order_id, actor.user_id, AuditAction.STATUS_CHANGE,
        StatusChange(from_status=Status.OPEN.value, to_status=Status.DONE.value),
    )
    logger.info("Work order %s finished by %s", work_order_id, actor.user_id)
    return get_work_order(db, work_order_id)


@as_result("Failed to cancel work order")
def cancel_work_order(db: sqlite3.Connection, actor: Actor, work_order_id: str) -> WorkOrder:
    work_order = _load_active(db, work_order_id)
    _check(permissions.can_cancel(actor.user_id, work_order, actor.is_admin))

    _conditional_update(db, work_order_id, {"status": Status.CANCELLED.value}, "status = 'OPEN'")
    audit.log_action(
        db, work_order.guild_id, work_order_id, actor.user_id, AuditAction.CANCEL,
        StatusChange(from_status=Status.OPEN.value, to_status=Status.CANCELLED.value),
    )
    logger.info("Work order %s cancelled by %s", work_order_id, actor.user_id)
    return get_work_order(db, work_order_id)


@as_result("Failed to assign work order")
def assign_work_order(
    db: sqlite3.Connection, actor: Actor, work_order_id: str, assignee_user_id: str
) -> WorkOrder:
    """Assign a work order to a user (admin only). Only open work orders can be assigned."""
    work_order = _load_active(db, work_order_id)
    _check(permissions.can_assign(actor.is_admin))
    if work_order.status != Status.OPEN.value:
        raise InvalidState(f"Work order is {work_order.status.lower()}, not open")
    if not assignee_user_id or not get_user(db, assignee_user_id):
        raise NotFound(f"User not found: {assignee_user_id}")

    _conditional_update(
        db, work_order_id, {"assigned_to_user_id": assignee_user_id}, "status = 'OPEN'"
    )
    audit.log_action(
        db, work_order.guild_id, work_order_id, actor.user_id, AuditAction.ASSIGN,
        Assignment(assigned_to=assignee_user_id, previous=work_order.assigned_to_user_id),
    )
    logger.info("Work order %s assigned to %s by %s", work_order_id, assignee_user_id, actor.user_id)
    return get_work_order(db, work_order_id)


@as_result("Failed to update work order")
def edit_work_order(
    db: sqlite3.Connection,
    actor: Actor,
    work_order_id: str,
    title: str | None = None,
    description: str | None = None,
    priority: str | None = None,
    subsystem_id=None,
    cad_link: str | None = None,
) -> WorkOrder:
    """Update the supplied fields of an open work order (creator or admin).

    ``None`` means "not supplied". An empty ``cad_link`` clears the link.
    """
    supplied = {
        "title": title,
        "description": description,
        "priority": priority,
        "subsystem_id": subsystem_id,
        "cad_link": cad_link,
    }
    updates = {k: v for k, v in supplied.items() if v is not None}
    if not updates:
        raise ValidationError("No changes provided. Specify at least one field to update.")

    work_order = _load_active(db, work_order_id)
    _check(permissions.can_edit(actor.user_id, work_order, actor.is_admin))
    if work_order.status != Status.OPEN.value:
        raise InvalidState(f"Work order is {work_order.status.lower()} and can no longer be edited")

    if "title" in updates:
        updates["title"] = _clean_title(updates["title"])
    if "description" in updates:
        updates["description"] = _clean_description(updates["description"])
    if "priority" in updates:
        updates["priority"] = _parse_priority(updates["priority"])
    if "subsystem_id" in updates:
        updates["subsystem_id"] = _guild_subsystem(db, work_order.guild_id, updates["subsystem_id"]).id
    if "cad_link" in updates:
        updates["cad_link"] = _clean_link(updates["cad_link"])

    changes = {
        k: {"from": getattr(work_order, k), "to": v}
        for k, v in updates.items()
        if getattr(work_order, k) != v
    }
    if not changes:
        return work_order

    _conditional_update(
        db, work_order_id, {k: updates[k] for k in changes}, "status = 'OPEN'"
    )
    audit.log_action(
        db, work_order.guild_id, work_order_id, actor.user_id, AuditAction.EDIT,
        FieldChanges(changes=changes),
    )
    logger.info("Work order %s edited by %s: %s", work_order_id, actor.user_id, ", ".join(changes))
    return get_work_order(db, work_order_id)


@as_result("Failed to remove work order")
def remove_work_order(db: sqlite3.Connection, actor: Actor, work_order_id: str) -> WorkOrder:
    """Soft-delete a single work order (admin only). It is not part of any recover batch."""
    work_order = get_work_order(db, work_order_id)
    if not work_order:
        raise NotFound("Work order not found")
    _check(permissions.can_remove(actor.is_admin))
    if work_order.is_deleted:
        raise InvalidState("This work order has already been removed")

    _conditional_update(db, work_order_id, {"is_deleted": 1})
    audit.log_action(db, work_order.guild_id, work_order_id, actor.user_id, AuditAction.REMOVE)
    logger.info("Work order %s removed by %s", work_order_id, actor.user_id)
    return get_work_order(db, work_order_id)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _load_active(db: sqlite3.Connection, work_order_id: str) -> WorkOrder:
    work_order = get_work_order(db, work_order_id)
    if not work_order:
        raise NotFound("Work order not found")
    if work_order.is_deleted:
        raise InvalidState("This work order has been removed")
    return work_order


def _check(decision: permissions.Decision):
    if decision:
        return
    if decision.denial == permissions.STATE:
        raise InvalidState(decision.reason)
    raise PermissionDenied(decision.reason)


def _conditional_update(
    db: sqlite3.Connection,
    work_order_id: str,
    updates: dict,
    condition: str | None = None,
    condition_params: tuple = (),
):
    """Apply ``updates`` only if the row is still visible and still matches ``condition``."""
    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    query = f"UPDATE work_orders SET {', '.join(set_parts)} WHERE id = ? AND is_deleted = 0"
    if condition:
        query += f" AND {condition}"
    params = list(updates.values()) + [work_order_id] + list(condition_params)

    cur = db.execute(query, params)
    if cur.rowcount == 0:
        db.rollback()
        raise InvalidState("This work order changed while you were working on it. Please try again.")
    db.commit()


def _clean_title(title: str | None) -> str:
    if title is not None and not isinstance(title, str):
        raise ValidationError("Title must be a string")
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required")
    return title


def _clean_description(description: str | None) -> str:
    if description is not None and not isinstance(description, str):
        raise ValidationError("Description must be a string")
    return (description or "").strip()


def _clean_mentions(ids, field_name: str) -> list[str]:
    if ids is None:
        return []
    if not isinstance(ids, (list, tuple)) or not all(isinstance(i, str) for i in ids):
        raise ValidationError(f"{field_name} must be a list of ids")
    return [i.strip() for i in ids if i.strip()]


def _parse_priority(value: str) -> str:
    try:
        return Priority(str(value).upper()).value
    except ValueError:
        raise ValidationError(f"Invalid priority: {value}. Use LOW, MEDIUM or HIGH.")


def _clean_link(link: str | None) -> str | None:
    if link is not None and not isinstance(link, str):
        raise ValidationError("CAD link must be a string")
    link = (link or "").strip()
    if not link:
        return None
    if not link.startswith(("http://", "https://")):
        raise ValidationError("CAD link must be an http(s) URL")
    return link


def _guild_subsystem(db: sqlite3.Connection, guild_id: str, subsystem_id):
    try:
        subsystem = get_subsystem(db, int(subsystem_id))
    except (TypeError, ValueError):
        subsystem = None
    if not subsystem or subsystem.guild_id != guild_id:
        raise ValidationError(f"Unknown subsystem: {subsystem_id}")
    return subsystem


def _row_to_work_order(row: sqlite3.Row) -> WorkOrder:
    return WorkOrder(
        id=row["id"],
        guild_id=row["guild_id"],
        title=row["title"],
        description=row["description"] or "",
        subsystem_id=row["subsystem_id"],
        priority=row["priority"],
        status=row["status"],
        created_by_user_id=row["created_by_user_id"],
        assigned_to_user_id=row["assigned_to_user_id"],
        claimed_by_user_id=row["claimed_by_user_id"],
        chat_message_id=row["chat_message_id"],
        chat_channel_id=row["chat_channel_id"],
        chat_thread_id=row["chat_thread_id"],
        is_deleted=bool(row["is_deleted"]),
        cleared_at=_parse_dt(row["cleared_at"]),
        cad_link=row["cad_link"],
        notify_user_ids=json.loads(row["notify_user_ids"] or "[]"),
        notify_role_ids=json.loads(row["notify_role_ids"] or "[]"),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
