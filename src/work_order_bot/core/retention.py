"""Bulk clear, recover and the hard-delete sweep.

A bulk clear soft-deletes a batch of work orders and stamps them with one
``cleared_at`` timestamp. Until the scheduled sweep purges them, an admin can
recover every cleared row of the guild at once.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone

from work_order_bot.core import audit
from work_order_bot.core.errors import PermissionDenied, ValidationError, as_result
from work_order_bot.db.models import Actor, AuditAction, ClearMark, Recovery, Status

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_HOURS = 24


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def _format_ts(value: datetime) -> str:
    # Same layout as SQLite's datetime('now') so string comparison orders correctly
    return value.strftime("%Y-%m-%d %H:%M:%S")


@as_result("Failed to clear work orders")
def clear_work_orders(
    db: sqlite3.Connection,
    actor: Actor,
    statuses: list[str],
    now: datetime | None = None,
) -> int:
    """Soft-delete every visible work order in the actor's guild with one of ``statuses``.

    Returns the number of rows cleared.
    """
    if not actor.is_admin:
        raise PermissionDenied("Admin permission required to clear work orders")
    selected = _parse_statuses(statuses)
    cleared_at = _format_ts(now or utc_now())

    placeholders = ", ".join("?" for _ in selected)
    rows = db.execute(
        f"""SELECT id FROM work_orders
            WHERE guild_id = ? AND is_deleted = 0 AND status IN ({placeholders})""",
        [actor.guild_id, *selected],
    ).fetchall()
    ids = [r["id"] for r in rows]
    if not ids:
        return 0

    id_placeholders = ", ".join("?" for _ in ids)
    db.execute(
        f"""UPDATE work_orders
            SET is_deleted = 1, cleared_at = ?, updated_at = datetime('now')
            WHERE is_deleted = 0 AND id IN ({id_placeholders})""",
        [cleared_at, *ids],
    )
    db.commit()

    for work_order_id in ids:
        audit.log_action(
            db, actor.guild_id, work_order_id, actor.user_id, AuditAction.CLEAR,
            ClearMark(statuses=selected, cleared_at=cleared_at),
        )
    logger.info(
        "Cleared %d work orders (%s) in guild %s by %s",
        len(ids), ", ".join(selected), actor.guild_id, actor.user_id,
    )
    return len(ids)


@as_result("Failed to recover work orders")
def recover_work_orders(db: sqlite3.Connection, actor: Actor) -> int:
    """Restore every cleared work order in the actor's guild, across all clear batches."""
    if not actor.is_admin:
        raise PermissionDenied("Admin permission required to recover work orders")

    rows = db.execute(
        "SELECT id, cleared_at FROM work_orders WHERE guild_id = ? AND cleared_at IS NOT NULL",
        (actor.guild_id,),
    ).fetchall()
    if not rows:
        return 0

    db.execute(
        """UPDATE work_orders
           SET is_deleted = 0, cleared_at = NULL, updated_at = datetime('now')
           WHERE guild_id = ? AND cleared_at IS NOT NULL""",
        (actor.guild_id,),
    )
    db.commit()

    for row in rows:
        audit.log_action(
            db, actor.guild_id, row["id"], actor.user_id, AuditAction.RECOVER,
            Recovery(cleared_at=row["cleared_at"]),
        )
    logger.info("Recovered %d work orders in guild %s by %s", len(rows), actor.guild_id, actor.user_id)
    return len(rows)


def recovery_deadline(
    db: sqlite3.Connection, guild_id: str, window_hours: int = DEFAULT_WINDOW_HOURS
) -> datetime | None:
    """When the most recent clear batch of a guild stops being recoverable, if any is pending."""
    row = db.execute(
        "SELECT MAX(cleared_at) AS latest FROM work_orders WHERE guild_id = ? AND cleared_at IS NOT NULL",
        (guild_id,),
    ).fetchone()
    if not row or row["latest"] is None:
        return None
    return datetime.fromisoformat(row["latest"]) + timedelta(hours=window_hours)


def purge_expired(
    db: sqlite3.Connection,
    window_hours: int = DEFAULT_WINDOW_HOURS,
    now: datetime | None = None,
) -> int:
    """Hard-delete cleared work orders whose recovery window has elapsed. Returns rows deleted.

    Meant for the scheduled sweep job only; audit history is kept.
    """
    cutoff = _format_ts((now or utc_now()) - timedelta(hours=window_hours))
    cur = db.execute(
        "DELETE FROM work_orders WHERE cleared_at IS NOT NULL AND cleared_at < ?",
        (cutoff,),
    )
    db.commit()
    if cur.rowcount:
        logger.info("Purged %d cleared work orders older than %s", cur.rowcount, cutoff)
    return cur.rowcount


def _parse_statuses(statuses) -> list[str]:
    if not statuses:
        raise ValidationError("Select at least one status to clear")
    selected = []
    for value in statuses:
        try:
            status = Status(str(value).upper()).value
        except ValueError:
            raise ValidationError(f"Invalid status: {value}")
        if status not in selected:
            selected.append(status)
    return selected
