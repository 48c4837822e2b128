"""Append-only audit log and the usage statistics built from it."""

import json
import logging
import sqlite3
from dataclasses import asdict
from datetime import datetime

from work_order_bot.db.models import META_FOR_ACTION, AuditAction, AuditLog, NoDetail

logger = logging.getLogger(__name__)


def log_action(
    db: sqlite3.Connection,
    guild_id: str,
    work_order_id: str,
    actor_user_id: str,
    action: AuditAction,
    meta=None,
) -> bool:
    """Append one audit record. Best effort: store errors are logged and swallowed.

    Returns True if the record was written.
    """
    action = AuditAction(action)
    if meta is None:
        meta = NoDetail()
    expected = META_FOR_ACTION[action]
    if not isinstance(meta, expected):
        raise TypeError(
            f"{action.value} audit records take {expected.__name__}, got {type(meta).__name__}"
        )

    try:
        db.execute(
            """INSERT INTO audit_logs (guild_id, work_order_id, actor_user_id, action, meta)
               VALUES (?, ?, ?, ?, ?)""",
            (guild_id, work_order_id, actor_user_id, action.value, json.dumps(asdict(meta))),
        )
        db.commit()
        return True
    except sqlite3.Error:
        logger.exception(
            "Failed to write %s audit record for work order %s", action.value, work_order_id
        )
        return False


def get_audit_log(db: sqlite3.Connection, work_order_id: str) -> list[AuditLog]:
    """History of a work order, oldest first."""
    rows = db.execute(
        "SELECT * FROM audit_logs WHERE work_order_id = ? ORDER BY created_at ASC, id ASC",
        (work_order_id,),
    ).fetchall()
    return [_row_to_audit(r) for r in rows]


def usage_stats(db: sqlite3.Connection, guild_id: str) -> list[dict]:
    """Per-user claim and completion counts for a guild, most completions first."""
    rows = db.execute(
        """SELECT a.actor_user_id AS user_id,
                  u.display_name AS display_name,
                  SUM(CASE WHEN a.action = 'STATUS_CHANGE' THEN 1 ELSE 0 END) AS completed_count,
                  SUM(CASE WHEN a.action = 'CLAIM' THEN 1 ELSE 0 END) AS claimed_count
           FROM audit_logs a
           LEFT JOIN users u ON u.id = a.actor_user_id
           WHERE a.guild_id = ? AND a.action IN ('CLAIM', 'STATUS_CHANGE')
           GROUP BY a.actor_user_id
           ORDER BY completed_count DESC, claimed_count DESC""",
        (guild_id,),
    ).fetchall()
    return [
        {
            "user_id": r["user_id"],
            "display_name": r["display_name"] or r["user_id"][:8] + "...",
            "completed_count": r["completed_count"],
            "claimed_count": r["claimed_count"],
        }
        for r in rows
    ]


def _row_to_audit(row: sqlite3.Row) -> AuditLog:
    action = AuditAction(row["action"])
    data = json.loads(row["meta"] or "{}")
    try:
        meta = META_FOR_ACTION[action](**data)
    except TypeError:
        # Written by an older schema; keep the raw payload
        meta = data
    return AuditLog(
        id=row["id"],
        guild_id=row["guild_id"],
        work_order_id=row["work_order_id"],
        actor_user_id=row["actor_user_id"],
        action=action.value,
        meta=meta,
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
