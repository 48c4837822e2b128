"""User identity mapping between the chat platform and internal ids."""

import sqlite3
import uuid
from datetime import datetime

from work_order_bot.db.models import User


def upsert_user(
    db: sqlite3.Connection,
    external_id: str,
    display_name: str,
    avatar_url: str | None = None,
) -> User:
    """Get or create a user keyed by their chat platform id, refreshing name and last seen."""
    db.execute(
        """INSERT INTO users (id, external_id, display_name, avatar_url)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(external_id) DO UPDATE SET
               display_name = excluded.display_name,
               avatar_url = COALESCE(excluded.avatar_url, users.avatar_url),
               last_seen_at = datetime('now')""",
        (uuid.uuid4().hex, external_id, display_name or external_id, avatar_url),
    )
    db.commit()
    return get_user_by_external_id(db, external_id)


def get_user(db: sqlite3.Connection, user_id: str) -> User | None:
    row = db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    return _row_to_user(row) if row else None


def get_user_by_external_id(db: sqlite3.Connection, external_id: str) -> User | None:
    row = db.execute(
        "SELECT * FROM users WHERE external_id = ?", (external_id,)
    ).fetchone()
    return _row_to_user(row) if row else None


def get_users(db: sqlite3.Connection, user_ids) -> dict[str, User]:
    """Look up several users at once, keyed by internal id. Unknown ids are skipped."""
    ids = [i for i in set(user_ids) if i]
    if not ids:
        return {}
    placeholders = ", ".join("?" for _ in ids)
    rows = db.execute(
        f"SELECT * FROM users WHERE id IN ({placeholders})", ids
    ).fetchall()
    return {r["id"]: _row_to_user(r) for r in rows}


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        external_id=row["external_id"],
        display_name=row["display_name"],
        avatar_url=row["avatar_url"],
        last_seen_at=_parse_dt(row["last_seen_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
