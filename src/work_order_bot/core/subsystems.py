"""Subsystem (work order category) management and the autocomplete cache."""

import logging
import sqlite3
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime
from pathlib import Path

from work_order_bot.core.errors import InvalidState, NotFound, ValidationError
from work_order_bot.db.models import Subsystem

logger = logging.getLogger(__name__)

DEFAULT_SUBSYSTEMS = [
    ("MECH", "Mechanical", "\N{GEAR}", "#E67E22"),
    ("ELECTRICAL", "Electrical", "\N{HIGH VOLTAGE SIGN}", "#F1C40F"),
    ("SOFTWARE", "Software", "\N{PERSONAL COMPUTER}", "#3498DB"),
    ("GENERAL", "General", "\N{CLIPBOARD}", "#95A5A6"),
]

AUTOCOMPLETE_LIMIT = 25


def list_subsystems(db: sqlite3.Connection, guild_id: str) -> list[Subsystem]:
    """All subsystems for a guild, in display order."""
    rows = db.execute(
        "SELECT * FROM subsystems WHERE guild_id = ? ORDER BY sort_order ASC, id ASC",
        (guild_id,),
    ).fetchall()
    return [_row_to_subsystem(r) for r in rows]


def get_subsystem(db: sqlite3.Connection, subsystem_id) -> Subsystem | None:
    row = db.execute(
        "SELECT * FROM subsystems WHERE id = ?", (subsystem_id,)
    ).fetchone()
    return _row_to_subsystem(row) if row else None


def create_subsystem(
    db: sqlite3.Connection,
    guild_id: str,
    name: str,
    display_name: str,
    emoji: str = "",
    color: str = "#808080",
    sort_order: int | None = None,
) -> Subsystem:
    """Create a subsystem. New subsystems go to the end of the list unless a sort order is given."""
    name = (name or "").strip()
    display_name = (display_name or "").strip()
    if not name or not display_name:
        raise ValidationError("Subsystem name and display name are required")

    if sort_order is None:
        row = db.execute(
            "SELECT COALESCE(MAX(sort_order), -1) + 1 AS next FROM subsystems WHERE guild_id = ?",
            (guild_id,),
        ).fetchone()
        sort_order = row["next"]

    try:
        cur = db.execute(
            """INSERT INTO subsystems (guild_id, name, display_name, emoji, color, sort_order)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (guild_id, name, display_name, emoji or "", color or "#808080", sort_order),
        )
    except sqlite3.IntegrityError:
        db.rollback()
        raise ValidationError(f"Subsystem already exists: {name}")
    db.commit()
    return get_subsystem(db, cur.lastrowid)


def update_subsystem(db: sqlite3.Connection, subsystem_id, **kwargs) -> Subsystem:
    """Update subsystem fields. Fields passed as None are left alone."""
    subsystem = get_subsystem(db, subsystem_id)
    if not subsystem:
        raise NotFound(f"Subsystem not found: {subsystem_id}")

    allowed = {"name", "display_name", "emoji", "color", "sort_order"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    for key in ("name", "display_name"):
        if key in updates:
            updates[key] = str(updates[key]).strip()
            if not updates[key]:
                raise ValidationError(f"Subsystem {key.replace('_', ' ')} cannot be empty")
    if not updates:
        return subsystem

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [subsystem_id]
    try:
        db.execute(
            f"UPDATE subsystems SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
            values,
        )
    except sqlite3.IntegrityError:
        db.rollback()
        raise ValidationError(f"Subsystem already exists: {updates.get('name')}")
    db.commit()
    return get_subsystem(db, subsystem_id)


def delete_subsystem(db: sqlite3.Connection, subsystem_id) -> Subsystem:
    """Delete a subsystem. Rejected while any work order still references it."""
    subsystem = get_subsystem(db, subsystem_id)
    if not subsystem:
        raise NotFound(f"Subsystem not found: {subsystem_id}")
    try:
        db.execute("DELETE FROM subsystems WHERE id = ?", (subsystem_id,))
        db.commit()
    except sqlite3.IntegrityError:
        db.rollback()
        raise InvalidState(
            f"Subsystem '{subsystem.display_name}' is still used by work orders and cannot be deleted"
        )
    return subsystem


def reorder_subsystems(
    db: sqlite3.Connection, guild_id: str, ordered_ids: list[int]
) -> list[Subsystem]:
    """Rewrite sort orders so subsystems appear in ``ordered_ids`` order."""
    current = {s.id for s in list_subsystems(db, guild_id)}
    ids = [int(i) for i in ordered_ids]
    if len(ids) != len(set(ids)) or set(ids) != current:
        raise ValidationError("Reorder must list every subsystem of the guild exactly once")

    for position, subsystem_id in enumerate(ids):
        db.execute(
            "UPDATE subsystems SET sort_order = ?, updated_at = datetime('now') WHERE id = ?",
            (position, subsystem_id),
        )
    db.commit()
    return list_subsystems(db, guild_id)


def seed_default_subsystems(db: sqlite3.Connection, guild_id: str) -> list[Subsystem]:
    """Insert the default subsystems for a guild, skipping names that already exist."""
    for position, (name, display_name, emoji, color) in enumerate(DEFAULT_SUBSYSTEMS):
        db.execute(
            """INSERT OR IGNORE INTO subsystems (guild_id, name, display_name, emoji, color, sort_order)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (guild_id, name, display_name, emoji, color, position),
        )
    db.commit()
    return list_subsystems(db, guild_id)


def filter_subsystems(
    subsystems: list[Subsystem], query: str | None, limit: int = AUTOCOMPLETE_LIMIT
) -> list[Subsystem]:
    """Autocomplete filter: case-insensitive substring match on name or display name."""
    needle = (query or "").strip().lower()
    if not needle:
        return subsystems[:limit]
    matches = [
        s for s in subsystems
        if needle in s.display_name.lower() or needle in s.name.lower()
    ]
    return matches[:limit]


class SubsystemCache:
    """Per-guild subsystem lists for autocomplete.

    A fresh entry is served directly. Otherwise the loader runs on a worker
    thread and is waited on for at most ``timeout`` seconds; if it is slow or
    fails, the last cached list (or an empty list) is returned instead. At most
    one load per guild is in flight: callers arriving while it runs wait on
    the same load. A slow load that finishes later still refreshes the entry.
    """

    def __init__(self, loader, ttl: float = 60.0, timeout: float = 2.0, clock=time.monotonic):
        self.loader = loader
        self.ttl = ttl
        self.timeout = timeout
        self._clock = clock
        self._entries: dict[str, tuple[float, list[Subsystem]]] = {}
        self._pending: dict[str, Future] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="subsystem-cache")

    def get(self, guild_id: str) -> list[Subsystem]:
        with self._lock:
            entry = self._entries.get(guild_id)
            if entry and self._clock() - entry[0] < self.ttl:
                return entry[1]
            stale = entry[1] if entry else []
            future = self._pending.get(guild_id)
            started = future is None or future.done()
            if started:
                future = self._executor.submit(self.loader, guild_id)
                self._pending[guild_id] = future
        if started:
            future.add_done_callback(lambda f: self._finish(guild_id, f))

        try:
            subsystems = future.result(timeout=self.timeout)
        except FutureTimeout:
            logger.warning(
                "Subsystem load for guild %s exceeded %.1fs, serving cached list", guild_id, self.timeout
            )
            return stale
        except Exception:
            logger.warning("Subsystem load for guild %s failed, serving cached list", guild_id, exc_info=True)
            return stale

        with self._lock:
            if self._pending.get(guild_id) is future:
                del self._pending[guild_id]
            self._entries[guild_id] = (self._clock(), subsystems)
        return subsystems

    def invalidate(self, guild_id: str | None = None):
        with self._lock:
            if guild_id is None:
                self._entries.clear()
                self._pending.clear()
            else:
                self._entries.pop(guild_id, None)
                self._pending.pop(guild_id, None)

    def close(self):
        self._executor.shutdown(wait=False)

    def _finish(self, guild_id: str, future: Future):
        with self._lock:
            if self._pending.get(guild_id) is not future:
                return
            del self._pending[guild_id]
            if not future.cancelled() and future.exception() is None:
                self._entries[guild_id] = (self._clock(), future.result())


def db_loader(db_path: Path):
    """Build a cache loader that opens its own connection on the worker thread."""
    from work_order_bot.db.engine import get_db

    def load(guild_id: str) -> list[Subsystem]:
        with get_db(db_path) as db:
            return list_subsystems(db, guild_id)

    return load


def _row_to_subsystem(row: sqlite3.Row) -> Subsystem:
    return Subsystem(
        id=row["id"],
        guild_id=row["guild_id"],
        name=row["name"],
        display_name=row["display_name"],
        emoji=row["emoji"] or "",
        color=row["color"] or "#808080",
        sort_order=row["sort_order"] if row["sort_order"] is not None else 0,
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
