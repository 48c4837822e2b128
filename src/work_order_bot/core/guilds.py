"""Guild configuration and role resolution."""

import json
import sqlite3
from datetime import datetime

from work_order_bot.core.errors import ValidationError
from work_order_bot.db.models import GuildConfig, Role


def get_guild_config(db: sqlite3.Connection, guild_id: str) -> GuildConfig | None:
    row = db.execute(
        "SELECT * FROM guild_configs WHERE guild_id = ?", (guild_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_config(row)


def upsert_guild_config(
    db: sqlite3.Connection,
    guild_id: str,
    admin_role_ids: list[str] | None = None,
    member_role_ids: list[str] | None = None,
    work_orders_channel_id: str | None = None,
    timezone: str | None = None,
) -> GuildConfig:
    """Create or replace a guild's configuration.

    Role lists are stripped of blanks and duplicates. Omitted fields keep their
    current value when the guild is already configured.
    """
    guild_id = (guild_id or "").strip()
    if not guild_id:
        raise ValidationError("Guild ID is required")

    for name, value in (("work_orders_channel_id", work_orders_channel_id), ("timezone", timezone)):
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{name} must be a string")

    current = get_guild_config(db, guild_id) or GuildConfig(guild_id=guild_id)
    admins = _clean_ids(admin_role_ids, "admin_role_ids") if admin_role_ids is not None else current.admin_role_ids
    members = _clean_ids(member_role_ids, "member_role_ids") if member_role_ids is not None else current.member_role_ids
    channel = (
        (work_orders_channel_id or "").strip() or None
        if work_orders_channel_id is not None
        else current.work_orders_channel_id
    )
    tz = timezone or current.timezone

    db.execute(
        """INSERT INTO guild_configs
               (guild_id, admin_role_ids, member_role_ids, work_orders_channel_id, timezone)
           VALUES (?, ?, ?, ?, ?)
           ON CONFLICT(guild_id) DO UPDATE SET
               admin_role_ids = excluded.admin_role_ids,
               member_role_ids = excluded.member_role_ids,
               work_orders_channel_id = excluded.work_orders_channel_id,
               timezone = excluded.timezone,
               updated_at = datetime('now')""",
        (guild_id, json.dumps(admins), json.dumps(members), channel, tz),
    )
    db.commit()
    return get_guild_config(db, guild_id)


def is_admin(role_ids, config: GuildConfig | None) -> bool:
    """True if any of the actor's role ids is one of the guild's admin roles."""
    if not config or not role_ids:
        return False
    admin_roles = set(config.admin_role_ids)
    return any(role in admin_roles for role in role_ids)


def resolve_role(role_ids, config: GuildConfig | None) -> Role:
    if is_admin(role_ids, config):
        return Role.ADMIN
    return Role.MEMBER


def _clean_ids(ids, field_name: str) -> list[str]:
    if not isinstance(ids, (list, tuple)):
        raise ValidationError(f"{field_name} must be a list of role ids")
    seen = []
    for i in ids:
        i = str(i).strip()
        if i and i not in seen:
            seen.append(i)
    return seen


def _row_to_config(row: sqlite3.Row) -> GuildConfig:
    return GuildConfig(
        guild_id=row["guild_id"],
        admin_role_ids=json.loads(row["admin_role_ids"] or "[]"),
        member_role_ids=json.loads(row["member_role_ids"] or "[]"),
        work_orders_channel_id=row["work_orders_channel_id"],
        timezone=row["timezone"] or "UTC",
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
