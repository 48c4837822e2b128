"""Data models for the work order tracker."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class Status(str, Enum):
    OPEN = "OPEN"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


class AuditAction(str, Enum):
    CREATE = "CREATE"
    EDIT = "EDIT"
    REMOVE = "REMOVE"
    ASSIGN = "ASSIGN"
    CLAIM = "CLAIM"
    UNCLAIM = "UNCLAIM"
    STATUS_CHANGE = "STATUS_CHANGE"
    CANCEL = "CANCEL"
    CLEAR = "CLEAR"
    RECOVER = "RECOVER"


class Role(str, Enum):
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


@dataclass
class Subsystem:
    id: int | None = None
    guild_id: str = ""
    name: str = ""
    display_name: str = ""
    emoji: str = ""
    color: str = "#808080"
    sort_order: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class WorkOrder:
    id: str
    guild_id: str
    title: str
    subsystem_id: int
    created_by_user_id: str
    description: str = ""
    priority: str = Priority.MEDIUM.value
    status: str = Status.OPEN.value
    assigned_to_user_id: str | None = None
    claimed_by_user_id: str | None = None
    chat_message_id: str | None = None
    chat_channel_id: str | None = None
    chat_thread_id: str | None = None
    is_deleted: bool = False
    cleared_at: datetime | None = None
    cad_link: str | None = None
    notify_user_ids: list[str] = field(default_factory=list)
    notify_role_ids: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    subsystem: Subsystem | None = None


@dataclass
class User:
    id: str
    external_id: str
    display_name: str
    avatar_url: str | None = None
    last_seen_at: datetime | None = None


@dataclass
class GuildConfig:
    guild_id: str
    admin_role_ids: list[str] = field(default_factory=list)
    member_role_ids: list[str] = field(default_factory=list)
    work_orders_channel_id: str | None = None
    timezone: str = "UTC"
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Actor:
    """Who is calling a lifecycle operation, resolved by the front-end."""

    user_id: str
    guild_id: str
    is_admin: bool = False
    external_id: str | None = None
    display_name: str | None = None


# ── Audit metadata ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class NoDetail:
    pass


@dataclass(frozen=True)
class Creation:
    title: str
    subsystem_id: int
    priority: str


@dataclass(frozen=True)
class FieldChanges:
    # field name -> {"from": old, "to": new}
    changes: dict


@dataclass(frozen=True)
class Assignment:
    assigned_to: str
    previous: str | None = None


@dataclass(frozen=True)
class StatusChange:
    from_status: str
    to_status: str


@dataclass(frozen=True)
class ClearMark:
    statuses: list
    cleared_at: str


@dataclass(frozen=True)
class Recovery:
    cleared_at: str | None = None


META_FOR_ACTION = {
    AuditAction.CREATE: Creation,
    AuditAction.EDIT: FieldChanges,
    AuditAction.REMOVE: NoDetail,
    AuditAction.ASSIGN: Assignment,
    AuditAction.CLAIM: NoDetail,
    AuditAction.UNCLAIM: NoDetail,
    AuditAction.STATUS_CHANGE: StatusChange,
    AuditAction.CANCEL: StatusChange,
    AuditAction.CLEAR: ClearMark,
    AuditAction.RECOVER: Recovery,
}


@dataclass
class AuditLog:
    id: int | None = None
    guild_id: str = ""
    work_order_id: str = ""
    actor_user_id: str = ""
    action: str = ""
    meta: object = field(default_factory=NoDetail)
    created_at: datetime | None = None
