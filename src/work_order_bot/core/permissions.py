"""Permission predicates for work order transitions.

All predicates are pure: they look only at the user, the work order as it was
just loaded, and an admin flag resolved elsewhere (see ``core.guilds``). A
denial says whether it was caused by the work order's state or by the actor,
so callers can report InvalidState and PermissionDenied separately.
"""

from dataclasses import dataclass

from work_order_bot.db.models import Status, WorkOrder

STATE = "state"
PERMISSION = "permission"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None
    denial: str | None = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)


def _state(reason: str) -> Decision:
    return Decision(False, reason, STATE)


def _permission(reason: str) -> Decision:
    return Decision(False, reason, PERMISSION)


def _require_open(work_order: WorkOrder) -> Decision | None:
    if work_order.status != Status.OPEN.value:
        return _state(f"Work order is {work_order.status.lower()}, not open")
    return None


def can_claim(user_id: str, work_order: WorkOrder) -> Decision:
    if denied := _require_open(work_order):
        return denied
    if work_order.claimed_by_user_id == user_id:
        return _state("You already claimed this work order")
    if work_order.claimed_by_user_id:
        return _state("Already claimed by another user")
    return ALLOW


def can_unclaim(user_id: str, work_order: WorkOrder, is_admin: bool) -> Decision:
    if denied := _require_open(work_order):
        return denied
    if not work_order.claimed_by_user_id:
        return _state("Work order is not claimed")
    if work_order.claimed_by_user_id != user_id and not is_admin:
        return _permission("You can only unclaim your own work orders")
    return ALLOW


def can_finish(user_id: str, work_order: WorkOrder, is_admin: bool) -> Decision:
    if denied := _require_open(work_order):
        return denied
    if (
        work_order.claimed_by_user_id == user_id
        or work_order.assigned_to_user_id == user_id
        or is_admin
    ):
        return ALLOW
    return _permission(
        "Only the person who claimed it, the assignee or an admin can finish this work order"
    )


def can_edit(user_id: str, work_order: WorkOrder, is_admin: bool) -> Decision:
    if work_order.created_by_user_id == user_id or is_admin:
        return ALLOW
    return _permission("You do not have permission to edit this work order")


def can_assign(is_admin: bool) -> Decision:
    return ALLOW if is_admin else _permission("Admin permission required to assign work orders")


def can_remove(is_admin: bool) -> Decision:
    return ALLOW if is_admin else _permission("Admin permission required to remove work orders")


def can_cancel(user_id: str, work_order: WorkOrder, is_admin: bool) -> Decision:
    if denied := _require_open(work_order):
        return denied
    if work_order.created_by_user_id == user_id or is_admin:
        return ALLOW
    return _permission("Only the creator or an admin can cancel this work order")
