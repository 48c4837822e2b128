"""Slack slash commands, button clicks, modal submissions and autocomplete.

Handlers receive the decoded Slack payload, resolve the caller to an Actor and
delegate to the lifecycle operations. Nothing here decides who may do what;
failures reported by the core are passed back to the user as they are.
"""

import json
import logging
import re
import sqlite3

from slack_sdk.errors import SlackApiError

from work_order_bot.core import guilds as guilds_mod
from work_order_bot.core import permissions
from work_order_bot.core import subsystems as subsystems_mod
from work_order_bot.core import users as users_mod
from work_order_bot.core import workorders as wo_mod
from work_order_bot.core.errors import ErrorKind
from work_order_bot.db.models import Actor, WorkOrder
from work_order_bot.integrations import slack as slack_mod

logger = logging.getLogger(__name__)

TRANSITIONS = {
    "claim": (wo_mod.claim_work_order, "claimed"),
    "unclaim": (wo_mod.unclaim_work_order, "unclaimed"),
    "finish": (wo_mod.finish_work_order, "marked as done"),
    "cancel": (wo_mod.cancel_work_order, "cancelled"),
    "remove": (wo_mod.remove_work_order, "removed"),
}

MENTION_RE = re.compile(r"^<@([A-Z0-9]+)(?:\|([^>]*))?>$")

HELP_TEXT = "\n".join([
    "*Work order commands*",
    "`/wo create` open the form for a new work order",
    "`/wo edit <id>` edit a work order you created",
    "`/wo claim <id>` take a work order",
    "`/wo unclaim <id>` release a work order you claimed",
    "`/wo finish <id>` mark a claimed work order as done",
    "`/wo cancel <id>` cancel an open work order",
    "`/wo assign <id> @user` assign a work order (admins)",
    "`/wo remove <id>` remove a work order (admins)",
    "`/wo list` show unfinished work orders",
])


# ── Identity ─────────────────────────────────────────────────────────────────


def resolve_actor(
    db: sqlite3.Connection,
    client,
    guild_id: str,
    external_id: str,
    display_name: str | None = None,
    role_ids: list[str] | None = None,
    groups: slack_mod.UserGroupCache | None = None,
) -> Actor:
    """Map a Slack user to an Actor, looking up their user groups when roles are not given.

    Lookups go through ``groups`` when a shared cache is supplied.
    """
    user = users_mod.upsert_user(db, external_id, display_name or external_id)
    if role_ids is None:
        if groups is not None:
            role_ids = groups.group_ids(client, external_id)
        else:
            role_ids = slack_mod.get_user_group_ids(client, external_id) if client else []
    config = guilds_mod.get_guild_config(db, guild_id)
    return Actor(
        user_id=user.id,
        guild_id=guild_id,
        is_admin=guilds_mod.is_admin(role_ids, config),
        external_id=external_id,
        display_name=user.display_name,
    )


def user_names(db: sqlite3.Connection, work_orders: list[WorkOrder]) -> dict[str, str]:
    """Internal user id -> Slack mention for everyone shown on the given cards."""
    ids = set()
    for wo in work_orders:
        ids.update([wo.created_by_user_id, wo.claimed_by_user_id, wo.assigned_to_user_id])
    return {uid: f"<@{u.external_id}>" for uid, u in users_mod.get_users(db, ids).items()}


def refresh_card(db: sqlite3.Connection, client, work_order: WorkOrder) -> bool:
    if not client or not work_order:
        return False
    return slack_mod.update_card(client, work_order, user_names(db, [work_order]))


def publish_card(
    db: sqlite3.Connection, client, work_order: WorkOrder, fallback_channel: str | None = None
) -> WorkOrder:
    """Post a new card to the guild's work order channel (or ``fallback_channel``) and remember it."""
    if not client:
        return work_order
    config = guilds_mod.get_guild_config(db, work_order.guild_id)
    channel = (config.work_orders_channel_id if config else None) or fallback_channel
    if not channel:
        logger.warning("No channel to post work order %s to", work_order.id)
        return work_order
    message = slack_mod.post_card(client, channel, work_order, user_names(db, [work_order]))
    if not message:
        return work_order
    return wo_mod.attach_message(db, work_order.id, message.channel, message.ts)


# ── Slash commands ───────────────────────────────────────────────────────────


def handle_command(db: sqlite3.Connection, client, form: dict, groups=None) -> dict | None:
    """Handle ``/wo <subcommand> ...``.

    Returns the ephemeral response body, or None once a modal has been opened.
    """
    words = (form.get("text") or "").split()
    if not words or words[0].lower() == "help":
        return _reply(HELP_TEXT)

    subcommand, args = words[0].lower(), words[1:]
    guild_id = form.get("team_id", "")
    channel_id = form.get("channel_id")
    actor = resolve_actor(
        db, client, guild_id, form.get("user_id", ""), form.get("user_name"), groups=groups
    )

    if subcommand == "create":
        return _open_view(client, form.get("trigger_id"), slack_mod.create_modal(channel_id))

    if subcommand == "list":
        work_orders = wo_mod.list_work_orders(db, guild_id)
        return {
            "response_type": "ephemeral",
            "text": "Unfinished work orders",
            "blocks": slack_mod.format_work_order_list(work_orders, user_names(db, work_orders)),
        }

    if subcommand not in TRANSITIONS and subcommand not in ("edit", "assign"):
        return _reply(f"Unknown command `{subcommand}`.\n\n{HELP_TEXT}")
    if not args:
        return _reply(f"Usage: `/wo {subcommand} <id>`")
    work_order_id = args[0]

    if subcommand == "edit":
        work_order = wo_mod.get_work_order(db, work_order_id)
        if not work_order or work_order.is_deleted or work_order.guild_id != guild_id:
            return _reply("Work order not found")
        decision = permissions.can_edit(actor.user_id, work_order, actor.is_admin)
        if not decision:
            return _reply(decision.reason)
        return _open_view(client, form.get("trigger_id"), slack_mod.edit_modal(work_order, channel_id))

    if not _in_guild(db, work_order_id, guild_id):
        return _reply("Work order not found")

    if subcommand == "assign":
        if len(args) < 2:
            return _reply("Usage: `/wo assign <id> @user`")
        assignee = _resolve_mention(db, args[1])
        if not assignee:
            return _reply(f"Could not find user {args[1]}")
        result = wo_mod.assign_work_order(db, actor, work_order_id, assignee.id)
        if not result.ok:
            return _reply(result.message)
        refresh_card(db, client, result.work_order)
        return _reply(f"Work order `{work_order_id}` assigned to <@{assignee.external_id}>.")

    operation, verb = TRANSITIONS[subcommand]
    result = operation(db, actor, work_order_id)
    if not result.ok:
        return _reply(result.message)
    refresh_card(db, client, result.work_order)
    return _reply(f"Work order `{work_order_id}` {verb}.")


# ── Interactions ─────────────────────────────────────────────────────────────


def handle_interaction(db: sqlite3.Connection, client, cache, payload: dict, groups=None) -> dict | None:
    """Dispatch an interaction payload. Returns a response body, or None for an empty 200."""
    kind = payload.get("type")
    if kind == "block_actions":
        handle_block_actions(db, client, payload, groups)
        return None
    if kind == "view_submission":
        return handle_view_submission(db, client, payload, groups)
    if kind == "block_suggestion":
        return handle_block_suggestion(cache, payload)
    logger.debug("Ignoring interaction of type %s", kind)
    return None


def handle_block_actions(db: sqlite3.Connection, client, payload: dict, groups=None):
    """A button on a card was clicked: run the transition and re-render that card."""
    guild_id = _team_id(payload)
    user = payload.get("user", {})
    channel_id = (payload.get("channel") or {}).get("id")
    actor = resolve_actor(
        db, client, guild_id, user.get("id", ""), user.get("username") or user.get("name"), groups=groups
    )

    for action in payload.get("actions", []):
        transition = TRANSITIONS.get(action.get("action_id"))
        if not transition:
            continue
        work_order_id = action.get("value")
        if not _in_guild(db, work_order_id, guild_id):
            _notify(client, channel_id, user.get("id"), "Work order not found")
            continue

        operation, _ = transition
        result = operation(db, actor, work_order_id)
        if not result.ok:
            _notify(client, channel_id, user.get("id"), result.message)
            continue

        work_order = result.work_order
        container = payload.get("container") or {}
        if not work_order.chat_message_id and container.get("message_ts") and channel_id:
            work_order = wo_mod.attach_message(db, work_order.id, channel_id, container["message_ts"])
        refresh_card(db, client, work_order)


def handle_view_submission(db: sqlite3.Connection, client, payload: dict, groups=None) -> dict | None:
    view = payload.get("view", {})
    callback_id = view.get("callback_id")
    metadata = json.loads(view.get("private_metadata") or "{}")
    values = modal_values(view)
    guild_id = _team_id(payload)
    user = payload.get("user", {})
    actor = resolve_actor(
        db, client, guild_id, user.get("id", ""), user.get("username") or user.get("name"), groups=groups
    )

    if callback_id == "wo_create":
        result = wo_mod.create_work_order(
            db,
            actor,
            title=values.get("title"),
            subsystem_id=values.get("subsystem"),
            description=values.get("description") or "",
            priority=values.get("priority"),
            cad_link=values.get("cad_link"),
            notify_user_ids=values.get("notify_users") or [],
        )
        if not result.ok:
            return _modal_errors(result)
        publish_card(db, client, result.work_order, metadata.get("channel_id"))
        return None

    if callback_id == "wo_edit":
        work_order = wo_mod.get_work_order(db, metadata.get("work_order_id"))
        if not work_order or work_order.guild_id != guild_id:
            return {"response_action": "errors", "errors": {"title": "Work order not found"}}
        changes = changed_fields(work_order, values)
        if not changes:
            return None
        result = wo_mod.edit_work_order(db, actor, work_order.id, **changes)
        if not result.ok:
            return _modal_errors(result)
        refresh_card(db, client, result.work_order)
        return None

    logger.warning("Unknown modal callback %s", callback_id)
    return None


def handle_block_suggestion(cache, payload: dict) -> dict:
    """Options for the subsystem picker, filtered by what the user typed."""
    guild_id = _team_id(payload)
    subsystems = cache.get(guild_id) if cache else []
    matches = subsystems_mod.filter_subsystems(subsystems, payload.get("value"))
    return slack_mod.subsystem_options(matches)


# ── Modal helpers ────────────────────────────────────────────────────────────


def modal_values(view: dict) -> dict:
    """Flatten ``view.state.values`` into block_id -> submitted value."""
    values = {}
    for block_id, actions in (view.get("state", {}).get("values") or {}).items():
        for element in actions.values():
            kind = element.get("type")
            if kind in ("static_select", "external_select"):
                option = element.get("selected_option")
                values[block_id] = option["value"] if option else None
            elif kind == "multi_users_select":
                values[block_id] = element.get("selected_users") or []
            else:
                values[block_id] = element.get("value")
    return values


def changed_fields(work_order: WorkOrder, values: dict) -> dict:
    """Only the edit-form fields whose submitted value differs from the stored one."""
    changes = {}
    title = (values.get("title") or "").strip()
    if title != work_order.title:
        changes["title"] = title
    description = values.get("description") or ""
    if description != (work_order.description or ""):
        changes["description"] = description
    priority = values.get("priority")
    if priority and priority != work_order.priority:
        changes["priority"] = priority
    subsystem = values.get("subsystem")
    if subsystem and str(subsystem) != str(work_order.subsystem_id):
        changes["subsystem_id"] = subsystem
    cad_link = (values.get("cad_link") or "").strip()
    if cad_link != (work_order.cad_link or ""):
        # Empty string clears the link
        changes["cad_link"] = cad_link
    return changes


def _modal_errors(result) -> dict:
    if result.error == ErrorKind.VALIDATION:
        block = _field_for(result.message)
    else:
        block = "title"
    return {"response_action": "errors", "errors": {block: result.message}}


def _field_for(message: str) -> str:
    lowered = message.lower()
    if "subsystem" in lowered:
        return "subsystem"
    if "priority" in lowered:
        return "priority"
    if "cad" in lowered:
        return "cad_link"
    return "title"


# ── Misc ─────────────────────────────────────────────────────────────────────


def _reply(text: str) -> dict:
    return {"response_type": "ephemeral", "text": text}


def _open_view(client, trigger_id: str | None, view: dict) -> dict | None:
    if not client or not trigger_id:
        return _reply("Slack is not configured for this workspace.")
    try:
        client.views_open(trigger_id=trigger_id, view=view)
    except SlackApiError:
        logger.exception("Failed to open %s modal", view.get("callback_id"))
        return _reply("Could not open the form. Please try again.")
    return None


def _notify(client, channel_id: str | None, user_id: str | None, text: str):
    if client and channel_id and user_id:
        slack_mod.send_ephemeral(client, channel_id, user_id, text)


def _team_id(payload: dict) -> str:
    team = payload.get("team") or {}
    return team.get("id") or (payload.get("user") or {}).get("team_id", "")


def _in_guild(db: sqlite3.Connection, work_order_id: str | None, guild_id: str) -> bool:
    if not work_order_id:
        return False
    work_order = wo_mod.get_work_order(db, work_order_id)
    return work_order is not None and work_order.guild_id == guild_id


def _resolve_mention(db: sqlite3.Connection, text: str):
    """Turn ``<@U123|name>`` (or a bare Slack user id) into a stored user, creating it if needed."""
    match = MENTION_RE.match(text.strip())
    if match:
        external_id, name = match.group(1), match.group(2)
    elif re.fullmatch(r"[UW][A-Z0-9]+", text.strip()):
        external_id, name = text.strip(), None
    else:
        return None
    existing = users_mod.get_user_by_external_id(db, external_id)
    if existing:
        return existing
    return users_mod.upsert_user(db, external_id, name or external_id)
