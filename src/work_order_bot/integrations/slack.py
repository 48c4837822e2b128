"""Slack Web API integration: work order cards, lists, modals and transport."""

import json
import logging
import threading
import time
from dataclasses import dataclass

from slack_sdk.errors import SlackApiError

from work_order_bot.db.models import Priority, Status, WorkOrder

logger = logging.getLogger(__name__)

PRIORITY_EMOJIS = {
    Priority.HIGH.value: ":red_circle:",
    Priority.MEDIUM.value: ":large_yellow_circle:",
    Priority.LOW.value: ":large_green_circle:",
}

PRIORITY_LABELS = {
    Priority.HIGH.value: "High",
    Priority.MEDIUM.value: "Medium",
    Priority.LOW.value: "Low",
}

PRIORITY_COLORS = {
    Priority.HIGH.value: "#E74C3C",
    Priority.MEDIUM.value: "#F39C12",
    Priority.LOW.value: "#2ECC71",
}

DONE_COLOR = "#00AA00"
CANCELLED_COLOR = "#808080"
REMOVED_COLOR = "#FF0000"

LIST_LIMIT = 10


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def send_ephemeral(client, channel: str, user: str, text: str):
    """Reply privately to one user. Failures are logged, not raised."""
    try:
        client.chat_postEphemeral(channel=channel, user=user, text=text)
    except SlackApiError:
        logger.exception("Failed to send ephemeral message to %s in %s", user, channel)


# ── Card rendering ───────────────────────────────────────────────────────────


def display_status(work_order: WorkOrder) -> str:
    if work_order.is_deleted:
        return "Removed"
    if work_order.status == Status.DONE.value:
        return "Done"
    if work_order.status == Status.CANCELLED.value:
        return "Cancelled"
    if work_order.claimed_by_user_id:
        return "In Progress"
    return "Open"


def card_color(work_order: WorkOrder) -> str:
    if work_order.is_deleted:
        return REMOVED_COLOR
    if work_order.status == Status.DONE.value:
        return DONE_COLOR
    if work_order.status == Status.CANCELLED.value:
        return CANCELLED_COLOR
    return PRIORITY_COLORS.get(work_order.priority, PRIORITY_COLORS[Priority.MEDIUM.value])


def card_buttons(work_order: WorkOrder) -> list[dict]:
    """Buttons for the transitions that are currently possible on a card.

    Who may press them is checked when the click arrives.
    """
    if work_order.is_deleted or work_order.status != Status.OPEN.value:
        return []

    buttons = []
    if not work_order.claimed_by_user_id:
        buttons.append(_button("Claim", "claim", work_order.id, style="primary"))
    else:
        buttons.append(_button("Unclaim", "unclaim", work_order.id))
        buttons.append(_button("Mark Done", "finish", work_order.id, style="primary"))

    cancel = _button("Cancel", "cancel", work_order.id, style="danger")
    cancel["confirm"] = {
        "title": {"type": "plain_text", "text": "Cancel work order?"},
        "text": {"type": "mrkdwn", "text": f"*{work_order.title}* will be marked as cancelled."},
        "confirm": {"type": "plain_text", "text": "Cancel it"},
        "deny": {"type": "plain_text", "text": "Keep it"},
    }
    buttons.append(cancel)
    return buttons


def format_work_order_card(work_order: WorkOrder, names: dict[str, str] | None = None) -> dict:
    """Render a work order as a Slack message payload (text + coloured attachment).

    ``names`` maps internal user ids to how they should be shown, usually a
    ``<@U123>`` mention.
    """
    names = names or {}
    subsystem = work_order.subsystem
    emoji = subsystem.emoji if subsystem else ""
    label = subsystem.display_name if subsystem else "Unknown"
    priority_label = PRIORITY_LABELS.get(work_order.priority, work_order.priority)
    priority_emoji = PRIORITY_EMOJIS.get(work_order.priority, "")
    heading = f"{emoji} [{label}] {work_order.title}".strip()

    fields = [
        _field("Status", display_status(work_order)),
        _field("Priority", f"{priority_emoji} {priority_label}".strip()),
        _field("Subsystem", f"{emoji} {label}".strip()),
        _field("Created By", names.get(work_order.created_by_user_id, "Unknown")),
    ]
    if work_order.claimed_by_user_id:
        fields.append(_field("Claimed By", names.get(work_order.claimed_by_user_id, "Unknown")))
    if work_order.assigned_to_user_id:
        fields.append(_field("Assigned To", names.get(work_order.assigned_to_user_id, "Unknown")))

    blocks = [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"*{heading}*\n{work_order.description or '_No description provided_'}",
            },
        },
        {"type": "section", "fields": fields},
    ]

    if work_order.cad_link:
        blocks.append(_text_section(f"*CAD Link:* <{work_order.cad_link}|Open CAD>"))
    if work_order.status == Status.CANCELLED.value:
        blocks.append(_text_section("*Cancelled:* This work order has been cancelled."))
    if work_order.is_deleted:
        blocks.append(_text_section("*Removed:* This work order has been removed by an admin."))

    blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": f"ID: `{work_order.id}`"}]})

    buttons = card_buttons(work_order)
    if buttons:
        blocks.append({"type": "actions", "block_id": f"wo-{work_order.id}", "elements": buttons})

    return {
        "text": f"Work order: {work_order.title} ({display_status(work_order)})",
        "attachments": [{"color": card_color(work_order), "blocks": blocks}],
    }


def format_work_order_list(
    work_orders: list[WorkOrder],
    names: dict[str, str] | None = None,
    limit: int = LIST_LIMIT,
) -> list[dict]:
    """Render open work orders as blocks grouped by priority, highest first, at most ``limit`` entries."""
    names = names or {}
    if not work_orders:
        return [_text_section("No unfinished work orders found.")]

    blocks = [{"type": "header", "text": {"type": "plain_text", "text": "Unfinished Work Orders"}}]
    shown = 0
    for priority in (Priority.HIGH.value, Priority.MEDIUM.value, Priority.LOW.value):
        group = [wo for wo in work_orders if wo.priority == priority]
        if not group or shown >= limit:
            continue
        lines = []
        for wo in group[: limit - shown]:
            label = wo.subsystem.display_name if wo.subsystem else "Unknown"
            line = f"• *{wo.title}* ({label}) `{wo.id}`"
            if wo.claimed_by_user_id:
                line += f" · claimed by {names.get(wo.claimed_by_user_id, 'Unknown')}"
            lines.append(line)
        shown += len(lines)
        heading = f"{PRIORITY_EMOJIS[priority]} *{PRIORITY_LABELS[priority]}* ({len(group)})"
        blocks.append(_text_section(heading + "\n" + "\n".join(lines)))

    remaining = len(work_orders) - shown
    if remaining > 0:
        blocks.append({
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": f"... and {remaining} more. View all in the dashboard."}],
        })
    return blocks


def mention_text(user_ids: list[str] | None, group_ids: list[str] | None) -> str:
    """Mentions for the people and user groups to notify about a new card."""
    mentions = [f"<@{u}>" for u in user_ids or []]
    mentions += [f"<!subteam^{g}>" for g in group_ids or []]
    return " ".join(mentions)


# ── Transport ────────────────────────────────────────────────────────────────


def post_card(client, channel: str, work_order: WorkOrder, names: dict[str, str] | None = None) -> SlackMessage | None:
    """Post a work order card. Returns None (after logging) if Slack rejects it."""
    payload = format_work_order_card(work_order, names)
    mentions = mention_text(work_order.notify_user_ids, work_order.notify_role_ids)
    text = f"{mentions} {payload['text']}" if mentions else payload["text"]
    try:
        response = client.chat_postMessage(
            channel=channel,
            text=text,
            attachments=payload["attachments"],
            thread_ts=work_order.chat_thread_id,
        )
    except SlackApiError:
        logger.exception("Failed to post card for work order %s to %s", work_order.id, channel)
        return None
    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def update_card(client, work_order: WorkOrder, names: dict[str, str] | None = None) -> bool:
    """Re-render a previously posted card in place. Missing references or Slack errors return False."""
    if not work_order.chat_message_id or not work_order.chat_channel_id:
        return False
    payload = format_work_order_card(work_order, names)
    try:
        client.chat_update(
            channel=work_order.chat_channel_id,
            ts=work_order.chat_message_id,
            text=payload["text"],
            attachments=payload["attachments"],
        )
    except SlackApiError:
        # The message may have been deleted by a moderator
        logger.warning("Failed to update card for work order %s", work_order.id, exc_info=True)
        return False
    return True


def get_user_group_ids(client, user_id: str) -> list[str]:
    """Ids of the Slack user groups a user belongs to. These play the part of guild roles."""
    try:
        response = client.usergroups_list(include_users=True)
    except SlackApiError:
        logger.warning("Could not list user groups for %s", user_id, exc_info=True)
        return []
    return [g["id"] for g in response.get("usergroups", []) if user_id in (g.get("users") or [])]


class UserGroupCache:
    """Workspace user group membership, fetched at most once per ``ttl`` seconds.

    ``usergroups.list`` is rate limited, so every caller in the process shares
    one membership snapshot. A failed refresh keeps serving the previous one.
    """

    def __init__(self, ttl: float = 60.0, clock=time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._members: dict[str, set[str]] | None = None
        self._loaded_at = 0.0
        self._lock = threading.Lock()

    def group_ids(self, client, user_id: str) -> list[str]:
        if not client:
            return []
        with self._lock:
            if self._members is None or self._clock() - self._loaded_at >= self.ttl:
                self._refresh(client)
            members = self._members or {}
        return [group_id for group_id, users in members.items() if user_id in users]

    def invalidate(self):
        with self._lock:
            self._members = None

    def _refresh(self, client):
        try:
            response = client.usergroups_list(include_users=True)
        except SlackApiError:
            logger.warning("Could not refresh user groups, keeping the previous list", exc_info=True)
            return
        self._members = {g["id"]: set(g.get("users") or []) for g in response.get("usergroups", [])}
        self._loaded_at = self._clock()


# ── Modals ───────────────────────────────────────────────────────────────────


def create_modal(channel_id: str | None) -> dict:
    return {
        "type": "modal",
        "callback_id": "wo_create",
        "private_metadata": json.dumps({"channel_id": channel_id}),
        "title": {"type": "plain_text", "text": "New Work Order"},
        "submit": {"type": "plain_text", "text": "Create"},
        "blocks": [
            _input("title", "Title", {"type": "plain_text_input", "action_id": "value"}),
            _input("subsystem", "Subsystem", _subsystem_select()),
            _input("priority", "Priority", _priority_select(Priority.MEDIUM.value), optional=True),
            _input(
                "description", "Description",
                {"type": "plain_text_input", "action_id": "value", "multiline": True},
                optional=True,
            ),
            _input("cad_link", "CAD Link", {"type": "url_text_input", "action_id": "value"}, optional=True),
            _input(
                "notify_users", "Notify",
                {"type": "multi_users_select", "action_id": "value"},
                optional=True,
            ),
        ],
    }


def edit_modal(work_order: WorkOrder, channel_id: str | None) -> dict:
    subsystem_select = _subsystem_select()
    if work_order.subsystem:
        subsystem_select["initial_option"] = _option(
            work_order.subsystem.display_name, str(work_order.subsystem.id)
        )
    cad_input = {"type": "url_text_input", "action_id": "value"}
    if work_order.cad_link:
        cad_input["initial_value"] = work_order.cad_link

    return {
        "type": "modal",
        "callback_id": "wo_edit",
        "private_metadata": json.dumps({"work_order_id": work_order.id, "channel_id": channel_id}),
        "title": {"type": "plain_text", "text": "Edit Work Order"},
        "submit": {"type": "plain_text", "text": "Save"},
        "blocks": [
            _input(
                "title", "Title",
                {"type": "plain_text_input", "action_id": "value", "initial_value": work_order.title},
            ),
            _input("subsystem", "Subsystem", subsystem_select),
            _input("priority", "Priority", _priority_select(work_order.priority)),
            _input(
                "description", "Description",
                {
                    "type": "plain_text_input", "action_id": "value", "multiline": True,
                    "initial_value": work_order.description or "",
                },
                optional=True,
            ),
            _input("cad_link", "CAD Link", cad_input, optional=True),
        ],
    }


def subsystem_options(subsystems) -> dict:
    """Response body for an external-select options request."""
    return {
        "options": [
            _option(f"{s.emoji} {s.display_name}".strip(), str(s.id)) for s in subsystems
        ]
    }


def _subsystem_select() -> dict:
    return {
        "type": "external_select",
        "action_id": "value",
        "placeholder": {"type": "plain_text", "text": "Start typing to search"},
        "min_query_length": 0,
    }


def _priority_select(initial: str) -> dict:
    options = [_option(PRIORITY_LABELS[p.value], p.value) for p in Priority]
    return {
        "type": "static_select",
        "action_id": "value",
        "options": options,
        "initial_option": _option(PRIORITY_LABELS.get(initial, "Medium"), initial),
    }


def _input(block_id: str, label: str, element: dict, optional: bool = False) -> dict:
    return {
        "type": "input",
        "block_id": block_id,
        "label": {"type": "plain_text", "text": label},
        "element": element,
        "optional": optional,
    }


def _option(text: str, value: str) -> dict:
    return {"text": {"type": "plain_text", "text": text[:75]}, "value": value}


def _button(text: str, action_id: str, value: str, style: str | None = None) -> dict:
    button = {
        "type": "button",
        "text": {"type": "plain_text", "text": text},
        "action_id": action_id,
        "value": value,
    }
    if style:
        button["style"] = style
    return button


def _field(name: str, value: str) -> dict:
    return {"type": "mrkdwn", "text": f"*{name}*\n{value}"}


def _text_section(text: str) -> dict:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}
