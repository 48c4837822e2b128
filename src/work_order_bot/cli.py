"""CLI entry point for the work order bot."""

import json
import logging
import sys

import click

from work_order_bot.config import get_config
from work_order_bot.core import audit as audit_mod
from work_order_bot.core import guilds as guilds_mod
from work_order_bot.core import retention as retention_mod
from work_order_bot.core import subsystems as subsystems_mod
from work_order_bot.core import users as users_mod
from work_order_bot.core import workorders as wo_mod
from work_order_bot.core.errors import TrackerError
from work_order_bot.db.engine import get_db
from work_order_bot.integrations import slack as slack_mod


def _get_db():
    config = get_config()
    return get_db(config.db_path)


@click.group()
def main():
    """wo - Work Order Bot CLI"""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the dashboard and the Slack callback endpoints."""
    from work_order_bot.web.app import run_server

    click.echo(f"Serving on http://{host}:{port}")
    run_server(host=host, port=port)


# ── Guild Commands ────────────────────────────────────────────────────────────


@main.group("guild")
def guild_group():
    """Manage workspace configuration."""
    pass


@guild_group.command("configure")
@click.argument("guild_id")
@click.option("--admin-role", "admin_roles", multiple=True, help="User group ID with admin rights (repeatable)")
@click.option("--member-role", "member_roles", multiple=True, help="User group ID for members (repeatable)")
@click.option("--channel", default=None, help="Channel where new work orders are posted")
@click.option("--timezone", default=None, help="Timezone used for display")
def guild_configure(guild_id, admin_roles, member_roles, channel, timezone):
    """Create or update a workspace's configuration."""
    with _get_db() as db:
        try:
            config = guilds_mod.upsert_guild_config(
                db,
                guild_id,
                admin_role_ids=list(admin_roles) if admin_roles else None,
                member_role_ids=list(member_roles) if member_roles else None,
                work_orders_channel_id=channel,
                timezone=timezone,
            )
        except TrackerError as e:
            click.echo(f"Error: {e.message}", err=True)
            sys.exit(1)
        _echo_config(config)


@guild_group.command("show")
@click.argument("guild_id")
def guild_show(guild_id):
    """Show a workspace's configuration."""
    with _get_db() as db:
        config = guilds_mod.get_guild_config(db, guild_id)
        if not config:
            click.echo(f"Guild not configured: {guild_id}", err=True)
            sys.exit(1)
        _echo_config(config)


def _echo_config(config):
    click.echo(f"Guild: {config.guild_id}")
    click.echo(f"  Admin roles: {', '.join(config.admin_role_ids) or '(none)'}")
    click.echo(f"  Member roles: {', '.join(config.member_role_ids) or '(none)'}")
    click.echo(f"  Channel: {config.work_orders_channel_id or '(not set)'}")
    click.echo(f"  Timezone: {config.timezone}")


# ── Subsystem Commands ────────────────────────────────────────────────────────


@main.group("subsystem")
def subsystem_group():
    """Manage subsystems."""
    pass


@subsystem_group.command("seed")
@click.argument("guild_id")
def subsystem_seed(guild_id):
    """Add the default subsystems to a workspace."""
    with _get_db() as db:
        subsystems = subsystems_mod.seed_default_subsystems(db, guild_id)
        click.echo(f"{len(subsystems)} subsystems configured for {guild_id}")


@subsystem_group.command("list")
@click.argument("guild_id")
def subsystem_list(guild_id):
    """List a workspace's subsystems in display order."""
    with _get_db() as db:
        subsystems = subsystems_mod.list_subsystems(db, guild_id)
        if not subsystems:
            click.echo("No subsystems found.")
            return
        for s in subsystems:
            click.echo(f"  {s.id}: {s.emoji} {s.display_name} ({s.name}) {s.color}")


@subsystem_group.command("add")
@click.argument("guild_id")
@click.argument("name")
@click.argument("display_name")
@click.option("--emoji", default="", help="Emoji shown next to the subsystem")
@click.option("--color", default="#808080", help="Hex colour")
def subsystem_add(guild_id, name, display_name, emoji, color):
    """Add a subsystem."""
    with _get_db() as db:
        try:
            s = subsystems_mod.create_subsystem(db, guild_id, name, display_name, emoji, color)
        except TrackerError as e:
            click.echo(f"Error: {e.message}", err=True)
            sys.exit(1)
        click.echo(f"Created subsystem: {s.id} ({s.display_name})")


# ── Work Order Commands ───────────────────────────────────────────────────────


@main.command("list")
@click.argument("guild_id")
@click.option(
    "--status",
    type=click.Choice(["OPEN", "DONE", "CANCELLED", "ALL"], case_sensitive=False),
    default="OPEN",
    show_default=True,
)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def list_command(guild_id, status, json_output):
    """List work orders."""
    status = status.upper()
    with _get_db() as db:
        work_orders = wo_mod.list_work_orders(db, guild_id, status=None if status == "ALL" else status)

        if json_output:
            click.echo(json.dumps([_work_order_dict(wo) for wo in work_orders], indent=2))
            return

        if not work_orders:
            click.echo("No work orders found.")
            return

        status_icons = {"OPEN": "○", "DONE": "✓", "CANCELLED": "✗"}
        for wo in work_orders:
            icon = status_icons.get(wo.status, "?")
            claimed = " [claimed]" if wo.claimed_by_user_id else ""
            sub = wo.subsystem.display_name if wo.subsystem else "?"
            click.echo(f"  {icon} {wo.priority:<6} {wo.id}: {wo.title} ({sub}){claimed}")


@main.command("show")
@click.argument("work_order_id")
def show_command(work_order_id):
    """Show a work order and its history."""
    with _get_db() as db:
        wo = wo_mod.get_work_order(db, work_order_id)
        if not wo:
            click.echo(f"Work order not found: {work_order_id}", err=True)
            sys.exit(1)

        users = users_mod.get_users(
            db, [wo.created_by_user_id, wo.claimed_by_user_id, wo.assigned_to_user_id]
        )

        def name(user_id):
            return users[user_id].display_name if user_id in users else user_id

        click.echo(f"Work order: {wo.id}")
        click.echo(f"  Title: {wo.title}")
        click.echo(f"  Status: {slack_mod.display_status(wo)}")
        click.echo(f"  Priority: {wo.priority}")
        if wo.subsystem:
            click.echo(f"  Subsystem: {wo.subsystem.display_name}")
        click.echo(f"  Created by: {name(wo.created_by_user_id)}")
        if wo.claimed_by_user_id:
            click.echo(f"  Claimed by: {name(wo.claimed_by_user_id)}")
        if wo.assigned_to_user_id:
            click.echo(f"  Assigned to: {name(wo.assigned_to_user_id)}")
        if wo.description:
            click.echo(f"  Description: {wo.description}")
        if wo.cad_link:
            click.echo(f"  CAD: {wo.cad_link}")

        history = audit_mod.get_audit_log(db, wo.id)
        if history:
            click.echo("  History:")
            for entry in history:
                ts = entry.created_at.strftime("%Y-%m-%d %H:%M") if entry.created_at else ""
                click.echo(f"    {ts} {entry.action}")


@main.command("usage")
@click.argument("guild_id")
def usage_command(guild_id):
    """Show completed and claimed counts per member."""
    with _get_db() as db:
        stats = audit_mod.usage_stats(db, guild_id)
        if not stats:
            click.echo("No activity yet.")
            return
        for row in stats:
            click.echo(
                f"  {row['display_name']}: {row['completed_count']} completed, "
                f"{row['claimed_count']} claimed"
            )


@main.command("sweep")
@click.option("--hours", default=None, type=int, help="Recovery window in hours")
def sweep_command(hours):
    """Hard-delete cleared work orders whose recovery window has passed."""
    config = get_config()
    window = hours if hours is not None else config.recovery_window_hours
    with _get_db() as db:
        purged = retention_mod.purge_expired(db, window_hours=window)
        click.echo(f"Purged {purged} work orders")


# ── Slack Commands ────────────────────────────────────────────────────────────


@main.group("slack")
def slack_group():
    """Slack integration commands."""
    pass


@slack_group.command("send")
@click.argument("channel")
@click.argument("message")
def slack_send(channel, message):
    """Send a message to a Slack channel."""
    config = get_config()
    try:
        result = slack_mod.send_message(config.slack_bot_token, channel, message)
        click.echo(f"Message sent to {result.channel} (ts: {result.ts})")
    except slack_mod.SlackError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@slack_group.command("post")
@click.argument("work_order_id")
@click.option("--channel", default=None, help="Channel to post to (defaults to the workspace channel)")
def slack_post(work_order_id, channel):
    """Post a fresh card for a work order and remember where it went."""
    from work_order_bot.chat.handlers import user_names

    config = get_config()
    client = slack_mod.get_client(config.slack_bot_token)
    if not client:
        click.echo("Error: Slack not configured: SLACK_BOT_TOKEN not set", err=True)
        sys.exit(1)

    with _get_db() as db:
        wo = wo_mod.get_work_order(db, work_order_id)
        if not wo:
            click.echo(f"Work order not found: {work_order_id}", err=True)
            sys.exit(1)
        if not channel:
            guild_config = guilds_mod.get_guild_config(db, wo.guild_id)
            channel = guild_config.work_orders_channel_id if guild_config else None
        if not channel:
            click.echo("No channel specified and no channel configured for the workspace.", err=True)
            sys.exit(1)

        message = slack_mod.post_card(client, channel, wo, user_names(db, [wo]))
        if not message:
            click.echo("Error: Slack rejected the card", err=True)
            sys.exit(1)
        wo_mod.attach_message(db, wo.id, message.channel, message.ts)
        click.echo(f"Card posted to {message.channel} (ts: {message.ts})")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _work_order_dict(wo) -> dict:
    return {
        "id": wo.id,
        "title": wo.title,
        "status": wo.status,
        "priority": wo.priority,
        "subsystem": wo.subsystem.name if wo.subsystem else None,
        "description": wo.description,
        "claimed_by": wo.claimed_by_user_id,
        "assigned_to": wo.assigned_to_user_id,
        "cad_link": wo.cad_link,
        "created_at": wo.created_at.isoformat() if wo.created_at else None,
    }


if __name__ == "__main__":
    main()
