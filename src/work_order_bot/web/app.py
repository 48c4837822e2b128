"""Web dashboard API and Slack callback endpoints."""

import contextlib
import functools
import json
import logging
from dataclasses import asdict, is_dataclass
from urllib.parse import parse_qs

import uvicorn
from slack_sdk.signature import SignatureVerifier
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, Response
from starlette.routing import Route

from work_order_bot.chat import handlers as chat
from work_order_bot.config import get_config
from work_order_bot.core import audit as audit_mod
from work_order_bot.core import guilds as guilds_mod
from work_order_bot.core import retention as retention_mod
from work_order_bot.core import subsystems as subsystems_mod
from work_order_bot.core import users as users_mod
from work_order_bot.core import workorders as wo_mod
from work_order_bot.core.errors import (
    ErrorKind,
    NotFound,
    PermissionDenied,
    TrackerError,
    ValidationError,
)
from work_order_bot.db.engine import init_db
from work_order_bot.db.models import Actor, Status
from work_order_bot.integrations import slack as slack_mod
from work_order_bot.web.dashboard import get_dashboard_html

logger = logging.getLogger(__name__)

PAGE_SIZE = 25

STATUS_CODES = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.VALIDATION: 400,
    ErrorKind.STORE_FAILURE: 500,
}

TRANSITIONS = {
    "claim": wo_mod.claim_work_order,
    "unclaim": wo_mod.unclaim_work_order,
    "finish": wo_mod.finish_work_order,
    "cancel": wo_mod.cancel_work_order,
    "remove": wo_mod.remove_work_order,
}


class Unauthorized(Exception):
    pass


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _api(handler):
    """Turn expected failures raised inside a handler into JSON error responses."""

    @functools.wraps(handler)
    async def wrapper(request: Request):
        try:
            return await handler(request)
        except Unauthorized as e:
            return JSONResponse({"error": str(e)}, status_code=401)
        except TrackerError as e:
            return JSONResponse({"error": e.message}, status_code=STATUS_CODES[e.kind])

    return wrapper


def _authenticate(request: Request, db, guild_id: str) -> Actor:
    """Resolve the dashboard caller from the identity headers set by the front proxy."""
    token = get_config().dashboard_token
    if token and request.headers.get("authorization") != f"Bearer {token}":
        raise Unauthorized("Invalid or missing dashboard token")

    external_id = request.headers.get("x-user-id")
    if not external_id:
        raise Unauthorized("Sign in required")
    return chat.resolve_actor(
        db, None, guild_id, external_id, request.headers.get("x-user-name"), role_ids=_roles(request)
    )


def _roles(request: Request) -> list[str]:
    return [r.strip() for r in request.headers.get("x-user-roles", "").split(",") if r.strip()]


def _require_admin(actor: Actor, what: str):
    if not actor.is_admin:
        raise PermissionDenied(f"Admin permission required to {what}")


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise ValidationError("Request body must be JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _result_response(result, serializer=None, status_code: int = 200):
    if not result.ok:
        return JSONResponse({"error": result.message}, status_code=STATUS_CODES[result.error])
    value = serializer(result.value) if serializer else result.value
    return JSONResponse(value, status_code=status_code)


def _load_work_order(db, work_order_id: str):
    work_order = wo_mod.get_work_order(db, work_order_id)
    if not work_order:
        raise NotFound("Work order not found")
    return work_order


def _load_subsystem(db, subsystem_id):
    try:
        subsystem = subsystems_mod.get_subsystem(db, int(subsystem_id))
    except ValueError:
        subsystem = None
    if not subsystem:
        raise NotFound(f"Subsystem not found: {subsystem_id}")
    return subsystem


# ── Handlers ──────────────────────────────────────────────────────────────────


async def index(request: Request):
    return HTMLResponse(get_dashboard_html())


@_api
async def api_get_config(request: Request):
    guild_id = request.path_params["guild_id"]
    db = _get_db()
    try:
        actor = _authenticate(request, db, guild_id)
        config = guilds_mod.get_guild_config(db, guild_id)
        if not config:
            raise NotFound("Guild is not configured")
        data = _config_dict(config)
        data["is_admin"] = actor.is_admin
        data["role"] = guilds_mod.resolve_role(_roles(request), config).value
        return JSONResponse(data)
    finally:
        db.close()


@_api
async def api_put_config(request: Request):
    guild_id = request.path_params["guild_id"]
    body = await _json_body(request)
    db = _get_db()
    try:
        actor = _authenticate(request, db, guild_id)
        # The first configuration has no admin roles to check against yet
        if guilds_mod.get_guild_config(db, guild_id):
            _require_admin(actor, "change the guild configuration")
        config = guilds_mod.upsert_guild_config(
            db,
            guild_id,
            admin_role_ids=body.get("admin_role_ids"),
            member_role_ids=body.get("member_role_ids"),
            work_orders_channel_id=body.get("work_orders_channel_id"),
            timezone=body.get("timezone"),
        )
        logger.info("Guild %s configuration updated by %s", guild_id, actor.user_id)
        return JSONResponse(_config_dict(config))
    finally:
        db.close()


@_api
async def api_list_subsystems(request: Request):
    guild_id = request.path_params["guild_id"]
    db = _get_db()
    try:
        _authenticate(request, db, guild_id)
        return JSONResponse([_subsystem_dict(s) for s in subsystems_mod.list_subsystems(db, guild_id)])
    finally:
        db.close()


@_api
async def api_create_subsystem(request: Request):
    guild_id = request.path_params["guild_id"]
    body = await _json_body(request)
    db = _get_db()
    try:
        actor = _authenticate(request, db, guild_id)
        _require_admin(actor, "manage subsystems")
        subsystem = subsystems_mod.create_subsystem(
            db,
            guild_id,
            body.get("name"),
            body.get("display_name"),
            emoji=body.get("emoji", ""),
            color=body.get("color", "#808080"),
        )
        request.app.state.subsystem_cache.invalidate(guild_id)
        return JSONResponse(_subsystem_dict(subsystem), status_code=201)
    finally:
        db.close()


@_api
async def api_reorder_subsystems(request: Request):
    guild_id = request.path_params["guild_id"]
    body = await _json_body(request)
    db = _get_db()
    try:
        actor = _authenticate(request, db, guild_id)
        _require_admin(actor, "manage subsystems")
        try:
            subsystems = subsystems_mod.reorder_subsystems(db, guild_id, body.get("order") or [])
        except (TypeError, ValueError):
            raise ValidationError("order must be a list of subsystem ids")
        request.app.state.subsystem_cache.invalidate(guild_id)
        return JSONResponse([_subsystem_dict(s) for s in subsystems])
    finally:
        db.close()


@_api
async def api_update_subsystem(request: Request):
    body = await _json_body(request)
    db = _get_db()
    try:
        subsystem = _load_subsystem(db, request.path_params["subsystem_id"])
        actor = _authenticate(request, db, subsystem.guild_id)
        _require_admin(actor, "manage subsystems")
        fields = {k: body.get(k) for k in ("name", "display_name", "emoji", "color") if k in body}
        subsystem = subsystems_mod.update_subsystem(db, subsystem.id, **fields)
        request.app.state.subsystem_cache.invalidate(subsystem.guild_id)
        return JSONResponse(_subsystem_dict(subsystem))
    finally:
        db.close()


@_api
async def api_delete_subsystem(request: Request):
    db = _get_db()
    try:
        subsystem = _load_subsystem(db, request.path_params["subsystem_id"])
        actor = _authenticate(request, db, subsystem.guild_id)
        _require_admin(actor, "manage subsystems")
        subsystems_mod.delete_subsystem(db, subsystem.id)
        request.app.state.subsystem_cache.invalidate(subsystem.guild_id)
        return JSONResponse({"deleted": subsystem.id})
    finally:
        db.close()


@_api
async def api_list_work_orders(request: Request):
    guild_id = request.path_params["guild_id"]
    status = request.query_params.get("status", Status.OPEN.value).upper()
    if status == "ALL":
        status = None
    elif status not in {s.value for s in Status}:
        raise ValidationError(f"Invalid status: {status}")
    try:
        page = max(int(request.query_params.get("page", "1")), 1)
    except ValueError:
        raise ValidationError("page must be a number")

    db = _get_db()
    try:
        _authenticate(request, db, guild_id)
        rows = wo_mod.list_work_orders(
            db, guild_id, status=status, limit=PAGE_SIZE + 1, offset=(page - 1) * PAGE_SIZE
        )
        names = _names(db, rows)
        return JSONResponse({
            "items": [_work_order_dict(wo, names) for wo in rows[:PAGE_SIZE]],
            "page": page,
            "page_size": PAGE_SIZE,
            "has_more": len(rows) > PAGE_SIZE,
        })
    finally:
        db.close()


@_api
async def api_create_work_order(request: Request):
    body = await _json_body(request)
    return await run_in_threadpool(_create_work_order, request, body)


def _create_work_order(request: Request, body: dict):
    guild_id = request.path_params["guild_id"]
    db = _get_db()
    try:
        actor = _authenticate(request, db, guild_id)
        result = wo_mod.create_work_order(
            db,
            actor,
            title=body.get("title"),
            subsystem_id=body.get("subsystem_id"),
            description=body.get("description"),
            priority=body.get("priority"),
            cad_link=body.get("cad_link"),
            notify_user_ids=body.get("notify_user_ids"),
            notify_role_ids=body.get("notify_role_ids"),
        )
        if result.ok:
            result.value = chat.publish_card(db, request.app.state.slack_client, result.value)
        return _result_response(result, lambda wo: _work_order_dict(wo, _names(db, [wo])), 201)
    finally:
        db.close()


@_api
async def api_get_work_order(request: Request):
    db = _get_db()
    try:
        work_order = _load_work_order(db, request.path_params["work_order_id"])
        _authenticate(request, db, work_order.guild_id)
        data = _work_order_dict(work_order, _names(db, [work_order]))
        data["history"] = [_audit_dict(a) for a in audit_mod.get_audit_log(db, work_order.id)]
        return JSONResponse(data)
    finally:
        db.close()


@_api
async def api_edit_work_order(request: Request):
    body = await _json_body(request)
    return await run_in_threadpool(_edit_work_order, request, body)


def _edit_work_order(request: Request, body: dict):
    db = _get_db()
    try:
        work_order = _load_work_order(db, request.path_params["work_order_id"])
        actor = _authenticate(request, db, work_order.guild_id)
        fields = {k: body[k] for k in wo_mod.EDITABLE_FIELDS if k in body and body[k] is not None}
        result = wo_mod.edit_work_order(db, actor, work_order.id, **fields)
        if result.ok:
            chat.refresh_card(db, request.app.state.slack_client, result.value)
        return _result_response(result, lambda wo: _work_order_dict(wo, _names(db, [wo])))
    finally:
        db.close()


@_api
async def api_transition(request: Request):
    action = request.path_params["action"]
    operation = TRANSITIONS.get(action)
    if not operation:
        raise NotFound(f"Unknown action: {action}")
    return await run_in_threadpool(_transition, request, operation)


def _transition(request: Request, operation):
    db = _get_db()
    try:
        work_order = _load_work_order(db, request.path_params["work_order_id"])
        actor = _authenticate(request, db, work_order.guild_id)
        result = operation(db, actor, work_order.id)
        if result.ok:
            chat.refresh_card(db, request.app.state.slack_client, result.value)
        return _result_response(result, lambda wo: _work_order_dict(wo, _names(db, [wo])))
    finally:
        db.close()


@_api
async def api_assign_work_order(request: Request):
    body = await _json_body(request)
    return await run_in_threadpool(_assign_work_order, request, body)


def _assign_work_order(request: Request, body: dict):
    db = _get_db()
    try:
        work_order = _load_work_order(db, request.path_params["work_order_id"])
        actor = _authenticate(request, db, work_order.guild_id)
        assignee_id = body.get("assignee_id")
        if not assignee_id and body.get("assignee_external_id"):
            user = users_mod.get_user_by_external_id(db, body["assignee_external_id"])
            if not user:
                raise NotFound(f"User not found: {body['assignee_external_id']}")
            assignee_id = user.id
        if not assignee_id:
            raise ValidationError("assignee_id or assignee_external_id is required")
        result = wo_mod.assign_work_order(db, actor, work_order.id, assignee_id)
        if result.ok:
            chat.refresh_card(db, request.app.state.slack_client, result.value)
        return _result_response(result, lambda wo: _work_order_dict(wo, _names(db, [wo])))
    finally:
        db.close()


@_api
async def api_clear(request: Request):
    guild_id = request.path_params["guild_id"]
    body = await _json_body(request)
    db = _get_db()
    try:
        actor = _authenticate(request, db, guild_id)
        result = retention_mod.clear_work_orders(db, actor, body.get("statuses") or [])
        if not result.ok:
            return _result_response(result)
        deadline = retention_mod.recovery_deadline(
            db, guild_id, request.app.state.config.recovery_window_hours
        )
        return JSONResponse({
            "cleared": result.value,
            "recoverable_until": deadline.isoformat() if deadline else None,
        })
    finally:
        db.close()


@_api
async def api_recover(request: Request):
    guild_id = request.path_params["guild_id"]
    db = _get_db()
    try:
        actor = _authenticate(request, db, guild_id)
        result = retention_mod.recover_work_orders(db, actor)
        return _result_response(result, lambda count: {"recovered": count})
    finally:
        db.close()


@_api
async def api_usage(request: Request):
    guild_id = request.path_params["guild_id"]
    db = _get_db()
    try:
        _authenticate(request, db, guild_id)
        return JSONResponse(audit_mod.usage_stats(db, guild_id))
    finally:
        db.close()


# ── Slack ─────────────────────────────────────────────────────────────────────


def _verify_slack(request: Request, body: bytes) -> bool:
    secret = get_config().slack_signing_secret
    if not secret:
        return True
    return SignatureVerifier(secret).is_valid_request(body, dict(request.headers))


def _form(body: bytes) -> dict:
    return {k: v[0] for k, v in parse_qs(body.decode("utf-8")).items()}


async def slack_commands(request: Request):
    body = await request.body()
    if not _verify_slack(request, body):
        return Response("invalid signature", status_code=401)
    reply = await run_in_threadpool(_dispatch_command, request.app.state, _form(body))
    return JSONResponse(reply) if reply else Response(status_code=200)


def _dispatch_command(state, form: dict) -> dict | None:
    db = _get_db()
    try:
        return chat.handle_command(db, state.slack_client, form, groups=state.user_groups)
    except Exception:
        logger.exception("Slash command failed")
        return {"response_type": "ephemeral", "text": "Something went wrong. Please try again."}
    finally:
        db.close()


async def slack_interactions(request: Request):
    body = await request.body()
    if not _verify_slack(request, body):
        return Response("invalid signature", status_code=401)
    try:
        payload = json.loads(_form(body).get("payload") or "{}")
    except json.JSONDecodeError:
        return Response("invalid payload", status_code=400)

    reply = await run_in_threadpool(_dispatch_interaction, request.app.state, payload)
    return JSONResponse(reply) if reply else Response(status_code=200)


def _dispatch_interaction(state, payload: dict) -> dict | None:
    db = _get_db()
    try:
        return chat.handle_interaction(
            db, state.slack_client, state.subsystem_cache, payload, groups=state.user_groups
        )
    except Exception:
        logger.exception("Interaction of type %s failed", payload.get("type"))
        return None
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _names(db, work_orders) -> dict[str, str]:
    ids = set()
    for wo in work_orders:
        ids.update([wo.created_by_user_id, wo.claimed_by_user_id, wo.assigned_to_user_id])
    return {uid: u.display_name for uid, u in users_mod.get_users(db, ids).items()}


def _work_order_dict(wo, names: dict | None = None) -> dict:
    names = names or {}
    return {
        "id": wo.id,
        "guild_id": wo.guild_id,
        "title": wo.title,
        "description": wo.description,
        "priority": wo.priority,
        "status": wo.status,
        "display_status": slack_mod.display_status(wo),
        "subsystem_id": wo.subsystem_id,
        "subsystem": _subsystem_dict(wo.subsystem) if wo.subsystem else None,
        "created_by_user_id": wo.created_by_user_id,
        "created_by": names.get(wo.created_by_user_id),
        "claimed_by_user_id": wo.claimed_by_user_id,
        "claimed_by": names.get(wo.claimed_by_user_id),
        "assigned_to_user_id": wo.assigned_to_user_id,
        "assigned_to": names.get(wo.assigned_to_user_id),
        "cad_link": wo.cad_link,
        "notify_user_ids": wo.notify_user_ids,
        "notify_role_ids": wo.notify_role_ids,
        "is_deleted": wo.is_deleted,
        "chat_channel_id": wo.chat_channel_id,
        "chat_message_id": wo.chat_message_id,
        "created_at": wo.created_at.isoformat() if wo.created_at else None,
        "updated_at": wo.updated_at.isoformat() if wo.updated_at else None,
    }


def _subsystem_dict(s) -> dict:
    return {
        "id": s.id,
        "guild_id": s.guild_id,
        "name": s.name,
        "display_name": s.display_name,
        "emoji": s.emoji,
        "color": s.color,
        "sort_order": s.sort_order,
    }


def _config_dict(c) -> dict:
    return {
        "guild_id": c.guild_id,
        "admin_role_ids": c.admin_role_ids,
        "member_role_ids": c.member_role_ids,
        "work_orders_channel_id": c.work_orders_channel_id,
        "timezone": c.timezone,
        "updated_at": c.updated_at.isoformat() if c.updated_at else None,
    }


def _audit_dict(a) -> dict:
    return {
        "id": a.id,
        "action": a.action,
        "actor_user_id": a.actor_user_id,
        "meta": asdict(a.meta) if is_dataclass(a.meta) else a.meta,
        "created_at": a.created_at.isoformat() if a.created_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(slack_client=None, subsystem_cache=None, user_groups=None) -> Starlette:
    config = get_config()
    if user_groups is None:
        user_groups = slack_mod.UserGroupCache(ttl=config.user_group_cache_ttl)
    if slack_client is None:
        slack_client = slack_mod.get_client(config.slack_bot_token)
    if subsystem_cache is None:
        subsystem_cache = subsystems_mod.SubsystemCache(
            subsystems_mod.db_loader(config.db_path),
            ttl=config.subsystem_cache_ttl,
            timeout=config.subsystem_cache_timeout,
        )

    routes = [
        Route("/", index),
        Route("/api/guilds/{guild_id}/config", api_get_config, methods=["GET"]),
        Route("/api/guilds/{guild_id}/config", api_put_config, methods=["PUT"]),
        Route("/api/guilds/{guild_id}/subsystems", api_list_subsystems, methods=["GET"]),
        Route("/api/guilds/{guild_id}/subsystems", api_create_subsystem, methods=["POST"]),
        Route("/api/guilds/{guild_id}/subsystems/order", api_reorder_subsystems, methods=["PUT"]),
        Route("/api/subsystems/{subsystem_id}", api_update_subsystem, methods=["PATCH"]),
        Route("/api/subsystems/{subsystem_id}", api_delete_subsystem, methods=["DELETE"]),
        Route("/api/guilds/{guild_id}/workorders", api_list_work_orders, methods=["GET"]),
        Route("/api/guilds/{guild_id}/workorders", api_create_work_order, methods=["POST"]),
        Route("/api/guilds/{guild_id}/clear", api_clear, methods=["POST"]),
        Route("/api/guilds/{guild_id}/recover", api_recover, methods=["POST"]),
        Route("/api/guilds/{guild_id}/usage", api_usage, methods=["GET"]),
        Route("/api/workorders/{work_order_id}", api_get_work_order, methods=["GET"]),
        Route("/api/workorders/{work_order_id}", api_edit_work_order, methods=["PATCH"]),
        Route("/api/workorders/{work_order_id}/assign", api_assign_work_order, methods=["POST"]),
        Route("/api/workorders/{work_order_id}/{action}", api_transition, methods=["POST"]),
        Route("/slack/commands", slack_commands, methods=["POST"]),
        Route("/slack/interactions", slack_interactions, methods=["POST"]),
    ]

    @contextlib.asynccontextmanager
    async def lifespan(app):
        yield
        subsystem_cache.close()

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.config = config
    app.state.slack_client = slack_client
    app.state.subsystem_cache = subsystem_cache
    app.state.user_groups = user_groups
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
