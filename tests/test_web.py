"""Tests for the web dashboard API and the Slack endpoints."""

import asyncio
import json
import os
import tempfile
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from slack_sdk.signature import SignatureVerifier
from starlette.testclient import TestClient

from work_order_bot.core import guilds as guilds_mod
from work_order_bot.core import subsystems as subsystems_mod
from work_order_bot.db.engine import init_db
from work_order_bot.web.app import create_app

GUILD = "T0001"
ADMIN = {"X-User-Id": "UADMIN", "X-User-Name": "Admin", "X-User-Roles": "RADMIN"}
ALICE = {"X-User-Id": "UALICE", "X-User-Name": "Alice", "X-User-Roles": "RMEMBER"}
BOB = {"X-User-Id": "UBOB", "X-User-Name": "Bob"}


def _set_env(env: dict) -> dict:
    old_env = {}
    for k, v in env.items():
        old_env[k] = os.environ.get(k)
        if v is None:
            os.environ.pop(k, None)
        else:
            os.environ[k] = v
    return old_env


@pytest.fixture
def web_env():
    """Set up a temp environment for web API testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        old_env = _set_env({
            "WO_DB_PATH": str(db_path),
            "SLACK_BOT_TOKEN": None,
            "SLACK_SIGNING_SECRET": None,
            "WO_DASHBOARD_TOKEN": None,
        })

        # Seed data
        db = init_db(db_path)
        subsystems_mod.seed_default_subsystems(db, GUILD)
        guilds_mod.upsert_guild_config(db, GUILD, admin_role_ids=["RADMIN"], member_role_ids=["RMEMBER"])
        mech_id = subsystems_mod.list_subsystems(db, GUILD)[0].id
        db.close()

        slack_client = MagicMock()
        slack_client.chat_postMessage.return_value = {"channel": "CWORK", "ts": "1.1"}
        app = create_app(slack_client=slack_client)
        client = TestClient(app)
        client.mech_id = mech_id
        client.slack = slack_client
        yield client

        app.state.subsystem_cache.close()
        _set_env(old_env)


def _create(client, title="Replace belt", headers=ALICE, **extra):
    body = {"title": title, "subsystem_id": client.mech_id, "priority": "HIGH", **extra}
    return client.post(f"/api/guilds/{GUILD}/workorders", json=body, headers=headers)


def _on_event_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class TestDashboardPage:
    def test_index_returns_html(self, web_env):
        resp = web_env.get("/")
        assert resp.status_code == 200
        assert "text/html" in resp.headers["content-type"]
        assert "Work Orders" in resp.text

    def test_page_wires_admin_and_edit_views(self, web_env):
        html = web_env.get("/").text
        for snippet in ("/config", "/subsystems/order", "/assign", "'PATCH'", "'DELETE'", "createOrder", "saveConfig"):
            assert snippet in html


class TestAuth:
    def test_identity_required(self, web_env):
        resp = web_env.get(f"/api/guilds/{GUILD}/workorders")
        assert resp.status_code == 401

    def test_bearer_token_enforced(self, web_env):
        old = _set_env({"WO_DASHBOARD_TOKEN": "s3cret"})
        try:
            assert web_env.get(f"/api/guilds/{GUILD}/workorders", headers=ALICE).status_code == 401
            headers = {**ALICE, "Authorization": "Bearer s3cret"}
            assert web_env.get(f"/api/guilds/{GUILD}/workorders", headers=headers).status_code == 200
        finally:
            _set_env(old)


class TestConfigAPI:
    def test_get_config(self, web_env):
        resp = web_env.get(f"/api/guilds/{GUILD}/config", headers=ADMIN)
        assert resp.status_code == 200
        data = resp.json()
        assert data["admin_role_ids"] == ["RADMIN"]
        assert data["is_admin"] is True
        assert data["role"] == "ADMIN"
        assert web_env.get(f"/api/guilds/{GUILD}/config", headers=ALICE).json()["role"] == "MEMBER"

    def test_unconfigured_guild(self, web_env):
        assert web_env.get("/api/guilds/TNEW/config", headers=ALICE).status_code == 404

    def test_first_config_is_open_then_admin_only(self, web_env):
        body = {"admin_role_ids": ["RLEADS"], "work_orders_channel_id": "CWORK"}
        assert web_env.put("/api/guilds/TNEW/config", json=body, headers=BOB).status_code == 200

        resp = web_env.put("/api/guilds/TNEW/config", json={"admin_role_ids": []}, headers=BOB)
        assert resp.status_code == 403

        lead = {"X-User-Id": "ULEAD", "X-User-Roles": "RLEADS"}
        resp = web_env.put("/api/guilds/TNEW/config", json={"timezone": "America/Chicago"}, headers=lead)
        assert resp.status_code == 200
        assert resp.json()["timezone"] == "America/Chicago"
        assert resp.json()["work_orders_channel_id"] == "CWORK"

    def test_role_lists_must_be_lists(self, web_env):
        resp = web_env.put(f"/api/guilds/{GUILD}/config", json={"admin_role_ids": "RADMIN"}, headers=ADMIN)
        assert resp.status_code == 400
        assert "admin_role_ids" in resp.json()["error"]
        assert web_env.get(f"/api/guilds/{GUILD}/config", headers=ADMIN).json()["admin_role_ids"] == ["RADMIN"]


class TestSubsystemsAPI:
    def test_list(self, web_env):
        resp = web_env.get(f"/api/guilds/{GUILD}/subsystems", headers=ALICE)
        assert [s["name"] for s in resp.json()] == ["MECH", "ELECTRICAL", "SOFTWARE", "GENERAL"]

    def test_create_requires_admin(self, web_env):
        body = {"name": "PNEU", "display_name": "Pneumatics"}
        assert web_env.post(f"/api/guilds/{GUILD}/subsystems", json=body, headers=ALICE).status_code == 403
        resp = web_env.post(f"/api/guilds/{GUILD}/subsystems", json=body, headers=ADMIN)
        assert resp.status_code == 201
        assert resp.json()["sort_order"] == 4

    def test_duplicate_is_bad_request(self, web_env):
        body = {"name": "MECH", "display_name": "Mechanical"}
        assert web_env.post(f"/api/guilds/{GUILD}/subsystems", json=body, headers=ADMIN).status_code == 400

    def test_update_and_reorder(self, web_env):
        subs = web_env.get(f"/api/guilds/{GUILD}/subsystems", headers=ADMIN).json()
        resp = web_env.patch(f"/api/subsystems/{subs[0]['id']}", json={"display_name": "Mech"}, headers=ADMIN)
        assert resp.json()["display_name"] == "Mech"

        order = [s["id"] for s in reversed(subs)]
        resp = web_env.put(f"/api/guilds/{GUILD}/subsystems/order", json={"order": order}, headers=ADMIN)
        assert [s["id"] for s in resp.json()] == order

    def test_delete_in_use_conflicts(self, web_env):
        _create(web_env)
        resp = web_env.delete(f"/api/subsystems/{web_env.mech_id}", headers=ADMIN)
        assert resp.status_code == 409
        assert "still used" in resp.json()["error"]

    def test_delete_unknown(self, web_env):
        assert web_env.delete("/api/subsystems/999", headers=ADMIN).status_code == 404


class TestWorkOrdersAPI:
    def test_create_and_get(self, web_env):
        resp = _create(web_env, description="Frayed")
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "OPEN"
        assert data["created_by"] == "Alice"
        assert data["subsystem"]["name"] == "MECH"

        detail = web_env.get(f"/api/workorders/{data['id']}", headers=BOB).json()
        assert detail["description"] == "Frayed"
        assert [h["action"] for h in detail["history"]] == ["CREATE"]
        assert detail["history"][0]["meta"]["priority"] == "HIGH"

    def test_create_without_channel_skips_card(self, web_env):
        data = _create(web_env).json()
        # No channel configured for the guild and no origin channel
        web_env.slack.chat_postMessage.assert_not_called()
        assert data["chat_message_id"] is None

    def test_create_validation(self, web_env):
        resp = _create(web_env, title="")
        assert resp.status_code == 400
        assert resp.json()["error"] == "Title is required"

    def test_create_rejects_wrong_types(self, web_env):
        resp = _create(web_env, title=123)
        assert resp.status_code == 400
        assert resp.json()["error"] == "Title must be a string"
        assert _create(web_env, description={"text": "x"}).status_code == 400
        assert _create(web_env, cad_link=["https://cad/x"]).status_code == 400

        resp = _create(web_env, notify_user_ids="abc")
        assert resp.status_code == 400
        assert "notify_user_ids" in resp.json()["error"]
        assert web_env.get(f"/api/guilds/{GUILD}/workorders", headers=ALICE).json()["items"] == []

    def test_edit_rejects_wrong_types(self, web_env):
        wo = _create(web_env).json()
        resp = web_env.patch(f"/api/workorders/{wo['id']}", json={"title": 5}, headers=ALICE)
        assert resp.status_code == 400

    def test_unknown_work_order(self, web_env):
        assert web_env.get("/api/workorders/nope", headers=ALICE).status_code == 404
        assert web_env.post("/api/workorders/nope/claim", headers=ALICE).status_code == 404

    def test_invalid_body(self, web_env):
        resp = web_env.post(
            f"/api/guilds/{GUILD}/workorders", content=b"not json", headers={**ALICE, "Content-Type": "application/json"}
        )
        assert resp.status_code == 400

    def test_list_pagination(self, web_env):
        for i in range(26):
            _create(web_env, title=f"Task {i}")
        first = web_env.get(f"/api/guilds/{GUILD}/workorders", headers=ALICE).json()
        assert len(first["items"]) == 25
        assert first["has_more"] is True
        assert first["items"][0]["title"] == "Task 25"

        second = web_env.get(f"/api/guilds/{GUILD}/workorders?page=2", headers=ALICE).json()
        assert [w["title"] for w in second["items"]] == ["Task 0"]
        assert second["has_more"] is False

    def test_list_status_filter(self, web_env):
        wo = _create(web_env).json()
        web_env.post(f"/api/workorders/{wo['id']}/cancel", headers=ALICE)
        assert web_env.get(f"/api/guilds/{GUILD}/workorders", headers=ALICE).json()["items"] == []
        done = web_env.get(f"/api/guilds/{GUILD}/workorders?status=cancelled", headers=ALICE).json()
        assert [w["id"] for w in done["items"]] == [wo["id"]]
        assert web_env.get(f"/api/guilds/{GUILD}/workorders?status=bogus", headers=ALICE).status_code == 400

    def test_transitions_and_error_codes(self, web_env):
        wo = _create(web_env).json()
        resp = web_env.post(f"/api/workorders/{wo['id']}/claim", headers=BOB)
        assert resp.status_code == 200
        assert resp.json()["claimed_by"] == "Bob"

        assert web_env.post(f"/api/workorders/{wo['id']}/claim", headers=BOB).status_code == 409
        assert web_env.post(f"/api/workorders/{wo['id']}/unclaim", headers=ALICE).status_code == 403
        assert web_env.post(f"/api/workorders/{wo['id']}/finish", headers=BOB).status_code == 200
        assert web_env.post(f"/api/workorders/{wo['id']}/cancel", headers=ALICE).status_code == 409
        assert web_env.post(f"/api/workorders/{wo['id']}/explode", headers=ALICE).status_code == 404

    def test_edit(self, web_env):
        wo = _create(web_env).json()
        resp = web_env.patch(f"/api/workorders/{wo['id']}", json={"priority": "LOW"}, headers=ALICE)
        assert resp.status_code == 200
        assert resp.json()["priority"] == "LOW"
        assert web_env.patch(f"/api/workorders/{wo['id']}", json={}, headers=ALICE).status_code == 400
        assert web_env.patch(f"/api/workorders/{wo['id']}", json={"title": "x"}, headers=BOB).status_code == 403

    def test_assign_by_external_id(self, web_env):
        wo = _create(web_env).json()
        web_env.get(f"/api/guilds/{GUILD}/workorders", headers=BOB)  # registers Bob
        body = {"assignee_external_id": "UBOB"}
        assert web_env.post(f"/api/workorders/{wo['id']}/assign", json=body, headers=ALICE).status_code == 403
        resp = web_env.post(f"/api/workorders/{wo['id']}/assign", json=body, headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["assigned_to"] == "Bob"

        missing = {"assignee_external_id": "UNOBODY"}
        assert web_env.post(f"/api/workorders/{wo['id']}/assign", json=missing, headers=ADMIN).status_code == 404

    def test_remove_is_admin_only(self, web_env):
        wo = _create(web_env).json()
        assert web_env.post(f"/api/workorders/{wo['id']}/remove", headers=ALICE).status_code == 403
        resp = web_env.post(f"/api/workorders/{wo['id']}/remove", headers=ADMIN)
        assert resp.json()["is_deleted"] is True
        assert web_env.get(f"/api/guilds/{GUILD}/workorders", headers=ALICE).json()["items"] == []


class TestRetentionAPI:
    def test_clear_and_recover(self, web_env):
        wo = _create(web_env).json()
        web_env.post(f"/api/workorders/{wo['id']}/cancel", headers=ALICE)
        _create(web_env, title="Still open")

        body = {"statuses": ["CANCELLED"]}
        assert web_env.post(f"/api/guilds/{GUILD}/clear", json=body, headers=ALICE).status_code == 403
        resp = web_env.post(f"/api/guilds/{GUILD}/clear", json=body, headers=ADMIN)
        assert resp.json()["cleared"] == 1
        assert resp.json()["recoverable_until"] is not None

        everything = web_env.get(f"/api/guilds/{GUILD}/workorders?status=all", headers=ALICE).json()
        assert [w["title"] for w in everything["items"]] == ["Still open"]

        resp = web_env.post(f"/api/guilds/{GUILD}/recover", headers=ADMIN)
        assert resp.json() == {"recovered": 1}

    def test_clear_needs_statuses(self, web_env):
        resp = web_env.post(f"/api/guilds/{GUILD}/clear", json={}, headers=ADMIN)
        assert resp.status_code == 400

    def test_usage(self, web_env):
        wo = _create(web_env).json()
        web_env.post(f"/api/workorders/{wo['id']}/claim", headers=BOB)
        web_env.post(f"/api/workorders/{wo['id']}/finish", headers=BOB)
        stats = web_env.get(f"/api/guilds/{GUILD}/usage", headers=ALICE).json()
        assert stats[0]["display_name"] == "Bob"
        assert stats[0]["completed_count"] == 1
        assert stats[0]["claimed_count"] == 1


class TestSlackCardSync:
    def test_dashboard_transition_updates_card(self, web_env):
        web_env.put(f"/api/guilds/{GUILD}/config", json={"work_orders_channel_id": "CWORK"}, headers=ADMIN)
        wo = _create(web_env).json()
        assert wo["chat_message_id"] == "1.1"
        assert web_env.slack.chat_postMessage.call_args.kwargs["channel"] == "CWORK"

        web_env.post(f"/api/workorders/{wo['id']}/claim", headers=BOB)
        kwargs = web_env.slack.chat_update.call_args.kwargs
        assert kwargs["channel"] == "CWORK"
        assert kwargs["ts"] == "1.1"


class TestSlackEndpoints:
    def test_command_help(self, web_env):
        form = {"team_id": GUILD, "user_id": "UBOB", "user_name": "bob", "text": "help", "channel_id": "C1"}
        resp = web_env.post("/slack/commands", data=form)
        assert resp.status_code == 200
        assert "/wo create" in resp.json()["text"]

    def test_command_claim(self, web_env):
        wo = _create(web_env).json()
        web_env.slack.usergroups_list.return_value = {"usergroups": []}
        form = {"team_id": GUILD, "user_id": "UBOB", "user_name": "bob", "text": f"claim {wo['id']}"}
        resp = web_env.post("/slack/commands", data=form)
        assert "claimed" in resp.json()["text"]
        detail = web_env.get(f"/api/workorders/{wo['id']}", headers=ALICE).json()
        assert detail["claimed_by"] == "bob"

    def test_interaction_button(self, web_env):
        wo = _create(web_env).json()
        web_env.slack.usergroups_list.return_value = {"usergroups": []}
        payload = {
            "type": "block_actions",
            "team": {"id": GUILD},
            "user": {"id": "UBOB", "username": "bob"},
            "channel": {"id": "CWORK"},
            "container": {"message_ts": "9.9"},
            "actions": [{"action_id": "claim", "value": wo["id"]}],
        }
        resp = web_env.post("/slack/interactions", data={"payload": json.dumps(payload)})
        assert resp.status_code == 200
        detail = web_env.get(f"/api/workorders/{wo['id']}", headers=ALICE).json()
        assert detail["claimed_by"] == "bob"
        assert detail["chat_message_id"] == "9.9"

    def test_autocomplete(self, web_env):
        payload = {"type": "block_suggestion", "team": {"id": GUILD}, "value": "elec"}
        resp = web_env.post("/slack/interactions", data={"payload": json.dumps(payload)})
        assert [o["value"] for o in resp.json()["options"]] == [str(web_env.mech_id + 1)]

    def test_slack_calls_run_off_the_event_loop(self, web_env):
        seen = []

        def user_groups(**kwargs):
            seen.append(_on_event_loop())
            return {"usergroups": []}

        web_env.slack.usergroups_list.side_effect = user_groups
        web_env.slack.chat_update.side_effect = lambda **kwargs: seen.append(_on_event_loop())
        web_env.put(f"/api/guilds/{GUILD}/config", json={"work_orders_channel_id": "CWORK"}, headers=ADMIN)
        wo = _create(web_env).json()

        form = {"team_id": GUILD, "user_id": "UBOB", "user_name": "bob", "text": f"claim {wo['id']}"}
        assert "claimed" in web_env.post("/slack/commands", data=form).json()["text"]
        web_env.post(f"/api/workorders/{wo['id']}/unclaim", headers=ADMIN)
        assert seen == [False, False, False]

    def test_user_groups_fetched_once_per_window(self, web_env):
        web_env.slack.usergroups_list.return_value = {"usergroups": [{"id": "RADMIN", "users": ["UADMIN"]}]}
        wo = _create(web_env).json()
        form = {"team_id": GUILD, "user_id": "UADMIN", "user_name": "admin", "text": f"claim {wo['id']}"}
        assert "claimed" in web_env.post("/slack/commands", data=form).json()["text"]
        form["text"] = f"finish {wo['id']}"
        assert "marked as done" in web_env.post("/slack/commands", data=form).json()["text"]
        assert web_env.slack.usergroups_list.call_count == 1

    def test_signature_checked_when_configured(self, web_env):
        old = _set_env({"SLACK_SIGNING_SECRET": "signing-secret"})
        try:
            body = f"team_id={GUILD}&user_id=UBOB&text=help"
            resp = web_env.post(
                "/slack/commands", content=body,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            assert resp.status_code == 401

            timestamp = str(int(time.time()))
            signature = SignatureVerifier("signing-secret").generate_signature(timestamp=timestamp, body=body)
            resp = web_env.post(
                "/slack/commands", content=body,
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "X-Slack-Request-Timestamp": timestamp,
                    "X-Slack-Signature": signature,
                },
            )
            assert resp.status_code == 200
        finally:
            _set_env(old)
