"""Tests for bulk clear, recover and the expiry sweep."""

import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from work_order_bot.core import audit as audit_mod
from work_order_bot.core import retention as retention_mod
from work_order_bot.core import subsystems as subsystems_mod
from work_order_bot.core import users as users_mod
from work_order_bot.core import workorders as wo_mod
from work_order_bot.core.errors import ErrorKind
from work_order_bot.db.engine import init_db
from work_order_bot.db.models import Actor, ClearMark

GUILD = "T0001"
NOW = datetime(2026, 3, 14, 18, 0, 0)


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        subsystems_mod.seed_default_subsystems(conn, GUILD)
        yield conn
        conn.close()


@pytest.fixture
def admin(db):
    user = users_mod.upsert_user(db, "UADMIN", "Admin")
    return Actor(user_id=user.id, guild_id=GUILD, is_admin=True)


@pytest.fixture
def member(db):
    user = users_mod.upsert_user(db, "UMEMBER", "Member")
    return Actor(user_id=user.id, guild_id=GUILD)


def _make(db, actor, title, status="OPEN", admin=None):
    subsystem = subsystems_mod.list_subsystems(db, GUILD)[0]
    wo = wo_mod.create_work_order(db, actor, title, subsystem.id).work_order
    if status == "DONE":
        assert wo_mod.finish_work_order(db, admin, wo.id).ok
    elif status == "CANCELLED":
        assert wo_mod.cancel_work_order(db, actor, wo.id).ok
    return wo


def _visible(db):
    return sorted(w.title for w in wo_mod.list_work_orders(db, GUILD, status=None))


class TestClear:
    def test_members_cannot_clear(self, db, member):
        result = retention_mod.clear_work_orders(db, member, ["DONE"])
        assert result.error == ErrorKind.PERMISSION_DENIED

    def test_requires_statuses(self, db, admin):
        assert retention_mod.clear_work_orders(db, admin, []).error == ErrorKind.VALIDATION
        assert retention_mod.clear_work_orders(db, admin, ["ARCHIVED"]).error == ErrorKind.VALIDATION

    def test_clear_leaves_open_rows(self, db, admin, member):
        _make(db, member, "open")
        _make(db, member, "done", "DONE", admin)
        _make(db, member, "cancelled", "CANCELLED", admin)

        result = retention_mod.clear_work_orders(db, admin, ["DONE", "CANCELLED"], now=NOW)
        assert result.ok
        assert result.value == 2
        assert _visible(db) == ["open"]

    def test_scenario_three_done_rows_share_timestamp(self, db, admin, member):
        done = [_make(db, member, f"done {i}", "DONE", admin) for i in range(3)]
        _make(db, member, "still open")

        result = retention_mod.clear_work_orders(db, admin, ["DONE"], now=NOW)
        assert result.value == 3

        cleared = [wo_mod.get_work_order(db, w.id) for w in done]
        assert all(w.is_deleted for w in cleared)
        assert {w.cleared_at for w in cleared} == {NOW}

        recovered = retention_mod.recover_work_orders(db, admin)
        assert recovered.value == 3
        restored = [wo_mod.get_work_order(db, w.id) for w in done]
        assert all(not w.is_deleted and w.cleared_at is None for w in restored)

    def test_one_audit_record_per_row(self, db, admin, member):
        wo = _make(db, member, "done", "DONE", admin)
        retention_mod.clear_work_orders(db, admin, ["DONE"], now=NOW)
        entry = audit_mod.get_audit_log(db, wo.id)[-1]
        assert entry.action == "CLEAR"
        assert entry.meta == ClearMark(statuses=["DONE"], cleared_at="2026-03-14 18:00:00")

    def test_nothing_to_clear(self, db, admin):
        assert retention_mod.clear_work_orders(db, admin, ["DONE"]).value == 0

    def test_other_guilds_untouched(self, db, admin, member):
        _make(db, member, "done", "DONE", admin)
        outsider = Actor(user_id=admin.user_id, guild_id="T9999", is_admin=True)
        assert retention_mod.clear_work_orders(db, outsider, ["DONE"]).value == 0
        assert _visible(db) == ["done"]


class TestRecover:
    def test_recovers_every_batch(self, db, admin, member):
        _make(db, member, "done", "DONE", admin)
        retention_mod.clear_work_orders(db, admin, ["DONE"], now=NOW)
        _make(db, member, "cancelled", "CANCELLED", admin)
        retention_mod.clear_work_orders(db, admin, ["CANCELLED"], now=NOW + timedelta(hours=1))
        assert _visible(db) == []

        result = retention_mod.recover_work_orders(db, admin)
        assert result.value == 2
        assert _visible(db) == ["cancelled", "done"]

    def test_individually_removed_rows_stay_removed(self, db, admin, member):
        wo = _make(db, member, "removed")
        wo_mod.remove_work_order(db, admin, wo.id)
        assert retention_mod.recover_work_orders(db, admin).value == 0
        assert wo_mod.get_work_order(db, wo.id).is_deleted

    def test_members_cannot_recover(self, db, member):
        assert retention_mod.recover_work_orders(db, member).error == ErrorKind.PERMISSION_DENIED

    def test_recover_is_audited(self, db, admin, member):
        wo = _make(db, member, "done", "DONE", admin)
        retention_mod.clear_work_orders(db, admin, ["DONE"], now=NOW)
        retention_mod.recover_work_orders(db, admin)
        entry = audit_mod.get_audit_log(db, wo.id)[-1]
        assert entry.action == "RECOVER"
        assert entry.meta.cleared_at == "2026-03-14 18:00:00"


class TestSweep:
    def test_purges_only_expired(self, db, admin, member):
        wo = _make(db, member, "done", "DONE", admin)
        retention_mod.clear_work_orders(db, admin, ["DONE"], now=NOW)

        assert retention_mod.purge_expired(db, 24, now=NOW + timedelta(hours=23)) == 0
        assert wo_mod.get_work_order(db, wo.id) is not None

        assert retention_mod.purge_expired(db, 24, now=NOW + timedelta(hours=25)) == 1
        assert wo_mod.get_work_order(db, wo.id) is None
        # History outlives the row
        assert [a.action for a in audit_mod.get_audit_log(db, wo.id)][-1] == "CLEAR"

    def test_never_purges_uncleared_rows(self, db, admin, member):
        wo = _make(db, member, "removed")
        wo_mod.remove_work_order(db, admin, wo.id)
        assert retention_mod.purge_expired(db, 0, now=NOW + timedelta(days=365)) == 0

    def test_recovery_deadline(self, db, admin, member):
        assert retention_mod.recovery_deadline(db, GUILD) is None
        _make(db, member, "done", "DONE", admin)
        retention_mod.clear_work_orders(db, admin, ["DONE"], now=NOW)
        assert retention_mod.recovery_deadline(db, GUILD, 24) == NOW + timedelta(hours=24)
