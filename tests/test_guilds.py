"""Tests for guild configuration and role resolution."""

import tempfile
from pathlib import Path

import pytest

from work_order_bot.core import guilds as guilds_mod
from work_order_bot.core.errors import ValidationError
from work_order_bot.db.engine import init_db
from work_order_bot.db.models import Role

GUILD = "T0001"


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


class TestGuildConfig:
    def test_upsert_keeps_omitted_fields(self, db):
        guilds_mod.upsert_guild_config(db, GUILD, admin_role_ids=["SADMIN", "SADMIN", " "], work_orders_channel_id="CWORK")
        config = guilds_mod.upsert_guild_config(db, GUILD, timezone="America/Chicago")
        assert config.admin_role_ids == ["SADMIN"]
        assert config.work_orders_channel_id == "CWORK"
        assert config.timezone == "America/Chicago"

    def test_role_ids_must_be_a_list(self, db):
        guilds_mod.upsert_guild_config(db, GUILD, admin_role_ids=["SADMIN"])
        with pytest.raises(ValidationError, match="admin_role_ids"):
            guilds_mod.upsert_guild_config(db, GUILD, admin_role_ids="SADMIN")
        with pytest.raises(ValidationError, match="member_role_ids"):
            guilds_mod.upsert_guild_config(db, GUILD, member_role_ids={"id": "SPIT"})
        assert guilds_mod.get_guild_config(db, GUILD).admin_role_ids == ["SADMIN"]

    def test_channel_must_be_a_string(self, db):
        with pytest.raises(ValidationError):
            guilds_mod.upsert_guild_config(db, GUILD, work_orders_channel_id=42)
        assert guilds_mod.get_guild_config(db, GUILD) is None


class TestRoles:
    def test_admin_resolution(self, db):
        config = guilds_mod.upsert_guild_config(db, GUILD, admin_role_ids=["SADMIN"])
        assert guilds_mod.is_admin(["SPIT", "SADMIN"], config)
        assert not guilds_mod.is_admin(["SPIT"], config)
        assert not guilds_mod.is_admin(["SADMIN"], None)
        assert guilds_mod.resolve_role(["SADMIN"], config) == Role.ADMIN
        assert guilds_mod.resolve_role([], config) == Role.MEMBER
