import pytest

from raven.core.config import Settings
from raven.services.quota import RedisQuotaGate, RoleStore, SqlQuotaGate, UserRole

from fakes import FakeRedis


@pytest.fixture
def quota_settings() -> Settings:
    return Settings(_env_file=None, QUOTA_LIMIT_BASE=2, QUOTA_LIMIT_VIP=4, QUOTA_LIMIT_DEV=50)


@pytest.mark.parametrize("raw, role", [
    ("vip", UserRole.VIP),
    ("dev", UserRole.DEV),
    ("creator", UserRole.DEV),
    ("base", UserRole.BASE),
    ("admin", UserRole.BASE),
    (None, UserRole.BASE),
])
def test_role_parsing(raw, role):
    assert UserRole.parse(raw) is role


def test_dev_is_stored_as_creator():
    assert UserRole.DEV.to_db() == "creator"
    assert UserRole.VIP.to_db() == "vip"


@pytest.mark.asyncio
async def test_roles_default_to_base_and_can_be_changed(db):
    roles = RoleStore(db)
    assert await roles.ensure_role("u1") is UserRole.BASE
    await roles.set_role("u1", UserRole.DEV)
    assert await roles.ensure_role("u1") is UserRole.DEV


@pytest.mark.asyncio
async def test_list_roles_newest_first(db):
    roles = RoleStore(db)
    await roles.ensure_role("first")
    await roles.set_role("second", UserRole.DEV)
    await roles.set_role("first", UserRole.VIP)

    listed = await roles.list_roles()

    assert [(r.user_id, r.role) for r in listed] == [("second", UserRole.DEV), ("first", UserRole.VIP)]
    assert listed[0].to_dict()["role"] == "dev"
    assert listed[0].created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_sql_gate_counts_and_denies_at_limit(db, quota_settings):
    gate = SqlQuotaGate(db, RoleStore(db), quota_settings)

    first = await gate.consume("u1")
    second = await gate.consume("u1")
    third = await gate.consume("u1")

    assert (first.allowed, first.used, first.remaining) == (True, 1, 1)
    assert (second.allowed, second.used, second.remaining) == (True, 2, 0)
    assert (third.allowed, third.used, third.limit, third.remaining) == (False, 2, 2, 0)
    assert third.to_dict()["role"] == "base"


@pytest.mark.asyncio
async def test_sql_gate_uses_role_limit(db, quota_settings):
    roles = RoleStore(db)
    await roles.set_role("vip-user", UserRole.VIP)
    gate = SqlQuotaGate(db, roles, quota_settings)

    results = [await gate.consume("vip-user") for _ in range(5)]

    assert [r.allowed for r in results] == [True, True, True, True, False]
    assert results[-1].role is UserRole.VIP
    assert results[-1].limit == 4


@pytest.mark.asyncio
async def test_redis_gate_counts_expires_and_compensates(db, quota_settings):
    redis = FakeRedis()
    gate = RedisQuotaGate(redis, RoleStore(db), quota_settings)

    results = [await gate.consume("u1") for _ in range(3)]

    assert [r.allowed for r in results] == [True, True, False]
    assert results[-1].used == 2
    [key] = redis.values
    assert redis.values[key] == 2
    assert key in redis.expiry
