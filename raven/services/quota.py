"""
Per-user daily message quota.

Every turn consumes one unit before anything is written. Both gate
implementations are atomic per user: the SQL gate increments with a
conditional UPDATE, the Redis gate with INCR and a compensating DECR.
Days roll over at midnight UTC.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select, update

from ..core.config import Settings
from ..core.database import Database
from ..models.base import as_utc, utcnow
from ..models.quota import DailyUsage, UserRoleRecord

logger = logging.getLogger(__name__)


class UserRole(str, Enum):
    BASE = "base"
    VIP = "vip"
    DEV = "dev"

    @classmethod
    def parse(cls, value: Any) -> "UserRole":
        """'creator' is the stored name for dev. Anything unknown is base."""
        if value in ("vip", cls.VIP):
            return cls.VIP
        if value in ("dev", "creator", cls.DEV):
            return cls.DEV
        return cls.BASE

    def to_db(self) -> str:
        return "creator" if self is UserRole.DEV else self.value


@dataclass
class QuotaResult:
    allowed: bool
    role: UserRole
    used: int
    limit: int
    remaining: int

    @classmethod
    def build(cls, allowed: bool, role: UserRole, used: int, limit: int) -> "QuotaResult":
        used = max(int(used), 0)
        return cls(allowed=allowed, role=role, used=used, limit=limit, remaining=max(limit - used, 0))

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "role": self.role.value,
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
        }


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


# ── Roles ────────────────────────────────────────────────────────────

@dataclass
class RoleAssignment:
    user_id: str
    role: UserRole
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "role": self.role.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class RoleStore:
    def __init__(self, db: Database):
        self.db = db

    async def ensure_role(self, user_id: str) -> UserRole:
        """Read the user's role, creating a base role on first sight."""
        async with self.db.session() as session:
            now = utcnow()
            await session.execute(
                self.db.insert(UserRoleRecord)
                .values(user_id=user_id, role=UserRole.BASE.to_db(), created_at=now, updated_at=now)
                .on_conflict_do_nothing(index_elements=["user_id"])
            )
            result = await session.execute(
                select(UserRoleRecord.role).where(UserRoleRecord.user_id == user_id)
            )
            return UserRole.parse(result.scalar_one_or_none())

    async def set_role(self, user_id: str, role: UserRole) -> UserRole:
        role = UserRole.parse(role)
        now = utcnow()
        async with self.db.session() as session:
            await session.execute(
                self.db.insert(UserRoleRecord)
                .values(user_id=user_id, role=role.to_db(), created_at=now, updated_at=now)
                .on_conflict_do_update(
                    index_elements=["user_id"],
                    set_={"role": role.to_db(), "updated_at": now},
                )
            )
        logger.info("Role for %s set to %s", user_id, role.value)
        return role

    async def list_roles(self, limit: int = 500) -> list[RoleAssignment]:
        """Every user with a role row, newest first."""
        async with self.db.session() as session:
            result = await session.execute(
                select(UserRoleRecord)
                .order_by(UserRoleRecord.created_at.desc(), UserRoleRecord.user_id)
                .limit(min(max(limit, 1), 1000))
            )
            rows = result.scalars().all()
        return [
            RoleAssignment(user_id=row.user_id, role=UserRole.parse(row.role), created_at=as_utc(row.created_at))
            for row in rows
        ]


# ── Gates ────────────────────────────────────────────────────────────

class QuotaGate(ABC):
    @abstractmethod
    async def consume(self, user_id: str) -> QuotaResult:
        """Take one unit for today. Never returns an inconsistent result."""


class SqlQuotaGate(QuotaGate):
    def __init__(self, db: Database, roles: RoleStore, settings: Settings):
        self.db = db
        self.roles = roles
        self.settings = settings

    async def consume(self, user_id: str) -> QuotaResult:
        role = await self.roles.ensure_role(user_id)
        limit = self.settings.quota_limit_for(role.value)
        today = utc_today()
        now = utcnow()

        async with self.db.session() as session:
            await session.execute(
                self.db.insert(DailyUsage)
                .values(user_id=user_id, day=today, used=0, created_at=now, updated_at=now)
                .on_conflict_do_nothing(index_elements=["user_id", "day"])
            )
            result = await session.execute(
                update(DailyUsage)
                .where(
                    DailyUsage.user_id == user_id,
                    DailyUsage.day == today,
                    DailyUsage.used < limit,
                )
                .values(used=DailyUsage.used + 1, updated_at=now)
            )
            allowed = result.rowcount == 1
            used = (await session.execute(
                select(DailyUsage.used).where(DailyUsage.user_id == user_id, DailyUsage.day == today)
            )).scalar_one()

        if not allowed:
            logger.info("Quota exhausted for %s (%s, %d/%d)", user_id, role.value, used, limit)
        return QuotaResult.build(allowed, role, used, limit)


class RedisQuotaGate(QuotaGate):
    """Counters in Redis; roles still come from the database."""

    def __init__(self, redis, roles: RoleStore, settings: Settings):
        self.redis = redis
        self.roles = roles
        self.settings = settings

    @staticmethod
    def _key(user_id: str, day: date) -> str:
        return f"quota:{day.isoformat()}:{user_id}"

    async def consume(self, user_id: str) -> QuotaResult:
        role = await self.roles.ensure_role(user_id)
        limit = self.settings.quota_limit_for(role.value)
        today = utc_today()
        key = self._key(user_id, today)

        used = int(await self.redis.incr(key))
        if used == 1:
            midnight = datetime.combine(today + timedelta(days=1), time.min, tzinfo=timezone.utc)
            await self.redis.expireat(key, int(midnight.timestamp()))

        if used > limit:
            used = int(await self.redis.decr(key))
            logger.info("Quota exhausted for %s (%s, %d/%d)", user_id, role.value, used, limit)
            return QuotaResult.build(False, role, used, limit)

        return QuotaResult.build(True, role, used, limit)
