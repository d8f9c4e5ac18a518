"""
Quota bookkeeping: one role row per user and one counter row per user per UTC day.
"""

from datetime import date

from sqlalchemy import String, Integer, Date
from sqlalchemy.orm import Mapped, mapped_column

from .base import TimestampedBase


class UserRoleRecord(TimestampedBase):
    __tablename__ = "chat_user_roles"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    role: Mapped[str] = mapped_column(String, nullable=False, default="base")  # base, vip, creator


class DailyUsage(TimestampedBase):
    __tablename__ = "chat_daily_usage"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
