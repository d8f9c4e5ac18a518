"""
All database models. Imported here so Base.metadata sees them for create_all().
"""

from .base import TimestampedBase
from .conversation import Thread, Message
from .memory import UserMemory, UserSettings, MEMORY_TABLES
from .quota import UserRoleRecord, DailyUsage

__all__ = [
    "TimestampedBase",
    "Thread", "Message",
    "UserMemory", "UserSettings", "MEMORY_TABLES",
    "UserRoleRecord", "DailyUsage",
]
