"""
Error taxonomy for a chat turn.

Hard errors fail the turn and reach the caller. Soft errors are caught by the
orchestrator and turned into degraded behavior (no memory context).
"""

from typing import Optional


class RavenError(Exception):
    """Base class for all application errors."""


class QuotaExceededError(RavenError):
    """Daily message quota is exhausted. Terminal for the turn, not retried."""

    def __init__(self, quota):
        super().__init__("Daily message quota exhausted.")
        self.quota = quota


class MemorySchemaMissingError(RavenError):
    """Memory tables are not installed. Soft: degrade to no-memory behavior."""


class MemoryStoreUnavailableError(RavenError):
    """Memory store failed for a transient reason. Soft: degrade, log only."""


class ProviderError(RavenError):
    """A completion provider returned an error or an empty completion."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class PrimaryCompletionError(RavenError):
    """The primary reply for a turn could not be produced. Hard failure."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class PersistenceError(RavenError):
    """A conversation write failed. Hard failure, the turn stops here."""
