"""Exception hierarchy for the encounter backend."""

from __future__ import annotations


class GMAssistError(RuntimeError):
    """Base exception for backend failures."""


class StoreError(GMAssistError):
    """Raised when a persistent store handle is misused."""


class HandleDisposedError(StoreError):
    """Raised when a disposed store handle is written to."""


class EncounterMigrationError(GMAssistError):
    """Raised when a stored encounter cannot be upgraded to the current schema."""


class EncounterImportError(GMAssistError):
    """Raised when an imported encounter document is not usable."""
