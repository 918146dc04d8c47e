"""Resultados y errores del ledger y del coordinador de sesiones."""

from __future__ import annotations

from enum import Enum


class Outcome(str, Enum):
    """Result of a coordinator operation, as seen by its caller."""

    STARTED = "started"
    STOPPED = "stopped"
    REJECTED = "rejected"
    NOOP = "noop"


class LedgerError(Exception):
    """Base class for session ledger failures."""


class LedgerConflictError(LedgerError):
    """Write refused by a ledger rule (e.g. another session is open)."""


class LedgerUnavailableError(LedgerError):
    """Transient read/write failure; callers may retry."""
