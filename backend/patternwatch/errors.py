"""
Patternwatch: Exception Taxonomy

Callers see either a clean payload or one of these, raised synchronously at
the call boundary. Insufficient history is not an error (see ``BarResult.ready``).
"""

from __future__ import annotations


class PatternwatchError(Exception):
    """Base exception for the package."""


class PreconditionViolation(PatternwatchError, ValueError):
    """Rejected input: null or malformed bar, out-of-order bar, invalid parameters.

    Always raised before the indicator state is touched.
    """

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InitCancelled(PatternwatchError):
    """Raised when a bulk ``init`` is abandoned via its cancel event."""

    def __init__(self, processed: int, total: int):
        self.processed = processed
        self.total = total
        super().__init__(f"init cancelled after {processed}/{total} bars")


class IndicatorNotFoundError(PatternwatchError, LookupError):
    """No indicator registered under the requested id."""


class InstanceNotFoundError(PatternwatchError, LookupError):
    """No active indicator instance under the requested key."""
