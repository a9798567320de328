"""Custom exception hierarchy for the KidVolts package."""

from __future__ import annotations


class KidVoltsError(Exception):
    """Base class for all KidVolts specific errors."""


class UnauthorizedError(KidVoltsError):
    """Raised when an access rule or transition guard denies the actor."""


class InvalidTransitionError(KidVoltsError):
    """Raised when a history record is not in the status a transition requires."""


class InsufficientStockError(KidVoltsError):
    """Raised when claiming a bazaar item that has no stock left."""


class InsufficientPointsError(KidVoltsError):
    """Raised when a debit would take a user's points below zero."""


class ConflictError(KidVoltsError):
    """Raised when an optimistic write loses against a concurrent update."""


class RecordNotFoundError(KidVoltsError):
    """Raised when a record lookup fails."""


class RuleSyntaxError(KidVoltsError):
    """Raised when an access rule cannot be compiled."""
