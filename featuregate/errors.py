"""
Entitlement error hierarchy.

Everything raised here stays inside the decision engine: the engine turns
it into a `verification_failed` verdict at its boundary.
"""

from __future__ import annotations


class EntitlementError(Exception):
    """Base exception for entitlement-related failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class LedgerConflictError(EntitlementError):
    """Concurrent writers kept winning the race to create a usage counter."""

    def __init__(self, user_id: int, feature_key: str, attempts: int):
        self.user_id = user_id
        self.feature_key = feature_key
        self.attempts = attempts
        super().__init__(
            f"Usage counter for user {user_id} / {feature_key} still conflicting after {attempts} attempts"
        )


class ConfigurationError(EntitlementError):
    """The admin-owned catalog or plan hierarchy is inconsistent."""
