"""
Custom exception hierarchy for the bond escrow core.

Each exception type maps to one category of rejection, so callers can
decide whether to fix their input, give up, re-fetch state, or halt the
lease entirely.
"""

from __future__ import annotations


class BondEscrowError(Exception):
    """Base exception for all bond escrow rejections."""

    def __init__(self, code: str, message: str, details: dict | None = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(BondEscrowError):
    """Malformed address, amount, hex field or identity shape.

    The caller can resubmit with corrected input.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("VALIDATION_FAILED", message, details)


class AuthorizationError(BondEscrowError):
    """The caller is not the party designated for this action. Never retried."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("NOT_AUTHORISED", message, details)


class StateConflictError(BondEscrowError):
    """The lease is not in the status this action requires.

    May be the losing side of a race: re-fetch the lease and decide
    whether the action is now moot.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("STATE_CONFLICT", message, details)


class IntegrityError(BondEscrowError):
    """A stored condition pair or escrow record is corrupt or incomplete.

    The lease must not progress until a fresh pair / lease is issued.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("INTEGRITY_VIOLATION", message, details)


class LeaseNotFoundError(BondEscrowError):
    """No lease exists under the requested id."""

    def __init__(self, lease_id: str):
        super().__init__(
            "LEASE_NOT_FOUND", f"Lease '{lease_id}' does not exist.", {"lease_id": lease_id}
        )
