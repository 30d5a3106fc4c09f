"""Exception types for the perpetuals core.

Every failure aborts the whole operation: the engine stages mutations on
copies, so a raised error leaves the caller's records untouched.
"""

from __future__ import annotations


class PerpetualsError(Exception):
    """Base class for every rejected operation."""


class ValidationError(PerpetualsError, ValueError):
    """Raised for malformed parameters or records."""


class PriceError(PerpetualsError):
    """Raised when oracle data is stale, unparseable or missing."""


class MathOverflowError(PerpetualsError, ArithmeticError):
    """Raised when a checked operation leaves its integer domain."""


class InsufficientFunds(PerpetualsError):
    """Raised when a custody cannot cover a lock, unlock or payout."""


class SolvencyViolation(InsufficientFunds):
    """Raised when a staged custody violates one or more ledger invariants."""

    def __init__(self, custody_key: str, violations: list[str]) -> None:
        self.custody_key = custody_key
        self.violations = violations
        super().__init__(f"custody {custody_key} invariant violations: {', '.join(violations)}")


class InvalidPositionState(PerpetualsError):
    """Raised when a leverage or liquidation precondition is not met."""


class MissingAccount(PerpetualsError, LookupError):
    """Raised when an identity is absent from the account snapshot."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"account not found in snapshot: {key}")


class InstructionNotAllowed(PerpetualsError):
    """Raised when a feature gate for the operation is closed."""
