# Overview: Error taxonomy for ledger operations; every failure carries a stable kind and reason.

"""
Ledger error taxonomy.

Every error raised by a ledger operation derives from LedgerError and carries:
- kind: stable machine-readable identifier (never changes once published)
- reason: human-readable explanation; money is always quoted in minor units
- details: optional structured context for transport layers

Callers decide retry policy from the class:
- ValidationError, InsufficientBalanceError: caller's input, never retry
- ConflictError: inspect current state before acting
- SettlementNotFoundError: safe to retry the settlement READ, never the payment
- LockTimeoutError: row contention, safe to retry the whole operation
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all ledger errors."""

    kind = "ledger_error"

    def __init__(self, reason: str, details: dict | None = None):
        super().__init__(reason)
        self.reason = reason
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"kind": self.kind, "reason": self.reason}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(LedgerError):
    kind = "validation_error"


class ConflictError(LedgerError):
    kind = "conflict"


class InvalidStateError(LedgerError):
    kind = "invalid_state"


class NotFoundError(LedgerError):
    kind = "not_found"


class InsufficientBalanceError(LedgerError):
    kind = "insufficient_balance"


class SettlementNotFoundError(LedgerError):
    kind = "settlement_not_found"


class LockTimeoutError(LedgerError):
    kind = "lock_timeout"


class DependencyError(LedgerError):
    kind = "dependency_error"


class ImmutabilityViolationError(InvalidStateError):
    """Raised when code tries to update or delete an append-only ledger row."""

    kind = "immutability_violation"
