"""
Error taxonomy for credit metering and payment reconciliation.

Every error carries a machine-readable code so adapters (CLI, HTTP handlers)
can map it to a caller-visible result without string matching.
"""

from typing import Optional


class CreditGuardError(Exception):
    """Base class for all credit_guard errors."""

    code = "CREDIT_GUARD_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(CreditGuardError):
    """Malformed input, rejected before any ledger mutation."""

    code = "VALIDATION_ERROR"


class InsufficientFundsError(CreditGuardError):
    """Balance does not cover the cost of the requested operation."""

    code = "INSUFFICIENT_FUNDS"

    def __init__(self, required: int, balance: int):
        super().__init__(
            f"Insufficient credits: {required} required, {balance} available"
        )
        self.required = required
        self.balance = balance


class ExternalProviderError(CreditGuardError):
    """Image generation or payment processor call failed.

    Generation failures never charge credits. Payment failures leave the
    pending payment record untouched so a later verify/webhook can retry.
    """

    code = "EXTERNAL_PROVIDER_ERROR"

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ReconciliationConflictError(CreditGuardError):
    """Payment is no longer pending; the transition was already applied."""

    code = "RECONCILIATION_CONFLICT"

    def __init__(self, session_id: str, status: str):
        super().__init__(f"Payment for session {session_id} is already {status}")
        self.session_id = session_id
        self.status = status


class StorageError(CreditGuardError):
    """Persistence I/O failure. The enclosing transaction was rolled back."""

    code = "STORAGE_ERROR"
