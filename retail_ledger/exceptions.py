"""
Exception hierarchy for the ledger core.

Every error carries a stable ``code`` so outer layers (HTTP adapter, logs)
can report the specific kind without parsing messages.
"""

from decimal import Decimal
from typing import Optional


class LedgerError(ValueError):
    """Base class for all ledger errors."""

    code = "ledger_error"


class ValidationError(LedgerError):
    """Malformed or out-of-policy input."""

    code = "validation_error"


class InvalidAmountError(ValidationError):
    """Transaction or balance amount that is not a positive decimal."""

    code = "invalid_amount"


class DuplicateApplicationError(ValidationError):
    """Application ID already used by another application."""

    code = "duplicate_application"


class DuplicateIdentityError(LedgerError):
    """National-identity or mobile number already registered."""

    code = "duplicate_identity"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(LedgerError):
    """Referenced record does not exist."""

    code = "not_found"


class ApplicationNotFoundError(NotFoundError):
    code = "application_not_found"


class AccountNotFoundError(NotFoundError):
    code = "account_not_found"


class InvalidStateError(LedgerError):
    """Operation is illegal for the record's current lifecycle state."""

    code = "invalid_state"


class InsufficientFundsError(LedgerError):
    """Debit exceeds the current balance."""

    code = "insufficient_funds"

    def __init__(self, message: str, balance: Optional[Decimal] = None,
                 requested: Optional[Decimal] = None):
        super().__init__(message)
        self.balance = balance
        self.requested = requested
