"""
Ledger Error Taxonomy

Every error raised by the ledger core carries an ErrorKind so the API layer
can map failures to transport status codes without branching on exception
classes.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Kinds of ledger failures"""
    VALIDATION = "validation"            # Malformed or out-of-range input, storage untouched
    NOT_FOUND = "not_found"              # Referenced account or transaction is absent
    STATE_CONFLICT = "state_conflict"    # Business-rule rejection
    STORAGE_FAILURE = "storage_failure"  # Conditional update did not apply or store failed


class LedgerError(Exception):
    """Base class for all ledger core errors"""

    kind: ErrorKind = ErrorKind.VALIDATION
    code: str = "LEDGER_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view for the API boundary"""
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "details": {
                key: str(value) if isinstance(value, Decimal) else value
                for key, value in self.details.items()
            },
        }


# Validation

class InvalidAmount(LedgerError):
    """Amount is missing, malformed or not strictly positive"""
    kind = ErrorKind.VALIDATION
    code = "INVALID_AMOUNT"


class AmountOutOfBounds(LedgerError):
    """Transfer amount outside the configured (minimum, maximum] range"""
    kind = ErrorKind.VALIDATION
    code = "OUT_OF_BOUNDS"

    def __init__(self, amount: Decimal, minimum: Decimal, maximum: Decimal):
        if amount > maximum:
            message = f"Transfer amount exceeds maximum limit: {maximum}"
        else:
            message = f"Transfer amount must be greater than minimum limit: {minimum}"
        super().__init__(message, {"amount": amount, "minimum": minimum, "maximum": maximum})
        self.amount = amount
        self.minimum = minimum
        self.maximum = maximum


class InvalidIdentifier(LedgerError):
    """Identifier is missing or blank"""
    kind = ErrorKind.VALIDATION
    code = "INVALID_IDENTIFIER"


class InvalidAccountType(LedgerError):
    kind = ErrorKind.VALIDATION
    code = "INVALID_ACCOUNT_TYPE"


class InvalidTransactionStatus(LedgerError):
    kind = ErrorKind.VALIDATION
    code = "INVALID_STATUS"


class InvalidDateRange(LedgerError):
    kind = ErrorKind.VALIDATION
    code = "INVALID_DATE_RANGE"


class InvalidLimit(LedgerError):
    kind = ErrorKind.VALIDATION
    code = "INVALID_LIMIT"


# Not found

class AccountNotFound(LedgerError):
    kind = ErrorKind.NOT_FOUND
    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_number: str):
        super().__init__(f"Account not found: {account_number}", {"account_number": account_number})
        self.account_number = account_number


class TransactionNotFound(LedgerError):
    kind = ErrorKind.NOT_FOUND
    code = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction not found: {transaction_id}", {"transaction_id": transaction_id})
        self.transaction_id = transaction_id


# State conflicts

class AccountInactive(LedgerError):
    kind = ErrorKind.STATE_CONFLICT
    code = "ACCOUNT_INACTIVE"

    def __init__(self, account_number: str, role: str = "Account"):
        super().__init__(f"{role} is not active: {account_number}", {"account_number": account_number})
        self.account_number = account_number


class SameAccount(LedgerError):
    kind = ErrorKind.STATE_CONFLICT
    code = "SAME_ACCOUNT"

    def __init__(self, account_number: str):
        super().__init__("Cannot transfer to the same account", {"account_number": account_number})
        self.account_number = account_number


class InsufficientBalance(LedgerError):
    """
    Debit would drive the balance negative.

    ``current`` is the balance the check was evaluated against (also exposed
    as ``available``); ``required`` is the requested amount.
    """
    kind = ErrorKind.STATE_CONFLICT
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, account_number: str, current: Decimal, required: Decimal):
        super().__init__(
            f"Insufficient balance. Available: {current}, Required: {required}",
            {"account_number": account_number, "current": current, "required": required}
        )
        self.account_number = account_number
        self.current = current
        self.required = required

    @property
    def available(self) -> Decimal:
        return self.current


class DuplicateIdentifier(LedgerError):
    """A record with the same key already exists"""
    kind = ErrorKind.STATE_CONFLICT
    code = "DUPLICATE_IDENTIFIER"


# Storage failures

class AccountUpdateFailed(LedgerError):
    """
    Balance update could not be applied: the conditional check kept failing,
    the account changed state mid-operation, or the store raised.
    """
    kind = ErrorKind.STORAGE_FAILURE
    code = "UPDATE_FAILED"

    def __init__(self, message: str, transaction_id: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if transaction_id:
            details["transaction_id"] = transaction_id
        super().__init__(message, details)
        self.transaction_id = transaction_id
