"""
Error Taxonomy Module

Classified errors raised by every service. Each carries a stable machine
readable ``kind`` (category), a finer ``code`` and the HTTP status the API
layer answers with. Raw store failures are never surfaced in messages.
"""

from contextlib import contextmanager
from typing import Any, Dict, Optional
import logging

from .storage import DuplicateKeyError, StorageUnavailable


class BankingError(Exception):
    """Base class for all classified errors"""

    kind = "internal_error"
    code = "internal_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses"""
        error = {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
        }
        if self.context:
            error["context"] = self.context
        if self.retryable:
            error["retryable"] = True
        return error


class ValidationError(BankingError):
    """Malformed or missing input"""
    kind = "validation_error"
    code = "invalid_input"
    status_code = 400


class AuthError(BankingError):
    """Missing or invalid identity"""
    kind = "auth_error"
    code = "not_authenticated"
    status_code = 401


class InvalidPinError(AuthError):
    """Supplied transfer PIN does not match"""
    code = "invalid_pin"
    status_code = 403


class PermissionDeniedError(AuthError):
    """Caller identity lacks the required role"""
    code = "forbidden"
    status_code = 403


class NotFoundError(BankingError):
    """Referenced entity absent"""
    kind = "not_found"
    code = "not_found"
    status_code = 404


class RecipientNotFoundError(NotFoundError):
    """Destination account of an internal transfer no longer exists"""
    code = "recipient_missing"


class ConflictError(BankingError):
    """Duplicate unique field, already-final status or policy block"""
    kind = "conflict"
    code = "conflict"
    status_code = 409


class DuplicateError(ConflictError):
    code = "duplicate"


class TransferBlockedError(ConflictError):
    """An administrative transfer policy message is active"""
    code = "transfer_blocked"


class TerminalStatusError(ConflictError):
    code = "terminal_status"


class InsufficientFundsError(BankingError):
    """Operation would drive a balance below zero"""
    kind = "insufficient_funds"
    code = "zero_balance_breach"
    status_code = 409


class InternalError(BankingError):
    kind = "internal_error"
    code = "internal_error"
    status_code = 500


class AccountNumberExhaustedError(InternalError):
    code = "account_number_exhausted"


class StoreUnavailableError(InternalError):
    """Store timed out or aborted the unit of work; safe to retry"""
    code = "store_unavailable"
    status_code = 503
    retryable = True


logger = logging.getLogger("funds_core.errors")


@contextmanager
def classified(operation: str, duplicate_message: Optional[str] = None):
    """
    Re-raise anything escaping a unit of work as a classified error.

    Wrap *outside* ``storage.atomic()`` so the rollback has already happened
    by the time the error is translated.

    Args:
        operation: Name used in the log line and generic message
        duplicate_message: Message for a uniqueness violation
    """
    try:
        yield
    except BankingError:
        raise
    except DuplicateKeyError as e:
        logger.warning(f"Uniqueness violation during {operation}: {e.table}")
        raise DuplicateError(
            duplicate_message or f"Conflicting concurrent update during {operation}, please retry",
            context={"table": e.table}
        ) from e
    except StorageUnavailable as e:
        logger.error(f"Store unavailable during {operation}: {e}")
        raise StoreUnavailableError(
            f"Service temporarily unavailable during {operation}, please retry"
        ) from e
    except Exception as e:
        logger.exception(f"Unexpected failure during {operation}")
        raise InternalError(f"Internal error during {operation}") from e
