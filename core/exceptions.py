from abc import ABC
from typing import Any


class BaseCustomException(Exception, ABC):
    """
    Base class for all custom exceptions.

    Parameters
    ----------
    message : str | None
        Message key; defaults to the class default
    details : dict | None
        Extra machine-readable context rendered into the error body
    """

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None):
        self.message = message or self.get_default_message()
        self.details = details
        super().__init__(self.message)

    def get_default_message(self) -> str:
        """
        Return default error message.

        Returns
        -------
        str
            Default error message
        """
        return "error.unknown"

    def get_status_code(self) -> int:
        """
        Return HTTP status code for exception.

        Returns
        -------
        int
            HTTP status code
        """
        return 500


class BadRequestException(BaseCustomException):
    """Bad request exception (400)."""

    def get_status_code(self) -> int:
        return 400


class ForbiddenException(BaseCustomException):
    """Forbidden exception (403)."""

    def get_default_message(self) -> str:
        return "error.forbidden"

    def get_status_code(self) -> int:
        return 403


class NotFoundException(BaseCustomException):
    """Not found exception (404)."""

    def get_status_code(self) -> int:
        return 404


class ConflictException(BaseCustomException):
    """Conflict exception (409)."""

    def get_status_code(self) -> int:
        return 409


class WalletCreationError(BaseCustomException):
    """Wallet address could not be derived."""

    def get_default_message(self) -> str:
        return "error.wallet.creation_failed"


class WalletNotFoundError(NotFoundException):
    """Wallet not found exception."""

    def get_default_message(self) -> str:
        return "error.wallet.not_found"


class WalletBusyError(ConflictException):
    """Wallet lock could not be taken in time."""

    def get_default_message(self) -> str:
        return "error.wallet.busy"


class BalanceUnavailableError(BaseCustomException):
    """Ledger balance could not be read; callers may retry."""

    def get_default_message(self) -> str:
        return "error.balance.unavailable"

    def get_status_code(self) -> int:
        return 503


class InvalidAmountError(BadRequestException):
    """Transfer amount is not a positive number of base units."""

    def get_default_message(self) -> str:
        return "error.amount.invalid"


class InvalidRecipientError(BadRequestException):
    """Recipient cannot receive this transfer."""

    def get_default_message(self) -> str:
        return "error.transfer.invalid_recipient"


class InsufficientFundsError(BadRequestException):
    """Sender balance does not cover the transfer."""

    def get_default_message(self) -> str:
        return "error.wallet.insufficient_funds"


class SubmissionError(BaseCustomException):
    """Settlement layer rejected the operation bundle."""

    def get_default_message(self) -> str:
        return "error.transfer.submission_failed"

    def get_status_code(self) -> int:
        return 502


class SettlementTimeoutError(BaseCustomException):
    """
    Acknowledgment wait exceeded.

    The transfer is still in flight and must be reconciled by polling
    its transaction id.
    """

    def __init__(self, transaction_id: str, message: str | None = None):
        self.transaction_id = transaction_id
        super().__init__(message, details={"transaction_id": transaction_id})

    def get_default_message(self) -> str:
        return "error.transfer.settlement_timeout"

    def get_status_code(self) -> int:
        return 504


class TransferNotFoundError(NotFoundException):
    """Transfer not found exception."""

    def get_default_message(self) -> str:
        return "error.transfer.not_found"


class InvalidTransitionError(BaseCustomException):
    """Transfer state change not allowed by the lifecycle."""

    def get_default_message(self) -> str:
        return "error.transfer.invalid_transition"


class IdempotencyKeyRequiredError(BadRequestException):
    """Idempotency-Key header missing."""

    def get_default_message(self) -> str:
        return "error.idempotency.key_required"


class InvalidIdempotencyKeyError(BadRequestException):
    """Idempotency-Key header has the wrong shape."""

    def get_default_message(self) -> str:
        return "error.idempotency.key_invalid"


class IdempotencyKeyConflictError(ConflictException):
    """Idempotency key reused with different request parameters."""

    def get_default_message(self) -> str:
        return "error.idempotency.key_conflict"


class PaymentRequestNotFoundError(NotFoundException):
    """Payment request not found exception."""

    def get_default_message(self) -> str:
        return "error.payment_request.not_found"


class PaymentRequestNotPendingError(BadRequestException):
    """Payment request is no longer pending."""

    def get_default_message(self) -> str:
        return "error.payment_request.not_pending"


class LedgerError(BaseCustomException):
    """Settlement layer or chain node call failed."""

    def get_default_message(self) -> str:
        return "error.ledger.failed"

    def get_status_code(self) -> int:
        return 503


class PricingUnavailableError(BaseCustomException):
    """Exchange rate could not be obtained."""

    def get_default_message(self) -> str:
        return "error.pricing.unavailable"

    def get_status_code(self) -> int:
        return 503
