"""
Error taxonomy for the payments core.

Two layers:

- Reason errors (``PaymentError`` subclasses) say *what* went wrong. They are
  raised by validators, the store and the gateway adapters.
- Classifications (``APIError`` subclasses) say *how the caller should treat
  it*. The orchestrator and the reconciler wrap every reason in exactly one
  classification before it leaves the core, so callers only ever see a stable
  machine-readable code, an HTTP-equivalent status and a human message.
"""
from enum import Enum
from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base exception for payment reasons."""

    pass


class PaymentValidationError(PaymentError):
    """Raised when a request fails input validation."""

    pass


class InvalidAmount(PaymentValidationError):
    def __init__(self, message: str = "invalid amount") -> None:
        super().__init__(message)


class MissingCurrency(PaymentValidationError):
    def __init__(self, message: str = "missing currency") -> None:
        super().__init__(message)


class MissingPaymentMethod(PaymentValidationError):
    def __init__(self, message: str = "missing payment method") -> None:
        super().__init__(message)


class MissingTransactionID(PaymentValidationError):
    def __init__(self, message: str = "missing transaction ID") -> None:
        super().__init__(message)


class MissingChargeHandle(PaymentError):
    """A transaction has no provider charge handle recorded."""

    def __init__(self, message: str = "missing charge ID") -> None:
        super().__init__(message)


class ChargeAlreadyRefunded(PaymentError):
    def __init__(self, message: str = "charge already refunded") -> None:
        super().__init__(message)


class UnsupportedProvider(PaymentError):
    def __init__(self, message: str = "unsupported provider") -> None:
        super().__init__(message)


class UnsupportedEvent(PaymentError):
    def __init__(self, message: str = "unsupported event") -> None:
        super().__init__(message)


class EventVerificationFailed(PaymentError):
    def __init__(self, message: str = "event verification failed") -> None:
        super().__init__(message)


class IdempotencyKeyReused(PaymentError):
    """An idempotency key was sent again with different parameters."""

    def __init__(self, message: str = "idempotency key reused with different parameters") -> None:
        super().__init__(message)


class TransactionNotFound(PaymentError):
    def __init__(self, message: str = "transaction not found") -> None:
        super().__init__(message)


class StoreError(PaymentError):
    """Raised when the transaction store fails."""

    pass


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(PaymentError):
    """Raised when a gateway call fails for reasons other than a card decline."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        code: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.code = code
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type in (GatewayErrorType.TRANSIENT, GatewayErrorType.RATE_LIMIT)


class ErrorCode(str, Enum):
    """Stable machine-readable error codes."""

    INTERNAL_SERVER_ERROR = "internal_server_error"
    INVALID_REQUEST = "invalid_request"
    RESOURCE_NOT_FOUND = "resource_not_found"


class APIError(Exception):
    """Classified error surfaced to callers."""

    code: ErrorCode
    status_code: int

    def __init__(self, message: str, reason: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason
        if reason is not None:
            self.__cause__ = reason

    def to_dict(self) -> Dict[str, Any]:
        """Return the error envelope."""
        return {
            "code": self.code.value,
            "status_code": self.status_code,
            "message": self.message,
        }

    def __str__(self) -> str:
        return f"({self.status_code}) {self.message}"


class InvalidRequestError(APIError):
    """Caller-correctable failure."""

    code = ErrorCode.INVALID_REQUEST
    status_code = 400

    def __init__(self, reason: BaseException) -> None:
        super().__init__(f"Invalid request: {reason}", reason)


class ResourceNotFoundError(APIError):
    code = ErrorCode.RESOURCE_NOT_FOUND
    status_code = 404

    def __init__(self, reason: BaseException, resource: str) -> None:
        super().__init__(f"Resource '{resource}' not found", reason)
        self.resource = resource


class InternalServerError(APIError):
    """
    System failure the caller cannot correct.

    The reason is only included in the message when debug mode is on.
    """

    code = ErrorCode.INTERNAL_SERVER_ERROR
    status_code = 500

    def __init__(self, reason: BaseException, debug: bool = False) -> None:
        message = "Internal server error"
        if debug:
            message = f"Internal server error: {reason}"
        super().__init__(message, reason)
