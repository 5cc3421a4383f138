"""Core payment processing logic."""
from .errors import (
    APIError,
    ErrorCode,
    InternalServerError,
    InvalidRequestError,
    PaymentError,
    ResourceNotFoundError,
)
from .models import (
    ChargeRequest,
    PaymentProvider,
    Transaction,
    TransactionStatus,
    TransactionType,
    TransactionUpdate,
)
from .validation import validate_charge_request

__all__ = [
    "APIError",
    "ErrorCode",
    "InternalServerError",
    "InvalidRequestError",
    "PaymentError",
    "ResourceNotFoundError",
    "ChargeRequest",
    "PaymentProvider",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "TransactionUpdate",
    "validate_charge_request",
]
