"""
Domain types for the transaction lifecycle.

A ``Transaction`` is the one mutable record kept per logical payment. Charges
create it; the refund flow and provider webhooks move it forward through
``TransactionUpdate`` values, which only carry the fields they change.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILURE = "failure"


class TransactionType(str, Enum):
    CHARGE = "charge"
    REFUND = "refund"


class PaymentProvider(str, Enum):
    """Gateways this service can route to."""

    STRIPE = "stripe"


# Correlation handles recorded in ``Transaction.provider_fields``.
CHARGE_ID_FIELD = "charge_id"
PAYMENT_INTENT_ID_FIELD = "payment_intent_id"
REFUND_ID_FIELD = "refund_id"

# Key under which the local transaction id travels in provider metadata.
TRANSACTION_ID_METADATA_KEY = "transaction_id"

ProviderFields = Dict[str, Union[str, int]]


class ChargeRequest(BaseModel):
    """Input to a charge."""

    amount: int = 0
    currency: str = ""
    payment_method: str = ""
    description: str = ""
    idempotency_key: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class Transaction(BaseModel):
    """Durable local record of one charge or refund."""

    transaction_id: str
    status: TransactionStatus
    type: TransactionType
    amount: int
    currency: str
    description: str = ""
    failure_reason: Optional[str] = None
    provider: PaymentProvider
    provider_fields: ProviderFields = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @property
    def charge_handle(self) -> Optional[str]:
        handle = self.provider_fields.get(CHARGE_ID_FIELD)
        return str(handle) if handle else None


class TransactionUpdate(BaseModel):
    """
    Partial field set for a coalescing update.

    ``None`` leaves a field unchanged. ``provider_fields`` is merged into the
    stored map and never removes a handle already recorded.
    """

    status: Optional[TransactionStatus] = None
    type: Optional[TransactionType] = None
    failure_reason: Optional[str] = None
    provider_fields: ProviderFields = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class ProviderEvent(BaseModel):
    """A verified webhook event, reduced to what reconciliation needs."""

    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created: Optional[int] = None

    model_config = ConfigDict(frozen=True)


class EventOutcome(BaseModel):
    """
    What a provider event means for the local record.

    ``transaction_id`` comes from the provider metadata when present.
    ``correlation`` lists ``(provider_field, handle)`` pairs, tried in order,
    to find the owning transaction when it is not.
    """

    update: TransactionUpdate
    transaction_id: Optional[str] = None
    correlation: Tuple[Tuple[str, str], ...] = ()

    model_config = ConfigDict(frozen=True)


EventInterpreter = Callable[[ProviderEvent], EventOutcome]
