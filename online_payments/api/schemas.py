"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field

from online_payments.core.models import ChargeRequest, Transaction


class ChargePaymentRequest(BaseModel):
    """
    Request schema for charging a payment method.

    Fields are unconstrained here; ``validate_charge_request`` owns the
    rules and reports them through the error envelope.
    """

    amount: int = Field(default=0, description="Amount in minor units (e.g., cents)")
    currency: str = Field(default="", description="Currency code (e.g., usd)")
    payment_method: str = Field(default="", description="Provider payment method reference")
    description: str = Field(default="", description="Optional description")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "amount": 2000,
                    "currency": "usd",
                    "payment_method": "pm_card_visa",
                    "description": "Order #1234",
                }
            ]
        }
    }

    def to_charge_request(self, idempotency_key: Optional[str] = None) -> ChargeRequest:
        return ChargeRequest(
            amount=self.amount,
            currency=self.currency,
            payment_method=self.payment_method,
            description=self.description,
            idempotency_key=idempotency_key or None,
        )


class TransactionResponse(BaseModel):
    """Response schema for a stored transaction."""

    transaction_id: str = Field(..., description="Transaction ID")
    status: str = Field(..., description="pending, succeeded or failure")
    type: str = Field(..., description="charge or refund")
    description: str = Field(..., description="Transaction description")
    failure_reason: Optional[str] = Field(default=None, description="Provider failure code")
    payment_provider: str = Field(..., description="Payment provider")
    amount: int = Field(..., description="Amount in minor units")
    currency: str = Field(..., description="Currency code")
    additional_fields: Dict[str, Union[str, int]] = Field(
        default_factory=dict, description="Provider correlation handles"
    )
    created_at: Optional[datetime] = Field(default=None, description="Creation timestamp")
    updated_at: Optional[datetime] = Field(default=None, description="Last update timestamp")

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> "TransactionResponse":
        return cls(
            transaction_id=transaction.transaction_id,
            status=transaction.status.value,
            type=transaction.type.value,
            description=transaction.description,
            failure_reason=transaction.failure_reason,
            payment_provider=transaction.provider.value,
            amount=transaction.amount,
            currency=transaction.currency,
            additional_fields=dict(transaction.provider_fields),
            created_at=transaction.created_at,
            updated_at=transaction.updated_at,
        )


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="processed, stale or duplicate")
    event_id: str = Field(..., description="Provider event ID")
    event_type: str = Field(..., description="Provider event type")
    transaction_id: Optional[str] = Field(default=None, description="Reconciled transaction")


class ErrorResponse(BaseModel):
    """Error envelope returned for every failure."""

    code: str = Field(..., description="Machine-readable error code")
    status_code: int = Field(..., description="HTTP status code")
    message: str = Field(..., description="Human-readable message")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Dict[str, Any] = Field(default_factory=dict, description="Individual checks")
