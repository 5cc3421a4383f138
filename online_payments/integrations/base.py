"""Gateway protocol and result types shared by provider adapters."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from online_payments.core.models import ProviderEvent


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a charge the gateway executed.

    A card decline is a result, not an error: ``declined`` is set and
    ``decline_code`` carries the provider's code.
    """

    provider_fields: Dict[str, str] = field(default_factory=dict)
    declined: bool = False
    decline_code: Optional[str] = None
    transaction_id: Optional[str] = None  # as echoed back in provider metadata


@dataclass(frozen=True)
class RefundResult:
    provider_fields: Dict[str, str] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """Protocol for payment gateway adapters.

    Implementations raise ``GatewayError`` for transport or provider-side
    failures and ``ChargeAlreadyRefunded`` when a refund is redundant.
    """

    async def charge(
        self,
        *,
        amount: int,
        currency: str,
        payment_method: str,
        description: str,
        transaction_id: str,
        idempotency_key: str,
    ) -> ChargeResult:
        ...

    async def refund(self, *, charge_handle: str, transaction_id: str) -> RefundResult:
        ...


class EventVerifier(Protocol):
    """Authenticates a raw webhook payload; raises EventVerificationFailed."""

    def __call__(self, payload: bytes, signature: str) -> ProviderEvent:
        ...
