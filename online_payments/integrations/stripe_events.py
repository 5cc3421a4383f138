"""
Stripe webhook verification and event interpretation.

``verify_stripe_event`` authenticates a raw webhook body. The interpreters
turn a verified event into an ``EventOutcome``: the lifecycle update it
implies plus the handles used to find the local transaction.
"""
import json
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

import stripe
import structlog
from pydantic import ValidationError

from online_payments.core.errors import EventVerificationFailed
from online_payments.core.models import (
    CHARGE_ID_FIELD,
    PAYMENT_INTENT_ID_FIELD,
    REFUND_ID_FIELD,
    TRANSACTION_ID_METADATA_KEY,
    EventInterpreter,
    EventOutcome,
    ProviderEvent,
    TransactionStatus,
    TransactionType,
    TransactionUpdate,
)
from online_payments.integrations.stripe_client import compact, stripe_id

logger = structlog.get_logger(__name__)

PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_INTENT_PAYMENT_FAILED = "payment_intent.payment_failed"
CHARGE_REFUNDED = "charge.refunded"
CHARGE_REFUND_UPDATED = "charge.refund.updated"


def verify_stripe_event(payload: bytes, signature: str, secret: str) -> ProviderEvent:
    """
    Verify webhook signature and construct event.

    Args:
        payload: Raw request body as bytes
        signature: Stripe-Signature header value
        secret: Webhook signing secret

    Returns:
        ProviderEvent: Verified event

    Raises:
        EventVerificationFailed: If the header is missing, the signature does
            not match or the body is not a Stripe event
    """
    if not signature:
        logger.warning("webhook_signature_missing")
        raise EventVerificationFailed("event verification failed: missing signature")

    try:
        stripe.Webhook.construct_event(payload, signature, secret)
        body = json.loads(payload)
        event = ProviderEvent(
            id=body["id"],
            type=body["type"],
            data=body.get("data") or {},
            created=body.get("created"),
        )
    except stripe.SignatureVerificationError as e:
        logger.warning("webhook_signature_verification_failed", error=str(e))
        raise EventVerificationFailed(f"event verification failed: {e}") from e
    except (ValueError, KeyError, TypeError, ValidationError) as e:
        logger.warning("webhook_payload_malformed", error=str(e))
        raise EventVerificationFailed(f"event verification failed: {e}") from e

    logger.info(
        "webhook_signature_verified",
        event_id=event.id,
        event_type=event.type,
    )
    return event


def _event_object(event: ProviderEvent) -> Dict[str, Any]:
    obj = event.data.get("object")
    return obj if isinstance(obj, dict) else {}


def _metadata_transaction_id(obj: Dict[str, Any]) -> Optional[str]:
    metadata = obj.get("metadata") or {}
    return metadata.get(TRANSACTION_ID_METADATA_KEY) or None


def _correlation(
    charge_id: Optional[str], payment_intent_id: Optional[str]
) -> Tuple[Tuple[str, str], ...]:
    """Handles tried in order to find the owning transaction."""
    pairs = ((CHARGE_ID_FIELD, charge_id), (PAYMENT_INTENT_ID_FIELD, payment_intent_id))
    return tuple((key, value) for key, value in pairs if value)


def payment_intent_succeeded(event: ProviderEvent) -> EventOutcome:
    intent = _event_object(event)
    payment_intent_id = intent.get("id")
    charge_id = stripe_id(intent.get("latest_charge"))

    return EventOutcome(
        update=TransactionUpdate(
            type=TransactionType.CHARGE,
            status=TransactionStatus.SUCCEEDED,
            provider_fields=compact(
                {PAYMENT_INTENT_ID_FIELD: payment_intent_id, CHARGE_ID_FIELD: charge_id}
            ),
        ),
        transaction_id=_metadata_transaction_id(intent),
        correlation=_correlation(charge_id, payment_intent_id),
    )


def payment_intent_payment_failed(event: ProviderEvent) -> EventOutcome:
    intent = _event_object(event)
    payment_intent_id = intent.get("id")
    error = intent.get("last_payment_error") or {}
    charge_id = stripe_id(intent.get("latest_charge")) or error.get("charge")
    reason = error.get("code") or error.get("decline_code") or "payment_failed"

    return EventOutcome(
        update=TransactionUpdate(
            type=TransactionType.CHARGE,
            status=TransactionStatus.FAILURE,
            failure_reason=reason,
            provider_fields=compact(
                {PAYMENT_INTENT_ID_FIELD: payment_intent_id, CHARGE_ID_FIELD: charge_id}
            ),
        ),
        transaction_id=_metadata_transaction_id(intent),
        correlation=_correlation(charge_id, payment_intent_id),
    )


def charge_refunded(event: ProviderEvent) -> EventOutcome:
    charge = _event_object(event)
    charge_id = charge.get("id")
    payment_intent_id = stripe_id(charge.get("payment_intent"))

    # Older API versions embed the refund list on the charge
    refunds = (charge.get("refunds") or {}).get("data") or []
    refund_id = refunds[0].get("id") if refunds else None

    return EventOutcome(
        update=TransactionUpdate(
            type=TransactionType.REFUND,
            status=TransactionStatus.SUCCEEDED,
            provider_fields=compact(
                {
                    CHARGE_ID_FIELD: charge_id,
                    PAYMENT_INTENT_ID_FIELD: payment_intent_id,
                    REFUND_ID_FIELD: refund_id,
                }
            ),
        ),
        transaction_id=_metadata_transaction_id(charge),
        correlation=_correlation(charge_id, payment_intent_id),
    )


_REFUND_STATUSES = {
    "succeeded": TransactionStatus.SUCCEEDED,
    "failed": TransactionStatus.FAILURE,
    "canceled": TransactionStatus.FAILURE,
}


def charge_refund_updated(event: ProviderEvent) -> EventOutcome:
    refund = _event_object(event)
    charge_id = stripe_id(refund.get("charge"))
    payment_intent_id = stripe_id(refund.get("payment_intent"))
    status = _REFUND_STATUSES.get(refund.get("status") or "", TransactionStatus.PENDING)

    failure_reason = None
    if status == TransactionStatus.FAILURE:
        failure_reason = refund.get("failure_reason") or refund.get("status")

    return EventOutcome(
        update=TransactionUpdate(
            type=TransactionType.REFUND,
            status=status,
            failure_reason=failure_reason,
            provider_fields=compact(
                {
                    REFUND_ID_FIELD: refund.get("id"),
                    CHARGE_ID_FIELD: charge_id,
                    PAYMENT_INTENT_ID_FIELD: payment_intent_id,
                }
            ),
        ),
        transaction_id=_metadata_transaction_id(refund),
        correlation=_correlation(charge_id, payment_intent_id),
    )


def build_stripe_event_table() -> Mapping[str, EventInterpreter]:
    """Return the read-only allow-list of Stripe events this service acts on."""
    return MappingProxyType(
        {
            PAYMENT_INTENT_SUCCEEDED: payment_intent_succeeded,
            PAYMENT_INTENT_PAYMENT_FAILED: payment_intent_payment_failed,
            CHARGE_REFUNDED: charge_refunded,
            CHARGE_REFUND_UPDATED: charge_refund_updated,
        }
    )
