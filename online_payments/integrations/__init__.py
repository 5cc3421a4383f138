"""External integrations for payment processing."""
from .base import ChargeResult, EventVerifier, PaymentGateway, RefundResult
from .providers import (
    ProviderAdapter,
    ProviderRegistry,
    build_provider_registry,
    event_tables,
    resolve_provider,
)
from .stripe_client import STRIPE_REQUIRED_FIELDS, CircuitBreaker, StripeClient
from .stripe_events import build_stripe_event_table, verify_stripe_event
from .webhook_handler import WebhookHandler

__all__ = [
    "ChargeResult",
    "RefundResult",
    "PaymentGateway",
    "EventVerifier",
    "ProviderAdapter",
    "ProviderRegistry",
    "build_provider_registry",
    "event_tables",
    "resolve_provider",
    "STRIPE_REQUIRED_FIELDS",
    "CircuitBreaker",
    "StripeClient",
    "build_stripe_event_table",
    "verify_stripe_event",
    "WebhookHandler",
]
