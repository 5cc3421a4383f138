"""Provider registry: one adapter per supported payment provider."""
from dataclasses import dataclass
from functools import partial
from types import MappingProxyType
from typing import Mapping, Optional

import structlog

from online_payments.config import Settings
from online_payments.core.errors import UnsupportedProvider
from online_payments.core.models import EventInterpreter, PaymentProvider
from online_payments.integrations.base import EventVerifier, PaymentGateway
from online_payments.integrations.stripe_client import StripeClient
from online_payments.integrations.stripe_events import (
    build_stripe_event_table,
    verify_stripe_event,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProviderAdapter:
    """Everything the service needs to talk to one provider."""

    provider: PaymentProvider
    gateway: PaymentGateway
    verify_event: EventVerifier
    event_table: Mapping[str, EventInterpreter]


ProviderRegistry = Mapping[PaymentProvider, ProviderAdapter]
EventTables = Mapping[PaymentProvider, Mapping[str, EventInterpreter]]


def resolve_provider(name: str) -> PaymentProvider:
    """
    Map a provider name from the transport to a PaymentProvider.

    Raises:
        UnsupportedProvider: If the name is not a known provider
    """
    try:
        return PaymentProvider((name or "").lower())
    except ValueError as e:
        raise UnsupportedProvider(f"unsupported provider: {name}") from e


def build_provider_registry(
    settings: Settings, stripe_client: Optional[PaymentGateway] = None
) -> ProviderRegistry:
    """
    Build the read-only provider registry at startup.

    Args:
        settings: Application settings
        stripe_client: Optional gateway replacing the default StripeClient

    Returns:
        ProviderRegistry: Adapter per provider
    """
    stripe_adapter = ProviderAdapter(
        provider=PaymentProvider.STRIPE,
        gateway=stripe_client or StripeClient(settings),
        verify_event=partial(verify_stripe_event, secret=settings.stripe_webhook_secret),
        event_table=build_stripe_event_table(),
    )

    registry = MappingProxyType({PaymentProvider.STRIPE: stripe_adapter})
    logger.info(
        "provider_registry_built",
        providers=[provider.value for provider in registry],
        stripe_events=sorted(stripe_adapter.event_table),
    )
    return registry


def event_tables(registry: ProviderRegistry) -> EventTables:
    """Return the event allow-list of every registered provider."""
    return MappingProxyType(
        {provider: adapter.event_table for provider, adapter in registry.items()}
    )
