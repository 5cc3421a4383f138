"""
Pytest configuration and fixtures.
"""
import hashlib
import hmac
import json
import time
from functools import partial
from types import MappingProxyType
from typing import Any, AsyncGenerator, Callable, Dict, Optional, Set, Tuple
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
import stripe
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from online_payments.config import Settings
from online_payments.core.models import PaymentProvider
from online_payments.core.reconciler import EventReconciler
from online_payments.database.models import Base
from online_payments.database.store import SQLTransactionStore
from online_payments.integrations.base import ChargeResult, RefundResult
from online_payments.integrations.providers import ProviderAdapter, ProviderRegistry, event_tables
from online_payments.integrations.stripe_events import build_stripe_event_table, verify_stripe_event

WEBHOOK_SECRET = "whsec_test_fake_secret"


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "integration: tests that wire several components")


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url="sqlite+aiosqlite:///:memory:",
        gateway_timeout_seconds=5.0,
        app_name="online-payments-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path: Any) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Create a throwaway SQLite database with the schema."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> SQLTransactionStore:
    return SQLTransactionStore(session_factory)


@pytest.fixture
def gateway() -> AsyncMock:
    """Gateway double; charges are accepted and refunds succeed by default."""
    mock_gateway = AsyncMock()
    mock_gateway.charge.return_value = ChargeResult(
        provider_fields={"payment_intent_id": "pi_test_123", "charge_id": "ch_test_123"},
    )
    mock_gateway.refund.return_value = RefundResult(
        provider_fields={
            "refund_id": "re_test_123",
            "charge_id": "ch_test_123",
            "payment_intent_id": "pi_test_123",
        },
    )
    return mock_gateway


@pytest.fixture
def providers(gateway: AsyncMock) -> ProviderRegistry:
    return MappingProxyType(
        {
            PaymentProvider.STRIPE: ProviderAdapter(
                provider=PaymentProvider.STRIPE,
                gateway=gateway,
                verify_event=partial(verify_stripe_event, secret=WEBHOOK_SECRET),
                event_table=build_stripe_event_table(),
            )
        }
    )


@pytest.fixture
def reconciler(store: SQLTransactionStore, providers: ProviderRegistry) -> EventReconciler:
    return EventReconciler(store, event_tables(providers))


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed_payload = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def stripe_signature() -> Callable[[bytes], str]:
    return sign


@pytest.fixture
def signed_event() -> Callable[..., Tuple[bytes, str]]:
    """Factory for a signed Stripe event body and its signature header."""

    def _build(
        event_type: str, obj: Dict[str, Any], event_id: str = "evt_test_1"
    ) -> Tuple[bytes, str]:
        payload = json.dumps(
            {
                "id": event_id,
                "object": "event",
                "type": event_type,
                "created": 1700000000,
                "data": {"object": obj},
            }
        ).encode("utf-8")
        return payload, sign(payload)

    return _build



class FakeStripeRefunds:
    """
    Stand-in for ``stripe.Refund.create``.

    Like Stripe, a known idempotency key replays the first response and a
    new key on a refunded charge fails with ``charge_already_refunded``.
    """

    def __init__(self) -> None:
        self.responses: Dict[str, Dict[str, Any]] = {}
        self.refunded_charges: Set[str] = set()
        self.calls = 0
        self.lose_next_response = False

    def create(self, *, charge: str, metadata: Dict[str, str], idempotency_key: str) -> Any:
        self.calls += 1
        if idempotency_key in self.responses:
            return self.responses[idempotency_key]
        if charge in self.refunded_charges:
            raise stripe.InvalidRequestError(
                f"Charge {charge} has already been refunded.",
                None,
                code="charge_already_refunded",
            )

        self.refunded_charges.add(charge)
        response = {
            "id": f"re_{len(self.refunded_charges)}",
            "object": "refund",
            "charge": charge,
            "status": "succeeded",
            "metadata": metadata,
        }
        self.responses[idempotency_key] = response

        if self.lose_next_response:
            self.lose_next_response = False
            raise stripe.APIConnectionError("connection reset after refund was created")
        return response


@pytest.fixture
def stripe_refunds(mocker: Any) -> FakeStripeRefunds:
    """Patch the Stripe refund endpoint with FakeStripeRefunds."""
    fake = FakeStripeRefunds()
    mocker.patch("stripe.Refund.create", side_effect=fake.create)
    return fake


@pytest.fixture
def sample_charge_data() -> Dict[str, Any]:
    """Sample charge request body."""
    return {
        "amount": 2000,
        "currency": "usd",
        "payment_method": "pm_card_visa",
        "description": "",
    }
