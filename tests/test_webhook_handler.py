"""
Tests for the webhook pipeline.
"""
from typing import Callable, Tuple
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from online_payments.core.errors import (
    EventVerificationFailed,
    InvalidRequestError,
    UnsupportedProvider,
)
from online_payments.core.models import (
    PaymentProvider,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from online_payments.core.reconciler import EventReconciler
from online_payments.database.store import SQLTransactionStore
from online_payments.integrations.providers import ProviderRegistry
from online_payments.integrations.webhook_handler import WebhookHandler

SignedEvent = Callable[..., Tuple[bytes, str]]

SUCCEEDED_INTENT = {
    "id": "pi_1",
    "object": "payment_intent",
    "latest_charge": "ch_1",
    "metadata": {"transaction_id": "TXN_1"},
}


@pytest_asyncio.fixture
async def pending_charge(store: SQLTransactionStore) -> Transaction:
    return await store.insert(
        Transaction(
            transaction_id="TXN_1",
            status=TransactionStatus.PENDING,
            type=TransactionType.CHARGE,
            amount=2000,
            currency="usd",
            description="Transaction for payment amount of 2000",
            provider=PaymentProvider.STRIPE,
            provider_fields={"payment_intent_id": "pi_1"},
        )
    )


@pytest.fixture
def mock_redis() -> AsyncMock:
    redis = AsyncMock()
    redis.exists.return_value = 0
    return redis


class TestWebhookHandler:
    """Test suite for WebhookHandler."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_processes_signed_event(
        self,
        providers: ProviderRegistry,
        reconciler: EventReconciler,
        store: SQLTransactionStore,
        pending_charge: Transaction,
        signed_event: SignedEvent,
    ) -> None:
        handler = WebhookHandler(providers, reconciler)
        payload, signature = signed_event("payment_intent.succeeded", SUCCEEDED_INTENT)

        result = await handler.handle("stripe", payload, signature)

        assert result == {
            "status": "processed",
            "event_id": "evt_test_1",
            "event_type": "payment_intent.succeeded",
            "transaction_id": "TXN_1",
        }
        assert (await store.get("TXN_1")).status == TransactionStatus.SUCCEEDED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bad_signature_never_reaches_reconciler(
        self, providers: ProviderRegistry, signed_event: SignedEvent
    ) -> None:
        reconciler = AsyncMock(spec=EventReconciler)
        handler = WebhookHandler(providers, reconciler)
        payload, _ = signed_event("payment_intent.succeeded", SUCCEEDED_INTENT)

        with pytest.raises(InvalidRequestError) as exc_info:
            await handler.handle("stripe", payload, "t=1,v1=forged")

        assert exc_info.value.status_code == 400
        assert isinstance(exc_info.value.reason, EventVerificationFailed)
        reconciler.reconcile.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_provider(self, providers: ProviderRegistry) -> None:
        reconciler = AsyncMock(spec=EventReconciler)
        handler = WebhookHandler(providers, reconciler)

        with pytest.raises(InvalidRequestError) as exc_info:
            await handler.handle("paypal", b"{}", "sig")

        assert isinstance(exc_info.value.reason, UnsupportedProvider)
        reconciler.reconcile.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_event_short_circuits(
        self, providers: ProviderRegistry, mock_redis: AsyncMock, signed_event: SignedEvent
    ) -> None:
        mock_redis.exists.return_value = 1
        reconciler = AsyncMock(spec=EventReconciler)
        handler = WebhookHandler(providers, reconciler, redis_client=mock_redis)
        payload, signature = signed_event("payment_intent.succeeded", SUCCEEDED_INTENT)

        result = await handler.handle("stripe", payload, signature)

        assert result["status"] == "duplicate"
        mock_redis.exists.assert_awaited_once_with("webhook:processed:evt_test_1")
        reconciler.reconcile.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_marks_event_processed(
        self,
        providers: ProviderRegistry,
        reconciler: EventReconciler,
        pending_charge: Transaction,
        mock_redis: AsyncMock,
        signed_event: SignedEvent,
    ) -> None:
        handler = WebhookHandler(
            providers, reconciler, redis_client=mock_redis, dedup_ttl_seconds=60
        )
        payload, signature = signed_event("payment_intent.succeeded", SUCCEEDED_INTENT)

        await handler.handle("stripe", payload, signature)

        mock_redis.setex.assert_awaited_once_with("webhook:processed:evt_test_1", 60, "1")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redis_outage_still_processes(
        self,
        providers: ProviderRegistry,
        reconciler: EventReconciler,
        pending_charge: Transaction,
        mock_redis: AsyncMock,
        signed_event: SignedEvent,
    ) -> None:
        mock_redis.exists.side_effect = RedisConnectionError("redis down")
        mock_redis.setex.side_effect = RedisConnectionError("redis down")
        handler = WebhookHandler(providers, reconciler, redis_client=mock_redis)
        payload, signature = signed_event("payment_intent.succeeded", SUCCEEDED_INTENT)

        result = await handler.handle("stripe", payload, signature)

        assert result["status"] == "processed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stale_event(
        self,
        providers: ProviderRegistry,
        reconciler: EventReconciler,
        pending_charge: Transaction,
        signed_event: SignedEvent,
    ) -> None:
        handler = WebhookHandler(providers, reconciler)
        refunded, refunded_sig = signed_event(
            "charge.refunded",
            {"id": "ch_1", "object": "charge", "payment_intent": "pi_1", "refunded": True},
            event_id="evt_refund",
        )
        late, late_sig = signed_event(
            "payment_intent.succeeded", SUCCEEDED_INTENT, event_id="evt_late"
        )

        first = await handler.handle("stripe", refunded, refunded_sig)
        second = await handler.handle("stripe", late, late_sig)

        assert first["status"] == "processed"
        assert second["status"] == "stale"
        assert second["transaction_id"] == "TXN_1"
