"""
Webhook pipeline with signature verification and event deduplication.

Implements:
- Provider selection from the transport path
- Webhook signature verification
- Event deduplication using Redis
- Reconciliation of the event with the local transaction
"""
import time
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from online_payments.core.errors import (
    APIError,
    EventVerificationFailed,
    InvalidRequestError,
    UnsupportedProvider,
)
from online_payments.core.reconciler import EventReconciler
from online_payments.integrations.providers import ProviderRegistry, resolve_provider
from online_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class WebhookHandler:
    """
    Handles provider webhook events with deduplication and processing.

    Features:
    - Signature verification with the provider's verifier
    - Event deduplication (store processed event ids in Redis)
    - Reconciliation through the EventReconciler
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        reconciler: EventReconciler,
        redis_client: Optional[aioredis.Redis] = None,
        dedup_ttl_seconds: int = 86400 * 7,  # 7 days
    ):
        """
        Initialize webhook handler.

        Args:
            providers: Provider registry
            reconciler: Event reconciler
            redis_client: Optional Redis client for event deduplication
            dedup_ttl_seconds: Time to remember processed events
        """
        self.providers = providers
        self.reconciler = reconciler
        self.redis_client = redis_client
        self.dedup_ttl_seconds = dedup_ttl_seconds

        logger.info(
            "webhook_handler_initialized",
            deduplication=redis_client is not None,
        )

    @staticmethod
    def _dedup_key(event_id: str) -> str:
        return f"webhook:processed:{event_id}"

    async def is_event_processed(self, event_id: str) -> bool:
        """
        Check if webhook event has already been processed.

        Args:
            event_id: Provider event ID

        Returns:
            bool: True if event already processed, False otherwise
        """
        if self.redis_client is None:
            return False
        try:
            exists = await self.redis_client.exists(self._dedup_key(event_id))
            return bool(exists)
        except RedisError as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            # If Redis is down, process the event anyway; the store update is idempotent
            return False

    async def mark_event_processed(self, event_id: str) -> None:
        """
        Mark webhook event as processed.

        Args:
            event_id: Provider event ID
        """
        if self.redis_client is None:
            return
        try:
            await self.redis_client.setex(self._dedup_key(event_id), self.dedup_ttl_seconds, "1")
            logger.info("webhook_marked_processed", event_id=event_id)
        except RedisError as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def handle(self, provider_name: str, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify, de-duplicate and reconcile one webhook delivery.

        Args:
            provider_name: Provider name from the request path
            payload: Raw request body as bytes
            signature: Signature header value

        Returns:
            Dict[str, Any]: Processing result

        Raises:
            InvalidRequestError: Unknown provider, failed verification or unsupported event
            ResourceNotFoundError: If no local transaction owns the event
            InternalServerError: If the store fails
        """
        start_time = time.time()

        try:
            provider = resolve_provider(provider_name)
            adapter = self.providers.get(provider)
            if adapter is None:
                raise UnsupportedProvider(f"unsupported provider: {provider_name}")
        except UnsupportedProvider as e:
            logger.warning("webhook_provider_unsupported", provider=provider_name)
            raise InvalidRequestError(e) from e

        try:
            event = adapter.verify_event(payload, signature)
        except EventVerificationFailed as e:
            metrics.record_webhook_event(
                provider.value, "unknown", "rejected", time.time() - start_time
            )
            raise InvalidRequestError(e) from e

        logger.info(
            "processing_webhook_event",
            provider=provider.value,
            event_id=event.id,
            event_type=event.type,
        )

        if await self.is_event_processed(event.id):
            logger.info(
                "webhook_event_already_processed",
                event_id=event.id,
                event_type=event.type,
            )
            metrics.record_webhook_event(
                provider.value, event.type, "duplicate", time.time() - start_time
            )
            return {
                "status": "duplicate",
                "event_id": event.id,
                "event_type": event.type,
                "transaction_id": None,
            }

        try:
            result = await self.reconciler.reconcile(provider, event)
        except APIError as e:
            metrics.record_webhook_event(
                provider.value, event.type, e.code.value, time.time() - start_time
            )
            raise

        await self.mark_event_processed(event.id)

        status = "processed" if result.applied else "stale"
        metrics.record_webhook_event(provider.value, event.type, status, time.time() - start_time)

        return {
            "status": status,
            "event_id": event.id,
            "event_type": event.type,
            "transaction_id": result.transaction.transaction_id,
        }
