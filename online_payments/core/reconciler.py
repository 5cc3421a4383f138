"""
Webhook event reconciliation.

Maps a verified provider event onto the local transaction it concerns and
applies the implied lifecycle update through the store. Events arrive at
least once and out of order; the store's coalescing update makes
re-delivery a no-op and drops stale transitions.
"""
from dataclasses import dataclass
from typing import Mapping, Optional

import structlog

from online_payments.core.errors import (
    InternalServerError,
    InvalidRequestError,
    ResourceNotFoundError,
    StoreError,
    TransactionNotFound,
    UnsupportedEvent,
)
from online_payments.core.lifecycle import satisfies
from online_payments.core.models import (
    EventInterpreter,
    EventOutcome,
    PaymentProvider,
    ProviderEvent,
    Transaction,
)
from online_payments.database.store import TransactionStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    transaction: Transaction
    applied: bool  # False when the event was stale and ignored


class EventReconciler:
    """Applies provider events to stored transactions."""

    def __init__(
        self,
        store: TransactionStore,
        event_tables: Mapping[PaymentProvider, Mapping[str, EventInterpreter]],
        debug: bool = False,
    ):
        """
        Initialize the reconciler.

        Args:
            store: Transaction store
            event_tables: Read-only allow-list of event interpreters per provider
            debug: Include internal error details in messages
        """
        self._store = store
        self._event_tables = event_tables
        self._debug = debug

    async def reconcile(self, provider: PaymentProvider, event: ProviderEvent) -> ReconcileResult:
        """
        Reconcile a verified event with the local transaction.

        Args:
            provider: Provider that sent the event
            event: Verified event

        Returns:
            ReconcileResult: Transaction as stored, and whether the event moved it

        Raises:
            InvalidRequestError: If the event type is not handled
            ResourceNotFoundError: If no local transaction owns the event
            InternalServerError: If the store fails
        """
        interpreter = self._event_tables.get(provider, {}).get(event.type)
        if interpreter is None:
            logger.info(
                "webhook_event_unsupported",
                provider=provider.value,
                event_id=event.id,
                event_type=event.type,
            )
            raise InvalidRequestError(UnsupportedEvent(f"unsupported event: {event.type}"))

        outcome = interpreter(event)

        try:
            transaction_id = await self._resolve_owner(outcome)
            if transaction_id is None:
                handle = outcome.correlation[0][1] if outcome.correlation else event.id
                logger.warning(
                    "webhook_event_unmatched",
                    provider=provider.value,
                    event_id=event.id,
                    event_type=event.type,
                    correlation=dict(outcome.correlation),
                )
                raise ResourceNotFoundError(
                    TransactionNotFound(f"no transaction for {handle}"), handle
                )

            transaction = await self._store.update(transaction_id, outcome.update)
        except TransactionNotFound as e:
            raise ResourceNotFoundError(e, outcome.transaction_id or "") from e
        except StoreError as e:
            logger.error(
                "webhook_reconcile_store_failed",
                event_id=event.id,
                event_type=event.type,
                error=str(e),
            )
            raise InternalServerError(e, debug=self._debug) from e

        applied = satisfies(transaction, outcome.update)
        logger.info(
            "webhook_event_reconciled",
            provider=provider.value,
            event_id=event.id,
            event_type=event.type,
            transaction_id=transaction.transaction_id,
            status=transaction.status.value,
            type=transaction.type.value,
            applied=applied,
        )
        return ReconcileResult(transaction=transaction, applied=applied)

    async def _resolve_owner(self, outcome: EventOutcome) -> Optional[str]:
        """Find the local transaction id an event refers to."""
        if outcome.transaction_id:
            return outcome.transaction_id

        for key, value in outcome.correlation:
            transaction = await self._store.find_by_provider_field(key, value)
            if transaction is not None:
                return transaction.transaction_id
        return None
