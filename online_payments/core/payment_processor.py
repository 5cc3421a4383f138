"""
Main payment processor.

Orchestrates the charge flow:
1. Validate input
2. Check the caller's idempotency key
3. Assign the transaction id
4. Call the gateway (id travels as metadata)
5. Persist the outcome once

Query and refund read and advance the same record. Every failure leaves
this module wrapped in exactly one APIError classification.
"""
import time
import uuid
from typing import Optional

import structlog

from online_payments.core.errors import (
    APIError,
    ChargeAlreadyRefunded,
    GatewayError,
    IdempotencyKeyReused,
    InternalServerError,
    InvalidRequestError,
    MissingChargeHandle,
    MissingTransactionID,
    PaymentValidationError,
    ResourceNotFoundError,
    StoreError,
    TransactionNotFound,
    UnsupportedProvider,
)
from online_payments.core.lifecycle import satisfies
from online_payments.core.models import (
    ChargeRequest,
    PaymentProvider,
    Transaction,
    TransactionStatus,
    TransactionType,
    TransactionUpdate,
)
from online_payments.core.validation import validate_charge_request
from online_payments.database.store import TransactionStore
from online_payments.integrations.providers import ProviderAdapter, ProviderRegistry
from online_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def new_transaction_id() -> str:
    return f"TXN_{uuid.uuid4().hex.upper()}"


class PaymentProcessor:
    """
    Main payment processing orchestrator.

    Handles the charge, query and refund operations with proper error
    classification. Holds no mutable state; the store is the only shared state.
    """

    def __init__(
        self,
        store: TransactionStore,
        providers: ProviderRegistry,
        default_provider: PaymentProvider = PaymentProvider.STRIPE,
        debug: bool = False,
    ):
        """
        Initialize payment processor.

        Args:
            store: Transaction store
            providers: Provider registry
            default_provider: Provider used for new charges
            debug: Include internal error details in messages
        """
        self.store = store
        self.providers = providers
        self.default_provider = default_provider
        self.debug = debug

        logger.info("payment_processor_initialized", default_provider=default_provider.value)

    def _adapter(self, provider: PaymentProvider) -> ProviderAdapter:
        adapter = self.providers.get(provider)
        if adapter is None:
            raise InternalServerError(
                UnsupportedProvider(f"unsupported provider: {provider.value}"), debug=self.debug
            )
        return adapter

    async def process_payment(self, request: ChargeRequest) -> Transaction:
        """
        Charge a payment method and record the transaction.

        Args:
            request: Charge request

        Returns:
            Transaction: Persisted transaction (pending, or failure on a decline)

        Raises:
            InvalidRequestError: If the request fails validation or reuses an
                idempotency key with a different amount or currency
            InternalServerError: If the gateway or the store fails
        """
        start_time = time.time()
        try:
            transaction = await self._charge(request)
        except APIError as e:
            metrics.record_payment_operation("charge", e.code.value, time.time() - start_time)
            raise

        metrics.record_payment_operation(
            "charge", transaction.status.value, time.time() - start_time
        )
        return transaction

    async def _charge(self, request: ChargeRequest) -> Transaction:
        try:
            request = validate_charge_request(request)
        except PaymentValidationError as e:
            logger.info("charge_rejected", reason=str(e), amount=request.amount)
            raise InvalidRequestError(e) from e

        existing = await self._find_by_idempotency_key(request.idempotency_key)
        if existing is not None:
            if (existing.amount, existing.currency) != (request.amount, request.currency):
                logger.info(
                    "charge_idempotency_key_reused",
                    transaction_id=existing.transaction_id,
                    idempotency_key=request.idempotency_key,
                )
                raise InvalidRequestError(IdempotencyKeyReused())
            logger.info(
                "charge_idempotent_replay",
                transaction_id=existing.transaction_id,
                idempotency_key=request.idempotency_key,
            )
            return existing

        adapter = self._adapter(self.default_provider)
        transaction_id = new_transaction_id()

        log = logger.bind(transaction_id=transaction_id, provider=adapter.provider.value)
        log.info(
            "processing_charge",
            amount=request.amount,
            currency=request.currency,
            idempotency_key=request.idempotency_key,
        )

        try:
            result = await adapter.gateway.charge(
                amount=request.amount,
                currency=request.currency,
                payment_method=request.payment_method,
                description=request.description,
                transaction_id=transaction_id,
                idempotency_key=request.idempotency_key or transaction_id,
            )
        except IdempotencyKeyReused as e:
            log.info("charge_rejected", reason=str(e))
            raise InvalidRequestError(e) from e
        except GatewayError as e:
            log.error(
                "charge_gateway_failed",
                error_type=e.error_type.value,
                error_code=e.code,
                error=str(e),
            )
            raise InternalServerError(e, debug=self.debug) from e

        if result.transaction_id and result.transaction_id != transaction_id:
            # Idempotent replay of an earlier attempt: keep the id the gateway knows
            log.info("charge_replayed", original_transaction_id=result.transaction_id)
            transaction_id = result.transaction_id
            log = log.bind(transaction_id=transaction_id)

        if result.declined:
            status = TransactionStatus.FAILURE
            failure_reason = result.decline_code
        else:
            status = TransactionStatus.PENDING
            failure_reason = None

        transaction = Transaction(
            transaction_id=transaction_id,
            status=status,
            type=TransactionType.CHARGE,
            amount=request.amount,
            currency=request.currency,
            description=request.description,
            failure_reason=failure_reason,
            provider=adapter.provider,
            provider_fields=result.provider_fields,
            idempotency_key=request.idempotency_key,
        )

        try:
            stored = await self.store.insert(transaction)
        except StoreError as e:
            existing = await self._find_existing(transaction_id, request.idempotency_key)
            if existing is not None:
                log.info("charge_already_recorded", status=existing.status.value)
                return existing

            # The gateway charged but nothing is recorded locally
            log.error(
                "charge_persist_failed",
                error=str(e),
                amount=request.amount,
                currency=request.currency,
                **result.provider_fields,
            )
            raise InternalServerError(e, debug=self.debug) from e

        metrics.record_charge_amount(stored.amount)
        log.info(
            "charge_recorded",
            status=stored.status.value,
            failure_reason=stored.failure_reason,
            **stored.provider_fields,
        )
        return stored

    async def _find_by_idempotency_key(self, idempotency_key: Optional[str]) -> Optional[Transaction]:
        if not idempotency_key:
            return None
        try:
            return await self.store.find_by_idempotency_key(idempotency_key)
        except StoreError as e:
            raise InternalServerError(e, debug=self.debug) from e

    async def _find_existing(
        self, transaction_id: str, idempotency_key: Optional[str]
    ) -> Optional[Transaction]:
        """Look up a row a concurrent or earlier attempt already inserted."""
        existing = await self._find_by_idempotency_key(idempotency_key)
        if existing is not None:
            return existing
        try:
            return await self.store.get(transaction_id)
        except TransactionNotFound:
            return None
        except StoreError as e:
            raise InternalServerError(e, debug=self.debug) from e

    async def query_payment(self, transaction_id: str) -> Transaction:
        """
        Get the stored transaction.

        Raises:
            InvalidRequestError: If the id is empty
            ResourceNotFoundError: If no such transaction exists
            InternalServerError: If the store fails
        """
        start_time = time.time()
        try:
            transaction = await self._get(transaction_id)
        except APIError as e:
            metrics.record_payment_operation("query", e.code.value, time.time() - start_time)
            raise

        metrics.record_payment_operation("query", "found", time.time() - start_time)
        return transaction

    async def _get(self, transaction_id: str) -> Transaction:
        if not transaction_id:
            raise InvalidRequestError(MissingTransactionID())

        try:
            return await self.store.get(transaction_id)
        except TransactionNotFound as e:
            raise ResourceNotFoundError(e, transaction_id) from e
        except StoreError as e:
            raise InternalServerError(e, debug=self.debug) from e

    async def refund_payment(self, transaction_id: str) -> Transaction:
        """
        Refund a previously charged transaction in full.

        Args:
            transaction_id: Transaction to refund

        Returns:
            Transaction: Transaction as stored after the refund was requested

        Raises:
            InvalidRequestError: If the id is empty or the charge was already refunded
            ResourceNotFoundError: If no such transaction exists
            InternalServerError: If the charge handle is missing, or the gateway
                or the store fails
        """
        start_time = time.time()
        try:
            transaction = await self._refund(transaction_id)
        except APIError as e:
            metrics.record_payment_operation("refund", e.code.value, time.time() - start_time)
            raise

        metrics.record_payment_operation(
            "refund", transaction.status.value, time.time() - start_time
        )
        return transaction

    async def _refund(self, transaction_id: str) -> Transaction:
        transaction = await self._get(transaction_id)
        log = logger.bind(transaction_id=transaction_id, provider=transaction.provider.value)

        charge_handle = transaction.charge_handle
        if not charge_handle:
            log.error("refund_missing_charge_handle", status=transaction.status.value)
            raise InternalServerError(MissingChargeHandle(), debug=self.debug)

        adapter = self._adapter(transaction.provider)
        log.info("processing_refund", charge_id=charge_handle)

        try:
            result = await adapter.gateway.refund(
                charge_handle=charge_handle, transaction_id=transaction_id
            )
        except ChargeAlreadyRefunded as e:
            log.info("refund_rejected", reason=str(e))
            raise InvalidRequestError(e) from e
        except GatewayError as e:
            log.error(
                "refund_gateway_failed",
                error_type=e.error_type.value,
                error_code=e.code,
                error=str(e),
            )
            raise InternalServerError(e, debug=self.debug) from e

        changes = TransactionUpdate(
            status=TransactionStatus.PENDING,
            type=TransactionType.REFUND,
            provider_fields=result.provider_fields,
        )

        try:
            updated = await self.store.update(transaction_id, changes)
        except TransactionNotFound as e:
            raise ResourceNotFoundError(e, transaction_id) from e
        except StoreError as e:
            log.error("refund_persist_failed", error=str(e), **result.provider_fields)
            raise InternalServerError(e, debug=self.debug) from e

        if not satisfies(updated, changes):
            # A webhook already moved the record past refund/pending
            log.info(
                "refund_update_superseded",
                status=updated.status.value,
                type=updated.type.value,
            )

        log.info("refund_recorded", status=updated.status.value, **updated.provider_fields)
        return updated
