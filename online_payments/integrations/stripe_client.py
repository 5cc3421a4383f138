"""
Stripe gateway client with retry logic and comprehensive error handling.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Idempotent PaymentIntent creation keyed on the transaction
- Card declines returned as results rather than raised
"""
import asyncio
import threading
import time
import uuid
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

import stripe
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from online_payments.config import Settings
from online_payments.core.errors import (
    ChargeAlreadyRefunded,
    GatewayError,
    GatewayErrorType,
    IdempotencyKeyReused,
    PaymentError,
)
from online_payments.core.models import (
    CHARGE_ID_FIELD,
    PAYMENT_INTENT_ID_FIELD,
    REFUND_ID_FIELD,
    TRANSACTION_ID_METADATA_KEY,
    PaymentProvider,
)
from online_payments.integrations.base import ChargeResult, RefundResult
from online_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# provider_fields keys Stripe transactions must carry after each operation.
STRIPE_REQUIRED_FIELDS: Dict[str, Tuple[str, ...]] = {
    "charge": (CHARGE_ID_FIELD, PAYMENT_INTENT_ID_FIELD),
    "refund": (CHARGE_ID_FIELD, PAYMENT_INTENT_ID_FIELD, REFUND_ID_FIELD),
}

ERROR_CODE_CHARGE_ALREADY_REFUNDED = "charge_already_refunded"
ERROR_CODE_CIRCUIT_OPEN = "circuit_open"
ERROR_CODE_TIMEOUT = "timeout"


def stripe_field(obj: Any, name: str) -> Any:
    """Read a field from a Stripe object, a plain dict or None."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def stripe_id(value: Any) -> Optional[str]:
    """Return the id of an expandable field (either an id string or an object)."""
    if value is None or isinstance(value, str):
        return value
    return stripe_field(value, "id")


def compact(fields: Dict[str, Optional[str]]) -> Dict[str, str]:
    return {key: value for key, value in fields.items() if value}


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Prevents cascading failures by temporarily stopping requests
    when consecutive failures exceed a threshold. Exceptions listed in
    ``excluded_exceptions`` are business outcomes and count as successes.
    """

    def __init__(
        self,
        name: str = PaymentProvider.STRIPE.value,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
        excluded_exceptions: Tuple[Type[BaseException], ...] = (),
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Provider name used in logs and metrics
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
            excluded_exceptions: Exceptions that do not count as failures
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.excluded_exceptions = excluded_exceptions
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open
        self._lock = threading.Lock()

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Execute function with circuit breaker protection.

        Raises:
            GatewayError: If circuit is open
        """
        with self._lock:
            if self.state == "open":
                if (
                    self.last_failure_time
                    and time.time() - self.last_failure_time > self.timeout
                ):
                    self._set_state("half_open")
                    self.success_count = 0
                else:
                    raise GatewayError(
                        "Circuit breaker is open",
                        GatewayErrorType.TRANSIENT,
                        code=ERROR_CODE_CIRCUIT_OPEN,
                    )

        try:
            result = func(*args, **kwargs)
        except self.excluded_exceptions:
            self.on_success()
            raise
        except Exception:
            self.on_failure()
            raise

        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        with self._lock:
            self.failure_count = 0
            if self.state == "half_open":
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self._set_state("closed")

    def on_failure(self) -> None:
        """Record failed call."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()
            if self.state == "half_open" or self.failure_count >= self.failure_threshold:
                self._set_state("open")

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.name, state)
        logger.warning(
            "circuit_breaker_state_changed",
            provider=self.name,
            state=state,
            failure_count=self.failure_count,
        )


def _is_retryable(error: BaseException) -> bool:
    # A timed-out attempt may still be running in its worker thread
    return (
        isinstance(error, GatewayError)
        and error.retryable
        and error.code not in (ERROR_CODE_CIRCUIT_OPEN, ERROR_CODE_TIMEOUT)
    )


class StripeClient:
    """
    Stripe implementation of the PaymentGateway protocol.

    Features:
    - Blocking SDK calls run in a worker thread, bounded by a timeout
    - Automatic retry with exponential backoff for transient errors only
    - Circuit breaker pattern
    - Comprehensive error classification
    """

    provider = PaymentProvider.STRIPE

    def __init__(
        self,
        settings: Settings,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_wait: Optional[wait_base] = None,
    ) -> None:
        """
        Initialize Stripe client.

        Args:
            settings: Application settings
            circuit_breaker: Optional circuit breaker
            retry_wait: Optional tenacity wait strategy between retries
        """
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        # Bounds the SDK's own socket waits so worker threads finish
        stripe.default_http_client = stripe.RequestsClient(
            timeout=settings.gateway_timeout_seconds
        )
        self.settings = settings
        self.timeout_seconds = settings.gateway_timeout_seconds
        self.max_attempts = settings.gateway_retry_max_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=16)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            excluded_exceptions=(PaymentError,)
        )

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> GatewayErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            GatewayErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return GatewayErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return GatewayErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.IdempotencyError,
            ),
        ):
            return GatewayErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient; calls carry idempotency keys
            return GatewayErrorType.TRANSIENT

    def _gateway_error(self, operation: str, error: stripe.StripeError) -> GatewayError:
        error_type = self._classify_error(error)
        code = getattr(error, "code", None)

        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=code,
            error_message=str(error),
        )
        metrics.record_gateway_error(self.provider.value, error_type.value)

        return GatewayError(
            f"{operation}: {error}",
            error_type,
            code=code,
            original_error=error,
        )

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        start_time = time.time()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.circuit_breaker.call, func),
                timeout=self.timeout_seconds,
            )
        except stripe.StripeError as e:
            metrics.record_gateway_call(
                self.provider.value, operation, "error", time.time() - start_time
            )
            raise self._gateway_error(operation, e) from e
        except asyncio.TimeoutError as e:
            metrics.record_gateway_call(
                self.provider.value, operation, "timeout", time.time() - start_time
            )
            metrics.record_gateway_error(self.provider.value, GatewayErrorType.TRANSIENT.value)
            logger.error(
                "stripe_api_timeout",
                operation=operation,
                timeout_seconds=self.timeout_seconds,
            )
            raise GatewayError(
                f"{operation}: timed out after {self.timeout_seconds}s",
                GatewayErrorType.TRANSIENT,
                code=ERROR_CODE_TIMEOUT,
                original_error=e,
            ) from e

        metrics.record_gateway_call(
            self.provider.value, operation, "success", time.time() - start_time
        )
        return result

    async def _execute(self, operation: str, func: Callable[[], T]) -> T:
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=self.retry_wait,
            reraise=True,
        )
        return await retrying(self._call, operation, func)

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
        """
        Create and confirm a PaymentIntent.

        Args:
            amount: Amount in minor units
            currency: Currency code (e.g., 'usd')
            payment_method: Stripe PaymentMethod id
            description: Human readable description
            transaction_id: Local transaction id, sent as metadata
            idempotency_key: Idempotency key for preventing duplicates

        Returns:
            ChargeResult: Accepted or declined charge with correlation handles

        Raises:
            IdempotencyKeyReused: If the key was used before with other parameters
            GatewayError: If the charge could not be executed
        """
        logger.info(
            "creating_payment_intent",
            transaction_id=transaction_id,
            amount=amount,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        def _create() -> ChargeResult:
            try:
                intent = stripe.PaymentIntent.create(
                    amount=amount,
                    currency=currency,
                    description=description,
                    payment_method=payment_method,
                    confirm=True,
                    automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                    metadata={TRANSACTION_ID_METADATA_KEY: transaction_id},
                    idempotency_key=idempotency_key,
                )
            except stripe.CardError as e:
                return self._declined_result(e)
            except stripe.IdempotencyError as e:
                raise IdempotencyKeyReused() from e
            return self._accepted_result(intent)

        result = await self._execute("charge", _create)

        missing = [
            key for key in STRIPE_REQUIRED_FIELDS["charge"] if key not in result.provider_fields
        ]
        logger.info(
            "payment_intent_created",
            transaction_id=transaction_id,
            declined=result.declined,
            decline_code=result.decline_code,
            missing_fields=missing or None,
            **result.provider_fields,
        )
        return result

    @staticmethod
    def _accepted_result(intent: Any) -> ChargeResult:
        return ChargeResult(
            provider_fields=compact(
                {
                    PAYMENT_INTENT_ID_FIELD: stripe_id(intent),
                    CHARGE_ID_FIELD: stripe_id(stripe_field(intent, "latest_charge")),
                }
            ),
            transaction_id=stripe_field(
                stripe_field(intent, "metadata"), TRANSACTION_ID_METADATA_KEY
            ),
        )

    @staticmethod
    def _declined_result(error: stripe.CardError) -> ChargeResult:
        details = error.error
        intent = stripe_field(details, "payment_intent")
        charge_id = stripe_field(details, "charge") or stripe_id(
            stripe_field(intent, "latest_charge")
        )

        logger.info(
            "payment_intent_declined",
            error_code=error.code,
            decline_code=stripe_field(details, "decline_code"),
        )

        return ChargeResult(
            provider_fields=compact(
                {
                    PAYMENT_INTENT_ID_FIELD: stripe_id(intent),
                    CHARGE_ID_FIELD: charge_id,
                }
            ),
            declined=True,
            decline_code=error.code or stripe_field(details, "decline_code") or "card_declined",
            transaction_id=stripe_field(
                stripe_field(intent, "metadata"), TRANSACTION_ID_METADATA_KEY
            ),
        )

    async def refund(self, *, charge_handle: str, transaction_id: str) -> RefundResult:
        """
        Create a full refund for a charge.

        Args:
            charge_handle: Stripe Charge id
            transaction_id: Local transaction id, sent as metadata

        Returns:
            RefundResult: Refund correlation handles

        Raises:
            ChargeAlreadyRefunded: If the charge was refunded before
            GatewayError: If refund creation fails
        """
        # One key per refund request: retries of this call are deduplicated,
        # a later request still reaches the already-refunded check
        idempotency_key = f"refund_{transaction_id}_{uuid.uuid4().hex}"
        logger.info(
            "creating_refund",
            transaction_id=transaction_id,
            charge_id=charge_handle,
            idempotency_key=idempotency_key,
        )

        def _create_refund() -> Any:
            try:
                return stripe.Refund.create(
                    charge=charge_handle,
                    metadata={TRANSACTION_ID_METADATA_KEY: transaction_id},
                    idempotency_key=idempotency_key,
                )
            except stripe.InvalidRequestError as e:
                if e.code == ERROR_CODE_CHARGE_ALREADY_REFUNDED:
                    raise ChargeAlreadyRefunded() from e
                raise

        refund = await self._execute("refund", _create_refund)

        result = RefundResult(
            provider_fields=compact(
                {
                    REFUND_ID_FIELD: stripe_id(refund),
                    CHARGE_ID_FIELD: stripe_id(stripe_field(refund, "charge")) or charge_handle,
                    PAYMENT_INTENT_ID_FIELD: stripe_id(stripe_field(refund, "payment_intent")),
                }
            )
        )

        logger.info(
            "refund_created",
            transaction_id=transaction_id,
            status=stripe_field(refund, "status"),
            **result.provider_fields,
        )
        return result
