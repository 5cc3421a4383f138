"""
Unit tests for the Stripe gateway client.
"""
import time
from typing import Any

import pytest
import stripe
from tenacity import wait_none

from online_payments.config import Settings
from online_payments.core.errors import (
    ChargeAlreadyRefunded,
    GatewayError,
    GatewayErrorType,
    IdempotencyKeyReused,
    PaymentError,
)
from online_payments.integrations.stripe_client import CircuitBreaker, StripeClient


@pytest.fixture
def stripe_client(test_settings: Settings) -> StripeClient:
    return StripeClient(test_settings, retry_wait=wait_none())


async def charge(client: StripeClient, **overrides: Any) -> Any:
    values = {
        "amount": 2000,
        "currency": "usd",
        "payment_method": "pm_card_visa",
        "description": "Transaction for payment amount of 2000",
        "transaction_id": "TXN_1",
        "idempotency_key": "TXN_1",
    }
    values.update(overrides)
    return await client.charge(**values)


def raise_error(error: Exception) -> None:
    raise error


PAYMENT_INTENT = {
    "id": "pi_1",
    "object": "payment_intent",
    "status": "succeeded",
    "latest_charge": "ch_1",
    "metadata": {"transaction_id": "TXN_1"},
}


class TestStripeClientCharge:
    """Test suite for StripeClient.charge."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_charge_accepted(self, stripe_client: StripeClient, mocker: Any) -> None:
        create = mocker.patch("stripe.PaymentIntent.create", return_value=PAYMENT_INTENT)

        result = await charge(stripe_client)

        assert result.declined is False
        assert result.provider_fields == {"payment_intent_id": "pi_1", "charge_id": "ch_1"}
        assert result.transaction_id == "TXN_1"
        create.assert_called_once_with(
            amount=2000,
            currency="usd",
            description="Transaction for payment amount of 2000",
            payment_method="pm_card_visa",
            confirm=True,
            automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            metadata={"transaction_id": "TXN_1"},
            idempotency_key="TXN_1",
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_decline_is_a_result(self, stripe_client: StripeClient, mocker: Any) -> None:
        card_error = stripe.CardError("Your card was declined.", None, "card_declined")
        card_error.error = {
            "code": "card_declined",
            "decline_code": "generic_decline",
            "charge": "ch_declined",
            "payment_intent": {"id": "pi_declined", "metadata": {"transaction_id": "TXN_1"}},
        }
        create = mocker.patch("stripe.PaymentIntent.create", side_effect=card_error)

        result = await charge(stripe_client)

        assert result.declined is True
        assert result.decline_code == "card_declined"
        assert result.provider_fields == {
            "payment_intent_id": "pi_declined",
            "charge_id": "ch_declined",
        }
        assert create.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_error_is_retried(
        self, stripe_client: StripeClient, mocker: Any
    ) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create",
            side_effect=[stripe.APIConnectionError("connection reset"), PAYMENT_INTENT],
        )

        result = await charge(stripe_client)

        assert result.provider_fields["payment_intent_id"] == "pi_1"
        assert create.call_count == 2
        # Same idempotency key on every attempt
        assert {c.kwargs["idempotency_key"] for c in create.call_args_list} == {"TXN_1"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, stripe_client: StripeClient, mocker: Any) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create",
            side_effect=stripe.RateLimitError("Too many requests"),
        )

        with pytest.raises(GatewayError) as exc_info:
            await charge(stripe_client)

        assert exc_info.value.error_type == GatewayErrorType.RATE_LIMIT
        assert create.call_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(
        self, stripe_client: StripeClient, mocker: Any
    ) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create",
            side_effect=stripe.InvalidRequestError(
                "No such PaymentMethod: 'pm_bogus'", "payment_method", code="resource_missing"
            ),
        )

        with pytest.raises(GatewayError) as exc_info:
            await charge(stripe_client, payment_method="pm_bogus")

        assert exc_info.value.error_type == GatewayErrorType.PERMANENT
        assert exc_info.value.code == "resource_missing"
        assert isinstance(exc_info.value.original_error, stripe.InvalidRequestError)
        assert create.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout(self, test_settings: Settings, mocker: Any) -> None:
        settings = test_settings.model_copy(
            update={"gateway_timeout_seconds": 0.05, "gateway_retry_max_attempts": 1}
        )
        client = StripeClient(settings, retry_wait=wait_none())

        def slow_create(**kwargs: Any) -> Any:
            time.sleep(0.3)
            return PAYMENT_INTENT

        mocker.patch("stripe.PaymentIntent.create", side_effect=slow_create)

        with pytest.raises(GatewayError) as exc_info:
            await charge(client)

        assert exc_info.value.code == "timeout"
        assert exc_info.value.error_type == GatewayErrorType.TRANSIENT

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_is_not_retried(self, test_settings: Settings, mocker: Any) -> None:
        """A timed-out call may still be running; no second call with the same key."""
        settings = test_settings.model_copy(
            update={"gateway_timeout_seconds": 0.05, "gateway_retry_max_attempts": 3}
        )
        client = StripeClient(settings, retry_wait=wait_none())

        def slow_create(**kwargs: Any) -> Any:
            time.sleep(0.3)
            return PAYMENT_INTENT

        create = mocker.patch("stripe.PaymentIntent.create", side_effect=slow_create)

        with pytest.raises(GatewayError) as exc_info:
            await charge(client)

        assert exc_info.value.code == "timeout"
        assert create.call_count == 1

    @pytest.mark.unit
    def test_sdk_http_timeout_matches_gateway_timeout(
        self, test_settings: Settings, mocker: Any
    ) -> None:
        mocker.patch.object(stripe, "default_http_client", None)
        requests_client = mocker.patch("stripe.RequestsClient")

        StripeClient(test_settings)

        requests_client.assert_called_once_with(timeout=test_settings.gateway_timeout_seconds)
        assert stripe.default_http_client is requests_client.return_value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_idempotency_key_reused(self, stripe_client: StripeClient, mocker: Any) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create",
            side_effect=stripe.IdempotencyError(
                "Keys for idempotent requests can only be used with the same parameters "
                "they were first used with."
            ),
        )

        with pytest.raises(IdempotencyKeyReused):
            await charge(stripe_client, amount=5000, idempotency_key="order-1")

        assert create.call_count == 1
        assert stripe_client.circuit_breaker.failure_count == 0


class TestStripeClientRefund:
    """Test suite for StripeClient.refund."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_refund_reaches_already_refunded_check(
        self, stripe_client: StripeClient, stripe_refunds: Any
    ) -> None:
        first = await stripe_client.refund(charge_handle="ch_1", transaction_id="TXN_1")

        with pytest.raises(ChargeAlreadyRefunded):
            await stripe_client.refund(charge_handle="ch_1", transaction_id="TXN_1")

        assert first.provider_fields["refund_id"] == "re_1"
        assert stripe_refunds.calls == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_within_one_refund_reuses_key(
        self, stripe_client: StripeClient, stripe_refunds: Any
    ) -> None:
        """A lost response is retried with the same key and replayed, not refused."""
        stripe_refunds.lose_next_response = True

        result = await stripe_client.refund(charge_handle="ch_1", transaction_id="TXN_1")

        assert result.provider_fields["refund_id"] == "re_1"
        assert stripe_refunds.calls == 2
        assert len(stripe_refunds.responses) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund(self, stripe_client: StripeClient, mocker: Any) -> None:
        create = mocker.patch(
            "stripe.Refund.create",
            return_value={
                "id": "re_1",
                "object": "refund",
                "charge": "ch_1",
                "payment_intent": "pi_1",
                "status": "succeeded",
            },
        )

        result = await stripe_client.refund(charge_handle="ch_1", transaction_id="TXN_1")

        assert result.provider_fields == {
            "refund_id": "re_1",
            "charge_id": "ch_1",
            "payment_intent_id": "pi_1",
        }
        create.assert_called_once()
        kwargs = create.call_args.kwargs
        assert kwargs["charge"] == "ch_1"
        assert kwargs["metadata"] == {"transaction_id": "TXN_1"}
        assert kwargs["idempotency_key"].startswith("refund_TXN_1_")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_charge_already_refunded(
        self, stripe_client: StripeClient, mocker: Any
    ) -> None:
        create = mocker.patch(
            "stripe.Refund.create",
            side_effect=stripe.InvalidRequestError(
                "Charge ch_1 has already been refunded.", None, code="charge_already_refunded"
            ),
        )

        with pytest.raises(ChargeAlreadyRefunded):
            await stripe_client.refund(charge_handle="ch_1", transaction_id="TXN_1")

        assert create.call_count == 1
        # A business outcome does not trip the breaker
        assert stripe_client.circuit_breaker.failure_count == 0


class TestCircuitBreaker:
    """Test suite for CircuitBreaker."""

    @pytest.mark.unit
    def test_opens_after_threshold(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2)

        def failing() -> None:
            raise stripe.APIConnectionError("down")

        for _ in range(2):
            with pytest.raises(stripe.APIConnectionError):
                breaker.call(failing)

        assert breaker.state == "open"
        with pytest.raises(GatewayError) as exc_info:
            breaker.call(lambda: "ok")
        assert exc_info.value.code == "circuit_open"

    @pytest.mark.unit
    def test_half_open_closes_after_successes(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=0, success_threshold=2)

        with pytest.raises(RuntimeError):
            breaker.call(raise_error, RuntimeError("boom"))
        assert breaker.state == "open"

        time.sleep(0.01)
        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.state == "half_open"
        breaker.call(lambda: "ok")
        assert breaker.state == "closed"

    @pytest.mark.unit
    def test_excluded_exceptions_do_not_count(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, excluded_exceptions=(PaymentError,))

        with pytest.raises(ChargeAlreadyRefunded):
            breaker.call(raise_error, ChargeAlreadyRefunded())

        assert breaker.state == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_circuit_skips_retries(
        self, test_settings: Settings, mocker: Any
    ) -> None:
        breaker = CircuitBreaker(failure_threshold=1)
        breaker.on_failure()
        client = StripeClient(test_settings, circuit_breaker=breaker, retry_wait=wait_none())
        create = mocker.patch("stripe.PaymentIntent.create", return_value=PAYMENT_INTENT)

        with pytest.raises(GatewayError) as exc_info:
            await charge(client)

        assert exc_info.value.code == "circuit_open"
        create.assert_not_called()
