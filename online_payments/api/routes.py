"""
API routes for payment processing.

Services are created once per application and kept on ``app.state``;
routes reach them through the dependency getters below. Errors from the
core are ``APIError`` instances and are rendered by the handler in
``online_payments.api.main``.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from online_payments.core.payment_processor import PaymentProcessor
from online_payments.integrations.webhook_handler import WebhookHandler
from online_payments.monitoring.health import HealthCheck

from .schemas import (
    ChargePaymentRequest,
    ErrorResponse,
    HealthCheckResponse,
    TransactionResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/payments", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def get_payment_processor(request: Request) -> PaymentProcessor:
    return request.app.state.payment_processor


def get_webhook_handler(request: Request) -> WebhookHandler:
    return request.app.state.webhook_handler


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check


@payment_router.post(
    "",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Charge a payment",
    description="Charge a payment method and record the transaction",
)
async def process_payment(
    body: ChargePaymentRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> TransactionResponse:
    """
    Charge a payment method.

    A declined card is not an error: the transaction is recorded with
    status ``failure``. Retrying with the same ``Idempotency-Key`` returns
    the original transaction.
    """
    logger.info(
        "api_process_payment_request",
        amount=body.amount,
        currency=body.currency,
        idempotency_key=idempotency_key,
    )

    transaction = await processor.process_payment(body.to_charge_request(idempotency_key))
    return TransactionResponse.from_transaction(transaction)


@payment_router.get(
    "/{transaction_id}",
    response_model=TransactionResponse,
    responses=ERROR_RESPONSES,
    summary="Get a payment",
    description="Get the stored transaction",
)
async def query_payment(
    transaction_id: str,
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> TransactionResponse:
    transaction = await processor.query_payment(transaction_id)
    return TransactionResponse.from_transaction(transaction)


@payment_router.post(
    "/{transaction_id}/refunds",
    response_model=TransactionResponse,
    responses=ERROR_RESPONSES,
    summary="Refund a payment",
    description="Refund a charged payment in full",
)
async def refund_payment(
    transaction_id: str,
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> TransactionResponse:
    logger.info("api_refund_payment_request", transaction_id=transaction_id)

    transaction = await processor.refund_payment(transaction_id)
    return TransactionResponse.from_transaction(transaction)


@webhook_router.post(
    "/{provider}/events",
    response_model=WebhookResponse,
    responses=ERROR_RESPONSES,
    summary="Provider webhook endpoint",
    description="Handle provider webhook events",
)
async def provider_webhook(
    provider: str,
    request: Request,
    stripe_signature: str = Header(default="", alias="Stripe-Signature"),
    handler: WebhookHandler = Depends(get_webhook_handler),
) -> Dict[str, Any]:
    """
    Handle provider webhook events.

    Verifies the signature on the raw body, then reconciles the event
    with deduplication.
    """
    body = await request.body()
    logger.info("api_webhook_received", provider=provider, payload_bytes=len(body))

    return await handler.handle(provider, body, stripe_signature)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    summary="Liveness check",
    description="Kubernetes liveness endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
    description="Kubernetes readiness endpoint",
)
async def readiness(
    response: Response, health_check: HealthCheck = Depends(get_health_check)
) -> Dict[str, Any]:
    """Readiness check endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
