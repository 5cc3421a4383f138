"""Charge request validation."""
from online_payments.core.errors import InvalidAmount, MissingCurrency, MissingPaymentMethod
from online_payments.core.models import ChargeRequest


def default_description(amount: int) -> str:
    return f"Transaction for payment amount of {amount}"


def validate_charge_request(request: ChargeRequest) -> ChargeRequest:
    """
    Validate and normalize a charge request.

    Checks run in order (amount, currency, payment method) and the first
    failure is raised. Currency is trimmed and lower-cased, the form the
    gateway echoes back. An empty description is replaced by a
    deterministic one built from the amount.

    Args:
        request: Incoming charge request

    Returns:
        ChargeRequest: Normalized copy of the request

    Raises:
        InvalidAmount: If amount is zero or negative
        MissingCurrency: If currency is empty
        MissingPaymentMethod: If the payment method reference is empty
    """
    if request.amount <= 0:
        raise InvalidAmount()

    currency = request.currency.strip().lower()
    if not currency:
        raise MissingCurrency()

    payment_method = request.payment_method.strip()
    if not payment_method:
        raise MissingPaymentMethod()

    description = request.description.strip() or default_description(request.amount)

    return request.model_copy(
        update={
            "currency": currency,
            "payment_method": payment_method,
            "description": description,
        }
    )
