"""
Transaction lifecycle precedence and coalescing merge.

Webhooks are delivered at least once and in no particular order, and a
refund request can race a webhook for the same transaction. Every state is
given a rank; the store applies ``merge_update`` under a row lock so that:

- a transition to a lower rank is stale and ignored,
- a different state of the same rank is ignored (the first terminal outcome
  of an operation wins), except that a succeeded refund may still fail,
- re-applying the current state is a no-op,
- correlation handles are merged even when the transition is ignored.
"""
from typing import Tuple

from online_payments.core.models import (
    ProviderFields,
    Transaction,
    TransactionStatus,
    TransactionType,
    TransactionUpdate,
)

_RANKS = {
    (TransactionType.CHARGE, TransactionStatus.PENDING): 0,
    (TransactionType.CHARGE, TransactionStatus.SUCCEEDED): 1,
    (TransactionType.CHARGE, TransactionStatus.FAILURE): 1,
    (TransactionType.REFUND, TransactionStatus.PENDING): 2,
    (TransactionType.REFUND, TransactionStatus.SUCCEEDED): 3,
    (TransactionType.REFUND, TransactionStatus.FAILURE): 3,
}

# Same-rank moves a provider can still report after a terminal state.
# Stripe can fail a refund it first reported as succeeded.
_LATE_TRANSITIONS = {
    (
        (TransactionType.REFUND, TransactionStatus.SUCCEEDED),
        (TransactionType.REFUND, TransactionStatus.FAILURE),
    ),
}


def rank(type_: TransactionType, status: TransactionStatus) -> int:
    return _RANKS[(type_, status)]


def is_transition_allowed(
    current: Transaction, type_: TransactionType, status: TransactionStatus
) -> bool:
    """Check whether moving ``current`` to ``(type_, status)`` is allowed."""
    if (current.type, current.status) == (type_, status):
        return True
    if ((current.type, current.status), (type_, status)) in _LATE_TRANSITIONS:
        return True
    return rank(type_, status) > rank(current.type, current.status)


def merge_provider_fields(current: ProviderFields, incoming: ProviderFields) -> ProviderFields:
    """Add new handles, keeping every handle already recorded."""
    merged = dict(current)
    for key, value in incoming.items():
        if value in (None, ""):
            continue
        if not merged.get(key):
            merged[key] = value
    return merged


def merge_update(current: Transaction, changes: TransactionUpdate) -> Tuple[Transaction, bool]:
    """
    Apply a coalescing update to a transaction.

    Args:
        current: Persisted transaction
        changes: Fields to change

    Returns:
        Tuple[Transaction, bool]: Merged transaction, and whether the
        status/type transition was accepted
    """
    target_type = changes.type or current.type
    target_status = changes.status or current.status

    values = {
        "provider_fields": merge_provider_fields(current.provider_fields, changes.provider_fields)
    }

    accepted = is_transition_allowed(current, target_type, target_status)
    if accepted:
        values["type"] = target_type
        values["status"] = target_status
        if target_status == TransactionStatus.FAILURE:
            if changes.failure_reason is not None:
                values["failure_reason"] = changes.failure_reason
        else:
            values["failure_reason"] = None

    return current.model_copy(update=values), accepted


def satisfies(transaction: Transaction, changes: TransactionUpdate) -> bool:
    """Check whether ``transaction`` is already in the state ``changes`` asks for."""
    if changes.type is not None and transaction.type != changes.type:
        return False
    if changes.status is not None and transaction.status != changes.status:
        return False
    return True
