"""
Transaction store.

The store is the only shared state in the service. Charges insert, the
refund flow and webhooks update; both update paths go through
``SQLTransactionStore.update``, which locks the row, merges the partial
update with the lifecycle precedence rules and returns the row as committed.
"""
from typing import Optional, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from online_payments.core.errors import StoreError, TransactionNotFound
from online_payments.core.lifecycle import merge_update
from online_payments.core.models import Transaction, TransactionUpdate
from online_payments.database.models import TransactionRecord

logger = structlog.get_logger(__name__)


class TransactionStore(Protocol):
    """Persistence operations the payments core relies on."""

    async def insert(self, transaction: Transaction) -> Transaction:
        ...

    async def get(self, transaction_id: str) -> Transaction:
        """Raises TransactionNotFound when absent."""
        ...

    async def update(self, transaction_id: str, changes: TransactionUpdate) -> Transaction:
        """Coalescing update; returns the row as committed."""
        ...

    async def find_by_provider_field(self, key: str, value: str) -> Optional[Transaction]:
        ...

    async def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        ...


class SQLTransactionStore:
    """SQLAlchemy implementation of TransactionStore."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def insert(self, transaction: Transaction) -> Transaction:
        record = TransactionRecord.from_model(transaction)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(record)
        except SQLAlchemyError as e:
            logger.error(
                "transaction_insert_failed",
                transaction_id=transaction.transaction_id,
                error=str(e),
            )
            raise StoreError(f"inserting transaction: {e}") from e

        logger.info(
            "transaction_inserted",
            transaction_id=transaction.transaction_id,
            status=transaction.status.value,
        )
        return record.to_model()

    async def get(self, transaction_id: str) -> Transaction:
        try:
            async with self._session_factory() as session:
                record = await session.get(TransactionRecord, transaction_id)
        except SQLAlchemyError as e:
            raise StoreError(f"getting transaction: {e}") from e

        if record is None:
            raise TransactionNotFound(f"transaction not found: {transaction_id}")
        return record.to_model()

    async def update(self, transaction_id: str, changes: TransactionUpdate) -> Transaction:
        """
        Apply a coalescing update under a row lock.

        The row is read with ``SELECT ... FOR UPDATE``, merged with
        ``merge_update`` and written back in the same database transaction,
        so a refund and a webhook for the same id serialize instead of
        overwriting each other.

        Args:
            transaction_id: Transaction to update
            changes: Fields to change

        Returns:
            Transaction: The row as committed

        Raises:
            TransactionNotFound: If no such transaction exists
            StoreError: If the database fails
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    stmt = (
                        select(TransactionRecord)
                        .where(TransactionRecord.transaction_id == transaction_id)
                        .with_for_update()
                    )
                    result = await session.execute(stmt)
                    record = result.scalar_one_or_none()
                    if record is None:
                        raise TransactionNotFound(f"transaction not found: {transaction_id}")

                    current = record.to_model()
                    merged, accepted = merge_update(current, changes)
                    if merged != current:
                        record.apply(merged)
        except SQLAlchemyError as e:
            logger.error(
                "transaction_update_failed",
                transaction_id=transaction_id,
                error=str(e),
            )
            raise StoreError(f"updating transaction: {e}") from e

        if not accepted:
            logger.info(
                "transaction_transition_ignored",
                transaction_id=transaction_id,
                current_type=current.type.value,
                current_status=current.status.value,
                requested_type=changes.type.value if changes.type else None,
                requested_status=changes.status.value if changes.status else None,
            )

        return record.to_model()

    async def find_by_provider_field(self, key: str, value: str) -> Optional[Transaction]:
        try:
            async with self._session_factory() as session:
                stmt = (
                    select(TransactionRecord)
                    .where(TransactionRecord.additional_fields[key].as_string() == value)
                    .limit(1)
                )
                result = await session.execute(stmt)
                record = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StoreError(f"finding transaction by {key}: {e}") from e

        return record.to_model() if record is not None else None

    async def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        try:
            async with self._session_factory() as session:
                stmt = select(TransactionRecord).where(
                    TransactionRecord.idempotency_key == idempotency_key
                )
                result = await session.execute(stmt)
                record = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StoreError(f"finding transaction by idempotency key: {e}") from e

        return record.to_model() if record is not None else None
