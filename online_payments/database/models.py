"""SQLAlchemy database models for the transaction store."""
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import JSON, CheckConstraint, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from online_payments.core.models import (
    PaymentProvider,
    Transaction,
    TransactionStatus,
    TransactionType,
)

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class TransactionRecord(Base):
    """
    Transaction history table.

    One row per logical payment, mutated in place as the charge is confirmed,
    declined or refunded. ``additional_fields`` holds provider correlation
    handles and is the join key for webhooks that do not echo the
    transaction id.
    """

    __tablename__ = "transactions_history"

    transaction_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    additional_fields: Mapped[Dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    idempotency_key: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'succeeded', 'failure')",
            name="valid_status",
        ),
        CheckConstraint("type IN ('charge', 'refund')", name="valid_type"),
        Index("idx_transactions_provider_status", "payment_provider", "status"),
    )

    @classmethod
    def from_model(cls, transaction: Transaction) -> "TransactionRecord":
        now = utcnow()
        return cls(
            transaction_id=transaction.transaction_id,
            status=transaction.status.value,
            type=transaction.type.value,
            description=transaction.description,
            failure_reason=transaction.failure_reason,
            payment_provider=transaction.provider.value,
            amount=transaction.amount,
            currency=transaction.currency,
            additional_fields=dict(transaction.provider_fields),
            idempotency_key=transaction.idempotency_key,
            created_at=transaction.created_at or now,
            updated_at=transaction.updated_at or now,
        )

    def to_model(self) -> Transaction:
        return Transaction(
            transaction_id=self.transaction_id,
            status=TransactionStatus(self.status),
            type=TransactionType(self.type),
            amount=self.amount,
            currency=self.currency,
            description=self.description,
            failure_reason=self.failure_reason,
            provider=PaymentProvider(self.payment_provider),
            provider_fields=dict(self.additional_fields or {}),
            idempotency_key=self.idempotency_key,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def apply(self, transaction: Transaction) -> None:
        """Copy the mutable fields of ``transaction`` onto this row."""
        self.status = transaction.status.value
        self.type = transaction.type.value
        self.failure_reason = transaction.failure_reason
        self.additional_fields = dict(transaction.provider_fields)
        self.updated_at = utcnow()

    def __repr__(self) -> str:
        """String representation of TransactionRecord."""
        return (
            f"<TransactionRecord(transaction_id={self.transaction_id}, "
            f"type={self.type}, status={self.status}, amount={self.amount})>"
        )
