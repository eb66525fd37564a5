import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID

from app.db.base import Base


TRANSACTION_STATUSES = ("initiated", "pending", "processing", "completed", "failed", "cancelled")
CANCELLABLE_TRANSACTION_STATUSES = ("initiated", "pending", "processing")


class PaymentTransaction(Base):
    """Local mirror of a transaction held by the external payment processor."""

    __tablename__ = "payment_transactions"
    __table_args__ = (
        CheckConstraint(
            "status IN (" + ", ".join(f"'{value}'" for value in TRANSACTION_STATUSES) + ")",
            name="ck_payment_transactions_status",
        ),
        CheckConstraint(
            "transaction_type IN ('collection', 'disbursement')",
            name="ck_payment_transactions_type",
        ),
        Index("ix_payment_transactions_loan_status", "loan_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_id = Column(UUID(as_uuid=True), ForeignKey("loans.id", ondelete="CASCADE"), nullable=False)
    loan_payment_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loan_payments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    provider = Column(String(32), nullable=False, default="processor")
    external_transaction_id = Column(String(255), nullable=True, unique=True)
    transaction_type = Column(String(32), nullable=False, default="collection")
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(32), nullable=False, default="initiated")
    provider_data = Column(JSONB, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
