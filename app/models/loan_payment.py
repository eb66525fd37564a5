import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.base import Base


PAYMENT_STATUSES = (
    "pending",
    "scheduled",
    "authorized",
    "confirmed",
    "paid",
    "failed",
    "cancelled",
    "deferred",
    "manual",
    "rejected",
    "rebate",
)


class LoanPayment(Base):
    """One scheduled installment of a loan's amortization schedule."""

    __tablename__ = "loan_payments"
    __allow_unmapped__ = True
    __table_args__ = (
        CheckConstraint(
            "status IN (" + ", ".join(f"'{value}'" for value in PAYMENT_STATUSES) + ")",
            name="ck_loan_payments_status",
        ),
        CheckConstraint("payment_number IS NULL OR payment_number >= 1", name="ck_loan_payments_number_positive"),
        Index("ix_loan_payments_loan_date", "loan_id", "payment_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    payment_date = Column(Date, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    # principal goes negative on a failed installment (rolled-over interest and fee)
    interest = Column(Numeric(12, 2), nullable=True)
    principal = Column(Numeric(12, 2), nullable=True)
    remaining_balance = Column(Numeric(12, 2), nullable=True)
    payment_number = Column(Integer, nullable=True)
    status = Column(String(32), nullable=False, default="pending", index=True)
    notes = Column(Text, nullable=True)
    error_code = Column(String(32), nullable=True)
    external_transaction_id = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    loan = relationship("Loan", back_populates="payments")
