import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.base import Base


class Loan(Base):
    __tablename__ = "loans"
    __allow_unmapped__ = True
    __table_args__ = (
        CheckConstraint("principal_amount >= 0", name="ck_loans_principal_nonneg"),
        CheckConstraint("remaining_balance >= 0", name="ck_loans_remaining_balance_nonneg"),
        CheckConstraint("interest_rate IS NULL OR interest_rate >= 0", name="ck_loans_interest_rate_nonneg"),
        CheckConstraint(
            "status IN ('pending_disbursement', 'active', 'completed', 'defaulted', 'cancelled')",
            name="ck_loans_status",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    application_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    principal_amount = Column(Numeric(12, 2), nullable=False, default=0)
    interest_rate = Column(Numeric(5, 2), nullable=True)
    remaining_balance = Column(Numeric(12, 2), nullable=False, default=0)
    disbursement_date = Column(Date, nullable=True)
    status = Column(String(32), nullable=False, default="pending_disbursement", index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    user = relationship("User", back_populates="loans")
    payments = relationship(
        "LoanPayment",
        back_populates="loan",
        cascade="all, delete-orphan",
        order_by="LoanPayment.payment_date",
    )
    contracts = relationship("LoanContract", back_populates="loan", cascade="all, delete-orphan")
