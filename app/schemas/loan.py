from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.common import PaymentFrequency, normalize_frequency


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    AUTHORIZED = "authorized"
    CONFIRMED = "confirmed"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DEFERRED = "deferred"
    MANUAL = "manual"
    REJECTED = "rejected"
    REBATE = "rebate"


ACTIVE_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.SCHEDULED, PaymentStatus.AUTHORIZED})
SUCCESS_STATUSES = frozenset({PaymentStatus.CONFIRMED, PaymentStatus.PAID})
SETTLED_STATUSES = frozenset(
    {PaymentStatus.CONFIRMED, PaymentStatus.PAID, PaymentStatus.MANUAL, PaymentStatus.REBATE}
)
UPDATEABLE_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.CANCELLED})
PRESERVED_STATUSES = frozenset(
    {
        PaymentStatus.DEFERRED,
        PaymentStatus.MANUAL,
        PaymentStatus.PAID,
        PaymentStatus.CONFIRMED,
        PaymentStatus.FAILED,
        PaymentStatus.REJECTED,
        PaymentStatus.REBATE,
    }
)


class LoanStatus(str, Enum):
    PENDING_DISBURSEMENT = "pending_disbursement"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"
    CANCELLED = "cancelled"


class ContractFees(BaseModel):
    model_config = ConfigDict(extra="ignore")

    failed_payment_fee: Decimal | None = None

    @field_validator("failed_payment_fee", mode="before")
    @classmethod
    def _blank_fee(cls, value):
        if value in ("", None):
            return None
        return value


class ContractTerms(BaseModel):
    """Typed view over the ``loan_contracts.contract_terms`` JSON document."""

    model_config = ConfigDict(extra="ignore")

    payment_frequency: PaymentFrequency | None = None
    payment_amount: Decimal | None = None
    fees: ContractFees = Field(default_factory=ContractFees)

    @field_validator("payment_frequency", mode="before")
    @classmethod
    def _normalize_frequency(cls, value):
        return normalize_frequency(value)

    @field_validator("payment_amount", mode="before")
    @classmethod
    def _blank_amount(cls, value):
        if value in ("", None):
            return None
        return value

    @field_validator("fees", mode="before")
    @classmethod
    def _null_fees(cls, value):
        return value or {}


class LoanPaymentDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True, json_encoders={Decimal: lambda value: str(value)})

    id: UUID
    loan_id: UUID
    payment_date: date
    amount: Decimal
    interest: Decimal | None = None
    principal: Decimal | None = None
    remaining_balance: Decimal | None = None
    payment_number: int | None = None
    status: str
    notes: str | None = None
    error_code: str | None = None
    external_transaction_id: str | None = None


class LoanPaymentStatusSummary(BaseModel):
    model_config = ConfigDict(json_encoders={Decimal: lambda value: str(value)})

    next_payment_id: UUID | None = None
    next_payment_date: date | None = None
    next_payment_amount: Decimal | None = None
    missed_payment_count: int
    missed_payment_amount_total: Decimal
    missed_payment_dates: list[date]
    failed_payment_count: int
    paid_total: Decimal
    scheduled_remaining_total: Decimal


class LoanPaymentListResponse(BaseModel):
    model_config = ConfigDict(json_encoders={Decimal: lambda value: str(value)})

    loan_id: UUID
    remaining_balance: Decimal
    total: int
    items: list[LoanPaymentDTO]
    summary: LoanPaymentStatusSummary


class PaymentStatusUpdateRequest(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    status: PaymentStatus
    payment_frequency: PaymentFrequency | None = None
    failed_payment_fee: Decimal | None = Field(default=None, ge=0)


class SimulateFailedPaymentRequest(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    payment_frequency: PaymentFrequency | None = None
    failed_payment_fee: Decimal | None = Field(default=None, ge=0)


class PaymentStatusUpdateResponse(BaseModel):
    model_config = ConfigDict(json_encoders={Decimal: lambda value: str(value)})

    loan_id: UUID
    loan_remaining_balance: Decimal
    payment: LoanPaymentDTO


class ScheduleEntryDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True, json_encoders={Decimal: lambda value: str(value)})

    payment_number: int
    due_date: date
    amount: Decimal
    interest: Decimal
    principal: Decimal
    remaining_balance: Decimal


class ScheduleUpdateDTO(BaseModel):
    payment_id: UUID
    entry: ScheduleEntryDTO


class ReconciliationPlanDTO(BaseModel):
    updates: list[ScheduleUpdateDTO]
    inserts: list[ScheduleEntryDTO]
    deletes: list[UUID]


class RecalculationPreviewRequest(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    first_due_date: date
    remaining_balance: Decimal | None = Field(default=None, ge=0)
    payment_amount: Decimal | None = Field(default=None, gt=0)
    payment_frequency: PaymentFrequency | None = None
    annual_interest_rate: Decimal | None = Field(default=None, ge=0)
    max_periods: int | None = Field(default=None, ge=1)


class RecalculationPreviewResponse(BaseModel):
    model_config = ConfigDict(use_enum_values=True, json_encoders={Decimal: lambda value: str(value)})

    loan_id: UUID
    remaining_balance: Decimal
    payment_amount: Decimal
    payment_frequency: PaymentFrequency
    annual_interest_rate: Decimal
    first_due_date: date
    entries: list[ScheduleEntryDTO]
    plan: ReconciliationPlanDTO


class BalanceAdjustmentRequest(BaseModel):
    payment_date: date
    amount: Decimal = Field(gt=0)
    notes: str | None = Field(default=None, max_length=2000)
    mark_loan_as_paid: bool = False


class ScheduleCountsDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    updated: int
    inserted: int
    deleted: int


class BalanceAdjustmentResponse(BaseModel):
    model_config = ConfigDict(json_encoders={Decimal: lambda value: str(value)})

    loan_id: UUID
    remaining_balance: Decimal
    loan_status: str
    payment: LoanPaymentDTO
    schedule: ScheduleCountsDTO | None = None


class LoanModificationRequest(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    action: Literal["modify", "stop"] = "modify"
    payment_amount: Decimal | None = Field(default=None, gt=0)
    payment_frequency: PaymentFrequency | None = None
    number_of_payments: int | None = Field(default=None, ge=1)
    start_date: date | None = None


class LoanModificationResponse(BaseModel):
    model_config = ConfigDict(use_enum_values=True, json_encoders={Decimal: lambda value: str(value)})

    loan_id: UUID
    action: str
    remaining_balance: Decimal
    payment_amount: Decimal | None = None
    payment_frequency: PaymentFrequency | None = None
    number_of_payments: int | None = None
    cancelled_payments: int = 0
    schedule: ScheduleCountsDTO | None = None


class ProcessorWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transaction_id: str = Field(min_length=1)
    status: str = Field(min_length=1)
    failure_reason: str | None = None


class ProcessorWebhookResponse(BaseModel):
    transaction_id: str
    transaction_status: str | None = None
    payment_status: str | None = None
    applied: bool
