from __future__ import annotations

import logging
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, PersistenceError
from app.models.loan import Loan
from app.models.loan_contract import LoanContract
from app.models.loan_payment import LoanPayment
from app.schemas.loan import ContractTerms


logger = logging.getLogger(__name__)


async def get_loan(db: AsyncSession, loan_id: UUID) -> Loan:
    try:
        loan = (await db.execute(select(Loan).where(Loan.id == loan_id))).scalar_one_or_none()
    except SQLAlchemyError as exc:
        raise PersistenceError("failed to load loan", details={"loan_id": str(loan_id)}) from exc
    if loan is None:
        raise NotFoundError("loan not found", details={"loan_id": str(loan_id)})
    return loan


async def get_payment(db: AsyncSession, loan_id: UUID, payment_id: UUID) -> LoanPayment:
    stmt = select(LoanPayment).where(
        LoanPayment.id == payment_id,
        LoanPayment.loan_id == loan_id,
    )
    try:
        payment = (await db.execute(stmt)).scalar_one_or_none()
    except SQLAlchemyError as exc:
        raise PersistenceError("failed to load payment", details={"payment_id": str(payment_id)}) from exc
    if payment is None:
        raise NotFoundError(
            "payment not found",
            details={"loan_id": str(loan_id), "payment_id": str(payment_id)},
        )
    return payment


async def list_payments_for_loan(db: AsyncSession, loan_id: UUID) -> list[LoanPayment]:
    stmt = (
        select(LoanPayment)
        .where(LoanPayment.loan_id == loan_id)
        .order_by(LoanPayment.payment_date.asc(), LoanPayment.payment_number.asc())
    )
    try:
        return list((await db.execute(stmt)).scalars().all())
    except SQLAlchemyError as exc:
        raise PersistenceError("failed to list payments", details={"loan_id": str(loan_id)}) from exc


async def latest_contract_terms(db: AsyncSession, loan_id: UUID) -> ContractTerms | None:
    """Return the typed terms of the loan's most recent contract, if any.

    A malformed ``contract_terms`` document is logged and treated as absent so
    the caller falls back to overrides and defaults.
    """
    stmt = (
        select(LoanContract)
        .where(LoanContract.loan_id == loan_id)
        .order_by(LoanContract.created_at.desc())
        .limit(1)
    )
    try:
        contract = (await db.execute(stmt)).scalars().first()
    except SQLAlchemyError as exc:
        raise PersistenceError("failed to load contract", details={"loan_id": str(loan_id)}) from exc
    if contract is None:
        return None
    try:
        return ContractTerms.model_validate(contract.contract_terms or {})
    except PydanticValidationError:
        logger.warning(
            "Ignoring malformed contract terms",
            extra={"loan_id": str(loan_id), "contract_id": str(contract.id)},
        )
        return None
