from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.settings import settings
from app.models.loan_payment import LoanPayment
from app.models.payment_transaction import CANCELLABLE_TRANSACTION_STATUSES, PaymentTransaction
from app.schemas.loan import PaymentStatus
from app.services.loan_payments import get_loan


logger = logging.getLogger(__name__)

_PROCESSOR_STATUS_MAP: dict[str, tuple[str, str | None]] = {
    "completed": ("completed", PaymentStatus.CONFIRMED.value),
    "failed": ("failed", PaymentStatus.FAILED.value),
    "cancelled": ("cancelled", PaymentStatus.CANCELLED.value),
    "canceled": ("cancelled", PaymentStatus.CANCELLED.value),
    "inprogress": ("processing", None),
    "inreview": ("processing", None),
    "scheduled": ("pending", None),
}


class PaymentProcessorError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class ProcessorTransaction:
    transaction_id: str
    status: str | None
    raw: dict


@dataclass
class ResyncResult:
    cancelled: int = 0
    created: int = 0
    errors: list[str] = field(default_factory=list)


def map_processor_status(raw: str | None) -> tuple[str | None, str | None]:
    """Map a processor status to ``(transaction_status, installment_status)``.

    Unknown statuses map to ``(None, None)``. Intermediate states such as
    InProgress only move the transaction and leave the installment alone.
    """
    if not raw:
        return None, None
    key = raw.replace("_", "").replace("-", "").replace(" ", "").lower()
    return _PROCESSOR_STATUS_MAP.get(key, (None, None))


class PaymentProcessorClient:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        wallet_id: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.payment_processor_api_key
        self.wallet_id = wallet_id if wallet_id is not None else settings.payment_processor_wallet_id
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.payment_processor_base_url).rstrip("/"),
            headers=headers,
            timeout=timeout if timeout is not None else settings.payment_processor_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> PaymentProcessorClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise PaymentProcessorError(f"payment processor request failed: {exc}") from exc
        if response.status_code >= 400:
            raise PaymentProcessorError(
                f"payment processor returned {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise PaymentProcessorError("invalid payment processor response", body=response.text) from exc
        if isinstance(body, dict) and body.get("isError"):
            raise PaymentProcessorError(body.get("message") or "payment processor returned an error", body=response.text)
        return body if isinstance(body, dict) else {"result": body}

    async def create_collection(
        self,
        *,
        user_id: str,
        amount: Decimal,
        memo: str,
        scheduled_date: date | None = None,
        client_transaction_id: str | None = None,
        comment: str | None = None,
    ) -> ProcessorTransaction:
        payload = {
            "ZumRailsType": "AccountsReceivable",
            "TransactionMethod": "Eft",
            "Amount": float(amount),
            "Memo": memo,
            "Comment": comment,
            "UserId": user_id,
            "WalletId": self.wallet_id,
            "ScheduledStartDate": scheduled_date.isoformat() if scheduled_date else None,
            "ClientTransactionId": client_transaction_id,
        }
        body = await self._request(
            "POST",
            "/api/transaction",
            json={key: value for key, value in payload.items() if value is not None},
        )
        result = body.get("result") or {}
        transaction_id = result.get("Id")
        if not transaction_id:
            raise PaymentProcessorError("payment processor response missing transaction id")
        return ProcessorTransaction(
            transaction_id=str(transaction_id),
            status=result.get("TransactionStatus"),
            raw=result,
        )

    async def cancel_transaction(self, transaction_id: str) -> dict:
        body = await self._request("DELETE", f"/api/transaction/{transaction_id}")
        return body.get("result") or {}


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def resync_loan_transactions(
    db: AsyncSession,
    loan_id: UUID,
    reason: str,
    *,
    client: PaymentProcessorClient | None = None,
) -> ResyncResult:
    """Bring the processor's scheduled collections in line with the ledger.

    Every cancellable transaction of the loan is cancelled first, then a fresh
    collection is created for each pending installment left without an active
    transaction. Writes go into ``db``; the caller commits.
    """
    result = ResyncResult()
    loan = await get_loan(db, loan_id)
    owns_client = client is None
    client = client or PaymentProcessorClient()

    try:
        stmt = select(PaymentTransaction).where(
            PaymentTransaction.loan_id == loan_id,
            PaymentTransaction.transaction_type == "collection",
            PaymentTransaction.status.in_(CANCELLABLE_TRANSACTION_STATUSES),
        )
        transactions = list((await db.execute(stmt)).scalars().all())

        payments_stmt = select(LoanPayment).where(LoanPayment.loan_id == loan_id)
        payments = {payment.id: payment for payment in (await db.execute(payments_stmt)).scalars().all()}

        for transaction in transactions:
            cancel_error = None
            if transaction.external_transaction_id:
                try:
                    await client.cancel_transaction(transaction.external_transaction_id)
                except PaymentProcessorError as exc:
                    cancel_error = str(exc)
                    logger.warning(
                        "Processor cancel failed; marking cancelled locally: %s",
                        exc,
                        extra={"loan_id": str(loan_id), "transaction_id": transaction.external_transaction_id},
                    )
            provider_data = dict(transaction.provider_data or {})
            provider_data.update(
                {
                    "cancelled_at": _utcnow_iso(),
                    "cancellation_reason": reason,
                }
            )
            if cancel_error:
                provider_data["cancel_error"] = cancel_error
            transaction.provider_data = provider_data
            transaction.status = "cancelled"
            db.add(transaction)

            linked = payments.get(transaction.loan_payment_id)
            if linked is not None and linked.external_transaction_id == transaction.external_transaction_id:
                linked.external_transaction_id = None
                db.add(linked)
            result.cancelled += 1

        pending = sorted(
            (payment for payment in payments.values() if payment.status == PaymentStatus.PENDING.value),
            key=lambda item: item.payment_date,
        )
        for payment in pending:
            if payment.external_transaction_id:
                continue
            if loan.user_id is None:
                result.errors.append(f"loan {loan_id} has no borrower for payment {payment.id}")
                continue
            try:
                created = await client.create_collection(
                    user_id=str(loan.user_id),
                    amount=Decimal(str(payment.amount)),
                    memo=f"Loan payment #{payment.payment_number or ''}".strip(),
                    scheduled_date=payment.payment_date,
                    client_transaction_id=str(payment.id),
                    comment=reason,
                )
            except PaymentProcessorError as exc:
                result.errors.append(f"payment {payment.id}: {exc}")
                logger.warning(
                    "Processor collection create failed: %s",
                    exc,
                    extra={"loan_id": str(loan_id), "payment_id": str(payment.id)},
                )
                continue
            transaction_status, _ = map_processor_status(created.status)
            db.add(
                PaymentTransaction(
                    loan_id=loan_id,
                    loan_payment_id=payment.id,
                    provider="processor",
                    external_transaction_id=created.transaction_id,
                    transaction_type="collection",
                    amount=payment.amount,
                    status=transaction_status or "initiated",
                    provider_data={"created_at": _utcnow_iso(), "reason": reason, "response": created.raw},
                )
            )
            payment.external_transaction_id = created.transaction_id
            db.add(payment)
            result.created += 1

        await db.flush()
    finally:
        if owns_client:
            await client.aclose()

    logger.info(
        "Payment processor resync finished",
        extra={
            "loan_id": str(loan_id),
            "cancelled_count": result.cancelled,
            "created_count": result.created,
            "error_count": len(result.errors),
        },
    )
    return result
