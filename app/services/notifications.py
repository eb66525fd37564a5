from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from uuid import UUID

import httpx
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import SideEffectError
from app.core.settings import settings
from app.models.loan_payment import LoanPayment
from app.models.user import User
from app.schemas.loan import PaymentStatus
from app.services.loan_payments import get_loan


logger = logging.getLogger(__name__)

TWOPLACES = Decimal("0.01")
NBSP = "\u00a0"


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


def _format_amount(amount: Decimal, language: str) -> str:
    value = Decimal(str(amount)).quantize(TWOPLACES, rounding=ROUND_HALF_UP)
    grouped = f"{value:,.2f}"
    if language == "fr":
        whole, cents = grouped.split(".")
        return f"{whole.replace(',', NBSP)},{cents}{NBSP}$"
    return f"${grouped}"


def _ordinal(count: int, language: str) -> str:
    if language == "fr":
        return "troisième" if count == 3 else f"{count}ème"
    if count == 3:
        return "third"
    return f"{count}th"


_COPY = {
    "en": {
        "subjects": (
            "Returned Payment Notice",
            "Second Notice - Returned Payment",
            "Urgent Notice - Returned Payment",
        ),
        "greeting": "Hello {first_name},",
        "first": (
            "We are reaching out to inform you that your payment of {amount} has been returned.\n\n"
            "To resolve this matter quickly, you can make the payment immediately by sending the funds "
            "via EMT to {contact}. Alternatively, please contact us to arrange a payment plan with "
            "smaller amounts.\n\nThank you for honoring your contract with us."
        ),
        "second": (
            "This is your second notice regarding a returned payment.\n\n"
            "To resolve this matter swiftly, please make the payment of {amount} immediately by sending "
            "the funds via EMT to {contact}. If we do not receive payment, we will have to take further "
            "action.\n\nIf you are experiencing difficulties with your payments and need to arrange smaller "
            "payment amounts, please contact us immediately so we can work out a solution together."
        ),
        "later": (
            "This is your {ordinal} notice regarding a returned payment.\n\n"
            "To resolve this matter swiftly, please make the payment of {amount} immediately by sending "
            "the funds via EMT to {contact}. If we do not receive payment, we will have to escalate your "
            "account to our collection agency, which could negatively impact your credit score.\n\n"
            "If you are experiencing difficulties with your payments and need to arrange smaller payment "
            "amounts, please contact us immediately so we can work out a solution together."
        ),
        "warning": "Action Required: Please take action and uphold your commitments.",
        "closing": "Sincerely,\nThe Loans Team",
    },
    "fr": {
        "subjects": (
            "Avis de paiement retourné",
            "Deuxième avis - Paiement retourné",
            "Avis urgent - Paiement retourné",
        ),
        "greeting": "Bonjour {first_name},",
        "first": (
            "Nous vous contactons pour vous informer que votre paiement de {amount} a été retourné.\n\n"
            "Pour résoudre cette situation rapidement, vous pouvez effectuer le paiement immédiatement en "
            "envoyant les fonds par virement électronique (EMT) à {contact}. Sinon, veuillez nous contacter "
            "pour organiser un plan de paiement avec des montants plus petits.\n\n"
            "Merci de respecter votre contrat avec nous."
        ),
        "second": (
            "Ceci est votre deuxième avis concernant un paiement retourné.\n\n"
            "Pour résoudre cette situation rapidement, veuillez effectuer le paiement de {amount} "
            "immédiatement en envoyant les fonds par virement électronique (EMT) à {contact}. Si nous ne "
            "recevons pas le paiement, nous devrons prendre des mesures supplémentaires.\n\n"
            "Si vous éprouvez des difficultés avec vos paiements, veuillez nous contacter immédiatement "
            "afin que nous puissions trouver une solution ensemble."
        ),
        "later": (
            "Ceci est votre {ordinal} avis concernant un paiement retourné.\n\n"
            "Pour résoudre cette situation rapidement, veuillez effectuer le paiement de {amount} "
            "immédiatement en envoyant les fonds par virement électronique (EMT) à {contact}. Si nous ne "
            "recevons pas le paiement, nous devrons transférer votre dossier à notre agence de recouvrement, "
            "ce qui pourrait avoir un impact négatif sur votre cote de crédit.\n\n"
            "Si vous éprouvez des difficultés avec vos paiements, veuillez nous contacter immédiatement "
            "afin que nous puissions trouver une solution ensemble."
        ),
        "warning": "Action requise : Veuillez agir et respecter vos engagements.",
        "closing": "Cordialement,\nL'équipe des prêts",
    },
}


def build_payment_failed_email(
    *,
    first_name: str,
    last_name: str,
    payment_amount: Decimal,
    failure_count: int,
    language: str = "en",
    contact_email: str | None = None,
) -> RenderedEmail:
    """Render the returned-payment notice.

    Tone escalates with ``failure_count``: a first notice, a second notice,
    then an urgent notice with a warning block from the third failure on.
    """
    language = "fr" if language == "fr" else "en"
    copy = _COPY[language]
    contact = contact_email or settings.support_contact_email
    amount = _format_amount(payment_amount, language)
    count = max(1, int(failure_count))

    if count == 1:
        subject, body = copy["subjects"][0], copy["first"]
    elif count == 2:
        subject, body = copy["subjects"][1], copy["second"]
    else:
        subject, body = copy["subjects"][2], copy["later"]

    greeting = copy["greeting"].format(first_name=first_name)
    message = body.format(amount=amount, contact=contact, ordinal=_ordinal(count, language))
    warning = copy["warning"] if count >= 3 else None

    text_parts = [greeting, message]
    if warning:
        text_parts.append(warning)
    text_parts.append(copy["closing"])
    text = "\n\n".join(text_parts)

    def _paragraphs(value: str) -> str:
        return "".join(
            f"<p>{html.escape(chunk).replace(chr(10), '<br>')}</p>" for chunk in value.split("\n\n")
        )

    html_parts = [
        "<!doctype html><html><head><meta charset=\"utf-8\">",
        f"<title>{html.escape(subject)}</title></head><body>",
        f"<p>{html.escape(greeting)}</p>",
        _paragraphs(message),
    ]
    if warning:
        html_parts.append(f"<div class=\"warning\"><strong>{html.escape(warning)}</strong></div>")
    html_parts.append(_paragraphs(copy["closing"]))
    html_parts.append(
        f"<p class=\"muted\">{html.escape(first_name)} {html.escape(last_name)}</p></body></html>"
    )
    return RenderedEmail(subject=subject, html="".join(html_parts), text=text)


class EmailClient:
    """Thin client for the transactional e-mail HTTP API."""

    def __init__(
        self,
        *,
        api_url: str | None = None,
        api_key: str | None = None,
        from_address: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url if api_url is not None else settings.email_api_url
        self.api_key = api_key if api_key is not None else settings.email_api_key
        self.from_address = from_address or settings.email_from_address
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    async def send(self, *, to: str, email: RenderedEmail) -> None:
        if not self.configured:
            raise SideEffectError("email provider is not configured")
        async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
            try:
                response = await client.post(
                    self.api_url,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={
                        "from": self.from_address,
                        "to": [to],
                        "subject": email.subject,
                        "html": email.html,
                        "text": email.text,
                    },
                )
            except httpx.HTTPError as exc:
                raise SideEffectError(f"email request failed: {exc}") from exc
        if response.status_code >= 400:
            raise SideEffectError(
                f"email provider returned {response.status_code}",
                details={"body": response.text[:500]},
            )


async def count_failed_payments(db: AsyncSession, loan_id: UUID) -> int:
    stmt = select(func.count(LoanPayment.id)).where(
        LoanPayment.loan_id == loan_id,
        LoanPayment.status == PaymentStatus.FAILED.value,
    )
    return int((await db.execute(stmt)).scalar_one() or 0)


async def send_payment_failed_email(
    db: AsyncSession,
    loan_id: UUID,
    payment_amount: Decimal,
    *,
    client: EmailClient | None = None,
) -> bool:
    """Notify the borrower that an installment was returned.

    Returns ``False`` when the notice is skipped (no borrower, no address, or
    no provider configured). Provider failures raise ``SideEffectError`` so the
    outbox can retry.
    """
    client = client or EmailClient()
    if not client.configured:
        logger.warning("Email provider not configured; skipping payment failed notice", extra={"loan_id": str(loan_id)})
        return False

    loan = await get_loan(db, loan_id)
    if loan.user_id is None:
        logger.warning("Loan has no borrower; skipping payment failed notice", extra={"loan_id": str(loan_id)})
        return False
    user = (await db.execute(select(User).where(User.id == loan.user_id))).scalar_one_or_none()
    if user is None or not user.email:
        logger.warning("Borrower has no e-mail; skipping payment failed notice", extra={"loan_id": str(loan_id)})
        return False

    failure_count = await count_failed_payments(db, loan_id)
    email = build_payment_failed_email(
        first_name=user.first_name or "",
        last_name=user.last_name or "",
        payment_amount=payment_amount,
        failure_count=failure_count or 1,
        language=user.preferred_language or "en",
        contact_email=settings.support_contact_email,
    )
    await client.send(to=user.email, email=email)
    logger.info(
        "Payment failed notice sent",
        extra={"loan_id": str(loan_id), "failure_count": failure_count},
    )
    return True
