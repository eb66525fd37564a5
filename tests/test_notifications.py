import json
from decimal import Decimal

import httpx
import pytest

from conftest import FakeAsyncSession, FakeResult, entity_handler, make_loan, make_user

from app.core.errors import SideEffectError
from app.models.loan import Loan
from app.models.user import User
from app.services.notifications import (
    EmailClient,
    RenderedEmail,
    _format_amount,
    build_payment_failed_email,
    send_payment_failed_email,
)


def test_format_amount_per_language():
    assert _format_amount(Decimal("1234.5"), "en") == "$1,234.50"
    assert _format_amount(Decimal("1234.567"), "fr") == "1\u00a0234,57\u00a0$"
    assert _format_amount(Decimal("55"), "en") == "$55.00"


@pytest.mark.parametrize(
    ("count", "subject"),
    [
        (1, "Returned Payment Notice"),
        (2, "Second Notice - Returned Payment"),
        (3, "Urgent Notice - Returned Payment"),
        (7, "Urgent Notice - Returned Payment"),
    ],
)
def test_subject_escalates_with_failure_count(count, subject):
    email = build_payment_failed_email(
        first_name="Jamie",
        last_name="Doe",
        payment_amount=Decimal("500"),
        failure_count=count,
        contact_email="collect@example.com",
    )
    assert email.subject == subject
    assert email.text.startswith("Hello Jamie,")
    assert "$500.00" in email.text
    assert "collect@example.com" in email.text
    assert ("Action Required" in email.text) is (count >= 3)


def test_later_notices_use_ordinal():
    email = build_payment_failed_email(
        first_name="Jamie", last_name="Doe", payment_amount=Decimal("500"), failure_count=4
    )
    assert "This is your 4th notice" in email.text
    assert "collection agency" in email.text


def test_french_notice():
    email = build_payment_failed_email(
        first_name="Élise",
        last_name="Tremblay",
        payment_amount=Decimal("1500"),
        failure_count=3,
        language="fr",
    )
    assert email.subject == "Avis urgent - Paiement retourné"
    assert email.text.startswith("Bonjour Élise,")
    assert "troisième avis" in email.text
    assert "1\u00a0500,00\u00a0$" in email.text
    assert "Action requise" in email.html


def test_html_escapes_names():
    email = build_payment_failed_email(
        first_name="<b>Jamie</b>", last_name="Doe", payment_amount=Decimal("1"), failure_count=1
    )
    assert "<b>Jamie</b>" not in email.html
    assert "&lt;b&gt;Jamie&lt;/b&gt;" in email.html


_EMAIL = RenderedEmail(subject="Subject", html="<p>hi</p>", text="hi")


@pytest.mark.asyncio
async def test_email_client_posts_message():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["auth"] = request.headers.get("Authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(202, json={"id": "msg-1"})

    client = EmailClient(
        api_url="https://mail.test/emails",
        api_key="mail-key",
        from_address="loans@example.com",
        transport=httpx.MockTransport(handler),
    )
    await client.send(to="borrower@example.com", email=_EMAIL)

    assert captured["auth"] == "Bearer mail-key"
    assert captured["body"] == {
        "from": "loans@example.com",
        "to": ["borrower@example.com"],
        "subject": "Subject",
        "html": "<p>hi</p>",
        "text": "hi",
    }


@pytest.mark.asyncio
async def test_email_client_raises_on_provider_error():
    client = EmailClient(
        api_url="https://mail.test/emails",
        api_key="mail-key",
        transport=httpx.MockTransport(lambda request: httpx.Response(500, text="down")),
    )
    with pytest.raises(SideEffectError):
        await client.send(to="borrower@example.com", email=_EMAIL)


@pytest.mark.asyncio
async def test_unconfigured_client_refuses_to_send():
    client = EmailClient(api_url="", api_key="")
    assert client.configured is False
    with pytest.raises(SideEffectError):
        await client.send(to="borrower@example.com", email=_EMAIL)


class StubEmailClient:
    configured = True

    def __init__(self) -> None:
        self.sent: list[tuple[str, RenderedEmail]] = []

    async def send(self, *, to: str, email: RenderedEmail) -> None:
        self.sent.append((to, email))


def _count_handler(value: int):
    def _handler(stmt):
        if "count(" in str(stmt).lower():
            return FakeResult(scalar=value)
        return None

    return _handler


def _db(loan, user, failures: int = 1) -> FakeAsyncSession:
    db = FakeAsyncSession()
    db.on_execute(_count_handler(failures))
    db.on_execute(entity_handler(Loan, FakeResult(scalar=loan)))
    db.on_execute(entity_handler(User, FakeResult(scalar=user)))
    return db


@pytest.mark.asyncio
async def test_send_payment_failed_email_uses_failure_count():
    user = make_user(preferred_language="fr", first_name="Élise")
    loan = make_loan(user_id=user.id)
    stub = StubEmailClient()

    sent = await send_payment_failed_email(_db(loan, user, failures=2), loan.id, Decimal("500.00"), client=stub)

    assert sent is True
    assert len(stub.sent) == 1
    to, email = stub.sent[0]
    assert to == "borrower@example.com"
    assert email.subject == "Deuxième avis - Paiement retourné"
    assert "500,00\u00a0$" in email.text


@pytest.mark.asyncio
async def test_send_skips_when_borrower_missing():
    loan = make_loan(user_id=None)
    stub = StubEmailClient()

    assert await send_payment_failed_email(_db(loan, None), loan.id, Decimal("500"), client=stub) is False
    assert stub.sent == []


@pytest.mark.asyncio
async def test_send_skips_when_borrower_has_no_email():
    user = make_user(email=None)
    loan = make_loan(user_id=user.id)
    stub = StubEmailClient()

    assert await send_payment_failed_email(_db(loan, user), loan.id, Decimal("500"), client=stub) is False
    assert stub.sent == []


@pytest.mark.asyncio
async def test_send_skips_when_provider_not_configured():
    loan = make_loan()
    db = FakeAsyncSession()

    sent = await send_payment_failed_email(db, loan.id, Decimal("500"), client=EmailClient(api_url="", api_key=""))

    assert sent is False
    assert db.executed == []
