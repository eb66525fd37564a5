import pytest

from app.schemas.common import PaymentFrequency, normalize_frequency
from app.schemas.loan import ContractTerms


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("monthly", PaymentFrequency.MONTHLY),
        ("Monthly", PaymentFrequency.MONTHLY),
        ("bi_weekly", PaymentFrequency.BI_WEEKLY),
        ("Bi Weekly", PaymentFrequency.BI_WEEKLY),
        ("biweekly", PaymentFrequency.BI_WEEKLY),
        ("fortnightly", PaymentFrequency.BI_WEEKLY),
        ("semi-monthly", PaymentFrequency.TWICE_MONTHLY),
        ("Twice per month", PaymentFrequency.TWICE_MONTHLY),
        ("hebdomadaire", PaymentFrequency.WEEKLY),
        ("mensuel", PaymentFrequency.MONTHLY),
        ("frequency:weekly", PaymentFrequency.WEEKLY),
        ({"frequency": "1m"}, PaymentFrequency.MONTHLY),
        (["", "2w"], PaymentFrequency.BI_WEEKLY),
        (PaymentFrequency.WEEKLY, PaymentFrequency.WEEKLY),
    ],
)
def test_normalize_frequency_aliases(raw, expected):
    assert normalize_frequency(raw) is expected


@pytest.mark.parametrize("raw", [None, "", "quarterly", {}, [], "   "])
def test_normalize_frequency_unknown_returns_none(raw):
    assert normalize_frequency(raw) is None


def test_enum_lookup_accepts_aliases():
    assert PaymentFrequency("semimonthly") is PaymentFrequency.TWICE_MONTHLY
    with pytest.raises(ValueError):
        PaymentFrequency("yearly")


def test_contract_terms_normalize_and_blank_values():
    terms = ContractTerms.model_validate(
        {
            "payment_frequency": "Bi-Weekly",
            "payment_amount": "",
            "fees": None,
            "unrelated": "ignored",
        }
    )
    assert terms.payment_frequency is PaymentFrequency.BI_WEEKLY
    assert terms.payment_amount is None
    assert terms.fees.failed_payment_fee is None


def test_contract_terms_reads_failed_payment_fee():
    terms = ContractTerms.model_validate(
        {"payment_frequency": "unknown", "payment_amount": 412.5, "fees": {"failed_payment_fee": "45"}}
    )
    assert terms.payment_frequency is None
    assert str(terms.payment_amount) == "412.5"
    assert str(terms.fees.failed_payment_fee) == "45"
