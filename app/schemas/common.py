from __future__ import annotations

import re
from enum import Enum


class PaymentFrequency(str, Enum):
    WEEKLY = "weekly"
    BI_WEEKLY = "bi-weekly"
    TWICE_MONTHLY = "twice-monthly"
    MONTHLY = "monthly"

    @classmethod
    def _missing_(cls, value):  # type: ignore[override]
        return normalize_frequency(value)


_FREQUENCY_ALIASES: dict[PaymentFrequency, tuple[str, ...]] = {
    PaymentFrequency.WEEKLY: (
        "weekly",
        "week",
        "once-a-week",
        "one-week",
        "1w",
        "hebdomadaire",
        "every-week",
        "per-week",
    ),
    PaymentFrequency.BI_WEEKLY: (
        "bi-weekly",
        "biweekly",
        "every-two-weeks",
        "two-weeks",
        "fortnightly",
        "14-days",
        "every-14-days",
        "2w",
    ),
    PaymentFrequency.TWICE_MONTHLY: (
        "twice-monthly",
        "twice-per-month",
        "two-times-per-month",
        "2-times-per-month",
        "2x-per-month",
        "2x-month",
        "semi-monthly",
        "semimonthly",
        "semi-month",
        "twice-month",
    ),
    PaymentFrequency.MONTHLY: ("monthly", "month", "once-a-month", "1m", "mensuel", "per-month"),
}

_SEGMENT_DELIMITERS = re.compile(r"[:|;,/]+")


def _canonicalize(value: str) -> str:
    cleaned = value.strip().lower()
    cleaned = re.sub(r"[_\s]+", "-", cleaned)
    return re.sub(r"-+", "-", cleaned)


def normalize_frequency(value) -> PaymentFrequency | None:
    """Map free-form frequency labels (contract terms, admin input) onto a PaymentFrequency."""
    if value is None:
        return None
    if isinstance(value, PaymentFrequency):
        return value
    if isinstance(value, dict):
        candidate = value.get("frequency") or value.get("raw_frequency") or value.get("value")
        return normalize_frequency(candidate)
    if isinstance(value, (list, tuple)):
        for item in value:
            matched = normalize_frequency(item)
            if matched is not None:
                return matched
        return None

    normalized = _canonicalize(str(value))
    if not normalized:
        return None
    member = PaymentFrequency._value2member_map_.get(normalized)
    if member is not None:
        return member

    segments = {normalized, *_SEGMENT_DELIMITERS.split(normalized)}
    segments = {segment.strip() for segment in segments if segment and segment.strip()}
    for frequency, aliases in _FREQUENCY_ALIASES.items():
        if segments.intersection(aliases):
            return frequency
    return None
