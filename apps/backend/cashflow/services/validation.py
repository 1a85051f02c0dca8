"""Field checks run before any store mutation.

Each check returns a list of :class:`Violation`; an empty list means valid.
``ensure_valid`` turns a non-empty list into :class:`ValidationError`.
"""

from __future__ import annotations

import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cashflow.exceptions import ValidationError, Violation
from cashflow.models import CashflowType, Recurrence


REQUIRED = "REQUIRED"
NEGATIVE_AMOUNT = "NEGATIVE_AMOUNT"
INVALID_CURRENCY = "INVALID_CURRENCY"
END_BEFORE_START = "END_BEFORE_START"
INVALID_TIMEZONE = "INVALID_TIMEZONE"
INVALID_VALUE = "INVALID_VALUE"

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")

DESCRIPTION_MAX_LENGTH = 256


def check_amount(value: Any, field: str = "amount") -> list[Violation]:
    if value is None:
        return [Violation(REQUIRED, field, "amount is required")]
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return [Violation(INVALID_VALUE, field, "amount must be a number")]
    if not amount.is_finite():
        return [Violation(INVALID_VALUE, field, "amount must be finite")]
    if amount < 0:
        return [Violation(NEGATIVE_AMOUNT, field, "amount must not be negative")]
    return []


def check_currency(value: Any, field: str = "currency") -> list[Violation]:
    if not value:
        return [Violation(REQUIRED, field, "currency is required")]
    if not isinstance(value, str) or not _CURRENCY_RE.match(value):
        return [Violation(INVALID_CURRENCY, field, "currency must be a 3-letter ISO 4217 code")]
    return []


def check_enum(value: Any, enum_cls, field: str) -> list[Violation]:
    if value is None:
        return [Violation(REQUIRED, field, f"{field} is required")]
    try:
        enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        return [Violation(INVALID_VALUE, field, f"{field} must be one of {allowed}")]
    return []


def check_timezone(value: Any, field: str = "timezone") -> list[Violation]:
    if value is None:
        return []
    try:
        ZoneInfo(str(value))
    except (ZoneInfoNotFoundError, ValueError):
        return [Violation(INVALID_TIMEZONE, field, f"unknown time zone {value!r}")]
    return []


def check_description(value: Any, field: str = "description") -> list[Violation]:
    if value is not None and len(str(value)) > DESCRIPTION_MAX_LENGTH:
        return [Violation(INVALID_VALUE, field, f"{field} must be at most {DESCRIPTION_MAX_LENGTH} characters")]
    return []


def validate_entry_fields(data: Mapping[str, Any]) -> list[Violation]:
    """Validate the full image of a cash-flow entry (create, or update post-image)."""
    violations: list[Violation] = []
    if data.get("account_id") is None:
        violations.append(Violation(REQUIRED, "account_id", "account_id is required"))
    violations += check_amount(data.get("amount"))
    violations += check_currency(data.get("currency"))
    violations += check_enum(data.get("type"), CashflowType, "type")
    if not isinstance(data.get("occurred_at"), date):
        violations.append(Violation(REQUIRED, "occurred_at", "occurred_at must be a date"))
    violations += check_description(data.get("description"))
    return violations


def validate_template_fields(data: Mapping[str, Any]) -> list[Violation]:
    """Validate the full image of a recurrence template."""
    violations: list[Violation] = []
    if data.get("account_id") is None:
        violations.append(Violation(REQUIRED, "account_id", "account_id is required"))
    violations += check_amount(data.get("amount"))
    violations += check_currency(data.get("currency"))
    violations += check_enum(data.get("type"), CashflowType, "type")
    violations += check_enum(data.get("recurrence"), Recurrence, "recurrence")
    violations += check_timezone(data.get("timezone"))
    violations += check_description(data.get("description"))

    start = data.get("start_date")
    end = data.get("end_date")
    if not isinstance(start, date):
        violations.append(Violation(REQUIRED, "start_date", "start_date must be a date"))
    elif end is not None and end < start:
        violations.append(Violation(END_BEFORE_START, "end_date", "end_date must not be before start_date"))
    return violations


def ensure_valid(violations: list[Violation]) -> None:
    if violations:
        raise ValidationError(violations)
