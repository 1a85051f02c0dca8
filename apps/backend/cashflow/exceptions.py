"""Typed errors raised by the cash-flow services.

Every error carries a machine-readable ``code`` so callers (HTTP handlers,
the materialization trigger) can branch on type instead of message text.

    CashflowError
    +-- NotFoundError          account / template / entry absent or not owned
    +-- ValidationError        rejected before any write
    +-- ConversionError        historical rate lookup failed
    +-- TransientStoreError    store unavailable or timed out; retryable
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date


class CashflowError(Exception):
    code: str = "CASHFLOW_ERROR"


class NotFoundError(CashflowError):
    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: object | None = None) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found")


@dataclass(frozen=True)
class Violation:
    kind: str
    field: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "field": self.field, "message": self.message}


class ValidationError(CashflowError):
    code = "VALIDATION_ERROR"

    def __init__(self, violations: list[Violation]) -> None:
        self.violations = list(violations)
        summary = "; ".join(f"{v.field}: {v.message}" for v in self.violations)
        super().__init__(summary or "invalid input")


class ConversionError(CashflowError):
    code = "CONVERSION_ERROR"

    def __init__(self, from_currency: str, to_currency: str, on: date) -> None:
        self.from_currency = from_currency
        self.to_currency = to_currency
        self.on = on
        super().__init__(f"No exchange rate {from_currency}->{to_currency} on or before {on.isoformat()}")


class TransientStoreError(CashflowError):
    code = "TRANSIENT_STORE_ERROR"
