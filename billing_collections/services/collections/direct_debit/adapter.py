"""Direct-debit file adapter contract and shared row types."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from billing_collections.services.common import round_money


@dataclass
class OutboundRow:
    attempt_id: str
    charge_id: str
    agency_id: str
    external_reference: str
    amount_ars: Decimal
    scheduled_for: date | None = None
    holder_name: str | None = None
    holder_tax_id: str | None = None
    cbu_last4: str | None = None

    def as_payload(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "charge_id": self.charge_id,
            "agency_id": self.agency_id,
            "external_reference": self.external_reference,
            "amount_ars": f"{round_money(self.amount_ars):.2f}",
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "holder_name": self.holder_name,
            "holder_tax_id": self.holder_tax_id,
            "cbu_last4": self.cbu_last4,
        }


@dataclass
class ControlTotals:
    record_count: int
    amount_total: Decimal

    def as_dict(self) -> dict[str, Any]:
        return {
            "record_count": self.record_count,
            "amount_total": f"{round_money(self.amount_total):.2f}",
        }


@dataclass
class BuiltFile:
    file_name: str
    content: bytes
    control_totals: ControlTotals
    content_type: str = "text/plain; charset=utf-8"
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class BankResult:
    status: str
    detailed_reason: str


@dataclass
class ParsedRow:
    line_no: int
    external_reference: str | None
    raw_hash: str
    status: str
    detailed_reason: str
    amount_ars: Decimal | None = None
    response_code: str | None = None
    response_message: str | None = None
    paid_reference: str | None = None
    processed_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedFile:
    rows: list[ParsedRow]
    control_totals: ControlTotals
    header_totals: ControlTotals | None = None
    trailer_totals: ControlTotals | None = None
    parse_warnings: list[str] = field(default_factory=list)


@dataclass
class ValidationResult:
    ok: bool
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "errors": list(self.errors)}


class DirectDebitAdapter(Protocol):
    name: str

    def build_outbound_file(
        self, business_date: date, sequence: int, rows: list[OutboundRow]
    ) -> BuiltFile: ...

    def parse_inbound_file(self, content: bytes) -> ParsedFile: ...

    def validate_outbound_control_totals(
        self, control_totals: ControlTotals, rows: list[OutboundRow]
    ) -> ValidationResult: ...

    def validate_inbound_control_totals(self, parsed: ParsedFile) -> ValidationResult: ...


# Bank result codes. Anything not listed maps to UNKNOWN.
BANK_RESULT_CODES: dict[str, BankResult] = {
    "00": BankResult("PAID", "PAID"),
    "51": BankResult("REJECTED", "REJECTED_INSUFFICIENT_FUNDS"),
    "14": BankResult("REJECTED", "REJECTED_INVALID_ACCOUNT"),
    "MD01": BankResult("REJECTED", "REJECTED_MANDATE_INVALID"),
    "15": BankResult("REJECTED", "REJECTED_ACCOUNT_CLOSED"),
    "96": BankResult("ERROR", "ERROR_FORMAT"),
    "94": BankResult("ERROR", "ERROR_DUPLICATE"),
}


def map_bank_result_code(code: str | None) -> BankResult:
    normalized = str(code or "").strip().upper()
    known = BANK_RESULT_CODES.get(normalized)
    if known is None:
        return BankResult("UNKNOWN", "UNKNOWN")
    return BankResult(known.status, known.detailed_reason)


def parse_amount(raw: str | None) -> Decimal | None:
    value = str(raw or "").strip().replace(",", ".")
    if not value:
        return None
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            return None
        return round_money(amount)
    except InvalidOperation:
        return None


def totals_for_amounts(amounts: list[Decimal | None]) -> ControlTotals:
    total = sum((round_money(a) for a in amounts if a is not None), Decimal("0"))
    return ControlTotals(record_count=len(amounts), amount_total=round_money(total))


def compare_totals(
    expected: ControlTotals, actual: ControlTotals, label: str
) -> list[str]:
    errors: list[str] = []
    if expected.record_count != actual.record_count:
        errors.append(
            f"record_count mismatch ({label}): "
            f"expected {expected.record_count}, got {actual.record_count}"
        )
    if round_money(expected.amount_total) != round_money(actual.amount_total):
        errors.append(
            f"amount_total mismatch ({label}): "
            f"expected {round_money(expected.amount_total):.2f}, "
            f"got {round_money(actual.amount_total):.2f}"
        )
    return errors


def raw_row_hash(raw: dict[str, Any]) -> str:
    encoded = json.dumps(raw, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
