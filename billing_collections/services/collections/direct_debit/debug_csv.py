"""CSV adapter for sandbox presentments and hand-written response files."""

from __future__ import annotations

import csv
import io
from datetime import date
from decimal import Decimal
from typing import Any

from billing_collections.services.collections.direct_debit.adapter import (
    BuiltFile,
    ControlTotals,
    OutboundRow,
    ParsedFile,
    ParsedRow,
    ValidationResult,
    compare_totals,
    map_bank_result_code,
    parse_amount,
    raw_row_hash,
    totals_for_amounts,
)
from billing_collections.services.collections.identifiers import normalize_reference
from billing_collections.services.common import format_amount

PRESENTMENT_COLUMNS = [
    "external_reference",
    "attempt_id",
    "charge_id",
    "agency_id",
    "scheduled_for",
    "amount_ars",
    "holder_name",
    "holder_tax_id",
    "cbu_last4",
]

RESPONSE_COLUMNS = [
    "external_reference",
    "result",
    "amount_ars",
    "paid_reference",
    "rejection_code",
    "rejection_reason",
]


def _result_status(raw: str | None) -> str:
    normalized = str(raw or "").strip().upper()
    if normalized in ("PAID", "PAGADO"):
        return "PAID"
    if normalized in ("REJECTED", "RECHAZADO"):
        return "REJECTED"
    return "ERROR"


def _detailed_reason(status: str, rejection_code: str | None) -> str:
    if status == "PAID":
        return "PAID"
    if status == "REJECTED":
        mapped = map_bank_result_code(rejection_code)
        return mapped.detailed_reason if mapped.status == "REJECTED" else "REJECTED_OTHER"
    return "ERROR_INVALID_RESULT"


class DebugCsvAdapter:
    name = "debug_csv"

    def build_outbound_file(
        self, business_date: date, sequence: int, rows: list[OutboundRow]
    ) -> BuiltFile:
        output = io.StringIO()
        writer = csv.writer(output, lineterminator="\n")
        writer.writerow(PRESENTMENT_COLUMNS)
        for row in rows:
            writer.writerow(
                [
                    row.external_reference,
                    row.attempt_id,
                    row.charge_id,
                    row.agency_id,
                    row.scheduled_for.isoformat() if row.scheduled_for else "",
                    format_amount(row.amount_ars),
                    row.holder_name or "",
                    row.holder_tax_id or "",
                    row.cbu_last4 or "",
                ]
            )
        return BuiltFile(
            file_name=f"debug_pd_presentment_{business_date.isoformat()}.csv",
            content=output.getvalue().encode("utf-8"),
            control_totals=totals_for_amounts([row.amount_ars for row in rows]),
            content_type="text/csv; charset=utf-8",
            meta={"adapter": self.name, "rows": len(rows), "sequence": sequence},
        )

    def validate_outbound_control_totals(
        self, control_totals: ControlTotals, rows: list[OutboundRow]
    ) -> ValidationResult:
        recomputed = totals_for_amounts([row.amount_ars for row in rows])
        errors = compare_totals(recomputed, control_totals, "control_totals vs rows")
        return ValidationResult(ok=not errors, errors=errors)

    def parse_inbound_file(self, content: bytes) -> ParsedFile:
        text = content.decode("utf-8-sig", errors="replace")
        reader = csv.DictReader(io.StringIO(text))
        rows: list[ParsedRow] = []
        warnings: list[str] = []
        # Header is line 1; data starts on line 2.
        for line_no, record in enumerate(reader, start=2):
            values = {col: (record.get(col) or "").strip() for col in RESPONSE_COLUMNS}
            if not any(values.values()):
                continue
            status = _result_status(values["result"])
            amount = parse_amount(values["amount_ars"])
            if values["amount_ars"] and amount is None:
                warnings.append(f"line {line_no}: invalid amount")
            rows.append(
                ParsedRow(
                    line_no=line_no,
                    external_reference=normalize_reference(values["external_reference"]),
                    raw_hash=raw_row_hash(values),
                    status=status,
                    detailed_reason=_detailed_reason(status, values["rejection_code"]),
                    amount_ars=amount,
                    response_code=normalize_reference(values["rejection_code"]),
                    response_message=normalize_reference(values["rejection_reason"]),
                    paid_reference=normalize_reference(values["paid_reference"]),
                    raw=values,
                )
            )
        return ParsedFile(
            rows=rows,
            control_totals=totals_for_amounts([row.amount_ars for row in rows]),
            parse_warnings=warnings,
        )

    def validate_inbound_control_totals(self, parsed: ParsedFile) -> ValidationResult:
        # CSV responses carry no header/trailer totals to compare against.
        return ValidationResult(ok=True)


def build_debug_response_csv(records: list[dict[str, Any]]) -> bytes:
    """Build a response file for sandbox imports.

    Each record needs ``external_reference`` and ``result``; ``amount_ars``,
    ``paid_reference``, ``rejection_code`` and ``rejection_reason`` are optional.
    """
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(RESPONSE_COLUMNS)
    for record in records:
        amount = record.get("amount_ars")
        writer.writerow(
            [
                record["external_reference"],
                record["result"],
                format_amount(amount) if isinstance(amount, (Decimal, int, float)) else amount or "",
                record.get("paid_reference") or "",
                record.get("rejection_code") or "",
                record.get("rejection_reason") or "",
            ]
        )
    return output.getvalue().encode("utf-8")
