"""Galicia direct-debit (PD) pipe-delimited file format, version 1.

Outbound presentment::

    H|GALICIA_PD|<version>|<sequence>|PD|<YYYYMMDD>|<record_count>|<amount_total>|
    D|<line_no>|<external_reference>|<holder_name>|<holder_tax_id>|<cbu_last4>|<amount>|
    T|<record_count>|<amount_total>|

Inbound response details carry the bank result instead of holder data::

    D|<line_no>|<external_reference>|<code>|<message>|<amount>|<YYYYMMDDHHMMSS>|<trace>|<operation>

Amounts always use two decimals with a dot separator.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

from billing_collections.config import settings
from billing_collections.services.collections.direct_debit.adapter import (
    BankResult,
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
from billing_collections.services.numbering import format_sequence

logger = logging.getLogger(__name__)

HEADER_TAGS = ("GALICIA_PD", "GALICIA_PD_RESP")
_FIELD_UNSAFE = re.compile(r"[|\r\n]+")


def _field(value) -> str:
    if value is None:
        return ""
    return _FIELD_UNSAFE.sub(" ", str(value)).strip()


def _parse_int(raw: str | None) -> int | None:
    value = str(raw or "").strip()
    if not value.lstrip("-").isdigit():
        return None
    return int(value)


def _parse_processed_at(raw: str | None, tz: str) -> datetime | None:
    value = str(raw or "").strip()
    if not value:
        return None
    for fmt in ("%Y%m%d%H%M%S", "%Y%m%d"):
        try:
            local = datetime.strptime(value, fmt).replace(tzinfo=ZoneInfo(tz))
        except ValueError:
            continue
        return local.astimezone(timezone.utc)
    return None


class GaliciaPdV1Adapter:
    name = "galicia_pd_v1"

    def __init__(self, version: str | None = None, timezone_name: str | None = None):
        self.version = version or settings.billing_pd_file_version
        self.timezone_name = timezone_name or settings.billing_timezone

    @staticmethod
    def map_bank_result_code_to_internal_status(code: str | None) -> BankResult:
        return map_bank_result_code(code)

    def build_outbound_file(
        self, business_date: date, sequence: int, rows: list[OutboundRow]
    ) -> BuiltFile:
        totals = totals_for_amounts([row.amount_ars for row in rows])
        date_key = business_date.strftime("%Y%m%d")
        seq = format_sequence(sequence, 4)

        lines = [
            "|".join(
                [
                    "H",
                    "GALICIA_PD",
                    _field(self.version),
                    seq,
                    "PD",
                    date_key,
                    str(totals.record_count),
                    format_amount(totals.amount_total),
                    "",
                ]
            )
        ]
        for line_no, row in enumerate(rows, start=1):
            lines.append(
                "|".join(
                    [
                        "D",
                        str(line_no),
                        _field(row.external_reference),
                        _field(row.holder_name),
                        _field(row.holder_tax_id),
                        _field(row.cbu_last4),
                        format_amount(row.amount_ars),
                        "",
                    ]
                )
            )
        lines.append(
            "|".join(
                ["T", str(totals.record_count), format_amount(totals.amount_total), ""]
            )
        )

        content = ("\n".join(lines) + "\n").encode("utf-8")
        check = self.validate_inbound_control_totals(self._parse(content, outbound=True))
        if not check.ok:
            raise ValueError(f"Outbound file failed control totals: {'; '.join(check.errors)}")

        return BuiltFile(
            file_name=f"galicia_pd_v1_{date_key}_{seq}.txt",
            content=content,
            control_totals=totals,
            meta={"adapter": self.name, "version": self.version, "sequence": seq},
        )

    def validate_outbound_control_totals(
        self, control_totals: ControlTotals, rows: list[OutboundRow]
    ) -> ValidationResult:
        recomputed = totals_for_amounts([row.amount_ars for row in rows])
        errors = compare_totals(recomputed, control_totals, "control_totals vs rows")
        return ValidationResult(ok=not errors, errors=errors)

    def parse_inbound_file(self, content: bytes) -> ParsedFile:
        return self._parse(content, outbound=False)

    def validate_inbound_control_totals(self, parsed: ParsedFile) -> ValidationResult:
        errors: list[str] = []
        if parsed.header_totals is None:
            errors.append("missing header record")
        else:
            errors.extend(
                compare_totals(parsed.control_totals, parsed.header_totals, "header vs detail")
            )
        if parsed.trailer_totals is None:
            errors.append("missing trailer record")
        else:
            errors.extend(
                compare_totals(parsed.control_totals, parsed.trailer_totals, "trailer vs detail")
            )
        return ValidationResult(ok=not errors, errors=errors)

    def _parse(self, content: bytes, *, outbound: bool) -> ParsedFile:
        text = content.decode("utf-8-sig", errors="replace")
        rows: list[ParsedRow] = []
        warnings: list[str] = []
        header: ControlTotals | None = None
        trailer: ControlTotals | None = None

        for index, raw_line in enumerate(text.splitlines(), start=1):
            line = raw_line.strip()
            if not line:
                continue
            parts = line.split("|")
            kind = parts[0].strip().upper()

            if kind == "H":
                if len(parts) < 8 or parts[1].strip().upper() not in HEADER_TAGS:
                    warnings.append(f"line {index}: malformed header")
                    continue
                header = ControlTotals(
                    record_count=_parse_int(parts[6]) or 0,
                    amount_total=parse_amount(parts[7]) or Decimal("0.00"),
                )
            elif kind == "T":
                if len(parts) < 3:
                    warnings.append(f"line {index}: malformed trailer")
                    continue
                trailer = ControlTotals(
                    record_count=_parse_int(parts[1]) or 0,
                    amount_total=parse_amount(parts[2]) or Decimal("0.00"),
                )
            elif kind == "D":
                row = (
                    self._parse_outbound_detail(parts, line, index)
                    if outbound
                    else self._parse_inbound_detail(parts, line, index)
                )
                if row is None:
                    warnings.append(f"line {index}: malformed detail record")
                    continue
                if row.amount_ars is None:
                    warnings.append(f"line {index}: invalid amount")
                rows.append(row)
            else:
                warnings.append(f"line {index}: unknown record type {kind!r}")

        totals = totals_for_amounts([row.amount_ars for row in rows])
        parsed = ParsedFile(
            rows=rows,
            control_totals=totals,
            header_totals=header,
            trailer_totals=trailer,
            parse_warnings=warnings,
        )
        validation = self.validate_inbound_control_totals(parsed)
        parsed.parse_warnings.extend(validation.errors)
        if not outbound and validation.errors:
            logger.warning(f"Direct-debit response control totals mismatch: {validation.errors}")
        return parsed

    def _parse_outbound_detail(self, parts: list[str], line: str, line_no: int) -> ParsedRow | None:
        if len(parts) < 7:
            return None
        raw = {"raw_line": line}
        return ParsedRow(
            line_no=line_no,
            external_reference=normalize_reference(parts[2]),
            raw_hash=raw_row_hash(raw),
            status="PRESENTED",
            detailed_reason="PRESENTED",
            amount_ars=parse_amount(parts[6]),
            raw=raw,
        )

    def _parse_inbound_detail(self, parts: list[str], line: str, line_no: int) -> ParsedRow | None:
        if len(parts) < 6:
            return None
        code = parts[3].strip()
        result = map_bank_result_code(code)
        trace = parts[7].strip() if len(parts) > 7 else ""
        operation = parts[8].strip() if len(parts) > 8 else ""
        raw = {
            "raw_line": line,
            "external_reference": parts[2].strip(),
            "code": code,
            "message": parts[4].strip(),
            "amount_ars": parts[5].strip(),
            "processed_at": parts[6].strip() if len(parts) > 6 else "",
            "trace": trace,
            "operation": operation,
        }
        return ParsedRow(
            line_no=line_no,
            external_reference=normalize_reference(parts[2]),
            raw_hash=raw_row_hash(raw),
            status=result.status,
            detailed_reason=result.detailed_reason,
            amount_ars=parse_amount(parts[5]),
            response_code=code or None,
            response_message=normalize_reference(parts[4]),
            paid_reference=normalize_reference(trace, normalize_reference(operation)),
            processed_at=_parse_processed_at(raw["processed_at"], self.timezone_name),
            raw=raw,
        )
