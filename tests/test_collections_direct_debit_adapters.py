"""Tests for the direct-debit file adapters."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from billing_collections.services.collections.direct_debit import (
    DebugCsvAdapter,
    GaliciaPdV1Adapter,
    build_debug_response_csv,
    get_adapter,
    map_bank_result_code,
)
from billing_collections.services.collections.direct_debit.adapter import (
    ControlTotals,
    OutboundRow,
    parse_amount,
)


def _rows():
    return [
        OutboundRow(
            attempt_id="a-1",
            charge_id="c-1",
            agency_id="ag-1",
            external_reference="AT-a-1",
            amount_ars=Decimal("1200.50"),
            scheduled_for=date(2026, 3, 8),
            holder_name="Agencia Sur SRL",
            holder_tax_id="30712345679",
            cbu_last4="0017",
        ),
        OutboundRow(
            attempt_id="a-2",
            charge_id="c-2",
            agency_id="ag-2",
            external_reference="AT-a-2",
            amount_ars=Decimal("800"),
            scheduled_for=date(2026, 3, 8),
            cbu_last4="4410",
        ),
    ]


@pytest.fixture()
def galicia():
    return GaliciaPdV1Adapter(version="v1.0", timezone_name="America/Argentina/Buenos_Aires")


# =============================================================================
# Bank result codes
# =============================================================================


@pytest.mark.parametrize(
    ("code", "status", "reason"),
    [
        ("00", "PAID", "PAID"),
        ("51", "REJECTED", "REJECTED_INSUFFICIENT_FUNDS"),
        ("14", "REJECTED", "REJECTED_INVALID_ACCOUNT"),
        ("md01", "REJECTED", "REJECTED_MANDATE_INVALID"),
        ("15", "REJECTED", "REJECTED_ACCOUNT_CLOSED"),
        ("96", "ERROR", "ERROR_FORMAT"),
        ("94", "ERROR", "ERROR_DUPLICATE"),
        ("ZZZ", "UNKNOWN", "UNKNOWN"),
        (None, "UNKNOWN", "UNKNOWN"),
    ],
)
def test_map_bank_result_code(code, status, reason):
    result = GaliciaPdV1Adapter.map_bank_result_code_to_internal_status(code)
    assert (result.status, result.detailed_reason) == (status, reason)


def test_mapping_returns_a_fresh_result():
    first = map_bank_result_code("00")
    first.status = "TAMPERED"
    assert map_bank_result_code("00").status == "PAID"


# =============================================================================
# Galicia PD v1
# =============================================================================


class TestGaliciaOutbound:
    def test_build_outbound_file_layout(self, galicia):
        built = galicia.build_outbound_file(date(2026, 3, 8), 7, _rows())

        assert built.file_name == "galicia_pd_v1_20260308_0007.txt"
        assert built.content.decode("utf-8").splitlines() == [
            "H|GALICIA_PD|v1.0|0007|PD|20260308|2|2000.50|",
            "D|1|AT-a-1|Agencia Sur SRL|30712345679|0017|1200.50|",
            "D|2|AT-a-2|||4410|800.00|",
            "T|2|2000.50|",
        ]
        assert built.control_totals == ControlTotals(2, Decimal("2000.50"))
        assert built.meta["sequence"] == "0007"

    def test_validate_outbound_control_totals(self, galicia):
        rows = _rows()
        built = galicia.build_outbound_file(date(2026, 3, 8), 1, rows)

        assert galicia.validate_outbound_control_totals(built.control_totals, rows).ok is True

        wrong = galicia.validate_outbound_control_totals(
            ControlTotals(2, Decimal("2000.00")), rows
        )
        assert wrong.ok is False
        assert any("amount_total" in error for error in wrong.errors)

        short = galicia.validate_outbound_control_totals(
            ControlTotals(3, Decimal("2000.50")), rows
        )
        assert any("record_count" in error for error in short.errors)

    def test_pipes_and_newlines_are_stripped_from_fields(self, galicia):
        rows = _rows()
        rows[0].holder_name = "Agencia|Sur\nSRL"

        built = galicia.build_outbound_file(date(2026, 3, 8), 1, rows)

        detail = built.content.decode("utf-8").splitlines()[1]
        assert detail.split("|")[3] == "Agencia Sur SRL"
        assert len(detail.split("|")) == 8

    def test_empty_presentment_still_balances(self, galicia):
        built = galicia.build_outbound_file(date(2026, 3, 8), 2, [])

        assert built.content.decode("utf-8").splitlines() == [
            "H|GALICIA_PD|v1.0|0002|PD|20260308|0|0.00|",
            "T|0|0.00|",
        ]


RESPONSE = (
    "H|GALICIA_PD_RESP|v1.0|0007|PD|20260308|2|2000.50|\n"
    "D|1|AT-a-1|00|APROBADO|1200.50|20260309103000|TR123|OP9\n"
    "D|2|AT-a-2|51|FONDOS INSUFICIENTES|800.00|20260309103000||\n"
    "T|2|2000.50|\n"
)


class TestGaliciaInbound:
    def test_parse_response_rows(self, galicia):
        parsed = galicia.parse_inbound_file(RESPONSE.encode("utf-8"))

        assert parsed.parse_warnings == []
        assert parsed.control_totals == ControlTotals(2, Decimal("2000.50"))
        paid, rejected = parsed.rows
        assert paid.external_reference == "AT-a-1"
        assert paid.status == "PAID"
        assert paid.detailed_reason == "PAID"
        assert paid.amount_ars == Decimal("1200.50")
        assert paid.response_code == "00"
        assert paid.response_message == "APROBADO"
        assert paid.paid_reference == "TR123"
        assert paid.processed_at == datetime(2026, 3, 9, 13, 30, tzinfo=timezone.utc)

        assert rejected.status == "REJECTED"
        assert rejected.detailed_reason == "REJECTED_INSUFFICIENT_FUNDS"
        assert rejected.paid_reference is None
        assert rejected.raw_hash != paid.raw_hash

    def test_operation_number_used_when_trace_is_missing(self, galicia):
        content = RESPONSE.replace("|TR123|OP9", "||OP9").encode("utf-8")

        parsed = galicia.parse_inbound_file(content)

        assert parsed.rows[0].paid_reference == "OP9"

    def test_validate_inbound_control_totals_ok(self, galicia):
        parsed = galicia.parse_inbound_file(RESPONSE.encode("utf-8"))
        assert galicia.validate_inbound_control_totals(parsed).as_dict() == {
            "ok": True,
            "errors": [],
        }

    def test_trailer_amount_mismatch_is_reported_not_raised(self, galicia):
        content = RESPONSE.replace("T|2|2000.50|", "T|2|2100.50|").encode("utf-8")

        parsed = galicia.parse_inbound_file(content)
        validation = galicia.validate_inbound_control_totals(parsed)

        assert len(parsed.rows) == 2
        assert validation.ok is False
        assert any(
            "amount_total" in error and "trailer" in error for error in validation.errors
        )
        assert any("amount_total" in warning for warning in parsed.parse_warnings)

    def test_missing_trailer(self, galicia):
        content = RESPONSE.replace("T|2|2000.50|\n", "").encode("utf-8")

        validation = galicia.validate_inbound_control_totals(
            galicia.parse_inbound_file(content)
        )

        assert "missing trailer record" in validation.errors

    def test_malformed_and_unknown_lines_become_warnings(self, galicia):
        content = (RESPONSE + "D|3|short\nX|garbage\n").encode("utf-8")

        parsed = galicia.parse_inbound_file(content)

        assert len(parsed.rows) == 2
        assert "line 5: malformed detail record" in parsed.parse_warnings
        assert "line 6: unknown record type 'X'" in parsed.parse_warnings

    def test_unknown_result_code_does_not_raise(self, galicia):
        content = RESPONSE.replace("|51|", "|ZZZ|").encode("utf-8")

        parsed = galicia.parse_inbound_file(content)

        assert parsed.rows[1].status == "UNKNOWN"
        assert parsed.rows[1].detailed_reason == "UNKNOWN"

    def test_comma_decimal_amounts_are_accepted(self, galicia):
        content = RESPONSE.replace("|800.00|2026", "|800,00|2026").encode("utf-8")

        parsed = galicia.parse_inbound_file(content)

        assert parsed.rows[1].amount_ars == Decimal("800.00")
        assert parsed.parse_warnings == []

    @pytest.mark.parametrize("raw", ["NaN", "sNaN", "Infinity", "-inf"])
    def test_non_finite_amounts_are_a_warning(self, galicia, raw):
        content = RESPONSE.replace("|800.00|2026", f"|{raw}|2026").encode("utf-8")

        parsed = galicia.parse_inbound_file(content)

        assert parsed.rows[1].amount_ars is None
        assert "line 3: invalid amount" in parsed.parse_warnings


# =============================================================================
# Debug CSV
# =============================================================================


class TestDebugCsv:
    def test_build_presentment_csv(self):
        built = DebugCsvAdapter().build_outbound_file(date(2026, 3, 8), 3, _rows())

        lines = built.content.decode("utf-8").splitlines()
        assert built.file_name == "debug_pd_presentment_2026-03-08.csv"
        assert lines[0].startswith("external_reference,attempt_id,charge_id")
        assert lines[1] == (
            "AT-a-1,a-1,c-1,ag-1,2026-03-08,1200.50,Agencia Sur SRL,30712345679,0017"
        )
        assert built.control_totals == ControlTotals(2, Decimal("2000.50"))
        assert built.content_type.startswith("text/csv")

    def test_parse_response_csv(self):
        content = build_debug_response_csv(
            [
                {
                    "external_reference": "AT-a-1",
                    "result": "PAGADO",
                    "amount_ars": Decimal("1200.5"),
                    "paid_reference": "OP1",
                },
                {
                    "external_reference": "AT-a-2",
                    "result": "RECHAZADO",
                    "rejection_code": "51",
                    "rejection_reason": "Sin fondos",
                },
                {"external_reference": "AT-a-3", "result": "maybe"},
                {"external_reference": "AT-a-4", "result": "REJECTED", "rejection_code": "00"},
            ]
        )
        adapter = DebugCsvAdapter()

        parsed = adapter.parse_inbound_file(content)

        statuses = [(row.status, row.detailed_reason) for row in parsed.rows]
        assert statuses == [
            ("PAID", "PAID"),
            ("REJECTED", "REJECTED_INSUFFICIENT_FUNDS"),
            ("ERROR", "ERROR_INVALID_RESULT"),
            ("REJECTED", "REJECTED_OTHER"),
        ]
        assert [row.line_no for row in parsed.rows] == [2, 3, 4, 5]
        assert parsed.rows[0].amount_ars == Decimal("1200.50")
        assert parsed.rows[0].paid_reference == "OP1"
        assert parsed.rows[1].response_message == "Sin fondos"
        assert parsed.control_totals == ControlTotals(4, Decimal("1200.50"))
        assert adapter.validate_inbound_control_totals(parsed).ok is True

    def test_invalid_amount_is_a_warning(self):
        content = b"external_reference,result,amount_ars\nAT-1,PAID,abc\n"

        parsed = DebugCsvAdapter().parse_inbound_file(content)

        assert parsed.rows[0].amount_ars is None
        assert parsed.parse_warnings == ["line 2: invalid amount"]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1200.5", Decimal("1200.50")),
        ("800,00", Decimal("800.00")),
        ("", None),
        ("abc", None),
        ("NaN", None),
        ("Infinity", None),
    ],
)
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


def test_get_adapter_by_key(override_settings):
    assert isinstance(get_adapter("DEBUG_CSV"), DebugCsvAdapter)
    assert isinstance(get_adapter("galicia_pd_v1"), GaliciaPdV1Adapter)

    override_settings(billing_pd_adapter="debug_csv")
    assert isinstance(get_adapter(), DebugCsvAdapter)

    with pytest.raises(ValueError, match="Unknown direct-debit adapter"):
        get_adapter("santander_v2")
