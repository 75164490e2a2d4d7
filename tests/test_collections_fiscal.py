"""Tests for fiscal document issuance."""

import json
from datetime import date
from decimal import Decimal

import httpx
import pytest

from billing_collections.models.collections import (
    BillingCharge,
    ChargeStatus,
    FiscalDocument,
    FiscalDocumentStatus,
    PaymentChannel,
)
from billing_collections.services import collections as collections_service
from billing_collections.services.collections.charges import close_charge_as_paid
from billing_collections.services.collections.fiscal import (
    FiscalIssuerError,
    FiscalIssueRequest,
    HttpFiscalIssuer,
    MockFiscalIssuer,
    get_fiscal_issuer,
)


class FailingIssuer:
    def __init__(self):
        self.calls = 0

    def issue(self, request):
        self.calls += 1
        raise FiscalIssuerError("gateway down")


class CrashingIssuer:
    def issue(self, request):
        raise RuntimeError("unexpected issuer crash")


def _gateway_returning(body) -> httpx.Client:
    return httpx.Client(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body))
    )


def _request(amount="108900.00") -> FiscalIssueRequest:
    return FiscalIssueRequest(
        charge_id="charge-1",
        agency_id="agency-1",
        document_type="INVOICE_B",
        amount_ars=Decimal(amount),
        pto_vta=1,
        cbte_tipo=6,
    )


@pytest.fixture()
def charge(db_session, billable_subscription):
    collections_service.anchor_scheduler.run(db_session, date(2026, 3, 8))
    return db_session.query(BillingCharge).one()


@pytest.fixture()
def paid_charge(db_session, charge):
    close_charge_as_paid(
        db_session,
        charge,
        channel=PaymentChannel.office_banking,
        amount_ars=None,
        paid_at=None,
        paid_reference="TR1",
    )
    return charge


# =============================================================================
# Bridge
# =============================================================================


class TestFiscalBridge:
    def test_unpaid_charge_is_refused(self, db_session, charge):
        result = collections_service.fiscal_bridge.issue_for_charge(db_session, charge.id)

        assert result == {"ok": False, "reason": "charge_not_paid", "charge_id": str(charge.id)}
        assert db_session.query(FiscalDocument).count() == 0

    def test_issue_with_mock_issuer(self, db_session, paid_charge):
        result = collections_service.fiscal_bridge.issue_for_charge(
            db_session, paid_charge.id, document_type="invoice_b", issuer=MockFiscalIssuer()
        )

        assert result["ok"] is True
        assert result["external_reference"].startswith(f"MOCK-{paid_charge.id}-")
        document = db_session.query(FiscalDocument).one()
        assert document.document_type == "INVOICE_B"
        assert document.status == FiscalDocumentStatus.issued
        assert document.afip_cae.startswith("MOCKCAE")
        assert document.payload["amount_ars"] == "108900.00"
        assert document.issued_at is not None

    def test_issuing_twice_keeps_one_document(self, db_session, paid_charge):
        bridge = collections_service.fiscal_bridge
        first = bridge.issue_for_charge(db_session, paid_charge.id, issuer=MockFiscalIssuer())
        issuer = FailingIssuer()

        again = bridge.issue_for_charge(db_session, paid_charge.id, issuer=issuer)

        assert again == {
            "ok": True,
            "already_issued": True,
            "document_id": first["document_id"],
            "status": "issued",
        }
        assert issuer.calls == 0
        assert db_session.query(FiscalDocument).count() == 1

    def test_failures_are_counted_and_retried(self, db_session, paid_charge):
        bridge = collections_service.fiscal_bridge

        first = bridge.issue_for_charge(db_session, paid_charge.id, issuer=FailingIssuer())
        second = bridge.issue_for_charge(db_session, paid_charge.id, issuer=FailingIssuer())

        assert first["reason"] == "issuer_failed"
        assert first["retry_count"] == 1
        assert second["retry_count"] == 2
        assert second["message"] == "gateway down"
        document = db_session.query(FiscalDocument).one()
        assert document.status == FiscalDocumentStatus.error

        summary = bridge.retry_failed(db_session, issuer=MockFiscalIssuer())

        assert summary == {"scanned": 1, "issued": 1, "failed": 0}
        assert document.status == FiscalDocumentStatus.issued
        assert document.error_message is None
        assert bridge.retry_failed(db_session) == {"scanned": 0, "issued": 0, "failed": 0}

    def test_pd_payment_issues_document(self, db_session, charge):
        result = collections_service.dunning.on_pd_attempt_paid(
            db_session, charge.id, paid_reference="TR1"
        )

        assert result["fiscal"]["ok"] is True
        assert db_session.query(FiscalDocument).one().status == FiscalDocumentStatus.issued

    def test_issuer_failure_does_not_undo_payment(self, db_session, charge):
        result = collections_service.dunning.on_pd_attempt_paid(
            db_session, charge.id, issuer=FailingIssuer()
        )

        assert result["charge_closed"] is True
        assert result["fiscal"]["reason"] == "issuer_failed"
        assert charge.paid_at is not None

    def test_malformed_gateway_document_does_not_undo_payment(self, db_session, charge):
        issuer = HttpFiscalIssuer(
            base_url="https://fiscal.test",
            client=_gateway_returning({"number": "1", "cae_due": "not-a-date"}),
        )

        result = collections_service.dunning.on_pd_attempt_paid(
            db_session, charge.id, issuer=issuer
        )

        assert result["charge_closed"] is True
        assert result["fiscal"]["reason"] == "issuer_failed"
        assert charge.status == ChargeStatus.paid
        document = db_session.query(FiscalDocument).one()
        assert document.status == FiscalDocumentStatus.error
        assert document.retry_count == 1
        assert "invalid document" in document.error_message

    def test_retry_pass_survives_unexpected_issuer_error(self, db_session, paid_charge):
        bridge = collections_service.fiscal_bridge
        bridge.issue_for_charge(db_session, paid_charge.id, issuer=FailingIssuer())

        summary = bridge.retry_failed(db_session, issuer=CrashingIssuer())

        assert summary == {"scanned": 1, "issued": 0, "failed": 1}
        document = db_session.query(FiscalDocument).one()
        assert document.status == FiscalDocumentStatus.error
        assert document.retry_count == 1
        assert paid_charge.status == ChargeStatus.paid

        assert bridge.retry_failed(db_session, issuer=MockFiscalIssuer())["issued"] == 1


# =============================================================================
# Issuers
# =============================================================================


def test_mock_issuer_refuses_zero_amount():
    with pytest.raises(FiscalIssuerError):
        MockFiscalIssuer().issue(_request("0.00"))


def test_get_fiscal_issuer_by_mode(override_settings):
    assert isinstance(get_fiscal_issuer(), MockFiscalIssuer)

    override_settings(billing_fiscal_issuer_mode="HTTP")
    assert isinstance(get_fiscal_issuer(), HttpFiscalIssuer)


class TestHttpFiscalIssuer:
    def test_posts_document_request(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                201, json={"number": "00001234", "cae": "74123456789012", "cae_due": "2026-03-20"}
            )

        client = httpx.Client(transport=httpx.MockTransport(handler))
        issuer = HttpFiscalIssuer(base_url="https://fiscal.test/", token="tok", client=client)

        result = issuer.issue(_request())

        assert seen["url"] == "https://fiscal.test/documents"
        assert seen["headers"]["Idempotency-Key"] == "fiscal:charge-1:INVOICE_B"
        assert seen["headers"]["Authorization"] == "Bearer tok"
        assert seen["body"]["amount_ars"] == "108900.00"
        assert result.external_reference == "AFIP-1-6-00001234"
        assert result.afip_number == "00001234"
        assert result.afip_cae_due == date(2026, 3, 20)

    def test_http_error_is_wrapped(self):
        client = httpx.Client(
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        )
        issuer = HttpFiscalIssuer(base_url="https://fiscal.test", client=client)

        with pytest.raises(FiscalIssuerError, match="request failed"):
            issuer.issue(_request())

    def test_response_without_number_is_rejected(self):
        client = httpx.Client(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))
        )
        issuer = HttpFiscalIssuer(base_url="https://fiscal.test", client=client)

        with pytest.raises(FiscalIssuerError, match="missing document number"):
            issuer.issue(_request())

    @pytest.mark.parametrize(
        "body",
        [
            {"number": "1", "cae_due": "not-a-date"},
            {"number": "1", "pto_vta": "first"},
            {"number": "1", "cbte_tipo": ["6"]},
        ],
    )
    def test_malformed_document_fields_are_wrapped(self, body):
        issuer = HttpFiscalIssuer(base_url="https://fiscal.test", client=_gateway_returning(body))

        with pytest.raises(FiscalIssuerError, match="invalid document"):
            issuer.issue(_request())

    def test_non_object_body_is_rejected(self):
        issuer = HttpFiscalIssuer(base_url="https://fiscal.test", client=_gateway_returning([]))

        with pytest.raises(FiscalIssuerError, match="non-object"):
            issuer.issue(_request())

    def test_missing_gateway_url(self, override_settings):
        override_settings(billing_fiscal_gateway_url=None)

        with pytest.raises(FiscalIssuerError, match="not configured"):
            HttpFiscalIssuer().issue(_request())
