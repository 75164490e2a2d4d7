"""Tests for presentment batches and bank response imports."""

import uuid
from datetime import date
from decimal import Decimal

import httpx
import pytest
from fastapi import HTTPException

from billing_collections.models.billing_event import BillingEvent
from billing_collections.models.collections import (
    AttemptStatus,
    BillingAttempt,
    BillingCharge,
    ChargeStatus,
    FiscalDocument,
    FiscalDocumentStatus,
    MandateStatus,
    PaymentChannel,
    PaymentMethodStatus,
)
from billing_collections.models.direct_debit import (
    BatchDirection,
    BatchItemStatus,
    BatchStatus,
    FileBatch,
    FileBatchItem,
)
from billing_collections.services import collections as collections_service
from billing_collections.services.collections.direct_debit import build_debug_response_csv
from billing_collections.services.collections.fiscal import HttpFiscalIssuer

ANCHOR = date(2026, 3, 8)


def _galicia_response(*details):
    """Build a balanced response file from (reference, code, amount, trace) tuples."""
    total = sum((Decimal(amount) for _, _, amount, _ in details), Decimal("0"))
    lines = [f"H|GALICIA_PD_RESP|v1.0|0001|PD|20260308|{len(details)}|{total:.2f}|"]
    for line_no, (reference, code, amount, trace) in enumerate(details, start=1):
        lines.append(
            f"D|{line_no}|{reference}|{code}|RESULT {code}|{amount}|20260309103000|{trace}|"
        )
    lines.append(f"T|{len(details)}|{total:.2f}|")
    return ("\n".join(lines) + "\n").encode("utf-8")


def _attempts(db_session):
    return db_session.query(BillingAttempt).order_by(BillingAttempt.attempt_no).all()


@pytest.fixture()
def presented(db_session, billable_subscription):
    """Anchor run plus a presentment on the anchor date (attempt 1 only)."""
    collections_service.anchor_scheduler.run(db_session, ANCHOR)
    result = collections_service.direct_debit_batches.create_presentment_batch(
        db_session, ANCHOR, actor="ops"
    )
    assert result["ok"] is True
    return result


# =============================================================================
# Presentment
# =============================================================================


class TestPresentment:
    def test_presents_due_attempts_only(self, db_session, presented, s3_client):
        assert presented["total_rows"] == 1
        assert presented["total_amount_ars"] == "108900.00"
        assert presented["sequence"] == 1
        assert presented["file_name"] == "galicia_pd_v1_20260308_0001.txt"
        assert presented["storage_key"] == (
            f"billing/direct-debit/outbound/2026-03-08/batch-{presented['batch_id']}-"
            "galicia_pd_v1_20260308_0001.txt"
        )

        stored = s3_client.objects[("test-billing-batches", presented["storage_key"])]
        lines = stored["Body"].decode("utf-8").splitlines()
        first, second, third = _attempts(db_session)
        assert lines[1] == f"D|1|AT-{first.id}|Agencia Sur SRL|30712345679|0017|108900.00|"
        assert lines[-1] == "T|1|108900.00|"

        assert first.status == AttemptStatus.sent
        assert second.status == AttemptStatus.pending
        assert third.status == AttemptStatus.pending

        batch = db_session.get(FileBatch, uuid.UUID(presented["batch_id"]))
        assert batch.status == BatchStatus.ready
        assert batch.direction == BatchDirection.outbound
        assert batch.sha256 == presented["sha256"]
        assert [item.status for item in batch.items] == [BatchItemStatus.presented]

    def test_later_business_date_includes_all_scheduled_attempts(
        self, db_session, billable_subscription
    ):
        collections_service.anchor_scheduler.run(db_session, ANCHOR)

        result = collections_service.direct_debit_batches.create_presentment_batch(
            db_session, date(2026, 3, 15)
        )

        assert result["total_rows"] == 3
        assert result["total_amount_ars"] == "326700.00"

    def test_nothing_due_is_a_no_op(self, db_session, presented):
        result = collections_service.direct_debit_batches.create_presentment_batch(
            db_session, ANCHOR
        )

        assert result["ok"] is True
        assert result["no_op"] is True
        assert result["reason"] == "no_eligible_attempts"
        assert db_session.query(FileBatch).count() == 1

    def test_inactive_mandate_is_skipped(
        self, db_session, make_subscription, make_direct_debit_method, make_fx_rate
    ):
        subscription = make_subscription()
        make_direct_debit_method(subscription, mandate_status=MandateStatus.pending_bank)
        make_fx_rate()
        collections_service.anchor_scheduler.run(db_session, ANCHOR)

        result = collections_service.direct_debit_batches.create_presentment_batch(
            db_session, ANCHOR
        )

        assert result["no_op"] is True
        assert [item["reason"] for item in result["skipped"]] == ["mandate_not_active"]
        assert _attempts(db_session)[0].status == AttemptStatus.pending

    def test_mandate_requirement_can_be_switched_off(
        self,
        db_session,
        make_subscription,
        make_direct_debit_method,
        make_fx_rate,
        override_settings,
    ):
        subscription = make_subscription()
        make_direct_debit_method(subscription, mandate_status=MandateStatus.pending_bank)
        make_fx_rate()
        collections_service.anchor_scheduler.run(db_session, ANCHOR)
        override_settings(billing_pd_require_active_mandate=False)

        result = collections_service.direct_debit_batches.create_presentment_batch(
            db_session, ANCHOR
        )

        assert result["ok"] is True
        assert result["total_rows"] == 1

    def test_disabled_method_is_skipped(self, db_session, billable_subscription):
        collections_service.anchor_scheduler.run(db_session, ANCHOR)
        method = billable_subscription.payment_methods[0]
        method.status = PaymentMethodStatus.disabled
        db_session.flush()

        result = collections_service.direct_debit_batches.create_presentment_batch(
            db_session, ANCHOR
        )

        assert result["no_op"] is True
        assert result["skipped"][0]["reason"] == "no_direct_debit_method"

    def test_upload_failure_returns_attempts_to_pending(
        self, db_session, billable_subscription, s3_client
    ):
        collections_service.anchor_scheduler.run(db_session, ANCHOR)
        s3_client.fail_uploads = True

        failed = collections_service.direct_debit_batches.create_presentment_batch(
            db_session, ANCHOR
        )

        assert failed["ok"] is False
        assert failed["reason"] == "upload_failed"
        batch = db_session.get(FileBatch, uuid.UUID(failed["batch_id"]))
        assert batch.status == BatchStatus.error
        assert batch.storage_key is None
        assert _attempts(db_session)[0].status == AttemptStatus.pending
        assert (
            db_session.query(BillingEvent)
            .filter_by(event_type="PD_BATCH_UPLOAD_FAILED")
            .count()
            == 1
        )

        s3_client.fail_uploads = False
        retried = collections_service.direct_debit_batches.create_presentment_batch(
            db_session, ANCHOR
        )

        assert retried["ok"] is True
        assert retried["sequence"] == 2
        assert _attempts(db_session)[0].status == AttemptStatus.sent

    def test_debug_csv_adapter(self, db_session, billable_subscription):
        collections_service.anchor_scheduler.run(db_session, ANCHOR)

        result = collections_service.direct_debit_batches.create_presentment_batch(
            db_session, ANCHOR, adapter_key="debug_csv"
        )

        assert result["file_name"] == "debug_pd_presentment_2026-03-08.csv"
        assert db_session.get(FileBatch, uuid.UUID(result["batch_id"])).adapter == "debug_csv"


# =============================================================================
# Sent / download / listing
# =============================================================================


class TestBatchBookkeeping:
    def test_mark_batch_sent(self, db_session, presented):
        service = collections_service.direct_debit_batches

        first = service.mark_batch_sent(db_session, presented["batch_id"], actor="ops")
        again = service.mark_batch_sent(db_session, presented["batch_id"])

        assert first == {"ok": True, "batch_id": presented["batch_id"], "status": "sent"}
        assert again == {"ok": True, "no_op": True, "reason": "already_sent"}

    def test_download_returns_stored_file(self, db_session, presented):
        file_name, content = collections_service.direct_debit_batches.download_file(
            db_session, presented["batch_id"]
        )

        assert file_name == "galicia_pd_v1_20260308_0001.txt"
        assert content.startswith(b"H|GALICIA_PD|v1.0|0001|PD|20260308|1|108900.00|")

    def test_unknown_batch_is_404(self, db_session):
        with pytest.raises(HTTPException) as exc:
            collections_service.direct_debit_batches.get(
                db_session, "00000000-0000-0000-0000-000000000000"
            )
        assert exc.value.status_code == 404

    def test_list_batches_filters(self, db_session, presented):
        service = collections_service.direct_debit_batches

        outbound = service.list_batches(db_session, direction="OUTBOUND")
        inbound = service.list_batches(db_session, direction="inbound")
        in_range = service.list_batches(
            db_session, date_from=date(2026, 3, 1), date_to=date(2026, 3, 31)
        )

        assert [str(batch.id) for batch in outbound] == [presented["batch_id"]]
        assert inbound == []
        assert len(in_range) == 1
        with pytest.raises(HTTPException) as exc:
            service.list_batches(db_session, status="lost")
        assert exc.value.status_code == 400

    def test_list_items(self, db_session, presented):
        response = collections_service.direct_debit_batches.list_items(
            db_session, presented["batch_id"]
        )

        assert response["count"] == 1
        assert response["items"][0].row_payload["amount_ars"] == "108900.00"


# =============================================================================
# Response import
# =============================================================================


class TestResponseImport:
    def test_paid_row_closes_charge_and_issues_fiscal_document(
        self, db_session, presented, s3_client
    ):
        first = _attempts(db_session)[0]
        content = _galicia_response((f"AT-{first.id}", "00", "108900.00", "TR1"))

        result = collections_service.direct_debit_batches.import_response_batch(
            db_session, presented["batch_id"], content, "resp.txt", actor="ops"
        )

        assert result["ok"] is True
        assert result["errors"] == []
        assert result["summary"] == {
            "total_rows": 1,
            "matched_rows": 1,
            "paid": 1,
            "already_paid": 0,
            "rejected": 0,
            "error_rows": 0,
            "fiscal_issued": 1,
            "fiscal_failed": 0,
        }

        charge = db_session.query(BillingCharge).one()
        assert charge.status == ChargeStatus.paid
        assert charge.paid_via_channel == PaymentChannel.office_banking
        assert charge.amount_ars_paid == Decimal("108900.00")
        assert charge.paid_reference == "TR1"
        statuses = [attempt.status for attempt in _attempts(db_session)]
        assert statuses == [AttemptStatus.paid, AttemptStatus.canceled, AttemptStatus.canceled]
        assert db_session.query(FiscalDocument).one().status == FiscalDocumentStatus.issued

        outbound = db_session.get(FileBatch, uuid.UUID(presented["batch_id"]))
        assert outbound.status == BatchStatus.processed
        assert outbound.items[0].status == BatchItemStatus.paid
        inbound = db_session.get(FileBatch, uuid.UUID(result["inbound_batch_id"]))
        assert inbound.direction == BatchDirection.inbound
        assert inbound.parent_batch_id == outbound.id
        assert inbound.total_paid_rows == 1
        assert ("test-billing-batches", inbound.storage_key) in s3_client.objects

    def test_malformed_fiscal_reply_keeps_paid_row(self, db_session, presented):
        first = _attempts(db_session)[0]
        content = _galicia_response((f"AT-{first.id}", "00", "108900.00", "TR1"))
        gateway = httpx.Client(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"number": "1", "cae_due": "soon"})
            )
        )

        result = collections_service.direct_debit_batches.import_response_batch(
            db_session,
            presented["batch_id"],
            content,
            "resp.txt",
            issuer=HttpFiscalIssuer(base_url="https://fiscal.test", client=gateway),
        )

        assert result["summary"]["paid"] == 1
        assert result["summary"]["fiscal_failed"] == 1
        assert result["row_errors"] == []
        assert db_session.query(BillingCharge).one().status == ChargeStatus.paid
        assert first.status == AttemptStatus.paid
        document = db_session.query(FiscalDocument).one()
        assert document.status == FiscalDocumentStatus.error
        assert document.retry_count == 1

    def test_rejected_row_moves_dunning_stage(self, db_session, presented):
        first = _attempts(db_session)[0]
        content = _galicia_response((f"AT-{first.id}", "51", "108900.00", ""))

        result = collections_service.direct_debit_batches.import_response_batch(
            db_session, presented["batch_id"], content, "resp.txt"
        )

        assert result["summary"]["rejected"] == 1
        assert first.status == AttemptStatus.rejected
        assert first.rejection_code == "51"
        charge = db_session.query(BillingCharge).one()
        assert charge.status == ChargeStatus.past_due
        assert charge.dunning_stage == 1
        assert charge.overdue_since is not None

    def test_bank_error_row_is_counted_but_leaves_attempt_open(self, db_session, presented):
        first = _attempts(db_session)[0]
        content = _galicia_response((f"AT-{first.id}", "96", "108900.00", ""))

        result = collections_service.direct_debit_batches.import_response_batch(
            db_session, presented["batch_id"], content, "resp.txt"
        )

        assert result["summary"]["error_rows"] == 1
        assert result["row_errors"][0]["reason"] == "ERROR_FORMAT"
        assert first.status == AttemptStatus.sent
        assert first.notes == "bank_result_ERROR_FORMAT:96"

    def test_unmatched_rows_are_recorded_as_errors(self, db_session, presented):
        first = _attempts(db_session)[0]
        content = _galicia_response(
            (f"AT-{first.id}", "00", "108900.00", "TR1"),
            ("AT-unknown", "00", "10.00", "TR2"),
        )

        result = collections_service.direct_debit_batches.import_response_batch(
            db_session, presented["batch_id"], content, "resp.txt"
        )

        assert result["summary"]["paid"] == 1
        assert result["summary"]["error_rows"] == 1
        assert result["row_errors"] == [
            {"line_no": 3, "external_reference": "AT-unknown", "reason": "unmatched_row"}
        ]
        inbound_items = (
            db_session.query(FileBatchItem)
            .filter(FileBatchItem.batch_id == uuid.UUID(result["inbound_batch_id"]))
            .order_by(FileBatchItem.line_no)
            .all()
        )
        assert [item.status for item in inbound_items] == [
            BatchItemStatus.paid,
            BatchItemStatus.error,
        ]
        assert inbound_items[1].attempt_id is None

    def test_same_file_twice_is_not_reprocessed(self, db_session, presented):
        first = _attempts(db_session)[0]
        content = _galicia_response((f"AT-{first.id}", "00", "108900.00", "TR1"))
        service = collections_service.direct_debit_batches

        imported = service.import_response_batch(
            db_session, presented["batch_id"], content, "resp.txt"
        )
        again = service.import_response_batch(
            db_session, presented["batch_id"], content, "resp-copy.txt"
        )

        assert again["already_imported"] is True
        assert again["inbound_batch_id"] == imported["inbound_batch_id"]
        assert again["summary"]["paid"] == 1
        assert (
            db_session.query(FileBatch)
            .filter(FileBatch.direction == BatchDirection.inbound)
            .count()
            == 1
        )

    def test_control_total_mismatch_is_reported_and_rows_still_applied(
        self, db_session, presented
    ):
        first = _attempts(db_session)[0]
        content = _galicia_response((f"AT-{first.id}", "00", "108900.00", "TR1")).replace(
            b"T|1|108900.00|", b"T|1|100000.00|"
        )

        result = collections_service.direct_debit_batches.import_response_batch(
            db_session, presented["batch_id"], content, "resp.txt"
        )

        assert result["ok"] is False
        assert any("amount_total" in error for error in result["errors"])
        assert result["summary"]["paid"] == 1
        assert db_session.query(BillingCharge).one().status == ChargeStatus.paid

    def test_debug_csv_round_trip(self, db_session, billable_subscription):
        collections_service.anchor_scheduler.run(db_session, ANCHOR)
        service = collections_service.direct_debit_batches
        batch = service.create_presentment_batch(db_session, ANCHOR, adapter_key="debug_csv")
        first = _attempts(db_session)[0]
        content = build_debug_response_csv(
            [
                {
                    "external_reference": first.external_reference,
                    "result": "RECHAZADO",
                    "rejection_code": "51",
                    "rejection_reason": "Sin fondos",
                }
            ]
        )

        result = service.import_response_batch(
            db_session, batch["batch_id"], content, "resp.csv", content_type="text/csv"
        )

        assert result["ok"] is True
        assert result["summary"]["rejected"] == 1
        assert first.rejection_reason == "Sin fondos"

    def test_import_into_unknown_batch_is_404(self, db_session):
        with pytest.raises(HTTPException) as exc:
            collections_service.direct_debit_batches.import_response_batch(
                db_session, "00000000-0000-0000-0000-000000000000", b"", "resp.txt"
            )
        assert exc.value.status_code == 404
