from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient

from billing_collections.db import get_db
from billing_collections.main import app
from billing_collections.models.billing_event import BillingEvent
from billing_collections.models.collections import BillingAttempt

API = "/api/v1/collections"
VALID_CBU = "0070999000000000000017"


@pytest.fixture()
def client(db_session):
    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture()
def anchored(client, make_subscription, make_direct_debit_method):
    subscription = make_subscription()
    make_direct_debit_method(subscription)
    resp = client.post(
        f"{API}/fx-rates", json={"rate_date": "2026-03-08", "ars_per_usd": "1000"}
    )
    assert resp.json()["created"] is True
    resp = client.post(f"{API}/run-anchor", json={"anchor_date": "2026-03-08"})
    assert resp.status_code == 200
    return resp.json()


def _charge_id(client) -> str:
    return client.get(f"{API}/charges").json()["items"][0]["id"]


def test_health(client):
    resp = client.get("/health")

    assert resp.json() == {"status": "ok"}
    assert resp.headers["x-request-id"]


def test_run_anchor_and_read_charge(client, anchored):
    assert anchored["ok"] is True
    assert anchored["charges_created"] == 1

    listing = client.get(f"{API}/charges", params={"status": "ready"}).json()
    assert listing["count"] == 1
    charge = listing["items"][0]
    assert charge["amount_ars_due"] == "108900.00"
    assert charge["agency_charge_id"] == 1

    detail = client.get(f"{API}/charges/{charge['id']}").json()
    assert [a["attempt_no"] for a in detail["attempts"]] == [1, 2, 3]
    assert [a["scheduled_for"] for a in detail["attempts"]] == [
        "2026-03-08",
        "2026-03-11",
        "2026-03-15",
    ]

    cycles = client.get(f"{API}/cycles").json()
    assert cycles["items"][0]["total_ars"] == "108900.00"


def test_fx_rate_is_immutable(client, anchored):
    resp = client.post(
        f"{API}/fx-rates", json={"rate_date": "2026-03-08", "ars_per_usd": "1200"}
    )

    assert resp.json()["ok"] is False
    assert resp.json()["reason"] == "rate_frozen_by_cycle"


def test_unknown_charge_uses_error_envelope(client):
    resp = client.get(f"{API}/charges/{uuid.uuid4()}", headers={"x-request-id": "req-1"})

    assert resp.status_code == 404
    assert resp.json() == {
        "code": "http_404",
        "message": "Charge not found",
        "details": None,
        "request_id": "req-1",
    }


def test_invalid_status_filter_is_400(client):
    resp = client.get(f"{API}/charges", params={"status": "lost"})

    assert resp.status_code == 400
    assert resp.json()["code"] == "http_400"


def test_presentment_download_and_response_import(client, anchored, db_session):
    created = client.post(
        f"{API}/direct-debit/batches",
        json={"business_date": "2026-03-08"},
        headers={"X-Actor-Id": "ops"},
    )
    assert created.status_code == 201
    batch = created.json()
    assert batch["total_rows"] == 1

    download = client.get(f"{API}/direct-debit/batches/{batch['batch_id']}/file")
    assert download.status_code == 200
    assert download.content.startswith(b"H|GALICIA_PD|")
    assert batch["file_name"] in download.headers["content-disposition"]

    sent = client.post(f"{API}/direct-debit/batches/{batch['batch_id']}/sent")
    assert sent.json()["status"] == "sent"

    items = client.get(f"{API}/direct-debit/batches/{batch['batch_id']}/items").json()
    assert items["count"] == 1

    attempt = db_session.query(BillingAttempt).filter_by(attempt_no=1).one()
    content = (
        "H|GALICIA_PD_RESP|v1.0|0001|PD|20260308|1|108900.00|\n"
        f"D|1|AT-{attempt.id}|00|ACREDITADO|108900.00|20260309103000|TR1|\n"
        "T|1|108900.00|\n"
    )
    imported = client.post(
        f"{API}/direct-debit/batches/{batch['batch_id']}/import-response",
        files={"file": ("resp.txt", content.encode("utf-8"), "text/plain")},
    )
    assert imported.status_code == 200
    assert imported.json()["summary"]["paid"] == 1

    charge = client.get(f"{API}/charges/{_charge_id(client)}").json()
    assert charge["status"] == "paid"
    assert charge["paid_via_channel"] == "office_banking"
    assert charge["fiscal_documents"][0]["status"] == "issued"

    batches = client.get(f"{API}/direct-debit/batches", params={"direction": "inbound"}).json()
    assert batches["count"] == 1
    assert db_session.query(BillingEvent).filter_by(created_by="ops").count() >= 1


def test_empty_response_file_is_rejected(client, anchored):
    batch = client.post(
        f"{API}/direct-debit/batches", json={"business_date": "2026-03-08"}
    ).json()

    resp = client.post(
        f"{API}/direct-debit/batches/{batch['batch_id']}/import-response",
        files={"file": ("resp.txt", b"", "text/plain")},
    )

    assert resp.status_code == 400
    assert resp.json()["message"] == "Response file is empty"


def test_failed_upload_leaves_nothing_to_download(client, anchored, s3_client):
    s3_client.fail_uploads = True
    batch = client.post(
        f"{API}/direct-debit/batches", json={"business_date": "2026-03-08"}
    ).json()
    assert batch["reason"] == "upload_failed"

    resp = client.get(f"{API}/direct-debit/batches/{batch['batch_id']}/file")

    assert resp.status_code == 404
    assert resp.json()["message"] == "Batch has no stored file"


def test_fallback_paid_and_fiscal_retry(client, anchored):
    charge_id = _charge_id(client)

    created = client.post(f"{API}/fallback/create", json={"charge_id": charge_id}).json()
    assert created["created"] is True

    paid = client.post(f"{API}/fallback/{created['intent_id']}/paid").json()
    assert paid["charge_closed"] is True
    assert paid["paid_via_channel"] == "cig_qr"

    retry = client.post(f"{API}/charges/{charge_id}/fiscal/retry").json()
    assert retry["already_issued"] is True

    synced = client.post(f"{API}/fallback/sync").json()
    assert synced["scanned"] == 0


def test_mandate_endpoints(client, make_subscription, make_direct_debit_method):
    method = make_direct_debit_method(make_subscription(), mandate_status=None)

    created = client.post(
        f"{API}/mandates",
        json={"payment_method_id": str(method.id), "cbu": VALID_CBU, "consent_version": "v2"},
    )
    assert created.status_code == 201
    mandate = created.json()
    assert mandate["status"] == "pending"
    assert mandate["cbu_last4"] == "0017"
    assert "cbu" not in mandate

    activated = client.post(
        f"{API}/mandates/{mandate['id']}/transition",
        json={"status": "active", "bank_reference": "BNK-9"},
    ).json()
    assert activated["status"] == "active"
    assert activated["bank_reference"] == "BNK-9"

    invalid = client.post(
        f"{API}/mandates", json={"payment_method_id": str(method.id), "cbu": "123"}
    )
    assert invalid.status_code == 400
    assert invalid.json()["message"] == "Invalid CBU"


def test_validation_error_envelope(client):
    resp = client.post(f"{API}/fx-rates", json={"ars_per_usd": "1000"})

    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"


def test_manual_job_run_and_listing(client):
    unknown = client.post(f"{API}/jobs/reboot/run")
    assert unknown.status_code == 404

    run = client.post(f"{API}/jobs/fiscal_retry/run", headers={"X-Actor-Id": "ops"}).json()
    assert run["status"] == "no_op"

    runs = client.get(f"{API}/job-runs", params={"job_name": "fiscal_retry"}).json()
    assert runs["count"] == 1
    assert runs["items"][0]["source"] == "manual"
    assert runs["items"][0]["status"] == "no_op"


def test_metrics_endpoint(client):
    client.get("/health")

    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert "http_requests_total" in resp.text
