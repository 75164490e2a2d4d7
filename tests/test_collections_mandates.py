"""Tests for direct-debit mandates and CBU helpers."""

import pytest
from fastapi import HTTPException

from billing_collections.models.billing_event import BillingEvent
from billing_collections.models.collections import (
    BillingMandate,
    BillingPaymentMethod,
    MandateStatus,
    PaymentMethodStatus,
    PaymentMethodType,
)
from billing_collections.services import collections as collections_service
from billing_collections.services.collections.mandates import (
    hash_cbu,
    mask_cbu,
    normalize_cbu,
    validate_cbu,
)

VALID_CBU = "0070999000000000000017"


@pytest.fixture()
def method(db_session, make_subscription, make_direct_debit_method):
    return make_direct_debit_method(
        make_subscription(), mandate_status=None, status=PaymentMethodStatus.pending
    )


def _events(db_session, event_type):
    return db_session.query(BillingEvent).filter_by(event_type=event_type).all()


# =============================================================================
# CBU helpers
# =============================================================================


def test_validate_cbu():
    assert validate_cbu(VALID_CBU) is True
    assert validate_cbu("0070999000000000000018") is False
    assert validate_cbu("0070999100000000000017") is False
    assert validate_cbu("007099900000000000001") is False
    assert validate_cbu("00709990000000000000AB") is False
    assert validate_cbu(None) is False


def test_cbu_masking_and_hashing():
    assert normalize_cbu("0070-9990 0000000000 0017") == VALID_CBU
    assert mask_cbu(VALID_CBU) == "****0017"
    assert mask_cbu("") == ""
    assert hash_cbu("0070-9990-00000000000017") == hash_cbu(VALID_CBU)
    assert len(hash_cbu(VALID_CBU)) == 64


# =============================================================================
# Mandates
# =============================================================================


class TestMandateCreate:
    def test_create_stores_only_last4_and_hash(self, db_session, method):
        mandate = collections_service.mandates.create(
            db_session,
            method.id,
            "0070-9990 0000000000 0017",
            consent_version="2026-01",
            actor="agency-admin",
        )

        assert mandate.status == MandateStatus.pending
        assert mandate.cbu_last4 == "0017"
        assert mandate.cbu_hash == hash_cbu(VALID_CBU)
        assert mandate.consent_version == "2026-01"
        assert mandate.consent_accepted_at is not None
        assert method.mandate is mandate
        assert method.status == PaymentMethodStatus.pending
        (event,) = _events(db_session, "MANDATE_CREATED")
        assert event.payload["cbu_masked"] == "****0017"
        assert VALID_CBU not in str(event.payload)

    def test_same_cbu_returns_existing_mandate(self, db_session, method):
        first = collections_service.mandates.create(db_session, method.id, VALID_CBU)
        again = collections_service.mandates.create(db_session, method.id, VALID_CBU)

        assert again.id == first.id
        assert db_session.query(BillingMandate).count() == 1

    def test_revoked_mandate_is_reopened(self, db_session, method):
        service = collections_service.mandates
        mandate = service.create(db_session, method.id, VALID_CBU)
        service.transition_status(db_session, mandate.id, MandateStatus.revoked)

        reopened = service.create(db_session, method.id, VALID_CBU)

        assert reopened.id == mandate.id
        assert reopened.status == MandateStatus.pending
        assert reopened.revoked_at is None

    def test_invalid_cbu_is_rejected(self, db_session, method):
        with pytest.raises(HTTPException) as exc:
            collections_service.mandates.create(db_session, method.id, "0070999000000000000018")
        assert exc.value.status_code == 400
        assert exc.value.detail == "Invalid CBU"

    def test_non_direct_debit_method_is_rejected(self, db_session, make_subscription):
        cig = BillingPaymentMethod(
            subscription_id=make_subscription().id,
            method_type=PaymentMethodType.cig_galicia,
            status=PaymentMethodStatus.active,
        )
        db_session.add(cig)
        db_session.flush()

        with pytest.raises(HTTPException) as exc:
            collections_service.mandates.create(db_session, cig.id, VALID_CBU)
        assert exc.value.status_code == 400

    def test_unknown_method_is_404(self, db_session):
        with pytest.raises(HTTPException) as exc:
            collections_service.mandates.create(
                db_session, "00000000-0000-0000-0000-000000000000", VALID_CBU
            )
        assert exc.value.status_code == 404


class TestMandateTransitions:
    def test_activation_enables_the_method(self, db_session, method):
        service = collections_service.mandates
        mandate = service.create(db_session, method.id, VALID_CBU)

        service.transition_status(db_session, mandate.id, "ACTIVE", bank_reference=" BNK-1 ")

        assert mandate.status == MandateStatus.active
        assert mandate.activated_at is not None
        assert mandate.bank_reference == "BNK-1"
        assert method.status == PaymentMethodStatus.active
        (event,) = _events(db_session, "MANDATE_STATUS_CHANGED")
        assert event.payload["previous_status"] == "pending"
        assert event.payload["status"] == "active"
        assert event.agency_id == method.subscription.agency_id

    def test_rejection_records_reason_and_disables_method(self, db_session, method):
        service = collections_service.mandates
        mandate = service.create(db_session, method.id, VALID_CBU)

        service.transition_status(
            db_session,
            mandate.id,
            MandateStatus.rejected,
            reason_code=" MD01 ",
            reason_text="Mandato inexistente",
        )

        assert mandate.rejection_code == "MD01"
        assert mandate.rejection_reason == "Mandato inexistente"
        assert method.status == PaymentMethodStatus.disabled
        assert len(_events(db_session, "MANDATE_REJECTED")) == 1

    def test_revocation(self, db_session, method):
        service = collections_service.mandates
        mandate = service.create(db_session, method.id, VALID_CBU)
        service.transition_status(db_session, mandate.id, MandateStatus.active)

        service.transition_status(db_session, mandate.id, MandateStatus.revoked)

        assert mandate.revoked_at is not None
        assert method.status == PaymentMethodStatus.disabled
        assert len(_events(db_session, "MANDATE_REVOKED")) == 1

    def test_same_status_logs_nothing(self, db_session, method):
        service = collections_service.mandates
        mandate = service.create(db_session, method.id, VALID_CBU)

        service.transition_status(db_session, mandate.id, MandateStatus.pending)

        assert _events(db_session, "MANDATE_STATUS_CHANGED") == []
        assert mandate.last_status_check_at is not None

    def test_unknown_status_is_400(self, db_session, method):
        mandate = collections_service.mandates.create(db_session, method.id, VALID_CBU)

        with pytest.raises(HTTPException) as exc:
            collections_service.mandates.transition_status(db_session, mandate.id, "bogus")
        assert exc.value.status_code == 400
