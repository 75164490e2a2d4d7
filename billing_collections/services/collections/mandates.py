"""Direct-debit mandates and CBU handling.

Only the last four digits and a sha256 hash of the CBU are stored.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime

from fastapi import HTTPException
from sqlalchemy.orm import Session

from billing_collections.models.collections import (
    BillingMandate,
    BillingPaymentMethod,
    MandateStatus,
    PaymentMethodStatus,
    PaymentMethodType,
)
from billing_collections.services.billing_events import BillingEventType, log_billing_event
from billing_collections.services.common import get_or_404, utcnow, validate_enum

logger = logging.getLogger(__name__)

_BLOCK1_WEIGHTS = (7, 1, 3, 9, 7, 1, 3)
_BLOCK2_WEIGHTS = (3, 9, 7, 1, 3, 9, 7, 1, 3, 9, 7, 1, 3)


def normalize_cbu(cbu: str | None) -> str:
    return "".join(ch for ch in str(cbu or "") if ch.isdigit())


def _check_digit(digits: str, weights: tuple[int, ...]) -> int:
    total = sum(int(d) * w for d, w in zip(digits, weights))
    return (10 - total % 10) % 10


def validate_cbu(cbu: str | None) -> bool:
    """22-digit CBU with valid check digits on both blocks."""
    raw = str(cbu or "").strip()
    if len(raw) != 22 or not raw.isdigit():
        return False
    block1, block2 = raw[:8], raw[8:]
    if _check_digit(block1[:7], _BLOCK1_WEIGHTS) != int(block1[7]):
        return False
    return _check_digit(block2[:13], _BLOCK2_WEIGHTS) == int(block2[13])


def mask_cbu(cbu: str | None) -> str:
    digits = normalize_cbu(cbu)
    return f"****{digits[-4:]}" if digits else ""


def hash_cbu(cbu: str) -> str:
    return hashlib.sha256(normalize_cbu(cbu).encode("utf-8")).hexdigest()


def _agency_context(mandate: BillingMandate) -> dict:
    method = mandate.payment_method
    subscription = method.subscription if method else None
    return {
        "agency_id": subscription.agency_id if subscription else None,
        "subscription_id": subscription.id if subscription else None,
    }


class Mandates:
    @staticmethod
    def get(db: Session, mandate_id: str):
        return get_or_404(db, BillingMandate, mandate_id, detail="Mandate not found")

    @staticmethod
    def create(
        db: Session,
        payment_method_id,
        cbu: str,
        *,
        consent_version: str | None = None,
        consent_accepted_at: datetime | None = None,
        actor: str | None = None,
    ) -> BillingMandate:
        method = get_or_404(
            db, BillingPaymentMethod, payment_method_id, detail="Payment method not found"
        )
        if method.method_type != PaymentMethodType.direct_debit_cbu_galicia:
            raise HTTPException(
                status_code=400, detail="Payment method does not support direct debit"
            )
        digits = normalize_cbu(cbu)
        if not validate_cbu(digits):
            raise HTTPException(status_code=400, detail="Invalid CBU")

        cbu_hash = hash_cbu(digits)
        mandate = (
            db.query(BillingMandate)
            .filter(BillingMandate.payment_method_id == method.id)
            .first()
        )
        if mandate and mandate.cbu_hash == cbu_hash and mandate.status != MandateStatus.revoked:
            return mandate
        if mandate is None:
            mandate = BillingMandate(payment_method=method)
            db.add(mandate)
        mandate.status = MandateStatus.pending
        mandate.cbu_last4 = digits[-4:]
        mandate.cbu_hash = cbu_hash
        mandate.consent_version = consent_version
        mandate.consent_accepted_at = consent_accepted_at or utcnow()
        mandate.rejection_code = None
        mandate.rejection_reason = None
        mandate.activated_at = None
        mandate.revoked_at = None
        method.status = PaymentMethodStatus.pending
        db.flush()

        subscription = method.subscription
        log_billing_event(
            db,
            BillingEventType.mandate_created,
            {"mandate_id": mandate.id, "cbu_masked": mask_cbu(digits)},
            agency_id=subscription.agency_id if subscription else None,
            subscription_id=method.subscription_id,
            actor=actor,
        )
        return mandate

    @staticmethod
    def transition_status(
        db: Session,
        mandate_id,
        new_status: MandateStatus | str,
        *,
        reason_code: str | None = None,
        reason_text: str | None = None,
        bank_reference: str | None = None,
        actor: str | None = None,
    ) -> BillingMandate:
        mandate = get_or_404(db, BillingMandate, mandate_id, detail="Mandate not found")
        target = validate_enum(new_status, MandateStatus, "mandate status")
        previous = mandate.status
        now = utcnow()

        mandate.status = target
        mandate.last_status_check_at = now
        if bank_reference and bank_reference.strip():
            mandate.bank_reference = bank_reference.strip()

        if target == MandateStatus.rejected:
            mandate.rejection_code = (reason_code or "").strip() or None
            mandate.rejection_reason = (reason_text or "").strip() or None
        else:
            mandate.rejection_code = None
            mandate.rejection_reason = None
        if target == MandateStatus.active and mandate.activated_at is None:
            mandate.activated_at = now
        if target == MandateStatus.revoked and mandate.revoked_at is None:
            mandate.revoked_at = now

        method = mandate.payment_method
        if method is not None:
            if target == MandateStatus.active:
                method.status = PaymentMethodStatus.active
            elif target in (MandateStatus.rejected, MandateStatus.revoked):
                method.status = PaymentMethodStatus.disabled
        db.flush()

        if previous != target:
            context = _agency_context(mandate)
            payload = {
                "mandate_id": mandate.id,
                "previous_status": previous,
                "status": target,
                "reason_code": mandate.rejection_code,
                "reason_text": mandate.rejection_reason,
                "bank_reference": mandate.bank_reference,
            }
            log_billing_event(
                db, BillingEventType.mandate_status_changed, payload, actor=actor, **context
            )
            if target == MandateStatus.rejected:
                log_billing_event(
                    db, BillingEventType.mandate_rejected, payload, actor=actor, **context
                )
            elif target == MandateStatus.revoked:
                log_billing_event(
                    db, BillingEventType.mandate_revoked, payload, actor=actor, **context
                )
            logger.info(f"Mandate {mandate.id} {previous.value} -> {target.value}")
        return mandate


mandates = Mandates()
