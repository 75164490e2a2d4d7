"""Dunning escalation and cross-channel settlement.

Stages: each rejected presentment moves ``dunning_stage`` up to the attempt's
number, capped at ``BILLING_DUNNING_MAX_STAGE``. Reaching the cap opens a
fallback payment intent. An expired fallback escalates the charge to
``BILLING_COLLECTIONS_STAGE``.

Settlement is first-win: whichever channel closes the charge first owns
``paid_via_channel``; later confirmations from other channels are recorded
but never overwrite it. Every operation locks the charge row before reading
its status.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from billing_collections.config import settings
from billing_collections.models.collections import (
    OPEN_FALLBACK_STATUSES,
    AttemptStatus,
    BillingAttempt,
    BillingCharge,
    ChargeStatus,
    FallbackIntent,
    FallbackIntentStatus,
    FallbackProvider,
    PaymentChannel,
    ReconciliationStatus,
)
from billing_collections.services.billing_events import BillingEventType, log_billing_event
from billing_collections.services.collections.attempts import (
    AttemptStateMachine,
    can_transition,
)
from billing_collections.services.collections.charges import (
    TERMINAL_CHARGE_STATUSES,
    close_charge_as_paid,
    is_charge_terminal,
    lock_charge,
)
from billing_collections.services.collections.fallback.providers import (
    CreatePaymentIntentInput,
    IntentSnapshot,
    get_fallback_provider,
    is_provider_enabled,
)
from billing_collections.services.collections.fiscal import FiscalIssuanceBridge, FiscalIssuer
from billing_collections.services.collections.identifiers import (
    fallback_external_reference,
    fallback_sequence_key,
)
from billing_collections.services.common import coerce_uuid, ensure_utc, get_or_404, utcnow
from billing_collections.services.numbering import next_sequence_value

logger = logging.getLogger(__name__)

_PROVIDER_STATUS_MAP = {
    "CREATED": FallbackIntentStatus.created,
    "PENDING": FallbackIntentStatus.pending,
    "PRESENTED": FallbackIntentStatus.presented,
    "PAID": FallbackIntentStatus.paid,
    "EXPIRED": FallbackIntentStatus.expired,
    "CANCELED": FallbackIntentStatus.canceled,
    "FAILED": FallbackIntentStatus.failed,
}


def _snapshot(intent: FallbackIntent) -> IntentSnapshot:
    return IntentSnapshot(
        external_reference=intent.external_reference,
        status=intent.status.value.upper(),
        provider_status=intent.provider_status,
        provider_payment_id=intent.provider_payment_id,
        expires_at=ensure_utc(intent.expires_at),
        paid_at=ensure_utc(intent.paid_at),
    )


def _resolve_provider(value: str | None) -> FallbackProvider | None:
    key = (value or settings.billing_fallback_default_provider).strip().lower()
    try:
        return FallbackProvider(key)
    except ValueError:
        return None


def _open_intents(db: Session, charge_id, provider: FallbackProvider | None = None):
    query = (
        db.query(FallbackIntent)
        .filter(FallbackIntent.charge_id == charge_id)
        .filter(FallbackIntent.status.in_(OPEN_FALLBACK_STATUSES))
    )
    if provider is not None:
        query = query.filter(FallbackIntent.provider == provider)
    return query.order_by(FallbackIntent.created_at.asc()).all()


class DunningEngine:
    @staticmethod
    def _set_stage(
        db: Session,
        charge: BillingCharge,
        new_stage: int,
        reason: str,
        actor: str | None,
    ) -> int:
        previous = charge.dunning_stage or 0
        if new_stage <= previous:
            return previous
        charge.dunning_stage = new_stage
        db.flush()
        log_billing_event(
            db,
            BillingEventType.dunning_stage_changed,
            {"previous_stage": previous, "stage": new_stage, "reason": reason},
            agency_id=charge.agency_id,
            subscription_id=charge.subscription_id,
            charge_id=charge.id,
            actor=actor,
        )
        logger.info(f"Charge {charge.id} dunning stage {previous} -> {new_stage} ({reason})")
        return new_stage

    @staticmethod
    def _attempt_mismatch(charge: BillingCharge, attempt: BillingAttempt) -> dict:
        logger.warning(
            f"Attempt {attempt.id} belongs to charge {attempt.charge_id}, not {charge.id}"
        )
        return {
            "ok": False,
            "reason": "attempt_charge_mismatch",
            "charge_id": str(charge.id),
            "attempt_id": str(attempt.id),
        }

    @staticmethod
    def on_pd_attempt_rejected(
        db: Session,
        charge_id,
        attempt_id=None,
        *,
        actor: str | None = None,
    ) -> dict:
        charge = lock_charge(db, charge_id)
        previous = charge.dunning_stage or 0
        if is_charge_terminal(charge):
            return {
                "ok": True,
                "no_op": True,
                "reason": "charge_terminal",
                "charge_id": str(charge.id),
                "stage": previous,
                "previous_stage": previous,
                "fallback_created": False,
            }

        attempt = db.get(BillingAttempt, coerce_uuid(attempt_id)) if attempt_id else None
        if attempt is not None and attempt.charge_id != charge.id:
            return DunningEngine._attempt_mismatch(charge, attempt)
        max_stage = settings.billing_dunning_max_stage
        # Stage follows the rejected attempt number so re-processing the same
        # rejection does not advance it twice.
        candidate = attempt.attempt_no if attempt else previous + 1
        target = max(previous, min(candidate, max_stage))

        charge.status = ChargeStatus.past_due
        charge.reconciliation_status = ReconciliationStatus.unmatched
        if charge.overdue_since is None:
            charge.overdue_since = utcnow()
        db.flush()

        log_billing_event(
            db,
            BillingEventType.pd_attempt_rejected,
            {
                "attempt_id": attempt.id if attempt else None,
                "attempt_no": attempt.attempt_no if attempt else None,
                "rejection_code": attempt.rejection_code if attempt else None,
            },
            agency_id=charge.agency_id,
            subscription_id=charge.subscription_id,
            charge_id=charge.id,
            actor=actor,
        )
        stage = DunningEngine._set_stage(db, charge, target, "pd_attempt_rejected", actor)

        fallback: dict | None = None
        if stage >= max_stage:
            fallback = DunningEngine.create_fallback_intent_for_charge(db, charge.id, actor=actor)

        return {
            "ok": True,
            "charge_id": str(charge.id),
            "stage": stage,
            "previous_stage": previous,
            "fallback_created": bool(fallback and fallback.get("created")),
            "fallback": fallback,
        }

    @staticmethod
    def create_fallback_intent_for_charge(
        db: Session,
        charge_id,
        provider: str | None = None,
        *,
        actor: str | None = None,
    ) -> dict:
        if not settings.billing_dunning_enable_fallback:
            return {"ok": True, "no_op": True, "reason": "fallback_disabled"}
        provider_enum = _resolve_provider(provider)
        if provider_enum is None:
            return {"ok": False, "reason": "unknown_provider"}
        if not is_provider_enabled(provider_enum.value):
            return {"ok": False, "reason": "provider_disabled", "provider": provider_enum.value}

        charge = lock_charge(db, charge_id)
        if is_charge_terminal(charge):
            return {
                "ok": True,
                "no_op": True,
                "reason": "charge_not_open",
                "charge_status": charge.status.value,
            }

        existing = _open_intents(db, charge.id, provider_enum)
        if existing:
            return {
                "ok": True,
                "no_op": True,
                "reason": "fallback_already_open",
                "intent_id": str(existing[0].id),
            }

        sequence = next_sequence_value(db, fallback_sequence_key(charge.id, provider_enum.value))
        external_reference = fallback_external_reference(charge.id, provider_enum.value, sequence)
        now = utcnow()
        expires_at = now + timedelta(hours=settings.billing_fallback_expires_hours)
        adapter = get_fallback_provider(provider_enum.value)
        response = adapter.create_payment_intent_for_charge(
            CreatePaymentIntentInput(
                charge_id=str(charge.id),
                agency_id=str(charge.agency_id),
                external_reference=external_reference,
                amount=charge.amount_ars_due,
                currency="ARS",
                expires_at=expires_at,
                description=f"Charge {charge.agency_charge_id}",
            )
        )

        intent = FallbackIntent(
            agency_id=charge.agency_id,
            charge_id=charge.id,
            provider=provider_enum,
            status=_PROVIDER_STATUS_MAP.get(
                str(response.get("status") or "").upper(), FallbackIntentStatus.pending
            ),
            amount=charge.amount_ars_due,
            currency="ARS",
            external_reference=external_reference,
            provider_payment_id=response.get("provider_payment_id"),
            provider_status=response.get("provider_status"),
            provider_status_detail=response.get("provider_status_detail"),
            payment_url=response.get("payment_url"),
            qr_payload=response.get("qr_payload"),
            qr_image_url=response.get("qr_image_url"),
            expires_at=expires_at,
            provider_raw_payload=response.get("provider_raw_payload"),
        )
        db.add(intent)
        charge.fallback_offered_at = now
        charge.fallback_expires_at = expires_at
        db.flush()

        log_billing_event(
            db,
            BillingEventType.fallback_created,
            {
                "intent_id": intent.id,
                "provider": provider_enum,
                "external_reference": external_reference,
                "amount": intent.amount,
                "expires_at": expires_at,
            },
            agency_id=charge.agency_id,
            subscription_id=charge.subscription_id,
            charge_id=charge.id,
            actor=actor,
        )
        logger.info(
            f"Fallback intent {external_reference} opened for charge {charge.id} "
            f"via {provider_enum.value}"
        )
        return {
            "ok": True,
            "created": True,
            "intent_id": str(intent.id),
            "provider": provider_enum.value,
            "external_reference": external_reference,
            "payment_url": intent.payment_url,
            "expires_at": expires_at.isoformat(),
        }

    @staticmethod
    def _cancel_open_intents(
        db: Session,
        charge: BillingCharge,
        *,
        except_intent_id=None,
    ) -> int:
        canceled = 0
        for intent in _open_intents(db, charge.id):
            if except_intent_id is not None and intent.id == except_intent_id:
                continue
            result = get_fallback_provider(intent.provider.value).cancel_payment_intent(
                _snapshot(intent)
            )
            if str(result.get("final_status") or "").upper() == "PAID":
                intent.status = FallbackIntentStatus.paid
                intent.provider_status = "PAID"
                logger.warning(
                    f"Fallback intent {intent.external_reference} reported PAID while "
                    f"charge {charge.id} was already settled"
                )
                continue
            intent.status = FallbackIntentStatus.canceled
            intent.provider_status = "CANCELED"
            intent.provider_status_detail = f"charge_paid_via_{charge.paid_via_channel.value}"
            canceled += 1
        db.flush()
        return canceled

    @staticmethod
    def on_fallback_paid(
        db: Session,
        intent_id,
        *,
        paid_at: datetime | None = None,
        amount: Decimal | None = None,
        actor: str | None = None,
        issuer: FiscalIssuer | None = None,
    ) -> dict:
        intent = get_or_404(db, FallbackIntent, intent_id, detail="Fallback intent not found")
        charge = lock_charge(db, intent.charge_id)
        db.refresh(intent)

        if intent.status == FallbackIntentStatus.paid:
            return {
                "ok": True,
                "already_paid": True,
                "intent_id": str(intent.id),
                "paid_via_channel": (
                    charge.paid_via_channel.value if charge.paid_via_channel else None
                ),
            }

        settled_at = paid_at or utcnow()
        intent.status = FallbackIntentStatus.paid
        intent.provider_status = "PAID"
        intent.paid_at = settled_at
        db.flush()

        channel = PaymentChannel(intent.provider.value)
        if charge.status in TERMINAL_CHARGE_STATUSES:
            # Another channel already settled this charge; keep its record.
            log_billing_event(
                db,
                BillingEventType.fallback_paid,
                {
                    "intent_id": intent.id,
                    "external_reference": intent.external_reference,
                    "charge_already_closed": True,
                    "charge_status": charge.status,
                    "paid_via_channel": charge.paid_via_channel,
                },
                agency_id=charge.agency_id,
                subscription_id=charge.subscription_id,
                charge_id=charge.id,
                actor=actor,
            )
            logger.warning(
                f"Fallback {intent.external_reference} paid after charge {charge.id} "
                f"was closed ({charge.status.value})"
            )
            return {
                "ok": True,
                "charge_already_paid": charge.status == ChargeStatus.paid,
                "intent_id": str(intent.id),
                "paid_via_channel": (
                    charge.paid_via_channel.value if charge.paid_via_channel else None
                ),
            }

        close_charge_as_paid(
            db,
            charge,
            channel=channel,
            amount_ars=amount if amount is not None else intent.amount,
            paid_at=settled_at,
            paid_reference=intent.provider_payment_id or intent.external_reference,
            actor=actor,
        )
        canceled = DunningEngine._cancel_open_intents(db, charge, except_intent_id=intent.id)
        log_billing_event(
            db,
            BillingEventType.fallback_paid,
            {
                "intent_id": intent.id,
                "external_reference": intent.external_reference,
                "amount": charge.amount_ars_paid,
                "other_intents_canceled": canceled,
            },
            agency_id=charge.agency_id,
            subscription_id=charge.subscription_id,
            charge_id=charge.id,
            actor=actor,
        )
        fiscal = FiscalIssuanceBridge.issue_for_charge(db, charge.id, issuer=issuer, actor=actor)
        return {
            "ok": True,
            "charge_closed": True,
            "intent_id": str(intent.id),
            "paid_via_channel": channel.value,
            "fiscal": fiscal,
        }

    @staticmethod
    def on_pd_attempt_paid(
        db: Session,
        charge_id,
        attempt_id=None,
        *,
        amount: Decimal | None = None,
        paid_at: datetime | None = None,
        paid_reference: str | None = None,
        actor: str | None = None,
        issuer: FiscalIssuer | None = None,
    ) -> dict:
        charge = lock_charge(db, charge_id)
        if charge.status == ChargeStatus.paid:
            return {
                "ok": True,
                "already_paid": True,
                "charge_id": str(charge.id),
                "paid_via_channel": (
                    charge.paid_via_channel.value if charge.paid_via_channel else None
                ),
            }
        if charge.status == ChargeStatus.canceled:
            return {"ok": False, "reason": "charge_canceled", "charge_id": str(charge.id)}

        settled_at = paid_at or utcnow()
        attempt = db.get(BillingAttempt, coerce_uuid(attempt_id)) if attempt_id else None
        if attempt is not None and attempt.charge_id != charge.id:
            return DunningEngine._attempt_mismatch(charge, attempt)
        if attempt is not None:
            if attempt.status == AttemptStatus.pending:
                AttemptStateMachine.transition(attempt, AttemptStatus.sent)
            if can_transition(attempt.status, AttemptStatus.paid):
                AttemptStateMachine.transition(
                    attempt,
                    AttemptStatus.paid,
                    processed_at=settled_at,
                    paid_reference=paid_reference,
                )
            db.flush()

        close_charge_as_paid(
            db,
            charge,
            channel=PaymentChannel.office_banking,
            amount_ars=amount,
            paid_at=settled_at,
            paid_reference=paid_reference,
            settling_attempt_id=attempt.id if attempt else None,
            actor=actor,
        )
        canceled = DunningEngine._cancel_open_intents(db, charge)
        fiscal = FiscalIssuanceBridge.issue_for_charge(db, charge.id, issuer=issuer, actor=actor)
        return {
            "ok": True,
            "charge_closed": True,
            "charge_id": str(charge.id),
            "paid_via_channel": PaymentChannel.office_banking.value,
            "fallback_intents_canceled": canceled,
            "fiscal": fiscal,
        }

    @staticmethod
    def on_fallback_expired(db: Session, intent_id, *, actor: str | None = None) -> dict:
        intent = get_or_404(db, FallbackIntent, intent_id, detail="Fallback intent not found")
        charge = lock_charge(db, intent.charge_id)
        db.refresh(intent)

        if intent.status not in OPEN_FALLBACK_STATUSES:
            return {
                "ok": True,
                "no_op": True,
                "reason": "intent_terminal",
                "intent_id": str(intent.id),
                "status": intent.status.value,
            }

        intent.status = FallbackIntentStatus.expired
        intent.provider_status = "EXPIRED"
        db.flush()
        log_billing_event(
            db,
            BillingEventType.fallback_expired,
            {"intent_id": intent.id, "external_reference": intent.external_reference},
            agency_id=charge.agency_id,
            subscription_id=charge.subscription_id,
            charge_id=charge.id,
            actor=actor,
        )

        escalated = False
        if not is_charge_terminal(charge):
            DunningEngine._set_stage(
                db, charge, settings.billing_collections_stage, "fallback_expired", actor
            )
            if charge.collections_escalated_at is None:
                charge.collections_escalated_at = utcnow()
            db.flush()
            log_billing_event(
                db,
                BillingEventType.collections_escalated,
                {"intent_id": intent.id, "stage": charge.dunning_stage},
                agency_id=charge.agency_id,
                subscription_id=charge.subscription_id,
                charge_id=charge.id,
                actor=actor,
            )
            escalated = True
            logger.info(f"Charge {charge.id} escalated to collections")

        return {
            "ok": True,
            "expired": True,
            "escalated": escalated,
            "intent_id": str(intent.id),
            "stage": charge.dunning_stage,
        }

    @staticmethod
    def mark_fallback_failed(
        db: Session, intent: FallbackIntent, detail: str | None, *, actor: str | None = None
    ) -> None:
        intent.status = FallbackIntentStatus.failed
        intent.provider_status = "FAILED"
        intent.failure_message = detail
        db.flush()
        log_billing_event(
            db,
            BillingEventType.fallback_failed,
            {"intent_id": intent.id, "detail": detail},
            agency_id=intent.agency_id,
            charge_id=intent.charge_id,
            actor=actor,
        )

    @staticmethod
    def create_fallback_for_eligible_charges(
        db: Session,
        provider: str | None = None,
        *,
        limit: int = 200,
        actor: str | None = None,
    ) -> dict:
        """Open a fallback for unpaid charges that exhausted direct debit."""
        charges = (
            db.query(BillingCharge)
            .filter(BillingCharge.status.notin_(TERMINAL_CHARGE_STATUSES))
            .filter(BillingCharge.dunning_stage >= settings.billing_dunning_max_stage)
            .filter(BillingCharge.collections_escalated_at.is_(None))
            .order_by(BillingCharge.created_at.asc())
            .limit(limit)
            .all()
        )
        created = 0
        skipped = 0
        errors: list[dict] = []
        for charge in charges:
            nested = db.begin_nested()
            try:
                result = DunningEngine.create_fallback_intent_for_charge(
                    db, charge.id, provider, actor=actor
                )
                nested.commit()
            except Exception as exc:
                nested.rollback()
                logger.exception(f"Fallback creation failed for charge {charge.id}")
                errors.append({"charge_id": str(charge.id), "detail": str(exc)})
                continue
            if result.get("created"):
                created += 1
            elif result.get("ok"):
                skipped += 1
            else:
                errors.append({"charge_id": str(charge.id), "detail": result.get("reason")})
        return {
            "scanned": len(charges),
            "created": created,
            "skipped": skipped,
            "errors": errors,
        }

    @staticmethod
    def sync_fallback_statuses(
        db: Session,
        *,
        limit: int = 200,
        actor: str | None = None,
        issuer: FiscalIssuer | None = None,
    ) -> dict:
        intents = (
            db.query(FallbackIntent)
            .filter(FallbackIntent.status.in_(OPEN_FALLBACK_STATUSES))
            .order_by(FallbackIntent.created_at.asc())
            .limit(limit)
            .all()
        )
        counters = {"scanned": len(intents), "paid": 0, "expired": 0, "failed": 0, "pending": 0}
        errors: list[dict] = []
        for intent in intents:
            if intent.status not in OPEN_FALLBACK_STATUSES:
                # Settled by another intent earlier in this pass.
                continue
            nested = db.begin_nested()
            try:
                status = get_fallback_provider(intent.provider.value).get_payment_status(
                    _snapshot(intent)
                )
                mapped = str(status.get("mapped_status") or "PENDING").upper()
                if mapped == "PAID":
                    DunningEngine.on_fallback_paid(
                        db,
                        intent.id,
                        paid_at=ensure_utc(status.get("paid_at")),
                        actor=actor,
                        issuer=issuer,
                    )
                    counters["paid"] += 1
                elif mapped == "EXPIRED":
                    DunningEngine.on_fallback_expired(db, intent.id, actor=actor)
                    counters["expired"] += 1
                elif mapped == "FAILED":
                    DunningEngine.mark_fallback_failed(
                        db, intent, status.get("provider_status"), actor=actor
                    )
                    counters["failed"] += 1
                else:
                    intent.provider_status = status.get("provider_status")
                    intent.provider_raw_payload = status.get("raw_payload")
                    db.flush()
                    counters["pending"] += 1
                nested.commit()
            except Exception as exc:
                nested.rollback()
                logger.exception(f"Fallback sync failed for intent {intent.id}")
                errors.append({"intent_id": str(intent.id), "detail": str(exc)})
        return {**counters, "errors": errors}


dunning = DunningEngine()
