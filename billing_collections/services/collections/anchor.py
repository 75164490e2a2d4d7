"""Anchor-date cycle generation.

For every active subscription the run finds the anchor date of the current
billing period, freezes a cycle for it, and creates the charge and its
direct-debit presentment attempts. Each step looks up its row before
creating it, so re-running the same date changes nothing.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy.orm import Session

from billing_collections.config import settings
from billing_collections.models.collections import (
    AttemptChannel,
    AttemptStatus,
    BillingAttempt,
    BillingCharge,
    BillingCycle,
    BillingPaymentMethod,
    BillingSubscription,
    ChargeStatus,
    CycleStatus,
    PaymentMethodType,
    ReconciliationStatus,
    SubscriptionStatus,
)
from billing_collections.services.billing_events import BillingEventType, log_billing_event
from billing_collections.services.collections.charges import resolve_default_method
from billing_collections.services.collections.dates import (
    add_days,
    anchor_date_for_month,
    cycle_period,
    next_anchor_date,
    previous_anchor_date,
    today_in,
)
from billing_collections.services.collections.fx import FxRateResolver
from billing_collections.services.collections.identifiers import (
    attempt_external_reference,
    charge_idempotency_key,
)
from billing_collections.services.collections.pricing import (
    active_adjustments,
    build_cycle_pricing,
    plan_base_usd,
)
from billing_collections.services.common import utcnow
from billing_collections.services.numbering import next_agency_charge_number

logger = logging.getLogger(__name__)


def current_period_anchor(target: date, anchor_day: int) -> date:
    """Most recent anchor date on or before ``target``."""
    anchor = anchor_date_for_month(target, anchor_day)
    if anchor > target:
        anchor = previous_anchor_date(anchor, anchor_day)
    return anchor


class AnchorScheduler:
    @staticmethod
    def _freeze_cycle(
        db: Session,
        subscription: BillingSubscription,
        anchor: date,
        method: BillingPaymentMethod | None,
        override_fx: bool,
        actor: str | None,
    ) -> tuple[BillingCycle | None, str | None]:
        rate = FxRateResolver.resolve(db, anchor)
        if rate is None and override_fx:
            rate = FxRateResolver.latest(db)
        if rate is None:
            return None, "fx_rate_missing"

        pricing = build_cycle_pricing(
            plan_base_usd(subscription),
            active_adjustments(db, subscription.agency_id, anchor),
            subscription.direct_debit_discount_pct,
            method.method_type if method else None,
            rate.ars_per_usd,
        )
        period_start, period_end = cycle_period(anchor, subscription.anchor_day)
        cycle = BillingCycle(
            agency_id=subscription.agency_id,
            subscription_id=subscription.id,
            anchor_date=anchor,
            period_start=period_start,
            period_end=period_end,
            status=CycleStatus.frozen,
            fx_type=settings.billing_fx_type,
            fx_rate_date=rate.rate_date,
            fx_rate_ars_per_usd=rate.ars_per_usd,
            base_amount_usd=pricing.base_amount_usd,
            addons_total_usd=pricing.addons_total_usd,
            discount_pct=pricing.discount_pct,
            discount_amount_usd=pricing.discount_amount_usd,
            net_amount_usd=pricing.net_amount_usd,
            vat_rate=pricing.vat_rate,
            vat_amount_usd=pricing.vat_amount_usd,
            total_usd=pricing.total_usd,
            total_ars=pricing.total_ars,
            addons_snapshot=pricing.addons,
            frozen_at=utcnow(),
        )
        db.add(cycle)
        db.flush()
        log_billing_event(
            db,
            BillingEventType.cycle_created,
            {
                "cycle_id": cycle.id,
                "anchor_date": anchor,
                "fx_rate_date": rate.rate_date,
                "fx_rate_exact": rate.exact,
                "fx_rate_ars_per_usd": rate.ars_per_usd,
                "total_usd": pricing.total_usd,
                "total_ars": pricing.total_ars,
            },
            agency_id=subscription.agency_id,
            subscription_id=subscription.id,
            actor=actor,
        )
        return cycle, None

    @staticmethod
    def _ensure_charge(
        db: Session,
        subscription: BillingSubscription,
        cycle: BillingCycle,
        method: BillingPaymentMethod | None,
        actor: str | None,
    ) -> tuple[BillingCharge, bool]:
        key = charge_idempotency_key(subscription.id, cycle.anchor_date)
        charge = (
            db.query(BillingCharge)
            .filter(BillingCharge.agency_id == subscription.agency_id)
            .filter(BillingCharge.idempotency_key == key)
            .first()
        )
        if charge:
            return charge, False
        charge = BillingCharge(
            agency_id=subscription.agency_id,
            agency_charge_id=next_agency_charge_number(db, subscription.agency_id),
            subscription_id=subscription.id,
            cycle_id=cycle.id,
            selected_method_id=method.id if method else None,
            status=ChargeStatus.ready,
            due_date=cycle.anchor_date,
            total_usd=cycle.total_usd,
            amount_ars_due=cycle.total_ars,
            reconciliation_status=ReconciliationStatus.pending,
            idempotency_key=key,
            dunning_stage=0,
        )
        db.add(charge)
        db.flush()
        log_billing_event(
            db,
            BillingEventType.charge_created,
            {
                "agency_charge_id": charge.agency_charge_id,
                "cycle_id": cycle.id,
                "amount_ars_due": charge.amount_ars_due,
                "idempotency_key": key,
            },
            agency_id=subscription.agency_id,
            subscription_id=subscription.id,
            charge_id=charge.id,
            actor=actor,
        )
        return charge, True

    @staticmethod
    def _ensure_attempts(
        db: Session,
        charge: BillingCharge,
        method: BillingPaymentMethod | None,
        anchor: date,
        actor: str | None,
    ) -> int:
        if method is None or method.method_type != PaymentMethodType.direct_debit_cbu_galicia:
            return 0
        existing = {
            attempt_no
            for (attempt_no,) in db.query(BillingAttempt.attempt_no)
            .filter(BillingAttempt.charge_id == charge.id)
            .all()
        }
        created: list[BillingAttempt] = []
        for attempt_no, offset in enumerate(settings.attempt_offsets(), start=1):
            if attempt_no in existing:
                continue
            attempt = BillingAttempt(
                charge_id=charge.id,
                payment_method_id=method.id,
                attempt_no=attempt_no,
                status=AttemptStatus.pending,
                channel=AttemptChannel.office_banking,
                scheduled_for=add_days(anchor, offset),
            )
            db.add(attempt)
            db.flush()
            attempt.external_reference = attempt_external_reference(attempt.id)
            created.append(attempt)
        if created:
            db.flush()
            log_billing_event(
                db,
                BillingEventType.attempts_created,
                {
                    "attempts": [
                        {"attempt_no": a.attempt_no, "scheduled_for": a.scheduled_for}
                        for a in created
                    ]
                },
                agency_id=charge.agency_id,
                subscription_id=charge.subscription_id,
                charge_id=charge.id,
                actor=actor,
            )
        return len(created)

    @staticmethod
    def process_subscription(
        db: Session,
        subscription: BillingSubscription,
        target: date,
        *,
        override_fx: bool = False,
        actor: str | None = None,
    ) -> dict:
        anchor = current_period_anchor(target, subscription.anchor_day)
        outcome = {
            "subscription_id": str(subscription.id),
            "agency_id": str(subscription.agency_id),
            "anchor_date": anchor.isoformat(),
            "cycles_created": 0,
            "charges_created": 0,
            "attempts_created": 0,
            "error": None,
        }
        method = resolve_default_method(db, subscription.id)

        cycle = (
            db.query(BillingCycle)
            .filter(BillingCycle.subscription_id == subscription.id)
            .filter(BillingCycle.anchor_date == anchor)
            .first()
        )
        if cycle is None:
            cycle, error = AnchorScheduler._freeze_cycle(
                db, subscription, anchor, method, override_fx, actor
            )
            if cycle is None:
                outcome["error"] = error
                return outcome
            outcome["cycles_created"] = 1

        charge, charge_created = AnchorScheduler._ensure_charge(
            db, subscription, cycle, method, actor
        )
        outcome["charges_created"] = int(charge_created)
        outcome["charge_id"] = str(charge.id)
        if charge.status not in (ChargeStatus.paid, ChargeStatus.canceled):
            outcome["attempts_created"] = AnchorScheduler._ensure_attempts(
                db, charge, method, anchor, actor
            )

        upcoming = next_anchor_date(anchor, subscription.anchor_day)
        if subscription.next_anchor_date is None or subscription.next_anchor_date < upcoming:
            subscription.next_anchor_date = upcoming
        db.flush()
        return outcome

    @staticmethod
    def run(
        db: Session,
        anchor_date: date | None = None,
        *,
        override_fx: bool = False,
        actor: str | None = None,
    ) -> dict:
        target = anchor_date or today_in(settings.billing_timezone)
        subscriptions = (
            db.query(BillingSubscription)
            .filter(BillingSubscription.status == SubscriptionStatus.active)
            .order_by(BillingSubscription.created_at.asc())
            .all()
        )
        summary = {
            "anchor_date": target.isoformat(),
            "subscriptions_processed": len(subscriptions),
            "cycles_created": 0,
            "charges_created": 0,
            "attempts_created": 0,
            "skipped": 0,
            "errors": [],
        }
        for subscription in subscriptions:
            nested = db.begin_nested()
            try:
                local_target = anchor_date or today_in(
                    subscription.timezone or settings.billing_timezone
                )
                outcome = AnchorScheduler.process_subscription(
                    db, subscription, local_target, override_fx=override_fx, actor=actor
                )
                nested.commit()
            except Exception as exc:
                nested.rollback()
                logger.exception(f"Anchor run failed for subscription {subscription.id}")
                summary["errors"].append(
                    {
                        "subscription_id": str(subscription.id),
                        "agency_id": str(subscription.agency_id),
                        "reason": "unexpected_error",
                        "detail": str(exc),
                    }
                )
                continue
            if outcome["error"]:
                summary["errors"].append(
                    {
                        "subscription_id": outcome["subscription_id"],
                        "agency_id": outcome["agency_id"],
                        "reason": outcome["error"],
                        "anchor_date": outcome["anchor_date"],
                    }
                )
                continue
            created = (
                outcome["cycles_created"] + outcome["charges_created"] + outcome["attempts_created"]
            )
            if not created:
                summary["skipped"] += 1
            summary["cycles_created"] += outcome["cycles_created"]
            summary["charges_created"] += outcome["charges_created"]
            summary["attempts_created"] += outcome["attempts_created"]

        summary["ok"] = not summary["errors"]
        log_billing_event(
            db,
            BillingEventType.anchor_run_completed,
            {key: value for key, value in summary.items() if key != "errors"}
            | {"error_count": len(summary["errors"])},
            actor=actor,
        )
        logger.info(
            f"Anchor run {target}: {summary['cycles_created']} cycles, "
            f"{summary['charges_created']} charges, {summary['attempts_created']} attempts, "
            f"{len(summary['errors'])} errors"
        )
        return summary


anchor_scheduler = AnchorScheduler()
