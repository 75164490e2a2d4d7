"""Charge queries, payment method resolution and first-win settlement."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from billing_collections.models.collections import (
    BillingCharge,
    BillingCycle,
    BillingPaymentMethod,
    ChargeStatus,
    CycleStatus,
    PaymentChannel,
    PaymentMethodStatus,
    ReconciliationStatus,
)
from billing_collections.services.billing_events import BillingEventType, log_billing_event
from billing_collections.services.collections.attempts import AttemptStateMachine
from billing_collections.services.common import (
    coerce_uuid,
    get_for_update_or_404,
    get_or_404,
    list_response,
    round_money,
    utcnow,
    validate_enum,
)

logger = logging.getLogger(__name__)

TERMINAL_CHARGE_STATUSES = (ChargeStatus.paid, ChargeStatus.canceled)


def is_charge_terminal(charge: BillingCharge) -> bool:
    return charge.status in TERMINAL_CHARGE_STATUSES


def resolve_default_method(db: Session, subscription_id) -> BillingPaymentMethod | None:
    """The default ACTIVE method, else the earliest-created ACTIVE one."""
    return (
        db.query(BillingPaymentMethod)
        .filter(BillingPaymentMethod.subscription_id == coerce_uuid(subscription_id))
        .filter(BillingPaymentMethod.status == PaymentMethodStatus.active)
        .order_by(
            BillingPaymentMethod.is_default.desc(),
            BillingPaymentMethod.created_at.asc(),
            BillingPaymentMethod.id.asc(),
        )
        .first()
    )


def lock_charge(db: Session, charge_id) -> BillingCharge:
    """Load a charge with a row lock held until the transaction ends."""
    return get_for_update_or_404(db, BillingCharge, charge_id, detail="Charge not found")


def close_charge_as_paid(
    db: Session,
    charge: BillingCharge,
    *,
    channel: PaymentChannel,
    amount_ars: Decimal | None,
    paid_at: datetime | None,
    paid_reference: str | None = None,
    settling_attempt_id=None,
    actor: str | None = None,
) -> bool:
    """Settle a locked charge once.

    Returns False without touching anything when the charge is already
    terminal, so the first settlement channel stays permanent.
    """
    if is_charge_terminal(charge):
        return False
    now = utcnow()
    charge.status = ChargeStatus.paid
    charge.amount_ars_paid = round_money(
        amount_ars if amount_ars is not None else charge.amount_ars_due
    )
    charge.paid_at = paid_at or now
    charge.paid_via_channel = channel
    charge.paid_reference = paid_reference
    charge.reconciliation_status = ReconciliationStatus.matched
    db.flush()

    canceled = AttemptStateMachine.cancel_open_attempts(
        db,
        charge.id,
        except_attempt_id=settling_attempt_id,
        notes=f"charge_paid_via_{channel.value}",
    )
    if charge.cycle_id:
        cycle = db.get(BillingCycle, charge.cycle_id)
        if cycle and cycle.status == CycleStatus.frozen:
            cycle.status = CycleStatus.paid
    db.flush()

    log_billing_event(
        db,
        BillingEventType.charge_paid,
        {
            "channel": channel,
            "amount_ars_paid": charge.amount_ars_paid,
            "paid_at": charge.paid_at,
            "paid_reference": paid_reference,
            "attempts_canceled": canceled,
        },
        agency_id=charge.agency_id,
        subscription_id=charge.subscription_id,
        charge_id=charge.id,
        actor=actor,
    )
    logger.info(
        f"Charge {charge.id} paid via {channel.value} "
        f"({charge.amount_ars_paid} ARS, {canceled} attempts canceled)"
    )
    return True


class Charges:
    @staticmethod
    def get(db: Session, charge_id: str):
        return get_or_404(db, BillingCharge, charge_id, detail="Charge not found")

    @staticmethod
    def list(
        db: Session,
        agency_id: str | None,
        status: str | None,
        limit: int,
        offset: int,
    ):
        query = db.query(BillingCharge)
        if agency_id:
            query = query.filter(BillingCharge.agency_id == coerce_uuid(agency_id))
        if status:
            query = query.filter(
                BillingCharge.status == validate_enum(status, ChargeStatus, "status")
            )
        return (
            query.order_by(BillingCharge.created_at.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    @classmethod
    def list_response(cls, db: Session, agency_id, status, limit: int, offset: int):
        return list_response(cls.list(db, agency_id, status, limit, offset), limit, offset)


class Cycles:
    @staticmethod
    def list(db: Session, subscription_id: str | None, limit: int, offset: int):
        query = db.query(BillingCycle)
        if subscription_id:
            query = query.filter(
                BillingCycle.subscription_id == coerce_uuid(subscription_id)
            )
        return (
            query.order_by(BillingCycle.anchor_date.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    @classmethod
    def list_response(cls, db: Session, subscription_id, limit: int, offset: int):
        return list_response(cls.list(db, subscription_id, limit, offset), limit, offset)


charges = Charges()
cycles = Cycles()
