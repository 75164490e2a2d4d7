"""FX rate resolution for cycle freezing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from billing_collections.config import settings
from billing_collections.models.collections import BillingCycle, FxRate
from billing_collections.services.billing_events import BillingEventType, log_billing_event

logger = logging.getLogger(__name__)

RATE_QUANT = Decimal("0.000001")


@dataclass(frozen=True)
class ResolvedRate:
    rate_date: date
    ars_per_usd: Decimal
    exact: bool


class FxRateResolver:
    @staticmethod
    def resolve(
        db: Session, target: date, fx_type: str | None = None
    ) -> ResolvedRate | None:
        """Exact rate for ``target``, else the latest one before it.

        Rates dated after ``target`` are never considered.
        """
        fx_type = fx_type or settings.billing_fx_type
        exact = (
            db.query(FxRate)
            .filter(FxRate.fx_type == fx_type)
            .filter(FxRate.rate_date == target)
            .first()
        )
        if exact:
            return ResolvedRate(exact.rate_date, Decimal(exact.ars_per_usd), True)
        previous = (
            db.query(FxRate)
            .filter(FxRate.fx_type == fx_type)
            .filter(FxRate.rate_date <= target)
            .order_by(FxRate.rate_date.desc())
            .first()
        )
        if previous:
            return ResolvedRate(previous.rate_date, Decimal(previous.ars_per_usd), False)
        return None

    @staticmethod
    def latest(db: Session, fx_type: str | None = None) -> ResolvedRate | None:
        fx_type = fx_type or settings.billing_fx_type
        rate = (
            db.query(FxRate)
            .filter(FxRate.fx_type == fx_type)
            .order_by(FxRate.rate_date.desc())
            .first()
        )
        if not rate:
            return None
        return ResolvedRate(rate.rate_date, Decimal(rate.ars_per_usd), False)

    @staticmethod
    def upsert(
        db: Session,
        rate_date: date,
        ars_per_usd: Decimal | float | str,
        *,
        fx_type: str | None = None,
        note: str | None = None,
        actor: str | None = None,
    ) -> dict:
        """Load a daily rate once.

        Reloading the same value is a no-op; a different value for a date that
        already has a rate is refused, since loaded rates are immutable.
        """
        fx_type = fx_type or settings.billing_fx_type
        value = Decimal(str(ars_per_usd)).quantize(RATE_QUANT)
        if value <= 0:
            return {"ok": False, "reason": "invalid_rate"}
        existing = (
            db.query(FxRate)
            .filter(FxRate.fx_type == fx_type)
            .filter(FxRate.rate_date == rate_date)
            .first()
        )
        if existing:
            if Decimal(existing.ars_per_usd).quantize(RATE_QUANT) == value:
                return {"ok": True, "created": False, "fx_rate_id": str(existing.id)}
            frozen = (
                db.query(BillingCycle.id)
                .filter(BillingCycle.fx_type == fx_type)
                .filter(BillingCycle.fx_rate_date == rate_date)
                .first()
            )
            reason = "rate_frozen_by_cycle" if frozen else "rate_immutable"
            return {"ok": False, "reason": reason, "fx_rate_id": str(existing.id)}

        rate = FxRate(
            fx_type=fx_type,
            rate_date=rate_date,
            ars_per_usd=value,
            note=note,
            loaded_by=actor,
        )
        db.add(rate)
        db.flush()
        log_billing_event(
            db,
            BillingEventType.fx_rate_upserted,
            {"fx_type": fx_type, "rate_date": rate_date, "ars_per_usd": value},
            actor=actor,
        )
        logger.info(f"FX rate loaded: {fx_type} {rate_date} = {value}")
        return {"ok": True, "created": True, "fx_rate_id": str(rate.id)}


fx_rates = FxRateResolver()
