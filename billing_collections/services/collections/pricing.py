"""Cycle pricing: plan base plus adjustments, discount, VAT and FX."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import or_
from sqlalchemy.orm import Session

from billing_collections.config import settings
from billing_collections.models.collections import (
    AdjustmentMode,
    BillingAdjustment,
    BillingSubscription,
    PaymentMethodType,
)
from billing_collections.services.common import round_money


@dataclass
class AdjustmentInput:
    kind: str
    mode: AdjustmentMode | str
    value: Decimal | float | str
    currency: str | None = None
    label: str | None = None
    adjustment_id: str | None = None


@dataclass
class PricingSnapshot:
    base_amount_usd: Decimal
    addons_total_usd: Decimal
    pre_discount_net_usd: Decimal
    discount_pct: Decimal
    discount_amount_usd: Decimal
    net_amount_usd: Decimal
    vat_rate: Decimal
    vat_amount_usd: Decimal
    total_usd: Decimal
    total_ars: Decimal
    fx_rate_ars_per_usd: Decimal
    addons: list[dict] = field(default_factory=list)


def _normalize_mode(mode: AdjustmentMode | str | None) -> AdjustmentMode:
    if isinstance(mode, AdjustmentMode):
        return mode
    normalized = str(mode or "").strip().lower()
    if "percent" in normalized or "porc" in normalized or normalized == "%":
        return AdjustmentMode.percent
    return AdjustmentMode.absolute


def _is_discount(kind: str | None) -> bool:
    normalized = str(kind or "").strip().lower()
    return "discount" in normalized or "descuento" in normalized


def adjustment_to_usd(base_usd: Decimal, adjustment: AdjustmentInput) -> dict:
    """Signed USD amount of one adjustment; discounts are always negative."""
    mode = _normalize_mode(adjustment.mode)
    if adjustment.currency and adjustment.currency.strip().upper() != "USD":
        return {"amount": Decimal("0.00"), "applied": False, "reason": "unsupported_currency"}
    value = Decimal(str(adjustment.value or 0))
    raw = base_usd * value / Decimal("100") if mode == AdjustmentMode.percent else value
    signed = -abs(raw) if _is_discount(adjustment.kind) else raw
    return {"amount": round_money(signed), "applied": True, "reason": None}


def build_cycle_pricing(
    base_usd: Decimal | float | str,
    adjustments: list[AdjustmentInput],
    discount_pct: Decimal | float | str | None,
    method_type: PaymentMethodType | None,
    fx_rate: Decimal | float | str,
    vat_rate: Decimal | float | str | None = None,
) -> PricingSnapshot:
    base = round_money(base_usd)
    addons: list[dict] = []
    for item in adjustments:
        computed = adjustment_to_usd(base, item)
        addons.append(
            {
                "adjustment_id": item.adjustment_id,
                "label": item.label or item.kind,
                "kind": item.kind,
                "mode": _normalize_mode(item.mode).value,
                "currency": item.currency,
                "value": str(item.value),
                "computed_usd": str(computed["amount"]),
                "applied": computed["applied"],
                "reason": computed["reason"],
            }
        )
    addons_total = round_money(sum((Decimal(a["computed_usd"]) for a in addons), Decimal("0")))
    pre_discount = max(Decimal("0.00"), round_money(base + addons_total))

    if method_type == PaymentMethodType.direct_debit_cbu_galicia:
        pct = round_money(
            discount_pct
            if discount_pct is not None
            else settings.billing_direct_debit_discount_pct
        )
    else:
        pct = Decimal("0.00")

    discount_amount = round_money(pre_discount * pct / Decimal("100"))
    net = max(Decimal("0.00"), round_money(pre_discount - discount_amount))
    vat = Decimal(str(vat_rate if vat_rate is not None else settings.billing_default_vat_rate))
    vat_amount = round_money(net * vat)
    total_usd = round_money(net + vat_amount)
    rate = Decimal(str(fx_rate))
    total_ars = round_money(total_usd * rate)

    return PricingSnapshot(
        base_amount_usd=base,
        addons_total_usd=addons_total,
        pre_discount_net_usd=pre_discount,
        discount_pct=pct,
        discount_amount_usd=discount_amount,
        net_amount_usd=net,
        vat_rate=vat,
        vat_amount_usd=vat_amount,
        total_usd=total_usd,
        total_ars=total_ars,
        fx_rate_ars_per_usd=rate,
        addons=addons,
    )


def active_adjustments(
    db: Session, agency_id, on_date: date
) -> list[AdjustmentInput]:
    rows = (
        db.query(BillingAdjustment)
        .filter(BillingAdjustment.agency_id == agency_id)
        .filter(BillingAdjustment.active.is_(True))
        .filter(
            or_(BillingAdjustment.starts_on.is_(None), BillingAdjustment.starts_on <= on_date)
        )
        .filter(
            or_(BillingAdjustment.ends_on.is_(None), BillingAdjustment.ends_on >= on_date)
        )
        .order_by(BillingAdjustment.created_at.asc(), BillingAdjustment.id.asc())
        .all()
    )
    return [
        AdjustmentInput(
            kind=row.kind,
            mode=row.mode,
            value=row.value,
            currency=row.currency,
            label=row.label,
            adjustment_id=str(row.id),
        )
        for row in rows
    ]


def plan_base_usd(subscription: BillingSubscription) -> Decimal:
    if subscription.plan_base_usd is not None:
        return round_money(subscription.plan_base_usd)
    return round_money(settings.billing_plan_base_usd)
