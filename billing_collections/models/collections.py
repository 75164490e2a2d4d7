import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_collections.db import Base


class SubscriptionStatus(enum.Enum):
    active = "active"
    past_due = "past_due"
    suspended = "suspended"
    canceled = "canceled"


class PaymentMethodType(enum.Enum):
    direct_debit_cbu_galicia = "direct_debit_cbu_galicia"
    cig_galicia = "cig_galicia"
    mp_fallback = "mp_fallback"


class PaymentMethodStatus(enum.Enum):
    pending = "pending"
    active = "active"
    disabled = "disabled"


class MandateStatus(enum.Enum):
    pending = "pending"
    pending_bank = "pending_bank"
    active = "active"
    rejected = "rejected"
    revoked = "revoked"


class AdjustmentMode(enum.Enum):
    percent = "percent"
    absolute = "absolute"


class CycleStatus(enum.Enum):
    frozen = "frozen"
    paid = "paid"
    canceled = "canceled"


class ChargeStatus(enum.Enum):
    ready = "ready"
    past_due = "past_due"
    paid = "paid"
    canceled = "canceled"


class ReconciliationStatus(enum.Enum):
    pending = "pending"
    matched = "matched"
    unmatched = "unmatched"
    error = "error"


class PaymentChannel(enum.Enum):
    office_banking = "office_banking"
    cig_qr = "cig_qr"
    mp = "mp"
    other = "other"


class AttemptStatus(enum.Enum):
    pending = "pending"
    sent = "sent"
    paid = "paid"
    rejected = "rejected"
    canceled = "canceled"


class AttemptChannel(enum.Enum):
    office_banking = "office_banking"
    fallback = "fallback"


class FallbackProvider(enum.Enum):
    cig_qr = "cig_qr"
    mp = "mp"
    other = "other"


class FallbackIntentStatus(enum.Enum):
    created = "created"
    pending = "pending"
    presented = "presented"
    paid = "paid"
    expired = "expired"
    canceled = "canceled"
    failed = "failed"


OPEN_FALLBACK_STATUSES = (
    FallbackIntentStatus.created,
    FallbackIntentStatus.pending,
    FallbackIntentStatus.presented,
)


class FiscalDocumentStatus(enum.Enum):
    pending = "pending"
    issued = "issued"
    error = "error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingSubscription(Base):
    __tablename__ = "billing_subscriptions"
    __table_args__ = (
        UniqueConstraint("agency_id", name="uq_billing_subscriptions_agency"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    agency_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.active
    )
    anchor_day: Mapped[int] = mapped_column(Integer, default=8)
    timezone: Mapped[str] = mapped_column(
        String(64), default="America/Argentina/Buenos_Aires"
    )
    direct_debit_discount_pct: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), default=Decimal("10.00")
    )
    plan_base_usd: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    next_anchor_date: Mapped[date | None] = mapped_column(Date)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    payment_methods = relationship(
        "BillingPaymentMethod",
        back_populates="subscription",
        order_by="BillingPaymentMethod.created_at",
    )
    cycles = relationship("BillingCycle", back_populates="subscription")


class BillingPaymentMethod(Base):
    __tablename__ = "billing_payment_methods"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "method_type", name="uq_billing_payment_methods_type"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_subscriptions.id"), nullable=False
    )
    method_type: Mapped[PaymentMethodType] = mapped_column(
        Enum(PaymentMethodType), nullable=False
    )
    status: Mapped[PaymentMethodStatus] = mapped_column(
        Enum(PaymentMethodStatus), default=PaymentMethodStatus.pending
    )
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    holder_name: Mapped[str | None] = mapped_column(String(160))
    holder_tax_id: Mapped[str | None] = mapped_column(String(20))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    subscription = relationship("BillingSubscription", back_populates="payment_methods")
    mandate = relationship(
        "BillingMandate", back_populates="payment_method", uselist=False
    )


class BillingMandate(Base):
    __tablename__ = "billing_mandates"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    payment_method_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("billing_payment_methods.id"),
        nullable=False,
        unique=True,
    )
    status: Mapped[MandateStatus] = mapped_column(
        Enum(MandateStatus), default=MandateStatus.pending
    )
    cbu_last4: Mapped[str] = mapped_column(String(4), nullable=False)
    cbu_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    consent_version: Mapped[str | None] = mapped_column(String(40))
    consent_accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    bank_reference: Mapped[str | None] = mapped_column(String(120))
    rejection_code: Mapped[str | None] = mapped_column(String(40))
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_status_check_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    payment_method = relationship("BillingPaymentMethod", back_populates="mandate")


class BillingAdjustment(Base):
    __tablename__ = "billing_adjustments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    agency_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    label: Mapped[str | None] = mapped_column(String(160))
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    mode: Mapped[AdjustmentMode] = mapped_column(
        Enum(AdjustmentMode), default=AdjustmentMode.absolute
    )
    value: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    currency: Mapped[str | None] = mapped_column(String(3))
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    starts_on: Mapped[date | None] = mapped_column(Date)
    ends_on: Mapped[date | None] = mapped_column(Date)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class FxRate(Base):
    __tablename__ = "billing_fx_rates"
    __table_args__ = (
        UniqueConstraint("fx_type", "rate_date", name="uq_billing_fx_rates_type_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    fx_type: Mapped[str] = mapped_column(String(32), default="DOLAR_BSP")
    rate_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    ars_per_usd: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    loaded_by: Mapped[str | None] = mapped_column(String(120))
    note: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class BillingCycle(Base):
    __tablename__ = "billing_cycles"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "anchor_date", name="uq_billing_cycles_subscription_anchor"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    agency_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_subscriptions.id"), nullable=False
    )
    anchor_date: Mapped[date] = mapped_column(Date, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[CycleStatus] = mapped_column(
        Enum(CycleStatus), default=CycleStatus.frozen
    )
    fx_type: Mapped[str] = mapped_column(String(32), default="DOLAR_BSP")
    fx_rate_date: Mapped[date | None] = mapped_column(Date)
    fx_rate_ars_per_usd: Mapped[Decimal | None] = mapped_column(Numeric(18, 6))
    base_amount_usd: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0.00"))
    addons_total_usd: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0.00"))
    discount_pct: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0.00"))
    discount_amount_usd: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0.00")
    )
    net_amount_usd: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0.00"))
    vat_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), default=Decimal("0.2100"))
    vat_amount_usd: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0.00"))
    total_usd: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0.00"))
    total_ars: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0.00"))
    addons_snapshot: Mapped[list | None] = mapped_column(JSONB)
    frozen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    subscription = relationship("BillingSubscription", back_populates="cycles")
    charges = relationship("BillingCharge", back_populates="cycle")


class BillingCharge(Base):
    __tablename__ = "billing_charges"
    __table_args__ = (
        UniqueConstraint(
            "agency_id", "idempotency_key", name="uq_billing_charges_idempotency"
        ),
        UniqueConstraint(
            "agency_id", "agency_charge_id", name="uq_billing_charges_agency_number"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    agency_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    agency_charge_id: Mapped[int] = mapped_column(Integer, nullable=False)
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_subscriptions.id")
    )
    cycle_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_cycles.id")
    )
    selected_method_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_payment_methods.id")
    )
    status: Mapped[ChargeStatus] = mapped_column(
        Enum(ChargeStatus), default=ChargeStatus.ready, index=True
    )
    due_date: Mapped[date | None] = mapped_column(Date)
    total_usd: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0.00"))
    amount_ars_due: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    amount_ars_paid: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_via_channel: Mapped[PaymentChannel | None] = mapped_column(Enum(PaymentChannel))
    paid_reference: Mapped[str | None] = mapped_column(String(160))
    reconciliation_status: Mapped[ReconciliationStatus] = mapped_column(
        Enum(ReconciliationStatus), default=ReconciliationStatus.pending
    )
    idempotency_key: Mapped[str] = mapped_column(String(160), nullable=False)
    dunning_stage: Mapped[int] = mapped_column(Integer, default=0)
    fallback_offered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    fallback_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    overdue_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    collections_escalated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    cycle = relationship("BillingCycle", back_populates="charges")
    selected_method = relationship("BillingPaymentMethod")
    attempts = relationship(
        "BillingAttempt", back_populates="charge", order_by="BillingAttempt.attempt_no"
    )
    fallback_intents = relationship("FallbackIntent", back_populates="charge")
    fiscal_documents = relationship("FiscalDocument", back_populates="charge")


class BillingAttempt(Base):
    __tablename__ = "billing_attempts"
    __table_args__ = (
        UniqueConstraint("charge_id", "attempt_no", name="uq_billing_attempts_charge_no"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    charge_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_charges.id"), nullable=False
    )
    payment_method_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_payment_methods.id")
    )
    attempt_no: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[AttemptStatus] = mapped_column(
        Enum(AttemptStatus), default=AttemptStatus.pending, index=True
    )
    channel: Mapped[AttemptChannel] = mapped_column(
        Enum(AttemptChannel), default=AttemptChannel.office_banking
    )
    scheduled_for: Mapped[date | None] = mapped_column(Date, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    external_reference: Mapped[str | None] = mapped_column(String(120), index=True)
    paid_reference: Mapped[str | None] = mapped_column(String(160))
    rejection_code: Mapped[str | None] = mapped_column(String(40))
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    charge = relationship("BillingCharge", back_populates="attempts")
    payment_method = relationship("BillingPaymentMethod")


class FallbackIntent(Base):
    __tablename__ = "billing_fallback_intents"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    agency_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    charge_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_charges.id"), nullable=False
    )
    provider: Mapped[FallbackProvider] = mapped_column(
        Enum(FallbackProvider), nullable=False
    )
    status: Mapped[FallbackIntentStatus] = mapped_column(
        Enum(FallbackIntentStatus), default=FallbackIntentStatus.created, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="ARS")
    external_reference: Mapped[str] = mapped_column(
        String(160), nullable=False, unique=True
    )
    provider_payment_id: Mapped[str | None] = mapped_column(String(200))
    provider_status: Mapped[str | None] = mapped_column(String(40))
    provider_status_detail: Mapped[str | None] = mapped_column(String(120))
    payment_url: Mapped[str | None] = mapped_column(Text)
    qr_payload: Mapped[str | None] = mapped_column(Text)
    qr_image_url: Mapped[str | None] = mapped_column(Text)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failure_code: Mapped[str | None] = mapped_column(String(40))
    failure_message: Mapped[str | None] = mapped_column(Text)
    provider_raw_payload: Mapped[dict | None] = mapped_column(JSONB)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    charge = relationship("BillingCharge", back_populates="fallback_intents")


class FiscalDocument(Base):
    __tablename__ = "billing_fiscal_documents"
    __table_args__ = (
        UniqueConstraint(
            "charge_id", "document_type", name="uq_billing_fiscal_documents_charge_type"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    charge_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_charges.id"), nullable=False
    )
    document_type: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[FiscalDocumentStatus] = mapped_column(
        Enum(FiscalDocumentStatus), default=FiscalDocumentStatus.pending
    )
    external_reference: Mapped[str | None] = mapped_column(String(120))
    afip_pto_vta: Mapped[int | None] = mapped_column(Integer)
    afip_cbte_tipo: Mapped[int | None] = mapped_column(Integer)
    afip_number: Mapped[str | None] = mapped_column(String(40))
    afip_cae: Mapped[str | None] = mapped_column(String(40))
    afip_cae_due: Mapped[date | None] = mapped_column(Date)
    payload: Mapped[dict | None] = mapped_column(JSONB)
    error_message: Mapped[str | None] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    charge = relationship("BillingCharge", back_populates="fiscal_documents")
