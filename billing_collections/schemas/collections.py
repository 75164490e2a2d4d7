from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from billing_collections.models.collections import (
    AttemptChannel,
    AttemptStatus,
    ChargeStatus,
    CycleStatus,
    FallbackIntentStatus,
    FallbackProvider,
    FiscalDocumentStatus,
    MandateStatus,
    PaymentChannel,
    ReconciliationStatus,
)
from billing_collections.models.direct_debit import (
    BatchDirection,
    BatchItemStatus,
    BatchStatus,
)
from billing_collections.models.jobs import BillingJobRunStatus, BillingJobSource


class AnchorRunRequest(BaseModel):
    anchor_date: date | None = None
    override_fx: bool = False


class PresentmentBatchRequest(BaseModel):
    business_date: date | None = None
    adapter: str | None = Field(default=None, max_length=40)


class FallbackCreateRequest(BaseModel):
    charge_id: UUID | None = None
    provider: str | None = Field(default=None, max_length=40)


class FallbackPaidRequest(BaseModel):
    paid_at: datetime | None = None
    amount: Decimal | None = None


class FiscalRetryRequest(BaseModel):
    document_type: str | None = Field(default=None, max_length=40)


class FxRateUpsertRequest(BaseModel):
    rate_date: date
    ars_per_usd: Decimal
    fx_type: str | None = Field(default=None, max_length=32)
    note: str | None = None


class MandateCreateRequest(BaseModel):
    payment_method_id: UUID
    cbu: str = Field(min_length=1, max_length=40)
    consent_version: str | None = Field(default=None, max_length=40)
    consent_accepted_at: datetime | None = None


class MandateTransitionRequest(BaseModel):
    status: MandateStatus
    reason_code: str | None = Field(default=None, max_length=40)
    reason_text: str | None = None
    bank_reference: str | None = Field(default=None, max_length=120)


class AttemptRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    attempt_no: int
    status: AttemptStatus
    channel: AttemptChannel
    scheduled_for: date | None = None
    processed_at: datetime | None = None
    external_reference: str | None = None
    paid_reference: str | None = None
    rejection_code: str | None = None
    rejection_reason: str | None = None


class FallbackIntentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    charge_id: UUID
    provider: FallbackProvider
    status: FallbackIntentStatus
    amount: Decimal
    currency: str
    external_reference: str
    payment_url: str | None = None
    qr_payload: str | None = None
    expires_at: datetime | None = None
    paid_at: datetime | None = None
    created_at: datetime


class FiscalDocumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    document_type: str
    status: FiscalDocumentStatus
    external_reference: str | None = None
    afip_pto_vta: int | None = None
    afip_cbte_tipo: int | None = None
    afip_number: str | None = None
    afip_cae: str | None = None
    afip_cae_due: date | None = None
    retry_count: int
    error_message: str | None = None
    issued_at: datetime | None = None


class ChargeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    agency_id: UUID
    agency_charge_id: int
    subscription_id: UUID | None = None
    cycle_id: UUID | None = None
    status: ChargeStatus
    due_date: date | None = None
    total_usd: Decimal
    amount_ars_due: Decimal
    amount_ars_paid: Decimal | None = None
    paid_at: datetime | None = None
    paid_via_channel: PaymentChannel | None = None
    paid_reference: str | None = None
    reconciliation_status: ReconciliationStatus
    dunning_stage: int
    fallback_offered_at: datetime | None = None
    fallback_expires_at: datetime | None = None
    overdue_since: datetime | None = None
    collections_escalated_at: datetime | None = None
    created_at: datetime


class ChargeDetailRead(ChargeRead):
    attempts: list[AttemptRead] = Field(default_factory=list)
    fallback_intents: list[FallbackIntentRead] = Field(default_factory=list)
    fiscal_documents: list[FiscalDocumentRead] = Field(default_factory=list)


class CycleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    agency_id: UUID
    subscription_id: UUID
    anchor_date: date
    period_start: date
    period_end: date
    status: CycleStatus
    fx_type: str
    fx_rate_date: date | None = None
    fx_rate_ars_per_usd: Decimal | None = None
    base_amount_usd: Decimal
    addons_total_usd: Decimal
    discount_pct: Decimal
    discount_amount_usd: Decimal
    net_amount_usd: Decimal
    vat_rate: Decimal
    vat_amount_usd: Decimal
    total_usd: Decimal
    total_ars: Decimal
    addons_snapshot: list | None = None
    frozen_at: datetime


class FileBatchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    parent_batch_id: UUID | None = None
    direction: BatchDirection
    adapter: str
    sequence: int | None = None
    business_date: date
    original_file_name: str | None = None
    storage_key: str | None = None
    sha256: str | None = None
    status: BatchStatus
    total_rows: int
    total_amount_ars: Decimal | None = None
    total_paid_rows: int
    total_rejected_rows: int
    total_error_rows: int
    meta: dict | None = None
    error_message: str | None = None
    created_at: datetime


class FileBatchItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    batch_id: UUID
    attempt_id: UUID | None = None
    charge_id: UUID | None = None
    line_no: int | None = None
    external_reference: str | None = None
    amount_ars: Decimal | None = None
    status: BatchItemStatus
    response_code: str | None = None
    response_message: str | None = None
    detailed_reason: str | None = None
    paid_reference: str | None = None
    processed_at: datetime | None = None


class MandateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payment_method_id: UUID
    status: MandateStatus
    cbu_last4: str
    consent_version: str | None = None
    consent_accepted_at: datetime | None = None
    bank_reference: str | None = None
    rejection_code: str | None = None
    rejection_reason: str | None = None
    activated_at: datetime | None = None
    revoked_at: datetime | None = None


class BillingJobRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_name: str
    run_id: str
    source: BillingJobSource
    status: BillingJobRunStatus
    target_date: date | None = None
    adapter: str | None = None
    counters: dict | None = None
    meta: dict | None = None
    started_at: datetime
    finished_at: datetime | None = None
    duration_ms: int | None = None
    error_message: str | None = None
