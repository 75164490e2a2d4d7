"""create billing collections tables

Revision ID: a3c1e5f7b9d2
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "a3c1e5f7b9d2"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


subscriptionstatus = sa.Enum(
    "active", "past_due", "suspended", "canceled", name="subscriptionstatus"
)
paymentmethodtype = sa.Enum(
    "direct_debit_cbu_galicia", "cig_galicia", "mp_fallback", name="paymentmethodtype"
)
paymentmethodstatus = sa.Enum("pending", "active", "disabled", name="paymentmethodstatus")
mandatestatus = sa.Enum(
    "pending", "pending_bank", "active", "rejected", "revoked", name="mandatestatus"
)
adjustmentmode = sa.Enum("percent", "absolute", name="adjustmentmode")
cyclestatus = sa.Enum("frozen", "paid", "canceled", name="cyclestatus")
chargestatus = sa.Enum("ready", "past_due", "paid", "canceled", name="chargestatus")
paymentchannel = sa.Enum("office_banking", "cig_qr", "mp", "other", name="paymentchannel")
reconciliationstatus = sa.Enum(
    "pending", "matched", "unmatched", "error", name="reconciliationstatus"
)
attemptstatus = sa.Enum(
    "pending", "sent", "paid", "rejected", "canceled", name="attemptstatus"
)
attemptchannel = sa.Enum("office_banking", "fallback", name="attemptchannel")
fallbackprovider = sa.Enum("cig_qr", "mp", "other", name="fallbackprovider")
fallbackintentstatus = sa.Enum(
    "created",
    "pending",
    "presented",
    "paid",
    "expired",
    "canceled",
    "failed",
    name="fallbackintentstatus",
)
fiscaldocumentstatus = sa.Enum("pending", "issued", "error", name="fiscaldocumentstatus")
batchdirection = sa.Enum("outbound", "inbound", name="batchdirection")
batchstatus = sa.Enum(
    "created", "ready", "sent", "processed", "error", name="batchstatus"
)
batchitemstatus = sa.Enum(
    "presented", "paid", "rejected", "error", name="batchitemstatus"
)
billingjobsource = sa.Enum("cron", "manual", name="billingjobsource")
billingjobrunstatus = sa.Enum(
    "running",
    "success",
    "partial",
    "failed",
    "skipped_locked",
    "no_op",
    name="billingjobrunstatus",
)

_ENUMS = (
    subscriptionstatus,
    paymentmethodtype,
    paymentmethodstatus,
    mandatestatus,
    adjustmentmode,
    cyclestatus,
    chargestatus,
    paymentchannel,
    reconciliationstatus,
    attemptstatus,
    attemptchannel,
    fallbackprovider,
    fallbackintentstatus,
    fiscaldocumentstatus,
    batchdirection,
    batchstatus,
    batchitemstatus,
    billingjobsource,
    billingjobrunstatus,
)


def _uuid(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, postgresql.UUID(as_uuid=True), **kwargs)


def _timestamps(updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=False)]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False))
    return columns


def upgrade() -> None:
    op.create_table(
        "billing_subscriptions",
        _uuid("id", nullable=False),
        _uuid("agency_id", nullable=False),
        sa.Column("status", subscriptionstatus, nullable=False),
        sa.Column("anchor_day", sa.Integer(), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        sa.Column("direct_debit_discount_pct", sa.Numeric(5, 2), nullable=False),
        sa.Column("plan_base_usd", sa.Numeric(12, 2), nullable=True),
        sa.Column("next_anchor_date", sa.Date(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("agency_id", name="uq_billing_subscriptions_agency"),
    )

    op.create_table(
        "billing_payment_methods",
        _uuid("id", nullable=False),
        _uuid("subscription_id", nullable=False),
        sa.Column("method_type", paymentmethodtype, nullable=False),
        sa.Column("status", paymentmethodstatus, nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False),
        sa.Column("holder_name", sa.String(length=160), nullable=True),
        sa.Column("holder_tax_id", sa.String(length=20), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["subscription_id"], ["billing_subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "subscription_id", "method_type", name="uq_billing_payment_methods_type"
        ),
    )

    op.create_table(
        "billing_mandates",
        _uuid("id", nullable=False),
        _uuid("payment_method_id", nullable=False),
        sa.Column("status", mandatestatus, nullable=False),
        sa.Column("cbu_last4", sa.String(length=4), nullable=False),
        sa.Column("cbu_hash", sa.String(length=64), nullable=False),
        sa.Column("consent_version", sa.String(length=40), nullable=True),
        sa.Column("consent_accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("bank_reference", sa.String(length=120), nullable=True),
        sa.Column("rejection_code", sa.String(length=40), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_status_check_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["payment_method_id"], ["billing_payment_methods.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_method_id"),
    )
    op.create_index("ix_billing_mandates_cbu_hash", "billing_mandates", ["cbu_hash"])

    op.create_table(
        "billing_adjustments",
        _uuid("id", nullable=False),
        _uuid("agency_id", nullable=False),
        sa.Column("label", sa.String(length=160), nullable=True),
        sa.Column("kind", sa.String(length=40), nullable=False),
        sa.Column("mode", adjustmentmode, nullable=False),
        sa.Column("value", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("starts_on", sa.Date(), nullable=True),
        sa.Column("ends_on", sa.Date(), nullable=True),
        *_timestamps(updated=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_billing_adjustments_agency_id", "billing_adjustments", ["agency_id"])

    op.create_table(
        "billing_fx_rates",
        _uuid("id", nullable=False),
        sa.Column("fx_type", sa.String(length=32), nullable=False),
        sa.Column("rate_date", sa.Date(), nullable=False),
        sa.Column("ars_per_usd", sa.Numeric(18, 6), nullable=False),
        sa.Column("loaded_by", sa.String(length=120), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        *_timestamps(updated=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("fx_type", "rate_date", name="uq_billing_fx_rates_type_date"),
    )
    op.create_index("ix_billing_fx_rates_rate_date", "billing_fx_rates", ["rate_date"])

    op.create_table(
        "billing_cycles",
        _uuid("id", nullable=False),
        _uuid("agency_id", nullable=False),
        _uuid("subscription_id", nullable=False),
        sa.Column("anchor_date", sa.Date(), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("status", cyclestatus, nullable=False),
        sa.Column("fx_type", sa.String(length=32), nullable=False),
        sa.Column("fx_rate_date", sa.Date(), nullable=True),
        sa.Column("fx_rate_ars_per_usd", sa.Numeric(18, 6), nullable=True),
        sa.Column("base_amount_usd", sa.Numeric(18, 2), nullable=False),
        sa.Column("addons_total_usd", sa.Numeric(18, 2), nullable=False),
        sa.Column("discount_pct", sa.Numeric(5, 2), nullable=False),
        sa.Column("discount_amount_usd", sa.Numeric(18, 2), nullable=False),
        sa.Column("net_amount_usd", sa.Numeric(18, 2), nullable=False),
        sa.Column("vat_rate", sa.Numeric(6, 4), nullable=False),
        sa.Column("vat_amount_usd", sa.Numeric(18, 2), nullable=False),
        sa.Column("total_usd", sa.Numeric(18, 2), nullable=False),
        sa.Column("total_ars", sa.Numeric(18, 2), nullable=False),
        sa.Column("addons_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("frozen_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["billing_subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "subscription_id", "anchor_date", name="uq_billing_cycles_subscription_anchor"
        ),
    )
    op.create_index("ix_billing_cycles_agency_id", "billing_cycles", ["agency_id"])

    op.create_table(
        "billing_charges",
        _uuid("id", nullable=False),
        _uuid("agency_id", nullable=False),
        sa.Column("agency_charge_id", sa.Integer(), nullable=False),
        _uuid("subscription_id", nullable=True),
        _uuid("cycle_id", nullable=True),
        _uuid("selected_method_id", nullable=True),
        sa.Column("status", chargestatus, nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("total_usd", sa.Numeric(18, 2), nullable=False),
        sa.Column("amount_ars_due", sa.Numeric(18, 2), nullable=False),
        sa.Column("amount_ars_paid", sa.Numeric(18, 2), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_via_channel", paymentchannel, nullable=True),
        sa.Column("paid_reference", sa.String(length=160), nullable=True),
        sa.Column("reconciliation_status", reconciliationstatus, nullable=False),
        sa.Column("idempotency_key", sa.String(length=160), nullable=False),
        sa.Column("dunning_stage", sa.Integer(), nullable=False),
        sa.Column("fallback_offered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fallback_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("overdue_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("collections_escalated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["subscription_id"], ["billing_subscriptions.id"]),
        sa.ForeignKeyConstraint(["cycle_id"], ["billing_cycles.id"]),
        sa.ForeignKeyConstraint(["selected_method_id"], ["billing_payment_methods.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "agency_id", "idempotency_key", name="uq_billing_charges_idempotency"
        ),
        sa.UniqueConstraint(
            "agency_id", "agency_charge_id", name="uq_billing_charges_agency_number"
        ),
    )
    op.create_index("ix_billing_charges_agency_id", "billing_charges", ["agency_id"])
    op.create_index("ix_billing_charges_status", "billing_charges", ["status"])

    op.create_table(
        "billing_attempts",
        _uuid("id", nullable=False),
        _uuid("charge_id", nullable=False),
        _uuid("payment_method_id", nullable=True),
        sa.Column("attempt_no", sa.Integer(), nullable=False),
        sa.Column("status", attemptstatus, nullable=False),
        sa.Column("channel", attemptchannel, nullable=False),
        sa.Column("scheduled_for", sa.Date(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_reference", sa.String(length=120), nullable=True),
        sa.Column("paid_reference", sa.String(length=160), nullable=True),
        sa.Column("rejection_code", sa.String(length=40), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["charge_id"], ["billing_charges.id"]),
        sa.ForeignKeyConstraint(["payment_method_id"], ["billing_payment_methods.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("charge_id", "attempt_no", name="uq_billing_attempts_charge_no"),
    )
    op.create_index("ix_billing_attempts_status", "billing_attempts", ["status"])
    op.create_index("ix_billing_attempts_scheduled_for", "billing_attempts", ["scheduled_for"])
    op.create_index(
        "ix_billing_attempts_external_reference", "billing_attempts", ["external_reference"]
    )

    op.create_table(
        "billing_fallback_intents",
        _uuid("id", nullable=False),
        _uuid("agency_id", nullable=False),
        _uuid("charge_id", nullable=False),
        sa.Column("provider", fallbackprovider, nullable=False),
        sa.Column("status", fallbackintentstatus, nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("external_reference", sa.String(length=160), nullable=False),
        sa.Column("provider_payment_id", sa.String(length=200), nullable=True),
        sa.Column("provider_status", sa.String(length=40), nullable=True),
        sa.Column("provider_status_detail", sa.String(length=120), nullable=True),
        sa.Column("payment_url", sa.Text(), nullable=True),
        sa.Column("qr_payload", sa.Text(), nullable=True),
        sa.Column("qr_image_url", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_code", sa.String(length=40), nullable=True),
        sa.Column("failure_message", sa.Text(), nullable=True),
        sa.Column("provider_raw_payload", postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["charge_id"], ["billing_charges.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_reference"),
    )
    op.create_index(
        "ix_billing_fallback_intents_agency_id", "billing_fallback_intents", ["agency_id"]
    )
    op.create_index("ix_billing_fallback_intents_status", "billing_fallback_intents", ["status"])

    op.create_table(
        "billing_fiscal_documents",
        _uuid("id", nullable=False),
        _uuid("charge_id", nullable=False),
        sa.Column("document_type", sa.String(length=40), nullable=False),
        sa.Column("status", fiscaldocumentstatus, nullable=False),
        sa.Column("external_reference", sa.String(length=120), nullable=True),
        sa.Column("afip_pto_vta", sa.Integer(), nullable=True),
        sa.Column("afip_cbte_tipo", sa.Integer(), nullable=True),
        sa.Column("afip_number", sa.String(length=40), nullable=True),
        sa.Column("afip_cae", sa.String(length=40), nullable=True),
        sa.Column("afip_cae_due", sa.Date(), nullable=True),
        sa.Column("payload", postgresql.JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["charge_id"], ["billing_charges.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "charge_id", "document_type", name="uq_billing_fiscal_documents_charge_type"
        ),
    )

    op.create_table(
        "billing_file_batches",
        _uuid("id", nullable=False),
        _uuid("parent_batch_id", nullable=True),
        sa.Column("direction", batchdirection, nullable=False),
        sa.Column("adapter", sa.String(length=40), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=True),
        sa.Column("business_date", sa.Date(), nullable=False),
        sa.Column("original_file_name", sa.String(length=200), nullable=True),
        sa.Column("storage_key", sa.String(length=400), nullable=True),
        sa.Column("sha256", sa.String(length=64), nullable=True),
        sa.Column("status", batchstatus, nullable=False),
        sa.Column("total_rows", sa.Integer(), nullable=False),
        sa.Column("total_amount_ars", sa.Numeric(18, 2), nullable=True),
        sa.Column("total_paid_rows", sa.Integer(), nullable=False),
        sa.Column("total_rejected_rows", sa.Integer(), nullable=False),
        sa.Column("total_error_rows", sa.Integer(), nullable=False),
        sa.Column("meta", postgresql.JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=120), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["parent_batch_id"], ["billing_file_batches.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "direction", "parent_batch_id", "sha256", name="uq_billing_file_batches_hash"
        ),
    )
    op.create_index(
        "ix_billing_file_batches_business_date", "billing_file_batches", ["business_date"]
    )
    op.create_index("ix_billing_file_batches_status", "billing_file_batches", ["status"])

    op.create_table(
        "billing_file_batch_items",
        _uuid("id", nullable=False),
        _uuid("batch_id", nullable=False),
        _uuid("attempt_id", nullable=True),
        _uuid("charge_id", nullable=True),
        sa.Column("line_no", sa.Integer(), nullable=True),
        sa.Column("external_reference", sa.String(length=120), nullable=True),
        sa.Column("raw_hash", sa.String(length=64), nullable=True),
        sa.Column("amount_ars", sa.Numeric(18, 2), nullable=True),
        sa.Column("status", batchitemstatus, nullable=False),
        sa.Column("response_code", sa.String(length=20), nullable=True),
        sa.Column("response_message", sa.String(length=200), nullable=True),
        sa.Column("detailed_reason", sa.String(length=60), nullable=True),
        sa.Column("paid_reference", sa.String(length=160), nullable=True),
        sa.Column("row_payload", postgresql.JSONB(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["batch_id"], ["billing_file_batches.id"]),
        sa.ForeignKeyConstraint(["attempt_id"], ["billing_attempts.id"]),
        sa.ForeignKeyConstraint(["charge_id"], ["billing_charges.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_billing_file_batch_items_external_reference",
        "billing_file_batch_items",
        ["external_reference"],
    )

    op.create_table(
        "billing_events",
        _uuid("id", nullable=False),
        sa.Column("event_type", sa.String(length=60), nullable=False),
        _uuid("agency_id", nullable=True),
        _uuid("subscription_id", nullable=True),
        _uuid("charge_id", nullable=True),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("created_by", sa.String(length=120), nullable=True),
        *_timestamps(updated=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_billing_events_event_type", "billing_events", ["event_type"])
    op.create_index("ix_billing_events_agency_id", "billing_events", ["agency_id"])
    op.create_index("ix_billing_events_charge_id", "billing_events", ["charge_id"])

    op.create_table(
        "billing_sequences",
        _uuid("id", nullable=False),
        sa.Column("key", sa.String(length=120), nullable=False),
        sa.Column("next_value", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key", name="uq_billing_sequences_key"),
    )

    op.create_table(
        "billing_job_runs",
        _uuid("id", nullable=False),
        sa.Column("job_name", sa.String(length=60), nullable=False),
        sa.Column("run_id", sa.String(length=80), nullable=False),
        sa.Column("source", billingjobsource, nullable=False),
        sa.Column("status", billingjobrunstatus, nullable=False),
        sa.Column("target_date", sa.Date(), nullable=True),
        sa.Column("adapter", sa.String(length=40), nullable=True),
        sa.Column("counters", postgresql.JSONB(), nullable=True),
        sa.Column("meta", postgresql.JSONB(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("actor", sa.String(length=120), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id"),
    )
    op.create_index("ix_billing_job_runs_job_name", "billing_job_runs", ["job_name"])
    op.create_index("ix_billing_job_runs_status", "billing_job_runs", ["status"])

    op.create_table(
        "billing_job_locks",
        _uuid("id", nullable=False),
        sa.Column("lock_key", sa.String(length=120), nullable=False),
        sa.Column("owner_run_id", sa.String(length=80), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("meta", postgresql.JSONB(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lock_key"),
    )


def downgrade() -> None:
    op.drop_table("billing_job_locks")
    op.drop_index("ix_billing_job_runs_status", table_name="billing_job_runs")
    op.drop_index("ix_billing_job_runs_job_name", table_name="billing_job_runs")
    op.drop_table("billing_job_runs")
    op.drop_table("billing_sequences")
    op.drop_index("ix_billing_events_charge_id", table_name="billing_events")
    op.drop_index("ix_billing_events_agency_id", table_name="billing_events")
    op.drop_index("ix_billing_events_event_type", table_name="billing_events")
    op.drop_table("billing_events")
    op.drop_index(
        "ix_billing_file_batch_items_external_reference", table_name="billing_file_batch_items"
    )
    op.drop_table("billing_file_batch_items")
    op.drop_index("ix_billing_file_batches_status", table_name="billing_file_batches")
    op.drop_index("ix_billing_file_batches_business_date", table_name="billing_file_batches")
    op.drop_table("billing_file_batches")
    op.drop_table("billing_fiscal_documents")
    op.drop_index("ix_billing_fallback_intents_status", table_name="billing_fallback_intents")
    op.drop_index("ix_billing_fallback_intents_agency_id", table_name="billing_fallback_intents")
    op.drop_table("billing_fallback_intents")
    op.drop_index("ix_billing_attempts_external_reference", table_name="billing_attempts")
    op.drop_index("ix_billing_attempts_scheduled_for", table_name="billing_attempts")
    op.drop_index("ix_billing_attempts_status", table_name="billing_attempts")
    op.drop_table("billing_attempts")
    op.drop_index("ix_billing_charges_status", table_name="billing_charges")
    op.drop_index("ix_billing_charges_agency_id", table_name="billing_charges")
    op.drop_table("billing_charges")
    op.drop_index("ix_billing_cycles_agency_id", table_name="billing_cycles")
    op.drop_table("billing_cycles")
    op.drop_index("ix_billing_fx_rates_rate_date", table_name="billing_fx_rates")
    op.drop_table("billing_fx_rates")
    op.drop_index("ix_billing_adjustments_agency_id", table_name="billing_adjustments")
    op.drop_table("billing_adjustments")
    op.drop_index("ix_billing_mandates_cbu_hash", table_name="billing_mandates")
    op.drop_table("billing_mandates")
    op.drop_table("billing_payment_methods")
    op.drop_table("billing_subscriptions")
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.drop(bind, checkfirst=True)
