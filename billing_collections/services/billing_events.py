"""Append-only billing event log.

Every collections module records its state changes here. Events are written
in the caller's transaction, so a rolled-back unit of work leaves no trace.
"""

from __future__ import annotations

import enum
import logging
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from billing_collections.models.billing_event import BillingEvent
from billing_collections.services.common import coerce_uuid

logger = logging.getLogger(__name__)


class BillingEventType(enum.Enum):
    # Cycle generation
    cycle_created = "CYCLE_CREATED"
    charge_created = "CHARGE_CREATED"
    attempts_created = "ATTEMPTS_CREATED"
    anchor_run_completed = "ANCHOR_RUN_COMPLETED"
    fx_rate_upserted = "FX_RATE_UPSERTED"

    # Direct debit
    pd_batch_created = "PD_BATCH_CREATED"
    pd_batch_upload_failed = "PD_BATCH_UPLOAD_FAILED"
    pd_batch_sent = "PD_BATCH_SENT"
    pd_response_imported = "PD_RESPONSE_IMPORTED"
    pd_attempt_rejected = "PD_ATTEMPT_REJECTED"

    # Settlement and dunning
    charge_paid = "BILLING_CHARGE_PAID"
    dunning_stage_changed = "DUNNING_STAGE_CHANGED"
    fallback_created = "FALLBACK_CREATED"
    fallback_paid = "FALLBACK_PAID"
    fallback_expired = "FALLBACK_EXPIRED"
    fallback_failed = "FALLBACK_FAILED"
    collections_escalated = "COLLECTIONS_ESCALATED"

    # Fiscal
    fiscal_document_issued = "FISCAL_DOCUMENT_ISSUED"
    fiscal_document_failed = "FISCAL_DOCUMENT_FAILED"

    # Mandates
    mandate_created = "MANDATE_CREATED"
    mandate_status_changed = "MANDATE_STATUS_CHANGED"
    mandate_rejected = "MANDATE_REJECTED"
    mandate_revoked = "MANDATE_REVOKED"


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def log_billing_event(
    db: Session,
    event_type: BillingEventType,
    payload: dict[str, Any] | None = None,
    *,
    agency_id: UUID | str | None = None,
    subscription_id: UUID | str | None = None,
    charge_id: UUID | str | None = None,
    actor: str | None = None,
) -> BillingEvent:
    """Append one event row and flush it.

    Example:
        log_billing_event(
            db,
            BillingEventType.charge_paid,
            {"channel": "office_banking", "amount_ars": "1200.50"},
            agency_id=charge.agency_id,
            charge_id=charge.id,
        )
    """
    event = BillingEvent(
        event_type=event_type.value,
        agency_id=coerce_uuid(agency_id),
        subscription_id=coerce_uuid(subscription_id),
        charge_id=coerce_uuid(charge_id),
        payload=_json_safe(payload or {}),
        created_by=actor,
    )
    db.add(event)
    db.flush()
    logger.debug(f"Billing event logged: {event_type.value} (charge={charge_id})")
    return event


def list_events(
    db: Session,
    *,
    charge_id: UUID | str | None = None,
    agency_id: UUID | str | None = None,
    event_type: BillingEventType | None = None,
) -> list[BillingEvent]:
    query = db.query(BillingEvent)
    if charge_id is not None:
        query = query.filter(BillingEvent.charge_id == coerce_uuid(charge_id))
    if agency_id is not None:
        query = query.filter(BillingEvent.agency_id == coerce_uuid(agency_id))
    if event_type is not None:
        query = query.filter(BillingEvent.event_type == event_type.value)
    return query.order_by(BillingEvent.created_at.asc()).all()
