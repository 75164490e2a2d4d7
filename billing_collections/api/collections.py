from datetime import date

from fastapi import APIRouter, Depends, File, Header, HTTPException, Query, UploadFile, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from billing_collections.db import get_db
from billing_collections.models.jobs import BillingJobSource
from billing_collections.schemas.collections import (
    AnchorRunRequest,
    BillingJobRunRead,
    ChargeDetailRead,
    ChargeRead,
    CycleRead,
    FallbackCreateRequest,
    FallbackPaidRequest,
    FileBatchItemRead,
    FileBatchRead,
    FiscalRetryRequest,
    FxRateUpsertRequest,
    MandateCreateRequest,
    MandateRead,
    MandateTransitionRequest,
    PresentmentBatchRequest,
)
from billing_collections.schemas.common import ListResponse
from billing_collections.services import collections as collections_service
from billing_collections.services.collections import jobs as jobs_service
from billing_collections.services.object_storage import ObjectNotFoundError

router = APIRouter(prefix="/collections", tags=["collections"])


def get_actor(x_actor_id: str | None = Header(default=None, alias="X-Actor-Id")) -> str | None:
    value = (x_actor_id or "").strip()
    return value or None


# --- Cycle generation ---


@router.post("/run-anchor")
def run_anchor(
    payload: AnchorRunRequest,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
) -> dict:
    result = collections_service.anchor_scheduler.run(
        db, payload.anchor_date, override_fx=payload.override_fx, actor=actor
    )
    db.commit()
    return result


@router.post("/fx-rates")
def upsert_fx_rate(
    payload: FxRateUpsertRequest,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
) -> dict:
    result = collections_service.fx_rates.upsert(
        db,
        payload.rate_date,
        payload.ars_per_usd,
        fx_type=payload.fx_type,
        note=payload.note,
        actor=actor,
    )
    db.commit()
    return result


@router.get("/charges", response_model=ListResponse[ChargeRead])
def list_charges(
    agency_id: str | None = None,
    status: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return collections_service.charges.list_response(db, agency_id, status, limit, offset)


@router.get("/charges/{charge_id}", response_model=ChargeDetailRead)
def get_charge(charge_id: str, db: Session = Depends(get_db)):
    return collections_service.charges.get(db, charge_id)


@router.get("/cycles", response_model=ListResponse[CycleRead])
def list_cycles(
    subscription_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return collections_service.cycles.list_response(db, subscription_id, limit, offset)


# --- Direct debit ---


@router.post("/direct-debit/batches", status_code=status.HTTP_201_CREATED)
def create_presentment_batch(
    payload: PresentmentBatchRequest,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
) -> dict:
    try:
        result = collections_service.direct_debit_batches.create_presentment_batch(
            db, payload.business_date, adapter_key=payload.adapter, actor=actor
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return result


@router.get("/direct-debit/batches", response_model=ListResponse[FileBatchRead])
def list_batches(
    direction: str | None = None,
    status: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return collections_service.direct_debit_batches.list_batches_response(
        db, direction, status, date_from, date_to, limit, offset
    )


@router.get(
    "/direct-debit/batches/{batch_id}/items",
    response_model=ListResponse[FileBatchItemRead],
)
def list_batch_items(
    batch_id: str,
    limit: int = Query(default=500, ge=1, le=2000),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return collections_service.direct_debit_batches.list_items(db, batch_id, limit, offset)


@router.get("/direct-debit/batches/{batch_id}/file")
def download_batch_file(batch_id: str, db: Session = Depends(get_db)):
    try:
        file_name, content = collections_service.direct_debit_batches.download_file(
            db, batch_id
        )
    except ObjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Batch file not found in storage") from exc
    return Response(
        content=content,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


@router.post("/direct-debit/batches/{batch_id}/sent")
def mark_batch_sent(
    batch_id: str,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
) -> dict:
    result = collections_service.direct_debit_batches.mark_batch_sent(db, batch_id, actor=actor)
    db.commit()
    return result


@router.post("/direct-debit/batches/{batch_id}/import-response")
def import_response(
    batch_id: str,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
) -> dict:
    content = file.file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Response file is empty")
    result = collections_service.direct_debit_batches.import_response_batch(
        db,
        batch_id,
        content,
        file.filename or "response.txt",
        content_type=file.content_type,
        actor=actor,
    )
    db.commit()
    return result


# --- Fallback channel ---


@router.post("/fallback/create")
def create_fallback(
    payload: FallbackCreateRequest,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
) -> dict:
    if payload.charge_id is not None:
        result = collections_service.dunning.create_fallback_intent_for_charge(
            db, payload.charge_id, payload.provider, actor=actor
        )
    else:
        result = collections_service.dunning.create_fallback_for_eligible_charges(
            db, payload.provider, actor=actor
        )
    db.commit()
    return result


@router.post("/fallback/sync")
def sync_fallback(
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
) -> dict:
    result = collections_service.dunning.sync_fallback_statuses(db, actor=actor)
    db.commit()
    return result


@router.post("/fallback/{intent_id}/paid")
def fallback_paid(
    intent_id: str,
    payload: FallbackPaidRequest | None = None,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
) -> dict:
    payload = payload or FallbackPaidRequest()
    result = collections_service.dunning.on_fallback_paid(
        db, intent_id, paid_at=payload.paid_at, amount=payload.amount, actor=actor
    )
    db.commit()
    return result


@router.post("/fallback/{intent_id}/expired")
def fallback_expired(
    intent_id: str,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
) -> dict:
    result = collections_service.dunning.on_fallback_expired(db, intent_id, actor=actor)
    db.commit()
    return result


# --- Fiscal ---


@router.post("/charges/{charge_id}/fiscal/retry")
def retry_fiscal(
    charge_id: str,
    payload: FiscalRetryRequest | None = None,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
) -> dict:
    payload = payload or FiscalRetryRequest()
    result = collections_service.fiscal_bridge.issue_for_charge(
        db, charge_id, document_type=payload.document_type, actor=actor
    )
    db.commit()
    return result


# --- Mandates ---


@router.post("/mandates", response_model=MandateRead, status_code=status.HTTP_201_CREATED)
def create_mandate(
    payload: MandateCreateRequest,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    mandate = collections_service.mandates.create(
        db,
        payload.payment_method_id,
        payload.cbu,
        consent_version=payload.consent_version,
        consent_accepted_at=payload.consent_accepted_at,
        actor=actor,
    )
    db.commit()
    db.refresh(mandate)
    return mandate


@router.post("/mandates/{mandate_id}/transition", response_model=MandateRead)
def transition_mandate(
    mandate_id: str,
    payload: MandateTransitionRequest,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    mandate = collections_service.mandates.transition_status(
        db,
        mandate_id,
        payload.status,
        reason_code=payload.reason_code,
        reason_text=payload.reason_text,
        bank_reference=payload.bank_reference,
        actor=actor,
    )
    db.commit()
    db.refresh(mandate)
    return mandate


# --- Jobs ---


_MANUAL_JOBS = {
    jobs_service.ANCHOR_JOB: jobs_service.run_anchor_job,
    jobs_service.PRESENTMENT_JOB: jobs_service.run_presentment_job,
    jobs_service.FALLBACK_CREATE_JOB: jobs_service.run_fallback_create_job,
    jobs_service.FALLBACK_SYNC_JOB: jobs_service.run_fallback_sync_job,
    jobs_service.FISCAL_RETRY_JOB: jobs_service.run_fiscal_retry_job,
}


@router.post("/jobs/{job_name}/run")
def run_job(
    job_name: str,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
) -> dict:
    job = _MANUAL_JOBS.get(job_name)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job(db, source=BillingJobSource.manual, actor=actor)


@router.get("/job-runs", response_model=ListResponse[BillingJobRunRead])
def list_job_runs(
    job_name: str | None = None,
    status: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return collections_service.job_runs.list_response(db, job_name, status, limit, offset)
