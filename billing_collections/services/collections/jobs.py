"""Scheduled billing jobs with run bookkeeping and a database lock.

Every job records a ``BillingJobRun`` and holds a ``BillingJobLock`` row while
it executes, so two workers never run the same job at once. A lock that
expired or was released can be taken over by the next run.

Unlike the services it wraps, this layer commits: the lock must be visible to
other workers before the job body starts, and a failed run must stay recorded
after the body's changes are rolled back.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_collections.config import settings
from billing_collections.metrics import observe_job
from billing_collections.models.jobs import (
    BillingJobLock,
    BillingJobRun,
    BillingJobRunStatus,
    BillingJobSource,
)
from billing_collections.services.collections.anchor import AnchorScheduler
from billing_collections.services.collections.direct_debit.batches import DirectDebitBatches
from billing_collections.services.collections.dunning import DunningEngine
from billing_collections.services.collections.fiscal import FiscalIssuanceBridge
from billing_collections.services.common import (
    ensure_utc,
    list_response,
    utcnow,
    validate_enum,
)

logger = logging.getLogger(__name__)

ANCHOR_JOB = "anchor"
PRESENTMENT_JOB = "pd_presentment"
FALLBACK_CREATE_JOB = "fallback_create"
FALLBACK_SYNC_JOB = "fallback_sync"
FISCAL_RETRY_JOB = "fiscal_retry"


@dataclass
class JobOutcome:
    status: BillingJobRunStatus
    counters: dict = field(default_factory=dict)
    meta: dict = field(default_factory=dict)
    error_message: str | None = None


def _counters_from(summary: dict) -> dict:
    return {
        key: value
        for key, value in summary.items()
        if isinstance(value, int) and not isinstance(value, bool)
    }


def acquire_lock(db: Session, lock_key: str, run_id: str, ttl_seconds: int | None = None) -> bool:
    now = utcnow()
    expires_at = now + timedelta(seconds=ttl_seconds or settings.billing_jobs_lock_ttl_seconds)
    lock = (
        db.query(BillingJobLock)
        .filter(BillingJobLock.lock_key == lock_key)
        .with_for_update()
        .first()
    )
    if lock is None:
        nested = db.begin_nested()
        try:
            db.add(
                BillingJobLock(
                    lock_key=lock_key,
                    owner_run_id=run_id,
                    acquired_at=now,
                    expires_at=expires_at,
                )
            )
            db.flush()
            nested.commit()
        except IntegrityError:
            nested.rollback()
            return False
        return True

    if lock.released_at is None and ensure_utc(lock.expires_at) > now:
        return False
    if lock.released_at is None:
        logger.warning(f"Taking over expired lock {lock_key} held by {lock.owner_run_id}")
    lock.owner_run_id = run_id
    lock.acquired_at = now
    lock.expires_at = expires_at
    lock.released_at = None
    db.flush()
    return True


def release_lock(db: Session, lock_key: str, run_id: str) -> None:
    lock = db.query(BillingJobLock).filter(BillingJobLock.lock_key == lock_key).first()
    if lock is None or lock.owner_run_id != run_id:
        return
    lock.released_at = utcnow()
    db.flush()


def _finish(run: BillingJobRun, status: BillingJobRunStatus, started: float) -> None:
    run.status = status
    run.finished_at = utcnow()
    run.duration_ms = int((time.monotonic() - started) * 1000)


def _run_summary(run: BillingJobRun) -> dict:
    return {
        "run_id": run.run_id,
        "job_name": run.job_name,
        "status": run.status.value,
        "target_date": run.target_date.isoformat() if run.target_date else None,
        "counters": run.counters or {},
        "meta": run.meta or {},
        "error_message": run.error_message,
        "duration_ms": run.duration_ms,
    }


def execute_billing_job(
    db: Session,
    job_name: str,
    body: Callable[[Session], JobOutcome],
    *,
    source: BillingJobSource | str = BillingJobSource.cron,
    target_date: date | None = None,
    adapter: str | None = None,
    actor: str | None = None,
    lock_key: str | None = None,
) -> dict:
    lock_key = lock_key or f"billing_job:{job_name}"
    started = time.monotonic()
    run = BillingJobRun(
        job_name=job_name,
        run_id=f"{job_name}-{uuid.uuid4().hex}",
        source=validate_enum(source, BillingJobSource, "job source"),
        status=BillingJobRunStatus.running,
        target_date=target_date,
        adapter=adapter,
        actor=actor,
        started_at=utcnow(),
    )
    db.add(run)
    db.flush()
    logger.info(f"Billing job {job_name} started (run {run.run_id})")

    if not acquire_lock(db, lock_key, run.run_id):
        _finish(run, BillingJobRunStatus.skipped_locked, started)
        db.commit()
        observe_job(job_name, run.status.value, time.monotonic() - started)
        logger.info(f"Billing job {job_name} skipped: lock {lock_key} is held")
        return _run_summary(run)
    db.commit()

    nested = db.begin_nested()
    try:
        outcome = body(db)
        nested.commit()
    except Exception as exc:
        nested.rollback()
        run.error_message = str(exc)
        _finish(run, BillingJobRunStatus.failed, started)
        release_lock(db, lock_key, run.run_id)
        db.commit()
        observe_job(job_name, run.status.value, time.monotonic() - started)
        logger.exception(f"Billing job {job_name} failed (run {run.run_id})")
        raise

    run.counters = outcome.counters
    run.meta = outcome.meta or None
    run.error_message = outcome.error_message
    _finish(run, outcome.status, started)
    release_lock(db, lock_key, run.run_id)
    db.commit()
    observe_job(job_name, run.status.value, time.monotonic() - started)
    logger.info(
        f"Billing job {job_name} finished with {run.status.value} in {run.duration_ms} ms"
    )
    return _run_summary(run)


def run_anchor_job(
    db: Session,
    target_date: date | None = None,
    *,
    override_fx: bool = False,
    source: BillingJobSource | str = BillingJobSource.cron,
    actor: str | None = None,
) -> dict:
    def body(session: Session) -> JobOutcome:
        summary = AnchorScheduler.run(
            session, target_date, override_fx=override_fx, actor=actor
        )
        status = (
            BillingJobRunStatus.success if summary["ok"] else BillingJobRunStatus.partial
        )
        return JobOutcome(
            status=status,
            counters=_counters_from(summary),
            meta={"anchor_date": summary["anchor_date"], "errors": summary["errors"]},
        )

    return execute_billing_job(
        db, ANCHOR_JOB, body, source=source, target_date=target_date, actor=actor
    )


def run_presentment_job(
    db: Session,
    business_date: date | None = None,
    *,
    source: BillingJobSource | str = BillingJobSource.cron,
    actor: str | None = None,
) -> dict:
    adapter = settings.billing_pd_adapter

    def body(session: Session) -> JobOutcome:
        result = DirectDebitBatches.create_presentment_batch(
            session, business_date, adapter_key=adapter, actor=actor
        )
        if result.get("no_op"):
            return JobOutcome(
                status=BillingJobRunStatus.no_op,
                counters={"skipped": len(result.get("skipped", []))},
                meta={"reason": result["reason"]},
            )
        if not result["ok"]:
            return JobOutcome(
                status=BillingJobRunStatus.failed,
                meta={"batch_id": result.get("batch_id"), "reason": result["reason"]},
                error_message=result.get("detail") or result["reason"],
            )
        return JobOutcome(
            status=BillingJobRunStatus.success,
            counters={
                "total_rows": result["total_rows"],
                "skipped": len(result["skipped"]),
            },
            meta={
                "batch_id": result["batch_id"],
                "total_amount_ars": result["total_amount_ars"],
                "file_name": result["file_name"],
            },
        )

    return execute_billing_job(
        db,
        PRESENTMENT_JOB,
        body,
        source=source,
        target_date=business_date,
        adapter=adapter,
        actor=actor,
    )


def _bulk_outcome(summary: dict) -> JobOutcome:
    if summary["errors"]:
        status = BillingJobRunStatus.partial
    elif not summary["scanned"]:
        status = BillingJobRunStatus.no_op
    else:
        status = BillingJobRunStatus.success
    return JobOutcome(
        status=status,
        counters=_counters_from(summary),
        meta={"errors": summary["errors"]} if summary["errors"] else {},
    )


def run_fallback_create_job(
    db: Session,
    provider: str | None = None,
    *,
    source: BillingJobSource | str = BillingJobSource.cron,
    actor: str | None = None,
) -> dict:
    def body(session: Session) -> JobOutcome:
        return _bulk_outcome(
            DunningEngine.create_fallback_for_eligible_charges(session, provider, actor=actor)
        )

    return execute_billing_job(db, FALLBACK_CREATE_JOB, body, source=source, actor=actor)


def run_fallback_sync_job(
    db: Session,
    *,
    source: BillingJobSource | str = BillingJobSource.cron,
    actor: str | None = None,
) -> dict:
    def body(session: Session) -> JobOutcome:
        return _bulk_outcome(DunningEngine.sync_fallback_statuses(session, actor=actor))

    return execute_billing_job(db, FALLBACK_SYNC_JOB, body, source=source, actor=actor)


def run_fiscal_retry_job(
    db: Session,
    *,
    source: BillingJobSource | str = BillingJobSource.cron,
    actor: str | None = None,
) -> dict:
    def body(session: Session) -> JobOutcome:
        summary = FiscalIssuanceBridge.retry_failed(session)
        if not summary["scanned"]:
            status = BillingJobRunStatus.no_op
        elif summary["failed"]:
            status = BillingJobRunStatus.partial
        else:
            status = BillingJobRunStatus.success
        return JobOutcome(status=status, counters=summary)

    return execute_billing_job(db, FISCAL_RETRY_JOB, body, source=source, actor=actor)


class JobRuns:
    @staticmethod
    def list(
        db: Session,
        job_name: str | None,
        status: str | None,
        limit: int,
        offset: int,
    ):
        query = db.query(BillingJobRun)
        if job_name:
            query = query.filter(BillingJobRun.job_name == job_name)
        if status:
            query = query.filter(
                BillingJobRun.status == validate_enum(status, BillingJobRunStatus, "status")
            )
        return (
            query.order_by(BillingJobRun.started_at.desc()).limit(limit).offset(offset).all()
        )

    @classmethod
    def list_response(cls, db: Session, job_name, status, limit: int, offset: int):
        return list_response(cls.list(db, job_name, status, limit, offset), limit, offset)


job_runs = JobRuns()
