"""Direct-debit presentment batches and bank response imports."""

from __future__ import annotations

import logging
from datetime import date

from fastapi import HTTPException
from sqlalchemy.orm import Session

from billing_collections.config import settings
from billing_collections.metrics import observe_batch_rows
from billing_collections.models.collections import (
    AttemptChannel,
    AttemptStatus,
    BillingAttempt,
    BillingCharge,
    MandateStatus,
    PaymentMethodType,
)
from billing_collections.models.direct_debit import (
    BatchDirection,
    BatchItemStatus,
    BatchStatus,
    FileBatch,
    FileBatchItem,
)
from billing_collections.services import object_storage
from billing_collections.services.billing_events import BillingEventType, log_billing_event
from billing_collections.services.collections.attempts import (
    OPEN_ATTEMPT_STATUSES,
    AttemptStateMachine,
)
from billing_collections.services.collections.charges import (
    TERMINAL_CHARGE_STATUSES,
    resolve_default_method,
)
from billing_collections.services.collections.dates import today_in
from billing_collections.services.collections.direct_debit import get_adapter
from billing_collections.services.collections.direct_debit.adapter import (
    OutboundRow,
    ParsedRow,
)
from billing_collections.services.collections.dunning import DunningEngine
from billing_collections.services.collections.fiscal import FiscalIssuer
from billing_collections.services.collections.identifiers import (
    attempt_external_reference,
    reference_raw_hash,
)
from billing_collections.services.common import (
    coerce_uuid,
    get_or_404,
    list_response,
    round_money,
    utcnow,
    validate_enum,
)
from billing_collections.services.numbering import next_pd_batch_sequence

logger = logging.getLogger(__name__)


def _log_for_agencies(
    db: Session,
    event_type: BillingEventType,
    agency_ids,
    payload: dict,
    actor: str | None,
) -> None:
    unique = sorted({str(a) for a in agency_ids if a is not None})
    if not unique:
        log_billing_event(db, event_type, payload, actor=actor)
        return
    for agency_id in unique:
        log_billing_event(db, event_type, payload, agency_id=agency_id, actor=actor)


class DirectDebitBatches:
    @staticmethod
    def _collect_rows(
        db: Session, business_date: date
    ) -> tuple[list[tuple[BillingAttempt, OutboundRow]], list[dict]]:
        attempts = (
            db.query(BillingAttempt)
            .join(BillingCharge, BillingCharge.id == BillingAttempt.charge_id)
            .filter(BillingAttempt.status == AttemptStatus.pending)
            .filter(BillingAttempt.channel == AttemptChannel.office_banking)
            .filter(BillingAttempt.scheduled_for <= business_date)
            .filter(BillingCharge.status.notin_(TERMINAL_CHARGE_STATUSES))
            .order_by(BillingAttempt.scheduled_for.asc(), BillingAttempt.id.asc())
            .all()
        )
        rows: list[tuple[BillingAttempt, OutboundRow]] = []
        skipped: list[dict] = []
        for attempt in attempts:
            charge = attempt.charge
            method = resolve_default_method(db, charge.subscription_id)
            if method is None or method.method_type != PaymentMethodType.direct_debit_cbu_galicia:
                skipped.append({"attempt_id": str(attempt.id), "reason": "no_direct_debit_method"})
                continue
            mandate = method.mandate
            if settings.billing_pd_require_active_mandate and (
                mandate is None or mandate.status != MandateStatus.active
            ):
                skipped.append({"attempt_id": str(attempt.id), "reason": "mandate_not_active"})
                continue
            if not attempt.external_reference:
                attempt.external_reference = attempt_external_reference(attempt.id)
            rows.append(
                (
                    attempt,
                    OutboundRow(
                        attempt_id=str(attempt.id),
                        charge_id=str(charge.id),
                        agency_id=str(charge.agency_id),
                        external_reference=attempt.external_reference,
                        amount_ars=round_money(charge.amount_ars_due),
                        scheduled_for=attempt.scheduled_for,
                        holder_name=method.holder_name,
                        holder_tax_id=method.holder_tax_id,
                        cbu_last4=mandate.cbu_last4 if mandate else None,
                    ),
                )
            )
        return rows, skipped

    @staticmethod
    def create_presentment_batch(
        db: Session,
        business_date: date | None = None,
        *,
        adapter_key: str | None = None,
        actor: str | None = None,
        storage: object_storage.StorageService | None = None,
    ) -> dict:
        business_date = business_date or today_in(settings.billing_timezone)
        adapter = get_adapter(adapter_key)
        selected, skipped = DirectDebitBatches._collect_rows(db, business_date)
        for item in skipped:
            logger.warning(f"Attempt {item['attempt_id']} not presented: {item['reason']}")
        if not selected:
            return {
                "ok": True,
                "no_op": True,
                "reason": "no_eligible_attempts",
                "business_date": business_date.isoformat(),
                "skipped": skipped,
            }

        rows = [row for _, row in selected]
        sequence = next_pd_batch_sequence(db)
        built = adapter.build_outbound_file(business_date, sequence, rows)
        check = adapter.validate_outbound_control_totals(built.control_totals, rows)
        if not check.ok:
            raise ValueError(f"Presentment control totals mismatch: {check.errors}")

        batch = FileBatch(
            direction=BatchDirection.outbound,
            adapter=adapter.name,
            sequence=sequence,
            business_date=business_date,
            original_file_name=built.file_name,
            sha256=object_storage.sha256_of_bytes(built.content),
            status=BatchStatus.created,
            total_rows=built.control_totals.record_count,
            total_amount_ars=built.control_totals.amount_total,
            meta={
                "control_totals": built.control_totals.as_dict(),
                "require_active_mandate": settings.billing_pd_require_active_mandate,
                "skipped": skipped,
                **built.meta,
            },
            created_by=actor,
        )
        db.add(batch)
        db.flush()

        for line_no, (attempt, row) in enumerate(selected, start=1):
            db.add(
                FileBatchItem(
                    batch_id=batch.id,
                    attempt_id=attempt.id,
                    charge_id=attempt.charge_id,
                    line_no=line_no,
                    external_reference=row.external_reference,
                    raw_hash=reference_raw_hash(row.external_reference),
                    amount_ars=row.amount_ars,
                    status=BatchItemStatus.presented,
                    row_payload=row.as_payload(),
                )
            )
            AttemptStateMachine.transition(attempt, AttemptStatus.sent)
        db.flush()

        storage_key = object_storage.build_batch_storage_key(
            BatchDirection.outbound.value, batch.id, business_date, built.file_name
        )
        agency_ids = [row.agency_id for row in rows]
        try:
            object_storage.upload_batch_file(
                storage_key, built.content, built.content_type, storage=storage
            )
        except object_storage.ObjectStorageError as exc:
            batch.status = BatchStatus.error
            batch.error_message = str(exc)
            for attempt, _ in selected:
                AttemptStateMachine.transition(
                    attempt, AttemptStatus.pending, notes="presentment_upload_failed"
                )
            db.flush()
            _log_for_agencies(
                db,
                BillingEventType.pd_batch_upload_failed,
                agency_ids,
                {"batch_id": batch.id, "error": str(exc)},
                actor,
            )
            logger.warning(f"Presentment batch {batch.id} upload failed: {exc}")
            return {
                "ok": False,
                "reason": "upload_failed",
                "batch_id": str(batch.id),
                "detail": str(exc),
            }

        batch.storage_key = storage_key
        batch.status = BatchStatus.ready
        db.flush()
        _log_for_agencies(
            db,
            BillingEventType.pd_batch_created,
            agency_ids,
            {
                "batch_id": batch.id,
                "business_date": business_date,
                "total_rows": batch.total_rows,
                "total_amount_ars": batch.total_amount_ars,
                "adapter": adapter.name,
            },
            actor,
        )
        observe_batch_rows("outbound", "presented", batch.total_rows)
        logger.info(
            f"Presentment batch {batch.id} ready: {batch.total_rows} rows, "
            f"{batch.total_amount_ars} ARS"
        )
        return {
            "ok": True,
            "batch_id": str(batch.id),
            "status": batch.status.value,
            "sequence": sequence,
            "business_date": business_date.isoformat(),
            "total_rows": batch.total_rows,
            "total_amount_ars": f"{batch.total_amount_ars:.2f}",
            "file_name": built.file_name,
            "storage_key": storage_key,
            "sha256": batch.sha256,
            "skipped": skipped,
        }

    @staticmethod
    def mark_batch_sent(db: Session, batch_id, *, actor: str | None = None) -> dict:
        batch = get_or_404(db, FileBatch, batch_id, detail="Batch not found")
        if batch.direction != BatchDirection.outbound:
            return {"ok": False, "reason": "not_outbound"}
        if batch.status == BatchStatus.sent:
            return {"ok": True, "no_op": True, "reason": "already_sent"}
        if batch.status != BatchStatus.ready:
            return {"ok": False, "reason": "invalid_status", "status": batch.status.value}
        batch.status = BatchStatus.sent
        db.flush()
        _log_for_agencies(
            db,
            BillingEventType.pd_batch_sent,
            [item.row_payload.get("agency_id") for item in batch.items if item.row_payload],
            {"batch_id": batch.id},
            actor,
        )
        return {"ok": True, "batch_id": str(batch.id), "status": batch.status.value}

    @staticmethod
    def _apply_row(
        db: Session,
        inbound: FileBatch,
        outbound_item: FileBatchItem,
        row: ParsedRow,
        actor: str | None,
        issuer: FiscalIssuer | None,
    ) -> tuple[BatchItemStatus, dict]:
        attempt = db.get(BillingAttempt, outbound_item.attempt_id)
        processed_at = row.processed_at or utcnow()
        info: dict = {}

        if row.status == "PAID":
            result = DunningEngine.on_pd_attempt_paid(
                db,
                outbound_item.charge_id,
                attempt.id,
                amount=row.amount_ars,
                paid_at=processed_at,
                paid_reference=row.paid_reference,
                actor=actor,
                issuer=issuer,
            )
            info = result
            item_status = BatchItemStatus.paid
        elif row.status == "REJECTED":
            if attempt.status in OPEN_ATTEMPT_STATUSES:
                if attempt.status == AttemptStatus.pending:
                    AttemptStateMachine.transition(attempt, AttemptStatus.sent)
                AttemptStateMachine.transition(
                    attempt,
                    AttemptStatus.rejected,
                    processed_at=processed_at,
                    rejection_code=row.response_code,
                    rejection_reason=row.response_message or row.detailed_reason,
                )
                db.flush()
                info = DunningEngine.on_pd_attempt_rejected(
                    db, outbound_item.charge_id, attempt.id, actor=actor
                )
            else:
                info = {"ok": True, "no_op": True, "reason": "attempt_terminal"}
            item_status = BatchItemStatus.rejected
        else:
            attempt.notes = f"bank_result_{row.detailed_reason}:{row.response_code or ''}"
            db.flush()
            item_status = BatchItemStatus.error

        outbound_item.status = item_status
        outbound_item.response_code = row.response_code
        outbound_item.response_message = row.response_message
        outbound_item.detailed_reason = row.detailed_reason
        outbound_item.paid_reference = row.paid_reference
        outbound_item.processed_at = processed_at
        db.add(
            FileBatchItem(
                batch_id=inbound.id,
                attempt_id=attempt.id,
                charge_id=outbound_item.charge_id,
                line_no=row.line_no,
                external_reference=row.external_reference,
                raw_hash=row.raw_hash,
                amount_ars=row.amount_ars,
                status=item_status,
                response_code=row.response_code,
                response_message=row.response_message,
                detailed_reason=row.detailed_reason,
                paid_reference=row.paid_reference,
                row_payload=row.raw,
                processed_at=processed_at,
            )
        )
        db.flush()
        return item_status, info

    @staticmethod
    def _record_error_row(db: Session, inbound: FileBatch, row: ParsedRow, message: str) -> None:
        db.add(
            FileBatchItem(
                batch_id=inbound.id,
                line_no=row.line_no,
                external_reference=row.external_reference,
                raw_hash=row.raw_hash,
                amount_ars=row.amount_ars,
                status=BatchItemStatus.error,
                response_code=row.response_code,
                response_message=message[:200],
                detailed_reason=row.detailed_reason,
                paid_reference=row.paid_reference,
                row_payload=row.raw,
                processed_at=utcnow(),
            )
        )
        db.flush()

    @staticmethod
    def import_response_batch(
        db: Session,
        outbound_batch_id,
        content: bytes,
        file_name: str,
        *,
        content_type: str | None = None,
        actor: str | None = None,
        storage: object_storage.StorageService | None = None,
        issuer: FiscalIssuer | None = None,
    ) -> dict:
        outbound = get_or_404(db, FileBatch, outbound_batch_id, detail="Outbound batch not found")
        if outbound.direction != BatchDirection.outbound:
            raise HTTPException(status_code=404, detail="Outbound batch not found")

        sha256 = object_storage.sha256_of_bytes(content)
        duplicate = (
            db.query(FileBatch)
            .filter(FileBatch.direction == BatchDirection.inbound)
            .filter(FileBatch.parent_batch_id == outbound.id)
            .filter(FileBatch.sha256 == sha256)
            .first()
        )
        if duplicate:
            return {
                "ok": True,
                "already_imported": True,
                "inbound_batch_id": str(duplicate.id),
                "summary": {
                    "total_rows": duplicate.total_rows,
                    "paid": duplicate.total_paid_rows,
                    "rejected": duplicate.total_rejected_rows,
                    "error_rows": duplicate.total_error_rows,
                },
            }

        adapter = get_adapter(outbound.adapter)
        parsed = adapter.parse_inbound_file(content)
        validation = adapter.validate_inbound_control_totals(parsed)
        business_date = today_in(settings.billing_timezone)

        inbound = FileBatch(
            parent_batch_id=outbound.id,
            direction=BatchDirection.inbound,
            adapter=adapter.name,
            business_date=business_date,
            original_file_name=file_name,
            sha256=sha256,
            status=BatchStatus.created,
            total_rows=len(parsed.rows),
            total_amount_ars=parsed.control_totals.amount_total,
            meta={
                "control_totals": parsed.control_totals.as_dict(),
                "validation": validation.as_dict(),
                "parse_warnings": parsed.parse_warnings,
            },
            created_by=actor,
        )
        db.add(inbound)
        db.flush()

        storage_key = object_storage.build_batch_storage_key(
            BatchDirection.inbound.value, inbound.id, business_date, file_name
        )
        object_storage.upload_batch_file(
            storage_key, content, content_type or "text/plain; charset=utf-8", storage=storage
        )
        inbound.storage_key = storage_key

        by_reference = {
            item.external_reference: item for item in outbound.items if item.external_reference
        }
        by_hash = {item.raw_hash: item for item in outbound.items if item.raw_hash}

        summary = {
            "total_rows": len(parsed.rows),
            "matched_rows": 0,
            "paid": 0,
            "already_paid": 0,
            "rejected": 0,
            "error_rows": 0,
            "fiscal_issued": 0,
            "fiscal_failed": 0,
        }
        row_errors: list[dict] = []
        touched_agencies: set = set()

        for row in parsed.rows:
            match = (
                by_reference.get(row.external_reference) if row.external_reference else None
            ) or by_hash.get(row.raw_hash)
            if match is None and row.external_reference:
                match = by_hash.get(reference_raw_hash(row.external_reference))
            if match is None or match.attempt_id is None or match.charge_id is None:
                DirectDebitBatches._record_error_row(db, inbound, row, "unmatched_row")
                summary["error_rows"] += 1
                row_errors.append(
                    {
                        "line_no": row.line_no,
                        "external_reference": row.external_reference,
                        "reason": "unmatched_row",
                    }
                )
                continue

            summary["matched_rows"] += 1
            nested = db.begin_nested()
            try:
                item_status, info = DirectDebitBatches._apply_row(
                    db, inbound, match, row, actor, issuer
                )
                nested.commit()
            except Exception as exc:
                nested.rollback()
                logger.exception(f"Response row {row.line_no} failed for batch {outbound.id}")
                DirectDebitBatches._record_error_row(db, inbound, row, str(exc))
                summary["error_rows"] += 1
                row_errors.append(
                    {
                        "line_no": row.line_no,
                        "external_reference": row.external_reference,
                        "reason": "processing_error",
                        "detail": str(exc),
                    }
                )
                continue

            charge = db.get(BillingCharge, match.charge_id)
            if charge is not None:
                touched_agencies.add(charge.agency_id)
            if item_status == BatchItemStatus.paid:
                summary["paid"] += 1
                if info.get("already_paid"):
                    summary["already_paid"] += 1
                fiscal = info.get("fiscal")
                if fiscal is not None:
                    summary["fiscal_issued" if fiscal.get("ok") else "fiscal_failed"] += 1
            elif item_status == BatchItemStatus.rejected:
                summary["rejected"] += 1
            else:
                summary["error_rows"] += 1
                row_errors.append(
                    {
                        "line_no": row.line_no,
                        "external_reference": row.external_reference,
                        "reason": row.detailed_reason,
                    }
                )

        inbound.status = BatchStatus.processed
        inbound.total_paid_rows = summary["paid"]
        inbound.total_rejected_rows = summary["rejected"]
        inbound.total_error_rows = summary["error_rows"]
        if outbound.status in (BatchStatus.ready, BatchStatus.sent):
            outbound.status = BatchStatus.processed
        db.flush()

        _log_for_agencies(
            db,
            BillingEventType.pd_response_imported,
            touched_agencies,
            {"outbound_batch_id": outbound.id, "inbound_batch_id": inbound.id, **summary},
            actor,
        )
        observe_batch_rows("inbound", "paid", summary["paid"])
        observe_batch_rows("inbound", "rejected", summary["rejected"])
        observe_batch_rows("inbound", "error", summary["error_rows"])
        if not validation.ok:
            logger.warning(
                f"Response for batch {outbound.id} imported with control total errors: "
                f"{validation.errors}"
            )
        logger.info(
            f"Response imported for batch {outbound.id}: {summary['paid']} paid, "
            f"{summary['rejected']} rejected, {summary['error_rows']} errors"
        )
        return {
            "ok": validation.ok,
            "errors": validation.errors,
            "inbound_batch_id": str(inbound.id),
            "summary": summary,
            "row_errors": row_errors,
            "parse_warnings": parsed.parse_warnings,
        }

    @staticmethod
    def list_batches(
        db: Session,
        direction: str | None = None,
        status: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(FileBatch)
        if direction:
            query = query.filter(
                FileBatch.direction == validate_enum(direction, BatchDirection, "direction")
            )
        if status:
            query = query.filter(
                FileBatch.status == validate_enum(status, BatchStatus, "status")
            )
        if date_from:
            query = query.filter(FileBatch.business_date >= date_from)
        if date_to:
            query = query.filter(FileBatch.business_date <= date_to)
        return (
            query.order_by(FileBatch.business_date.desc(), FileBatch.created_at.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    @classmethod
    def list_batches_response(
        cls,
        db: Session,
        direction: str | None,
        status: str | None,
        date_from: date | None,
        date_to: date | None,
        limit: int,
        offset: int,
    ):
        return list_response(
            cls.list_batches(db, direction, status, date_from, date_to, limit, offset),
            limit,
            offset,
        )

    @staticmethod
    def list_items(db: Session, batch_id, limit: int = 500, offset: int = 0):
        batch = get_or_404(db, FileBatch, batch_id, detail="Batch not found")
        items = (
            db.query(FileBatchItem)
            .filter(FileBatchItem.batch_id == batch.id)
            .order_by(FileBatchItem.line_no.asc())
            .limit(limit)
            .offset(offset)
            .all()
        )
        return list_response(items, limit, offset)

    @staticmethod
    def download_file(
        db: Session, batch_id, storage: object_storage.StorageService | None = None
    ) -> tuple[str, bytes]:
        batch = get_or_404(db, FileBatch, batch_id, detail="Batch not found")
        if not batch.storage_key:
            raise HTTPException(status_code=404, detail="Batch has no stored file")
        content = object_storage.read_batch_file(batch.storage_key, storage=storage)
        file_name = batch.original_file_name or (
            f"batch-{batch.id}-{batch.direction.value}.txt"
        )
        return file_name, content

    @staticmethod
    def get(db: Session, batch_id):
        return get_or_404(db, FileBatch, coerce_uuid(batch_id), detail="Batch not found")


direct_debit_batches = DirectDebitBatches()
