"""Fiscal document bookkeeping for paid charges.

The invoice itself is produced by an external issuer (a mock for sandboxes
or an HTTP gateway in front of AFIP). This module only keeps one
``FiscalDocument`` row per (charge, document type) and records each issuance
outcome on it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Protocol

import httpx
from sqlalchemy.orm import Session

from billing_collections.config import settings
from billing_collections.models.collections import (
    BillingCharge,
    ChargeStatus,
    FiscalDocument,
    FiscalDocumentStatus,
)
from billing_collections.services.billing_events import BillingEventType, log_billing_event
from billing_collections.services.common import get_or_404, round_money, utcnow

logger = logging.getLogger(__name__)


class FiscalIssuerError(Exception):
    """Raised when the fiscal issuer cannot produce a document."""


@dataclass
class FiscalIssueRequest:
    charge_id: str
    agency_id: str
    document_type: str
    amount_ars: Decimal
    pto_vta: int
    cbte_tipo: int
    paid_at: datetime | None = None


@dataclass
class FiscalIssueResult:
    external_reference: str
    afip_pto_vta: int
    afip_cbte_tipo: int
    afip_number: str
    afip_cae: str | None = None
    afip_cae_due: date | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class FiscalIssuer(Protocol):
    def issue(self, request: FiscalIssueRequest) -> FiscalIssueResult: ...


class MockFiscalIssuer:
    def issue(self, request: FiscalIssueRequest) -> FiscalIssueResult:
        if request.amount_ars <= 0:
            raise FiscalIssuerError("Invalid ARS amount for fiscal document")
        stamp = int(utcnow().timestamp() * 1000)
        return FiscalIssueResult(
            external_reference=f"MOCK-{request.charge_id}-{stamp}",
            afip_pto_vta=request.pto_vta,
            afip_cbte_tipo=request.cbte_tipo,
            afip_number=str(stamp),
            afip_cae=f"MOCKCAE{stamp}",
            afip_cae_due=utcnow().date() + timedelta(days=10),
            payload={"mock": True, "amount_ars": f"{request.amount_ars:.2f}"},
        )


class HttpFiscalIssuer:
    """Calls the fiscal gateway's ``POST /documents`` endpoint."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        client: httpx.Client | None = None,
        timeout: float = 30,
    ):
        self.base_url = (base_url or settings.billing_fiscal_gateway_url or "").rstrip("/")
        self.token = token or settings.billing_fiscal_gateway_token
        self.client = client
        self.timeout = timeout

    def issue(self, request: FiscalIssueRequest) -> FiscalIssueResult:
        if not self.base_url:
            raise FiscalIssuerError("BILLING_FISCAL_GATEWAY_URL is not configured")
        payload = {
            "charge_id": request.charge_id,
            "agency_id": request.agency_id,
            "document_type": request.document_type,
            "amount_ars": f"{request.amount_ars:.2f}",
            "pto_vta": request.pto_vta,
            "cbte_tipo": request.cbte_tipo,
            "paid_at": request.paid_at.isoformat() if request.paid_at else None,
        }
        headers = {"Idempotency-Key": f"fiscal:{request.charge_id}:{request.document_type}"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            if self.client is not None:
                resp = self.client.post(
                    f"{self.base_url}/documents", json=payload, headers=headers
                )
            else:
                resp = httpx.post(
                    f"{self.base_url}/documents",
                    json=payload,
                    headers=headers,
                    timeout=self.timeout,
                )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            raise FiscalIssuerError(f"Fiscal gateway request failed: {exc}") from exc
        except ValueError as exc:
            raise FiscalIssuerError("Fiscal gateway returned invalid JSON") from exc

        if not isinstance(data, dict):
            raise FiscalIssuerError("Fiscal gateway returned a non-object body")
        number = data.get("number")
        if not number:
            raise FiscalIssuerError("Fiscal gateway response missing document number")
        try:
            cae_due = data.get("cae_due")
            return FiscalIssueResult(
                external_reference=str(
                    data.get("external_reference")
                    or f"AFIP-{request.pto_vta}-{request.cbte_tipo}-{number}"
                ),
                afip_pto_vta=int(data.get("pto_vta") or request.pto_vta),
                afip_cbte_tipo=int(data.get("cbte_tipo") or request.cbte_tipo),
                afip_number=str(number),
                afip_cae=data.get("cae"),
                afip_cae_due=date.fromisoformat(cae_due) if cae_due else None,
                payload={"request": payload, "response": data},
            )
        except (ValueError, TypeError, AttributeError) as exc:
            raise FiscalIssuerError(f"Fiscal gateway returned an invalid document: {exc}") from exc


def get_fiscal_issuer() -> FiscalIssuer:
    if settings.billing_fiscal_issuer_mode == "HTTP":
        return HttpFiscalIssuer()
    return MockFiscalIssuer()


class FiscalIssuanceBridge:
    @staticmethod
    def get_document(db: Session, charge_id, document_type: str) -> FiscalDocument | None:
        return (
            db.query(FiscalDocument)
            .filter(FiscalDocument.charge_id == charge_id)
            .filter(FiscalDocument.document_type == document_type)
            .first()
        )

    @staticmethod
    def issue_for_charge(
        db: Session,
        charge_id,
        *,
        document_type: str | None = None,
        issuer: FiscalIssuer | None = None,
        actor: str | None = None,
    ) -> dict:
        charge = get_or_404(db, BillingCharge, charge_id, detail="Charge not found")
        doc_type = (document_type or settings.billing_fiscal_document_type).strip().upper()
        if charge.status != ChargeStatus.paid:
            return {"ok": False, "reason": "charge_not_paid", "charge_id": str(charge.id)}

        document = FiscalIssuanceBridge.get_document(db, charge.id, doc_type)
        if document and document.status == FiscalDocumentStatus.issued:
            return {
                "ok": True,
                "already_issued": True,
                "document_id": str(document.id),
                "status": document.status.value,
            }
        if document is None:
            document = FiscalDocument(
                charge_id=charge.id,
                document_type=doc_type,
                status=FiscalDocumentStatus.pending,
                retry_count=0,
            )
            db.add(document)
            db.flush()

        request = FiscalIssueRequest(
            charge_id=str(charge.id),
            agency_id=str(charge.agency_id),
            document_type=doc_type,
            amount_ars=round_money(
                charge.amount_ars_paid if charge.amount_ars_paid is not None else charge.amount_ars_due
            ),
            pto_vta=settings.billing_afip_pto_vta,
            cbte_tipo=settings.billing_afip_cbte_tipo,
            paid_at=charge.paid_at,
        )
        try:
            result = (issuer or get_fiscal_issuer()).issue(request)
        except FiscalIssuerError as exc:
            document.status = FiscalDocumentStatus.error
            document.retry_count = (document.retry_count or 0) + 1
            document.error_message = str(exc)
            db.flush()
            log_billing_event(
                db,
                BillingEventType.fiscal_document_failed,
                {
                    "fiscal_document_id": document.id,
                    "document_type": doc_type,
                    "retry_count": document.retry_count,
                    "error": str(exc),
                },
                agency_id=charge.agency_id,
                subscription_id=charge.subscription_id,
                charge_id=charge.id,
                actor=actor,
            )
            logger.warning(
                f"Fiscal issuance failed for charge {charge.id} "
                f"(retry {document.retry_count}): {exc}"
            )
            return {
                "ok": False,
                "reason": "issuer_failed",
                "document_id": str(document.id),
                "status": document.status.value,
                "retry_count": document.retry_count,
                "message": str(exc),
            }

        document.status = FiscalDocumentStatus.issued
        document.external_reference = result.external_reference
        document.afip_pto_vta = result.afip_pto_vta
        document.afip_cbte_tipo = result.afip_cbte_tipo
        document.afip_number = result.afip_number
        document.afip_cae = result.afip_cae
        document.afip_cae_due = result.afip_cae_due
        document.payload = result.payload
        document.error_message = None
        document.issued_at = utcnow()
        db.flush()
        log_billing_event(
            db,
            BillingEventType.fiscal_document_issued,
            {
                "fiscal_document_id": document.id,
                "document_type": doc_type,
                "external_reference": result.external_reference,
            },
            agency_id=charge.agency_id,
            subscription_id=charge.subscription_id,
            charge_id=charge.id,
            actor=actor,
        )
        logger.info(f"Fiscal document {result.external_reference} issued for charge {charge.id}")
        return {
            "ok": True,
            "document_id": str(document.id),
            "status": document.status.value,
            "external_reference": result.external_reference,
        }

    @staticmethod
    def retry_failed(
        db: Session, *, limit: int = 100, issuer: FiscalIssuer | None = None
    ) -> dict:
        """Re-issue every PENDING/ERROR document of a paid charge."""
        documents = (
            db.query(FiscalDocument)
            .filter(
                FiscalDocument.status.in_(
                    [FiscalDocumentStatus.pending, FiscalDocumentStatus.error]
                )
            )
            .order_by(FiscalDocument.created_at.asc())
            .limit(limit)
            .all()
        )
        issued = 0
        failed = 0
        for document in documents:
            document_id = document.id
            nested = db.begin_nested()
            try:
                result = FiscalIssuanceBridge.issue_for_charge(
                    db, document.charge_id, document_type=document.document_type, issuer=issuer
                )
                nested.commit()
            except Exception:
                nested.rollback()
                logger.exception(f"Fiscal retry failed for document {document_id}")
                failed += 1
                continue
            if result["ok"]:
                issued += 1
            else:
                failed += 1
        return {"scanned": len(documents), "issued": issued, "failed": failed}


fiscal_bridge = FiscalIssuanceBridge()
