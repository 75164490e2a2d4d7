"""Fallback payment providers.

Each provider is a small standalone implementation of
``FallbackProviderAdapter``; ``get_fallback_provider`` picks one by its
configuration key.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol
from urllib.parse import quote

from billing_collections.config import settings
from billing_collections.services.common import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class FallbackProviderError(Exception):
    """Raised when a provider cannot be resolved or refuses a request."""


@dataclass
class CreatePaymentIntentInput:
    charge_id: str
    agency_id: str
    external_reference: str
    amount: Decimal
    currency: str
    expires_at: datetime | None
    description: str | None = None


@dataclass
class IntentSnapshot:
    """Provider-facing view of a stored fallback intent."""

    external_reference: str
    status: str | None
    provider_status: str | None
    provider_payment_id: str | None
    expires_at: datetime | None
    paid_at: datetime | None = None


class FallbackProviderAdapter(Protocol):
    key: str
    version: str

    def create_payment_intent_for_charge(
        self, data: CreatePaymentIntentInput
    ) -> dict[str, Any]: ...

    def get_payment_status(self, snapshot: IntentSnapshot) -> dict[str, Any]: ...

    def cancel_payment_intent(self, snapshot: IntentSnapshot) -> dict[str, Any]: ...


def _resolve_mapped_status(snapshot: IntentSnapshot, now: datetime) -> str:
    status = str(snapshot.provider_status or snapshot.status or "").strip().upper()
    if status in ("PAID", "FAILED", "EXPIRED"):
        return status
    expires_at = ensure_utc(snapshot.expires_at)
    if expires_at and expires_at <= now:
        return "EXPIRED"
    return "PENDING"


def _is_paid(snapshot: IntentSnapshot) -> bool:
    return (
        str(snapshot.status or "").upper() == "PAID"
        or str(snapshot.provider_status or "").upper() == "PAID"
    )


class CigQrProvider:
    """Stub for the bank's QR collection channel."""

    key = "cig_qr"
    version = "cig_qr_v1_stub"

    def create_payment_intent_for_charge(self, data: CreatePaymentIntentInput) -> dict[str, Any]:
        payment_url = f"https://stub.cig.local/pay/{quote(data.external_reference, safe='')}"
        qr_payload = json.dumps(
            {
                "provider": self.key,
                "external_reference": data.external_reference,
                "amount": f"{data.amount:.2f}",
                "currency": data.currency,
                "expires_at": data.expires_at.isoformat() if data.expires_at else None,
            }
        )
        return {
            "provider_payment_id": f"cig_{data.external_reference}",
            "status": "PENDING",
            "payment_url": payment_url,
            "qr_payload": qr_payload,
            "qr_image_url": None,
            "provider_status": "PENDING",
            "provider_status_detail": "CREATED_STUB",
            "provider_raw_payload": {
                "created_at": utcnow().isoformat(),
                "payment_url": payment_url,
            },
        }

    def get_payment_status(self, snapshot: IntentSnapshot) -> dict[str, Any]:
        now = utcnow()
        mapped = _resolve_mapped_status(snapshot, now)
        return {
            "provider_status": mapped,
            "mapped_status": mapped,
            "paid_at": (snapshot.paid_at or now) if mapped == "PAID" else None,
            "raw_payload": {
                "provider": self.key,
                "observed_at": now.isoformat(),
                "source_status": snapshot.provider_status or snapshot.status,
            },
        }

    def cancel_payment_intent(self, snapshot: IntentSnapshot) -> dict[str, Any]:
        return {
            "success": True,
            "final_status": "PAID" if _is_paid(snapshot) else "CANCELED",
            "raw_payload": {"provider": self.key, "canceled_at": utcnow().isoformat()},
        }


class MercadoPagoStubProvider:
    """Checkout-link stub; no QR payload."""

    key = "mp"
    version = "mp_checkout_v1_stub"

    def create_payment_intent_for_charge(self, data: CreatePaymentIntentInput) -> dict[str, Any]:
        payment_url = (
            f"https://stub.mp.local/checkout/{quote(data.external_reference, safe='')}"
        )
        return {
            "provider_payment_id": f"mp_{data.external_reference}",
            "status": "PENDING",
            "payment_url": payment_url,
            "qr_payload": None,
            "qr_image_url": None,
            "provider_status": "PENDING",
            "provider_status_detail": "CREATED_STUB",
            "provider_raw_payload": {
                "created_at": utcnow().isoformat(),
                "init_point": payment_url,
            },
        }

    def get_payment_status(self, snapshot: IntentSnapshot) -> dict[str, Any]:
        now = utcnow()
        mapped = _resolve_mapped_status(snapshot, now)
        provider_status = {
            "PAID": "approved",
            "FAILED": "rejected",
            "EXPIRED": "expired",
        }.get(mapped, "pending")
        return {
            "provider_status": provider_status,
            "mapped_status": mapped,
            "paid_at": (snapshot.paid_at or now) if mapped == "PAID" else None,
            "raw_payload": {
                "provider": self.key,
                "observed_at": now.isoformat(),
                "source_status": snapshot.provider_status or snapshot.status,
            },
        }

    def cancel_payment_intent(self, snapshot: IntentSnapshot) -> dict[str, Any]:
        return {
            "success": True,
            "final_status": "PAID" if _is_paid(snapshot) else "CANCELED",
            "raw_payload": {"provider": self.key, "canceled_at": utcnow().isoformat()},
        }


_PROVIDERS: dict[str, FallbackProviderAdapter] = {
    CigQrProvider.key: CigQrProvider(),
    MercadoPagoStubProvider.key: MercadoPagoStubProvider(),
}


def is_provider_enabled(key: str) -> bool:
    normalized = key.strip().lower()
    if normalized == CigQrProvider.key:
        return settings.billing_fallback_cig_qr_enabled
    if normalized == MercadoPagoStubProvider.key:
        return settings.billing_fallback_mp_enabled
    return False


def get_fallback_provider(key: str | None = None) -> FallbackProviderAdapter:
    normalized = (key or settings.billing_fallback_default_provider).strip().lower()
    provider = _PROVIDERS.get(normalized)
    if provider is None:
        raise FallbackProviderError(f"Unknown fallback provider: {normalized}")
    return provider
