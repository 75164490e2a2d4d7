"""Deterministic identifiers used for idempotency and bank/provider matching."""

from __future__ import annotations

import hashlib
from datetime import date


def charge_idempotency_key(subscription_id, anchor: date) -> str:
    return f"anchor:{subscription_id}:{anchor.isoformat()}"


def attempt_external_reference(attempt_id) -> str:
    return f"AT-{attempt_id}"


def fallback_external_reference(charge_id, provider: str, sequence: int) -> str:
    return f"FBK-{charge_id}-{provider.upper()}-{int(sequence):03d}"


def fallback_sequence_key(charge_id, provider: str) -> str:
    return f"fallback:{charge_id}:{provider.lower()}"


def reference_raw_hash(external_reference: str) -> str:
    """Row hash used when a parsed row carries no raw line of its own."""
    return hashlib.sha256(f"external_reference={external_reference}".encode()).hexdigest()


def normalize_reference(raw: str | None, fallback: str | None = None) -> str | None:
    value = str(raw or "").strip()
    return value or fallback
