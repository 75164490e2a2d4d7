"""Attempt lifecycle."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from billing_collections.models.collections import (
    AttemptStatus,
    BillingAttempt,
)
from billing_collections.services.common import utcnow

logger = logging.getLogger(__name__)


class InvalidAttemptTransition(ValueError):
    def __init__(self, attempt: BillingAttempt, target: AttemptStatus):
        super().__init__(
            f"Attempt {attempt.id} cannot move from {attempt.status.value} to {target.value}"
        )
        self.attempt = attempt
        self.target = target


ALLOWED_TRANSITIONS: dict[AttemptStatus, frozenset[AttemptStatus]] = {
    AttemptStatus.pending: frozenset({AttemptStatus.sent, AttemptStatus.canceled}),
    AttemptStatus.sent: frozenset(
        {
            AttemptStatus.paid,
            AttemptStatus.rejected,
            AttemptStatus.canceled,
            AttemptStatus.pending,
        }
    ),
    AttemptStatus.paid: frozenset(),
    AttemptStatus.rejected: frozenset(),
    AttemptStatus.canceled: frozenset(),
}

OPEN_ATTEMPT_STATUSES = (AttemptStatus.pending, AttemptStatus.sent)


def is_terminal(status: AttemptStatus) -> bool:
    return not ALLOWED_TRANSITIONS[status]


def can_transition(current: AttemptStatus, target: AttemptStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class AttemptStateMachine:
    @staticmethod
    def transition(
        attempt: BillingAttempt,
        target: AttemptStatus,
        *,
        processed_at: datetime | None = None,
        paid_reference: str | None = None,
        rejection_code: str | None = None,
        rejection_reason: str | None = None,
        notes: str | None = None,
    ) -> BillingAttempt:
        if not can_transition(attempt.status, target):
            raise InvalidAttemptTransition(attempt, target)
        attempt.status = target
        if target in (AttemptStatus.paid, AttemptStatus.rejected):
            attempt.processed_at = processed_at or utcnow()
        if target == AttemptStatus.paid and paid_reference:
            attempt.paid_reference = paid_reference
        if target == AttemptStatus.rejected:
            attempt.rejection_code = rejection_code
            attempt.rejection_reason = rejection_reason
        if notes:
            attempt.notes = notes
        return attempt

    @staticmethod
    def cancel_open_attempts(
        db: Session,
        charge_id,
        *,
        except_attempt_id=None,
        notes: str | None = None,
    ) -> int:
        """Cancel every PENDING/SENT attempt of a charge but the settling one."""
        query = (
            db.query(BillingAttempt)
            .filter(BillingAttempt.charge_id == charge_id)
            .filter(BillingAttempt.status.in_(OPEN_ATTEMPT_STATUSES))
        )
        if except_attempt_id is not None:
            query = query.filter(BillingAttempt.id != except_attempt_id)
        canceled = 0
        for attempt in query.all():
            AttemptStateMachine.transition(attempt, AttemptStatus.canceled, notes=notes)
            canceled += 1
        if canceled:
            db.flush()
            logger.info(f"Canceled {canceled} open attempts for charge {charge_id}")
        return canceled


attempt_state_machine = AttemptStateMachine()
