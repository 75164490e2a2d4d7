import uuid

from sqlalchemy.orm import Session

from billing_collections.models.sequence import BillingSequence

CHARGE_SEQUENCE = "billing_charge"
PD_BATCH_SEQUENCE = "pd_batch"


def _agency_key(agency_id: uuid.UUID | str, name: str) -> str:
    return f"agency:{agency_id}:{name}"


def next_sequence_value(db: Session, key: str, start_value: int = 1) -> int:
    """Atomically take the next value of a named counter.

    The counter row is locked for the rest of the transaction, so concurrent
    callers on the same key serialize instead of reading the same value.
    """
    sequence = (
        db.query(BillingSequence)
        .filter(BillingSequence.key == key)
        .with_for_update()
        .first()
    )
    if not sequence:
        sequence = BillingSequence(key=key, next_value=start_value)
        db.add(sequence)
        db.flush()
    value = sequence.next_value
    sequence.next_value = value + 1
    db.flush()
    return value


def next_agency_charge_number(db: Session, agency_id: uuid.UUID | str) -> int:
    return next_sequence_value(db, _agency_key(agency_id, CHARGE_SEQUENCE))


def next_pd_batch_sequence(db: Session) -> int:
    return next_sequence_value(db, PD_BATCH_SEQUENCE)


def format_sequence(value: int, padding: int = 4) -> str:
    pad = max(int(padding or 0), 0)
    if pad > 0:
        return f"{value:0{pad}d}"
    return str(value)
