import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_collections.db import Base


class BatchDirection(enum.Enum):
    outbound = "outbound"
    inbound = "inbound"


class BatchStatus(enum.Enum):
    created = "created"
    ready = "ready"
    sent = "sent"
    processed = "processed"
    error = "error"


class BatchItemStatus(enum.Enum):
    presented = "presented"
    paid = "paid"
    rejected = "rejected"
    error = "error"


class FileBatch(Base):
    __tablename__ = "billing_file_batches"
    __table_args__ = (
        UniqueConstraint(
            "direction", "parent_batch_id", "sha256", name="uq_billing_file_batches_hash"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    parent_batch_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_file_batches.id")
    )
    direction: Mapped[BatchDirection] = mapped_column(Enum(BatchDirection), nullable=False)
    adapter: Mapped[str] = mapped_column(String(40), nullable=False)
    sequence: Mapped[int | None] = mapped_column(Integer)
    business_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    original_file_name: Mapped[str | None] = mapped_column(String(200))
    storage_key: Mapped[str | None] = mapped_column(String(400))
    sha256: Mapped[str | None] = mapped_column(String(64))
    status: Mapped[BatchStatus] = mapped_column(
        Enum(BatchStatus), default=BatchStatus.created, index=True
    )
    total_rows: Mapped[int] = mapped_column(Integer, default=0)
    total_amount_ars: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    total_paid_rows: Mapped[int] = mapped_column(Integer, default=0)
    total_rejected_rows: Mapped[int] = mapped_column(Integer, default=0)
    total_error_rows: Mapped[int] = mapped_column(Integer, default=0)
    meta: Mapped[dict | None] = mapped_column(JSONB)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(120))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    items = relationship(
        "FileBatchItem", back_populates="batch", order_by="FileBatchItem.line_no"
    )
    parent = relationship("FileBatch", remote_side=[id])


class FileBatchItem(Base):
    __tablename__ = "billing_file_batch_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_file_batches.id"), nullable=False
    )
    attempt_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_attempts.id")
    )
    charge_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_charges.id")
    )
    line_no: Mapped[int | None] = mapped_column(Integer)
    external_reference: Mapped[str | None] = mapped_column(String(120), index=True)
    raw_hash: Mapped[str | None] = mapped_column(String(64))
    amount_ars: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    status: Mapped[BatchItemStatus] = mapped_column(
        Enum(BatchItemStatus), default=BatchItemStatus.presented
    )
    response_code: Mapped[str | None] = mapped_column(String(20))
    response_message: Mapped[str | None] = mapped_column(String(200))
    detailed_reason: Mapped[str | None] = mapped_column(String(60))
    paid_reference: Mapped[str | None] = mapped_column(String(160))
    row_payload: Mapped[dict | None] = mapped_column(JSONB)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    batch = relationship("FileBatch", back_populates="items")
