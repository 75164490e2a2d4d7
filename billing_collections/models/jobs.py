import enum
import uuid
from datetime import date, datetime, timezone

from sqlalchemy import Date, DateTime, Enum, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from billing_collections.db import Base


class BillingJobSource(enum.Enum):
    cron = "cron"
    manual = "manual"


class BillingJobRunStatus(enum.Enum):
    running = "running"
    success = "success"
    partial = "partial"
    failed = "failed"
    skipped_locked = "skipped_locked"
    no_op = "no_op"


class BillingJobRun(Base):
    __tablename__ = "billing_job_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    job_name: Mapped[str] = mapped_column(String(60), nullable=False, index=True)
    run_id: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    source: Mapped[BillingJobSource] = mapped_column(
        Enum(BillingJobSource), default=BillingJobSource.cron
    )
    status: Mapped[BillingJobRunStatus] = mapped_column(
        Enum(BillingJobRunStatus), default=BillingJobRunStatus.running, index=True
    )
    target_date: Mapped[date | None] = mapped_column(Date)
    adapter: Mapped[str | None] = mapped_column(String(40))
    counters: Mapped[dict | None] = mapped_column(JSONB)
    meta: Mapped[dict | None] = mapped_column(JSONB)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    error_message: Mapped[str | None] = mapped_column(Text)
    actor: Mapped[str | None] = mapped_column(String(120))


class BillingJobLock(Base):
    __tablename__ = "billing_job_locks"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lock_key: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    owner_run_id: Mapped[str] = mapped_column(String(80), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    meta: Mapped[dict | None] = mapped_column(JSONB)
