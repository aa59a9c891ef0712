"""Background job rows.

Refund transfers are submitted and polled outside the request that approved
them. Each submission is one row here; workers claim rows with
``SELECT ... FOR UPDATE SKIP LOCKED`` and reschedule them with exponential
backoff until ``max_attempts`` is spent.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from handoff.db.models.base import (
    Base,
    JobStatus,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_column,
)


class Job(Base):
    """One unit of background work and its retry bookkeeping."""

    __tablename__ = "jobs"

    job_id: Mapped[UUIDPrimaryKey]
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)
    queue: Mapped[str] = mapped_column(String(100), nullable=False, default="default")
    priority: Mapped[int] = mapped_column(nullable=False, default=100)
    status: Mapped[JobStatus] = mapped_column(
        enum_column(JobStatus, "job_status"),
        nullable=False,
        default=JobStatus.PENDING,
    )

    payload_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    result_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    # Refund id for refund_payment jobs
    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Scheduling
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    attempts: Mapped[int] = mapped_column(nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(nullable=False, default=3)
    base_backoff_seconds: Mapped[int] = mapped_column(nullable=False, default=60)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Claim
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    locked_at: Mapped[OptionalTimestampTZ]
    lock_timeout_seconds: Mapped[int] = mapped_column(nullable=False, default=300)

    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]
    started_at: Mapped[OptionalTimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        Index("ix_jobs_claim", "queue", "status", "run_at", "priority"),
        Index("ix_jobs_job_type", "job_type"),
        Index("ix_jobs_correlation", "job_type", "correlation_id"),
    )
