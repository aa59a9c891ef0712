"""One-time code challenges for delivery and pickup handoffs."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from handoff.db.models.base import (
    Base,
    OptionalTimestampTZ,
    OTPPurpose,
    UUIDPrimaryKey,
    enum_column,
)

if TYPE_CHECKING:
    from handoff.db.models.orders import Order


class OTPChallenge(Base):
    """A single-use numeric code bound to an order and a purpose.

    Only a salted SHA-256 digest of the code is stored. A challenge is
    active while both ``consumed_at`` and ``superseded_at`` are null; the
    partial unique index keeps at most one active challenge per
    (order, purpose).
    """

    __tablename__ = "otp_challenges"

    challenge_id: Mapped[UUIDPrimaryKey]

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.order_id", ondelete="CASCADE"),
        nullable=False,
    )
    purpose: Mapped[OTPPurpose] = mapped_column(
        enum_column(OTPPurpose, "otp_purpose"),
        nullable=False,
    )

    code_digest: Mapped[str] = mapped_column(String(64), nullable=False)

    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    issued_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    consumed_at: Mapped[OptionalTimestampTZ]
    superseded_at: Mapped[OptionalTimestampTZ]
    failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    order: Mapped[Order] = relationship("Order", back_populates="otp_challenges")

    __table_args__ = (
        Index(
            "uq_otp_challenges_active",
            "order_id",
            "purpose",
            unique=True,
            postgresql_where=text("consumed_at IS NULL AND superseded_at IS NULL"),
        ),
        Index("ix_otp_challenges_order_id", "order_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.consumed_at is None and self.superseded_at is None
