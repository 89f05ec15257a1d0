"""
Module: settlement_kernel.models.sla_violation
Responsibility: ORM persistence for detected SLA breaches.

Invariants enforced:
    - At most one unresolved violation per (quote_id, violation_type): a
      partial UNIQUE index over rows with resolved_at IS NULL, which keeps
      repeated scans idempotent even when two scanners race.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import TimestampedBase, UTCDateTime, UUIDString


class SLAViolation(TimestampedBase):
    __tablename__ = "sla_violations"

    __table_args__ = (
        Index(
            "uq_sla_violation_open",
            "quote_id",
            "violation_type",
            unique=True,
            postgresql_where=text("resolved_at IS NULL"),
            sqlite_where=text("resolved_at IS NULL"),
        ),
        Index("idx_sla_violation_contractor", "contractor_id"),
    )

    quote_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contractor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    violation_type: Mapped[str] = mapped_column(String(32), nullable=False)
    days_overdue: Mapped[int] = mapped_column(Integer, nullable=False)
    severity_level: Mapped[str] = mapped_column(String(16), nullable=False)
    auto_detected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    penalty_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    penalty_instance_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("penalty_instances.id"),
        nullable=True,
    )
    detected_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<SLAViolation {self.quote_id} {self.violation_type} +{self.days_overdue}d>"
