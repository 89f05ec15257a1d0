"""
Module: settlement_kernel.models.penalty
Responsibility: ORM persistence for penalty rules and the penalty instances
    applied against contractors.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - A rule is soft-disabled through is_active; rows are never deleted.
    - At most one instance per (contractor_id, quote_id, penalty_rule_id).
    - status = applied implies debit_transaction_id is set (CHECK).
    - amount / debit link frozen once debited (db/immutability.py).
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement_kernel.db.base import TimestampedBase, UTCDateTime, UUIDString


class PenaltyRule(TimestampedBase):
    __tablename__ = "penalty_rules"

    __table_args__ = (
        CheckConstraint("amount_value >= 0", name="ck_penalty_rule_value_nonneg"),
        CheckConstraint(
            "maximum_amount IS NULL OR maximum_amount >= 0",
            name="ck_penalty_rule_max_nonneg",
        ),
        CheckConstraint("grace_period_hours >= 0", name="ck_penalty_rule_grace_nonneg"),
        Index("idx_penalty_rule_type_active", "penalty_type", "is_active"),
    )

    penalty_type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    amount_calculation: Mapped[str] = mapped_column(String(16), nullable=False)
    amount_value: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    maximum_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    severity_level: Mapped[str] = mapped_column(String(16), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    grace_period_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<PenaltyRule {self.penalty_type}/{self.severity_level} "
            f"{self.amount_calculation}={self.amount_value}>"
        )


class PenaltyInstance(TimestampedBase):
    __tablename__ = "penalty_instances"

    __table_args__ = (
        UniqueConstraint(
            "contractor_id",
            "quote_id",
            "penalty_rule_id",
            name="uq_penalty_instance_once",
        ),
        CheckConstraint("amount >= 0", name="ck_penalty_amount_nonneg"),
        CheckConstraint(
            "status <> 'applied' OR debit_transaction_id IS NOT NULL",
            name="ck_penalty_applied_has_debit",
        ),
        Index("idx_penalty_contractor_status", "contractor_id", "status"),
    )

    contractor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    quote_id: Mapped[str] = mapped_column(String(64), nullable=False)
    penalty_rule_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("penalty_rules.id"),
        nullable=False,
    )
    penalty_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    evidence: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    debit_transaction_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("wallet_transactions.id"),
        nullable=True,
    )
    reversal_transaction_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("wallet_transactions.id"),
        nullable=True,
    )

    dispute_reason: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    applied_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    applied_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    disputed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    rule: Mapped[PenaltyRule] = relationship()

    def __repr__(self) -> str:
        return f"<PenaltyInstance {self.contractor_id} {self.quote_id} {self.amount} {self.status}>"
