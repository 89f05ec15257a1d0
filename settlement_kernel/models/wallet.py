"""
Module: settlement_kernel.models.wallet
Responsibility: ORM persistence for contractor wallets and their append-only
    ledger of wallet transactions.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One wallet per contractor (UNIQUE contractor_id).
    - Balances and running totals are never negative (CHECK constraints).
    - Optimistic locking: ``version`` is the mapper's version_id_col, so a
      concurrent writer that flushed first makes our UPDATE raise
      StaleDataError.
    - Idempotency: UNIQUE (wallet_id, subtype, reference_type, reference_id)
      on wallet_transactions.
    - Ordering: ``sequence`` is a per-wallet monotonic counter
      (UNIQUE (wallet_id, sequence)), drawn from Wallet.last_sequence.
    - Transactions are immutable once written (db/immutability.py).

Failure modes:
    - IntegrityError on a duplicate idempotency key or a concurrent first
      wallet insert for the same contractor.
    - StaleDataError on a version mismatch at flush.
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
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement_kernel.db.base import Base, TimestampedBase, UTCDateTime, UUIDString

_ZERO = Decimal("0.00")


class Wallet(TimestampedBase):
    """Balances and running totals for one contractor."""

    __tablename__ = "contractor_wallets"

    __table_args__ = (
        UniqueConstraint("contractor_id", name="uq_wallet_contractor"),
        CheckConstraint("available_balance >= 0", name="ck_wallet_available_nonneg"),
        CheckConstraint("pending_balance >= 0", name="ck_wallet_pending_nonneg"),
        CheckConstraint("total_earned >= 0", name="ck_wallet_earned_nonneg"),
        CheckConstraint("total_commission_paid >= 0", name="ck_wallet_commission_nonneg"),
        CheckConstraint("total_penalties >= 0", name="ck_wallet_penalties_nonneg"),
        CheckConstraint("total_withdrawn >= 0", name="ck_wallet_withdrawn_nonneg"),
    )

    contractor_id: Mapped[str] = mapped_column(String(64), nullable=False)

    available_balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=_ZERO
    )
    pending_balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=_ZERO
    )
    total_earned: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=_ZERO)
    total_commission_paid: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=_ZERO
    )
    total_penalties: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=_ZERO
    )
    total_withdrawn: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=_ZERO
    )

    is_suspended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    suspension_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="SAR")

    # Validated payout methods (domain/evidence.py PaymentMethod.to_dict())
    payment_methods: Mapped[list | None] = mapped_column(JSON, nullable=True)

    # Last ledger sequence number handed out for this wallet
    last_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    transactions: Mapped[list["WalletTransaction"]] = relationship(
        back_populates="wallet",
        order_by="WalletTransaction.sequence",
    )

    def __repr__(self) -> str:
        return (
            f"<Wallet {self.contractor_id} available={self.available_balance} "
            f"pending={self.pending_balance} v{self.version}>"
        )


class WalletTransaction(Base):
    """
    One immutable ledger row.

    ``balance_before`` / ``balance_after`` are the wallet's available balance
    around this row: after = before + amount for credits, before - amount
    for debits.
    """

    __tablename__ = "wallet_transactions"

    __table_args__ = (
        UniqueConstraint(
            "wallet_id",
            "subtype",
            "reference_type",
            "reference_id",
            name="uq_wallet_txn_idempotency",
        ),
        UniqueConstraint("wallet_id", "sequence", name="uq_wallet_txn_sequence"),
        CheckConstraint("amount > 0", name="ck_wallet_txn_amount_positive"),
        CheckConstraint("balance_before >= 0", name="ck_wallet_txn_before_nonneg"),
        CheckConstraint("balance_after >= 0", name="ck_wallet_txn_after_nonneg"),
        Index("idx_wallet_txn_wallet_created", "wallet_id", "created_at"),
        Index("idx_wallet_txn_reference", "reference_type", "reference_id"),
    )

    wallet_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("contractor_wallets.id"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    type: Mapped[str] = mapped_column(String(16), nullable=False)
    subtype: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    reference_type: Mapped[str] = mapped_column(String(32), nullable=False)
    reference_id: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="completed")
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )

    wallet: Mapped[Wallet] = relationship(back_populates="transactions")

    def __repr__(self) -> str:
        return (
            f"<WalletTransaction #{self.sequence} {self.type}/{self.subtype} "
            f"{self.amount} {self.reference_type}:{self.reference_id}>"
        )
