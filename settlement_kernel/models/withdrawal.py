"""
Module: settlement_kernel.models.withdrawal
Responsibility: ORM persistence for withdrawal requests.

Lifecycle: requested -> reserved -> completed | rejected.  The reserve
transaction is the withdrawal debit that moved funds into pending; the
release transaction is the reversal credit written on rejection.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import TimestampedBase, UTCDateTime, UUIDString


class WithdrawalRequest(TimestampedBase):
    __tablename__ = "withdrawal_requests"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_withdrawal_amount_positive"),
        Index("idx_withdrawal_contractor_status", "contractor_id", "status"),
    )

    contractor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    wallet_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("contractor_wallets.id"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="requested")
    payment_method: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    reserve_transaction_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("wallet_transactions.id"),
        nullable=True,
    )
    release_transaction_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("wallet_transactions.id"),
        nullable=True,
    )

    admin_notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    finalized_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<WithdrawalRequest {self.contractor_id} {self.amount} {self.status}>"
