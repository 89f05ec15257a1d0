"""
Module: settlement_kernel.selectors.wallet_selector
Responsibility: Read side of the wallet ledger: balances, paginated history
    and penalty listings, stored payment methods, outstanding penalties,
    withdrawal status, penalty statistics and the verify_wallet() invariant
    audit.
Architecture position: Kernel > Selectors.  Read-only.

verify_wallet() recomputes from stored rows:
    LEDGER_PAIRING         every row's before/after arithmetic, the chain of
                           rows in sequence order, and available_balance
                           against the last row's balance_after.
    BALANCE_CONSERVATION   available + pending + total_withdrawn equals
                           quote credits + penalty reversals - penalty debits;
                           running totals agree with the rows.
    NON_NEGATIVE_BALANCES  no balance or running total below zero.
    PENALTY_DEBT_TRACKING  every debited penalty points at a penalty debit of
                           the same amount.
"""

from __future__ import annotations

from collections import Counter
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from settlement_kernel.db.types import ZERO
from settlement_kernel.domain.dtos import (
    HistoryFilters,
    HistoryPage,
    InvariantViolation,
    PenaltyFilters,
    PenaltyPage,
    PenaltyRecord,
    PenaltyStatistics,
    PenaltyStatus,
    PenaltyType,
    ReferenceType,
    TransactionRecord,
    TransactionStatus,
    TransactionSubtype,
    TransactionType,
    ViolationRecord,
    WalletBalance,
    WalletVerification,
    WithdrawalRecord,
)
from settlement_kernel.domain.evidence import PaymentMethod
from settlement_kernel.exceptions import WalletNotFoundError, WithdrawalNotFoundError
from settlement_kernel.invariants import SettlementInvariant
from settlement_kernel.models.penalty import PenaltyInstance
from settlement_kernel.models.sla_violation import SLAViolation
from settlement_kernel.models.wallet import Wallet, WalletTransaction
from settlement_kernel.models.withdrawal import WithdrawalRequest
from settlement_kernel.selectors.base import BaseSelector

MAX_PAGE_SIZE = 100


def _clamp_page(page: int, page_size: int) -> tuple[int, int]:
    """1-based page; page_size within [1, MAX_PAGE_SIZE]."""
    return max(page, 1), min(max(page_size, 1), MAX_PAGE_SIZE)


class WalletSelector(BaseSelector):
    def _wallet(self, contractor_id: str) -> Wallet:
        wallet = self.session.execute(
            select(Wallet).where(Wallet.contractor_id == contractor_id)
        ).scalar_one_or_none()
        if wallet is None:
            raise WalletNotFoundError(contractor_id)
        return wallet

    def get_balance(self, contractor_id: str) -> WalletBalance:
        return WalletBalance.from_model(self._wallet(contractor_id))

    def get_history(
        self,
        contractor_id: str,
        page: int = 1,
        page_size: int = 20,
        filters: HistoryFilters | None = None,
    ) -> HistoryPage:
        """
        Newest-first page of a wallet's transactions.

        ``page`` is 1-based; page_size is clamped to [1, 100].
        """
        page, page_size = _clamp_page(page, page_size)
        wallet = self._wallet(contractor_id)

        conditions = [WalletTransaction.wallet_id == wallet.id]
        if filters is not None:
            if filters.type is not None:
                conditions.append(WalletTransaction.type == TransactionType(filters.type).value)
            if filters.subtype is not None:
                conditions.append(
                    WalletTransaction.subtype == TransactionSubtype(filters.subtype).value
                )
            if filters.reference_type is not None:
                conditions.append(
                    WalletTransaction.reference_type
                    == ReferenceType(filters.reference_type).value
                )
            if filters.status is not None:
                conditions.append(
                    WalletTransaction.status == TransactionStatus(filters.status).value
                )
            if filters.created_from is not None:
                conditions.append(WalletTransaction.created_at >= filters.created_from)
            if filters.created_to is not None:
                conditions.append(WalletTransaction.created_at <= filters.created_to)

        total = self.session.execute(
            select(func.count()).select_from(WalletTransaction).where(*conditions)
        ).scalar_one()
        rows = self.session.execute(
            select(WalletTransaction)
            .where(*conditions)
            .order_by(WalletTransaction.sequence.desc())
            .limit(page_size)
            .offset((page - 1) * page_size)
        ).scalars()

        return HistoryPage(
            items=tuple(TransactionRecord.from_model(r) for r in rows),
            page=page,
            page_size=page_size,
            total=total,
        )

    def get_pending_penalties(self, contractor_id: str) -> list[PenaltyRecord]:
        """Penalties recorded but not yet debited, oldest first."""
        rows = self.session.execute(
            select(PenaltyInstance)
            .where(
                PenaltyInstance.contractor_id == contractor_id,
                PenaltyInstance.status == PenaltyStatus.PENDING.value,
            )
            .order_by(PenaltyInstance.created_at, PenaltyInstance.id)
        ).scalars()
        return [PenaltyRecord.from_model(r) for r in rows]

    def list_penalties(
        self,
        contractor_id: str,
        page: int = 1,
        page_size: int = 20,
        filters: PenaltyFilters | None = None,
    ) -> PenaltyPage:
        """Newest-first page of a contractor's penalties, any status."""
        page, page_size = _clamp_page(page, page_size)

        conditions = [PenaltyInstance.contractor_id == contractor_id]
        if filters is not None:
            if filters.status is not None:
                conditions.append(PenaltyInstance.status == PenaltyStatus(filters.status).value)
            if filters.penalty_type is not None:
                conditions.append(
                    PenaltyInstance.penalty_type == PenaltyType(filters.penalty_type).value
                )
            if filters.created_from is not None:
                conditions.append(PenaltyInstance.created_at >= filters.created_from)
            if filters.created_to is not None:
                conditions.append(PenaltyInstance.created_at <= filters.created_to)

        total = self.session.execute(
            select(func.count()).select_from(PenaltyInstance).where(*conditions)
        ).scalar_one()
        rows = self.session.execute(
            select(PenaltyInstance)
            .where(*conditions)
            .order_by(PenaltyInstance.created_at.desc(), PenaltyInstance.id)
            .limit(page_size)
            .offset((page - 1) * page_size)
        ).scalars()

        return PenaltyPage(
            items=tuple(PenaltyRecord.from_model(r) for r in rows),
            page=page,
            page_size=page_size,
            total=total,
        )

    def get_payment_methods(self, contractor_id: str) -> list[PaymentMethod]:
        """Stored payout methods, primary first."""
        wallet = self._wallet(contractor_id)
        methods = [PaymentMethod.from_dict(m) for m in wallet.payment_methods or []]
        return sorted(methods, key=lambda m: not m.is_primary)

    def get_withdrawal_status(self, request_id: UUID) -> WithdrawalRecord:
        request = self.session.get(WithdrawalRequest, request_id)
        if request is None:
            raise WithdrawalNotFoundError(str(request_id))
        return WithdrawalRecord.from_model(request)

    def list_withdrawals(self, contractor_id: str) -> list[WithdrawalRecord]:
        rows = self.session.execute(
            select(WithdrawalRequest)
            .where(WithdrawalRequest.contractor_id == contractor_id)
            .order_by(WithdrawalRequest.requested_at.desc())
        ).scalars()
        return [WithdrawalRecord.from_model(r) for r in rows]

    def get_violations(
        self, contractor_id: str | None = None, unresolved_only: bool = True
    ) -> list[ViolationRecord]:
        stmt = select(SLAViolation)
        if contractor_id is not None:
            stmt = stmt.where(SLAViolation.contractor_id == contractor_id)
        if unresolved_only:
            stmt = stmt.where(SLAViolation.resolved_at.is_(None))
        rows = self.session.execute(stmt.order_by(SLAViolation.detected_at)).scalars()
        return [ViolationRecord.from_model(r) for r in rows]

    def penalty_statistics(self, contractor_id: str | None = None) -> PenaltyStatistics:
        stmt = select(PenaltyInstance)
        if contractor_id is not None:
            stmt = stmt.where(PenaltyInstance.contractor_id == contractor_id)
        instances = list(self.session.execute(stmt).scalars())

        by_status = Counter(p.status for p in instances)
        by_type = Counter(p.penalty_type for p in instances)
        collected = {PenaltyStatus.APPLIED.value, PenaltyStatus.REVERSED.value}
        return PenaltyStatistics(
            total_count=len(instances),
            total_amount=sum((p.amount for p in instances), ZERO),
            by_status=dict(by_status),
            by_type=dict(by_type),
            applied_amount=sum(
                (p.amount for p in instances if p.status in collected), ZERO
            ),
            pending_amount=sum(
                (p.amount for p in instances if p.status == PenaltyStatus.PENDING.value),
                ZERO,
            ),
        )

    # ------------------------------------------------------------------
    # Invariant audit
    # ------------------------------------------------------------------

    def verify_wallet(self, contractor_id: str) -> WalletVerification:
        wallet = self._wallet(contractor_id)
        rows = list(
            self.session.execute(
                select(WalletTransaction)
                .where(WalletTransaction.wallet_id == wallet.id)
                .order_by(WalletTransaction.sequence)
            ).scalars()
        )
        violations: list[InvariantViolation] = []

        def fail(invariant: SettlementInvariant, detail: str) -> None:
            violations.append(InvariantViolation(invariant, detail))

        # Pairing
        previous_after = ZERO
        for row in rows:
            sign = 1 if row.type == TransactionType.CREDIT.value else -1
            if row.balance_after != row.balance_before + sign * row.amount:
                fail(
                    SettlementInvariant.LEDGER_PAIRING,
                    f"row #{row.sequence}: {row.balance_before} {row.type} {row.amount} "
                    f"!= {row.balance_after}",
                )
            if row.balance_before != previous_after:
                fail(
                    SettlementInvariant.LEDGER_PAIRING,
                    f"row #{row.sequence}: balance_before {row.balance_before} does not "
                    f"continue from {previous_after}",
                )
            previous_after = row.balance_after
        if wallet.available_balance != previous_after:
            fail(
                SettlementInvariant.LEDGER_PAIRING,
                f"available_balance {wallet.available_balance} != last balance_after "
                f"{previous_after}",
            )

        # Conservation
        def total(subtype: TransactionSubtype, reference_type: ReferenceType) -> Decimal:
            return sum(
                (
                    r.amount
                    for r in rows
                    if r.subtype == subtype.value and r.reference_type == reference_type.value
                ),
                ZERO,
            )

        earned_net = total(TransactionSubtype.QUOTE_PAYMENT, ReferenceType.QUOTE)
        penalty_debits = total(TransactionSubtype.PENALTY, ReferenceType.PENALTY)
        penalty_reversals = total(TransactionSubtype.REVERSAL, ReferenceType.PENALTY)
        reserved = total(TransactionSubtype.WITHDRAWAL, ReferenceType.WITHDRAWAL)
        returned = total(TransactionSubtype.REVERSAL, ReferenceType.WITHDRAWAL)

        held = wallet.available_balance + wallet.pending_balance + wallet.total_withdrawn
        expected = earned_net + penalty_reversals - penalty_debits
        if held != expected:
            fail(
                SettlementInvariant.BALANCE_CONSERVATION,
                f"available + pending + withdrawn = {held}, ledger implies {expected}",
            )
        if wallet.total_earned - wallet.total_commission_paid != earned_net:
            fail(
                SettlementInvariant.BALANCE_CONSERVATION,
                f"total_earned - total_commission_paid = "
                f"{wallet.total_earned - wallet.total_commission_paid}, "
                f"quote credits = {earned_net}",
            )
        if wallet.total_penalties != penalty_debits - penalty_reversals:
            fail(
                SettlementInvariant.BALANCE_CONSERVATION,
                f"total_penalties {wallet.total_penalties} != "
                f"{penalty_debits - penalty_reversals}",
            )
        if wallet.pending_balance + wallet.total_withdrawn != reserved - returned:
            fail(
                SettlementInvariant.BALANCE_CONSERVATION,
                f"pending + withdrawn = {wallet.pending_balance + wallet.total_withdrawn}, "
                f"reservations outstanding = {reserved - returned}",
            )

        # Non-negative
        for name in (
            "available_balance",
            "pending_balance",
            "total_earned",
            "total_commission_paid",
            "total_penalties",
            "total_withdrawn",
        ):
            if getattr(wallet, name) < ZERO:
                fail(SettlementInvariant.NON_NEGATIVE_BALANCES, f"{name} is negative")

        # Penalty debt
        by_id = {r.id: r for r in rows}
        penalties = self.session.execute(
            select(PenaltyInstance).where(PenaltyInstance.contractor_id == contractor_id)
        ).scalars()
        for penalty in penalties:
            if penalty.status == PenaltyStatus.APPLIED.value and penalty.debit_transaction_id is None:
                fail(
                    SettlementInvariant.PENALTY_DEBT_TRACKING,
                    f"penalty {penalty.id} is applied without a debit",
                )
            if penalty.debit_transaction_id is None:
                continue
            debit = by_id.get(penalty.debit_transaction_id)
            if (
                debit is None
                or debit.subtype != TransactionSubtype.PENALTY.value
                or debit.amount != penalty.amount
            ):
                fail(
                    SettlementInvariant.PENALTY_DEBT_TRACKING,
                    f"penalty {penalty.id} does not match its debit transaction",
                )

        return WalletVerification(contractor_id=contractor_id, violations=tuple(violations))
