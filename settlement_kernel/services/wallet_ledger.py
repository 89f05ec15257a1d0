"""
WalletLedger -- the only writer of wallet balances.

Responsibility:
    Credits, debits, withdrawal reservations and releases against one
    contractor wallet.  Every balance change is paired with an immutable
    WalletTransaction row in the same flush.

Architecture position:
    Kernel > Services -- imperative shell.  Flush-only; the caller commits.

Invariants enforced:
    - available_balance changes only through a paired transaction row, and
      balance_after = balance_before +/- amount on every row.
    - No balance goes negative (checked here, backstopped by DB CHECKs).
    - Idempotency: each mutation first looks up its
      (wallet, subtype, reference_type, reference_id) key; a replay returns
      the prior row with PostStatus.ALREADY_POSTED and changes nothing.
    - The wallet row is read with SELECT ... FOR UPDATE and written under
      the mapper's optimistic version check.

Failure modes:
    - InvalidAmountError: amount <= 0 or finer than 2 decimal places.
    - InsufficientBalanceError: debit/reserve above available_balance.
    - WalletSuspendedError: debit/reserve/complete on a suspended wallet.
    - WithdrawalNotFoundError: release without a prior reservation.
    - StaleDataError (from SQLAlchemy): concurrent writer won the version race.

Usage:
    ledger = WalletLedger(session, clock)
    result = ledger.credit(
        contractor_id="c-1",
        amount=Decimal("8500.00"),
        subtype=TransactionSubtype.QUOTE_PAYMENT,
        reference_type=ReferenceType.QUOTE,
        reference_id="q-1",
        commission=Decimal("1500.00"),
    )
    session.commit()
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement_kernel.db.types import ZERO, round_money, to_money
from settlement_kernel.domain.clock import Clock
from settlement_kernel.domain.dtos import (
    LedgerResult,
    PostStatus,
    ReferenceType,
    TransactionRecord,
    TransactionStatus,
    TransactionSubtype,
    TransactionType,
    WalletBalance,
    WithdrawalOutcome,
)
from settlement_kernel.domain.evidence import PaymentMethod, validate_payment_methods
from settlement_kernel.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    WalletNotFoundError,
    WalletSuspendedError,
    WithdrawalNotFoundError,
)
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.wallet import Wallet, WalletTransaction
from settlement_kernel.services.base import BaseService

logger = get_logger("services.wallet_ledger")


def parse_amount(amount: Decimal | int | str) -> Decimal:
    """
    Caller input to a finite Decimal.

    Raises:
        InvalidAmountError: not a number, NaN or infinite.
        TypeError: a float (see to_money).
    """
    try:
        value = to_money(amount)
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(str(amount), "not a decimal amount") from None
    if not value.is_finite():
        raise InvalidAmountError(str(amount), "amount must be finite")
    return value


def validate_amount(amount: Decimal | int | str) -> Decimal:
    """Positive, at most 2 decimal places."""
    value = parse_amount(amount)
    if value <= ZERO:
        raise InvalidAmountError(str(value))
    if round_money(value) != value:
        raise InvalidAmountError(str(value), "amount has more than 2 decimal places")
    return round_money(value)


class WalletLedger(BaseService):
    """
    Append-only wallet ledger.

    Non-goals:
        - Does NOT serialize across processes by itself beyond the row lock;
          the engine facade adds the in-process lock and the retry loop.
        - Does NOT read configuration.
    """

    def __init__(self, session: Session, clock: Clock | None = None, currency: str = "SAR"):
        super().__init__(session, clock)
        self._currency = currency

    # ------------------------------------------------------------------
    # Wallet lifecycle
    # ------------------------------------------------------------------

    def get_wallet(self, contractor_id: str, for_update: bool = True) -> Wallet | None:
        stmt = select(Wallet).where(Wallet.contractor_id == contractor_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_or_create_wallet(self, contractor_id: str) -> Wallet:
        """
        Return the contractor's wallet, creating it on first touch.

        A concurrent first insert for the same contractor loses on the
        UNIQUE constraint inside a savepoint and re-reads the winner's row.
        """
        wallet = self.get_wallet(contractor_id)
        if wallet is not None:
            return wallet

        savepoint = self._session.begin_nested()
        try:
            wallet = Wallet(
                contractor_id=contractor_id,
                available_balance=ZERO,
                pending_balance=ZERO,
                total_earned=ZERO,
                total_commission_paid=ZERO,
                total_penalties=ZERO,
                total_withdrawn=ZERO,
                is_suspended=False,
                currency=self._currency,
                last_sequence=0,
            )
            self._session.add(wallet)
            self._session.flush()
            savepoint.commit()
            logger.info(
                "wallet_created",
                extra={"contractor_id": contractor_id, "currency": self._currency},
            )
            return wallet
        except IntegrityError:
            savepoint.rollback()
            logger.debug("wallet_create_race", extra={"contractor_id": contractor_id})
            wallet = self.get_wallet(contractor_id)
            if wallet is None:
                raise
            return wallet

    def require_wallet(self, contractor_id: str) -> Wallet:
        wallet = self.get_wallet(contractor_id)
        if wallet is None:
            raise WalletNotFoundError(contractor_id)
        return wallet

    def suspend(self, contractor_id: str, reason: str | None = None) -> WalletBalance:
        wallet = self.get_or_create_wallet(contractor_id)
        if not wallet.is_suspended:
            wallet.is_suspended = True
            wallet.suspension_reason = reason
            self._session.flush()
            logger.warning(
                "wallet_suspended",
                extra={"contractor_id": contractor_id, "reason": reason},
            )
        return WalletBalance.from_model(wallet)

    def reinstate(self, contractor_id: str) -> WalletBalance:
        wallet = self.require_wallet(contractor_id)
        if wallet.is_suspended:
            wallet.is_suspended = False
            wallet.suspension_reason = None
            self._session.flush()
            logger.info("wallet_reinstated", extra={"contractor_id": contractor_id})
        return WalletBalance.from_model(wallet)

    def update_payment_methods(
        self,
        contractor_id: str,
        methods: list[PaymentMethod | dict[str, Any]],
    ) -> tuple[PaymentMethod, ...]:
        """
        Replace the wallet's payout methods.

        Raises:
            InvalidPaymentMethodError: see validate_payment_methods().
        """
        parsed = validate_payment_methods(methods)
        wallet = self.get_or_create_wallet(contractor_id)
        wallet.payment_methods = [m.to_dict() for m in parsed]
        self._session.flush()
        logger.info(
            "payment_methods_updated",
            extra={
                "contractor_id": contractor_id,
                "wallet_id": str(wallet.id),
                "methods_count": len(parsed),
            },
        )
        return parsed

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def credit(
        self,
        contractor_id: str,
        amount: Decimal | int | str,
        subtype: TransactionSubtype,
        reference_type: ReferenceType,
        reference_id: str,
        commission: Decimal | int | str = ZERO,
        description: str | None = None,
    ) -> LedgerResult:
        """
        Add ``amount`` to available_balance.

        Quote payments also grow total_earned by the gross (amount +
        commission) and total_commission_paid by the commission.  A reversal
        of a penalty shrinks total_penalties.
        """
        value = validate_amount(amount)
        commission_value = round_money(parse_amount(commission))
        if commission_value < ZERO:
            raise InvalidAmountError(str(commission_value), "commission must not be negative")
        subtype = TransactionSubtype(subtype)
        reference_type = ReferenceType(reference_type)

        wallet = self.get_or_create_wallet(contractor_id)
        existing = self._find_existing(wallet, subtype, reference_type, reference_id)
        if existing is not None:
            return self._replay(wallet, existing, value)

        txn = self._append(
            wallet,
            TransactionType.CREDIT,
            subtype,
            value,
            reference_type,
            reference_id,
            description,
        )
        if subtype == TransactionSubtype.QUOTE_PAYMENT:
            wallet.total_earned += value + commission_value
            wallet.total_commission_paid += commission_value
        elif subtype == TransactionSubtype.REVERSAL and reference_type == ReferenceType.PENALTY:
            wallet.total_penalties = max(wallet.total_penalties - value, ZERO)
        self._session.flush()

        logger.info(
            "ledger_credit_posted",
            extra={
                "contractor_id": contractor_id,
                "subtype": subtype.value,
                "reference_type": reference_type.value,
                "reference_id": reference_id,
                "amount": str(value),
                "commission": str(commission_value),
                "balance_after": str(txn.balance_after),
            },
        )
        return self._result(PostStatus.POSTED, wallet, txn)

    def debit(
        self,
        contractor_id: str,
        amount: Decimal | int | str,
        subtype: TransactionSubtype,
        reference_type: ReferenceType,
        reference_id: str,
        description: str | None = None,
    ) -> LedgerResult:
        """
        Take ``amount`` from available_balance.

        Raises:
            InsufficientBalanceError: available_balance < amount.
            WalletSuspendedError: wallet is suspended.
        """
        value = validate_amount(amount)
        subtype = TransactionSubtype(subtype)
        reference_type = ReferenceType(reference_type)

        wallet = self.get_or_create_wallet(contractor_id)
        existing = self._find_existing(wallet, subtype, reference_type, reference_id)
        if existing is not None:
            return self._replay(wallet, existing, value)

        if wallet.is_suspended:
            raise WalletSuspendedError(contractor_id)
        self._require_available(wallet, value)

        txn = self._append(
            wallet,
            TransactionType.DEBIT,
            subtype,
            value,
            reference_type,
            reference_id,
            description,
        )
        if subtype == TransactionSubtype.PENALTY:
            wallet.total_penalties += value
        self._session.flush()

        logger.info(
            "ledger_debit_posted",
            extra={
                "contractor_id": contractor_id,
                "subtype": subtype.value,
                "reference_type": reference_type.value,
                "reference_id": reference_id,
                "amount": str(value),
                "balance_after": str(txn.balance_after),
            },
        )
        return self._result(PostStatus.POSTED, wallet, txn)

    def reserve(
        self,
        contractor_id: str,
        amount: Decimal | int | str,
        reference_id: str,
        description: str | None = None,
    ) -> LedgerResult:
        """
        Move ``amount`` from available to pending for a withdrawal.

        Writes a completed ``withdrawal`` debit row keyed by the withdrawal
        request id.
        """
        value = validate_amount(amount)
        wallet = self.get_or_create_wallet(contractor_id)
        existing = self._find_existing(
            wallet, TransactionSubtype.WITHDRAWAL, ReferenceType.WITHDRAWAL, reference_id
        )
        if existing is not None:
            return self._replay(wallet, existing, value)

        if wallet.is_suspended:
            raise WalletSuspendedError(contractor_id)
        self._require_available(wallet, value)

        txn = self._append(
            wallet,
            TransactionType.DEBIT,
            TransactionSubtype.WITHDRAWAL,
            value,
            ReferenceType.WITHDRAWAL,
            reference_id,
            description or "Withdrawal reservation",
        )
        wallet.pending_balance += value
        self._session.flush()

        logger.info(
            "ledger_reserve_posted",
            extra={
                "contractor_id": contractor_id,
                "reference_id": reference_id,
                "amount": str(value),
                "pending_balance": str(wallet.pending_balance),
            },
        )
        return self._result(PostStatus.POSTED, wallet, txn)

    def release(
        self,
        contractor_id: str,
        amount: Decimal | int | str,
        outcome: WithdrawalOutcome,
        reference_id: str,
    ) -> LedgerResult:
        """
        Settle a reservation.

        completed: pending -> total_withdrawn; available untouched; no row.
        rejected:  pending -> available with a ``reversal`` credit row.

        Replays of the rejected branch are detected by the reversal row's
        idempotency key.  The completed branch writes no row, so its replay
        protection is the withdrawal request's own status.
        """
        value = validate_amount(amount)
        outcome = WithdrawalOutcome(outcome)
        wallet = self.require_wallet(contractor_id)

        if self._find_existing(
            wallet, TransactionSubtype.WITHDRAWAL, ReferenceType.WITHDRAWAL, reference_id
        ) is None:
            raise WithdrawalNotFoundError(reference_id)

        if outcome == WithdrawalOutcome.REJECTED:
            existing = self._find_existing(
                wallet, TransactionSubtype.REVERSAL, ReferenceType.WITHDRAWAL, reference_id
            )
            if existing is not None:
                return self._replay(wallet, existing, value)

        if wallet.pending_balance < value:
            raise InsufficientBalanceError(
                contractor_id, str(wallet.pending_balance), str(value)
            )

        if outcome == WithdrawalOutcome.COMPLETED:
            if wallet.is_suspended:
                raise WalletSuspendedError(contractor_id)
            wallet.pending_balance -= value
            wallet.total_withdrawn += value
            self._session.flush()
            logger.info(
                "ledger_release_completed",
                extra={
                    "contractor_id": contractor_id,
                    "reference_id": reference_id,
                    "amount": str(value),
                    "total_withdrawn": str(wallet.total_withdrawn),
                },
            )
            return self._result(PostStatus.POSTED, wallet, None)

        wallet.pending_balance -= value
        txn = self._append(
            wallet,
            TransactionType.CREDIT,
            TransactionSubtype.REVERSAL,
            value,
            ReferenceType.WITHDRAWAL,
            reference_id,
            "Withdrawal rejected, funds returned",
        )
        self._session.flush()
        logger.info(
            "ledger_release_rejected",
            extra={
                "contractor_id": contractor_id,
                "reference_id": reference_id,
                "amount": str(value),
                "balance_after": str(txn.balance_after),
            },
        )
        return self._result(PostStatus.POSTED, wallet, txn)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _find_existing(
        self,
        wallet: Wallet,
        subtype: TransactionSubtype,
        reference_type: ReferenceType,
        reference_id: str,
    ) -> WalletTransaction | None:
        return self._session.execute(
            select(WalletTransaction).where(
                WalletTransaction.wallet_id == wallet.id,
                WalletTransaction.subtype == subtype.value,
                WalletTransaction.reference_type == reference_type.value,
                WalletTransaction.reference_id == str(reference_id),
            )
        ).scalar_one_or_none()

    def _require_available(self, wallet: Wallet, amount: Decimal) -> None:
        if wallet.available_balance < amount:
            logger.info(
                "ledger_insufficient_balance",
                extra={
                    "contractor_id": wallet.contractor_id,
                    "available": str(wallet.available_balance),
                    "requested": str(amount),
                },
            )
            raise InsufficientBalanceError(
                wallet.contractor_id, str(wallet.available_balance), str(amount)
            )

    def _append(
        self,
        wallet: Wallet,
        txn_type: TransactionType,
        subtype: TransactionSubtype,
        amount: Decimal,
        reference_type: ReferenceType,
        reference_id: str,
        description: str | None,
    ) -> WalletTransaction:
        before = wallet.available_balance
        after = before + amount if txn_type == TransactionType.CREDIT else before - amount
        wallet.last_sequence += 1
        wallet.available_balance = after

        txn = WalletTransaction(
            wallet_id=wallet.id,
            sequence=wallet.last_sequence,
            type=txn_type.value,
            subtype=subtype.value,
            amount=amount,
            balance_before=before,
            balance_after=after,
            reference_type=reference_type.value,
            reference_id=str(reference_id),
            status=TransactionStatus.COMPLETED.value,
            description=description,
            created_at=self._clock.now(),
        )
        self._session.add(txn)
        return txn

    def _replay(
        self, wallet: Wallet, existing: WalletTransaction, requested: Decimal
    ) -> LedgerResult:
        if existing.amount != requested:
            logger.warning(
                "ledger_replay_amount_mismatch",
                extra={
                    "contractor_id": wallet.contractor_id,
                    "reference_id": existing.reference_id,
                    "posted_amount": str(existing.amount),
                    "requested_amount": str(requested),
                },
            )
        logger.info(
            "ledger_replay",
            extra={
                "contractor_id": wallet.contractor_id,
                "subtype": existing.subtype,
                "reference_type": existing.reference_type,
                "reference_id": existing.reference_id,
            },
        )
        return self._result(PostStatus.ALREADY_POSTED, wallet, existing)

    @staticmethod
    def _result(
        status: PostStatus, wallet: Wallet, txn: WalletTransaction | None
    ) -> LedgerResult:
        return LedgerResult(
            status=status,
            wallet=WalletBalance.from_model(wallet),
            transaction=TransactionRecord.from_model(txn) if txn is not None else None,
        )
