"""
WithdrawalWorkflow -- two-phase contractor payouts.

    requested --reserve--> reserved --complete--> completed
                                    --reject----> rejected

request_withdrawal() validates and reserves funds in one unit of work, so a
request row never exists without its reservation.  finalize() is called by
the payout approver and settles the reservation through the ledger.

Invariants enforced:
    - Reserved funds leave available_balance immediately; they cannot be
      spent by a penalty or a second withdrawal.
    - finalize() is idempotent per request: the same outcome replays, a
      different outcome raises AlreadyFinalizedError.
    - A request cannot complete while the contractor has a disputed penalty.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from settlement_kernel.db.types import ZERO
from settlement_kernel.domain.clock import Clock
from settlement_kernel.domain.dtos import (
    WithdrawalOutcome,
    WithdrawalRecord,
    WithdrawalStatus,
)
from settlement_kernel.domain.evidence import PaymentMethod
from settlement_kernel.domain.workflow import WITHDRAWAL_WORKFLOW
from settlement_kernel.exceptions import (
    AlreadyFinalizedError,
    BelowMinimumError,
    InsufficientBalanceError,
    WalletSuspendedError,
    WithdrawalNotFoundError,
    WithdrawalOnHoldError,
)
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.withdrawal import WithdrawalRequest
from settlement_kernel.services.base import BaseService
from settlement_kernel.services.penalty_engine import PenaltyEngine
from settlement_kernel.services.wallet_ledger import WalletLedger, validate_amount

logger = get_logger("services.withdrawal_workflow")


class WithdrawalWorkflow(BaseService):
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        ledger: WalletLedger | None = None,
        penalty_engine: PenaltyEngine | None = None,
    ):
        super().__init__(session, clock)
        self._ledger = ledger or WalletLedger(session, self._clock)
        self._penalties = penalty_engine or PenaltyEngine(session, self._clock, self._ledger)

    def request_withdrawal(
        self,
        contractor_id: str,
        amount: Decimal | int | str,
        min_withdrawal_amount: Decimal,
        payment_method: PaymentMethod | dict[str, Any] | None = None,
    ) -> WithdrawalRecord:
        """
        Create a request and reserve its funds.

        Without ``payment_method`` the wallet's stored primary method is
        recorded, if it has one.

        Raises:
            InvalidAmountError, BelowMinimumError, InvalidPaymentMethodError,
            WalletSuspendedError, InsufficientBalanceError
        """
        value = validate_amount(amount)
        if value < min_withdrawal_amount:
            raise BelowMinimumError(str(value), str(min_withdrawal_amount))
        if payment_method is not None and not isinstance(payment_method, PaymentMethod):
            payment_method = PaymentMethod.from_dict(payment_method)

        wallet = self._ledger.get_wallet(contractor_id)
        if wallet is None:
            raise InsufficientBalanceError(contractor_id, str(ZERO), str(value))
        if wallet.is_suspended:
            raise WalletSuspendedError(contractor_id)
        if wallet.available_balance < value:
            raise InsufficientBalanceError(
                contractor_id, str(wallet.available_balance), str(value)
            )
        if payment_method is None and wallet.payment_methods:
            payment_method = next(
                (m for m in map(PaymentMethod.from_dict, wallet.payment_methods) if m.is_primary),
                None,
            )

        request = WithdrawalRequest(
            contractor_id=contractor_id,
            wallet_id=wallet.id,
            amount=value,
            status=WithdrawalStatus.REQUESTED.value,
            payment_method=payment_method.to_dict() if payment_method else None,
            requested_at=self._clock.now(),
        )
        self._session.add(request)
        self._session.flush()

        description = "Withdrawal request"
        if payment_method is not None:
            description = f"Withdrawal request - {payment_method.type.value}"
        result = self._ledger.reserve(contractor_id, value, str(request.id), description)

        self._transition(request, WithdrawalStatus.RESERVED)
        request.reserve_transaction_id = result.transaction.id
        self._session.flush()

        logger.info(
            "withdrawal_reserved",
            extra={
                "contractor_id": contractor_id,
                "withdrawal_id": str(request.id),
                "amount": str(value),
                "available_balance": str(result.wallet.available_balance),
            },
        )
        return WithdrawalRecord.from_model(request)

    def finalize(
        self,
        request_id: UUID,
        outcome: WithdrawalOutcome | str,
        admin_notes: str | None = None,
    ) -> WithdrawalRecord:
        """
        Complete or reject a reserved request.

        Raises:
            WithdrawalNotFoundError, AlreadyFinalizedError, WithdrawalOnHoldError
        """
        outcome = WithdrawalOutcome(outcome)
        request = self.get_request(request_id)

        if WITHDRAWAL_WORKFLOW.is_terminal(request.status):
            if request.status == outcome.value:
                logger.info(
                    "withdrawal_finalize_replay",
                    extra={"withdrawal_id": str(request.id), "status": request.status},
                )
                return WithdrawalRecord.from_model(request)
            raise AlreadyFinalizedError(str(request.id), request.status)

        if outcome == WithdrawalOutcome.COMPLETED:
            disputed = self._penalties.open_disputes(request.contractor_id)
            if disputed:
                raise WithdrawalOnHoldError(str(request.id), [str(p.id) for p in disputed])

        result = self._ledger.release(
            request.contractor_id, request.amount, outcome, str(request.id)
        )

        self._transition(request, WithdrawalStatus(outcome.value))
        if result.transaction is not None:
            request.release_transaction_id = result.transaction.id
        request.admin_notes = admin_notes
        request.finalized_at = self._clock.now()
        self._session.flush()

        logger.info(
            "withdrawal_finalized",
            extra={
                "contractor_id": request.contractor_id,
                "withdrawal_id": str(request.id),
                "outcome": outcome.value,
                "amount": str(request.amount),
            },
        )
        return WithdrawalRecord.from_model(request)

    def get_request(self, request_id: UUID) -> WithdrawalRequest:
        request = self._session.get(WithdrawalRequest, request_id, populate_existing=True)
        if request is None:
            raise WithdrawalNotFoundError(str(request_id))
        return request

    def _transition(self, request: WithdrawalRequest, target: WithdrawalStatus) -> None:
        if not WITHDRAWAL_WORKFLOW.can_transition(request.status, target.value):
            raise AlreadyFinalizedError(str(request.id), request.status)
        request.status = target.value
