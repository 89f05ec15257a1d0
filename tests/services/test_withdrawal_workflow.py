"""
WithdrawalWorkflow: reserve on request, settle on finalize.

Funds leave available_balance the moment a request is accepted and only
return on rejection; finalization is idempotent per request.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from settlement_kernel.domain.dtos import (
    DisputeOutcome,
    PenaltyContext,
    PenaltyType,
    WithdrawalOutcome,
    WithdrawalStatus,
)
from settlement_kernel.exceptions import (
    AlreadyFinalizedError,
    BelowMinimumError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidPaymentMethodError,
    WalletSuspendedError,
    WithdrawalNotFoundError,
    WithdrawalOnHoldError,
)
from settlement_kernel.models.withdrawal import WithdrawalRequest
from settlement_kernel.services.withdrawal_workflow import WithdrawalWorkflow

MINIMUM = Decimal("100.00")

BANK = {
    "type": "bank_transfer",
    "account_number": "1234567890",
    "bank_name": "Al Rajhi",
    "beneficiary_name": "Sun Installers LLC",
}


@pytest.fixture
def workflow(session, clock, ledger, penalty_engine) -> WithdrawalWorkflow:
    return WithdrawalWorkflow(session, clock, ledger, penalty_engine)


def request_count(session) -> int:
    return session.execute(select(func.count()).select_from(WithdrawalRequest)).scalar_one()


class TestRequest:
    def test_reserves_funds(self, workflow, ledger, funded_wallet):
        record = workflow.request_withdrawal("c-1", "1000.00", MINIMUM, BANK)

        assert record.status == WithdrawalStatus.RESERVED
        assert record.amount == Decimal("1000.00")
        assert record.reserve_transaction_id is not None
        assert record.payment_method["bank_name"] == "Al Rajhi"
        wallet = ledger.get_wallet("c-1")
        assert wallet.available_balance == Decimal("4000.00")
        assert wallet.pending_balance == Decimal("1000.00")

    def test_defaults_to_stored_primary_method(self, workflow, ledger, funded_wallet):
        ledger.update_payment_methods(
            "c-1",
            [
                {"type": "check", "beneficiary_name": "Sun Installers LLC", "is_primary": False},
                BANK,
            ],
        )

        record = workflow.request_withdrawal("c-1", "500.00", MINIMUM)
        explicit = workflow.request_withdrawal(
            "c-1", "500.00", MINIMUM, {"type": "check", "beneficiary_name": "Other"}
        )

        assert record.payment_method["type"] == "bank_transfer"
        assert record.payment_method["bank_name"] == "Al Rajhi"
        assert explicit.payment_method["beneficiary_name"] == "Other"

    def test_no_stored_method_records_none(self, workflow, funded_wallet):
        assert workflow.request_withdrawal("c-1", "500.00", MINIMUM).payment_method is None

    def test_below_minimum(self, workflow, session, funded_wallet):
        with pytest.raises(BelowMinimumError) as exc_info:
            workflow.request_withdrawal("c-1", "99.99", MINIMUM)
        assert exc_info.value.minimum == "100.00"
        assert request_count(session) == 0

    def test_exactly_minimum_allowed(self, workflow, funded_wallet):
        assert workflow.request_withdrawal("c-1", "100.00", MINIMUM).status == WithdrawalStatus.RESERVED

    def test_more_than_available(self, workflow, session, funded_wallet):
        with pytest.raises(InsufficientBalanceError):
            workflow.request_withdrawal("c-1", "5000.01", MINIMUM)
        assert request_count(session) == 0

    def test_no_wallet(self, workflow, session):
        with pytest.raises(InsufficientBalanceError) as exc_info:
            workflow.request_withdrawal("c-none", "150.00", MINIMUM)
        assert exc_info.value.available == "0.00"

    def test_suspended(self, workflow, ledger, funded_wallet):
        ledger.suspend("c-1", "fraud review")
        with pytest.raises(WalletSuspendedError):
            workflow.request_withdrawal("c-1", "500.00", MINIMUM)

    def test_invalid_amount(self, workflow, funded_wallet):
        with pytest.raises(InvalidAmountError):
            workflow.request_withdrawal("c-1", "-500", MINIMUM)

    def test_invalid_payment_method(self, workflow, session, funded_wallet):
        with pytest.raises(InvalidPaymentMethodError):
            workflow.request_withdrawal("c-1", "500.00", MINIMUM, {"type": "bank_transfer"})
        assert request_count(session) == 0

    def test_two_requests_cannot_overdraw(self, workflow, funded_wallet):
        workflow.request_withdrawal("c-1", "3000.00", MINIMUM)
        with pytest.raises(InsufficientBalanceError):
            workflow.request_withdrawal("c-1", "3000.00", MINIMUM)


class TestFinalize:
    def test_complete(self, workflow, ledger, clock, funded_wallet):
        request = workflow.request_withdrawal("c-1", "1000.00", MINIMUM, BANK)
        clock.advance(3600)

        record = workflow.finalize(request.id, WithdrawalOutcome.COMPLETED, "paid via SARIE")

        assert record.status == WithdrawalStatus.COMPLETED
        assert record.admin_notes == "paid via SARIE"
        assert record.release_transaction_id is None
        assert record.finalized_at is not None
        wallet = ledger.get_wallet("c-1")
        assert wallet.pending_balance == Decimal("0.00")
        assert wallet.total_withdrawn == Decimal("1000.00")
        assert wallet.available_balance == Decimal("4000.00")

    def test_reject_returns_funds(self, workflow, ledger, funded_wallet):
        request = workflow.request_withdrawal("c-1", "1000.00", MINIMUM)

        record = workflow.finalize(request.id, "rejected", "IBAN mismatch")

        assert record.status == WithdrawalStatus.REJECTED
        assert record.release_transaction_id is not None
        wallet = ledger.get_wallet("c-1")
        assert wallet.available_balance == Decimal("5000.00")
        assert wallet.pending_balance == Decimal("0.00")
        assert wallet.total_withdrawn == Decimal("0.00")

    @pytest.mark.parametrize("outcome", [WithdrawalOutcome.COMPLETED, WithdrawalOutcome.REJECTED])
    def test_same_outcome_replays(self, workflow, ledger, funded_wallet, outcome):
        request = workflow.request_withdrawal("c-1", "1000.00", MINIMUM)
        first = workflow.finalize(request.id, outcome)
        balances = ledger.get_wallet("c-1").available_balance

        again = workflow.finalize(request.id, outcome)

        assert again.status == first.status
        assert again.id == first.id
        assert ledger.get_wallet("c-1").available_balance == balances

    def test_conflicting_outcome_rejected(self, workflow, funded_wallet):
        request = workflow.request_withdrawal("c-1", "1000.00", MINIMUM)
        workflow.finalize(request.id, WithdrawalOutcome.COMPLETED)

        with pytest.raises(AlreadyFinalizedError) as exc_info:
            workflow.finalize(request.id, WithdrawalOutcome.REJECTED)
        assert exc_info.value.status == "completed"

    def test_unknown_request(self, workflow):
        with pytest.raises(WithdrawalNotFoundError):
            workflow.finalize(uuid4(), WithdrawalOutcome.COMPLETED)

    def test_disputed_penalty_holds_completion(self, workflow, penalty_engine, seeded_rules, funded_wallet):
        request = workflow.request_withdrawal("c-1", "1000.00", MINIMUM)
        penalty = penalty_engine.apply_manual(
            "c-1",
            "q-1",
            PenaltyType.COMMUNICATION_FAILURE,
            PenaltyContext(),
        )
        penalty_engine.dispute(penalty.id, "Customer never called")

        with pytest.raises(WithdrawalOnHoldError) as exc_info:
            workflow.finalize(request.id, WithdrawalOutcome.COMPLETED)
        assert exc_info.value.disputed_penalty_ids == [str(penalty.id)]

        # completion proceeds once the dispute is resolved
        penalty_engine.resolve(penalty.id, DisputeOutcome.WAIVED)
        assert workflow.finalize(request.id, WithdrawalOutcome.COMPLETED).status == (
            WithdrawalStatus.COMPLETED
        )

    def test_rejection_allowed_during_dispute(self, workflow, penalty_engine, seeded_rules, funded_wallet):
        request = workflow.request_withdrawal("c-1", "1000.00", MINIMUM)
        penalty = penalty_engine.apply_manual(
            "c-1", "q-1", PenaltyType.COMMUNICATION_FAILURE, PenaltyContext()
        )
        penalty_engine.dispute(penalty.id, "x")

        record = workflow.finalize(request.id, WithdrawalOutcome.REJECTED)
        assert record.status == WithdrawalStatus.REJECTED

    def test_suspended_wallet_cannot_complete(self, workflow, ledger, funded_wallet):
        request = workflow.request_withdrawal("c-1", "1000.00", MINIMUM)
        ledger.suspend("c-1")

        with pytest.raises(WalletSuspendedError):
            workflow.finalize(request.id, WithdrawalOutcome.COMPLETED)

        assert workflow.finalize(request.id, WithdrawalOutcome.REJECTED).status == (
            WithdrawalStatus.REJECTED
        )
