"""
SettlementEngine: one committed unit of work per public call.

The facade reads configuration, takes the contractor's wallet lock, runs the
services on a fresh session and commits.  Optimistic conflicts are retried
a bounded number of times; storage failures surface as
StorageUnavailableError with nothing written.
"""

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from settlement_config import StaticConfigurationSource
from settlement_kernel.domain.dtos import (
    DisputeOutcome,
    HistoryFilters,
    PenaltyFilters,
    PenaltyStatus,
    PenaltyType,
    PostStatus,
    ReferenceType,
    TransactionSubtype,
    WithdrawalOutcome,
    WithdrawalStatus,
)
from settlement_kernel.exceptions import (
    BelowMinimumError,
    ConflictError,
    InsufficientBalanceError,
    InvalidPaymentMethodError,
    PenaltyNotFoundError,
    QuoteNotFoundError,
    StorageUnavailableError,
    WalletNotFoundError,
    WalletSuspendedError,
    WithdrawalNotFoundError,
)
from settlement_kernel.models.wallet import WalletTransaction
from settlement_kernel.models.withdrawal import WithdrawalRequest
from settlement_kernel.services.settlement_engine import SettlementEngine
from settlement_kernel.services.wallet_ledger import WalletLedger
from tests.factories import NOW, make_quote, overdue_quote


class CountingSource:
    """Configuration source that records how often it was read."""

    def __init__(self, config):
        self.config = config
        self.loads = 0

    def load(self):
        self.loads += 1
        return self.config


def fund(settlement, amount="1000.00", contractor_id="c-1", reference_id="seed"):
    return settlement.credit(
        contractor_id,
        Decimal(amount),
        TransactionSubtype.QUOTE_PAYMENT,
        ReferenceType.QUOTE,
        reference_id,
    )


def transaction_count(session_factory) -> int:
    with session_factory() as session:
        return session.execute(select(func.count()).select_from(WalletTransaction)).scalar_one()


class TestSettleQuote:
    def test_credits_net_of_commission(self, settlement, quotes):
        quotes.add(make_quote())

        result = settlement.settle_quote("q-1")

        assert result.breakdown.customer_price == Decimal("11000.00")
        assert result.breakdown.contractor_net == Decimal("8500.00")
        balance = settlement.get_balance("c-1")
        assert balance.available_balance == Decimal("8500.00")
        assert balance.total_earned == Decimal("10000.00")
        assert balance.total_commission_paid == Decimal("1500.00")

    def test_retry_after_success_is_replay(self, settlement, quotes, session_factory):
        quotes.add(make_quote())
        settlement.settle_quote("q-1")

        replay = settlement.settle_quote("q-1")

        assert replay.ledger.status == PostStatus.ALREADY_POSTED
        assert settlement.get_balance("c-1").available_balance == Decimal("8500.00")
        assert transaction_count(session_factory) == 1

    def test_unknown_quote(self, settlement):
        with pytest.raises(QuoteNotFoundError):
            settlement.settle_quote("missing")

    def test_configuration_read_per_operation(self, session_factory, settlement_config, quotes, clock):
        source = CountingSource(settlement_config)
        engine = SettlementEngine(session_factory, source, quotes, clock)
        quotes.add(make_quote())

        engine.settle_quote("q-1")
        engine.settle_quote("q-1")

        assert source.loads == 2

    def test_new_commission_applies_to_next_quote(self, session_factory, settlement_config, quotes, clock):
        source = CountingSource(settlement_config)
        engine = SettlementEngine(session_factory, source, quotes, clock)
        quotes.add(make_quote("q-1"))
        quotes.add(make_quote("q-2"))

        engine.settle_quote("q-1")
        source.config = replace(settlement_config, commission_percent=Decimal("20"))
        second = engine.settle_quote("q-2")

        assert second.breakdown.contractor_net == Decimal("8000.00")
        assert engine.get_balance("c-1").available_balance == Decimal("16500.00")


class TestUnitOfWork:
    def test_validation_error_writes_nothing(self, settlement, session_factory):
        fund(settlement)

        with pytest.raises(BelowMinimumError):
            settlement.request_withdrawal("c-1", Decimal("50.00"))

        with session_factory() as session:
            assert session.execute(
                select(func.count()).select_from(WithdrawalRequest)
            ).scalar_one() == 0
        assert settlement.get_balance("c-1").available_balance == Decimal("1000.00")

    def test_version_conflict_is_retried(self, settlement, monkeypatch, captured_logs):
        original = WalletLedger.credit
        calls = {"n": 0}

        def flaky(self, *args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise StaleDataError("wallet row changed underneath")
            return original(self, *args, **kwargs)

        monkeypatch.setattr(WalletLedger, "credit", flaky)

        result = fund(settlement)

        assert result.status == PostStatus.POSTED
        assert calls["n"] == 2
        assert settlement.get_balance("c-1").available_balance == Decimal("1000.00")
        assert any(r["message"] == "wallet_version_conflict" for r in captured_logs())

    def test_conflict_retries_are_bounded(self, settlement, settlement_config, monkeypatch, session_factory):
        calls = {"n": 0}

        def always_stale(self, *args, **kwargs):
            calls["n"] += 1
            raise StaleDataError("wallet row changed underneath")

        monkeypatch.setattr(WalletLedger, "credit", always_stale)

        with pytest.raises(ConflictError) as exc_info:
            fund(settlement)

        expected = settlement_config.max_conflict_retries + 1
        assert exc_info.value.attempts == expected
        assert exc_info.value.code == "CONFLICT"
        assert calls["n"] == expected
        assert transaction_count(session_factory) == 0

    def test_storage_failure_surfaces_typed(self, settlement, monkeypatch, session_factory):
        def broken(self, *args, **kwargs):
            raise OperationalError("UPDATE contractor_wallets", {}, Exception("server closed"))

        monkeypatch.setattr(WalletLedger, "credit", broken)

        with pytest.raises(StorageUnavailableError) as exc_info:
            fund(settlement)

        assert exc_info.value.operation == "credit"
        assert transaction_count(session_factory) == 0

    def test_operation_context_logged(self, settlement, captured_logs):
        fund(settlement)

        posted = [r for r in captured_logs() if r["message"] == "ledger_credit_posted"]
        assert len(posted) == 1
        assert posted[0]["operation"] == "credit"
        assert posted[0]["contractor_id"] == "c-1"
        assert posted[0]["amount"] == "1000.00"


class TestWalletLifecycle:
    def test_suspend_and_reinstate(self, settlement):
        fund(settlement)

        assert settlement.suspend_wallet("c-1", "KYC expired").is_suspended
        with pytest.raises(WalletSuspendedError):
            settlement.request_withdrawal("c-1", Decimal("500.00"))

        assert not settlement.reinstate_wallet("c-1").is_suspended
        settlement.request_withdrawal("c-1", Decimal("500.00"))

    def test_get_or_create_wallet(self, settlement):
        created = settlement.get_or_create_wallet("c-9")
        assert created.available_balance == Decimal("0")
        assert settlement.get_balance("c-9").wallet_id == created.wallet_id

    def test_balance_of_unknown_contractor(self, settlement):
        with pytest.raises(WalletNotFoundError):
            settlement.get_balance("nobody")

    def test_direct_debit_insufficient(self, settlement):
        fund(settlement, "100.00")
        with pytest.raises(InsufficientBalanceError):
            settlement.debit(
                "c-1",
                Decimal("500.00"),
                TransactionSubtype.PENALTY,
                ReferenceType.PENALTY,
                "manual-1",
            )
        assert settlement.get_balance("c-1").available_balance == Decimal("100.00")


class TestSeedRules:
    def test_seeds_configured_rules_once(self, settlement, settlement_config, captured_logs):
        created = settlement.seed_default_rules()

        assert created == len(settlement_config.penalty_rules) == 5
        assert settlement.seed_default_rules() == 0
        seeded = [r for r in captured_logs() if r["message"] == "penalty_rules_seeded"]
        assert [r["rules_created"] for r in seeded] == [5, 0]
        assert all(r["operation"] == "seed_default_rules" for r in seeded)


class TestPenalties:
    @pytest.fixture(autouse=True)
    def _rules(self, settlement, quotes):
        settlement.seed_default_rules()
        quotes.add(make_quote())

    def test_insufficient_balance_queues_pending(self, settlement):
        fund(settlement, "100.00")

        record = settlement.apply_manual_penalty(
            "c-1", "q-1", "quality_issue", custom_amount=Decimal("500.00"), applied_by="admin-1"
        )

        assert record.status == PenaltyStatus.PENDING
        assert settlement.get_balance("c-1").available_balance == Decimal("100.00")
        pending = settlement.get_pending_penalties("c-1")
        assert [p.id for p in pending] == [record.id]

    def test_collect_after_funding(self, settlement):
        fund(settlement, "100.00")
        record = settlement.apply_manual_penalty(
            "c-1", "q-1", "quality_issue", custom_amount=Decimal("500.00")
        )
        fund(settlement, "900.00", reference_id="q-later")

        collected = settlement.collect_pending_penalty(record.id)

        assert collected.status == PenaltyStatus.APPLIED
        assert settlement.get_balance("c-1").available_balance == Decimal("500.00")
        assert settlement.get_pending_penalties("c-1") == []

    def test_dispute_and_waive_refunds(self, settlement):
        fund(settlement, "5000.00")
        record = settlement.apply_manual_penalty("c-1", "q-1", "quality_issue")
        assert record.amount == Decimal("1000.00")
        assert settlement.get_balance("c-1").available_balance == Decimal("4000.00")

        settlement.dispute_penalty(record.id, "Panels passed inspection")
        resolved = settlement.resolve_penalty(record.id, DisputeOutcome.WAIVED, "Inspection report")

        assert resolved.status == PenaltyStatus.WAIVED
        balance = settlement.get_balance("c-1")
        assert balance.available_balance == Decimal("5000.00")
        assert balance.total_penalties == Decimal("0.00")
        assert settlement.verify_wallet("c-1").ok

    def test_unknown_penalty(self, settlement):
        with pytest.raises(PenaltyNotFoundError):
            settlement.dispute_penalty(uuid4(), "no such penalty")

    def test_rule_administration(self, settlement):
        rule = settlement.create_penalty_rule(
            penalty_type="custom",
            description="Site left unsafe",
            amount_calculation="fixed",
            amount_value=Decimal("750.00"),
            severity_level="critical",
        )
        assert rule.is_active

        updated = settlement.update_penalty_rule(rule.id, amount_value=Decimal("800.00"))
        assert updated.amount_value == Decimal("800.00")

        assert not settlement.deactivate_penalty_rule(rule.id).is_active

    def test_statistics(self, settlement):
        fund(settlement, "5000.00")
        settlement.apply_manual_penalty("c-1", "q-1", "communication_failure")

        stats = settlement.penalty_statistics("c-1")

        assert stats.total_count == 1
        assert stats.applied_amount == Decimal("250.00")


class TestScan:
    def test_scan_applies_late_penalty(self, settlement, quotes):
        settlement.seed_default_rules()
        fund(settlement, "5000.00")
        quotes.add(overdue_quote(2, quote_id="q-late"))

        result = settlement.scan(NOW)

        assert result.violations_detected == 1
        assert result.penalties_applied == 1
        assert settlement.get_balance("c-1").available_balance == Decimal("4800.00")

        again = settlement.scan(NOW)
        assert again.violations_detected == 0
        assert again.penalties_applied == 0
        assert settlement.get_balance("c-1").available_balance == Decimal("4800.00")

    def test_boundary_day_is_not_late(self, settlement, quotes):
        settlement.seed_default_rules()
        quotes.add(make_quote(created_at=NOW - timedelta(days=7)))

        result = settlement.scan(NOW)

        assert result.quotes_scanned == 1
        assert result.violations_detected == 0

    def test_resolve_violation(self, settlement, quotes):
        settlement.seed_default_rules()
        fund(settlement, "5000.00")
        quotes.add(overdue_quote(2))
        settlement.scan(NOW)

        [violation] = settlement.get_violations("c-1")
        resolved = settlement.resolve_violation(violation.id)

        assert resolved.resolved_at is not None
        assert settlement.get_violations("c-1") == []
        assert len(settlement.get_violations("c-1", unresolved_only=False)) == 1


class TestWithdrawals:
    def test_round_trip_rejected(self, settlement):
        fund(settlement, "1000.00")

        request = settlement.request_withdrawal("c-1", Decimal("1000.00"))

        balance = settlement.get_balance("c-1")
        assert request.status == WithdrawalStatus.RESERVED
        assert balance.available_balance == Decimal("0.00")
        assert balance.pending_balance == Decimal("1000.00")

        finalized = settlement.finalize_withdrawal(request.id, WithdrawalOutcome.REJECTED)

        balance = settlement.get_balance("c-1")
        assert finalized.status == WithdrawalStatus.REJECTED
        assert balance.available_balance == Decimal("1000.00")
        assert balance.pending_balance == Decimal("0.00")
        assert settlement.verify_wallet("c-1").ok

    def test_completed_and_status_query(self, settlement):
        fund(settlement, "1000.00")
        request = settlement.request_withdrawal(
            "c-1",
            Decimal("400.00"),
            {
                "type": "bank_transfer",
                "account_number": "1234567890",
                "bank_name": "Al Rajhi",
                "beneficiary_name": "Sun Installers LLC",
            },
        )

        settlement.finalize_withdrawal(request.id, "completed", admin_notes="Paid")
        replay = settlement.finalize_withdrawal(request.id, "completed")

        assert replay.status == WithdrawalStatus.COMPLETED
        status = settlement.get_withdrawal_status(request.id)
        assert status.admin_notes == "Paid"
        assert status.payment_method["bank_name"] == "Al Rajhi"
        balance = settlement.get_balance("c-1")
        assert balance.total_withdrawn == Decimal("400.00")
        assert balance.available_balance == Decimal("600.00")

    def test_unknown_request(self, settlement):
        with pytest.raises(WithdrawalNotFoundError):
            settlement.finalize_withdrawal(uuid4(), "completed")


class TestHistory:
    def test_default_page_size_from_config(self, session_factory, settlement_config, quotes, clock):
        config = replace(settlement_config, history_page_size=2)
        engine = SettlementEngine(session_factory, StaticConfigurationSource(config), quotes, clock)
        for i in range(5):
            fund(engine, "10.00", reference_id=f"q-{i}")

        page = engine.get_history("c-1")

        assert page.page_size == 2
        assert page.total == 5
        assert len(page.items) == 2
        assert page.has_next

    def test_status_filter(self, settlement):
        fund(settlement, "10.00")

        assert settlement.get_history("c-1", filters=HistoryFilters(status="completed")).total == 1
        assert settlement.get_history("c-1", filters=HistoryFilters(status="failed")).total == 0


BANK = {
    "type": "bank_transfer",
    "account_number": "1234567890",
    "bank_name": "Al Rajhi",
    "beneficiary_name": "Sun Installers LLC",
}


class TestPaymentMethods:
    def test_update_and_read_back(self, settlement):
        stored = settlement.update_payment_methods(
            "c-1", [{"type": "check", "beneficiary_name": "Sun", "is_primary": False}, BANK]
        )

        assert len(stored) == 2
        methods = settlement.get_payment_methods("c-1")
        assert methods[0].bank_name == "Al Rajhi"
        assert methods[0].is_primary

    def test_withdrawal_uses_stored_primary(self, settlement):
        fund(settlement, "1000.00")
        settlement.update_payment_methods("c-1", [BANK])

        request = settlement.request_withdrawal("c-1", Decimal("400.00"))

        assert request.payment_method["account_number"] == "1234567890"
        assert [w.id for w in settlement.list_withdrawals("c-1")] == [request.id]

    @pytest.mark.parametrize(
        "methods",
        [
            [],
            [BANK, BANK],
            [{"type": "bank_transfer", "account_number": "1"}],
            [{**BANK, "swift": "RJHISARI"}],
        ],
    )
    def test_invalid_sets_write_nothing(self, settlement, methods):
        settlement.update_payment_methods("c-1", [BANK])

        with pytest.raises(InvalidPaymentMethodError):
            settlement.update_payment_methods("c-1", methods)

        assert [m.bank_name for m in settlement.get_payment_methods("c-1")] == ["Al Rajhi"]

    def test_unknown_wallet(self, settlement):
        with pytest.raises(WalletNotFoundError):
            settlement.get_payment_methods("nobody")


class TestListPenalties:
    def test_paged_and_filtered(self, settlement, quotes, clock):
        settlement.seed_default_rules()
        fund(settlement, "5000.00")
        for i, penalty_type in enumerate(
            ["communication_failure", "documentation_issue", "communication_failure"]
        ):
            quotes.add(make_quote(quote_id=f"q-{i}"))
            settlement.apply_manual_penalty("c-1", f"q-{i}", penalty_type)
            clock.advance(60)
        quotes.add(make_quote(quote_id="q-big"))
        big = settlement.apply_manual_penalty(
            "c-1", "q-big", "quality_issue", custom_amount=Decimal("9000.00")
        )
        settlement.dispute_penalty(big.id, "Amount is wrong")

        page = settlement.list_penalties("c-1", page_size=2)
        assert page.total == 4
        assert [p.quote_id for p in page.items] == ["q-big", "q-2"]
        assert page.has_next

        disputed = settlement.list_penalties(
            "c-1", filters=PenaltyFilters(status=PenaltyStatus.DISPUTED)
        )
        assert [p.id for p in disputed.items] == [big.id]

        communication = settlement.list_penalties(
            "c-1", filters=PenaltyFilters(penalty_type=PenaltyType.COMMUNICATION_FAILURE)
        )
        assert [p.quote_id for p in communication.items] == ["q-2", "q-0"]

        recent = settlement.list_penalties(
            "c-1", filters=PenaltyFilters(created_from=NOW + timedelta(seconds=60))
        )
        assert recent.total == 3

    def test_default_page_size_from_config(self, settlement, settlement_config):
        page = settlement.list_penalties("c-1")
        assert page.page_size == settlement_config.history_page_size
        assert page.items == ()
