"""
Structured logs emitted by settlement operations.

Every facade call binds operation / contractor_id / reference_id into
LogContext; the events posted underneath must carry them, with money
rendered as strings so no float ever reaches a log pipeline.
"""

import ast
import json
import logging
from decimal import Decimal
from io import StringIO
from pathlib import Path
from uuid import uuid4

import pytest

import settlement_kernel
from settlement_kernel.domain.dtos import ReferenceType, TransactionSubtype
from settlement_kernel.exceptions import InsufficientBalanceError
from settlement_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)
from tests.factories import NOW, make_quote, overdue_quote


def events(captured_logs, message: str) -> list[dict]:
    return [r for r in captured_logs() if r["message"] == message]


def fund(settlement, amount: str, reference_id: str = "seed"):
    return settlement.credit(
        "c-1",
        Decimal(amount),
        TransactionSubtype.QUOTE_PAYMENT,
        ReferenceType.QUOTE,
        reference_id,
    )


@pytest.fixture
def fresh_logging():
    """Unconfigured settlement_kernel logging; the suite's setup is restored after."""
    reset_logging()
    yield logging.getLogger("settlement_kernel")
    reset_logging()
    configure_logging(level=logging.DEBUG)


# ---------------------------------------------------------------------------
# Events from settlement operations
# ---------------------------------------------------------------------------


class TestOperationEvents:
    @pytest.fixture(autouse=True)
    def _rules(self, settlement, quotes):
        settlement.seed_default_rules()
        quotes.add(make_quote())

    def test_penalty_debit_carries_operation_context(self, settlement, captured_logs):
        fund(settlement, "5000.00")

        settlement.apply_manual_penalty(
            "c-1", "q-1", "communication_failure", applied_by="admin-1"
        )

        [debit] = events(captured_logs, "ledger_debit_posted")
        assert debit["operation"] == "apply_manual_penalty"
        assert debit["contractor_id"] == "c-1"
        assert debit["reference_id"] == "q-1"
        assert debit["actor_id"] == "admin-1"
        assert debit["subtype"] == "penalty"
        assert debit["amount"] == "250.00"
        assert debit["balance_after"] == "4750.00"

        [applied] = events(captured_logs, "penalty_applied")
        assert applied["operation"] == "apply_manual_penalty"
        assert applied["amount"] == "250.00"

    def test_pending_penalty_logged_with_reason(self, settlement, captured_logs):
        fund(settlement, "100.00")

        record = settlement.apply_manual_penalty(
            "c-1", "q-1", "quality_issue", custom_amount=Decimal("500.00")
        )

        [pending] = events(captured_logs, "penalty_pending")
        assert pending["operation"] == "apply_manual_penalty"
        assert pending["contractor_id"] == "c-1"
        assert pending["reference_id"] == "q-1"
        assert pending["penalty_id"] == str(record.id)
        assert pending["amount"] == "500.00"
        assert pending["reason"] == "INSUFFICIENT_BALANCE"
        assert events(captured_logs, "ledger_debit_posted") == []

    def test_scan_events_bound_to_quote(self, settlement, quotes, captured_logs):
        fund(settlement, "5000.00")
        quotes.add(overdue_quote(2, quote_id="q-late"))

        settlement.scan(NOW)

        [detected] = events(captured_logs, "sla_violation_detected")
        assert detected["operation"] == "sla_scan_quote"
        assert detected["reference_id"] == "q-late"
        assert detected["days_overdue"] == 2
        [debit] = events(captured_logs, "ledger_debit_posted")
        assert debit["contractor_id"] == "c-1"
        assert debit["amount"] == "200.00"
        [completed] = events(captured_logs, "sla_scan_completed")
        assert completed["operation"] == "sla_scan"
        assert "reference_id" not in completed

    def test_money_fields_are_strings(self, settlement, captured_logs):
        fund(settlement, "1234.50")

        [credit] = events(captured_logs, "ledger_credit_posted")
        for field in ("amount", "commission", "balance_after"):
            assert isinstance(credit[field], str), field
        assert credit["amount"] == "1234.50"

    def test_context_released_after_operation(self, settlement, captured_logs):
        fund(settlement, "10.00")

        assert LogContext.get_all() == {}
        [credit] = events(captured_logs, "ledger_credit_posted")
        assert credit["operation"] == "credit"


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    def test_settlement_error_fields(self, captured_logs):
        logger = get_logger("services.wallet_ledger")
        try:
            raise InsufficientBalanceError("c-1", "100.00", "500.00")
        except InsufficientBalanceError:
            logger.error("debit_failed", exc_info=True)

        [record] = events(captured_logs, "debit_failed")
        assert record["logger"] == "settlement_kernel.services.wallet_ledger"
        assert record["exc_code"] == "INSUFFICIENT_BALANCE"
        assert record["exc_contractor_id"] == "c-1"
        assert record["exc_available"] == "100.00"
        assert record["exc_requested"] == "500.00"

    def test_decimal_and_uuid_extras(self, captured_logs):
        penalty_id = uuid4()
        with LogContext.bind(contractor_id="c-7"):
            get_logger("services.penalty_engine").info(
                "penalty_applied", extra={"penalty_id": penalty_id, "amount": Decimal("12.50")}
            )

        [record] = events(captured_logs, "penalty_applied")
        assert record["penalty_id"] == str(penalty_id)
        assert record["amount"] == "12.50"
        assert record["contractor_id"] == "c-7"

    def test_extra_keys_avoid_log_record_attributes(self):
        """logging refuses extra keys that shadow LogRecord attributes."""
        reserved = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
            "message",
            "asctime",
        }
        used = []
        for path in Path(settlement_kernel.__file__).parent.rglob("*.py"):
            for node in ast.walk(ast.parse(path.read_text())):
                if not isinstance(node, ast.Call):
                    continue
                for keyword in node.keywords:
                    if keyword.arg == "extra" and isinstance(keyword.value, ast.Dict):
                        used.extend(
                            (path.name, key.value)
                            for key in keyword.value.keys
                            if isinstance(key, ast.Constant)
                        )

        assert used
        assert [(name, key) for name, key in used if key in reserved] == []


# ---------------------------------------------------------------------------
# configure_logging
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_second_call_keeps_first_handler(self, fresh_logging):
        first = logging.StreamHandler(StringIO())
        second = logging.StreamHandler(StringIO())

        configure_logging(handler=first)
        configure_logging(handler=second)

        assert first in fresh_logging.handlers
        assert second not in fresh_logging.handlers
        assert isinstance(first.formatter, StructuredFormatter)
        assert not fresh_logging.propagate

    def test_level_applies_to_service_loggers(self, fresh_logging):
        stream = StringIO()
        configure_logging(handler=logging.StreamHandler(stream), level=logging.WARNING)

        logger = get_logger("services.sla_detector")
        logger.info("sla_scan_started")
        logger.warning("sla_scan_quote_failed", extra={"quote_id": "q-1"})

        lines = [json.loads(line) for line in stream.getvalue().splitlines()]
        assert [r["message"] for r in lines] == ["sla_scan_quote_failed"]
        assert lines[0]["quote_id"] == "q-1"
