"""
Pytest fixtures for the settlement kernel test suite.

Provides:
- A database engine per test (file-backed SQLite by default)
- Sessions, deterministic clock, quote repository and configuration
- A fully wired SettlementEngine facade
- Structured log capture

Environment Variables:
- DATABASE_URL: run against another database (e.g. PostgreSQL) instead of
  the per-test SQLite file.  Tables are dropped and recreated per test.
"""

import json
import logging
import os
from decimal import Decimal
from io import StringIO
from typing import Generator

import pytest
from sqlalchemy.orm import Session

from settlement_config import DEFAULT_CONFIG_PATH, StaticConfigurationSource, get_active_config
from settlement_config.schema import SettlementConfig
from settlement_kernel.db.engine import (
    create_session_factory,
    create_tables,
    drop_tables,
    init_engine_from_url,
)
from settlement_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from settlement_kernel.domain.clock import DeterministicClock
from settlement_kernel.domain.dtos import ReferenceType, TransactionSubtype
from settlement_kernel.domain.quotes import InMemoryQuoteRepository
from settlement_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from settlement_kernel.services.penalty_engine import PenaltyEngine
from settlement_kernel.services.settlement_engine import SettlementEngine
from settlement_kernel.services.wallet_ledger import WalletLedger
from tests.factories import NOW


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture settlement_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, ledger):
            ledger.credit(...)
            logs = captured_logs()
            assert any(r["message"] == "ledger_credit_posted" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("settlement_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "postgres: mark test as requiring PostgreSQL")
    config.addinivalue_line(
        "markers", "slow_locks: mark test as potentially waiting for DB locks"
    )


# =============================================================================
# Database
# =============================================================================


def get_database_url(tmp_path) -> str:
    """DATABASE_URL from the environment, or a fresh SQLite file for this test."""
    return os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'settlement.db'}"


@pytest.fixture
def engine(tmp_path):
    eng = init_engine_from_url(get_database_url(tmp_path), pool_size=30, max_overflow=20)
    drop_tables(eng)
    create_tables(eng)
    register_immutability_listeners()
    yield eng
    drop_tables(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def session(session_factory) -> Generator[Session, None, None]:
    """Session for service-level tests; tests commit explicitly when needed."""
    sess = session_factory()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture
def without_immutability():
    """Disable ORM immutability guards for tests that must corrupt data."""
    unregister_immutability_listeners()
    yield
    register_immutability_listeners()


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(NOW)


@pytest.fixture
def settlement_config() -> SettlementConfig:
    return get_active_config(DEFAULT_CONFIG_PATH)


@pytest.fixture
def config_source(settlement_config) -> StaticConfigurationSource:
    return StaticConfigurationSource(settlement_config)


@pytest.fixture
def quotes() -> InMemoryQuoteRepository:
    return InMemoryQuoteRepository()


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def ledger(session, clock) -> WalletLedger:
    return WalletLedger(session, clock)


@pytest.fixture
def penalty_engine(session, clock, ledger) -> PenaltyEngine:
    return PenaltyEngine(session, clock, ledger)


@pytest.fixture
def seeded_rules(penalty_engine, session, settlement_config) -> int:
    created = penalty_engine.seed_default_rules(settlement_config.penalty_rules)
    session.commit()
    return created


@pytest.fixture
def settlement(session_factory, config_source, quotes, clock) -> SettlementEngine:
    return SettlementEngine(session_factory, config_source, quotes, clock)


@pytest.fixture
def funded_wallet(ledger, session):
    """Credit 5000.00 to contractor c-1; the returned callable funds more."""

    def _fund(contractor_id: str = "c-1", amount: str = "5000.00", reference_id: str = "seed"):
        result = ledger.credit(
            contractor_id,
            Decimal(amount),
            TransactionSubtype.QUOTE_PAYMENT,
            ReferenceType.QUOTE,
            reference_id,
        )
        session.commit()
        return result

    _fund()
    return _fund
