"""
SettlementEngine -- the unit-of-work facade over the settlement services.

Responsibility:
    The one object request handlers and the SLA scheduler talk to.  Each
    public method is one atomic operation:

        1. read configuration from the injected source (before any lock)
        2. take the contractor's in-process wallet lock
        3. open a session scope, build the services on it, run the work
        4. commit; on StaleDataError retry from step 3, up to
           ``max_conflict_retries`` more times, then raise ConflictError

Architecture position:
    Kernel > Services -- outermost kernel layer.  The process entry point
    builds the Engine / sessionmaker (db.engine.init_engine_from_url) and the
    configuration source, and injects them here.  The kernel never imports
    settlement_config; any object with the same attributes works.

Failure modes:
    - Typed SettlementErrors from the services propagate unchanged, after
      the unit of work was rolled back.
    - sqlalchemy errors other than StaleDataError become
      StorageUnavailableError.
    - ConflictError when the optimistic version check keeps failing.

Usage:
    engine = init_engine_from_url("postgresql://...")
    settlement = SettlementEngine(
        create_session_factory(engine),
        YamlConfigurationSource("settlement.yaml"),
        quote_repository,
    )
    settlement.settle_quote("q-123")
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Protocol, TypeVar
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from settlement_kernel.db.engine import session_scope
from settlement_kernel.db.immutability import register_immutability_listeners
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.domain.dtos import (
    DisputeOutcome,
    HistoryFilters,
    HistoryPage,
    LedgerResult,
    PenaltyContext,
    PenaltyFilters,
    PenaltyPage,
    PenaltyRecord,
    PenaltyRuleRecord,
    PenaltyStatistics,
    PenaltyType,
    Quote,
    ReferenceType,
    ScanResult,
    TransactionSubtype,
    ViolationRecord,
    WalletBalance,
    WalletVerification,
    WithdrawalOutcome,
    WithdrawalRecord,
)
from settlement_kernel.domain.evidence import PaymentMethod
from settlement_kernel.domain.quotes import QuoteRepository
from settlement_kernel.domain.sla import days_overdue
from settlement_kernel.exceptions import (
    ConflictError,
    PenaltyNotFoundError,
    SettlementError,
    StorageUnavailableError,
    WithdrawalNotFoundError,
)
from settlement_kernel.logging_config import LogContext, get_logger
from settlement_kernel.models.penalty import PenaltyInstance
from settlement_kernel.models.withdrawal import WithdrawalRequest
from settlement_kernel.selectors.wallet_selector import WalletSelector
from settlement_kernel.services.penalty_engine import PenaltyEngine, PenaltyRuleSpec
from settlement_kernel.services.settlement_service import SettlementResult, SettlementService
from settlement_kernel.services.sla_detector import QuoteScanOutcome, SLADetector
from settlement_kernel.services.wallet_ledger import WalletLedger
from settlement_kernel.services.wallet_locks import WalletLockRegistry
from settlement_kernel.services.withdrawal_workflow import WithdrawalWorkflow

logger = get_logger("services.settlement_engine")

T = TypeVar("T")


class SettlementSettings(Protocol):
    markup_percent: Decimal
    commission_percent: Decimal
    min_withdrawal_amount: Decimal
    max_price_per_kwp: Decimal
    currency: str
    max_conflict_retries: int
    history_page_size: int
    penalty_rules: Iterable[PenaltyRuleSpec]


class SettingsSource(Protocol):
    def load(self) -> SettlementSettings:
        ...


class _Services:
    """Services sharing one session and one ledger instance."""

    def __init__(self, session: Session, clock: Clock, currency: str):
        self.session = session
        self.ledger = WalletLedger(session, clock, currency)
        self.penalties = PenaltyEngine(session, clock, self.ledger)
        self.withdrawals = WithdrawalWorkflow(session, clock, self.ledger, self.penalties)
        self.settlement = SettlementService(session, clock, self.ledger)


class SettlementEngine:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config_source: SettingsSource,
        quotes: QuoteRepository,
        clock: Clock | None = None,
        locks: WalletLockRegistry | None = None,
    ):
        self._session_factory = session_factory
        self._config_source = config_source
        self._quotes = quotes
        self._clock = clock or SystemClock()
        self._locks = locks or WalletLockRegistry()
        register_immutability_listeners()

    # ------------------------------------------------------------------
    # Unit-of-work plumbing
    # ------------------------------------------------------------------

    def _settings(self) -> SettlementSettings:
        return self._config_source.load()

    def _run_locked(
        self,
        operation: str,
        contractor_id: str,
        settings: SettlementSettings,
        work: Callable[[_Services], T],
    ) -> T:
        attempts = settings.max_conflict_retries + 1
        with LogContext.bind(operation=operation, contractor_id=contractor_id):
            with self._locks.hold(contractor_id):
                for attempt in range(1, attempts + 1):
                    try:
                        with session_scope(self._session_factory) as session:
                            return work(_Services(session, self._clock, settings.currency))
                    except StaleDataError:
                        logger.warning(
                            "wallet_version_conflict",
                            extra={"attempt": attempt, "max_attempts": attempts},
                        )
                    except SettlementError:
                        raise
                    except SQLAlchemyError as exc:
                        logger.error("storage_failure", exc_info=True)
                        raise StorageUnavailableError(operation, str(exc)) from exc
                logger.error("wallet_conflict_exhausted", extra={"attempts": attempts})
                raise ConflictError(contractor_id, attempts)

    def _run(self, operation: str, work: Callable[[Session], T]) -> T:
        """Unit of work that touches no wallet (reads, rule administration)."""
        with LogContext.bind(operation=operation):
            try:
                with session_scope(self._session_factory) as session:
                    return work(session)
            except SettlementError:
                raise
            except SQLAlchemyError as exc:
                logger.error("storage_failure", exc_info=True)
                raise StorageUnavailableError(operation, str(exc)) from exc

    def _penalty_owner(self, instance_id: UUID) -> str:
        def find(session: Session) -> str:
            instance = session.get(PenaltyInstance, instance_id)
            if instance is None:
                raise PenaltyNotFoundError(str(instance_id))
            return instance.contractor_id

        return self._run("lookup_penalty", find)

    def _withdrawal_owner(self, request_id: UUID) -> str:
        def find(session: Session) -> str:
            request = session.get(WithdrawalRequest, request_id)
            if request is None:
                raise WithdrawalNotFoundError(str(request_id))
            return request.contractor_id

        return self._run("lookup_withdrawal", find)

    # ------------------------------------------------------------------
    # Settlement and ledger
    # ------------------------------------------------------------------

    def settle_quote(self, quote_id: str) -> SettlementResult:
        """Credit the contractor's net for an approved, selected quote."""
        settings = self._settings()
        quote = self._quotes.get_quote(quote_id)
        with LogContext.bind(reference_id=quote_id):
            return self._run_locked(
                "settle_quote",
                quote.contractor_id,
                settings,
                lambda s: s.settlement.settle_quote(
                    quote,
                    settings.markup_percent,
                    settings.commission_percent,
                    settings.max_price_per_kwp,
                ),
            )

    def credit(
        self,
        contractor_id: str,
        amount: Decimal | int | str,
        subtype: TransactionSubtype,
        reference_type: ReferenceType,
        reference_id: str,
        commission: Decimal | int | str = Decimal("0"),
        description: str | None = None,
    ) -> LedgerResult:
        settings = self._settings()
        return self._run_locked(
            "credit",
            contractor_id,
            settings,
            lambda s: s.ledger.credit(
                contractor_id,
                amount,
                subtype,
                reference_type,
                reference_id,
                commission=commission,
                description=description,
            ),
        )

    def debit(
        self,
        contractor_id: str,
        amount: Decimal | int | str,
        subtype: TransactionSubtype,
        reference_type: ReferenceType,
        reference_id: str,
        description: str | None = None,
    ) -> LedgerResult:
        settings = self._settings()
        return self._run_locked(
            "debit",
            contractor_id,
            settings,
            lambda s: s.ledger.debit(
                contractor_id, amount, subtype, reference_type, reference_id, description
            ),
        )

    def get_or_create_wallet(self, contractor_id: str) -> WalletBalance:
        settings = self._settings()
        return self._run_locked(
            "get_or_create_wallet",
            contractor_id,
            settings,
            lambda s: WalletBalance.from_model(s.ledger.get_or_create_wallet(contractor_id)),
        )

    def suspend_wallet(self, contractor_id: str, reason: str | None = None) -> WalletBalance:
        settings = self._settings()
        return self._run_locked(
            "suspend_wallet",
            contractor_id,
            settings,
            lambda s: s.ledger.suspend(contractor_id, reason),
        )

    def reinstate_wallet(self, contractor_id: str) -> WalletBalance:
        settings = self._settings()
        return self._run_locked(
            "reinstate_wallet",
            contractor_id,
            settings,
            lambda s: s.ledger.reinstate(contractor_id),
        )

    def update_payment_methods(
        self, contractor_id: str, methods: list[dict[str, Any]]
    ) -> tuple[PaymentMethod, ...]:
        """Replace the wallet's payout methods; exactly one must be primary."""
        settings = self._settings()
        return self._run_locked(
            "update_payment_methods",
            contractor_id,
            settings,
            lambda s: s.ledger.update_payment_methods(contractor_id, methods),
        )

    # ------------------------------------------------------------------
    # Penalties
    # ------------------------------------------------------------------

    def apply_manual_penalty(
        self,
        contractor_id: str,
        quote_id: str,
        penalty_type: PenaltyType | str,
        evidence: dict[str, Any] | None = None,
        description: str | None = None,
        applied_by: str | None = None,
        custom_amount: Decimal | int | str | None = None,
    ) -> PenaltyRecord:
        settings = self._settings()
        quote = self._quotes.get_quote(quote_id)
        context = PenaltyContext(
            base_price=quote.base_price,
            days_overdue=days_overdue(quote, self._clock.today()),
        )
        with LogContext.bind(reference_id=quote_id, actor_id=applied_by):
            return self._run_locked(
                "apply_manual_penalty",
                contractor_id,
                settings,
                lambda s: s.penalties.apply_manual(
                    contractor_id,
                    quote_id,
                    penalty_type,
                    context,
                    evidence=evidence,
                    description=description,
                    applied_by=applied_by,
                    custom_amount=custom_amount,
                ),
            )

    def dispute_penalty(self, instance_id: UUID, reason: str) -> PenaltyRecord:
        settings = self._settings()
        contractor_id = self._penalty_owner(instance_id)
        return self._run_locked(
            "dispute_penalty",
            contractor_id,
            settings,
            lambda s: s.penalties.dispute(instance_id, reason),
        )

    def resolve_penalty(
        self,
        instance_id: UUID,
        outcome: DisputeOutcome | str,
        notes: str | None = None,
    ) -> PenaltyRecord:
        settings = self._settings()
        contractor_id = self._penalty_owner(instance_id)
        return self._run_locked(
            "resolve_penalty",
            contractor_id,
            settings,
            lambda s: s.penalties.resolve(instance_id, outcome, notes),
        )

    def collect_pending_penalty(self, instance_id: UUID) -> PenaltyRecord:
        settings = self._settings()
        contractor_id = self._penalty_owner(instance_id)
        return self._run_locked(
            "collect_pending_penalty",
            contractor_id,
            settings,
            lambda s: s.penalties.collect_pending(instance_id),
        )

    def create_penalty_rule(self, **fields: Any) -> PenaltyRuleRecord:
        return self._run(
            "create_penalty_rule",
            lambda session: PenaltyEngine(session, self._clock).create_rule(**fields),
        )

    def update_penalty_rule(self, rule_id: UUID, **changes: Any) -> PenaltyRuleRecord:
        return self._run(
            "update_penalty_rule",
            lambda session: PenaltyEngine(session, self._clock).update_rule(rule_id, **changes),
        )

    def deactivate_penalty_rule(self, rule_id: UUID) -> PenaltyRuleRecord:
        return self._run(
            "deactivate_penalty_rule",
            lambda session: PenaltyEngine(session, self._clock).deactivate_rule(rule_id),
        )

    def seed_default_rules(self) -> int:
        settings = self._settings()
        return self._run(
            "seed_default_rules",
            lambda session: PenaltyEngine(session, self._clock).seed_default_rules(
                settings.penalty_rules
            ),
        )

    # ------------------------------------------------------------------
    # SLA
    # ------------------------------------------------------------------

    def scan(self, now: datetime | None = None) -> ScanResult:
        """
        Run one SLA scan.  Each overdue quote is its own unit of work under
        its contractor's wallet lock; a failing quote is reported in
        ``ScanResult.errors`` and does not stop the scan.
        """
        settings = self._settings()

        def run_quote(quote: Quote, today: date) -> QuoteScanOutcome:
            with LogContext.bind(reference_id=quote.quote_id):
                return self._run_locked(
                    "sla_scan_quote",
                    quote.contractor_id,
                    settings,
                    lambda s: SLADetector(
                        s.session, self._quotes, self._clock, s.penalties
                    ).process_quote(quote, today),
                )

        with LogContext.bind(operation="sla_scan"):
            detector = SLADetector(self._session_factory(), self._quotes, self._clock)
            try:
                return detector.scan(now or self._clock.now(), run_quote=run_quote)
            finally:
                detector.session.close()

    def resolve_violation(self, violation_id: UUID) -> ViolationRecord:
        return self._run(
            "resolve_violation",
            lambda session: SLADetector(session, self._quotes, self._clock).resolve_violation(
                violation_id
            ),
        )

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    def request_withdrawal(
        self,
        contractor_id: str,
        amount: Decimal | int | str,
        payment_method: dict[str, Any] | None = None,
    ) -> WithdrawalRecord:
        settings = self._settings()
        return self._run_locked(
            "request_withdrawal",
            contractor_id,
            settings,
            lambda s: s.withdrawals.request_withdrawal(
                contractor_id,
                amount,
                settings.min_withdrawal_amount,
                payment_method,
            ),
        )

    def finalize_withdrawal(
        self,
        request_id: UUID,
        outcome: WithdrawalOutcome | str,
        admin_notes: str | None = None,
    ) -> WithdrawalRecord:
        settings = self._settings()
        contractor_id = self._withdrawal_owner(request_id)
        with LogContext.bind(reference_id=str(request_id)):
            return self._run_locked(
                "finalize_withdrawal",
                contractor_id,
                settings,
                lambda s: s.withdrawals.finalize(request_id, outcome, admin_notes),
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_balance(self, contractor_id: str) -> WalletBalance:
        return self._run("get_balance", lambda s: WalletSelector(s).get_balance(contractor_id))

    def get_history(
        self,
        contractor_id: str,
        page: int = 1,
        page_size: int | None = None,
        filters: HistoryFilters | None = None,
    ) -> HistoryPage:
        size = page_size if page_size is not None else self._settings().history_page_size
        return self._run(
            "get_history",
            lambda s: WalletSelector(s).get_history(contractor_id, page, size, filters),
        )

    def get_pending_penalties(self, contractor_id: str) -> list[PenaltyRecord]:
        return self._run(
            "get_pending_penalties",
            lambda s: WalletSelector(s).get_pending_penalties(contractor_id),
        )

    def list_penalties(
        self,
        contractor_id: str,
        page: int = 1,
        page_size: int | None = None,
        filters: PenaltyFilters | None = None,
    ) -> PenaltyPage:
        size = page_size if page_size is not None else self._settings().history_page_size
        return self._run(
            "list_penalties",
            lambda s: WalletSelector(s).list_penalties(contractor_id, page, size, filters),
        )

    def get_payment_methods(self, contractor_id: str) -> list[PaymentMethod]:
        return self._run(
            "get_payment_methods",
            lambda s: WalletSelector(s).get_payment_methods(contractor_id),
        )

    def list_withdrawals(self, contractor_id: str) -> list[WithdrawalRecord]:
        return self._run(
            "list_withdrawals",
            lambda s: WalletSelector(s).list_withdrawals(contractor_id),
        )

    def get_withdrawal_status(self, request_id: UUID) -> WithdrawalRecord:
        return self._run(
            "get_withdrawal_status",
            lambda s: WalletSelector(s).get_withdrawal_status(request_id),
        )

    def verify_wallet(self, contractor_id: str) -> WalletVerification:
        result = self._run("verify_wallet", lambda s: WalletSelector(s).verify_wallet(contractor_id))
        if not result.ok:
            logger.error(
                "wallet_invariant_violation",
                extra={
                    "contractor_id": contractor_id,
                    "violations": [v.invariant.value for v in result.violations],
                },
            )
        return result

    def get_violations(
        self, contractor_id: str | None = None, unresolved_only: bool = True
    ) -> list[ViolationRecord]:
        return self._run(
            "get_violations",
            lambda s: WalletSelector(s).get_violations(contractor_id, unresolved_only),
        )

    def penalty_statistics(self, contractor_id: str | None = None) -> PenaltyStatistics:
        return self._run(
            "penalty_statistics",
            lambda s: WalletSelector(s).penalty_statistics(contractor_id),
        )
