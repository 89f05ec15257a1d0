"""
SLADetector -- finds late installations and turns them into penalties.

Responsibility:
    For every approved, selected quote past its installation timeline,
    ensure exactly one unresolved ``late_installation`` violation exists and
    that it has been run through the penalty engine once.

Architecture position:
    Kernel > Services.  Driven by an external scheduler through
    ``scan(now)``; the detector itself never sleeps or schedules.

Invariants enforced:
    - Re-running a scan never duplicates an unresolved violation (lookup
      first, partial UNIQUE index as backstop).
    - A violation is penalised at most once; a penalty left pending for
      lack of funds is not re-applied by later scans.
    - A quote is charged at most once per rule.  A violation re-detected
      after an earlier one was resolved is linked to the existing penalty
      instance, whatever its status, and nothing new is debited.
    - penalty_applied is true while the charge stands (applied or
      reversed); PenaltyEngine sets it when a pending penalty is collected.

Failure modes:
    - Per-quote SettlementErrors are caught by scan() and reported in
      ScanResult.errors; the scan continues with the next quote.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from settlement_kernel.domain.clock import Clock
from settlement_kernel.domain.dtos import (
    PenaltyContext,
    PenaltyStatus,
    PenaltyType,
    Quote,
    ScanResult,
    ViolationRecord,
)
from settlement_kernel.domain.evidence import PenaltyEvidence
from settlement_kernel.domain.penalty_policy import severity_for_days_overdue
from settlement_kernel.domain.quotes import QuoteRepository
from settlement_kernel.domain.sla import days_overdue, due_date
from settlement_kernel.exceptions import (
    NoApplicablePenaltyRuleError,
    SettlementError,
    StorageUnavailableError,
    ViolationNotFoundError,
)
from settlement_kernel.logging_config import LogContext, get_logger
from settlement_kernel.models.sla_violation import SLAViolation
from settlement_kernel.services.base import BaseService
from settlement_kernel.services.penalty_engine import PenaltyEngine

logger = get_logger("services.sla_detector")

SLA_ACTOR = "sla_scan"

# Statuses in which the charge stands.
_CHARGED = frozenset({PenaltyStatus.APPLIED, PenaltyStatus.REVERSED})


class QuoteScanStatus(str, Enum):
    ON_TIME = "on_time"
    ALREADY_HANDLED = "already_handled"
    APPLIED = "applied"
    PENDING = "pending"
    NO_RULE = "no_rule"


@dataclass(frozen=True)
class QuoteScanOutcome:
    status: QuoteScanStatus
    new_violation: bool = False
    violation_id: UUID | None = None


QuoteRunner = Callable[[Quote, date], QuoteScanOutcome]


class SLADetector(BaseService):
    def __init__(
        self,
        session: Session,
        quotes: QuoteRepository,
        clock: Clock | None = None,
        penalty_engine: PenaltyEngine | None = None,
    ):
        super().__init__(session, clock)
        self._quotes = quotes
        self._penalties = penalty_engine or PenaltyEngine(session, self._clock)

    def scan(
        self,
        now: datetime | None = None,
        run_quote: QuoteRunner | None = None,
    ) -> ScanResult:
        """
        Check every active quote once.

        ``run_quote`` lets the caller give each quote its own unit of work
        (the settlement engine does, under the contractor's wallet lock).
        By default each quote runs in a savepoint of this session.
        """
        now = now or self._clock.now()
        today = now.astimezone(timezone.utc).date() if now.tzinfo else now.date()
        runner = run_quote or self._process_in_savepoint

        scanned = detected = applied = pending = no_rule = 0
        errors: list[tuple[str, str]] = []

        quotes = self._quotes.list_active_quotes()
        logger.info("sla_scan_started", extra={"today": today.isoformat(), "quotes": len(quotes)})

        for quote in quotes:
            if not quote.is_active:
                continue
            scanned += 1
            try:
                outcome = runner(quote, today)
            except SettlementError as exc:
                logger.error(
                    "sla_scan_quote_failed",
                    extra={"quote_id": quote.quote_id, "contractor_id": quote.contractor_id},
                    exc_info=True,
                )
                errors.append((quote.quote_id, str(exc)))
                continue

            if outcome.new_violation:
                detected += 1
            if outcome.status == QuoteScanStatus.APPLIED:
                applied += 1
            elif outcome.status == QuoteScanStatus.PENDING:
                pending += 1
            elif outcome.status == QuoteScanStatus.NO_RULE:
                no_rule += 1

        result = ScanResult(
            quotes_scanned=scanned,
            violations_detected=detected,
            penalties_applied=applied,
            penalties_pending=pending,
            skipped_no_rule=no_rule,
            errors=tuple(errors),
        )
        logger.info(
            "sla_scan_completed",
            extra={
                "quotes_scanned": result.quotes_scanned,
                "violations_detected": result.violations_detected,
                "penalties_applied": result.penalties_applied,
                "penalties_pending": result.penalties_pending,
                "skipped_no_rule": result.skipped_no_rule,
                "error_count": len(result.errors),
            },
        )
        return result

    def process_quote(self, quote: Quote, today: date) -> QuoteScanOutcome:
        """Detect, record and penalise one quote. Flush-only."""
        overdue = days_overdue(quote, today)
        if overdue <= 0:
            return QuoteScanOutcome(QuoteScanStatus.ON_TIME)

        with LogContext.bind(contractor_id=quote.contractor_id, reference_id=quote.quote_id):
            violation, created = self._open_violation(quote, overdue)

            if violation.penalty_instance_id is not None:
                return QuoteScanOutcome(
                    QuoteScanStatus.ALREADY_HANDLED, created, violation.id
                )

            try:
                rule = self._penalties.detect_and_rank(quote.contractor_id, violation)
            except NoApplicablePenaltyRuleError:
                logger.info(
                    "sla_no_applicable_rule",
                    extra={"quote_id": quote.quote_id, "days_overdue": overdue},
                )
                return QuoteScanOutcome(QuoteScanStatus.NO_RULE, created, violation.id)

            amount = self._penalties.compute_amount(
                rule, PenaltyContext(base_price=quote.base_price, days_overdue=overdue)
            )
            record = self._penalties.apply(
                quote.contractor_id,
                quote.quote_id,
                rule,
                amount,
                evidence=PenaltyEvidence.for_sla(str(violation.id), overdue, due_date(quote)),
                description=f"Late installation: {overdue} day(s) overdue",
                applied_by=SLA_ACTOR,
            )
            violation.penalty_instance_id = record.id
            violation.penalty_applied = record.status in _CHARGED
            self._session.flush()

            if record.evidence.get("violation_id") != str(violation.id):
                # Penalised under this rule for an earlier violation of the quote.
                logger.info(
                    "sla_penalty_already_raised",
                    extra={
                        "quote_id": quote.quote_id,
                        "violation_id": str(violation.id),
                        "penalty_id": str(record.id),
                        "status": record.status.value,
                    },
                )
                return QuoteScanOutcome(
                    QuoteScanStatus.ALREADY_HANDLED, created, violation.id
                )

            status = (
                QuoteScanStatus.APPLIED
                if violation.penalty_applied
                else QuoteScanStatus.PENDING
            )
            return QuoteScanOutcome(status, created, violation.id)

    def resolve_violation(self, violation_id: UUID) -> ViolationRecord:
        """Close a violation; resolving twice is a no-op."""
        violation = self._session.get(SLAViolation, violation_id)
        if violation is None:
            raise ViolationNotFoundError(str(violation_id))
        if violation.resolved_at is None:
            violation.resolved_at = self._clock.now()
            self._session.flush()
            logger.info(
                "sla_violation_resolved",
                extra={"violation_id": str(violation.id), "quote_id": violation.quote_id},
            )
        return ViolationRecord.from_model(violation)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _process_in_savepoint(self, quote: Quote, today: date) -> QuoteScanOutcome:
        savepoint = self._session.begin_nested()
        try:
            outcome = self.process_quote(quote, today)
        except SettlementError:
            savepoint.rollback()
            raise
        except SQLAlchemyError as exc:
            savepoint.rollback()
            raise StorageUnavailableError("sla_scan", str(exc)) from exc
        savepoint.commit()
        return outcome

    def _find_open_violation(self, quote_id: str) -> SLAViolation | None:
        return self._session.execute(
            select(SLAViolation).where(
                SLAViolation.quote_id == quote_id,
                SLAViolation.violation_type == PenaltyType.LATE_INSTALLATION.value,
                SLAViolation.resolved_at.is_(None),
            )
        ).scalar_one_or_none()

    def _open_violation(self, quote: Quote, overdue: int) -> tuple[SLAViolation, bool]:
        severity = severity_for_days_overdue(overdue).value
        violation = self._find_open_violation(quote.quote_id)
        if violation is not None:
            if overdue > violation.days_overdue:
                violation.days_overdue = overdue
                violation.severity_level = severity
                self._session.flush()
            return violation, False

        savepoint = self._session.begin_nested()
        try:
            violation = SLAViolation(
                quote_id=quote.quote_id,
                contractor_id=quote.contractor_id,
                violation_type=PenaltyType.LATE_INSTALLATION.value,
                days_overdue=overdue,
                severity_level=severity,
                auto_detected=True,
                penalty_applied=False,
                detected_at=self._clock.now(),
            )
            self._session.add(violation)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            violation = self._find_open_violation(quote.quote_id)
            if violation is None:
                raise
            return violation, False

        logger.info(
            "sla_violation_detected",
            extra={
                "quote_id": quote.quote_id,
                "contractor_id": quote.contractor_id,
                "days_overdue": overdue,
                "severity_level": severity,
            },
        )
        return violation, True
