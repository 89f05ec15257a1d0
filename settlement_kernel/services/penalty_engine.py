"""
PenaltyEngine -- rule selection, penalty application and the dispute lifecycle.

Responsibility:
    Loads penalty rules, picks the one that applies to a violation, records
    PenaltyInstance rows and debits the wallet through WalletLedger.  Also
    administers rules (create / update / deactivate / seed from config).

Architecture position:
    Kernel > Services -- imperative shell over domain/penalty_policy.py.
    Flush-only; the caller commits.

Invariants enforced:
    - At most one instance per (contractor, quote, rule); apply() is a no-op
      replay for an existing instance.
    - An instance is ``applied`` only together with its debit transaction,
      and the SLA violation it was raised for is flagged penalty_applied
      in the same flush.
    - A penalty that cannot be debited (insufficient balance, suspended
      wallet) stays ``pending``; it is never dropped.
    - Status changes follow PENALTY_WORKFLOW.

Failure modes:
    - NoApplicablePenaltyRuleError from detect_and_rank().
    - InvalidPenaltyTransitionError on an illegal status change.
    - PenaltyNotFoundError / PenaltyRuleNotFoundError on unknown ids.
    - InsufficientBalanceError / WalletSuspendedError from collect_pending()
      and from resolve(..., reversed) on a never-debited instance.

Dispute outcomes:
    waived   -- the penalty is cancelled; a debit already taken is returned
                with a ``reversal`` credit.
    reversed -- the dispute is overturned and the charge stands; an instance
                disputed before it was ever debited is collected now.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement_kernel.db.types import ZERO, round_money, to_money
from settlement_kernel.domain import penalty_policy
from settlement_kernel.domain.clock import Clock
from settlement_kernel.domain.dtos import (
    AmountCalculation,
    DisputeOutcome,
    PenaltyContext,
    PenaltyRecord,
    PenaltyRuleRecord,
    PenaltyStatus,
    PenaltyType,
    ReferenceType,
    SeverityLevel,
    TransactionSubtype,
)
from settlement_kernel.domain.evidence import PenaltyEvidence
from settlement_kernel.domain.workflow import PENALTY_WORKFLOW
from settlement_kernel.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidConfigurationError,
    InvalidPenaltyTransitionError,
    PenaltyNotFoundError,
    PenaltyRuleNotFoundError,
    WalletSuspendedError,
)
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.penalty import PenaltyInstance, PenaltyRule
from settlement_kernel.models.sla_violation import SLAViolation
from settlement_kernel.services.base import BaseService
from settlement_kernel.services.wallet_ledger import WalletLedger, parse_amount

logger = get_logger("services.penalty_engine")


class ViolationLike(Protocol):
    violation_type: Any
    days_overdue: int


class PenaltyRuleSpec(Protocol):
    """Shape of a rule definition, e.g. settlement_config.PenaltyRuleDef."""

    penalty_type: str
    description: str
    amount_calculation: str
    amount_value: Decimal
    maximum_amount: Decimal | None
    severity_level: str
    grace_period_hours: int
    is_active: bool


_UPDATABLE_RULE_FIELDS = frozenset(
    {
        "description",
        "amount_calculation",
        "amount_value",
        "maximum_amount",
        "severity_level",
        "grace_period_hours",
        "is_active",
    }
)


class PenaltyEngine(BaseService):
    """Applies and administers penalties against contractor wallets."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        ledger: WalletLedger | None = None,
    ):
        super().__init__(session, clock)
        self._ledger = ledger or WalletLedger(session, self._clock)

    # ------------------------------------------------------------------
    # Rule selection
    # ------------------------------------------------------------------

    def active_rules(self, penalty_type: PenaltyType | str | None = None) -> list[PenaltyRuleRecord]:
        stmt = select(PenaltyRule).where(PenaltyRule.is_active.is_(True))
        if penalty_type is not None:
            stmt = stmt.where(PenaltyRule.penalty_type == PenaltyType(penalty_type).value)
        rows = self._session.execute(stmt).scalars().all()
        return [PenaltyRuleRecord.from_model(r) for r in rows]

    def detect_and_rank(self, contractor_id: str, violation: ViolationLike) -> PenaltyRuleRecord:
        """
        Most severe eligible rule for the violation.

        Raises:
            NoApplicablePenaltyRuleError: nothing active past its grace period.
        """
        violation_type = PenaltyType(violation.violation_type)
        rule = penalty_policy.select_rule(
            self.active_rules(violation_type),
            violation_type,
            violation.days_overdue,
        )
        logger.debug(
            "penalty_rule_selected",
            extra={
                "contractor_id": contractor_id,
                "violation_type": violation_type.value,
                "days_overdue": violation.days_overdue,
                "rule_id": str(rule.id),
                "severity_level": rule.severity_level.value,
            },
        )
        return rule

    def compute_amount(self, rule: PenaltyRuleRecord, context: PenaltyContext) -> Decimal:
        return penalty_policy.compute_amount(rule, context)

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def apply(
        self,
        contractor_id: str,
        quote_id: str,
        rule: PenaltyRuleRecord,
        amount: Decimal | int | str,
        evidence: PenaltyEvidence | dict[str, Any] | None = None,
        description: str | None = None,
        applied_by: str | None = None,
    ) -> PenaltyRecord:
        """
        Record a penalty and try to debit it.

        Returns the existing instance unchanged when this (contractor, quote,
        rule) was already penalised.
        """
        value = round_money(parse_amount(amount))
        if value <= ZERO:
            raise InvalidAmountError(str(value), "penalty amount must be positive")
        if not isinstance(evidence, PenaltyEvidence):
            evidence = PenaltyEvidence.from_dict(evidence)

        existing = self._find_instance(contractor_id, quote_id, rule.id)
        if existing is not None:
            logger.info(
                "penalty_apply_replay",
                extra={
                    "contractor_id": contractor_id,
                    "quote_id": quote_id,
                    "penalty_id": str(existing.id),
                    "status": existing.status,
                },
            )
            return PenaltyRecord.from_model(existing)

        savepoint = self._session.begin_nested()
        try:
            instance = PenaltyInstance(
                contractor_id=contractor_id,
                quote_id=quote_id,
                penalty_rule_id=rule.id,
                penalty_type=rule.penalty_type.value,
                amount=value,
                status=PenaltyStatus.PENDING.value,
                evidence=evidence.to_dict(),
                description=description or rule.description,
                applied_by=applied_by,
                created_at=self._clock.now(),
            )
            self._session.add(instance)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            existing = self._find_instance(contractor_id, quote_id, rule.id)
            if existing is None:
                raise
            return PenaltyRecord.from_model(existing)

        logger.info(
            "penalty_recorded",
            extra={
                "contractor_id": contractor_id,
                "quote_id": quote_id,
                "penalty_id": str(instance.id),
                "penalty_type": rule.penalty_type.value,
                "amount": str(value),
            },
        )

        self._try_debit(instance)
        return PenaltyRecord.from_model(instance)

    def apply_manual(
        self,
        contractor_id: str,
        quote_id: str,
        penalty_type: PenaltyType | str,
        context: PenaltyContext,
        evidence: PenaltyEvidence | dict[str, Any] | None = None,
        description: str | None = None,
        applied_by: str | None = None,
        custom_amount: Decimal | int | str | None = None,
    ) -> PenaltyRecord:
        """
        Administrator-issued penalty.

        The most severe active rule of the type is used (no grace check);
        ``custom_amount`` overrides the computed amount.
        """
        penalty_type = PenaltyType(penalty_type)
        rule = penalty_policy.select_rule(self.active_rules(penalty_type), penalty_type)
        if custom_amount is not None:
            amount = round_money(parse_amount(custom_amount))
        else:
            amount = penalty_policy.compute_amount(rule, context)
        return self.apply(
            contractor_id,
            quote_id,
            rule,
            amount,
            evidence=evidence,
            description=description,
            applied_by=applied_by,
        )

    def collect_pending(self, instance_id: UUID) -> PenaltyRecord:
        """
        Retry the debit of a pending penalty.

        Raises:
            InvalidPenaltyTransitionError: instance is not pending.
            InsufficientBalanceError / WalletSuspendedError: still uncollectable.
        """
        instance = self._require_instance(instance_id)
        self._check_transition(instance, PenaltyStatus.APPLIED)
        self._debit(instance)
        return PenaltyRecord.from_model(instance)

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def dispute(self, instance_id: UUID, reason: str) -> PenaltyRecord:
        instance = self._require_instance(instance_id)
        self._check_transition(instance, PenaltyStatus.DISPUTED)
        previous = instance.status
        instance.status = PenaltyStatus.DISPUTED.value
        instance.dispute_reason = reason
        instance.disputed_at = self._clock.now()
        self._session.flush()
        logger.info(
            "penalty_disputed",
            extra={
                "contractor_id": instance.contractor_id,
                "penalty_id": str(instance.id),
                "from_status": previous,
            },
        )
        return PenaltyRecord.from_model(instance)

    def resolve(
        self,
        instance_id: UUID,
        outcome: DisputeOutcome | str,
        notes: str | None = None,
    ) -> PenaltyRecord:
        outcome = DisputeOutcome(outcome)
        target = PenaltyStatus(outcome.value)
        instance = self._require_instance(instance_id)
        self._check_transition(instance, target)

        if target == PenaltyStatus.WAIVED and instance.debit_transaction_id is not None:
            result = self._ledger.credit(
                instance.contractor_id,
                instance.amount,
                TransactionSubtype.REVERSAL,
                ReferenceType.PENALTY,
                str(instance.id),
                description=f"Penalty waived: {instance.penalty_type}",
            )
            instance.reversal_transaction_id = result.transaction.id
        elif target == PenaltyStatus.REVERSED and instance.debit_transaction_id is None:
            result = self._ledger.debit(
                instance.contractor_id,
                instance.amount,
                TransactionSubtype.PENALTY,
                ReferenceType.PENALTY,
                str(instance.id),
                description=instance.description,
            )
            instance.debit_transaction_id = result.transaction.id
            instance.applied_at = self._clock.now()
            self._mark_violations_penalised(instance)

        instance.status = target.value
        instance.resolution_notes = notes
        instance.resolved_at = self._clock.now()
        self._session.flush()
        logger.info(
            "penalty_resolved",
            extra={
                "contractor_id": instance.contractor_id,
                "penalty_id": str(instance.id),
                "outcome": outcome.value,
                "amount": str(instance.amount),
            },
        )
        return PenaltyRecord.from_model(instance)

    def open_disputes(self, contractor_id: str) -> list[PenaltyInstance]:
        return list(
            self._session.execute(
                select(PenaltyInstance).where(
                    PenaltyInstance.contractor_id == contractor_id,
                    PenaltyInstance.status == PenaltyStatus.DISPUTED.value,
                )
            ).scalars()
        )

    # ------------------------------------------------------------------
    # Rule administration
    # ------------------------------------------------------------------

    def create_rule(
        self,
        penalty_type: PenaltyType | str,
        description: str,
        amount_calculation: AmountCalculation | str,
        amount_value: Decimal | int | str,
        severity_level: SeverityLevel | str,
        maximum_amount: Decimal | int | str | None = None,
        grace_period_hours: int = 0,
        is_active: bool = True,
    ) -> PenaltyRuleRecord:
        fields = self._validated_rule_fields(
            {
                "penalty_type": penalty_type,
                "description": description,
                "amount_calculation": amount_calculation,
                "amount_value": amount_value,
                "maximum_amount": maximum_amount,
                "severity_level": severity_level,
                "grace_period_hours": grace_period_hours,
                "is_active": is_active,
            }
        )
        rule = PenaltyRule(**fields)
        self._session.add(rule)
        self._session.flush()
        logger.info(
            "penalty_rule_created",
            extra={
                "rule_id": str(rule.id),
                "penalty_type": rule.penalty_type,
                "severity_level": rule.severity_level,
            },
        )
        return PenaltyRuleRecord.from_model(rule)

    def update_rule(self, rule_id: UUID, **changes: Any) -> PenaltyRuleRecord:
        unknown = sorted(set(changes) - _UPDATABLE_RULE_FIELDS)
        if unknown:
            raise InvalidConfigurationError(", ".join(unknown), "not an updatable rule field")
        rule = self._require_rule(rule_id)
        current = {
            "penalty_type": rule.penalty_type,
            "description": rule.description,
            "amount_calculation": rule.amount_calculation,
            "amount_value": rule.amount_value,
            "maximum_amount": rule.maximum_amount,
            "severity_level": rule.severity_level,
            "grace_period_hours": rule.grace_period_hours,
            "is_active": rule.is_active,
        }
        current.update(changes)
        fields = self._validated_rule_fields(current)
        for name in changes:
            setattr(rule, name, fields[name])
        self._session.flush()
        logger.info(
            "penalty_rule_updated",
            extra={"rule_id": str(rule.id), "fields": sorted(changes)},
        )
        return PenaltyRuleRecord.from_model(rule)

    def deactivate_rule(self, rule_id: UUID) -> PenaltyRuleRecord:
        return self.update_rule(rule_id, is_active=False)

    def seed_default_rules(self, rule_defs: Iterable[PenaltyRuleSpec]) -> int:
        """
        Insert configured rules that are not present yet.

        A rule counts as present when one with the same type, severity and
        calculation exists, active or not.  Returns the number inserted.
        """
        created = 0
        for rule_def in rule_defs:
            exists = self._session.execute(
                select(PenaltyRule.id).where(
                    PenaltyRule.penalty_type == rule_def.penalty_type,
                    PenaltyRule.severity_level == rule_def.severity_level,
                    PenaltyRule.amount_calculation == rule_def.amount_calculation,
                )
            ).first()
            if exists is not None:
                continue
            self.create_rule(
                penalty_type=rule_def.penalty_type,
                description=rule_def.description,
                amount_calculation=rule_def.amount_calculation,
                amount_value=rule_def.amount_value,
                severity_level=rule_def.severity_level,
                maximum_amount=rule_def.maximum_amount,
                grace_period_hours=rule_def.grace_period_hours,
                is_active=rule_def.is_active,
            )
            created += 1
        logger.info("penalty_rules_seeded", extra={"rules_created": created})
        return created

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _try_debit(self, instance: PenaltyInstance) -> None:
        try:
            self._debit(instance)
        except (InsufficientBalanceError, WalletSuspendedError) as exc:
            logger.warning(
                "penalty_pending",
                extra={
                    "contractor_id": instance.contractor_id,
                    "penalty_id": str(instance.id),
                    "amount": str(instance.amount),
                    "reason": exc.code,
                },
            )

    def _debit(self, instance: PenaltyInstance) -> None:
        result = self._ledger.debit(
            instance.contractor_id,
            instance.amount,
            TransactionSubtype.PENALTY,
            ReferenceType.PENALTY,
            str(instance.id),
            description=instance.description,
        )
        instance.debit_transaction_id = result.transaction.id
        instance.status = PenaltyStatus.APPLIED.value
        instance.applied_at = self._clock.now()
        self._mark_violations_penalised(instance)
        self._session.flush()
        logger.info(
            "penalty_applied",
            extra={
                "contractor_id": instance.contractor_id,
                "penalty_id": str(instance.id),
                "amount": str(instance.amount),
                "debit_transaction_id": str(result.transaction.id),
            },
        )

    def _mark_violations_penalised(self, instance: PenaltyInstance) -> None:
        violations = self._session.execute(
            select(SLAViolation).where(
                SLAViolation.penalty_instance_id == instance.id,
                SLAViolation.penalty_applied.is_(False),
            )
        ).scalars().all()
        for violation in violations:
            violation.penalty_applied = True
            logger.info(
                "sla_violation_penalised",
                extra={
                    "violation_id": str(violation.id),
                    "quote_id": violation.quote_id,
                    "penalty_id": str(instance.id),
                },
            )

    def _check_transition(self, instance: PenaltyInstance, target: PenaltyStatus) -> None:
        if not PENALTY_WORKFLOW.can_transition(instance.status, target.value):
            raise InvalidPenaltyTransitionError(str(instance.id), instance.status, target.value)

    def _find_instance(
        self, contractor_id: str, quote_id: str, rule_id: UUID
    ) -> PenaltyInstance | None:
        return self._session.execute(
            select(PenaltyInstance).where(
                PenaltyInstance.contractor_id == contractor_id,
                PenaltyInstance.quote_id == quote_id,
                PenaltyInstance.penalty_rule_id == rule_id,
            )
        ).scalar_one_or_none()

    def _require_instance(self, instance_id: UUID) -> PenaltyInstance:
        instance = self._session.get(PenaltyInstance, instance_id, populate_existing=True)
        if instance is None:
            raise PenaltyNotFoundError(str(instance_id))
        return instance

    def _require_rule(self, rule_id: UUID) -> PenaltyRule:
        rule = self._session.get(PenaltyRule, rule_id)
        if rule is None:
            raise PenaltyRuleNotFoundError(str(rule_id))
        return rule

    @staticmethod
    def _validated_rule_fields(raw: dict[str, Any]) -> dict[str, Any]:
        try:
            penalty_type = PenaltyType(raw["penalty_type"]).value
        except ValueError:
            raise InvalidConfigurationError("penalty_type", f"unknown: {raw['penalty_type']!r}") from None
        try:
            calculation = AmountCalculation(raw["amount_calculation"])
        except ValueError:
            raise InvalidConfigurationError(
                "amount_calculation", f"unknown: {raw['amount_calculation']!r}"
            ) from None
        try:
            severity = SeverityLevel(raw["severity_level"]).value
        except ValueError:
            raise InvalidConfigurationError(
                "severity_level", f"unknown: {raw['severity_level']!r}"
            ) from None

        amount_value = round_money(to_money(raw["amount_value"]))
        if amount_value < ZERO:
            raise InvalidConfigurationError("amount_value", "must not be negative")
        if calculation == AmountCalculation.PERCENTAGE and amount_value > Decimal("100"):
            raise InvalidConfigurationError("amount_value", "percentage must not exceed 100")

        maximum = raw.get("maximum_amount")
        if maximum is not None:
            maximum = round_money(to_money(maximum))
            if maximum < ZERO:
                raise InvalidConfigurationError("maximum_amount", "must not be negative")

        grace = raw.get("grace_period_hours", 0)
        if isinstance(grace, bool) or not isinstance(grace, int) or grace < 0:
            raise InvalidConfigurationError("grace_period_hours", "must be a non-negative integer")

        description = raw.get("description")
        if not description:
            raise InvalidConfigurationError("description", "must not be empty")

        return {
            "penalty_type": penalty_type,
            "description": description,
            "amount_calculation": calculation.value,
            "amount_value": amount_value,
            "maximum_amount": maximum,
            "severity_level": severity,
            "grace_period_hours": grace,
            "is_active": bool(raw.get("is_active", True)),
        }
