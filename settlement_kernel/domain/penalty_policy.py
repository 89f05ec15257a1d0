"""
Penalty policy -- pure rule selection and amount computation.

Architecture position:
    Kernel > Domain -- zero I/O.  Operates on PenaltyRuleRecord DTOs; the
    penalty engine loads rules from storage and calls in here.

Rule selection:
    A rule is eligible for a violation when it is active, its penalty_type
    matches the violation type, and the violation is past the rule's grace
    period (days_overdue * 24 > grace_period_hours).  Among eligible rules
    the most severe wins; ties go to the larger amount_value.

Amounts:
    fixed      -> amount_value
    percentage -> amount_value% of context.base_price
    daily      -> amount_value * context.days_overdue
    The result is clamped to maximum_amount (when set) and rounded half-even.
"""

from collections.abc import Iterable
from decimal import Decimal

from settlement_kernel.db.types import ZERO, round_money
from settlement_kernel.domain.dtos import (
    AmountCalculation,
    PenaltyContext,
    PenaltyRuleRecord,
    PenaltyType,
    SeverityLevel,
)
from settlement_kernel.exceptions import NoApplicablePenaltyRuleError

HOURS_PER_DAY = 24


def is_past_grace(rule: PenaltyRuleRecord, days_overdue: int) -> bool:
    return days_overdue * HOURS_PER_DAY > rule.grace_period_hours


def eligible_rules(
    rules: Iterable[PenaltyRuleRecord],
    violation_type: PenaltyType,
    days_overdue: int | None = None,
) -> list[PenaltyRuleRecord]:
    """
    Filter rules down to those that may be applied to this violation.

    days_overdue=None skips the grace check (manual penalties are not
    time-based).
    """
    result = []
    for rule in rules:
        if not rule.is_active or rule.penalty_type != violation_type:
            continue
        if days_overdue is not None and not is_past_grace(rule, days_overdue):
            continue
        result.append(rule)
    return result


def rank_rules(rules: Iterable[PenaltyRuleRecord]) -> list[PenaltyRuleRecord]:
    """Most severe first; ties broken by highest amount_value."""
    return sorted(
        rules,
        key=lambda r: (r.severity_level.rank, r.amount_value),
        reverse=True,
    )


def select_rule(
    rules: Iterable[PenaltyRuleRecord],
    violation_type: PenaltyType,
    days_overdue: int | None = None,
) -> PenaltyRuleRecord:
    """
    Pick the single rule to apply.

    Raises:
        NoApplicablePenaltyRuleError: nothing eligible.
    """
    ranked = rank_rules(eligible_rules(rules, violation_type, days_overdue))
    if not ranked:
        raise NoApplicablePenaltyRuleError(PenaltyType(violation_type).value)
    return ranked[0]


def compute_amount(rule: PenaltyRuleRecord, context: PenaltyContext) -> Decimal:
    """Money owed under ``rule`` for the given context, capped and rounded."""
    calculation = AmountCalculation(rule.amount_calculation)
    if calculation == AmountCalculation.FIXED:
        raw = rule.amount_value
    elif calculation == AmountCalculation.PERCENTAGE:
        raw = rule.amount_value * context.base_price / Decimal("100")
    else:
        raw = rule.amount_value * Decimal(max(context.days_overdue, 0))

    if rule.maximum_amount is not None and raw > rule.maximum_amount:
        raw = rule.maximum_amount
    if raw < ZERO:
        raw = ZERO
    return round_money(raw)


def severity_for_days_overdue(days_overdue: int) -> SeverityLevel:
    """Severity bands for late installations: <=3, <=7, <=14, beyond."""
    if days_overdue <= 3:
        return SeverityLevel.MINOR
    if days_overdue <= 7:
        return SeverityLevel.MODERATE
    if days_overdue <= 14:
        return SeverityLevel.MAJOR
    return SeverityLevel.CRITICAL
