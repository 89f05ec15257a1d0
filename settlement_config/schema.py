"""
Settlement configuration schema.

The YAML configuration set is parsed by the loader into these frozen
dataclasses.  Construction validates every business limit, so an object of
these types is always usable as-is by the kernel.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from settlement_kernel.domain.dtos import AmountCalculation, PenaltyType, SeverityLevel
from settlement_kernel.exceptions import InvalidConfigurationError

# Markup and commission above this are rejected outright.
MAX_RATE_PERCENT = Decimal("50")


@dataclass(frozen=True)
class PenaltyRuleDef:
    """A penalty rule to seed into an empty rule table."""

    penalty_type: str
    description: str
    amount_calculation: str
    amount_value: Decimal
    severity_level: str
    maximum_amount: Decimal | None = None
    grace_period_hours: int = 0
    is_active: bool = True

    def __post_init__(self) -> None:
        for name, enum_cls in (
            ("penalty_type", PenaltyType),
            ("amount_calculation", AmountCalculation),
            ("severity_level", SeverityLevel),
        ):
            value = getattr(self, name)
            try:
                enum_cls(value)
            except ValueError:
                raise InvalidConfigurationError(
                    f"penalty_rules.{name}", f"unknown value {value!r}"
                ) from None
        if self.amount_value < 0:
            raise InvalidConfigurationError("penalty_rules.amount_value", "must not be negative")
        if self.maximum_amount is not None and self.maximum_amount < 0:
            raise InvalidConfigurationError("penalty_rules.maximum_amount", "must not be negative")
        if self.grace_period_hours < 0:
            raise InvalidConfigurationError(
                "penalty_rules.grace_period_hours", "must not be negative"
            )


@dataclass(frozen=True)
class SettlementConfig:
    """Business parameters in force for one operation."""

    markup_percent: Decimal
    commission_percent: Decimal
    min_withdrawal_amount: Decimal
    max_price_per_kwp: Decimal
    currency: str = "SAR"
    max_conflict_retries: int = 3
    history_page_size: int = 20
    penalty_rules: tuple[PenaltyRuleDef, ...] = field(default_factory=tuple)
    checksum: str | None = None

    def __post_init__(self) -> None:
        for name in ("markup_percent", "commission_percent"):
            value = getattr(self, name)
            if value < 0:
                raise InvalidConfigurationError(name, "must not be negative")
            if value > MAX_RATE_PERCENT:
                raise InvalidConfigurationError(name, f"must not exceed {MAX_RATE_PERCENT}%")
        if self.min_withdrawal_amount <= 0:
            raise InvalidConfigurationError("min_withdrawal_amount", "must be positive")
        if self.max_price_per_kwp <= 0:
            raise InvalidConfigurationError("max_price_per_kwp", "must be positive")
        if len(self.currency) != 3 or not self.currency.isupper():
            raise InvalidConfigurationError("currency", "must be a 3-letter ISO 4217 code")
        if self.max_conflict_retries < 1:
            raise InvalidConfigurationError("max_conflict_retries", "must be at least 1")
        if not 1 <= self.history_page_size <= 100:
            raise InvalidConfigurationError("history_page_size", "must be between 1 and 100")
