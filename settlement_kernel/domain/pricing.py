"""
Pricing -- customer price and contractor net from a quote's base price.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Percentages are passed in by the
    caller (read from the active configuration), never hard-coded here.

Formulas:
    markup_amount     = base_price * markup_percent / 100
    customer_price    = base_price + markup_amount
    commission_amount = base_price * commission_percent / 100
    contractor_net    = base_price - commission_amount
    platform_revenue  = markup_amount + commission_amount

Every derived amount goes through round_money() (2 dp, ROUND_HALF_EVEN).
The intermediate products are exact Decimals, so rounding happens once.
"""

from dataclasses import dataclass
from decimal import Decimal

from settlement_kernel.db.types import ZERO, round_money, to_money
from settlement_kernel.domain.dtos import Quote
from settlement_kernel.exceptions import (
    InvalidAmountError,
    InvalidConfigurationError,
    PricingMismatchError,
)

HUNDRED = Decimal("100")

# Allowed drift between base_price and price_per_kwp * system_size_kwp.
SYSTEM_SIZE_TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class PriceBreakdown:
    base_price: Decimal
    customer_price: Decimal
    contractor_net: Decimal
    markup_amount: Decimal
    commission_amount: Decimal

    @property
    def platform_revenue(self) -> Decimal:
        return self.markup_amount + self.commission_amount


def compute(
    base_price: Decimal | int | str,
    markup_percent: Decimal | int | str,
    commission_percent: Decimal | int | str,
) -> PriceBreakdown:
    """
    Split a base price into what the customer pays and what the contractor nets.

    Raises:
        InvalidAmountError: base_price <= 0.
        InvalidConfigurationError: a percent is negative, or commission would
            push contractor_net below zero.
        TypeError: any argument is a float.
    """
    base = to_money(base_price)
    markup = to_money(markup_percent)
    commission = to_money(commission_percent)

    if base <= ZERO:
        raise InvalidAmountError(str(base), "base price must be positive")
    if markup < 0:
        raise InvalidConfigurationError("markup_percent", f"must not be negative, got {markup}")
    if commission < 0:
        raise InvalidConfigurationError(
            "commission_percent", f"must not be negative, got {commission}"
        )

    markup_amount = round_money(base * markup / HUNDRED)
    commission_amount = round_money(base * commission / HUNDRED)
    contractor_net = round_money(base) - commission_amount
    if contractor_net < ZERO:
        raise InvalidConfigurationError(
            "commission_percent",
            f"commission {commission}% leaves a negative contractor net on {base}",
        )

    return PriceBreakdown(
        base_price=round_money(base),
        customer_price=round_money(base) + markup_amount,
        contractor_net=contractor_net,
        markup_amount=markup_amount,
        commission_amount=commission_amount,
    )


def validate_quote_pricing(quote: Quote, max_price_per_kwp: Decimal) -> None:
    """
    Reject a quote whose pricing fields are out of bounds or inconsistent.

    Checks price_per_kwp against the configured ceiling and, when the system
    size is known, that base_price matches price_per_kwp * system_size_kwp
    within one halala/cent.

    Raises:
        PricingMismatchError
    """
    if quote.price_per_kwp <= ZERO:
        raise PricingMismatchError(quote.quote_id, "price_per_kwp must be positive")
    if quote.price_per_kwp > max_price_per_kwp:
        raise PricingMismatchError(
            quote.quote_id,
            f"price_per_kwp {quote.price_per_kwp} exceeds maximum {max_price_per_kwp}",
        )

    if quote.system_size_kwp is not None:
        expected = quote.price_per_kwp * quote.system_size_kwp
        if abs(quote.base_price - expected) > SYSTEM_SIZE_TOLERANCE:
            raise PricingMismatchError(
                quote.quote_id,
                f"base_price {quote.base_price} does not match "
                f"price_per_kwp x system_size_kwp = {round_money(expected)}",
            )
