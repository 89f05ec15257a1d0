"""
SettlementService -- turns an accepted quote into a wallet credit.

The contractor is credited the base price minus platform commission; the
customer-facing price (base plus markup) is returned for the caller's
invoice but never touches the wallet.  The credit is keyed by the quote id,
so settling a quote twice credits it once.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import Session

from settlement_kernel.domain import pricing
from settlement_kernel.domain.clock import Clock
from settlement_kernel.domain.dtos import (
    LedgerResult,
    Quote,
    ReferenceType,
    TransactionSubtype,
)
from settlement_kernel.domain.pricing import PriceBreakdown
from settlement_kernel.exceptions import QuoteNotEligibleError
from settlement_kernel.logging_config import get_logger
from settlement_kernel.services.base import BaseService
from settlement_kernel.services.wallet_ledger import WalletLedger

logger = get_logger("services.settlement_service")


@dataclass(frozen=True)
class SettlementResult:
    breakdown: PriceBreakdown
    ledger: LedgerResult


class SettlementService(BaseService):
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        ledger: WalletLedger | None = None,
    ):
        super().__init__(session, clock)
        self._ledger = ledger or WalletLedger(session, self._clock)

    def settle_quote(
        self,
        quote: Quote,
        markup_percent: Decimal,
        commission_percent: Decimal,
        max_price_per_kwp: Decimal,
    ) -> SettlementResult:
        """
        Price the quote and credit the contractor's net.

        Raises:
            QuoteNotEligibleError: quote is not approved and selected.
            PricingMismatchError: pricing fields out of bounds or inconsistent.
            InvalidAmountError / InvalidConfigurationError: from pricing.
        """
        if not quote.is_active:
            raise QuoteNotEligibleError(quote.quote_id, quote.admin_status, quote.is_selected)

        pricing.validate_quote_pricing(quote, max_price_per_kwp)
        breakdown = pricing.compute(quote.base_price, markup_percent, commission_percent)

        result = self._ledger.credit(
            quote.contractor_id,
            breakdown.contractor_net,
            TransactionSubtype.QUOTE_PAYMENT,
            ReferenceType.QUOTE,
            quote.quote_id,
            commission=breakdown.commission_amount,
            description=f"Payment for quote {quote.quote_id}",
        )

        logger.info(
            "quote_settled",
            extra={
                "contractor_id": quote.contractor_id,
                "quote_id": quote.quote_id,
                "base_price": str(breakdown.base_price),
                "customer_price": str(breakdown.customer_price),
                "contractor_net": str(breakdown.contractor_net),
                "commission_amount": str(breakdown.commission_amount),
                "markup_amount": str(breakdown.markup_amount),
                "replay": result.is_replay,
            },
        )
        return SettlementResult(breakdown=breakdown, ledger=result)
