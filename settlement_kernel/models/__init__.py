"""ORM models for the settlement kernel."""

from settlement_kernel.models.penalty import PenaltyInstance, PenaltyRule
from settlement_kernel.models.sla_violation import SLAViolation
from settlement_kernel.models.wallet import Wallet, WalletTransaction
from settlement_kernel.models.withdrawal import WithdrawalRequest

__all__ = [
    "Wallet",
    "WalletTransaction",
    "PenaltyRule",
    "PenaltyInstance",
    "SLAViolation",
    "WithdrawalRequest",
]
