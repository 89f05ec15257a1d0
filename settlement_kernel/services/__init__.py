"""
settlement_kernel.services -- stateful services over a SQLAlchemy session.

Responsibility:
    WalletLedger, PenaltyEngine, SLADetector, WithdrawalWorkflow and
    SettlementService each work inside a caller-owned session and only
    flush.  SettlementEngine is the facade that owns the unit of work: it
    commits, holds the per-wallet lock and retries optimistic conflicts.

Architecture position:
    Kernel > Services.  May import domain/, models/, selectors/ and db/;
    must not import settlement_config.
"""

from settlement_kernel.services.penalty_engine import PenaltyEngine
from settlement_kernel.services.settlement_engine import SettlementEngine
from settlement_kernel.services.settlement_service import SettlementResult, SettlementService
from settlement_kernel.services.sla_detector import QuoteScanOutcome, QuoteScanStatus, SLADetector
from settlement_kernel.services.wallet_ledger import WalletLedger
from settlement_kernel.services.wallet_locks import WalletLockRegistry
from settlement_kernel.services.withdrawal_workflow import WithdrawalWorkflow

__all__ = [
    "PenaltyEngine",
    "QuoteScanOutcome",
    "QuoteScanStatus",
    "SLADetector",
    "SettlementEngine",
    "SettlementResult",
    "SettlementService",
    "WalletLedger",
    "WalletLockRegistry",
    "WithdrawalWorkflow",
]
