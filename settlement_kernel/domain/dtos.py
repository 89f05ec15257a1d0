"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Defines the enums shared by models and services, and the immutable
    records that cross the service boundary: Quote (input from the quote
    repository), TransactionRecord, WalletBalance, PenaltyRuleRecord,
    PenaltyRecord, ViolationRecord, WithdrawalRecord, LedgerResult and the
    selector results.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods are boundary converters only invoked from the
    service and selector layers, never from domain logic.

Invariants enforced:
    - Monetary fields are Decimal, never float.
    - Services hand callers DTOs, never live ORM entities.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from settlement_kernel.invariants import SettlementInvariant
    from settlement_kernel.models.penalty import PenaltyInstance, PenaltyRule
    from settlement_kernel.models.sla_violation import SLAViolation
    from settlement_kernel.models.wallet import Wallet, WalletTransaction
    from settlement_kernel.models.withdrawal import WithdrawalRequest


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TransactionType(str, Enum):
    """Direction of a ledger row relative to available_balance."""

    CREDIT = "credit"
    DEBIT = "debit"


class TransactionSubtype(str, Enum):
    QUOTE_PAYMENT = "quote_payment"
    PENALTY = "penalty"
    WITHDRAWAL = "withdrawal"
    REVERSAL = "reversal"


class ReferenceType(str, Enum):
    QUOTE = "quote"
    PENALTY = "penalty"
    WITHDRAWAL = "withdrawal"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PenaltyType(str, Enum):
    LATE_INSTALLATION = "late_installation"
    QUALITY_ISSUE = "quality_issue"
    COMMUNICATION_FAILURE = "communication_failure"
    DOCUMENTATION_ISSUE = "documentation_issue"
    CUSTOM = "custom"


class AmountCalculation(str, Enum):
    """How a penalty rule turns amount_value into money."""

    FIXED = "fixed"
    PERCENTAGE = "percentage"
    DAILY = "daily"


class SeverityLevel(str, Enum):
    """
    Penalty severity, totally ordered minor < moderate < major < critical.

    Use ``rank`` for comparisons; the string values do not sort correctly.
    """

    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    SeverityLevel.MINOR: 1,
    SeverityLevel.MODERATE: 2,
    SeverityLevel.MAJOR: 3,
    SeverityLevel.CRITICAL: 4,
}


class PenaltyStatus(str, Enum):
    """
    Lifecycle: pending -> applied; pending|applied -> disputed;
    disputed -> waived|reversed.
    """

    PENDING = "pending"
    APPLIED = "applied"
    DISPUTED = "disputed"
    WAIVED = "waived"
    REVERSED = "reversed"


class DisputeOutcome(str, Enum):
    WAIVED = "waived"
    REVERSED = "reversed"


class WithdrawalStatus(str, Enum):
    """Lifecycle: requested -> reserved -> completed | rejected."""

    REQUESTED = "requested"
    RESERVED = "reserved"
    COMPLETED = "completed"
    REJECTED = "rejected"


class WithdrawalOutcome(str, Enum):
    COMPLETED = "completed"
    REJECTED = "rejected"


class PostStatus(str, Enum):
    """Result of a ledger mutation."""

    POSTED = "posted"
    ALREADY_POSTED = "already_posted"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Quote:
    """
    Read-only view of a contractor quote, supplied by the quote repository.

    Only approved, customer-selected quotes are settled or SLA-tracked.
    """

    quote_id: str
    contractor_id: str
    base_price: Decimal
    price_per_kwp: Decimal
    installation_timeline_days: int
    admin_status: str
    is_selected: bool
    created_at: datetime
    system_size_kwp: Decimal | None = None

    @property
    def is_active(self) -> bool:
        return self.admin_status == "approved" and self.is_selected


@dataclass(frozen=True)
class PenaltyContext:
    """Inputs a rule needs to compute an amount."""

    base_price: Decimal = Decimal("0")
    days_overdue: int = 0


# ---------------------------------------------------------------------------
# Ledger records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransactionRecord:
    id: UUID
    wallet_id: UUID
    type: TransactionType
    subtype: TransactionSubtype
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    reference_type: ReferenceType
    reference_id: str
    status: TransactionStatus
    description: str | None
    created_at: datetime | None

    @classmethod
    def from_model(cls, model: WalletTransaction) -> TransactionRecord:
        return cls(
            id=model.id,
            wallet_id=model.wallet_id,
            type=TransactionType(model.type),
            subtype=TransactionSubtype(model.subtype),
            amount=model.amount,
            balance_before=model.balance_before,
            balance_after=model.balance_after,
            reference_type=ReferenceType(model.reference_type),
            reference_id=model.reference_id,
            status=TransactionStatus(model.status),
            description=model.description,
            created_at=model.created_at,
        )


@dataclass(frozen=True)
class WalletBalance:
    """Snapshot of a wallet's balances and running totals."""

    wallet_id: UUID
    contractor_id: str
    available_balance: Decimal
    pending_balance: Decimal
    total_earned: Decimal
    total_commission_paid: Decimal
    total_penalties: Decimal
    total_withdrawn: Decimal
    is_suspended: bool
    currency: str
    version: int

    @classmethod
    def from_model(cls, model: Wallet) -> WalletBalance:
        return cls(
            wallet_id=model.id,
            contractor_id=model.contractor_id,
            available_balance=model.available_balance,
            pending_balance=model.pending_balance,
            total_earned=model.total_earned,
            total_commission_paid=model.total_commission_paid,
            total_penalties=model.total_penalties,
            total_withdrawn=model.total_withdrawn,
            is_suspended=model.is_suspended,
            currency=model.currency,
            version=model.version,
        )


@dataclass(frozen=True)
class LedgerResult:
    """
    Outcome of credit / debit / reserve / release.

    ``transaction`` is None only for a completed-withdrawal release, which
    moves pending funds out of the wallet without a ledger row.
    """

    status: PostStatus
    wallet: WalletBalance
    transaction: TransactionRecord | None = None

    @property
    def is_replay(self) -> bool:
        return self.status == PostStatus.ALREADY_POSTED


# ---------------------------------------------------------------------------
# Penalties, violations, withdrawals
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PenaltyRuleRecord:
    id: UUID
    penalty_type: PenaltyType
    description: str
    amount_calculation: AmountCalculation
    amount_value: Decimal
    maximum_amount: Decimal | None
    severity_level: SeverityLevel
    is_active: bool
    grace_period_hours: int

    @classmethod
    def from_model(cls, model: PenaltyRule) -> PenaltyRuleRecord:
        return cls(
            id=model.id,
            penalty_type=PenaltyType(model.penalty_type),
            description=model.description,
            amount_calculation=AmountCalculation(model.amount_calculation),
            amount_value=model.amount_value,
            maximum_amount=model.maximum_amount,
            severity_level=SeverityLevel(model.severity_level),
            is_active=model.is_active,
            grace_period_hours=model.grace_period_hours,
        )


@dataclass(frozen=True)
class PenaltyRecord:
    id: UUID
    contractor_id: str
    quote_id: str
    penalty_rule_id: UUID
    penalty_type: PenaltyType
    amount: Decimal
    status: PenaltyStatus
    evidence: dict[str, Any]
    description: str | None
    debit_transaction_id: UUID | None
    reversal_transaction_id: UUID | None
    dispute_reason: str | None
    resolution_notes: str | None
    applied_by: str | None
    applied_at: datetime | None
    resolved_at: datetime | None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: PenaltyInstance) -> PenaltyRecord:
        return cls(
            id=model.id,
            contractor_id=model.contractor_id,
            quote_id=model.quote_id,
            penalty_rule_id=model.penalty_rule_id,
            penalty_type=PenaltyType(model.penalty_type),
            amount=model.amount,
            status=PenaltyStatus(model.status),
            evidence=dict(model.evidence or {}),
            description=model.description,
            debit_transaction_id=model.debit_transaction_id,
            reversal_transaction_id=model.reversal_transaction_id,
            dispute_reason=model.dispute_reason,
            resolution_notes=model.resolution_notes,
            applied_by=model.applied_by,
            applied_at=model.applied_at,
            resolved_at=model.resolved_at,
            created_at=model.created_at,
        )


@dataclass(frozen=True)
class ViolationRecord:
    id: UUID
    quote_id: str
    contractor_id: str
    violation_type: PenaltyType
    days_overdue: int
    severity_level: SeverityLevel
    auto_detected: bool
    penalty_applied: bool
    penalty_instance_id: UUID | None
    detected_at: datetime
    resolved_at: datetime | None

    @classmethod
    def from_model(cls, model: SLAViolation) -> ViolationRecord:
        return cls(
            id=model.id,
            quote_id=model.quote_id,
            contractor_id=model.contractor_id,
            violation_type=PenaltyType(model.violation_type),
            days_overdue=model.days_overdue,
            severity_level=SeverityLevel(model.severity_level),
            auto_detected=model.auto_detected,
            penalty_applied=model.penalty_applied,
            penalty_instance_id=model.penalty_instance_id,
            detected_at=model.detected_at,
            resolved_at=model.resolved_at,
        )


@dataclass(frozen=True)
class WithdrawalRecord:
    id: UUID
    contractor_id: str
    wallet_id: UUID
    amount: Decimal
    status: WithdrawalStatus
    payment_method: dict[str, Any] | None
    reserve_transaction_id: UUID | None
    release_transaction_id: UUID | None
    admin_notes: str | None
    requested_at: datetime
    finalized_at: datetime | None

    @classmethod
    def from_model(cls, model: WithdrawalRequest) -> WithdrawalRecord:
        return cls(
            id=model.id,
            contractor_id=model.contractor_id,
            wallet_id=model.wallet_id,
            amount=model.amount,
            status=WithdrawalStatus(model.status),
            payment_method=dict(model.payment_method) if model.payment_method else None,
            reserve_transaction_id=model.reserve_transaction_id,
            release_transaction_id=model.release_transaction_id,
            admin_notes=model.admin_notes,
            requested_at=model.requested_at,
            finalized_at=model.finalized_at,
        )


# ---------------------------------------------------------------------------
# Scan and query results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScanResult:
    """Counters from one SLA scan; ``errors`` holds (quote_id, message) pairs."""

    quotes_scanned: int = 0
    violations_detected: int = 0
    penalties_applied: int = 0
    penalties_pending: int = 0
    skipped_no_rule: int = 0
    errors: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class HistoryFilters:
    """Optional filters for transaction history; None means no filter."""

    type: TransactionType | None = None
    subtype: TransactionSubtype | None = None
    reference_type: ReferenceType | None = None
    status: TransactionStatus | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None


class _Paged:
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        if self.total == 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


@dataclass(frozen=True)
class HistoryPage(_Paged):
    items: tuple[TransactionRecord, ...]
    page: int
    page_size: int
    total: int


@dataclass(frozen=True)
class PenaltyFilters:
    """Optional filters for a contractor's penalty listing; None means no filter."""

    status: PenaltyStatus | None = None
    penalty_type: PenaltyType | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None


@dataclass(frozen=True)
class PenaltyPage(_Paged):
    items: tuple[PenaltyRecord, ...]
    page: int
    page_size: int
    total: int


@dataclass(frozen=True)
class InvariantViolation:
    invariant: SettlementInvariant
    detail: str


@dataclass(frozen=True)
class WalletVerification:
    """Outcome of recomputing a wallet's invariants from its stored rows."""

    contractor_id: str
    violations: tuple[InvariantViolation, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return not self.violations


@dataclass(frozen=True)
class PenaltyStatistics:
    total_count: int
    total_amount: Decimal
    by_status: dict[str, int]
    by_type: dict[str, int]
    applied_amount: Decimal
    pending_amount: Decimal
