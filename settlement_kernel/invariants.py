"""
Settlement Invariants Contract.

These invariants are structural law for every wallet. Configuration may
change markup, commission or the withdrawal minimum, but never whether
these rules apply.

The enforcement is distributed across WalletLedger, the immutability
listeners, DB check constraints and the per-wallet lock registry.
WalletSelector.verify_wallet() re-checks the data-level ones on demand.
"""

from enum import Enum, unique


@unique
class SettlementInvariant(str, Enum):
    """Non-configurable invariants enforced by the settlement kernel."""

    BALANCE_CONSERVATION = "balance_conservation"
    """available + pending + total_withdrawn equals the sum of credits minus
    the sum of penalty debits, for every wallet."""

    LEDGER_PAIRING = "ledger_pairing"
    """available_balance equals the balance_after of the wallet's most recent
    completed transaction, and every row satisfies
    balance_after = balance_before +/- amount."""

    NON_NEGATIVE_BALANCES = "non_negative_balances"
    """No balance or running total is ever negative. Enforced by WalletLedger
    and DB check constraints."""

    IDEMPOTENCY = "idempotency"
    """One (wallet, subtype, reference_type, reference_id) key produces at
    most one transaction. Enforced by lookup-before-write and a unique
    constraint."""

    WALLET_SERIALIZATION = "wallet_serialization"
    """Mutations of one wallet are serialized. Enforced by the in-process
    wallet lock, SELECT ... FOR UPDATE and the optimistic version column."""

    PENALTY_DEBT_TRACKING = "penalty_debt_tracking"
    """An applied penalty always references its debit transaction; a penalty
    that could not be debited stays pending and is never dropped."""
