"""
ORM-level immutability enforcement for the wallet ledger.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity              | When Immutable                  | Why
--------------------|---------------------------------|-------------------------------
WalletTransaction   | ALWAYS (from creation)          | The ledger is append-only
PenaltyInstance     | amount / debit link once set    | Debt already taken from wallet

Corrections are new rows (a ``reversal`` credit), never edits.  The listeners
fire on ``session.flush()`` before SQL reaches the database, so a rejected
change aborts the unit of work and nothing is written.

===============================================================================
USAGE
===============================================================================

Registered once by the engine facade at construction:

    from settlement_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

Tests that need to corrupt data on purpose (e.g. to prove verify_wallet
detects drift) unregister, write, and register again.

===============================================================================
"""

from sqlalchemy import event, inspect

from settlement_kernel.exceptions import ImmutabilityViolationError
from settlement_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_PENALTY_FROZEN_FIELDS = ("amount", "debit_transaction_id", "contractor_id", "quote_id")

_registered = False


def _reject_transaction_update(mapper, connection, target):
    logger.error(
        "immutability_violation",
        extra={"entity_type": "WalletTransaction", "entity_id": str(target.id)},
    )
    raise ImmutabilityViolationError(
        entity_type="WalletTransaction",
        entity_id=str(target.id),
        reason="ledger rows are append-only",
    )


def _reject_transaction_delete(mapper, connection, target):
    logger.error(
        "immutability_violation",
        extra={"entity_type": "WalletTransaction", "entity_id": str(target.id)},
    )
    raise ImmutabilityViolationError(
        entity_type="WalletTransaction",
        entity_id=str(target.id),
        reason="ledger rows cannot be deleted",
    )


def _check_penalty_update(mapper, connection, target):
    """Amount and debit link are frozen once a debit has been recorded."""
    state = inspect(target)
    history = state.attrs.debit_transaction_id.history
    prior_values = list(history.unchanged or ()) + list(history.deleted or ())
    if not any(v is not None for v in prior_values):
        return

    for field in _PENALTY_FROZEN_FIELDS:
        if state.attrs[field].history.has_changes():
            logger.error(
                "immutability_violation",
                extra={
                    "entity_type": "PenaltyInstance",
                    "entity_id": str(target.id),
                    "field": field,
                },
            )
            raise ImmutabilityViolationError(
                entity_type="PenaltyInstance",
                entity_id=str(target.id),
                reason=f"'{field}' cannot change after the penalty was debited",
            )


def _reject_penalty_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="PenaltyInstance",
        entity_id=str(target.id),
        reason="penalty instances are never deleted",
    )


def register_immutability_listeners() -> None:
    """Install the listeners. Safe to call more than once."""
    global _registered
    if _registered:
        return

    from settlement_kernel.models.penalty import PenaltyInstance
    from settlement_kernel.models.wallet import WalletTransaction

    event.listen(WalletTransaction, "before_update", _reject_transaction_update)
    event.listen(WalletTransaction, "before_delete", _reject_transaction_delete)
    event.listen(PenaltyInstance, "before_update", _check_penalty_update)
    event.listen(PenaltyInstance, "before_delete", _reject_penalty_delete)
    _registered = True
    logger.debug("immutability_listeners_registered")


def unregister_immutability_listeners() -> None:
    """Remove the listeners. TESTS ONLY."""
    global _registered
    if not _registered:
        return

    from settlement_kernel.models.penalty import PenaltyInstance
    from settlement_kernel.models.wallet import WalletTransaction

    event.remove(WalletTransaction, "before_update", _reject_transaction_update)
    event.remove(WalletTransaction, "before_delete", _reject_transaction_delete)
    event.remove(PenaltyInstance, "before_update", _check_penalty_update)
    event.remove(PenaltyInstance, "before_delete", _reject_penalty_delete)
    _registered = False
