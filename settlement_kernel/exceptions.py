"""
Typed exception hierarchy for the settlement kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (request handlers, the SLA scheduler, admin tooling) must react to
failures by type, never by parsing messages.  Every exception here carries:
  1. A class-level ``code`` (machine-readable, API-safe)
  2. Structured attributes describing the failure (amounts as strings)

Example:
    try:
        engine.request_withdrawal(contractor_id, Decimal("50.00"))
    except BelowMinimumError as e:
        api_response(code=e.code, minimum=e.minimum)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    SettlementError (base)
    |
    +-- ValidationError                 rejected before any write
    |   +-- InvalidAmountError
    |   +-- BelowMinimumError
    |   +-- InvalidConfigurationError
    |   +-- InvalidEvidenceError
    |   +-- InvalidPaymentMethodError
    |   +-- PricingMismatchError
    |
    +-- StateConflictError              valid request, wrong state
    |   +-- InsufficientBalanceError
    |   +-- AlreadyFinalizedError
    |   +-- InvalidPenaltyTransitionError
    |   +-- WalletSuspendedError
    |   +-- WithdrawalOnHoldError
    |   +-- QuoteNotEligibleError
    |   +-- ImmutabilityViolationError
    |
    +-- NotFoundError
    |   +-- WalletNotFoundError
    |   +-- QuoteNotFoundError
    |   +-- PenaltyNotFoundError
    |   +-- PenaltyRuleNotFoundError
    |   +-- NoApplicablePenaltyRuleError
    |   +-- WithdrawalNotFoundError
    |   +-- ViolationNotFoundError
    |
    +-- ConcurrencyError
    |   +-- ConflictError               optimistic retries exhausted
    |
    +-- StorageUnavailableError         storage failure, nothing written

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Idempotent replays are NOT errors.  The ledger returns the prior
   transaction with ``LedgerResult.status == ALREADY_POSTED``.

2. Penalties against an empty wallet are NOT errors either.  The penalty
   engine records the instance as ``pending``; ``InsufficientBalanceError``
   only reaches callers of direct debits and withdrawals.

3. ``ConflictError`` is safe to retry at the caller; the engine has already
   retried internally ``max_conflict_retries`` times.

===============================================================================
"""


class SettlementError(Exception):
    """
    Base exception for all settlement kernel errors.

    All subclasses must define a ``code`` class attribute.
    """

    code: str = "SETTLEMENT_ERROR"


# Validation errors


class ValidationError(SettlementError):
    """Base class for input rejected synchronously before any write."""

    code: str = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    """Amount is zero, negative, or otherwise unusable."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: str, reason: str = "amount must be positive"):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount}: {reason}")


class BelowMinimumError(ValidationError):
    """Withdrawal amount is below the configured minimum."""

    code: str = "BELOW_MINIMUM"

    def __init__(self, amount: str, minimum: str):
        self.amount = amount
        self.minimum = minimum
        super().__init__(f"Withdrawal amount {amount} is below the minimum of {minimum}")


class InvalidConfigurationError(ValidationError):
    """Business-rule configuration is missing or inconsistent."""

    code: str = "INVALID_CONFIGURATION"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid configuration for '{field}': {reason}")


class InvalidEvidenceError(ValidationError):
    """Penalty evidence payload does not match its typed structure."""

    code: str = "INVALID_EVIDENCE"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid penalty evidence: {reason}")


class InvalidPaymentMethodError(ValidationError):
    """Withdrawal payment method is incomplete or malformed."""

    code: str = "INVALID_PAYMENT_METHOD"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid payment method: {reason}")


class PricingMismatchError(ValidationError):
    """Quote pricing fields are inconsistent with each other or with limits."""

    code: str = "PRICING_MISMATCH"

    def __init__(self, quote_id: str, reason: str):
        self.quote_id = quote_id
        self.reason = reason
        super().__init__(f"Pricing mismatch on quote {quote_id}: {reason}")


# State conflicts


class StateConflictError(SettlementError):
    """Base class for requests that are valid but conflict with current state."""

    code: str = "STATE_CONFLICT"


class InsufficientBalanceError(StateConflictError):
    """Wallet available balance does not cover the requested amount."""

    code: str = "INSUFFICIENT_BALANCE"

    def __init__(self, contractor_id: str, available: str, requested: str):
        self.contractor_id = contractor_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient balance for contractor {contractor_id}: "
            f"available={available}, requested={requested}"
        )


class AlreadyFinalizedError(StateConflictError):
    """Withdrawal request was already finalized with a different outcome."""

    code: str = "ALREADY_FINALIZED"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Withdrawal request {request_id} already finalized as {status}")


class InvalidPenaltyTransitionError(StateConflictError):
    """Penalty instance cannot move from its current status to the target."""

    code: str = "INVALID_PENALTY_TRANSITION"

    def __init__(self, instance_id: str, from_status: str, to_status: str):
        self.instance_id = instance_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Penalty {instance_id} cannot transition from {from_status} to {to_status}"
        )


class WalletSuspendedError(StateConflictError):
    """Operation is not permitted on a suspended wallet."""

    code: str = "WALLET_SUSPENDED"

    def __init__(self, contractor_id: str):
        self.contractor_id = contractor_id
        super().__init__(f"Wallet for contractor {contractor_id} is suspended")


class WithdrawalOnHoldError(StateConflictError):
    """Withdrawal cannot complete while the contractor has an open dispute."""

    code: str = "WITHDRAWAL_ON_HOLD"

    def __init__(self, request_id: str, disputed_penalty_ids: list[str]):
        self.request_id = request_id
        self.disputed_penalty_ids = disputed_penalty_ids
        super().__init__(
            f"Withdrawal {request_id} is on hold pending "
            f"{len(disputed_penalty_ids)} disputed penalt(y/ies)"
        )


class QuoteNotEligibleError(StateConflictError):
    """Quote is not approved and selected, so it cannot be settled."""

    code: str = "QUOTE_NOT_ELIGIBLE"

    def __init__(self, quote_id: str, admin_status: str, is_selected: bool):
        self.quote_id = quote_id
        self.admin_status = admin_status
        self.is_selected = is_selected
        super().__init__(
            f"Quote {quote_id} is not eligible for settlement "
            f"(admin_status={admin_status}, is_selected={is_selected})"
        )


class ImmutabilityViolationError(StateConflictError):
    """Attempted to modify or delete an append-only ledger row."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Immutability violation on {entity_type} {entity_id}: {reason}")


# Lookups


class NotFoundError(SettlementError):
    """Base class for missing records."""

    code: str = "NOT_FOUND"


class WalletNotFoundError(NotFoundError):
    code: str = "WALLET_NOT_FOUND"

    def __init__(self, contractor_id: str):
        self.contractor_id = contractor_id
        super().__init__(f"No wallet for contractor {contractor_id}")


class QuoteNotFoundError(NotFoundError):
    code: str = "QUOTE_NOT_FOUND"

    def __init__(self, quote_id: str):
        self.quote_id = quote_id
        super().__init__(f"Quote not found: {quote_id}")


class PenaltyNotFoundError(NotFoundError):
    code: str = "PENALTY_NOT_FOUND"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Penalty instance not found: {instance_id}")


class PenaltyRuleNotFoundError(NotFoundError):
    code: str = "PENALTY_RULE_NOT_FOUND"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Penalty rule not found: {rule_id}")


class NoApplicablePenaltyRuleError(NotFoundError):
    """No active rule (outside its grace period) matches the violation."""

    code: str = "NO_APPLICABLE_PENALTY_RULE"

    def __init__(self, violation_type: str):
        self.violation_type = violation_type
        super().__init__(f"No applicable penalty rule for violation type: {violation_type}")


class WithdrawalNotFoundError(NotFoundError):
    code: str = "WITHDRAWAL_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Withdrawal request not found: {request_id}")


class ViolationNotFoundError(NotFoundError):
    code: str = "VIOLATION_NOT_FOUND"

    def __init__(self, violation_id: str):
        self.violation_id = violation_id
        super().__init__(f"SLA violation not found: {violation_id}")


# Concurrency


class ConcurrencyError(SettlementError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConflictError(ConcurrencyError):
    """Wallet row kept changing underneath us; bounded retries exhausted."""

    code: str = "CONFLICT"

    def __init__(self, contractor_id: str, attempts: int):
        self.contractor_id = contractor_id
        self.attempts = attempts
        super().__init__(
            f"Concurrent modification of wallet for contractor {contractor_id} "
            f"persisted after {attempts} attempt(s)"
        )


# Storage


class StorageUnavailableError(SettlementError):
    """Underlying store failed; the unit of work was rolled back."""

    code: str = "STORAGE_UNAVAILABLE"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Storage unavailable during {operation}: {reason}")
