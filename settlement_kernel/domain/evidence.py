"""
Typed boundary values stored as JSON: penalty evidence and payment methods.

Both arrive as loose dicts from callers (admin tooling, request handlers) and
are validated here before anything is written.  Unknown keys are rejected so
that a typo never silently drops information.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import date
from enum import Enum
from typing import Any

from settlement_kernel.exceptions import InvalidEvidenceError, InvalidPaymentMethodError


def _unknown_keys(cls: type, data: dict[str, Any]) -> list[str]:
    allowed = {f.name for f in fields(cls)}
    return sorted(k for k in data if k not in allowed)


@dataclass(frozen=True)
class PenaltyEvidence:
    """Why a penalty was applied."""

    source: str = "manual"
    days_overdue: int | None = None
    expected_completion: str | None = None
    violation_id: str | None = None
    notes: str | None = None
    attachments: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PenaltyEvidence:
        """
        Raises:
            InvalidEvidenceError: unknown keys or wrongly typed values.
        """
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise InvalidEvidenceError(f"expected a mapping, got {type(data).__name__}")
        unknown = _unknown_keys(cls, data)
        if unknown:
            raise InvalidEvidenceError(f"unknown field(s): {', '.join(unknown)}")

        days = data.get("days_overdue")
        if days is not None and (isinstance(days, bool) or not isinstance(days, int) or days < 0):
            raise InvalidEvidenceError("days_overdue must be a non-negative integer")

        attachments = data.get("attachments", ())
        if not isinstance(attachments, (list, tuple)) or not all(
            isinstance(a, str) for a in attachments
        ):
            raise InvalidEvidenceError("attachments must be a list of strings")

        for key in ("source", "expected_completion", "violation_id", "notes"):
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                raise InvalidEvidenceError(f"{key} must be a string")

        return cls(
            source=data.get("source", "manual"),
            days_overdue=days,
            expected_completion=data.get("expected_completion"),
            violation_id=data.get("violation_id"),
            notes=data.get("notes"),
            attachments=tuple(attachments),
        )

    @classmethod
    def for_sla(cls, violation_id: str, days_overdue: int, due: date) -> PenaltyEvidence:
        return cls(
            source="sla_scan",
            days_overdue=days_overdue,
            expected_completion=due.isoformat(),
            violation_id=violation_id,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["attachments"] = list(self.attachments)
        return {k: v for k, v in data.items() if v is not None}


class PaymentMethodType(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    DIGITAL_WALLET = "digital_wallet"
    CHECK = "check"


_REQUIRED_FIELDS = {
    PaymentMethodType.BANK_TRANSFER: ("account_number", "bank_name", "beneficiary_name"),
    PaymentMethodType.DIGITAL_WALLET: ("wallet_id", "wallet_provider"),
    PaymentMethodType.CHECK: ("beneficiary_name",),
}


@dataclass(frozen=True)
class PaymentMethod:
    """Where a withdrawal is paid out."""

    type: PaymentMethodType
    account_number: str | None = None
    iban: str | None = None
    bank_name: str | None = None
    beneficiary_name: str | None = None
    wallet_id: str | None = None
    wallet_provider: str | None = None
    is_primary: bool = True
    is_verified: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PaymentMethod:
        """
        Raises:
            InvalidPaymentMethodError: unknown keys, unknown type, or missing
                details for the chosen type.
        """
        if not isinstance(data, dict):
            raise InvalidPaymentMethodError(f"expected a mapping, got {type(data).__name__}")
        unknown = _unknown_keys(cls, data)
        if unknown:
            raise InvalidPaymentMethodError(f"unknown field(s): {', '.join(unknown)}")

        try:
            method_type = PaymentMethodType(data.get("type"))
        except ValueError:
            raise InvalidPaymentMethodError(f"unsupported type: {data.get('type')!r}") from None

        missing = [name for name in _REQUIRED_FIELDS[method_type] if not data.get(name)]
        if missing:
            raise InvalidPaymentMethodError(
                f"{method_type.value} requires {', '.join(missing)}"
            )

        values = {k: v for k, v in data.items() if k != "type"}
        return cls(type=method_type, **values)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return {k: v for k, v in data.items() if v is not None}


def validate_payment_methods(
    methods: list[PaymentMethod | dict[str, Any]] | tuple[PaymentMethod | dict[str, Any], ...],
) -> tuple[PaymentMethod, ...]:
    """
    Parse a contractor's full set of payout methods.

    Raises:
        InvalidPaymentMethodError: empty set, a bad entry, or not exactly
            one primary method.
    """
    if not isinstance(methods, (list, tuple)):
        raise InvalidPaymentMethodError(f"expected a list, got {type(methods).__name__}")
    if not methods:
        raise InvalidPaymentMethodError("at least one payment method is required")
    parsed = tuple(
        m if isinstance(m, PaymentMethod) else PaymentMethod.from_dict(m) for m in methods
    )
    primaries = sum(1 for m in parsed if m.is_primary)
    if primaries != 1:
        raise InvalidPaymentMethodError(
            f"exactly one primary payment method is required, got {primaries}"
        )
    return parsed
