"""
Configuration loader (``settlement_config.loader``).

Parses a YAML configuration set into ``settlement_config.schema`` types.
Runtime callers go through ``get_active_config()`` or a configuration
source; this module is the parsing layer underneath them.

Failure modes:
    - Missing YAML file  -> FileNotFoundError propagates.
    - Malformed YAML     -> yaml.YAMLError propagates.
    - Unknown or missing keys, wrongly typed values
                         -> InvalidConfigurationError.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from settlement_config.schema import PenaltyRuleDef, SettlementConfig
from settlement_kernel.exceptions import InvalidConfigurationError

_REQUIRED_KEYS = frozenset(
    {"markup_percent", "commission_percent", "min_withdrawal_amount", "max_price_per_kwp"}
)
_OPTIONAL_KEYS = frozenset(
    {"currency", "max_conflict_retries", "history_page_size", "penalty_rules"}
)
_RULE_REQUIRED_KEYS = frozenset(
    {"penalty_type", "description", "amount_calculation", "amount_value", "severity_level"}
)
_RULE_OPTIONAL_KEYS = frozenset({"maximum_amount", "grace_period_hours", "is_active"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file; an empty file yields an empty dict."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(field_name: str, value: Any) -> Decimal:
    """
    Decimal from a YAML scalar.

    YAML reads ``10.5`` as a float; going through its shortest repr keeps
    the value the author wrote.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidConfigurationError(field_name, f"expected a number, got {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise InvalidConfigurationError(field_name, f"expected a number, got {value!r}") from None


def parse_int(field_name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfigurationError(field_name, f"expected an integer, got {value!r}")
    return value


def _check_keys(
    where: str, data: dict[str, Any], required: frozenset[str], optional: frozenset[str]
) -> None:
    if not isinstance(data, dict):
        raise InvalidConfigurationError(where, "expected a mapping")
    unknown = sorted(set(data) - required - optional)
    if unknown:
        raise InvalidConfigurationError(where, f"unknown key(s): {', '.join(unknown)}")
    missing = sorted(required - set(data))
    if missing:
        raise InvalidConfigurationError(where, f"missing key(s): {', '.join(missing)}")


def parse_penalty_rule(data: dict[str, Any]) -> PenaltyRuleDef:
    _check_keys("penalty_rules", data, _RULE_REQUIRED_KEYS, _RULE_OPTIONAL_KEYS)
    maximum = data.get("maximum_amount")
    return PenaltyRuleDef(
        penalty_type=str(data["penalty_type"]),
        description=str(data["description"]),
        amount_calculation=str(data["amount_calculation"]),
        amount_value=parse_decimal("penalty_rules.amount_value", data["amount_value"]),
        severity_level=str(data["severity_level"]),
        maximum_amount=(
            parse_decimal("penalty_rules.maximum_amount", maximum) if maximum is not None else None
        ),
        grace_period_hours=parse_int(
            "penalty_rules.grace_period_hours", data.get("grace_period_hours", 0)
        ),
        is_active=bool(data.get("is_active", True)),
    )


def parse_config(data: dict[str, Any]) -> SettlementConfig:
    """Build a validated SettlementConfig from a parsed YAML mapping."""
    _check_keys("settlement", data, _REQUIRED_KEYS, _OPTIONAL_KEYS)
    rules = data.get("penalty_rules") or []
    if not isinstance(rules, list):
        raise InvalidConfigurationError("penalty_rules", "expected a list")
    return SettlementConfig(
        markup_percent=parse_decimal("markup_percent", data["markup_percent"]),
        commission_percent=parse_decimal("commission_percent", data["commission_percent"]),
        min_withdrawal_amount=parse_decimal(
            "min_withdrawal_amount", data["min_withdrawal_amount"]
        ),
        max_price_per_kwp=parse_decimal("max_price_per_kwp", data["max_price_per_kwp"]),
        currency=str(data.get("currency", "SAR")),
        max_conflict_retries=parse_int(
            "max_conflict_retries", data.get("max_conflict_retries", 3)
        ),
        history_page_size=parse_int("history_page_size", data.get("history_page_size", 20)),
        penalty_rules=tuple(parse_penalty_rule(r) for r in rules),
        checksum=compute_checksum(data),
    )


def load_config_file(path: Path) -> SettlementConfig:
    return parse_config(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
