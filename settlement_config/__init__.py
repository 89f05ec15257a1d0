"""
settlement_config -- single public entrypoint for settlement configuration.

Responsibility:
    ``get_active_config()`` returns the validated ``SettlementConfig``
    (markup, commission, withdrawal minimum, pricing ceiling, retry bound,
    default penalty rules).  Long-running processes hand the settlement
    engine a ``ConfigurationSource`` instead, so that values are re-read per
    operation.

Architecture position:
    Configuration sits above ``settlement_kernel``.  The kernel never imports
    from this package; it only sees objects with the same attributes.

Failure modes:
    - FileNotFoundError when the configuration file is missing.
    - InvalidConfigurationError on unknown keys or out-of-range values
      (e.g. markup or commission above 50%).
"""

from __future__ import annotations

import logging
from pathlib import Path

from settlement_config.loader import load_config_file
from settlement_config.schema import PenaltyRuleDef, SettlementConfig
from settlement_config.sources import (
    ConfigurationSource,
    StaticConfigurationSource,
    YamlConfigurationSource,
)

_logger = logging.getLogger("settlement_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(path: Path | str | None = None) -> SettlementConfig:
    """
    Load and validate the active configuration.

    Args:
        path: YAML file to read. Defaults to settlement_config/sets/default.yaml.
    """
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    config = load_config_file(config_path)
    _logger.info(
        "SETTLEMENT_CONFIG_TRACE",
        extra={
            "trace_type": "SETTLEMENT_CONFIG_TRACE",
            "config_path": str(config_path),
            "checksum": config.checksum,
            "markup_percent": str(config.markup_percent),
            "commission_percent": str(config.commission_percent),
            "min_withdrawal_amount": str(config.min_withdrawal_amount),
            "penalty_rule_count": len(config.penalty_rules),
        },
    )
    return config


__all__ = [
    "get_active_config",
    "DEFAULT_CONFIG_PATH",
    "SettlementConfig",
    "PenaltyRuleDef",
    "ConfigurationSource",
    "YamlConfigurationSource",
    "StaticConfigurationSource",
]
