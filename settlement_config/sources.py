"""
Configuration sources.

A source hands the settlement engine the configuration in force for the
next operation.  The engine calls ``load()`` once per operation, before it
takes any wallet lock, so an edited YAML file takes effect on the next
request without a restart.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from settlement_config.loader import load_config_file
from settlement_config.schema import SettlementConfig


@runtime_checkable
class ConfigurationSource(Protocol):
    def load(self) -> SettlementConfig:
        ...


class YamlConfigurationSource:
    """Re-reads and re-validates the YAML file on every ``load()``."""

    def __init__(self, path: Path | str):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> SettlementConfig:
        return load_config_file(self._path)


class StaticConfigurationSource:
    """Always returns the same, already validated configuration."""

    def __init__(self, config: SettlementConfig):
        self._config = config

    def load(self) -> SettlementConfig:
        return self._config
