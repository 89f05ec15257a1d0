"""
Settlement Kernel

Contractor wallet ledger and settlement engine for a solar-installation
marketplace:
- Pricing (markup and commission) with banker's rounding
- Append-only wallet ledger with idempotent posting
- SLA violation detection and penalty enforcement
- Two-phase withdrawal reservation
"""

__version__ = "0.1.0"
