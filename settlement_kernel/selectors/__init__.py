"""Read-only query selectors."""

from settlement_kernel.selectors.wallet_selector import WalletSelector

__all__ = ["WalletSelector"]
