"""
Quote repository port.

The quote service owns quotes; the settlement kernel only reads them.  Any
object with these two methods can be plugged in: an HTTP client, a
read-replica query, or the in-memory repository used by tests and local
runs.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from settlement_kernel.domain.dtos import Quote
from settlement_kernel.exceptions import QuoteNotFoundError


@runtime_checkable
class QuoteRepository(Protocol):
    def get_quote(self, quote_id: str) -> Quote:
        """Raises QuoteNotFoundError when unknown."""
        ...

    def list_active_quotes(self) -> list[Quote]:
        """Quotes with admin_status = approved and is_selected = true."""
        ...


class InMemoryQuoteRepository:
    """Dict-backed QuoteRepository."""

    def __init__(self, quotes: Iterable[Quote] = ()):
        self._quotes: dict[str, Quote] = {q.quote_id: q for q in quotes}
        self._lock = threading.Lock()

    def add(self, quote: Quote) -> None:
        with self._lock:
            self._quotes[quote.quote_id] = quote

    def get_quote(self, quote_id: str) -> Quote:
        with self._lock:
            quote = self._quotes.get(quote_id)
        if quote is None:
            raise QuoteNotFoundError(quote_id)
        return quote

    def list_active_quotes(self) -> list[Quote]:
        with self._lock:
            return [q for q in self._quotes.values() if q.is_active]
