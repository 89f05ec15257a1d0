"""
SLA math -- how late an installation is.

A quote's installation is due ``installation_timeline_days`` after the
calendar date it was created.  The count is whole calendar days in UTC, so a
quote created late in the evening is not penalised for the clock time.
"""

from datetime import date, timedelta, timezone

from settlement_kernel.domain.dtos import Quote


def due_date(quote: Quote) -> date:
    created = quote.created_at
    if created.tzinfo is not None:
        created = created.astimezone(timezone.utc)
    return created.date() + timedelta(days=quote.installation_timeline_days)


def days_overdue(quote: Quote, today: date) -> int:
    """Whole days past the due date; 0 when on time or early."""
    return max((today - due_date(quote)).days, 0)
