"""Late-fee arithmetic shared by Return and the clearance projection."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from circdesk.models import money


@dataclass(frozen=True)
class LateFee:
    days_late: int
    penalty: Decimal


def days_late(due_date: date, now: datetime) -> int:
    """Whole days between the due date and today.

    A loan is late only once ``now`` is past the due date's last instant, so
    returning on the due date itself is never late, and one second after
    midnight the next day is already one day late.
    """
    return max(0, (now.date() - due_date).days)


def compute_late_fee(due_date: date, now: datetime, fine_per_day: Decimal) -> LateFee:
    late = days_late(due_date, now)
    return LateFee(days_late=late, penalty=money(money(fine_per_day) * late))


def replacement_fee(title_price: Decimal, default_fee: Decimal) -> Decimal:
    """Fee charged for a lost book: the title's price, else the default."""
    price = money(title_price)
    return price if price > 0 else money(default_fee)
