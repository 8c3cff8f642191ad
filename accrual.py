"""Rent accrual arithmetic.

Everything here is a pure function of a selection's stored fields and an
``as_of`` moment; nothing is written back.  Day boundaries are local
calendar dates, so a rent clock started at 23:59 has accrued one full day
at 00:01 the next morning.

Two day counts are used:

* ``elapsed_days`` counts whole days between the start of the rent clock
  and the effective end.  The rent summary reports this number.
* ``charged_days`` additionally bills the current day in advance while the
  clock is running.  Payment allocation uses it, so the first confirmation
  of a fresh selection already owes one day of rent.
"""

import enum
from dataclasses import dataclass
from datetime import datetime, date, timedelta
from typing import Optional

from models import PlanSelection


DEFAULT_ACCIDENTAL_COVER = 105.0
DAYS_PER_WEEK = 7


class CoverPolicy(str, enum.Enum):
    FLAT = 'flat'    # one cover fee per selection
    DAILY = 'daily'  # cover accrues at accidental_cover / 7 per elapsed day


def _as_date(value) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value


def _money(value: float) -> float:
    return round(value, 2)


def effective_end(rent_paused, as_of) -> date:
    """Return the day accrual stops at: the pause date if it has passed, else ``as_of``."""
    paused_day = _as_date(rent_paused)
    as_of_day = _as_date(as_of)
    if paused_day is not None and paused_day <= as_of_day:
        return paused_day
    return as_of_day


def elapsed_days(rent_start, rent_paused, as_of) -> int:
    if rent_start is None:
        return 0
    end = effective_end(rent_paused, as_of)
    return max(0, (end - _as_date(rent_start)).days)


def charged_days(rent_start, rent_paused, as_of) -> int:
    if rent_start is None:
        return 0
    days = elapsed_days(rent_start, rent_paused, as_of)
    paused_day = _as_date(rent_paused)
    if paused_day is not None and paused_day <= _as_date(as_of):
        return days
    return days + 1


def rent_per_day_for(selection: PlanSelection) -> float:
    if selection.rent_per_day is not None:
        return selection.rent_per_day
    return selection.slab_rent_day or 0.0


def accidental_cover_for(selection: PlanSelection) -> float:
    if not selection.is_weekly:
        return 0.0
    if selection.slab_accidental_cover is None:
        return DEFAULT_ACCIDENTAL_COVER
    return selection.slab_accidental_cover


def cover_charged(selection: PlanSelection, days: int, policy: CoverPolicy) -> float:
    cover = accidental_cover_for(selection)
    if policy is CoverPolicy.DAILY:
        return _money(days * cover / DAYS_PER_WEEK)
    return cover


@dataclass(frozen=True)
class RentSummary:
    rent_per_day: float
    total_days: int
    total_due: float
    start_date: Optional[datetime] = None
    paused_date: Optional[datetime] = None
    as_of: Optional[datetime] = None
    status: Optional[str] = None

    @property
    def has_started(self) -> bool:
        return self.start_date is not None

    @property
    def entries(self) -> list:
        """One ``{date, amount}`` row per counted day, from the start date on."""
        if not self.has_started:
            return []
        first = _as_date(self.start_date)
        return [{'date': (first + timedelta(days=offset)).isoformat(), 'amount': self.rent_per_day}
                for offset in range(self.total_days)]

    def to_dict(self) -> dict:
        return {
            'hasStarted': self.has_started,
            'rentPerDay': self.rent_per_day,
            'totalDays': self.total_days,
            'totalDue': self.total_due,
            'startDate': self.start_date.isoformat() if self.start_date else None,
            'pausedDate': self.paused_date.isoformat() if self.paused_date else None,
            'asOfDate': _as_date(self.as_of).isoformat() if self.as_of else None,
            'entries': self.entries,
            'status': self.status,
        }


def compute_rent_summary(selection: PlanSelection, as_of: Optional[datetime] = None,
                         cover_policy: CoverPolicy = CoverPolicy.FLAT) -> RentSummary:
    """Rent accrued from the start of the clock up to ``as_of``.

    Returns zero days and zero due while ``rent_start_date`` is unset.  Under
    the daily cover policy weekly plans also accrue their accidental cover
    pro rata; under the flat policy the cover is a one-off fee handled by
    ``compute_payment_details`` and never appears here.
    """
    as_of = as_of or datetime.now()
    rate = rent_per_day_for(selection)
    days = elapsed_days(selection.rent_start_date, selection.rent_paused_date, as_of)
    due = days * rate
    if cover_policy is CoverPolicy.DAILY:
        due += cover_charged(selection, days, cover_policy)
    return RentSummary(rent_per_day=rate,
                       total_days=days,
                       total_due=_money(due),
                       start_date=selection.rent_start_date,
                       paused_date=selection.rent_paused_date,
                       as_of=as_of,
                       status=selection.status)


@dataclass(frozen=True)
class PaymentDetails:
    charged_days: int
    rent_per_day: float
    total_rent: float
    deposit_due: float
    rent_due: float
    accidental_cover: float
    accidental_cover_due: float
    extra_amount: float
    extra_amount_due: float
    adjustment: float
    total_payable: float

    def to_dict(self) -> dict:
        return {
            'days': self.charged_days,
            'rentPerDay': self.rent_per_day,
            'totalRent': self.total_rent,
            'depositDue': self.deposit_due,
            'rentDue': self.rent_due,
            'accidentalCover': self.accidental_cover,
            'accidentalCoverDue': self.accidental_cover_due,
            'extraAmount': self.extra_amount,
            'extraAmountDue': self.extra_amount_due,
            'adjustment': self.adjustment,
            'totalPayable': self.total_payable,
        }


def compute_payment_details(selection: PlanSelection, as_of: Optional[datetime] = None,
                            cover_policy: CoverPolicy = CoverPolicy.FLAT) -> PaymentDetails:
    """Outstanding amounts per bucket as of ``as_of``.

    A positive adjustment is a credit against rent (waiver); a negative one
    adds to the rent owed.
    """
    as_of = as_of or datetime.now()
    rate = rent_per_day_for(selection)
    days = charged_days(selection.rent_start_date, selection.rent_paused_date, as_of)
    total_rent = _money(days * rate)
    adjustment = selection.adjustment_amount or 0.0

    deposit_due = max(0.0, (selection.security_deposit or 0.0) - (selection.deposit_paid or 0.0))
    rent_due = max(0.0, total_rent - (selection.rent_paid or 0.0) - adjustment)
    cover = cover_charged(selection, days, cover_policy)
    cover_due = max(0.0, cover - (selection.accidental_cover_paid or 0.0))
    extra = selection.extra_amount or 0.0
    extra_due = max(0.0, extra - (selection.extra_amount_paid or 0.0))

    return PaymentDetails(charged_days=days,
                          rent_per_day=rate,
                          total_rent=total_rent,
                          deposit_due=_money(deposit_due),
                          rent_due=_money(rent_due),
                          accidental_cover=cover,
                          accidental_cover_due=_money(cover_due),
                          extra_amount=extra,
                          extra_amount_due=_money(extra_due),
                          adjustment=adjustment,
                          total_payable=_money(deposit_due + rent_due + cover_due + extra_due))
