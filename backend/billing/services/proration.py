"""Day-weighted proration math.

All amounts are integer KRW. Every division result is rounded with
:func:`round_half_up` so an independently computed refund and charge
reconcile to the same won.
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union
from zoneinfo import ZoneInfo

from django.conf import settings

from billing.exceptions import InvalidProrationBasis

Moment = Union[datetime, date]


@dataclass(frozen=True)
class ProrationQuote:
    total_days_in_period: int
    used_days: int
    days_left: int
    credit_amount: int
    new_plan_days: int
    prorated_new_amount: int
    net: int

    @property
    def is_charge(self) -> bool:
        return self.net > 0

    @property
    def is_refund(self) -> bool:
        return self.net < 0


def billing_zone() -> tzinfo:
    return ZoneInfo(getattr(settings, "BILLING_TIME_ZONE", "Asia/Seoul"))


def round_half_up(value) -> int:
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _local_date(moment: Moment, tz: tzinfo) -> date:
    if isinstance(moment, datetime):
        if moment.tzinfo is not None:
            moment = moment.astimezone(tz)
        return moment.date()
    return moment


def calendar_days_between(start: Moment, end: Moment, tz: Optional[tzinfo] = None) -> int:
    """Whole calendar days from ``start`` to ``end`` in the billing time zone."""

    tz = tz or billing_zone()
    return (_local_date(end, tz) - _local_date(start, tz)).days


def _prorate(amount: int, basis_days: int, days: int) -> int:
    return round_half_up(Decimal(amount) * Decimal(days) / Decimal(basis_days))


def calculate_proration(
    current_amount: int,
    current_amount_period_days: int,
    new_plan_price: int,
    period_start: Moment,
    next_billing_date: Moment,
    today: Moment,
    new_plan_period_days: Optional[int] = None,
    tz: Optional[tzinfo] = None,
) -> ProrationQuote:
    if current_amount_period_days is None or current_amount_period_days <= 0:
        raise InvalidProrationBasis(
            "Subscription has no positive amount period days; proration is undefined.",
            context={"amount_period_days": current_amount_period_days},
        )
    new_basis = new_plan_period_days or current_amount_period_days
    if new_basis <= 0:
        raise InvalidProrationBasis(
            "New plan day basis must be positive.",
            context={"new_plan_period_days": new_plan_period_days},
        )

    tz = tz or billing_zone()
    total_days = calendar_days_between(period_start, next_billing_date, tz)
    used_days = calendar_days_between(period_start, today, tz) + 1

    if total_days <= 0:
        return ProrationQuote(
            total_days_in_period=total_days,
            used_days=used_days,
            days_left=0,
            credit_amount=0,
            new_plan_days=0,
            prorated_new_amount=0,
            net=0,
        )

    days_left = max(0, total_days - used_days)
    credit_amount = _prorate(current_amount, current_amount_period_days, days_left)
    new_plan_days = days_left + 1
    prorated_new_amount = _prorate(new_plan_price, new_basis, new_plan_days)

    return ProrationQuote(
        total_days_in_period=total_days,
        used_days=used_days,
        days_left=days_left,
        credit_amount=credit_amount,
        new_plan_days=new_plan_days,
        prorated_new_amount=prorated_new_amount,
        net=prorated_new_amount - credit_amount,
    )


def calculate_refund(
    current_amount: int,
    current_amount_period_days: int,
    period_start: Moment,
    next_billing_date: Moment,
    today: Moment,
    tz: Optional[tzinfo] = None,
) -> int:
    """Unused-days credit for an immediate cancellation."""

    quote = calculate_proration(
        current_amount,
        current_amount_period_days,
        0,
        period_start,
        next_billing_date,
        today,
        tz=tz,
    )
    return quote.credit_amount


def add_months(moment: datetime, months: int) -> datetime:
    """Shift ``moment`` by whole calendar months, clamping to the month end."""

    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def estimate_cycle_days(next_billing_date: Moment, tz: Optional[tzinfo] = None) -> int:
    """Approximate the original cycle length as one calendar month back.

    Month-length boundaries can make this drift by a day or two.
    """

    tz = tz or billing_zone()
    anchor = next_billing_date
    if isinstance(anchor, datetime) and anchor.tzinfo is not None:
        anchor = anchor.astimezone(tz)
    if not isinstance(anchor, datetime):
        anchor = datetime(anchor.year, anchor.month, anchor.day)
    return calendar_days_between(add_months(anchor, -1), anchor, tz)
