"""Billing-cycle calculator for subscriptions.

Pure functions only. Month arithmetic clamps to the last day of the target
month: 2024-01-31 plus one month is 2024-02-29, and 2023-01-31 plus one month
is 2023-02-28. ``billing_schedule`` steps from the original anchor so
clamped dates don't drift (Jan 31 -> Feb 29 -> Mar 31, not Mar 29).
"""

import calendar
import logging
from collections.abc import Iterable
from datetime import MAXYEAR, date, timedelta
from decimal import Decimal

from .exceptions import UnsupportedBillingCycle
from .models import BillingCycle, Subscription
from .money import sum_money, to_money

logger = logging.getLogger(__name__)

# Sentinel "next billing date" for lifetime purchases
NEVER = date.max

# Fixed conversion table: (multiplier, divisor) to a per-month cost
_MONTHLY_FACTORS: dict[BillingCycle, tuple[Decimal, Decimal]] = {
    BillingCycle.DAILY: (Decimal("30"), Decimal("1")),
    BillingCycle.WEEKLY: (Decimal("4.33"), Decimal("1")),
    BillingCycle.BIWEEKLY: (Decimal("2.17"), Decimal("1")),
    BillingCycle.MONTHLY: (Decimal("1"), Decimal("1")),
    BillingCycle.QUARTERLY: (Decimal("1"), Decimal("3")),
    BillingCycle.SEMI_ANNUALLY: (Decimal("1"), Decimal("6")),
    BillingCycle.YEARLY: (Decimal("1"), Decimal("12")),
    BillingCycle.ANNUALLY: (Decimal("1"), Decimal("12")),
    BillingCycle.LIFETIME: (Decimal("0"), Decimal("1")),
}

# How far one billing period moves the calendar: (unit, amount)
_PERIODS: dict[BillingCycle, tuple[str, int]] = {
    BillingCycle.DAILY: ("days", 1),
    BillingCycle.WEEKLY: ("days", 7),
    BillingCycle.BIWEEKLY: ("days", 14),
    BillingCycle.MONTHLY: ("months", 1),
    BillingCycle.QUARTERLY: ("months", 3),
    BillingCycle.SEMI_ANNUALLY: ("months", 6),
    BillingCycle.YEARLY: ("months", 12),
    BillingCycle.ANNUALLY: ("months", 12),
}


def parse_cycle(cycle: BillingCycle | str) -> BillingCycle:
    """
    Coerce a cycle value, accepting display spellings like "Semi-annually".

    Raises:
        UnsupportedBillingCycle: The value isn't a known cycle
    """
    if isinstance(cycle, BillingCycle):
        return cycle
    normalized = str(cycle).strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return BillingCycle(normalized)
    except ValueError as e:
        raise UnsupportedBillingCycle(f"Unsupported billing cycle: {cycle!r}") from e


def monthly_equivalent(price: Decimal, cycle: BillingCycle | str) -> Decimal:
    """
    Normalize a price to a per-month cost.

    Args:
        price: Price charged once per cycle
        cycle: Billing cycle

    Returns:
        Monthly cost, rounded to the minor unit (lifetime is always zero)
    """
    multiplier, divisor = _MONTHLY_FACTORS[parse_cycle(cycle)]
    return to_money(to_money(price) * multiplier / divisor)


def add_months(start: date, months: int) -> date:
    """
    Add calendar months, clamping to the last day of the target month.

    Results past the end of the calendar become NEVER.
    """
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    if year > MAXYEAR:
        return NEVER
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(start.day, last_day))


def next_billing_date(
    from_date: date, cycle: BillingCycle | str, strict: bool = True
) -> date:
    """
    Get the billing date one cycle after ``from_date``.

    Args:
        from_date: Current billing date
        cycle: Billing cycle
        strict: Raise on unknown cycles; when False, log a warning and return
            ``from_date`` unchanged

    Returns:
        Next billing date, or NEVER for lifetime purchases

    Raises:
        UnsupportedBillingCycle: Unknown cycle and strict is True
    """
    try:
        billing_cycle = parse_cycle(cycle)
    except UnsupportedBillingCycle:
        if strict:
            raise
        logger.warning(f"Unsupported billing cycle {cycle!r}; keeping {from_date}")
        return from_date

    if billing_cycle is BillingCycle.LIFETIME or from_date == NEVER:
        return NEVER

    return _advance(from_date, billing_cycle, 1)


def billing_schedule(
    anchor: date, cycle: BillingCycle | str, count: int
) -> list[date]:
    """
    List the next ``count`` billing dates after ``anchor``.

    Every date is computed from the anchor rather than from the previous
    date, so a month-end anchor keeps landing on month ends.
    """
    billing_cycle = parse_cycle(cycle)
    if billing_cycle is BillingCycle.LIFETIME:
        return []
    return [_advance(anchor, billing_cycle, n) for n in range(1, count + 1)]


def advance_past(subscription: Subscription, today: date) -> Subscription:
    """
    Roll a subscription's next billing date to the first one after today.

    Used by the renewal workflow once a renewal has been charged. Inactive
    and lifetime subscriptions come back unchanged.
    """
    if (
        not subscription.is_active
        or subscription.billing_cycle is BillingCycle.LIFETIME
        or subscription.next_billing_date > today
    ):
        return subscription

    anchor = subscription.next_billing_date
    periods = 1
    next_date = _advance(anchor, subscription.billing_cycle, periods)
    while next_date <= today:
        periods += 1
        next_date = _advance(anchor, subscription.billing_cycle, periods)

    logger.info(
        f"Advanced '{subscription.name}' from {anchor} to {next_date} "
        f"({periods} period{'s' if periods != 1 else ''})"
    )
    return subscription.model_copy(update={"next_billing_date": next_date})


def renewals_due(
    subscriptions: Iterable[Subscription], today: date, within_days: int = 7
) -> list[Subscription]:
    """Get active subscriptions billing on or before ``today + within_days``."""
    horizon = today + timedelta(days=within_days)
    due = [
        sub
        for sub in subscriptions
        if sub.is_active
        and sub.billing_cycle is not BillingCycle.LIFETIME
        and sub.next_billing_date <= horizon
    ]
    return sorted(due, key=lambda sub: sub.next_billing_date)


def cost_per_person(subscription: Subscription) -> Decimal:
    """Monthly cost split between the owner and everyone it's shared with."""
    monthly = monthly_equivalent(subscription.price, subscription.billing_cycle)
    if not subscription.is_shared:
        return monthly
    return to_money(monthly / (len(subscription.shared_with) + 1))


def total_monthly_cost(subscriptions: Iterable[Subscription]) -> Decimal:
    """Sum the monthly equivalents of all active subscriptions."""
    return sum_money(
        monthly_equivalent(sub.price, sub.billing_cycle)
        for sub in subscriptions
        if sub.is_active
    )


# ============================================================================
# Trials
# ============================================================================


def trial_days_remaining(subscription: Subscription, today: date) -> int | None:
    if subscription.trial_end_date is None:
        return None
    return (subscription.trial_end_date - today).days


def is_trial_expired(subscription: Subscription, today: date) -> bool:
    if subscription.trial_end_date is None:
        return False
    return today > subscription.trial_end_date


def trial_status(subscription: Subscription, today: date) -> str:
    """Short human-readable trial status ("" when not on a trial)."""
    if not subscription.is_free_trial:
        return ""
    if is_trial_expired(subscription, today):
        return "Trial Expired"

    days = trial_days_remaining(subscription, today)
    if days is None:
        return "Active Trial"
    if days == 0:
        return "Trial ends today"
    if days == 1:
        return "Trial ends tomorrow"
    if days < 7:
        return f"Trial ends in {days} days"
    return "Active Trial"


def renewal_price(subscription: Subscription) -> Decimal:
    """Price of the next charge, switching to the post-trial price when set."""
    if (
        subscription.is_free_trial
        and subscription.price_after_trial is not None
        and subscription.trial_end_date is not None
        and subscription.next_billing_date >= subscription.trial_end_date
    ):
        return subscription.price_after_trial
    return subscription.price


def _advance(start: date, cycle: BillingCycle, periods: int) -> date:
    unit, amount = _PERIODS[cycle]
    if unit == "days":
        days = amount * periods
        if (NEVER - start).days < days:
            return NEVER
        return start + timedelta(days=days)
    return add_months(start, amount * periods)
