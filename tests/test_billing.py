"""Tests for the billing-cycle calculator."""

from datetime import date
from decimal import Decimal

import pytest

from split_ledger.billing import (
    NEVER,
    add_months,
    advance_past,
    billing_schedule,
    cost_per_person,
    is_trial_expired,
    monthly_equivalent,
    next_billing_date,
    parse_cycle,
    renewal_price,
    renewals_due,
    total_monthly_cost,
    trial_days_remaining,
    trial_status,
)
from split_ledger.exceptions import UnsupportedBillingCycle
from split_ledger.models import BillingCycle, Subscription


def make_subscription(**overrides) -> Subscription:
    """Create a subscription with sensible defaults."""
    fields = {
        "name": "Streaming",
        "price": Decimal("15.00"),
        "billing_cycle": BillingCycle.MONTHLY,
        "next_billing_date": date(2024, 1, 15),
    }
    fields.update(overrides)
    return Subscription(**fields)


class TestMonthlyEquivalent:
    """Test conversion of cycle prices to monthly costs."""

    @pytest.mark.parametrize(
        "cycle, price, expected",
        [
            (BillingCycle.DAILY, "1.00", "30.00"),
            (BillingCycle.WEEKLY, "10.00", "43.30"),
            (BillingCycle.BIWEEKLY, "10.00", "21.70"),
            (BillingCycle.MONTHLY, "9.99", "9.99"),
            (BillingCycle.QUARTERLY, "30.00", "10.00"),
            (BillingCycle.SEMI_ANNUALLY, "60.00", "10.00"),
            (BillingCycle.YEARLY, "120.00", "10.00"),
            (BillingCycle.ANNUALLY, "99.99", "8.33"),
            (BillingCycle.LIFETIME, "500.00", "0.00"),
        ],
    )
    def test_conversion_table(self, cycle, price, expected):
        assert monthly_equivalent(Decimal(price), cycle) == Decimal(expected)

    def test_display_spellings(self):
        assert parse_cycle("Semi-annually") is BillingCycle.SEMI_ANNUALLY
        assert parse_cycle(" Monthly ") is BillingCycle.MONTHLY
        assert monthly_equivalent(Decimal("12"), "Yearly") == Decimal("1.00")

    def test_unknown_cycle(self):
        with pytest.raises(UnsupportedBillingCycle):
            monthly_equivalent(Decimal("10"), "fortnightly-ish")


class TestNextBillingDate:
    """Test stepping one billing cycle forward."""

    def test_month_end_clamps_in_leap_year(self):
        assert next_billing_date(date(2024, 1, 31), BillingCycle.MONTHLY) == date(
            2024, 2, 29
        )

    def test_month_end_clamps_in_common_year(self):
        assert next_billing_date(date(2023, 1, 31), "monthly") == date(2023, 2, 28)

    @pytest.mark.parametrize(
        "cycle, expected",
        [
            (BillingCycle.DAILY, date(2024, 1, 16)),
            (BillingCycle.WEEKLY, date(2024, 1, 22)),
            (BillingCycle.BIWEEKLY, date(2024, 1, 29)),
            (BillingCycle.MONTHLY, date(2024, 2, 15)),
            (BillingCycle.QUARTERLY, date(2024, 4, 15)),
            (BillingCycle.SEMI_ANNUALLY, date(2024, 7, 15)),
            (BillingCycle.YEARLY, date(2025, 1, 15)),
            (BillingCycle.ANNUALLY, date(2025, 1, 15)),
        ],
    )
    def test_each_cycle(self, cycle, expected):
        assert next_billing_date(date(2024, 1, 15), cycle) == expected

    def test_leap_day_yearly(self):
        assert next_billing_date(date(2024, 2, 29), BillingCycle.YEARLY) == date(
            2025, 2, 28
        )

    def test_lifetime_never_bills_again(self):
        assert next_billing_date(date(2024, 1, 15), BillingCycle.LIFETIME) == NEVER
        assert next_billing_date(NEVER, BillingCycle.MONTHLY) == NEVER

    def test_unknown_cycle_is_strict_by_default(self):
        with pytest.raises(UnsupportedBillingCycle):
            next_billing_date(date(2024, 1, 15), "hourly")

    def test_unknown_cycle_soft_mode_keeps_date(self, caplog):
        result = next_billing_date(date(2024, 1, 15), "hourly", strict=False)

        assert result == date(2024, 1, 15)
        assert "Unsupported billing cycle" in caplog.text

    def test_add_months_across_year(self):
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)

    @pytest.mark.parametrize(
        "from_date, cycle",
        [
            (date(9999, 12, 15), "monthly"),
            (date(9999, 10, 1), "quarterly"),
            (date(9999, 12, 28), "weekly"),
            (date(9999, 12, 31), "daily"),
        ],
    )
    def test_past_end_of_calendar_is_never(self, from_date, cycle):
        assert next_billing_date(from_date, cycle) == NEVER

    def test_last_representable_date_is_still_reachable(self):
        assert next_billing_date(date(9999, 12, 24), "weekly") == date(9999, 12, 31)
        assert add_months(date(9999, 11, 30), 1) == date(9999, 12, 30)


class TestSchedule:
    """Test multi-period schedules."""

    def test_month_end_anchor_does_not_drift(self):
        schedule = billing_schedule(date(2024, 1, 31), BillingCycle.MONTHLY, 3)

        assert schedule == [date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)]

    def test_weekly_schedule(self):
        schedule = billing_schedule(date(2024, 1, 1), "weekly", 2)

        assert schedule == [date(2024, 1, 8), date(2024, 1, 15)]

    def test_lifetime_schedule_is_empty(self):
        assert billing_schedule(date(2024, 1, 1), BillingCycle.LIFETIME, 5) == []

    def test_schedule_near_end_of_calendar(self):
        schedule = billing_schedule(date(9999, 11, 15), BillingCycle.MONTHLY, 3)

        assert schedule == [date(9999, 12, 15), NEVER, NEVER]


class TestRenewals:
    """Test renewal windows and rolling dates forward."""

    def test_advance_past_skips_missed_periods(self):
        sub = make_subscription(next_billing_date=date(2024, 1, 31))

        updated = advance_past(sub, date(2024, 3, 20))

        assert updated.next_billing_date == date(2024, 3, 31)
        assert sub.next_billing_date == date(2024, 1, 31)

    def test_advance_past_on_billing_day(self):
        sub = make_subscription(next_billing_date=date(2024, 1, 15))

        assert advance_past(sub, date(2024, 1, 15)).next_billing_date == date(
            2024, 2, 15
        )

    def test_advance_past_future_date_unchanged(self):
        sub = make_subscription(next_billing_date=date(2024, 5, 1))

        assert advance_past(sub, date(2024, 4, 1)) is sub

    def test_renewals_due(self):
        overdue = make_subscription(name="Overdue", next_billing_date=date(2024, 1, 1))
        soon = make_subscription(name="Soon", next_billing_date=date(2024, 1, 17))
        later = make_subscription(name="Later", next_billing_date=date(2024, 2, 1))
        lifetime = make_subscription(
            name="App", billing_cycle=BillingCycle.LIFETIME, next_billing_date=NEVER
        )
        cancelled = make_subscription(
            name="Old", next_billing_date=date(2024, 1, 12), is_active=False
        )

        due = renewals_due(
            [later, soon, lifetime, cancelled, overdue], date(2024, 1, 12)
        )

        assert [sub.name for sub in due] == ["Overdue", "Soon"]


class TestCosts:
    """Test shared and total costs."""

    def test_cost_per_person(self):
        sub = make_subscription(price=Decimal("15.00"), shared_with=["alice", "bob"])

        assert cost_per_person(sub) == Decimal("5.00")

    def test_cost_per_person_unshared(self):
        assert cost_per_person(make_subscription()) == Decimal("15.00")

    def test_total_monthly_cost_skips_inactive(self):
        subs = [
            make_subscription(price=Decimal("10.00")),
            make_subscription(price=Decimal("120.00"), billing_cycle="yearly"),
            make_subscription(price=Decimal("50.00"), is_active=False),
        ]

        assert total_monthly_cost(subs) == Decimal("20.00")


class TestTrials:
    """Test free-trial helpers."""

    @pytest.fixture
    def trial(self):
        return make_subscription(
            is_free_trial=True,
            trial_start_date=date(2024, 1, 1),
            trial_end_date=date(2024, 1, 15),
            price=Decimal("0.00"),
            price_after_trial=Decimal("12.99"),
        )

    @pytest.mark.parametrize(
        "today, expected",
        [
            (date(2024, 1, 1), "Active Trial"),
            (date(2024, 1, 10), "Trial ends in 5 days"),
            (date(2024, 1, 14), "Trial ends tomorrow"),
            (date(2024, 1, 15), "Trial ends today"),
            (date(2024, 1, 16), "Trial Expired"),
        ],
    )
    def test_trial_status(self, trial, today, expected):
        assert trial_status(trial, today) == expected

    def test_not_a_trial(self):
        assert trial_status(make_subscription(), date(2024, 1, 1)) == ""

    def test_days_remaining(self, trial):
        assert trial_days_remaining(trial, date(2024, 1, 12)) == 3
        assert not is_trial_expired(trial, date(2024, 1, 15))
        assert is_trial_expired(trial, date(2024, 1, 16))

    def test_renewal_price_after_trial(self, trial):
        assert renewal_price(trial) == Decimal("12.99")
        early = trial.model_copy(update={"next_billing_date": date(2024, 1, 10)})
        assert renewal_price(early) == Decimal("0.00")
