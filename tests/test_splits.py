"""Tests for the split strategy resolver."""

from decimal import Decimal

import pytest

from split_ledger.exceptions import (
    AdjustmentImbalance,
    InvalidParticipantSet,
    InvalidShareWeights,
    PercentageMismatch,
    ShareMismatch,
)
from split_ledger.models import (
    AdjustmentSplit,
    EqualSplit,
    ExactAmountSplit,
    PercentageSplit,
    ShareSplit,
    SplitType,
)
from split_ledger.splits import (
    build_expense,
    distribute_remainder,
    method_from_values,
    resolve_shares,
)

PEOPLE = ["p1", "p2", "p3"]


class TestDistributeRemainder:
    """Test the largest-remainder helper directly."""

    def test_even_split_has_no_remainder(self):
        assert distribute_remainder(9000, [Decimal(1)] * 3) == [3000, 3000, 3000]

    def test_remainder_goes_to_earliest_on_ties(self):
        assert distribute_remainder(1000, [Decimal(1)] * 3) == [334, 333, 333]
        assert distribute_remainder(1001, [Decimal(1)] * 3) == [334, 334, 333]

    def test_remainder_goes_to_largest_fraction(self):
        # Exact shares: 333.33 and 666.67, so the extra cent goes to the second
        assert distribute_remainder(1000, [Decimal(1), Decimal(2)]) == [333, 667]

    def test_zero_weight_gets_nothing(self):
        assert distribute_remainder(500, [Decimal(0), Decimal(1)]) == [0, 500]


class TestEqualSplit:
    """Test equal splits."""

    def test_divides_evenly(self):
        """$90 between three is $30 each."""
        shares = resolve_shares(Decimal("90.00"), PEOPLE, EqualSplit())

        assert shares == {
            "p1": Decimal("30.00"),
            "p2": Decimal("30.00"),
            "p3": Decimal("30.00"),
        }

    def test_remainder_cent_goes_to_first_participant(self):
        """$10 between three cannot divide evenly."""
        shares = resolve_shares(Decimal("10.00"), PEOPLE)

        assert shares == {
            "p1": Decimal("3.34"),
            "p2": Decimal("3.33"),
            "p3": Decimal("3.33"),
        }
        assert sum(shares.values()) == Decimal("10.00")

    def test_negative_total_keeps_sign(self):
        """Refunds split the same way with the sign kept."""
        shares = resolve_shares(Decimal("-10.00"), PEOPLE)

        assert list(shares.values()) == [
            Decimal("-3.34"),
            Decimal("-3.33"),
            Decimal("-3.33"),
        ]

    def test_zero_total(self):
        shares = resolve_shares(Decimal("0"), PEOPLE)

        assert all(share == Decimal("0.00") for share in shares.values())

    def test_shares_keep_participant_order(self):
        shares = resolve_shares(Decimal("1.00"), ["z", "a", "m"])

        assert list(shares) == ["z", "a", "m"]

    @pytest.mark.parametrize(
        "total", ["0.01", "0.02", "1.00", "99.99", "100.01", "12345.67"]
    )
    def test_always_sums_to_total(self, total):
        people = [f"p{i}" for i in range(7)]
        shares = resolve_shares(Decimal(total), people)

        assert sum(shares.values()) == Decimal(total)
        assert max(shares.values()) - min(shares.values()) <= Decimal("0.01")


class TestExactAmounts:
    """Test exact-amount splits."""

    def test_uses_amounts_as_given(self):
        method = ExactAmountSplit(amounts={"p1": "12.50", "p2": "7.50"})

        shares = resolve_shares(Decimal("20.00"), ["p1", "p2"], method)

        assert shares == {"p1": Decimal("12.50"), "p2": Decimal("7.50")}

    def test_mismatch_is_rejected(self):
        method = ExactAmountSplit(amounts={"p1": "12.50", "p2": "7.49"})

        with pytest.raises(ShareMismatch):
            resolve_shares(Decimal("20.00"), ["p1", "p2"], method)

    def test_sub_cent_amounts_are_rejected(self):
        # Both round to 10.00, but together they are 20.008
        method = ExactAmountSplit(amounts={"p1": "10.004", "p2": "10.004"})

        with pytest.raises(ShareMismatch):
            resolve_shares(Decimal("20.00"), ["p1", "p2"], method)

    def test_sub_cent_amount_is_rejected_even_when_sum_matches(self):
        method = ExactAmountSplit(amounts={"p1": "10.005", "p2": "9.995"})

        with pytest.raises(ShareMismatch):
            resolve_shares(Decimal("20.00"), ["p1", "p2"], method)

    def test_missing_participant_is_rejected(self):
        method = ExactAmountSplit(amounts={"p1": "20.00"})

        with pytest.raises(InvalidParticipantSet):
            resolve_shares(Decimal("20.00"), ["p1", "p2"], method)


class TestPercentages:
    """Test percentage splits."""

    def test_whole_percentages(self):
        """60/30/10 of $100."""
        method = PercentageSplit(
            percentages={"p1": Decimal(60), "p2": Decimal(30), "p3": Decimal(10)}
        )

        shares = resolve_shares(Decimal("100.00"), PEOPLE, method)

        assert shares == {
            "p1": Decimal("60.00"),
            "p2": Decimal("30.00"),
            "p3": Decimal("10.00"),
        }

    def test_percentages_short_of_100_are_rejected(self):
        method = PercentageSplit(
            percentages={"p1": Decimal(60), "p2": Decimal(30), "p3": Decimal(9)}
        )

        with pytest.raises(PercentageMismatch):
            resolve_shares(Decimal("100.00"), PEOPLE, method)

    def test_thirds_within_tolerance(self):
        """33.33 + 33.33 + 33.33 is within 0.01 of 100."""
        method = PercentageSplit(
            percentages={
                "p1": Decimal("33.33"),
                "p2": Decimal("33.33"),
                "p3": Decimal("33.33"),
            }
        )

        shares = resolve_shares(Decimal("10.00"), PEOPLE, method)

        assert sum(shares.values()) == Decimal("10.00")
        assert shares["p1"] == Decimal("3.34")

    def test_negative_percentage_is_rejected(self):
        method = PercentageSplit(
            percentages={"p1": Decimal(110), "p2": Decimal(-10), "p3": Decimal(0)}
        )

        with pytest.raises(PercentageMismatch):
            resolve_shares(Decimal("100.00"), PEOPLE, method)


class TestShares:
    """Test weighted share splits."""

    def test_weights(self):
        method = ShareSplit(weights={"p1": 1, "p2": 2})

        shares = resolve_shares(Decimal("10.00"), ["p1", "p2"], method)

        assert shares == {"p1": Decimal("3.33"), "p2": Decimal("6.67")}

    def test_zero_weight_participant_owes_nothing(self):
        method = ShareSplit(weights={"p1": 0, "p2": 1, "p3": 1})

        shares = resolve_shares(Decimal("50.00"), PEOPLE, method)

        assert shares["p1"] == Decimal("0.00")
        assert shares["p2"] == shares["p3"] == Decimal("25.00")

    def test_all_zero_weights_are_rejected(self):
        method = ShareSplit(weights={"p1": 0, "p2": 0})

        with pytest.raises(InvalidShareWeights):
            resolve_shares(Decimal("10.00"), ["p1", "p2"], method)

    def test_negative_weight_is_rejected(self):
        method = ShareSplit(weights={"p1": 3, "p2": -1})

        with pytest.raises(InvalidShareWeights):
            resolve_shares(Decimal("10.00"), ["p1", "p2"], method)


class TestAdjustments:
    """Test equal splits with per-person adjustments."""

    def test_adjustments_shift_the_equal_base(self):
        method = AdjustmentSplit(adjustments={"p1": "5.00", "p2": "-5.00"})

        shares = resolve_shares(Decimal("90.00"), PEOPLE, method)

        assert shares == {
            "p1": Decimal("35.00"),
            "p2": Decimal("25.00"),
            "p3": Decimal("30.00"),
        }

    def test_no_adjustments_is_an_equal_split(self):
        shares = resolve_shares(Decimal("10.00"), PEOPLE, AdjustmentSplit())

        assert shares == resolve_shares(Decimal("10.00"), PEOPLE, EqualSplit())

    def test_unbalanced_adjustments_are_rejected(self):
        method = AdjustmentSplit(adjustments={"p1": "5.00"})

        with pytest.raises(AdjustmentImbalance):
            resolve_shares(Decimal("90.00"), PEOPLE, method)


class TestParticipants:
    """Test participant validation shared by every method."""

    def test_empty_participants(self):
        with pytest.raises(InvalidParticipantSet):
            resolve_shares(Decimal("10.00"), [])

    def test_duplicate_participants(self):
        with pytest.raises(InvalidParticipantSet):
            resolve_shares(Decimal("10.00"), ["p1", "p1"])

    def test_single_participant_owes_everything(self):
        """A lone participant gets the full total whatever the method."""
        method = ExactAmountSplit(amounts={"p1": "1.00"})

        assert resolve_shares(Decimal("42.00"), ["p1"], method) == {
            "p1": Decimal("42.00")
        }

    def test_parameters_for_non_participants(self):
        method = AdjustmentSplit(adjustments={"stranger": "0.00"})

        with pytest.raises(InvalidParticipantSet):
            resolve_shares(Decimal("10.00"), PEOPLE, method)


class TestBuildExpense:
    """Test assembling expenses from raw inputs."""

    def test_build_expense_records_split_type(self):
        method = PercentageSplit(percentages={"me": Decimal(75), "p1": Decimal(25)})

        expense = build_expense("Rent", Decimal("1000"), "me", ["me", "p1"], method)

        assert expense.split_type is SplitType.PERCENTAGES
        assert expense.participant_ids == ["me", "p1"]
        assert expense.share_of("p1") == Decimal("250.00")
        assert expense.allocated == expense.total

    def test_positions_sum_to_zero(self):
        expense = build_expense("Dinner", Decimal("10.00"), "p1", PEOPLE)

        positions = expense.positions()

        assert sum(positions.values()) == Decimal("0.00")
        assert positions["p1"] == Decimal("6.66")

    def test_method_from_values(self):
        method = method_from_values("shares", {"p1": "2", "p2": "1"})

        assert isinstance(method, ShareSplit)
        assert method.weights == {"p1": 2, "p2": 1}
        assert isinstance(method_from_values(SplitType.EQUALLY), EqualSplit)

    def test_method_from_values_keeps_exact_amounts_unrounded(self):
        method = method_from_values(SplitType.EXACT_AMOUNTS, {"p1": "10.005"})

        assert method.amounts == {"p1": Decimal("10.005")}
        with pytest.raises(ShareMismatch):
            resolve_shares(Decimal("10.01"), ["p1"], method)
