"""Tests for fixed-precision money helpers."""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from split_ledger.models import Participant
from split_ledger.money import from_cents, sign, sum_money, to_cents, to_money


class TestToMoney:
    """Test normalization to two decimal places."""

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("10", "10.00"),
            (" 3.5 ", "3.50"),
            (0.1, "0.10"),
            (2.675, "2.68"),
            (Decimal("1.005"), "1.01"),
            (Decimal("-1.005"), "-1.01"),
            (7, "7.00"),
        ],
    )
    def test_rounds_half_up(self, value, expected):
        assert to_money(value) == Decimal(expected)
        assert str(to_money(value)) == expected

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", True])
    def test_rejects_non_amounts(self, value):
        with pytest.raises(ValueError):
            to_money(value)

    def test_cents_round_trip(self):
        assert to_cents(Decimal("12.34")) == 1234
        assert from_cents(-5) == Decimal("-0.05")

    def test_sum_of_nothing_is_zero(self):
        assert sum_money([]) == Decimal("0.00")
        assert str(sum_money([])) == "0.00"

    def test_sign(self):
        assert [sign(Decimal(v)) for v in ("-2", "0", "3")] == [-1, 0, 1]


class TestMoneyField:
    """Test the Money annotated type on models."""

    def test_validates_and_serializes_as_string(self):
        participant = Participant(person_id="p1", amount=12.5)

        assert participant.amount == Decimal("12.50")
        assert participant.model_dump_json() == '{"person_id":"p1","amount":"12.50"}'
        assert participant.model_dump()["amount"] == Decimal("12.50")

    def test_invalid_amount_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            Participant(person_id="p1", amount="twelve")
