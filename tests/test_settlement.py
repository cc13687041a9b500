"""Tests for full and partial settlements."""

from decimal import Decimal

import pytest

from split_ledger.exceptions import (
    InvalidParticipantSet,
    InvalidSettlementAmount,
    LedgerValidationError,
    SettlementExceedsBalance,
)
from split_ledger.ledger import Ledger
from split_ledger.models import (
    BalanceState,
    Group,
    SettlementDirection,
    SettlementMode,
    TransactionCategory,
)
from split_ledger.settlement import SettlementProcessor
from split_ledger.splits import build_expense

ME = "me"


@pytest.fixture
def ledger():
    return Ledger(ME)


@pytest.fixture
def processor(ledger):
    return SettlementProcessor(ledger)


@pytest.fixture
def alice_owes_50(ledger):
    """Alice owes the current user $50."""
    ledger.record_expense(build_expense("Concert", Decimal("100.00"), ME, [ME, "alice"]))
    return ledger


@pytest.fixture
def you_owe_alice_15(ledger):
    """The current user owes Alice $15."""
    ledger.record_expense(build_expense("Cab", Decimal("30.00"), "alice", [ME, "alice"]))
    return ledger


class TestPartialSettlement:
    """Test settling part of a balance."""

    def test_partial_payment_received(self, processor, alice_owes_50):
        """+$50, partial settle $20 leaves +$30."""
        result = processor.settle(
            "alice",
            amount=Decimal("20.00"),
            mode=SettlementMode.PARTIAL,
            counterparty_name="Alice",
        )

        assert result.prior_balance == Decimal("50.00")
        assert result.new_balance == Decimal("30.00")
        assert result.state is BalanceState.PARTIALLY_SETTLED
        assert result.settlement.direction is SettlementDirection.USER_RECEIVED
        assert result.settlement.amount == Decimal("20.00")
        assert not result.settlement.is_full
        assert alice_owes_50.net_balance("alice") == Decimal("30.00")
        assert alice_owes_50.cached_balance("alice") == Decimal("30.00")

    def test_partial_payment_made(self, processor, you_owe_alice_15):
        result = processor.settle(
            "alice", amount="5", mode="partial", counterparty_name="Alice"
        )

        assert result.new_balance == Decimal("-10.00")
        assert result.settlement.direction is SettlementDirection.USER_PAID
        assert result.transaction.title == "Partial payment to Alice"
        assert result.transaction.amount == Decimal("-5.00")

    def test_partial_to_exactly_zero_is_settled(self, processor, alice_owes_50):
        result = processor.settle("alice", amount="50", mode=SettlementMode.PARTIAL)

        assert result.new_balance == Decimal("0.00")
        assert result.state is BalanceState.SETTLED

    def test_settlements_are_not_idempotent(self, processor, alice_owes_50):
        """Each call is a new payment."""
        processor.settle("alice", amount="10", mode=SettlementMode.PARTIAL)
        processor.settle("alice", amount="10", mode=SettlementMode.PARTIAL)

        assert alice_owes_50.net_balance("alice") == Decimal("30.00")
        assert len(alice_owes_50.settlements("alice")) == 2

    def test_amount_over_balance_is_rejected(self, processor, alice_owes_50):
        with pytest.raises(SettlementExceedsBalance) as exc_info:
            processor.settle("alice", amount="60", mode=SettlementMode.PARTIAL)

        assert exc_info.value.outstanding == Decimal("50.00")
        assert alice_owes_50.net_balance("alice") == Decimal("50.00")
        assert alice_owes_50.settlements() == []

    @pytest.mark.parametrize("amount", ["0", "-5", None])
    def test_missing_or_non_positive_amount(self, processor, alice_owes_50, amount):
        with pytest.raises(InvalidSettlementAmount):
            processor.settle("alice", amount=amount, mode=SettlementMode.PARTIAL)

        assert alice_owes_50.settlements() == []


class TestFullSettlement:
    """Test settling an entire balance."""

    def test_full_settlement_you_owe(self, processor, you_owe_alice_15):
        """-$15, full settle: you pay $15 and the balance is zero."""
        result = processor.settle("alice", counterparty_name="Alice")

        assert result.new_balance == Decimal("0.00")
        assert result.settlement.direction is SettlementDirection.USER_PAID
        assert result.settlement.amount == Decimal("15.00")
        assert result.settlement.is_full
        assert result.state is BalanceState.SETTLED

    def test_full_settlement_owed_to_you(self, processor, alice_owes_50):
        result = processor.settle("alice")

        assert result.settlement.amount == Decimal("50.00")
        assert result.settlement.direction is SettlementDirection.USER_RECEIVED
        assert alice_owes_50.net_balance("alice") == Decimal("0.00")

    def test_full_with_matching_amount(self, processor, alice_owes_50):
        result = processor.settle("alice", amount=Decimal("50"))

        assert result.new_balance == Decimal("0.00")

    def test_full_with_wrong_amount_is_rejected(self, processor, alice_owes_50):
        with pytest.raises(InvalidSettlementAmount):
            processor.settle("alice", amount=Decimal("40"))

    def test_nothing_to_settle(self, processor, ledger):
        with pytest.raises(InvalidSettlementAmount):
            processor.settle("alice")

    def test_cannot_settle_with_yourself(self, processor):
        with pytest.raises(InvalidParticipantSet):
            processor.settle(ME)

    def test_errors_carry_user_message(self, processor):
        with pytest.raises(LedgerValidationError) as exc_info:
            processor.settle("alice")

        assert exc_info.value.user_message == "Enter an amount greater than zero."


class TestSettlementRecords:
    """Test the records a settlement leaves behind."""

    def test_transaction_mirrors_settlement(self, processor, alice_owes_50):
        result = processor.settle("alice", counterparty_name="Alice")
        transaction = result.transaction

        assert transaction.title == "Settlement with Alice"
        assert transaction.subtitle == "Full settlement"
        assert transaction.amount == Decimal("50.00")
        assert transaction.category is TransactionCategory.TRANSFER
        assert transaction.settlement_id == result.settlement.id
        assert transaction.linked_person_id == "alice"
        assert transaction.is_settlement
        assert transaction.date == result.settlement.created_at

    def test_transaction_is_in_activity_but_not_double_counted(
        self, processor, alice_owes_50
    ):
        processor.settle("alice", amount="20", mode=SettlementMode.PARTIAL)

        assert len(alice_owes_50.transactions("alice")) == 1
        assert alice_owes_50.net_balance("alice") == Decimal("30.00")
        assert alice_owes_50.reconcile() == {}

    def test_partial_payment_from_title(self, processor, alice_owes_50):
        result = processor.settle(
            "alice", amount="20", mode=SettlementMode.PARTIAL, counterparty_name="Alice"
        )

        assert result.transaction.title == "Partial payment from Alice"

    def test_delta_is_conserved(self, processor, alice_owes_50):
        result = processor.settle("alice", amount="20", mode=SettlementMode.PARTIAL)

        assert result.delta.is_conserved
        assert result.delta.balances == {"alice": Decimal("-20.00")}

    def test_expense_history_is_untouched(self, processor, alice_owes_50):
        processor.settle("alice")

        expenses = alice_owes_50.expenses()
        assert len(expenses) == 1
        assert not expenses[0].is_settled


class TestGroupSettlement:
    """Test settling balances scoped to a group."""

    @pytest.fixture
    def trip(self, ledger):
        group = Group(id="trip", name="Trip", members=["alice", "bob"])
        ledger.record_expense(
            build_expense(
                "Hotel", Decimal("90.00"), ME, [ME, "alice", "bob"], group_id=group.id
            ),
            group,
        )
        ledger.record_expense(
            build_expense(
                "Fuel", Decimal("40.00"), "bob", [ME, "bob"], group_id=group.id
            ),
            group,
        )
        ledger.record_expense(build_expense("Lunch", Decimal("20.00"), ME, [ME, "alice"]))
        return group

    def test_settle_one_group_balance(self, processor, ledger, trip):
        result = processor.settle("alice", group_id=trip.id)

        assert result.prior_balance == Decimal("30.00")
        assert result.settlement.group_id == trip.id
        assert ledger.group_balance(trip.id, "alice") == Decimal("0.00")
        assert ledger.net_balance("alice") == Decimal("10.00")

    def test_group_settlement_state_reflects_the_group(self, processor, ledger, trip):
        result = processor.settle("alice", group_id=trip.id)

        # The direct lunch is still open, but the group is paid up
        assert result.state is BalanceState.SETTLED
        assert ledger.balance_state("alice") is BalanceState.PARTIALLY_SETTLED

    def test_partial_group_settlement_state(self, processor, trip):
        result = processor.settle(
            "alice", Decimal("10.00"), mode=SettlementMode.PARTIAL, group_id=trip.id
        )

        assert result.new_balance == Decimal("20.00")
        assert result.state is BalanceState.PARTIALLY_SETTLED

    def test_settle_group(self, processor, ledger, trip):
        results = processor.settle_group(trip.id, counterparty_names={"bob": "Bob"})

        assert {r.settlement.person_id for r in results} == {"alice", "bob"}
        assert all(amount == 0 for amount in ledger.aggregate_for_group(trip.id).values())
        # The direct lunch is outside the group
        assert ledger.net_balance("alice") == Decimal("10.00")
        assert ledger.net_balance("bob") == Decimal("0.00")
        bob = next(r for r in results if r.settlement.person_id == "bob")
        assert bob.settlement.amount == Decimal("10.00")
        assert bob.transaction.title == "Settlement with Bob"

    def test_settle_group_with_nothing_owed(self, processor, ledger):
        assert processor.settle_group("empty") == []
