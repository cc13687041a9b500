"""Settlement processor: full and partial settle-ups on top of the ledger.

Settlements never rewrite expense history. Each call appends one immutable
Settlement plus a settlement-tagged Transaction for the activity feed.
Calls are deliberately not idempotent; every call is a new payment.
"""

import logging
from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal

from .exceptions import (
    InvalidParticipantSet,
    InvalidSettlementAmount,
    SettlementExceedsBalance,
)
from .ledger import Ledger
from .models import (
    BalanceState,
    Settlement,
    SettlementDirection,
    SettlementMode,
    SettlementResult,
    Transaction,
    TransactionCategory,
    utcnow,
)
from .money import ZERO, sign, to_money

logger = logging.getLogger(__name__)


class SettlementProcessor:
    """Applies settlements against a Ledger."""

    def __init__(self, ledger: Ledger):
        """Initialize the processor."""
        self.ledger = ledger

    def settle(
        self,
        target: str,
        amount: Decimal | None = None,
        mode: SettlementMode = SettlementMode.FULL,
        group_id: str | None = None,
        note: str | None = None,
        counterparty_name: str | None = None,
        settled_at: datetime | None = None,
    ) -> SettlementResult:
        """
        Settle some or all of the balance with a person.

        Args:
            target: Person id to settle with
            amount: Required for partial settlements; optional for full ones
                (when given it must equal the outstanding balance)
            mode: Full or partial
            group_id: Settle only this group's part of the balance
            note: Free-form note stored on the settlement
            counterparty_name: Display name used for the feed transaction
            settled_at: Timestamp for the records (defaults to now)

        Returns:
            The settlement, its transaction, and the before/after balances

        Raises:
            InvalidSettlementAmount: Zero/negative/missing amount, or nothing
                outstanding
            SettlementExceedsBalance: Partial amount larger than the balance
        """
        mode = SettlementMode(mode)
        if target == self.ledger.current_user_id:
            raise InvalidParticipantSet("You can't settle a balance with yourself")

        with self.ledger.writer():
            prior = self._outstanding(target, group_id)
            settle_amount = _validate_amount(prior, amount, mode)

            # Who pays depends on who owes: a negative balance means you owe
            direction = (
                SettlementDirection.USER_PAID
                if prior < 0
                else SettlementDirection.USER_RECEIVED
            )
            settlement = Settlement(
                person_id=target,
                group_id=group_id,
                amount=settle_amount,
                direction=direction,
                is_full=mode is SettlementMode.FULL,
                note=note,
                created_at=settled_at or utcnow(),
            )
            transaction = settlement_transaction(settlement, counterparty_name or target)

            delta = self.ledger.record_settlement(settlement, transaction)
            new_balance = self._outstanding(target, group_id)

        # State of the scope that was settled, not the whole balance
        state = (
            BalanceState.SETTLED
            if new_balance == ZERO
            else BalanceState.PARTIALLY_SETTLED
        )

        expected = to_money(prior - sign(prior) * settle_amount)
        assert new_balance == expected, "Settlement did not move the balance as expected"

        logger.info(
            f"{'Full' if settlement.is_full else 'Partial'} settlement with {target}"
            f"{f' in group {group_id}' if group_id else ''}: {settle_amount} "
            f"({direction}), balance {prior} -> {new_balance}"
        )

        return SettlementResult(
            settlement=settlement,
            transaction=transaction,
            prior_balance=prior,
            new_balance=new_balance,
            state=state,
            delta=delta,
        )

    def settle_group(
        self,
        group_id: str,
        counterparty_names: Mapping[str, str] | None = None,
        settled_at: datetime | None = None,
    ) -> list[SettlementResult]:
        """
        Fully settle every outstanding balance within a group.

        Returns:
            One result per person whose group balance was non-zero
        """
        names = counterparty_names or {}
        results = []

        with self.ledger.writer():
            for person_id, balance in self.ledger.aggregate_for_group(group_id).items():
                if balance == ZERO:
                    continue
                results.append(
                    self.settle(
                        person_id,
                        mode=SettlementMode.FULL,
                        group_id=group_id,
                        counterparty_name=names.get(person_id),
                        settled_at=settled_at,
                    )
                )

        logger.info(f"Settled {len(results)} balances in group {group_id}")
        return results

    def _outstanding(self, person_id: str, group_id: str | None) -> Decimal:
        if group_id is None:
            return self.ledger.net_balance(person_id)
        return self.ledger.group_balance(group_id, person_id)


def _validate_amount(
    prior: Decimal, amount: Decimal | None, mode: SettlementMode
) -> Decimal:
    """Check a requested settlement against the outstanding balance."""
    outstanding = abs(prior)

    if mode is SettlementMode.FULL:
        if outstanding == ZERO:
            raise InvalidSettlementAmount("There is no outstanding balance to settle")
        if amount is not None and to_money(amount) != outstanding:
            raise InvalidSettlementAmount(
                f"A full settlement must be for the outstanding {outstanding}, "
                f"not {to_money(amount)}"
            )
        return outstanding

    if amount is None:
        raise InvalidSettlementAmount("A partial settlement needs an amount")

    settle_amount = to_money(amount)
    if settle_amount <= ZERO:
        raise InvalidSettlementAmount(
            f"Settlement amount must be positive, got {settle_amount}"
        )
    if settle_amount > outstanding:
        raise SettlementExceedsBalance(settle_amount, outstanding)

    return settle_amount


def settlement_transaction(settlement: Settlement, counterparty_name: str) -> Transaction:
    """
    Build the activity-feed transaction that mirrors a settlement.

    Money received shows as inflow, money paid as outflow.
    """
    received = settlement.direction is SettlementDirection.USER_RECEIVED

    if settlement.is_full:
        title = f"Settlement with {counterparty_name}"
        subtitle = "Full settlement"
    else:
        title = (
            f"Partial payment from {counterparty_name}"
            if received
            else f"Partial payment to {counterparty_name}"
        )
        subtitle = f"{settlement.amount} partial payment"

    return Transaction(
        title=title,
        subtitle=subtitle,
        amount=settlement.amount if received else -settlement.amount,
        category=TransactionCategory.TRANSFER,
        date=settlement.created_at,
        linked_person_id=settlement.person_id,
        settlement_id=settlement.id,
        tags=[Transaction.SETTLEMENT_TAG],
    )
