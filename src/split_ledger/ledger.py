"""Balance ledger: who owes the current user, and whom the current user owes.

The ledger is an append-only log of expenses, settlements and transactions.
Every balance is a fold over that log; the per-person cache is only a
materialized view kept in step with each write and rebuildable at any time
through ``recompute``/``reconcile``.
"""

import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal

from .exceptions import (
    DuplicateRecordError,
    ExpenseAlreadyPaid,
    InvalidParticipantSet,
    RecordNotFoundError,
)
from .models import (
    BalanceState,
    BalanceSummary,
    EventKind,
    Group,
    GroupExpense,
    LedgerDelta,
    LedgerEvent,
    Settlement,
    Transaction,
    as_utc,
    utcnow,
)
from .money import ZERO, to_money

logger = logging.getLogger(__name__)


class Ledger:
    """Event-sourced balances from the current user's point of view.

    Mutations are serialized through ``writer()``; reads take no lock and
    see the last completed write.
    """

    def __init__(self, current_user_id: str):
        """Initialize an empty ledger."""
        self.current_user_id = current_user_id
        self._expenses: dict[str, GroupExpense] = {}
        self._settlements: dict[str, Settlement] = {}
        self._transactions: dict[str, Transaction] = {}
        self._events: list[LedgerEvent] = []
        self._balance_cache: dict[str, Decimal] = {}
        self._lock = threading.RLock()

    @classmethod
    def replay(
        cls,
        current_user_id: str,
        expenses: Iterable[GroupExpense] = (),
        settlements: Iterable[Settlement] = (),
        transactions: Iterable[Transaction] = (),
    ) -> "Ledger":
        """
        Rebuild a ledger from persisted history.

        Records are applied in timestamp order. A settled expense is replayed
        as "recorded" at its creation time and "settled" at its settle time.

        Returns:
            Ledger whose cache matches a full recomputation
        """
        ledger = cls(current_user_id)

        entries: list[tuple[datetime, int, str, object]] = []
        for expense in expenses:
            entries.append((as_utc(expense.created_at), 0, "expense", expense))
            if expense.is_settled:
                settled_at = expense.settled_at or expense.created_at
                entries.append((as_utc(settled_at), 1, "expense_settled", expense))
        for settlement in settlements:
            entries.append((as_utc(settlement.created_at), 2, "settlement", settlement))
        for transaction in transactions:
            entries.append((as_utc(transaction.date), 3, "transaction", transaction))

        entries.sort(key=lambda entry: (entry[0], entry[1]))

        for _, _, kind, record in entries:
            if kind == "expense":
                ledger.record_expense(
                    record.model_copy(update={"is_settled": False, "settled_at": None})
                )
            elif kind == "expense_settled":
                ledger.settle_expense(record.id, settled_at=record.settled_at)
            elif kind == "settlement":
                ledger.record_settlement(record)
            else:
                ledger.record_transaction(record)

        logger.info(
            f"Replayed {len(ledger._events)} ledger events "
            f"for {len(ledger.counterparties())} people"
        )
        return ledger

    @contextmanager
    def writer(self) -> Iterator["Ledger"]:
        """Hold the single-writer lock across a read-validate-write sequence."""
        with self._lock:
            yield self

    # ========================================================================
    # Mutations
    # ========================================================================

    def record_expense(
        self, expense: GroupExpense, group: Group | None = None
    ) -> LedgerDelta:
        """
        Record a shared expense.

        When the current user paid, every other participant's balance rises
        by their share. When someone else paid and the current user took
        part, the payer's balance falls by the current user's share.

        Args:
            expense: The expense to record (must be unsettled)
            group: The expense's group, to check membership against

        Returns:
            Delta with per-person positions and balance changes

        Raises:
            InvalidParticipantSet: Payer or participants outside the group
            DuplicateRecordError: Expense id already recorded
        """
        if expense.is_settled:
            raise ValueError(f"Expense {expense.id} is already settled")
        if group is not None:
            self._check_group_membership(expense, group)

        with self._lock:
            if expense.id in self._expenses:
                raise DuplicateRecordError("Expense", expense.id)

            self._expenses[expense.id] = expense
            self._append_event(
                EventKind.EXPENSE_RECORDED, expense.id, expense.created_at
            )
            delta = self._expense_delta(expense, direction=1)
            self._apply_to_cache(delta)

        logger.info(
            f"Recorded expense '{expense.title}' ({expense.total}) paid by "
            f"{expense.payer_id} across {len(expense.participants)} participants"
        )
        return delta

    def settle_expense(
        self, expense_id: str, settled_at: datetime | None = None
    ) -> LedgerDelta:
        """
        Mark an expense as settled, removing it from every balance.

        Settling an already settled expense changes nothing.

        Raises:
            RecordNotFoundError: Unknown expense id
            ExpenseAlreadyPaid: A settlement covering this expense's scope
                was recorded after it
        """
        with self._lock:
            expense = self.get_expense(expense_id)
            if expense.is_settled:
                logger.debug(f"Expense {expense_id} already settled")
                return LedgerDelta(expense_id=expense.id, group_id=expense.group_id)

            delta = self._expense_delta(expense, direction=-1)
            covering = self._settlements_since(expense, set(delta.balances))
            if covering:
                people = ", ".join(sorted({s.person_id for s in covering}))
                raise ExpenseAlreadyPaid(
                    f"Expense {expense_id} was followed by settlements with "
                    f"{people}; record a new expense to correct it instead"
                )
            settled_at = settled_at or utcnow()
            self._expenses[expense_id] = expense.model_copy(
                update={"is_settled": True, "settled_at": settled_at}
            )
            self._append_event(EventKind.EXPENSE_SETTLED, expense_id, settled_at)
            self._apply_to_cache(delta)

        logger.info(f"Settled expense '{expense.title}' ({expense_id})")
        return delta

    def record_settlement(
        self, settlement: Settlement, transaction: Transaction | None = None
    ) -> LedgerDelta:
        """
        Append a settlement (and its activity-feed transaction) to the log.

        Validation of the amount belongs to SettlementProcessor; the ledger
        only records.
        """
        with self._lock:
            if settlement.id in self._settlements:
                raise DuplicateRecordError("Settlement", settlement.id)
            if transaction is not None and transaction.id in self._transactions:
                raise DuplicateRecordError("Transaction", transaction.id)

            self._settlements[settlement.id] = settlement
            self._append_event(
                EventKind.SETTLEMENT_RECORDED, settlement.id, settlement.created_at
            )
            if transaction is not None:
                self._transactions[transaction.id] = transaction
                self._append_event(
                    EventKind.TRANSACTION_RECORDED, transaction.id, transaction.date
                )

            delta = self._transfer_delta(
                settlement.person_id, settlement.balance_effect, settlement.group_id
            )
            self._apply_to_cache(delta)

        return delta

    def record_transaction(self, transaction: Transaction) -> LedgerDelta:
        """
        Record a direct transaction.

        A non-settlement transaction linked to a person moves that person's
        balance by the opposite of its cash flow: money you hand over is
        money they owe you.
        """
        with self._lock:
            if transaction.id in self._transactions:
                raise DuplicateRecordError("Transaction", transaction.id)

            self._transactions[transaction.id] = transaction
            self._append_event(
                EventKind.TRANSACTION_RECORDED, transaction.id, transaction.date
            )
            if transaction.linked_person_id is None:
                return LedgerDelta()

            delta = self._transfer_delta(
                transaction.linked_person_id, transaction.balance_effect, None
            )
            self._apply_to_cache(delta)

        if not delta.is_empty:
            logger.info(
                f"Recorded transaction '{transaction.title}' with "
                f"{transaction.linked_person_id} ({transaction.amount})"
            )
        return delta

    # ========================================================================
    # Balance queries
    # ========================================================================

    def net_balance(self, person_id: str) -> Decimal:
        """
        Get a person's balance derived from the full history.

        Positive means they owe the current user; negative means the current
        user owes them.
        """
        contributions = self._contributions(person_id)
        return to_money(sum((amount for _, amount in contributions), ZERO))

    def group_balance(self, group_id: str, person_id: str) -> Decimal:
        """Get the part of a person's balance that comes from one group."""
        contributions = self._contributions(person_id)
        return to_money(
            sum((amount for scope, amount in contributions if scope == group_id), ZERO)
        )

    def direct_balance(self, person_id: str) -> Decimal:
        """Get the part of a person's balance that comes from outside any group."""
        contributions = self._contributions(person_id)
        return to_money(
            sum((amount for scope, amount in contributions if scope is None), ZERO)
        )

    def cached_balance(self, person_id: str) -> Decimal:
        """Get the write-through cached balance for a person."""
        return self._balance_cache.get(person_id, ZERO)

    def recompute(self, person_id: str) -> Decimal:
        """Rebuild one cache entry from the log and return it."""
        with self._lock:
            derived = self.net_balance(person_id)
            self._balance_cache[person_id] = derived
        return derived

    def reconcile(self) -> dict[str, Decimal]:
        """
        Recompute every cached balance from the log.

        Returns:
            Drift (cached minus derived) for every person whose cache was wrong
        """
        drift: dict[str, Decimal] = {}
        with self._lock:
            for person_id in sorted(self.counterparties() | set(self._balance_cache)):
                cached = self.cached_balance(person_id)
                derived = self.recompute(person_id)
                if cached != derived:
                    drift[person_id] = to_money(cached - derived)
                    logger.warning(
                        f"Balance drift for {person_id}: cached {cached}, "
                        f"derived {derived}"
                    )
        return drift

    def aggregate_for_group(self, group_id: str) -> dict[str, Decimal]:
        """
        Get each counterparty's balance within one group.

        Only the group's unsettled expenses and settlements scoped to it are
        counted, so these figures plus ``direct_balance`` and the other
        groups add up to ``net_balance`` without double counting.
        """
        result: dict[str, Decimal] = {}
        for expense in self._group_expenses(group_id):
            involved = dict.fromkeys([expense.payer_id, *expense.participant_ids])
            for person_id in involved:
                if person_id == self.current_user_id:
                    continue
                result[person_id] = result.get(person_id, ZERO) + self._expense_effect(
                    expense, person_id
                )
        for settlement in list(self._settlements.values()):
            if settlement.group_id == group_id:
                result[settlement.person_id] = (
                    result.get(settlement.person_id, ZERO) + settlement.balance_effect
                )
        return {person_id: to_money(amount) for person_id, amount in result.items()}

    def group_positions(self, group_id: str) -> dict[str, Decimal]:
        """
        Get every member's net position (paid minus owed) within a group.

        Unlike ``aggregate_for_group`` this includes expenses between other
        members; positions always sum to zero.
        """
        result: dict[str, Decimal] = {}
        for expense in self._group_expenses(group_id):
            for person_id, amount in expense.positions().items():
                result[person_id] = result.get(person_id, ZERO) + amount
        for settlement in list(self._settlements.values()):
            if settlement.group_id == group_id:
                delta = self._transfer_delta(
                    settlement.person_id, settlement.balance_effect, group_id
                )
                for person_id, amount in delta.positions.items():
                    result[person_id] = result.get(person_id, ZERO) + amount
        return {person_id: to_money(amount) for person_id, amount in result.items()}

    def balance_state(self, person_id: str) -> BalanceState:
        """
        Walk the log to find where a person's balance is in its lifecycle.

        Unsettled -> Partially Settled -> Settled; a new expense or
        transaction after settling makes it Unsettled again.
        """
        state = BalanceState.SETTLED
        running = ZERO

        for event in list(self._events):
            effect = self._event_effect(event, person_id)
            is_own_settlement = (
                event.kind is EventKind.SETTLEMENT_RECORDED
                and self._settlements[event.record_id].person_id == person_id
            )
            if effect == ZERO and not is_own_settlement:
                continue

            running += effect
            if running == ZERO:
                state = BalanceState.SETTLED
            elif is_own_settlement:
                state = BalanceState.PARTIALLY_SETTLED
            elif event.kind is EventKind.EXPENSE_SETTLED:
                if state is BalanceState.SETTLED:
                    state = BalanceState.UNSETTLED
            else:
                state = BalanceState.UNSETTLED

        return state

    def counterparties(self) -> set[str]:
        """Get everyone (except the current user) who appears in the log."""
        people: set[str] = set()
        for expense in list(self._expenses.values()):
            people.update(expense.participant_ids)
            people.add(expense.payer_id)
        for settlement in list(self._settlements.values()):
            people.add(settlement.person_id)
        for transaction in list(self._transactions.values()):
            if transaction.linked_person_id:
                people.add(transaction.linked_person_id)
        people.discard(self.current_user_id)
        return people

    def balances(self) -> dict[str, Decimal]:
        """Get the derived balance for every counterparty."""
        return {
            person_id: self.net_balance(person_id)
            for person_id in sorted(self.counterparties())
        }

    def people_owing_you(self) -> dict[str, Decimal]:
        return {pid: amount for pid, amount in self.balances().items() if amount > 0}

    def people_you_owe(self) -> dict[str, Decimal]:
        return {pid: amount for pid, amount in self.balances().items() if amount < 0}

    def summary(self) -> BalanceSummary:
        """Get totals owed in each direction."""
        owing_you = self.people_owing_you()
        you_owe = self.people_you_owe()
        return BalanceSummary(
            owed_to_you=sum(owing_you.values(), ZERO),
            you_owe=-sum(you_owe.values(), ZERO),
            people_owing_you=list(owing_you),
            people_you_owe=list(you_owe),
        )

    # ========================================================================
    # Record access
    # ========================================================================

    def get_expense(self, expense_id: str) -> GroupExpense:
        try:
            return self._expenses[expense_id]
        except KeyError:
            raise RecordNotFoundError("Expense", expense_id) from None

    def expenses(
        self, group_id: str | None = None, include_settled: bool = True
    ) -> list[GroupExpense]:
        return [
            expense
            for expense in list(self._expenses.values())
            if (group_id is None or expense.group_id == group_id)
            and (include_settled or not expense.is_settled)
        ]

    def settlements(self, person_id: str | None = None) -> list[Settlement]:
        return [
            settlement
            for settlement in list(self._settlements.values())
            if person_id is None or settlement.person_id == person_id
        ]

    def transactions(self, person_id: str | None = None) -> list[Transaction]:
        return [
            transaction
            for transaction in list(self._transactions.values())
            if person_id is None or transaction.linked_person_id == person_id
        ]

    @property
    def events(self) -> tuple[LedgerEvent, ...]:
        return tuple(self._events)

    # ========================================================================
    # Internals
    # ========================================================================

    def _check_group_membership(self, expense: GroupExpense, group: Group):
        if expense.group_id != group.id:
            raise InvalidParticipantSet(
                f"Expense {expense.id} belongs to group {expense.group_id}, "
                f"not {group.id}"
            )
        # The current user is implicitly part of every group they can see
        allowed = set(group.members) | {self.current_user_id}
        outsiders = [
            pid
            for pid in [expense.payer_id, *expense.participant_ids]
            if pid not in allowed
        ]
        if outsiders:
            raise InvalidParticipantSet(
                f"Not members of group '{group.name}': {', '.join(outsiders)}. "
                f"Add them to the group first."
            )

    def _append_event(self, kind: EventKind, record_id: str, occurred_at: datetime):
        self._events.append(
            LedgerEvent(
                sequence=len(self._events),
                kind=kind,
                record_id=record_id,
                occurred_at=occurred_at,
            )
        )

    def _apply_to_cache(self, delta: LedgerDelta):
        for person_id, amount in delta.balances.items():
            self._balance_cache[person_id] = to_money(
                self._balance_cache.get(person_id, ZERO) + amount
            )

    def _expense_effect(self, expense: GroupExpense, person_id: str) -> Decimal:
        """Change an expense makes to one person's balance vs the current user."""
        me = self.current_user_id
        if person_id == me:
            return ZERO
        if expense.payer_id == me:
            return expense.share_of(person_id)
        if expense.payer_id == person_id:
            return -expense.share_of(me)
        return ZERO

    def _expense_delta(self, expense: GroupExpense, direction: int) -> LedgerDelta:
        balances: dict[str, Decimal] = {}
        for person_id in [expense.payer_id, *expense.participant_ids]:
            if person_id == self.current_user_id or person_id in balances:
                continue
            effect = self._expense_effect(expense, person_id)
            if effect != ZERO:
                balances[person_id] = direction * effect

        return LedgerDelta(
            positions={
                pid: direction * amount for pid, amount in expense.positions().items()
            },
            balances=balances,
            group_id=expense.group_id,
            expense_id=expense.id,
        )

    def _transfer_delta(
        self, person_id: str, balance_effect: Decimal, group_id: str | None
    ) -> LedgerDelta:
        """Delta for money moving directly between the current user and a person.

        A balance change of +X (they owe more) means the current user's
        position went up by X and theirs went down by X.
        """
        if balance_effect == ZERO:
            return LedgerDelta(group_id=group_id)
        return LedgerDelta(
            positions={
                person_id: -balance_effect,
                self.current_user_id: balance_effect,
            },
            balances={person_id: balance_effect},
            group_id=group_id,
        )

    def _settlements_since(
        self, expense: GroupExpense, person_ids: set[str]
    ) -> list[Settlement]:
        """Settlements with these people, recorded after the expense, whose
        scope includes it (unscoped, or the expense's own group)."""
        recorded = next(
            event.sequence
            for event in self._events
            if event.kind is EventKind.EXPENSE_RECORDED
            and event.record_id == expense.id
        )
        settlements = []
        for event in self._events[recorded + 1 :]:
            if event.kind is not EventKind.SETTLEMENT_RECORDED:
                continue
            settlement = self._settlements[event.record_id]
            if settlement.person_id in person_ids and settlement.group_id in (
                None,
                expense.group_id,
            ):
                settlements.append(settlement)
        return settlements

    def _group_expenses(self, group_id: str) -> list[GroupExpense]:
        return [
            expense
            for expense in list(self._expenses.values())
            if expense.group_id == group_id and not expense.is_settled
        ]

    def _contributions(self, person_id: str) -> Iterator[tuple[str | None, Decimal]]:
        """Yield (group scope, amount) for everything affecting a person."""
        for expense in list(self._expenses.values()):
            if expense.is_settled or not expense.involves(person_id):
                continue
            effect = self._expense_effect(expense, person_id)
            if effect != ZERO:
                yield expense.group_id, effect
        for settlement in list(self._settlements.values()):
            if settlement.person_id == person_id:
                yield settlement.group_id, settlement.balance_effect
        for transaction in list(self._transactions.values()):
            if transaction.linked_person_id == person_id:
                yield None, transaction.balance_effect

    def _event_effect(self, event: LedgerEvent, person_id: str) -> Decimal:
        if event.kind is EventKind.EXPENSE_RECORDED:
            return self._expense_effect(self._expenses[event.record_id], person_id)
        if event.kind is EventKind.EXPENSE_SETTLED:
            return -self._expense_effect(self._expenses[event.record_id], person_id)
        if event.kind is EventKind.SETTLEMENT_RECORDED:
            settlement = self._settlements[event.record_id]
            return settlement.balance_effect if settlement.person_id == person_id else ZERO
        transaction = self._transactions[event.record_id]
        if transaction.linked_person_id == person_id:
            return transaction.balance_effect
        return ZERO
