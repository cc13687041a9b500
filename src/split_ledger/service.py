"""Service layer that composes the ledger, settlements and persistence.

LedgerService is the single coordinating owner for one user's ledger: every
mutation runs under its lock, is computed in memory first, then persisted in
one database transaction, and only then reported to the notifier.
"""

import logging
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Any

from .billing import (
    advance_past,
    parse_cycle,
    renewal_price,
    renewals_due,
    total_monthly_cost,
)
from .config import Settings
from .db import Database
from .exceptions import BalanceDriftError, RecordNotFoundError
from .ledger import Ledger
from .models import (
    BalanceState,
    BalanceSummary,
    BillingCycle,
    Group,
    GroupExpense,
    LedgerDelta,
    Person,
    SettlementMode,
    SettlementResult,
    SplitMethod,
    Subscription,
    Transaction,
    TransactionCategory,
    utcnow,
)
from .money import to_money
from .notifications import BalanceNotifier, LoggingNotifier, notify_all
from .settlement import SettlementProcessor
from .splits import build_expense

logger = logging.getLogger(__name__)


class LedgerService:
    """Service for recording shared expenses, settlements and subscriptions."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        notifier: BalanceNotifier | None = None,
    ):
        """Initialize the service and replay the ledger from the database."""
        self.settings = settings
        self.db = database
        self.notifier = notifier or LoggingNotifier()
        self._lock = threading.RLock()
        self._load_ledger()

    @property
    def current_user_id(self) -> str:
        return self.settings.current_user_id

    def _load_ledger(self):
        self.ledger = Ledger.replay(
            self.settings.current_user_id,
            expenses=self.db.list_expenses(),
            settlements=self.db.list_settlements(),
            transactions=self.db.list_transactions(),
        )
        self.processor = SettlementProcessor(self.ledger)

    # ========================================================================
    # People & groups
    # ========================================================================

    def add_person(
        self,
        name: str,
        email: str | None = None,
        phone: str | None = None,
        contact_id: str | None = None,
    ) -> Person:
        """Create and store a new person with a zero balance."""
        person = Person(name=name, email=email, phone=phone, contact_id=contact_id)
        with self._lock:
            self.db.save_person(person)
        logger.info(f"Added person '{person.name}' ({person.id})")
        return person

    def get_person(self, person_id: str) -> Person:
        person = self.db.get_person(person_id)
        if person is None:
            raise RecordNotFoundError("Person", person_id)
        return person

    def list_people(self) -> list[Person]:
        return self.db.list_people()

    def display_name(self, person_id: str) -> str:
        """Get a person's name, or the configured name for the current user."""
        if person_id == self.current_user_id:
            return self.settings.current_user_name
        person = self.db.get_person(person_id)
        return person.name if person else person_id

    def create_group(
        self,
        name: str,
        member_ids: Sequence[str] = (),
        description: str = "",
        emoji: str | None = None,
    ) -> Group:
        """Create a group of existing people."""
        self._require_people(member_ids)
        group = Group(
            name=name, description=description, emoji=emoji, members=list(member_ids)
        )
        with self._lock:
            self.db.save_group(group)
        logger.info(f"Created group '{group.name}' with {len(group.members)} members")
        return group

    def add_group_member(self, group_id: str, person_id: str) -> Group:
        """Add an existing person to a group (no-op if already a member)."""
        with self._lock:
            group = self.get_group(group_id)
            self._require_people([person_id])
            updated = group.with_member(person_id)
            if updated is not group:
                self.db.save_group(updated)
                logger.info(f"Added {person_id} to group '{group.name}'")
        return updated

    def get_group(self, group_id: str) -> Group:
        group = self.db.get_group(group_id)
        if group is None:
            raise RecordNotFoundError("Group", group_id)
        return group

    def list_groups(self) -> list[Group]:
        return self.db.list_groups()

    # ========================================================================
    # Ledger mutations
    # ========================================================================

    def split_bill(
        self,
        title: str,
        total: Decimal,
        payer_id: str,
        participant_ids: Sequence[str],
        method: SplitMethod | None = None,
        group_id: str | None = None,
        category: TransactionCategory = TransactionCategory.DINING,
        notes: str = "",
    ) -> tuple[GroupExpense, LedgerDelta]:
        """
        Split a bill and record it.

        Returns:
            Tuple of (recorded expense, ledger delta)
        """
        with self._lock:
            group = self.get_group(group_id) if group_id else None
            self._require_people([payer_id, *participant_ids])

            expense = build_expense(
                title=title,
                total=total,
                payer_id=payer_id,
                participant_ids=participant_ids,
                method=method,
                group_id=group_id,
                category=category,
                notes=notes,
            )
            delta = self.ledger.record_expense(expense, group)

            with self._persisting():
                self.db.save_expense(expense)
                new_balances = self._write_through(delta)

        notify_all(self.notifier, new_balances)
        return expense, delta

    def record_transaction(self, transaction: Transaction) -> LedgerDelta:
        """Record a direct income/expense transaction."""
        with self._lock:
            if transaction.linked_person_id:
                self._require_people([transaction.linked_person_id])

            delta = self.ledger.record_transaction(transaction)

            with self._persisting():
                self.db.save_transaction(transaction)
                new_balances = self._write_through(delta)

        notify_all(self.notifier, new_balances)
        return delta

    def settle(
        self,
        person_id: str,
        amount: Decimal | None = None,
        mode: SettlementMode = SettlementMode.FULL,
        group_id: str | None = None,
        note: str | None = None,
    ) -> SettlementResult:
        """Settle all or part of the balance with a person."""
        with self._lock:
            person = self.get_person(person_id)
            if group_id:
                self.get_group(group_id)

            result = self.processor.settle(
                person_id,
                amount=amount,
                mode=mode,
                group_id=group_id,
                note=note,
                counterparty_name=person.name,
            )

            with self._persisting():
                self._save_settlement(result)
                new_balances = self._write_through(result.delta)

        notify_all(self.notifier, new_balances)
        return result

    def settle_group(self, group_id: str) -> list[SettlementResult]:
        """Fully settle every outstanding balance inside a group."""
        with self._lock:
            group = self.get_group(group_id)
            names = {pid: self.display_name(pid) for pid in group.members}

            results = self.processor.settle_group(group_id, counterparty_names=names)

            new_balances: dict[str, Decimal] = {}
            with self._persisting():
                for result in results:
                    self._save_settlement(result)
                    new_balances.update(self._write_through(result.delta))

        notify_all(self.notifier, new_balances)
        return results

    def settle_expense(self, expense_id: str) -> LedgerDelta:
        """Mark one expense as paid, dropping it out of all balances."""
        with self._lock:
            delta = self.ledger.settle_expense(expense_id)

            with self._persisting():
                self.db.save_expense(self.ledger.get_expense(expense_id))
                new_balances = self._write_through(delta)

        notify_all(self.notifier, new_balances)
        return delta

    # ========================================================================
    # Ledger queries
    # ========================================================================

    def net_balance(self, person_id: str) -> Decimal:
        return self.ledger.net_balance(person_id)

    def group_balance(self, group_id: str, person_id: str) -> Decimal:
        return self.ledger.group_balance(group_id, person_id)

    def aggregate_for_group(self, group_id: str) -> dict[str, Decimal]:
        return self.ledger.aggregate_for_group(group_id)

    def group_positions(self, group_id: str) -> dict[str, Decimal]:
        return self.ledger.group_positions(group_id)

    def balance_state(self, person_id: str) -> BalanceState:
        return self.ledger.balance_state(person_id)

    def summary(self) -> BalanceSummary:
        return self.ledger.summary()

    def group_expenses(self, group_id: str) -> list[GroupExpense]:
        return self.ledger.expenses(group_id=group_id)

    def activity(self, person_id: str | None = None) -> list[Transaction]:
        """Get the activity feed, newest first."""
        return sorted(
            self.ledger.transactions(person_id),
            key=lambda transaction: transaction.date,
            reverse=True,
        )

    # ========================================================================
    # Consistency
    # ========================================================================

    def find_drift(self) -> dict[str, Decimal]:
        """
        Compare stored person balances with the ledger history.

        Returns:
            Drift (stored minus derived) per person, only where they differ
        """
        drift: dict[str, Decimal] = {}
        for person in self.db.list_people():
            derived = self.ledger.net_balance(person.id)
            if person.balance != derived:
                drift[person.id] = to_money(person.balance - derived)
        return drift

    def verify_consistency(self):
        """
        Raise if any cached balance disagrees with the ledger history.

        Raises:
            BalanceDriftError: At least one balance drifted
        """
        drift = self.find_drift()
        if drift:
            raise BalanceDriftError(drift)

    def reconcile(self) -> dict[str, Decimal]:
        """
        Rebuild every cached balance (in memory and stored) from history.

        Returns:
            Drift that was corrected, per person
        """
        with self._lock:
            drift = self.ledger.reconcile()
            stored_drift = self.find_drift()

            with self._persisting():
                for person_id in stored_drift:
                    self.db.update_person_balance(
                        person_id, self.ledger.cached_balance(person_id)
                    )
                self.db.set_last_reconciled_at(utcnow())

        drift.update(stored_drift)
        if drift:
            logger.warning(f"Reconciled {len(drift)} drifted balances")
        else:
            logger.info("Reconciled balances: no drift")
        return drift

    # ========================================================================
    # Subscriptions
    # ========================================================================

    def add_subscription(
        self,
        name: str,
        price: Decimal,
        billing_cycle: BillingCycle | str = BillingCycle.MONTHLY,
        next_billing_date: date | None = None,
        shared_with: Sequence[str] = (),
        trial_end_date: date | None = None,
        price_after_trial: Decimal | None = None,
    ) -> Subscription:
        """Create and store a subscription."""
        self._require_people(shared_with)
        subscription = Subscription(
            name=name,
            price=price,
            billing_cycle=parse_cycle(billing_cycle),
            next_billing_date=next_billing_date or date.today(),
            shared_with=list(shared_with),
            is_free_trial=trial_end_date is not None,
            trial_start_date=date.today() if trial_end_date else None,
            trial_end_date=trial_end_date,
            price_after_trial=price_after_trial,
        )
        with self._lock:
            self.db.save_subscription(subscription)
        logger.info(
            f"Added subscription '{subscription.name}' "
            f"({subscription.price}/{subscription.billing_cycle})"
        )
        return subscription

    def cancel_subscription(self, subscription_id: str) -> Subscription:
        with self._lock:
            subscription = self._get_subscription(subscription_id)
            cancelled = subscription.model_copy(update={"is_active": False})
            self.db.save_subscription(cancelled)
        logger.info(f"Cancelled subscription '{subscription.name}'")
        return cancelled

    def list_subscriptions(self, active_only: bool = False) -> list[Subscription]:
        return self.db.list_subscriptions(active_only=active_only)

    def monthly_subscription_total(self) -> Decimal:
        return total_monthly_cost(self.db.list_subscriptions(active_only=True))

    def upcoming_renewals(
        self, today: date | None = None, within_days: int | None = None
    ) -> list[Subscription]:
        window = (
            self.settings.renewal_window_days if within_days is None else within_days
        )
        return renewals_due(
            self.db.list_subscriptions(active_only=True),
            today or date.today(),
            within_days=window,
        )

    def process_renewals(self, today: date | None = None) -> list[Subscription]:
        """
        Charge every renewal that has come due and roll its date forward.

        Each charge is recorded as a recurring outflow transaction.

        Returns:
            The renewed subscriptions, with updated next billing dates
        """
        today = today or date.today()
        renewed = []

        with self._lock:
            due = renewals_due(
                self.db.list_subscriptions(active_only=True), today, within_days=0
            )
            with self._persisting():
                for subscription in due:
                    charge = Transaction(
                        title=subscription.name,
                        subtitle=f"{subscription.billing_cycle} renewal",
                        amount=-renewal_price(subscription),
                        category=TransactionCategory.BILLS,
                        is_recurring=True,
                        tags=["subscription"],
                    )
                    self.ledger.record_transaction(charge)
                    self.db.save_transaction(charge)

                    updated = advance_past(subscription, today)
                    self.db.save_subscription(updated)
                    renewed.append(updated)

        logger.info(f"Processed {len(renewed)} subscription renewals")
        return renewed

    def export_widget_snapshot(self, today: date | None = None) -> dict[str, Any]:
        """Aggregate figures for a home-screen widget or other exporter."""
        today = today or date.today()
        summary = self.summary()
        renewing = self.upcoming_renewals(today)
        return {
            "generated_at": utcnow().isoformat(),
            "monthly_subscription_total": str(self.monthly_subscription_total()),
            "active_subscriptions": len(self.list_subscriptions(active_only=True)),
            "renewing_soon": [
                {
                    "name": sub.name,
                    "date": sub.next_billing_date.isoformat(),
                    "price": str(renewal_price(sub)),
                }
                for sub in renewing
            ],
            "owed_to_you": str(summary.owed_to_you),
            "you_owe": str(summary.you_owe),
            "net": str(summary.net),
        }

    # ========================================================================
    # Internals
    # ========================================================================

    def _require_people(self, person_ids: Sequence[str]):
        for person_id in person_ids:
            if person_id != self.current_user_id and self.db.get_person(person_id) is None:
                raise RecordNotFoundError("Person", person_id)

    def _get_subscription(self, subscription_id: str) -> Subscription:
        subscription = self.db.get_subscription(subscription_id)
        if subscription is None:
            raise RecordNotFoundError("Subscription", subscription_id)
        return subscription

    @contextmanager
    def _persisting(self) -> Iterator[None]:
        """Database transaction that rebuilds the ledger if the write fails.

        The in-memory ledger has already applied the change by the time it is
        persisted, so a failed write must discard it to stay all-or-nothing.
        """
        try:
            with self.db.atomic():
                yield
        except Exception:
            logger.error("Persisting ledger change failed; reloading from database")
            self._load_ledger()
            raise

    def _save_settlement(self, result: SettlementResult):
        self.db.save_settlement(result.settlement)
        self.db.save_transaction(result.transaction)

    def _write_through(self, delta: LedgerDelta) -> dict[str, Decimal]:
        """Copy changed cache entries onto the stored Person rows."""
        new_balances = {}
        for person_id in delta.balances:
            balance = self.ledger.cached_balance(person_id)
            self.db.update_person_balance(person_id, balance)
            new_balances[person_id] = balance
        return new_balances

