"""Pydantic domain models for Split Ledger."""

from datetime import UTC, date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, ClassVar, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .money import CENT, ZERO, Money, sum_money


def new_id() -> str:
    """Generate a stable record identifier."""
    return uuid4().hex


def utcnow() -> datetime:
    """Timezone-aware "now" used for every record timestamp."""
    return datetime.now(UTC)


def as_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC so records can be ordered together."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment


# ============================================================================
# Enums
# ============================================================================


class SplitType(StrEnum):
    """How a bill is divided between participants."""

    EQUALLY = "equally"
    EXACT_AMOUNTS = "exact_amounts"
    PERCENTAGES = "percentages"
    SHARES = "shares"
    ADJUSTMENTS = "adjustments"


class TransactionCategory(StrEnum):
    FOOD = "food"
    DINING = "dining"
    GROCERIES = "groceries"
    TRANSPORT = "transport"
    SHOPPING = "shopping"
    ENTERTAINMENT = "entertainment"
    BILLS = "bills"
    UTILITIES = "utilities"
    TRAVEL = "travel"
    INCOME = "income"
    TRANSFER = "transfer"
    OTHER = "other"


class SettlementDirection(StrEnum):
    """Which way the money moved, from the current user's point of view."""

    USER_PAID = "user_paid"
    USER_RECEIVED = "user_received"


class SettlementMode(StrEnum):
    FULL = "full"
    PARTIAL = "partial"


class BalanceState(StrEnum):
    """Lifecycle of the balance between the current user and one person."""

    SETTLED = "settled"
    UNSETTLED = "unsettled"
    PARTIALLY_SETTLED = "partially_settled"


class BillingCycle(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUALLY = "semi_annually"
    YEARLY = "yearly"
    ANNUALLY = "annually"
    LIFETIME = "lifetime"


class EventKind(StrEnum):
    EXPENSE_RECORDED = "expense_recorded"
    EXPENSE_SETTLED = "expense_settled"
    SETTLEMENT_RECORDED = "settlement_recorded"
    TRANSACTION_RECORDED = "transaction_recorded"


# ============================================================================
# People & Groups
# ============================================================================


class Person(BaseModel):
    """Someone the current user shares money with.

    ``balance`` is positive when they owe you and negative when you owe
    them. It is a cache of ``Ledger.net_balance`` and never edited directly.
    """

    id: str = Field(default_factory=new_id)
    name: str
    email: str | None = None
    phone: str | None = None
    contact_id: str | None = None  # Address book identifier, if linked
    balance: Money = ZERO
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def initials(self) -> str:
        parts = [part for part in self.name.split() if part]
        return "".join(part[0] for part in parts[:2]).upper()


class Group(BaseModel):
    """A set of people who share expenses."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    emoji: str | None = None
    members: list[str] = Field(default_factory=list)  # ordered person ids
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("members")
    @classmethod
    def _members_unique(cls, members: list[str]) -> list[str]:
        if len(set(members)) != len(members):
            raise ValueError("Group members must be unique")
        return members

    def has_member(self, person_id: str) -> bool:
        return person_id in self.members

    def with_member(self, person_id: str) -> "Group":
        """Return a copy of the group that includes ``person_id``."""
        if self.has_member(person_id):
            return self
        return self.model_copy(update={"members": [*self.members, person_id]})


# ============================================================================
# Split methods
# ============================================================================


class EqualSplit(BaseModel):
    kind: Literal["equally"] = "equally"


class ExactAmountSplit(BaseModel):
    kind: Literal["exact_amounts"] = "exact_amounts"
    # Kept unrounded so sub-cent input is rejected when resolved
    amounts: dict[str, Decimal]


class PercentageSplit(BaseModel):
    kind: Literal["percentages"] = "percentages"
    percentages: dict[str, Decimal]


class ShareSplit(BaseModel):
    kind: Literal["shares"] = "shares"
    weights: dict[str, int]


class AdjustmentSplit(BaseModel):
    """Equal split followed by signed per-person corrections."""

    kind: Literal["adjustments"] = "adjustments"
    adjustments: dict[str, Money] = Field(default_factory=dict)


SplitMethod = Annotated[
    EqualSplit | ExactAmountSplit | PercentageSplit | ShareSplit | AdjustmentSplit,
    Field(discriminator="kind"),
]


# ============================================================================
# Ledger records
# ============================================================================


class Participant(BaseModel):
    """One person's allocation of a group expense."""

    person_id: str
    amount: Money


class GroupExpense(BaseModel):
    """A shared bill: one payer, several participant allocations.

    ``group_id`` is None for a split bill between people outside any group.
    """

    id: str = Field(default_factory=new_id)
    title: str
    total: Money
    payer_id: str
    participants: list[Participant]
    split_type: SplitType = SplitType.EQUALLY
    group_id: str | None = None
    category: TransactionCategory = TransactionCategory.DINING
    notes: str = ""
    is_settled: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    settled_at: datetime | None = None

    @model_validator(mode="after")
    def _check_allocations(self) -> "GroupExpense":
        person_ids = [p.person_id for p in self.participants]
        if not person_ids:
            raise ValueError("An expense needs at least one participant")
        if len(set(person_ids)) != len(person_ids):
            raise ValueError("Expense participants must be unique")
        allocated = self.allocated
        if abs(allocated - self.total) > CENT:
            raise ValueError(
                f"Allocations ({allocated}) don't match expense total ({self.total})"
            )
        return self

    @property
    def allocated(self) -> Decimal:
        return sum_money(p.amount for p in self.participants)

    @property
    def participant_ids(self) -> list[str]:
        return [p.person_id for p in self.participants]

    def share_of(self, person_id: str) -> Decimal:
        """Get the amount allocated to a person (zero if not participating)."""
        for participant in self.participants:
            if participant.person_id == person_id:
                return participant.amount
        return ZERO

    def involves(self, person_id: str) -> bool:
        return person_id == self.payer_id or person_id in self.participant_ids

    def positions(self) -> dict[str, Decimal]:
        """Net position (paid minus owed) of everyone involved.

        The payer is credited with the allocated amount rather than the raw
        total, so positions always sum to exactly zero.
        """
        result: dict[str, Decimal] = {}
        for participant in self.participants:
            result[participant.person_id] = (
                result.get(participant.person_id, ZERO) - participant.amount
            )
        result[self.payer_id] = result.get(self.payer_id, ZERO) + self.allocated
        return result


class Settlement(BaseModel):
    """An immutable record of money changing hands to clear a balance."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    person_id: str
    group_id: str | None = None  # None = settles the overall balance
    amount: Money
    direction: SettlementDirection
    is_full: bool
    note: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("amount")
    @classmethod
    def _amount_not_negative(cls, amount: Decimal) -> Decimal:
        if amount < 0:
            raise ValueError("Settlement amount cannot be negative")
        return amount

    @property
    def balance_effect(self) -> Decimal:
        """Change this settlement makes to the person's balance."""
        if self.direction is SettlementDirection.USER_RECEIVED:
            return -self.amount
        return self.amount


class Transaction(BaseModel):
    """A generic income/expense record, optionally tied to a person.

    ``amount`` is signed cash flow for the current user: negative is money
    out, positive is money in.
    """

    SETTLEMENT_TAG: ClassVar[str] = "settlement"

    id: str = Field(default_factory=new_id)
    title: str
    subtitle: str = ""
    amount: Money
    category: TransactionCategory = TransactionCategory.OTHER
    date: datetime = Field(default_factory=utcnow)
    is_recurring: bool = False
    linked_person_id: str | None = None
    settlement_id: str | None = None
    tags: list[str] = Field(default_factory=list)

    @property
    def is_settlement(self) -> bool:
        return self.settlement_id is not None or self.SETTLEMENT_TAG in self.tags

    @property
    def balance_effect(self) -> Decimal:
        """Change to the linked person's balance.

        Settlement transactions contribute nothing; the Settlement record
        carries their effect.
        """
        if self.linked_person_id is None or self.is_settlement:
            return ZERO
        return -self.amount


class LedgerEvent(BaseModel):
    """One entry in the ledger's append-only log."""

    model_config = ConfigDict(frozen=True)

    sequence: int
    kind: EventKind
    record_id: str
    occurred_at: datetime


# ============================================================================
# Subscriptions
# ============================================================================


class Subscription(BaseModel):
    """A recurring charge tracked for renewal and monthly cost."""

    id: str = Field(default_factory=new_id)
    name: str
    price: Money
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    next_billing_date: date
    is_active: bool = True
    shared_with: list[str] = Field(default_factory=list)  # person ids
    is_free_trial: bool = False
    trial_start_date: date | None = None
    trial_end_date: date | None = None
    price_after_trial: Money | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_shared(self) -> bool:
        return bool(self.shared_with)


# ============================================================================
# Results
# ============================================================================


class LedgerDelta(BaseModel):
    """What a single ledger mutation changed.

    - positions: each involved person's net position change (sums to zero)
    - balances: change to each counterparty's balance vs the current user
    """

    positions: dict[str, Money] = Field(default_factory=dict)
    balances: dict[str, Money] = Field(default_factory=dict)
    group_id: str | None = None
    expense_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not any(self.positions.values()) and not any(self.balances.values())

    @property
    def is_conserved(self) -> bool:
        return sum_money(self.positions.values()) == ZERO


class SettlementResult(BaseModel):
    settlement: Settlement
    transaction: Transaction
    prior_balance: Money
    new_balance: Money
    state: BalanceState  # of the settled scope: one group, or the whole balance
    delta: LedgerDelta


class BalanceSummary(BaseModel):
    """Aggregate view of all balances for the current user."""

    owed_to_you: Money = ZERO
    you_owe: Money = ZERO  # reported as a positive amount
    people_owing_you: list[str] = Field(default_factory=list)
    people_you_owe: list[str] = Field(default_factory=list)

    @property
    def net(self) -> Decimal:
        return self.owed_to_you - self.you_owe
