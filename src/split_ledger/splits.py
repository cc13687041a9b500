"""Split strategy resolver.

Turns a bill total, a participant list and a split method into per-person
shares that always add back up to the total. Every method funnels its
rounding through ``distribute_remainder`` so there is exactly one place where
minor units are handed out.
"""

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime
from decimal import Decimal

from .exceptions import (
    AdjustmentImbalance,
    InvalidParticipantSet,
    InvalidShareWeights,
    PercentageMismatch,
    ShareMismatch,
)
from .models import (
    AdjustmentSplit,
    EqualSplit,
    ExactAmountSplit,
    GroupExpense,
    Participant,
    PercentageSplit,
    ShareSplit,
    SplitMethod,
    SplitType,
    TransactionCategory,
    utcnow,
)
from .money import ZERO, from_cents, sign, sum_money, to_cents, to_money

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
PERCENTAGE_TOLERANCE = Decimal("0.01")


def distribute_remainder(total_cents: int, weights: Sequence[Decimal]) -> list[int]:
    """
    Split a non-negative number of minor units proportionally to weights.

    Steps:
    1. Compute each exact (fractional) share
    2. Floor every share to whole minor units
    3. Hand out the leftover units one at a time, largest fractional part
       first, ties going to the earlier participant

    With equal weights step 3 reduces to "the first ``remainder``
    participants in input order".

    Args:
        total_cents: Amount to distribute, in minor units
        weights: Non-negative weights with a positive sum

    Returns:
        Minor units per weight, summing exactly to total_cents
    """
    weight_sum = sum(weights, Decimal(0))
    exact = [Decimal(total_cents) * weight / weight_sum for weight in weights]
    floors = [int(share) for share in exact]
    remainder = total_cents - sum(floors)

    by_fraction = sorted(
        range(len(exact)), key=lambda i: (-(exact[i] - floors[i]), i)
    )
    for i in by_fraction[:remainder]:
        floors[i] += 1

    return floors


def resolve_shares(
    total: Decimal,
    participants: Sequence[str],
    method: SplitMethod | None = None,
) -> dict[str, Decimal]:
    """
    Compute each participant's share of a total.

    Args:
        total: Bill total
        participants: Person ids, in display order
        method: Split method with its parameters (defaults to equal split)

    Returns:
        Shares keyed by person id, in participant order, summing to total

    Raises:
        InvalidParticipantSet: Empty/duplicate participants, or parameters
            that don't line up with the participants
        ShareMismatch: Exact amounts don't add up to the total
        PercentageMismatch: Percentages don't add up to 100
        InvalidShareWeights: Share weights negative or all zero
        AdjustmentImbalance: Adjustments don't cancel out
    """
    total = to_money(total)
    participants = list(participants)
    method = method or EqualSplit()

    _check_participants(participants)

    # A lone participant owes the whole bill whatever the method says
    if len(participants) == 1:
        return {participants[0]: total}

    if isinstance(method, EqualSplit):
        shares = _proportional(total, participants, [Decimal(1)] * len(participants))
    elif isinstance(method, ExactAmountSplit):
        shares = _exact(total, participants, method.amounts)
    elif isinstance(method, PercentageSplit):
        shares = _percentages(total, participants, method.percentages)
    elif isinstance(method, ShareSplit):
        shares = _weighted(total, participants, method.weights)
    elif isinstance(method, AdjustmentSplit):
        shares = _adjusted(total, participants, method.adjustments)
    else:
        raise TypeError(f"Unsupported split method: {method!r}")

    # Final verification
    assert sum_money(shares.values()) == total, "Share distribution failed"

    logger.debug(f"Resolved {split_type_of(method)} split of {total}: {shares}")
    return shares


def split_type_of(method: SplitMethod) -> SplitType:
    """Get the SplitType tag for a split method."""
    return SplitType(method.kind)


def method_from_values(
    split_type: SplitType | str, values: Mapping[str, str] | None = None
) -> SplitMethod:
    """
    Build a split method from a tag and raw per-person values.

    Used by callers that collect parameters as text (CLI options, stored
    rows). Values are parsed as money, percentages or integer weights
    depending on the tag.
    """
    split_type = SplitType(split_type)
    values = dict(values or {})

    if split_type is SplitType.EQUALLY:
        return EqualSplit()
    if split_type is SplitType.EXACT_AMOUNTS:
        return ExactAmountSplit(amounts=values)
    if split_type is SplitType.PERCENTAGES:
        return PercentageSplit(
            percentages={pid: Decimal(str(value)) for pid, value in values.items()}
        )
    if split_type is SplitType.SHARES:
        return ShareSplit(weights={pid: int(value) for pid, value in values.items()})
    return AdjustmentSplit(adjustments=values)


def build_expense(
    title: str,
    total: Decimal,
    payer_id: str,
    participant_ids: Sequence[str],
    method: SplitMethod | None = None,
    group_id: str | None = None,
    category: TransactionCategory = TransactionCategory.DINING,
    notes: str = "",
    created_at: datetime | None = None,
) -> GroupExpense:
    """
    Resolve shares and assemble a GroupExpense ready for the ledger.

    This is a pure function; nothing is recorded.
    """
    method = method or EqualSplit()
    shares = resolve_shares(total, participant_ids, method)

    return GroupExpense(
        title=title,
        total=total,
        payer_id=payer_id,
        participants=[
            Participant(person_id=pid, amount=amount) for pid, amount in shares.items()
        ],
        split_type=split_type_of(method),
        group_id=group_id,
        category=category,
        notes=notes,
        created_at=created_at or utcnow(),
    )


# ============================================================================
# Per-method helpers
# ============================================================================


def _check_participants(participants: list[str]):
    if not participants:
        raise InvalidParticipantSet("A split needs at least one participant")
    if len(set(participants)) != len(participants):
        raise InvalidParticipantSet("Each participant can only appear once")


def _check_keys(
    params: Mapping[str, object], participants: list[str], require_all: bool = True
):
    """Make sure split parameters name exactly the participants."""
    unknown = [pid for pid in params if pid not in participants]
    if unknown:
        raise InvalidParticipantSet(
            f"Split parameters mention non-participants: {', '.join(unknown)}"
        )
    if require_all:
        missing = [pid for pid in participants if pid not in params]
        if missing:
            raise InvalidParticipantSet(
                f"Split parameters are missing participants: {', '.join(missing)}"
            )


def _proportional(
    total: Decimal, participants: list[str], weights: Sequence[Decimal]
) -> dict[str, Decimal]:
    """Distribute a total by weight; refunds (negative totals) keep their sign."""
    direction = sign(total) or 1
    cents = distribute_remainder(abs(to_cents(total)), weights)
    return {
        pid: from_cents(direction * share) for pid, share in zip(participants, cents)
    }


def _exact(
    total: Decimal, participants: list[str], amounts: Mapping[str, Decimal]
) -> dict[str, Decimal]:
    _check_keys(amounts, participants)

    for pid in participants:
        if amounts[pid] != to_money(amounts[pid]):
            raise ShareMismatch(
                f"Exact amount {amounts[pid]} for {pid} is finer than a cent"
            )

    allocated = sum(amounts.values(), ZERO)
    if allocated != total:
        raise ShareMismatch(
            f"Exact amounts add up to {allocated}, but the total is {total}"
        )

    return {pid: to_money(amounts[pid]) for pid in participants}


def _percentages(
    total: Decimal, participants: list[str], percentages: Mapping[str, Decimal]
) -> dict[str, Decimal]:
    _check_keys(percentages, participants)

    if any(pct < 0 for pct in percentages.values()):
        raise PercentageMismatch("Percentages cannot be negative")

    pct_total = sum(percentages.values(), Decimal(0))
    if abs(pct_total - HUNDRED) > PERCENTAGE_TOLERANCE:
        raise PercentageMismatch(f"Percentages add up to {pct_total}%, not 100%")

    return _proportional(total, participants, [percentages[pid] for pid in participants])


def _weighted(
    total: Decimal, participants: list[str], weights: Mapping[str, int]
) -> dict[str, Decimal]:
    _check_keys(weights, participants)

    if any(weight < 0 for weight in weights.values()):
        raise InvalidShareWeights("Share weights cannot be negative")
    if sum(weights.values()) == 0:
        raise InvalidShareWeights("At least one share weight must be positive")

    return _proportional(
        total, participants, [Decimal(weights[pid]) for pid in participants]
    )


def _adjusted(
    total: Decimal, participants: list[str], adjustments: Mapping[str, Decimal]
) -> dict[str, Decimal]:
    _check_keys(adjustments, participants, require_all=False)

    imbalance = sum_money(adjustments.values())
    if imbalance != ZERO:
        raise AdjustmentImbalance(
            f"Adjustments must sum to zero, but they sum to {imbalance}"
        )

    base = _proportional(total, participants, [Decimal(1)] * len(participants))
    return {
        pid: to_money(base[pid] + adjustments.get(pid, ZERO)) for pid in participants
    }
