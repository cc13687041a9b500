"""Custom exceptions for Split Ledger."""


class SplitLedgerError(Exception):
    """Base exception for all Split Ledger errors."""

    pass


class ConfigurationError(SplitLedgerError):
    """Raised when configuration is invalid or missing."""

    pass


class LedgerValidationError(SplitLedgerError):
    """Base class for rejected caller input.

    Nothing is applied when one of these is raised; the caller corrects the
    input and resubmits. ``user_message`` is the short, actionable text a
    presentation layer shows.
    """

    user_message = "The request could not be applied."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)


class InvalidParticipantSet(LedgerValidationError):
    """Raised when the participant list is empty, repeats people, or
    doesn't line up with the split parameters or group members."""

    user_message = "Choose at least one participant, each only once."


class ShareMismatch(LedgerValidationError):
    """Raised when exact amounts don't add up to the total."""

    user_message = "Shares don't add up to the total."


class PercentageMismatch(LedgerValidationError):
    """Raised when percentages don't add up to 100."""

    user_message = "Percentages must add up to 100%."


class InvalidShareWeights(LedgerValidationError):
    """Raised when share weights are negative or all zero."""

    user_message = "Give at least one person a share greater than zero."


class AdjustmentImbalance(LedgerValidationError):
    """Raised when per-person adjustments don't cancel out."""

    user_message = "Adjustments must cancel each other out."


class InvalidSettlementAmount(LedgerValidationError):
    """Raised when a settlement amount is zero, negative, or missing."""

    user_message = "Enter an amount greater than zero."


class SettlementExceedsBalance(LedgerValidationError):
    """Raised when a partial settlement is larger than the outstanding balance."""

    user_message = "That's more than the outstanding balance."

    def __init__(self, amount, outstanding, message: str | None = None):
        self.amount = amount
        self.outstanding = outstanding
        super().__init__(
            message
            or f"Settlement of {amount} exceeds the outstanding balance of {outstanding}"
        )


class ExpenseAlreadyPaid(LedgerValidationError):
    """Raised when marking an expense paid would clear a debt a settlement
    already covered."""

    user_message = "This expense was already paid off by a settlement."


class UnsupportedBillingCycle(LedgerValidationError):
    """Raised when a billing cycle value is not recognised."""

    user_message = "Pick a supported billing cycle."


class RecordNotFoundError(SplitLedgerError):
    """Raised when a person, group, expense or subscription doesn't exist."""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id} not found")


class DuplicateRecordError(SplitLedgerError):
    """Raised when a record with the same id was already recorded."""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id} has already been recorded")


class BalanceDriftError(SplitLedgerError):
    """Raised when cached balances disagree with the ledger history."""

    def __init__(self, drift: dict):
        self.drift = drift
        people = ", ".join(f"{pid} ({amount:+})" for pid, amount in drift.items())
        super().__init__(f"Cached balances drifted from ledger history: {people}")
