"""Balance-change notifications.

The ledger only tells a notifier that a balance moved; scheduling or
cancelling reminders is the notifier's business.
"""

import logging
from decimal import Decimal
from typing import Protocol

logger = logging.getLogger(__name__)


class BalanceNotifier(Protocol):
    """Receives fire-and-forget balance updates."""

    def balance_changed(self, person_id: str, new_balance: Decimal) -> None: ...


class LoggingNotifier:
    """Default notifier that just logs each update."""

    def balance_changed(self, person_id: str, new_balance: Decimal) -> None:
        if new_balance == 0:
            logger.info(f"Balance with {person_id} is settled")
        else:
            logger.info(f"Balance with {person_id} is now {new_balance}")


def notify_all(notifier: BalanceNotifier, balances: dict[str, Decimal]):
    """
    Send every balance update, never letting a notifier failure escape.

    The mutation that produced these balances has already been persisted, so
    a failing notifier is logged rather than raised.
    """
    for person_id, new_balance in balances.items():
        try:
            notifier.balance_changed(person_id, new_balance)
        except Exception:
            logger.exception(f"Notifier failed for {person_id}")
