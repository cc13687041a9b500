"""Split Ledger - Shared expenses, settle-ups and subscription billing."""

__version__ = "0.1.0"

from .config import Settings, load_settings
from .db import Database
from .ledger import Ledger
from .models import (
    GroupExpense,
    Person,
    Settlement,
    SettlementMode,
    Subscription,
    Transaction,
)
from .service import LedgerService
from .settlement import SettlementProcessor
from .splits import build_expense, resolve_shares

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "Ledger",
    "GroupExpense",
    "Person",
    "Settlement",
    "SettlementMode",
    "Subscription",
    "Transaction",
    "LedgerService",
    "SettlementProcessor",
    "build_expense",
    "resolve_shares",
]
