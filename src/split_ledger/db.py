"""SQLite database operations for Split Ledger."""

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path

from .models import (
    Group,
    GroupExpense,
    Person,
    Settlement,
    Subscription,
    Transaction,
    utcnow,
)


class Database:
    """SQLite database manager.

    Settlements are insert-only: there is no update or delete path for them.
    """

    def __init__(self, db_path: Path):
        """Initialize database connection."""
        self.db_path = db_path
        # Writes are serialized by LedgerService, so the connection may be
        # shared across threads.
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._batch_depth = 0
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        cursor = self.conn.cursor()

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS people (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT,
                phone TEXT,
                contact_id TEXT,
                balance TEXT NOT NULL DEFAULT '0.00',
                created_at TIMESTAMP NOT NULL
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS groups (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                emoji TEXT,
                members TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
        """
        )

        # Expenses keep their participant allocations as JSON
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS expenses (
                id TEXT PRIMARY KEY,
                group_id TEXT,
                is_settled INTEGER NOT NULL DEFAULT 0,
                data TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS settlements (
                id TEXT PRIMARY KEY,
                person_id TEXT NOT NULL,
                group_id TEXT,
                amount TEXT NOT NULL,
                direction TEXT NOT NULL,
                is_full INTEGER NOT NULL,
                note TEXT,
                created_at TIMESTAMP NOT NULL
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS transactions (
                id TEXT PRIMARY KEY,
                linked_person_id TEXT,
                data TEXT NOT NULL,
                date TIMESTAMP NOT NULL
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS subscriptions (
                id TEXT PRIMARY KEY,
                is_active INTEGER NOT NULL,
                next_billing_date DATE NOT NULL,
                data TEXT NOT NULL
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        self.conn.commit()

    def close(self):
        """Close database connection."""
        self.conn.close()

    @contextmanager
    def atomic(self) -> Iterator["Database"]:
        """Group several writes into one commit; roll all back on error."""
        self._batch_depth += 1
        try:
            yield self
        except Exception:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                self.conn.rollback()
            raise
        else:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                self.conn.commit()

    def _commit(self):
        if self._batch_depth == 0:
            self.conn.commit()

    # ========================================================================
    # Config operations
    # ========================================================================

    def get_config(self, key: str) -> str | None:
        """Get a config value by key."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT value FROM config WHERE key = ?", (key,))
        row = cursor.fetchone()
        return str(row["value"]) if row else None

    def set_config(self, key: str, value: str):
        """Set a config value."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO config (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, utcnow().isoformat()),
        )
        self._commit()

    def get_last_reconciled_at(self) -> datetime | None:
        """Get when balances were last reconciled against the ledger."""
        value = self.get_config("last_reconciled_at")
        return datetime.fromisoformat(value) if value else None

    def set_last_reconciled_at(self, moment: datetime):
        self.set_config("last_reconciled_at", moment.isoformat())

    # ========================================================================
    # People operations
    # ========================================================================

    def save_person(self, person: Person):
        """Insert or update a person."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO people (
                id, name, email, phone, contact_id, balance, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                email = excluded.email,
                phone = excluded.phone,
                contact_id = excluded.contact_id,
                balance = excluded.balance
            """,
            (
                person.id,
                person.name,
                person.email,
                person.phone,
                person.contact_id,
                str(person.balance),
                person.created_at.isoformat(),
            ),
        )
        self._commit()

    def update_person_balance(self, person_id: str, balance: Decimal):
        """Write a person's cached balance."""
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE people SET balance = ? WHERE id = ?", (str(balance), person_id)
        )
        self._commit()

    def get_person(self, person_id: str) -> Person | None:
        """Get a person by id."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT id, name, email, phone, contact_id, balance, created_at
            FROM people
            WHERE id = ?
            """,
            (person_id,),
        )
        row = cursor.fetchone()
        return self._row_to_person(row) if row else None

    def list_people(self) -> list[Person]:
        """Get all people, alphabetically."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT id, name, email, phone, contact_id, balance, created_at
            FROM people
            ORDER BY name COLLATE NOCASE
            """
        )
        return [self._row_to_person(row) for row in cursor.fetchall()]

    @staticmethod
    def _row_to_person(row: sqlite3.Row) -> Person:
        return Person(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            phone=row["phone"],
            contact_id=row["contact_id"],
            balance=Decimal(row["balance"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # ========================================================================
    # Group operations
    # ========================================================================

    def save_group(self, group: Group):
        """Insert or update a group."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO groups (id, name, description, emoji, members, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                emoji = excluded.emoji,
                members = excluded.members
            """,
            (
                group.id,
                group.name,
                group.description,
                group.emoji,
                json.dumps(group.members),
                group.created_at.isoformat(),
            ),
        )
        self._commit()

    def get_group(self, group_id: str) -> Group | None:
        """Get a group by id."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT id, name, description, emoji, members, created_at
            FROM groups
            WHERE id = ?
            """,
            (group_id,),
        )
        row = cursor.fetchone()
        return self._row_to_group(row) if row else None

    def list_groups(self) -> list[Group]:
        """Get all groups, oldest first."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT id, name, description, emoji, members, created_at
            FROM groups
            ORDER BY created_at
            """
        )
        return [self._row_to_group(row) for row in cursor.fetchall()]

    @staticmethod
    def _row_to_group(row: sqlite3.Row) -> Group:
        return Group(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            emoji=row["emoji"],
            members=json.loads(row["members"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # ========================================================================
    # Expense operations
    # ========================================================================

    def save_expense(self, expense: GroupExpense):
        """Insert an expense, or update its settled flag."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO expenses (id, group_id, is_settled, data, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                is_settled = excluded.is_settled,
                data = excluded.data
            """,
            (
                expense.id,
                expense.group_id,
                int(expense.is_settled),
                expense.model_dump_json(),
                expense.created_at.isoformat(),
            ),
        )
        self._commit()

    def list_expenses(self, group_id: str | None = None) -> list[GroupExpense]:
        """Get expenses, oldest first, optionally for one group."""
        cursor = self.conn.cursor()
        if group_id is None:
            cursor.execute("SELECT data FROM expenses ORDER BY created_at")
        else:
            cursor.execute(
                "SELECT data FROM expenses WHERE group_id = ? ORDER BY created_at",
                (group_id,),
            )
        return [
            GroupExpense.model_validate_json(row["data"]) for row in cursor.fetchall()
        ]

    # ========================================================================
    # Settlement operations
    # ========================================================================

    def save_settlement(self, settlement: Settlement):
        """Insert a settlement record. Settlements are never updated."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO settlements (
                id, person_id, group_id, amount, direction, is_full,
                note, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                settlement.id,
                settlement.person_id,
                settlement.group_id,
                str(settlement.amount),
                settlement.direction.value,
                int(settlement.is_full),
                settlement.note,
                settlement.created_at.isoformat(),
            ),
        )
        self._commit()

    def list_settlements(self, person_id: str | None = None) -> list[Settlement]:
        """Get settlements, oldest first, optionally for one person."""
        cursor = self.conn.cursor()
        query = """
            SELECT id, person_id, group_id, amount, direction, is_full,
                   note, created_at
            FROM settlements
        """
        if person_id is None:
            cursor.execute(query + " ORDER BY created_at")
        else:
            cursor.execute(
                query + " WHERE person_id = ? ORDER BY created_at", (person_id,)
            )
        return [
            Settlement(
                id=row["id"],
                person_id=row["person_id"],
                group_id=row["group_id"],
                amount=Decimal(row["amount"]),
                direction=row["direction"],
                is_full=bool(row["is_full"]),
                note=row["note"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in cursor.fetchall()
        ]

    # ========================================================================
    # Transaction operations
    # ========================================================================

    def save_transaction(self, transaction: Transaction):
        """Insert a transaction."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO transactions (id, linked_person_id, data, date)
            VALUES (?, ?, ?, ?)
            """,
            (
                transaction.id,
                transaction.linked_person_id,
                transaction.model_dump_json(),
                transaction.date.isoformat(),
            ),
        )
        self._commit()

    def list_transactions(self, person_id: str | None = None) -> list[Transaction]:
        """Get transactions, oldest first, optionally for one person."""
        cursor = self.conn.cursor()
        if person_id is None:
            cursor.execute("SELECT data FROM transactions ORDER BY date")
        else:
            cursor.execute(
                "SELECT data FROM transactions WHERE linked_person_id = ? ORDER BY date",
                (person_id,),
            )
        return [
            Transaction.model_validate_json(row["data"]) for row in cursor.fetchall()
        ]

    # ========================================================================
    # Subscription operations
    # ========================================================================

    def save_subscription(self, subscription: Subscription):
        """Insert or update a subscription."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO subscriptions (id, is_active, next_billing_date, data)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                is_active = excluded.is_active,
                next_billing_date = excluded.next_billing_date,
                data = excluded.data
            """,
            (
                subscription.id,
                int(subscription.is_active),
                subscription.next_billing_date.isoformat(),
                subscription.model_dump_json(),
            ),
        )
        self._commit()

    def get_subscription(self, subscription_id: str) -> Subscription | None:
        cursor = self.conn.cursor()
        cursor.execute("SELECT data FROM subscriptions WHERE id = ?", (subscription_id,))
        row = cursor.fetchone()
        return Subscription.model_validate_json(row["data"]) if row else None

    def list_subscriptions(self, active_only: bool = False) -> list[Subscription]:
        """Get subscriptions ordered by next billing date."""
        cursor = self.conn.cursor()
        if active_only:
            cursor.execute(
                "SELECT data FROM subscriptions WHERE is_active = 1 "
                "ORDER BY next_billing_date"
            )
        else:
            cursor.execute("SELECT data FROM subscriptions ORDER BY next_billing_date")
        return [
            Subscription.model_validate_json(row["data"]) for row in cursor.fetchall()
        ]
