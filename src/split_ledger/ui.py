"""Interactive UI components for picking people."""

import logging
from decimal import Decimal
from typing import Any

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from .models import Person

logger = logging.getLogger(__name__)


def fuzzy_match(query: str, text: str) -> bool:
    """
    Fuzzy match: all characters in query must appear in order in text.

    Example:
        query="aln" matches "Alan"
        query="bb" matches "Bob Brown"
    """
    query_idx = 0
    for char in text:
        if query_idx < len(query) and char == query[query_idx]:
            query_idx += 1
    return query_idx == len(query)


def describe_balance(balance: Decimal) -> str:
    """Short phrase for a balance from the current user's point of view."""
    if balance > 0:
        return f"owes you ${balance:,.2f}"
    if balance < 0:
        return f"you owe ${-balance:,.2f}"
    return "settled up"


class PersonCompleter(Completer):
    """Fuzzy search completer for people."""

    def __init__(self, people: list[Person]):
        """Initialize the completer with the people to choose from."""
        self.people = people
        self.name_to_id = {person.name: person.id for person in people}

    def get_completions(self, document: Document, complete_event: Any):
        """Get fuzzy-matched completions."""
        query = document.text.lower()

        for person in self.people:
            if query and not fuzzy_match(query, person.name.lower()):
                continue
            yield Completion(
                text=person.name,
                start_position=-len(document.text),
                display=person.name,
                display_meta=describe_balance(person.balance),
            )


def select_person_interactive(
    people: list[Person], prompt_text: str = "Person: "
) -> str | None:
    """
    Interactive person selection with fuzzy search.

    Args:
        people: People to choose from
        prompt_text: Prompt shown before the input

    Returns:
        Selected person ID, or None to skip
    """
    if not people:
        return None

    print("   Type to search, press Enter to confirm, Ctrl+C to skip\n")

    completer = PersonCompleter(people)
    session: PromptSession[str] = PromptSession(completer=completer)

    try:
        # Loop until a valid person or skip
        while True:
            result = session.prompt(prompt_text, complete_while_typing=True)

            if not result:
                return None

            person_id = completer.name_to_id.get(result)
            if person_id:
                logger.info(f"User selected person: {result}")
                return person_id

            print("❌ Unknown person. Pick from the list or press Tab to complete.")

    except KeyboardInterrupt:
        print("\n⏭️  Skipped")
        return None
    except EOFError:
        return None


def confirm_settlement(
    person: Person, amount: Decimal, outstanding: Decimal | None = None
) -> bool:
    """
    Simple yes/no confirmation before recording a settlement.

    Args:
        person: Who the settlement is with
        amount: Amount about to be recorded
        outstanding: Balance being settled, when it is narrower than the
            person's whole balance (a single group)

    Returns:
        True if confirmed, False otherwise
    """
    if outstanding is None:
        outstanding = person.balance
    direction = "from" if outstanding > 0 else "to"
    print(f"\n💸 Record ${amount:,.2f} {direction} {person.name}?")
    print(f"   Current balance: {describe_balance(outstanding)}")

    response = input("   Confirm? [Y/n] ").strip().lower()

    return response in ("", "y", "yes")
