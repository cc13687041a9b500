"""CLI for Split Ledger using Typer."""

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date
from decimal import Decimal

import typer
from rich.console import Console
from rich.table import Table

from .billing import (
    cost_per_person,
    monthly_equivalent,
    next_billing_date,
    trial_status,
)
from .config import load_settings
from .db import Database
from .exceptions import LedgerValidationError, RecordNotFoundError
from .models import GroupExpense, SettlementMode, SplitType, TransactionCategory
from .service import LedgerService
from .splits import method_from_values
from .ui import confirm_settlement, describe_balance, select_person_interactive

app = typer.Typer(
    name="split-ledger",
    help="Track shared expenses, settle-ups and subscriptions",
)
people_app = typer.Typer(help="Manage the people you share money with")
groups_app = typer.Typer(help="Manage groups and their expenses")
subs_app = typer.Typer(help="Track subscriptions and renewals")

app.add_typer(people_app, name="people")
app.add_typer(groups_app, name="groups")
app.add_typer(subs_app, name="subs")

console = Console()


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@contextmanager
def open_service(verbose: bool = False) -> Iterator[LedgerService]:
    """Load settings, open the database and report errors the CLI way."""
    setup_logging(verbose)
    db = None

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        yield LedgerService(settings, db)
    except LedgerValidationError as e:
        console.print(f"\n[bold red]Error:[/bold red] {e.user_message}")
        console.print(f"[dim]{e}[/dim]")
        if verbose:
            raise
        sys.exit(1)
    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if db is not None:
            db.close()


def format_money(amount: Decimal, use_color: bool = True) -> str:
    """
    Format money in accounting style with alignment.

    Negative amounts use parentheses: ($85.02)
    Positive amounts have spaces:      $85.02
    The spaces ensure decimal points align in tables.
    """
    abs_amount = abs(amount)
    if amount < 0:
        if use_color:
            formatted = f"($[red]{abs_amount:,.2f}[/red])"
        else:
            formatted = f"(${abs_amount:,.2f})"
    else:
        if use_color:
            formatted = f" [green]${abs_amount:,.2f}[/green] "
        else:
            formatted = f" ${abs_amount:,.2f} "
    return formatted


def resolve_person(service: LedgerService, ref: str) -> str:
    """Accept a person id, the current user's id, or a unique name."""
    if ref == service.current_user_id:
        return ref
    if service.db.get_person(ref):
        return ref

    matches = [p for p in service.list_people() if p.name.lower() == ref.lower()]
    if len(matches) == 1:
        return matches[0].id
    if len(matches) > 1:
        raise ValueError(f"'{ref}' matches {len(matches)} people; use an id instead")
    raise RecordNotFoundError("Person", ref)


def parse_values(service: LedgerService, values: list[str]) -> dict[str, str]:
    """Parse repeated NAME=VALUE options into a per-person mapping."""
    parsed = {}
    for value in values:
        if "=" not in value:
            raise ValueError(f"Expected NAME=VALUE, got '{value}'")
        ref, raw = value.split("=", 1)
        parsed[resolve_person(service, ref.strip())] = raw.strip()
    return parsed


# ============================================================================
# People
# ============================================================================


@people_app.command("add")
def people_add(
    name: str = typer.Argument(..., help="Display name"),
    email: str | None = typer.Option(None, "--email", help="Email address"),
    phone: str | None = typer.Option(None, "--phone", help="Phone number"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Add a person to share expenses with."""
    with open_service(verbose) as service:
        person = service.add_person(name, email=email, phone=phone)
        console.print(f"[green]✓ Added {person.name}[/green] [dim]({person.id})[/dim]")


@people_app.command("list")
def people_list(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List people and their balances."""
    with open_service(verbose) as service:
        people = service.list_people()
        if not people:
            console.print("[yellow]No people yet.[/yellow]")
            return

        table = Table(title="People", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim", width=12)
        table.add_column("Name", style="cyan")
        table.add_column("Balance", justify="right", width=14)
        table.add_column("Status", style="yellow")

        for person in people:
            table.add_row(
                person.id[:12],
                person.name,
                format_money(person.balance),
                describe_balance(person.balance),
            )

        console.print(table)


@people_app.command("show")
def people_show(
    person: str = typer.Argument(..., help="Person id or name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show a person's balance and payment history."""
    with open_service(verbose) as service:
        person_id = resolve_person(service, person)
        record = service.get_person(person_id)
        balance = service.net_balance(person_id)

        console.print(f"\n[bold]{record.name}[/bold] [dim]({record.id})[/dim]")
        console.print(f"  Balance: {format_money(balance)} ({describe_balance(balance)})")
        console.print(f"  State: {service.balance_state(person_id)}")

        activity = service.activity(person_id)
        if activity:
            table = Table(title="Activity", show_header=True, header_style="bold magenta")
            table.add_column("Date", style="dim", width=12)
            table.add_column("Title", style="cyan")
            table.add_column("Amount", justify="right", width=14)
            for transaction in activity:
                table.add_row(
                    transaction.date.date().isoformat(),
                    transaction.title,
                    format_money(transaction.amount),
                )
            console.print(table)


# ============================================================================
# Groups
# ============================================================================


@groups_app.command("create")
def groups_create(
    name: str = typer.Argument(..., help="Group name"),
    members: list[str] = typer.Option([], "--member", "-m", help="Member id or name"),
    description: str = typer.Option("", "--description", "-d", help="Description"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Create a group."""
    with open_service(verbose) as service:
        member_ids = [resolve_person(service, ref) for ref in members]
        group = service.create_group(name, member_ids, description=description)
        console.print(
            f"[green]✓ Created group {group.name}[/green] [dim]({group.id})[/dim]"
        )


@groups_app.command("add-member")
def groups_add_member(
    group_id: str = typer.Argument(..., help="Group id"),
    person: str = typer.Argument(..., help="Person id or name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Add a person to a group."""
    with open_service(verbose) as service:
        group = service.add_group_member(group_id, resolve_person(service, person))
        console.print(f"[green]✓ {group.name} now has {len(group.members)} members[/green]")


@groups_app.command("show")
def groups_show(
    group_id: str = typer.Argument(..., help="Group id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show balances and expenses within a group."""
    with open_service(verbose) as service:
        group = service.get_group(group_id)
        balances = service.aggregate_for_group(group_id)
        positions = service.group_positions(group_id)

        console.print(f"\n[bold]{group.emoji or ''} {group.name}[/bold]")
        if group.description:
            console.print(f"  [dim]{group.description}[/dim]")

        table = Table(title="Members", show_header=True, header_style="bold magenta")
        table.add_column("Name", style="cyan")
        table.add_column("With you", justify="right", width=14)
        table.add_column("Net in group", justify="right", width=14)
        for person_id in [service.current_user_id, *group.members]:
            table.add_row(
                service.display_name(person_id),
                "" if person_id == service.current_user_id
                else format_money(balances.get(person_id, Decimal("0"))),
                format_money(positions.get(person_id, Decimal("0"))),
            )
        console.print(table)

        display_expenses(service, service.group_expenses(group_id))


@groups_app.command("settle")
def groups_settle(
    group_id: str = typer.Argument(..., help="Group id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Settle every outstanding balance in a group."""
    with open_service(verbose) as service:
        group = service.get_group(group_id)
        if not yes:
            confirm = input(f"Settle all balances in {group.name}? [y/N] ").strip().lower()
            if confirm not in ("y", "yes"):
                console.print("[yellow]Cancelled.[/yellow]")
                return

        results = service.settle_group(group_id)
        if not results:
            console.print("[green]Nothing to settle.[/green]")
            return
        for result in results:
            console.print(
                f"[green]✓ {result.transaction.title}:[/green] "
                f"{format_money(result.settlement.amount)}"
            )


def display_expenses(service: LedgerService, expenses: list[GroupExpense]):
    """Display expenses in a table."""
    if not expenses:
        console.print("[dim]No expenses.[/dim]")
        return

    table = Table(title="Expenses", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim", width=12)
    table.add_column("Title", style="cyan", width=30)
    table.add_column("Paid by")
    table.add_column("Total", justify="right", width=12)
    table.add_column("Split", style="dim")
    table.add_column("Status", style="yellow")

    for expense in expenses:
        table.add_row(
            expense.id[:12],
            expense.title[:30],
            service.display_name(expense.payer_id),
            format_money(expense.total),
            str(expense.split_type),
            "settled" if expense.is_settled else "open",
        )
    console.print(table)


# ============================================================================
# Splitting & settling
# ============================================================================


@app.command()
def split(
    title: str = typer.Argument(..., help="What the bill was for"),
    total: str = typer.Argument(..., help="Bill total, e.g. 42.50"),
    payer: str | None = typer.Option(
        None, "--payer", "-p", help="Who paid (default: you)"
    ),
    participants: list[str] = typer.Option(
        [], "--with", "-w", help="Participant id or name (repeat for each)"
    ),
    method: SplitType = typer.Option(
        SplitType.EQUALLY, "--method", "-m", help="How to split"
    ),
    values: list[str] = typer.Option(
        [],
        "--value",
        "-V",
        help="NAME=VALUE per participant: amount, percentage, weight or adjustment",
    ),
    group_id: str | None = typer.Option(None, "--group", "-g", help="Group id"),
    category: TransactionCategory = typer.Option(
        TransactionCategory.DINING, "--category", "-c", help="Expense category"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Split a bill and record who owes what.

    Examples:
      split "Dinner" 90 --with Alice --with Bob --with me
      split "Rent" 1500 -m percentages -w me -w Sam -V me=60 -V Sam=40
    """
    with open_service(verbose) as service:
        payer_id = resolve_person(service, payer) if payer else service.current_user_id
        participant_ids = [resolve_person(service, ref) for ref in participants]
        if not participant_ids:
            participant_ids = [payer_id]

        split_method = method_from_values(method, parse_values(service, values))
        expense, delta = service.split_bill(
            title=title,
            total=Decimal(total),
            payer_id=payer_id,
            participant_ids=participant_ids,
            method=split_method,
            group_id=group_id,
            category=category,
        )

        table = Table(
            title=f"{expense.title} ({expense.split_type})",
            show_header=True,
            header_style="bold magenta",
        )
        table.add_column("Participant", style="cyan")
        table.add_column("Share", justify="right", width=12)
        table.add_column("Balance change", justify="right", width=14)
        for participant in expense.participants:
            table.add_row(
                service.display_name(participant.person_id),
                format_money(participant.amount),
                format_money(delta.balances.get(participant.person_id, Decimal("0"))),
            )
        console.print(table)

        if sum(p.amount for p in expense.participants) == expense.total:
            console.print("  [green]✓ Shares add up to the total[/green]")
        console.print(
            f"\n[bold green]✓ Recorded {expense.title}[/bold green] [dim]({expense.id})[/dim]"
        )


@app.command()
def settle(
    person: str | None = typer.Argument(None, help="Person id or name"),
    amount: str | None = typer.Option(
        None, "--amount", "-a", help="Amount for a partial settlement"
    ),
    partial: bool = typer.Option(False, "--partial", help="Settle only --amount"),
    group_id: str | None = typer.Option(
        None, "--group", "-g", help="Settle only this group's balance"
    ),
    note: str | None = typer.Option(None, "--note", help="Note to keep on record"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Record a full or partial settlement with someone.

    Without a person, pick interactively from everyone with an open balance.
    """
    with open_service(verbose) as service:
        if person:
            person_id = resolve_person(service, person)
        else:
            open_balances = [p for p in service.list_people() if p.balance != 0]
            if not open_balances:
                console.print("[green]Everyone is settled up.[/green]")
                return
            person_id = select_person_interactive(open_balances, "Settle with: ")
            if person_id is None:
                console.print("[yellow]No person selected.[/yellow]")
                return

        record = service.get_person(person_id)
        mode = SettlementMode.PARTIAL if partial else SettlementMode.FULL
        settle_amount = Decimal(amount) if amount is not None else None

        if not yes:
            outstanding = (
                service.group_balance(group_id, person_id)
                if group_id
                else record.balance
            )
            preview = settle_amount if partial and settle_amount else abs(outstanding)
            if not confirm_settlement(record, preview, outstanding):
                console.print("[yellow]Cancelled.[/yellow]")
                return

        result = service.settle(
            person_id, amount=settle_amount, mode=mode, group_id=group_id, note=note
        )

        console.print(f"\n[bold green]✓ {result.transaction.title}[/bold green]")
        console.print(f"  Amount: {format_money(result.settlement.amount)}")
        console.print(f"  Direction: {result.settlement.direction}")
        console.print(
            f"  Balance: {format_money(result.prior_balance)} → "
            f"{format_money(result.new_balance)} ({result.state})"
        )


@app.command("settle-expense")
def settle_expense(
    expense_id: str = typer.Argument(..., help="Expense id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Mark a single expense as paid."""
    with open_service(verbose) as service:
        delta = service.settle_expense(expense_id)
        if delta.is_empty:
            console.print("[yellow]Expense was already settled.[/yellow]")
            return
        console.print("[green]✓ Expense settled[/green]")


@app.command()
def balances(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show who owes you and whom you owe."""
    with open_service(verbose) as service:
        summary = service.summary()

        console.print("\n[bold]Balances:[/bold]")
        console.print(f"  Owed to you: {format_money(summary.owed_to_you)}")
        console.print(f"  You owe:     {format_money(-summary.you_owe)}")
        console.print(f"  Net:         {format_money(summary.net)}")

        for title, person_ids in (
            ("Owes you", summary.people_owing_you),
            ("You owe", summary.people_you_owe),
        ):
            if not person_ids:
                continue
            table = Table(title=title, show_header=True, header_style="bold magenta")
            table.add_column("Name", style="cyan")
            table.add_column("Amount", justify="right", width=14)
            table.add_column("State", style="dim")
            for person_id in person_ids:
                table.add_row(
                    service.display_name(person_id),
                    format_money(service.net_balance(person_id)),
                    str(service.balance_state(person_id)),
                )
            console.print(table)


@app.command()
def reconcile(
    strict: bool = typer.Option(
        False, "--check", help="Only check; exit 1 if balances drifted"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Rebuild cached balances from the full expense and settlement history."""
    with open_service(verbose) as service:
        if strict:
            service.verify_consistency()
            console.print("[green]✓ All balances match the ledger history[/green]")
            return

        drift = service.reconcile()
        if not drift:
            console.print("[green]✓ No drift found[/green]")
            return
        for person_id, amount in drift.items():
            console.print(
                f"[yellow]Corrected {service.display_name(person_id)}: "
                f"cache was off by {amount:+}[/yellow]"
            )


# ============================================================================
# Subscriptions
# ============================================================================


@subs_app.command("add")
def subs_add(
    name: str = typer.Argument(..., help="Subscription name"),
    price: str = typer.Argument(..., help="Price per billing cycle"),
    cycle: str = typer.Option("monthly", "--cycle", help="Billing cycle"),
    next_date: str | None = typer.Option(
        None, "--next", help="Next billing date (YYYY-MM-DD, default today)"
    ),
    shared_with: list[str] = typer.Option(
        [], "--shared-with", "-s", help="Person sharing the cost"
    ),
    trial_end: str | None = typer.Option(
        None, "--trial-end", help="Free trial end date (YYYY-MM-DD)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Track a subscription."""
    with open_service(verbose) as service:
        subscription = service.add_subscription(
            name,
            Decimal(price),
            billing_cycle=cycle,
            next_billing_date=date.fromisoformat(next_date) if next_date else None,
            shared_with=[resolve_person(service, ref) for ref in shared_with],
            trial_end_date=date.fromisoformat(trial_end) if trial_end else None,
        )
        console.print(
            f"[green]✓ Tracking {subscription.name}[/green] "
            f"({format_money(monthly_equivalent(subscription.price, subscription.billing_cycle))}/mo)"
        )


@subs_app.command("list")
def subs_list(
    show_all: bool = typer.Option(False, "--all", help="Include cancelled"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List subscriptions with their monthly cost."""
    with open_service(verbose) as service:
        subscriptions = service.list_subscriptions(active_only=not show_all)
        if not subscriptions:
            console.print("[yellow]No subscriptions.[/yellow]")
            return

        today = date.today()
        table = Table(
            title="Subscriptions", show_header=True, header_style="bold magenta"
        )
        table.add_column("Name", style="cyan")
        table.add_column("Price", justify="right", width=12)
        table.add_column("Cycle", style="dim")
        table.add_column("Monthly", justify="right", width=12)
        table.add_column("Your share", justify="right", width=12)
        table.add_column("Next billing")
        table.add_column("Trial", style="yellow")

        for sub in subscriptions:
            table.add_row(
                sub.name if sub.is_active else f"[dim]{sub.name}[/dim]",
                format_money(sub.price),
                str(sub.billing_cycle),
                format_money(monthly_equivalent(sub.price, sub.billing_cycle)),
                format_money(cost_per_person(sub)),
                "never" if sub.billing_cycle == "lifetime" else sub.next_billing_date.isoformat(),
                trial_status(sub, today),
            )

        console.print(table)
        console.print(
            f"\n  Total monthly: {format_money(service.monthly_subscription_total())}"
        )


@subs_app.command("renew")
def subs_renew(
    today: str | None = typer.Option(None, "--today", help="Override today's date"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Charge renewals that are due and roll their dates forward."""
    with open_service(verbose) as service:
        renewed = service.process_renewals(
            date.fromisoformat(today) if today else None
        )
        if not renewed:
            console.print("[green]No renewals due.[/green]")
            return
        for sub in renewed:
            console.print(
                f"[green]✓ Renewed {sub.name}[/green], next billing "
                f"{sub.next_billing_date.isoformat()}"
            )


@subs_app.command("next")
def subs_next(
    from_date: str = typer.Argument(..., help="Billing date (YYYY-MM-DD)"),
    cycle: str = typer.Argument(..., help="Billing cycle"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show the billing date one cycle after a given date."""
    with open_service(verbose) as service:
        result = next_billing_date(
            date.fromisoformat(from_date),
            cycle,
            strict=service.settings.strict_billing_cycles,
        )
        console.print(result.isoformat())


@app.command()
def export(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Print the widget snapshot as JSON."""
    with open_service(verbose) as service:
        console.print_json(json.dumps(service.export_widget_snapshot()))


if __name__ == "__main__":
    app()
