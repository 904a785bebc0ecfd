import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from circulation.records import CatalogItem, LedgerEntry

# Environment variable that controls CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "CIRCULATION_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_items_result(items: List[CatalogItem]) -> None:
    """Print catalog items in the current output mode.
    - plain: 'ISBN - Title by Author (available/total)' lines, or 'No books in library.'
    - json: array of item dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not items:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([item.to_dict() for item in items], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ISBN", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Available", justify="right")
        for item in items:
            table.add_row(item.isbn, item.title, item.author, f"{item.available_copies}/{item.total_copies}")
        _console.print(table)
    else:
        for item in items:
            print(f"{item.isbn} - {item.title} by {item.author} ({item.available_copies}/{item.total_copies})")


def print_entries_result(entries: List[LedgerEntry], empty_message: str = "No borrow records.") -> None:
    mode = get_output_mode()

    if not entries:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([entry.to_dict() for entry in entries], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📖 Borrow records", header_style="bold cyan")
        table.add_column("Entry", style="dim", no_wrap=True)
        table.add_column("ISBN", style="magenta")
        table.add_column("Borrower")
        table.add_column("Due")
        table.add_column("Status")
        for entry in entries:
            status = "[red]overdue[/]" if entry.is_overdue() else entry.status.value
            table.add_row(entry.id, entry.isbn, entry.borrower_handle, entry.due_at.date().isoformat(), status)
        _console.print(table)
    else:
        for entry in entries:
            flag = " OVERDUE" if entry.is_overdue() else ""
            print(f"{entry.id} {entry.isbn} -> {entry.borrower_handle} due {entry.due_at.date().isoformat()}"
                  f" [{entry.status.value}]{flag}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = (
            f"[bold]Total Books:[/] {stats.get('total_items', 0)}\n"
            f"[bold]Books Issued:[/] {stats.get('issued_items', 0)}\n"
            f"[bold]Overdue Loans:[/] {stats.get('overdue_entries', 0)}\n"
            f"[bold]Borrowers:[/] {stats.get('borrowers', 0)}"
        )
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        print(f"Total Books: {stats.get('total_items', 0)}")
        print(f"Books Issued: {stats.get('issued_items', 0)}")
        print(f"Overdue Loans: {stats.get('overdue_entries', 0)}")
        print(f"Borrowers: {stats.get('borrowers', 0)}")


def print_sync_result(result: Dict[str, Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(result, ensure_ascii=False))
    elif mode == "rich":
        content = (
            f"[bold]Processed:[/] {result.get('total', 0)}\n"
            f"[bold]Created:[/] {result.get('created', 0)}\n"
            f"[bold]Updated:[/] {result.get('updated', 0)}"
        )
        _console.print(Panel.fit(content, title="🔄 Directory sync", border_style="green"))
    else:
        print(f"Total borrowers processed: {result.get('total', 0)}")
        print(f"New borrowers created: {result.get('created', 0)}")
        print(f"Existing borrowers updated: {result.get('updated', 0)}")


def print_import_result(result: Dict[str, Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(result, ensure_ascii=False))
        return
    errors = result.get("errors", [])
    if mode == "rich":
        content = (
            f"[bold]Processed:[/] {result.get('processed', 0)}\n"
            f"[green]Added:[/] {result.get('added', 0)}\n"
            f"[yellow]Already in catalog:[/] {result.get('skipped', 0)}\n"
            f"[red]Failed:[/] {len(errors)}"
        )
        _console.print(Panel.fit(content, title="📥 CSV import", border_style="green" if not errors else "yellow"))
    else:
        print(f"Processed {result.get('processed', 0)} books: {result.get('added', 0)} added, "
              f"{result.get('skipped', 0)} already existed, {len(errors)} failed")
    for error in errors:
        print(f"  line {error['row']} ({error['title']}): {error['error']}")


def print_loans_result(books: List[Dict[str, Any]]) -> None:
    """Books with the borrowers currently holding them (staff desk view)."""
    mode = get_output_mode()

    if not books:
        print("No matching books.")
        return

    if mode == "json":
        print(json.dumps(books, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books and borrowers", show_lines=True, header_style="bold cyan")
        table.add_column("ISBN", style="magenta", no_wrap=True)
        table.add_column("Title")
        table.add_column("Available", justify="right")
        table.add_column("Borrowers")
        for book in books:
            holders = "\n".join(
                f"[red]{escape(r['borrower_name'])} ({r['borrower_handle']})[/]" if r["is_overdue"]
                else escape(f"{r['borrower_name']} ({r['borrower_handle']})")
                for r in book["borrow_records"]
            )
            table.add_row(book["isbn"], book["title"], f"{book['available_copies']}/{book['total_copies']}", holders)
        _console.print(table)
    else:
        for book in books:
            print(f"{book['isbn']} - {book['title']} ({book['available_copies']}/{book['total_copies']})")
            for record in book["borrow_records"]:
                flag = " OVERDUE" if record["is_overdue"] else ""
                print(f"    {record['borrower_name']} ({record['borrower_handle']}) due {record['due_at'][:10]}{flag}")
