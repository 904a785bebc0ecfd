import asyncio
import logging
import os
import subprocess
import sys
from typing import NoReturn, Optional

import typer

import circulation.database as database
from config import settings
from circulation.errors import CirculationError
from circulation.library import Library
from circulation.records import CatalogItem
from circulation.ui_helpers import (
    print_entries_result,
    print_import_result,
    print_items_result,
    print_loans_result,
    print_stats_result,
    print_sync_result,
    set_output_mode,
)

APP_NAME = "Library Circulation CLI"


class LibraryManager:
    """Single Library per database file.

    Rebuilt when ``database.DATABASE_FILE`` changes (e.g. a per-test database).
    """
    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = database.DATABASE_FILE
        if cls._instance is None or current_db != cls._db_file_snapshot:
            cls._instance = Library()
            cls._db_file_snapshot = current_db
        return cls._instance


def _fail(error: CirculationError) -> NoReturn:
    print(f"Error: {error}")
    raise typer.Exit(code=1)


# --- Typer CLI ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
):
    """Global CLI options (output mode, logging)."""
    logging.basicConfig(level=logging.DEBUG if verbose else settings.log_level)
    if output:
        set_output_mode(output)


@app.command("list")
def cli_list(
    query: Optional[str] = typer.Argument(None, help="Filter by title, author, ISBN or description"),
    available: bool = typer.Option(False, "--available", help="Only items with a free copy"),
):
    """List catalog items."""
    lib = LibraryManager.get_instance()
    if query or available:
        items = lib.search_items(query or "", available_only=available)
    else:
        items = lib.list_items()
    print_items_result(items)


@app.command("add")
def cli_add(
    isbn: str,
    title: str = typer.Option(..., "--title", "-t"),
    author: str = typer.Option(..., "--author", "-a"),
    copies: int = typer.Option(1, "--copies", "-c", min=0),
    shelf: Optional[str] = typer.Option(None, "--shelf"),
    rack: Optional[str] = typer.Option(None, "--rack"),
):
    """Add a book to the catalog."""
    lib = LibraryManager.get_instance()
    try:
        item = lib.add_item(CatalogItem(
            isbn=isbn, title=title, author=author, total_copies=copies, shelf=shelf, rack=rack,
        ))
    except CirculationError as e:
        _fail(e)
    print(f"Successfully added: {item.title} by {item.author} ({item.total_copies} copies)")


@app.command("remove")
def cli_remove(isbn: str):
    """Remove a book and its borrow history (refused while copies are issued)."""
    lib = LibraryManager.get_instance()
    try:
        purged = lib.remove_item(isbn)
    except CirculationError as e:
        _fail(e)
    print(f"Book with ISBN {isbn} has been removed ({purged} borrow records purged).")


@app.command("capacity")
def cli_capacity(isbn: str, total: int):
    """Set the total number of copies of a book."""
    lib = LibraryManager.get_instance()
    try:
        lib.set_capacity(isbn, total)
        item = lib.get_item(isbn)
    except CirculationError as e:
        _fail(e)
    print(f"{item.isbn}: {item.total_copies} copies ({item.available_copies} available)")


@app.command("issue")
def cli_issue(borrower: str, isbn: str):
    """Issue one copy of a book to a borrower."""
    lib = LibraryManager.get_instance()
    try:
        entry = lib.issue(borrower, isbn)
    except CirculationError as e:
        _fail(e)
    print(f"Issued {entry.isbn} to {entry.borrower_handle}. Borrow record {entry.id}, due {entry.due_at.date().isoformat()}.")


@app.command("return")
def cli_return(entry_id: str):
    """Return the copy held under a borrow record."""
    lib = LibraryManager.get_instance()
    try:
        entry = lib.return_copy(entry_id)
    except CirculationError as e:
        _fail(e)
    print(f"Returned {entry.isbn} from {entry.borrower_handle}.")


@app.command("overdue")
def cli_overdue():
    """List issued copies that are past their due date."""
    print_entries_result(LibraryManager.get_instance().list_overdue(), empty_message="No overdue books.")


@app.command("history")
def cli_history(
    isbn: Optional[str] = typer.Option(None, "--isbn", help="History of one book"),
    borrower: Optional[str] = typer.Option(None, "--borrower", help="History of one borrower"),
):
    """Show borrow history for a book or a borrower, newest first."""
    if bool(isbn) == bool(borrower):
        print("Give exactly one of --isbn or --borrower.")
        raise typer.Exit(code=2)
    lib = LibraryManager.get_instance()
    try:
        entries = lib.item_history(isbn) if isbn else lib.borrower_history(borrower)
    except CirculationError as e:
        _fail(e)
    print_entries_result(entries)


@app.command("loans")
def cli_loans(
    query: Optional[str] = typer.Argument(None, help="Filter by title, author, ISBN or description"),
    status: Optional[str] = typer.Option(None, "--status", help="issued | overdue"),
):
    """List books with the borrowers currently holding them."""
    lib = LibraryManager.get_instance()
    try:
        books = lib.books_with_borrowers(query or "", status or "")
    except CirculationError as e:
        _fail(e)
    print_loans_result(books)


@app.command("import")
def cli_import(file_path: str):
    """Add books from a CSV file; books already in the catalog are skipped."""
    if not os.path.exists(file_path):
        print(f"File not found: {file_path}")
        raise typer.Exit(code=1)
    with open(file_path, "r", encoding="utf-8-sig", newline="") as f:
        content = f.read()
    result = LibraryManager.get_instance().import_csv(content)
    print_import_result(result.to_dict())


@app.command("export")
def cli_export(
    file_path: str = typer.Option("catalog_export.csv", "--file", "-f", help="Where to write the CSV"),
    detailed: bool = typer.Option(False, "--detailed", help="Add current and overdue borrowers"),
):
    """Export the catalog to a CSV file."""
    lib = LibraryManager.get_instance()
    content = lib.export_csv(detailed=detailed)
    with open(file_path, "w", encoding="utf-8", newline="") as f:
        f.write(content)
    print(f"{len(lib.list_items())} books exported to {file_path}")


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics())


@app.command("sync")
def cli_sync():
    """Crawl the borrower directory once and reconcile identities."""
    lib = LibraryManager.get_instance()

    async def _run():
        try:
            return await lib.run_directory_sync()
        finally:
            await lib.aclose()

    try:
        result = asyncio.run(_run())
    except CirculationError as e:
        _fail(e)
    print_sync_result(result.to_dict())
    if result.failed:
        print(f"Borrowers that could not be stored: {result.failed}")


@app.command("serve")
def cli_serve(reload: bool = typer.Option(False, "--reload", help="Restart on code changes")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    subprocess.run(args)


if __name__ == "__main__":
    app()
