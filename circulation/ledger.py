"""Lending ledger: checkout/return of catalog items against borrower identities.

Every state change pairs a counter update on ``catalog_items`` with a write to
``ledger_entries`` inside one ``BEGIN IMMEDIATE`` transaction, so the counter
and the entry table can never disagree:

* issue:  ``issued_copies += 1`` (only while ``issued_copies < total_copies``)
  + insert an ``issued`` entry
* return: ``issued_copies -= 1`` (only while ``issued_copies > 0``)
  + mark the entry ``returned``

The availability check is the ``WHERE`` clause of the increment itself, so two
concurrent issues against the last copy cannot both succeed.
"""

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from config import settings
from circulation import database
from circulation.catalog import normalize_isbn
from circulation.errors import (
    InvalidArgument,
    InvalidState,
    InvariantViolation,
    NotFound,
    Unavailable,
)
from circulation.records import LedgerEntry, LedgerStatus, Role, as_utc, is_overdue, to_iso, utcnow

logger = logging.getLogger(__name__)


class LendingLedger:
    def __init__(self, loan_period: Optional[timedelta] = None) -> None:
        self.loan_period = loan_period or timedelta(days=settings.loan_period_days)

    # ------------------------- State changes ------------------------- #
    def issue(self, borrower_handle: str, isbn: str, now: Optional[datetime] = None) -> LedgerEntry:
        """Check out one copy of ``isbn`` to ``borrower_handle``.

        Raises NotFound if the borrower (or a borrower-role identity) or the item
        does not exist, Unavailable if every copy is already issued. Nothing is
        written when either is raised.
        """
        now = as_utc(now) if now else utcnow()
        isbn = normalize_isbn(isbn)
        entry = LedgerEntry(
            id=uuid.uuid4().hex,
            borrower_handle=borrower_handle,
            isbn=isbn,
            issued_at=now,
            due_at=now + self.loan_period,
        )

        with database.transaction() as conn:
            borrower = conn.execute(
                "SELECT role FROM identities WHERE handle = ?", (borrower_handle,)
            ).fetchone()
            if borrower is None or borrower["role"] != Role.BORROWER.value:
                raise NotFound(f"Borrower {borrower_handle} not found.")

            cursor = conn.execute(
                """
                UPDATE catalog_items SET issued_copies = issued_copies + 1
                WHERE isbn = ? AND issued_copies < total_copies
                """,
                (isbn,),
            )
            if cursor.rowcount == 0:
                exists = conn.execute("SELECT 1 FROM catalog_items WHERE isbn = ?", (isbn,)).fetchone()
                if exists is None:
                    raise NotFound(f"Book with ISBN {isbn} not found.")
                raise Unavailable(f"No copies of {isbn} are available.")

            conn.execute(
                """
                INSERT INTO ledger_entries (id, borrower_handle, isbn, issued_at, due_at, returned_at, status)
                VALUES (?, ?, ?, ?, ?, NULL, ?)
                """,
                (entry.id, entry.borrower_handle, entry.isbn,
                 to_iso(entry.issued_at), to_iso(entry.due_at), LedgerStatus.ISSUED.value),
            )

        logger.info("Issued %s to %s (entry %s, due %s)", isbn, borrower_handle, entry.id, to_iso(entry.due_at))
        return entry

    def return_copy(self, entry_id: str, now: Optional[datetime] = None) -> LedgerEntry:
        """Close an issued entry and give the copy back to the item.

        Raises NotFound for an unknown entry and InvalidState for one that is
        already returned. A counter that would drop below zero is an
        InvariantViolation: the transaction is rolled back and the error raised.
        """
        now = as_utc(now) if now else utcnow()
        with database.transaction() as conn:
            row = conn.execute("SELECT * FROM ledger_entries WHERE id = ?", (entry_id,)).fetchone()
            if row is None:
                raise NotFound(f"Borrow record {entry_id} not found.")
            entry = LedgerEntry.from_row(row)
            if entry.status is not LedgerStatus.ISSUED:
                raise InvalidState(f"Borrow record {entry_id} is already returned.")

            cursor = conn.execute(
                "UPDATE catalog_items SET issued_copies = issued_copies - 1 WHERE isbn = ? AND issued_copies > 0",
                (entry.isbn,),
            )
            if cursor.rowcount == 0:
                logger.critical(
                    "Ledger invariant violated: entry %s is issued but item %s has no issued copies to release",
                    entry_id, entry.isbn,
                )
                raise InvariantViolation(
                    f"Item {entry.isbn} has no issued copies to release for entry {entry_id}."
                )

            conn.execute(
                "UPDATE ledger_entries SET status = ?, returned_at = ? WHERE id = ? AND status = ?",
                (LedgerStatus.RETURNED.value, to_iso(now), entry_id, LedgerStatus.ISSUED.value),
            )

        entry.status = LedgerStatus.RETURNED
        entry.returned_at = now
        logger.info("Returned entry %s (%s from %s)", entry_id, entry.isbn, entry.borrower_handle)
        return entry

    def set_capacity(self, isbn: str, new_total: int) -> None:
        """Change an item's total copies; never below the copies in circulation."""
        if new_total < 0:
            raise InvalidArgument("Total quantity cannot be negative.")
        isbn = normalize_isbn(isbn)
        with database.transaction() as conn:
            cursor = conn.execute(
                "UPDATE catalog_items SET total_copies = ? WHERE isbn = ? AND issued_copies <= ?",
                (new_total, isbn, new_total),
            )
            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT issued_copies FROM catalog_items WHERE isbn = ?", (isbn,)
                ).fetchone()
                if row is None:
                    raise NotFound(f"Book with ISBN {isbn} not found.")
                raise InvalidArgument(
                    f"Total quantity cannot be less than currently issued quantity ({row['issued_copies']})."
                )
        logger.info("Capacity of %s set to %d", isbn, new_total)

    # ------------------------- Read paths ------------------------- #
    @staticmethod
    def is_overdue(entry: LedgerEntry, now: Optional[datetime] = None) -> bool:
        return is_overdue(entry, now or utcnow())

    def get_entry(self, entry_id: str) -> LedgerEntry:
        conn = database.get_db_connection()
        try:
            row = conn.execute("SELECT * FROM ledger_entries WHERE id = ?", (entry_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFound(f"Borrow record {entry_id} not found.")
        return LedgerEntry.from_row(row)

    def history_for_item(self, isbn: str) -> List[LedgerEntry]:
        isbn = normalize_isbn(isbn)
        conn = database.get_db_connection()
        try:
            if conn.execute("SELECT 1 FROM catalog_items WHERE isbn = ?", (isbn,)).fetchone() is None:
                raise NotFound(f"Book with ISBN {isbn} not found.")
            return self._select(conn, "WHERE isbn = ? ORDER BY issued_at DESC", (isbn,))
        finally:
            conn.close()

    def history_for_borrower(self, handle: str) -> List[LedgerEntry]:
        conn = database.get_db_connection()
        try:
            if conn.execute("SELECT 1 FROM identities WHERE handle = ?", (handle,)).fetchone() is None:
                raise NotFound(f"User {handle} not found.")
            return self._select(conn, "WHERE borrower_handle = ? ORDER BY issued_at DESC", (handle,))
        finally:
            conn.close()

    def list_active(self, isbn: Optional[str] = None) -> List[LedgerEntry]:
        conn = database.get_db_connection()
        try:
            if isbn:
                return self._select(
                    conn, "WHERE status = ? AND isbn = ? ORDER BY due_at",
                    (LedgerStatus.ISSUED.value, normalize_isbn(isbn)),
                )
            return self._select(conn, "WHERE status = ? ORDER BY due_at", (LedgerStatus.ISSUED.value,))
        finally:
            conn.close()

    def list_overdue(self, now: Optional[datetime] = None) -> List[LedgerEntry]:
        now = as_utc(now) if now else utcnow()
        return [entry for entry in self.list_active() if is_overdue(entry, now)]

    def dashboard_stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = as_utc(now) if now else utcnow()
        conn = database.get_db_connection()
        try:
            total_items = conn.execute("SELECT COUNT(*) FROM catalog_items").fetchone()[0]
            issued_items = conn.execute(
                "SELECT COUNT(*) FROM catalog_items WHERE issued_copies > 0"
            ).fetchone()[0]
        finally:
            conn.close()
        return {
            "total_items": total_items,
            "issued_items": issued_items,
            "overdue_entries": len(self.list_overdue(now)),
        }

    def popular_items(self, limit: int = 6) -> List[Dict[str, Any]]:
        """Items ranked by how many times they have been issued."""
        conn = database.get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT c.isbn, c.title, c.author, COUNT(l.id) AS times_issued
                FROM ledger_entries l JOIN catalog_items c ON c.isbn = l.isbn
                GROUP BY c.isbn
                ORDER BY times_issued DESC, c.title
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def active_loans(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Issued entries with the borrower's name and the item's title, earliest due first."""
        now = as_utc(now) if now else utcnow()
        conn = database.get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT l.*, i.first_name, i.last_name, c.title
                FROM ledger_entries l
                JOIN identities i ON i.handle = l.borrower_handle
                JOIN catalog_items c ON c.isbn = l.isbn
                WHERE l.status = ?
                ORDER BY l.due_at
                """,
                (LedgerStatus.ISSUED.value,),
            ).fetchall()
        finally:
            conn.close()
        loans = []
        for row in rows:
            loan = LedgerEntry.from_row(row).to_dict(now)
            loan["borrower_name"] = f"{row['first_name']} {row['last_name']}".strip()
            loan["title"] = row["title"]
            loans.append(loan)
        return loans

    def check_consistency(self) -> List[str]:
        """Return the ISBNs whose counter disagrees with their issued entries."""
        conn = database.get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT c.isbn
                FROM catalog_items c
                LEFT JOIN ledger_entries l ON l.isbn = c.isbn AND l.status = 'issued'
                GROUP BY c.isbn
                HAVING c.issued_copies != COUNT(l.id)
                """
            ).fetchall()
        finally:
            conn.close()
        mismatched = [row["isbn"] for row in rows]
        for isbn in mismatched:
            logger.critical("Ledger invariant violated: issued counter of %s does not match its entries", isbn)
        return mismatched

    @staticmethod
    def _select(conn: sqlite3.Connection, clause: str, params: tuple) -> List[LedgerEntry]:
        rows = conn.execute(f"SELECT * FROM ledger_entries {clause}", params).fetchall()
        return [LedgerEntry.from_row(row) for row in rows]
