import logging
import os
import sqlite3
import tempfile
from contextlib import contextmanager
from typing import Iterator

from config import settings
from circulation.errors import StoreBusy

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE / LIBRARY_DATA_FILE (via config.settings)
# 2) per-process temp file
# Callers (Library, tests) may reassign DATABASE_FILE before initialize_database().
DATABASE_FILE = settings.data_file or os.path.join(tempfile.gettempdir(), f"circulation_{os.getpid()}.db")


def get_db_connection() -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections are in autocommit mode (``isolation_level=None``); anything that
    writes more than one row must go through :func:`transaction`.
    """
    conn = sqlite3.connect(
        DATABASE_FILE,
        timeout=settings.database_busy_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run a block inside a single ``BEGIN IMMEDIATE`` transaction.

    The write lock is taken up front, so read-check-write sequences inside the
    block are serialized against every other writer. Commits on success, rolls
    back on any exception. A lock that is still held after the busy timeout
    surfaces as :class:`StoreBusy`.
    """
    conn = get_db_connection()
    try:
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as exc:
            if "locked" in str(exc) or "busy" in str(exc):
                raise StoreBusy(f"Record store is busy: {exc}") from exc
            raise
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def create_tables() -> None:
    """Create the tables if they do not exist yet."""
    conn = get_db_connection()
    try:
        # WAL lets readers proceed while a ledger transaction holds the write lock
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS catalog_items (
                isbn TEXT PRIMARY KEY CHECK(length(isbn) <= 13),
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                tags TEXT,
                description TEXT,
                shelf TEXT,
                rack TEXT,
                total_copies INTEGER NOT NULL DEFAULT 0,
                issued_copies INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                CHECK (issued_copies >= 0 AND issued_copies <= total_copies)
            )
        """)

        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS identities (
                handle TEXT PRIMARY KEY,
                first_name TEXT NOT NULL DEFAULT '',
                last_name TEXT NOT NULL DEFAULT '',
                email TEXT NOT NULL DEFAULT '',
                role TEXT NOT NULL CHECK(role IN ('borrower', 'staff')),
                password_hash TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS ledger_entries (
                id TEXT PRIMARY KEY,
                borrower_handle TEXT NOT NULL,
                isbn TEXT NOT NULL,
                issued_at TEXT NOT NULL,
                due_at TEXT NOT NULL,
                returned_at TEXT,
                status TEXT NOT NULL CHECK(status IN ('issued', 'returned')),
                FOREIGN KEY (borrower_handle) REFERENCES identities(handle),
                FOREIGN KEY (isbn) REFERENCES catalog_items(isbn)
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_ledger_entries_isbn ON ledger_entries(isbn)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_ledger_entries_borrower ON ledger_entries(borrower_handle)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_ledger_entries_status_due ON ledger_entries(status, due_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_catalog_items_title ON catalog_items(title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_identities_role ON identities(role)")
    finally:
        conn.close()


def initialize_database() -> None:
    """Initialize the database, creating the tables when needed."""
    logger.debug("Initializing circulation database at %s", DATABASE_FILE)
    create_tables()
