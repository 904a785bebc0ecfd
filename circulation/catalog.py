import json
import logging
import re
import sqlite3
from typing import List, Optional

from circulation import database
from circulation.errors import InvalidArgument, InvalidState, NotFound
from circulation.records import CatalogItem, parse_tags, to_iso, utcnow

logger = logging.getLogger(__name__)

_ITEM_COLUMNS = """
    isbn, title, author, tags, description, shelf, rack,
    total_copies, issued_copies, created_at
"""


def normalize_isbn(raw: Optional[str]) -> str:
    """Strip separators and upper-case the check digit ('978-0-13...' -> '97801...')."""
    if raw is None:
        return ""
    return re.sub(r"[^0-9Xx]", "", raw).upper()


class Catalog:
    """Durable table of lendable items.

    ``issued_copies`` is owned by the lending ledger; nothing here writes it.
    """

    def add_item(self, item: CatalogItem) -> CatalogItem:
        """Insert a new item. Duplicate or malformed ISBNs raise InvalidArgument."""
        item.isbn = normalize_isbn(item.isbn)
        if not item.isbn or len(item.isbn) > 13:
            raise InvalidArgument("ISBN must be 1-13 digits.")
        if not item.title.strip() or not item.author.strip():
            raise InvalidArgument("Title and author are required.")
        if item.total_copies < 0:
            raise InvalidArgument("Total copies cannot be negative.")

        item.issued_copies = 0
        item.created_at = item.created_at or utcnow()
        conn = database.get_db_connection()
        try:
            conn.execute(
                """
                INSERT INTO catalog_items (
                    isbn, title, author, tags, description, shelf, rack,
                    total_copies, issued_copies, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    item.isbn, item.title.strip(), item.author.strip(),
                    json.dumps(item.tags) if item.tags else None,
                    item.description, item.shelf, item.rack,
                    item.total_copies, to_iso(item.created_at),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise InvalidArgument(f"A book with ISBN {item.isbn} already exists.") from e
        finally:
            conn.close()
        logger.info("Catalog item %s added with %d copies", item.isbn, item.total_copies)
        return item

    def find_item(self, isbn: str) -> Optional[CatalogItem]:
        conn = database.get_db_connection()
        try:
            row = conn.execute(
                f"SELECT {_ITEM_COLUMNS} FROM catalog_items WHERE isbn = ?",
                (normalize_isbn(isbn),),
            ).fetchone()
            return CatalogItem.from_row(row) if row else None
        finally:
            conn.close()

    def get_item(self, isbn: str) -> CatalogItem:
        item = self.find_item(isbn)
        if item is None:
            raise NotFound(f"Book with ISBN {isbn} not found.")
        return item

    def find_by_title_author(self, title: str, author: str) -> Optional[CatalogItem]:
        """Exact title and author match, ignoring case and surrounding blanks."""
        conn = database.get_db_connection()
        try:
            row = conn.execute(
                f"""
                SELECT {_ITEM_COLUMNS} FROM catalog_items
                WHERE title = ? COLLATE NOCASE AND author = ? COLLATE NOCASE
                LIMIT 1
                """,
                (title.strip(), author.strip()),
            ).fetchone()
            return CatalogItem.from_row(row) if row else None
        finally:
            conn.close()

    def list_items(self) -> List[CatalogItem]:
        """All items ordered by title (fresh on every call)."""
        conn = database.get_db_connection()
        try:
            rows = conn.execute(f"SELECT {_ITEM_COLUMNS} FROM catalog_items ORDER BY title").fetchall()
            return [CatalogItem.from_row(row) for row in rows]
        finally:
            conn.close()

    def search_items(self, query: str = "", available_only: bool = False) -> List[CatalogItem]:
        """Case-insensitive substring match on title, author, ISBN and description."""
        clauses = []
        params: list = []
        term = (query or "").strip()
        if term:
            like = f"%{term}%"
            clauses.append(
                "(title LIKE ? COLLATE NOCASE OR author LIKE ? COLLATE NOCASE"
                " OR isbn LIKE ? OR description LIKE ? COLLATE NOCASE)"
            )
            params.extend([like, like, like, like])
        if available_only:
            clauses.append("total_copies > issued_copies")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = database.get_db_connection()
        try:
            rows = conn.execute(
                f"SELECT {_ITEM_COLUMNS} FROM catalog_items {where} ORDER BY title",
                params,
            ).fetchall()
            return [CatalogItem.from_row(row) for row in rows]
        finally:
            conn.close()

    def new_arrivals(self, limit: int = 6) -> List[CatalogItem]:
        conn = database.get_db_connection()
        try:
            rows = conn.execute(
                f"SELECT {_ITEM_COLUMNS} FROM catalog_items ORDER BY created_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [CatalogItem.from_row(row) for row in rows]
        finally:
            conn.close()

    def list_tags(self) -> List[str]:
        """Distinct tags across the catalog, sorted case-insensitively.

        Tags differing only in case are one tag; the first spelling seen wins.
        """
        conn = database.get_db_connection()
        try:
            rows = conn.execute(
                "SELECT tags FROM catalog_items WHERE tags IS NOT NULL ORDER BY created_at"
            ).fetchall()
        finally:
            conn.close()
        tags = {}
        for row in rows:
            for tag in parse_tags(row["tags"]):
                tag = tag.strip()
                if tag:
                    tags.setdefault(tag.lower(), tag)
        return sorted(tags.values(), key=str.lower)

    def update_item(
        self,
        isbn: str,
        *,
        new_isbn: Optional[str] = None,
        title: Optional[str] = None,
        author: Optional[str] = None,
        description: Optional[str] = None,
        shelf: Optional[str] = None,
        rack: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> CatalogItem:
        """Edit descriptive fields. Copy counts are changed through the ledger only."""
        isbn = normalize_isbn(isbn)
        updates = {}
        if title:
            updates["title"] = title.strip()
        if author:
            updates["author"] = author.strip()
        if description is not None:
            updates["description"] = description
        if shelf is not None:
            updates["shelf"] = shelf
        if rack is not None:
            updates["rack"] = rack
        if tags is not None:
            updates["tags"] = json.dumps(tags)
        if new_isbn is not None and normalize_isbn(new_isbn) != isbn:
            candidate = normalize_isbn(new_isbn)
            if not candidate or len(candidate) > 13:
                raise InvalidArgument("ISBN must be 1-13 digits.")
            updates["isbn"] = candidate
        if not updates:
            raise InvalidArgument("Nothing to update.")

        assignments = ", ".join(f"{column} = ?" for column in updates)
        with database.transaction() as conn:
            row = conn.execute("SELECT isbn FROM catalog_items WHERE isbn = ?", (isbn,)).fetchone()
            if row is None:
                raise NotFound(f"Book with ISBN {isbn} not found.")
            if "isbn" in updates:
                # History rows reference the ISBN; re-keying an item with history is refused
                has_history = conn.execute(
                    "SELECT 1 FROM ledger_entries WHERE isbn = ? LIMIT 1", (isbn,)
                ).fetchone()
                if has_history:
                    raise InvalidState("Cannot change the ISBN of a book with borrow history.")
            try:
                conn.execute(
                    f"UPDATE catalog_items SET {assignments} WHERE isbn = ?",
                    (*updates.values(), isbn),
                )
            except sqlite3.IntegrityError as e:
                raise InvalidArgument(f"A book with ISBN {updates.get('isbn')} already exists.") from e
        return self.get_item(updates.get("isbn", isbn))

    def remove_item(self, isbn: str) -> int:
        """Delete an item and purge its ledger history.

        Refused with InvalidState while any copy is issued. Returns the number
        of purged ledger entries.
        """
        isbn = normalize_isbn(isbn)
        with database.transaction() as conn:
            row = conn.execute(
                "SELECT issued_copies FROM catalog_items WHERE isbn = ?", (isbn,)
            ).fetchone()
            if row is None:
                raise NotFound(f"Book with ISBN {isbn} not found.")
            if row["issued_copies"] > 0:
                raise InvalidState(
                    f"Cannot delete book {isbn}: {row['issued_copies']} copies are still issued."
                )
            purged = conn.execute("DELETE FROM ledger_entries WHERE isbn = ?", (isbn,)).rowcount
            conn.execute("DELETE FROM catalog_items WHERE isbn = ?", (isbn,))
        logger.info("Catalog item %s removed, %d ledger entries purged", isbn, purged)
        return purged
