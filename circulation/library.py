import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import circulation.database as database
from circulation.catalog import Catalog
from circulation.csv_io import CatalogImporter, ImportResult, export_items
from circulation.database import initialize_database
from circulation.errors import InvalidArgument
from circulation.identities import IdentityStore
from circulation.ledger import LendingLedger
from circulation.records import BorrowerIdentity, CatalogItem, LedgerEntry, Role
from circulation.services.directory_crawler import CrawlReport
from circulation.services.directory_source import DirectorySource, HttpDirectorySource
from circulation.services.directory_sync import DirectorySync
from circulation.services.http_client import DirectoryHTTPClient
from circulation.services.reconciler import IdentityReconciler, SyncResult

BOOK_STATUS_FILTERS = ("", "issued", "overdue")


class Library:
    """Wires the catalog, identity store, ledger and directory sync together.

    The API and CLI only talk to this class.
    """

    def __init__(
        self,
        db_file: Optional[str] = None,
        loan_period: Optional[timedelta] = None,
        directory_source: Optional[DirectorySource] = None,
    ) -> None:
        # Callers (and tests) point the module-level helpers in database.py at
        # another file by passing db_file
        if db_file:
            database.DATABASE_FILE = db_file
        initialize_database()

        self.catalog = Catalog()
        self.identities = IdentityStore()
        self.ledger = LendingLedger(loan_period=loan_period)
        self._directory_source = directory_source
        self._own_http_client: Optional[DirectoryHTTPClient] = None
        self.last_crawl_report: Optional[CrawlReport] = None

    # ------------------------- Catalog ------------------------- #
    def add_item(self, item: CatalogItem) -> CatalogItem:
        return self.catalog.add_item(item)

    def find_item(self, isbn: str) -> Optional[CatalogItem]:
        return self.catalog.find_item(isbn)

    def get_item(self, isbn: str) -> CatalogItem:
        return self.catalog.get_item(isbn)

    def list_items(self) -> List[CatalogItem]:
        return self.catalog.list_items()

    def search_items(self, query: str = "", available_only: bool = False) -> List[CatalogItem]:
        return self.catalog.search_items(query, available_only=available_only)

    def update_item(self, isbn: str, **fields: Any) -> CatalogItem:
        return self.catalog.update_item(isbn, **fields)

    def remove_item(self, isbn: str) -> int:
        return self.catalog.remove_item(isbn)

    def new_arrivals(self, limit: int = 6) -> List[CatalogItem]:
        return self.catalog.new_arrivals(limit)

    def list_tags(self) -> List[str]:
        return self.catalog.list_tags()

    def export_csv(self, detailed: bool = False, now: Optional[datetime] = None) -> str:
        """The catalog as CSV; ``detailed`` adds current and overdue borrowers per item."""
        loans = self.ledger.active_loans(now) if detailed else None
        return export_items(self.catalog.list_items(), loans)

    def import_csv(self, text: str) -> ImportResult:
        return CatalogImporter(self.catalog).run(text)

    # ------------------------- Ledger ------------------------- #
    def issue(self, borrower_handle: str, isbn: str, now: Optional[datetime] = None) -> LedgerEntry:
        return self.ledger.issue(borrower_handle, isbn, now=now)

    def return_copy(self, entry_id: str, now: Optional[datetime] = None) -> LedgerEntry:
        return self.ledger.return_copy(entry_id, now=now)

    def set_capacity(self, isbn: str, new_total: int) -> None:
        self.ledger.set_capacity(isbn, new_total)

    def is_overdue(self, entry: LedgerEntry, now: Optional[datetime] = None) -> bool:
        return self.ledger.is_overdue(entry, now)

    def list_overdue(self, now: Optional[datetime] = None) -> List[LedgerEntry]:
        return self.ledger.list_overdue(now)

    def item_history(self, isbn: str) -> List[LedgerEntry]:
        return self.ledger.history_for_item(isbn)

    def borrower_history(self, handle: str) -> List[LedgerEntry]:
        return self.ledger.history_for_borrower(handle)

    def current_borrowers(self, isbn: str) -> List[LedgerEntry]:
        return self.ledger.list_active(isbn)

    def books_with_borrowers(self, query: str = "", status: str = "",
                             now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Items with their open borrow records, for the staff desk.

        ``status`` narrows the list to items with a copy out ("issued") or with
        at least one overdue copy ("overdue").
        """
        status = (status or "").strip().lower()
        if status not in BOOK_STATUS_FILTERS:
            raise InvalidArgument(f"Unknown status filter '{status}'.")
        by_isbn: Dict[str, List[Dict[str, Any]]] = {}
        for loan in self.ledger.active_loans(now):
            by_isbn.setdefault(loan["isbn"], []).append(loan)

        books = []
        for item in self.catalog.search_items(query):
            records = by_isbn.get(item.isbn, [])
            if status == "issued" and item.issued_copies == 0:
                continue
            if status == "overdue" and not any(r["is_overdue"] for r in records):
                continue
            book = item.to_dict()
            book["borrow_records"] = records
            books.append(book)
        return books

    def popular_items(self, limit: int = 6) -> List[Dict[str, Any]]:
        return self.ledger.popular_items(limit)

    def get_statistics(self, now: Optional[datetime] = None) -> Dict[str, int]:
        stats = self.ledger.dashboard_stats(now)
        stats["borrowers"] = len(self.identities.list_by_role(Role.BORROWER))
        return stats

    # ------------------------- Identities ------------------------- #
    def find_identity(self, handle: str) -> Optional[BorrowerIdentity]:
        return self.identities.find(handle)

    def list_borrowers(self) -> List[BorrowerIdentity]:
        return self.identities.list_by_role(Role.BORROWER)

    def provision_staff(self, handle: str, first_name: str, last_name: str, email: str,
                        password: str) -> BorrowerIdentity:
        return self.identities.provision_staff(handle, first_name, last_name, email, password)

    # ------------------------- Directory sync ------------------------- #
    def directory_sync(self, source: Optional[DirectorySource] = None) -> DirectorySync:
        """Build a sync run over ``source`` (default: the configured directory site)."""
        source = source or self._directory_source
        if source is None:
            if self._own_http_client is None:
                self._own_http_client = DirectoryHTTPClient()
            source = HttpDirectorySource(self._own_http_client)
        return DirectorySync(source, reconciler=IdentityReconciler(self.identities))

    async def run_directory_sync(self, source: Optional[DirectorySource] = None) -> SyncResult:
        sync = self.directory_sync(source)
        try:
            return await sync.run()
        finally:
            self.last_crawl_report = sync.last_report

    async def aclose(self) -> None:
        if self._own_http_client is not None:
            await self._own_http_client.close()
            self._own_http_client = None

    def close(self) -> None:
        """Release the directory client built by ``directory_sync``.

        Store connections are opened per call, so that client is the only
        resource held. Inside a running event loop await ``aclose()`` instead.
        """
        if self._own_http_client is not None:
            asyncio.run(self.aclose())
