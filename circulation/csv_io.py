"""Catalog CSV export and bulk import.

The export writes one row per item, optionally with the names of everyone
currently holding a copy. The import accepts the export's own header row as
well as the spreadsheet template librarians fill in ("Title", "Author(s)",
"Total Quantity", "Shelf Number", ...).
"""

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from circulation.catalog import Catalog
from circulation.errors import CirculationError
from circulation.records import CatalogItem

logger = logging.getLogger(__name__)

EXPORT_FIELDS = [
    "isbn", "title", "author", "total_copies", "issued_copies", "available_copies",
    "tags", "description", "shelf", "rack",
]
DETAILED_FIELDS = EXPORT_FIELDS[:6] + ["current_borrowers", "overdue_borrowers"] + EXPORT_FIELDS[6:]

_HEADER_ALIASES = {
    "isbn": "isbn",
    "title": "title",
    "author": "author",
    "authors": "author",
    "author(s)": "author",
    "tags": "tags",
    "topics": "tags",
    "total_copies": "total_copies",
    "total quantity": "total_copies",
    "copies": "total_copies",
    "description": "description",
    "shelf": "shelf",
    "shelf number": "shelf",
    "rack": "rack",
    "rack number": "rack",
}

_TAG_SEPARATORS = re.compile(r"[,;/]")


def split_tags(value: Optional[str]) -> List[str]:
    """'Linear Algebra; Calculus/ODE' -> ['Linear Algebra', 'Calculus', 'ODE']"""
    if not value:
        return []
    return [tag.strip() for tag in _TAG_SEPARATORS.split(value) if tag.strip()]


def _field_name(header: str) -> Optional[str]:
    name = header.strip().lower()
    if name in _HEADER_ALIASES:
        return _HEADER_ALIASES[name]
    # Template headers carry hints in parentheses: "ISBN (don't fill this)"
    return _HEADER_ALIASES.get(re.sub(r"\s*\(.*\)\s*$", "", name))


def _borrower_list(loans: Iterable[Dict[str, Any]]) -> str:
    names = [f"{loan['borrower_name']} ({loan['borrower_handle']})".lstrip() for loan in loans]
    return "; ".join(names) if names else "None"


def export_items(items: Iterable[CatalogItem], loans: Optional[List[Dict[str, Any]]] = None) -> str:
    """Render ``items`` as CSV text.

    With ``loans`` (the ledger's active loans) two extra columns list the
    current and the overdue borrowers of each item.
    """
    by_isbn: Dict[str, List[Dict[str, Any]]] = {}
    for loan in loans or []:
        by_isbn.setdefault(loan["isbn"], []).append(loan)

    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=DETAILED_FIELDS if loans is not None else EXPORT_FIELDS)
    writer.writeheader()
    for item in items:
        row = {
            "isbn": item.isbn,
            "title": item.title,
            "author": item.author,
            "total_copies": item.total_copies,
            "issued_copies": item.issued_copies,
            "available_copies": item.available_copies,
            "tags": ", ".join(item.tags),
            "description": item.description or "",
            "shelf": item.shelf or "",
            "rack": item.rack or "",
        }
        if loans is not None:
            held = by_isbn.get(item.isbn, [])
            row["current_borrowers"] = _borrower_list(held)
            row["overdue_borrowers"] = _borrower_list(loan for loan in held if loan["is_overdue"])
        writer.writerow(row)
    return output.getvalue()


@dataclass
class ImportResult:
    processed: int = 0
    added: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "added": self.added,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class CatalogImporter:
    """Adds the rows of a CSV file to the catalog.

    Rows without a title are ignored. A row whose title and author match an
    existing item (ignoring case) is skipped; a row that cannot be added is
    reported in ``errors`` with its line number and the import carries on.
    """

    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    def run(self, text: str) -> ImportResult:
        result = ImportResult()
        reader = csv.DictReader(io.StringIO(text))
        columns = {header: _field_name(header) for header in reader.fieldnames or [] if header}

        for raw in reader:
            row = {name: (raw.get(header) or "").strip() for header, name in columns.items() if name}
            title = row.get("title", "")
            if not title:
                continue
            result.processed += 1
            author = row.get("author", "")

            if self.catalog.find_by_title_author(title, author) is not None:
                result.skipped += 1
                continue

            try:
                self.catalog.add_item(self._to_item(row))
            except (CirculationError, ValueError) as e:
                logger.warning("CSV line %d (%s) not imported: %s", reader.line_num, title, e)
                result.errors.append({"row": reader.line_num, "title": title, "error": str(e)})
                continue
            result.added += 1

        logger.info(
            "CSV import finished: %d processed, %d added, %d skipped, %d errors",
            result.processed, result.added, result.skipped, len(result.errors),
        )
        return result

    @staticmethod
    def _to_item(row: Dict[str, str]) -> CatalogItem:
        copies = row.get("total_copies") or "0"
        try:
            total = int(copies)
        except ValueError:
            raise ValueError(f"Total quantity '{copies}' is not a whole number.") from None
        return CatalogItem(
            isbn=row.get("isbn", ""),
            title=row["title"],
            author=row.get("author", ""),
            tags=split_tags(row.get("tags")),
            description=row.get("description") or None,
            shelf=row.get("shelf") or None,
            rack=row.get("rack") or None,
            total_copies=total,
        )
