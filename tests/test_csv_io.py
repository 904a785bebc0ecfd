import csv
import io
from datetime import datetime, timedelta, timezone

import pytest

from circulation.csv_io import split_tags
from circulation.errors import InvalidArgument
from circulation.records import BorrowerIdentity, CatalogItem

NOW = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)

TEMPLATE = (
    "ISBN (don't fill this),Title,Author(s),"
    "\"Topics (eg Linear Algebra, Calculus etc. Multiple topics allowed)\","
    "Total Quantity,Shelf Number,Rack Number\n"
    "9780486612720,Calculus,Michael Spivak,\"Calculus; Analysis/Real Numbers\",3,S2,R4\n"
    "9780199535675,ULYSSES,james joyce,Fiction,1,,\n"
    ",Linear Algebra Done Right,Sheldon Axler,Linear Algebra,2,,\n"
    ",,,,,,\n"
    "9780387974958,Topology,James Munkres,,two,,\n"
    "9780486612720,Calculus,Michael Spivak,,1,,\n"
)


def _dubliners(lib):
    return lib.add_item(CatalogItem(
        isbn="9780141182803", title="Dubliners", author="James Joyce", total_copies=1, tags=["Fiction"],
    ))


def _second_borrower(lib):
    return lib.identities.create(BorrowerIdentity("cs1200002", "Ravi", "Kumar", "cs1200002@iitd.ac.in"))


def _rows(text):
    return list(csv.DictReader(io.StringIO(text)))


def test_split_tags():
    assert split_tags(" Linear Algebra ; Calculus/ODE,, ") == ["Linear Algebra", "Calculus", "ODE"]
    assert split_tags("") == []
    assert split_tags(None) == []


def test_export_csv(lib, item):
    lib.update_item(item.isbn, tags=["Fiction", "Modernism"], shelf="S1")

    assert _rows(lib.export_csv()) == [{
        "isbn": item.isbn,
        "title": "Ulysses",
        "author": "James Joyce",
        "total_copies": "2",
        "issued_copies": "0",
        "available_copies": "2",
        "tags": "Fiction, Modernism",
        "description": "",
        "shelf": "S1",
        "rack": "",
    }]


def test_detailed_export_lists_current_and_overdue_borrowers(lib, borrower, item):
    _second_borrower(lib)
    lib.issue(borrower.handle, item.isbn, now=NOW)
    lib.issue("cs1200002", item.isbn, now=NOW - timedelta(days=10))
    dubliners = _dubliners(lib)

    rows = {row["isbn"]: row for row in _rows(lib.export_csv(detailed=True, now=NOW))}

    ulysses = rows[item.isbn]
    assert ulysses["available_copies"] == "0"
    # Earliest due date first
    assert ulysses["current_borrowers"] == "Ravi Kumar (cs1200002); Asha Verma (cs1200001)"
    assert ulysses["overdue_borrowers"] == "Ravi Kumar (cs1200002)"
    assert rows[dubliners.isbn]["current_borrowers"] == "None"
    assert rows[dubliners.isbn]["overdue_borrowers"] == "None"


def test_returned_copies_leave_the_detailed_export(lib, borrower, item):
    entry = lib.issue(borrower.handle, item.isbn, now=NOW)
    lib.return_copy(entry.id, now=NOW + timedelta(days=1))

    (row,) = _rows(lib.export_csv(detailed=True, now=NOW + timedelta(days=30)))
    assert row["current_borrowers"] == "None"
    assert row["overdue_borrowers"] == "None"


def test_import_template_file(lib, item):
    result = lib.import_csv(TEMPLATE)

    assert (result.processed, result.added, result.skipped) == (5, 1, 2)
    assert result.errors == [
        {"row": 4, "title": "Linear Algebra Done Right", "error": "ISBN must be 1-13 digits."},
        {"row": 6, "title": "Topology", "error": "Total quantity 'two' is not a whole number."},
    ]

    calculus = lib.get_item("9780486612720")
    assert calculus.author == "Michael Spivak"
    assert calculus.tags == ["Calculus", "Analysis", "Real Numbers"]
    assert (calculus.total_copies, calculus.issued_copies) == (3, 0)
    assert (calculus.shelf, calculus.rack) == ("S2", "R4")
    assert lib.find_item("9780387974958") is None
    assert len(lib.list_items()) == 2


def test_import_accepts_its_own_export(lib, item):
    exported = lib.export_csv()

    result = lib.import_csv(exported)

    assert result.to_dict() == {"processed": 1, "added": 0, "skipped": 1, "errors": []}


def test_import_reports_duplicate_isbn_under_another_title(lib, item):
    result = lib.import_csv(f"isbn,title,author,total_copies\n{item.isbn},Finnegans Wake,James Joyce,1\n")

    assert result.added == 0
    assert result.errors == [
        {"row": 2, "title": "Finnegans Wake", "error": f"A book with ISBN {item.isbn} already exists."},
    ]


def test_list_tags(lib, item):
    lib.update_item(item.isbn, tags=["Modernism", "fiction"])
    _dubliners(lib)
    lib.add_item(CatalogItem(isbn="1", title="Untagged", author="Anon"))

    assert lib.list_tags() == ["fiction", "Modernism"]


def test_books_with_borrowers(lib, borrower, item):
    dubliners = _dubliners(lib)
    entry = lib.issue(borrower.handle, item.isbn, now=NOW)

    books = lib.books_with_borrowers(now=NOW)

    # Ordered by title
    assert [b["isbn"] for b in books] == [dubliners.isbn, item.isbn]
    assert books[0]["borrow_records"] == []
    (record,) = books[1]["borrow_records"]
    assert record["id"] == entry.id
    assert record["borrower_handle"] == borrower.handle
    assert record["borrower_name"] == "Asha Verma"
    assert record["title"] == "Ulysses"
    assert record["status"] == "issued"
    assert record["is_overdue"] is False
    assert books[1]["available_copies"] == 1


def test_books_with_borrowers_status_filters(lib, borrower, item):
    dubliners = _dubliners(lib)
    lib.add_item(CatalogItem(isbn="1", title="Idle", author="Anon", total_copies=1))
    _second_borrower(lib)
    lib.issue(borrower.handle, item.isbn, now=NOW)
    lib.issue("cs1200002", dubliners.isbn, now=NOW - timedelta(days=10))

    def isbns(**kwargs):
        return [b["isbn"] for b in lib.books_with_borrowers(now=NOW, **kwargs)]

    assert isbns() == [dubliners.isbn, "1", item.isbn]
    assert isbns(status="issued") == [dubliners.isbn, item.isbn]
    assert isbns(status="overdue") == [dubliners.isbn]
    assert isbns(query="ulys", status="ISSUED") == [item.isbn]
    assert isbns(query="ulys", status="overdue") == []

    with pytest.raises(InvalidArgument):
        lib.books_with_borrowers(status="lost")
