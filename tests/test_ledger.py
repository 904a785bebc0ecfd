import threading
from datetime import datetime, timedelta, timezone

import pytest

from circulation import database
from circulation.errors import InvalidArgument, InvalidState, InvariantViolation, NotFound, Unavailable
from circulation.ledger import LendingLedger
from circulation.records import BorrowerIdentity, CatalogItem, LedgerEntry, LedgerStatus, Role

NOW = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


def _counts(lib, isbn):
    item = lib.get_item(isbn)
    return item.total_copies, item.issued_copies


def _add_borrowers(lib, count):
    handles = [f"mt{i:07d}" for i in range(count)]
    for handle in handles:
        lib.identities.create(BorrowerIdentity(handle, "B", handle, f"{handle}@iitd.ac.in"))
    return handles


def test_issue_creates_entry_and_increments_counter(lib, borrower, item):
    entry = lib.issue(borrower.handle, item.isbn, now=NOW)

    assert entry.status is LedgerStatus.ISSUED
    assert entry.issued_at == NOW
    assert entry.due_at == NOW + timedelta(days=7)
    assert entry.returned_at is None
    assert _counts(lib, item.isbn) == (2, 1)
    assert [e.id for e in lib.current_borrowers(item.isbn)] == [entry.id]


def test_issue_unknown_borrower(lib, item):
    with pytest.raises(NotFound, match="Borrower ghost not found."):
        lib.issue("ghost", item.isbn)
    assert _counts(lib, item.isbn) == (2, 0)


def test_issue_to_staff_identity_is_refused(lib, item):
    lib.provision_staff("librarian", "Lib", "Rarian", "lib@iitd.ac.in", "correct horse")
    with pytest.raises(NotFound):
        lib.issue("librarian", item.isbn)


def test_issue_unknown_item(lib, borrower):
    with pytest.raises(NotFound, match="Book with ISBN 123 not found."):
        lib.issue(borrower.handle, "123")


def test_issue_last_copy_then_unavailable(lib, borrower, item):
    lib.issue(borrower.handle, item.isbn)
    lib.issue(borrower.handle, item.isbn)

    with pytest.raises(Unavailable, match=f"No copies of {item.isbn} are available."):
        lib.issue(borrower.handle, item.isbn)

    assert _counts(lib, item.isbn) == (2, 2)
    assert len(lib.item_history(item.isbn)) == 2


def test_issue_item_with_zero_copies(lib, borrower):
    lib.add_item(CatalogItem(isbn="111", title="Reference Only", author="Someone", total_copies=0))
    with pytest.raises(Unavailable):
        lib.issue(borrower.handle, "111")


def test_return_releases_copy(lib, borrower, item):
    entry = lib.issue(borrower.handle, item.isbn, now=NOW)
    returned = lib.return_copy(entry.id, now=NOW + timedelta(days=3))

    assert returned.status is LedgerStatus.RETURNED
    assert returned.returned_at == NOW + timedelta(days=3)
    assert _counts(lib, item.isbn) == (2, 0)
    stored = lib.ledger.get_entry(entry.id)
    assert stored.status is LedgerStatus.RETURNED
    assert stored.returned_at == NOW + timedelta(days=3)


def test_return_twice_is_invalid_state(lib, borrower, item):
    entry = lib.issue(borrower.handle, item.isbn)
    lib.return_copy(entry.id)

    with pytest.raises(InvalidState, match="already returned"):
        lib.return_copy(entry.id)
    assert _counts(lib, item.isbn) == (2, 0)


def test_return_unknown_entry(lib):
    with pytest.raises(NotFound):
        lib.return_copy("does-not-exist")


def test_return_with_corrupted_counter_raises_invariant_violation(lib, borrower, item):
    entry = lib.issue(borrower.handle, item.isbn)
    # Corrupt the counter behind the ledger's back
    conn = database.get_db_connection()
    try:
        conn.execute("UPDATE catalog_items SET issued_copies = 0 WHERE isbn = ?", (item.isbn,))
    finally:
        conn.close()

    with pytest.raises(InvariantViolation):
        lib.return_copy(entry.id)
    # rolled back: the entry is still open
    assert lib.ledger.get_entry(entry.id).status is LedgerStatus.ISSUED
    assert lib.ledger.check_consistency() == [item.isbn]


def test_set_capacity(lib, borrower, item):
    lib.issue(borrower.handle, item.isbn)

    lib.set_capacity(item.isbn, 5)
    assert _counts(lib, item.isbn) == (5, 1)

    lib.set_capacity(item.isbn, 1)
    assert _counts(lib, item.isbn) == (1, 1)


def test_set_capacity_below_issued_is_refused(lib, borrower, item):
    lib.issue(borrower.handle, item.isbn)
    lib.issue(borrower.handle, item.isbn)

    with pytest.raises(InvalidArgument, match=r"currently issued quantity \(2\)"):
        lib.set_capacity(item.isbn, 1)
    assert _counts(lib, item.isbn) == (2, 2)


def test_set_capacity_negative_or_unknown(lib, item):
    with pytest.raises(InvalidArgument, match="cannot be negative"):
        lib.set_capacity(item.isbn, -1)
    with pytest.raises(NotFound):
        lib.set_capacity("404", 3)


def test_is_overdue():
    ledger = LendingLedger(loan_period=timedelta(days=7))
    entry = LedgerEntry(id="e1", borrower_handle="b", isbn="1", issued_at=NOW, due_at=NOW + timedelta(days=7))
    assert not ledger.is_overdue(entry, NOW + timedelta(days=7))
    assert ledger.is_overdue(entry, NOW + timedelta(days=7, seconds=1))

    entry.status = LedgerStatus.RETURNED
    entry.returned_at = NOW + timedelta(days=30)
    assert not ledger.is_overdue(entry, NOW + timedelta(days=60))


def test_naive_now_is_read_as_utc(lib, borrower, item):
    naive = NOW.replace(tzinfo=None)
    entry = LedgerEntry(id="e1", borrower_handle="b", isbn="1", issued_at=NOW, due_at=NOW + timedelta(days=7))
    assert not entry.is_overdue(naive + timedelta(days=7))
    assert entry.is_overdue(naive + timedelta(days=8))
    assert entry.to_dict(now=naive)["is_overdue"] is False

    issued = lib.issue(borrower.handle, item.isbn, now=naive)
    assert issued.issued_at == NOW
    assert issued.due_at.tzinfo is not None

    stored = lib.ledger.get_entry(issued.id)
    assert stored.issued_at == NOW
    assert stored.to_dict(now=naive + timedelta(days=8))["is_overdue"] is True
    assert [e.id for e in lib.list_overdue(now=naive + timedelta(days=8))] == [issued.id]

    returned = lib.return_copy(issued.id, now=naive + timedelta(days=1))
    assert returned.returned_at == NOW + timedelta(days=1)


def test_list_overdue_and_stats(lib, borrower, item):
    late = lib.issue(borrower.handle, item.isbn, now=NOW - timedelta(days=10))
    lib.issue(borrower.handle, item.isbn, now=NOW)

    overdue = lib.list_overdue(NOW)
    assert [e.id for e in overdue] == [late.id]

    stats = lib.get_statistics(NOW)
    assert stats == {"total_items": 1, "issued_items": 1, "overdue_entries": 1, "borrowers": 1}

    lib.return_copy(late.id, now=NOW)
    assert lib.list_overdue(NOW) == []


def test_history_newest_first(lib, borrower, item):
    first = lib.issue(borrower.handle, item.isbn, now=NOW)
    second = lib.issue(borrower.handle, item.isbn, now=NOW + timedelta(hours=1))

    assert [e.id for e in lib.item_history(item.isbn)] == [second.id, first.id]
    assert [e.id for e in lib.borrower_history(borrower.handle)] == [second.id, first.id]


def test_history_of_unknown_owner(lib):
    with pytest.raises(NotFound):
        lib.item_history("404")
    with pytest.raises(NotFound):
        lib.borrower_history("nobody")


def test_popular_items(lib, borrower, item):
    lib.add_item(CatalogItem(isbn="222", title="Dubliners", author="James Joyce", total_copies=1))
    entry = lib.issue(borrower.handle, item.isbn)
    lib.return_copy(entry.id)
    lib.issue(borrower.handle, item.isbn)
    lib.issue(borrower.handle, "222")

    popular = lib.popular_items(limit=5)
    assert [(p["isbn"], p["times_issued"]) for p in popular] == [(item.isbn, 2), ("222", 1)]


def test_concurrent_issues_never_oversubscribe(lib):
    copies = 3
    attempts = 12
    lib.add_item(CatalogItem(isbn="333", title="Contested", author="Many Readers", total_copies=copies))
    handles = _add_borrowers(lib, attempts)

    outcomes = []
    lock = threading.Lock()
    start = threading.Barrier(attempts)

    def attempt(handle):
        start.wait()
        try:
            lib.issue(handle, "333")
            result = "issued"
        except Unavailable:
            result = "unavailable"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(handle,)) for handle in handles]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("issued") == copies
    assert outcomes.count("unavailable") == attempts - copies
    assert _counts(lib, "333") == (copies, copies)
    assert len(lib.current_borrowers("333")) == copies
    assert lib.ledger.check_consistency() == []


def test_counter_matches_entries_after_mixed_operations(lib, borrower, item):
    entries = [lib.issue(borrower.handle, item.isbn) for _ in range(2)]
    lib.return_copy(entries[0].id)
    lib.issue(borrower.handle, item.isbn)
    lib.set_capacity(item.isbn, 4)

    total, issued = _counts(lib, item.isbn)
    assert issued == len(lib.current_borrowers(item.isbn)) == 2
    assert 0 <= issued <= total
    assert lib.ledger.check_consistency() == []


def test_identity_role_enum_roundtrip_in_borrower_list(lib, borrower):
    lib.provision_staff("admin", "Ad", "Min", "admin@iitd.ac.in", "long enough")
    assert [i.handle for i in lib.list_borrowers()] == [borrower.handle]
    assert lib.find_identity("admin").role is Role.STAFF
