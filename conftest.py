import pytest

import circulation.database as database
from circulation.library import Library
from circulation.records import BorrowerIdentity, CatalogItem, Role
from circulation.ui_helpers import OUTPUT_MODE_ENV


@pytest.fixture
def lib(tmp_path, request, monkeypatch):
    # A fresh database file per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    monkeypatch.setattr(database, "DATABASE_FILE", db_file)
    lib = Library()
    yield lib
    lib.close()


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    # --output json/rich is stored in the environment; keep it from leaking between tests
    monkeypatch.delenv(OUTPUT_MODE_ENV, raising=False)


@pytest.fixture
def borrower(lib):
    return lib.identities.create(BorrowerIdentity(
        handle="cs1200001",
        first_name="Asha",
        last_name="Verma",
        email="cs1200001@iitd.ac.in",
        role=Role.BORROWER,
    ))


@pytest.fixture
def item(lib):
    return lib.add_item(CatalogItem(
        isbn="9780199535675",
        title="Ulysses",
        author="James Joyce",
        total_copies=2,
    ))
