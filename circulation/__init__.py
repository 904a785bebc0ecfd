"""Circulation - Core Package

This package contains the library circulation core:
- Lending ledger (ledger.py)
- Catalog and identity stores (catalog.py, identities.py)
- Records and exceptions (records.py, errors.py)
- Database layer (database.py)
- Library facade used by the API and CLI (library.py)
- CLI output helpers (ui_helpers.py)
"""
