"""Circulation - Services Package

Service modules that talk to the outside world:
- HTTP client for the external borrower directory
- Directory source (page fetching and HTML parsing)
- Directory crawler, identity reconciler and the sync scheduler
"""
