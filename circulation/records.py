from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    # Rows written by hand (seed scripts, sqlite shell) may lack an offset
    return as_utc(datetime.fromisoformat(value))


def parse_tags(value: Optional[str]) -> List[str]:
    # tags are stored as a JSON array in a TEXT column
    if not value:
        return []
    try:
        tags = json.loads(value)
    except json.JSONDecodeError:
        return [value]
    return tags if isinstance(tags, list) else [str(tags)]


class Role(str, Enum):
    BORROWER = "borrower"
    STAFF = "staff"


class LedgerStatus(str, Enum):
    ISSUED = "issued"
    RETURNED = "returned"


@dataclass
class CatalogItem:
    """A lendable title with a fixed number of physical copies."""
    isbn: str
    title: str
    author: str
    tags: List[str] = field(default_factory=list)
    description: Optional[str] = None
    shelf: Optional[str] = None
    rack: Optional[str] = None
    total_copies: int = 0
    issued_copies: int = 0
    created_at: Optional[datetime] = None

    @property
    def available_copies(self) -> int:
        return self.total_copies - self.issued_copies

    def __str__(self) -> str:
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isbn": self.isbn,
            "title": self.title,
            "author": self.author,
            "tags": self.tags,
            "description": self.description,
            "shelf": self.shelf,
            "rack": self.rack,
            "total_copies": self.total_copies,
            "issued_copies": self.issued_copies,
            "available_copies": self.available_copies,
            "created_at": to_iso(self.created_at),
        }

    @staticmethod
    def from_row(row: Any) -> "CatalogItem":
        data = dict(row)
        return CatalogItem(
            isbn=data["isbn"],
            title=data["title"],
            author=data["author"],
            tags=parse_tags(data.get("tags")),
            description=data.get("description"),
            shelf=data.get("shelf"),
            rack=data.get("rack"),
            total_copies=data.get("total_copies", 0),
            issued_copies=data.get("issued_copies", 0),
            created_at=from_iso(data.get("created_at")),
        )


@dataclass
class LedgerEntry:
    """One checkout-to-return lifecycle for a single copy."""
    id: str
    borrower_handle: str
    isbn: str
    issued_at: datetime
    due_at: datetime
    returned_at: Optional[datetime] = None
    status: LedgerStatus = LedgerStatus.ISSUED

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        return is_overdue(self, now or utcnow())

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return {
            "id": self.id,
            "borrower_handle": self.borrower_handle,
            "isbn": self.isbn,
            "issued_at": to_iso(self.issued_at),
            "due_at": to_iso(self.due_at),
            "returned_at": to_iso(self.returned_at),
            "status": self.status.value,
            "is_overdue": self.is_overdue(now),
        }

    @staticmethod
    def from_row(row: Any) -> "LedgerEntry":
        data = dict(row)
        return LedgerEntry(
            id=data["id"],
            borrower_handle=data["borrower_handle"],
            isbn=data["isbn"],
            issued_at=from_iso(data["issued_at"]),
            due_at=from_iso(data["due_at"]),
            returned_at=from_iso(data.get("returned_at")),
            status=LedgerStatus(data["status"]),
        )


def is_overdue(entry: LedgerEntry, now: datetime) -> bool:
    """True iff the entry is still issued and ``now`` is past its due date."""
    return entry.status is LedgerStatus.ISSUED and as_utc(now) > as_utc(entry.due_at)


@dataclass
class BorrowerIdentity:
    handle: str
    first_name: str
    last_name: str
    email: str
    role: Role = Role.BORROWER
    password_hash: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def has_usable_credential(self) -> bool:
        return bool(self.password_hash)

    def to_dict(self) -> Dict[str, Any]:
        # password_hash never leaves the store
        return {
            "handle": self.handle,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "role": self.role.value,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @staticmethod
    def from_row(row: Any) -> "BorrowerIdentity":
        data = dict(row)
        return BorrowerIdentity(
            handle=data["handle"],
            first_name=data["first_name"],
            last_name=data["last_name"],
            email=data["email"],
            role=Role(data["role"]),
            password_hash=data.get("password_hash") or "",
            created_at=from_iso(data.get("created_at")),
            updated_at=from_iso(data.get("updated_at")),
        )
