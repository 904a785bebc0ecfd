import hashlib
import logging
import secrets
import sqlite3
from typing import List, Optional

from circulation import database
from circulation.errors import InvalidArgument, NotFound
from circulation.records import BorrowerIdentity, Role, to_iso, utcnow

logger = logging.getLogger(__name__)

_PBKDF2_ITERATIONS = 200_000


def hash_password(password: str) -> str:
    """Salted PBKDF2-SHA256, stored as ``pbkdf2_sha256$iterations$salt$digest``."""
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), _PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${_PBKDF2_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    if not stored:
        # directory-synced borrowers have no usable credential
        return False
    try:
        _, iterations, salt, expected = stored.split("$")
    except ValueError:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), int(iterations))
    return secrets.compare_digest(digest.hex(), expected)


class IdentityStore:
    """Borrower and staff identities keyed by a unique handle."""

    def find(self, handle: str, conn: Optional[sqlite3.Connection] = None) -> Optional[BorrowerIdentity]:
        own = conn is None
        conn = conn or database.get_db_connection()
        try:
            row = conn.execute("SELECT * FROM identities WHERE handle = ?", (handle,)).fetchone()
            return BorrowerIdentity.from_row(row) if row else None
        finally:
            if own:
                conn.close()

    def get(self, handle: str) -> BorrowerIdentity:
        identity = self.find(handle)
        if identity is None:
            raise NotFound(f"User {handle} not found.")
        return identity

    def create(self, identity: BorrowerIdentity, conn: Optional[sqlite3.Connection] = None) -> BorrowerIdentity:
        if not identity.handle.strip():
            raise InvalidArgument("Handle cannot be empty.")
        now = utcnow()
        identity.created_at = identity.created_at or now
        identity.updated_at = now
        own = conn is None
        conn = conn or database.get_db_connection()
        try:
            conn.execute(
                """
                INSERT INTO identities (
                    handle, first_name, last_name, email, role, password_hash, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    identity.handle, identity.first_name, identity.last_name, identity.email,
                    identity.role.value, identity.password_hash,
                    to_iso(identity.created_at), to_iso(identity.updated_at),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise InvalidArgument(f"User {identity.handle} already exists.") from e
        finally:
            if own:
                conn.close()
        return identity

    def update_name(
        self, handle: str, first_name: str, last_name: str, conn: Optional[sqlite3.Connection] = None
    ) -> None:
        own = conn is None
        conn = conn or database.get_db_connection()
        try:
            cursor = conn.execute(
                "UPDATE identities SET first_name = ?, last_name = ?, updated_at = ? WHERE handle = ?",
                (first_name, last_name, to_iso(utcnow()), handle),
            )
            if cursor.rowcount == 0:
                raise NotFound(f"User {handle} not found.")
        finally:
            if own:
                conn.close()

    def list_by_role(self, role: Role = Role.BORROWER) -> List[BorrowerIdentity]:
        conn = database.get_db_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM identities WHERE role = ? ORDER BY handle", (role.value,)
            ).fetchall()
            return [BorrowerIdentity.from_row(row) for row in rows]
        finally:
            conn.close()

    def provision_staff(
        self, handle: str, first_name: str, last_name: str, email: str, password: str
    ) -> BorrowerIdentity:
        """Administrative provisioning of a staff identity with a usable credential."""
        if not password:
            raise InvalidArgument("Staff accounts need a password.")
        identity = BorrowerIdentity(
            handle=handle.strip(),
            first_name=first_name,
            last_name=last_name,
            email=email,
            role=Role.STAFF,
            password_hash=hash_password(password),
        )
        self.create(identity)
        logger.info("Provisioned staff identity %s", identity.handle)
        return identity
