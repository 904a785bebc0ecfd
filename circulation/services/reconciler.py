import logging
import sqlite3
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from circulation import database
from circulation.errors import CirculationError
from circulation.identities import IdentityStore
from circulation.records import BorrowerIdentity, Role
from circulation.services.directory_crawler import Candidate

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    total: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
        }


class IdentityReconciler:
    """Upsert directory candidates into the identity store.

    Additive and corrective only: identities missing from a crawl are never
    deleted, since a directory page that failed to load looks the same as a
    borrower who left.
    """

    def __init__(self, identities: Optional[IdentityStore] = None):
        self.identities = identities or IdentityStore()

    def reconcile(self, candidates: Iterable[Candidate]) -> SyncResult:
        result = SyncResult()
        for candidate in candidates:
            try:
                outcome = self._apply(candidate)
            except (CirculationError, sqlite3.Error) as e:
                logger.error("Error processing borrower %s: %s", candidate.handle, e)
                result.failed += 1
                continue
            if outcome == "created":
                result.created += 1
            elif outcome == "updated":
                result.updated += 1
            result.total += 1

        logger.info(
            "Directory reconciliation: processed %d, created %d, updated %d, failed %d",
            result.total, result.created, result.updated, result.failed,
        )
        return result

    def _apply(self, candidate: Candidate) -> str:
        with database.transaction() as conn:
            existing = self.identities.find(candidate.handle, conn=conn)
            if existing is None:
                self.identities.create(
                    BorrowerIdentity(
                        handle=candidate.handle,
                        first_name=candidate.first_name,
                        last_name=candidate.last_name,
                        email=candidate.email,
                        role=Role.BORROWER,
                        password_hash="",
                    ),
                    conn=conn,
                )
                return "created"
            if (existing.first_name, existing.last_name) != (candidate.first_name, candidate.last_name):
                self.identities.update_name(candidate.handle, candidate.first_name, candidate.last_name, conn=conn)
                return "updated"
            return "unchanged"
