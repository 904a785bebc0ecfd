import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from config import settings
from circulation.errors import UpstreamUnavailable
from circulation.services.directory_source import DirectorySource, Row
from circulation.services.http_client import retry_budget

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    """A borrower identity as the directory reports it."""
    handle: str
    first_name: str
    last_name: str
    email: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "handle": self.handle,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
        }


@dataclass
class CrawlFailure:
    kind: str  # "category" or "batch"
    identifier: str
    error: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "identifier": self.identifier, "error": self.error}


@dataclass
class CrawlReport:
    candidates: List[Candidate] = field(default_factory=list)
    failures: List[CrawlFailure] = field(default_factory=list)
    categories_ok: List[str] = field(default_factory=list)
    categories_failed: List[str] = field(default_factory=list)
    skipped_rows: int = 0
    duplicate_rows: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "candidates": len(self.candidates),
            "categories_ok": self.categories_ok,
            "categories_failed": self.categories_failed,
            "skipped_rows": self.skipped_rows,
            "duplicate_rows": self.duplicate_rows,
            "failures": [f.to_dict() for f in self.failures],
        }


def split_name(full_name: str) -> Tuple[str, str]:
    """'Asha Rani Verma' -> ('Asha', 'Rani Verma')"""
    parts = full_name.split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


class DirectoryCrawler:
    """One full pass over the directory, yielding deduplicated candidates.

    Failures are isolated: a category whose index cannot be fetched (or lists
    nothing) is skipped, a batch that fails is skipped, a malformed row is
    skipped. Only when no category produces usable data does the crawl raise
    UpstreamUnavailable. Each crawl starts from scratch.
    """

    def __init__(
        self,
        source: DirectorySource,
        email_domain: Optional[str] = None,
        fetch_timeout: Optional[float] = None,
        max_concurrency: Optional[int] = None,
    ):
        self.source = source
        self.email_domain = email_domain or settings.directory_email_domain
        # Each fetch may retry inside the http client, so the outer bound covers
        # every attempt plus the backoff sleeps
        if fetch_timeout is None:
            fetch_timeout = retry_budget(settings.directory_timeout, settings.directory_retries)
        self.fetch_timeout = fetch_timeout
        self.max_concurrency = max(1, max_concurrency or settings.directory_max_concurrency)

    async def crawl(self) -> CrawlReport:
        report = CrawlReport()
        seen: set = set()

        try:
            categories = await self._bounded(self.source.list_categories())
        except Exception as e:
            logger.error("Could not list directory categories: %s", e)
            raise UpstreamUnavailable(f"Directory categories unavailable: {e}") from e
        if not categories:
            raise UpstreamUnavailable("No directory categories to crawl.")

        logger.info("Starting directory crawl over %d categories", len(categories))
        semaphore = asyncio.Semaphore(self.max_concurrency)
        for category in categories:
            usable = await self._crawl_category(category, semaphore, seen, report)
            if usable:
                report.categories_ok.append(category)
            else:
                report.categories_failed.append(category)

        if not report.categories_ok:
            raise UpstreamUnavailable(
                f"Every directory category failed ({', '.join(report.categories_failed)})."
            )

        logger.info(
            "Directory crawl finished: %d candidates, %d failures, %d malformed rows skipped",
            len(report.candidates), len(report.failures), report.skipped_rows,
        )
        return report

    async def iter_candidates(self) -> AsyncIterator[Candidate]:
        """Run a fresh crawl and yield its candidates in discovery order."""
        report = await self.crawl()
        for candidate in report.candidates:
            yield candidate

    async def _crawl_category(self, category: str, semaphore: asyncio.Semaphore, seen: set,
                              report: CrawlReport) -> bool:
        try:
            batches = await self._bounded(self.source.list_batches(category))
        except Exception as e:
            logger.error("Failed to fetch program data for %s: %s", category, e)
            report.failures.append(CrawlFailure("category", category, _describe(e)))
            return False
        if not batches:
            logger.warning("No batches found for program: %s", category)
            report.failures.append(CrawlFailure("category", category, "no batches listed"))
            return False

        async def fetch(batch: str) -> Optional[List[Row]]:
            async with semaphore:
                try:
                    return await self._bounded(self.source.fetch_rows(batch))
                except Exception as e:
                    logger.error("Failed to fetch batch data for %s: %s", batch, e)
                    report.failures.append(CrawlFailure("batch", batch, _describe(e)))
                    return None

        # gather keeps batch order, so "first occurrence wins" stays deterministic
        results = await asyncio.gather(*(fetch(batch) for batch in batches))
        if all(rows is None for rows in results):
            return False
        for rows in results:
            if rows is not None:
                self._collect(rows, seen, report)
        return True

    def _collect(self, rows: Sequence[Row], seen: set, report: CrawlReport) -> None:
        for row in rows:
            if len(row) != 2:
                report.skipped_rows += 1
                continue
            handle, full_name = (cell.strip() for cell in row)
            if not handle or not full_name:
                report.skipped_rows += 1
                continue
            if handle in seen:
                report.duplicate_rows += 1
                continue
            seen.add(handle)
            first_name, last_name = split_name(full_name)
            report.candidates.append(Candidate(
                handle=handle,
                first_name=first_name,
                last_name=last_name,
                email=f"{handle}@{self.email_domain}",
            ))

    async def _bounded(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.fetch_timeout)


def _describe(error: Exception) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "timed out"
    return f"{type(error).__name__}: {error}"
