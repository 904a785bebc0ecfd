import asyncio
import logging
from typing import Optional

from circulation.services.directory_crawler import CrawlReport, DirectoryCrawler
from circulation.services.directory_source import DirectorySource
from circulation.services.reconciler import IdentityReconciler, SyncResult

logger = logging.getLogger(__name__)


class DirectorySync:
    """One directory sync run: crawl everything, then reconcile.

    The crawl completes before the first store write, so an
    UpstreamUnavailable crawl leaves the identity store untouched. The
    reconcile runs in a worker thread.
    """

    def __init__(
        self,
        source: DirectorySource,
        crawler: Optional[DirectoryCrawler] = None,
        reconciler: Optional[IdentityReconciler] = None,
    ):
        self.source = source
        self.crawler = crawler or DirectoryCrawler(source)
        self.reconciler = reconciler or IdentityReconciler()
        self.last_report: Optional[CrawlReport] = None

    async def run(self) -> SyncResult:
        logger.info("Starting directory sync")
        report = await self.crawler.crawl()
        self.last_report = report
        # Store writes block on the SQLite lock; keep them off the event loop
        result = await asyncio.to_thread(self.reconciler.reconcile, report.candidates)
        logger.info(
            "Directory sync completed. Processed: %d, Created: %d, Updated: %d",
            result.total, result.created, result.updated,
        )
        return result
