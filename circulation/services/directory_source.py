"""Access to the external borrower directory.

The directory is two levels deep: a category page (one per program) lists
batch identifiers in table cells, and each batch page lists ``(handle, full
name)`` rows in a table with a header row. The crawler only talks to the
:class:`DirectorySource` capability, so tests can swap in fakes.
"""

import logging
from typing import List, Optional, Protocol, Sequence, Tuple, Union

from lxml import html

from config import settings
from circulation.services.http_client import DirectoryHTTPClient

logger = logging.getLogger(__name__)

Row = Tuple[str, ...]


class DirectorySource(Protocol):
    async def list_categories(self) -> List[str]:
        ...

    async def list_batches(self, category: str) -> List[str]:
        ...

    async def fetch_rows(self, batch: str) -> List[Row]:
        """Raw table rows of a batch page, one tuple of cell texts per row.

        Rows are not validated here; the crawler drops malformed ones.
        """
        ...


def parse_batch_ids(page: Union[str, bytes]) -> List[str]:
    """Batch identifiers from a category page: the text of every table cell."""
    if not page.strip():
        return []
    document = html.fromstring(page)
    cells = (cell.text_content().strip() for cell in document.xpath("//table//td"))
    return [cell for cell in cells if cell]


def parse_rows(page: Union[str, bytes]) -> List[Row]:
    """Data rows of a batch page, header row excluded.

    Pass raw bytes when the page may carry an XML encoding declaration;
    lxml refuses str input with one.
    """
    if not page.strip():
        return []
    document = html.fromstring(page)
    rows = document.xpath("//table//tr")[1:]
    return [tuple(cell.text_content().strip() for cell in row.xpath("./td")) for row in rows]


class HttpDirectorySource:
    """DirectorySource backed by the ``<base>/<id>.shtml`` pages of the directory site."""

    def __init__(
        self,
        client: DirectoryHTTPClient,
        base_url: Optional[str] = None,
        categories: Optional[Sequence[str]] = None,
    ):
        self.client = client
        self.base_url = (base_url or settings.directory_base_url).rstrip("/")
        self.categories = list(categories if categories is not None else settings.directory_categories)

    def page_url(self, identifier: str) -> str:
        return f"{self.base_url}/{identifier}.shtml"

    async def list_categories(self) -> List[str]:
        return list(self.categories)

    async def list_batches(self, category: str) -> List[str]:
        response = await self.client.get_with_retry(self.page_url(category))
        batches = parse_batch_ids(response.content)
        logger.debug("Category %s lists %d batches", category, len(batches))
        return batches

    async def fetch_rows(self, batch: str) -> List[Row]:
        response = await self.client.get_with_retry(self.page_url(batch))
        return parse_rows(response.content)
