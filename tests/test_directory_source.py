import asyncio

import httpx
import pytest

from circulation.services.directory_crawler import DirectoryCrawler
from circulation.services.directory_source import HttpDirectorySource, parse_batch_ids, parse_rows
from circulation.services.http_client import DirectoryHTTPClient, retry_budget
from config import settings

from fakes import FakeDirectorySource

BASE = "https://directory.example/LDAP/maths"

CATEGORY_PAGE = """
<html><body>
<h2>B.Tech batches</h2>
<table>
  <tr><td><a href="cs120.shtml">cs120</a></td><td>ee120</td></tr>
  <tr><td> </td></tr>
</table>
</body></html>
"""

BATCH_PAGES = {
    "cs120": """
<html><body><table>
  <tr><th>UID</th><th>Name</th></tr>
  <tr><td>cs1200001</td><td>Asha Rani Verma</td></tr>
  <tr><td>cs1200002</td><td> Ravi Kumar </td></tr>
  <tr><td>broken-row</td></tr>
</table></body></html>
""",
    "ee120": """
<html><body><table>
  <tr><td>UID</td><td>Name</td></tr>
  <tr><td>ee1200001</td><td>Meera Iyer</td></tr>
</table></body></html>
""",
}


def test_parse_batch_ids():
    assert parse_batch_ids(CATEGORY_PAGE) == ["cs120", "ee120"]
    assert parse_batch_ids("") == []
    assert parse_batch_ids("<html><body><p>No batches yet</p></body></html>") == []


def test_parse_rows_skips_header():
    rows = parse_rows(BATCH_PAGES["cs120"])
    assert rows == [
        ("cs1200001", "Asha Rani Verma"),
        ("cs1200002", "Ravi Kumar"),
        ("broken-row",),
    ]
    assert parse_rows(BATCH_PAGES["ee120"]) == [("ee1200001", "Meera Iyer")]


def _handler(request: httpx.Request) -> httpx.Response:
    name = request.url.path.rsplit("/", 1)[-1]
    if name == "btech.shtml":
        return httpx.Response(200, text=CATEGORY_PAGE)
    if name == "mtech.shtml":
        return httpx.Response(500, text="oops")
    page = BATCH_PAGES.get(name[: -len(".shtml")])
    if page is None:
        return httpx.Response(404)
    return httpx.Response(200, text=page)


def _source(handler=_handler, categories=("btech", "mtech")):
    client = DirectoryHTTPClient(timeout=2, verify=True, retries=1, transport=httpx.MockTransport(handler))
    return client, HttpDirectorySource(client, base_url=BASE + "/", categories=categories)


def test_page_url():
    _, source = _source()
    assert source.page_url("btech") == f"{BASE}/btech.shtml"


def test_http_source_fetches_pages():
    async def run():
        client, source = _source()
        async with client:
            return await source.list_batches("btech"), await source.fetch_rows("ee120")

    batches, rows = asyncio.run(run())

    assert batches == ["cs120", "ee120"]
    assert rows == [("ee1200001", "Meera Iyer")]


def test_http_error_status_is_raised():
    async def run():
        client, source = _source()
        async with client:
            await source.list_batches("mtech")

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(run())


@pytest.mark.integration
def test_crawl_over_http():
    async def run():
        client, source = _source()
        async with client:
            return await DirectoryCrawler(source, email_domain="iitd.ac.in", fetch_timeout=2).crawl()

    report = asyncio.run(run())

    assert [c.handle for c in report.candidates] == ["cs1200001", "cs1200002", "ee1200001"]
    assert report.candidates[1].first_name == "Ravi"
    assert report.skipped_rows == 1
    assert report.categories_ok == ["btech"]
    assert report.categories_failed == ["mtech"]


def test_transport_errors_are_retried():
    attempts = []

    def flaky(request):
        attempts.append(request.url.path)
        if len(attempts) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, text=CATEGORY_PAGE)

    async def run():
        client = DirectoryHTTPClient(timeout=2, verify=True, retries=3, transport=httpx.MockTransport(flaky))
        async with client:
            response = await client.get_with_retry(f"{BASE}/btech.shtml", backoff=0)
            return response.status_code

    assert asyncio.run(run()) == 200
    assert len(attempts) == 3


def test_retries_exhausted_reraise():
    def down(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def run():
        client = DirectoryHTTPClient(timeout=2, verify=True, retries=2, transport=httpx.MockTransport(down))
        async with client:
            await client.get_with_retry(f"{BASE}/btech.shtml", backoff=0)

    with pytest.raises(httpx.ConnectError):
        asyncio.run(run())


XML_DECLARED_PAGE = b"""<?xml version="1.0" encoding="utf-8"?>
<html><body><table>
  <tr><th>UID</th><th>Name</th></tr>
  <tr><td>me1200007</td><td>Zo\xc3\xab Fernandes</td></tr>
</table></body></html>
"""


def test_parse_rows_accepts_bytes_with_encoding_declaration():
    assert parse_rows(XML_DECLARED_PAGE) == [("me1200007", "Zoë Fernandes")]
    assert parse_batch_ids(b"  ") == []


def test_http_source_reads_pages_with_encoding_declaration():
    def handler(request):
        return httpx.Response(200, content=XML_DECLARED_PAGE, headers={"Content-Type": "text/html"})

    async def run():
        client, source = _source(handler)
        async with client:
            return await source.fetch_rows("me120")

    assert asyncio.run(run()) == [("me1200007", "Zoë Fernandes")]


def test_retry_budget_covers_attempts_and_backoff():
    assert retry_budget(10, 3) == 31.5
    assert retry_budget(10, 1) == 10
    assert retry_budget(2, 0) == 2


def test_crawler_default_bound_leaves_room_for_retries():
    crawler = DirectoryCrawler(FakeDirectorySource(batches={}, rows={}), email_domain="iitd.ac.in")
    assert crawler.fetch_timeout == retry_budget(settings.directory_timeout, settings.directory_retries)
    assert crawler.fetch_timeout > settings.directory_timeout


def test_crawl_survives_a_retried_fetch():
    calls = []

    async def handler(request):
        name = request.url.path.rsplit("/", 1)[-1]
        calls.append(name)
        if name == "btech.shtml" and calls.count(name) == 1:
            await asyncio.sleep(0.15)
            raise httpx.ConnectError("connection reset", request=request)
        return _handler(request)

    async def run():
        client = DirectoryHTTPClient(timeout=0.2, verify=True, retries=2, transport=httpx.MockTransport(handler))
        source = HttpDirectorySource(client, base_url=BASE, categories=["btech"])
        async with client:
            crawler = DirectoryCrawler(source, email_domain="iitd.ac.in", fetch_timeout=retry_budget(0.2, 2))
            return await crawler.crawl()

    report = asyncio.run(run())

    assert calls.count("btech.shtml") == 2
    assert report.categories_ok == ["btech"]
    assert [c.handle for c in report.candidates] == ["cs1200001", "cs1200002", "ee1200001"]

