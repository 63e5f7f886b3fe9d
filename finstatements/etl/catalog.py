"""
Financial Statement Data Sets catalog module.

This module scrapes the SEC index page that lists the quarterly data set
archives and turns each listed row into a :class:`LinkRecord`. Rows are
expected in a ``table.list`` whose anchors read ``"<year> Q<quarter>"``.

It also provides :class:`LinkResolver` for looking up a record by period or
picking the most recent one.
"""

import logging
from typing import List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup, Tag

from finstatements import settings
from finstatements.models import Catalog, LinkRecord
from finstatements.etl.utils import FetchError, ParseError, create_http_client

# Configure logger
logger = logging.getLogger("finstatements.catalog")

LISTING_TABLE_SELECTOR = "table.list"


def parse_title(title: str) -> Tuple[int, int]:
    """Parse a listing title such as ``"2022 Q2"`` into ``(2022, 2)``.

    Args:
        title: Anchor text of a listing row

    Returns:
        Tuple of (year, quarter)

    Raises:
        ParseError: If the title is not ``"<year> Q<quarter>"``
    """
    parts = title.split()
    if len(parts) < 2:
        raise ParseError(f"Malformed listing title: {title!r}")

    year_token, quarter_token = parts[0], parts[1]
    if not year_token.isdecimal():
        raise ParseError(f"Non-numeric year in listing title: {title!r}")

    suffix = quarter_token[1:]
    if quarter_token[:1] != "Q" or not suffix.isdecimal():
        raise ParseError(f"Quarter must look like 'Q<digit>' in listing title: {title!r}")

    quarter = int(suffix)
    if not 1 <= quarter <= 4:
        raise ParseError(f"Quarter out of range in listing title: {title!r}")

    return int(year_token), quarter


def _listing_rows(soup: BeautifulSoup) -> List[Tag]:
    rows: List[Tag] = []
    for table in soup.select(LISTING_TABLE_SELECTOR):
        # html.parser does not synthesise <tbody>, so fall back to the table itself
        bodies = table.find_all("tbody") or [table]
        for body in bodies:
            rows.extend(body.find_all("tr", recursive=False))
    return rows


def parse_catalog(html: str, source_url: str, strict: bool = True) -> Catalog:
    """Parse the index page into a catalog.

    Args:
        html: Index page markup
        source_url: URL the page was retrieved from; hrefs resolve against its host
        strict: Abort on the first malformed row when True, skip it when False

    Returns:
        Catalog preserving the page's row order

    Raises:
        ParseError: If a row is malformed and ``strict`` is set
    """
    source = urlparse(source_url)
    link_base_url = f"{source.scheme}://{source.netloc}"

    soup = BeautifulSoup(html, "html.parser")
    records: List[LinkRecord] = []

    for row in _listing_rows(soup):
        anchor = row.find("a")
        # header rows hold <th> cells only
        if anchor is None and row.find("td") is None:
            continue

        try:
            if anchor is None or not anchor.get("href"):
                raise ParseError(f"Listing row without a link: {row.get_text(' ', strip=True)!r}")

            title = anchor.get_text(" ", strip=True)
            year, quarter = parse_title(title)
            archive_url = urljoin(link_base_url + "/", str(anchor["href"]))
        except ParseError as e:
            if strict:
                logger.error(f"Error parsing catalog row: {e}")
                raise
            logger.warning(f"Skipping catalog row: {e}")
            continue

        records.append(LinkRecord(archive_url=archive_url, title=title, year=year, quarter=quarter))

    return Catalog(source_url=source_url, records=tuple(records))


async def build_catalog(
    source_url: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    strict: Optional[bool] = None
) -> Catalog:
    """Retrieve the index page and build the catalog.

    Args:
        source_url: Index page URL. Defaults to settings.SOURCE_URL.
        client: HTTP client. A temporary client is created when omitted.
        strict: Abort on malformed rows. Defaults to settings.STRICT_CATALOG.

    Returns:
        Catalog of the listed archives

    Raises:
        FetchError: If the page cannot be retrieved
        ParseError: If a row is malformed and ``strict`` is set
    """
    source_url = source_url or settings.SOURCE_URL
    strict = settings.STRICT_CATALOG if strict is None else strict

    logger.info(f"Fetching catalog from {source_url}")

    owns_client = client is None
    http = client or create_http_client()
    try:
        response = await http.get(source_url)
        if response.status_code != 200:
            raise FetchError(f"Failed to fetch catalog {source_url}: HTTP {response.status_code}")
        html = response.text
    except httpx.HTTPError as e:
        logger.error(f"Catalog fetch error: {str(e)}")
        raise FetchError(f"Failed to fetch catalog {source_url}: {str(e)}") from e
    finally:
        if owns_client:
            await http.aclose()

    catalog = parse_catalog(html, source_url, strict=strict)
    logger.info(f"Found {len(catalog)} archives in catalog")
    return catalog


class LinkResolver:
    """Lookups over an already built catalog. Performs no I/O."""

    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    def find(self, year: int, quarter: int) -> Optional[LinkRecord]:
        """Return the first record for the period, or None."""
        for record in self.catalog:
            if record.year == year and record.quarter == quarter:
                return record
        return None

    def latest(self) -> Optional[LinkRecord]:
        """Return the last record in catalog order, or None when empty.

        The index page lists periods in ascending order, so the last row is the
        most recent one. Use :meth:`latest_by_period` if that ordering cannot be
        relied on.
        """
        if not len(self.catalog):
            return None
        return self.catalog[-1]

    def latest_by_period(self) -> Optional[LinkRecord]:
        """Return the record with the greatest (year, quarter), or None when empty.

        Ties resolve to the first occurrence in catalog order.
        """
        best: Optional[LinkRecord] = None
        for record in self.catalog:
            if best is None or record.period > best.period:
                best = record
        return best
