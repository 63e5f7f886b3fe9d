"""
Test fixtures for finstatements.

This module provides pytest fixtures for building index pages, zip archives
and mock HTTP transports.
"""

import io
import zipfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import httpx
import pytest
import pytest_asyncio

from finstatements.etl.utils import create_http_client

SOURCE_URL = "https://www.sec.gov/dera/data/financial-statement-data-sets.html"
ARCHIVE_BASE = "https://www.sec.gov/files/dera/data/financial-statement-data-sets"

SUB_TXT = "adsh\tcik\tname\n0000320193-22-000070\t320193\tAPPLE INC\n0000789019-22-000061\t789019\tMICROSOFT CORP\n"
NUM_TXT = "adsh\ttag\tvalue\n0000320193-22-000070\tAssets\t336309000000\n"
README = "<html><body>Financial Statement Data Sets</body></html>"


def render_index(titles: List[Tuple[str, str]], with_tbody: bool = True) -> str:
    """Render an index page listing (title, href) rows."""
    rows = "\n".join(
        f'<tr><td><a href="{href}">{title}</a></td><td>50 MB</td></tr>' for title, href in titles
    )
    body = f"<tbody>\n{rows}\n</tbody>" if with_tbody else rows
    return f"""
    <html><body>
    <table class="other"><tr><td><a href="/elsewhere">Not a data set</a></td></tr></table>
    <table class="list">
      <thead><tr><th>File</th><th>Size</th></tr></thead>
      {body}
    </table>
    </body></html>
    """


def build_zip(entries: Dict[str, Union[str, bytes]]) -> bytes:
    """Build a zip archive in memory, keeping the given entry order."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_STORED) as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def index_html() -> str:
    """Index page listing three quarters in ascending order."""
    return render_index([
        ("2021 Q4", "/files/dera/data/financial-statement-data-sets/2021q4.zip"),
        ("2022 Q1", "/files/dera/data/financial-statement-data-sets/2022q1.zip"),
        ("2022 Q2", "/files/dera/data/financial-statement-data-sets/2022q2.zip"),
    ])


@pytest.fixture
def archive_bytes() -> bytes:
    """A data set archive with two tables and a readme."""
    return build_zip({
        "sub.txt": SUB_TXT,
        "readme.htm": README,
        "num.txt": NUM_TXT,
    })


class RecordingHandler:
    """MockTransport handler serving fixed responses and recording requests."""

    def __init__(self, routes: Dict[str, Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]]):
        self.routes = routes
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404, content=b"not found")
        if callable(route):
            return route(request)
        return route

    @property
    def urls(self) -> List[str]:
        return [str(r.url) for r in self.requests]


@pytest.fixture
def make_client() -> Callable[[RecordingHandler], httpx.AsyncClient]:
    """Factory for HTTP clients backed by a RecordingHandler."""
    def _make(handler: RecordingHandler) -> httpx.AsyncClient:
        return create_http_client(transport=httpx.MockTransport(handler))
    return _make


@pytest.fixture
def sec_handler(index_html: str, archive_bytes: bytes) -> RecordingHandler:
    """Handler serving the index page and the 2022 Q2 archive."""
    return RecordingHandler({
        SOURCE_URL: httpx.Response(200, text=index_html),
        f"{ARCHIVE_BASE}/2022q2.zip": httpx.Response(200, content=archive_bytes),
    })


@pytest_asyncio.fixture
async def sec_client(sec_handler: RecordingHandler, make_client):
    """HTTP client serving the SEC fixtures."""
    client = make_client(sec_handler)
    yield client
    await client.aclose()


@pytest.fixture
def staging_dir(tmp_path: Path) -> Path:
    """Empty directory for a run's temporary files."""
    path = tmp_path / "staging"
    path.mkdir()
    return path


@pytest.fixture
def database_dir(tmp_path: Path) -> Path:
    """Empty directory for per-period databases."""
    path = tmp_path / "databases"
    path.mkdir()
    return path
