"""
Tests for the ingestion pipeline.

This module runs StatementsScraper end to end against mock HTTP transports
and temporary SQLite databases.
"""

import sqlite3
from pathlib import Path
from typing import List
from unittest.mock import MagicMock

import httpx
import pytest

from conftest import ARCHIVE_BASE, NUM_TXT, SOURCE_URL, SUB_TXT, RecordingHandler, build_zip, render_index
from finstatements.models import FailurePolicy, RunState
from finstatements.etl.loader import SQLAlchemyImporter
from finstatements.etl.pipeline import (
    StatementsScraper,
    get_failure_policy,
    is_database_file,
    main,
    validate_database_path,
)
from finstatements.etl.utils import (
    ConfigError,
    ExtractionError,
    FetchError,
    LoadError,
    NetworkError,
    ResolutionError,
)


def tables_in(db: Path) -> List[str]:
    with sqlite3.connect(db) as conn:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name").fetchall()
    return [row[0] for row in rows]


class RejectingImporter(SQLAlchemyImporter):
    """Importer that rejects one table and imports the rest."""

    def __init__(self, reject: str):
        super().__init__()
        self.reject = reject
        self.calls: List[str] = []

    def import_table(self, source, table, destination):
        self.calls.append(table)
        if table == self.reject:
            raise LoadError(f"store rejected {table}", table=table, destination=destination)
        super().import_table(source, table, destination)


@pytest.fixture
def messages() -> List[str]:
    return []


class TestDestination:
    """Tests for destination validation."""

    def test_is_database_file(self, tmp_path):
        assert is_database_file(tmp_path / "a.db")
        assert is_database_file(tmp_path / "a.sqlite")
        assert not is_database_file(tmp_path / "data")

    def test_valid_destinations(self, tmp_path):
        validate_database_path(tmp_path)
        validate_database_path(tmp_path / "new.db")

    @pytest.mark.parametrize("relative", ["missing", "missing/new.db"])
    def test_invalid_destinations(self, tmp_path, relative):
        with pytest.raises(ConfigError):
            validate_database_path(tmp_path / relative)

    def test_failure_policy(self):
        assert get_failure_policy("continue") is FailurePolicy.CONTINUE
        assert get_failure_policy(FailurePolicy.FAIL_FAST) is FailurePolicy.FAIL_FAST
        with pytest.raises(ConfigError):
            get_failure_policy("ignore")


class TestCreate:
    """Tests for StatementsScraper.create."""

    @pytest.mark.asyncio
    async def test_builds_catalog(self, sec_handler, sec_client, database_dir):
        scraper = await StatementsScraper.create(database_dir, source_url=SOURCE_URL, client=sec_client)

        assert len(scraper.catalog) == 3
        assert not scraper.is_file
        assert sec_handler.urls == [SOURCE_URL]

    @pytest.mark.asyncio
    async def test_bad_destination_fails_before_network(self, sec_handler, sec_client, tmp_path):
        with pytest.raises(ConfigError):
            await StatementsScraper.create(tmp_path / "missing", source_url=SOURCE_URL, client=sec_client)
        assert sec_handler.requests == []

    @pytest.mark.asyncio
    async def test_catalog_failure(self, make_client, database_dir):
        handler = RecordingHandler({SOURCE_URL: httpx.Response(500)})
        async with make_client(handler) as client:
            with pytest.raises(FetchError):
                await StatementsScraper.create(database_dir, source_url=SOURCE_URL, client=client)


class TestLoad:
    """End-to-end load scenarios."""

    @pytest.mark.asyncio
    async def test_load_by_period(self, sec_handler, sec_client, database_dir, staging_dir, messages):
        scraper = await StatementsScraper.create(
            database_dir,
            source_url=SOURCE_URL,
            client=sec_client,
            importer=SQLAlchemyImporter(),
            staging_dir=staging_dir,
            progress=messages.append,
        )

        report = await scraper.load(2022, 2)

        db = database_dir / "2022q2.db"
        assert report.state is RunState.DONE
        assert report.ok
        assert report.tables == ["sub", "num"]
        assert report.target.database_path == db
        assert tables_in(db) == ["num", "sub"]
        assert sec_handler.urls == [SOURCE_URL, f"{ARCHIVE_BASE}/2022q2.zip"]
        assert list(staging_dir.iterdir()) == []

        url = f"{ARCHIVE_BASE}/2022q2.zip"
        assert messages == [
            f"downloading from {url}...",
            f"downloading from {url}...DONE",
            f"importing sub.txt into {db}...",
            f"importing num.txt into {db}...",
        ]

    @pytest.mark.asyncio
    async def test_load_latest_into_single_file(self, sec_client, tmp_path, staging_dir):
        db = tmp_path / "statements.sqlite"
        scraper = await StatementsScraper.create(
            db, source_url=SOURCE_URL, client=sec_client, importer=SQLAlchemyImporter(), staging_dir=staging_dir
        )

        report = await scraper.load_latest()

        assert scraper.is_file
        assert report.target.record.title == "2022 Q2"
        assert report.target.database_path == db
        assert tables_in(db) == ["num", "sub"]
        assert list(staging_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_reload_replaces_tables(self, sec_client, database_dir, staging_dir):
        scraper = await StatementsScraper.create(
            database_dir, source_url=SOURCE_URL, client=sec_client,
            importer=SQLAlchemyImporter(), staging_dir=staging_dir,
        )
        await scraper.load(2022, 2)
        await scraper.load(2022, 2)

        with sqlite3.connect(database_dir / "2022q2.db") as conn:
            assert conn.execute("SELECT COUNT(*) FROM sub").fetchone() == (2,)

    @pytest.mark.asyncio
    async def test_unknown_period(self, sec_handler, sec_client, database_dir):
        importer = MagicMock()
        scraper = await StatementsScraper.create(
            database_dir, source_url=SOURCE_URL, client=sec_client, importer=importer
        )

        with pytest.raises(ResolutionError, match="2019"):
            await scraper.load(2019, 1)

        assert scraper.last_report.state is RunState.FAILED
        assert sec_handler.urls == [SOURCE_URL]
        importer.import_table.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_catalog(self, make_client, database_dir):
        handler = RecordingHandler({SOURCE_URL: httpx.Response(200, text=render_index([]))})
        importer = MagicMock()

        async with make_client(handler) as client:
            scraper = await StatementsScraper.create(
                database_dir, source_url=SOURCE_URL, client=client, importer=importer
            )
            assert len(scraper.catalog) == 0

            with pytest.raises(ResolutionError):
                await scraper.load_latest()

        assert handler.urls == [SOURCE_URL]
        importer.import_table.assert_not_called()
        assert list(database_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_archive_not_found(self, index_html, make_client, database_dir, staging_dir):
        handler = RecordingHandler({SOURCE_URL: httpx.Response(200, text=index_html)})
        importer = MagicMock()

        async with make_client(handler) as client:
            scraper = await StatementsScraper.create(
                database_dir, source_url=SOURCE_URL, client=client,
                importer=importer, staging_dir=staging_dir,
            )
            with pytest.raises(NetworkError, match="404"):
                await scraper.load(2022, 2)

        assert scraper.last_report.state is RunState.FAILED
        importer.import_table.assert_not_called()
        assert list(staging_dir.iterdir()) == []
        assert list(database_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_second_table_rejected(self, sec_client, database_dir, staging_dir):
        importer = RejectingImporter(reject="num")
        scraper = await StatementsScraper.create(
            database_dir, source_url=SOURCE_URL, client=sec_client,
            importer=importer, staging_dir=staging_dir,
        )

        with pytest.raises(LoadError) as excinfo:
            await scraper.load(2022, 2)

        assert excinfo.value.table == "num"
        assert importer.calls == ["sub", "num"]
        assert scraper.last_report.state is RunState.FAILED
        assert scraper.last_report.tables == ["sub"]
        assert tables_in(database_dir / "2022q2.db") == ["sub"]
        assert list(staging_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_continue_policy_collects_errors(self, make_client, index_html, database_dir, staging_dir):
        archive = build_zip({"sub.txt": SUB_TXT, "num.txt": NUM_TXT, "pre.txt": "adsh\treport\nX\t1\n"})
        handler = RecordingHandler({
            SOURCE_URL: httpx.Response(200, text=index_html),
            f"{ARCHIVE_BASE}/2022q2.zip": httpx.Response(200, content=archive),
        })
        importer = RejectingImporter(reject="num")

        async with make_client(handler) as client:
            scraper = await StatementsScraper.create(
                database_dir, source_url=SOURCE_URL, client=client, importer=importer,
                staging_dir=staging_dir, failure_policy="continue",
            )
            report = await scraper.load(2022, 2)

        assert report.state is RunState.DONE
        assert not report.ok
        assert report.tables == ["sub", "pre"]
        assert report.skipped == ["num.txt"]
        assert len(report.errors) == 1
        assert isinstance(report.errors[0], LoadError)
        assert report.get_stats()["error_count"] == 1
        assert tables_in(database_dir / "2022q2.db") == ["pre", "sub"]
        assert list(staging_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_corrupt_archive(self, make_client, index_html, database_dir, staging_dir):
        handler = RecordingHandler({
            SOURCE_URL: httpx.Response(200, text=index_html),
            f"{ARCHIVE_BASE}/2022q2.zip": httpx.Response(200, content=b"<html>Access Denied</html>"),
        })

        async with make_client(handler) as client:
            scraper = await StatementsScraper.create(
                database_dir, source_url=SOURCE_URL, client=client,
                staging_dir=staging_dir, failure_policy=FailurePolicy.CONTINUE,
            )
            # opening the archive is fatal under every policy
            with pytest.raises(ExtractionError):
                await scraper.load(2022, 2)

        assert list(staging_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_corrupt_entry_fail_fast(self, make_client, index_html, database_dir, staging_dir):
        archive = build_zip({"sub.txt": SUB_TXT, "num.txt": b"adsh\tCORRUPTME\n"})
        handler = RecordingHandler({
            SOURCE_URL: httpx.Response(200, text=index_html),
            f"{ARCHIVE_BASE}/2022q2.zip": httpx.Response(
                200, content=archive.replace(b"CORRUPTME", b"XXXXXXXXX")
            ),
        })

        async with make_client(handler) as client:
            scraper = await StatementsScraper.create(
                database_dir, source_url=SOURCE_URL, client=client,
                importer=SQLAlchemyImporter(), staging_dir=staging_dir,
            )
            with pytest.raises(ExtractionError) as excinfo:
                await scraper.load(2022, 2)

        assert excinfo.value.entry == "num.txt"
        assert scraper.last_report.tables == ["sub"]
        assert list(staging_dir.iterdir()) == []


class TestClientLifecycle:
    """Tests for client ownership."""

    @pytest.mark.asyncio
    async def test_borrowed_client_not_closed(self, sec_client, database_dir):
        async with await StatementsScraper.create(database_dir, source_url=SOURCE_URL, client=sec_client):
            pass
        assert not sec_client.is_closed


class TestMain:
    """Tests for the command-line entry point."""

    @pytest.mark.asyncio
    async def test_bad_destination_exit_status(self, tmp_path):
        status = await main(["--latest", "--database", str(tmp_path / "missing")])
        assert status == 2

    @pytest.mark.asyncio
    async def test_year_requires_quarter(self, tmp_path):
        with pytest.raises(SystemExit):
            await main(["--year", "2022", "--database", str(tmp_path)])
