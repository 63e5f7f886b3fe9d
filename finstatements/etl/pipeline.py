"""
Financial Statement Data Sets ingestion pipeline.

This module drives one catalog record through download, extraction and
import. A run moves through the states of :class:`RunState`:

    RESOLVING -> FETCHING -> EXTRACTING (STAGING -> LOADING per entry) -> DONE

and ends in FAILED on the first fatal error. Entries are processed strictly
one after another, and every temporary file of a run is removed before the
run returns or raises.

Runs are not coordinated with each other; callers must not run two loads
against the same database at the same time.
"""

import argparse
import asyncio
import logging
import sys
import time
from contextlib import closing
from pathlib import Path
from typing import Callable, List, Optional, Union

import httpx
from rich.console import Console
from rich.table import Table

from finstatements import settings
from finstatements.models import (
    Catalog,
    FailurePolicy,
    IngestionTarget,
    LinkRecord,
    RunReport,
    RunState,
)
from finstatements.etl.archive import ArchiveEntry, fetch_archive, iter_entries, stage_entry
from finstatements.etl.catalog import LinkResolver, build_catalog
from finstatements.etl.loader import BulkImporter, TableLoader, get_importer
from finstatements.etl.utils import (
    ConfigError,
    ETLError,
    ExtractionError,
    LoadError,
    ResolutionError,
    StagingArea,
    create_http_client,
)

# Configure logger
logger = logging.getLogger("finstatements.pipeline")

ProgressCallback = Callable[[str], None]


def is_database_file(path: Path) -> bool:
    """Return True if the path names a single database file rather than a directory."""
    return path.suffix in settings.DATABASE_FILE_SUFFIXES


def validate_database_path(path: Path) -> None:
    """Check that a destination can be written to.

    A database file may not exist yet, but its directory must. A directory
    destination must already exist.

    Raises:
        ConfigError: If the destination is not usable
    """
    if is_database_file(path):
        if path.exists() and not path.is_file():
            raise ConfigError(f"Database path is not a file: {path}")
        if not path.parent.is_dir():
            raise ConfigError(f"Database directory does not exist: {path.parent}")
    elif not path.is_dir():
        raise ConfigError(f"Database path does not exist or is not a directory: {path}")


def get_failure_policy(policy: Union[FailurePolicy, str, None] = None) -> FailurePolicy:
    """Get the failure policy, from settings.FAILURE_POLICY if not given.

    Raises:
        ConfigError: If the policy name is unknown
    """
    if isinstance(policy, FailurePolicy):
        return policy
    name = policy or settings.FAILURE_POLICY
    try:
        return FailurePolicy(name)
    except ValueError as e:
        raise ConfigError(f"Unsupported failure policy: {name}") from e


class StatementsScraper:
    """Loads Financial Statement Data Sets archives into SQLite databases.

    Use :meth:`create` to build the catalog and validate the destination, then
    :meth:`load` or :meth:`load_latest` to run an ingestion.
    """

    def __init__(
        self,
        catalog: Catalog,
        database_path: Path,
        client: Optional[httpx.AsyncClient] = None,
        importer: Optional[BulkImporter] = None,
        failure_policy: Union[FailurePolicy, str, None] = None,
        progress: Optional[ProgressCallback] = None,
        database_ext: Optional[str] = None,
        staging_dir: Optional[Path] = None,
        fetch_attempts: Optional[int] = None,
        owns_client: bool = False
    ):
        """Initialize the scraper.

        Args:
            catalog: Catalog of downloadable archives
            database_path: Database file (``.db``/``.sqlite``) or directory for per-period files
            client: HTTP client for archive downloads
            importer: Bulk importer. Defaults to the one named by settings.IMPORTER.
            failure_policy: Entry failure policy. Defaults to settings.FAILURE_POLICY.
            progress: Receives human-readable progress messages. Defaults to logging.
            database_ext: Extension of per-period database files. Defaults to settings.DATABASE_EXT.
            staging_dir: Directory for temporary files. Defaults to settings.STAGING_DIR.
            fetch_attempts: Download attempts per archive. Defaults to settings.FETCH_ATTEMPTS.
            owns_client: Close ``client`` in :meth:`aclose`

        Raises:
            ConfigError: If the destination, importer or policy is invalid
        """
        self.database_path = Path(database_path)
        validate_database_path(self.database_path)

        self.catalog = catalog
        self.resolver = LinkResolver(catalog)
        self.is_file = is_database_file(self.database_path)
        self.database_ext = database_ext or settings.DATABASE_EXT
        self.loader = TableLoader(importer or get_importer())
        self.failure_policy = get_failure_policy(failure_policy)
        self.progress = progress or logger.info
        self.staging_dir = staging_dir
        self.fetch_attempts = fetch_attempts
        self.client = client
        self._owns_client = owns_client
        self.last_report: Optional[RunReport] = None

    @classmethod
    async def create(
        cls,
        database_path: Union[Path, str, None] = None,
        source_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        strict: Optional[bool] = None,
        **kwargs
    ) -> "StatementsScraper":
        """Validate the destination, build the catalog and return a scraper.

        Args:
            database_path: Destination. Defaults to settings.DATABASE_PATH.
            source_url: Index page URL. Defaults to settings.SOURCE_URL.
            client: HTTP client shared by catalog and archive requests
            strict: Abort on malformed catalog rows. Defaults to settings.STRICT_CATALOG.
            **kwargs: Passed to the constructor

        Returns:
            StatementsScraper instance

        Raises:
            ConfigError: If the destination is not usable
            FetchError: If the index page cannot be retrieved
            ParseError: If the index page has a malformed row
        """
        path = Path(database_path) if database_path else settings.DATABASE_PATH
        validate_database_path(path)

        owns_client = client is None
        http = client or create_http_client()
        try:
            catalog = await build_catalog(source_url, client=http, strict=strict)
            return cls(catalog, path, client=http, owns_client=owns_client, **kwargs)
        except Exception:
            if owns_client:
                await http.aclose()
            raise

    async def aclose(self) -> None:
        """Close the HTTP client if this scraper created it."""
        if self._owns_client and self.client is not None:
            await self.client.aclose()

    async def __aenter__(self) -> "StatementsScraper":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def target_for(self, record: LinkRecord) -> IngestionTarget:
        """Resolve the database file a record is loaded into."""
        if self.is_file:
            return IngestionTarget(record=record, database_path=self.database_path)
        file_name = IngestionTarget.period_file_name(record, self.database_ext)
        return IngestionTarget(record=record, database_path=self.database_path / file_name)

    async def load(self, year: int, quarter: int) -> RunReport:
        """Load the archive for one period.

        Args:
            year: Data set year
            quarter: Data set quarter (1-4)

        Returns:
            RunReport of the completed run

        Raises:
            ResolutionError: If the catalog has no archive for the period
            NetworkError: If the archive download fails
            ExtractionError: If the archive or, under fail-fast, an entry cannot be read
            LoadError: If, under fail-fast, an import is rejected
        """
        report = self._start_run()
        record = self.resolver.find(year, quarter)
        if record is None:
            self._fail(report, ResolutionError(f"No archive found for year {year} and quarter {quarter}"))
        return await self._ingest(record, report)

    async def load_latest(self) -> RunReport:
        """Load the most recent archive, i.e. the last one listed in the catalog.

        Raises:
            ResolutionError: If the catalog is empty
        """
        report = self._start_run()
        record = self.resolver.latest()
        if record is None:
            self._fail(report, ResolutionError("No archive found for latest: catalog is empty"))
        return await self._ingest(record, report)

    def _start_run(self) -> RunReport:
        report = RunReport()
        self.last_report = report
        return report

    def _transition(self, report: RunReport, state: RunState) -> None:
        logger.debug(f"Run state: {report.state.value} -> {state.value}")
        report.state = state

    def _fail(self, report: RunReport, error: Exception) -> None:
        logger.error(f"Run failed while {report.state.value}: {error}")
        report.state = RunState.FAILED
        report.end_time = time.time()
        raise error

    def _notify(self, message: str) -> None:
        self.progress(message)

    async def _ingest(self, record: LinkRecord, report: RunReport) -> RunReport:
        target = self.target_for(record)
        report.target = target
        url = record.archive_url

        with StagingArea(self.staging_dir) as staging:
            try:
                self._transition(report, RunState.FETCHING)
                self._notify(f"downloading from {url}...")
                archive_path = await fetch_archive(
                    record, staging, client=self.client, attempts=self.fetch_attempts
                )
                self._notify(f"downloading from {url}...DONE")

                self._transition(report, RunState.EXTRACTING)
                loop = asyncio.get_running_loop()
                with closing(iter_entries(archive_path)) as entries:
                    for entry in entries:
                        try:
                            table = await loop.run_in_executor(
                                None, self._load_entry, entry, target, staging, report
                            )
                            report.tables.append(table)
                        except (ExtractionError, LoadError) as e:
                            if self.failure_policy is FailurePolicy.FAIL_FAST:
                                raise
                            logger.warning(f"Skipping entry {entry.name}: {e}")
                            report.errors.append(e)
                            report.skipped.append(entry.name)
                        self._transition(report, RunState.EXTRACTING)
            except Exception as e:
                self._fail(report, e)

        self._transition(report, RunState.DONE)
        report.end_time = time.time()
        logger.info(
            f"Completed {record.title} into {target.database_path}: "
            f"{len(report.tables)} tables loaded, {len(report.errors)} errors"
        )
        return report

    def _load_entry(
        self,
        entry: ArchiveEntry,
        target: IngestionTarget,
        staging: StagingArea,
        report: RunReport
    ) -> str:
        self._transition(report, RunState.STAGING)
        with stage_entry(entry, staging) as path:
            self._transition(report, RunState.LOADING)
            self._notify(f"importing {entry.name} into {target.database_path}...")
            return self.loader.load(entry.name, path, target.database_path)


def print_catalog(catalog: Catalog, console: Optional[Console] = None) -> None:
    """Print the catalog as a table."""
    table = Table(title=f"Archives listed at {catalog.source_url}")
    table.add_column("Period")
    table.add_column("File")
    table.add_column("URL")
    for record in catalog:
        table.add_row(record.title, record.file_name, record.archive_url)
    (console or Console()).print(table)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Load SEC Financial Statement Data Sets into SQLite."
    )
    selection = parser.add_mutually_exclusive_group(required=True)
    selection.add_argument("--latest", action="store_true", help="load the most recent archive")
    selection.add_argument("--year", type=int, help="data set year")
    selection.add_argument("--list", action="store_true", help="list the archives in the catalog")
    parser.add_argument("--quarter", type=int, choices=[1, 2, 3, 4], help="data set quarter")
    parser.add_argument("--database", type=Path, help="database file or directory for per-period files")
    parser.add_argument("--source-url", help="index page listing the archives")
    parser.add_argument("--importer", choices=["sqlalchemy", "sqlite3-cli"], help="bulk import backend")
    parser.add_argument(
        "--continue-on-error",
        action="store_true",
        help="skip entries that fail to extract or import instead of aborting",
    )
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the loader.

    Returns:
        Process exit status
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.year is not None and args.quarter is None:
        parser.error("--year requires --quarter")

    try:
        scraper = await StatementsScraper.create(
            database_path=args.database,
            source_url=args.source_url,
            importer=get_importer(args.importer) if args.importer else None,
            failure_policy=FailurePolicy.CONTINUE if args.continue_on_error else None,
        )
    except ETLError as e:
        logger.error(f"Could not start loader: {e}")
        return 2

    async with scraper:
        if args.list:
            print_catalog(scraper.catalog)
            return 0

        try:
            if args.latest:
                report = await scraper.load_latest()
            else:
                report = await scraper.load(args.year, args.quarter)
        except ETLError as e:
            logger.error(f"Load failed: {e}")
            return 1

    logger.info(f"Run statistics: {report.get_stats()}")
    return 0 if report.ok else 1


def cli() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
