"""
Archive download and extraction module.

This module downloads a data set archive into the run's staging area and
walks its entries. Each entry is streamed into its own temporary file right
before it is loaded and removed right after.
"""

import logging
import shutil
import zipfile
import zlib
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator, Optional

import httpx

from finstatements.models import LinkRecord
from finstatements.etl.utils import (
    ExtractionError,
    StagingArea,
    create_http_client,
    download_file,
)

# Configure logger
logger = logging.getLogger("finstatements.archive")

# Entries with this suffix document the data set and are not tables
README_SUFFIX = "readme.htm"

COPY_BUFFER_SIZE = 1024 * 1024


async def fetch_archive(
    record: LinkRecord,
    staging: StagingArea,
    client: Optional[httpx.AsyncClient] = None,
    attempts: Optional[int] = None
) -> Path:
    """Download the archive of a catalog record into the staging area.

    The temporary file is registered with ``staging`` before the request is
    issued, so it is cleaned up with the staging area whatever happens.

    Args:
        record: Catalog record to download
        staging: Staging area owning the downloaded file
        client: HTTP client. A temporary client is created when omitted.
        attempts: Number of download attempts

    Returns:
        Path to the downloaded archive

    Raises:
        NetworkError: If the download fails or the response is not HTTP 200
    """
    archive_path = staging.create(Path(record.file_name).stem or "archive", suffix=".zip")

    owns_client = client is None
    http = client or create_http_client()
    try:
        size = await download_file(record.archive_url, archive_path, http, attempts=attempts)
    finally:
        if owns_client:
            await http.aclose()

    logger.info(f"Downloaded {record.file_name} ({size} bytes)")
    return archive_path


@dataclass(frozen=True)
class ArchiveEntry:
    """One data file inside an open archive.

    Only valid while the generator from :func:`iter_entries` that produced it is
    alive; the archive closes when that generator finishes or is closed.
    """
    name: str
    info: zipfile.ZipInfo
    archive: zipfile.ZipFile

    def open(self) -> IO[bytes]:
        """Open a readable stream over the entry's uncompressed bytes."""
        return self.archive.open(self.info)


def is_data_entry(info: zipfile.ZipInfo) -> bool:
    """Return True unless the entry is a directory or the data set readme."""
    return not info.is_dir() and not info.filename.endswith(README_SUFFIX)


def iter_entries(archive_path: Path) -> Iterator[ArchiveEntry]:
    """Iterate over the data entries of an archive.

    Entries are yielded lazily in the archive's directory order. The archive
    stays open until the generator is exhausted or closed, so callers should
    consume each entry before advancing.

    Args:
        archive_path: Local zip archive

    Yields:
        ArchiveEntry for every entry that is not a directory or readme

    Raises:
        ExtractionError: If the archive cannot be opened
    """
    try:
        archive = zipfile.ZipFile(archive_path)
    except (zipfile.BadZipFile, OSError) as e:
        logger.error(f"Error opening archive {archive_path}: {str(e)}")
        raise ExtractionError(f"Failed to open archive {archive_path}: {str(e)}") from e

    with archive:
        for info in archive.infolist():
            if not is_data_entry(info):
                logger.debug(f"Skipping archive entry: {info.filename}")
                continue
            yield ArchiveEntry(name=info.filename, info=info, archive=archive)


@contextmanager
def stage_entry(entry: ArchiveEntry, staging: StagingArea) -> Iterator[Path]:
    """Materialize an archive entry as a temporary file.

    The file is removed from the staging area when the context exits.

    Args:
        entry: Archive entry to copy
        staging: Staging area owning the temporary file

    Yields:
        Path to the extracted file

    Raises:
        ExtractionError: If the entry cannot be read or copied
    """
    path = staging.create(entry.name)
    try:
        try:
            with entry.open() as source, open(path, "wb") as target:
                shutil.copyfileobj(source, target, COPY_BUFFER_SIZE)
        # ValueError: the archive was closed before the entry was staged
        except (zipfile.BadZipFile, zlib.error, NotImplementedError, RuntimeError, OSError, EOFError, ValueError) as e:
            logger.error(f"Error extracting {entry.name}: {str(e)}")
            raise ExtractionError(f"Failed to extract {entry.name}: {str(e)}", entry=entry.name) from e
        yield path
    finally:
        staging.release(path)
