"""
Utility functions for ETL processes.

This module provides the error taxonomy shared by the ETL modules, logging
configuration, the HTTP client factory, a streamed file download helper and
the staging registry that owns a run's temporary files.
"""

import logging
import os
import tempfile
from pathlib import Path
from types import TracebackType
from typing import List, Optional, Type

import httpx
from rich.logging import RichHandler
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from finstatements import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True)]
)
logger = logging.getLogger("finstatements")

# Backoff between download attempts
RETRY_WAIT = wait_exponential(multiplier=1, min=4, max=10)


class ETLError(Exception):
    """Base exception for ETL-related errors."""
    pass


class ConfigError(ETLError):
    """Exception raised when the loader is configured with invalid values."""
    pass


class ResolutionError(ETLError):
    """Exception raised when no archive matches the requested period."""
    pass


class FetchError(ETLError):
    """Exception raised when the catalog page cannot be retrieved."""
    pass


class NetworkError(ETLError):
    """Exception raised when an archive download fails."""
    pass


class ParseError(ETLError):
    """Exception raised when a catalog row cannot be parsed."""
    pass


class ExtractionError(ETLError):
    """Exception raised when an archive or one of its entries cannot be read."""

    def __init__(self, message: str, entry: Optional[str] = None):
        super().__init__(message)
        self.entry = entry


class LoadError(ETLError):
    """Exception raised when the destination store rejects an import."""

    def __init__(self, message: str, table: Optional[str] = None, destination: Optional[Path] = None):
        super().__init__(message)
        self.table = table
        self.destination = destination


def create_http_client(
    timeout: Optional[float] = None,
    user_agent: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> httpx.AsyncClient:
    """Create the HTTP client used for catalog and archive requests.

    Args:
        timeout: Request timeout in seconds. Defaults to settings.HTTP_TIMEOUT.
        user_agent: User-Agent header. Defaults to settings.USER_AGENT.
        transport: Optional transport, e.g. ``httpx.MockTransport`` in tests

    Returns:
        Configured ``httpx.AsyncClient``
    """
    return httpx.AsyncClient(
        timeout=timeout if timeout is not None else settings.HTTP_TIMEOUT,
        headers={"User-Agent": user_agent or settings.USER_AGENT},
        follow_redirects=True,
        transport=transport,
    )


async def _stream_to_file(client: httpx.AsyncClient, url: str, dest: Path) -> int:
    async with client.stream("GET", url) as response:
        if response.status_code != 200:
            raise NetworkError(f"Failed to download {url}: HTTP {response.status_code}")

        written = 0
        with open(dest, "wb") as f:
            async for chunk in response.aiter_bytes():
                f.write(chunk)
                written += len(chunk)
        return written


async def download_file(
    url: str,
    dest: Path,
    client: httpx.AsyncClient,
    attempts: Optional[int] = None
) -> int:
    """Download a URL into a local file.

    Only an HTTP 200 response is accepted; any other status raises without
    writing to ``dest``. Transport errors are retried up to ``attempts`` times.

    Args:
        url: URL to download
        dest: File to write the response body to
        client: HTTP client
        attempts: Number of attempts. Defaults to settings.FETCH_ATTEMPTS.

    Returns:
        Number of bytes written

    Raises:
        NetworkError: If the download fails or the status is not 200
    """
    attempts = attempts or settings.FETCH_ATTEMPTS
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(max(attempts, 1)),
        wait=RETRY_WAIT,
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await _stream_to_file(client, url, dest)
    except httpx.HTTPError as e:
        logger.error(f"Download error: {str(e)}")
        raise NetworkError(f"Failed to download {url}: {str(e)}") from e
    except OSError as e:
        logger.error(f"Error writing {dest}: {str(e)}")
        raise NetworkError(f"Failed to write download of {url} to {dest}: {str(e)}") from e
    raise NetworkError(f"Failed to download {url}")


class StagingArea:
    """Registry of the temporary files created during one run.

    Every file handed out by :meth:`create` is removed by :meth:`release` or,
    at the latest, by :meth:`cleanup` when the context exits.
    """

    def __init__(self, directory: Optional[Path] = None):
        """Initialize the staging area.

        Args:
            directory: Directory for temporary files. Defaults to settings.STAGING_DIR,
                falling back to the system temporary directory.
        """
        self.directory = directory or settings.STAGING_DIR
        self._paths: List[Path] = []

    @property
    def paths(self) -> List[Path]:
        return list(self._paths)

    def create(self, name: str, suffix: str = "") -> Path:
        """Create an empty temporary file and register it for cleanup.

        Args:
            name: Name hint used as the file prefix
            suffix: File suffix

        Returns:
            Path to the new file
        """
        prefix = f"{Path(name).name or 'staged'}-"
        fd, tmp_name = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=self.directory)
        os.close(fd)
        path = Path(tmp_name)
        self._paths.append(path)
        logger.debug(f"Staged temporary file: {path}")
        return path

    def release(self, path: Path) -> None:
        """Remove a staged file and drop it from the registry."""
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove temporary file {path}: {e}")
            return
        if path in self._paths:
            self._paths.remove(path)

    def cleanup(self) -> int:
        """Remove every staged file still registered.

        Returns:
            Number of files released
        """
        count = 0
        for path in list(self._paths):
            self.release(path)
            count += 1
        return count

    def __enter__(self) -> "StagingArea":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType]
    ) -> None:
        self.cleanup()
