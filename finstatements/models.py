"""
Data models for the finstatements loader.

This module defines the value types passed between the catalog, archive,
loader and pipeline components.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import urlparse


def parse_file_name(url: str) -> str:
    """Return the last path segment of a URL."""
    return PurePosixPath(urlparse(url).path).name


@dataclass(frozen=True)
class LinkRecord:
    """One downloadable archive listed on the index page."""
    archive_url: str
    title: str
    year: int
    quarter: int
    file_name: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "file_name", parse_file_name(self.archive_url))

    @property
    def period(self) -> Tuple[int, int]:
        return self.year, self.quarter

    def __repr__(self) -> str:
        """Return string representation of the link."""
        return f"<LinkRecord(title='{self.title}', url='{self.archive_url}')>"


@dataclass(frozen=True)
class Catalog:
    """Ordered link records scraped from one index page.

    Records keep the row order of the page they were scraped from.
    """
    source_url: str
    records: Tuple[LinkRecord, ...] = ()

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[LinkRecord]:
        return iter(self.records)

    def __getitem__(self, index: int) -> LinkRecord:
        return self.records[index]


@dataclass(frozen=True)
class IngestionTarget:
    """A resolved link together with the database file it is loaded into."""
    record: LinkRecord
    database_path: Path

    @staticmethod
    def period_file_name(record: LinkRecord, ext: str = "db") -> str:
        """Return the per-period database file name, e.g. ``2022q2.db``."""
        return f"{record.year}q{record.quarter}.{ext}"


class RunState(Enum):
    """States of one ingestion run."""
    RESOLVING = "resolving"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    STAGING = "staging"
    LOADING = "loading"
    DONE = "done"
    FAILED = "failed"


class FailurePolicy(Enum):
    """How entry-level failures affect the rest of a run."""
    FAIL_FAST = "fail-fast"
    CONTINUE = "continue"


@dataclass
class RunReport:
    """Outcome and statistics of one ingestion run."""
    target: Optional[IngestionTarget] = None
    state: RunState = RunState.RESOLVING
    tables: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[Exception] = field(default_factory=list)
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.state is RunState.DONE and not self.errors

    def get_elapsed_time(self) -> float:
        """Get elapsed time in seconds.

        Returns:
            Elapsed time in seconds
        """
        return (self.end_time or time.time()) - self.start_time

    def get_stats(self) -> Dict[str, Any]:
        """Get run statistics.

        Returns:
            Dictionary of statistics
        """
        record = self.target.record if self.target else None
        return {
            "title": record.title if record else None,
            "archive_url": record.archive_url if record else None,
            "database_path": str(self.target.database_path) if self.target else None,
            "state": self.state.value,
            "loaded_count": len(self.tables),
            "skipped_count": len(self.skipped),
            "error_count": len(self.errors),
            "tables": list(self.tables),
            "errors": [str(e) for e in self.errors],
            "elapsed_time": self.get_elapsed_time(),
        }
