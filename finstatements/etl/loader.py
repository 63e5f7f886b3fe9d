"""
SQLite table loader module.

This module imports one extracted tab-delimited file into a SQLite table,
replacing the table if it already exists. The import itself is delegated to
a :class:`BulkImporter`, so the pipeline does not depend on how the store is
driven:

- :class:`SQLAlchemyImporter` uses the native driver through SQLAlchemy Core.
- :class:`SQLiteCLIImporter` shells out to the ``sqlite3`` command-line
  shell's ``.import`` command.

Both create every column as TEXT from the file's header row.
"""

import csv
import logging
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import Column, MetaData, Table, Text, create_engine
from sqlalchemy.exc import SQLAlchemyError

from finstatements import settings
from finstatements.etl.utils import ConfigError, LoadError

# Configure logger
logger = logging.getLogger("finstatements.loader")

TABLE_FILE_SUFFIX = ".txt"

# Free-text columns in the data sets exceed the csv module's default field limit
FIELD_SIZE_LIMIT = min(sys.maxsize, 2**31 - 1)


def table_name(entry_name: str) -> str:
    """Derive the table name from an archive entry name, e.g. ``sub.txt`` -> ``sub``."""
    if entry_name.endswith(TABLE_FILE_SUFFIX):
        return entry_name[: -len(TABLE_FILE_SUFFIX)]
    return entry_name


class BulkImporter(Protocol):
    """Protocol for create-or-replace bulk imports into a SQLite database."""

    def import_table(self, source: Path, table: str, destination: Path) -> None:
        """Replace ``table`` in ``destination`` with the contents of ``source``.

        Args:
            source: Tab-delimited file whose first row holds the column names
            table: Target table name
            destination: SQLite database file

        Raises:
            LoadError: If the import fails
        """
        ...


class SQLAlchemyImporter:
    """Bulk importer using SQLAlchemy Core and the sqlite3 driver."""

    def __init__(self, batch_size: Optional[int] = None, encoding: Optional[str] = None):
        """Initialize the importer.

        Args:
            batch_size: Rows per insert batch. Defaults to settings.IMPORT_BATCH_SIZE.
            encoding: Source file encoding. Defaults to settings.IMPORT_ENCODING.
        """
        self.batch_size = batch_size or settings.IMPORT_BATCH_SIZE
        self.encoding = encoding or settings.IMPORT_ENCODING

    def import_table(self, source: Path, table: str, destination: Path) -> None:
        engine = create_engine(f"sqlite:///{destination}")
        previous_limit = csv.field_size_limit(FIELD_SIZE_LIMIT)
        try:
            with open(source, newline="", encoding=self.encoding) as f:
                reader = csv.reader(f, delimiter="\t")
                header = next(reader, None)
                if not header:
                    raise LoadError(f"No header row in {source}", table=table, destination=destination)

                sa_table = Table(table, MetaData(), *[Column(name, Text) for name in header])
                width = len(header)

                # drop, create and insert commit together
                with engine.begin() as conn:
                    sa_table.drop(conn, checkfirst=True)
                    sa_table.create(conn)

                    batch: List[Dict[str, Any]] = []
                    for line_no, row in enumerate(reader, start=2):
                        if not row:
                            continue
                        if len(row) != width:
                            if len(row) > width:
                                logger.warning(
                                    f"{table}:{line_no}: expected {width} columns but found {len(row)}, extras ignored"
                                )
                            row = (row + [None] * width)[:width]
                        batch.append(dict(zip(header, row)))

                        if len(batch) >= self.batch_size:
                            conn.execute(sa_table.insert(), batch)
                            batch = []

                    if batch:
                        conn.execute(sa_table.insert(), batch)

        except (SQLAlchemyError, OSError, UnicodeDecodeError, csv.Error) as e:
            logger.error(f"Import error for table {table}: {str(e)}")
            raise LoadError(
                f"Failed to import {source} into {table} of {destination}: {str(e)}",
                table=table,
                destination=destination,
            ) from e
        finally:
            csv.field_size_limit(previous_limit)
            engine.dispose()


class SQLiteCLIImporter:
    """Bulk importer driving the ``sqlite3`` command-line shell."""

    def __init__(self, binary: Optional[str] = None):
        """Initialize the importer.

        Args:
            binary: Path or name of the sqlite3 executable. Defaults to settings.SQLITE3_BINARY.
        """
        self.binary = binary or settings.SQLITE3_BINARY

    def build_command(self, source: Path, table: str, destination: Path) -> List[str]:
        """Build the sqlite3 invocation for one import."""
        quoted_table = '"' + table.replace('"', '""') + '"'
        return [
            self.binary,
            str(destination),
            "-bail",
            "-tabs",
            "-cmd",
            f"DROP TABLE IF EXISTS {quoted_table};",
            "-cmd",
            f".import '{source}' '{table}'",
        ]

    def import_table(self, source: Path, table: str, destination: Path) -> None:
        command = self.build_command(source, table, destination)
        try:
            result = subprocess.run(
                command,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            logger.error(f"Could not run {self.binary}: {str(e)}")
            raise LoadError(
                f"Failed to run {self.binary} for table {table}: {str(e)}",
                table=table,
                destination=destination,
            ) from e

        if result.returncode != 0:
            message = result.stderr.strip() or f"exit status {result.returncode}"
            logger.error(f"{self.binary} rejected import of {table}: {message}")
            raise LoadError(
                f"Failed to import {source} into {table} of {destination}: {message}",
                table=table,
                destination=destination,
            )

        if result.stderr.strip():
            logger.warning(f"{self.binary} reported for {table}: {result.stderr.strip()}")


def get_importer(name: Optional[str] = None) -> BulkImporter:
    """Get the bulk importer configured by name.

    Args:
        name: ``sqlalchemy`` or ``sqlite3-cli``. Defaults to settings.IMPORTER.

    Returns:
        BulkImporter instance

    Raises:
        ConfigError: If the name is unknown
    """
    name = name or settings.IMPORTER
    importers = {
        "sqlalchemy": SQLAlchemyImporter,
        "sqlite3-cli": SQLiteCLIImporter,
    }

    if name not in importers:
        raise ConfigError(f"Unsupported importer: {name}")

    return importers[name]()


class TableLoader:
    """Loads extracted archive entries into SQLite tables."""

    def __init__(self, importer: Optional[BulkImporter] = None):
        self.importer = importer or get_importer()

    def load(self, entry_name: str, source: Path, destination: Path) -> str:
        """Create or replace the table for one archive entry.

        Args:
            entry_name: Name of the entry inside the archive
            source: Local copy of the entry
            destination: SQLite database file

        Returns:
            Name of the loaded table

        Raises:
            LoadError: If the store rejects the import
        """
        table = table_name(entry_name)
        try:
            self.importer.import_table(source, table, destination)
        except LoadError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error importing {entry_name}: {e}")
            raise LoadError(
                f"Failed to import {entry_name} into {destination}: {str(e)}",
                table=table,
                destination=destination,
            ) from e

        logger.info(f"Loaded table {table} into {destination}")
        return table
