"""
Configuration settings for the finstatements loader.

This module loads environment variables and provides configuration settings
for catalog discovery, archive download and table import.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Base directory
BASE_DIR = Path(__file__).resolve().parent.parent

# Catalog settings
SOURCE_URL = os.getenv(
    "FINSTATEMENTS_SOURCE_URL",
    "https://www.sec.gov/dera/data/financial-statement-data-sets.html",
)
STRICT_CATALOG = os.getenv("FINSTATEMENTS_STRICT_CATALOG", "true").lower() == "true"

# HTTP settings
# SEC rejects requests that do not declare a User-Agent with contact details
USER_AGENT = os.getenv("FINSTATEMENTS_USER_AGENT", "finstatements admin@example.com")
HTTP_TIMEOUT = float(os.getenv("FINSTATEMENTS_HTTP_TIMEOUT", "30.0"))
FETCH_ATTEMPTS = int(os.getenv("FINSTATEMENTS_FETCH_ATTEMPTS", "1"))

# Destination settings
DATABASE_PATH = Path(os.getenv("FINSTATEMENTS_DATABASE_PATH", str(Path.cwd())))
DATABASE_EXT = os.getenv("FINSTATEMENTS_DATABASE_EXT", "db")
DATABASE_FILE_SUFFIXES = (".db", ".sqlite")

# Import settings
IMPORTER = os.getenv("FINSTATEMENTS_IMPORTER", "sqlalchemy")  # or "sqlite3-cli"
SQLITE3_BINARY = os.getenv("FINSTATEMENTS_SQLITE3_BINARY", "sqlite3")
IMPORT_BATCH_SIZE = int(os.getenv("FINSTATEMENTS_IMPORT_BATCH_SIZE", "5000"))
IMPORT_ENCODING = os.getenv("FINSTATEMENTS_IMPORT_ENCODING", "utf-8")

# Pipeline settings
FAILURE_POLICY = os.getenv("FINSTATEMENTS_FAILURE_POLICY", "fail-fast")  # or "continue"
_staging_dir = os.getenv("FINSTATEMENTS_STAGING_DIR")
STAGING_DIR: Optional[Path] = Path(_staging_dir) if _staging_dir else None
