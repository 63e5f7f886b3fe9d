#!/usr/bin/env python3
"""
Command-line loader for the SEC Financial Statement Data Sets.

Examples:
    load_statements.py --list
    load_statements.py --year 2022 --quarter 2 --database ./data
    load_statements.py --latest --database ./statements.db
"""

from finstatements.etl.pipeline import cli


if __name__ == "__main__":
    cli()
