"""
finstatements: loader for the SEC Financial Statement Data Sets.

Scrapes the quarterly archive catalog, downloads the selected archive and
imports its tab-delimited files into SQLite tables.
"""

__version__ = "0.1.0"
