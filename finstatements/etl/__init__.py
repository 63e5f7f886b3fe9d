"""
ETL (Extract, Transform, Load) package for the finstatements loader.

This package contains modules for discovering the archive catalog,
downloading and extracting archives, and loading their files into SQLite.
"""
