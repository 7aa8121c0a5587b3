"""
Gruff Test Suite.

This package contains:
- unit/: Unit tests (SQLite in temporary directories, no services)
"""
