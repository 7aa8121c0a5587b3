"""
CLI tools for Gruff.

This module provides command-line tools for:
- traverse / path: run graph walks against a local database
- compile-filter: show the SQL a filter expression compiles to
- acl-hash: compute the canonical hash of an ACL entry set

Invariants:
    - Tools work offline against a SQLite file
    - Output is JSON on stdout
"""

from .graph_cli import GraphCLI

__all__ = ["GraphCLI"]
