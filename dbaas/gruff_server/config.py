"""
Configuration management for Gruff.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Hard safety limits (path depth, filter depth, traversal depth) are
      module constants and cannot be raised through configuration

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep defaults in from_env() and the dataclass fields identical
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .graph.traversal import MAX_TRAVERSAL_DEPTH

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        db_path: SQLite database file
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    db_path: str = "/var/lib/gruff/graph.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("GRUFF_DB_PATH", "/var/lib/gruff/graph.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class AclConfig:
    """Access control configuration.

    Attributes:
        max_in_clause_ids: Above this many accessible ACL ids, queries
            post-filter instead of inlining an IN (...) clause
    """

    max_in_clause_ids: int = 1000

    @classmethod
    def from_env(cls) -> AclConfig:
        """Load configuration from environment variables."""
        return cls(max_in_clause_ids=int(os.getenv("ACL_MAX_IN_CLAUSE_IDS", "1000")))


@dataclass(frozen=True)
class TraversalConfig:
    """Graph traversal defaults.

    Attributes:
        default_depth: traverse() depth when the caller gives none
        shortest_path_default_depth: shortest_path() depth when the caller gives none
    """

    default_depth: int = 3
    shortest_path_default_depth: int = 10

    @classmethod
    def from_env(cls) -> TraversalConfig:
        """Load configuration from environment variables."""
        return cls(
            default_depth=int(os.getenv("TRAVERSAL_DEFAULT_DEPTH", "3")),
            shortest_path_default_depth=int(os.getenv("SHORTEST_PATH_DEFAULT_DEPTH", "10")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete configuration.

    Attributes:
        storage: Local storage configuration
        acl: Access control configuration
        traversal: Traversal defaults
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    acl: AclConfig = field(default_factory=AclConfig)
    traversal: TraversalConfig = field(default_factory=TraversalConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            acl=AclConfig.from_env(),
            traversal=TraversalConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.acl.max_in_clause_ids <= 0:
            raise ValueError("ACL_MAX_IN_CLAUSE_IDS must be positive")

        for name, depth in (
            ("TRAVERSAL_DEFAULT_DEPTH", self.traversal.default_depth),
            ("SHORTEST_PATH_DEFAULT_DEPTH", self.traversal.shortest_path_default_depth),
        ):
            if not 0 <= depth <= MAX_TRAVERSAL_DEPTH:
                raise ValueError(f"{name} must be between 0 and {MAX_TRAVERSAL_DEPTH}")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")

        if not os.path.exists(os.path.dirname(self.storage.db_path) or "."):
            logger.warning(
                f"Database directory does not exist: {self.storage.db_path}. "
                "It will be created on first use."
            )

    def log_config(self) -> None:
        """Log the effective configuration."""
        logger.info(
            "Configuration loaded",
            extra={
                "db_path": self.storage.db_path,
                "wal_mode": self.storage.wal_mode,
                "acl_max_in_clause_ids": self.acl.max_in_clause_ids,
                "traversal_default_depth": self.traversal.default_depth,
                "shortest_path_default_depth": self.traversal.shortest_path_default_depth,
                "log_level": self.observability.log_level,
            },
        )
