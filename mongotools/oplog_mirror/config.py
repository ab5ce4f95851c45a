"""
Configuration management for the oplog mirror.

Settings come from environment variables; the command line can override
any of them (see main.py). This module provides typed configuration
classes with validation.

Invariants:
    - All settings have sensible defaults except the source host
    - Validation runs before any connection is attempted
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Mirror every new setting in the CLI options
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace

from .errors import ConfigurationError
from .oplog.cursor import split_namespace
from .session import parse_host_string

logger = logging.getLogger(__name__)

LOG_FORMATS = ("json", "text")


@dataclass(frozen=True)
class ConnectionConfig:
    """Server connection settings.

    The destination uses these as-is. The source reuses the credentials with
    the host replaced by SourceConfig.from_host.

    Attributes:
        host: Host string, "host[:port][,...]" or "setName/host[:port],..."
        port: Default port for seeds without one
        username: Username, if authentication is enabled
        password: Password, if authentication is enabled
        auth_database: Database holding the user's credentials
        server_selection_timeout_ms: How long to wait for a usable server
    """

    host: str = "localhost"
    port: int | None = None
    username: str | None = None
    password: str | None = None
    auth_database: str = "admin"
    server_selection_timeout_ms: int = 30000

    @classmethod
    def from_env(cls) -> ConnectionConfig:
        """Load configuration from environment variables."""
        port = os.getenv("MONGO_PORT")
        return cls(
            host=os.getenv("MONGO_HOST", "localhost"),
            port=int(port) if port else None,
            username=os.getenv("MONGO_USERNAME"),
            password=os.getenv("MONGO_PASSWORD"),
            auth_database=os.getenv("MONGO_AUTH_DB", "admin"),
            server_selection_timeout_ms=int(
                os.getenv("MONGO_SERVER_SELECTION_TIMEOUT_MS", "30000")
            ),
        )

    def with_host(self, host: str) -> ConnectionConfig:
        """Same credentials, different server."""
        return replace(self, host=host, port=None)

    @property
    def address(self) -> str:
        """Host and port, purely for logging."""
        return f"{self.host}:{self.port}" if self.port else self.host


@dataclass(frozen=True)
class SourceConfig:
    """Source oplog settings.

    Attributes:
        from_host: Host string of the server whose oplog is read
        oplog_ns: Namespace of the oplog collection
        seconds: Look-back window, in seconds before now
        idle_wait_seconds: How long the cursor waits for new entries
    """

    from_host: str = ""
    oplog_ns: str = "local.oplog.rs"
    seconds: int = 86400
    idle_wait_seconds: float = 600.0

    @classmethod
    def from_env(cls) -> SourceConfig:
        """Load configuration from environment variables."""
        return cls(
            from_host=os.getenv("OPLOG_FROM", ""),
            oplog_ns=os.getenv("OPLOG_NS", "local.oplog.rs"),
            seconds=int(os.getenv("OPLOG_SECONDS", "86400")),
            idle_wait_seconds=float(os.getenv("OPLOG_IDLE_WAIT_SECONDS", "600")),
        )


@dataclass(frozen=True)
class BatchConfig:
    """Batching settings for the apply loop.

    Attributes:
        max_batch_size: Entries per applyOps before an immediate flush
        flush_interval_seconds: Timer period for flushing partial batches
    """

    max_batch_size: int = 10000
    flush_interval_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> BatchConfig:
        """Load configuration from environment variables."""
        return cls(
            max_batch_size=int(os.getenv("APPLY_MAX_BATCH_SIZE", "10000")),
            flush_interval_seconds=float(os.getenv("APPLY_FLUSH_INTERVAL_SECONDS", "5")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (TRACE, DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )


@dataclass
class MirrorConfig:
    """Complete oplog mirror configuration.

    Attributes:
        destination: Destination connection settings
        source: Source oplog settings
        batch: Batching settings
        observability: Logging settings
    """

    destination: ConnectionConfig = field(default_factory=ConnectionConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> MirrorConfig:
        """Load complete configuration from environment variables.

        Not validated: the CLI may still fill in missing values.

        Raises:
            ConfigurationError: If a numeric setting cannot be parsed
        """
        try:
            return cls(
                destination=ConnectionConfig.from_env(),
                source=SourceConfig.from_env(),
                batch=BatchConfig.from_env(),
                observability=ObservabilityConfig.from_env(),
            )
        except ValueError as e:
            raise ConfigurationError(f"invalid environment setting: {e}") from e

    @property
    def source_connection(self) -> ConnectionConfig:
        """Connection settings for the source server."""
        return self.destination.with_host(self.source.from_host)

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if not self.source.from_host:
            raise ConfigurationError("a source host (--from or OPLOG_FROM) is required")

        split_namespace(self.source.oplog_ns)
        parse_host_string(self.source.from_host)
        parse_host_string(self.destination.host, self.destination.port)

        if self.source.seconds < 0:
            raise ConfigurationError("the look-back window must not be negative")
        if self.source.idle_wait_seconds <= 0:
            raise ConfigurationError("the cursor idle wait must be positive")
        if self.batch.max_batch_size < 1:
            raise ConfigurationError("the batch size must be at least 1")
        if self.batch.flush_interval_seconds <= 0:
            raise ConfigurationError("the flush interval must be positive")
        if self.observability.log_format not in LOG_FORMATS:
            raise ConfigurationError(
                f"invalid log format '{self.observability.log_format}'. "
                f"Must be one of: {', '.join(LOG_FORMATS)}"
            )
        if self.destination.username and self.destination.password is None:
            raise ConfigurationError("a password is required when a username is given")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Oplog mirror configuration loaded",
            extra={
                "destination": self.destination.address,
                "source": self.source.from_host,
                "oplog_ns": self.source.oplog_ns,
                "seconds": self.source.seconds,
                "idle_wait_seconds": self.source.idle_wait_seconds,
                "max_batch_size": self.batch.max_batch_size,
                "flush_interval_seconds": self.batch.flush_interval_seconds,
                "username": self.destination.username,
                "password": "***" if self.destination.password else None,
                "log_level": self.observability.log_level,
            },
        )
