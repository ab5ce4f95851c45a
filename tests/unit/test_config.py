"""
Unit tests for configuration loading and validation.
"""

import logging

import pytest

from mongotools.oplog_mirror.config import (
    BatchConfig,
    ConnectionConfig,
    MirrorConfig,
    ObservabilityConfig,
    SourceConfig,
)
from mongotools.oplog_mirror.errors import ConfigurationError

ENV_VARS = (
    "MONGO_HOST",
    "MONGO_PORT",
    "MONGO_USERNAME",
    "MONGO_PASSWORD",
    "MONGO_AUTH_DB",
    "MONGO_SERVER_SELECTION_TIMEOUT_MS",
    "OPLOG_FROM",
    "OPLOG_NS",
    "OPLOG_SECONDS",
    "OPLOG_IDLE_WAIT_SECONDS",
    "APPLY_MAX_BATCH_SIZE",
    "APPLY_FLUSH_INTERVAL_SECONDS",
    "LOG_LEVEL",
    "LOG_FORMAT",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every setting the mirror reads from the environment."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def _valid(**source) -> MirrorConfig:
    return MirrorConfig(source=SourceConfig(from_host="src:27017", **source))


class TestFromEnv:
    """Tests for environment loading."""

    def test_defaults(self, clean_env):
        """Unset variables fall back to defaults."""
        config = MirrorConfig.from_env()

        assert config.destination == ConnectionConfig()
        assert config.destination.host == "localhost"
        assert config.source.from_host == ""
        assert config.source.oplog_ns == "local.oplog.rs"
        assert config.source.seconds == 86400
        assert config.source.idle_wait_seconds == 600.0
        assert config.batch == BatchConfig(max_batch_size=10000, flush_interval_seconds=5.0)
        assert config.observability == ObservabilityConfig(log_level="INFO", log_format="text")

    def test_values_read(self, clean_env):
        """Every variable is picked up."""
        clean_env.setenv("MONGO_HOST", "rs0/dst1,dst2")
        clean_env.setenv("MONGO_PORT", "27018")
        clean_env.setenv("MONGO_USERNAME", "alice")
        clean_env.setenv("MONGO_PASSWORD", "secret")
        clean_env.setenv("MONGO_AUTH_DB", "users")
        clean_env.setenv("OPLOG_FROM", "src:27017")
        clean_env.setenv("OPLOG_NS", "local.oplog.$main")
        clean_env.setenv("OPLOG_SECONDS", "60")
        clean_env.setenv("APPLY_MAX_BATCH_SIZE", "500")
        clean_env.setenv("APPLY_FLUSH_INTERVAL_SECONDS", "0.5")
        clean_env.setenv("LOG_FORMAT", "json")

        config = MirrorConfig.from_env()

        assert config.destination.host == "rs0/dst1,dst2"
        assert config.destination.port == 27018
        assert config.destination.username == "alice"
        assert config.destination.auth_database == "users"
        assert config.source.from_host == "src:27017"
        assert config.source.oplog_ns == "local.oplog.$main"
        assert config.source.seconds == 60
        assert config.batch.max_batch_size == 500
        assert config.batch.flush_interval_seconds == 0.5
        assert config.observability.log_format == "json"

    def test_bad_number(self, clean_env):
        """Unparseable numbers are configuration errors."""
        clean_env.setenv("OPLOG_SECONDS", "a day")

        with pytest.raises(ConfigurationError, match="invalid environment setting"):
            MirrorConfig.from_env()


class TestValidate:
    """Tests for MirrorConfig.validate."""

    def test_valid(self):
        """A source host is all that is required."""
        _valid().validate()

    def test_source_required(self):
        """Without a source host validation fails."""
        with pytest.raises(ConfigurationError, match="source host"):
            MirrorConfig().validate()

    def test_bad_namespace(self):
        """The oplog namespace must name a collection."""
        with pytest.raises(ConfigurationError, match="must specify a collection"):
            _valid(oplog_ns="local").validate()

    def test_bad_host(self):
        """Malformed host strings are caught before connecting."""
        config = MirrorConfig(
            destination=ConnectionConfig(host="dst:port"),
            source=SourceConfig(from_host="src"),
        )
        with pytest.raises(ConfigurationError, match="invalid port"):
            config.validate()

    @pytest.mark.parametrize(
        "config, message",
        [
            (_valid(seconds=-1), "must not be negative"),
            (_valid(idle_wait_seconds=0), "idle wait must be positive"),
            (
                MirrorConfig(source=SourceConfig(from_host="src"), batch=BatchConfig(max_batch_size=0)),
                "batch size",
            ),
            (
                MirrorConfig(
                    source=SourceConfig(from_host="src"),
                    batch=BatchConfig(flush_interval_seconds=0),
                ),
                "flush interval",
            ),
            (
                MirrorConfig(
                    source=SourceConfig(from_host="src"),
                    observability=ObservabilityConfig(log_format="xml"),
                ),
                "invalid log format",
            ),
            (
                MirrorConfig(
                    destination=ConnectionConfig(username="alice"),
                    source=SourceConfig(from_host="src"),
                ),
                "password is required",
            ),
        ],
    )
    def test_invalid_values(self, config, message):
        """Out of range settings are rejected."""
        with pytest.raises(ConfigurationError, match=message):
            config.validate()


class TestSourceConnection:
    """Tests for the derived source connection."""

    def test_reuses_credentials(self):
        """The source gets the destination's credentials and its own host."""
        config = MirrorConfig(
            destination=ConnectionConfig(host="dst", port=27018, username="alice", password="secret"),
            source=SourceConfig(from_host="rs0/src1,src2"),
        )

        source = config.source_connection

        assert source.host == "rs0/src1,src2"
        assert source.port is None
        assert source.username == "alice"
        assert source.password == "secret"


class TestLogConfig:
    """Tests for configuration logging."""

    def test_password_redacted(self, caplog):
        """The password never reaches the log record."""
        caplog.set_level(logging.INFO, logger="mongotools.oplog_mirror.config")
        config = MirrorConfig(
            destination=ConnectionConfig(username="alice", password="secret"),
            source=SourceConfig(from_host="src"),
        )

        config.log_config()

        record = caplog.records[-1]
        assert record.password == "***"
        assert record.username == "alice"
        assert "secret" not in caplog.text
