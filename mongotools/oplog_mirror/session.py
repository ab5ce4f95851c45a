"""
Sessions to the source and destination servers.

A Session is the narrow surface the pipeline needs from a server: run an
admin command and open a tailing cursor. SessionProvider hands out
connected sessions. The production implementation wraps pymongo's
AsyncMongoClient; the in-memory one wires InMemoryOplog and
InMemoryDestination together for tests.

Invariants:
    - get_session() returns only after the server answered a ping
    - Sessions are used by exactly one task, no locking is done here
    - admin_command() returns the raw reply and never raises on ok: 0

How to change safely:
    - Keep both implementations in step with the Session protocol
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pymongo import AsyncMongoClient, CursorType, ReadPreference
from pymongo.errors import ConfigurationError as PyMongoConfigurationError
from pymongo.errors import PyMongoError

from .errors import ConfigurationError, MirrorConnectionError
from .oplog.base import OplogCursor

if TYPE_CHECKING:
    from .apply.memory import InMemoryDestination
    from .config import ConnectionConfig
    from .oplog.memory import InMemoryOplog

logger = logging.getLogger(__name__)

DEFAULT_PORT = 27017


@runtime_checkable
class Session(Protocol):
    """Protocol for a connected server session."""

    @abstractmethod
    async def admin_command(self, command: dict[str, Any]) -> dict[str, Any]:
        """Run a command against the admin database.

        Returns:
            The raw server reply, including {"ok": 0} replies

        Raises:
            PyMongoError: On transport failures
        """
        ...

    @abstractmethod
    async def tail(
        self,
        database: str,
        collection: str,
        query: dict[str, Any],
        idle_wait_seconds: float,
    ) -> OplogCursor:
        """Open a tailing, await-data cursor over a capped collection."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


@runtime_checkable
class SessionProvider(Protocol):
    """Protocol for something that hands out connected sessions."""

    @abstractmethod
    async def get_session(self) -> Session:
        """Connect and return a session.

        Raises:
            MirrorConnectionError: If the server cannot be reached
        """
        ...

    @abstractmethod
    def describe(self) -> str:
        """Human readable server address, for logging."""
        ...


@dataclass(frozen=True)
class HostSpec:
    """A parsed mongo tools host string.

    Attributes:
        hosts: "host:port" seeds
        replica_set: Replica set name, if the string carried one
    """

    hosts: tuple[str, ...]
    replica_set: str | None = None

    def __str__(self) -> str:
        seeds = ",".join(self.hosts)
        return f"{self.replica_set}/{seeds}" if self.replica_set else seeds


def parse_host_string(host: str, port: int | None = None) -> HostSpec:
    """Parse "host[:port][,host...]" or "setName/host[:port],host[:port]".

    A separate `port` is applied to seeds that do not carry their own.

    Raises:
        ConfigurationError: If no host is given or a port is not numeric
    """
    replica_set = None
    seeds = host.strip()
    if "/" in seeds:
        replica_set, _, seeds = seeds.partition("/")
        replica_set = replica_set or None

    hosts = []
    for seed in seeds.split(","):
        seed = seed.strip()
        if not seed:
            continue
        name, sep, seed_port = seed.rpartition(":") if ":" in seed else (seed, "", "")
        if sep:
            if not seed_port.isdigit():
                raise ConfigurationError(f"invalid port in host string `{host}`")
            hosts.append(f"{name}:{seed_port}")
        else:
            hosts.append(f"{seed}:{port or DEFAULT_PORT}")

    if not hosts:
        raise ConfigurationError(f"no hosts found in host string `{host}`")

    return HostSpec(hosts=tuple(hosts), replica_set=replica_set)


class MongoSession:
    """Session backed by a pymongo AsyncMongoClient."""

    def __init__(self, client: AsyncMongoClient) -> None:
        self._client = client

    async def admin_command(self, command: dict[str, Any]) -> dict[str, Any]:
        return await self._client.admin.command(command, check=False)

    async def tail(
        self,
        database: str,
        collection: str,
        query: dict[str, Any],
        idle_wait_seconds: float,
    ) -> OplogCursor:
        cursor = self._client[database][collection].find(
            query,
            cursor_type=CursorType.TAILABLE_AWAIT,
            oplog_replay=True,
        )
        return cursor.max_await_time_ms(int(idle_wait_seconds * 1000))

    async def close(self) -> None:
        await self._client.close()


class MongoSessionProvider:
    """Creates MongoSessions from a ConnectionConfig.

    Attributes:
        config: Host and credential settings
        read_preference: Which members reads may go to
        socket_timeout_ms: Per-operation socket timeout, None for unbounded

    Example:
        >>> provider = MongoSessionProvider(config, read_preference=ReadPreference.NEAREST)
        >>> session = await provider.get_session()
    """

    def __init__(
        self,
        config: ConnectionConfig,
        read_preference: Any = ReadPreference.PRIMARY,
        socket_timeout_ms: int | None = None,
    ) -> None:
        self.config = config
        self.read_preference = read_preference
        self.socket_timeout_ms = socket_timeout_ms
        self.host_spec = parse_host_string(config.host, config.port)

    def describe(self) -> str:
        return str(self.host_spec)

    def client_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for AsyncMongoClient."""
        kwargs: dict[str, Any] = {
            "host": list(self.host_spec.hosts),
            "read_preference": self.read_preference,
            "socketTimeoutMS": self.socket_timeout_ms,
            "serverSelectionTimeoutMS": self.config.server_selection_timeout_ms,
        }

        if self.host_spec.replica_set:
            kwargs["replicaset"] = self.host_spec.replica_set
        elif len(self.host_spec.hosts) == 1:
            # a lone seed is read from directly, even if it is a secondary
            kwargs["directConnection"] = True

        if self.config.username:
            kwargs["username"] = self.config.username
            kwargs["password"] = self.config.password
            kwargs["authSource"] = self.config.auth_database

        return kwargs

    async def get_session(self) -> MongoSession:
        try:
            client: AsyncMongoClient = AsyncMongoClient(**self.client_kwargs())
        except PyMongoConfigurationError as e:
            raise ConfigurationError(str(e)) from e

        try:
            await client.admin.command("ping")
        except PyMongoError as e:
            await client.close()
            raise MirrorConnectionError(f"{self.describe()}: {e}") from e

        return MongoSession(client)


# In-memory implementation


@dataclass
class InMemorySession:
    """Session over in-memory backends (testing)."""

    oplog: InMemoryOplog | None = None
    destination: InMemoryDestination | None = None
    closed: bool = False
    opened_cursors: list[Any] = field(default_factory=list)

    async def admin_command(self, command: dict[str, Any]) -> dict[str, Any]:
        if self.destination is None:
            return {"ok": 0.0, "errmsg": "no destination attached"}
        return await self.destination.admin_command(command)

    async def tail(
        self,
        database: str,
        collection: str,
        query: dict[str, Any],
        idle_wait_seconds: float,
    ) -> OplogCursor:
        if self.oplog is None:
            raise MirrorConnectionError(f"no oplog attached for {database}.{collection}")
        cursor = self.oplog.tail(query, idle_wait_seconds)
        self.opened_cursors.append(cursor)
        return cursor

    async def close(self) -> None:
        self.closed = True


class InMemorySessionProvider:
    """Hands out one InMemorySession, or fails with a preset error (testing)."""

    def __init__(
        self,
        session: InMemorySession | None = None,
        name: str = "memory",
        error: str | None = None,
    ) -> None:
        self.session = session or InMemorySession()
        self.name = name
        self.error = error
        self.get_session_calls = 0

    def describe(self) -> str:
        return self.name

    async def get_session(self) -> InMemorySession:
        self.get_session_calls += 1
        if self.error is not None:
            raise MirrorConnectionError(f"{self.name}: {self.error}")
        return self.session
