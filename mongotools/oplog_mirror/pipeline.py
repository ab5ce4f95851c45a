"""
Pipeline coordinator for the oplog mirror.

OplogMirror owns both sessions, opens the tailing cursor, starts the
stream producer as its own task and then runs the accumulate/flush loop
itself. It waits on the first of: an entry arriving on the hand-off, the
flush timer, a shutdown request, or the producer finishing.

State machine:
    INITIALIZING -> STREAMING -> STOPPED   (shutdown requested, or the
                                           source ran dry and every
                                           forwarded entry was applied)
                              -> FATAL     (any MirrorError)

Invariants:
    - At most one applyOps is in flight; batches apply in formation order
    - The batch is cleared after every flush attempt, success or not
    - A failed apply is never retried; the run ends with that error
    - Sessions and the cursor are released on every exit path

How to change safely:
    - Keep the hand-off bounded; it is the only backpressure
    - Any new exit path must go through run()'s cleanup
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from pymongo import ReadPreference
from pymongo.errors import PyMongoError

from .apply.applier import DestinationApplier, Rejected
from .apply.batcher import DEFAULT_MAX_BATCH_SIZE, BatchAccumulator
from .errors import ApplyError, MirrorConnectionError, MirrorError
from .oplog.base import TRACE, LogEntry
from .oplog.cursor import DEFAULT_IDLE_WAIT_SECONDS, StreamCursor, build_tailing_cursor, split_namespace
from .oplog.producer import StreamProducer
from .session import MongoSessionProvider, Session, SessionProvider

if TYPE_CHECKING:
    from .config import MirrorConfig

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL_SECONDS = 5.0


class PipelineState(Enum):
    """Lifecycle states of an OplogMirror run."""

    INITIALIZING = "initializing"
    STREAMING = "streaming"
    STOPPED = "stopped"
    FATAL = "fatal"


@dataclass
class MirrorStats:
    """Counters describing a run.

    Attributes:
        state: Current pipeline state
        received_count: Entries taken off the hand-off
        batches_applied: Successful applyOps calls
        applied_total: Entries applied on the destination
        last_applied: Seconds part of the last applied timestamp
        producer: Producer statistics
    """

    state: PipelineState
    received_count: int = 0
    batches_applied: int = 0
    applied_total: int = 0
    last_applied: int | None = None
    producer: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class OplogMirror:
    """Tails a source oplog and replays it onto a destination in batches.

    Attributes:
        source_provider: Provider for the source session
        destination_provider: Provider for the destination session
        oplog_ns: Source oplog namespace, "<db>.<collection>"
        seconds: Look-back window for the first entry
        state: Current PipelineState

    Example:
        >>> mirror = OplogMirror.from_config(config)
        >>> stats = await mirror.run()  # Runs until stopped or failed
    """

    def __init__(
        self,
        source_provider: SessionProvider,
        destination_provider: SessionProvider,
        oplog_ns: str = "local.oplog.rs",
        seconds: int = 86400,
        idle_wait_seconds: float = DEFAULT_IDLE_WAIT_SECONDS,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        flush_interval_seconds: float = DEFAULT_FLUSH_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the mirror.

        Args:
            source_provider: Provider for the server whose oplog is read
            destination_provider: Provider for the server ops are applied to
            oplog_ns: Source oplog namespace
            seconds: How many seconds in the past to start reading
            idle_wait_seconds: How long the cursor waits for new entries
            max_batch_size: Entries per applyOps before an immediate flush
            flush_interval_seconds: Timer period for partial batches
            clock: Wall clock used for the start threshold
        """
        if flush_interval_seconds <= 0:
            raise ValueError("flush_interval_seconds must be positive")

        self.source_provider = source_provider
        self.destination_provider = destination_provider
        self.oplog_ns = oplog_ns
        self.seconds = seconds
        self.idle_wait_seconds = idle_wait_seconds
        self.flush_interval_seconds = flush_interval_seconds
        self._clock = clock

        self.state = PipelineState.INITIALIZING
        self.batcher = BatchAccumulator(max_batch_size)
        self.applier: DestinationApplier | None = None
        self.producer: StreamProducer | None = None

        self._handoff: asyncio.Queue[LogEntry] = asyncio.Queue(maxsize=1)
        self._shutdown_event = asyncio.Event()
        self._started = False
        self._received_count = 0
        self._batches_applied = 0

    @classmethod
    def from_config(
        cls,
        config: MirrorConfig,
        source_provider: SessionProvider | None = None,
        destination_provider: SessionProvider | None = None,
    ) -> OplogMirror:
        """Build a mirror from configuration, with pymongo sessions by default.

        The destination gets an unbounded socket timeout so a slow applyOps
        is never cut short. The source reads from the nearest member.
        """
        if destination_provider is None:
            destination_provider = MongoSessionProvider(
                config.destination,
                read_preference=ReadPreference.PRIMARY,
                socket_timeout_ms=None,
            )
        if source_provider is None:
            source_provider = MongoSessionProvider(
                config.source_connection,
                read_preference=ReadPreference.NEAREST,
                socket_timeout_ms=None,
            )

        return cls(
            source_provider=source_provider,
            destination_provider=destination_provider,
            oplog_ns=config.source.oplog_ns,
            seconds=config.source.seconds,
            idle_wait_seconds=config.source.idle_wait_seconds,
            max_batch_size=config.batch.max_batch_size,
            flush_interval_seconds=config.batch.flush_interval_seconds,
        )

    async def run(self, shutdown: asyncio.Event | None = None) -> MirrorStats:
        """Run the pipeline until shutdown, end of stream, or a fatal error.

        Args:
            shutdown: Event that stops the run when set. Defaults to the
                mirror's own event, set by request_shutdown().

        Returns:
            Final statistics after a clean stop

        Raises:
            ConfigurationError: If the oplog namespace is invalid
            MirrorConnectionError: If a session cannot be obtained
            ApplyError: If the destination fails to apply a batch
            StreamError: If reading the source failed (after the entries
                already forwarded were applied)
        """
        if self._started:
            raise RuntimeError("OplogMirror.run() can only be called once")
        self._started = True

        if shutdown is not None:
            self._shutdown_event = shutdown

        # split up the oplog namespace before touching any server
        namespace = split_namespace(self.oplog_ns)
        logger.debug(f"using oplog namespace `{namespace}`")

        dest_session: Session | None = None
        source_session: Session | None = None
        cursor: StreamCursor | None = None
        producer_task: asyncio.Task[None] | None = None

        try:
            try:
                dest_session = await self.destination_provider.get_session()
            except MirrorConnectionError as e:
                raise MirrorConnectionError(f"error connecting to destination db: {e}") from e
            logger.debug(
                f"successfully connected to destination server `{self.destination_provider.describe()}`"
            )

            try:
                source_session = await self.source_provider.get_session()
            except MirrorConnectionError as e:
                raise MirrorConnectionError(f"error connecting to source db: {e}") from e
            logger.debug(
                f"successfully connected to source server `{self.source_provider.describe()}`"
            )

            cursor = await build_tailing_cursor(
                source_session,
                namespace,
                self.seconds,
                self.idle_wait_seconds,
                now=self._clock(),
            )

            self.applier = DestinationApplier(dest_session)
            self.producer = StreamProducer(cursor, self._handoff)
            producer_task = asyncio.create_task(self.producer.run(), name="oplog-producer")

            self.state = PipelineState.STREAMING
            logger.debug("applying oplog entries...")

            await self._stream(producer_task)

            self.state = PipelineState.STOPPED
            logger.info("Oplog mirror stopped", extra=self.stats.to_dict())
            return self.stats

        except MirrorError as e:
            self.state = PipelineState.FATAL
            logger.error(f"Oplog mirror failed: {e}")
            raise

        finally:
            await self._cleanup(producer_task, cursor, source_session, dest_session)

    def request_shutdown(self) -> None:
        """Ask a running pipeline to flush what it holds and stop."""
        self._shutdown_event.set()

    async def _stream(self, producer_task: asyncio.Task[None]) -> None:
        """The accumulate/flush loop. Returns on shutdown or end of stream."""
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.flush_interval_seconds

        stop_task = asyncio.ensure_future(self._shutdown_event.wait())
        get_task: asyncio.Future[LogEntry] | None = None

        try:
            while True:
                if get_task is None:
                    get_task = asyncio.ensure_future(self._handoff.get())

                waiters: set[asyncio.Future[Any]] = {get_task, stop_task}
                if not producer_task.done():
                    waiters.add(producer_task)

                timeout = max(0.0, next_tick - loop.time())
                done, _ = await asyncio.wait(
                    waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )

                if get_task in done:
                    entry = get_task.result()
                    get_task = None
                    self._received_count += 1

                    # too many entries buffered, send now
                    if self.batcher.add(entry):
                        await self._flush("size")

                if stop_task in done:
                    logger.info("Shutdown requested, flushing buffered oplog entries")
                    await self._flush_remaining("shutdown")
                    return

                if self._producer_drained(producer_task, get_task):
                    await self._flush_remaining("end of stream")
                    producer_task.result()
                    if self.producer is not None and self.producer.error is not None:
                        raise self.producer.error
                    logger.info("Source oplog exhausted, all forwarded entries applied")
                    return

                now = loop.time()
                if now >= next_tick:
                    next_tick = now + self.flush_interval_seconds
                    if self.batcher.is_empty:
                        logger.log(TRACE, "flush timer fired with an empty batch")
                    else:
                        await self._flush("timer")

        finally:
            for task in (get_task, stop_task):
                if task is not None and not task.done():
                    task.cancel()

    def _producer_drained(
        self,
        producer_task: asyncio.Task[None],
        get_task: asyncio.Future[LogEntry] | None,
    ) -> bool:
        """True once the producer finished and nothing is left on the hand-off."""
        if not producer_task.done() or not self._handoff.empty():
            return False
        return get_task is None or not get_task.done()

    async def _flush(self, trigger: str) -> None:
        """Apply the buffered batch, raising ApplyError if it is rejected."""
        if self.applier is None:
            raise RuntimeError("cannot flush before the destination session is open")

        logger.debug(
            f"flushing {len(self.batcher)} oplog entries",
            extra={"trigger": trigger, "batch_size": len(self.batcher)},
        )

        try:
            result = await self.applier.apply(self.batcher.entries)
        finally:
            self.batcher.clear()

        # check the server's response for an issue
        if isinstance(result, Rejected):
            raise ApplyError(f"server gave error applying ops: {result.reason}")

        self._batches_applied += 1

    async def _flush_remaining(self, trigger: str) -> None:
        if not self.batcher.is_empty:
            await self._flush(trigger)

    async def _cleanup(
        self,
        producer_task: asyncio.Task[None] | None,
        cursor: StreamCursor | None,
        source_session: Session | None,
        dest_session: Session | None,
    ) -> None:
        """Release the producer, cursor and sessions, whatever the exit path."""
        if producer_task is not None and not producer_task.done():
            producer_task.cancel()
        if producer_task is not None:
            await asyncio.gather(producer_task, return_exceptions=True)

        if cursor is not None:
            try:
                await cursor.close()
            except PyMongoError as e:
                logger.warning(f"Failed to close oplog cursor: {e}")

        for name, session in (("source", source_session), ("destination", dest_session)):
            if session is None:
                continue
            try:
                await session.close()
            except PyMongoError as e:
                logger.warning(f"Failed to close {name} session: {e}")

    @property
    def stats(self) -> MirrorStats:
        """Get pipeline statistics."""
        return MirrorStats(
            state=self.state,
            received_count=self._received_count,
            batches_applied=self._batches_applied,
            applied_total=self.applier.applied_total if self.applier else 0,
            last_applied=(
                self.applier.last_applied.time
                if self.applier and self.applier.last_applied
                else None
            ),
            producer=self.producer.stats if self.producer else {},
        )
