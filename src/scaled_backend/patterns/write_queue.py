"""Write-behind queue that coalesces concurrent writes into periodic bulk operations."""

import asyncio
import json
import logging
import threading
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from scaled_backend.models import User, WriteIntent, WriteKind, WriteQueueConfig
from scaled_backend.patterns.circuit_breaker import CircuitBreaker
from scaled_backend.patterns.ticker import IntervalTicker, Ticker
from scaled_backend.persistence.base import RecordNotFoundError, UserStore

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass
class WriteQueueMetrics:
    """Metrics for tracking write queue throughput and failures."""

    items_enqueued: int
    items_processed: int
    items_failed: int
    batches_processed: int
    batches_failed: int
    pending: int
    avg_batch_size: float
    processing_time_ms: float = field(default=0.0)


class WriteQueueShutdownError(Exception):
    """Raised when writing to a queue that has been stopped."""

    pass


class BatchSubmissionError(Exception):
    """A bulk submission failed; every intent of that batch resolves with this error.

    Attributes:
        cause: The exception raised by the storage backend (or the circuit breaker).
        batch_size: Number of intents that shared this failure.
    """

    def __init__(self, message: str, cause: BaseException, batch_size: int) -> None:
        super().__init__(message)
        self.cause = cause
        self.batch_size = batch_size


class WriteQueue:
    """
    Batching write queue in front of a UserStore.

    Callers enqueue write intents and await a future; a timer-driven flush
    drains at most `batch_size` intents from the head of the pending sequence
    and submits all creates of that batch as one bulk insert. Each intent is
    resolved with its own row, matched by position, or with the batch failure.

    Update and delete intents are applied one at a time after the bulk insert;
    they honour the same enqueue/resolve contract.

    Args:
        store: Storage backend receiving the writes.
        config: Batch size and flush interval. Read from WRITE_QUEUE_* env vars if omitted.
        ticker: Timer driving `flush`. Defaults to an IntervalTicker at the flush interval.
        circuit_breaker: Breaker guarding every store call. UserService attaches
            its database breaker when none is given.

    Example:
        ```python
        queue = WriteQueue(store, circuit_breaker=guarded("postgres"))
        queue.start()

        user = await queue.enqueue(WriteIntent.create("Ada", "ada@example.com"))

        await queue.stop()
        ```
    """

    def __init__(
        self,
        store: UserStore,
        config: WriteQueueConfig | None = None,
        *,
        ticker: Ticker | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ) -> None:
        self._config = config or WriteQueueConfig.from_env()
        self._store = store
        self._ticker: Ticker = ticker or IntervalTicker(self._config.flush_interval)
        self._circuit_breaker = circuit_breaker

        self._pending: deque[WriteIntent] = deque()
        self._lock = threading.Lock()
        self._flushing = False
        self._running = False
        self._shutdown = False

        # Metrics
        self._items_enqueued = 0
        self._items_processed = 0
        self._items_failed = 0
        self._batches_processed = 0
        self._batches_failed = 0
        self._total_processing_time = 0.0

    @property
    def config(self) -> WriteQueueConfig:
        """Effective configuration."""
        return self._config

    @property
    def circuit_breaker(self) -> CircuitBreaker | None:
        """Breaker guarding store calls, if any."""
        return self._circuit_breaker

    @circuit_breaker.setter
    def circuit_breaker(self, breaker: CircuitBreaker | None) -> None:
        self._circuit_breaker = breaker

    @property
    def pending_count(self) -> int:
        """Number of intents waiting to be drained."""
        return len(self._pending)

    @property
    def is_running(self) -> bool:
        """Check if the timer is driving flushes."""
        return self._running

    @property
    def is_flushing(self) -> bool:
        """Check if a flush is in progress."""
        return self._flushing

    def enqueue(self, intent: WriteIntent) -> asyncio.Future[Any]:
        """Append an intent to the tail of the pending sequence.

        Must be called from a running event loop. Never waits on the store.

        Args:
            intent: The write to queue.

        Returns:
            asyncio.Future: Resolves with the resulting User (None for deletes)
            or with the failure of the batch the intent was drained into.

        Raises:
            TypeError: If the intent is structurally invalid.
            ValueError: If the intent was already enqueued.
            WriteQueueShutdownError: If the queue has been stopped.
        """
        if not isinstance(intent.kind, WriteKind):
            raise TypeError(f"Unsupported write kind: {intent.kind!r}")
        if not isinstance(intent.payload, dict):
            raise TypeError("WriteIntent.payload must be a dict")
        if intent.completion is not None:
            raise ValueError("WriteIntent has already been enqueued")

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

        with self._lock:
            if self._shutdown:
                raise WriteQueueShutdownError("Write queue is shut down")
            intent.completion = future
            self._pending.append(intent)
            self._items_enqueued += 1

        return future

    async def submit(self, kind: WriteKind | str, payload: dict[str, Any]) -> User | None:
        """Enqueue a write and wait for its result."""
        return await self.enqueue(WriteIntent(kind=WriteKind(kind), payload=payload))

    async def flush(self) -> int:
        """Drain one batch from the head of the pending sequence and process it.

        No-op when another flush is in progress or nothing is pending. Batch
        failures are delivered to the affected intents and never raised here.
        If the flush itself is cancelled, every drained intent not yet settled
        is rejected with a BatchSubmissionError before the cancellation
        propagates.

        Returns:
            int: Number of intents drained.
        """
        with self._lock:
            if self._flushing or not self._pending:
                return 0
            self._flushing = True
            size = min(self._config.batch_size, len(self._pending))
            batch = [self._pending.popleft() for _ in range(size)]

        try:
            await self._process_batch(batch)
        except BaseException as exc:
            # Drained intents are no longer pending; settle them before unwinding.
            self._abandon(batch, exc)
            raise
        finally:
            with self._lock:
                self._flushing = False

        return len(batch)

    def _abandon(self, batch: list[WriteIntent], exc: BaseException) -> None:
        unsettled = [
            intent
            for intent in batch
            if intent.completion is not None and not intent.completion.done()
        ]
        if not unsettled:
            return

        error = BatchSubmissionError(
            f"Flush interrupted with {len(unsettled)} unsettled writes: {exc!r}",
            cause=exc,
            batch_size=len(unsettled),
        )
        error.__cause__ = exc
        for intent in unsettled:
            self._reject(intent, error)

        with self._lock:
            self._items_failed += len(unsettled)
            self._batches_failed += 1

        logger.error(
            json.dumps(
                {
                    "event": "write_queue_flush_interrupted",
                    "unsettled": len(unsettled),
                    "error": repr(exc),
                    "timestamp": datetime.now(UTC).isoformat(),
                }
            )
        )

    async def _guard(self, call: Callable[[], Awaitable[T]]) -> T:
        if self._circuit_breaker is None:
            return await call()
        return await self._circuit_breaker.execute(call)

    async def _process_batch(self, batch: list[WriteIntent]) -> None:
        """Process a drained batch.

        Args:
            batch: Intents in submission order.
        """
        start_time = asyncio.get_running_loop().time()

        creates = [intent for intent in batch if intent.kind is WriteKind.CREATE]
        others = [intent for intent in batch if intent.kind is not WriteKind.CREATE]

        failed = 0
        if creates:
            failed += await self._submit_creates(creates)
        for intent in others:
            if not await self._apply_single(intent):
                failed += 1

        processing_time = (asyncio.get_running_loop().time() - start_time) * 1000

        with self._lock:
            self._items_processed += len(batch)
            self._items_failed += failed
            self._batches_processed += 1
            self._total_processing_time += processing_time

        logger.debug(
            json.dumps(
                {
                    "event": "write_queue_flush",
                    "drained": len(batch),
                    "creates": len(creates),
                    "failed": failed,
                    "duration_ms": round(processing_time, 3),
                }
            )
        )

    async def _submit_creates(self, creates: list[WriteIntent]) -> int:
        """Bulk-insert every create of the batch; returns the number of failed intents."""
        rows = [dict(intent.payload) for intent in creates]

        try:
            records = await self._guard(lambda: self._store.bulk_insert(rows))
            if len(records) != len(creates):
                raise RuntimeError(
                    f"bulk_insert returned {len(records)} rows for {len(creates)} inserts"
                )
        except Exception as exc:
            error = BatchSubmissionError(
                f"Bulk insert of {len(creates)} rows failed: {exc}",
                cause=exc,
                batch_size=len(creates),
            )
            error.__cause__ = exc
            for intent in creates:
                self._reject(intent, error)

            with self._lock:
                self._batches_failed += 1

            logger.error(
                json.dumps(
                    {
                        "event": "write_queue_batch_failed",
                        "kind": WriteKind.CREATE.value,
                        "batch_size": len(creates),
                        "error": repr(exc),
                        "timestamp": datetime.now(UTC).isoformat(),
                    }
                )
            )
            return len(creates)

        for intent, record in zip(creates, records, strict=True):
            self._resolve(intent, record)
        return 0

    async def _apply_single(self, intent: WriteIntent) -> bool:
        """Apply an update or delete intent; returns False if it failed."""
        user_id = intent.payload.get("id")

        try:
            if intent.kind is WriteKind.UPDATE:
                fields = {key: value for key, value in intent.payload.items() if key != "id"}
                result = await self._guard(lambda: self._store.update(user_id, fields))
                if result is None:
                    raise RecordNotFoundError(user_id)
            else:
                found = await self._guard(lambda: self._store.delete(user_id))
                if not found:
                    raise RecordNotFoundError(user_id)
                result = None
        except Exception as exc:
            logger.warning(
                json.dumps(
                    {
                        "event": "write_queue_write_failed",
                        "kind": intent.kind.value,
                        "id": user_id,
                        "error": repr(exc),
                    }
                )
            )
            self._reject(intent, exc)
            return False

        self._resolve(intent, result)
        return True

    @staticmethod
    def _resolve(intent: WriteIntent, value: Any) -> None:
        # The caller may have cancelled its wait; the slot is then already settled.
        if intent.completion is not None and not intent.completion.done():
            intent.completion.set_result(value)

    @staticmethod
    def _reject(intent: WriteIntent, error: BaseException) -> None:
        if intent.completion is not None and not intent.completion.done():
            intent.completion.set_exception(error)

    def start(self) -> None:
        """Attach `flush` to the ticker, allowing restarts after stop."""
        if self._running:
            return

        with self._lock:
            self._shutdown = False
        self._running = True
        self._ticker.start(self.flush)

    async def stop(self, drain: bool = True) -> None:
        """Stop the timer and refuse new writes.

        Args:
            drain: If True, flush until nothing is pending. If False, resolve
                every pending intent with WriteQueueShutdownError.
        """
        if self._running:
            await self._ticker.stop()
            self._running = False

        with self._lock:
            self._shutdown = True

        if drain:
            while self._pending or self._flushing:
                if await self.flush() == 0:
                    # Another flush owns the batch in progress
                    await asyncio.sleep(0)
            return

        with self._lock:
            abandoned = list(self._pending)
            self._pending.clear()

        error = WriteQueueShutdownError("Write queue stopped before the write was flushed")
        for intent in abandoned:
            self._reject(intent, error)

        with self._lock:
            self._items_failed += len(abandoned)

    def get_metrics(self) -> WriteQueueMetrics:
        """Get current queue metrics.

        Returns:
            WriteQueueMetrics: Current metrics.
        """
        avg_batch_size = (
            self._items_processed / self._batches_processed if self._batches_processed > 0 else 0.0
        )

        return WriteQueueMetrics(
            items_enqueued=self._items_enqueued,
            items_processed=self._items_processed,
            items_failed=self._items_failed,
            batches_processed=self._batches_processed,
            batches_failed=self._batches_failed,
            pending=len(self._pending),
            avg_batch_size=avg_batch_size,
            processing_time_ms=self._total_processing_time,
        )
