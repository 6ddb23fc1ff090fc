from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from .errors import (
    BulkOperationError,
    OperationCanceledError,
    UnprocessedItemsExhaustedError,
    ValidationError,
)
from .protection import ConcurrencyLimiter
from .store import StoreClient, WireItem, WireKey, WriteRequest

logger = logging.getLogger(__name__)

# BatchGetItem and BatchWriteItem per-call item limits.
DEFAULT_READ_CHUNK_SIZE = 100
DEFAULT_WRITE_CHUNK_SIZE = 25


@dataclass(frozen=True)
class BatchConfig:
    read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE
    write_chunk_size: int = DEFAULT_WRITE_CHUNK_SIZE
    max_retries: int = 5
    base_delay_seconds: float = 0.05
    max_delay_seconds: float = 1.0
    max_workers: int = 1

    def __post_init__(self) -> None:
        if self.read_chunk_size <= 0 or self.write_chunk_size <= 0:
            raise ValidationError("chunk sizes must be > 0")
        if self.max_retries < 0:
            raise ValidationError("max_retries must be >= 0")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValidationError("delays must be >= 0")
        if self.max_workers <= 0:
            raise ValidationError("max_workers must be > 0")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> BatchConfig:
        def read(name: str, cast: Callable[[str], Any], default: Any) -> Any:
            raw = (environ.get(name) or "").strip()
            if not raw:
                return default
            try:
                return cast(raw)
            except ValueError as err:
                raise ValidationError(f"{name}: invalid value {raw!r}") from err

        return cls(
            read_chunk_size=read("TABLEPLAN_BATCH_READ_LIMIT", int, DEFAULT_READ_CHUNK_SIZE),
            write_chunk_size=read("TABLEPLAN_BATCH_WRITE_LIMIT", int, DEFAULT_WRITE_CHUNK_SIZE),
            max_retries=read("TABLEPLAN_BATCH_MAX_RETRIES", int, 5),
            base_delay_seconds=read("TABLEPLAN_BATCH_BASE_DELAY", float, 0.05),
            max_delay_seconds=read("TABLEPLAN_BATCH_MAX_DELAY", float, 1.0),
            max_workers=read("TABLEPLAN_BATCH_MAX_WORKERS", int, 1),
        )

    def backoff_seconds(self, attempt: int) -> float:
        seconds = self.base_delay_seconds * (2.0 ** (attempt - 1))
        if seconds > self.max_delay_seconds:
            return self.max_delay_seconds
        return seconds


@dataclass
class CancelScope:
    """Caller-supplied cancellation: an event, a deadline on ``now``'s clock, or both."""

    event: threading.Event | None = None
    deadline: float | None = None
    now: Callable[[], float] = time.monotonic

    @classmethod
    def with_timeout(cls, seconds: float, *, event: threading.Event | None = None) -> CancelScope:
        return cls(event=event, deadline=time.monotonic() + seconds)

    def reason(self) -> str | None:
        if self.event is not None and self.event.is_set():
            return "canceled"
        if self.deadline is not None and self.now() >= self.deadline:
            return "deadline exceeded"
        return None

    def check(self, operation: str, completed: int = 0) -> None:
        reason = self.reason()
        if reason is not None:
            raise OperationCanceledError(operation=operation, completed=completed, reason=reason)


def chunked[T](items: Sequence[T], size: int) -> list[Sequence[T]]:
    if size <= 0:
        raise ValueError("size must be > 0")
    return [items[i : i + size] for i in range(0, len(items), size)]


@dataclass
class _Outcome:
    items: list[Any] = field(default_factory=list)
    failed: list[Any] = field(default_factory=list)
    succeeded: int = 0
    error: BaseException | None = None


class BatchPlanner:
    """Splits key sets and write requests into store-sized chunks and dispatches them.

    Unprocessed entries are retried per chunk with capped exponential
    backoff, so a throttled chunk never restarts chunks that already
    succeeded. With ``max_workers > 1`` chunks run on a bounded thread
    pool and results arrive in no particular order.

    A chunk that fails or is cancelled stops further dispatch. The error
    raised afterwards always carries the number of entries that succeeded,
    including the partial progress of the chunk that stopped.
    """

    def __init__(
        self,
        store: StoreClient,
        table_name: str,
        *,
        config: BatchConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        limiter: ConcurrencyLimiter | None = None,
    ) -> None:
        self._store = store
        self._table_name = table_name
        self._config = config or BatchConfig()
        self._sleep = sleep
        self._limiter = limiter

    @property
    def config(self) -> BatchConfig:
        return self._config

    def run_batch_get(
        self,
        keys: Sequence[WireKey],
        *,
        chunk_size: int | None = None,
        consistent_read: bool = False,
        projection: Sequence[str] | None = None,
        cancel: CancelScope | None = None,
    ) -> list[WireItem]:
        if not keys:
            return []

        size = chunk_size or self._config.read_chunk_size

        def get_chunk(chunk: Sequence[WireKey]) -> _Outcome:
            outcome = _Outcome()
            pending = list(chunk)
            attempts = 0
            try:
                while pending:
                    result = self._call(
                        lambda: self._store.batch_get_item(
                            self._table_name, pending, consistent_read=consistent_read, projection=projection
                        )
                    )
                    outcome.items.extend(result.found)
                    pending = list(result.unprocessed)
                    if pending:
                        if attempts >= self._config.max_retries:
                            break
                        attempts += 1
                        self._backoff("batch_get", attempts, len(pending), cancel)
            except Exception as err:
                logger.warning("batch_get on %s: chunk failed: %s", self._table_name, err)
                outcome.error = err
            outcome.failed.extend(pending)
            outcome.succeeded = len(outcome.items)
            return outcome

        outcomes = self._dispatch("batch_get", chunked(keys, size), get_chunk, cancel)
        self._settle("batch_get", outcomes)
        found = [item for o in outcomes for item in o.items]
        failed = [key for o in outcomes for key in o.failed]
        if failed:
            raise UnprocessedItemsExhaustedError(
                operation="batch_get", unprocessed=failed, succeeded_count=len(found)
            )
        return found

    def run_batch_write(
        self,
        requests: Sequence[WriteRequest],
        *,
        chunk_size: int | None = None,
        cancel: CancelScope | None = None,
    ) -> int:
        if not requests:
            return 0

        size = chunk_size or self._config.write_chunk_size

        def write_chunk(chunk: Sequence[WriteRequest]) -> _Outcome:
            outcome = _Outcome()
            pending = list(chunk)
            attempts = 0
            try:
                while pending:
                    pending = self._call(lambda: self._store.batch_write_item(self._table_name, pending))
                    if pending:
                        if attempts >= self._config.max_retries:
                            break
                        attempts += 1
                        self._backoff("batch_write", attempts, len(pending), cancel)
            except Exception as err:
                logger.warning("batch_write on %s: chunk failed: %s", self._table_name, err)
                outcome.error = err
            outcome.failed.extend(pending)
            outcome.succeeded = len(chunk) - len(pending)
            return outcome

        outcomes = self._dispatch("batch_write", chunked(requests, size), write_chunk, cancel)
        self._settle("batch_write", outcomes)
        written = sum(o.succeeded for o in outcomes)
        failed = [req for o in outcomes for req in o.failed]
        if failed:
            raise UnprocessedItemsExhaustedError(
                operation="batch_write", unprocessed=failed, succeeded_count=written
            )
        return written

    def run_each[I](
        self,
        inputs: Sequence[I],
        call: Callable[[I], bool],
        *,
        operation: str = "run_each",
        cancel: CancelScope | None = None,
    ) -> int:
        """Apply a single-item store call to every input; ``call`` returns False for skipped inputs.

        Item failures do not stop the remaining inputs; cancellation does.
        """
        if not inputs:
            return 0

        def run_chunk(chunk: Sequence[I]) -> _Outcome:
            outcome = _Outcome()
            for pos, item in enumerate(chunk):
                if cancel is not None and (reason := cancel.reason()) is not None:
                    outcome.failed.extend(chunk[pos:])
                    outcome.error = OperationCanceledError(
                        operation=operation, completed=outcome.succeeded, reason=reason
                    )
                    break
                try:
                    applied = self._call(lambda: call(item))
                except Exception as err:
                    logger.warning("%s on %s: item failed: %s", operation, self._table_name, err)
                    outcome.failed.append(item)
                    if outcome.error is None:
                        outcome.error = err
                    continue
                if applied:
                    outcome.succeeded += 1
            return outcome

        chunks = chunked(inputs, self._config.write_chunk_size)
        outcomes = self._dispatch(operation, chunks, run_chunk, cancel, stop_on_error=False)
        self._settle(operation, outcomes)
        return sum(o.succeeded for o in outcomes)

    def run_queries(
        self,
        calls: Sequence[Callable[[], list[WireItem]]],
        *,
        cancel: CancelScope | None = None,
    ) -> list[list[WireItem]]:
        def run_one(chunk: Sequence[Callable[[], list[WireItem]]]) -> _Outcome:
            items: list[WireItem] = []
            for fn in chunk:
                items.extend(self._call(fn))
            return _Outcome(items=items, succeeded=len(items))

        outcomes = self._dispatch("query", chunked(calls, 1), run_one, cancel)
        self._settle("query", outcomes)
        return [o.items for o in outcomes]

    def _call[R](self, fn: Callable[[], R]) -> R:
        if self._limiter is None:
            return fn()
        with self._limiter.acquire():
            return fn()

    def _backoff(self, operation: str, attempt: int, pending: int, cancel: CancelScope | None) -> None:
        delay = self._config.backoff_seconds(attempt)
        logger.warning(
            "%s on %s: %d unprocessed, retry %d/%d in %.3fs",
            operation,
            self._table_name,
            pending,
            attempt,
            self._config.max_retries,
            delay,
        )
        if cancel is not None:
            cancel.check(operation)
            if cancel.deadline is not None:
                delay = max(0.0, min(delay, cancel.deadline - cancel.now()))
        if delay > 0:
            self._sleep(delay)
        if cancel is not None:
            cancel.check(operation)

    def _dispatch[C](
        self,
        operation: str,
        chunks: Sequence[C],
        fn: Callable[[C], _Outcome],
        cancel: CancelScope | None,
        *,
        stop_on_error: bool = True,
    ) -> list[_Outcome]:
        """Run ``fn`` over every chunk, one outcome per chunk.

        Once a chunk is cancelled (or fails, with ``stop_on_error``) the
        chunks not yet started come back as skipped outcomes listing their
        entries as failed. Exceptions escaping ``fn`` propagate unchanged.
        """
        logger.debug("%s on %s: %d chunk(s)", operation, self._table_name, len(chunks))
        workers = min(self._config.max_workers, len(chunks))
        stopped = threading.Event()

        def guarded(chunk: C) -> _Outcome:
            if stopped.is_set():
                return _Outcome(failed=list(chunk))
            if cancel is not None and (reason := cancel.reason()) is not None:
                stopped.set()
                return _Outcome(
                    failed=list(chunk),
                    error=OperationCanceledError(operation=operation, completed=0, reason=reason),
                )
            outcome = fn(chunk)
            if isinstance(outcome.error, OperationCanceledError) or (stop_on_error and outcome.error is not None):
                stopped.set()
            return outcome

        if workers <= 1:
            return [guarded(chunk) for chunk in chunks]

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tableplan-batch") as ex:
            futures: list[Future[_Outcome]] = [ex.submit(guarded, chunk) for chunk in chunks]
            try:
                return [fut.result() for fut in futures]
            except BaseException:
                stopped.set()
                for fut in futures:
                    fut.cancel()
                raise

    def _settle(self, operation: str, outcomes: Sequence[_Outcome]) -> None:
        """Raise the error a set of chunk outcomes calls for; cancellation wins over other causes."""
        errors = [o.error for o in outcomes if o.error is not None]
        if not errors:
            return

        succeeded = sum(o.succeeded for o in outcomes)
        cause = next((e for e in errors if isinstance(e, OperationCanceledError)), errors[0])
        if isinstance(cause, OperationCanceledError):
            raise OperationCanceledError(operation=operation, completed=succeeded, reason=cause.reason) from cause

        remaining = [entry for o in outcomes for entry in o.failed]
        raise BulkOperationError(
            operation=operation, succeeded_count=succeeded, remaining=remaining, cause=cause
        ) from cause
