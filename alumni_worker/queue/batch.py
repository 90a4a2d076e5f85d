"""Chunked iteration over large collections with per-item failure isolation.

The iterator knows nothing about persistence: callers pass an async
``fetch_page(offset, limit)`` that returns at most ``limit`` items. A page
shorter than ``limit`` ends the iteration.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from .errors import BatchAbortedError
from .models import PermanentFailure, Success

logger = logging.getLogger(__name__)

FetchPage = Callable[[int, int], Awaitable[list]]
ItemFn = Callable[[Any], Awaitable[Any]]
ChunkFn = Callable[[list, "BatchCursor"], Awaitable[Any]]

PROGRESS_EVERY = 100


@dataclass
class BatchCursor:
    """Position and running counters of one batch pass."""
    source: str
    chunk_size: int
    offset: int = 0
    processed_count: int = 0
    error_count: int = 0
    chunks: int = 0
    errors: list[str] = field(default_factory=list)  # Last few item errors, for the summary

    @property
    def total(self) -> int:
        return self.processed_count + self.error_count

    @property
    def failure_ratio(self) -> float:
        if self.total == 0:
            return 0.0
        return self.error_count / self.total

    def record_error(self, message: str, keep: int = 20) -> None:
        self.error_count += 1
        self.errors.append(message)
        if len(self.errors) > keep:
            del self.errors[0]

    def summary(self) -> dict:
        return {
            "source": self.source,
            "chunks": self.chunks,
            "processed": self.processed_count,
            "errors": self.error_count,
            "offset": self.offset,
        }

    def threshold_reached(self, failure_threshold: float = 1.0) -> bool:
        return self.error_count > 0 and self.failure_ratio >= failure_threshold

    def to_result(self, failure_threshold: float = 1.0):
        """
        Map the batch outcome to an ExecutionResult.

        Partial failures are tolerated; the task fails permanently only when
        the failure ratio reaches ``failure_threshold`` (1.0 = every item
        failed). An empty batch is a success.
        """
        if self.threshold_reached(failure_threshold):
            return PermanentFailure(
                f"{self.error_count}/{self.total} items failed in {self.source}",
            )
        return Success(self.summary())


async def iter_chunks(
    fetch_page: FetchPage,
    chunk_size: int,
    *,
    source: str = "batch",
    start_offset: int = 0,
    cursor: Optional[BatchCursor] = None,
) -> AsyncIterator[list]:
    """
    Lazily yield pages of at most ``chunk_size`` items.

    Raises BatchAbortedError if a page cannot be fetched; ``cursor.offset``
    then points at the first unfetched item.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    cursor = cursor or BatchCursor(source=source, chunk_size=chunk_size, offset=start_offset)

    while True:
        try:
            page = await fetch_page(cursor.offset, chunk_size)
        except Exception as e:
            logger.error(f"[BATCH] {cursor.source}: fetching offset {cursor.offset} failed: {e}")
            raise BatchAbortedError(f"Fetching {cursor.source} at offset {cursor.offset} failed: {e}", cursor) from e

        if not page:
            return
        page = list(page)[:chunk_size]
        cursor.chunks += 1
        cursor.offset += len(page)
        yield page
        if len(page) < chunk_size:
            return


async def for_each_chunk(
    fetch_page: FetchPage,
    chunk_size: int,
    fn: ChunkFn,
    *,
    source: str = "batch",
    start_offset: int = 0,
) -> BatchCursor:
    """
    Call ``fn(chunk, cursor)`` once per chunk.

    ``fn`` is responsible for updating the cursor counters. If it raises,
    every item of that chunk is counted as an error and iteration continues.
    """
    cursor = BatchCursor(source=source, chunk_size=chunk_size, offset=start_offset)
    async for chunk in iter_chunks(fetch_page, chunk_size, cursor=cursor):
        try:
            await fn(chunk, cursor)
        except Exception as e:
            logger.exception(f"[BATCH] {source}: chunk {cursor.chunks} failed")
            for _ in chunk:
                cursor.record_error(str(e))
    logger.info(f"[BATCH] {source} complete", extra=cursor.summary())
    return cursor


async def for_each_item(
    fetch_page: FetchPage,
    chunk_size: int,
    fn: ItemFn,
    *,
    source: str = "batch",
    start_offset: int = 0,
    progress_every: int = PROGRESS_EVERY,
) -> BatchCursor:
    """
    Call ``fn(item)`` for every item, isolating per-item failures.

    A raising item is counted in ``error_count`` and logged; the rest of its
    chunk and later chunks still run.
    """

    async def run_chunk(chunk: list, cursor: BatchCursor) -> None:
        for item in chunk:
            try:
                await fn(item)
            except Exception as e:
                cursor.record_error(f"{_describe(item)}: {e}")
                logger.warning(f"[BATCH] {source}: item {_describe(item)} failed: {e}")
                continue
            cursor.processed_count += 1
            if progress_every and cursor.processed_count % progress_every == 0:
                logger.info(
                    f"[BATCH] {source}: {cursor.processed_count} processed",
                    extra={"processed": cursor.processed_count, "errors": cursor.error_count},
                )

    return await for_each_chunk(fetch_page, chunk_size, run_chunk, source=source, start_offset=start_offset)


async def for_each_nested(
    outer_fetch: FetchPage,
    inner_fetch_for: Callable[[Any], FetchPage],
    fn: Callable[[Any, Any], Awaitable[Any]],
    *,
    outer_chunk_size: int,
    inner_chunk_size: int,
    source: str = "nested",
    start_offset: int = 0,
    progress_every: int = PROGRESS_EVERY,
) -> BatchCursor:
    """
    Call ``fn(outer, inner)`` for every pair, e.g. every (job, user).

    Counters are per pair. An outer item whose inner collection cannot be
    fetched counts as one error and the next outer item runs.
    ``start_offset`` skips that many outer items.
    """
    totals = BatchCursor(source=source, chunk_size=outer_chunk_size)

    async def run_outer(outer_item: Any) -> None:
        try:
            inner = await for_each_item(
                inner_fetch_for(outer_item),
                inner_chunk_size,
                lambda inner_item: fn(outer_item, inner_item),
                source=f"{source}:{_describe(outer_item)}",
                progress_every=0,
            )
        except BatchAbortedError as e:
            # Keep the pairs that ran before the inner fetch failed
            if e.cursor is not None:
                totals.processed_count += e.cursor.processed_count
                totals.error_count += e.cursor.error_count
            raise
        totals.processed_count += inner.processed_count
        totals.error_count += inner.error_count
        totals.errors.extend(inner.errors[-5:])
        if progress_every and totals.processed_count // progress_every > (
            (totals.processed_count - inner.processed_count) // progress_every
        ):
            logger.info(
                f"[BATCH] {source}: {totals.processed_count} pairs processed",
                extra={"processed": totals.processed_count, "errors": totals.error_count},
            )

    outer = await for_each_item(
        outer_fetch, outer_chunk_size, run_outer, source=source, start_offset=start_offset, progress_every=0,
    )
    # Outer failures here are inner fetch aborts
    totals.error_count += outer.error_count
    totals.errors.extend(outer.errors)
    totals.chunks = outer.chunks
    totals.offset = outer.offset
    del totals.errors[:-20]
    logger.info(f"[BATCH] {source} nested pass complete", extra=totals.summary())
    return totals


def _describe(item: Any) -> str:
    if isinstance(item, dict):
        return str(item.get("id", item))[:64]
    return str(getattr(item, "id", item))[:64]
