"""Chunked log fetcher with adaptive range shrinking and exponential backoff.

The requested range is split into sub-ranges of at most ``max_chunk_size``
blocks. Each sub-range is fetched independently:

- Rate-limit / range-too-large responses split the failing range in half
  (for that sub-range only) until a single block is left.
- Other transient errors retry the same range up to ``max_retries`` times,
  waiting ``base_delay * 2**attempt`` (capped, plus jitter) between attempts.
- Exhaustion raises ``LogFetchError`` tagged with the exact failed range.

Logs are yielded lazily in ascending (block, log_index) order.
"""

import asyncio
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

import structlog

from pns_sync.services.blockchain.log_source import ChainLogSource, RawLog
from pns_sync.services.exceptions import (
    LogFetchError,
    RateLimitedError,
    RpcTimeoutError,
    TransientError,
)

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]
T = TypeVar("T")


def should_retry(error: Exception, attempt: int, max_retries: int) -> bool:
    """Decide whether a failed query is attempted again.

    Args:
        error: Exception raised by the query
        attempt: Number of retries already made for this range
        max_retries: Retry ceiling

    Returns:
        True for transient errors while the ceiling is not reached
    """
    return isinstance(error, TransientError) and attempt < max_retries


def backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff with up to 10% jitter: 1s, 2s, 4s, ... capped at max_delay."""
    delay = min(base_delay * (2**attempt), max_delay)
    return delay + delay * 0.1 * jitter()


async def retry_call(
    call: Callable[[], Awaitable[T]],
    what: str,
    max_retries: int = 3,
    *,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run a single RPC query under the same retry decision as log queries.

    ``call`` must build a fresh awaitable on every attempt.
    """
    attempt = 0
    while True:
        try:
            return await call()
        except TransientError as e:
            if not should_retry(e, attempt, max_retries):
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            attempt += 1
            logger.warning(
                "rpc.retrying",
                call=what,
                retry_count=attempt,
                max_retries=max_retries,
                delay_seconds=round(delay, 3),
                error=str(e)[:100],
            )
            await sleep(delay)


def split_range(from_block: int, to_block: int, chunk_size: int) -> list[tuple[int, int]]:
    """Consecutive inclusive sub-ranges of at most ``chunk_size`` blocks."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    return [
        (start, min(start + chunk_size - 1, to_block))
        for start in range(from_block, to_block + 1, chunk_size)
    ]


async def _query(
    source: ChainLogSource,
    address: str,
    topics: list[str],
    from_block: int,
    to_block: int,
    timeout: float | None,
) -> list[RawLog]:
    try:
        return await asyncio.wait_for(
            source.get_logs(address, topics, from_block, to_block), timeout=timeout
        )
    except TimeoutError as e:
        raise RpcTimeoutError(
            f"get_logs timed out after {timeout}s for blocks {from_block}-{to_block}"
        ) from e


async def fetch_logs(
    source: ChainLogSource,
    address: str,
    topics: list[str],
    from_block: int,
    to_block: int,
    max_chunk_size: int = 2000,
    max_retries: int = 3,
    *,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    timeout: float | None = None,
    sleep: Sleep = asyncio.sleep,
) -> AsyncIterator[RawLog]:
    """Fetch all logs of ``address`` matching ``topics`` in ``[from_block, to_block]``.

    Args:
        source: Chain log source
        address: Contract address
        topics: Accepted topic0 signatures (any of)
        from_block: First block (inclusive)
        to_block: Last block (inclusive)
        max_chunk_size: Largest range requested in one query
        max_retries: Retries per range for transient errors
        base_delay: First backoff delay in seconds
        max_delay: Backoff cap in seconds
        timeout: Per-query timeout in seconds (None disables)
        sleep: Awaitable used for backoff waits

    Yields:
        Raw logs in ascending block order

    Raises:
        LogFetchError: If a range cannot be fetched
    """
    if from_block > to_block:
        return

    for chunk_start, chunk_end in split_range(from_block, to_block, max_chunk_size):
        # Stack of ranges still to fetch; the lower half is always on top
        pending = [(chunk_start, chunk_end)]

        while pending:
            lo, hi = pending.pop()
            attempt = 0
            logs: list[RawLog] | None = None

            while True:
                try:
                    logs = await _query(source, address, topics, lo, hi, timeout)
                    break
                except RateLimitedError as e:
                    if hi > lo:
                        mid = (lo + hi) // 2
                        logger.warning(
                            "fetch_logs.range_shrunk",
                            address=address,
                            from_block=lo,
                            to_block=hi,
                            old_size=hi - lo + 1,
                            new_size=mid - lo + 1,
                            error=str(e)[:100],
                        )
                        await sleep(backoff_delay(0, base_delay, max_delay))
                        pending.append((mid + 1, hi))
                        pending.append((lo, mid))
                        break
                    error = e
                except TransientError as e:
                    error = e

                if not should_retry(error, attempt, max_retries):
                    logger.error(
                        "fetch_logs.range_failed",
                        address=address,
                        from_block=lo,
                        to_block=hi,
                        attempts=attempt + 1,
                        error=str(error),
                    )
                    raise LogFetchError(str(error), lo, hi) from error

                delay = backoff_delay(attempt, base_delay, max_delay)
                attempt += 1
                logger.warning(
                    "fetch_logs.retrying",
                    address=address,
                    from_block=lo,
                    to_block=hi,
                    retry_count=attempt,
                    max_retries=max_retries,
                    delay_seconds=round(delay, 3),
                    error=str(error)[:100],
                )
                await sleep(delay)

            if logs is None:
                continue

            logger.debug(
                "fetch_logs.chunk_fetched",
                address=address,
                from_block=lo,
                to_block=hi,
                count=len(logs),
            )
            for log in sorted(logs, key=lambda entry: entry.sort_key):
                yield log


async def fetch_all_logs(
    source: ChainLogSource,
    address: str,
    topics: list[str],
    from_block: int,
    to_block: int,
    **kwargs,
) -> list[RawLog]:
    """Collect ``fetch_logs`` into a list."""
    return [
        log async for log in fetch_logs(source, address, topics, from_block, to_block, **kwargs)
    ]
