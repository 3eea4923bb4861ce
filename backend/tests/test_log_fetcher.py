"""Chunked log fetcher tests.

Covers range splitting, adaptive halving on rate limits, backoff retries for
transient errors, and the failed-range contract of LogFetchError.
"""

import pytest

from chain_fakes import FakeLogSource, REGISTRY_ADDRESS
from pns_sync.services.blockchain.log_fetcher import (
    backoff_delay,
    fetch_all_logs,
    should_retry,
    split_range,
)
from pns_sync.services.blockchain.log_source import RawLog
from pns_sync.services.exceptions import (
    LogFetchError,
    PermanentError,
    RateLimitedError,
    TransientError,
)

TOPIC = "0x" + "ab" * 32


def make_log(block_number: int, log_index: int = 0) -> RawLog:
    return RawLog(
        address=REGISTRY_ADDRESS,
        topics=(TOPIC,),
        data=b"",
        block_number=block_number,
        tx_hash="0x" + f"{block_number:064x}",
        log_index=log_index,
    )


class RangeLimitedSource(FakeLogSource):
    """Rejects any query spanning more than ``max_range`` blocks."""

    def __init__(self, max_range: int):
        super().__init__()
        self.max_range = max_range
        self.successful: list[tuple[int, int]] = []
        self.rejected: list[tuple[int, int]] = []

    async def get_logs(self, address, topics, from_block, to_block):
        if to_block - from_block + 1 > self.max_range:
            self.rejected.append((from_block, to_block))
            raise RateLimitedError("query returned more than 10000 results")
        logs = await super().get_logs(address, topics, from_block, to_block)
        self.successful.append((from_block, to_block))
        return logs


async def no_sleep(_delay: float) -> None:
    return None


class TestSplitRange:
    def test_exact_multiple(self):
        assert split_range(0, 3999, 2000) == [(0, 1999), (2000, 3999)]

    def test_remainder(self):
        assert split_range(10, 25, 10) == [(10, 19), (20, 25)]

    def test_single_block(self):
        assert split_range(7, 7, 2000) == [(7, 7)]

    def test_rejects_zero_chunk(self):
        with pytest.raises(ValueError):
            split_range(0, 10, 0)


class TestRetryDecision:
    def test_transient_retried_until_ceiling(self):
        assert should_retry(TransientError("boom"), 0, 3)
        assert should_retry(TransientError("boom"), 2, 3)
        assert not should_retry(TransientError("boom"), 3, 3)

    def test_permanent_never_retried(self):
        assert not should_retry(PermanentError("nope"), 0, 3)

    def test_backoff_doubles_and_caps(self):
        no_jitter = lambda: 0.0  # noqa: E731
        assert backoff_delay(0, 1.0, 30.0, no_jitter) == 1.0
        assert backoff_delay(1, 1.0, 30.0, no_jitter) == 2.0
        assert backoff_delay(2, 1.0, 30.0, no_jitter) == 4.0
        assert backoff_delay(10, 1.0, 30.0, no_jitter) == 30.0

    def test_jitter_adds_at_most_ten_percent(self):
        assert backoff_delay(2, 1.0, 30.0, lambda: 1.0) == pytest.approx(4.4)


@pytest.mark.asyncio
class TestFetchLogs:
    async def test_adaptive_halving_on_rate_limit(self):
        """5,000 blocks, chunks of 2,000, provider caps ranges at 1,000 blocks.

        Each 2,000-block chunk is rejected once and halved; the final 1,000
        block chunk goes through directly: five successful queries.
        """
        source = RangeLimitedSource(max_range=1000)
        source.add(make_log(4500, 1), make_log(10), make_log(4500, 0), make_log(2999))

        logs = await fetch_all_logs(
            source, REGISTRY_ADDRESS, [TOPIC], 0, 4999, max_chunk_size=2000, sleep=no_sleep
        )

        assert source.successful == [
            (0, 999),
            (1000, 1999),
            (2000, 2999),
            (3000, 3999),
            (4000, 4999),
        ]
        assert source.rejected == [(0, 1999), (2000, 3999)]
        assert [log.sort_key for log in logs] == [(10, 0), (2999, 0), (4500, 0), (4500, 1)]

    async def test_transient_error_retried_with_backoff(self):
        source = FakeLogSource()
        source.add(make_log(5))
        source.failures = {1: TransientError("connection reset"), 2: TransientError("502")}
        delays: list[float] = []

        async def record_sleep(delay: float) -> None:
            delays.append(delay)

        logs = await fetch_all_logs(
            source,
            REGISTRY_ADDRESS,
            [TOPIC],
            0,
            9,
            max_retries=3,
            base_delay=1.0,
            sleep=record_sleep,
        )

        assert [log.block_number for log in logs] == [5]
        assert len(source.calls) == 3
        assert len(delays) == 2
        assert 1.0 <= delays[0] <= 1.1
        assert 2.0 <= delays[1] <= 2.2

    async def test_exhausted_retries_raise_with_failed_range(self):
        source = FakeLogSource()
        source.failures = {i: TransientError("timeout") for i in range(2, 10)}

        with pytest.raises(LogFetchError) as exc_info:
            await fetch_all_logs(
                source,
                REGISTRY_ADDRESS,
                [TOPIC],
                0,
                199,
                max_chunk_size=100,
                max_retries=2,
                sleep=no_sleep,
            )

        # First chunk succeeded, second failed three times
        assert exc_info.value.from_block == 100
        assert exc_info.value.to_block == 199
        assert len(source.calls) == 4

    async def test_rate_limit_on_single_block_is_retried_then_fails(self):
        source = RangeLimitedSource(max_range=0)

        with pytest.raises(LogFetchError) as exc_info:
            await fetch_all_logs(
                source,
                REGISTRY_ADDRESS,
                [TOPIC],
                0,
                3,
                max_retries=1,
                sleep=no_sleep,
            )

        # 0-3 -> 0-1 -> 0-0, which cannot shrink further
        assert (exc_info.value.from_block, exc_info.value.to_block) == (0, 0)
        assert source.rejected == [(0, 3), (0, 1), (0, 0), (0, 0)]

    async def test_empty_range_yields_nothing(self):
        source = FakeLogSource()
        assert await fetch_all_logs(source, REGISTRY_ADDRESS, [TOPIC], 10, 9) == []
        assert source.calls == []
