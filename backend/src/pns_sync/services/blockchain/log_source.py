"""Chain log source: the RPC collaborator the fetcher and scanner read from."""

from dataclasses import dataclass
from typing import Any, Protocol

import structlog
from hexbytes import HexBytes
from web3 import AsyncWeb3
from web3.providers import AsyncHTTPProvider

from pns_sync.services.exceptions import RateLimitedError, TransientError

logger = structlog.get_logger()

# Provider messages that mean "ask for less", not "try again later"
RATE_LIMIT_PATTERNS = (
    "429",
    "rate limit",
    "too many requests",
    "exceeded",
    "query returned more than",
    "block range",
    "range too large",
    "response size",
)


@dataclass(frozen=True, slots=True)
class RawLog:
    """One raw log entry, normalized to lowercase 0x-hex strings."""

    address: str
    topics: tuple[str, ...]
    data: bytes
    block_number: int
    tx_hash: str
    log_index: int

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


class ChainLogSource(Protocol):
    """Read side of a chain.

    ``get_logs`` must raise ``RateLimitedError`` for rate-limit and
    range-too-large responses and ``TransientError`` for anything else worth
    retrying.
    """

    async def get_logs(
        self, address: str, topics: list[str], from_block: int, to_block: int
    ) -> list[RawLog]: ...

    async def get_head(self) -> int: ...

    async def get_block_timestamp(self, block_number: int) -> int: ...


def classify_rpc_error(error: Exception) -> TransientError:
    """Map a provider exception onto the retry taxonomy."""
    message = str(error).lower()
    if any(pattern in message for pattern in RATE_LIMIT_PATTERNS):
        return RateLimitedError(str(error))
    return TransientError(str(error))


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    value = str(value).lower()
    return value if value.startswith("0x") else "0x" + value


def normalize_log(entry: Any) -> RawLog:
    """Convert a web3 LogReceipt (or JSON-RPC dict) into a RawLog."""
    return RawLog(
        address=_hex(entry["address"]),
        topics=tuple(_hex(t) for t in entry["topics"]),
        data=bytes(HexBytes(entry["data"])),
        block_number=int(entry["blockNumber"]),
        tx_hash=_hex(entry["transactionHash"]),
        log_index=int(entry["logIndex"]),
    )


class Web3LogSource:
    """JSON-RPC log source backed by web3's async HTTP provider."""

    def __init__(self, rpc_url: str, chain_name: str, request_timeout: float = 20.0):
        self.chain_name = chain_name
        self.w3 = AsyncWeb3(
            AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )

    async def get_logs(
        self, address: str, topics: list[str], from_block: int, to_block: int
    ) -> list[RawLog]:
        try:
            entries = await self.w3.eth.get_logs(
                {
                    "fromBlock": from_block,
                    "toBlock": to_block,
                    "address": AsyncWeb3.to_checksum_address(address),
                    # A list in position 0 matches any of the signatures
                    "topics": [topics] if topics else [],  # type: ignore[typeddict-item]
                }
            )
        except Exception as e:
            error = classify_rpc_error(e)
            logger.debug(
                "log_source.get_logs_failed",
                chain=self.chain_name,
                from_block=from_block,
                to_block=to_block,
                error_class=type(error).__name__,
                error=str(e),
            )
            raise error from e
        return [normalize_log(entry) for entry in entries]

    async def get_head(self) -> int:
        try:
            return await self.w3.eth.block_number
        except Exception as e:
            raise classify_rpc_error(e) from e

    async def get_block_timestamp(self, block_number: int) -> int:
        try:
            block = await self.w3.eth.get_block(block_number)
        except Exception as e:
            raise classify_rpc_error(e) from e
        return int(block["timestamp"])
