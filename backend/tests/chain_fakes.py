"""In-memory chain collaborators and log builders shared by the tests."""

import asyncio
from typing import Any

from eth_abi import encode as abi_encode
from eth_utils import keccak
from eth_utils.abi import event_signature_to_log_topic

from pns_sync.abi import BRIDGE, DOMAIN_NFT, REGISTRY, RESOLVER, get_contract_abi
from pns_sync.models.sync_job import JobType
from pns_sync.services.blockchain.event_decoder import ContractRole, event_signature
from pns_sync.services.blockchain.log_source import RawLog

REGISTRY_ADDRESS = "0x" + "11" * 20
RESOLVER_ADDRESS = "0x" + "22" * 20
NFT_ADDRESS = "0x" + "33" * 20
BRIDGE_ADDRESS = "0x" + "44" * 20

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b0" * 20

_ABIS = {
    ContractRole.REGISTRY: REGISTRY,
    ContractRole.RESOLVER: RESOLVER,
    ContractRole.NFT: DOMAIN_NFT,
    ContractRole.BRIDGE: BRIDGE,
}

_ADDRESSES = {
    ContractRole.REGISTRY: REGISTRY_ADDRESS,
    ContractRole.RESOLVER: RESOLVER_ADDRESS,
    ContractRole.NFT: NFT_ADDRESS,
    ContractRole.BRIDGE: BRIDGE_ADDRESS,
}


def b32(hex_value: str) -> bytes:
    return bytes.fromhex(hex_value[2:])


def tx_hash_for(block_number: int, log_index: int) -> str:
    return "0x" + f"{block_number:032x}{log_index:032x}"


def encode_log(
    role: ContractRole,
    event_name: str,
    block_number: int,
    log_index: int = 0,
    tx_hash: str | None = None,
    **args: Any,
) -> RawLog:
    """Build the raw log a contract of ``role`` would emit for ``event_name``."""
    entry = next(
        e
        for e in get_contract_abi(_ABIS[role])
        if e.get("type") == "event" and e["name"] == event_name
    )
    topics = ["0x" + event_signature_to_log_topic(event_signature(entry)).hex()]
    plain_types, plain_values = [], []
    for param in entry["inputs"]:
        value = args[param["name"]]
        if param.get("indexed"):
            if param["type"] == "string":
                topics.append("0x" + keccak(text=value).hex())
            else:
                topics.append("0x" + abi_encode([param["type"]], [value]).hex())
        else:
            plain_types.append(param["type"])
            plain_values.append(value)

    return RawLog(
        address=_ADDRESSES[role],
        topics=tuple(topics),
        data=abi_encode(plain_types, plain_values),
        block_number=block_number,
        tx_hash=tx_hash or tx_hash_for(block_number, log_index),
        log_index=log_index,
    )


class FakeLogSource:
    """Chain log source backed by a list of logs.

    ``failures`` maps a call number (1-based) to the exception that call raises.
    ``delays`` maps an address to seconds each of its queries takes.
    ``timestamp_failures`` are raised, in order, by block timestamp queries.
    """

    def __init__(self, head: int = 0):
        self.head = head
        self.logs: list[RawLog] = []
        self.calls: list[tuple[str, int, int]] = []
        self.completed: list[tuple[str, int, int]] = []
        self.failures: dict[int, Exception] = {}
        self.delays: dict[str, float] = {}
        self.timestamp_calls: list[int] = []
        self.timestamp_failures: list[Exception] = []

    def add(self, *logs: RawLog) -> None:
        self.logs.extend(logs)

    async def get_logs(
        self, address: str, topics: list[str], from_block: int, to_block: int
    ) -> list[RawLog]:
        self.calls.append((address, from_block, to_block))
        failure = self.failures.pop(len(self.calls), None)
        if failure is not None:
            raise failure
        if address in self.delays:
            await asyncio.sleep(self.delays[address])
        self.completed.append((address, from_block, to_block))
        return [
            log
            for log in self.logs
            if log.address == address.lower()
            and from_block <= log.block_number <= to_block
            and log.topics[0] in topics
        ]

    async def get_head(self) -> int:
        return self.head

    async def get_block_timestamp(self, block_number: int) -> int:
        self.timestamp_calls.append(block_number)
        if self.timestamp_failures:
            raise self.timestamp_failures.pop(0)
        return 1_700_000_000 + block_number * 12


class FakeSubmitter:
    """Chain submitter that records calls; queued errors are raised first.

    ``submitted_event`` is set after every successful submission.
    """

    def __init__(self):
        self.submitted: list[tuple[JobType, dict[str, Any]]] = []
        self.errors: list[Exception] = []
        self.submitted_event = asyncio.Event()

    async def submit(self, job_type: JobType, payload: dict[str, Any]) -> str:
        if self.errors:
            raise self.errors.pop(0)
        self.submitted.append((job_type, payload))
        self.submitted_event.set()
        return "0x" + f"{len(self.submitted):064x}"
