"""Decode raw logs into typed domain events.

Each contract role (registry, resolver, NFT, bridge) has a fixed table of
known event shapes built from its ABI. ``decode`` is pure: it never touches
the network or the store, and it never raises for a log it does not
understand. Such logs come back as ``Unrecognized`` and the scanner skips them.
"""

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Union

import structlog
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils.abi import event_signature_to_log_topic

from pns_sync.abi import BRIDGE, DOMAIN_NFT, REGISTRY, RESOLVER, get_contract_abi
from pns_sync.models.domain import ChainSide, WrapState
from pns_sync.models.record import RecordType
from pns_sync.services.blockchain.log_source import RawLog

logger = structlog.get_logger()

ZERO_ADDRESS = "0x" + "00" * 20

# On-chain uint8 encodings
RECORD_TYPE_CODES = (
    RecordType.TEXT,
    RecordType.ADDRESS,
    RecordType.CONTENT_HASH,
    RecordType.CUSTOM,
)
WRAP_STATE_CODES = (WrapState.NONE, WrapState.PRIMARY, WrapState.MIRROR)


class ContractRole(str, Enum):
    """Which contract a log was read from."""

    REGISTRY = "registry"
    RESOLVER = "resolver"
    NFT = "nft"
    BRIDGE = "bridge"


_ROLE_ABIS = {
    ContractRole.REGISTRY: REGISTRY,
    ContractRole.RESOLVER: RESOLVER,
    ContractRole.NFT: DOMAIN_NFT,
    ContractRole.BRIDGE: BRIDGE,
}


@dataclass(frozen=True, slots=True)
class EventMeta:
    """Where an event came from. (chain, tx_hash, log_index) is its identity."""

    chain: ChainSide
    block_number: int
    tx_hash: str
    log_index: int
    address: str
    block_timestamp: int | None = None


@dataclass(frozen=True, slots=True)
class NameRegistered:
    meta: EventMeta
    name_hash: str
    label: str
    owner: str
    resolver: str
    expiration: int


@dataclass(frozen=True, slots=True)
class NameRenewed:
    meta: EventMeta
    name_hash: str
    expiration: int


@dataclass(frozen=True, slots=True)
class OwnershipTransferred:
    meta: EventMeta
    name_hash: str
    previous_owner: str
    new_owner: str


@dataclass(frozen=True, slots=True)
class ResolverUpdated:
    meta: EventMeta
    name_hash: str
    resolver: str


@dataclass(frozen=True, slots=True)
class TextChanged:
    meta: EventMeta
    name_hash: str
    key: str
    value: str


@dataclass(frozen=True, slots=True)
class AddressChanged:
    meta: EventMeta
    name_hash: str
    coin_type: int
    address: bytes


@dataclass(frozen=True, slots=True)
class ContenthashChanged:
    meta: EventMeta
    name_hash: str
    content_hash: bytes


@dataclass(frozen=True, slots=True)
class NftTransfer:
    """ERC-721 transfer of the domain wrapper. Mint wraps, burn unwraps."""

    meta: EventMeta
    name_hash: str
    from_address: str
    to_address: str

    @property
    def is_mint(self) -> bool:
        return self.from_address == ZERO_ADDRESS

    @property
    def is_burn(self) -> bool:
        return self.to_address == ZERO_ADDRESS


@dataclass(frozen=True, slots=True)
class DomainMirrored:
    meta: EventMeta
    name_hash: str
    label: str
    owner: str
    expiration: int
    version: int


@dataclass(frozen=True, slots=True)
class DelegateUpdated:
    meta: EventMeta
    name_hash: str
    delegate: str
    version: int


@dataclass(frozen=True, slots=True)
class RecordUpdated:
    meta: EventMeta
    name_hash: str
    key_hash: str
    key: str
    record_type: RecordType
    value: bytes
    version: int


@dataclass(frozen=True, slots=True)
class RecordDeleted:
    meta: EventMeta
    name_hash: str
    key_hash: str
    version: int


@dataclass(frozen=True, slots=True)
class WrapStateChanged:
    meta: EventMeta
    name_hash: str
    state: WrapState
    version: int


@dataclass(frozen=True, slots=True)
class WrapRequested:
    meta: EventMeta
    name_hash: str
    requester: str
    version: int


@dataclass(frozen=True, slots=True)
class Unrecognized:
    """A log that matched no known signature or failed to decode."""

    meta: EventMeta
    topic0: str | None
    reason: str


DomainEvent = Union[
    NameRegistered,
    NameRenewed,
    OwnershipTransferred,
    ResolverUpdated,
    TextChanged,
    AddressChanged,
    ContenthashChanged,
    NftTransfer,
    DomainMirrored,
    DelegateUpdated,
    RecordUpdated,
    RecordDeleted,
    WrapStateChanged,
    WrapRequested,
]


def _h(value: bytes) -> str:
    return "0x" + value.hex()


def _addr(value: str) -> str:
    return value.lower()


def _token_name_hash(token_id: int) -> str:
    return "0x" + token_id.to_bytes(32, "big").hex()


_BUILDERS: dict[str, Callable[[EventMeta, dict[str, Any]], DomainEvent]] = {
    "NameRegistered": lambda m, a: NameRegistered(
        m, _h(a["nameHash"]), a["name"], _addr(a["owner"]), _addr(a["resolver"]), a["expiration"]
    ),
    "NameRenewed": lambda m, a: NameRenewed(m, _h(a["nameHash"]), a["expiration"]),
    "OwnershipTransferred": lambda m, a: OwnershipTransferred(
        m, _h(a["nameHash"]), _addr(a["previousOwner"]), _addr(a["newOwner"])
    ),
    "ResolverUpdated": lambda m, a: ResolverUpdated(m, _h(a["nameHash"]), _addr(a["resolver"])),
    "TextChanged": lambda m, a: TextChanged(m, _h(a["node"]), a["key"], a["value"]),
    "AddressChanged": lambda m, a: AddressChanged(
        m, _h(a["node"]), a["coinType"], bytes(a["newAddress"])
    ),
    "ContenthashChanged": lambda m, a: ContenthashChanged(m, _h(a["node"]), bytes(a["hash"])),
    "Transfer": lambda m, a: NftTransfer(
        m, _token_name_hash(a["tokenId"]), _addr(a["from"]), _addr(a["to"])
    ),
    "DomainMirrored": lambda m, a: DomainMirrored(
        m, _h(a["nameHash"]), a["label"], _addr(a["owner"]), a["expiration"], a["version"]
    ),
    "DelegateUpdated": lambda m, a: DelegateUpdated(
        m, _h(a["nameHash"]), _addr(a["delegate"]), a["version"]
    ),
    "RecordUpdated": lambda m, a: RecordUpdated(
        m,
        _h(a["nameHash"]),
        _h(a["keyHash"]),
        a["key"],
        RECORD_TYPE_CODES[a["recordType"]],
        bytes(a["value"]),
        a["version"],
    ),
    "RecordDeleted": lambda m, a: RecordDeleted(
        m, _h(a["nameHash"]), _h(a["keyHash"]), a["version"]
    ),
    "WrapStateChanged": lambda m, a: WrapStateChanged(
        m, _h(a["nameHash"]), WRAP_STATE_CODES[a["state"]], a["version"]
    ),
    "WrapRequested": lambda m, a: WrapRequested(
        m, _h(a["nameHash"]), _addr(a["requester"]), a["version"]
    ),
}


def event_signature(event_abi: dict) -> str:
    """Canonical signature, e.g. ``NameRenewed(bytes32,uint64)``."""
    types = ",".join(i["type"] for i in event_abi["inputs"])
    return f"{event_abi['name']}({types})"


@lru_cache(maxsize=None)
def _signature_table(role: ContractRole) -> dict[str, dict]:
    table = {}
    for entry in get_contract_abi(_ROLE_ABIS[role]):
        if entry.get("type") != "event":
            continue
        topic = "0x" + event_signature_to_log_topic(event_signature(entry)).hex()
        table[topic] = entry
    return table


def topics_for(role: ContractRole) -> list[str]:
    """All topic0 values known for a role, for log filtering."""
    return list(_signature_table(role).keys())


def _decode_topic(abi_type: str, topic: str) -> Any:
    # Indexed dynamic values are stored as their keccak hash
    if abi_type in ("string", "bytes") or abi_type.endswith("]"):
        return bytes.fromhex(topic[2:])
    return abi_decode([abi_type], bytes.fromhex(topic[2:]))[0]


def decode(
    raw: RawLog,
    role: ContractRole,
    chain: ChainSide,
    block_timestamp: int | None = None,
) -> DomainEvent | Unrecognized:
    """Decode a raw log read from a contract of the given role.

    Args:
        raw: Raw log entry
        role: Role of the emitting contract
        chain: Chain the log was read from
        block_timestamp: Timestamp of the log's block, if known

    Returns:
        Typed event, or ``Unrecognized`` for unknown or malformed logs
    """
    meta = EventMeta(
        chain=chain,
        block_number=raw.block_number,
        tx_hash=raw.tx_hash.lower(),
        log_index=raw.log_index,
        address=raw.address.lower(),
        block_timestamp=block_timestamp,
    )
    if not raw.topics:
        return Unrecognized(meta, None, "anonymous log")

    topic0 = raw.topics[0].lower()
    event_abi = _signature_table(role).get(topic0)
    if event_abi is None:
        return Unrecognized(meta, topic0, f"unknown {role.value} event signature")

    indexed = [i for i in event_abi["inputs"] if i.get("indexed")]
    plain = [i for i in event_abi["inputs"] if not i.get("indexed")]
    if len(raw.topics) - 1 != len(indexed):
        return Unrecognized(meta, topic0, f"{event_abi['name']}: topic count mismatch")

    try:
        args: dict[str, Any] = {}
        for param, topic in zip(indexed, raw.topics[1:]):
            args[param["name"]] = _decode_topic(param["type"], topic)
        values = abi_decode([i["type"] for i in plain], raw.data)
        for param, value in zip(plain, values):
            args[param["name"]] = value
        return _BUILDERS[event_abi["name"]](meta, args)
    except (DecodingError, ValueError, IndexError, OverflowError) as e:
        logger.warning(
            "decoder.malformed_log",
            event_name=event_abi["name"],
            tx_hash=meta.tx_hash,
            log_index=meta.log_index,
            error=str(e),
        )
        return Unrecognized(meta, topic0, f"{event_abi['name']}: {e}")
