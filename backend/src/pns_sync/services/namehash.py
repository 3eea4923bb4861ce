"""Name and record key hashing for the naming registry.

Names hash the ENS way: recursive keccak256 over labels from right to left,
starting from 32 zero bytes. Record keys hash as keccak256(prefix || key) where
the prefix depends on the record kind.
"""

import re

from eth_utils import keccak

from pns_sync.models.record import RecordType

TLD = ".poly"
ZERO_HASH = "0x" + "00" * 32

_LABEL_RE = re.compile(r"^[a-z0-9-]+$")

_KEY_PREFIXES = {
    RecordType.ADDRESS: b"addr",
    RecordType.CONTENT_HASH: b"content",
    RecordType.TEXT: b"text",
}

CONTENT_HASH_KEY = "contenthash"


def normalize_name(name: str) -> str:
    return name.strip().lower()


def labelhash(label: str) -> str:
    """Keccak256 of a single UTF-8 label, as 0x-prefixed hex."""
    return "0x" + keccak(text=label).hex()


def namehash(name: str) -> str:
    """Compute the namehash of a fully qualified name.

    Args:
        name: Name such as "alice.poly" (case-insensitive)

    Returns:
        0x-prefixed 32-byte hex digest; the zero hash for an empty name
    """
    if not name or name == ".":
        return ZERO_HASH

    node = bytes(32)
    for label in reversed(normalize_name(name).split(".")):
        node = keccak(node + bytes.fromhex(labelhash(label)[2:]))
    return "0x" + node.hex()


def full_domain_name(name: str) -> str:
    """Append the registry TLD unless already present."""
    normalized = normalize_name(name)
    if normalized.endswith(TLD):
        return normalized
    return f"{normalized}{TLD}"


def validate_label(label: str) -> str | None:
    """Check a registrable label.

    Returns:
        None if valid, otherwise a human-readable reason
    """
    normalized = normalize_name(label)
    if len(normalized) < 3:
        return "Domain name too short (minimum 3 characters)"
    if len(normalized) > 63:
        return "Domain name too long (maximum 63 characters)"
    if not _LABEL_RE.match(normalized):
        return "Domain name can only contain lowercase letters, numbers, and hyphens"
    if normalized.startswith("-") or normalized.endswith("-"):
        return "Domain name cannot start or end with a hyphen"
    return None


def record_key_hash(record_type: RecordType, key: str, custom_hash: str | None = None) -> str:
    """Hash a logical record key so that kinds never collide.

    Custom records carry their own precomputed key hash.

    Raises:
        ValueError: If a custom record has no key hash
    """
    if record_type is RecordType.CUSTOM:
        if not custom_hash:
            raise ValueError("Custom records must supply their own key hash")
        return custom_hash.lower()
    return "0x" + keccak(_KEY_PREFIXES[record_type] + key.encode("utf-8")).hex()


def value_hash(value: bytes) -> str:
    """Digest of a record payload, used to recognise echoes of our own writes."""
    return "0x" + keccak(value).hex()


def normalize_hash(value: str | bytes) -> str:
    """Render a 32-byte hash as lowercase 0x-prefixed hex."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    value = value.lower()
    return value if value.startswith("0x") else "0x" + value
