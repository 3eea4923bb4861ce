"""Name and record key hashing tests."""

import pytest

from pns_sync.models.record import RecordType
from pns_sync.services.namehash import (
    ZERO_HASH,
    full_domain_name,
    labelhash,
    namehash,
    normalize_hash,
    record_key_hash,
    validate_label,
    value_hash,
)


def test_empty_name_is_zero_hash():
    assert namehash("") == ZERO_HASH


def test_known_ens_vectors():
    # Published ENS namehash vectors
    assert namehash("eth") == "0x93cdeb708b7545dc668eb9280176169d1c33cfd8ed6f04690a0bcc88a93fc4ae"
    assert (
        namehash("foo.eth") == "0xde9b09fd7c5f901e23a3f19fecc54828e9c848539801e86591bd9801b019f84f"
    )


def test_namehash_is_case_insensitive():
    assert namehash("Alice.Poly") == namehash("alice.poly")


def test_labelhash():
    assert labelhash("eth") == "0x4f5b812789fc606be1b3b16908db13fc7a9adf7ca72641f84d75b47069d3d7f0"


def test_full_domain_name():
    assert full_domain_name("Alice") == "alice.poly"
    assert full_domain_name("alice.poly") == "alice.poly"


@pytest.mark.parametrize(
    "label,valid",
    [
        ("alice", True),
        ("a1-b2", True),
        ("ab", False),
        ("-alice", False),
        ("alice-", False),
        ("al ice", False),
        ("a" * 64, False),
    ],
)
def test_validate_label(label, valid):
    assert (validate_label(label) is None) is valid


def test_record_kinds_never_collide():
    hashes = {
        record_key_hash(RecordType.TEXT, "60"),
        record_key_hash(RecordType.ADDRESS, "60"),
        record_key_hash(RecordType.CONTENT_HASH, "60"),
    }
    assert len(hashes) == 3


def test_custom_record_requires_own_hash():
    with pytest.raises(ValueError):
        record_key_hash(RecordType.CUSTOM, "x")
    assert record_key_hash(RecordType.CUSTOM, "x", "0xABCD") == "0xabcd"


def test_value_hash_distinguishes_payloads():
    assert value_hash(b"a") != value_hash(b"b")
    assert value_hash(b"") == value_hash(b"")


def test_normalize_hash():
    assert normalize_hash(b"\x01\x02") == "0x0102"
    assert normalize_hash("ABCD") == "0xabcd"
    assert normalize_hash("0xAB") == "0xab"
