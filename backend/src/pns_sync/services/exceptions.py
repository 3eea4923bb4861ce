"""Errors raised by log fetching, chain submission and the mapping store.

Callers branch on the two top-level kinds: a ``TransientError`` is retried
with backoff, a ``PermanentError`` ends the attempt for good.
"""


class ServiceError(Exception):
    pass


class TransientError(ServiceError):
    """Worth retrying: timeouts, HTTP 429, nonce races, dropped connections."""

    pass


class PermanentError(ServiceError):
    """Retrying cannot help.

    Examples:
    - Target chain already holds a newer version
    - Invalid instruction parameters
    - Configuration errors
    """

    pass


# Log fetching errors
class RpcTimeoutError(TransientError):
    """RPC call exceeded its per-call timeout."""

    pass


class RateLimitedError(TransientError):
    """Provider refused the query because of rate limits or an oversized range.

    The fetcher reacts by halving the failing range instead of retrying it as-is.
    """

    pass


class LogFetchError(ServiceError):
    """A sub-range could not be fetched after exhausting retries.

    Carries the exact failed range so the caller can retry from that boundary.
    """

    def __init__(self, message: str, from_block: int, to_block: int):
        super().__init__(f"{message} (blocks {from_block}-{to_block})")
        self.from_block = from_block
        self.to_block = to_block


# Submission errors
class SubmissionError(TransientError):
    """The submission RPC call failed before the transaction was accepted."""

    pass


class NonceConflictError(TransientError):
    """Nonce or sequence number already used."""

    pass


class SupersededError(PermanentError):
    """Target chain already stores a version greater than or equal to the job's."""

    pass


class SubmissionRejectedError(PermanentError):
    """Target chain rejected the instruction for a reason other than staleness."""

    pass


# Store errors
class CheckpointConflictError(ServiceError):
    """Checkpoint was advanced by someone else since it was read."""

    def __init__(self, chain: str, group: str, expected: int):
        super().__init__(
            f"Checkpoint {chain}/{group} no longer at block {expected}; another scanner advanced it"
        )
        self.chain = chain
        self.group = group
        self.expected = expected


class ConcurrentUpdateError(TransientError):
    """A compare-and-set write lost the race too many times."""

    pass


class DomainNotIndexedError(TransientError):
    """A mirror-chain event names a domain whose primary registration is not indexed yet.

    The mirror window is abandoned and retried once the primary scanner catches up.
    """

    def __init__(self, name_hash: str, block_number: int):
        super().__init__(
            f"Domain {name_hash} not indexed yet (mirror event at block {block_number})"
        )
        self.name_hash = name_hash
        self.block_number = block_number
