"""Conflict resolution policy.

Pure decision functions used by the mapping and sync services. Versions order
writes across chains without a shared clock: a strictly higher version always
wins, a lower one is stale. Equal versions from different chains can only
happen when both sides raced; the configured policy breaks the tie.
"""

from dataclasses import dataclass, field
from enum import Enum

from pns_sync.models.domain import ChainSide, WrapState

AUTHORITATIVE_CHAIN = ChainSide.PRIMARY


class ConflictPolicy(str, Enum):
    """Tie-break rule for equal versions written on different chains."""

    PRIMARY_PRIORITY = "primary_priority"
    LATEST_WRITE_WINS = "latest_write_wins"


class Verdict(str, Enum):
    ACCEPT = "accept"
    STALE = "stale"
    DEFER = "defer"


@dataclass(frozen=True)
class VersionStamp:
    """Version of a write plus where and when it happened."""

    version: int
    chain: ChainSide
    observed_at: int | None = None


def resolve(
    incoming: VersionStamp,
    current: VersionStamp | None,
    policy: ConflictPolicy = ConflictPolicy.PRIMARY_PRIORITY,
) -> Verdict:
    """Decide whether an incoming write replaces the stored one.

    Args:
        incoming: Stamp of the write being applied
        current: Stamp of the stored row (None if the row does not exist)
        policy: Tie-break rule

    Returns:
        ACCEPT if the write wins, STALE if it must be discarded
    """
    if current is None:
        return Verdict.ACCEPT
    if incoming.version > current.version:
        return Verdict.ACCEPT
    if incoming.version < current.version:
        return Verdict.STALE
    if incoming.chain == current.chain:
        # Same write seen again
        return Verdict.STALE

    if policy is ConflictPolicy.LATEST_WRITE_WINS:
        if incoming.observed_at is not None and current.observed_at is not None:
            if incoming.observed_at != current.observed_at:
                return Verdict.ACCEPT if incoming.observed_at > current.observed_at else Verdict.STALE

    return Verdict.ACCEPT if incoming.chain is AUTHORITATIVE_CHAIN else Verdict.STALE


def next_version(*versions: int) -> int:
    """Next version from the side holding the highest counter."""
    return max(versions, default=0) + 1


def should_propagate(version: int, target_observed_version: int) -> bool:
    """True if the target chain has not yet reflected ``version``."""
    return version > target_observed_version


@dataclass(frozen=True)
class WrapStep:
    """One set_wrap_state instruction sent to ``chain``."""

    chain: ChainSide
    state: WrapState


@dataclass(frozen=True)
class WrapPlan:
    verdict: Verdict
    steps: list[WrapStep] = field(default_factory=list)


def plan_wrap(current: WrapState, requested_by: ChainSide) -> WrapPlan:
    """Plan the jobs that move the wrapper to ``requested_by``.

    The wrapper is exclusive. If the other chain holds it, it is released
    first; the wrap job is only dispatched after the unwrap is confirmed.

    Returns:
        ACCEPT with a single wrap step when nobody holds the wrapper,
        DEFER with unwrap-then-wrap steps when the other chain holds it,
        STALE when the requesting chain already holds it
    """
    target = WrapState.held_by(requested_by)
    if current is target:
        return WrapPlan(Verdict.STALE)
    if current is WrapState.NONE:
        return WrapPlan(Verdict.ACCEPT, [WrapStep(requested_by, target)])

    holder = requested_by.other
    return WrapPlan(
        Verdict.DEFER,
        [WrapStep(holder, WrapState.NONE), WrapStep(requested_by, target)],
    )
