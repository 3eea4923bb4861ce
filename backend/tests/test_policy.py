"""Conflict policy tests.

Pure functions: version ordering, tie-breaks and the wrap plan.
"""

import pytest

from pns_sync.models.domain import ChainSide, WrapState
from pns_sync.services.sync.policy import (
    ConflictPolicy,
    Verdict,
    VersionStamp,
    WrapStep,
    next_version,
    plan_wrap,
    resolve,
    should_propagate,
)

P = ChainSide.PRIMARY
M = ChainSide.MIRROR


class TestResolve:
    def test_first_write_accepted(self):
        assert resolve(VersionStamp(1, M), None) is Verdict.ACCEPT

    def test_higher_version_wins_from_either_chain(self):
        assert resolve(VersionStamp(8, M), VersionStamp(7, P)) is Verdict.ACCEPT
        assert resolve(VersionStamp(8, P), VersionStamp(7, M)) is Verdict.ACCEPT

    def test_lower_version_is_stale(self):
        assert resolve(VersionStamp(5, M), VersionStamp(7, P)) is Verdict.STALE

    def test_same_write_seen_twice_is_stale(self):
        assert resolve(VersionStamp(3, M), VersionStamp(3, M)) is Verdict.STALE

    def test_tie_goes_to_primary_by_default(self):
        assert resolve(VersionStamp(4, P), VersionStamp(4, M)) is Verdict.ACCEPT
        assert resolve(VersionStamp(4, M), VersionStamp(4, P)) is Verdict.STALE

    def test_latest_write_wins_uses_timestamps(self):
        policy = ConflictPolicy.LATEST_WRITE_WINS
        newer_mirror = VersionStamp(4, M, observed_at=200)
        older_primary = VersionStamp(4, P, observed_at=100)
        assert resolve(newer_mirror, older_primary, policy) is Verdict.ACCEPT
        assert resolve(older_primary, newer_mirror, policy) is Verdict.STALE

    def test_latest_write_wins_falls_back_to_primary(self):
        policy = ConflictPolicy.LATEST_WRITE_WINS
        assert resolve(VersionStamp(4, M, 100), VersionStamp(4, P, 100), policy) is Verdict.STALE
        assert resolve(VersionStamp(4, M), VersionStamp(4, P, 100), policy) is Verdict.STALE

    @pytest.mark.parametrize("policy", list(ConflictPolicy))
    def test_outcome_independent_of_arrival_order(self, policy):
        a = VersionStamp(6, P, 50)
        b = VersionStamp(6, M, 60)
        # Exactly one of the two wins against the other
        assert {resolve(a, b, policy), resolve(b, a, policy)} == {Verdict.ACCEPT, Verdict.STALE}


def test_next_version():
    assert next_version() == 1
    assert next_version(3, 7, 5) == 8


def test_should_propagate():
    assert should_propagate(4, 3)
    assert not should_propagate(4, 4)
    assert not should_propagate(4, 9)


class TestPlanWrap:
    def test_free_wrapper_wraps_directly(self):
        plan = plan_wrap(WrapState.NONE, M)
        assert plan.verdict is Verdict.ACCEPT
        assert plan.steps == [WrapStep(M, WrapState.MIRROR)]

    def test_held_elsewhere_unwraps_first(self):
        plan = plan_wrap(WrapState.PRIMARY, M)
        assert plan.verdict is Verdict.DEFER
        assert plan.steps == [WrapStep(P, WrapState.NONE), WrapStep(M, WrapState.MIRROR)]

    def test_already_held_is_stale(self):
        plan = plan_wrap(WrapState.MIRROR, M)
        assert plan.verdict is Verdict.STALE
        assert plan.steps == []
