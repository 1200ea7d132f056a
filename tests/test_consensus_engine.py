"""Unit tests for the consensus engine.

Pure computation: first-to-threshold evaluation, voter cap, share
caps, release plans and the dispute window.
"""

import pytest

from offsetlink.engine.consensus import ConsensusEngine, Payment
from offsetlink.models.linkage import (
    Linkage,
    LinkageKey,
    LinkageStatus,
    RevenueShare,
)
from offsetlink.policy.resolver import PolicyResolver


def _linkage(
    approvals: int = 0,
    rejections: int = 0,
    escrow: int = 100,
    last_updated_at: int = 1000,
) -> Linkage:
    return Linkage(
        key=LinkageKey("FL-1", "PRJ-1"),
        offset_amount=10,
        escrow_amount=escrow,
        creator="creator",
        created_at=1000,
        last_updated_at=last_updated_at,
        verification_count=approvals,
        rejection_count=rejections,
    )


@pytest.fixture
def engine(resolver: PolicyResolver) -> ConsensusEngine:
    return ConsensusEngine(resolver)


class TestEvaluate:
    def test_below_threshold(self, engine: ConsensusEngine) -> None:
        result = engine.evaluate(_linkage(approvals=2, rejections=2))
        assert result.outcome is None
        assert not result.reached
        assert result.threshold == 3

    def test_approvals_reach_threshold(self, engine: ConsensusEngine) -> None:
        result = engine.evaluate(_linkage(approvals=3, rejections=2))
        assert result.outcome == LinkageStatus.VERIFIED

    def test_rejections_reach_threshold(self, engine: ConsensusEngine) -> None:
        result = engine.evaluate(_linkage(approvals=2, rejections=3))
        assert result.outcome == LinkageStatus.REJECTED

    def test_approvals_checked_first(self, engine: ConsensusEngine) -> None:
        # Unreachable through voting, but the precedence is fixed.
        result = engine.evaluate(_linkage(approvals=3, rejections=3))
        assert result.outcome == LinkageStatus.VERIFIED

    def test_counts_reported(self, engine: ConsensusEngine) -> None:
        result = engine.evaluate(_linkage(approvals=1, rejections=2))
        assert result.verification_count == 1
        assert result.rejection_count == 2


class TestVoterCap:
    def test_cap(self, engine: ConsensusEngine) -> None:
        assert not engine.voter_cap_reached(4)
        assert engine.voter_cap_reached(5)
        assert engine.voter_cap_reached(6)


class TestShareTotals:
    def test_new_participant_adds(self, engine: ConsensusEngine) -> None:
        shares = {"a": RevenueShare("a", 40)}
        assert engine.share_total_after(shares, "b", 30) == 70

    def test_overwrite_replaces(self, engine: ConsensusEngine) -> None:
        shares = {"a": RevenueShare("a", 40), "b": RevenueShare("b", 50)}
        assert engine.share_total_after(shares, "a", 10) == 60

    def test_cap(self, engine: ConsensusEngine) -> None:
        assert engine.share_total_allowed(100)
        assert not engine.share_total_allowed(101)


class TestPlanRelease:
    def test_no_shares_owner_takes_all(self, engine: ConsensusEngine) -> None:
        plan = engine.plan_release(_linkage(), "owner", ["p1"], {})
        assert plan.owner_amount == 100
        assert plan.share_payments == []
        assert plan.total == 100

    def test_shares_carved_out(self, engine: ConsensusEngine) -> None:
        shares = {"p1": RevenueShare("p1", 20), "p2": RevenueShare("p2", 30)}
        plan = engine.plan_release(_linkage(), "owner", ["p1", "p2"], shares)
        assert plan.share_payments == [Payment("p1", 20), Payment("p2", 30)]
        assert plan.owner_amount == 50
        assert plan.total == 100

    def test_rounding_remainder_to_owner(self, engine: ConsensusEngine) -> None:
        shares = {"p1": RevenueShare("p1", 33), "p2": RevenueShare("p2", 33)}
        plan = engine.plan_release(_linkage(escrow=101), "owner", ["p1", "p2"], shares)
        assert [p.amount for p in plan.share_payments] == [33, 33]
        assert plan.owner_amount == 35
        assert plan.total == 101

    def test_unlisted_shareholder_not_paid(self, engine: ConsensusEngine) -> None:
        shares = {"ghost": RevenueShare("ghost", 50)}
        plan = engine.plan_release(_linkage(), "owner", ["p1"], shares)
        assert plan.share_payments == []
        assert plan.owner_amount == 100

    def test_duplicate_participant_paid_once(self, engine: ConsensusEngine) -> None:
        shares = {"p1": RevenueShare("p1", 10)}
        plan = engine.plan_release(_linkage(), "owner", ["p1", "p1"], shares)
        assert plan.share_payments == [Payment("p1", 10)]
        assert plan.owner_amount == 90

    def test_zero_payout_skipped(self, engine: ConsensusEngine) -> None:
        shares = {"p1": RevenueShare("p1", 1)}
        plan = engine.plan_release(_linkage(escrow=50), "owner", ["p1"], shares)
        assert plan.share_payments == []
        assert plan.owner_amount == 50

    def test_overdraw_raises(self, engine: ConsensusEngine) -> None:
        shares = {"p1": RevenueShare("p1", 80), "p2": RevenueShare("p2", 80)}
        with pytest.raises(ValueError, match="exceed escrow"):
            engine.plan_release(_linkage(), "owner", ["p1", "p2"], shares)


class TestDisputeWindow:
    def test_inside(self, engine: ConsensusEngine) -> None:
        assert engine.dispute_window_open(_linkage(last_updated_at=1000), 1143)

    def test_at_window_closed(self, engine: ConsensusEngine) -> None:
        assert not engine.dispute_window_open(_linkage(last_updated_at=1000), 1144)

    def test_same_block(self, engine: ConsensusEngine) -> None:
        assert engine.dispute_window_open(_linkage(last_updated_at=1000), 1000)
