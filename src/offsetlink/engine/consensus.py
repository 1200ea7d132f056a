"""Consensus and payout engine — decides when a pending linkage settles
and how a released escrow is split.

Pure computation: no side effects. The service layer handles ledger
transfers, event recording, persistence and record mutation.

Invariants:
- Consensus is first-to-threshold. Approvals are checked before
  rejections, and once a linkage leaves PENDING no further votes are
  accepted, so arrival order decides the outcome.
- A release plan never pays out more than the escrow amount. Shares
  are carved out of the escrow; the project owner receives the rest,
  including any rounding remainder.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from offsetlink.models.linkage import Linkage, LinkageStatus, RevenueShare
from offsetlink.policy.resolver import PolicyResolver


@dataclass(frozen=True)
class ConsensusResult:
    """Outcome of evaluating a linkage's vote counters."""
    outcome: Optional[LinkageStatus]  # None = still pending
    verification_count: int
    rejection_count: int
    threshold: int

    @property
    def reached(self) -> bool:
        return self.outcome is not None


@dataclass(frozen=True)
class Payment:
    """One ledger movement out of (or back into) the holding account."""
    holder: str
    amount: int


@dataclass(frozen=True)
class ReleasePlan:
    """How a released escrow is distributed."""
    owner: str
    owner_amount: int
    share_payments: list[Payment] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.owner_amount + sum(p.amount for p in self.share_payments)


class ConsensusEngine:
    """Evaluates vote thresholds, share caps and release plans.

    Pure computation — no side effects. Receives state, returns results.
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    def evaluate(self, linkage: Linkage) -> ConsensusResult:
        """Apply the first-to-threshold rule to a linkage's counters."""
        threshold = self._resolver.consensus_policy().threshold
        outcome: Optional[LinkageStatus] = None
        if linkage.verification_count >= threshold:
            outcome = LinkageStatus.VERIFIED
        elif linkage.rejection_count >= threshold:
            outcome = LinkageStatus.REJECTED
        return ConsensusResult(
            outcome=outcome,
            verification_count=linkage.verification_count,
            rejection_count=linkage.rejection_count,
            threshold=threshold,
        )

    def voter_cap_reached(self, votes_cast: int) -> bool:
        return votes_cast >= self._resolver.consensus_policy().max_verifiers

    def share_total_after(
        self,
        shares: dict[str, RevenueShare],
        participant: str,
        percentage: int,
    ) -> int:
        """Sum of percentages if participant's share were set to percentage."""
        others = sum(
            s.percentage for p, s in shares.items() if p != participant
        )
        return others + percentage

    def share_total_allowed(self, total: int) -> bool:
        return total <= self._resolver.max_total_share_percentage()

    def plan_release(
        self,
        linkage: Linkage,
        owner: str,
        participants: list[str],
        shares: dict[str, RevenueShare],
    ) -> ReleasePlan:
        """Split a linkage's escrow between its shareholders and the owner.

        Only participants the project currently lists AND who hold a
        share record are paid. Duplicate participant entries are paid
        once. Each share is floor(escrow * pct / 100).

        Raises ValueError if the shares would exceed the escrow, which
        the share cap makes unreachable under a valid policy.
        """
        escrow = linkage.escrow_amount
        payments: list[Payment] = []
        seen: set[str] = set()
        for participant in participants:
            if participant in seen:
                continue
            seen.add(participant)
            share = shares.get(participant)
            if share is None:
                continue
            amount = share.payout_for(escrow)
            if amount > 0:
                payments.append(Payment(holder=participant, amount=amount))

        distributed = sum(p.amount for p in payments)
        if distributed > escrow:
            raise ValueError(
                f"Share payouts {distributed} exceed escrow {escrow} for {linkage.key}"
            )
        return ReleasePlan(
            owner=owner,
            owner_amount=escrow - distributed,
            share_payments=payments,
        )

    def dispute_window_open(self, linkage: Linkage, height: int) -> bool:
        """True while height is strictly inside the window after last_updated_at."""
        return height - linkage.last_updated_at < self._resolver.dispute_window()
