"""Linkage records — the flight/project pair, its escrow, votes, dispute,
revenue shares and metadata.

All records are keyed directly or transitively by LinkageKey. The key
is a value type: two linkages with the same flight and project are the
same linkage, regardless of how the strings were produced.

Amounts are integer base units of the host ledger. Timestamps are
ledger heights (monotonic block numbers), not wall-clock time.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class LinkageStatus(str, enum.Enum):
    """Lifecycle states for a linkage.

    PENDING → VERIFIED | REJECTED (first to the consensus threshold)
    VERIFIED → DISPUTED (within the dispute window)
    DISPUTED → VERIFIED | REJECTED (authority resolution)
    """
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    DISPUTED = "disputed"


class VoteChoice(str, enum.Enum):
    """A verifier's vote on a pending linkage."""
    APPROVE = "approve"
    REJECT = "reject"


class SettlementState(str, enum.Enum):
    """Where the escrowed payment currently sits.

    HELD → RELEASED (verification) or REFUNDED (rejection).
    RELEASED → REFUNDED only when a dispute overturns the verification
    and the released amounts have been reclaimed from the payees.
    """
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

DEFAULT_MAX_ID_LENGTH = 64


def validate_identifier(
    value: str, label: str, max_length: int = DEFAULT_MAX_ID_LENGTH,
) -> str:
    """Return the canonical (stripped) identifier or raise ValueError."""
    canonical = value.strip() if isinstance(value, str) else ""
    if not canonical:
        raise ValueError(f"{label} must be a non-empty string")
    if len(canonical) > max_length:
        raise ValueError(
            f"{label} exceeds {max_length} characters: {len(canonical)}"
        )
    return canonical


@dataclass(frozen=True, order=True)
class LinkageKey:
    """Identity of a linkage: one flight tied to one project."""
    flight_id: str
    project_id: str

    def __post_init__(self) -> None:
        if not self.flight_id or not self.project_id:
            raise ValueError("LinkageKey requires both flight_id and project_id")

    def __str__(self) -> str:
        return f"{self.flight_id}/{self.project_id}"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class Linkage:
    """The escrow-bearing record tying a flight to a project.

    offset_amount and escrow_amount are fixed at creation. Status, vote
    counters, last_updated_at and the settlement fields are the only
    things that change afterwards.
    """
    key: LinkageKey
    offset_amount: int
    escrow_amount: int
    creator: str
    created_at: int
    last_updated_at: int
    credential_id: Optional[str] = None
    status: LinkageStatus = LinkageStatus.PENDING
    verification_count: int = 0
    rejection_count: int = 0

    # Settlement: who was paid what when escrow left the holding account
    settlement: SettlementState = SettlementState.HELD
    payee: Optional[str] = None
    owner_payout: int = 0
    share_payouts: dict[str, int] = field(default_factory=dict)

    @property
    def is_settled(self) -> bool:
        return self.settlement != SettlementState.HELD


@dataclass(frozen=True)
class VerifierVote:
    """A single verifier's immutable vote on a linkage."""
    verifier: str
    vote: VoteChoice
    cast_at: int


@dataclass
class Dispute:
    """A challenge to a verified linkage, retained after resolution."""
    initiator: str
    reason: str
    opened_at: int
    active: bool = True
    resolved_at: Optional[int] = None
    upheld: Optional[bool] = None  # True = verification stands


@dataclass
class RevenueShare:
    """A participant's percentage of a released escrow payment.

    received accumulates across the share's lifetime; changing the
    percentage does not reset it.
    """
    participant: str
    percentage: int
    received: int = 0

    def __post_init__(self) -> None:
        if not (0 < self.percentage <= 100):
            raise ValueError(
                f"Revenue share percentage must be in (0, 100], got {self.percentage}"
            )

    def payout_for(self, escrow_amount: int) -> int:
        """Floor of this share's percentage of the escrow amount."""
        return escrow_amount * self.percentage // 100


@dataclass
class LinkageMetadata:
    """Creator-editable description of a linkage. No lifecycle coupling."""
    description: str = ""
    tags: list[str] = field(default_factory=list)
    visible: bool = True
