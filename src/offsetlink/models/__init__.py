"""Data models — linkage records and their enumerations."""

from offsetlink.models.linkage import (
    Dispute,
    Linkage,
    LinkageKey,
    LinkageMetadata,
    LinkageStatus,
    RevenueShare,
    SettlementState,
    VerifierVote,
    VoteChoice,
)

__all__ = [
    "Dispute",
    "Linkage",
    "LinkageKey",
    "LinkageMetadata",
    "LinkageStatus",
    "RevenueShare",
    "SettlementState",
    "VerifierVote",
    "VoteChoice",
]
