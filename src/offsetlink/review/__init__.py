"""Review module — the verifier roster consulted before each vote."""

from offsetlink.review.roster import VerifierEntry, VerifierRoster, VerifierStatus

__all__ = ["VerifierEntry", "VerifierRoster", "VerifierStatus"]
