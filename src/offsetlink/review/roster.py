"""Verifier roster — registry of identities eligible to vote on linkages.

The roster is the in-process implementation of the verifier oracle.
It tracks each verifier's organisation and operational status, and
answers the two oracle questions the engine asks:
- Is this identity on the roster?
- Is this identity currently authorized to vote?

Invariants enforced:
- Suspended and retired verifiers are never authorized.
- Verifier ids are canonical (stripped, non-blank).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


class VerifierStatus(str, enum.Enum):
    """Operational status of a roster verifier."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    RETIRED = "retired"


@dataclass
class VerifierEntry:
    """A single verifier in the roster."""
    verifier_id: str
    organization: str = ""
    status: VerifierStatus = VerifierStatus.ACTIVE

    def is_authorized(self) -> bool:
        return self.status == VerifierStatus.ACTIVE


class VerifierRoster:
    """Registry of all verifiers.

    Thread-safety: this class is not thread-safe. The caller must
    synchronise access if used from multiple threads.
    """

    def __init__(self) -> None:
        self._verifiers: dict[str, VerifierEntry] = {}

    def register(self, entry: VerifierEntry) -> None:
        """Register a new verifier or update an existing one.

        Raises ValueError if verifier_id is blank/empty.
        """
        canonical_id = entry.verifier_id.strip()
        if not canonical_id:
            raise ValueError("Cannot register verifier with blank ID")
        entry.verifier_id = canonical_id
        self._verifiers[canonical_id] = entry

    def set_status(self, verifier_id: str, status: VerifierStatus) -> None:
        entry = self.get(verifier_id)
        if entry is None:
            raise KeyError(f"Verifier not found: {verifier_id}")
        entry.status = status

    def get(self, verifier_id: str) -> Optional[VerifierEntry]:
        return self._verifiers.get(verifier_id.strip())

    def all_verifiers(self) -> list[VerifierEntry]:
        return list(self._verifiers.values())

    # Oracle interface

    def is_authorized_verifier(self, identity: str) -> bool:
        entry = self.get(identity)
        return entry is not None and entry.is_authorized()

    def get_verifier_roster(self) -> list[str]:
        return list(self._verifiers)

    @property
    def count(self) -> int:
        return len(self._verifiers)

    @property
    def active_count(self) -> int:
        return sum(1 for v in self._verifiers.values() if v.is_authorized())
