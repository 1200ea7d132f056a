"""Linkage store — the tables and scalars behind the lifecycle engine.

Five keyed tables, all keyed by LinkageKey (votes and shares nest a
second key under it):
- linkages:  LinkageKey -> Linkage
- votes:     LinkageKey -> {verifier -> VerifierVote}
- disputes:  LinkageKey -> Dispute
- shares:    LinkageKey -> {participant -> RevenueShare}
- metadata:  LinkageKey -> LinkageMetadata

Plus the system scalars: paused flag, running escrow total, total
linkage counter and the authority identity. Nothing outside this class
holds them.

Concurrency: operations on one key serialise on that key's lock
(lock_for). Table and scalar updates take a short internal guard so
different keys can proceed with their checks in parallel. Writes,
from the first mutation to commit or rollback, run under commit_lock
so persistence only ever reads committed state. Rollback is per key:
take a snapshot() before mutating, restore() it on failure.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from offsetlink.models.linkage import (
    Dispute,
    Linkage,
    LinkageKey,
    LinkageMetadata,
    RevenueShare,
    VerifierVote,
)


@dataclass(frozen=True)
class KeySnapshot:
    """Deep copy of every record stored under one key."""
    key: LinkageKey
    linkage: Optional[Linkage]
    votes: dict[str, VerifierVote]
    dispute: Optional[Dispute]
    shares: dict[str, RevenueShare]
    metadata: Optional[LinkageMetadata]


@dataclass
class StoreScalars:
    authority: str
    paused: bool = False
    escrow_total: int = 0
    total_linkages: int = 0


class LinkageStore:
    """Exclusive owner of all linkage records and system scalars."""

    def __init__(self, authority: str) -> None:
        if not authority or not authority.strip():
            raise ValueError("Store requires a non-blank authority identity")
        self._linkages: dict[LinkageKey, Linkage] = {}
        self._votes: dict[LinkageKey, dict[str, VerifierVote]] = {}
        self._disputes: dict[LinkageKey, Dispute] = {}
        self._shares: dict[LinkageKey, dict[str, RevenueShare]] = {}
        self._metadata: dict[LinkageKey, LinkageMetadata] = {}
        self._scalars = StoreScalars(authority=authority.strip())

        self._guard = threading.RLock()
        self._key_locks: dict[LinkageKey, threading.RLock] = {}
        self._admin_lock = threading.RLock()
        self._commit_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def lock_for(self, key: LinkageKey) -> Iterator[None]:
        """Hold the exclusive lock for one linkage key."""
        with self._guard:
            lock = self._key_locks.setdefault(key, threading.RLock())
        with lock:
            yield

    @contextmanager
    def admin_lock(self) -> Iterator[None]:
        """Serialise authority-level operations (pause, authority change)."""
        with self._admin_lock:
            yield

    @contextmanager
    def commit_lock(self) -> Iterator[None]:
        """Held by a mutation from its first write until commit or rollback.

        Anything that reads the whole store for persistence takes it too,
        so a save never sees another key's uncommitted changes. Acquire
        after lock_for() or admin_lock(), never before.
        """
        with self._commit_lock:
            yield

    # ------------------------------------------------------------------
    # Linkages
    # ------------------------------------------------------------------

    def has_linkage(self, key: LinkageKey) -> bool:
        with self._guard:
            return key in self._linkages

    def get_linkage(self, key: LinkageKey) -> Optional[Linkage]:
        with self._guard:
            return self._linkages.get(key)

    def insert_linkage(
        self, linkage: Linkage, metadata: LinkageMetadata,
    ) -> None:
        """Write a new linkage with its metadata and bump the counter.

        Raises ValueError if the key is already present; linkages are
        created once and never replaced.
        """
        with self._guard:
            if linkage.key in self._linkages:
                raise ValueError(f"Linkage already exists: {linkage.key}")
            self._linkages[linkage.key] = linkage
            self._metadata[linkage.key] = metadata
            self._scalars.total_linkages += 1

    def iter_linkages(self) -> list[Linkage]:
        with self._guard:
            return list(self._linkages.values())

    def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for link in self.iter_linkages():
            counts[link.status.value] = counts.get(link.status.value, 0) + 1
        return counts

    # ------------------------------------------------------------------
    # Votes
    # ------------------------------------------------------------------

    def get_vote(self, key: LinkageKey, verifier: str) -> Optional[VerifierVote]:
        with self._guard:
            return self._votes.get(key, {}).get(verifier)

    def votes_for(self, key: LinkageKey) -> list[VerifierVote]:
        with self._guard:
            return list(self._votes.get(key, {}).values())

    def vote_count(self, key: LinkageKey) -> int:
        with self._guard:
            return len(self._votes.get(key, {}))

    def put_vote(self, key: LinkageKey, vote: VerifierVote) -> None:
        """Record a vote. Raises ValueError if the verifier already voted."""
        with self._guard:
            table = self._votes.setdefault(key, {})
            if vote.verifier in table:
                raise ValueError(
                    f"Verifier {vote.verifier} already voted on {key}"
                )
            table[vote.verifier] = vote

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def get_dispute(self, key: LinkageKey) -> Optional[Dispute]:
        with self._guard:
            return self._disputes.get(key)

    def put_dispute(self, key: LinkageKey, dispute: Dispute) -> None:
        with self._guard:
            self._disputes[key] = dispute

    def active_dispute_count(self) -> int:
        with self._guard:
            return sum(1 for d in self._disputes.values() if d.active)

    # ------------------------------------------------------------------
    # Revenue shares
    # ------------------------------------------------------------------

    def get_share(self, key: LinkageKey, participant: str) -> Optional[RevenueShare]:
        with self._guard:
            return self._shares.get(key, {}).get(participant)

    def shares_for(self, key: LinkageKey) -> dict[str, RevenueShare]:
        with self._guard:
            return dict(self._shares.get(key, {}))

    def put_share(self, key: LinkageKey, share: RevenueShare) -> None:
        with self._guard:
            self._shares.setdefault(key, {})[share.participant] = share

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def get_metadata(self, key: LinkageKey) -> Optional[LinkageMetadata]:
        with self._guard:
            return self._metadata.get(key)

    def put_metadata(self, key: LinkageKey, metadata: LinkageMetadata) -> None:
        with self._guard:
            if key not in self._linkages:
                raise KeyError(f"No linkage for metadata: {key}")
            self._metadata[key] = metadata

    # ------------------------------------------------------------------
    # Scalars
    # ------------------------------------------------------------------

    @property
    def authority(self) -> str:
        return self._scalars.authority

    def set_authority(self, authority: str) -> None:
        canonical = authority.strip()
        if not canonical:
            raise ValueError("Authority identity cannot be blank")
        with self._guard:
            self._scalars.authority = canonical

    @property
    def paused(self) -> bool:
        return self._scalars.paused

    def set_paused(self, paused: bool) -> None:
        with self._guard:
            self._scalars.paused = paused

    @property
    def escrow_total(self) -> int:
        return self._scalars.escrow_total

    def adjust_escrow(self, delta: int) -> int:
        """Apply a signed change to the escrow total and return the new value.

        Raises ValueError if the total would go negative.
        """
        with self._guard:
            updated = self._scalars.escrow_total + delta
            if updated < 0:
                raise ValueError(
                    f"Escrow total cannot go negative: {self._scalars.escrow_total} + {delta}"
                )
            self._scalars.escrow_total = updated
            return updated

    @property
    def total_linkages(self) -> int:
        return self._scalars.total_linkages

    # ------------------------------------------------------------------
    # Snapshot / restore (per-key rollback)
    # ------------------------------------------------------------------

    def snapshot(self, key: LinkageKey) -> KeySnapshot:
        with self._guard:
            return KeySnapshot(
                key=key,
                linkage=copy.deepcopy(self._linkages.get(key)),
                votes=copy.deepcopy(self._votes.get(key, {})),
                dispute=copy.deepcopy(self._disputes.get(key)),
                shares=copy.deepcopy(self._shares.get(key, {})),
                metadata=copy.deepcopy(self._metadata.get(key)),
            )

    def restore(self, snap: KeySnapshot) -> None:
        """Put every table entry for snap.key back as it was.

        Restoring a snapshot taken before creation removes the linkage
        and decrements the counter again.
        """
        key = snap.key
        with self._guard:
            existed = key in self._linkages
            _assign(self._linkages, key, snap.linkage)
            _assign(self._disputes, key, snap.dispute)
            _assign(self._metadata, key, snap.metadata)
            _assign(self._votes, key, snap.votes or None)
            _assign(self._shares, key, snap.shares or None)
            if existed and snap.linkage is None:
                self._scalars.total_linkages -= 1

    # ------------------------------------------------------------------
    # Bulk load (state recovery)
    # ------------------------------------------------------------------

    def load_records(
        self,
        linkages: list[Linkage],
        votes: dict[LinkageKey, list[VerifierVote]],
        disputes: dict[LinkageKey, Dispute],
        shares: dict[LinkageKey, list[RevenueShare]],
        metadata: dict[LinkageKey, LinkageMetadata],
        scalars: StoreScalars,
    ) -> None:
        """Replace all tables from recovered state."""
        with self._guard:
            self._linkages = {link.key: link for link in linkages}
            self._votes = {
                k: {v.verifier: v for v in vs} for k, vs in votes.items() if vs
            }
            self._disputes = dict(disputes)
            self._shares = {
                k: {s.participant: s for s in ss} for k, ss in shares.items() if ss
            }
            self._metadata = dict(metadata)
            self._scalars = scalars

    def scalars(self) -> StoreScalars:
        with self._guard:
            return copy.copy(self._scalars)


def _assign(table: dict, key: LinkageKey, value: object) -> None:
    if value is None:
        table.pop(key, None)
    else:
        table[key] = value
