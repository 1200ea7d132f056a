"""State store — JSON-based persistence for the linkage tables.

Stores and recovers:
- Linkages (status, counters, escrow and settlement fields)
- Verifier votes per linkage
- Dispute records (active and resolved)
- Revenue shares per linkage
- Linkage metadata
- System scalars (authority, paused flag, escrow total, linkage counter)

This is a simple file-based store suitable for single-node deployment.
Production deployments would replace this with a database backend
while keeping the same interface.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

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
from offsetlink.store.linkage_store import LinkageStore, StoreScalars


class StateStore:
    """JSON file-based state persistence.

    Usage:
        state = StateStore(Path("data/linkage_state.json"))
        state.save(store)

        # On recovery:
        store = state.load(default_authority="deployer")
    """

    def __init__(self, storage_path: Path) -> None:
        self._path = storage_path
        self._state: dict[str, Any] = {}
        if storage_path.exists():
            self._load()

    def _load(self) -> None:
        with self._path.open("r", encoding="utf-8") as f:
            self._state = json.load(f)

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(self._state, f, indent=2, sort_keys=True, ensure_ascii=False)
        tmp.replace(self._path)

    @property
    def has_state(self) -> bool:
        return bool(self._state)

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    def save(self, store: LinkageStore) -> None:
        """Serialize every table and scalar of the store.

        Runs under the store's commit lock: no mutation is in flight
        while the tables are read and the file is replaced.
        """
        with store.commit_lock():
            records = []
            for link in store.iter_linkages():
                key = link.key
                dispute = store.get_dispute(key)
                metadata = store.get_metadata(key)
                records.append({
                    "linkage": _linkage_to_dict(link),
                    "votes": [
                        {
                            "verifier": v.verifier,
                            "vote": v.vote.value,
                            "cast_at": v.cast_at,
                        }
                        for v in store.votes_for(key)
                    ],
                    "dispute": _dispute_to_dict(dispute) if dispute else None,
                    "shares": [
                        {
                            "participant": s.participant,
                            "percentage": s.percentage,
                            "received": s.received,
                        }
                        for s in store.shares_for(key).values()
                    ],
                    "metadata": (
                        {
                            "description": metadata.description,
                            "tags": list(metadata.tags),
                            "visible": metadata.visible,
                        }
                        if metadata else None
                    ),
                })

            scalars = store.scalars()
            self._state = {
                "linkages": records,
                "scalars": {
                    "authority": scalars.authority,
                    "paused": scalars.paused,
                    "escrow_total": scalars.escrow_total,
                    "total_linkages": scalars.total_linkages,
                },
            }
            self._save()

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def load(self, default_authority: str) -> LinkageStore:
        """Rebuild a LinkageStore; an empty state yields a fresh store."""
        scalars_data = self._state.get("scalars", {})
        authority = scalars_data.get("authority", default_authority)
        store = LinkageStore(authority)
        if not self._state:
            return store

        linkages: list[Linkage] = []
        votes: dict[LinkageKey, list[VerifierVote]] = {}
        disputes: dict[LinkageKey, Dispute] = {}
        shares: dict[LinkageKey, list[RevenueShare]] = {}
        metadata: dict[LinkageKey, LinkageMetadata] = {}

        for record in self._state.get("linkages", []):
            link = _linkage_from_dict(record["linkage"])
            key = link.key
            linkages.append(link)
            votes[key] = [
                VerifierVote(
                    verifier=v["verifier"],
                    vote=VoteChoice(v["vote"]),
                    cast_at=v["cast_at"],
                )
                for v in record.get("votes", [])
            ]
            if record.get("dispute"):
                disputes[key] = _dispute_from_dict(record["dispute"])
            shares[key] = [
                RevenueShare(
                    participant=s["participant"],
                    percentage=s["percentage"],
                    received=s.get("received", 0),
                )
                for s in record.get("shares", [])
            ]
            meta = record.get("metadata")
            if meta is not None:
                metadata[key] = LinkageMetadata(
                    description=meta.get("description", ""),
                    tags=list(meta.get("tags", [])),
                    visible=meta.get("visible", True),
                )

        store.load_records(
            linkages=linkages,
            votes=votes,
            disputes=disputes,
            shares=shares,
            metadata=metadata,
            scalars=StoreScalars(
                authority=authority,
                paused=scalars_data.get("paused", False),
                escrow_total=scalars_data.get("escrow_total", 0),
                total_linkages=scalars_data.get("total_linkages", len(linkages)),
            ),
        )
        return store


def _linkage_to_dict(link: Linkage) -> dict[str, Any]:
    return {
        "flight_id": link.key.flight_id,
        "project_id": link.key.project_id,
        "offset_amount": link.offset_amount,
        "escrow_amount": link.escrow_amount,
        "creator": link.creator,
        "created_at": link.created_at,
        "last_updated_at": link.last_updated_at,
        "credential_id": link.credential_id,
        "status": link.status.value,
        "verification_count": link.verification_count,
        "rejection_count": link.rejection_count,
        "settlement": link.settlement.value,
        "payee": link.payee,
        "owner_payout": link.owner_payout,
        "share_payouts": dict(link.share_payouts),
    }


def _linkage_from_dict(data: dict[str, Any]) -> Linkage:
    return Linkage(
        key=LinkageKey(data["flight_id"], data["project_id"]),
        offset_amount=data["offset_amount"],
        escrow_amount=data["escrow_amount"],
        creator=data["creator"],
        created_at=data["created_at"],
        last_updated_at=data["last_updated_at"],
        credential_id=data.get("credential_id"),
        status=LinkageStatus(data["status"]),
        verification_count=data.get("verification_count", 0),
        rejection_count=data.get("rejection_count", 0),
        settlement=SettlementState(data.get("settlement", SettlementState.HELD.value)),
        payee=data.get("payee"),
        owner_payout=data.get("owner_payout", 0),
        share_payouts=dict(data.get("share_payouts", {})),
    )


def _dispute_to_dict(dispute: Dispute) -> dict[str, Any]:
    return {
        "initiator": dispute.initiator,
        "reason": dispute.reason,
        "opened_at": dispute.opened_at,
        "active": dispute.active,
        "resolved_at": dispute.resolved_at,
        "upheld": dispute.upheld,
    }


def _dispute_from_dict(data: dict[str, Any]) -> Dispute:
    resolved_at: Optional[int] = data.get("resolved_at")
    return Dispute(
        initiator=data["initiator"],
        reason=data.get("reason", ""),
        opened_at=data.get("opened_at", 0),
        active=data.get("active", False),
        resolved_at=resolved_at,
        upheld=data.get("upheld"),
    )
