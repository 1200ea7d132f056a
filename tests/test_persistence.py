"""Tests for the persistence layer — event log and state store."""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

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
from offsetlink.persistence.event_log import EventKind, EventLog, EventRecord
from offsetlink.persistence.state_store import StateStore
from offsetlink.store.linkage_store import LinkageStore


# =====================================================================
# EventRecord / EventLog
# =====================================================================


class TestEventRecord:
    def test_create_produces_hash(self) -> None:
        event = EventRecord.create(
            "E-1", EventKind.LINKAGE_CREATED, "alice", {"flight_id": "F"},
        )
        assert event.event_hash.startswith("sha256:")
        assert len(event.event_hash) == 71

    def test_deterministic_hash(self) -> None:
        ts = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        e1 = EventRecord.create("E-1", EventKind.VOTE_CAST, "v", {"x": 1}, 7, ts)
        e2 = EventRecord.create("E-1", EventKind.VOTE_CAST, "v", {"x": 1}, 7, ts)
        assert e1.event_hash == e2.event_hash

    def test_height_is_hashed(self) -> None:
        ts = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        e1 = EventRecord.create("E-1", EventKind.VOTE_CAST, "v", {}, 7, ts)
        e2 = EventRecord.create("E-1", EventKind.VOTE_CAST, "v", {}, 8, ts)
        assert e1.event_hash != e2.event_hash


class TestEventLog:
    def test_duplicate_id_rejected(self) -> None:
        log = EventLog()
        event = EventRecord.create("E-1", EventKind.LINKAGE_CREATED, "a", {})
        log.append(event)
        with pytest.raises(ValueError, match="Duplicate"):
            log.append(event)
        assert log.count == 1

    def test_filter_by_kind(self) -> None:
        log = EventLog()
        log.append(EventRecord.create("E-1", EventKind.VOTE_CAST, "a", {}))
        log.append(EventRecord.create("E-2", EventKind.ESCROW_RELEASED, "a", {}))
        log.append(EventRecord.create("E-3", EventKind.VOTE_CAST, "b", {}))
        assert len(log.events(EventKind.VOTE_CAST)) == 2
        assert log.last_event.event_id == "E-3"

    def test_events_for_linkage(self) -> None:
        log = EventLog()
        log.append(EventRecord.create(
            "E-1", EventKind.VOTE_CAST, "a", {"flight_id": "F1", "project_id": "P1"},
        ))
        log.append(EventRecord.create(
            "E-2", EventKind.VOTE_CAST, "a", {"flight_id": "F2", "project_id": "P1"},
        ))
        assert [e.event_id for e in log.events_for_linkage("F1", "P1")] == ["E-1"]

    def test_file_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        log1 = EventLog(storage_path=path)
        log1.append(EventRecord.create("E-1", EventKind.LINKAGE_CREATED, "a", {"n": 1}, 5))
        log1.append(EventRecord.create("E-2", EventKind.VOTE_CAST, "b", {"n": 2}, 6))

        log2 = EventLog(storage_path=path)
        assert log2.count == 2
        assert log2.events()[1].block_height == 6
        assert log2.events()[0].event_kind == EventKind.LINKAGE_CREATED

    def test_tampered_file_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(storage_path=path)
        log.append(EventRecord.create("E-1", EventKind.ESCROW_RELEASED, "a", {"amount": 100}))

        record = json.loads(path.read_text().strip())
        record["payload"]["amount"] = 1_000_000
        path.write_text(json.dumps(record) + "\n")

        with pytest.raises(ValueError, match="Integrity check failed"):
            EventLog(storage_path=path)

    def test_replayed_file_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(storage_path=path)
        log.append(EventRecord.create("E-1", EventKind.VOTE_CAST, "a", {}))
        line = path.read_text()
        path.write_text(line + line)
        with pytest.raises(ValueError, match="Duplicate event ID on recovery"):
            EventLog(storage_path=path)

    def test_append_many_writes_batch(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(storage_path=path)
        log.append_many([
            EventRecord.create("E-1", EventKind.VOTE_CAST, "a", {}),
            EventRecord.create("E-2", EventKind.LINKAGE_VERIFIED, "a", {}),
            EventRecord.create("E-3", EventKind.ESCROW_RELEASED, "a", {}),
        ])
        assert log.count == 3
        reloaded = EventLog(storage_path=path)
        assert [e.event_id for e in reloaded.events()] == ["E-1", "E-2", "E-3"]

    def test_batch_with_duplicate_writes_nothing(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(storage_path=path)
        log.append(EventRecord.create("E-1", EventKind.LINKAGE_CREATED, "a", {}))

        with pytest.raises(ValueError, match="Duplicate event ID: E-2"):
            log.append_many([
                EventRecord.create("E-2", EventKind.VOTE_CAST, "a", {}),
                EventRecord.create("E-2", EventKind.ESCROW_RELEASED, "a", {}),
            ])
        assert log.count == 1
        assert EventLog(storage_path=path).count == 1

    def test_batch_colliding_with_logged_id_writes_nothing(self) -> None:
        log = EventLog()
        log.append(EventRecord.create("E-1", EventKind.LINKAGE_CREATED, "a", {}))
        with pytest.raises(ValueError, match="Duplicate"):
            log.append_many([
                EventRecord.create("E-2", EventKind.VOTE_CAST, "a", {}),
                EventRecord.create("E-1", EventKind.VOTE_CAST, "a", {}),
            ])
        assert [e.event_id for e in log.events()] == ["E-1"]


# =====================================================================
# StateStore
# =====================================================================


def _populated_store() -> LinkageStore:
    store = LinkageStore("deployer")
    key = LinkageKey("FL-1", "PRJ-1")
    link = Linkage(
        key=key,
        offset_amount=10,
        escrow_amount=100,
        creator="creator",
        created_at=1000,
        last_updated_at=1003,
        credential_id="CRED-000001",
        status=LinkageStatus.DISPUTED,
        verification_count=3,
        settlement=SettlementState.RELEASED,
        payee="owner",
        owner_payout=80,
        share_payouts={"p": 20},
    )
    store.insert_linkage(link, LinkageMetadata("desc", ["carbon"], False))
    store.put_vote(key, VerifierVote("v1", VoteChoice.APPROVE, 1001))
    store.put_vote(key, VerifierVote("v2", VoteChoice.REJECT, 1002))
    store.put_share(key, RevenueShare("p", 20, received=20))
    store.put_dispute(key, Dispute(initiator="x", reason="bad data", opened_at=1004))
    store.adjust_escrow(55)
    store.set_paused(True)
    return store


class TestStateStore:
    def test_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        StateStore(path).save(_populated_store())

        loaded = StateStore(path).load(default_authority="someone-else")
        key = LinkageKey("FL-1", "PRJ-1")
        link = loaded.get_linkage(key)
        assert link.status == LinkageStatus.DISPUTED
        assert link.settlement == SettlementState.RELEASED
        assert link.share_payouts == {"p": 20}
        assert link.credential_id == "CRED-000001"
        assert loaded.get_vote(key, "v2").vote == VoteChoice.REJECT
        assert loaded.get_share(key, "p").received == 20
        assert loaded.get_dispute(key).active is True
        meta = loaded.get_metadata(key)
        assert meta.tags == ["carbon"]
        assert meta.visible is False
        assert loaded.escrow_total == 55
        assert loaded.paused is True
        assert loaded.total_linkages == 1
        assert loaded.authority == "deployer"

    def test_empty_state_gives_fresh_store(self, tmp_path: Path) -> None:
        state = StateStore(tmp_path / "missing.json")
        assert not state.has_state
        store = state.load(default_authority="deployer")
        assert store.total_linkages == 0
        assert store.authority == "deployer"

    def test_save_creates_parent_dirs(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "dir" / "state.json"
        StateStore(path).save(LinkageStore("deployer"))
        assert path.exists()

    def test_save_waits_for_commit(self, tmp_path: Path) -> None:
        store = LinkageStore("deployer")
        state = StateStore(tmp_path / "state.json")
        saved = threading.Event()

        def save() -> None:
            state.save(store)
            saved.set()

        with store.commit_lock():
            t = threading.Thread(target=save)
            t.start()
            assert not saved.wait(timeout=0.2)
            store.adjust_escrow(40)
        assert saved.wait(timeout=5)
        t.join(timeout=5)
        assert StateStore(tmp_path / "state.json").load("deployer").escrow_total == 40
