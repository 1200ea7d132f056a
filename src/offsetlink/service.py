"""Linkage service — the lifecycle engine for flight/project linkages.

This is the primary interface for programmatic access to offsetlink.
It orchestrates:
- Linkage creation (credential issuance, escrow deposit)
- Verifier voting and first-to-threshold consensus
- Escrow release to the project owner and revenue-share participants
- Escrow refund to the creator
- Disputes over verified linkages and their resolution by the authority
- Revenue-share and metadata configuration by the creator
- Administrative pause/unpause and authority hand-over
- Persistence (event log, state store)

Every operation returns a ServiceResult. Precondition checks run in a
fixed order and the first failure is reported as a LinkageError. An
operation either applies all of its effects or none: ledger transfers
made before a later step fails are reversed, and the key's records are
restored from a snapshot. Audit recording is fail-closed.
"""

from __future__ import annotations

import contextlib
import copy
import logging
import threading
from typing import Any, Callable, Optional, Union

from offsetlink.adapters.base import (
    CredentialIssuer,
    FlightRegistry,
    Ledger,
    ProjectRegistry,
    VerifierOracle,
)
from offsetlink.engine.consensus import ConsensusEngine
from offsetlink.errors import (
    CredentialError,
    LinkageError,
    ServiceResult,
    TransferError,
)
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
    validate_identifier,
)
from offsetlink.persistence.event_log import EventKind, EventLog, EventRecord
from offsetlink.persistence.state_store import StateStore
from offsetlink.policy.resolver import PolicyResolver
from offsetlink.store.linkage_store import KeySnapshot, LinkageStore

logger = logging.getLogger(__name__)

DEFAULT_HOLDING_ACCOUNT = "offsetlink.escrow"


class _Transaction:
    """Compensation record for a single service operation.

    Tracks ledger transfers and escrow-total changes made so far, plus
    a snapshot of the key's records, so the whole operation can be
    undone if a later step fails. Used as a context manager: an
    exception escaping the block rolls everything back before it
    propagates.
    """

    def __init__(
        self,
        store: LinkageStore,
        ledger: Ledger,
        snapshot: Optional[KeySnapshot],
        on_compensation_failure: Callable[[str], None],
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._snapshot = snapshot
        self._on_compensation_failure = on_compensation_failure
        self._transfers: list[tuple[str, str, int]] = []
        self._escrow_delta = 0
        self._rolled_back = False

    def __enter__(self) -> _Transaction:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
        if exc_type is not None:
            logger.error("Rolling back after unexpected error: %s", exc)
            self.rollback()
        return False

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        """Move value on the ledger. Raises TransferError on failure."""
        if amount <= 0:
            return
        self._ledger.transfer(sender, recipient, amount)
        self._transfers.append((sender, recipient, amount))

    def adjust_escrow(self, delta: int) -> None:
        if delta:
            self._store.adjust_escrow(delta)
            self._escrow_delta += delta

    def rollback(self) -> list[str]:
        """Undo everything. Returns messages for compensations that failed."""
        if self._rolled_back:
            return []
        self._rolled_back = True
        problems: list[str] = []
        for sender, recipient, amount in reversed(self._transfers):
            try:
                self._ledger.transfer(recipient, sender, amount)
            except Exception as e:
                message = (
                    f"Compensation transfer {recipient} -> {sender} ({amount}) "
                    f"failed: {e}"
                )
                logger.error(message)
                self._on_compensation_failure(message)
                problems.append(message)
        self._transfers = []
        if self._escrow_delta:
            self._store.adjust_escrow(-self._escrow_delta)
            self._escrow_delta = 0
        if self._snapshot is not None:
            self._store.restore(self._snapshot)
        return problems


class LinkageService:
    """Flight-to-project linkage engine facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = LinkageService(
            resolver, ledger, flights, projects, credentials, verifiers,
            authority="deployer",
        )

        result = service.create_linkage("alice", "FL-1", "PRJ-1", 10, 100)
        result = service.cast_vote("verifier-1", "FL-1", "PRJ-1", "approve")
        result = service.open_dispute("bob", "FL-1", "PRJ-1", "double counted")
        result = service.resolve_dispute("deployer", "FL-1", "PRJ-1", approve=False)

    Persistence (optional):
        service = LinkageService(..., event_log=log, state_store=store)
        # State is loaded on construction and saved after each mutation.
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        ledger: Ledger,
        flights: FlightRegistry,
        projects: ProjectRegistry,
        credentials: CredentialIssuer,
        verifiers: VerifierOracle,
        authority: str,
        holding_account: str = DEFAULT_HOLDING_ACCOUNT,
        event_log: Optional[EventLog] = None,
        state_store: Optional[StateStore] = None,
    ) -> None:
        self._resolver = resolver
        self._engine = ConsensusEngine(resolver)
        self._ledger = ledger
        self._flights = flights
        self._projects = projects
        self._credentials = credentials
        self._verifiers = verifiers
        self._holding = holding_account

        self._event_log = event_log
        self._state_store = state_store

        if state_store is not None:
            self._store = state_store.load(default_authority=authority)
        else:
            self._store = LinkageStore(authority)

        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = event_log.count if event_log is not None else 0
        self._event_lock = threading.RLock()

        # Set when a StateStore write fails after the audit event committed
        self._persistence_degraded: bool = False
        # Rollback transfers that could not be reversed; ledger and store disagree
        self._compensation_failures: list[str] = []

    # ------------------------------------------------------------------
    # Linkage creation
    # ------------------------------------------------------------------

    def create_linkage(
        self,
        caller: str,
        flight_id: str,
        project_id: str,
        offset_amount: int,
        escrow_payment: int,
        description: str = "",
        tags: Optional[list[str]] = None,
    ) -> ServiceResult:
        """Link a flight to a project and escrow the caller's payment.

        Checks, in order: paused, already linked, amounts, caller
        balance, flight validity, project validity, credential issuance.
        Returns the issued credential id in data["credential_id"].
        """
        flight = self._canonical_id(flight_id, "flight_id")
        project = self._canonical_id(project_id, "project_id")
        lookup = LinkageKey(flight, project) if flight and project else None

        with self._lock(lookup):
            if self._store.paused:
                return self._paused()
            if lookup is not None and self._store.has_linkage(lookup):
                return self._reject(
                    LinkageError.ALREADY_LINKED, f"Linkage already exists: {lookup}",
                )
            if offset_amount <= 0 or escrow_payment <= 0:
                return self._reject(
                    LinkageError.INVALID_AMOUNT,
                    f"Offset and escrow must be positive "
                    f"(offset={offset_amount}, escrow={escrow_payment})",
                )
            balance = self._ledger.balance_of(caller)
            if balance < escrow_payment:
                return self._reject(
                    LinkageError.INSUFFICIENT_FUNDS,
                    f"Balance {balance} < escrow payment {escrow_payment}",
                )
            if flight is None or not self._flights.validate_flight(flight):
                return self._reject(
                    LinkageError.INVALID_FLIGHT, f"Invalid flight: {flight_id!r}",
                )
            if project is None or not self._projects.validate_project(project):
                return self._reject(
                    LinkageError.INVALID_PROJECT, f"Invalid project: {project_id!r}",
                )
            key = LinkageKey(flight, project)
            try:
                credential_id = self._credentials.issue_credential(
                    caller, flight, project, offset_amount,
                )
            except CredentialError as e:
                return self._reject(
                    LinkageError.UNAUTHORIZED, f"Credential issuance refused: {e}",
                )

            height = self._ledger.block_height()
            with self._store.commit_lock(), self._begin(key) as txn:
                try:
                    txn.transfer(caller, self._holding, escrow_payment)
                except TransferError as e:
                    return self._abort(
                        txn, self._reject(LinkageError.INSUFFICIENT_FUNDS, str(e)),
                    )

                linkage = Linkage(
                    key=key,
                    offset_amount=offset_amount,
                    escrow_amount=escrow_payment,
                    creator=caller,
                    created_at=height,
                    last_updated_at=height,
                    credential_id=credential_id,
                )
                self._store.insert_linkage(
                    linkage,
                    LinkageMetadata(
                        description=description, tags=list(tags or []), visible=True,
                    ),
                )
                txn.adjust_escrow(escrow_payment)

                err = self._record_events(caller, [
                    (EventKind.LINKAGE_CREATED, self._key_payload(key, {
                        "offset_amount": offset_amount,
                        "escrow_amount": escrow_payment,
                        "credential_id": credential_id,
                    })),
                ])
                if err:
                    return self._abort(txn, ServiceResult(success=False, errors=[err]))

                logger.info(
                    "Linkage %s created by %s (escrow=%d, credential=%s)",
                    key, caller, escrow_payment, credential_id,
                )
                return self._committed(
                    credential_id=credential_id,
                    flight_id=flight,
                    project_id=project,
                    status=linkage.status.value,
                )

    # ------------------------------------------------------------------
    # Verification voting
    # ------------------------------------------------------------------

    def cast_vote(
        self,
        caller: str,
        flight_id: str,
        project_id: str,
        vote: Union[str, VoteChoice],
    ) -> ServiceResult:
        """Record a verifier's vote and settle the linkage at threshold.

        Checks, in order: paused, linkage exists, status pending, caller
        on the roster and authorized, voter cap, duplicate vote, vote
        literal. Reaching the approval threshold releases escrow;
        reaching the rejection threshold refunds it.
        """
        key = self._lookup_key(flight_id, project_id)
        with self._lock(key):
            if self._store.paused:
                return self._paused()
            link = self._store.get_linkage(key) if key else None
            if link is None:
                return self._not_found(flight_id, project_id)
            if link.status != LinkageStatus.PENDING:
                return self._reject(
                    LinkageError.INVALID_STATUS,
                    f"Linkage is {link.status.value}; can only vote on pending",
                )
            if (
                caller not in self._verifiers.get_verifier_roster()
                or not self._verifiers.is_authorized_verifier(caller)
            ):
                return self._reject(
                    LinkageError.UNAUTHORIZED, f"{caller} is not an authorized verifier",
                )
            votes_cast = self._store.vote_count(link.key)
            if self._engine.voter_cap_reached(votes_cast):
                return self._reject(
                    LinkageError.MAX_VERIFIERS_REACHED,
                    f"Maximum verifier count reached ({votes_cast})",
                )
            if self._store.get_vote(link.key, caller) is not None:
                return self._reject(
                    LinkageError.ALREADY_VOTED,
                    f"Verifier {caller} has already voted on {link.key}",
                )
            if not isinstance(vote, str) or vote not in self._resolver.allowed_votes():
                return self._reject(
                    LinkageError.VERIFICATION_FAILED, f"Unrecognised vote: {vote!r}",
                )
            choice = VoteChoice(vote)

            height = self._ledger.block_height()
            with self._store.commit_lock(), self._begin(link.key) as txn:
                self._store.put_vote(
                    link.key, VerifierVote(verifier=caller, vote=choice, cast_at=height),
                )
                if choice == VoteChoice.APPROVE:
                    link.verification_count += 1
                else:
                    link.rejection_count += 1

                events: list[tuple[EventKind, dict[str, Any]]] = [
                    (EventKind.VOTE_CAST, self._key_payload(link.key, {
                        "verifier": caller,
                        "vote": choice.value,
                        "verification_count": link.verification_count,
                        "rejection_count": link.rejection_count,
                    })),
                ]

                consensus = self._engine.evaluate(link)
                if consensus.outcome == LinkageStatus.VERIFIED:
                    link.status = LinkageStatus.VERIFIED
                    link.last_updated_at = height
                    events.append((EventKind.LINKAGE_VERIFIED, self._key_payload(link.key)))
                    failure = self._release(link, txn, events)
                    if failure:
                        return self._abort(txn, failure)
                elif consensus.outcome == LinkageStatus.REJECTED:
                    link.status = LinkageStatus.REJECTED
                    link.last_updated_at = height
                    events.append((EventKind.LINKAGE_REJECTED, self._key_payload(link.key)))
                    failure = self._refund(link, txn, events)
                    if failure:
                        return self._abort(txn, failure)

                err = self._record_events(caller, events)
                if err:
                    return self._abort(txn, ServiceResult(success=False, errors=[err]))

                if consensus.reached:
                    logger.info(
                        "Linkage %s reached consensus: %s (%d approve / %d reject)",
                        link.key, link.status.value,
                        link.verification_count, link.rejection_count,
                    )
                return self._committed(
                    status=link.status.value,
                    verification_count=link.verification_count,
                    rejection_count=link.rejection_count,
                    consensus_reached=consensus.reached,
                )

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def open_dispute(
        self, caller: str, flight_id: str, project_id: str, reason: str,
    ) -> ServiceResult:
        """Challenge a verified linkage inside the dispute window.

        Checks, in order: paused, linkage exists, status verified,
        window still open, no prior dispute record for the linkage.
        """
        key = self._lookup_key(flight_id, project_id)
        with self._lock(key):
            if self._store.paused:
                return self._paused()
            link = self._store.get_linkage(key) if key else None
            if link is None:
                return self._not_found(flight_id, project_id)
            if link.status != LinkageStatus.VERIFIED:
                return self._reject(
                    LinkageError.INVALID_STATUS,
                    f"Linkage is {link.status.value}; only verified linkages can be disputed",
                )
            height = self._ledger.block_height()
            if not self._engine.dispute_window_open(link, height):
                return self._reject(
                    LinkageError.INVALID_STATUS,
                    f"Dispute window closed ({height - link.last_updated_at} blocks "
                    f"since last update, window is {self._resolver.dispute_window()})",
                )
            if self._store.get_dispute(link.key) is not None:
                return self._reject(
                    LinkageError.DISPUTE_IN_PROGRESS,
                    f"A dispute already exists for {link.key}",
                )

            with self._store.commit_lock(), self._begin(link.key) as txn:
                self._store.put_dispute(
                    link.key,
                    Dispute(initiator=caller, reason=reason, opened_at=height),
                )
                link.status = LinkageStatus.DISPUTED

                err = self._record_events(caller, [
                    (EventKind.DISPUTE_OPENED, self._key_payload(link.key, {
                        "initiator": caller, "reason": reason,
                    })),
                ])
                if err:
                    return self._abort(txn, ServiceResult(success=False, errors=[err]))

                logger.info("Dispute opened on %s by %s", link.key, caller)
                return self._committed(status=link.status.value)

    def resolve_dispute(
        self, caller: str, flight_id: str, project_id: str, approve: bool,
    ) -> ServiceResult:
        """Close an active dispute (authority only).

        approve=True restores VERIFIED; the earlier release stands.
        approve=False moves the linkage to REJECTED: anything released
        is reclaimed from the payees and the creator is refunded once.
        """
        key = self._lookup_key(flight_id, project_id)
        with self._lock(key):
            if self._store.paused:
                return self._paused()
            dispute = self._store.get_dispute(key) if key else None
            link = self._store.get_linkage(key) if key else None
            if dispute is None or link is None:
                return self._reject(
                    LinkageError.ESCROW_NOT_FOUND,
                    f"No dispute for {flight_id}/{project_id}",
                )
            if not dispute.active:
                return self._reject(
                    LinkageError.INVALID_STATUS, "Dispute is already resolved",
                )
            if caller != self._store.authority:
                return self._reject(
                    LinkageError.UNAUTHORIZED, "Only the authority can resolve disputes",
                )

            height = self._ledger.block_height()
            with self._store.commit_lock(), self._begin(link.key) as txn:
                dispute.active = False
                dispute.resolved_at = height
                dispute.upheld = approve
                link.last_updated_at = height
                events: list[tuple[EventKind, dict[str, Any]]] = [
                    (EventKind.DISPUTE_RESOLVED, self._key_payload(
                        link.key, {"upheld": approve},
                    )),
                ]

                if approve:
                    link.status = LinkageStatus.VERIFIED
                else:
                    link.status = LinkageStatus.REJECTED
                    events.append((EventKind.LINKAGE_REJECTED, self._key_payload(link.key)))
                    failure = self._refund(link, txn, events)
                    if failure:
                        return self._abort(txn, failure)

                err = self._record_events(caller, events)
                if err:
                    return self._abort(txn, ServiceResult(success=False, errors=[err]))

                logger.info(
                    "Dispute on %s resolved by %s: %s",
                    link.key, caller, "upheld" if approve else "overturned",
                )
                return self._committed(status=link.status.value, upheld=approve)

    # ------------------------------------------------------------------
    # Creator configuration
    # ------------------------------------------------------------------

    def set_revenue_share(
        self,
        caller: str,
        flight_id: str,
        project_id: str,
        participant: str,
        percentage: int,
    ) -> ServiceResult:
        """Set a participant's share of the escrow (creator only).

        Overwrites any earlier percentage for the participant; the
        amount already received is kept. The linkage's shares may not
        total more than the policy cap.
        """
        key = self._lookup_key(flight_id, project_id)
        with self._lock(key):
            if self._store.paused:
                return self._paused()
            link = self._store.get_linkage(key) if key else None
            if link is None:
                return self._not_found(flight_id, project_id)
            if caller != link.creator:
                return self._reject(
                    LinkageError.NOT_OWNER, "Only the linkage creator can set revenue shares",
                )
            if (
                isinstance(percentage, bool)
                or not isinstance(percentage, int)
                or not (0 < percentage <= 100)
            ):
                return self._reject(
                    LinkageError.INVALID_PERCENTAGE,
                    f"Percentage must be an integer in (0, 100], got {percentage!r}",
                )
            shares = self._store.shares_for(link.key)
            total = self._engine.share_total_after(shares, participant, percentage)
            if not self._engine.share_total_allowed(total):
                return self._reject(
                    LinkageError.INVALID_PERCENTAGE,
                    f"Revenue shares would total {total}%, above "
                    f"{self._resolver.max_total_share_percentage()}%",
                )

            with self._store.commit_lock(), self._begin(link.key) as txn:
                existing = shares.get(participant)
                if existing is not None:
                    existing.percentage = percentage
                    share = existing
                else:
                    share = RevenueShare(participant=participant, percentage=percentage)
                    self._store.put_share(link.key, share)

                err = self._record_events(caller, [
                    (EventKind.REVENUE_SHARE_SET, self._key_payload(link.key, {
                        "participant": participant, "percentage": percentage,
                    })),
                ])
                if err:
                    return self._abort(txn, ServiceResult(success=False, errors=[err]))

                return self._committed(
                    participant=participant,
                    percentage=share.percentage,
                    received=share.received,
                    total_percentage=total,
                )

    def update_metadata(
        self,
        caller: str,
        flight_id: str,
        project_id: str,
        description: str,
        tags: list[str],
        visible: bool,
    ) -> ServiceResult:
        """Replace a linkage's description, tags and visibility (creator only)."""
        key = self._lookup_key(flight_id, project_id)
        with self._lock(key):
            if self._store.paused:
                return self._paused()
            link = self._store.get_linkage(key) if key else None
            if link is None:
                return self._not_found(flight_id, project_id)
            if caller != link.creator:
                return self._reject(
                    LinkageError.NOT_OWNER, "Only the linkage creator can update metadata",
                )

            with self._store.commit_lock(), self._begin(link.key) as txn:
                self._store.put_metadata(
                    link.key,
                    LinkageMetadata(description=description, tags=list(tags), visible=visible),
                )
                err = self._record_events(caller, [
                    (EventKind.METADATA_UPDATED, self._key_payload(link.key, {
                        "visible": visible, "tag_count": len(tags),
                    })),
                ])
                if err:
                    return self._abort(txn, ServiceResult(success=False, errors=[err]))
                return self._committed(visible=visible)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def pause(self, caller: str) -> ServiceResult:
        return self._set_paused(caller, True)

    def unpause(self, caller: str) -> ServiceResult:
        return self._set_paused(caller, False)

    def transfer_authority(self, caller: str, new_authority: str) -> ServiceResult:
        """Hand the authority role to another identity (authority only)."""
        with self._store.admin_lock():
            previous = self._store.authority
            if caller != previous:
                return self._reject(
                    LinkageError.UNAUTHORIZED, "Only the authority can transfer authority",
                )
            with self._store.commit_lock():
                try:
                    self._store.set_authority(new_authority)
                except ValueError as e:
                    return ServiceResult(success=False, errors=[str(e)])

                err = self._record_events(caller, [
                    (EventKind.AUTHORITY_TRANSFERRED, {
                        "previous": previous, "authority": self._store.authority,
                    }),
                ])
                if err:
                    self._store.set_authority(previous)
                    return ServiceResult(success=False, errors=[err])
                logger.info("Authority transferred from %s to %s", previous, new_authority)
                return self._committed(authority=self._store.authority)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_linkage(self, flight_id: str, project_id: str) -> Optional[Linkage]:
        key = self._lookup_key(flight_id, project_id)
        return copy.deepcopy(self._store.get_linkage(key)) if key else None

    def get_metadata(self, flight_id: str, project_id: str) -> Optional[LinkageMetadata]:
        key = self._lookup_key(flight_id, project_id)
        return copy.deepcopy(self._store.get_metadata(key)) if key else None

    def get_vote(
        self, flight_id: str, project_id: str, verifier: str,
    ) -> Optional[VerifierVote]:
        key = self._lookup_key(flight_id, project_id)
        return self._store.get_vote(key, verifier) if key else None

    def get_votes(self, flight_id: str, project_id: str) -> list[VerifierVote]:
        key = self._lookup_key(flight_id, project_id)
        return self._store.votes_for(key) if key else []

    def get_dispute(self, flight_id: str, project_id: str) -> Optional[Dispute]:
        key = self._lookup_key(flight_id, project_id)
        return copy.deepcopy(self._store.get_dispute(key)) if key else None

    def get_revenue_share(
        self, flight_id: str, project_id: str, participant: str,
    ) -> Optional[RevenueShare]:
        key = self._lookup_key(flight_id, project_id)
        return copy.deepcopy(self._store.get_share(key, participant)) if key else None

    def get_total_linkages(self) -> int:
        return self._store.total_linkages

    def get_escrow_total(self) -> int:
        return self._store.escrow_total

    def is_paused(self) -> bool:
        return self._store.paused

    @property
    def authority(self) -> str:
        return self._store.authority

    @property
    def holding_account(self) -> str:
        return self._holding

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary."""
        return {
            "version": "0.1.0",
            "policy_version": self._resolver.version,
            "linkages": {
                "total": self._store.total_linkages,
                "by_status": self._store.count_by_status(),
            },
            "disputes": {"active": self._store.active_dispute_count()},
            "escrow_total": self._store.escrow_total,
            "paused": self._store.paused,
            "authority": self._store.authority,
            "persistence_degraded": self._persistence_degraded,
            "compensation_failures": list(self._compensation_failures),
        }

    # ------------------------------------------------------------------
    # Escrow settlement
    # ------------------------------------------------------------------

    def _release(
        self,
        link: Linkage,
        txn: _Transaction,
        events: list[tuple[EventKind, dict[str, Any]]],
    ) -> Optional[ServiceResult]:
        """Pay a verified linkage's escrow out. Returns a failure or None."""
        if link.status != LinkageStatus.VERIFIED or link.is_settled:
            return self._reject(
                LinkageError.INVALID_STATUS,
                f"Escrow for {link.key} cannot be released "
                f"(status={link.status.value}, settlement={link.settlement.value})",
            )
        pid = link.key.project_id
        try:
            owner = self._projects.get_project_owner(pid)
            participants = self._projects.get_project_participants(pid)
        except Exception as e:
            # Any registry failure is a project failure at this boundary
            logger.warning("Project registry lookup for %s failed: %s", pid, e)
            return self._reject(LinkageError.INVALID_PROJECT, f"Project lookup failed: {e}")
        if not owner:
            return self._reject(
                LinkageError.INVALID_PROJECT, f"No owner registered for project {pid}",
            )

        shares = self._store.shares_for(link.key)
        plan = self._engine.plan_release(link, owner, participants, shares)
        try:
            txn.transfer(self._holding, owner, plan.owner_amount)
            for payment in plan.share_payments:
                txn.transfer(self._holding, payment.holder, payment.amount)
        except TransferError as e:
            return self._reject(LinkageError.INSUFFICIENT_FUNDS, f"Release failed: {e}")

        for payment in plan.share_payments:
            shares[payment.holder].received += payment.amount
        txn.adjust_escrow(-link.escrow_amount)
        link.settlement = SettlementState.RELEASED
        link.payee = owner
        link.owner_payout = plan.owner_amount
        link.share_payouts = {p.holder: p.amount for p in plan.share_payments}

        events.append((EventKind.ESCROW_RELEASED, self._key_payload(link.key, {
            "owner": owner,
            "owner_amount": plan.owner_amount,
            "shares": dict(link.share_payouts),
        })))
        logger.info(
            "Released %d from %s: %d to owner %s, %d to %d participant(s)",
            link.escrow_amount, link.key, plan.owner_amount, owner,
            plan.total - plan.owner_amount, len(plan.share_payments),
        )
        return None

    def _refund(
        self,
        link: Linkage,
        txn: _Transaction,
        events: list[tuple[EventKind, dict[str, Any]]],
    ) -> Optional[ServiceResult]:
        """Return a rejected linkage's escrow to its creator.

        If the escrow was already released, the exact released amounts
        are reclaimed from the payees first. Returns a failure or None.
        """
        if link.status != LinkageStatus.REJECTED or link.settlement == SettlementState.REFUNDED:
            return self._reject(
                LinkageError.INVALID_STATUS,
                f"Escrow for {link.key} cannot be refunded "
                f"(status={link.status.value}, settlement={link.settlement.value})",
            )

        if link.settlement == SettlementState.RELEASED:
            try:
                if link.payee is not None:
                    txn.transfer(link.payee, self._holding, link.owner_payout)
                for holder, amount in link.share_payouts.items():
                    txn.transfer(holder, self._holding, amount)
            except TransferError as e:
                logger.warning("Reclaim for %s failed: %s", link.key, e)
                return self._reject(
                    LinkageError.INSUFFICIENT_FUNDS,
                    f"Cannot reclaim released escrow: {e}",
                )
            shares = self._store.shares_for(link.key)
            for holder, amount in link.share_payouts.items():
                share = shares.get(holder)
                if share is not None:
                    share.received = max(0, share.received - amount)
            txn.adjust_escrow(link.escrow_amount)
            events.append((EventKind.ESCROW_RECLAIMED, self._key_payload(link.key, {
                "owner": link.payee,
                "owner_amount": link.owner_payout,
                "shares": dict(link.share_payouts),
            })))

        try:
            txn.transfer(self._holding, link.creator, link.escrow_amount)
        except TransferError as e:
            return self._reject(LinkageError.INSUFFICIENT_FUNDS, f"Refund failed: {e}")
        txn.adjust_escrow(-link.escrow_amount)
        link.settlement = SettlementState.REFUNDED

        events.append((EventKind.ESCROW_REFUNDED, self._key_payload(link.key, {
            "creator": link.creator, "amount": link.escrow_amount,
        })))
        logger.info(
            "Refunded %d from %s to creator %s", link.escrow_amount, link.key, link.creator,
        )
        return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _set_paused(self, caller: str, paused: bool) -> ServiceResult:
        with self._store.admin_lock():
            if caller != self._store.authority:
                return self._reject(
                    LinkageError.UNAUTHORIZED, "Only the authority can pause or unpause",
                )
            with self._store.commit_lock():
                previous = self._store.paused
                self._store.set_paused(paused)
                kind = EventKind.CONTRACT_PAUSED if paused else EventKind.CONTRACT_UNPAUSED
                err = self._record_events(caller, [(kind, {"paused": paused})])
                if err:
                    self._store.set_paused(previous)
                    return ServiceResult(success=False, errors=[err])
                logger.info("Contract %s by %s", "paused" if paused else "unpaused", caller)
                return self._committed(paused=paused)

    def _begin(self, key: LinkageKey) -> _Transaction:
        """Open a transaction over one key. Call under the commit lock."""
        return _Transaction(
            self._store,
            self._ledger,
            self._store.snapshot(key),
            self._compensation_failures.append,
        )

    def _abort(self, txn: _Transaction, failure: ServiceResult) -> ServiceResult:
        """Roll txn back and return failure, noting any unreversed transfer."""
        problems = txn.rollback()
        if problems:
            return failure.with_errors(problems)
        return failure

    def _canonical_id(self, value: str, label: str) -> Optional[str]:
        try:
            return validate_identifier(value, label, self._resolver.max_id_length())
        except ValueError:
            return None

    def _lookup_key(self, flight_id: str, project_id: str) -> Optional[LinkageKey]:
        """Key for a lookup; None if either part is malformed."""
        flight = self._canonical_id(flight_id, "flight_id")
        project = self._canonical_id(project_id, "project_id")
        if flight is None or project is None:
            return None
        return LinkageKey(flight, project)

    def _lock(self, key: Optional[LinkageKey]) -> Any:
        return self._store.lock_for(key) if key is not None else contextlib.nullcontext()

    def _reject(self, error: LinkageError, message: str) -> ServiceResult:
        logger.debug("Rejected (%s): %s", error.value, message)
        return ServiceResult.fail(error, message)

    def _paused(self) -> ServiceResult:
        return self._reject(LinkageError.CONTRACT_PAUSED, "Contract is paused")

    def _not_found(self, flight_id: str, project_id: str) -> ServiceResult:
        return self._reject(
            LinkageError.ESCROW_NOT_FOUND, f"No linkage for {flight_id}/{project_id}",
        )

    @staticmethod
    def _key_payload(
        key: LinkageKey, extra: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "flight_id": key.flight_id, "project_id": key.project_id,
        }
        if extra:
            payload.update(extra)
        return payload

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        with self._event_lock:
            self._event_counter += 1
            return f"EVT-{self._event_counter:08d}"

    def _record_events(
        self,
        actor_id: str,
        events: list[tuple[EventKind, dict[str, Any]]],
    ) -> Optional[str]:
        """Append an operation's audit events as one batch.

        Returns an error string or None. Either every event is logged or
        none is; the caller rolls the operation back on error.
        """
        if self._event_log is None:
            return None
        height = self._ledger.block_height()
        try:
            with self._event_lock:
                records = [
                    EventRecord.create(
                        event_id=self._next_event_id(),
                        event_kind=kind,
                        actor_id=actor_id,
                        payload=payload,
                        block_height=height,
                    )
                    for kind, payload in events
                ]
                self._event_log.append_many(records)
        except (ValueError, OSError) as e:
            logger.warning("Audit-trail failure: %s", e)
            return f"Audit-trail failure: {e}"
        return None

    def _committed(self, **data: Any) -> ServiceResult:
        """Persist after a committed mutation and build the success result."""
        warning = self._safe_persist_post_audit()
        if warning:
            data["warning"] = warning
        return ServiceResult.ok(**data)

    def _safe_persist_post_audit(self) -> Optional[str]:
        """Save the store once the operation's events are in the audit log.

        Never rolls back: the ledger has moved and the events are logged.
        On failure the saved state lags behind, the degraded flag is set
        and a warning string is returned.
        """
        if self._state_store is None:
            return None
        try:
            self._state_store.save(self._store)
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.warning("State store write failed: %s", e)
            return (
                f"Persistence degraded: {e}; linkage state on disk predates "
                f"this operation until the next successful save"
            )
