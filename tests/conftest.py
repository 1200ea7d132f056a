"""Shared fixtures: a LinkageService wired to in-memory collaborators.

Accounts mirror a small deployment: an authority ("deployer"), a
linkage creator, a project owner with one revenue-share participant,
four active verifiers and one identity with no role at all.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pytest

from offsetlink.adapters.memory import (
    InMemoryLedger,
    InMemoryProjectRegistry,
    SequentialCredentialIssuer,
    StaticFlightRegistry,
)
from offsetlink.persistence.event_log import EventLog
from offsetlink.persistence.state_store import StateStore
from offsetlink.policy.resolver import PolicyResolver
from offsetlink.review.roster import VerifierEntry, VerifierRoster
from offsetlink.service import LinkageService

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

AUTHORITY = "deployer"
CREATOR = "creator"
OWNER = "project-owner"
PARTICIPANT = "participant"
OUTSIDER = "unauthorized"
VERIFIERS = ["verifier-1", "verifier-2", "verifier-3", "verifier-4"]

FLIGHT = "valid-flight"
PROJECT = "valid-project"
START_HEIGHT = 1000
STARTING_BALANCE = 1_000_000


@dataclass
class Env:
    """Everything a test needs to drive and observe the service."""
    service: LinkageService
    ledger: InMemoryLedger
    flights: StaticFlightRegistry
    projects: InMemoryProjectRegistry
    credentials: SequentialCredentialIssuer
    roster: VerifierRoster
    event_log: Optional[EventLog] = None

    def at(self, height: int) -> "Env":
        self.ledger.set_height(height)
        return self

    def balance(self, holder: str) -> int:
        return self.ledger.balance_of(holder)

    @property
    def holding(self) -> int:
        return self.ledger.balance_of(self.service.holding_account)

    def create(
        self,
        flight: str = FLIGHT,
        project: str = PROJECT,
        offset: int = 10,
        escrow: int = 100,
        caller: str = CREATOR,
    ):
        return self.service.create_linkage(
            caller, flight, project, offset, escrow, "desc", ["carbon", "offset"],
        )

    def vote(self, verifier: str, choice: str, flight: str = FLIGHT, project: str = PROJECT):
        return self.service.cast_vote(verifier, flight, project, choice)

    def verify(self, flight: str = FLIGHT, project: str = PROJECT) -> None:
        """Three approvals at successive heights."""
        for verifier in VERIFIERS[:3]:
            self.at(self.ledger.block_height() + 1)
            result = self.vote(verifier, "approve", flight, project)
            assert result.success, result.errors


def build_env(
    resolver: PolicyResolver,
    event_log: Optional[EventLog] = None,
    state_store: Optional[StateStore] = None,
    verifiers: Optional[list[str]] = None,
    ledger: Optional[InMemoryLedger] = None,
    credentials: Optional[SequentialCredentialIssuer] = None,
) -> Env:
    if ledger is None:
        ledger = InMemoryLedger(
            balances={AUTHORITY: STARTING_BALANCE, CREATOR: STARTING_BALANCE},
            height=START_HEIGHT,
        )
    flights = StaticFlightRegistry({FLIGHT, "valid-flight-2"})
    projects = InMemoryProjectRegistry()
    projects.register(PROJECT, owner=OWNER, participants=[PARTICIPANT])
    projects.register("valid-project-2", owner=OWNER)
    if credentials is None:
        credentials = SequentialCredentialIssuer()
    roster = VerifierRoster()
    for vid in verifiers or VERIFIERS:
        roster.register(VerifierEntry(verifier_id=vid, organization=f"org-{vid}"))

    service = LinkageService(
        resolver,
        ledger=ledger,
        flights=flights,
        projects=projects,
        credentials=credentials,
        verifiers=roster,
        authority=AUTHORITY,
        event_log=event_log,
        state_store=state_store,
    )
    return Env(
        service=service,
        ledger=ledger,
        flights=flights,
        projects=projects,
        credentials=credentials,
        roster=roster,
        event_log=event_log,
    )


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def env(resolver: PolicyResolver) -> Env:
    return build_env(resolver, event_log=EventLog())
