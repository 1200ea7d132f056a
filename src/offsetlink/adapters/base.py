"""Adapter contracts for the collaborators the linkage engine consumes.

The engine never owns flight data, project data, credentials, the
verifier roster or the currency. It reaches them only through these
narrow interfaces. Any object with the right methods satisfies them.

Failure conventions:
- Validation and authorization checks return bool.
- get_project_owner returns None (or raises LookupError) for an unknown
  project.
- issue_credential raises CredentialError when it refuses.
- transfer raises TransferError and leaves both balances untouched.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class FlightRegistry(Protocol):
    def validate_flight(self, flight_id: str) -> bool: ...


@runtime_checkable
class ProjectRegistry(Protocol):
    def validate_project(self, project_id: str) -> bool: ...

    def get_project_owner(self, project_id: str) -> Optional[str]: ...

    def get_project_participants(self, project_id: str) -> list[str]: ...


@runtime_checkable
class CredentialIssuer(Protocol):
    def issue_credential(
        self, owner: str, flight_id: str, project_id: str, amount: int,
    ) -> str: ...


@runtime_checkable
class VerifierOracle(Protocol):
    def is_authorized_verifier(self, identity: str) -> bool: ...

    def get_verifier_roster(self) -> list[str]: ...


@runtime_checkable
class Ledger(Protocol):
    """Host ledger: atomic two-party transfers, balances and height."""

    def transfer(self, sender: str, recipient: str, amount: int) -> None: ...

    def balance_of(self, holder: str) -> int: ...

    def block_height(self) -> int: ...
