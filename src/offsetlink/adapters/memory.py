"""In-memory adapters for single-node runs and tests.

These stand in for the host ledger and the external registries. They
honour the same failure conventions as the real collaborators, so the
service cannot tell the difference.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from offsetlink.errors import CredentialError, TransferError


class InMemoryLedger:
    """Balances keyed by holder, plus a manually advanced block height.

    transfer() is atomic under an internal lock: either both balances
    move or neither does.
    """

    def __init__(
        self,
        balances: Optional[dict[str, int]] = None,
        height: int = 0,
    ) -> None:
        self._balances: dict[str, int] = dict(balances or {})
        self._height = height
        self._lock = threading.Lock()

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        if amount < 0:
            raise TransferError(f"Negative transfer amount: {amount}")
        with self._lock:
            available = self._balances.get(sender, 0)
            if available < amount:
                raise TransferError(
                    f"Insufficient balance for {sender}: {available} < {amount}"
                )
            self._balances[sender] = available - amount
            self._balances[recipient] = self._balances.get(recipient, 0) + amount

    def balance_of(self, holder: str) -> int:
        with self._lock:
            return self._balances.get(holder, 0)

    def block_height(self) -> int:
        return self._height

    # Test and bootstrap helpers

    def credit(self, holder: str, amount: int) -> None:
        with self._lock:
            self._balances[holder] = self._balances.get(holder, 0) + amount

    def advance(self, blocks: int = 1) -> int:
        self._height += blocks
        return self._height

    def set_height(self, height: int) -> None:
        if height < self._height:
            raise ValueError(
                f"Block height is monotonic: {height} < {self._height}"
            )
        self._height = height


class StaticFlightRegistry:
    """Flight registry backed by a set of known-valid flight ids."""

    def __init__(self, valid_flights: Optional[set[str]] = None) -> None:
        self._valid = set(valid_flights or ())

    def register(self, flight_id: str) -> None:
        self._valid.add(flight_id)

    def validate_flight(self, flight_id: str) -> bool:
        return flight_id in self._valid


@dataclass
class ProjectRecord:
    owner: str
    participants: list[str] = field(default_factory=list)
    active: bool = True


class InMemoryProjectRegistry:
    """Reforestation projects with an owner and a participant list."""

    def __init__(self) -> None:
        self._projects: dict[str, ProjectRecord] = {}

    def register(
        self,
        project_id: str,
        owner: str,
        participants: Optional[list[str]] = None,
    ) -> None:
        self._projects[project_id] = ProjectRecord(
            owner=owner, participants=list(participants or []),
        )

    def deactivate(self, project_id: str) -> None:
        record = self._projects.get(project_id)
        if record is not None:
            record.active = False

    def validate_project(self, project_id: str) -> bool:
        record = self._projects.get(project_id)
        return record is not None and record.active

    def get_project_owner(self, project_id: str) -> Optional[str]:
        record = self._projects.get(project_id)
        return record.owner if record is not None else None

    def get_project_participants(self, project_id: str) -> list[str]:
        record = self._projects.get(project_id)
        return list(record.participants) if record is not None else []


class SequentialCredentialIssuer:
    """Issues credential ids CRED-000001, CRED-000002, ...

    An optional policy callable can refuse issuance; it receives the
    same arguments as issue_credential().
    """

    def __init__(
        self,
        policy: Optional[Callable[[str, str, str, int], bool]] = None,
    ) -> None:
        self._counter = 0
        self._policy = policy
        self.issued: dict[str, tuple[str, str, str, int]] = {}

    def issue_credential(
        self, owner: str, flight_id: str, project_id: str, amount: int,
    ) -> str:
        if self._policy is not None and not self._policy(
            owner, flight_id, project_id, amount,
        ):
            raise CredentialError(
                f"Credential refused for {owner} on {flight_id}/{project_id}"
            )
        self._counter += 1
        credential_id = f"CRED-{self._counter:06d}"
        self.issued[credential_id] = (owner, flight_id, project_id, amount)
        return credential_id
