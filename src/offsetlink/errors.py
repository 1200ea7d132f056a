"""Error taxonomy and the typed result every service operation returns.

Failures never cross the service boundary as exceptions. Each operation
runs its precondition checks in a fixed order and reports the first one
that fails as a LinkageError inside a ServiceResult.

The numeric codes match the reviewed ledger contract so callers that
speak in codes (100..114) can map results one-to-one.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional


class LinkageError(str, enum.Enum):
    """Domain failures, in code order."""
    UNAUTHORIZED = "unauthorized"
    ALREADY_LINKED = "already_linked"
    INVALID_STATUS = "invalid_status"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_FLIGHT = "invalid_flight"
    INVALID_PROJECT = "invalid_project"
    ESCROW_NOT_FOUND = "escrow_not_found"
    VERIFICATION_FAILED = "verification_failed"
    DISPUTE_IN_PROGRESS = "dispute_in_progress"
    INVALID_AMOUNT = "invalid_amount"
    MAX_VERIFIERS_REACHED = "max_verifiers_reached"
    ALREADY_VOTED = "already_voted"
    INVALID_PERCENTAGE = "invalid_percentage"
    NOT_OWNER = "not_owner"
    CONTRACT_PAUSED = "contract_paused"

    @property
    def code(self) -> int:
        return ERROR_CODES[self]


ERROR_CODES: dict[LinkageError, int] = {
    err: 100 + i for i, err in enumerate(LinkageError)
}


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[LinkageError] = None

    @classmethod
    def ok(cls, **data: Any) -> ServiceResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: LinkageError, message: str) -> ServiceResult:
        return cls(success=False, errors=[message], error=error)

    def with_errors(self, extra: list[str]) -> ServiceResult:
        """Copy of this result with further error messages appended."""
        return ServiceResult(
            success=self.success,
            errors=[*self.errors, *extra],
            data=dict(self.data),
            error=self.error,
        )


class TransferError(Exception):
    """Raised by a ledger adapter when a transfer cannot be applied."""


class CredentialError(Exception):
    """Raised by a credential issuer that refuses to issue."""
