"""Policy resolver — loads linkage_policy.json and exposes every runtime
decision as a typed method call.

No magic. No defaults. If a value is missing from the config, it fails loud.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from offsetlink.models.linkage import VoteChoice


POLICY_FILENAME = "linkage_policy.json"

_REQUIRED_SECTIONS = ("consensus", "dispute", "revenue_share", "keys", "votes")


@dataclass(frozen=True)
class ConsensusPolicy:
    """Resolved voting policy for pending linkages."""
    threshold: int
    max_verifiers: int


class PolicyResolver:
    """Loads and resolves linkage policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        consensus = resolver.consensus_policy()
        window = resolver.dispute_window()
    """

    def __init__(self, policy: dict[str, Any]) -> None:
        self._policy = policy
        self._validate()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Load from the canonical config directory."""
        return cls(_load_json(config_dir / POLICY_FILENAME))

    def _validate(self) -> None:
        if "version" not in self._policy:
            raise ValueError(f"{POLICY_FILENAME} missing version")
        missing = [s for s in _REQUIRED_SECTIONS if s not in self._policy]
        if missing:
            raise ValueError(f"{POLICY_FILENAME} missing sections: {missing}")

        consensus = self.consensus_policy()
        if consensus.threshold < 1:
            raise ValueError(
                f"consensus.threshold must be >= 1, got {consensus.threshold}"
            )
        if consensus.max_verifiers < consensus.threshold:
            raise ValueError(
                "consensus.max_verifiers must be >= consensus.threshold "
                f"({consensus.max_verifiers} < {consensus.threshold})"
            )
        if self.dispute_window() < 0:
            raise ValueError("dispute.window_blocks must be >= 0")
        for literal in self.allowed_votes():
            if literal not in {v.value for v in VoteChoice}:
                raise ValueError(f"Unknown vote literal in policy: {literal!r}")

    @property
    def version(self) -> str:
        return str(self._policy["version"])

    # ------------------------------------------------------------------
    # Consensus
    # ------------------------------------------------------------------

    def consensus_policy(self) -> ConsensusPolicy:
        """Threshold of like votes and the per-linkage voter cap."""
        c = self._policy["consensus"]
        return ConsensusPolicy(
            threshold=int(c["threshold"]),
            max_verifiers=int(c["max_verifiers"]),
        )

    def allowed_votes(self) -> tuple[str, ...]:
        """Vote literals accepted from verifiers."""
        return tuple(self._policy["votes"]["allowed"])

    # ------------------------------------------------------------------
    # Disputes, shares, keys
    # ------------------------------------------------------------------

    def dispute_window(self) -> int:
        """Blocks after the last status change during which a dispute may open."""
        return int(self._policy["dispute"]["window_blocks"])

    def max_total_share_percentage(self) -> int:
        return int(self._policy["revenue_share"]["max_total_percentage"])

    def max_id_length(self) -> int:
        return int(self._policy["keys"]["max_id_length"])


def _load_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Policy file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
