from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class Strategy(str, Enum):
    BLUE_GREEN = "blue-green"
    CANARY = "canary"


class DeploymentState(str, Enum):
    UNINITIALIZED = "Uninitialized"
    STABLE = "Stable"
    DEPLOYING = "Deploying"
    SHIFTING = "Shifting"
    PROMOTING = "Promoting"
    ROLLING_BACK = "RollingBack"


STABLE_LABEL = "stable"
CANDIDATE_LABEL = "candidate"
POOL_COLORS = ("blue", "green")

DEPLOYMENT_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,56}$")
IMAGE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-\./:@]{0,254}$")


def validate_deployment_name(name: str) -> None:
    # Pool names append "-green", so keep the whole thing under 63 chars.
    if not DEPLOYMENT_NAME_RE.match(name):
        raise ValueError(
            "Invalid deployment name. Use lowercase letters/numbers and hyphen, starting with a letter (max 57 chars)."
        )


def validate_image(image: str) -> None:
    if not IMAGE_RE.match(image):
        raise ValueError("Invalid image reference.")


@dataclass
class Pool:
    name: str
    label: str  # stable|candidate
    image: str
    replica_count: int = 0
    ready_count: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Pool | None:
        if not data:
            return None
        return cls(**data)


@dataclass(frozen=True)
class RoutingSelector:
    """Traffic split for one service: pool name -> weight (percent)."""

    service: str
    weights: dict[str, int]

    @property
    def total(self) -> int:
        return sum(self.weights.values())

    def weight_of(self, pool_name: str | None) -> int:
        if pool_name is None:
            return 0
        return self.weights.get(pool_name, 0)

    def live_pool(self) -> str | None:
        for name, weight in self.weights.items():
            if weight == 100:
                return name
        return None

    def same_split(self, other: RoutingSelector | None) -> bool:
        if other is None:
            return False
        mine = {k: v for k, v in self.weights.items() if v > 0}
        theirs = {k: v for k, v in other.weights.items() if v > 0}
        return mine == theirs


@dataclass(frozen=True)
class HistoryEntry:
    timestamp: str
    from_state: str
    to_state: str
    verb: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class Deployment:
    name: str
    strategy: Strategy
    total_capacity: int
    state: DeploymentState = DeploymentState.UNINITIALIZED
    stable_pool: Pool | None = None
    candidate_pool: Pool | None = None
    candidate_weight: int = 0
    # -1/+1 once the first shift of a rollout fixed a direction, 0 before that.
    shift_direction: int = 0
    history: list[HistoryEntry] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def stable_weight(self) -> int:
        return 100 - self.candidate_weight

    def pool_names(self) -> list[str]:
        return [p.name for p in (self.stable_pool, self.candidate_pool) if p is not None]

    def next_pool_name(self) -> str:
        """Pool name for a new candidate: the color the stable pool is not using."""
        used = self.stable_pool.name if self.stable_pool else None
        for color in POOL_COLORS:
            name = f"{self.name}-{color}"
            if name != used:
                return name
        raise AssertionError("unreachable")

    def selector(self) -> RoutingSelector:
        weights: dict[str, int] = {}
        if self.stable_pool is not None:
            weights[self.stable_pool.name] = self.stable_weight
        if self.candidate_pool is not None:
            weights[self.candidate_pool.name] = self.candidate_weight
        return RoutingSelector(service=self.name, weights=weights)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "strategy": self.strategy.value,
            "state": self.state.value,
            "total_capacity": self.total_capacity,
            "candidate_weight": self.candidate_weight,
            "stable_weight": self.stable_weight if self.stable_pool else 0,
            "shift_direction": self.shift_direction,
            "stable_pool": asdict(self.stable_pool) if self.stable_pool else None,
            "candidate_pool": asdict(self.candidate_pool) if self.candidate_pool else None,
            "history": [asdict(h) for h in self.history],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
