from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RouteTargets:
    """Pod template hashes currently behind the stable and canary identities."""

    rollout: str
    stable: str | None
    canary: str | None


class RuntimeState:
    """In-memory state shared by the in-process router and the gateway."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.weights: dict[str, int] = {}  # rollout -> canary weight last applied
        self.targets: dict[str, RouteTargets] = {}  # rollout -> identities
        self.rr_index: dict[str, int] = {}  # key -> idx

    def set_weight(self, rollout: str, weight: int) -> None:
        with self.lock:
            self.weights[rollout] = weight

    def get_weight(self, rollout: str) -> int | None:
        with self.lock:
            return self.weights.get(rollout)

    def set_targets(self, targets: RouteTargets) -> None:
        with self.lock:
            self.targets[targets.rollout] = targets

    def get_targets(self, rollout: str) -> RouteTargets | None:
        with self.lock:
            return self.targets.get(rollout)

    def drop(self, rollout: str) -> None:
        with self.lock:
            self.weights.pop(rollout, None)
            self.targets.pop(rollout, None)
            self.rr_index.pop(f"rollout:{rollout}", None)

    def next_index(self, key: str, n: int) -> int:
        with self.lock:
            if n <= 0:
                return 0
            i = self.rr_index.get(key, 0) % n
            self.rr_index[key] = (i + 1) % n
            return i
