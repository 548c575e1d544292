from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Callable, Mapping

from . import db
from .api_models import ReplicaSetRef
from .db import ReplicaSetRow
from .errors import ConflictError, TransientInfraError
from .events import REASON_SCALING_REPLICA_SET, Event
from .settings import settings

ROLE_STABLE = "stable"
ROLE_CANARY = "canary"
ROLE_EXPERIMENT = "experiment"


class QuotaExceeded(TransientInfraError):
    pass


def pod_template_hash(template: Mapping[str, Any], restart_at: datetime | None = None) -> str:
    """Short, stable digest identifying a pod template revision."""
    payload: dict[str, Any] = {"template": template}
    if restart_at is not None:
        payload["restartAt"] = restart_at.isoformat()
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()
    return hashlib.sha256(raw).hexdigest()[:10]


def replica_counts(weight: int, total: int) -> tuple[int, int]:
    """Split ``total`` replicas for a canary ``weight`` percentage.

    Returns (stable_count, canary_count). The canary share is rounded up; while
    the weight is below 100 the stable side keeps at least one replica when
    there is more than one to hand out.
    """
    weight = max(0, min(100, int(weight)))
    total = max(0, int(total))
    canary = -(-total * weight // 100)
    if 0 < weight < 100 and canary >= total and total > 1:
        canary = total - 1
    return total - canary, canary


class ReplicaSetManager:
    """Creates, labels and scales the replica sets owned by one rollout."""

    def __init__(self, rollout: str, emit: Callable[[Event], None] | None = None, quota: int | None = None):
        self.rollout = rollout
        self._emit = emit or (lambda _event: None)
        self.quota = settings.replica_quota if quota is None else max(0, int(quota))

    def list(self) -> list[ReplicaSetRow]:
        return db.list_replica_sets(self.rollout)

    def get(self, pod_hash: str | None) -> ReplicaSetRow | None:
        if not pod_hash:
            return None
        return db.get_replica_set(self.rollout, pod_hash)

    def ensure(self, pod_hash: str, template: Mapping[str, Any], role: str | None, replicas: int = 0) -> ReplicaSetRow:
        """Return the replica set for ``pod_hash``, creating it when missing."""
        rs = self.get(pod_hash)
        if rs is None:
            try:
                rs = db.insert_replica_set(self.rollout, pod_hash, dict(template), max(0, replicas), role)
            except ConflictError as e:
                raise TransientInfraError(str(e)) from e
            self._emit(
                Event(
                    REASON_SCALING_REPLICA_SET,
                    f"Created ReplicaSet {rs.name} (revision {rs.revision}) with {rs.replicas} replicas",
                )
            )
            return rs
        if rs.role != role:
            self.set_role(pod_hash, role)
            rs = self.get(pod_hash) or rs
        return rs

    def set_role(self, pod_hash: str | None, role: str | None) -> None:
        rs = self.get(pod_hash)
        if rs is None or rs.role == role:
            return
        if not db.set_replica_set_role(rs.id, role, rs.resource_version):
            raise TransientInfraError(f"replica set {rs.name} was modified concurrently")

    def scale(self, pod_hash: str | None, replicas: int) -> bool:
        """Scale to ``replicas``. Re-issuing the current count is a no-op.

        Returns True when a mutation was made. Rejections (concurrent change,
        quota) raise TransientInfraError so the caller retries on the next pass.
        """
        replicas = max(0, int(replicas))
        rs = self.get(pod_hash)
        if rs is None:
            raise TransientInfraError(f"replica set for {self.rollout}-{pod_hash} not found")
        if rs.replicas == replicas:
            return False
        if self.quota and replicas > rs.replicas:
            others = sum(x.replicas for x in self.list() if x.id != rs.id)
            if others + replicas > self.quota:
                raise QuotaExceeded(
                    f"scaling {rs.name} to {replicas} would exceed the replica quota of {self.quota}"
                )
        if not db.scale_replica_set(rs.id, replicas, rs.resource_version):
            raise TransientInfraError(f"replica set {rs.name} was modified concurrently")
        direction = "up" if replicas > rs.replicas else "down"
        self._emit(
            Event(
                REASON_SCALING_REPLICA_SET,
                f"Scaled {direction} ReplicaSet {rs.name} (revision {rs.revision}) from {rs.replicas} to {replicas}",
            )
        )
        return True

    def scale_many(self, targets: Mapping[str, int]) -> bool:
        """Apply several scale targets: growth first, shrinking next, quota-blocked growth last."""
        current = {rs.pod_hash: rs.replicas for rs in self.list()}
        ups = [(h, n) for h, n in targets.items() if n > current.get(h, 0)]
        downs = [(h, n) for h, n in targets.items() if n <= current.get(h, 0)]
        changed = False
        deferred: list[tuple[str, int]] = []
        for pod_hash, n in ups:
            try:
                changed = self.scale(pod_hash, n) or changed
            except QuotaExceeded:
                deferred.append((pod_hash, n))
        for pod_hash, n in downs:
            changed = self.scale(pod_hash, n) or changed
        for pod_hash, n in deferred:
            changed = self.scale(pod_hash, n) or changed
        return changed

    def counts_match(self, expected: Mapping[str, int]) -> bool:
        observed = {rs.pod_hash: rs.replicas for rs in self.list()}
        return all(observed.get(h) == n for h, n in expected.items())

    def delete(self, pod_hash: str) -> None:
        rs = self.get(pod_hash)
        if rs is not None:
            db.delete_replica_set(rs.id)

    def prune_history(self, limit: int, keep: set[str]) -> list[str]:
        """Delete scaled-down, unowned revisions beyond ``limit`` (newest kept)."""
        old = [
            rs
            for rs in self.list()
            if rs.pod_hash not in keep and rs.role is None and rs.replicas == 0
        ]
        old.sort(key=lambda rs: rs.revision, reverse=True)
        removed: list[str] = []
        for rs in old[max(0, limit):]:
            db.delete_replica_set(rs.id)
            removed.append(rs.pod_hash)
        return removed

    def refs(self) -> list[ReplicaSetRef]:
        return [ReplicaSetRef(pod_hash=rs.pod_hash, role=rs.role, replicas=rs.replicas) for rs in self.list()]
