from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from threading import Event as StopFlag
from threading import Thread
from typing import Callable, Mapping, Optional

import pydantic

from . import db
from .analysis import AnalysisBackend, AnalysisGate, MetricAnalysisBackend
from .api_models import API_VERSION, Rollout
from .bluegreen import BlueGreenEngine
from .canary import CanaryEngine
from .db import RolloutRow
from .errors import ConflictError, TransientInfraError, ValidationError
from .events import Event, EventRecorder
from .replicasets import ReplicaSetManager, pod_template_hash
from .rollouts import RolloutContext, StrategyEngine
from .runtime import RouteTargets, RuntimeState, utc_now
from .settings import settings
from .traffic import DEFAULT_ROUTERS, RouterFactory, build_router
from .workqueue import WorkQueue


@dataclass(frozen=True)
class ControllerConfig:
    """What the controller watches and how it paces itself."""

    api_version: str = API_VERSION
    kind: str = "Rollout"
    routers: Mapping[str, RouterFactory] = field(default_factory=lambda: DEFAULT_ROUTERS)
    workers: int = settings.workers
    resync_interval_s: float = settings.resync_interval_s
    analysis_poll_interval_s: float = settings.analysis_poll_interval_s
    weight_verify_interval_s: float = settings.weight_verify_interval_s
    replica_quota: int = settings.replica_quota


@dataclass(frozen=True)
class ReconcileResult:
    requeue_after: Optional[float] = None


def rollout_from_row(row: RolloutRow) -> Rollout:
    """Parse a stored rollout. Raises ValidationError when it no longer validates."""
    try:
        return Rollout.model_validate(
            {
                "apiVersion": row.api_version,
                "kind": row.kind,
                "metadata": {
                    "name": row.name,
                    "annotations": row.annotations,
                    "labels": row.labels,
                    "generation": row.generation,
                    "resourceVersion": row.resource_version,
                },
                "spec": row.spec,
                "status": row.status,
            }
        )
    except pydantic.ValidationError as e:
        raise ValidationError.from_pydantic(e, f"rollout {row.name!r} is invalid") from e


class Reconciler:
    """Level-triggered controller: every pass reads current state and moves it one step closer."""

    def __init__(
        self,
        config: ControllerConfig,
        runtime: RuntimeState,
        recorder: EventRecorder | None = None,
        analysis_backend: AnalysisBackend | None = None,
        clock: Callable[[], datetime] = utc_now,
        queue: WorkQueue | None = None,
    ):
        self.config = config
        self.runtime = runtime
        self.recorder = recorder or EventRecorder()
        self.clock = clock
        self.analysis_backend = analysis_backend or MetricAnalysisBackend(clock=clock)
        self.queue = queue or WorkQueue()
        self._stop = StopFlag()
        self._threads: list[Thread] = []

    # --- lifecycle ------------------------------------------------------------------

    def start(self) -> None:
        if any(t.is_alive() for t in self._threads) and not self._stop.is_set():
            return
        for t in self._threads:
            t.join()
        if self.queue.shutting_down:
            self.queue = WorkQueue(self.queue.base_delay_s, self.queue.max_delay_s)
        self._stop.clear()
        self._threads = [Thread(target=self._resync_loop, name="pdc-resync", daemon=True)]
        for i in range(max(1, int(self.config.workers))):
            self._threads.append(Thread(target=self._worker, name=f"pdc-worker-{i}", daemon=True))
        for t in self._threads:
            t.start()

    def stop(self) -> None:
        """Stop the workers. A later start() runs on a fresh queue."""
        self._stop.set()
        self.queue.shutdown()

    def enqueue(self, name: str, after: float = 0) -> None:
        self.queue.add_after(name, after)

    def _resync_loop(self) -> None:
        db.log_event("INFO", "Reconciler started")
        while not self._stop.is_set():
            try:
                for row in db.list_rollouts():
                    self.queue.add(row.name)
            except Exception as e:
                db.log_event("ERROR", f"Resync failed: {type(e).__name__}: {e}")
            self._stop.wait(max(1.0, float(self.config.resync_interval_s)))

    def _worker(self) -> None:
        while not self._stop.is_set():
            name = self.queue.get(timeout=1.0)
            if name is None:
                continue
            try:
                self.process(name)
            finally:
                self.queue.done(name)

    def process(self, name: str) -> None:
        """Reconcile one key and decide when it is seen next."""
        try:
            result = self.reconcile(name)
        except ConflictError as e:
            # Someone wrote in between: re-read and retry right away.
            db.log_event("INFO", f"Status write conflict, retrying: {e}", rollout=name)
            self.queue.add(name)
            return
        except ValidationError as e:
            db.log_event("ERROR", e.message, rollout=name)
            self.queue.forget(name)
            return
        except (TransientInfraError, sqlite3.OperationalError) as e:
            attempts = self.queue.num_requeues(name) + 1
            db.log_event("WARN", f"Reconcile deferred (attempt {attempts}): {type(e).__name__}: {e}", rollout=name)
            self.queue.add_rate_limited(name)
            return
        except Exception as e:
            db.log_event("ERROR", f"Reconcile failed: {type(e).__name__}: {e}", rollout=name)
            self.queue.add_rate_limited(name)
            return

        self.queue.forget(name)
        if result.requeue_after is not None:
            self.queue.add_after(name, result.requeue_after)

    # --- one pass ---------------------------------------------------------------------

    def reconcile(self, name: str) -> ReconcileResult:
        row = db.get_rollout(name)
        if row is None:
            self.runtime.drop(name)
            self.analysis_backend.prune(name, set(), 0, 0)
            return ReconcileResult()
        if row.api_version != self.config.api_version or row.kind != self.config.kind:
            raise ValidationError(f"rollout {name!r}: unsupported resource {row.api_version}/{row.kind}")

        rollout = rollout_from_row(row)
        template = self._resolve_template(rollout)
        router = build_router(rollout.spec.strategy.traffic_routing, name, self.runtime, self.config.routers)

        events: list[Event] = []
        ctx = RolloutContext(
            rollout=rollout,
            template=template,
            pod_hash=pod_template_hash(template, rollout.spec.restart_at),
            now=self.clock(),
            replicasets=ReplicaSetManager(name, emit=events.append, quota=self.config.replica_quota),
            router=router,
            analysis=AnalysisGate(self.analysis_backend, name, emit=events.append),
            analysis_poll_interval_s=self.config.analysis_poll_interval_s,
            weight_verify_interval_s=self.config.weight_verify_interval_s,
            events=events,
        )
        result = self._engine(ctx).reconcile()

        status = result.status
        status.observed_generation = row.generation
        status.replica_sets = ctx.replicasets.refs()
        if status != rollout.status:
            db.update_rollout_status(
                name, status.model_dump(mode="json", by_alias=True), expected_version=row.resource_version
            )
        for event in ctx.events:
            self.recorder.eventf(name, row.annotations, event)

        canary = status.canary.current_pod_hash if status.canary.current_pod_hash != status.canary.stable_rs else None
        self.runtime.set_targets(RouteTargets(rollout=name, stable=status.canary.stable_rs, canary=canary))
        return ReconcileResult(result.requeue_after)

    def _engine(self, ctx: RolloutContext) -> StrategyEngine:
        if ctx.rollout.spec.strategy.canary is not None:
            return CanaryEngine(ctx)
        return BlueGreenEngine(ctx)

    def _resolve_template(self, rollout: Rollout) -> dict:
        spec = rollout.spec
        if spec.template is not None:
            return spec.template
        ref = spec.workload_ref
        workload = db.get_workload(ref.kind, ref.name)
        if workload is None:
            raise TransientInfraError(f"workloadRef {ref.kind}/{ref.name} not found")
        return workload.template
