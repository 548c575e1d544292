"""Strategy-independent rollout state machine.

An engine receives the rollout as last observed, works on a private copy of
its status and returns the desired status plus a requeue delay. Replica sets,
traffic and analysis are mutated through the collaborators on the context;
events are buffered on the context and only published by the caller after
the status write succeeds.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .analysis import AnalysisGate
from .api_models import BlueGreenStatus, CanaryStatus, Phase, Rollout, RolloutStatus, RunRef
from .errors import GateFailure
from .events import (
    REASON_ROLLOUT_ABORTED,
    REASON_ROLLOUT_UPDATED,
    REASON_WEIGHT_UPDATED,
    Event,
    warning,
)
from .replicasets import ROLE_CANARY, ROLE_STABLE, ReplicaSetManager
from .settings import settings
from .traffic import TrafficRouter, converge


@dataclass
class RolloutContext:
    rollout: Rollout
    template: dict[str, Any]
    pod_hash: str
    now: datetime
    replicasets: ReplicaSetManager
    router: TrafficRouter
    analysis: AnalysisGate
    analysis_poll_interval_s: float = settings.analysis_poll_interval_s
    weight_verify_interval_s: float = settings.weight_verify_interval_s
    events: list[Event] = field(default_factory=list)

    def emit(self, event: Event) -> None:
        self.events.append(event)


@dataclass
class EngineResult:
    status: RolloutStatus
    requeue_after: Optional[float] = None


def soonest(*delays: Optional[float]) -> Optional[float]:
    present = [d for d in delays if d is not None]
    return min(present) if present else None


class StrategyEngine:
    """Shared lifecycle: adoption, new revisions, abort, rollback and the steady state.

    Subclasses implement ``_progress`` (one pass of an in-flight update) and
    may override the hooks below.
    """

    def __init__(self, ctx: RolloutContext):
        self.ctx = ctx
        self.rollout = ctx.rollout
        self.spec = ctx.rollout.spec
        self.status = ctx.rollout.status.model_copy(deep=True)
        self.rs = ctx.replicasets
        self.analysis = ctx.analysis

    # --- hooks ---------------------------------------------------------------

    def _initial_step_index(self) -> Optional[int]:
        return None

    def _progress(self) -> EngineResult:
        raise NotImplementedError

    def _on_adopt(self) -> None:
        pass

    def _on_new_revision(self) -> None:
        pass

    def _steady_extra(self) -> Optional[float]:
        return None

    # --- entry point -------------------------------------------------------------

    def reconcile(self) -> EngineResult:
        st = self.status
        pod_hash = self.ctx.pod_hash

        if st.canary.stable_rs is None:
            return self._adopt_initial()
        if pod_hash == st.canary.stable_rs:
            if st.canary.current_pod_hash != st.canary.stable_rs:
                return self._rollback_to_stable()
            return self._steady()
        if pod_hash != st.canary.current_pod_hash and not self._start_new_revision():
            st.phase = Phase.PROGRESSING
            return EngineResult(st, self.ctx.weight_verify_interval_s)
        if st.abort:
            return self._abort()
        try:
            return self._progress()
        except GateFailure as e:
            return self._abort(e.reason)

    # --- shared transitions ---------------------------------------------------------

    def _adopt_initial(self) -> EngineResult:
        st = self.status
        pod_hash = self.ctx.pod_hash
        self.rs.ensure(pod_hash, self.ctx.template, ROLE_STABLE, replicas=self.spec.replicas)
        st.canary.stable_rs = pod_hash
        st.canary.current_pod_hash = pod_hash
        self._reset_progress()
        self._on_adopt()
        return self._steady()

    def _start_new_revision(self) -> bool:
        """Retire whatever is in flight and create the replica set for the new template.

        Returns False while traffic is still being moved off the old canary.
        """
        st = self.status
        pod_hash = self.ctx.pod_hash
        if not self._set_weight(0):
            return False

        self._terminate_runs()
        self._teardown_experiment()
        old = st.canary.current_pod_hash
        if old and old not in (st.canary.stable_rs, pod_hash):
            self.rs.scale(old, 0)
            self.rs.set_role(old, None)

        rs = self.rs.ensure(pod_hash, self.ctx.template, ROLE_CANARY, replicas=0)
        st.canary.current_pod_hash = pod_hash
        self._reset_progress()
        st.current_step_index = self._initial_step_index()
        st.message = ""
        self._on_new_revision()
        self.ctx.emit(Event(REASON_ROLLOUT_UPDATED, f"Rollout updated to revision {rs.revision} ({pod_hash})"))
        return True

    def _abort(self, reason: str | None = None) -> EngineResult:
        """Route everything back to stable and scale the in-flight revision down."""
        st = self.status
        first = not st.abort or st.aborted_at is None
        st.abort = True
        if reason:
            st.message = reason
        elif not st.message:
            st.message = "Rollout aborted"
        if first:
            st.aborted_at = self.ctx.now
            self.ctx.emit(warning(REASON_ROLLOUT_ABORTED, st.message))

        self._terminate_runs()
        self._teardown_experiment()
        st.pause_conditions = []
        st.controller_pause = False
        st.promote_full = False
        st.current_step_index = self._initial_step_index()
        st.phase = Phase.DEGRADED

        if not self._set_weight(0):
            return EngineResult(st, self.ctx.weight_verify_interval_s)
        self.rs.scale_many({st.canary.current_pod_hash: 0, st.canary.stable_rs: self.spec.replicas})
        return EngineResult(st)

    def _rollback_to_stable(self) -> EngineResult:
        """The template went back to the stable revision: drop the in-flight one."""
        st = self.status
        if not self._set_weight(0):
            st.phase = Phase.PROGRESSING
            return EngineResult(st, self.ctx.weight_verify_interval_s)
        self._terminate_runs()
        self._teardown_experiment()
        old = st.canary.current_pod_hash
        if old and old != st.canary.stable_rs:
            self.rs.scale(old, 0)
            self.rs.set_role(old, None)
        st.canary.current_pod_hash = st.canary.stable_rs
        self._reset_progress()
        st.message = ""
        stable = self.rs.get(st.canary.stable_rs)
        revision = stable.revision if stable else "?"
        self.ctx.emit(Event(REASON_ROLLOUT_UPDATED, f"Rolled back to stable revision {revision} ({st.canary.stable_rs})"))
        return self._steady()

    def _steady(self) -> EngineResult:
        """No update in flight: stable serves everything at the declared size."""
        st = self.status
        self.rs.set_role(st.canary.stable_rs, ROLE_STABLE)
        self.rs.scale(st.canary.stable_rs, self.spec.replicas)
        requeue = self._steady_extra()
        converged = self._set_weight(100)
        if not converged:
            requeue = soonest(requeue, self.ctx.weight_verify_interval_s)
        self._reset_progress()
        self._prune()
        st.phase = Phase.HEALTHY if converged else Phase.PROGRESSING
        return EngineResult(st, requeue)

    # --- helpers ---------------------------------------------------------------------

    def _set_weight(self, weight: int) -> bool:
        """Converge traffic to ``weight``; the recorded weight only moves once applied."""
        st = self.status
        previous = st.current_step_weight
        if not converge(previous, weight, self.ctx.router, rollout=self.rollout.name):
            return False
        if previous != weight:
            st.current_step_weight = weight
            self.ctx.emit(Event(REASON_WEIGHT_UPDATED, f"Canary weight set to {weight} (was {previous})"))
        return True

    def _reset_progress(self) -> None:
        st = self.status
        st.current_step_index = None
        st.pause_conditions = []
        st.controller_pause = False
        st.abort = False
        st.aborted_at = None
        st.promote_full = False
        st.canary = CanaryStatus(stable_rs=st.canary.stable_rs, current_pod_hash=st.canary.current_pod_hash)
        st.blue_green = BlueGreenStatus(
            active_selector=st.blue_green.active_selector,
            preview_selector=st.blue_green.preview_selector,
            previous_active=st.blue_green.previous_active,
            scale_down_at=st.blue_green.scale_down_at,
        )

    def _run_refs(self) -> list[RunRef]:
        st = self.status
        refs = [
            st.canary.current_step_analysis_run,
            st.canary.current_background_analysis_run,
            st.blue_green.pre_promotion_analysis_run,
            st.blue_green.post_promotion_analysis_run,
        ]
        if st.canary.current_experiment is not None:
            refs.extend(st.canary.current_experiment.analysis_runs)
        return [r for r in refs if r is not None]

    def _terminate_runs(self) -> None:
        st = self.status
        for ref in self._run_refs():
            self.analysis.terminate(ref)
        st.canary.current_step_analysis_run = None
        st.canary.current_background_analysis_run = None
        st.blue_green.pre_promotion_analysis_run = None
        st.blue_green.post_promotion_analysis_run = None

    def _teardown_experiment(self) -> None:
        exp = self.status.canary.current_experiment
        if exp is None:
            return
        for ref in exp.analysis_runs:
            self.analysis.terminate(ref)
        for pod_hash in exp.replica_sets:
            if self.rs.get(pod_hash) is not None:
                self.rs.scale(pod_hash, 0)
                self.rs.delete(pod_hash)
        self.status.canary.current_experiment = None

    def _prune(self) -> None:
        st = self.status
        keep = {h for h in (st.canary.stable_rs, st.canary.current_pod_hash, st.blue_green.previous_active) if h}
        self.rs.prune_history(self.spec.revision_history_limit, keep)
        history = self.spec.analysis
        self.analysis.prune(
            {r.name for r in self._run_refs()},
            history.successful_run_history_limit,
            history.unsuccessful_run_history_limit,
        )
