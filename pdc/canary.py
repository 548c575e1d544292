from __future__ import annotations

from typing import Optional

from .api_models import (
    AnalysisPhase,
    AnalysisStep,
    ExperimentStatus,
    ExperimentStep,
    PauseCondition,
    PauseReason,
    PauseStep,
    Phase,
    SetWeightStep,
    Step,
)
from .events import (
    REASON_ROLLOUT_COMPLETED,
    REASON_ROLLOUT_PAUSED,
    REASON_ROLLOUT_RESUMED,
    REASON_STEP_COMPLETED,
    Event,
)
from .replicasets import ROLE_EXPERIMENT, ROLE_STABLE, replica_counts
from .rollouts import EngineResult, RolloutContext, StrategyEngine, soonest

# (done, requeue_after)
StepOutcome = tuple[bool, Optional[float]]


def describe_step(step: Step) -> str:
    if isinstance(step, SetWeightStep):
        return f"setWeight {step.set_weight}"
    if isinstance(step, PauseStep):
        return f"pause {step.pause.duration}s" if step.pause.duration is not None else "pause"
    if isinstance(step, AnalysisStep):
        return f"analysis {step.analysis.template_name}"
    return "experiment"


class CanaryEngine(StrategyEngine):
    """Walks the declared steps, shifting weight and gating on pauses and analysis."""

    def __init__(self, ctx: RolloutContext):
        super().__init__(ctx)
        self.strategy = self.spec.strategy.canary
        self.steps = self.strategy.steps

    def _initial_step_index(self) -> Optional[int]:
        return 0

    def _progress(self) -> EngineResult:
        st = self.status
        if st.current_step_index is None:
            st.current_step_index = 0
        if st.current_step_index < len(self.steps):
            self._scale_for(self._target_weight(st.current_step_index))
        else:
            # Past the last step: keep the split of the weight actually applied.
            self._scale_for(st.current_step_weight)
        requeue = self._background_analysis()

        while True:
            if st.promote_full:
                st.current_step_index = len(self.steps)
            index = st.current_step_index
            if index >= len(self.steps):
                return self._complete(requeue)

            step = self.steps[index]
            done, wait = self._reconcile_step(index, step)
            if not done:
                st.phase = Phase.PAUSED if st.pause_conditions else Phase.PROGRESSING
                return EngineResult(st, soonest(requeue, wait))

            st.current_step_index = index + 1
            st.message = ""
            self.ctx.emit(
                Event(
                    REASON_STEP_COMPLETED,
                    f"Rollout step {index + 1}/{len(self.steps)} completed ({describe_step(step)})",
                )
            )
            requeue = soonest(requeue, self._background_analysis())

    # --- steps -------------------------------------------------------------------

    def _reconcile_step(self, index: int, step: Step) -> StepOutcome:
        if isinstance(step, SetWeightStep):
            return self._set_weight_step(step)
        if isinstance(step, PauseStep):
            return self._pause_step(index, step)
        if isinstance(step, AnalysisStep):
            return self._analysis_step(index, step)
        return self._experiment_step(index, step)

    def _set_weight_step(self, step: SetWeightStep) -> StepOutcome:
        st = self.status
        weight = step.set_weight
        expected = self._scale_for(weight)
        applied_before = st.current_step_weight == weight
        if not self._set_weight(weight):
            return False, self.ctx.weight_verify_interval_s
        # Advance only on a pass that observes the weight already in place.
        if not applied_before or not self.rs.counts_match(expected):
            return False, self.ctx.weight_verify_interval_s
        return True, None

    def _pause_step(self, index: int, step: PauseStep) -> StepOutcome:
        st = self.status
        duration = step.pause.duration
        cond = st.pause_condition(PauseReason.CANARY_PAUSE_STEP)
        if cond is None:
            if st.controller_pause:
                # The condition was cleared by promote.
                st.controller_pause = False
                self.ctx.emit(Event(REASON_ROLLOUT_RESUMED, f"Rollout resumed at step {index + 1}"))
                return True, None
            cond = PauseCondition(reason=PauseReason.CANARY_PAUSE_STEP, start_time=self.ctx.now)
            st.pause_conditions.append(cond)
            st.controller_pause = True
            suffix = f" for {duration}s" if duration is not None else ""
            self.ctx.emit(Event(REASON_ROLLOUT_PAUSED, f"Rollout paused at step {index + 1}{suffix}"))
        if duration is None:
            return False, None

        elapsed = (self.ctx.now - cond.start_time).total_seconds()
        if elapsed < duration:
            return False, duration - elapsed
        st.pause_conditions = [c for c in st.pause_conditions if c.reason != PauseReason.CANARY_PAUSE_STEP]
        st.controller_pause = False
        self.ctx.emit(Event(REASON_ROLLOUT_RESUMED, f"Rollout resumed at step {index + 1} after {duration}s"))
        return True, None

    def _analysis_step(self, index: int, step: AnalysisStep) -> StepOutcome:
        st = self.status
        poll = self.ctx.analysis_poll_interval_s
        ref = st.canary.current_step_analysis_run
        if ref is not None and (ref.step_index != index or ref.pod_hash != self.ctx.pod_hash):
            self.analysis.terminate(ref)
            ref = None
        if ref is None:
            st.canary.current_step_analysis_run = self.analysis.start(
                step.analysis, stable_hash=st.canary.stable_rs, latest_hash=self.ctx.pod_hash, step_index=index
            )
            return False, poll

        result = self.analysis.check(ref)
        if result.phase == AnalysisPhase.SUCCESSFUL:
            st.canary.current_step_analysis_run = None
            return True, None
        if result.phase == AnalysisPhase.INCONCLUSIVE:
            st.message = f"Analysis run {ref.name} Inconclusive: {result.message}".rstrip(": ")
        return False, poll

    def _experiment_step(self, index: int, step: ExperimentStep) -> StepOutcome:
        st = self.status
        spec = step.experiment
        poll = self.ctx.analysis_poll_interval_s
        exp = st.canary.current_experiment
        if exp is not None and (exp.step_index != index or exp.pod_hash != self.ctx.pod_hash):
            self._teardown_experiment()
            exp = None

        if exp is None:
            hashes: list[str] = []
            for tmpl in spec.templates:
                source = st.canary.stable_rs if tmpl.spec_ref == "stable" else self.ctx.pod_hash
                source_rs = self.rs.get(source)
                template = source_rs.template if source_rs is not None else self.ctx.template
                pod_hash = f"{source}-{tmpl.name}"
                self.rs.ensure(pod_hash, template, ROLE_EXPERIMENT, replicas=0)
                self.rs.scale(pod_hash, tmpl.replicas)
                hashes.append(pod_hash)
            runs = [
                self.analysis.start(a, stable_hash=st.canary.stable_rs, latest_hash=self.ctx.pod_hash, step_index=index)
                for a in spec.analyses
            ]
            st.canary.current_experiment = ExperimentStatus(
                name=f"{self.rollout.name}-{self.ctx.pod_hash}-{index}",
                step_index=index,
                pod_hash=self.ctx.pod_hash,
                started_at=self.ctx.now,
                replica_sets=hashes,
                analysis_runs=runs,
            )
            return False, soonest(spec.duration, poll if runs or spec.duration is None else None)

        results = [self.analysis.check(ref) for ref in exp.analysis_runs]
        elapsed = (self.ctx.now - exp.started_at).total_seconds()
        if spec.duration is not None and elapsed < spec.duration:
            return False, soonest(spec.duration - elapsed, poll if exp.analysis_runs else None)
        pending = [r for r in results if r.phase != AnalysisPhase.SUCCESSFUL]
        if pending:
            inconclusive = [r for r in pending if r.phase == AnalysisPhase.INCONCLUSIVE]
            if inconclusive:
                st.message = f"Experiment {exp.name} analysis Inconclusive: {inconclusive[0].message}".rstrip(": ")
            return False, poll
        self._teardown_experiment()
        return True, None

    def _background_analysis(self) -> Optional[float]:
        st = self.status
        bg = self.strategy.analysis
        if bg is None:
            return None
        if st.current_step_index is None or st.current_step_index < (bg.starting_step or 0):
            return None
        poll = self.ctx.analysis_poll_interval_s
        ref = st.canary.current_background_analysis_run
        if ref is not None and ref.pod_hash != self.ctx.pod_hash:
            self.analysis.terminate(ref)
            ref = None
        if ref is None:
            st.canary.current_background_analysis_run = self.analysis.start(
                bg, stable_hash=st.canary.stable_rs, latest_hash=self.ctx.pod_hash
            )
            return poll
        result = self.analysis.check(ref)
        return None if result.phase.terminal else poll

    # --- replica math ---------------------------------------------------------------

    def _target_weight(self, index: int) -> int:
        for step in reversed(self.steps[: index + 1]):
            if isinstance(step, SetWeightStep):
                return step.set_weight
        return 0

    def _scale_for(self, weight: int) -> dict[str, int]:
        st = self.status
        stable_count, canary_count = replica_counts(weight, self.spec.replicas)
        expected = {st.canary.stable_rs: stable_count, st.canary.current_pod_hash: canary_count}
        self.rs.scale_many(expected)
        return expected

    # --- completion -----------------------------------------------------------------

    def _complete(self, requeue: Optional[float]) -> EngineResult:
        """All steps passed: the canary becomes the new stable."""
        st = self.status
        # Old stable keeps its replicas until the canary carries all traffic.
        if not self._set_weight(100):
            st.phase = Phase.PROGRESSING
            return EngineResult(st, soonest(requeue, self.ctx.weight_verify_interval_s))
        self._scale_for(100)

        old_stable = st.canary.stable_rs
        self.rs.set_role(old_stable, None)
        self.rs.set_role(st.canary.current_pod_hash, ROLE_STABLE)
        st.canary.stable_rs = st.canary.current_pod_hash
        self._terminate_runs()
        self._teardown_experiment()
        st.message = ""
        rs = self.rs.get(st.canary.stable_rs)
        revision = rs.revision if rs else "?"
        self.ctx.emit(
            Event(REASON_ROLLOUT_COMPLETED, f"Rollout completed: revision {revision} ({st.canary.stable_rs}) is now stable")
        )
        return self._steady()
