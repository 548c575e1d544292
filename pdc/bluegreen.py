from __future__ import annotations

from datetime import timedelta
from typing import Optional

from .api_models import AnalysisPhase, AnalysisRef, PauseCondition, PauseReason, Phase
from .events import REASON_ROLLOUT_COMPLETED, REASON_ROLLOUT_PAUSED, REASON_ROLLOUT_RESUMED, Event
from .replicasets import ROLE_STABLE
from .rollouts import EngineResult, RolloutContext, StrategyEngine

PRE_PROMOTION = "pre_promotion_analysis_run"
POST_PROMOTION = "post_promotion_analysis_run"


class BlueGreenEngine(StrategyEngine):
    """Preview next to active, then a single cutover.

    The preview revision is brought up beside the active one, optionally
    analysed, then promoted (automatically, after a delay, or by an
    operator). Traffic moves in one 0 to 100 switch; the old active stays up
    for ``scaleDownDelaySeconds`` before it is scaled to zero.
    """

    def __init__(self, ctx: RolloutContext):
        super().__init__(ctx)
        self.strategy = self.spec.strategy.blue_green

    # --- hooks -------------------------------------------------------------------

    def _on_adopt(self) -> None:
        self.status.blue_green.active_selector = self.status.canary.stable_rs
        self.status.blue_green.preview_selector = None

    def _on_new_revision(self) -> None:
        bg = self.status.blue_green
        bg.preview_selector = self.ctx.pod_hash
        # A new cutover supersedes any grace window still running.
        if bg.previous_active and bg.previous_active != self.status.canary.stable_rs:
            self.rs.scale(bg.previous_active, 0)
        bg.previous_active = None
        bg.scale_down_at = None

    def _steady_extra(self) -> Optional[float]:
        st = self.status
        bg = st.blue_green
        bg.active_selector = st.canary.stable_rs
        bg.preview_selector = None
        if not bg.previous_active:
            return None
        if bg.scale_down_at is not None and self.ctx.now < bg.scale_down_at:
            return (bg.scale_down_at - self.ctx.now).total_seconds()
        if self.rs.get(bg.previous_active) is not None:
            self.rs.scale(bg.previous_active, 0)
        bg.previous_active = None
        bg.scale_down_at = None
        return None

    def _abort(self, reason: str | None = None) -> EngineResult:
        result = super()._abort(reason)
        self.status.blue_green.active_selector = self.status.canary.stable_rs
        return result

    # --- progress ------------------------------------------------------------------

    def _progress(self) -> EngineResult:
        st = self.status
        total = self.spec.replicas
        verify = self.ctx.weight_verify_interval_s

        # Weight 100 means the cutover already happened on an earlier pass.
        if st.current_step_weight != 100:
            preview = self.strategy.preview_replica_count
            expected = {st.canary.stable_rs: total, st.canary.current_pod_hash: total if preview is None else preview}
            self.rs.scale_many(expected)
            if not self.rs.counts_match(expected):
                return self._waiting(verify)

            if not st.promote_full:
                done, wait = self._gate(PRE_PROMOTION, self.strategy.pre_promotion_analysis)
                if not done:
                    return self._waiting(wait)
                allowed, wait = self._promotion_allowed()
                if not allowed:
                    return self._waiting(wait)

            self.rs.scale_many({st.canary.current_pod_hash: total})
            if not self.rs.counts_match({st.canary.current_pod_hash: total}):
                return self._waiting(verify)
            if not self._set_weight(100):
                return self._waiting(verify)
            st.blue_green.active_selector = st.canary.current_pod_hash

        if not st.promote_full:
            done, wait = self._gate(POST_PROMOTION, self.strategy.post_promotion_analysis)
            if not done:
                return self._waiting(wait)
        return self._finalize()

    def _waiting(self, requeue: Optional[float]) -> EngineResult:
        st = self.status
        st.phase = Phase.PAUSED if st.pause_conditions else Phase.PROGRESSING
        return EngineResult(st, requeue)

    def _gate(self, attr: str, ref_spec: Optional[AnalysisRef]) -> tuple[bool, Optional[float]]:
        if ref_spec is None:
            return True, None
        st = self.status
        poll = self.ctx.analysis_poll_interval_s
        ref = getattr(st.blue_green, attr)
        if ref is not None and ref.pod_hash != self.ctx.pod_hash:
            self.analysis.terminate(ref)
            ref = None
        if ref is None:
            setattr(
                st.blue_green,
                attr,
                self.analysis.start(ref_spec, stable_hash=st.canary.stable_rs, latest_hash=self.ctx.pod_hash),
            )
            return False, poll
        result = self.analysis.check(ref)
        if result.phase == AnalysisPhase.SUCCESSFUL:
            return True, None
        if result.phase == AnalysisPhase.INCONCLUSIVE:
            st.message = f"Analysis run {ref.name} Inconclusive: {result.message}".rstrip(": ")
        return False, poll

    def _promotion_allowed(self) -> tuple[bool, Optional[float]]:
        st = self.status
        cond = st.pause_condition(PauseReason.BLUE_GREEN_PAUSE)
        if st.controller_pause and cond is None:
            return True, None
        if self.strategy.auto_promotion_enabled and self.strategy.auto_promotion_seconds is None:
            return True, None
        if cond is None:
            cond = PauseCondition(reason=PauseReason.BLUE_GREEN_PAUSE, start_time=self.ctx.now)
            st.pause_conditions.append(cond)
            st.controller_pause = True
            self.ctx.emit(Event(REASON_ROLLOUT_PAUSED, "Rollout paused before promotion"))
        if not self.strategy.auto_promotion_enabled:
            return False, None

        seconds = self.strategy.auto_promotion_seconds or 0
        elapsed = (self.ctx.now - cond.start_time).total_seconds()
        if elapsed < seconds:
            return False, seconds - elapsed
        st.pause_conditions = [c for c in st.pause_conditions if c.reason != PauseReason.BLUE_GREEN_PAUSE]
        self.ctx.emit(Event(REASON_ROLLOUT_RESUMED, f"Rollout auto-promoted after {seconds}s"))
        return True, None

    def _finalize(self) -> EngineResult:
        st = self.status
        bg = st.blue_green
        old, new = st.canary.stable_rs, st.canary.current_pod_hash
        self.rs.set_role(old, None)
        self.rs.set_role(new, ROLE_STABLE)
        st.canary.stable_rs = new
        bg.active_selector = new
        bg.preview_selector = None
        delay = self.strategy.scale_down_delay_seconds
        if old and old != new:
            if delay > 0:
                bg.previous_active = old
                bg.scale_down_at = self.ctx.now + timedelta(seconds=delay)
            else:
                self.rs.scale(old, 0)
        self._terminate_runs()
        st.message = ""
        rs = self.rs.get(new)
        revision = rs.revision if rs else "?"
        self.ctx.emit(Event(REASON_ROLLOUT_COMPLETED, f"Rollout completed: revision {revision} ({new}) is now active"))
        return self._steady()
