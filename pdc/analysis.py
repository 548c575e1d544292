"""Analysis runs: metric measurement, verdicts and the gate the engines poll.

A run is started from an AnalysisTemplate plus arguments. Each poll takes the
measurements that are due, folds them into per-metric counters and reduces
those to a single run phase. Engines only ever see the run through
:class:`AnalysisGate`, which turns Failed/Error into a :class:`GateFailure`.
"""
from __future__ import annotations

import operator
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Protocol

import pydantic

from . import db, providers
from .api_models import (
    AnalysisPhase,
    AnalysisRef,
    AnalysisTemplateSpec,
    Measurement,
    Metric,
    MetricProvider,
    MetricResult,
    RunRef,
)
from .errors import GateFailure
from .events import REASON_ANALYSIS_FAILED, Event, warning
from .providers import MetricProviderError
from .runtime import utc_now
from .settings import settings

_CONDITION_RE = re.compile(r"^\s*result\s*(>=|<=|==|!=|>|<)\s*(.+?)\s*$")
_ARG_RE = re.compile(r"\{\{\s*args\.([A-Za-z0-9_\-]+)\s*\}\}")

_OPS: dict[str, Callable[[Any, Any], bool]] = {
    ">=": operator.ge,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    "<": operator.lt,
}

# Measurements kept per metric in the run record.
MEASUREMENT_RETENTION = 10


# --- Conditions ----------------------------------------------------------------


@dataclass(frozen=True)
class Condition:
    op: str
    literal: Any

    def evaluate(self, value: Any) -> bool:
        literal = self.literal
        if isinstance(literal, bool):
            if isinstance(value, str) and value.strip().lower() in ("true", "false"):
                value = value.strip().lower() == "true"
            if not isinstance(value, bool):
                raise TypeError(f"expected a boolean result, got {value!r}")
        elif isinstance(literal, float):
            if isinstance(value, bool):
                raise TypeError(f"expected a numeric result, got {value!r}")
            value = float(value)
        else:
            value = str(value)
        return _OPS[self.op](value, literal)


def parse_condition(expr: str) -> Condition:
    """Parse ``result <op> <literal>``; the literal is a number, true/false or a quoted string."""
    m = _CONDITION_RE.match(expr or "")
    if not m:
        raise ValueError(f"invalid condition {expr!r}; expected e.g. 'result >= 0.95'")
    op, raw = m.groups()
    literal: Any
    if raw in ("true", "false"):
        literal = raw == "true"
        if op not in ("==", "!="):
            raise ValueError(f"invalid condition {expr!r}; booleans only support == and !=")
    elif len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
        literal = raw[1:-1]
    else:
        try:
            literal = float(raw)
        except ValueError:
            raise ValueError(f"invalid condition {expr!r}; unsupported literal {raw!r}") from None
    return Condition(op, literal)


def assess(metric: Metric, value: Any) -> AnalysisPhase:
    """Classify one measured value against the metric's conditions."""
    if metric.failure_condition and parse_condition(metric.failure_condition).evaluate(value):
        return AnalysisPhase.FAILED
    if metric.success_condition:
        if parse_condition(metric.success_condition).evaluate(value):
            return AnalysisPhase.SUCCESSFUL
        if metric.failure_condition is None:
            return AnalysisPhase.FAILED
        return AnalysisPhase.INCONCLUSIVE
    return AnalysisPhase.SUCCESSFUL


# --- Verdicts --------------------------------------------------------------------


def metric_phase(metric: Metric, result: MetricResult) -> AnalysisPhase:
    if result.failed > metric.failure_limit:
        return AnalysisPhase.FAILED
    if result.consecutive_error > metric.consecutive_error_limit:
        return AnalysisPhase.ERROR
    if result.inconclusive > metric.inconclusive_limit:
        return AnalysisPhase.INCONCLUSIVE
    if result.count >= metric.count:
        return AnalysisPhase.SUCCESSFUL
    if result.count or result.error:
        return AnalysisPhase.RUNNING
    return AnalysisPhase.PENDING


def run_phase(phases: Iterable[AnalysisPhase]) -> AnalysisPhase:
    """Reduce metric phases to a run phase. Failed outranks Error outranks the rest."""
    phases = list(phases)
    if AnalysisPhase.FAILED in phases:
        return AnalysisPhase.FAILED
    if AnalysisPhase.ERROR in phases:
        return AnalysisPhase.ERROR
    if phases and all(p.terminal for p in phases):
        if AnalysisPhase.INCONCLUSIVE in phases:
            return AnalysisPhase.INCONCLUSIVE
        return AnalysisPhase.SUCCESSFUL
    if any(p != AnalysisPhase.PENDING for p in phases):
        return AnalysisPhase.RUNNING
    return AnalysisPhase.PENDING


def _metric_message(metric: Metric, result: MetricResult) -> str:
    if result.phase == AnalysisPhase.FAILED:
        return f"Metric \"{metric.name}\" assessed Failed due to failed ({result.failed}) > failureLimit ({metric.failure_limit})"
    if result.phase == AnalysisPhase.ERROR:
        last = result.measurements[-1].message if result.measurements else ""
        return (
            f"Metric \"{metric.name}\" assessed Error due to consecutiveErrors ({result.consecutive_error})"
            f" > consecutiveErrorLimit ({metric.consecutive_error_limit}): {last}"
        )
    if result.phase == AnalysisPhase.INCONCLUSIVE:
        return (
            f"Metric \"{metric.name}\" assessed Inconclusive due to inconclusive ({result.inconclusive})"
            f" > inconclusiveLimit ({metric.inconclusive_limit})"
        )
    return ""


# --- Backend ---------------------------------------------------------------------


@dataclass(frozen=True)
class RunStatus:
    phase: AnalysisPhase
    message: str = ""


class AnalysisBackend(Protocol):
    def start(self, template_name: str, args: Mapping[str, str], owner: str) -> str:
        """Create a run and return its handle."""

    def get_phase(self, handle: str) -> RunStatus:
        """Advance the run if measurements are due and return its phase."""

    def terminate(self, handle: str) -> None:
        """Stop measuring. Idempotent."""

    def prune(self, owner: str, keep: set[str], successful_limit: int, unsuccessful_limit: int) -> None:
        """Terminate orphaned runs and drop finished ones beyond the history limits."""


def substitute_args(value: Any, args: Mapping[str, str]) -> Any:
    """Replace ``{{args.name}}`` placeholders throughout a JSON-like value."""
    if isinstance(value, str):

        def _repl(m: re.Match[str]) -> str:
            name = m.group(1)
            if name not in args:
                raise KeyError(name)
            return args[name]

        return _ARG_RE.sub(_repl, value)
    if isinstance(value, list):
        return [substitute_args(v, args) for v in value]
    if isinstance(value, dict):
        return {k: substitute_args(v, args) for k, v in value.items()}
    return value


class MetricAnalysisBackend:
    """Analysis runs persisted in the controller database and measured on poll."""

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        measure: Callable[[MetricProvider, float], Any] = providers.measure,
        default_interval_s: float | None = None,
        timeout_s: float | None = None,
    ):
        self.clock = clock
        self.measure = measure
        self.default_interval_s = (
            settings.analysis_poll_interval_s if default_interval_s is None else default_interval_s
        )
        self.timeout_s = timeout_s or settings.request_timeout_s

    def start(self, template_name: str, args: Mapping[str, str], owner: str) -> str:
        name = f"{owner}-{template_name}-{secrets.token_hex(3)}"
        raw = db.get_analysis_template(template_name)
        if raw is None:
            db.insert_analysis_run(
                name, owner, template_name, dict(args), [], AnalysisPhase.ERROR.value,
                f"AnalysisTemplate '{template_name}' not found",
            )
            return name
        try:
            template = AnalysisTemplateSpec.model_validate(raw)
        except pydantic.ValidationError as e:
            db.insert_analysis_run(
                name, owner, template_name, dict(args), [], AnalysisPhase.ERROR.value,
                f"AnalysisTemplate '{template_name}' is invalid: {e.error_count()} error(s)",
            )
            return name

        resolved = {a.name: a.value for a in template.args if a.value is not None}
        resolved.update(args)
        missing = [a.name for a in template.args if a.name not in resolved]
        metrics = [m.model_dump(mode="json", by_alias=True, exclude_none=True) for m in template.metrics]
        try:
            if missing:
                raise KeyError(missing[0])
            metrics = substitute_args(metrics, resolved)
        except KeyError as e:
            db.insert_analysis_run(
                name, owner, template_name, resolved, metrics, AnalysisPhase.ERROR.value,
                f"argument '{e.args[0]}' was not supplied",
            )
            return name

        db.insert_analysis_run(name, owner, template_name, resolved, metrics, AnalysisPhase.PENDING.value)
        return name

    def get_phase(self, handle: str) -> RunStatus:
        run = db.get_analysis_run(handle)
        if run is None:
            return RunStatus(AnalysisPhase.ERROR, f"analysis run '{handle}' not found")
        phase = AnalysisPhase(run.phase)
        if run.terminated or phase.terminal:
            return RunStatus(phase, run.message)

        metrics = [Metric.model_validate(m) for m in run.metrics]
        results = {r["name"]: MetricResult.model_validate(r) for r in run.metric_results}
        now = self.clock()
        for metric in metrics:
            result = results.setdefault(metric.name, MetricResult(name=metric.name))
            if result.phase.terminal or not self._due(metric, result, now):
                continue
            self._take_measurement(metric, result, now)
            result.phase = metric_phase(metric, result)
            result.message = _metric_message(metric, result)

        phase = run_phase(results[m.name].phase for m in metrics)
        message = next((results[m.name].message for m in metrics if results[m.name].message), "")
        db.update_analysis_run(
            handle,
            phase.value,
            message,
            [results[m.name].model_dump(mode="json", by_alias=True) for m in metrics],
        )
        return RunStatus(phase, message)

    def _due(self, metric: Metric, result: MetricResult, now: datetime) -> bool:
        if not result.measurements:
            return True
        interval = metric.interval if metric.interval is not None else self.default_interval_s
        return (now - result.measurements[-1].finished_at).total_seconds() >= interval

    def _take_measurement(self, metric: Metric, result: MetricResult, now: datetime) -> None:
        try:
            value = self.measure(metric.provider, self.timeout_s)
            outcome = assess(metric, value)
        except (MetricProviderError, ValueError, TypeError) as e:
            result.error += 1
            result.consecutive_error += 1
            result.measurements.append(Measurement(phase=AnalysisPhase.ERROR, message=str(e), finished_at=now))
        else:
            result.consecutive_error = 0
            result.count += 1
            if outcome == AnalysisPhase.SUCCESSFUL:
                result.successful += 1
            elif outcome == AnalysisPhase.FAILED:
                result.failed += 1
            else:
                result.inconclusive += 1
            result.measurements.append(Measurement(phase=outcome, value=str(value), finished_at=now))
        del result.measurements[:-MEASUREMENT_RETENTION]

    def terminate(self, handle: str) -> None:
        run = db.get_analysis_run(handle)
        if run is None or run.terminated:
            return
        phase = AnalysisPhase(run.phase)
        if phase.terminal:
            db.update_analysis_run(handle, run.phase, run.message, run.metric_results, terminated=True)
            return
        db.update_analysis_run(
            handle, AnalysisPhase.SUCCESSFUL.value, "run terminated", run.metric_results, terminated=True
        )

    def prune(self, owner: str, keep: set[str], successful_limit: int, unsuccessful_limit: int) -> None:
        successful = 0
        unsuccessful = 0
        for run in db.list_analysis_runs(owner):  # newest first
            if run.name in keep:
                continue
            phase = AnalysisPhase(run.phase)
            if not run.terminated and not phase.terminal:
                self.terminate(run.name)
                phase = AnalysisPhase.SUCCESSFUL
            if phase == AnalysisPhase.SUCCESSFUL:
                successful += 1
                if successful > successful_limit:
                    db.delete_analysis_run(run.name)
            else:
                unsuccessful += 1
                if unsuccessful > unsuccessful_limit:
                    db.delete_analysis_run(run.name)


# --- Gate --------------------------------------------------------------------------


def resolve_args(ref: AnalysisRef, stable_hash: str | None, latest_hash: str | None) -> dict[str, str]:
    out: dict[str, str] = {}
    for arg in ref.args:
        if arg.value is not None:
            out[arg.name] = arg.value
        elif arg.value_from is not None:
            source = stable_hash if arg.value_from.pod_template_hash_value == "Stable" else latest_hash
            if source is not None:
                out[arg.name] = source
    return out


class AnalysisGate:
    """Engine-facing view of the analysis backend for one rollout."""

    def __init__(self, backend: AnalysisBackend, rollout: str, emit: Callable[[Event], None] | None = None):
        self.backend = backend
        self.rollout = rollout
        self._emit = emit or (lambda _event: None)

    def start(
        self, ref: AnalysisRef, *, stable_hash: str | None, latest_hash: str, step_index: int | None = None
    ) -> RunRef:
        args = resolve_args(ref, stable_hash, latest_hash)
        handle = self.backend.start(ref.template_name, args, self.rollout)
        return RunRef(name=handle, pod_hash=latest_hash, step_index=step_index)

    def check(self, ref: RunRef) -> RunStatus:
        """Poll a run; Failed and Error raise GateFailure."""
        status = self.backend.get_phase(ref.name)
        if status.phase in (AnalysisPhase.FAILED, AnalysisPhase.ERROR):
            reason = f"Analysis run {ref.name} {status.phase.value}"
            if status.message:
                reason = f"{reason}: {status.message}"
            self._emit(warning(REASON_ANALYSIS_FAILED, reason))
            raise GateFailure(reason, run=ref.name, phase=status.phase.value)
        return status

    def terminate(self, ref: RunRef | None) -> None:
        if ref is not None:
            self.backend.terminate(ref.name)

    def prune(self, keep: set[str], successful_limit: int, unsuccessful_limit: int) -> None:
        self.backend.prune(self.rollout, keep, successful_limit, unsuccessful_limit)
