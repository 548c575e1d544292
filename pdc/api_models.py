from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

API_VERSION = "rollouts.pdc.io/v1alpha1"

NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
DURATION_RE = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")


def parse_duration(value: Any) -> Optional[int]:
    """Parse ``10``, ``"10"``, ``"10s"``, ``"5m"`` or ``"1h30m"`` into seconds."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("duration must be a number of seconds or a string like '30s'")
    if isinstance(value, int):
        if value < 0:
            raise ValueError("duration must not be negative")
        return value
    raw = str(value).strip()
    if raw.isdigit():
        return int(raw)
    m = DURATION_RE.match(raw)
    if not raw or not m or not any(m.groups()):
        raise ValueError(f"invalid duration {value!r}; use e.g. '30s', '5m', '1h'")
    hours, minutes, seconds = (int(g) if g else 0 for g in m.groups())
    return hours * 3600 + minutes * 60 + seconds


class _Spec(BaseModel):
    """Declarative input: camelCase on the wire, unknown fields rejected."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class _Status(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ObjectMeta(_Status):
    name: str
    annotations: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    generation: int = 0
    resource_version: int = 0

    @field_validator("name")
    @classmethod
    def _valid_name(cls, v: str) -> str:
        if not NAME_RE.match(v):
            raise ValueError(
                "Invalid name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
            )
        return v


# --- Steps -------------------------------------------------------------------


class PauseSpec(_Spec):
    # None means indefinite: wait for promote.
    duration: Optional[int] = None

    @field_validator("duration", mode="before")
    @classmethod
    def _duration(cls, v: Any) -> Optional[int]:
        return parse_duration(v)


class ArgValueFrom(_Spec):
    pod_template_hash_value: Literal["Stable", "Latest"]


class AnalysisArg(_Spec):
    name: str
    value: Optional[str] = None
    value_from: Optional[ArgValueFrom] = None

    @model_validator(mode="after")
    def _one_source(self) -> "AnalysisArg":
        if self.value is not None and self.value_from is not None:
            raise ValueError(f"arg {self.name!r}: set either value or valueFrom, not both")
        return self


class AnalysisRef(_Spec):
    template_name: str
    args: list[AnalysisArg] = Field(default_factory=list)


class SetWeightStep(_Spec):
    set_weight: int = Field(..., ge=0, le=100)


class PauseStep(_Spec):
    pause: PauseSpec


class AnalysisStep(_Spec):
    analysis: AnalysisRef


class ExperimentTemplate(_Spec):
    name: str
    spec_ref: Literal["stable", "canary"]
    replicas: int = Field(1, ge=0)


class ExperimentAnalysis(AnalysisRef):
    name: str


class ExperimentSpec(_Spec):
    templates: list[ExperimentTemplate] = Field(..., min_length=1)
    duration: Optional[int] = None
    analyses: list[ExperimentAnalysis] = Field(default_factory=list)

    @field_validator("duration", mode="before")
    @classmethod
    def _duration(cls, v: Any) -> Optional[int]:
        return parse_duration(v)

    @model_validator(mode="after")
    def _unique_names(self) -> "ExperimentSpec":
        names = [t.name for t in self.templates]
        if len(set(names)) != len(names):
            raise ValueError("experiment template names must be unique")
        return self


class ExperimentStep(_Spec):
    experiment: ExperimentSpec


# Closed variant set. Every member forbids extra keys, so a step matching none
# of them (or several keys at once) fails validation instead of being skipped.
Step = Union[SetWeightStep, PauseStep, AnalysisStep, ExperimentStep]


# --- Strategy ----------------------------------------------------------------


class TrafficRouting(_Spec):
    plugin: str
    config: dict[str, Any] = Field(default_factory=dict)


class BackgroundAnalysis(AnalysisRef):
    starting_step: Optional[int] = Field(None, ge=0)


class CanaryStrategy(_Spec):
    steps: list[Step] = Field(default_factory=list)
    traffic_routing: Optional[TrafficRouting] = None
    analysis: Optional[BackgroundAnalysis] = None

    @model_validator(mode="after")
    def _starting_step_in_range(self) -> "CanaryStrategy":
        if self.analysis and self.analysis.starting_step is not None:
            if self.analysis.starting_step > len(self.steps):
                raise ValueError("analysis.startingStep is beyond the last step")
        return self


class BlueGreenStrategy(_Spec):
    auto_promotion_enabled: bool = True
    auto_promotion_seconds: Optional[int] = Field(None, ge=0)
    preview_replica_count: Optional[int] = Field(None, ge=0)
    scale_down_delay_seconds: int = Field(30, ge=0)
    pre_promotion_analysis: Optional[AnalysisRef] = None
    post_promotion_analysis: Optional[AnalysisRef] = None
    traffic_routing: Optional[TrafficRouting] = None

    @model_validator(mode="after")
    def _auto_promotion(self) -> "BlueGreenStrategy":
        if self.auto_promotion_seconds is not None and not self.auto_promotion_enabled:
            raise ValueError("autoPromotionSeconds requires autoPromotionEnabled")
        return self


class RolloutStrategy(_Spec):
    canary: Optional[CanaryStrategy] = None
    blue_green: Optional[BlueGreenStrategy] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "RolloutStrategy":
        if (self.canary is None) == (self.blue_green is None):
            raise ValueError("strategy must declare exactly one of canary, blueGreen")
        return self

    @property
    def traffic_routing(self) -> Optional[TrafficRouting]:
        chosen = self.canary or self.blue_green
        return chosen.traffic_routing if chosen else None


class WorkloadRef(_Spec):
    api_version: str = "apps/v1"
    kind: str = "Deployment"
    name: str


class AnalysisRunHistory(_Spec):
    successful_run_history_limit: int = Field(5, ge=0)
    unsuccessful_run_history_limit: int = Field(5, ge=0)


class RolloutSpec(_Spec):
    replicas: int = Field(1, ge=0)
    selector: Optional[dict[str, Any]] = None
    template: Optional[dict[str, Any]] = None
    workload_ref: Optional[WorkloadRef] = None
    strategy: RolloutStrategy
    revision_history_limit: int = Field(10, ge=0)
    analysis: AnalysisRunHistory = Field(default_factory=AnalysisRunHistory)
    # Bumped by "restart"; part of the pod template hash.
    restart_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _template_source(self) -> "RolloutSpec":
        if (self.template is None) == (self.workload_ref is None):
            raise ValueError("spec must set exactly one of template, workloadRef")
        return self


# --- Status ------------------------------------------------------------------


class Phase(str, Enum):
    PROGRESSING = "Progressing"
    PAUSED = "Paused"
    DEGRADED = "Degraded"
    HEALTHY = "Healthy"


class PauseReason(str, Enum):
    CANARY_PAUSE_STEP = "CanaryPauseStep"
    BLUE_GREEN_PAUSE = "BlueGreenPause"


class PauseCondition(_Status):
    reason: PauseReason
    start_time: datetime


class ReplicaSetRef(_Status):
    pod_hash: str
    role: Optional[str] = None
    replicas: int = 0


class RunRef(_Status):
    """Reference to an analysis run; the run itself is owned by the analysis backend."""

    name: str
    pod_hash: str
    step_index: Optional[int] = None


class ExperimentStatus(_Status):
    name: str
    step_index: int
    pod_hash: str
    started_at: datetime
    replica_sets: list[str] = Field(default_factory=list)
    analysis_runs: list[RunRef] = Field(default_factory=list)


class CanaryStatus(_Status):
    stable_rs: Optional[str] = Field(None, alias="stableRS")
    current_pod_hash: Optional[str] = None
    current_step_analysis_run: Optional[RunRef] = None
    current_background_analysis_run: Optional[RunRef] = None
    current_experiment: Optional[ExperimentStatus] = None


class BlueGreenStatus(_Status):
    active_selector: Optional[str] = None
    preview_selector: Optional[str] = None
    pre_promotion_analysis_run: Optional[RunRef] = None
    post_promotion_analysis_run: Optional[RunRef] = None
    previous_active: Optional[str] = None
    scale_down_at: Optional[datetime] = None


class RolloutStatus(_Status):
    phase: Optional[Phase] = None
    message: str = ""
    current_step_index: Optional[int] = None
    current_step_weight: int = 0
    pause_conditions: list[PauseCondition] = Field(default_factory=list)
    # Set while a pause is in effect; survives a promote so the engine can tell
    # "resumed" apart from "not yet paused".
    controller_pause: bool = False
    abort: bool = False
    aborted_at: Optional[datetime] = None
    promote_full: bool = False
    replica_sets: list[ReplicaSetRef] = Field(default_factory=list)
    canary: CanaryStatus = Field(default_factory=CanaryStatus, alias="canaryStatus")
    blue_green: BlueGreenStatus = Field(default_factory=BlueGreenStatus)
    observed_generation: int = 0

    def pause_condition(self, reason: PauseReason) -> Optional[PauseCondition]:
        for cond in self.pause_conditions:
            if cond.reason == reason:
                return cond
        return None


class Rollout(_Status):
    api_version: Literal["rollouts.pdc.io/v1alpha1"] = API_VERSION
    kind: Literal["Rollout"] = "Rollout"
    metadata: ObjectMeta
    spec: RolloutSpec
    status: RolloutStatus = Field(default_factory=RolloutStatus)

    @property
    def name(self) -> str:
        return self.metadata.name


# --- Analysis templates --------------------------------------------------------


class WebMetric(_Spec):
    url: str
    method: Literal["GET", "POST"] = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    json_path: Optional[str] = None
    timeout_seconds: Optional[int] = Field(None, ge=1)


class PrometheusMetric(_Spec):
    address: str
    query: str
    timeout_seconds: Optional[int] = Field(None, ge=1)


class MetricProvider(_Spec):
    web: Optional[WebMetric] = None
    prometheus: Optional[PrometheusMetric] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "MetricProvider":
        if sum(p is not None for p in (self.web, self.prometheus)) != 1:
            raise ValueError("provider must declare exactly one of web, prometheus")
        return self


class Metric(_Spec):
    name: str
    provider: MetricProvider
    success_condition: Optional[str] = None
    failure_condition: Optional[str] = None
    interval: Optional[int] = None
    count: int = Field(1, ge=1)
    failure_limit: int = Field(0, ge=0)
    inconclusive_limit: int = Field(0, ge=0)
    consecutive_error_limit: int = Field(4, ge=0)

    @field_validator("interval", mode="before")
    @classmethod
    def _interval(cls, v: Any) -> Optional[int]:
        return parse_duration(v)

    @field_validator("success_condition", "failure_condition")
    @classmethod
    def _condition(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            from .analysis import parse_condition

            parse_condition(v)
        return v

    @model_validator(mode="after")
    def _has_condition(self) -> "Metric":
        if self.success_condition is None and self.failure_condition is None:
            raise ValueError(f"metric {self.name!r} needs a successCondition or failureCondition")
        return self


class TemplateArg(_Spec):
    name: str
    value: Optional[str] = None


class AnalysisTemplateSpec(_Spec):
    args: list[TemplateArg] = Field(default_factory=list)
    metrics: list[Metric] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _unique_metrics(self) -> "AnalysisTemplateSpec":
        names = [m.name for m in self.metrics]
        if len(set(names)) != len(names):
            raise ValueError("metric names must be unique")
        return self


class AnalysisTemplate(_Status):
    api_version: Literal["rollouts.pdc.io/v1alpha1"] = API_VERSION
    kind: Literal["AnalysisTemplate"] = "AnalysisTemplate"
    metadata: ObjectMeta
    spec: AnalysisTemplateSpec


class AnalysisPhase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"
    ERROR = "Error"
    INCONCLUSIVE = "Inconclusive"

    @property
    def terminal(self) -> bool:
        return self not in (AnalysisPhase.PENDING, AnalysisPhase.RUNNING)


class Measurement(_Status):
    phase: AnalysisPhase
    value: Optional[str] = None
    message: str = ""
    finished_at: datetime


class MetricResult(_Status):
    name: str
    phase: AnalysisPhase = AnalysisPhase.PENDING
    count: int = 0
    successful: int = 0
    failed: int = 0
    inconclusive: int = 0
    error: int = 0
    consecutive_error: int = 0
    message: str = ""
    measurements: list[Measurement] = Field(default_factory=list)


# --- Workloads -----------------------------------------------------------------


class WorkloadSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    template: dict[str, Any]


class Workload(_Status):
    """An externally-owned pod template source, e.g. an apps/v1 Deployment."""

    api_version: str = "apps/v1"
    kind: str = "Deployment"
    metadata: ObjectMeta
    spec: WorkloadSpec
