"""Operator-facing operations shared by the HTTP API and the manifest loader.

Every status mutation here is a compare-and-swap against the stored
resourceVersion, so an operator action and a reconcile racing on the same
rollout never silently overwrite each other.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional

import pydantic

from . import db
from .api_models import (
    AnalysisStep,
    AnalysisTemplate,
    ExperimentStep,
    Phase,
    Rollout,
    Workload,
)
from .errors import ConflictError, NotFoundError, ValidationError
from .events import (
    REASON_ROLLOUT_ABORTED,
    REASON_ROLLOUT_RESUMED,
    REASON_ROLLOUT_RETRIED,
    REASON_ROLLOUT_UPDATED,
)
from .reconciler import rollout_from_row
from .runtime import utc_now

# Spec writes retry this many times when a concurrent status write bumps the version.
APPLY_ATTEMPTS = 3


def _dump_spec(rollout: Rollout) -> dict[str, Any]:
    return rollout.spec.model_dump(mode="json", by_alias=True, exclude_none=True)


def validate_rollout(manifest: dict[str, Any]) -> Rollout:
    try:
        rollout = Rollout.model_validate(manifest)
    except pydantic.ValidationError as e:
        raise ValidationError.from_pydantic(e, "invalid Rollout") from e
    return rollout


def validate_analysis_template(manifest: dict[str, Any]) -> AnalysisTemplate:
    try:
        return AnalysisTemplate.model_validate(manifest)
    except pydantic.ValidationError as e:
        raise ValidationError.from_pydantic(e, "invalid AnalysisTemplate") from e


def validate_workload(manifest: dict[str, Any]) -> Workload:
    try:
        return Workload.model_validate(manifest)
    except pydantic.ValidationError as e:
        raise ValidationError.from_pydantic(e, f"invalid {manifest.get('kind', 'workload')}") from e


def apply_rollout(manifest: dict[str, Any] | Rollout) -> Rollout:
    """Create or replace a rollout's metadata and spec. Status is never taken from input."""
    rollout = manifest if isinstance(manifest, Rollout) else validate_rollout(manifest)
    meta = rollout.metadata
    for _ in range(APPLY_ATTEMPTS):
        row = db.get_rollout(meta.name)
        if row is None:
            row = db.create_rollout(
                meta.name, rollout.api_version, rollout.kind, meta.annotations, meta.labels, _dump_spec(rollout)
            )
            db.log_event("INFO", "Rollout created", rollout=meta.name, reason=REASON_ROLLOUT_UPDATED)
            return rollout_from_row(row)

        spec = _dump_spec(rollout)
        # restartAt is owned by the restart action; an apply that omits it keeps it.
        if "restartAt" not in spec and "restartAt" in row.spec:
            spec["restartAt"] = row.spec["restartAt"]
        try:
            updated = db.update_rollout_spec(meta.name, meta.annotations, meta.labels, spec, row.resource_version)
        except ConflictError:
            continue
        if updated.generation != row.generation:
            db.log_event(
                "INFO", f"Rollout spec updated (generation {updated.generation})",
                rollout=meta.name, reason=REASON_ROLLOUT_UPDATED,
            )
        return rollout_from_row(updated)
    raise ConflictError(f"rollout {meta.name!r} kept changing while being applied")


def apply_analysis_template(manifest: dict[str, Any] | AnalysisTemplate) -> AnalysisTemplate:
    template = manifest if isinstance(manifest, AnalysisTemplate) else validate_analysis_template(manifest)
    db.upsert_analysis_template(
        template.metadata.name, template.spec.model_dump(mode="json", by_alias=True, exclude_none=True)
    )
    db.log_event("INFO", f"AnalysisTemplate '{template.metadata.name}' applied")
    return template


def apply_workload(manifest: dict[str, Any] | Workload) -> Workload:
    workload = manifest if isinstance(manifest, Workload) else validate_workload(manifest)
    db.upsert_workload(workload.kind, workload.metadata.name, workload.api_version, workload.spec.template)
    db.log_event("INFO", f"{workload.kind} '{workload.metadata.name}' applied")
    return workload


def get_rollout(name: str) -> Rollout:
    row = db.get_rollout(name)
    if row is None:
        raise NotFoundError(f"rollout {name!r} not found")
    return rollout_from_row(row)


def list_rollouts() -> list[Rollout]:
    return [rollout_from_row(row) for row in db.list_rollouts()]


def delete_rollout(name: str) -> None:
    if not db.delete_rollout(name):
        raise NotFoundError(f"rollout {name!r} not found")
    db.delete_replica_sets_for(name)
    db.delete_analysis_runs_for(name)
    db.log_event("INFO", "Rollout deleted", rollout=name)


# --- operator actions -----------------------------------------------------------------


def _in_progress(rollout: Rollout) -> bool:
    st = rollout.status
    return st.canary.current_pod_hash is not None and st.canary.current_pod_hash != st.canary.stable_rs


def _mutate_status(
    name: str,
    mutate: Callable[[Rollout], str],
    reason: str,
    expected_version: Optional[int] = None,
) -> Rollout:
    row = db.get_rollout(name)
    if row is None:
        raise NotFoundError(f"rollout {name!r} not found")
    if expected_version is not None and expected_version != row.resource_version:
        raise ConflictError(
            f"rollout {name!r} was modified (expected resourceVersion {expected_version}, found {row.resource_version})"
        )
    rollout = rollout_from_row(row)
    message = mutate(rollout)
    updated = db.update_rollout_status(
        name, rollout.status.model_dump(mode="json", by_alias=True), expected_version=row.resource_version
    )
    db.log_event("INFO", message, rollout=name, reason=reason)
    return rollout_from_row(updated)


def promote(name: str, full: bool = False, expected_version: Optional[int] = None) -> Rollout:
    """Resume a paused rollout, or skip straight to completion with ``full``.

    Without ``full`` an analysis or experiment gate is never skipped.
    """

    def _promote(rollout: Rollout) -> str:
        st = rollout.status
        if not _in_progress(rollout):
            raise ValidationError(f"rollout {name!r} has no update in progress")
        if st.abort:
            raise ValidationError(f"rollout {name!r} is aborted; retry it first")
        if full:
            st.promote_full = True
            st.pause_conditions = []
            st.controller_pause = True
            return "Rollout fully promoted"
        if st.pause_conditions:
            st.pause_conditions = []
            st.controller_pause = True
            return "Rollout promoted"
        canary = rollout.spec.strategy.canary
        if canary is None:
            st.controller_pause = True
            return "Rollout promotion approved"
        index = st.current_step_index
        if index is None or index >= len(canary.steps):
            raise ValidationError(f"rollout {name!r} has no step left to promote")
        if isinstance(canary.steps[index], (AnalysisStep, ExperimentStep)):
            raise ValidationError(
                f"step {index + 1} is an analysis gate and cannot be skipped; use a full promotion"
            )
        st.current_step_index = index + 1
        return f"Rollout promoted past step {index + 1}"

    return _mutate_status(name, _promote, REASON_ROLLOUT_RESUMED, expected_version)


def abort(name: str, expected_version: Optional[int] = None) -> Rollout:
    def _abort(rollout: Rollout) -> str:
        if not _in_progress(rollout):
            raise ValidationError(f"rollout {name!r} has no update in progress")
        st = rollout.status
        if not st.abort:
            st.abort = True
            st.aborted_at = None
            st.message = "Rollout aborted by operator"
        return st.message

    return _mutate_status(name, _abort, REASON_ROLLOUT_ABORTED, expected_version)


def retry(name: str, expected_version: Optional[int] = None) -> Rollout:
    def _retry(rollout: Rollout) -> str:
        st = rollout.status
        if not st.abort:
            raise ValidationError(f"rollout {name!r} is not aborted")
        st.abort = False
        st.aborted_at = None
        st.message = ""
        st.current_step_index = 0 if rollout.spec.strategy.canary is not None else None
        st.phase = Phase.PROGRESSING
        return "Rollout retried"

    return _mutate_status(name, _retry, REASON_ROLLOUT_RETRIED, expected_version)


def restart(name: str, expected_version: Optional[int] = None, now: Optional[datetime] = None) -> Rollout:
    """Roll the current template again by stamping ``restartAt`` into the spec."""
    row = db.get_rollout(name)
    if row is None:
        raise NotFoundError(f"rollout {name!r} not found")
    version = row.resource_version if expected_version is None else expected_version
    spec = dict(row.spec)
    spec["restartAt"] = (now or utc_now()).isoformat()
    updated = db.update_rollout_spec(name, row.annotations, row.labels, spec, expected_version=version)
    db.log_event("INFO", "Rollout restart requested", rollout=name, reason=REASON_ROLLOUT_UPDATED)
    return rollout_from_row(updated)


def list_analysis_runs(rollout: Optional[str] = None) -> list[dict[str, Any]]:
    return [
        {
            "name": run.name,
            "rollout": run.rollout,
            "templateName": run.template_name,
            "args": run.args,
            "phase": run.phase,
            "message": run.message,
            "terminated": run.terminated,
            "metricResults": run.metric_results,
            "createdAt": run.created_at,
            "updatedAt": run.updated_at,
        }
        for run in db.list_analysis_runs(rollout)
    ]


def list_analysis_templates() -> list[dict[str, Any]]:
    return [{"name": t["name"], "spec": t["spec"], "updatedAt": t["updated_at"]} for t in db.list_analysis_templates()]
