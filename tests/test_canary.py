from dataclasses import replace

import pytest

from conftest import analysis_template_manifest, rollout_manifest, set_image
from pdc import actions, db
from pdc.api_models import Phase
from pdc.errors import ValidationError
from pdc.traffic import RouteStatus


def _counts(rollout):
    return {ref.role: ref.replicas for ref in rollout.status.replica_sets if ref.role}


def _reasons(name):
    return [e["reason"] for e in db.latest_events(limit=500, rollout=name)]


def _deploy(reconciler, manifest):
    actions.apply_rollout(manifest)
    reconciler.reconcile(manifest["metadata"]["name"])
    return actions.get_rollout(manifest["metadata"]["name"])


def test_first_revision_is_adopted_as_stable(reconciler):
    r = _deploy(reconciler, rollout_manifest())

    assert r.status.phase == Phase.HEALTHY
    assert r.status.canary.stable_rs == r.status.canary.current_pod_hash
    assert r.status.current_step_weight == 100
    assert r.status.current_step_index is None
    assert _counts(r) == {"stable": 5}
    assert r.status.observed_generation == r.metadata.generation


def test_canary_steps_weight_then_pause_then_complete(reconciler, clock):
    first = _deploy(reconciler, rollout_manifest())
    old_stable = first.status.canary.stable_rs

    actions.apply_rollout(set_image(rollout_manifest(), "demo:v2"))
    res = reconciler.reconcile("demo")
    r = actions.get_rollout("demo")
    assert _counts(r) == {"stable": 4, "canary": 1}
    assert r.status.current_step_weight == 20
    assert r.status.current_step_index == 0
    assert r.status.phase == Phase.PROGRESSING
    assert res.requeue_after == 2

    res = reconciler.reconcile("demo")
    r = actions.get_rollout("demo")
    assert r.status.current_step_index == 1
    assert r.status.phase == Phase.PAUSED
    assert len(r.status.pause_conditions) == 1
    assert res.requeue_after == 10

    clock.advance(5)
    reconciler.reconcile("demo")
    r = actions.get_rollout("demo")
    assert r.status.phase == Phase.PAUSED
    assert r.status.current_step_index == 1

    clock.advance(5)
    reconciler.reconcile("demo")
    r = actions.get_rollout("demo")
    assert r.status.phase == Phase.HEALTHY
    assert r.status.current_step_weight == 100
    assert r.status.canary.stable_rs != old_stable
    assert r.status.canary.stable_rs == r.status.canary.current_pod_hash
    assert _counts(r) == {"stable": 5}
    reasons = _reasons("demo")
    assert "RolloutCompleted" in reasons
    assert "RolloutStepCompleted" in reasons


def test_reconcile_is_idempotent_when_nothing_changed(reconciler):
    r = _deploy(reconciler, rollout_manifest())
    version = r.metadata.resource_version
    events_before = len(db.latest_events(limit=500))

    reconciler.reconcile("demo")
    reconciler.reconcile("demo")

    after = actions.get_rollout("demo")
    assert after.metadata.resource_version == version
    assert len(db.latest_events(limit=500)) == events_before


def test_paused_rollout_is_stable_across_passes(reconciler):
    _deploy(reconciler, rollout_manifest(steps=[{"setWeight": 50}, {"pause": {}}]))
    actions.apply_rollout(set_image(rollout_manifest(steps=[{"setWeight": 50}, {"pause": {}}]), "demo:v2"))
    reconciler.reconcile("demo")
    reconciler.reconcile("demo")
    paused = actions.get_rollout("demo")
    assert paused.status.phase == Phase.PAUSED

    res = reconciler.reconcile("demo")
    assert res.requeue_after is None
    assert actions.get_rollout("demo").metadata.resource_version == paused.metadata.resource_version


def test_promote_resumes_indefinite_pause(reconciler):
    steps = [{"setWeight": 50}, {"pause": {}}]
    _deploy(reconciler, rollout_manifest(steps=steps))
    actions.apply_rollout(set_image(rollout_manifest(steps=steps), "demo:v2"))
    reconciler.reconcile("demo")
    reconciler.reconcile("demo")
    assert _counts(actions.get_rollout("demo")) == {"stable": 2, "canary": 3}

    actions.promote("demo")
    reconciler.reconcile("demo")

    r = actions.get_rollout("demo")
    assert r.status.phase == Phase.HEALTHY
    assert _counts(r) == {"stable": 5}
    assert "RolloutResumed" in _reasons("demo")


def test_abort_routes_back_to_stable_and_retry_restarts(reconciler):
    _deploy(reconciler, rollout_manifest())
    actions.apply_rollout(set_image(rollout_manifest(), "demo:v2"))
    reconciler.reconcile("demo")
    reconciler.reconcile("demo")

    actions.abort("demo")
    reconciler.reconcile("demo")
    r = actions.get_rollout("demo")
    assert r.status.phase == Phase.DEGRADED
    assert r.status.abort is True
    assert r.status.current_step_weight == 0
    assert r.status.current_step_index == 0
    assert r.status.message == "Rollout aborted by operator"
    assert _counts(r) == {"stable": 5, "canary": 0}
    assert "RolloutAborted" in _reasons("demo")

    # Stays degraded without emitting again.
    version = r.metadata.resource_version
    reconciler.reconcile("demo")
    assert actions.get_rollout("demo").metadata.resource_version == version

    actions.retry("demo")
    reconciler.reconcile("demo")
    r = actions.get_rollout("demo")
    assert r.status.abort is False
    assert r.status.current_step_weight == 20
    assert _counts(r) == {"stable": 4, "canary": 1}


def test_new_template_mid_rollout_restarts_from_first_step(reconciler):
    _deploy(reconciler, rollout_manifest())
    actions.apply_rollout(set_image(rollout_manifest(), "demo:v2"))
    reconciler.reconcile("demo")
    reconciler.reconcile("demo")
    v2 = actions.get_rollout("demo").status.canary.current_pod_hash

    actions.apply_rollout(set_image(rollout_manifest(), "demo:v3"))
    reconciler.reconcile("demo")
    r = actions.get_rollout("demo")
    assert r.status.canary.current_pod_hash != v2
    assert r.status.current_step_index == 0
    assert r.status.pause_conditions == []
    refs = {ref.pod_hash: ref for ref in r.status.replica_sets}
    assert refs[v2].replicas == 0
    assert refs[v2].role is None
    assert refs[r.status.canary.current_pod_hash].replicas == 1


def test_reverting_to_stable_template_rolls_back(reconciler):
    first = _deploy(reconciler, rollout_manifest())
    actions.apply_rollout(set_image(rollout_manifest(), "demo:v2"))
    reconciler.reconcile("demo")

    actions.apply_rollout(rollout_manifest())
    reconciler.reconcile("demo")
    r = actions.get_rollout("demo")
    assert r.status.phase == Phase.HEALTHY
    assert r.status.canary.current_pod_hash == first.status.canary.stable_rs
    assert r.status.current_step_weight == 100
    assert _counts(r) == {"stable": 5}


def _analysis_steps():
    return [
        {"setWeight": 20},
        {
            "analysis": {
                "templateName": "success-rate",
                "args": [{"name": "pod-hash", "valueFrom": {"podTemplateHashValue": "Latest"}}],
            }
        },
    ]


def test_failed_analysis_aborts_with_reason(reconciler, measure):
    actions.apply_analysis_template(analysis_template_manifest())
    measure.values = [0.5]
    _deploy(reconciler, rollout_manifest(steps=_analysis_steps()))
    actions.apply_rollout(set_image(rollout_manifest(steps=_analysis_steps()), "demo:v2"))

    reconciler.reconcile("demo")  # weight 20
    reconciler.reconcile("demo")  # step done, run started
    r = actions.get_rollout("demo")
    assert r.status.canary.current_step_analysis_run is not None

    reconciler.reconcile("demo")  # run measured -> Failed
    r = actions.get_rollout("demo")
    assert r.status.phase == Phase.DEGRADED
    assert "Failed" in r.status.message
    assert "failureLimit" in r.status.message
    assert r.status.current_step_weight == 0
    assert _counts(r) == {"stable": 5, "canary": 0}
    assert "AnalysisRunFailed" in _reasons("demo")


def test_successful_analysis_passes_gate_with_resolved_args(reconciler, measure):
    actions.apply_analysis_template(analysis_template_manifest())
    measure.values = [0.99]
    _deploy(reconciler, rollout_manifest(steps=_analysis_steps()))
    actions.apply_rollout(set_image(rollout_manifest(steps=_analysis_steps()), "demo:v2"))

    for _ in range(3):
        reconciler.reconcile("demo")

    r = actions.get_rollout("demo")
    assert r.status.phase == Phase.HEALTHY
    assert measure.calls[0].web.url == f"http://metrics.local/{r.status.canary.stable_rs}"
    runs = db.list_analysis_runs("demo")
    assert runs and runs[0].phase == "Successful"


def test_promote_refuses_to_skip_analysis_gate(reconciler, measure):
    actions.apply_analysis_template(analysis_template_manifest())
    steps = [{"analysis": {"templateName": "success-rate", "args": [{"name": "pod-hash", "value": "x"}]}}]
    _deploy(reconciler, rollout_manifest(steps=steps))
    actions.apply_rollout(set_image(rollout_manifest(steps=steps), "demo:v2"))
    reconciler.reconcile("demo")

    with pytest.raises(ValidationError):
        actions.promote("demo")

    actions.promote("demo", full=True)
    reconciler.reconcile("demo")
    r = actions.get_rollout("demo")
    assert r.status.phase == Phase.HEALTHY
    assert db.list_analysis_runs("demo")[0].terminated is True


def test_background_analysis_failure_aborts(reconciler, measure):
    actions.apply_analysis_template(analysis_template_manifest())
    measure.values = [0.1]
    steps = [{"setWeight": 20}, {"pause": {}}]
    background = {"templateName": "success-rate", "args": [{"name": "pod-hash", "value": "abc"}]}
    _deploy(reconciler, rollout_manifest(steps=steps, analysis=background))
    actions.apply_rollout(set_image(rollout_manifest(steps=steps, analysis=background), "demo:v2"))

    reconciler.reconcile("demo")  # starts background run, weight 20
    assert actions.get_rollout("demo").status.canary.current_background_analysis_run is not None
    reconciler.reconcile("demo")  # measured -> Failed

    r = actions.get_rollout("demo")
    assert r.status.phase == Phase.DEGRADED
    assert r.status.canary.current_background_analysis_run is None


def test_experiment_step_runs_side_replica_sets(reconciler, clock):
    steps = [
        {"experiment": {"duration": "30s", "templates": [{"name": "baseline", "specRef": "stable", "replicas": 2}]}},
    ]
    _deploy(reconciler, rollout_manifest(steps=steps))
    actions.apply_rollout(set_image(rollout_manifest(steps=steps), "demo:v2"))

    reconciler.reconcile("demo")
    r = actions.get_rollout("demo")
    assert r.status.canary.current_experiment is not None
    assert _counts(r)["experiment"] == 2

    clock.advance(30)
    reconciler.reconcile("demo")
    r = actions.get_rollout("demo")
    assert r.status.phase == Phase.HEALTHY
    assert "experiment" not in _counts(r)


def test_completion_notifies_annotation_subscribers(reconciler, notifications, clock):
    manifest = rollout_manifest(steps=[{"setWeight": 50}])
    manifest["metadata"]["annotations"] = {
        "notifications.pdc.io/subscribe.on-completed.webhook": "http://hooks.local/a"
    }
    _deploy(reconciler, manifest)
    actions.apply_rollout(set_image(manifest, "demo:v2"))
    reconciler.reconcile("demo")
    reconciler.reconcile("demo")

    assert actions.get_rollout("demo").status.phase == Phase.HEALTHY
    assert [n[0] for n in notifications] == ["http://hooks.local/a"]
    assert notifications[0][2]["reason"] == "RolloutCompleted"


class GatedRouter:
    """Applies weights immediately except the ones listed in ``held``, which stay pending."""

    name = "gated"

    def __init__(self, held=()):
        self.held = set(held)
        self.applied = None

    def set_weight(self, weight):
        if weight in self.held:
            return RouteStatus.PENDING
        self.applied = weight
        return RouteStatus.SUCCESS

    def verify_weight(self, weight):
        return self.applied == weight


def _use_router(reconciler, router):
    reconciler.config = replace(reconciler.config, routers={"gated": lambda rollout, config, runtime: router})


def test_old_stable_keeps_replicas_until_full_weight_is_applied(reconciler):
    router = GatedRouter()
    _use_router(reconciler, router)
    manifest = rollout_manifest(steps=[{"setWeight": 50}], trafficRouting={"plugin": "gated"})
    first = _deploy(reconciler, manifest)
    old_stable = first.status.canary.stable_rs

    router.held = {100}
    actions.apply_rollout(set_image(manifest, "demo:v2"))
    for _ in range(3):
        reconciler.reconcile("demo")

    r = actions.get_rollout("demo")
    assert r.status.phase == Phase.PROGRESSING
    assert r.status.current_step_weight == 50
    assert r.status.canary.stable_rs == old_stable
    assert _counts(r) == {"stable": 2, "canary": 3}

    router.held = set()
    reconciler.reconcile("demo")
    r = actions.get_rollout("demo")
    assert r.status.phase == Phase.HEALTHY
    assert r.status.current_step_weight == 100
    assert _counts(r) == {"stable": 5}
    refs = {ref.pod_hash: ref.replicas for ref in r.status.replica_sets}
    assert refs[old_stable] == 0


def test_steady_state_is_not_healthy_until_weight_converges(reconciler):
    router = GatedRouter(held={100})
    _use_router(reconciler, router)
    manifest = rollout_manifest(trafficRouting={"plugin": "gated"})

    r = _deploy(reconciler, manifest)
    assert r.status.phase == Phase.PROGRESSING
    assert r.status.current_step_weight == 0

    router.held = set()
    reconciler.reconcile("demo")
    r = actions.get_rollout("demo")
    assert r.status.phase == Phase.HEALTHY
    assert r.status.current_step_weight == 100


def test_replica_change_mid_rollout_keeps_step_and_rescales(reconciler):
    steps = [{"setWeight": 20}, {"pause": {}}]
    _deploy(reconciler, rollout_manifest(steps=steps))
    actions.apply_rollout(set_image(rollout_manifest(steps=steps), "demo:v2"))
    reconciler.reconcile("demo")
    reconciler.reconcile("demo")
    paused = actions.get_rollout("demo")
    assert paused.status.current_step_index == 1
    assert _counts(paused) == {"stable": 4, "canary": 1}

    actions.apply_rollout(set_image(rollout_manifest(replicas=10, steps=steps), "demo:v2"))
    reconciler.reconcile("demo")

    r = actions.get_rollout("demo")
    assert r.status.canary.current_pod_hash == paused.status.canary.current_pod_hash
    assert r.status.current_step_index == 1
    assert r.status.current_step_weight == 20
    assert r.status.phase == Phase.PAUSED
    assert _counts(r) == {"stable": 8, "canary": 2}


@pytest.mark.parametrize(
    "value,metric_extra,run_phase",
    [
        (0.92, {}, "Inconclusive"),
        (0.99, {"count": 5, "interval": "60s"}, "Running"),
    ],
)
def test_unfinished_analysis_holds_step_index(reconciler, measure, clock, value, metric_extra, run_phase):
    actions.apply_analysis_template(analysis_template_manifest(**metric_extra))
    measure.values = [value]
    _deploy(reconciler, rollout_manifest(steps=_analysis_steps()))
    actions.apply_rollout(set_image(rollout_manifest(steps=_analysis_steps()), "demo:v2"))

    reconciler.reconcile("demo")  # weight 20
    reconciler.reconcile("demo")  # step done, run started
    for _ in range(3):
        reconciler.reconcile("demo")
        clock.advance(60)

    r = actions.get_rollout("demo")
    assert r.status.current_step_index == 1
    assert r.status.phase == Phase.PROGRESSING
    assert r.status.canary.current_step_analysis_run is not None
    assert db.list_analysis_runs("demo")[0].phase == run_phase
    assert "RolloutCompleted" not in _reasons("demo")
