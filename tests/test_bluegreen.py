from conftest import analysis_template_manifest, bluegreen_manifest, set_image
from pdc import actions
from pdc.api_models import Phase


def _replicas(rollout):
    return {ref.pod_hash: ref.replicas for ref in rollout.status.replica_sets}


def _start(reconciler, **blue_green):
    actions.apply_rollout(bluegreen_manifest(**blue_green))
    reconciler.reconcile("shop")
    first = actions.get_rollout("shop")
    actions.apply_rollout(set_image(bluegreen_manifest(**blue_green), "shop:v2"))
    return first.status.canary.stable_rs


def test_manual_promotion_with_scale_down_delay(reconciler, clock):
    old = _start(reconciler, autoPromotionEnabled=False, previewReplicaCount=1, scaleDownDelaySeconds=30)

    reconciler.reconcile("shop")
    r = actions.get_rollout("shop")
    new = r.status.canary.current_pod_hash
    assert r.status.phase == Phase.PAUSED
    assert r.status.current_step_weight == 0
    assert _replicas(r) == {old: 3, new: 1}
    assert r.status.blue_green.active_selector == old
    assert r.status.blue_green.preview_selector == new

    actions.promote("shop")
    res = reconciler.reconcile("shop")
    r = actions.get_rollout("shop")
    assert r.status.phase == Phase.HEALTHY
    assert r.status.canary.stable_rs == new
    assert r.status.blue_green.active_selector == new
    assert r.status.current_step_weight == 100
    # Old active keeps running through the grace window.
    assert _replicas(r) == {old: 3, new: 3}
    assert r.status.blue_green.previous_active == old
    assert res.requeue_after == 30

    clock.advance(30)
    reconciler.reconcile("shop")
    r = actions.get_rollout("shop")
    assert _replicas(r) == {old: 0, new: 3}
    assert r.status.blue_green.previous_active is None


def test_auto_promotion_without_delay_cuts_over_in_one_pass(reconciler):
    old = _start(reconciler, scaleDownDelaySeconds=0)

    reconciler.reconcile("shop")
    r = actions.get_rollout("shop")
    assert r.status.phase == Phase.HEALTHY
    assert r.status.canary.stable_rs != old
    assert _replicas(r) == {old: 0, r.status.canary.stable_rs: 3}


def test_auto_promotion_seconds_waits_then_promotes(reconciler, clock):
    _start(reconciler, autoPromotionSeconds=20)

    res = reconciler.reconcile("shop")
    assert actions.get_rollout("shop").status.phase == Phase.PAUSED
    assert res.requeue_after == 20

    clock.advance(20)
    reconciler.reconcile("shop")
    assert actions.get_rollout("shop").status.phase == Phase.HEALTHY


def test_failed_pre_promotion_analysis_keeps_active(reconciler, measure):
    actions.apply_analysis_template(analysis_template_manifest())
    measure.values = [0.2]
    gate = {"templateName": "success-rate", "args": [{"name": "pod-hash", "valueFrom": {"podTemplateHashValue": "Latest"}}]}
    old = _start(reconciler, prePromotionAnalysis=gate)

    reconciler.reconcile("shop")
    r = actions.get_rollout("shop")
    assert r.status.blue_green.pre_promotion_analysis_run is not None
    new = r.status.canary.current_pod_hash

    reconciler.reconcile("shop")
    r = actions.get_rollout("shop")
    assert r.status.phase == Phase.DEGRADED
    assert r.status.current_step_weight == 0
    assert _replicas(r) == {old: 3, new: 0}
    assert r.status.blue_green.active_selector == old


def test_failed_post_promotion_analysis_switches_back(reconciler, measure):
    actions.apply_analysis_template(analysis_template_manifest())
    measure.values = [0.2]
    gate = {"templateName": "success-rate", "args": [{"name": "pod-hash", "value": "x"}]}
    old = _start(reconciler, postPromotionAnalysis=gate)

    reconciler.reconcile("shop")
    r = actions.get_rollout("shop")
    assert r.status.current_step_weight == 100
    assert r.status.phase == Phase.PROGRESSING

    reconciler.reconcile("shop")
    r = actions.get_rollout("shop")
    assert r.status.phase == Phase.DEGRADED
    assert r.status.current_step_weight == 0
    assert r.status.canary.stable_rs == old
    assert r.status.blue_green.active_selector == old
